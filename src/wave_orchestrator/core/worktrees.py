"""Provision isolated git worktrees for work items."""

import fcntl
import hashlib
import json
import logging
import shutil
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from wave_orchestrator.config import Config
from wave_orchestrator.core.backlog import validate_item_id
from wave_orchestrator.db.models import InstallOutcome, Worktree
from wave_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    delete_branch,
    get_status,
    git_path,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)

HOOK_TEMPLATE = Path(__file__).resolve().parent.parent / "templates" / "pre-commit"
INSTALL_TIMEOUT_S = 900

NODE_SUBDIRS = ("frontend", "backend", "packages/*", "apps/*")
PYTHON_SUBDIRS = ("backend", "api", "server")

Runner = Callable[[list[str], Path], tuple[int, str]]


class ProvisionError(Exception):
    """Raised when a worktree cannot be created."""


@dataclass
class InstallStep:
    """One dependency step; `commands` are fallbacks tried in order until one succeeds."""

    ecosystem: str
    directory: Path
    commands: list[list[str]]


@dataclass
class ProvisionResult:
    worktree: Worktree
    already_existed: bool = False
    installs: list[InstallOutcome] = field(default_factory=list)
    hook_installed: bool = False

    def as_dict(self) -> dict:
        return {
            "item_id": self.worktree.item_id,
            "worktree_path": self.worktree.path,
            "branch": self.worktree.branch,
            "already_existed": self.already_existed,
            "hook_installed": self.hook_installed,
            "installs": [
                {"ecosystem": i.ecosystem, "directory": i.directory, "ok": i.ok, "detail": i.detail}
                for i in self.installs
            ],
        }


_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def repo_lock(repo_path: str | Path):
    """Serialize worktree creation per repository, within and across processes."""
    repo = Path(repo_path).resolve()
    with _locks_guard:
        lock = _locks.setdefault(str(repo), threading.Lock())
    digest = hashlib.sha1(str(repo).encode()).hexdigest()[:8]
    lock_file = Path(tempfile.gettempdir()) / f"wave-worktree-{repo.name}-{digest}.lock"
    with lock:
        with open(lock_file, "w") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)


def _is_registered(repo: Path, path: Path) -> bool:
    target = path.resolve()
    return any(Path(wt.path).resolve() == target for wt in worktree_list(repo))


def create_worktree(repo_path: str | Path, item_id: str, config: Config) -> tuple[Worktree, bool]:
    """Create the item's worktree under the repo lock. Returns (worktree, already_existed)."""
    validate_item_id(item_id)
    repo = Path(repo_path)
    branch = config.branch_for(item_id)
    wt_path = config.worktree_for(repo, item_id)
    worktree = Worktree(path=str(wt_path), branch=branch, item_id=item_id)

    with repo_lock(repo):
        try:
            if wt_path.exists():
                if _is_registered(repo, wt_path):
                    logger.info("Worktree for %s already exists at %s", item_id, wt_path)
                    return worktree, True
                raise ProvisionError(f"{wt_path} exists but is not a git worktree")

            worktree_prune(repo)
            create_branch = not branch_exists(repo, branch)
            worktree_add(repo, wt_path, branch, config.main_branch, create_branch=create_branch)
        except GitError as e:
            raise ProvisionError(f"Could not create worktree for {item_id}: {e}") from e

    logger.info("Created worktree %s on %s", wt_path, branch)
    return worktree, False


def _node_commands(directory: Path) -> list[list[str]]:
    if (directory / "pnpm-lock.yaml").exists():
        return [["pnpm", "install", "--frozen-lockfile"], ["pnpm", "install"]]
    if (directory / "yarn.lock").exists():
        return [["yarn", "install", "--frozen-lockfile"], ["yarn", "install"]]
    if (directory / "bun.lockb").exists() or (directory / "bun.lock").exists():
        return [["bun", "install", "--frozen-lockfile"], ["bun", "install"]]
    if (directory / "package-lock.json").exists():
        return [["npm", "ci"], ["npm", "install"]]
    return [["npm", "install"]]


def _declares_workspaces(directory: Path) -> bool:
    if (directory / "pnpm-workspace.yaml").exists():
        return True
    try:
        return "workspaces" in json.loads((directory / "package.json").read_text())
    except (OSError, ValueError):
        return False


def _python_steps(directory: Path) -> list[InstallStep]:
    pip = ".venv/bin/pip"
    if (directory / "pyproject.toml").exists():
        install = [
            ["uv", "pip", "install", "-e", ".[dev]"],
            ["uv", "pip", "install", "-e", "."],
            [pip, "install", "-e", ".[dev]"],
            [pip, "install", "-e", "."],
        ]
    else:
        reqs = sorted(p.name for p in directory.glob("requirements*.txt"))
        if not reqs:
            return []
        req = "requirements.txt" if "requirements.txt" in reqs else reqs[0]
        install = [["uv", "pip", "install", "-r", req], [pip, "install", "-r", req]]

    steps = []
    if not (directory / ".venv").exists():
        steps.append(InstallStep("python-venv", directory, [["uv", "venv"], ["python3", "-m", "venv", ".venv"]]))
    steps.append(InstallStep("python", directory, install))
    return steps


def _expand(root: Path, patterns: tuple[str, ...]) -> list[Path]:
    dirs = []
    for pattern in patterns:
        dirs += sorted(p for p in root.glob(pattern) if p.is_dir())
    return dirs


def detect_ecosystems(worktree_path: str | Path) -> list[InstallStep]:
    """Dependency steps implied by the marker files in a checkout."""
    root = Path(worktree_path)
    steps: list[InstallStep] = []

    if (root / "package.json").exists():
        steps.append(InstallStep("node", root, _node_commands(root)))
    if not ((root / "package.json").exists() and _declares_workspaces(root)):
        for sub in _expand(root, NODE_SUBDIRS):
            if (sub / "package.json").exists():
                steps.append(InstallStep("node", sub, _node_commands(sub)))

    steps += _python_steps(root)
    for sub in _expand(root, PYTHON_SUBDIRS):
        steps += _python_steps(sub)

    if (root / "Cargo.toml").exists():
        steps.append(InstallStep("rust", root, [["cargo", "fetch"]]))
    if (root / "go.mod").exists():
        steps.append(InstallStep("go", root, [["go", "mod", "download"]]))
    if (root / "Gemfile").exists():
        steps.append(InstallStep("ruby", root, [["bundle", "install"]]))
    if (root / "mix.exs").exists():
        steps.append(InstallStep("elixir", root, [["mix", "deps.get"]]))
    return steps


def _available(cmd: list[str], directory: Path) -> bool:
    if "/" in cmd[0]:
        return (directory / cmd[0]).exists()
    return shutil.which(cmd[0]) is not None


def _run_install(cmd: list[str], cwd: Path) -> tuple[int, str]:
    try:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=INSTALL_TIMEOUT_S)
    except subprocess.TimeoutExpired:
        return 124, f"timed out after {INSTALL_TIMEOUT_S}s"
    return result.returncode, (result.stderr or result.stdout).strip()


def install_dependencies(
    worktree_path: str | Path,
    runner: Runner | None = None,
    available: Callable[[list[str], Path], bool] = _available,
) -> list[InstallOutcome]:
    """Run every detected step. A failing step is recorded and the rest still run."""
    runner = runner or _run_install
    root = Path(worktree_path)
    outcomes = []
    for step in detect_ecosystems(root):
        directory = str(step.directory.relative_to(root)) if step.directory != root else "."
        outcome = InstallOutcome(step.ecosystem, directory, ok=False, detail="no installer available")
        for cmd in step.commands:
            if not available(cmd, step.directory):
                continue
            code, output = runner(cmd, step.directory)
            if code == 0:
                outcome = InstallOutcome(step.ecosystem, directory, ok=True, detail=" ".join(cmd))
                break
            outcome.detail = f"{' '.join(cmd)} exited {code}: {output[-300:]}"
        if not outcome.ok:
            logger.warning("Dependency step %s in %s failed: %s", step.ecosystem, directory, outcome.detail)
        outcomes.append(outcome)
    return outcomes


def install_hook(worktree_path: str | Path, template: Path = HOOK_TEMPLATE) -> bool:
    """Install the pre-commit review hook where git will run it for this checkout.

    An unrelated hook already in place is left alone.
    """
    hooks_dir = git_path(worktree_path, "hooks")
    target = hooks_dir / "pre-commit"
    content = template.read_text()
    if target.exists():
        if target.read_text() == content:
            return True
        logger.warning("Not replacing existing pre-commit hook at %s", target)
        return False
    hooks_dir.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    target.chmod(0o755)
    return True


def provision(
    repo_path: str | Path,
    item_id: str,
    config: Config | None = None,
    install: bool = True,
    hook: bool = True,
    runner: Runner | None = None,
) -> ProvisionResult:
    """Create (or find) the worktree for an item and prepare it for a worker.

    Idempotent: an existing worktree is reported with ``already_existed`` and
    nothing is reinstalled. Raises ValueError for a malformed id and
    ProvisionError when git cannot create the worktree.
    """
    config = config or Config()
    worktree, existed = create_worktree(repo_path, item_id, config)
    result = ProvisionResult(worktree=worktree, already_existed=existed)
    if existed:
        return result

    if install:
        result.installs = install_dependencies(worktree.path, runner=runner)
        worktree.installs = result.installs
    if hook:
        try:
            result.hook_installed = install_hook(worktree.path)
        except (GitError, OSError) as e:
            logger.warning("Could not install pre-commit hook for %s: %s", item_id, e)
    return result


def remove_worktree(
    repo_path: str | Path,
    item_id: str,
    config: Config | None = None,
    force: bool = True,
    delete_branch_after: bool = True,
) -> dict:
    """Remove an item's worktree and optionally its branch."""
    config = config or Config()
    repo = Path(repo_path)
    wt_path = config.worktree_for(repo, item_id)
    branch = config.branch_for(item_id)
    removed = False

    if wt_path.exists():
        worktree_remove(repo, wt_path, force=force)
        removed = True

    branch_deleted = False
    if delete_branch_after and branch_exists(repo, branch):
        try:
            delete_branch(repo, branch)
            branch_deleted = True
        except GitError as e:
            logger.warning("Could not delete branch %s: %s", branch, e)

    return {"item_id": item_id, "removed": removed, "branch_deleted": branch_deleted, "path": str(wt_path)}


def list_item_worktrees(repo_path: str | Path, config: Config | None = None) -> list[dict]:
    """List git worktrees, tagging the ones that belong to work items."""
    config = config or Config()
    result = []
    for wt in worktree_list(repo_path):
        entry = {"path": wt.path, "branch": wt.branch, "head": wt.head}
        if wt.branch.startswith(config.branch_prefix):
            entry["item_id"] = wt.branch[len(config.branch_prefix):]
        result.append(entry)
    return result


def worktree_status(worktree_path: str | Path) -> str:
    status = get_status(worktree_path)
    return status if status else "(clean)"
