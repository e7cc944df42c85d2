"""Git subprocess wrappers for worktree, branch and merge operations."""

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


@dataclass
class MergeResult:
    branch: str
    ok: bool
    conflict: bool = False
    output: str = ""


@dataclass
class DiffStat:
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = e.stderr.strip() or e.stdout.strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e


def _git_ok(args: list[str], cwd: str | Path) -> bool:
    """Run a git predicate command and report whether it exited 0."""
    result = subprocess.run(["git"] + args, cwd=cwd, capture_output=True, text=True)
    return result.returncode == 0


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path), base_branch]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def _porcelain_entry(current: dict) -> WorktreeInfo:
    return WorktreeInfo(
        path=current.get("worktree", ""),
        branch=current.get("branch", "").replace("refs/heads/", ""),
        head=current.get("HEAD", ""),
        is_bare=current.get("bare", False),
    )


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n"):
        if not line:
            if current:
                worktrees.append(_porcelain_entry(current))
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    if current:
        worktrees.append(_porcelain_entry(current))

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    return _git_ok(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--short"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def rev_parse(cwd: str | Path, ref: str = "HEAD") -> str:
    return run_git(["rev-parse", ref], cwd=cwd)


def show_toplevel(cwd: str | Path) -> Path:
    return Path(run_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def git_path(cwd: str | Path, name: str) -> Path:
    """Resolve a path inside the git dir (`hooks`, `MERGE_HEAD`, ...) the way git itself does."""
    path = Path(run_git(["rev-parse", "--git-path", name], cwd=cwd))
    return path if path.is_absolute() else Path(cwd) / path


def checkout(repo_path: str | Path, branch: str) -> str:
    return run_git(["checkout", branch], cwd=repo_path)


def pull_ff_only(repo_path: str | Path, branch: str, remote: str = "origin") -> bool:
    """Fast-forward the current branch from the remote. Returns False when it cannot."""
    try:
        run_git(["pull", "--ff-only", remote, branch], cwd=repo_path)
        return True
    except GitError:
        return False


def merge(repo_path: str | Path, branch: str) -> MergeResult:
    """Merge a branch into the current branch, aborting on conflict."""
    result = subprocess.run(
        ["git", "merge", "--no-edit", branch],
        cwd=repo_path,
        capture_output=True,
        text=True,
    )
    output = (result.stdout + result.stderr).strip()
    if result.returncode == 0:
        return MergeResult(branch=branch, ok=True, output=output)

    conflict = "CONFLICT" in output or bool(run_git(["diff", "--name-only", "--diff-filter=U"], cwd=repo_path))
    merge_abort(repo_path)
    return MergeResult(branch=branch, ok=False, conflict=conflict, output=output)


def merge_abort(repo_path: str | Path) -> None:
    """Abort an in-progress merge, if any."""
    if _git_ok(["rev-parse", "--verify", "--quiet", "MERGE_HEAD"], cwd=repo_path):
        run_git(["merge", "--abort"], cwd=repo_path)


def branch_has_diff(cwd: str | Path, base: str) -> bool:
    """True when HEAD carries commits that differ from the merge base with `base`."""
    return not _git_ok(["diff", "--quiet", f"{base}...HEAD"], cwd=cwd)


_SHORTSTAT_RE = {
    "files_changed": re.compile(r"(\d+) files? changed"),
    "insertions": re.compile(r"(\d+) insertions?\(\+\)"),
    "deletions": re.compile(r"(\d+) deletions?\(-\)"),
}


def parse_shortstat(text: str) -> DiffStat:
    stat = DiffStat()
    for name, pattern in _SHORTSTAT_RE.items():
        m = pattern.search(text)
        if m:
            setattr(stat, name, int(m.group(1)))
    return stat


def diff_shortstat(cwd: str | Path, old: str, new: str = "HEAD") -> DiffStat:
    """Files changed, insertions and deletions between two revisions."""
    if old == new:
        return DiffStat()
    return parse_shortstat(run_git(["diff", "--shortstat", old, new], cwd=cwd))


def has_staged_changes(cwd: str | Path) -> bool:
    return not _git_ok(["diff", "--cached", "--quiet"], cwd=cwd)


def staged_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--cached", "--name-only"], cwd=cwd)
    return [line for line in output.split("\n") if line]
