"""Pre-commit review of a worker's staged changes."""

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from wave_orchestrator.config import Config
from wave_orchestrator.core.backlog import ITEM_ID_RE
from wave_orchestrator.integrations import git
from wave_orchestrator.integrations.session_host import SessionHostClient, SessionHostError

logger = logging.getLogger(__name__)

REVIEW_AGENT = "conductor:precommit-gate"
REVIEW_TIMEOUT_S = 600
VERDICT_BLOCK = "NEEDS_WORK"

ReviewRunner = Callable[[list[str], Path, dict], tuple[int, str]]


@dataclass
class HookDecision:
    allowed: bool
    reason: str
    item_id: str | None = None
    output: str = ""

    @property
    def exit_code(self) -> int:
        return 0 if self.allowed else 1


def item_id_from_branch(branch: str, prefix: str = "feature/") -> str | None:
    if not branch.startswith(prefix):
        return None
    item_id = branch[len(prefix):]
    return item_id if ITEM_ID_RE.match(item_id) else None


def review_prompt(item_id: str, worktree: Path, session_name: str, stats: str, files: list[str]) -> str:
    return "\n".join(
        [
            f"Review staged changes for item {item_id}.",
            "",
            "## Context",
            f"- Worktree: {worktree}",
            f"- Worker session: {session_name}",
            f"- Changes: {stats}",
            "",
            "## Staged Files",
            *files,
            "",
            "## Your Task",
            "1. Run git diff --cached to see the actual changes",
            "2. Analyze complexity and completeness",
            f"3. Decide: PASS or {VERDICT_BLOCK}",
            "4. Record retro notes on the item",
            "5. Message the worker with your decision",
        ]
    )


def _run_review(cmd: list[str], cwd: Path, env: dict) -> tuple[int, str]:
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env={**os.environ, **env},
            capture_output=True,
            text=True,
            timeout=REVIEW_TIMEOUT_S,
        )
    except FileNotFoundError as e:
        return 127, str(e)
    except subprocess.TimeoutExpired:
        return 124, f"review timed out after {REVIEW_TIMEOUT_S}s"
    return result.returncode, result.stdout + result.stderr


def _verdict_excerpt(output: str) -> str:
    lines = output.splitlines()
    for i, line in enumerate(lines):
        if "Decision:" in line:
            return "\n".join(lines[i : i + 21])
    return "\n".join(lines[-20:])


async def run_precommit_hook(
    worktree: str | Path,
    session_host: SessionHostClient | None,
    config: Config | None = None,
    runner: ReviewRunner | None = None,
) -> HookDecision:
    """Decide whether a commit in a worker's worktree may proceed.

    Anything that prevents a review (not an item branch, no worker session,
    host unreachable, nothing staged) allows the commit. A review that cannot
    run also allows it; only an explicit NEEDS_WORK verdict blocks.
    """
    config = config or Config()
    runner = runner or _run_review
    worktree = Path(worktree)

    try:
        branch = await asyncio.to_thread(git.get_current_branch, worktree)
    except git.GitError as e:
        return HookDecision(True, f"not a git checkout: {e}")
    item_id = item_id_from_branch(branch, config.branch_prefix)
    if item_id is None:
        return HookDecision(True, f"{branch} is not an item branch")

    if session_host is None:
        return HookDecision(True, "no session host configured", item_id)
    try:
        session = await session_host.find_session(item_id)
    except SessionHostError as e:
        logger.warning("Session host unavailable, skipping review: %s", e)
        return HookDecision(True, "session host unreachable", item_id)
    if session is None:
        return HookDecision(True, f"no worker session found for {item_id}", item_id)

    if not await asyncio.to_thread(git.has_staged_changes, worktree):
        return HookDecision(True, "no staged changes", item_id)

    files = await asyncio.to_thread(git.staged_files, worktree)
    stat_lines = (await asyncio.to_thread(git.run_git, ["diff", "--cached", "--stat"], worktree)).splitlines()
    stats = stat_lines[-1].strip() if stat_lines else ""
    session_name = session.session_name or session.name
    logger.info("Reviewing %d files for %s (%s)", len(files), item_id, stats)

    cmd = [
        config.agent_command,
        "--agent",
        REVIEW_AGENT,
        "--print",
        review_prompt(item_id, worktree, session_name, stats, files),
    ]
    env = {"ITEM_ID": item_id, "WORKER_SESSION": session_name, "WORKTREE_PATH": str(worktree)}
    code, output = await asyncio.to_thread(runner, cmd, worktree, env)

    if VERDICT_BLOCK in output:
        return HookDecision(False, "review found issues", item_id, _verdict_excerpt(output))
    if code != 0:
        logger.warning("Review agent exited %d for %s; allowing commit", code, item_id)
    return HookDecision(True, "review passed", item_id, output)
