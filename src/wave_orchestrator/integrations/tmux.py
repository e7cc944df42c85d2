"""Async tmux helpers. Failures are logged and reported as empty/False results."""

import asyncio
import fnmatch
import logging

logger = logging.getLogger(__name__)


async def _tmux(*args: str) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            "tmux", *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        logger.warning("Could not run tmux %s: %s", args[0], e)
        return 127, "", str(e)
    stdout, stderr = await proc.communicate()
    return proc.returncode, stdout.decode("utf-8", errors="replace"), stderr.decode("utf-8", errors="replace").strip()


async def capture_pane(target: str, lines: int | None = None) -> str:
    """Capture pane output; the entire scrollback unless `lines` is given."""
    cmd = ["capture-pane", "-t", target, "-p", "-J", "-S", f"-{lines}" if lines else "-"]
    code, out, err = await _tmux(*cmd)
    if code == 0:
        return out
    logger.warning("Failed to capture pane from %s: returncode=%d, stderr=%s", target, code, err)
    return ""


async def kill_session(session_name: str) -> bool:
    code, _, err = await _tmux("kill-session", "-t", session_name)
    if code != 0:
        logger.debug("kill-session %s failed: %s", session_name, err)
    return code == 0


async def list_sessions() -> list[str]:
    code, out, _ = await _tmux("list-sessions", "-F", "#{session_name}")
    if code != 0:
        return []
    return [s for s in out.strip().split("\n") if s]


async def session_exists(session_name: str) -> bool:
    code, _, _ = await _tmux("has-session", "-t", f"={session_name}")
    return code == 0


async def pane_current_path(target: str) -> str | None:
    code, out, _ = await _tmux("display-message", "-p", "-t", target, "#{pane_current_path}")
    path = out.strip()
    return path if code == 0 and path else None


async def ensure_window(name: str, command: str) -> bool:
    """Start `command` in a detached window called `name` unless one exists."""
    code, out, _ = await _tmux("list-windows", "-a", "-F", "#{window_name}")
    if code == 0 and name in out.split("\n"):
        return False
    code, _, err = await _tmux("new-window", "-d", "-n", name, command)
    if code != 0:
        logger.warning("Could not start tmux window %s: %s", name, err)
        return False
    return True


async def kill_matching(patterns: list[str]) -> list[str]:
    """Kill every session whose name matches one of the glob patterns."""
    killed = []
    for session in await list_sessions():
        if any(fnmatch.fnmatchcase(session, p) for p in patterns):
            if await kill_session(session):
                killed.append(session)
    return killed
