"""Quality gates: run verifiers against a worker's output and collect their verdicts.

Each gate attempt moves PENDING -> SPAWNED -> AWAITING_RESULT and ends in
PASSED, FAILED or TIMED_OUT. The verdict is a JSON artifact the verifier
writes to ``<worktree>/<checkpoint_dir>/<gate>.json``; the runner only ever
reads it. Terminal states are final for the attempt and nothing is retried
automatically.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from wave_orchestrator.config import Config
from wave_orchestrator.core.backlog import BacklogClient
from wave_orchestrator.core.skills import GATE_SKILLS, KNOWN_GATES, checkpoint_file
from wave_orchestrator.db.models import GateResult, GateState
from wave_orchestrator.integrations.git import branch_has_diff
from wave_orchestrator.integrations.session_host import (
    SessionHostClient,
    SessionHostError,
    SessionInfo,
)

logger = logging.getLogger(__name__)

REVIEW_FAIL_RE = re.compile(r"\[P[12]\]|incorrect")
VANISH_GRACE_S = 2.0


@dataclass
class GateContext:
    item_id: str
    gate_type: str
    worktree: Path
    repo_path: Path
    artifact_path: Path
    config: Config

    @property
    def session_name(self) -> str:
        return f"chk-{self.item_id}-{self.gate_type}"


@dataclass
class PendingResult:
    """Handle on a started verification, used to poll and to terminate it."""

    session: SessionInfo | None = None
    task: asyncio.Task | None = None

    @property
    def session_id(self) -> str | None:
        return self.session.id if self.session else None


@dataclass
class GateReport:
    item_id: str
    results: dict[str, GateResult] = field(default_factory=dict)

    @property
    def mergeable(self) -> bool:
        return all(r.state == GateState.PASSED for r in self.results.values())

    @property
    def failed(self) -> list[str]:
        return [g for g, r in self.results.items() if r.state != GateState.PASSED]

    def reasons(self) -> list[str]:
        return [f"{g}: {self.results[g].state.value} ({self.results[g].summary})" for g in self.failed]

    def as_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "mergeable": self.mergeable,
            "gates": {g: r.as_dict() for g, r in self.results.items()},
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def artifact_path(worktree: str | Path, gate_type: str, checkpoint_dir: str = ".checkpoints") -> Path:
    return Path(worktree) / checkpoint_dir / checkpoint_file(gate_type)


def read_artifact(path: str | Path) -> dict | None:
    """Return the artifact if it parses and carries a boolean `passed`, else None."""
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("passed"), bool):
        return None
    return data


def write_artifact(
    path: str | Path,
    gate_type: str,
    passed: bool,
    summary: str,
    issues: list | None = None,
    timeout_occurred: bool = False,
) -> dict:
    data = {
        "checkpoint": gate_type,
        "timestamp": _now(),
        "passed": passed,
        "summary": summary,
        "issues": issues or [],
    }
    if timeout_occurred:
        data["timeout_occurred"] = True
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n")
    tmp.replace(path)
    return data


def archive_artifact(path: str | Path) -> Path | None:
    """Move an artifact left by an earlier attempt out of the way."""
    path = Path(path)
    if not path.exists():
        return None
    archive = path.parent / "archive"
    archive.mkdir(exist_ok=True)
    stamp = datetime.fromtimestamp(path.stat().st_mtime).strftime("%Y%m%dT%H%M%S")
    target = archive / f"{path.stem}-{stamp}.json"
    n = 1
    while target.exists():
        n += 1
        target = archive / f"{path.stem}-{stamp}-{n}.json"
    path.replace(target)
    return target


def result_from_artifact(gate_type: str, data: dict, session_id: str | None = None) -> GateResult:
    if data.get("timeout_occurred"):
        state = GateState.TIMED_OUT
    else:
        state = GateState.PASSED if data["passed"] else GateState.FAILED
    return GateResult(
        gate_type=gate_type,
        state=state,
        passed=bool(data["passed"]) and state == GateState.PASSED,
        summary=data.get("summary") or data.get("error") or "No summary",
        timestamp=data.get("timestamp"),
        timeout_occurred=bool(data.get("timeout_occurred")),
        session_id=session_id,
    )


def evaluate_gates(
    worktree: str | Path,
    required: list[str],
    checkpoint_dir: str = ".checkpoints",
    item_id: str | None = None,
) -> GateReport:
    """Read back the verdicts for `required` gates. A missing artifact is PENDING."""
    report = GateReport(item_id=item_id or Path(worktree).name)
    for gate in required:
        data = read_artifact(artifact_path(worktree, gate, checkpoint_dir))
        if data is None:
            report.results[gate] = GateResult(gate_type=gate, state=GateState.PENDING, summary="no result")
        else:
            report.results[gate] = result_from_artifact(gate, data)
    return report


class Verifier:
    """Starts one kind of check. Subclasses decide how the artifact gets written."""

    hosted = False

    async def run(self, ctx: GateContext) -> PendingResult:
        raise NotImplementedError

    async def is_alive(self, pending: PendingResult) -> bool:
        raise NotImplementedError

    async def terminate(self, pending: PendingResult) -> None:
        raise NotImplementedError

    def exit_summary(self, pending: PendingResult) -> str:
        """Why a verifier that stopped without an artifact failed."""
        return "verifier exited without writing a result"


class DirectCheckVerifier(Verifier):
    """Runs the review tool as a subprocess and writes the artifact itself."""

    def __init__(self, command: str = "codex"):
        self.command = command

    async def run(self, ctx: GateContext) -> PendingResult:
        task = asyncio.create_task(self._review(ctx), name=ctx.session_name)
        return PendingResult(task=task)

    async def _args(self, ctx: GateContext) -> list[str]:
        has_diff = await asyncio.to_thread(branch_has_diff, ctx.worktree, ctx.config.main_branch)
        scope = ["--base", ctx.config.main_branch] if has_diff else ["--uncommitted"]
        return [self.command, "review", *scope, "--title", f"{ctx.item_id} review"]

    async def _review(self, ctx: GateContext) -> None:
        args = await self._args(ctx)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=ctx.worktree,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            write_artifact(ctx.artifact_path, ctx.gate_type, False, f"Could not run {self.command}: {e}")
            return

        try:
            stdout, _ = await proc.communicate()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        output = stdout.decode("utf-8", errors="replace")
        findings = REVIEW_FAIL_RE.findall(output)
        if findings:
            write_artifact(
                ctx.artifact_path,
                ctx.gate_type,
                False,
                "Code review found issues",
                issues=[line.strip() for line in output.splitlines() if REVIEW_FAIL_RE.search(line)][:20],
            )
        else:
            write_artifact(ctx.artifact_path, ctx.gate_type, True, "Code review passed")

    async def is_alive(self, pending: PendingResult) -> bool:
        return pending.task is not None and not pending.task.done()

    def exit_summary(self, pending: PendingResult) -> str:
        task = pending.task
        if task is not None and task.done() and not task.cancelled():
            error = task.exception()
            if error is not None:
                return f"review failed: {error}"
        return super().exit_summary(pending)

    async def terminate(self, pending: PendingResult) -> None:
        if pending.task and not pending.task.done():
            pending.task.cancel()
            try:
                await pending.task
            except asyncio.CancelledError:
                pass


class HostedAgentVerifier(Verifier):
    """Spawns a checker agent session on the session host and hands it the gate's skill."""

    hosted = True

    def __init__(self, session_host: SessionHostClient):
        self.session_host = session_host

    def prompt(self, ctx: GateContext) -> str:
        skill = GATE_SKILLS[ctx.gate_type]
        rel = f"{ctx.config.checkpoint_dir}/{checkpoint_file(ctx.gate_type)}"
        return (
            f"Run /{skill} for issue {ctx.item_id}.\n\n"
            f"When finished, write the result JSON to {rel} and exit.\n\n"
            "Include: {checkpoint, timestamp, passed, summary}."
        )

    async def run(self, ctx: GateContext) -> PendingResult:
        command = f"BEADS_WORKING_DIR={ctx.repo_path} {ctx.config.agent_command}"
        session = await self.session_host.create_session(
            ctx.session_name, ctx.worktree, command, boot_time=ctx.config.agent_boot_time
        )
        try:
            await self.session_host.send_keys(session, self.prompt(ctx))
        except SessionHostError:
            await self.terminate(PendingResult(session=session))
            raise
        return PendingResult(session=session)

    async def is_alive(self, pending: PendingResult) -> bool:
        try:
            return await self.session_host.find_session(pending.session.name) is not None
        except SessionHostError as e:
            # Unknown, not gone; keep waiting until the deadline.
            logger.warning("Could not check session %s: %s", pending.session.name, e)
            return True

    async def terminate(self, pending: PendingResult) -> None:
        if pending.session is None:
            return
        try:
            await self.session_host.delete_session(pending.session.id)
        except SessionHostError as e:
            logger.warning("Could not terminate session %s: %s", pending.session.name, e)


class GateRunner:
    """Drives gate attempts for one repository."""

    def __init__(
        self,
        config: Config,
        session_host: SessionHostClient | None = None,
        verifiers: dict[str, Verifier] | None = None,
        grace: float = VANISH_GRACE_S,
    ):
        self.config = config
        self.session_host = session_host
        self.grace = grace
        self.verifiers = verifiers or {}
        self.states: dict[tuple[str, str], GateState] = {}
        self._host_checked: bool | None = None

    def verifier_for(self, gate_type: str) -> Verifier:
        if gate_type in self.verifiers:
            return self.verifiers[gate_type]
        if gate_type == "codex-review":
            return DirectCheckVerifier(self.config.review_command)
        if self.session_host is None:
            self.session_host = SessionHostClient.from_config(self.config)
        return HostedAgentVerifier(self.session_host)

    def _set_state(self, item_id: str, gate_type: str, state: GateState):
        self.states[(item_id, gate_type)] = state
        logger.debug("%s/%s -> %s", item_id, gate_type, state.value)

    async def _host_ok(self) -> bool:
        if self._host_checked is None:
            self._host_checked = await self.session_host.health()
        return self._host_checked

    def _finish(self, item_id: str, result: GateResult) -> GateResult:
        self._set_state(item_id, result.gate_type, result.state)
        log = logger.info if result.state == GateState.PASSED else logger.warning
        log("%s: %s %s - %s", item_id, result.gate_type, result.state.value, result.summary)
        return result

    async def run_gate(
        self,
        item_id: str,
        gate_type: str,
        worktree: str | Path,
        repo_path: str | Path | None = None,
        timeout: float | None = None,
    ) -> GateResult:
        """Run one attempt of one gate and return its terminal result."""
        if gate_type not in KNOWN_GATES and gate_type not in self.verifiers:
            raise ValueError(f"Unknown gate type: {gate_type}")

        worktree = Path(worktree)
        timeout = self.config.gate_timeout if timeout is None else timeout
        ctx = GateContext(
            item_id=item_id,
            gate_type=gate_type,
            worktree=worktree,
            repo_path=Path(repo_path) if repo_path else self.config.repo_path,
            artifact_path=artifact_path(worktree, gate_type, self.config.checkpoint_dir),
            config=self.config,
        )
        self._set_state(item_id, gate_type, GateState.PENDING)
        archive_artifact(ctx.artifact_path)
        ctx.artifact_path.parent.mkdir(parents=True, exist_ok=True)

        verifier = self.verifier_for(gate_type)
        if verifier.hosted and not await self._host_ok():
            return self._finish(
                item_id, GateResult(gate_type, GateState.FAILED, summary="session host unreachable")
            )

        try:
            pending = await verifier.run(ctx)
        except SessionHostError as e:
            return self._finish(item_id, GateResult(gate_type, GateState.FAILED, summary=f"spawn failed: {e}"))
        self._set_state(item_id, gate_type, GateState.SPAWNED)

        try:
            result = await self._await_result(ctx, verifier, pending, timeout)
        except asyncio.CancelledError:
            await verifier.terminate(pending)
            raise
        return self._finish(item_id, result)

    async def _await_result(
        self,
        ctx: GateContext,
        verifier: Verifier,
        pending: PendingResult,
        timeout: float,
    ) -> GateResult:
        self._set_state(ctx.item_id, ctx.gate_type, GateState.AWAITING_RESULT)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            data = read_artifact(ctx.artifact_path)
            if data is not None:
                if verifier.hosted:
                    await verifier.terminate(pending)
                return result_from_artifact(ctx.gate_type, data, pending.session_id)

            if not await verifier.is_alive(pending):
                await asyncio.sleep(self.grace)
                data = read_artifact(ctx.artifact_path)
                if data is not None:
                    return result_from_artifact(ctx.gate_type, data, pending.session_id)
                return GateResult(
                    ctx.gate_type,
                    GateState.FAILED,
                    summary=verifier.exit_summary(pending),
                    session_id=pending.session_id,
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                await verifier.terminate(pending)
                summary = f"no result after {timeout:g}s"
                data = write_artifact(ctx.artifact_path, ctx.gate_type, False, summary, timeout_occurred=True)
                return GateResult(
                    ctx.gate_type,
                    GateState.TIMED_OUT,
                    summary=summary,
                    timestamp=data["timestamp"],
                    timeout_occurred=True,
                    session_id=pending.session_id,
                )

            await asyncio.sleep(min(self.config.gate_poll_interval, remaining))

    async def run_gates(
        self,
        item_id: str,
        gates: list[str],
        worktree: str | Path,
        repo_path: str | Path | None = None,
        timeout: float | None = None,
        backlog: BacklogClient | None = None,
    ) -> GateReport:
        """Run all of an item's gates concurrently and summarize them into its metadata."""
        results = await asyncio.gather(
            *(self.run_gate(item_id, g, worktree, repo_path, timeout) for g in gates)
        )
        report = GateReport(item_id=item_id, results={r.gate_type: r for r in results})
        if backlog is not None and gates:
            await asyncio.to_thread(
                backlog.write_metadata,
                item_id,
                gate_results={g: r.state.value for g, r in report.results.items()},
            )
        return report

