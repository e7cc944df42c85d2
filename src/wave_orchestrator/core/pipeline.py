"""Wave completion: capture, terminate, merge, clean up and summarize.

Stages run in that order and each can be skipped. A failure for one item is
recorded on that item and never stops the others; the run fails only when a
merge failed.
"""

import asyncio
import fnmatch
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from wave_orchestrator.config import Config
from wave_orchestrator.core.backlog import BacklogClient, BacklogError, validate_item_id
from wave_orchestrator.core.gates import evaluate_gates
from wave_orchestrator.core.skills import resolve_item
from wave_orchestrator.db.models import ItemStatus
from wave_orchestrator.integrations import git, tmux
from wave_orchestrator.integrations.session_host import SessionHostClient, SessionHostError
from wave_orchestrator.integrations.slack import SlackError, format_wave_summary, send_message

logger = logging.getLogger(__name__)

STAGES = ("capture", "terminate", "merge", "cleanup", "summary")

# USD per token
COST_INPUT = 0.000015
COST_OUTPUT = 0.000075
COST_CACHE_WRITE = 0.00001875
COST_CACHE_READ = 0.000001875

TOOL_CALL_RE = re.compile(r"(Read|Write|Edit|Bash|Glob|Grep|WebFetch|WebSearch)\(")
SKILL_RE = re.compile(r"^/[a-z]+-[a-z]+", re.MULTILINE)


@dataclass
class UsageStats:
    input_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    output_tokens: int = 0

    @property
    def cost(self) -> float:
        return round(
            self.input_tokens * COST_INPUT
            + self.output_tokens * COST_OUTPUT
            + self.cache_write_tokens * COST_CACHE_WRITE
            + self.cache_read_tokens * COST_CACHE_READ,
            4,
        )

    def as_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "output_tokens": self.output_tokens,
            "cost": self.cost,
        }


def encode_project_dir(path: str | Path) -> str:
    """Directory name the agent runtime uses for a working directory's sessions."""
    return "-" + str(path).lstrip("/").replace("/", "-")


def read_usage(worker_cwd: str | Path, home: Path | None = None) -> UsageStats:
    """Sum token usage from the newest session log for `worker_cwd`."""
    home = home or Path.home()
    project_dir = home / ".claude" / "projects" / encode_project_dir(worker_cwd)
    logs = sorted(project_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)
    stats = UsageStats()
    if not logs:
        return stats
    with open(logs[0], encoding="utf-8", errors="replace") as fh:
        for line in fh:
            try:
                usage = json.loads(line).get("message", {}).get("usage")
            except (ValueError, AttributeError):
                continue
            if not isinstance(usage, dict):
                continue
            stats.input_tokens += usage.get("input_tokens") or 0
            stats.cache_write_tokens += usage.get("cache_creation_input_tokens") or 0
            stats.cache_read_tokens += usage.get("cache_read_input_tokens") or 0
            stats.output_tokens += usage.get("output_tokens") or 0
    return stats


def count_tool_calls(text: str) -> int:
    return sum(1 for line in text.splitlines() if TOOL_CALL_RE.search(line))


def count_skill_invocations(text: str) -> int:
    return len(SKILL_RE.findall(text))


def session_patterns(item_id: str, short_ids: bool = True) -> list[str]:
    """tmux session names a worker for `item_id` may run under, full-id names first.

    The short-id forms use only the last `-` segment, so `web-12` and `api-12`
    share them. Callers try the full-id names first and fall back to the
    short-id ones only when nothing matched.
    """
    patterns = [f"worker-{item_id}", item_id]
    if short_ids:
        short = item_id.rsplit("-", 1)[-1]
        patterns += [f"worker-{short}", f"ctt-worker-{short}-*"]
    return patterns


@dataclass
class CaptureOutcome:
    item_id: str
    session: str | None = None
    transcript: str | None = None
    usage: UsageStats | None = None
    tool_calls: int = 0
    skill_invocations: int = 0
    skipped: str | None = None


@dataclass
class MergeOutcome:
    item_id: str
    status: str  # merged | conflict | blocked | skipped | error
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status in ("conflict", "blocked", "error")


@dataclass
class WaveSummary:
    items: list[dict] = field(default_factory=list)
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    merged: int = 0
    failed: int = 0
    ready_count: int = 0
    blocked_count: int = 0
    next_steps: list[str] = field(default_factory=list)
    completed_at: str = ""

    @property
    def closed(self) -> list[str]:
        return [i["id"] for i in self.items if i["status"] == ItemStatus.CLOSED.value]

    @property
    def still_open(self) -> list[str]:
        return [i["id"] for i in self.items if i["status"] != ItemStatus.CLOSED.value]

    def as_dict(self) -> dict:
        return {
            "items": self.items,
            "closed": self.closed,
            "open": self.still_open,
            "files_changed": self.files_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "merged": self.merged,
            "failed": self.failed,
            "ready": self.ready_count,
            "blocked": self.blocked_count,
            "next_steps": self.next_steps,
            "completed_at": self.completed_at,
        }

    def render(self) -> str:
        lines = ["WAVE COMPLETE", "", f"Items ({len(self.items)}):"]
        for i in self.items:
            mark = "ok" if i["status"] == ItemStatus.CLOSED.value else f"status: {i['status']}"
            lines.append(f"  {i['id']}: {i['title']} ({mark})")
        lines += [
            "",
            f"Branches merged: {self.merged} ({self.failed} failed)",
            f"Files changed:   {self.files_changed}",
            f"Lines added:     +{self.insertions}",
            f"Lines removed:   -{self.deletions}",
            "",
            "Next steps:",
        ]
        lines += [f"  {s}" for s in self.next_steps]
        return "\n".join(lines)


@dataclass
class PipelineReport:
    item_ids: list[str]
    captures: list[CaptureOutcome] = field(default_factory=list)
    terminated: dict[str, list[str]] = field(default_factory=dict)
    merges: list[MergeOutcome] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)
    summary: WaveSummary | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def merged(self) -> list[str]:
        return [m.item_id for m in self.merges if m.status == "merged"]

    @property
    def failed_merges(self) -> list[MergeOutcome]:
        return [m for m in self.merges if m.failed]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_merges else 0

    def as_dict(self) -> dict:
        return {
            "items": self.item_ids,
            "captures": [
                {
                    "item_id": c.item_id,
                    "session": c.session,
                    "transcript": c.transcript,
                    "usage": c.usage.as_dict() if c.usage else None,
                    "tool_calls": c.tool_calls,
                    "skill_invocations": c.skill_invocations,
                    "skipped": c.skipped,
                }
                for c in self.captures
            ],
            "terminated": self.terminated,
            "merges": [{"item_id": m.item_id, "status": m.status, "detail": m.detail} for m in self.merges],
            "cleaned": self.cleaned,
            "summary": self.summary.as_dict() if self.summary else None,
            "errors": self.errors,
            "exit_code": self.exit_code,
        }


class CompletionPipeline:
    def __init__(
        self,
        repo_path: str | Path,
        backlog: BacklogClient,
        session_host: SessionHostClient | None = None,
        config: Config | None = None,
        home: Path | None = None,
    ):
        self.repo = Path(repo_path)
        self.backlog = backlog
        self.session_host = session_host
        self.config = config or Config()
        self.home = home

    async def run(
        self,
        item_ids: list[str],
        skip: set[str] | frozenset[str] = frozenset(),
        notify_channel: str | None = None,
    ) -> PipelineReport:
        """Run the stages not named in `skip` over `item_ids`, in order.

        Required gates are resolved for every item before any stage runs.
        Raises ValueError for a malformed id and BacklogError when the backlog
        cannot be read during that resolution; nothing has been touched yet
        when either is raised.
        """
        unknown = set(skip) - set(STAGES)
        if unknown:
            raise ValueError(f"Unknown stage(s): {', '.join(sorted(unknown))}")
        ids = [validate_item_id(i) for i in dict.fromkeys(item_ids)]
        report = PipelineReport(item_ids=ids)

        required = {}
        if "merge" not in skip:
            required = await asyncio.to_thread(self._required_gates, ids)

        if "capture" not in skip:
            for item_id in ids:
                try:
                    outcome = await self.capture(item_id)
                except OSError as e:
                    logger.warning("%s: capture failed: %s", item_id, e)
                    outcome = CaptureOutcome(item_id=item_id, skipped=f"capture failed: {e}")
                    report.errors.append(f"{item_id}: capture failed: {e}")
                report.captures.append(outcome)
        if "terminate" not in skip:
            for item_id in ids:
                report.terminated[item_id] = await self.terminate(item_id)

        pre_head = post_head = None
        if "merge" not in skip:
            pre_head, post_head = await asyncio.to_thread(self._merge_all, ids, required, report)

        if "cleanup" not in skip:
            for item_id in report.merged:
                if await asyncio.to_thread(self._cleanup, item_id, report):
                    report.cleaned.append(item_id)

        if "summary" not in skip:
            report.summary = await asyncio.to_thread(self.summarize, ids, report, pre_head, post_head)
            channel = notify_channel or self.config.slack_channel
            if channel and self.config.slack_bot_token:
                self._notify(channel, report)

        for m in report.failed_merges:
            logger.warning("%s: %s (%s)", m.item_id, m.status, m.detail)
        logger.info("Wave complete: %d merged, %d failed", len(report.merged), len(report.failed_merges))
        return report

    # --- capture -----------------------------------------------------------

    async def _find_tmux_session(self, item_id: str) -> str | None:
        if self.session_host is not None:
            try:
                hosted = await self.session_host.find_session(item_id)
            except SessionHostError as e:
                logger.debug("Session host lookup failed for %s: %s", item_id, e)
                hosted = None
            if hosted is not None and hosted.session_name:
                return hosted.session_name

        sessions = await tmux.list_sessions()
        for pattern in session_patterns(item_id):
            for session in sessions:
                if fnmatch.fnmatchcase(session, pattern):
                    return session
        return None

    async def capture(self, item_id: str) -> CaptureOutcome:
        """Save the worker's scrollback and usage figures. No session means skip."""
        outcome = CaptureOutcome(item_id=item_id)
        session = await self._find_tmux_session(item_id)
        if session is None:
            outcome.skipped = "no session found"
            logger.info("%s: no worker session, skipping capture", item_id)
            return outcome
        outcome.session = session

        text = await tmux.capture_pane(session)
        cwd = await tmux.pane_current_path(session) or str(self.config.worktree_for(self.repo, item_id))
        outcome.usage = await asyncio.to_thread(read_usage, cwd, self.home)
        outcome.tool_calls = count_tool_calls(text)
        outcome.skill_invocations = count_skill_invocations(text)

        transcript = self.repo / self.config.transcript_dir / f"{item_id}.txt"
        transcript.parent.mkdir(parents=True, exist_ok=True)
        usage = outcome.usage
        header = [
            "=== Session Transcript ===",
            f"Item: {item_id}",
            f"Session: {session}",
            f"Working Dir: {cwd}",
            f"Captured: {datetime.now(timezone.utc).isoformat(timespec='seconds')}",
            "",
            "=== Usage Stats ===",
            f"Input Tokens: {usage.input_tokens}",
            f"Cache Write Tokens: {usage.cache_write_tokens}",
            f"Cache Read Tokens: {usage.cache_read_tokens}",
            f"Output Tokens: {usage.output_tokens}",
            f"Estimated Cost: ${usage.cost:.4f}",
            f"Tool Calls: {outcome.tool_calls}",
            f"Skill Invocations: {outcome.skill_invocations}",
            "===================",
            "",
        ]
        transcript.write_text("\n".join(header) + (text or "(capture failed)\n"))
        outcome.transcript = str(transcript)

        figures = {k: str(v) for k, v in usage.as_dict().items()}
        figures["tool_calls"] = str(outcome.tool_calls)
        figures["skill_invocations"] = str(outcome.skill_invocations)
        try:
            await asyncio.to_thread(
                self.backlog.write_metadata, item_id, transcript=outcome.transcript, usage=figures
            )
        except BacklogError as e:
            logger.warning("%s: could not attach transcript to item: %s", item_id, e)
        return outcome

    # --- terminate ---------------------------------------------------------

    async def terminate(self, item_id: str) -> list[str]:
        """Stop the item's worker sessions. Nothing to stop is fine."""
        stopped: list[str] = []
        host_reachable = False
        if self.session_host is not None:
            try:
                hosted = await self.session_host.find_session(item_id)
                host_reachable = True
                if hosted is not None:
                    await self.session_host.delete_session(hosted.id)
                    stopped.append(hosted.session_name or hosted.name)
            except SessionHostError as e:
                logger.warning("%s: session host unavailable, falling back to tmux: %s", item_id, e)
                host_reachable = False

        if not host_reachable or not stopped:
            killed = await tmux.kill_matching(session_patterns(item_id, short_ids=False))
            if not killed:
                killed = await tmux.kill_matching(session_patterns(item_id))
            stopped += killed
        for name in stopped:
            logger.info("Killed: %s", name)
        return stopped

    # --- merge -------------------------------------------------------------

    def _required_gates(self, ids: list[str]) -> dict[str, list[str] | None]:
        """Required gate types per item; None for an item the backlog does not know."""
        required = {}
        for item_id in ids:
            if self.backlog.get_item(item_id) is None:
                logger.warning("%s: not in the backlog, required gates unknown", item_id)
                required[item_id] = None
                continue
            required[item_id] = resolve_item(self.backlog, item_id).gates
        return required

    def _merge_all(
        self, ids: list[str], required: dict[str, list[str] | None], report: PipelineReport
    ) -> tuple[str | None, str | None]:
        main = self.config.main_branch
        try:
            if git.get_current_branch(self.repo) != main:
                git.checkout(self.repo, main)
        except git.GitError as e:
            report.errors.append(f"checkout {main} failed: {e}")
            report.merges += [MergeOutcome(i, "error", f"could not checkout {main}") for i in ids]
            return None, None
        if not git.pull_ff_only(self.repo, main):
            logger.info("Could not fast-forward %s from origin; merging into local %s", main, main)

        pre_head = git.rev_parse(self.repo)
        for item_id in ids:
            outcome = self._merge_one(item_id, required.get(item_id))
            report.merges.append(outcome)
            if outcome.status == "merged":
                logger.info("OK: merged %s", self.config.branch_for(item_id))
        return pre_head, git.rev_parse(self.repo)

    def _merge_one(self, item_id: str, gate_types: list[str] | None) -> MergeOutcome:
        branch = self.config.branch_for(item_id)
        if not git.branch_exists(self.repo, branch):
            return MergeOutcome(item_id, "skipped", f"branch {branch} does not exist")
        if gate_types is None:
            return MergeOutcome(item_id, "blocked", "item not found in backlog; required gates unknown")

        if gate_types:
            gates = evaluate_gates(
                self.config.worktree_for(self.repo, item_id),
                gate_types,
                self.config.checkpoint_dir,
                item_id=item_id,
            )
            if not gates.mergeable:
                return MergeOutcome(item_id, "blocked", "; ".join(gates.reasons()))

        try:
            result = git.merge(self.repo, branch)
        except git.GitError as e:
            return MergeOutcome(item_id, "error", str(e))
        if result.ok:
            return MergeOutcome(item_id, "merged")
        return MergeOutcome(item_id, "conflict" if result.conflict else "error", result.output[-500:])

    # --- cleanup -----------------------------------------------------------

    def _cleanup(self, item_id: str, report: PipelineReport) -> bool:
        wt_path = self.config.worktree_for(self.repo, item_id)
        branch = self.config.branch_for(item_id)
        try:
            if wt_path.exists():
                git.worktree_remove(self.repo, wt_path, force=True)
                logger.info("Removed worktree: %s", wt_path)
            if git.branch_exists(self.repo, branch):
                git.delete_branch(self.repo, branch)
                logger.info("Deleted branch: %s", branch)
        except git.GitError as e:
            report.errors.append(f"{item_id}: cleanup failed: {e}")
            return False
        return True

    # --- summary -----------------------------------------------------------

    def summarize(
        self,
        ids: list[str],
        report: PipelineReport,
        pre_head: str | None = None,
        post_head: str | None = None,
    ) -> WaveSummary:
        summary = WaveSummary(
            merged=len(report.merged),
            failed=len(report.failed_merges),
            completed_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        )
        for item_id in ids:
            try:
                item = self.backlog.get_item(item_id)
            except BacklogError:
                item = None
            summary.items.append(
                {
                    "id": item_id,
                    "title": item.title if item else "Unknown",
                    "status": item.status.value if item else "unknown",
                }
            )

        if pre_head and post_head:
            try:
                stat = git.diff_shortstat(self.repo, pre_head, post_head)
                summary.files_changed, summary.insertions, summary.deletions = (
                    stat.files_changed,
                    stat.insertions,
                    stat.deletions,
                )
            except git.GitError as e:
                logger.warning("Could not compute diff stats: %s", e)

        try:
            summary.ready_count = len(self.backlog.ready_items())
            summary.blocked_count = len(self.backlog.blocked_items())
        except BacklogError as e:
            logger.warning("Could not count remaining items: %s", e)

        summary.next_steps = self._next_steps(ids, report, summary)
        return summary

    def _next_steps(self, ids: list[str], report: PipelineReport, summary: WaveSummary) -> list[str]:
        steps = []
        conflicts = [m.item_id for m in report.merges if m.status in ("conflict", "error")]
        blocked = [m.item_id for m in report.merges if m.status == "blocked"]
        if conflicts:
            steps.append(f"Resolve merge conflicts: {', '.join(conflicts)}")
        if blocked:
            steps.append(f"Re-run gates: {' '.join(f'wave gate {i}' for i in blocked)}")
        if conflicts or blocked:
            steps.append(f"Re-run completion: wave complete {' '.join(conflicts + blocked)}")
            return steps
        if summary.ready_count:
            steps.append(f"{summary.ready_count} item(s) ready for the next wave: wave plan")
        elif summary.blocked_count:
            steps.append(f"{summary.blocked_count} item(s) blocked on dependencies")
        else:
            steps.append("Backlog complete: no more items ready")
        steps.append(f"Push {self.config.main_branch}: git push origin {self.config.main_branch}")
        return steps

    def _notify(self, channel: str, report: PipelineReport):
        summary = report.summary
        text = f"Wave complete: {summary.merged} merged, {summary.failed} failed"
        try:
            send_message(self.config.slack_bot_token, channel, text, blocks=format_wave_summary(summary.as_dict()))
        except SlackError as e:
            logger.warning("Slack notification failed: %s", e)
        except Exception:
            logger.exception("Failed to send Slack notification")