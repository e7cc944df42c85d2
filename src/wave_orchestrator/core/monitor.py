"""Poll worker sessions and turn what they show into statuses and alerts."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from wave_orchestrator.config import Config
from wave_orchestrator.core.backlog import BacklogClient, BacklogError
from wave_orchestrator.db.models import Alert, AlertType, ItemStatus, WorkerSession, WorkerStatus
from wave_orchestrator.integrations import tmux
from wave_orchestrator.integrations.session_host import SessionHostClient, SessionHostError
from wave_orchestrator.integrations.slack import SlackError, format_alerts, send_message

logger = logging.getLogger(__name__)

SESSION_RE = re.compile(r"ctt-[a-z0-9-]+")
CONTEXT_RE = re.compile(r"\[(\d+)%\]")
SUBAGENTS_RE = re.compile(r"(?:👥\s*(\d+)|(\d+)\s+subagents?)")
TOOL_RE = re.compile(r"🔧\s*([A-Za-z][\w-]*)")
CLOSED_WINDOW = 10

ALERT_MESSAGES = {
    AlertType.CRITICAL: "Context critical - consider /wipe",
    AlertType.WARNING: "Context getting high",
    AlertType.STALE: "Worker appears stale - no activity",
    AlertType.ATTENTION: "Worker waiting for user input",
}


def classify_status(line: str) -> WorkerStatus:
    """Status shown on one dashboard line. The first matching marker wins."""
    if "AskUserQuestion" in line:
        return WorkerStatus.ASKING_USER
    if "⏸" in line or "awaiting" in line:
        return WorkerStatus.AWAITING_INPUT
    if "🔧" in line:
        return WorkerStatus.TOOL_USE
    if "💭" in line:
        return WorkerStatus.PROCESSING
    if "⚪" in line or "Stale" in line:
        return WorkerStatus.STALE
    return WorkerStatus.IDLE


def parse_probe(text: str) -> list[WorkerSession]:
    """One WorkerSession per dashboard line that names a worker session."""
    sessions = []
    for line in text.splitlines():
        m = SESSION_RE.search(line)
        if not m:
            continue
        ctx = CONTEXT_RE.search(line)
        sub = SUBAGENTS_RE.search(line)
        tool = TOOL_RE.search(line)
        sessions.append(
            WorkerSession(
                session=m.group(0),
                status=classify_status(line),
                context_pct=int(ctx.group(1)) if ctx else None,
                subagents=int(sub.group(1) or sub.group(2)) if sub else None,
                tool=tool.group(1) if tool else None,
            )
        )
    return sessions


def generate_alerts(sessions: list[WorkerSession], warning: int = 60, critical: int = 75) -> list[Alert]:
    """Context alerts first, then stale workers, then workers asking the user."""
    alerts = []
    for s in sessions:
        if s.context_pct is not None and s.context_pct >= warning:
            kind = AlertType.CRITICAL if s.context_pct >= critical else AlertType.WARNING
            alerts.append(Alert(kind, s.session, ALERT_MESSAGES[kind]))
    for s in sessions:
        if s.status == WorkerStatus.STALE:
            alerts.append(Alert(AlertType.STALE, s.session, ALERT_MESSAGES[AlertType.STALE]))
    for s in sessions:
        if s.status == WorkerStatus.ASKING_USER:
            alerts.append(Alert(AlertType.ATTENTION, s.session, ALERT_MESSAGES[AlertType.ATTENTION]))
    return alerts


def summarize(sessions: list[WorkerSession]) -> dict[str, int]:
    counts = {"workers": len(sessions), "working": 0, "idle": 0, "awaiting": 0, "asking": 0, "stale": 0}
    buckets = {
        WorkerStatus.IDLE: "idle",
        WorkerStatus.AWAITING_INPUT: "awaiting",
        WorkerStatus.ASKING_USER: "asking",
        WorkerStatus.STALE: "stale",
    }
    for s in sessions:
        counts[buckets.get(s.status, "working")] += 1
    return counts


@dataclass
class Snapshot:
    timestamp: str
    workers: list[dict] = field(default_factory=list)
    worker_status: list[WorkerSession] = field(default_factory=list)
    in_progress: list[dict] = field(default_factory=list)
    ready: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    events: list[dict] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "workers": self.workers,
            "worker_status": [s.as_dict() for s in self.worker_status],
            "summary": summarize(self.worker_status),
            "in_progress": self.in_progress,
            "ready": self.ready,
            "closed": self.closed,
            "events": self.events,
            "alerts": [a.as_dict() for a in self.alerts],
        }


def _short_id(item_id: str) -> str:
    return item_id.rsplit("-", 1)[-1]


def _link_items(statuses: list[WorkerSession], item_ids: list[str], by_session: dict[str, str]):
    for s in statuses:
        if s.session in by_session:
            s.item_id = by_session[s.session]
            continue
        for item_id in item_ids:
            if s.session.startswith(f"ctt-worker-{_short_id(item_id)}") or item_id.lower() in s.session:
                s.item_id = item_id
                break


Probe = Callable[[], Awaitable[str]]


class WorkerMonitor:
    """Builds Snapshots from the session host, the backlog and the tmux dashboard.

    Every source fails independently to empty; poll() never raises.
    """

    def __init__(
        self,
        backlog: BacklogClient,
        session_host: SessionHostClient | None,
        config: Config,
        probe: Probe | None = None,
    ):
        self.backlog = backlog
        self.session_host = session_host
        self.config = config
        self.probe = probe or self._capture_dashboard
        self.latest: Snapshot | None = None
        self._prev_closed: list[str] | None = None
        self._notified: set[Alert] = set()
        self._task: asyncio.Task | None = None

    async def _capture_dashboard(self) -> str:
        return await tmux.capture_pane(f":{self.config.monitor_window}", lines=200)

    async def _sessions(self) -> list:
        if self.session_host is None:
            return []
        try:
            return await self.session_host.list_sessions()
        except SessionHostError as e:
            logger.warning("Session host unavailable: %s", e)
            return []

    def _backlog_state(self) -> tuple[list, list, list]:
        """In-progress, closed and ready items; any list the backlog cannot supply is empty."""
        fetches = (
            lambda: self.backlog.list_items(ItemStatus.IN_PROGRESS),
            lambda: self.backlog.list_items(ItemStatus.CLOSED),
            self.backlog.ready_items,
        )
        results = []
        for fetch in fetches:
            try:
                results.append(fetch())
            except BacklogError as e:
                logger.warning("Backlog unavailable: %s", e)
                results.append([])
        return tuple(results)

    async def _probe(self) -> list[WorkerSession]:
        try:
            return parse_probe(await self.probe())
        except Exception:
            logger.exception("Dashboard probe failed")
            return []

    async def poll(self) -> Snapshot:
        sessions, (in_progress, closed, ready), statuses = await asyncio.gather(
            self._sessions(),
            asyncio.to_thread(self._backlog_state),
            self._probe(),
        )
        in_progress_ids = [i.id for i in in_progress]
        closed_ids = [i.id for i in closed][-CLOSED_WINDOW:]
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")

        workers = [s.as_dict() for s in sessions if s.name in in_progress_ids]
        by_session = {s.session_name: s.name for s in sessions if s.session_name and s.name in in_progress_ids}
        _link_items(statuses, in_progress_ids, by_session)

        events = []
        if self._prev_closed is not None:
            events = [{"type": "closed", "item_id": i, "at": now} for i in closed_ids if i not in self._prev_closed]
        self._prev_closed = closed_ids

        snapshot = Snapshot(
            timestamp=now,
            workers=workers,
            worker_status=statuses,
            in_progress=[{"id": i.id, "title": i.title} for i in in_progress],
            ready=[i.id for i in ready],
            closed=closed_ids,
            events=events,
            alerts=generate_alerts(statuses, self.config.context_warning, self.config.context_critical),
        )
        self.latest = snapshot
        return snapshot

    def notify_alerts(self, channel: str, alerts: list[Alert]) -> list[Alert]:
        """Post alerts not already posted to Slack. Returns the ones sent."""
        fresh = [a for a in alerts if a not in self._notified]
        self._notified = set(alerts)
        if not fresh:
            return []
        try:
            send_message(
                self.config.slack_bot_token,
                channel,
                f"{len(fresh)} worker alert(s)",
                blocks=format_alerts([a.as_dict() for a in fresh]),
            )
        except SlackError as e:
            logger.warning("Slack alert notification failed: %s", e)
            return []
        return fresh

    async def run(
        self,
        interval: float | None = None,
        output: str | Path | None = None,
        events_file: str | Path | None = None,
        once: bool = False,
        spawn_dashboard: bool = True,
        notify_channel: str | None = None,
    ):
        """Poll forever (or once), optionally writing each snapshot as JSON to `output`.

        With `notify_channel`, alerts are posted to Slack once per appearance.
        """
        interval = self.config.monitor_interval if interval is None else interval
        if spawn_dashboard:
            await tmux.ensure_window(self.config.monitor_window, self.config.monitor_command)

        while True:
            try:
                snapshot = await self.poll()
                if output:
                    _write_json(Path(output), snapshot.as_dict())
                if events_file and snapshot.events:
                    with open(events_file, "a") as fh:
                        for event in snapshot.events:
                            fh.write(json.dumps(event) + "\n")
                for event in snapshot.events:
                    logger.info("Detected closed: %s", event["item_id"])
                if snapshot.alerts:
                    logger.warning("Alerts: %s", [a.as_dict() for a in snapshot.alerts])
                if notify_channel:
                    await asyncio.to_thread(self.notify_alerts, notify_channel, snapshot.alerts)
            except Exception:
                logger.exception("Error in worker monitor loop")
            if once:
                return self.latest
            await asyncio.sleep(interval)

    def start(self, **kwargs) -> asyncio.Task:
        """Run the poll loop as a background task on the current event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(**kwargs), name="worker-monitor")
            logger.info("Worker monitor started")
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Worker monitor stopped")


def _write_json(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n")
    tmp.replace(path)
