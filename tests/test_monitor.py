"""Tests for the worker status monitor."""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from wave_orchestrator.config import Config
from wave_orchestrator.core import backlog as backlog_mod
from wave_orchestrator.core import monitor as monitor_mod
from wave_orchestrator.core.backlog import BacklogClient, BacklogError, SqliteBacklog
from wave_orchestrator.core.monitor import (
    WorkerMonitor,
    classify_status,
    generate_alerts,
    parse_probe,
    summarize,
)
from wave_orchestrator.db.models import AlertType, WorkerSession, WorkerStatus
from wave_orchestrator.integrations.session_host import SessionHostError, SessionInfo

DASHBOARD = """\
Worker Dashboard
 ctt-worker-abc-1f2e  💭 thinking  [42%]
 ctt-worker-def-9a0b  🔧 Edit  [63%] 👥 2
 ctt-worker-ghi-77aa  AskUserQuestion  [80%]
 ctt-worker-jkl-1234  ⚪ Stale
"""


@pytest.fixture
def backlog():
    with tempfile.TemporaryDirectory() as tmp:
        b = SqliteBacklog.open(Path(tmp) / "b.db")
        yield b
        b.close()


@pytest.fixture
def config():
    return Config(context_warning=60, context_critical=75)


class FakeHost:
    def __init__(self, sessions=None, error=None):
        self.sessions = sessions or []
        self.error = error

    async def list_sessions(self):
        if self.error:
            raise self.error
        return self.sessions


class BrokenBacklog(BacklogClient):
    def list_items(self, status):
        raise BacklogError("bd: database locked")

    def ready_items(self):
        raise BacklogError("bd: database locked")


def _probe(text):
    async def probe():
        return text

    return probe


class TestClassify:
    @pytest.mark.parametrize(
        "line,status",
        [
            ("ctt-x AskUserQuestion 🔧 Bash", WorkerStatus.ASKING_USER),
            ("ctt-x ⏸ paused", WorkerStatus.AWAITING_INPUT),
            ("ctt-x 🔧 Read", WorkerStatus.TOOL_USE),
            ("ctt-x 💭", WorkerStatus.PROCESSING),
            ("ctt-x ⚪", WorkerStatus.STALE),
            ("ctt-x something else", WorkerStatus.IDLE),
        ],
    )
    def test_markers(self, line, status):
        assert classify_status(line) == status


class TestParseProbe:
    def test_fields(self):
        sessions = {s.session: s for s in parse_probe(DASHBOARD)}
        assert len(sessions) == 4
        tool = sessions["ctt-worker-def-9a0b"]
        assert tool.status == WorkerStatus.TOOL_USE
        assert tool.context_pct == 63
        assert tool.subagents == 2
        assert tool.tool == "Edit"
        assert sessions["ctt-worker-abc-1f2e"].context_pct == 42

    def test_unparseable_line(self):
        sessions = parse_probe("ctt-worker-zzz ???\nno session here")
        assert len(sessions) == 1
        assert sessions[0].status == WorkerStatus.IDLE
        assert sessions[0].context_pct is None
        assert generate_alerts(sessions) == []

    def test_asking_user_single_attention_alert(self):
        sessions = parse_probe("ctt-worker-abc AskUserQuestion")
        alerts = generate_alerts(sessions)
        assert [a.type for a in alerts] == [AlertType.ATTENTION]
        assert alerts[0].session == "ctt-worker-abc"


class TestAlerts:
    def test_thresholds(self):
        sessions = [
            WorkerSession("a", context_pct=59),
            WorkerSession("b", context_pct=60),
            WorkerSession("c", context_pct=75),
        ]
        alerts = generate_alerts(sessions, warning=60, critical=75)
        assert [(a.type, a.session) for a in alerts] == [
            (AlertType.WARNING, "b"),
            (AlertType.CRITICAL, "c"),
        ]

    def test_order(self):
        alerts = generate_alerts(parse_probe(DASHBOARD))
        assert [a.type for a in alerts] == [
            AlertType.WARNING,
            AlertType.CRITICAL,
            AlertType.STALE,
            AlertType.ATTENTION,
        ]

    def test_summarize(self):
        counts = summarize(parse_probe(DASHBOARD))
        assert counts == {"workers": 4, "working": 2, "idle": 0, "awaiting": 0, "asking": 1, "stale": 1}


class TestWorkerMonitor:
    @pytest.mark.asyncio
    async def test_poll(self, backlog, config):
        backlog_mod.create_item(backlog.db, "Fix resize", item_id="TabzChrome-abc")
        backlog_mod.update_item_status(backlog.db, "TabzChrome-abc", "in_progress")
        backlog_mod.create_item(backlog.db, "Docs", item_id="TabzChrome-doc")
        host = FakeHost(
            [
                SessionInfo(id="t1", name="TabzChrome-abc", session_name="ctt-worker-abc-1f2e"),
                SessionInfo(id="t2", name="chk-TabzChrome-abc-visual-qa"),
            ]
        )
        monitor = WorkerMonitor(backlog, host, config, probe=_probe(DASHBOARD))

        snapshot = await monitor.poll()

        assert [w["name"] for w in snapshot.workers] == ["TabzChrome-abc"]
        assert snapshot.in_progress == [{"id": "TabzChrome-abc", "title": "Fix resize"}]
        assert snapshot.ready == ["TabzChrome-doc"]
        linked = {s.session: s.item_id for s in snapshot.worker_status}
        assert linked["ctt-worker-abc-1f2e"] == "TabzChrome-abc"
        assert linked["ctt-worker-def-9a0b"] is None
        assert snapshot.events == []
        assert monitor.latest is snapshot

    @pytest.mark.asyncio
    async def test_closed_events_on_later_poll(self, backlog, config):
        backlog_mod.create_item(backlog.db, "One", item_id="bd-1")
        monitor = WorkerMonitor(backlog, None, config, probe=_probe(""))
        await monitor.poll()

        backlog_mod.update_item_status(backlog.db, "bd-1", "closed")
        snapshot = await monitor.poll()
        assert [e["item_id"] for e in snapshot.events] == ["bd-1"]

        again = await monitor.poll()
        assert again.events == []

    @pytest.mark.asyncio
    async def test_sources_fail_to_empty(self, config):
        async def broken_probe():
            raise RuntimeError("tmux gone")

        monitor = WorkerMonitor(
            BrokenBacklog(), FakeHost(error=SessionHostError("down")), config, probe=broken_probe
        )
        snapshot = await monitor.poll()
        assert snapshot.workers == []
        assert snapshot.in_progress == []
        assert snapshot.worker_status == []
        assert snapshot.alerts == []

    @pytest.mark.asyncio
    async def test_run_once_writes_output(self, backlog, config):
        backlog_mod.create_item(backlog.db, "One", item_id="bd-1")
        monitor = WorkerMonitor(backlog, None, config, probe=_probe(DASHBOARD))
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "state.json"
            snapshot = await monitor.run(output=out, once=True, spawn_dashboard=False)
            data = json.loads(out.read_text())
        assert snapshot is monitor.latest
        assert data["ready"] == ["bd-1"]
        assert data["summary"]["workers"] == 4
        assert len(data["alerts"]) == 4


class TestNotifyAlerts:
    def test_posts_each_alert_once(self, config):
        sent = []

        def fake_send(token, channel, text, blocks=None):
            sent.append((channel, blocks))

        monitor = WorkerMonitor(BrokenBacklog(), None, config)
        alerts = generate_alerts(parse_probe(DASHBOARD))
        with patch.object(monitor_mod, "send_message", fake_send):
            assert len(monitor.notify_alerts("#ops", alerts)) == 4
            assert monitor.notify_alerts("#ops", alerts) == []
            assert len(monitor.notify_alerts("#ops", alerts[:1])) == 0
            assert len(monitor.notify_alerts("#ops", alerts)) == 3
        assert [channel for channel, _ in sent] == ["#ops", "#ops"]
        assert "Worker Alerts" in sent[0][1][0]["text"]["text"]

    def test_slack_failure_is_logged(self, config):
        monitor = WorkerMonitor(BrokenBacklog(), None, config)
        alerts = generate_alerts(parse_probe(DASHBOARD))
        assert monitor.notify_alerts("#ops", alerts) == []
