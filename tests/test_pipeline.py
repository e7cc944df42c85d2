"""Tests for the wave completion pipeline."""

import json
import os
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from wave_orchestrator.config import Config
from wave_orchestrator.core import backlog as backlog_mod
from wave_orchestrator.core import pipeline as pipeline_mod
from wave_orchestrator.core.backlog import BacklogClient, BacklogError, SqliteBacklog
from wave_orchestrator.core.gates import artifact_path, write_artifact
from wave_orchestrator.core.pipeline import (
    CompletionPipeline,
    UsageStats,
    count_skill_invocations,
    count_tool_calls,
    encode_project_dir,
    read_usage,
    session_patterns,
)
from wave_orchestrator.integrations.git import branch_exists, run_git
from wave_orchestrator.integrations.session_host import SessionHostUnavailable, SessionInfo

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, capture_output=True, check=True, env=GIT_ENV)


def _branch(repo, name, filename, content):
    _git(repo, "checkout", "-b", name)
    (Path(repo) / filename).write_text(content)
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", f"work on {name}")
    _git(repo, "checkout", "main")


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        _git(tmp, "init")
        _git(tmp, "checkout", "-b", "main")
        _git(tmp, "config", "user.name", "Test")
        _git(tmp, "config", "user.email", "test@test.com")
        (Path(tmp) / "shared.txt").write_text("one\n")
        _git(tmp, "add", ".")
        _git(tmp, "commit", "-m", "init")
        yield tmp


@pytest.fixture
def backlog():
    with tempfile.TemporaryDirectory() as tmp:
        b = SqliteBacklog.open(Path(tmp) / "b.db")
        yield b
        b.close()


class FakeHost:
    def __init__(self, sessions=None, error=None):
        self.sessions = {s.name: s for s in sessions or []}
        self.error = error
        self.deleted = []

    async def find_session(self, name):
        if self.error:
            raise self.error
        return self.sessions.get(name)

    async def delete_session(self, session_id):
        self.deleted.append(session_id)
        return True


class TestHelpers:
    def test_session_patterns(self):
        assert session_patterns("TabzChrome-abc") == [
            "worker-TabzChrome-abc",
            "TabzChrome-abc",
            "worker-abc",
            "ctt-worker-abc-*",
        ]
        assert session_patterns("TabzChrome-abc", short_ids=False) == ["worker-TabzChrome-abc", "TabzChrome-abc"]

    def test_encode_project_dir(self):
        assert encode_project_dir("/home/me/repo/.worktrees/x") == "-home-me-repo-.worktrees-x"

    def test_counts(self):
        text = "Read(src/a.py)\nthen Bash(ls) and Edit(x)\n/conductor-review\n/tabz-guide please\nplain"
        assert count_tool_calls(text) == 2
        assert count_skill_invocations(text) == 2

    def test_cost(self):
        stats = UsageStats(input_tokens=1000, output_tokens=1000, cache_write_tokens=1000, cache_read_tokens=1000)
        assert stats.cost == round(0.015 + 0.075 + 0.01875 + 0.001875, 4)

    def test_read_usage_newest_log(self, tmp_path):
        project = tmp_path / ".claude" / "projects" / encode_project_dir("/work/bd-1")
        project.mkdir(parents=True)
        old = project / "old.jsonl"
        old.write_text(json.dumps({"message": {"usage": {"input_tokens": 999}}}) + "\n")
        os.utime(old, (1, 1))
        lines = [
            {"message": {"usage": {"input_tokens": 10, "output_tokens": 5, "cache_read_input_tokens": 7}}},
            {"message": {"usage": {"input_tokens": 3, "cache_creation_input_tokens": 2}}},
            {"type": "summary"},
        ]
        (project / "new.jsonl").write_text("\n".join(json.dumps(x) for x in lines) + "\nnot json\n")

        stats = read_usage("/work/bd-1", home=tmp_path)
        assert (stats.input_tokens, stats.output_tokens) == (13, 5)
        assert (stats.cache_write_tokens, stats.cache_read_tokens) == (2, 7)

    def test_read_usage_no_logs(self, tmp_path):
        assert read_usage("/nowhere", home=tmp_path) == UsageStats()


class TestMerge:
    @pytest.mark.asyncio
    async def test_conflict_does_not_stop_other_merges(self, git_repo, backlog):
        for n in (1, 2, 3):
            backlog_mod.create_item(backlog.db, f"Rename thing {n}", item_id=f"w-{n}")
        _branch(git_repo, "feature/w-1", "one.txt", "new file\n")
        _branch(git_repo, "feature/w-2", "shared.txt", "two\n")
        _branch(git_repo, "feature/w-3", "shared.txt", "three\n")

        pipeline = CompletionPipeline(git_repo, backlog, config=Config())
        report = await pipeline.run(["w-1", "w-2", "w-3"], skip={"capture", "terminate"})

        statuses = {m.item_id: m.status for m in report.merges}
        assert statuses == {"w-1": "merged", "w-2": "merged", "w-3": "conflict"}
        assert report.exit_code == 1
        assert report.cleaned == ["w-1", "w-2"]
        assert not branch_exists(git_repo, "feature/w-1")
        assert branch_exists(git_repo, "feature/w-3")
        assert (Path(git_repo) / "shared.txt").read_text() == "two\n"
        assert run_git(["status", "--porcelain"], cwd=git_repo) == ""

        summary = report.summary
        assert summary.merged == 2
        assert summary.failed == 1
        assert summary.files_changed == 2
        assert summary.next_steps[0] == "Resolve merge conflicts: w-3"
        assert "wave complete w-3" in summary.next_steps[-1]

    @pytest.mark.asyncio
    async def test_unknown_item_blocks_only_itself(self, git_repo, backlog):
        backlog_mod.create_item(backlog.db, "Rename thing 1", item_id="w-1")
        backlog_mod.create_item(backlog.db, "Rename thing 3", item_id="w-3")
        _branch(git_repo, "feature/w-1", "one.txt", "one\n")
        _branch(git_repo, "feature/w-2", "two.txt", "two\n")
        _branch(git_repo, "feature/w-3", "three.txt", "three\n")

        report = await CompletionPipeline(git_repo, backlog).run(["w-1", "w-2", "w-3"], skip={"capture", "terminate"})

        statuses = {m.item_id: m.status for m in report.merges}
        assert statuses == {"w-1": "merged", "w-2": "blocked", "w-3": "merged"}
        assert "not found" in report.merges[1].detail
        assert report.exit_code == 1
        assert report.cleaned == ["w-1", "w-3"]
        assert branch_exists(git_repo, "feature/w-2")
        assert report.summary is not None

    @pytest.mark.asyncio
    async def test_unreadable_backlog_fails_before_merging(self, git_repo):
        class DownBacklog(BacklogClient):
            def get_item(self, item_id):
                raise BacklogError("bd: database locked")

        _branch(git_repo, "feature/w-1", "one.txt", "one\n")
        kill = AsyncMock(return_value=[])
        with patch.object(pipeline_mod.tmux, "kill_matching", kill):
            with pytest.raises(BacklogError):
                await CompletionPipeline(git_repo, DownBacklog()).run(["w-1"], skip={"capture"})
        kill.assert_not_awaited()
        assert not (Path(git_repo) / "one.txt").exists()
        assert branch_exists(git_repo, "feature/w-1")

    @pytest.mark.asyncio
    async def test_clean_run_exits_zero(self, git_repo, backlog):
        backlog_mod.create_item(backlog.db, "Rename thing", item_id="w-1")
        backlog_mod.create_item(backlog.db, "Later", item_id="w-9")
        _branch(git_repo, "feature/w-1", "one.txt", "x\n")

        report = await CompletionPipeline(git_repo, backlog).run(["w-1"], skip={"capture", "terminate"})
        assert report.exit_code == 0
        assert report.summary.ready_count == 2
        assert report.summary.next_steps[-1] == "Push main: git push origin main"

    @pytest.mark.asyncio
    async def test_missing_branch_skipped(self, git_repo, backlog):
        backlog_mod.create_item(backlog.db, "Rename thing", item_id="w-1")
        report = await CompletionPipeline(git_repo, backlog).run(["w-1"], skip={"capture", "terminate"})
        assert report.merges[0].status == "skipped"
        assert report.exit_code == 0
        assert report.cleaned == []

    @pytest.mark.asyncio
    async def test_gates_block_merge(self, git_repo, backlog):
        backlog_mod.create_item(backlog.db, "Rename thing", item_id="w-1", labels=["gate:docs-check"])
        _branch(git_repo, "feature/w-1", "one.txt", "x\n")

        report = await CompletionPipeline(git_repo, backlog).run(["w-1"], skip={"capture", "terminate"})
        assert report.merges[0].status == "blocked"
        assert "docs-check" in report.merges[0].detail
        assert report.exit_code == 1
        assert branch_exists(git_repo, "feature/w-1")
        assert report.summary.next_steps[0] == "Re-run gates: wave gate w-1"

    @pytest.mark.asyncio
    async def test_passed_gates_allow_merge(self, git_repo, backlog):
        config = Config()
        backlog_mod.create_item(backlog.db, "Rename thing", item_id="w-1", labels=["gate:docs-check"])
        _branch(git_repo, "feature/w-1", "one.txt", "x\n")
        worktree = config.worktree_for(Path(git_repo), "w-1")
        write_artifact(artifact_path(worktree, "docs-check"), "docs-check", True, "ok")

        report = await CompletionPipeline(git_repo, backlog, config=config).run(
            ["w-1"], skip={"capture", "terminate", "cleanup"}
        )
        assert report.merged == ["w-1"]

    @pytest.mark.asyncio
    async def test_skip_merge(self, git_repo, backlog):
        backlog_mod.create_item(backlog.db, "Rename thing", item_id="w-1")
        _branch(git_repo, "feature/w-1", "one.txt", "x\n")
        report = await CompletionPipeline(git_repo, backlog).run(
            ["w-1"], skip={"capture", "terminate", "merge"}
        )
        assert report.merges == []
        assert report.cleaned == []
        assert report.summary.files_changed == 0
        assert branch_exists(git_repo, "feature/w-1")

    @pytest.mark.asyncio
    async def test_bad_input(self, git_repo, backlog):
        pipeline = CompletionPipeline(git_repo, backlog)
        with pytest.raises(ValueError):
            await pipeline.run(["w-1"], skip={"deploy"})
        with pytest.raises(ValueError):
            await pipeline.run(["../w-1"])


class TestCaptureAndTerminate:
    @pytest.mark.asyncio
    async def test_capture_writes_transcript(self, git_repo, backlog, tmp_path):
        backlog_mod.create_item(backlog.db, "Fix resize", item_id="TabzChrome-abc")
        project = tmp_path / ".claude" / "projects" / encode_project_dir("/work/abc")
        project.mkdir(parents=True)
        (project / "s.jsonl").write_text(json.dumps({"message": {"usage": {"output_tokens": 40}}}) + "\n")

        with patch.object(pipeline_mod.tmux, "list_sessions", AsyncMock(return_value=["main", "ctt-worker-abc-1f"])), \
                patch.object(pipeline_mod.tmux, "capture_pane", AsyncMock(return_value="Read(a.py)\ndone\n")), \
                patch.object(pipeline_mod.tmux, "pane_current_path", AsyncMock(return_value="/work/abc")):
            outcome = await CompletionPipeline(git_repo, backlog, home=tmp_path).capture("TabzChrome-abc")

        assert outcome.session == "ctt-worker-abc-1f"
        assert outcome.usage.output_tokens == 40
        assert outcome.tool_calls == 1
        transcript = Path(outcome.transcript)
        assert transcript == Path(git_repo) / ".beads" / "transcripts" / "TabzChrome-abc.txt"
        text = transcript.read_text()
        assert text.startswith("=== Session Transcript ===")
        assert "Output Tokens: 40" in text
        assert text.endswith("Read(a.py)\ndone\n")
        meta = backlog.read_metadata("TabzChrome-abc")
        assert meta.transcript == str(transcript)
        assert meta.usage["output_tokens"] == "40"

    @pytest.mark.asyncio
    async def test_capture_without_session_skips(self, git_repo, backlog):
        with patch.object(pipeline_mod.tmux, "list_sessions", AsyncMock(return_value=[])):
            outcome = await CompletionPipeline(git_repo, backlog).capture("w-1")
        assert outcome.skipped == "no session found"
        assert outcome.transcript is None

    @pytest.mark.asyncio
    async def test_terminate_via_host(self, git_repo, backlog):
        host = FakeHost([SessionInfo(id="t-1", name="w-1", session_name="ctt-worker-1-aa")])
        kill = AsyncMock(return_value=[])
        with patch.object(pipeline_mod.tmux, "kill_matching", kill):
            stopped = await CompletionPipeline(git_repo, backlog, session_host=host).terminate("w-1")
        assert stopped == ["ctt-worker-1-aa"]
        assert host.deleted == ["t-1"]
        kill.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_terminate_falls_back_to_tmux(self, git_repo, backlog):
        host = FakeHost(error=SessionHostUnavailable("down"))
        kill = AsyncMock(return_value=["worker-w-1"])
        with patch.object(pipeline_mod.tmux, "kill_matching", kill):
            stopped = await CompletionPipeline(git_repo, backlog, session_host=host).terminate("w-1")
        assert stopped == ["worker-w-1"]
        kill.assert_awaited_once_with(session_patterns("w-1", short_ids=False))

    @pytest.mark.asyncio
    async def test_terminate_short_id_only_as_fallback(self, git_repo, backlog):
        kill = AsyncMock(side_effect=[[], ["ctt-worker-12-aa"]])
        with patch.object(pipeline_mod.tmux, "kill_matching", kill):
            stopped = await CompletionPipeline(git_repo, backlog).terminate("web-12")
        assert stopped == ["ctt-worker-12-aa"]
        assert [c.args[0] for c in kill.await_args_list] == [
            session_patterns("web-12", short_ids=False),
            session_patterns("web-12"),
        ]

    @pytest.mark.asyncio
    async def test_capture_prefers_full_id_session(self, git_repo, backlog):
        sessions = ["ctt-worker-12-aa", "worker-web-12"]
        with patch.object(pipeline_mod.tmux, "list_sessions", AsyncMock(return_value=sessions)), \
                patch.object(pipeline_mod.tmux, "capture_pane", AsyncMock(return_value="")), \
                patch.object(pipeline_mod.tmux, "pane_current_path", AsyncMock(return_value=None)):
            outcome = await CompletionPipeline(git_repo, backlog, home=Path(git_repo)).capture("web-12")
        assert outcome.session == "worker-web-12"

    @pytest.mark.asyncio
    async def test_capture_failure_does_not_stop_merge(self, git_repo, backlog, tmp_path):
        backlog_mod.create_item(backlog.db, "Rename thing", item_id="w-1")
        _branch(git_repo, "feature/w-1", "one.txt", "x\n")
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        config = Config(transcript_dir=str(blocker / "transcripts"))

        with patch.object(pipeline_mod.tmux, "list_sessions", AsyncMock(return_value=["worker-w-1"])), \
                patch.object(pipeline_mod.tmux, "capture_pane", AsyncMock(return_value="done\n")), \
                patch.object(pipeline_mod.tmux, "pane_current_path", AsyncMock(return_value=None)):
            report = await CompletionPipeline(git_repo, backlog, config=config, home=tmp_path).run(
                ["w-1"], skip={"terminate"}
            )

        assert report.captures[0].skipped.startswith("capture failed:")
        assert report.errors[0].startswith("w-1: capture failed:")
        assert report.merged == ["w-1"]
        assert report.exit_code == 0
