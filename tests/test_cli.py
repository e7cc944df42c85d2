"""Tests for the CLI."""

import json
import os
import subprocess
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from wave_orchestrator.cli import main

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, capture_output=True, check=True, env=GIT_ENV)


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        repo_path = Path(tmp) / "repo"
        repo_path.mkdir()

        _git(repo_path, "init")
        _git(repo_path, "checkout", "-b", "main")
        (repo_path / "README.md").write_text("# Test")
        _git(repo_path, "add", ".")
        _git(repo_path, "commit", "-m", "init")

        env = {
            "WAVE_DB_PATH": str(db_path),
            "WAVE_REPO_PATH": str(repo_path),
            "WAVE_BACKLOG": "sqlite",
            "WAVE_SESSION_API": "http://127.0.0.1:9",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), repo_path

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Wave Orchestrator" in result.output

    def test_item_flow(self, cli_env):
        runner, _ = cli_env

        result = runner.invoke(main, ["item", "add", "Fix login", "--id", "bd-1", "-l", "bug"])
        assert result.exit_code == 0
        assert "Created item: bd-1" in result.output

        result = runner.invoke(main, ["item", "add", "Docs", "--id", "bd-2", "--depends-on", "bd-1"])
        assert result.exit_code == 0

        result = runner.invoke(main, ["item", "list", "--ready"])
        assert "bd-1" in result.output
        assert "bd-2" not in result.output

        result = runner.invoke(main, ["item", "label", "bd-1", "gate:docs-check"])
        assert "gate:docs-check" in result.output

        result = runner.invoke(main, ["item", "status", "bd-1", "closed"])
        assert result.exit_code == 0

        result = runner.invoke(main, ["item", "list", "--json"])
        data = {i["id"]: i for i in json.loads(result.stdout)}
        assert data["bd-1"]["status"] == "closed"
        assert data["bd-2"]["depends_on"] == ["bd-1"]

        result = runner.invoke(main, ["item", "show", "bd-1"])
        assert "status_changed" in result.output

    def test_duplicate_id(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["item", "add", "One", "--id", "bd-1"])
        result = runner.invoke(main, ["item", "add", "Two", "--id", "bd-1"])
        assert result.exit_code == 1

    def test_invalid_id_rejected(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["resolve", "../etc"])
        assert result.exit_code == 2
        assert "Invalid item id" in result.output

    def test_resolve_json(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["item", "add", "Fix crash in modal", "--id", "bd-1"])
        result = runner.invoke(main, ["resolve", "bd-1", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["gates"] == ["test-runner", "visual-qa"]

        result = runner.invoke(main, ["resolve", "bd-1"])
        assert "(cached)" in result.output

    def test_resolve_missing_item(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["resolve", "ghost"])
        assert result.exit_code == 1

    def test_plan(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["item", "add", "Fix SettingsModal", "--id", "bd-1"])
        runner.invoke(main, ["item", "add", "Restyle SettingsModal", "--id", "bd-2"])
        runner.invoke(main, ["item", "add", "Update changelog", "--id", "bd-3"])

        result = runner.invoke(main, ["plan"])
        assert result.exit_code == 0
        assert "batch-1: bd-1 -> bd-2" in result.output
        assert "Run now: bd-1, bd-3" in result.output

        result = runner.invoke(main, ["overlap", "bd-1", "bd-2"])
        assert "bd-1 <-> bd-2" in result.output

    def test_provision_is_idempotent(self, cli_env):
        runner, repo_path = cli_env
        result = runner.invoke(main, ["provision", "bd-1", "--no-install", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["worktree_path"] == str(repo_path / ".worktrees" / "bd-1")
        assert data["already_existed"] is False

        result = runner.invoke(main, ["provision", "bd-1", "--no-install"])
        assert "Worktree exists" in result.output

        result = runner.invoke(main, ["worktrees"])
        assert "feature/bd-1" in result.output
        assert "-> bd-1" in result.output

    def test_gate_without_required_gates(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["item", "add", "Rename thing", "--id", "bd-1"])
        runner.invoke(main, ["provision", "bd-1", "--no-install"])
        result = runner.invoke(main, ["gate", "bd-1"])
        assert result.exit_code == 0
        assert "No gates required" in result.output

    def test_gate_missing_worktree(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["gate", "bd-1"])
        assert result.exit_code == 1

    def test_complete_merges(self, cli_env):
        runner, repo_path = cli_env
        runner.invoke(main, ["item", "add", "Rename thing", "--id", "bd-1"])
        _git(repo_path, "checkout", "-b", "feature/bd-1")
        (repo_path / "new.txt").write_text("x\n")
        _git(repo_path, "add", ".")
        _git(repo_path, "commit", "-m", "work")
        _git(repo_path, "checkout", "main")

        result = runner.invoke(
            main, ["complete", "bd-1", "--skip-capture", "--skip-terminate", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["merges"] == [{"item_id": "bd-1", "status": "merged", "detail": ""}]
        assert data["cleaned"] == ["bd-1"]
        assert (repo_path / "new.txt").exists()

    def test_complete_blocked_exits_nonzero(self, cli_env):
        runner, repo_path = cli_env
        runner.invoke(main, ["item", "add", "Rename thing", "--id", "bd-1", "-l", "gate:test-runner"])
        _git(repo_path, "branch", "feature/bd-1")

        result = runner.invoke(main, ["complete", "bd-1", "--skip-capture", "--skip-terminate"])
        assert result.exit_code == 1
        assert "bd-1: blocked" in result.output
        assert "WAVE COMPLETE" in result.output

    def test_hook_allows_non_item_branch(self, cli_env):
        runner, repo_path = cli_env
        result = runner.invoke(main, ["hook", "pre-commit", "--worktree", str(repo_path)])
        assert result.exit_code == 0
        assert "not an item branch" in result.output
