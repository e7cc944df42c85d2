"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    db_path: Path = field(default_factory=lambda: Path.home() / ".wave_orchestrator" / "backlog.db")
    backlog_backend: str = "beads"
    main_branch: str = "main"
    branch_prefix: str = "feature/"
    worktree_dir: str = ".worktrees"
    checkpoint_dir: str = ".checkpoints"
    transcript_dir: str = ".beads/transcripts"
    session_api_url: str = "http://localhost:8129"
    token_file: Path = field(default_factory=lambda: Path("/tmp/tabz-auth-token"))
    gate_timeout: float = 300.0
    gate_poll_interval: float = 5.0
    agent_boot_time: float = 4.0
    monitor_interval: float = 30.0
    monitor_window: str = "monitor"
    monitor_command: str = "tmuxplexer --watcher"
    context_warning: int = 60
    context_critical: int = 75
    agent_command: str = "claude"
    review_command: str = "codex"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if repo := os.environ.get("WAVE_REPO_PATH"):
            config.repo_path = Path(repo)

        if db := os.environ.get("WAVE_DB_PATH"):
            config.db_path = Path(db)

        if backend := os.environ.get("WAVE_BACKLOG"):
            config.backlog_backend = backend

        if main := os.environ.get("WAVE_MAIN_BRANCH"):
            config.main_branch = main

        if prefix := os.environ.get("WAVE_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if wt_dir := os.environ.get("WAVE_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if chk_dir := os.environ.get("WAVE_CHECKPOINT_DIR"):
            config.checkpoint_dir = chk_dir

        if tr_dir := os.environ.get("WAVE_TRANSCRIPT_DIR"):
            config.transcript_dir = tr_dir

        if api := os.environ.get("WAVE_SESSION_API"):
            config.session_api_url = api.rstrip("/")

        if token_file := os.environ.get("WAVE_TOKEN_FILE"):
            config.token_file = Path(token_file)

        if timeout := os.environ.get("WAVE_GATE_TIMEOUT"):
            config.gate_timeout = float(timeout)

        if poll := os.environ.get("WAVE_GATE_POLL"):
            config.gate_poll_interval = float(poll)

        if boot := os.environ.get("WAVE_AGENT_BOOT_TIME"):
            config.agent_boot_time = float(boot)

        if interval := os.environ.get("WAVE_MONITOR_INTERVAL"):
            config.monitor_interval = float(interval)

        if window := os.environ.get("WAVE_MONITOR_WINDOW"):
            config.monitor_window = window

        if monitor_cmd := os.environ.get("WAVE_MONITOR_COMMAND"):
            config.monitor_command = monitor_cmd

        if warn := os.environ.get("WAVE_CONTEXT_WARNING"):
            config.context_warning = int(warn)

        if crit := os.environ.get("WAVE_CONTEXT_CRITICAL"):
            config.context_critical = int(crit)

        if agent := os.environ.get("WAVE_AGENT_COMMAND"):
            config.agent_command = agent

        if review := os.environ.get("WAVE_REVIEW_COMMAND"):
            config.review_command = review

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("WAVE_SLACK_CHANNEL")

        return config

    def branch_for(self, item_id: str) -> str:
        return f"{self.branch_prefix}{item_id}"

    def worktree_for(self, repo_path: str | Path, item_id: str) -> Path:
        return Path(repo_path) / self.worktree_dir / item_id


def get_config() -> Config:
    return Config.from_env()
