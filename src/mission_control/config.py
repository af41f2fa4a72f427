"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".mission_control" / "mc.db")
    workspace_id: str = "default"
    runtime_url: str = "http://127.0.0.1:18789"
    runtime_token: str | None = None
    runtime_home: Path = field(default_factory=lambda: Path.home() / ".openclaw")
    planning_agent: str = "scout"
    planning_timeout_ms: int = 45000
    planning_poll_interval: float = 2.0
    planning_max_rounds: int = 8
    dispatch_url: str | None = None
    api_token: str | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def planning_timeout_s(self) -> float:
        return self.planning_timeout_ms / 1000.0

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("MC_DB_PATH"):
            config.db_path = Path(db)

        if workspace := os.environ.get("MC_WORKSPACE"):
            config.workspace_id = workspace

        if url := os.environ.get("MC_RUNTIME_URL"):
            config.runtime_url = url

        config.runtime_token = os.environ.get("MC_RUNTIME_TOKEN")

        if home := os.environ.get("MC_RUNTIME_HOME"):
            config.runtime_home = Path(home)

        if agent := os.environ.get("MC_PLANNING_AGENT"):
            config.planning_agent = agent

        if timeout := os.environ.get("MC_PLANNING_TIMEOUT_MS"):
            config.planning_timeout_ms = int(timeout)

        if interval := os.environ.get("MC_PLANNING_POLL_INTERVAL"):
            config.planning_poll_interval = float(interval)

        if rounds := os.environ.get("MC_PLANNING_MAX_ROUNDS"):
            config.planning_max_rounds = int(rounds)

        config.dispatch_url = os.environ.get("MISSION_CONTROL_URL")
        config.api_token = os.environ.get("MC_API_TOKEN")
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("MC_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
