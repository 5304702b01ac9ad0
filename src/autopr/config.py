"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_KILL_LIST = ["cursor-agent", "claude", "node", "npm", "yarn", "pnpm"]


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".autopr" / "autopr.db")
    workspace_root: Path = field(default_factory=lambda: Path.home() / ".autopr" / "workspace")
    agent_id: str | None = None
    agent_host: str = "0.0.0.0"
    agent_port: int = 50051
    control_url: str = "http://localhost:8787"
    coder_type: str = "cursor"
    coder_executable: str | None = None
    startup_timeout: float = 30.0
    overall_timeout: float = 600.0
    poll_interval: float = 30.0
    health_interval: float = 60.0
    cleanup_kill_list: list[str] = field(default_factory=lambda: list(DEFAULT_KILL_LIST))
    github_api_url: str = "https://api.github.com"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AUTOPR_DB_PATH"):
            config.db_path = Path(db)

        if root := os.environ.get("AUTOPR_WORKSPACE_DIR"):
            config.workspace_root = Path(root)

        config.agent_id = os.environ.get("AUTOPR_AGENT_ID")

        if host := os.environ.get("AUTOPR_AGENT_HOST"):
            config.agent_host = host

        if port := os.environ.get("AUTOPR_AGENT_PORT"):
            config.agent_port = int(port)

        if url := os.environ.get("AUTOPR_CONTROL_URL"):
            config.control_url = url.rstrip("/")

        if coder := os.environ.get("AUTOPR_CODER_TYPE"):
            config.coder_type = coder

        config.coder_executable = os.environ.get("AUTOPR_CODER_EXECUTABLE")

        if startup := os.environ.get("AUTOPR_STARTUP_TIMEOUT"):
            config.startup_timeout = float(startup)

        if overall := os.environ.get("AUTOPR_OVERALL_TIMEOUT"):
            config.overall_timeout = float(overall)

        if poll := os.environ.get("AUTOPR_POLL_INTERVAL"):
            config.poll_interval = float(poll)

        if health := os.environ.get("AUTOPR_HEALTH_INTERVAL"):
            config.health_interval = float(health)

        if kill := os.environ.get("AUTOPR_CLEANUP_KILL"):
            config.cleanup_kill_list = [p.strip() for p in kill.split(",") if p.strip()]

        if api := os.environ.get("AUTOPR_GITHUB_API_URL"):
            config.github_api_url = api.rstrip("/")

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("AUTOPR_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
