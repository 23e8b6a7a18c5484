"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


def _home() -> Path:
    return Path.home() / ".clanker"


def _flag(value: str) -> bool:
    return value.strip().lower() in _TRUTHY


@dataclass
class Config:
    state_path: Path = field(default_factory=lambda: _home() / "state.json")
    workspace_dir: Path = field(default_factory=lambda: _home() / "workspaces")
    host: str = "127.0.0.1"
    port: int = 3000
    port_start: int = 4000
    reconcile_span: int = 1000
    task_id_start: int = 1000
    backend_command: str = "opencode serve -p {port}"
    backend_process_name: str = "opencode serve"
    readiness_timeout: float = 15.0
    readiness_interval: float = 0.1
    stop_timeout: float = 5.0
    bootstrap_session: bool = True
    autopush_enabled: bool = False
    autopush_interval: float = 30.0
    reconcile_on_startup: bool = True
    api_url: str = "http://127.0.0.1:3000"
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if state := os.environ.get("CLANKER_STATE_PATH"):
            config.state_path = Path(state)

        if workspace := os.environ.get("CLANKER_WORKSPACE_DIR"):
            config.workspace_dir = Path(workspace)

        if host := os.environ.get("CLANKER_HOST"):
            config.host = host

        if port := os.environ.get("CLANKER_PORT"):
            config.port = int(port)

        if port_start := os.environ.get("CLANKER_PORT_START"):
            config.port_start = int(port_start)

        if span := os.environ.get("CLANKER_RECONCILE_SPAN"):
            config.reconcile_span = int(span)

        if id_start := os.environ.get("CLANKER_TASK_ID_START"):
            config.task_id_start = int(id_start)

        if command := os.environ.get("CLANKER_BACKEND_COMMAND"):
            config.backend_command = command

        if name := os.environ.get("CLANKER_BACKEND_PROCESS_NAME"):
            config.backend_process_name = name

        if timeout := os.environ.get("CLANKER_READINESS_TIMEOUT"):
            config.readiness_timeout = float(timeout)

        if interval := os.environ.get("CLANKER_READINESS_INTERVAL"):
            config.readiness_interval = float(interval)

        if stop_timeout := os.environ.get("CLANKER_STOP_TIMEOUT"):
            config.stop_timeout = float(stop_timeout)

        if bootstrap := os.environ.get("CLANKER_BOOTSTRAP_SESSION"):
            config.bootstrap_session = _flag(bootstrap)

        if autopush := os.environ.get("CLANKER_AUTOPUSH"):
            config.autopush_enabled = _flag(autopush)

        if autopush_interval := os.environ.get("CLANKER_AUTOPUSH_INTERVAL"):
            config.autopush_interval = float(autopush_interval)

        if reconcile := os.environ.get("CLANKER_RECONCILE"):
            config.reconcile_on_startup = _flag(reconcile)

        if api_url := os.environ.get("CLANKER_API_URL"):
            config.api_url = api_url
        else:
            config.api_url = f"http://{config.host}:{config.port}"

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("CLANKER_SLACK_CHANNEL")

        if level := os.environ.get("CLANKER_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
