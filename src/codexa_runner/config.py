"""Configuration for the Codexa workspace runner."""

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "https://localhost:5173",
]

# Dev-server ports the external routing layer is configured to expose
DEFAULT_ALLOWED_PORTS = [3000, 3001, 5000, 5173, 5174, 8000, 8080, 8081]

DEFAULT_WATCH_IGNORE = [
    "node_modules",
    ".git",
    "__pycache__",
    ".venv",
    "venv",
    ".next",
    ".cache",
]


class RunnerConfig(BaseSettings):
    """Configuration for the workspace runner."""

    model_config = SettingsConfigDict(
        env_prefix="RUNNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Service
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    sentry_dsn: str | None = Field(
        default=None,
        validation_alias=AliasChoices("RUNNER_SENTRY_DSN", "SENTRY_DSN", "sentry_dsn"),
    )

    # Listener
    host: str = "0.0.0.0"  # noqa: S104 - runs inside the workspace container
    port: int = Field(default=3001, ge=1, le=65535)

    # Workspace root; may contain "{workspace_id}" for one directory per workspace
    workspace_dir: str = "/workspace"

    # CORS
    cors_origins: list[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    cors_origin_regex: str | None = None

    # Socket.IO transport
    ping_interval: int = 25
    ping_timeout: int = 60
    max_http_buffer_size: int = 1_000_000

    # Object storage
    s3_bucket: str | None = None
    s3_prefix: str = "code"
    aws_region: str = "us-east-1"
    aws_endpoint: str | None = None

    # Terminal
    shell: str = "bash"
    terminal_grace_period: float = Field(default=1.0, gt=0)
    terminal_cols: int = Field(default=80, ge=1, le=500)
    terminal_rows: int = Field(default=24, ge=1, le=500)
    terminal_user: str = "coder"

    # Filesystem watcher
    watch_debounce: float = Field(default=1.0, ge=0)
    watch_max_file_bytes: int = 5 * 1024 * 1024
    watch_ignore: list[str] = Field(default_factory=lambda: list(DEFAULT_WATCH_IGNORE))

    # Ports
    allowed_ports: list[int] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_PORTS))
    port_probe_host: str = "0.0.0.0"  # noqa: S104
    port_probe_timeout: float = Field(default=0.5, gt=0)
    port_kill_timeout: float = Field(default=3.0, gt=0)
    preview_url_template: str | None = None

    # Liveness accounting
    idle_threshold: int = Field(
        default=1800, ge=60, description="Seconds before a session is flagged idle"
    )
    idle_check_interval: int = Field(default=60, ge=1)

    # Upper bound on graceful shutdown (closing sessions, draining syncs)
    shutdown_timeout: float = Field(default=10.0, gt=0)

    def workspace_root(self, workspace_id: str) -> Path:
        """Resolve the local directory backing a workspace."""
        return Path(self.workspace_dir.format(workspace_id=workspace_id))

    def remote_prefix(self, workspace_id: str) -> str:
        """Object storage prefix for a workspace."""
        return f"{self.s3_prefix.strip('/')}/{workspace_id}"

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "codexa" / "runner.toml"


def load_config(config_file: str | Path | None = None) -> RunnerConfig:
    """Load configuration from a TOML file, with environment variable overrides.

    Priority (highest to lowest):
    1. Environment variables (RUNNER_*)
    2. Provided config file
    3. Default config file (~/.config/codexa/runner.toml)
    4. Default values

    Args:
        config_file: Optional path to a config file

    Returns:
        Loaded configuration
    """
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH

    file_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
            file_config = data.get("runner", {})

    # Init kwargs beat env in pydantic-settings, so drop keys the environment sets
    env_fields = {
        name for name in RunnerConfig.model_fields if f"RUNNER_{name.upper()}" in os.environ
    }
    file_config = {k: v for k, v in file_config.items() if k not in env_fields}

    return RunnerConfig(**file_config)
