"""Tests for runner configuration."""

from pathlib import Path

import pytest

from codexa_runner.config import DEFAULT_ALLOWED_PORTS, RunnerConfig, load_config


class TestRunnerConfigDefaults:
    """Tests for default configuration values."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test defaults match the protocol's expectations."""
        monkeypatch.delenv("SENTRY_DSN", raising=False)
        config = RunnerConfig()

        assert config.port == 3001
        assert config.workspace_dir == "/workspace"
        assert config.s3_prefix == "code"
        assert config.ping_interval == 25
        assert config.ping_timeout == 60
        assert config.max_http_buffer_size == 1_000_000
        assert config.watch_debounce == 1.0
        assert config.terminal_grace_period == 1.0
        assert config.port_probe_timeout == 0.5
        assert config.allowed_ports == DEFAULT_ALLOWED_PORTS
        assert "http://localhost:5173" in config.cors_origins

    def test_workspace_root_plain(self) -> None:
        """Test a fixed workspace directory ignores the workspace id."""
        config = RunnerConfig(workspace_dir="/workspace")
        assert config.workspace_root("abc123") == Path("/workspace")

    def test_workspace_root_template(self) -> None:
        """Test a templated workspace directory gets one directory per workspace."""
        config = RunnerConfig(workspace_dir="/srv/ws/{workspace_id}")
        assert config.workspace_root("abc123") == Path("/srv/ws/abc123")

    def test_remote_prefix(self) -> None:
        """Test the object storage prefix for a workspace."""
        config = RunnerConfig(s3_prefix="/code/")
        assert config.remote_prefix("abc123") == "code/abc123"

    def test_idle_threshold_minimum(self) -> None:
        """Test idle threshold must be minutes, not seconds."""
        with pytest.raises(ValueError):
            RunnerConfig(idle_threshold=5)


class TestRunnerConfigEnv:
    """Tests for environment variable overrides."""

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test RUNNER_ environment variables are read."""
        monkeypatch.setenv("RUNNER_PORT", "4000")
        monkeypatch.setenv("RUNNER_S3_BUCKET", "codexa-code")

        config = RunnerConfig()

        assert config.port == 4000
        assert config.s3_bucket == "codexa-code"

    def test_sentry_dsn_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the plain SENTRY_DSN variable is accepted."""
        monkeypatch.delenv("RUNNER_SENTRY_DSN", raising=False)
        monkeypatch.setenv("SENTRY_DSN", "https://key@sentry.example/1")

        config = RunnerConfig()

        assert config.sentry_dsn == "https://key@sentry.example/1"


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_missing_file(self, tmp_path: Path) -> None:
        """Test loading when the config file does not exist."""
        config = load_config(tmp_path / "missing.toml")
        assert config.port == 3001

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Test loading the [runner] table."""
        config_file = tmp_path / "runner.toml"
        config_file.write_text(
            """[runner]
port = 3100
shell = "zsh"
allowed_ports = [3000, 8080]
"""
        )

        config = load_config(config_file)

        assert config.port == 3100
        assert config.shell == "zsh"
        assert config.allowed_ports == [3000, 8080]

    def test_env_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment variables win over the config file."""
        config_file = tmp_path / "runner.toml"
        config_file.write_text('[runner]\nport = 3100\nshell = "zsh"\n')
        monkeypatch.setenv("RUNNER_PORT", "3200")

        config = load_config(config_file)

        assert config.port == 3200
        assert config.shell == "zsh"
