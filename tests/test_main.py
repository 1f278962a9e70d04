"""Tests for the command line interface."""

import socket
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from codexa_runner import __version__
from codexa_runner.main import cli


def free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("RUNNER_PORT", "RUNNER_HOST", "RUNNER_WORKSPACE_DIR", "RUNNER_ALLOWED_PORTS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RUNNER_PORT_PROBE_HOST", "127.0.0.1")


class TestCli:
    """Tests for the CLI group."""

    def test_version(self, cli_runner) -> None:
        """Test --version prints the package version."""
        result = cli_runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, cli_runner) -> None:
        """Test both commands are registered."""
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "serve" in result.output
        assert "check-port" in result.output


class TestServe:
    """Tests for the serve command."""

    def test_serve_applies_overrides(self, cli_runner, tmp_path: Path) -> None:
        """Test command line options win over configuration."""
        with (
            patch("codexa_runner.main.uvicorn.run") as mock_run,
            patch("codexa_runner.main.init_sentry", return_value=False) as mock_sentry,
            patch("codexa_runner.main.configure_logging", return_value=MagicMock()),
        ):
            result = cli_runner.invoke(
                cli,
                [
                    "serve",
                    "--port",
                    "4100",
                    "--host",
                    "127.0.0.1",
                    "--workspace-dir",
                    str(tmp_path),
                ],
            )

        assert result.exit_code == 0, result.output
        mock_sentry.assert_called_once()
        config = mock_sentry.call_args.args[0]
        assert config.port == 4100
        assert config.workspace_dir == str(tmp_path)
        kwargs = mock_run.call_args.kwargs
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 4100
        assert kwargs["log_config"] is None

    def test_serve_reads_config_file(self, cli_runner, tmp_path: Path) -> None:
        """Test the --config file is loaded."""
        config_file = tmp_path / "runner.toml"
        config_file.write_text("[runner]\nport = 3300\n")

        with (
            patch("codexa_runner.main.uvicorn.run") as mock_run,
            patch("codexa_runner.main.init_sentry", return_value=False),
            patch("codexa_runner.main.configure_logging", return_value=MagicMock()),
        ):
            result = cli_runner.invoke(cli, ["serve", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert mock_run.call_args.kwargs["port"] == 3300


class TestCheckPort:
    """Tests for the check-port command."""

    def test_free_port(self, cli_runner) -> None:
        """Test a free, unlisted port."""
        port = free_port()

        result = cli_runner.invoke(cli, ["check-port", str(port)])

        assert result.exit_code == 0
        assert f"Port {port}: no service listening" in result.output
        assert "Exposable: no (supported ports: 3000," in result.output

    def test_listening_port(self, cli_runner) -> None:
        """Test a port with a listener."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        try:
            result = cli_runner.invoke(cli, ["check-port", str(port)])
        finally:
            sock.close()

        assert result.exit_code == 0
        assert f"Port {port}: service listening" in result.output

    def test_allowed_port(self, cli_runner) -> None:
        """Test allow-listed ports are reported as exposable."""
        result = cli_runner.invoke(cli, ["check-port", "3000"])

        assert result.exit_code == 0
        assert "Exposable: yes" in result.output

    @pytest.mark.parametrize("port", ["0", "70000", "http"])
    def test_invalid_port(self, cli_runner, port: str) -> None:
        """Test invalid ports are a usage error."""
        result = cli_runner.invoke(cli, ["check-port", port])

        assert result.exit_code == 2
        assert "between 1 and 65535" in result.output
