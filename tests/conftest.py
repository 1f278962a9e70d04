"""Pytest fixtures for runner tests."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from codexa_runner.config import RunnerConfig
from codexa_runner.filesystem import WorkspaceFilesystem
from codexa_runner.storage import WorkspaceSync


class RecordingStorage:
    """In-memory stand-in for WorkspaceBucket that records every call."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []

    async def upload_file(self, path: str, content: bytes, digest: str) -> str:
        self.calls.append(("put", path))
        self.objects[path] = content
        return path

    async def upload_folder(self, path: str) -> str:
        key = f"{path}/"
        self.calls.append(("marker", key))
        self.objects[key] = b""
        return key

    async def delete_file(self, path: str) -> None:
        self.calls.append(("delete", path))
        self.objects.pop(path, None)

    async def delete_folder(self, path: str) -> int:
        self.calls.append(("delete_folder", path))
        doomed = [key for key in self.objects if key.startswith(f"{path}/")]
        for key in doomed:
            del self.objects[key]
        return len(doomed)

    def puts(self) -> list[str]:
        return [key for op, key in self.calls if op == "put"]


@pytest.fixture
def recording_storage() -> RecordingStorage:
    """Object storage fake keeping objects in memory."""
    return RecordingStorage()


@pytest.fixture
def sync(recording_storage: RecordingStorage) -> WorkspaceSync:
    """Sync adapter backed by the recording storage."""
    return WorkspaceSync(recording_storage, "ws-test")  # type: ignore[arg-type]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Empty workspace root."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def filesystem(workspace: Path, sync: WorkspaceSync) -> WorkspaceFilesystem:
    """Filesystem gateway over the temporary workspace."""
    return WorkspaceFilesystem(workspace, sync, ignore=["node_modules", ".git"])


@pytest.fixture
def runner_config(tmp_path: Path) -> RunnerConfig:
    """Runner configuration with per-workspace directories under tmp_path."""
    return RunnerConfig(
        workspace_dir=str(tmp_path / "workspaces" / "{workspace_id}"),
        s3_bucket=None,
        sentry_dsn=None,
        watch_debounce=0.05,
        terminal_grace_period=0.5,
        port_probe_host="127.0.0.1",
        port_kill_timeout=1.0,
    )


@pytest.fixture
def mock_s3_client() -> MagicMock:
    """Mock aioboto3 S3 client usable as an async context manager."""
    mock = MagicMock()
    mock.__aenter__ = AsyncMock(return_value=mock)
    mock.__aexit__ = AsyncMock(return_value=None)
    mock.put_object = AsyncMock()
    mock.delete_object = AsyncMock()
    mock.delete_objects = AsyncMock(return_value={})
    return mock


@pytest.fixture
def cli_runner():
    """Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()

