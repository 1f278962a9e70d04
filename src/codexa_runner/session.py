"""Per-connection session state and the registry of live sessions."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .filesystem import WorkspaceFilesystem
from .watcher import WorkspaceWatcher


@dataclass
class Session:
    """Server-side state of one live connection to a workspace."""

    connection_id: str
    workspace_id: str
    filesystem: WorkspaceFilesystem
    watcher: WorkspaceWatcher
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    idle: bool = False
    # Set once teardown starts so it runs exactly once
    closing: bool = False

    def touch(self) -> None:
        self.last_activity_at = datetime.now(UTC)
        self.idle = False

    def idle_for(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now(UTC)) - self.last_activity_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "workspace_id": self.workspace_id,
            "connected_at": self.connected_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "idle": self.idle,
        }


class SessionRegistry:
    """Live sessions keyed by connection id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def add(self, session: Session) -> None:
        self._sessions[session.connection_id] = session

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def remove(self, connection_id: str) -> Session | None:
        return self._sessions.pop(connection_id, None)

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def mark_idle(self, threshold: float, now: datetime | None = None) -> list[Session]:
        """Flag sessions inactive for longer than threshold seconds.

        Returns only the sessions that became idle on this call. Idle sessions
        are never closed here.
        """
        now = now or datetime.now(UTC)
        limit = timedelta(seconds=threshold)
        newly_idle = []
        for session in self._sessions.values():
            if not session.idle and session.idle_for(now) > limit:
                session.idle = True
                newly_idle.append(session)
        return newly_idle
