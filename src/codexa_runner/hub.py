"""Socket.IO namespace serving workspace sessions.

Each connection is one session: its workspace comes from the first label of
the host it addressed, it owns a file watcher and at most one terminal, and
its events are dispatched through a declarative handler table. Handlers
return the acknowledgement value.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import socketio
import structlog
from pydantic import BaseModel, ValidationError

from .config import RunnerConfig
from .filesystem import WorkspaceFilesystem
from .models import (
    CreateFilePayload,
    FileContentPayload,
    MovePayload,
    OperationResult,
    PathPayload,
    RenamePayload,
    TerminalInputPayload,
)
from .ports import PortError, PortProber, validate_port
from .sentry import session_context
from .session import Session, SessionRegistry
from .storage import WorkspaceSync
from .terminal import TerminalError, TerminalManager
from .validation import WorkspaceIdError, workspace_id_from_host
from .watcher import WorkspaceWatcher

logger = structlog.get_logger()

Handler = Callable[[Session, Any], Awaitable[Any]]

TERMINAL_FAILURE_LINE = "\r\n\x1b[31mFailed to start terminal: {error}\x1b[0m\r\n"


def _extract_host(environ: dict[str, Any]) -> str | None:
    """Get the addressed host from the handshake environ."""
    host = environ.get("HTTP_HOST")
    if host:
        return str(host)

    # Raw ASGI scope headers (list of byte tuples)
    scope = environ.get("asgi.scope") or {}
    for name, value in scope.get("headers", []):
        if name.lower() == b"host":
            return str(value.decode("latin-1"))
    return None


def _invalid_payload(error: ValidationError) -> dict[str, Any]:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
        for err in error.errors()
    )
    return OperationResult.fail(f"Invalid payload: {details}").to_wire()


def _parse(model: type[BaseModel], payload: Any) -> Any:
    if isinstance(payload, str) and "path" in model.model_fields:
        payload = {"path": payload}
    return model.model_validate(payload if payload is not None else {})


def _raw_port(payload: Any) -> Any:
    if isinstance(payload, dict):
        return payload.get("port")
    return payload


class RunnerNamespace(socketio.AsyncNamespace):
    """Routes client events to the filesystem, terminal, and port subsystems."""

    def __init__(
        self,
        config: RunnerConfig,
        terminals: TerminalManager | None = None,
        prober: PortProber | None = None,
        namespace: str = "/",
    ) -> None:
        super().__init__(namespace)
        self.config = config
        self.sessions = SessionRegistry()
        self.terminals = terminals or TerminalManager(
            shell=config.shell,
            user=config.terminal_user,
            grace_period=config.terminal_grace_period,
            cols=config.terminal_cols,
            rows=config.terminal_rows,
        )
        self.prober = prober or PortProber(
            allowed_ports=config.allowed_ports,
            probe_host=config.port_probe_host,
            probe_timeout=config.port_probe_timeout,
            kill_timeout=config.port_kill_timeout,
            preview_url_template=config.preview_url_template,
        )

        self._handlers: dict[str, Handler] = {
            "fetchDir": self._handle_fetch_dir,
            "fetchContent": self._handle_fetch_content,
            "updateContent": self._handle_update_content,
            "createFile": self._handle_create_file,
            "createFolder": self._handle_create_folder,
            "renameFile": self._handle_rename,
            "deleteFile": self._handle_delete,
            "moveFile": self._handle_move,
            "requestTerminal": self._handle_request_terminal,
            "terminalData": self._handle_terminal_data,
            "checkPort": self._handle_check_port,
            "forwardPort": self._handle_forward_port,
            "stopPortForward": self._handle_stop_port_forward,
            "killPort": self._handle_kill_port,
        }

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())

    async def trigger_event(self, event: str, *args: Any) -> Any:
        """Dispatch protocol events through the handler table."""
        handler = self._handlers.get(event)
        if handler is None:
            return await super().trigger_event(event, *args)

        sid = args[0]
        payload = args[1] if len(args) > 1 else None

        session = self.sessions.get(sid)
        if session is None or session.closing:
            logger.debug("Event for closed session", sid=sid, event_name=event)
            return OperationResult.fail("Session closed").to_wire()

        session.touch()
        with session_context(sid, session.workspace_id):
            try:
                return await handler(session, payload)
            except Exception:
                logger.exception("Event handler failed", event_name=event)
                return OperationResult.fail("Internal error").to_wire()

    # ============== Connection lifecycle ==============

    async def on_connect(
        self,
        sid: str,
        environ: dict[str, Any],
        auth: dict[str, Any] | None = None,
    ) -> bool:
        """Open a session for the workspace addressed by the handshake host.

        Returns:
            True if connection is accepted, False to reject
        """
        host = _extract_host(environ)
        try:
            workspace_id = workspace_id_from_host(host)
        except WorkspaceIdError as e:
            logger.warning("Rejecting connection", sid=sid, host=host, reason=str(e))
            return False

        root = self.config.workspace_root(workspace_id)
        try:
            await asyncio.to_thread(root.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            logger.error(
                "Failed to prepare workspace root",
                sid=sid,
                workspace_id=workspace_id,
                root=str(root),
                error=str(e),
            )
            return False

        sync = WorkspaceSync.from_config(self.config, workspace_id)
        session = Session(
            connection_id=sid,
            workspace_id=workspace_id,
            filesystem=WorkspaceFilesystem(root, sync, ignore=self.config.watch_ignore),
            watcher=WorkspaceWatcher(
                root,
                sync,
                debounce=self.config.watch_debounce,
                max_file_bytes=self.config.watch_max_file_bytes,
                ignore=self.config.watch_ignore,
            ),
        )
        self.sessions.add(session)

        try:
            await session.watcher.start()
        except OSError as e:
            # Out-of-band changes go unsynced, but the session is still usable
            logger.error(
                "Failed to start workspace watcher",
                sid=sid,
                workspace_id=workspace_id,
                error=str(e),
            )

        tree = await session.filesystem.list_tree()
        await self.emit("loaded", {"rootContent": [node.to_wire() for node in tree]}, to=sid)

        logger.info(
            "Client connected",
            sid=sid,
            workspace_id=workspace_id,
            sessions=len(self.sessions),
        )
        return True

    async def on_disconnect(self, sid: str, reason: Any = None) -> None:
        await self.close_session(sid, reason=str(reason) if reason else None)

    async def close_session(self, sid: str, reason: str | None = None) -> bool:
        """Tear a session down: watcher timers, watcher, terminal, registry.

        Safe to call from several paths; only the first call does the work.
        """
        session = self.sessions.get(sid)
        if session is None or session.closing:
            return False
        session.closing = True

        try:
            await session.watcher.stop()
        finally:
            try:
                await self.terminals.destroy(sid)
            finally:
                self.sessions.remove(sid)

        logger.info(
            "Client disconnected",
            sid=sid,
            workspace_id=session.workspace_id,
            reason=reason,
            sessions=len(self.sessions),
        )
        return True

    async def close_all(self) -> None:
        sids = [session.connection_id for session in self.sessions.all()]
        await asyncio.gather(
            *(self.close_session(sid, reason="server shutdown") for sid in sids),
            return_exceptions=True,
        )

    def check_idle(self) -> list[Session]:
        """Flag sessions idle beyond the configured threshold."""
        newly_idle = self.sessions.mark_idle(self.config.idle_threshold)
        for session in newly_idle:
            logger.info(
                "Session idle",
                sid=session.connection_id,
                workspace_id=session.workspace_id,
                idle_seconds=int(session.idle_for().total_seconds()),
            )
        return newly_idle

    # ============== Filesystem ==============

    async def _handle_fetch_dir(self, session: Session, payload: Any) -> list[dict[str, Any]]:
        path = payload.get("path", "") if isinstance(payload, dict) else payload
        if path is not None and not isinstance(path, str):
            return []
        nodes = await session.filesystem.list_dir(path or "")
        return [node.to_wire() for node in nodes]

    async def _handle_fetch_content(self, session: Session, payload: Any) -> Any:
        try:
            data = _parse(PathPayload, payload)
        except ValidationError as e:
            return _invalid_payload(e)

        result = await session.filesystem.read_file(data.path)
        if result.success:
            return result.content
        return result.to_wire()

    async def _handle_update_content(self, session: Session, payload: Any) -> None:
        try:
            data = _parse(FileContentPayload, payload)
        except ValidationError as e:
            logger.warning("Invalid updateContent payload", sid=session.connection_id, error=str(e))
            return None

        result = await session.filesystem.write_file(data.path, data.content)
        if not result.success:
            logger.warning(
                "Failed to update file",
                sid=session.connection_id,
                path=data.path,
                error=result.error,
            )
        return None

    async def _handle_create_file(self, session: Session, payload: Any) -> dict[str, Any]:
        try:
            data = _parse(CreateFilePayload, payload)
        except ValidationError as e:
            return _invalid_payload(e)

        result = await session.filesystem.create_file(data.path, data.content)
        return result.to_wire()

    async def _handle_create_folder(self, session: Session, payload: Any) -> dict[str, Any]:
        try:
            data = _parse(PathPayload, payload)
        except ValidationError as e:
            return _invalid_payload(e)

        result = await session.filesystem.create_folder(data.path)
        return result.to_wire()

    async def _handle_rename(self, session: Session, payload: Any) -> dict[str, Any]:
        try:
            data = _parse(RenamePayload, payload)
        except ValidationError as e:
            return _invalid_payload(e)

        result = await session.filesystem.rename(data.old_path, data.new_path)
        return result.to_wire()

    async def _handle_delete(self, session: Session, payload: Any) -> dict[str, Any]:
        try:
            data = _parse(PathPayload, payload)
        except ValidationError as e:
            return _invalid_payload(e)

        result = await session.filesystem.delete(data.path)
        return result.to_wire()

    async def _handle_move(self, session: Session, payload: Any) -> dict[str, Any]:
        try:
            data = _parse(MovePayload, payload)
        except ValidationError as e:
            return _invalid_payload(e)

        result = await session.filesystem.move(data.source_path, data.target_path)
        return result.to_wire()

    # ============== Terminal ==============

    async def _handle_request_terminal(self, session: Session, _payload: Any) -> None:
        sid = session.connection_id

        async def on_data(data: str) -> None:
            await self.emit("terminal", {"data": data}, to=sid)

        try:
            await self.terminals.create(
                sid, session.workspace_id, session.filesystem.root, on_data
            )
        except TerminalError as e:
            logger.error(
                "Failed to start terminal",
                sid=sid,
                workspace_id=session.workspace_id,
                error=str(e),
            )
            await on_data(TERMINAL_FAILURE_LINE.format(error=e))
            return None

        # The session may have closed while the shell was spawning
        if session.closing or sid not in self.sessions:
            await self.terminals.destroy(sid)
        return None

    async def _handle_terminal_data(self, session: Session, payload: Any) -> None:
        if isinstance(payload, str):
            payload = {"data": payload}
        try:
            data = TerminalInputPayload.model_validate(payload)
        except ValidationError:
            logger.debug("Ignoring malformed terminal input", sid=session.connection_id)
            return None

        self.terminals.write(session.connection_id, data.data)
        return None

    # ============== Ports ==============

    async def _handle_check_port(self, session: Session, payload: Any) -> dict[str, Any]:
        raw = _raw_port(payload)
        try:
            port = validate_port(raw)
        except PortError as e:
            return {"success": False, "available": False, "port": raw, "error": str(e)}

        result = await self.prober.check_port(port)
        return result.to_wire()

    async def _handle_forward_port(self, session: Session, payload: Any) -> dict[str, Any]:
        raw = _raw_port(payload)
        try:
            port = validate_port(raw)
        except PortError as e:
            return {"success": False, "port": raw, "error": str(e)}

        result = await self.prober.forward_port(port, session.workspace_id)
        return result.to_wire()

    async def _handle_stop_port_forward(self, session: Session, payload: Any) -> dict[str, Any]:
        raw = _raw_port(payload)
        try:
            port = validate_port(raw)
        except PortError as e:
            return {"success": False, "port": raw, "error": str(e)}

        result = await self.prober.stop_forward(port, session.workspace_id)
        return result.to_wire()

    async def _handle_kill_port(self, session: Session, payload: Any) -> dict[str, Any]:
        raw = _raw_port(payload)
        try:
            port = validate_port(raw)
        except PortError as e:
            return {"success": False, "port": raw, "error": str(e)}

        logger.info("Kill port requested", sid=session.connection_id, port=port)
        result = await self.prober.kill_port(port)
        return result.to_wire()
