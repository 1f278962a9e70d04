"""Port probing, exposure checks, and port kill.

Exposure is declarative: an external routing layer serves the allow-listed
ports, so this module only confirms. No tunnel or proxy is held open.
"""

import asyncio
import os
import socket
from typing import Any

import psutil
import structlog

from .models import PortCheckResult, PortForwardResult, PortKillResult

logger = structlog.get_logger()

MIN_PORT = 1
MAX_PORT = 65535

DEFAULT_PROBE_TIMEOUT = 0.5
DEFAULT_KILL_TIMEOUT = 3.0


class PortError(ValueError):
    """Raised for port numbers outside the valid range."""


def validate_port(port: Any) -> int:
    """Coerce and range-check a client supplied port.

    Raises:
        PortError: If the value is not an integer between 1 and 65535
    """
    if isinstance(port, bool):
        raise PortError(f"Port must be an integer between {MIN_PORT} and {MAX_PORT}")
    if isinstance(port, str) and port.strip().isdigit():
        port = int(port.strip())
    if not isinstance(port, int) or not MIN_PORT <= port <= MAX_PORT:
        raise PortError(f"Port must be an integer between {MIN_PORT} and {MAX_PORT}")
    return port


class PortProber:
    """Answers port questions for one workspace container.

    ``available`` keeps its bind-centric meaning: True means the probe could
    bind the port, so no service is listening there.
    """

    def __init__(
        self,
        allowed_ports: list[int],
        probe_host: str = "0.0.0.0",  # noqa: S104
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        preview_url_template: str | None = None,
    ) -> None:
        self.allowed_ports = sorted(set(allowed_ports))
        self.probe_host = probe_host
        self.probe_timeout = probe_timeout
        self.kill_timeout = kill_timeout
        self.preview_url_template = preview_url_template

    def is_allowed(self, port: int) -> bool:
        return port in self.allowed_ports

    async def is_available(self, port: int) -> bool:
        """Try to bind the port. A probe that hangs counts as occupied."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._try_bind, port), timeout=self.probe_timeout
            )
        except TimeoutError:
            logger.warning("Port probe timed out, assuming occupied", port=port)
            return False

    async def check_port(self, port: int) -> PortCheckResult:
        available = await self.is_available(port)
        logger.debug("Checked port", port=port, available=available)
        return PortCheckResult(port=port, available=available)

    async def forward_port(self, port: int, workspace_id: str = "") -> PortForwardResult:
        """Confirm that a port is one the routing layer exposes."""
        if not self.is_allowed(port):
            supported = ", ".join(str(p) for p in self.allowed_ports)
            logger.info("Rejected unsupported port", port=port, workspace_id=workspace_id)
            return PortForwardResult(
                success=False,
                port=port,
                error=f"Port {port} is not supported. Supported ports: {supported}",
            )

        url = None
        if self.preview_url_template:
            url = self.preview_url_template.format(workspace_id=workspace_id, port=port)

        logger.info("Port exposed", port=port, workspace_id=workspace_id, url=url)
        return PortForwardResult(success=True, port=port, url=url)

    async def stop_forward(self, port: int, workspace_id: str = "") -> PortForwardResult:
        """Nothing is held open per port, so stopping always succeeds."""
        logger.info("Port forward stopped", port=port, workspace_id=workspace_id)
        return PortForwardResult(success=True, port=port)

    async def kill_port(self, port: int) -> PortKillResult:
        """Terminate every process listening on a port, then kill survivors."""
        try:
            return await asyncio.to_thread(self._kill_listeners, port)
        except psutil.AccessDenied:
            logger.warning("Access denied reading connection table", port=port)
            return PortKillResult(
                success=False,
                port=port,
                error="Permission denied while looking up processes",
            )

    def _try_bind(self, port: int) -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.probe_host, port))
            sock.listen(1)
            return True
        except OSError:
            return False
        finally:
            sock.close()

    def _listener_pids(self, port: int) -> set[int]:
        own_pid = os.getpid()
        pids = set()
        for conn in psutil.net_connections(kind="inet"):
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            if conn.laddr.port == port and conn.pid and conn.pid != own_pid:
                pids.add(conn.pid)
        return pids

    def _kill_listeners(self, port: int) -> PortKillResult:
        pids = self._listener_pids(port)
        if not pids:
            return PortKillResult(
                success=True, port=port, output=f"No process found on port {port}"
            )

        names: dict[int, str] = {}
        targets: list[psutil.Process] = []
        problems: list[str] = []

        for pid in sorted(pids):
            try:
                proc = psutil.Process(pid)
                names[pid] = proc.name()
                proc.terminate()
                targets.append(proc)
                logger.info("Terminating process on port", port=port, pid=pid, name=names[pid])
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                problems.append(f"Failed to terminate pid {pid}: access denied")
                logger.warning("Access denied terminating process", port=port, pid=pid)

        _gone, alive = psutil.wait_procs(targets, timeout=self.kill_timeout)
        killed = {proc.pid for proc in alive}

        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                killed.discard(proc.pid)
            except psutil.AccessDenied:
                problems.append(f"Failed to kill pid {proc.pid}: access denied")

        if alive:
            _gone, still_alive = psutil.wait_procs(alive, timeout=self.kill_timeout)
            problems.extend(f"Pid {proc.pid} is still running" for proc in still_alive)

        report = [
            f"{'Killed' if proc.pid in killed else 'Terminated'} pid {proc.pid} ({names[proc.pid]})"
            for proc in targets
        ]
        output = "\n".join(report + problems)

        if problems:
            return PortKillResult(
                success=False,
                port=port,
                error=f"Could not stop every process on port {port}",
                output=output,
            )
        return PortKillResult(success=True, port=port, output=output)
