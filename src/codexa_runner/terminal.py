"""Pseudo-terminal sessions.

One interactive login shell per connection, attached to a pty. Output is
read from the pty master with the event loop's reader callbacks and
delivered in order through a single pump task per terminal.
"""

import asyncio
import codecs
import contextlib
import fcntl
import inspect
import os
import pty
import shutil
import signal
import struct
import subprocess
import termios
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

OutputCallback = Callable[[str], Awaitable[None] | None]

READ_CHUNK_SIZE = 65536
MAX_INPUT_BYTES = 64 * 1024
DEFAULT_GRACE_PERIOD = 1.0

READY_BANNER = "\r\n\x1b[32mTerminal ready! Interactive mode enabled.\x1b[0m\r\n"
WORKSPACE_BANNER = "\x1b[36mWorkspace: {root}\x1b[0m\r\n"
UNEXPECTED_EXIT_NOTICE = (
    "\r\n\x1b[31mTerminal session ended unexpectedly. Reconnecting...\x1b[0m\r\n"
)
PROMPT = r"\[\033[01;32m\]\u@\h\[\033[00m\]:\[\033[01;34m\]\w\[\033[00m\]\$ "

# Exit by these signals is how terminals are shut down, not a crash
TERMINATION_SIGNALS = {signal.SIGHUP, signal.SIGTERM}


class TerminalError(RuntimeError):
    """Raised when a terminal process cannot be started."""


def _set_controlling_tty() -> None:
    """Make the pty (already on fd 0) the controlling terminal of the new session."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PseudoTerminal:
    """A shell process attached to a pty, owned by one session."""

    def __init__(
        self,
        session_key: str,
        workspace_id: str,
        cwd: Path,
        on_data: OutputCallback,
        *,
        shell: str = "bash",
        user: str = "coder",
        cols: int = 80,
        rows: int = 24,
    ) -> None:
        self.session_key = session_key
        self.workspace_id = workspace_id
        self.cwd = Path(cwd)
        self.on_data = on_data
        self.on_exit: Callable[["PseudoTerminal"], None] | None = None
        self.shell = shell
        self.user = user
        self.cols = cols
        self.rows = rows

        self.process: asyncio.subprocess.Process | None = None
        self.master_fd: int | None = None
        self.closing = False
        self.created_at = datetime.now(UTC)
        self.last_activity = datetime.now(UTC)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._output: asyncio.Queue[str | None] = asyncio.Queue()
        self._write_buffer = bytearray()
        self._pump_task: asyncio.Task[None] | None = None
        self._wait_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode if self.process else None

    def build_env(self) -> dict[str, str]:
        """Interactive login environment with color support forced on."""
        env = os.environ.copy()
        env.update(
            {
                "TERM": "xterm-256color",
                "COLORTERM": "truecolor",
                "FORCE_COLOR": "1",
                "CLICOLOR": "1",
                "CLICOLOR_FORCE": "1",
                "NPM_CONFIG_COLOR": "always",
                "PS1": PROMPT,
                "HOME": str(self.cwd),
                "USER": self.user,
                "SHELL": shutil.which(self.shell) or self.shell,
            }
        )
        return env

    async def spawn(self) -> None:
        """Start the shell and begin streaming its output.

        Raises:
            TerminalError: If the pty or the shell process cannot be created
        """
        self._loop = asyncio.get_running_loop()

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise TerminalError(f"Failed to allocate a pty: {e}") from e

        try:
            _set_window_size(slave_fd, self.cols, self.rows)
            os.set_blocking(master_fd, False)
            self.process = await asyncio.create_subprocess_exec(
                self.shell,
                "--login",
                "-i",
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(self.cwd),
                env=self.build_env(),
                start_new_session=True,
                preexec_fn=_set_controlling_tty,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise TerminalError(f"Failed to start {self.shell}: {e}") from e
        finally:
            os.close(slave_fd)

        self.master_fd = master_fd
        self._pump_task = asyncio.create_task(self._pump())

        self._output.put_nowait(READY_BANNER)
        self._output.put_nowait(WORKSPACE_BANNER.format(root=self.cwd))

        self._loop.add_reader(master_fd, self._on_readable)
        self._wait_task = asyncio.create_task(self._wait_exit())

        logger.info(
            "Terminal started",
            session_key=self.session_key,
            workspace_id=self.workspace_id,
            pid=self.process.pid,
            shell=self.shell,
        )

    def write(self, data: str) -> bool:
        """Forward input to the shell, buffering what the pty cannot take yet."""
        if self.master_fd is None or self.closing:
            return False

        self.last_activity = datetime.now(UTC)
        payload = data.encode("utf-8")

        # Keep ordering: once anything is buffered, everything after queues behind it
        if self._write_buffer:
            self._write_buffer.extend(payload)
            return True

        try:
            written = os.write(self.master_fd, payload)
        except BlockingIOError:
            written = 0
        except OSError as e:
            logger.warning("Terminal write failed", session_key=self.session_key, error=str(e))
            return False

        if written < len(payload):
            self._write_buffer.extend(payload[written:])
            if self._loop is not None:
                self._loop.add_writer(self.master_fd, self._flush)
        return True

    async def terminate(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        """SIGHUP the shell's process group, then SIGKILL it after the grace period.

        Interactive bash ignores SIGTERM, so the hangup is the polite signal.
        """
        self.closing = True
        process = self.process

        if process is not None and process.returncode is None:
            self._signal_group(signal.SIGHUP)
            try:
                await asyncio.wait_for(asyncio.shield(process.wait()), timeout=grace_period)
            except TimeoutError:
                logger.warning(
                    "Terminal did not exit after SIGHUP, killing",
                    session_key=self.session_key,
                    pid=process.pid,
                )
                self._signal_group(signal.SIGKILL)
                await process.wait()

        if self._wait_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._wait_task
        else:
            self._close()

    def _signal_group(self, sig: signal.Signals) -> None:
        if self.process is None:
            return
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                self.process.send_signal(sig)

    def _on_readable(self) -> None:
        if self.master_fd is None:
            return
        try:
            data = os.read(self.master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the last slave handle is gone
            self._remove_reader()
            return

        if not data:
            self._remove_reader()
            return

        text = self._decoder.decode(data)
        if text:
            self._output.put_nowait(text)

    def _drain(self) -> None:
        """Read whatever output is still buffered in the pty."""
        if self.master_fd is None:
            return
        while True:
            try:
                data = os.read(self.master_fd, READ_CHUNK_SIZE)
            except OSError:
                break
            if not data:
                break
            text = self._decoder.decode(data)
            if text:
                self._output.put_nowait(text)

        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._output.put_nowait(tail)

    def _flush(self) -> None:
        if self.master_fd is None:
            return
        try:
            written = os.write(self.master_fd, self._write_buffer)
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning("Terminal write failed", session_key=self.session_key, error=str(e))
            written = len(self._write_buffer)

        del self._write_buffer[:written]
        if not self._write_buffer and self._loop is not None:
            self._loop.remove_writer(self.master_fd)

    def _remove_reader(self) -> None:
        if self.master_fd is not None and self._loop is not None:
            self._loop.remove_reader(self.master_fd)

    def _close(self) -> None:
        if self.master_fd is None:
            return
        if self._loop is not None:
            self._loop.remove_reader(self.master_fd)
            self._loop.remove_writer(self.master_fd)
        with contextlib.suppress(OSError):
            os.close(self.master_fd)
        self.master_fd = None
        self._write_buffer.clear()

    async def _pump(self) -> None:
        """Deliver output chunks to the callback one at a time."""
        while True:
            chunk = await self._output.get()
            if chunk is None:
                return
            try:
                result = self.on_data(chunk)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Failed to deliver terminal output",
                    session_key=self.session_key,
                    error=str(e),
                )

    async def _wait_exit(self) -> None:
        assert self.process is not None
        returncode = await self.process.wait()

        self._drain()
        self._close()

        unexpected = (
            returncode != 0
            and not self.closing
            and returncode not in {-int(s) for s in TERMINATION_SIGNALS}
        )
        logger.info(
            "Terminal exited",
            session_key=self.session_key,
            pid=self.process.pid,
            returncode=returncode,
            unexpected=unexpected,
        )
        if unexpected:
            self._output.put_nowait(UNEXPECTED_EXIT_NOTICE)

        self._output.put_nowait(None)
        if self._pump_task is not None:
            await self._pump_task

        if self.on_exit is not None:
            self.on_exit(self)

    def info(self) -> dict[str, Any]:
        return {
            "session_key": self.session_key,
            "workspace_id": self.workspace_id,
            "pid": self.pid,
            "running": self.running,
            "exit_code": self.exit_code,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }


class TerminalManager:
    """Owns the terminal of every live session, keyed by connection id.

    At most one process answers to a session key: creating a terminal for a
    key that already has one tears the old process down first.
    """

    def __init__(
        self,
        shell: str = "bash",
        user: str = "coder",
        grace_period: float = DEFAULT_GRACE_PERIOD,
        cols: int = 80,
        rows: int = 24,
    ) -> None:
        self.shell = shell
        self.user = user
        self.grace_period = grace_period
        self.cols = cols
        self.rows = rows
        self.sessions: dict[str, PseudoTerminal] = {}
        self._lock = asyncio.Lock()
        self._teardowns: set[asyncio.Task[None]] = set()

    async def create(
        self,
        session_key: str,
        workspace_id: str,
        cwd: Path,
        on_data: OutputCallback,
    ) -> PseudoTerminal:
        """Spawn a shell for a session, replacing any existing one.

        Raises:
            TerminalError: If the shell cannot be started
        """
        async with self._lock:
            previous = self.sessions.pop(session_key, None)
            if previous is not None:
                logger.info(
                    "Replacing terminal", session_key=session_key, old_pid=previous.pid
                )
                self._schedule_teardown(previous)

            terminal = PseudoTerminal(
                session_key,
                workspace_id,
                cwd,
                on_data,
                shell=self.shell,
                user=self.user,
                cols=self.cols,
                rows=self.rows,
            )
            terminal.on_exit = self._on_exit
            await terminal.spawn()
            self.sessions[session_key] = terminal
            return terminal

    def write(self, session_key: str, data: str) -> bool:
        """Forward input to a session's terminal. Unknown sessions are ignored."""
        terminal = self.sessions.get(session_key)
        if terminal is None:
            logger.debug("Terminal input for unknown session", session_key=session_key)
            return False

        if len(data) > MAX_INPUT_BYTES or len(data.encode("utf-8")) > MAX_INPUT_BYTES:
            logger.warning(
                "Dropping oversized terminal input",
                session_key=session_key,
                size=len(data),
                max_bytes=MAX_INPUT_BYTES,
            )
            return False

        return terminal.write(data)

    async def destroy(self, session_key: str) -> bool:
        """Terminate a session's terminal. Absent sessions are a no-op.

        Waits for a create already in flight, so a shell spawned for the key
        is never left behind.
        """
        async with self._lock:
            terminal = self.sessions.pop(session_key, None)
            if terminal is None:
                return False

        await terminal.terminate(self.grace_period)
        logger.info("Terminal destroyed", session_key=session_key)
        return True

    def session_info(self) -> dict[str, Any]:
        return {
            "session_count": len(self.sessions),
            "session_ids": list(self.sessions),
        }

    async def shutdown(self) -> None:
        """Terminate every terminal, including ones already being replaced."""
        keys = list(self.sessions)
        await asyncio.gather(*(self.destroy(key) for key in keys), return_exceptions=True)
        if self._teardowns:
            await asyncio.gather(*self._teardowns, return_exceptions=True)
        logger.info("Terminal manager shut down", terminated=len(keys))

    def _schedule_teardown(self, terminal: PseudoTerminal) -> None:
        task = asyncio.create_task(terminal.terminate(self.grace_period))
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    def _on_exit(self, terminal: PseudoTerminal) -> None:
        # Only drop the entry if it still points at this process
        if self.sessions.get(terminal.session_key) is terminal:
            del self.sessions[terminal.session_key]
