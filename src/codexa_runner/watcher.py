"""Workspace file watcher for out-of-band changes.

Catches writes that did not go through the filesystem gateway (build output,
files created from the terminal, git checkouts) and mirrors them to object
storage once the path has been quiet for the debounce window.
"""

import asyncio
import contextlib
import os
import stat
from pathlib import Path
from typing import Any

import structlog
from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .storage import WorkspaceSync

logger = structlog.get_logger()

# Debounce interval in seconds (changes to one path within this window collapse)
DEFAULT_DEBOUNCE = 1.0

DEFAULT_MAX_FILE_BYTES = 5 * 1024 * 1024

OBSERVER_JOIN_TIMEOUT = 5.0

SYNC_EVENT_TYPES = {
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MOVED,
    EVENT_TYPE_CLOSED,
}


class WorkspaceEventHandler(FileSystemEventHandler):
    """Forwards relevant watchdog events to the watcher."""

    def __init__(self, watcher: "WorkspaceWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in SYNC_EVENT_TYPES:
            return

        # A directory "modified" only means its entries changed; the entries report themselves
        if event.is_directory and event.event_type == EVENT_TYPE_MODIFIED:
            return

        self.watcher.queue_change(str(event.src_path))
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            self.watcher.queue_change(str(dest_path))


class WorkspaceWatcher:
    """Watches one workspace root and syncs debounced changes.

    Timers are per path and owned by this watcher, so stopping it guarantees
    nothing fires afterwards for this session.
    """

    def __init__(
        self,
        root: Path,
        sync: WorkspaceSync,
        debounce: float = DEFAULT_DEBOUNCE,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        ignore: list[str] | None = None,
    ) -> None:
        self.root = Path(root)
        self.sync = sync
        self.debounce = debounce
        self.max_file_bytes = max_file_bytes
        self.ignore = set(ignore or [])

        self.observer: Any = None  # Observer type not recognized by mypy
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None

        # relative path -> pending debounce timer
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Number of paths waiting out their debounce window."""
        return len(self._timers)

    def is_ignored(self, relative: str) -> bool:
        """Hidden entries, VCS internals, and dependency directories are noise."""
        return any(part.startswith(".") or part in self.ignore for part in relative.split("/"))

    async def start(self) -> None:
        """Start watching the workspace root recursively."""
        if self._running:
            return

        self._loop = asyncio.get_running_loop()

        observer = Observer()
        observer.schedule(WorkspaceEventHandler(self), str(self.root), recursive=True)
        observer.start()

        self.observer = observer
        self._running = True

        logger.info("Started workspace watcher", root=str(self.root))

    async def stop(self) -> None:
        """Cancel pending timers and stop the observer.

        Syncs that already started are left to finish in the background.
        """
        self._running = False

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self.observer:
            observer = self.observer
            self.observer = None
            observer.stop()
            await asyncio.to_thread(observer.join, OBSERVER_JOIN_TIMEOUT)

        logger.info("Workspace watcher stopped", root=str(self.root))

    async def wait_idle(self, timeout: float) -> None:
        """Wait for in-flight syncs, bounded by timeout."""
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Workspace syncs still running", root=str(self.root), count=len(pending))

    def queue_change(self, src_path: str) -> None:
        """Queue a changed path. Called from the watchdog thread."""
        try:
            relative = Path(src_path).relative_to(self.root).as_posix()
        except ValueError:
            return

        if relative in ("", ".") or self.is_ignored(relative):
            return

        # Thread-safe: schedule on event loop
        if self._loop and self._running:
            with contextlib.suppress(RuntimeError):  # loop already closed
                self._loop.call_soon_threadsafe(self._schedule, relative)

    def _schedule(self, relative: str) -> None:
        """(Re)arm the debounce timer for a path (must be called from event loop)."""
        if not self._running or self._loop is None:
            return

        existing = self._timers.pop(relative, None)
        if existing:
            existing.cancel()

        self._timers[relative] = self._loop.call_later(self.debounce, self._fire, relative)

    def _fire(self, relative: str) -> None:
        self._timers.pop(relative, None)
        if not self._running or self._loop is None:
            return

        task = self._loop.create_task(self._sync_path(relative))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _sync_path(self, relative: str) -> None:
        """Mirror the current state of one path to object storage."""
        local = self.root / relative

        try:
            state = await asyncio.to_thread(_lstat, local)
        except OSError as e:
            logger.warning("Failed to inspect changed path", path=relative, error=str(e))
            return

        if state is None:
            logger.debug("Syncing out-of-band delete", path=relative)
            await self.sync.remove_path(relative)
            return

        if stat.S_ISDIR(state.st_mode):
            await self.sync.push_folder(relative)
            return

        if not stat.S_ISREG(state.st_mode):
            # Links, fifos, sockets and devices are never uploaded
            logger.debug("Skipping special file", path=relative, mode=oct(state.st_mode))
            return

        if state.st_size > self.max_file_bytes:
            logger.info(
                "Skipping large file",
                path=relative,
                size=state.st_size,
                max_bytes=self.max_file_bytes,
            )
            return

        await self.sync.push_local_file(relative, local)


def _lstat(local: Path) -> os.stat_result | None:
    """Stat a path without following a final symlink, None when it is gone."""
    try:
        return local.lstat()
    except FileNotFoundError:
        return None
