"""Workspace filesystem gateway.

All client filesystem operations pass through ``WorkspaceFilesystem``. Paths
are validated before anything is touched, blocking I/O runs in worker
threads, and each mutation is mirrored to object storage after the local
change succeeds.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
from pathlib import Path

import structlog

from .models import FileNode, OperationResult
from .storage import WorkspaceSync
from .validation import PathValidationError, normalize_relative_path

logger = structlog.get_logger()


def node_id(parent_id: str | None, name: str) -> str:
    """Stable node identity derived from the parent's identity and the name."""
    return hashlib.sha1(f"{parent_id or ''}/{name}".encode()).hexdigest()[:16]  # noqa: S324


def path_id(path: str) -> str | None:
    """Identity of the node at a relative path, None for the root."""
    current: str | None = None
    for name in path.split("/") if path else []:
        current = node_id(current, name)
    return current


def describe_os_error(error: OSError, path: str) -> str:
    """Human readable reason for a failed filesystem call."""
    reason = error.strerror or error.__class__.__name__
    return f"{reason}: {path}"


class WorkspaceFilesystem:
    """Filesystem operations confined to one workspace root."""

    def __init__(
        self,
        root: Path,
        sync: WorkspaceSync,
        ignore: list[str] | None = None,
    ) -> None:
        self.root = Path(root)
        self.sync = sync
        self.ignore = set(ignore or [])

    def resolve(self, path: str | None, *, allow_root: bool = False) -> tuple[str, Path]:
        """Normalize a client path and map it to a local path under the root.

        Raises:
            PathValidationError: If the path is absolute, traverses upward, or
                resolves (through symlinks) outside the workspace root
        """
        relative = normalize_relative_path(path, allow_root=allow_root)
        local = self.root / relative if relative else self.root

        root = self.root.resolve()
        resolved = local.resolve()
        if resolved != root and not resolved.is_relative_to(root):
            raise PathValidationError(f"Path escapes the workspace: {path}")

        return relative, local

    # ============== Reads ==============

    async def list_dir(self, path: str | None = "") -> list[FileNode]:
        """List the immediate children of a directory, without content."""
        try:
            relative, local = self.resolve(path, allow_root=True)
            return await asyncio.to_thread(self._scan, relative, local)
        except (PathValidationError, OSError) as e:
            logger.warning("Failed to list directory", path=path, error=str(e))
            return []

    async def list_tree(self) -> list[FileNode]:
        """Recursive listing of the workspace root for the initial push.

        Directories nest their children and files carry empty content.
        Ignored directories are listed but not descended into.
        """
        try:
            return await asyncio.to_thread(self._scan_tree, "", self.root)
        except OSError as e:
            logger.warning("Failed to list workspace tree", root=str(self.root), error=str(e))
            return []

    async def read_file(self, path: str | None) -> OperationResult:
        """Read a file as text. Undecodable bytes are replaced."""
        try:
            relative, local = self.resolve(path)
        except PathValidationError as e:
            return OperationResult.fail(str(e))

        try:
            data = await asyncio.to_thread(local.read_bytes)
        except OSError as e:
            return OperationResult.fail(describe_os_error(e, relative))

        return OperationResult.ok(data.decode("utf-8", errors="replace"))

    # ============== Mutations ==============

    async def write_file(self, path: str | None, content: str) -> OperationResult:
        """Write content locally, creating parents, then push it remotely."""
        try:
            relative, local = self.resolve(path)
        except PathValidationError as e:
            return OperationResult.fail(str(e))

        data = content.encode("utf-8")
        try:
            await asyncio.to_thread(_write_bytes, local, data)
        except OSError as e:
            logger.warning("Failed to write file", path=relative, error=str(e))
            return OperationResult.fail(describe_os_error(e, relative))

        await self.sync.push_file(relative, data)
        return OperationResult.ok()

    async def create_file(self, path: str | None, content: str | None = None) -> OperationResult:
        """Create a file, empty unless content is given."""
        return await self.write_file(path, content or "")

    async def create_folder(self, path: str | None) -> OperationResult:
        try:
            relative, local = self.resolve(path)
        except PathValidationError as e:
            return OperationResult.fail(str(e))

        try:
            await asyncio.to_thread(local.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Failed to create folder", path=relative, error=str(e))
            return OperationResult.fail(describe_os_error(e, relative))

        await self.sync.push_folder(relative)
        return OperationResult.ok()

    async def rename(self, old_path: str | None, new_path: str | None) -> OperationResult:
        return await self._relocate(old_path, new_path, action="rename")

    async def move(self, source_path: str | None, target_path: str | None) -> OperationResult:
        return await self._relocate(source_path, target_path, action="move")

    async def delete(self, path: str | None) -> OperationResult:
        """Delete a file, or a directory and everything beneath it."""
        try:
            relative, local = self.resolve(path)
        except PathValidationError as e:
            return OperationResult.fail(str(e))

        try:
            is_dir = await asyncio.to_thread(_remove, local)
        except OSError as e:
            logger.warning("Failed to delete", path=relative, error=str(e))
            return OperationResult.fail(describe_os_error(e, relative))

        if is_dir:
            await self.sync.remove_folder(relative)
        else:
            await self.sync.remove_file(relative)
        return OperationResult.ok()

    async def _relocate(
        self, source: str | None, target: str | None, *, action: str
    ) -> OperationResult:
        """Rename or move an entry, then mirror it under the new key.

        The old remote key (or prefix, for directories) is deleted so the
        bucket never keeps both copies.
        """
        try:
            old_relative, old_local = self.resolve(source)
            new_relative, new_local = self.resolve(target)
        except PathValidationError as e:
            return OperationResult.fail(str(e))

        if old_relative == new_relative:
            return OperationResult.ok()
        if new_relative.startswith(f"{old_relative}/"):
            return OperationResult.fail(f"Cannot {action} a folder into itself: {old_relative}")

        try:
            is_dir = await asyncio.to_thread(_relocate, old_local, new_local)
        except FileExistsError:
            return OperationResult.fail(f"Destination already exists: {new_relative}")
        except OSError as e:
            logger.warning(
                "Failed to relocate",
                action=action,
                source=old_relative,
                target=new_relative,
                error=str(e),
            )
            return OperationResult.fail(describe_os_error(e, old_relative))

        if is_dir:
            await self.sync.push_tree(new_relative, new_local)
            await self.sync.remove_folder(old_relative)
        else:
            await self.sync.push_local_file(new_relative, new_local)
            await self.sync.remove_file(old_relative)
        return OperationResult.ok()

    # ============== Blocking helpers ==============

    def _scan(self, relative: str, local: Path) -> list[FileNode]:
        parent_id = path_id(relative)
        depth = relative.count("/") + 1 if relative else 0

        nodes = []
        with os.scandir(local) as entries:
            for entry in entries:
                child_path = f"{relative}/{entry.name}" if relative else entry.name
                nodes.append(
                    FileNode(
                        id=node_id(parent_id, entry.name),
                        parent_id=parent_id,
                        name=entry.name,
                        path=child_path,
                        depth=depth,
                        type="dir" if entry.is_dir() else "file",
                    )
                )

        nodes.sort(key=lambda node: (not node.is_dir, node.name.lower()))
        return nodes

    def _scan_tree(self, relative: str, local: Path) -> list[FileNode]:
        nodes = self._scan(relative, local)
        for node in nodes:
            if not node.is_dir:
                node.content = ""
                continue
            node.children = []
            child = self.root / node.path
            # Linked directories are listed but never descended into
            if node.name in self.ignore or child.is_symlink():
                continue
            try:
                node.children = self._scan_tree(node.path, child)
            except OSError as e:
                logger.debug("Skipping unreadable directory", path=node.path, error=str(e))
        return nodes


def _write_bytes(local: Path, data: bytes) -> None:
    local.parent.mkdir(parents=True, exist_ok=True)
    local.write_bytes(data)


def _remove(local: Path) -> bool:
    if local.is_dir() and not local.is_symlink():
        shutil.rmtree(local)
        return True
    local.unlink()
    return False


def _relocate(source: Path, target: Path) -> bool:
    if not source.exists() and not source.is_symlink():
        raise FileNotFoundError(2, "No such file or directory", str(source))
    if target.exists():
        raise FileExistsError(17, "File exists", str(target))

    target.parent.mkdir(parents=True, exist_ok=True)
    is_dir = source.is_dir() and not source.is_symlink()
    shutil.move(str(source), str(target))
    return is_dir
