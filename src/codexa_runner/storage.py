"""S3 mirror of a workspace and the sync adapter that feeds it.

Every workspace owns the keys under ``<s3_prefix>/<workspace_id>/``. A file
at ``src/app.py`` is the object ``<prefix>/src/app.py``; a directory is an
empty marker object whose key ends in ``/``.
"""

from __future__ import annotations

import asyncio
import errno
import hashlib
import mimetypes
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aioboto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from .config import RunnerConfig

logger = structlog.get_logger()

SYNC_ERRORS = (ClientError, BotoCoreError, OSError)

# delete_objects accepts at most this many keys per call
DELETE_BATCH = 1000


class WorkspaceBucket:
    """The slice of an S3 bucket that mirrors one workspace.

    Paths are workspace-relative and already validated. Works against AWS S3
    and S3-compatible endpoints (LocalStack, MinIO).
    """

    def __init__(
        self,
        bucket: str,
        workspace_id: str,
        prefix: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
    ) -> None:
        self.bucket = bucket
        self.workspace_id = workspace_id
        self.prefix = prefix.strip("/")
        self.region = region
        self.endpoint_url = endpoint_url
        self._session = aioboto3.Session()

    @classmethod
    def from_config(cls, config: RunnerConfig, workspace_id: str) -> WorkspaceBucket | None:
        """Bucket slice for a workspace, None when no bucket is configured."""
        if not config.s3_bucket:
            return None
        return cls(
            bucket=config.s3_bucket,
            workspace_id=workspace_id,
            prefix=config.remote_prefix(workspace_id),
            region=config.aws_region,
            endpoint_url=config.aws_endpoint,
        )

    def key_for(self, path: str, *, folder: bool = False) -> str:
        """Object key mirroring a workspace path. Folder keys end with a slash."""
        key = f"{self.prefix}/{path}" if path else self.prefix
        return f"{key}/" if folder else key

    def _client(self) -> Any:
        return self._session.client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
        )

    async def upload_file(self, path: str, content: bytes, digest: str) -> str:
        """Store file content, tagged with its workspace and sha256.

        Returns:
            The object key written
        """
        key = self.key_for(path)
        content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"

        async with self._client() as s3:
            await s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
                Metadata={"workspace-id": self.workspace_id, "sha256": digest},
            )
        return key

    async def upload_folder(self, path: str) -> str:
        """Write the empty marker object that stands in for a directory."""
        key = self.key_for(path, folder=True)

        async with self._client() as s3:
            await s3.put_object(Bucket=self.bucket, Key=key, Body=b"")
        return key

    async def delete_file(self, path: str) -> None:
        """Delete a file's object. A missing object is not an error."""
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=self.key_for(path))

    async def delete_folder(self, path: str) -> int:
        """Delete a directory's marker and every object beneath it.

        Keys S3 refuses to delete are logged and left out of the count.

        Returns:
            Number of objects deleted
        """
        folder_key = self.key_for(path, folder=True)
        deleted = 0

        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=folder_key):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                for start in range(0, len(keys), DELETE_BATCH):
                    batch = keys[start : start + DELETE_BATCH]
                    response = await s3.delete_objects(
                        Bucket=self.bucket, Delete={"Objects": batch, "Quiet": True}
                    )
                    errors = response.get("Errors", [])
                    if errors:
                        logger.warning(
                            "Objects left behind by folder delete",
                            workspace_id=self.workspace_id,
                            path=path,
                            keys=[error.get("Key") for error in errors],
                        )
                    deleted += len(batch) - len(errors)

        return deleted


def read_regular_file(local: Path) -> bytes | None:
    """Read a regular file without following a final symlink.

    Returns None for links, fifos, sockets and devices. The open never
    blocks, so a fifo that appeared under the path cannot stall the caller.
    """
    flags = os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK
    try:
        fd = os.open(local, flags)
    except OSError as e:
        # ELOOP: the final component is a symlink. ENXIO: a fifo with no writer.
        if e.errno in (errno.ELOOP, errno.ENXIO):
            return None
        raise

    with os.fdopen(fd, "rb") as f:
        if not stat.S_ISREG(os.fstat(f.fileno()).st_mode):
            return None
        return f.read()


class WorkspaceSync:
    """Mirrors local workspace mutations into object storage.

    Every method is safe to call repeatedly with the same arguments, logs
    storage failures, and never raises them to the caller. The local
    filesystem stays the record of truth.
    """

    def __init__(self, storage: WorkspaceBucket | None, workspace_id: str = "") -> None:
        self.storage = storage
        self.workspace_id = workspace_id
        # relative path -> sha256 of the last content pushed for it
        self._digests: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: RunnerConfig, workspace_id: str) -> WorkspaceSync:
        """Build the adapter for a workspace, disabled when no bucket is set."""
        return cls(WorkspaceBucket.from_config(config, workspace_id), workspace_id)

    @property
    def enabled(self) -> bool:
        return self.storage is not None

    def is_current(self, path: str, content: bytes) -> bool:
        """Whether this exact content was the last thing pushed for path."""
        return self._digests.get(path) == _digest(content)

    async def push_file(self, path: str, content: bytes | str) -> bool:
        """Push file content to ``<prefix>/<path>``.

        Returns:
            True if an upload happened
        """
        if self.storage is None:
            return False

        if isinstance(content, str):
            content = content.encode("utf-8")

        digest = _digest(content)
        if self._digests.get(path) == digest:
            logger.debug("Skipping unchanged file", workspace_id=self.workspace_id, path=path)
            return False

        try:
            await self.storage.upload_file(path, content, digest)
        except SYNC_ERRORS as e:
            logger.warning(
                "Failed to sync file", workspace_id=self.workspace_id, path=path, error=str(e)
            )
            return False

        self._digests[path] = digest
        logger.debug("Synced file", workspace_id=self.workspace_id, path=path, size=len(content))
        return True

    async def push_local_file(self, path: str, local_path: Path) -> bool:
        """Read a local regular file and push it. Links and special files are skipped."""
        if self.storage is None:
            return False

        try:
            content = await asyncio.to_thread(read_regular_file, local_path)
        except OSError as e:
            logger.warning(
                "Failed to read file for sync",
                workspace_id=self.workspace_id,
                path=path,
                error=str(e),
            )
            return False

        if content is None:
            logger.debug("Skipping non-regular file", workspace_id=self.workspace_id, path=path)
            return False

        return await self.push_file(path, content)

    async def push_tree(self, path: str, local_dir: Path) -> int:
        """Push every file and directory marker beneath a local directory.

        Returns:
            Number of files uploaded
        """
        if self.storage is None:
            return 0

        await self.push_folder(path)
        entries = await asyncio.to_thread(_walk, local_dir)

        uploaded = 0
        for relative, is_dir in entries:
            child = f"{path}/{relative}"
            if is_dir:
                await self.push_folder(child)
            elif await self.push_local_file(child, local_dir / relative):
                uploaded += 1
        return uploaded

    async def push_folder(self, path: str) -> bool:
        """Write the folder marker for path."""
        if self.storage is None:
            return False

        try:
            await self.storage.upload_folder(path)
        except SYNC_ERRORS as e:
            logger.warning(
                "Failed to sync folder", workspace_id=self.workspace_id, path=path, error=str(e)
            )
            return False

        logger.debug("Synced folder", workspace_id=self.workspace_id, path=path)
        return True

    async def remove_file(self, path: str) -> bool:
        """Delete the object mirroring a file."""
        self._digests.pop(path, None)
        if self.storage is None:
            return False

        try:
            await self.storage.delete_file(path)
        except SYNC_ERRORS as e:
            logger.warning(
                "Failed to delete remote file",
                workspace_id=self.workspace_id,
                path=path,
                error=str(e),
            )
            return False

        logger.debug("Deleted remote file", workspace_id=self.workspace_id, path=path)
        return True

    async def remove_folder(self, path: str) -> bool:
        """Delete every object under a folder's prefix."""
        prefix = f"{path}/"
        for key in [k for k in self._digests if k.startswith(prefix)]:
            del self._digests[key]

        if self.storage is None:
            return False

        try:
            count = await self.storage.delete_folder(path)
        except SYNC_ERRORS as e:
            logger.warning(
                "Failed to delete remote folder",
                workspace_id=self.workspace_id,
                path=path,
                error=str(e),
            )
            return False

        logger.debug(
            "Deleted remote folder", workspace_id=self.workspace_id, path=path, count=count
        )
        return True

    async def remove_path(self, path: str) -> bool:
        """Delete whatever mirrors path when its kind is no longer known."""
        file_removed = await self.remove_file(path)
        folder_removed = await self.remove_folder(path)
        return file_removed and folder_removed


def _digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _walk(root: Path) -> list[tuple[str, bool]]:
    entries: list[tuple[str, bool]] = []
    for entry in sorted(root.rglob("*")):
        if entry.is_symlink():
            continue
        entries.append((entry.relative_to(root).as_posix(), entry.is_dir()))
    return entries
