"""Input validation for workspace identity and workspace-relative paths."""

from __future__ import annotations

import re
from pathlib import PurePosixPath

# Pattern for valid IDs: alphanumeric, underscores, hyphens only
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

WINDOWS_DRIVE_PATTERN = re.compile(r"^[a-zA-Z]:")


class ValidationError(ValueError):
    """Raised when input validation fails."""


class WorkspaceIdError(ValidationError):
    """Raised when no workspace id can be derived from a connection."""


class PathValidationError(ValidationError):
    """Raised when a path would escape the workspace root."""


def validate_workspace_id(workspace_id: str) -> str:
    """Validate that a workspace ID contains only safe characters.

    Raises:
        WorkspaceIdError: If the ID is empty or contains unsafe characters
    """
    if not workspace_id:
        raise WorkspaceIdError("Invalid workspace_id: cannot be empty")

    if not SAFE_ID_PATTERN.match(workspace_id):
        raise WorkspaceIdError("Invalid workspace_id: contains unsafe characters")

    return workspace_id


def workspace_id_from_host(host: str | None) -> str:
    """Derive the workspace id from the first label of a target host.

    ``abc123.runner.example.dev:443`` addresses workspace ``abc123``.

    Raises:
        WorkspaceIdError: If the host is missing or its first label is unusable
    """
    if not host:
        raise WorkspaceIdError("Connection has no target host")

    hostname = host.strip()
    # Drop the port, but leave bracketed IPv6 literals alone (they fail validation below)
    if not hostname.startswith("["):
        hostname = hostname.split(":", 1)[0]

    return validate_workspace_id(hostname.split(".", 1)[0])


def normalize_relative_path(path: str | None, *, allow_root: bool = False) -> str:
    """Normalize a client-supplied workspace path.

    The result is relative, uses forward slashes, and has no ``.`` or ``..``
    segments. An empty result denotes the workspace root.

    Args:
        path: Path as sent by the client
        allow_root: Whether the workspace root itself is an acceptable target

    Returns:
        The normalized relative path

    Raises:
        PathValidationError: If the path is absolute, traverses upward, has a
            segment padded with whitespace, or is the root when the root is not
            allowed
    """
    if path is None:
        path = ""
    if not isinstance(path, str):
        raise PathValidationError("Path must be a string")
    if "\x00" in path:
        raise PathValidationError("Path contains a null byte")

    candidate = path.replace("\\", "/")
    if candidate.startswith("/") or WINDOWS_DRIVE_PATTERN.match(candidate):
        raise PathValidationError(f"Absolute paths are not allowed: {path}")

    parts: list[str] = []
    for part in PurePosixPath(candidate).parts:
        if part in ("", "."):
            continue
        if part == "..":
            raise PathValidationError(f"Path traversal is not allowed: {path}")
        if part != part.strip():
            raise PathValidationError(f"Whitespace around a path segment: {path!r}")
        parts.append(part)

    normalized = "/".join(parts)
    if not normalized and not allow_root:
        raise PathValidationError("Path must not be the workspace root")

    return normalized
