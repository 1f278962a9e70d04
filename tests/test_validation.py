"""Tests for workspace id and path validation."""

import pytest

from codexa_runner.validation import (
    PathValidationError,
    WorkspaceIdError,
    normalize_relative_path,
    validate_workspace_id,
    workspace_id_from_host,
)


class TestWorkspaceIdFromHost:
    """Tests for deriving the workspace id from the addressed host."""

    @pytest.mark.parametrize(
        ("host", "expected"),
        [
            ("abc123.runner.codexa.dev", "abc123"),
            ("abc123.runner.codexa.dev:443", "abc123"),
            ("my-repl_1.localhost:3001", "my-repl_1"),
            ("localhost:3001", "localhost"),
        ],
    )
    def test_first_label(self, host: str, expected: str) -> None:
        """Test the first label before the first dot is the id."""
        assert workspace_id_from_host(host) == expected

    @pytest.mark.parametrize("host", [None, "", ".runner.codexa.dev", "[::1]:3001", "a b.dev"])
    def test_unusable_hosts(self, host: str | None) -> None:
        """Test hosts without a usable first label are rejected."""
        with pytest.raises(WorkspaceIdError):
            workspace_id_from_host(host)

    def test_validate_workspace_id_rejects_traversal(self) -> None:
        """Test ids that could escape a templated directory are rejected."""
        with pytest.raises(WorkspaceIdError):
            validate_workspace_id("../etc")


class TestNormalizeRelativePath:
    """Tests for relative path normalization."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("src/lib/a.txt", "src/lib/a.txt"),
            ("./src//lib/", "src/lib"),
            ("src\\lib\\a.txt", "src/lib/a.txt"),
        ],
    )
    def test_normalizes(self, path: str, expected: str) -> None:
        """Test paths come back relative with forward slashes."""
        assert normalize_relative_path(path) == expected

    @pytest.mark.parametrize(
        "path",
        [
            "/etc/passwd",
            "\\windows\\system32",
            "C:/Users",
            "../outside",
            "src/../../outside",
            "src/..",
            "a\x00b",
        ],
    )
    def test_rejects_escapes(self, path: str) -> None:
        """Test absolute and traversing paths are rejected."""
        with pytest.raises(PathValidationError):
            normalize_relative_path(path)

    @pytest.mark.parametrize("path", ["a.txt ", " src/a.txt", "src /a.txt", "src/\ta.txt", "   "])
    def test_rejects_padded_segments(self, path: str) -> None:
        """Test names with surrounding whitespace are refused rather than rewritten."""
        with pytest.raises(PathValidationError):
            normalize_relative_path(path, allow_root=True)

    def test_inner_spaces_kept(self) -> None:
        """Test spaces inside a name are ordinary characters."""
        assert normalize_relative_path("my docs/read me.md") == "my docs/read me.md"

    def test_root_only_when_allowed(self) -> None:
        """Test the workspace root is only accepted when asked for."""
        assert normalize_relative_path("", allow_root=True) == ""
        assert normalize_relative_path(None, allow_root=True) == ""
        assert normalize_relative_path(".", allow_root=True) == ""

        with pytest.raises(PathValidationError):
            normalize_relative_path("")

    def test_rejects_non_string(self) -> None:
        """Test non-string paths are rejected."""
        with pytest.raises(PathValidationError):
            normalize_relative_path(42)  # type: ignore[arg-type]
