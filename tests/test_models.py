"""Tests for wire models."""

import pytest
from pydantic import ValidationError

from codexa_runner.models import (
    CreateFilePayload,
    FileNode,
    MovePayload,
    OperationResult,
    PortKillResult,
    RenamePayload,
)


class TestFileNode:
    """Tests for tree node serialization."""

    def test_listing_node_has_no_content(self) -> None:
        """Test listing nodes carry identity but neither content nor children."""
        node = FileNode(id="a1", parent_id=None, name="a.txt", path="a.txt", depth=0, type="file")

        assert node.to_wire() == {
            "id": "a1",
            "parentId": None,
            "name": "a.txt",
            "path": "a.txt",
            "depth": 0,
            "type": "file",
        }

    def test_tree_node_nests_children(self) -> None:
        """Test the initial tree serializes children recursively with camelCase keys."""
        child = FileNode(
            id="b2",
            parent_id="a1",
            name="main.py",
            path="src/main.py",
            depth=1,
            type="file",
            content="",
        )
        node = FileNode(
            id="a1", parent_id=None, name="src", path="src", depth=0, type="dir", children=[child]
        )

        data = node.to_wire()

        assert data["children"][0]["parentId"] == "a1"
        assert data["children"][0]["content"] == ""
        assert node.is_dir is True


class TestOperationResult:
    """Tests for gateway results."""

    def test_ok_hides_content(self) -> None:
        """Test content never appears inside the ack dict."""
        assert OperationResult.ok("data").to_wire() == {"success": True}

    def test_fail(self) -> None:
        """Test failures carry the reason."""
        assert OperationResult.fail("nope").to_wire() == {"success": False, "error": "nope"}


class TestPayloads:
    """Tests for inbound payload parsing."""

    def test_rename_aliases(self) -> None:
        """Test camelCase keys from the client populate the fields."""
        payload = RenamePayload.model_validate({"oldPath": "a.txt", "newPath": "b.txt"})
        assert (payload.old_path, payload.new_path) == ("a.txt", "b.txt")

    def test_move_requires_both_paths(self) -> None:
        """Test a move without a target is rejected."""
        with pytest.raises(ValidationError):
            MovePayload.model_validate({"sourcePath": "a.txt"})

    def test_create_file_content_optional(self) -> None:
        """Test files may be created without content."""
        assert CreateFilePayload.model_validate({"path": "a.txt"}).content is None

    def test_kill_result_wire(self) -> None:
        """Test unset optional fields are omitted."""
        result = PortKillResult(success=True, port=3000, output="No process found on port 3000")
        assert result.to_wire() == {
            "success": True,
            "port": 3000,
            "output": "No process found on port 3000",
        }
