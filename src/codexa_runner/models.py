"""Wire payloads, results, and workspace tree nodes."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

NodeType = Literal["file", "dir"]


class WireModel(BaseModel):
    """Base for models exchanged with clients using camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize with wire aliases, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class FileNode(WireModel):
    """A file or directory in the workspace tree.

    ``content`` is only populated for the initial push (as an empty string) or
    when explicitly fetched; listings never carry it.
    """

    id: str
    parent_id: str | None = Field(default=None, alias="parentId")
    name: str
    path: str
    depth: int
    type: NodeType
    content: str | None = None
    children: list[FileNode] | None = None

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude={"content", "children"})
        if self.content is not None:
            data["content"] = self.content
        if self.children is not None:
            data["children"] = [child.to_wire() for child in self.children]
        return data


class OperationResult(WireModel):
    """Outcome of a filesystem gateway operation."""

    success: bool
    error: str | None = None
    content: str | None = None

    @classmethod
    def ok(cls, content: str | None = None) -> OperationResult:
        return cls(success=True, content=content)

    @classmethod
    def fail(cls, error: str) -> OperationResult:
        return cls(success=False, error=error)

    def to_wire(self) -> dict[str, Any]:
        # content travels as the bare ack value, never inside the result
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"content"})


# ============== Inbound payloads ==============


class PathPayload(WireModel):
    path: str


class FileContentPayload(WireModel):
    path: str
    content: str = ""


class CreateFilePayload(WireModel):
    path: str
    content: str | None = None


class RenamePayload(WireModel):
    old_path: str = Field(alias="oldPath")
    new_path: str = Field(alias="newPath")


class MovePayload(WireModel):
    source_path: str = Field(alias="sourcePath")
    target_path: str = Field(alias="targetPath")


class TerminalInputPayload(WireModel):
    data: str


# ============== Port results ==============


class PortCheckResult(WireModel):
    """Probe outcome. ``available`` is True when nothing is listening."""

    port: int
    available: bool


class PortForwardResult(WireModel):
    success: bool
    port: int
    error: str | None = None
    url: str | None = None


class PortKillResult(WireModel):
    success: bool
    port: int
    error: str | None = None
    output: str | None = None
