"""Filesystem tools confined to a workspace directory."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from butler.models import ToolContext
from butler.tools.base import Tool

_MAX_READ_CHARS = 20_000


def resolve_in_workspace(root: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``root``; raise ValueError if it escapes."""

    root = root.resolve()
    candidate = (root / relative.lstrip("/")).resolve()
    if candidate != root and root not in candidate.parents:
        raise ValueError(f"Path '{relative}' is outside the workspace")
    return candidate


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a text file from the workspace."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
        "additionalProperties": False,
    }

    def __init__(self, root: Path) -> None:
        self._root = root

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        path = resolve_in_workspace(self._root, kwargs["path"])
        if not path.is_file():
            return {"error": f"No such file: {kwargs['path']}"}
        text = path.read_text(errors="replace")
        return {"content": text[:_MAX_READ_CHARS], "truncated": len(text) > _MAX_READ_CHARS}


class WriteFileTool(Tool):
    name = "write_file"
    description = "Write (overwrite) a text file in the workspace, creating directories as needed."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    }

    def __init__(self, root: Path) -> None:
        self._root = root

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        path = resolve_in_workspace(self._root, kwargs["path"])
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(kwargs["content"])
        return {"info": f"Wrote {len(kwargs['content'])} characters to {kwargs['path']}"}


class ListDirectoryTool(Tool):
    name = "list_directory"
    description = "List files and directories in a workspace directory."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "additionalProperties": False,
    }

    def __init__(self, root: Path) -> None:
        self._root = root

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        path = resolve_in_workspace(self._root, kwargs.get("path") or ".")
        if not path.is_dir():
            return {"error": f"No such directory: {kwargs.get('path') or '.'}"}
        entries = sorted(p.name + ("/" if p.is_dir() else "") for p in path.iterdir())
        return {"entries": entries}
