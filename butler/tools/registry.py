"""Registry of built-in tools with schema validation."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError, create_model

from butler.models import ToolContext, ToolDescriptor
from butler.tools.base import Tool


class ToolRegistry:
    """Explicit registry of built-in capability handlers, keyed by exact name."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def register_all(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def descriptors(self) -> list[ToolDescriptor]:
        return [tool.descriptor() for tool in self._tools.values()]

    async def execute(self, context: ToolContext, tool_name: str, arguments: dict[str, Any]) -> Any:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise KeyError(f"Unknown tool: {tool_name}")

        validated = _validate_json_schema(tool.parameters_schema, arguments)
        return await tool.run(context, **validated)


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[Any, Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        if name in required:
            fields[name] = (typ, ...)
        else:
            fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
