"""Tool executor: resolves a tool name to a built-in or federated handler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal, Mapping

from butler.db import Database
from butler.errors import ProviderCallError, ToolExecutionError, ToolNotFound
from butler.models import ToolContext, ToolDescriptor
from butler.providers.federation import FederationRegistry
from butler.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

BUILTIN = "builtin"
FEDERATED = "federated"


@dataclass(frozen=True, slots=True)
class Capability:
    kind: Literal["builtin", "federated"]
    descriptor: ToolDescriptor


@dataclass(frozen=True, slots=True)
class CapabilityTable:
    """Name -> capability, built once per refresh. Built-ins always win."""

    entries: Mapping[str, Capability]

    @classmethod
    def build(cls, builtins: list[ToolDescriptor], federated: tuple[ToolDescriptor, ...] = ()) -> "CapabilityTable":
        entries: dict[str, Capability] = {d.name: Capability(BUILTIN, d) for d in builtins}
        for descriptor in federated:
            if descriptor.name in entries:
                LOGGER.info(
                    "Federated tool %s from %s hidden by built-in",
                    descriptor.name,
                    descriptor.provider_id,
                )
                continue
            entries[descriptor.name] = Capability(FEDERATED, descriptor)
        return cls(entries=MappingProxyType(entries))

    def get(self, name: str) -> Capability | None:
        return self.entries.get(name)

    def tool_specs(self) -> list[dict[str, Any]]:
        return [capability.descriptor.to_spec() for capability in self.entries.values()]


class ToolExecutor:
    """Executes tool calls and normalises every outcome into an envelope.

    Successful calls return ``{"success": True, ...}``; anything the model
    can adapt to (unknown tool, bad arguments, tool or provider failure)
    returns ``{"error": "..."}``.
    """

    def __init__(self, builtins: ToolRegistry, federation: FederationRegistry, db: Database) -> None:
        self._builtins = builtins
        self._federation = federation
        self._db = db
        self._table = CapabilityTable.build(builtins.descriptors(), federation.manifest.tools)

    @property
    def table(self) -> CapabilityTable:
        return self._table

    async def refresh(self) -> CapabilityTable:
        manifest = await self._federation.refresh()
        self._table = CapabilityTable.build(self._builtins.descriptors(), manifest.tools)
        return self._table

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        table = self._table
        capability = table.get(name)
        try:
            if capability is None:
                raise ToolNotFound(name)
            if capability.kind == BUILTIN:
                result = await self._run_builtin(name, arguments, context)
            else:
                result = await self._federation.dispatch(name, arguments)
        except (ToolNotFound, ToolExecutionError, ProviderCallError) as exc:
            LOGGER.warning("Tool %s failed: %s", name, exc)
            envelope: dict[str, Any] = {"error": str(exc)}
        else:
            envelope = to_envelope(result)

        self._db.log_tool_execution(context.chat_id, name, arguments, envelope, succeeded="error" not in envelope)
        return envelope

    async def _run_builtin(self, name: str, arguments: dict[str, Any], context: ToolContext) -> Any:
        try:
            return await self._builtins.execute(context, name, arguments)
        except Exception as exc:  # noqa: BLE001
            raise ToolExecutionError(f"Tool execution failed: {exc}") from exc


def to_envelope(result: Any) -> dict[str, Any]:
    if isinstance(result, dict):
        if "error" in result:
            return {"error": str(result["error"])}
        return {"success": True, **result}
    if result is None:
        return {"success": True, "info": "No output from tool execution."}
    return {"success": True, "result": result}
