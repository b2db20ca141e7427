"""Federates tools from many external providers into one namespace."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from butler.config import ProviderConfig
from butler.errors import ProviderConnectError, ProviderUnavailable, ToolNotFound
from butler.models import ProviderState, ToolDescriptor
from butler.providers.connection import ProviderConnection, open_connection

LOGGER = logging.getLogger(__name__)

Connector = Callable[[str, ProviderConfig], Awaitable[ProviderConnection]]


@dataclass(frozen=True, slots=True)
class FederatedManifest:
    """Immutable snapshot of every federated tool and its owning provider."""

    tools: tuple[ToolDescriptor, ...] = ()
    owners: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, name: str) -> ToolDescriptor | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


class FederationRegistry:
    """Owns provider connections and the name -> provider index.

    Created at startup and closed at shutdown. ``refresh`` builds a new
    manifest off to the side and swaps it in with a single assignment, so
    ``dispatch`` always sees a complete index.
    """

    def __init__(self, connector: Connector | None = None) -> None:
        self._connector = connector or open_connection
        self._connections: dict[str, ProviderConnection] = {}
        self._manifest = FederatedManifest()

    @property
    def manifest(self) -> FederatedManifest:
        return self._manifest

    @property
    def connections(self) -> Mapping[str, ProviderConnection]:
        return MappingProxyType(self._connections)

    async def start(self, configs: Mapping[str, ProviderConfig]) -> FederatedManifest:
        """Connect every configured provider, omitting those that fail."""

        # Sequential on purpose: transports must be closed by the task that opened them.
        for provider_id, config in configs.items():
            LOGGER.info("Connecting to provider %s (%s)", provider_id, config.transport)
            try:
                connection = await self._connector(provider_id, config)
            except ProviderConnectError as exc:
                LOGGER.error("%s", exc)
                continue
            except Exception:  # noqa: BLE001
                LOGGER.exception("Unexpected error connecting provider %s", provider_id)
                continue
            self.add(connection)
        return await self.refresh()

    def add(self, connection: ProviderConnection) -> None:
        self._connections[connection.provider_id] = connection

    async def refresh(self) -> FederatedManifest:
        connected = [c for c in self._connections.values() if c.state is ProviderState.CONNECTED]
        listings = await asyncio.gather(*(c.list_tools() for c in connected), return_exceptions=True)

        tools: list[ToolDescriptor] = []
        owners: dict[str, str] = {}
        for connection, listing in zip(connected, listings):
            if isinstance(listing, BaseException):
                LOGGER.error("Failed to list tools for %s: %s", connection.provider_id, listing)
                continue
            for tool in listing:
                if tool.name in owners:
                    LOGGER.warning(
                        "Tool %s from %s shadowed by %s",
                        tool.name,
                        connection.provider_id,
                        owners[tool.name],
                    )
                    continue
                owners[tool.name] = connection.provider_id
                tools.append(tool)

        self._manifest = FederatedManifest(tools=tuple(tools), owners=MappingProxyType(owners))
        LOGGER.info("Federated manifest refreshed: %d tools from %d providers", len(tools), len(connected))
        return self._manifest

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> Any:
        """Call a federated tool by exact name."""

        manifest = self._manifest
        provider_id = manifest.owners.get(name)
        if provider_id is None:
            raise ToolNotFound(name)
        connection = self._connections.get(provider_id)
        if connection is None or connection.state is not ProviderState.CONNECTED:
            raise ProviderUnavailable(f"Provider '{provider_id}' for tool '{name}' is unavailable")
        return await connection.call(name, arguments)

    async def close(self) -> None:
        for provider_id, connection in list(self._connections.items()):
            try:
                await connection.close()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to close provider %s", provider_id)
        self._connections.clear()
        self._manifest = FederatedManifest()
