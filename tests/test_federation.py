"""Tests for provider connections and the federation registry."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest
from mcp import types

from butler.config import ProviderConfig
from butler.errors import ProviderCallError, ProviderConnectError, ProviderUnavailable, ToolNotFound
from butler.models import ProviderState, ToolDescriptor
from butler.providers.connection import (
    ProviderConnection,
    SseProviderConnection,
    StdioProviderConnection,
    build_connection,
)
from butler.providers.federation import FederationRegistry

STDIO = ProviderConfig(transport="stdio", command="echo-server")


class FakeConnection:
    """Stands in for a live provider connection."""

    def __init__(self, provider_id: str, tools: list[str], fail_listing: bool = False) -> None:
        self.provider_id = provider_id
        self.state = ProviderState.CONNECTED
        self._tools = tools
        self._fail_listing = fail_listing
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.close_count = 0

    async def list_tools(self) -> list[ToolDescriptor]:
        if self._fail_listing:
            raise ProviderUnavailable("listing failed")
        return [
            ToolDescriptor(name=name, description=f"{name} from {self.provider_id}", parameters={}, provider_id=self.provider_id)
            for name in self._tools
        ]

    async def call(self, name: str, arguments: dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        return {"output": f"{self.provider_id}:{name}"}

    async def close(self) -> None:
        self.close_count += 1
        self.state = ProviderState.CLOSED


def _connector(connections: dict[str, FakeConnection]):
    async def connect(provider_id: str, config: ProviderConfig) -> FakeConnection:
        connection = connections[provider_id]
        if isinstance(connection, Exception):
            raise connection
        return connection

    return connect


# ---------------------------------------------------------------------------
# FederationRegistry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_merges_tools_and_first_provider_wins():
    alpha = FakeConnection("alpha", ["search", "fetch"])
    beta = FakeConnection("beta", ["search", "weather"])
    registry = FederationRegistry(connector=_connector({"alpha": alpha, "beta": beta}))

    manifest = await registry.start({"alpha": STDIO, "beta": STDIO})

    assert [t.name for t in manifest.tools] == ["search", "fetch", "weather"]
    assert dict(manifest.owners) == {"search": "alpha", "fetch": "alpha", "weather": "beta"}
    assert manifest.get("search").provider_id == "alpha"


@pytest.mark.asyncio
async def test_dispatch_routes_to_owning_provider_every_time():
    alpha = FakeConnection("alpha", ["search"])
    beta = FakeConnection("beta", ["search", "weather"])
    registry = FederationRegistry(connector=_connector({"alpha": alpha, "beta": beta}))
    await registry.start({"alpha": STDIO, "beta": STDIO})

    for _ in range(3):
        assert await registry.dispatch("search", {"q": "x"}) == {"output": "alpha:search"}
    assert await registry.dispatch("weather", {}) == {"output": "beta:weather"}
    assert len(alpha.calls) == 3
    assert beta.calls == [("weather", {})]


@pytest.mark.asyncio
async def test_failed_connection_is_omitted():
    alpha = FakeConnection("alpha", ["search"])
    registry = FederationRegistry(
        connector=_connector({"alpha": alpha, "broken": ProviderConnectError("broken", "spawn failed")})
    )

    manifest = await registry.start({"broken": STDIO, "alpha": STDIO})

    assert list(registry.connections) == ["alpha"]
    assert [t.name for t in manifest.tools] == ["search"]


@pytest.mark.asyncio
async def test_failed_listing_is_omitted_from_manifest():
    alpha = FakeConnection("alpha", ["search"])
    flaky = FakeConnection("flaky", ["weather"], fail_listing=True)
    registry = FederationRegistry(connector=_connector({"alpha": alpha, "flaky": flaky}))

    manifest = await registry.start({"alpha": STDIO, "flaky": STDIO})

    assert [t.name for t in manifest.tools] == ["search"]
    with pytest.raises(ToolNotFound):
        await registry.dispatch("weather", {})


@pytest.mark.asyncio
async def test_dispatch_unknown_tool_raises_not_found():
    registry = FederationRegistry(connector=_connector({}))
    await registry.start({})

    with pytest.raises(ToolNotFound, match="Unknown tool: nothing"):
        await registry.dispatch("nothing", {})


@pytest.mark.asyncio
async def test_dispatch_to_dropped_provider_raises_unavailable():
    alpha = FakeConnection("alpha", ["search"])
    registry = FederationRegistry(connector=_connector({"alpha": alpha}))
    await registry.start({"alpha": STDIO})

    alpha.state = ProviderState.DISCONNECTED

    with pytest.raises(ProviderUnavailable):
        await registry.dispatch("search", {})


@pytest.mark.asyncio
async def test_refresh_swaps_manifest_without_mutating_old_snapshot():
    alpha = FakeConnection("alpha", ["search"])
    registry = FederationRegistry(connector=_connector({"alpha": alpha}))
    old = await registry.start({"alpha": STDIO})

    alpha._tools = ["search", "summarise"]
    new = await registry.refresh()

    assert [t.name for t in old.tools] == ["search"]
    assert [t.name for t in new.tools] == ["search", "summarise"]
    assert registry.manifest is new
    with pytest.raises(TypeError):
        old.owners["summarise"] = "alpha"  # type: ignore[index]


@pytest.mark.asyncio
async def test_close_closes_every_connection_and_is_repeatable():
    alpha = FakeConnection("alpha", ["search"])
    beta = FakeConnection("beta", ["weather"])
    registry = FederationRegistry(connector=_connector({"alpha": alpha, "beta": beta}))
    await registry.start({"alpha": STDIO, "beta": STDIO})

    await registry.close()
    await registry.close()

    assert alpha.close_count == 1
    assert beta.close_count == 1
    assert registry.manifest.tools == ()


# ---------------------------------------------------------------------------
# ProviderConnection
# ---------------------------------------------------------------------------


def _connected(session: MagicMock) -> StdioProviderConnection:
    connection = StdioProviderConnection("alpha", STDIO, call_timeout_seconds=5)
    connection._session = session
    connection.state = ProviderState.CONNECTED
    return connection


def test_build_connection_picks_transport():
    assert isinstance(build_connection("a", STDIO), StdioProviderConnection)
    sse = ProviderConfig(transport="sse", url="http://localhost:8000/sse")
    assert isinstance(build_connection("b", sse), SseProviderConnection)


@pytest.mark.asyncio
async def test_close_before_connect_is_safe():
    connection = StdioProviderConnection("alpha", STDIO)

    await connection.close()
    await connection.close()

    assert connection.state is ProviderState.CLOSED


@pytest.mark.asyncio
async def test_connect_failure_raises_and_leaves_disconnected():
    class BrokenTransport(ProviderConnection):
        transport = "stdio"

        @asynccontextmanager
        async def _open_transport(self):  # noqa: ANN202
            raise OSError("executable not found")
            yield  # pragma: no cover

    connection = BrokenTransport("broken", STDIO)

    with pytest.raises(ProviderConnectError, match="executable not found"):
        await connection.connect()
    assert connection.state is ProviderState.DISCONNECTED


@pytest.mark.asyncio
async def test_list_tools_maps_input_schema():
    session = MagicMock()
    session.list_tools = AsyncMock(
        return_value=types.ListToolsResult(
            tools=[
                types.Tool(
                    name="weather",
                    description="Get weather",
                    inputSchema={"type": "object", "properties": {"city": {"type": "string"}}},
                )
            ]
        )
    )

    tools = await _connected(session).list_tools()

    assert tools == [
        ToolDescriptor(
            name="weather",
            description="Get weather",
            parameters={"type": "object", "properties": {"city": {"type": "string"}}},
            provider_id="alpha",
        )
    ]


@pytest.mark.asyncio
async def test_call_returns_text_output():
    session = MagicMock()
    session.call_tool = AsyncMock(
        return_value=types.CallToolResult(content=[types.TextContent(type="text", text="sunny")], isError=False)
    )

    assert await _connected(session).call("weather", {"city": "Lisbon"}) == {"output": "sunny"}


@pytest.mark.asyncio
async def test_call_error_result_raises_call_error():
    session = MagicMock()
    session.call_tool = AsyncMock(
        return_value=types.CallToolResult(content=[types.TextContent(type="text", text="bad city")], isError=True)
    )
    connection = _connected(session)

    with pytest.raises(ProviderCallError, match="bad city"):
        await connection.call("weather", {"city": "?"})
    assert connection.state is ProviderState.CONNECTED


@pytest.mark.asyncio
async def test_call_transport_drop_marks_disconnected():
    session = MagicMock()
    session.call_tool = AsyncMock(side_effect=anyio.ClosedResourceError())
    connection = _connected(session)

    with pytest.raises(ProviderUnavailable):
        await connection.call("weather", {})
    assert connection.state is ProviderState.DISCONNECTED


@pytest.mark.asyncio
async def test_call_on_unconnected_provider_raises_unavailable():
    connection = StdioProviderConnection("alpha", STDIO)

    with pytest.raises(ProviderUnavailable):
        await connection.call("weather", {})
