"""Connections to external tool providers speaking the Model Context Protocol."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from datetime import timedelta
from typing import Any

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from butler.config import ProviderConfig
from butler.errors import ProviderCallError, ProviderConnectError, ProviderUnavailable
from butler.models import ProviderState, ToolDescriptor

LOGGER = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    OSError,
)


class ProviderConnection(ABC):
    """One live session with one external tool provider."""

    transport: str

    def __init__(self, provider_id: str, config: ProviderConfig, call_timeout_seconds: float = 60.0) -> None:
        self.provider_id = provider_id
        self._config = config
        self._call_timeout_seconds = call_timeout_seconds
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self.state = ProviderState.DISCONNECTED

    @abstractmethod
    def _open_transport(self) -> AbstractAsyncContextManager[Any]:
        """Return a context manager yielding (read_stream, write_stream, ...)."""

    async def connect(self) -> None:
        if self.state is ProviderState.CONNECTED:
            return
        if self.state is ProviderState.CLOSED:
            raise ProviderConnectError(self.provider_id, "connection already closed")

        self.state = ProviderState.CONNECTING
        stack = AsyncExitStack()
        try:
            streams = await stack.enter_async_context(self._open_transport())
            read_stream, write_stream = streams[0], streams[1]
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
        except Exception as exc:  # noqa: BLE001
            self.state = ProviderState.DISCONNECTED
            await _close_stack(self.provider_id, stack)
            raise ProviderConnectError(self.provider_id, str(exc) or type(exc).__name__) from exc

        self._stack = stack
        self._session = session
        self.state = ProviderState.CONNECTED
        LOGGER.info("Connected to provider %s over %s", self.provider_id, self.transport)

    async def list_tools(self) -> list[ToolDescriptor]:
        session = self._require_session()
        try:
            result = await session.list_tools()
        except _TRANSPORT_ERRORS as exc:
            self.state = ProviderState.DISCONNECTED
            raise ProviderUnavailable(f"Provider '{self.provider_id}' dropped: {exc}") from exc
        except McpError as exc:
            raise ProviderCallError(f"Provider '{self.provider_id}' failed to list tools: {exc}") from exc

        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "",
                parameters=tool.inputSchema or {"type": "object", "properties": {}},
                provider_id=self.provider_id,
            )
            for tool in result.tools
        ]

    async def call(self, name: str, arguments: dict[str, Any]) -> Any:
        session = self._require_session()
        try:
            result = await session.call_tool(
                name,
                arguments,
                read_timeout_seconds=timedelta(seconds=self._call_timeout_seconds),
            )
        except _TRANSPORT_ERRORS as exc:
            self.state = ProviderState.DISCONNECTED
            raise ProviderUnavailable(f"Provider '{self.provider_id}' dropped: {exc}") from exc
        except McpError as exc:
            raise ProviderCallError(f"Tool '{name}' failed on '{self.provider_id}': {exc}") from exc

        text = _content_text(result.content)
        if result.isError:
            raise ProviderCallError(text or f"Tool '{name}' reported an error")
        if text:
            return {"output": text}
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            return structured
        return {"info": "Tool executed successfully (no output)."}

    async def close(self) -> None:
        """Close the session. Safe to call repeatedly or before connect()."""

        if self.state is ProviderState.CLOSED:
            return
        stack = self._stack
        self._stack = None
        self._session = None
        self.state = ProviderState.CLOSED
        if stack is not None:
            await _close_stack(self.provider_id, stack)
            LOGGER.info("Closed provider %s", self.provider_id)

    def _require_session(self) -> ClientSession:
        if self.state is not ProviderState.CONNECTED or self._session is None:
            raise ProviderUnavailable(f"Provider '{self.provider_id}' is {self.state.value}")
        return self._session


class StdioProviderConnection(ProviderConnection):
    """Provider running as a local subprocess speaking JSON-RPC over stdio."""

    transport = "stdio"

    def _open_transport(self) -> AbstractAsyncContextManager[Any]:
        params = StdioServerParameters(
            command=self._config.command or "",
            args=list(self._config.args),
            env={**os.environ, **self._config.env},
        )
        return stdio_client(params)


class SseProviderConnection(ProviderConnection):
    """Provider reached over a persistent server-sent-events stream."""

    transport = "sse"

    def _open_transport(self) -> AbstractAsyncContextManager[Any]:
        return sse_client(self._config.url or "", headers=dict(self._config.headers) or None)


_TRANSPORTS: dict[str, type[ProviderConnection]] = {
    StdioProviderConnection.transport: StdioProviderConnection,
    SseProviderConnection.transport: SseProviderConnection,
}


def build_connection(
    provider_id: str, config: ProviderConfig, call_timeout_seconds: float = 60.0
) -> ProviderConnection:
    try:
        connection_cls = _TRANSPORTS[config.transport]
    except KeyError as exc:
        raise ProviderConnectError(provider_id, f"unsupported transport {config.transport!r}") from exc
    return connection_cls(provider_id, config, call_timeout_seconds=call_timeout_seconds)


async def open_connection(
    provider_id: str, config: ProviderConfig, call_timeout_seconds: float = 60.0
) -> ProviderConnection:
    """Build and connect a provider, raising ProviderConnectError on failure."""

    connection = build_connection(provider_id, config, call_timeout_seconds)
    await connection.connect()
    return connection


def _content_text(content: list[Any]) -> str:
    parts: list[str] = []
    for item in content or []:
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(text)
        elif getattr(item, "data", None) is not None:
            parts.append(f"[Binary data: {len(item.data)} bytes]")
    return "\n".join(parts)


async def _close_stack(provider_id: str, stack: AsyncExitStack) -> None:
    try:
        await stack.aclose()
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("Error closing provider %s: %s", provider_id, exc)
