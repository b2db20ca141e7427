"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable


@dataclass(slots=True)
class Message:
    """Inbound message normalized by channel adapters."""

    chat_id: str
    sender_id: str
    text: str
    timestamp: datetime
    source: str = "unknown"
    message_id: str | None = None
    is_group: bool = False
    attachments: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class OutboundMessage:
    """Message handed to the injected send callback."""

    chat_id: str
    text: str
    source: str = "unknown"
    kind: str = "reply"
    attachment_path: str | None = None


SendCallback = Callable[[OutboundMessage], Awaitable[None]]


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request.

    ``raw_message`` is the provider's assistant message exactly as returned,
    including fields the runtime does not understand (reasoning details,
    signatures). It is persisted verbatim for tool-call turns.
    """

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    raw_message: dict[str, Any] | None = None
    raw: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """A tool as shown to the model, tagged with its owning provider."""

    name: str
    description: str
    parameters: dict[str, Any]
    provider_id: str | None = None

    def to_spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ProviderState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass(slots=True)
class ToolContext:
    """Per-call context handed to built-in tools."""

    chat_id: str
    source: str
    send: SendCallback
    sender_id: str | None = None


@dataclass(slots=True)
class ScheduledJob:
    """A recurring (cron) or one-off (at) job.

    ``payload`` holds the task text and delivery target. ``persisted`` jobs
    live in the database; the others are declared from config on each start
    and kept in memory only.
    """

    name: str
    trigger_kind: str
    trigger: str
    payload: dict[str, Any]
    next_run_at: datetime
    retry_count: int = 0
    expires_at: datetime | None = None
    persisted: bool = True

    @property
    def is_recurring(self) -> bool:
        return self.trigger_kind == "cron"


@dataclass(slots=True)
class TurnResult:
    """Outcome of one conversational turn."""

    reply: str = ""
    sent: bool = False
    iterations: int = 0
    stuck: bool = False
    stopped: bool = False
    failed: bool = False
    error: str | None = None
    tool_outputs: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.failed or self.stuck or self.stopped)
