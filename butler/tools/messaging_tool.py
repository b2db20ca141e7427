"""Outbound messaging through the injected send callback."""

from __future__ import annotations

from typing import Any

from butler.models import OutboundMessage, ToolContext
from butler.tools.base import Tool


class SendMessageTool(Tool):
    """Send a message to another chat on the current channel."""

    name = "send_message"
    description = (
        "Send a text message to someone else. 'to' is a phone number or chat id; "
        "resolve names with lookup_alias first."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "to": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["to", "content"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        await context.send(
            OutboundMessage(chat_id=kwargs["to"], text=kwargs["content"], source=context.source, kind="message")
        )
        return {"info": f"Message sent to {kwargs['to']}"}
