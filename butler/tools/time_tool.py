"""Time utility tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from butler.models import ToolContext
from butler.tools.base import Tool


class GetCurrentTimeTool(Tool):
    """Returns the current time in UTC and the configured local zone."""

    name = "get_current_time"
    description = "Get the current date/time in ISO-8601 format (UTC and local)."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    }

    def __init__(self, tz: str = "UTC") -> None:
        self._tz = ZoneInfo(tz)

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, str]:
        now = datetime.now(timezone.utc)
        return {"utc_time": now.isoformat(), "local_time": now.astimezone(self._tz).isoformat()}
