"""Alias lookup: map names the user uses to people, numbers or places."""

from __future__ import annotations

from typing import Any

from butler.db import Database
from butler.models import ToolContext
from butler.tools.base import Tool


class SaveAliasTool(Tool):
    """Record what a name refers to (e.g. 'mum' -> '+4470000000')."""

    name = "save_alias"
    description = "Save an alias, e.g. alias='mum', target='+447700900123', notes='mother'."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "alias": {"type": "string"},
            "target": {"type": "string"},
            "notes": {"type": "string"},
        },
        "required": ["alias", "target"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        self._db.save_alias(kwargs["alias"], kwargs["target"], kwargs.get("notes"))
        return {"info": f"Saved alias '{kwargs['alias'].lower()}'."}


class LookupAliasTool(Tool):
    """Resolve an alias before messaging or scheduling for someone."""

    name = "lookup_alias"
    description = "Look up who or what an alias refers to. Matches alias, target and notes."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"query": {"type": "string"}},
        "required": ["query"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        matches = self._db.find_aliases(kwargs["query"])
        if not matches:
            return {"error": f"No alias matches '{kwargs['query']}'."}
        return {"matches": matches}
