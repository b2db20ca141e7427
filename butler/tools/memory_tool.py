"""Memory tools: durable facts and conversation search."""

from __future__ import annotations

from typing import Any

from butler.db import Database
from butler.models import ToolContext
from butler.tools.base import Tool


class RememberFactTool(Tool):
    """Store a key/value fact about the user or their world."""

    name = "remember_fact"
    description = (
        "Remember a durable fact (e.g. key='favourite_coffee', value='flat white'). "
        "Overwrites an existing fact with the same key."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "key": {"type": "string"},
            "value": {"type": "string"},
        },
        "required": ["key", "value"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        key = kwargs["key"].strip()
        if not key:
            return {"error": "Fact key must not be empty."}
        self._db.set_fact(key, kwargs["value"])
        return {"info": f"Remembered {key}."}


class RecallFactsTool(Tool):
    name = "recall_facts"
    description = "Recall remembered facts, optionally filtered by a search string."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"query": {"type": "string"}},
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        return {"facts": self._db.get_facts(kwargs.get("query"))}


class SearchMemoryTool(Tool):
    name = "search_memory"
    description = "Search past conversation messages for a phrase."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string"},
            "limit": {"type": "integer"},
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        limit = int(kwargs.get("limit") or 10)
        return {"results": self._db.search_messages(kwargs["query"], limit=limit)}
