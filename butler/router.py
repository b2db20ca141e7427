"""Model tier routing."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from butler.errors import RouterFailure
from butler.llm.base import LLMProvider

LOGGER = logging.getLogger(__name__)

FAST = "fast"
DEEP = "deep"

_ROUTER_INSTRUCTIONS = (
    "You route requests for a personal assistant. Pick the model tier.\n"
    'Reply with JSON only: {"tier": "fast" | "deep", "reason": "<short>"}.\n'
    "fast: greetings, quick facts, home automation, reminders, remembering things.\n"
    "deep: coding, planning, multi-step analysis, long documents."
)


@dataclass(frozen=True, slots=True)
class RouteDecision:
    tier: str
    reason: str = ""


class ModelRouter:
    """Classifies an inbound message into a fast or deep tier.

    Any classifier failure routes to the deep tier.
    """

    def __init__(self, llm: LLMProvider, model: str, timeout_seconds: float = 15.0) -> None:
        self._llm = llm
        self._model = model
        self._timeout_seconds = timeout_seconds

    async def route(self, text: str, history: list[dict[str, str]] | None = None) -> RouteDecision:
        try:
            decision = await self._classify(text, history or [])
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Routing failed, defaulting to %s tier: %s", DEEP, exc)
            return RouteDecision(tier=DEEP, reason="router failure")
        LOGGER.info("Routing decision: %s (%s)", decision.tier, decision.reason)
        return decision

    async def _classify(self, text: str, history: list[dict[str, str]]) -> RouteDecision:
        recent = "\n".join(f"{m['role']}: {m['content']}" for m in history[-3:])
        prompt: list[dict[str, Any]] = [
            {"role": "system", "content": _ROUTER_INSTRUCTIONS},
            {"role": "user", "content": f"Recent context:\n{recent}\n\nUser input: {text}"},
        ]
        response = await asyncio.wait_for(
            self._llm.generate(prompt, response_format={"type": "json_object"}, model=self._model),
            timeout=self._timeout_seconds,
        )
        return parse_decision(response.content)


def parse_decision(raw: str) -> RouteDecision:
    cleaned = re.sub(r"```(?:json)?", "", raw or "").strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise RouterFailure(f"router returned non-JSON output: {raw[:100]!r}") from exc
    if not isinstance(data, dict):
        raise RouterFailure("router output is not an object")
    tier = str(data.get("tier", "")).lower()
    if tier not in (FAST, DEEP):
        raise RouterFailure(f"unknown tier {tier!r}")
    return RouteDecision(tier=tier, reason=str(data.get("reason", "")))
