"""Hold sensitive tool calls until the user confirms them.

A rule names a tool, a reason shown to the user, and an optional predicate
over the call's arguments. A matching call is not executed; it is parked
per chat until ``/confirm`` runs it or ``/cancel`` (or expiry) drops it.
Only the latest held action per chat is kept.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from butler.tools.files_tool import resolve_in_workspace

LOGGER = logging.getLogger(__name__)

PENDING_TTL_SECONDS = 300.0


def _always(arguments: dict[str, Any]) -> bool:
    return True


@dataclass(frozen=True, slots=True)
class ConfirmationRule:
    tool: str
    reason: str
    applies: Callable[[dict[str, Any]], bool] = _always


@dataclass(slots=True)
class PendingAction:
    name: str
    arguments: dict[str, Any]
    reason: str
    expires_at: float = field(default=0.0)


def paused_result(reason: str) -> dict[str, Any]:
    """Tool result the model sees in place of a held call."""

    return {"info": f"Action paused. {reason} The user must reply /confirm before it runs."}


class ConfirmationManager:
    def __init__(
        self,
        rules: list[ConfirmationRule],
        ttl_seconds: float = PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rules = rules
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingAction] = {}

    def check(self, name: str, arguments: dict[str, Any]) -> str | None:
        """Return the reason a call needs confirmation, or None."""

        for rule in self._rules:
            if rule.tool != name:
                continue
            try:
                if rule.applies(arguments):
                    return rule.reason
            except (KeyError, TypeError, ValueError):
                # Malformed arguments are left for the tool's own validation.
                continue
        return None

    def hold(self, chat_id: str, name: str, arguments: dict[str, Any], reason: str) -> PendingAction:
        action = PendingAction(
            name=name,
            arguments=dict(arguments),
            reason=reason,
            expires_at=self._clock() + self._ttl_seconds,
        )
        self._pending[chat_id] = action
        LOGGER.info("Holding %s for confirmation in chat %s", name, chat_id)
        return action

    def take(self, chat_id: str) -> PendingAction | None:
        """Remove and return the chat's held action unless it has expired."""

        action = self._pending.pop(chat_id, None)
        if action is None:
            return None
        if self._clock() > action.expires_at:
            LOGGER.info("Held action %s for chat %s expired", action.name, chat_id)
            return None
        return action

    def discard(self, chat_id: str) -> bool:
        return self._pending.pop(chat_id, None) is not None


def default_rules(workspace_root: Path) -> list[ConfirmationRule]:
    def overwrites_existing(arguments: dict[str, Any]) -> bool:
        return resolve_in_workspace(workspace_root, arguments["path"]).exists()

    return [
        ConfirmationRule(
            tool="write_file",
            reason="This would overwrite an existing file.",
            applies=overwrites_existing,
        ),
    ]
