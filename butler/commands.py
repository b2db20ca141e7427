"""Command dispatcher for /-prefixed messages.

Commands bypass the LLM and the turn loop entirely, so they are answered even
while a turn for the same chat is still running (which is what makes /stop
useful). An unrecognised /command returns None and falls through to the LLM.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from butler.models import Message, SendCallback, ToolContext

if TYPE_CHECKING:
    from butler.agent_runtime import StopSignal
    from butler.confirmation import ConfirmationManager
    from butler.db import Database
    from butler.executor import ToolExecutor
    from butler.scheduler import JobScheduler

LOGGER = logging.getLogger(__name__)

HELP_TEXT = (
    "Commands:\n"
    "/clear - forget this conversation's history\n"
    "/stop - stop the current task after the running tool finishes\n"
    "/stop all - stop every running task\n"
    "/jobs - list scheduled jobs\n"
    "/confirm - run the action waiting for confirmation\n"
    "/cancel - drop the action waiting for confirmation\n"
    "/help - show this message"
)


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split a /-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid /command.
    """
    text = text.strip()
    if not text.startswith("/"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class CommandDispatcher:
    """Routes /-prefixed messages to handlers, bypassing the LLM.

    Returns None for unrecognised commands so the caller can fall through.
    """

    def __init__(
        self,
        db: Database | None = None,
        stop_signal: StopSignal | None = None,
        scheduler: JobScheduler | None = None,
        confirmations: ConfirmationManager | None = None,
        executor: ToolExecutor | None = None,
    ) -> None:
        self._db = db
        self._stop_signal = stop_signal
        self._scheduler = scheduler
        self._confirmations = confirmations
        self._executor = executor

    async def dispatch(self, message: Message, send: SendCallback | None = None) -> str | None:
        """Dispatch a message to a command handler.

        Returns:
            A reply string for recognised commands, or None for unknown ones.
        """
        parsed = parse_command(message.text)
        if parsed is None:
            return None
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r args=%r", command, args)
        if command == "clear":
            return self._handle_clear(message.chat_id)
        if command == "stop":
            return self._handle_stop(message.chat_id, args)
        if command == "jobs":
            return self._handle_jobs()
        if command == "confirm":
            return await self._handle_confirm(message, send)
        if command == "cancel":
            return self._handle_cancel(message.chat_id)
        if command == "help":
            return HELP_TEXT
        return None

    def _handle_clear(self, chat_id: str) -> str:
        if self._db is None:
            return "History clearing is not available."
        self._db.clear_history(chat_id)
        return "Conversation history cleared."

    def _handle_stop(self, chat_id: str, args: list[str]) -> str:
        if self._stop_signal is None:
            return "Stopping is not available."
        if args and args[0].lower() == "all":
            self._stop_signal.request()
            return "Stopping all running tasks."
        self._stop_signal.request(chat_id)
        return "Stopping after the current step."

    def _handle_jobs(self) -> str:
        if self._scheduler is None:
            return "Scheduling is not available."
        jobs = self._scheduler.list_jobs()
        if not jobs:
            return "No scheduled jobs."
        lines = []
        for job in jobs:
            trigger = job.trigger if job.is_recurring else "once"
            lines.append(
                f"- {job.name} [{trigger}] next {job.next_run_at.strftime('%Y-%m-%d %H:%M')} UTC: "
                f"{job.payload.get('task', '')}"
            )
        return "Scheduled jobs:\n" + "\n".join(lines)

    async def _handle_confirm(self, message: Message, send: SendCallback | None) -> str:
        if self._confirmations is None or self._executor is None or send is None:
            return "Confirmation is not available."
        action = self._confirmations.take(message.chat_id)
        if action is None:
            return "Nothing is waiting for confirmation."
        context = ToolContext(
            chat_id=message.chat_id, source=message.source, send=send, sender_id=message.sender_id
        )
        LOGGER.info("Running confirmed action %s for chat %s", action.name, message.chat_id)
        envelope = await self._executor.execute(action.name, action.arguments, context)
        return f"Action {action.name} executed.\nResult: {json.dumps(envelope, default=str)}"

    def _handle_cancel(self, chat_id: str) -> str:
        if self._confirmations is None:
            return "Confirmation is not available."
        if self._confirmations.discard(chat_id):
            return "Pending action cancelled."
        return "Nothing is waiting for confirmation."
