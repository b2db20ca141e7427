"""Signal channel over signal-cli's JSON output.

Inbound messages come from a ``receive`` subprocess run once per poll;
outbound messages go through ``send``. A chat id that is an E.164 number
is a direct chat, anything else is a group id.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from butler.models import Message, OutboundMessage

LOGGER = logging.getLogger(__name__)

SOURCE = "signal"

ATTACHMENTS_DIR = Path("~/.local/share/signal-cli/attachments").expanduser()


class SignalCliError(RuntimeError):
    pass


class SignalAdapter:
    def __init__(
        self,
        signal_cli_path: str,
        account: str,
        poll_interval_seconds: float,
        allowed_senders: frozenset[str],
    ) -> None:
        self._signal_cli_path = signal_cli_path
        self._account = account
        self._poll_interval_seconds = poll_interval_seconds
        self._allowed_senders = allowed_senders

    async def poll_messages(self) -> AsyncIterator[Message]:
        """Yield messages from allowed senders, forever."""

        timeout = str(max(1, int(self._poll_interval_seconds)))
        while True:
            try:
                output = await self._run("-o", "json", "-a", self._account, "receive", "-t", timeout)
            except SignalCliError as exc:
                LOGGER.warning("%s", exc)
                await asyncio.sleep(self._poll_interval_seconds)
                continue
            for message in parse_receive_output(output):
                if message.sender_id not in self._allowed_senders:
                    LOGGER.warning("Ignoring message from %s: not an allowed sender", message.sender_id)
                    continue
                yield message

    async def send(self, outbound: OutboundMessage) -> None:
        """Deliver one message; raises SignalCliError when signal-cli rejects it."""

        args = ["-a", self._account, "send", "-m", to_signal_formatting(outbound.text)]
        if is_direct_chat(outbound.chat_id):
            args.append(outbound.chat_id)
        else:
            args.extend(["-g", outbound.chat_id])
        if outbound.attachment_path is not None:
            args.extend(["-a", outbound.attachment_path])
        await self._run(*args)

    async def _run(self, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            self._signal_cli_path,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise SignalCliError(f"signal-cli exited with {process.returncode}: {stderr.decode().strip()}")
        return stdout.decode()


def is_direct_chat(chat_id: str) -> bool:
    return chat_id.startswith("+")


def parse_receive_output(output: str) -> list[Message]:
    """One JSON envelope per line; lines that are not content messages are skipped."""

    messages = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            message = _to_message(json.loads(line))
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            LOGGER.debug("Skipping unreadable signal-cli line: %s", exc)
            continue
        if message is not None:
            messages.append(message)
    return messages


def to_signal_formatting(text: str) -> str:
    """Strip markdown Signal would show literally."""

    # Code blocks first so their contents are not reformatted.
    text = re.sub(r"```.*?```", "", text, flags=re.DOTALL)
    text = re.sub(r"`(.+?)`", r"\1", text)
    text = re.sub(r"\*{1,3}(.+?)\*{1,3}", r"\1", text, flags=re.DOTALL)
    text = re.sub(r"(?<!\w)_{1,2}(.+?)_{1,2}(?!\w)", r"\1", text, flags=re.DOTALL)
    text = re.sub(r"^#{1,6}\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"\[(.+?)\]\((.+?)\)", r"\1 (\2)", text)
    return text.strip()


def _attachment(item: dict[str, Any]) -> dict[str, str]:
    path = item.get("file") or item.get("storedFilename") or ATTACHMENTS_DIR / str(item.get("id", ""))
    return {
        "local_path": str(path),
        "content_type": str(item.get("contentType") or "application/octet-stream"),
        "filename": str(item.get("filename") or ""),
    }


def _to_message(payload: dict[str, Any]) -> Message | None:
    envelope = payload.get("envelope")
    data = envelope.get("dataMessage") if isinstance(envelope, dict) else None
    if not isinstance(data, dict):
        return None

    text = data.get("message") if isinstance(data.get("message"), str) else ""
    attachments = [_attachment(item) for item in data.get("attachments") or [] if isinstance(item, dict)]
    if not text.strip() and not attachments:
        return None

    # Newer signal-cli puts the number in sourceNumber and a UUID in source.
    sender = str(envelope.get("sourceNumber") or envelope.get("source") or "unknown")
    timestamp_ms = int(envelope.get("timestamp") or 0)
    group_info = data.get("groupInfo")
    group_id = group_info.get("groupId") if isinstance(group_info, dict) else None
    is_group = isinstance(group_id, str)

    return Message(
        chat_id=group_id if is_group else sender,
        sender_id=sender,
        text=text.strip(),
        timestamp=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc),
        source=SOURCE,
        message_id=str(timestamp_ms or ""),
        is_group=is_group,
        attachments=attachments,
    )
