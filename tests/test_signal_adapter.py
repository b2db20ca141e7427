from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from butler.models import OutboundMessage
from butler.signal_adapter import (
    SignalAdapter,
    SignalCliError,
    _to_message,
    parse_receive_output,
    to_signal_formatting,
)


def _adapter() -> SignalAdapter:
    return SignalAdapter(
        signal_cli_path="signal-cli",
        account="+15550000000",
        poll_interval_seconds=1,
        allowed_senders=frozenset({"+15550000001"}),
    )


def test_direct_message_uses_sender_as_chat():
    message = _to_message(
        {"envelope": {"source": "+15550000001", "timestamp": 1700000000000, "dataMessage": {"message": " hi "}}}
    )

    assert message.chat_id == "+15550000001"
    assert message.text == "hi"
    assert message.source == "signal"
    assert message.is_group is False


def test_group_message_uses_group_id_as_chat():
    message = _to_message(
        {
            "envelope": {
                "source": "+15550000001",
                "timestamp": 1700000000000,
                "dataMessage": {"message": "hi all", "groupInfo": {"groupId": "Z3JvdXA="}},
            }
        }
    )

    assert message.chat_id == "Z3JvdXA="
    assert message.is_group is True


def test_attachment_only_message_is_kept():
    message = _to_message(
        {
            "envelope": {
                "source": "+15550000001",
                "timestamp": 1,
                "dataMessage": {"attachments": [{"id": "abc", "contentType": "image/png", "file": "/tmp/abc"}]},
            }
        }
    )

    assert message.text == ""
    assert message.attachments == [{"local_path": "/tmp/abc", "content_type": "image/png", "filename": ""}]


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"envelope": {"source": "+1", "receiptMessage": {}}},
        {"envelope": {"source": "+1", "dataMessage": {"message": "   "}}},
    ],
)
def test_non_content_envelopes_are_dropped(payload):
    assert _to_message(payload) is None


def test_to_signal_formatting_strips_markdown():
    text = "## Plan\n**Bold** and *italic* with `code` and [docs](https://x.test)"

    assert to_signal_formatting(text) == "Plan\nBold and italic with code and docs (https://x.test)"


def test_to_signal_formatting_keeps_snake_case():
    assert to_signal_formatting("call get_current_time") == "call get_current_time"


def test_source_number_preferred_over_uuid():
    message = _to_message(
        {
            "envelope": {
                "source": "5b0c6f1e-8f1f-4d7a-9e43-2c1d0f7a9b11",
                "sourceNumber": "+15550000001",
                "timestamp": 1,
                "dataMessage": {"message": "hi"},
            }
        }
    )

    assert message.sender_id == "+15550000001"
    assert message.chat_id == "+15550000001"


def test_parse_receive_output_skips_noise():
    lines = [
        json.dumps({"envelope": {"source": "+15550000001", "timestamp": 1, "dataMessage": {"message": "one"}}}),
        "",
        "not json",
        json.dumps({"envelope": {"source": "+15550000001", "typingMessage": {}}}),
        json.dumps({"envelope": {"source": "+15550000001", "timestamp": 2, "dataMessage": {"message": "two"}}}),
    ]

    assert [m.text for m in parse_receive_output("\n".join(lines))] == ["one", "two"]


@pytest.mark.asyncio
async def test_send_routes_numbers_direct_and_others_to_groups():
    adapter = _adapter()
    with patch.object(adapter, "_run", AsyncMock(return_value="")) as run:
        await adapter.send(OutboundMessage(chat_id="+15550000002", text="**hi**"))
        await adapter.send(OutboundMessage(chat_id="Z3JvdXA=", text="hello group", attachment_path="/tmp/a.png"))

    assert run.await_args_list[0].args == ("-a", "+15550000000", "send", "-m", "hi", "+15550000002")
    assert run.await_args_list[1].args == (
        "-a",
        "+15550000000",
        "send",
        "-m",
        "hello group",
        "-g",
        "Z3JvdXA=",
        "-a",
        "/tmp/a.png",
    )


@pytest.mark.asyncio
async def test_poll_drops_unknown_senders_and_survives_cli_errors():
    adapter = _adapter()
    output = "\n".join(
        json.dumps({"envelope": {"source": sender, "timestamp": 1, "dataMessage": {"message": text}}})
        for sender, text in [("+15559999999", "spam"), ("+15550000001", "hello")]
    )
    run = AsyncMock(side_effect=[SignalCliError("boom"), output])

    polling = adapter.poll_messages()
    with patch.object(adapter, "_run", run), patch("butler.signal_adapter.asyncio.sleep", AsyncMock()):
        message = await anext(polling)
    await polling.aclose()

    assert message.text == "hello"
    assert run.await_count == 2
