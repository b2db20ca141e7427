from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from butler.llm.openrouter import OpenRouterProvider, parse_completion


def _payload(message: dict) -> dict:
    return {"model": "m", "choices": [{"message": message, "finish_reason": "stop"}]}


def test_parse_completion_text_reply():
    response = parse_completion(_payload({"role": "assistant", "content": "hello"}))

    assert response.content == "hello"
    assert response.tool_calls == []


def test_parse_completion_tool_calls_keep_raw_message():
    message = {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"id": "call_1", "type": "function", "function": {"name": "echo", "arguments": '{"text": "x"}'}},
            {"id": "call_2", "type": "function", "function": {"name": "echo", "arguments": "not json"}},
        ],
        "reasoning_details": [{"data": "opaque"}],
    }

    response = parse_completion(_payload(message))

    assert response.content == ""
    assert [(c.name, c.arguments, c.call_id) for c in response.tool_calls] == [
        ("echo", {"text": "x"}, "call_1"),
        ("echo", {}, "call_2"),
    ]
    assert response.raw_message is message


@pytest.mark.asyncio
async def test_generate_retries_on_rate_limit():
    settings = MagicMock(
        model_deep="deep",
        request_timeout_seconds=5,
        openrouter_base_url="https://openrouter.test/api/v1",
        openrouter_api_key="key",
    )
    request = httpx.Request("POST", "https://openrouter.test/api/v1/chat/completions")
    limited = httpx.Response(429, request=request)
    ok = httpx.Response(200, json=_payload({"role": "assistant", "content": "hi"}), request=request)

    with patch("butler.llm.openrouter.httpx.AsyncClient.post", AsyncMock(side_effect=[limited, ok])) as post, patch(
        "butler.llm.openrouter.asyncio.sleep", AsyncMock()
    ):
        response = await OpenRouterProvider(settings).generate([{"role": "user", "content": "hi"}], model="fast")

    assert response.content == "hi"
    assert post.await_count == 2
    assert post.await_args.kwargs["json"]["model"] == "fast"
