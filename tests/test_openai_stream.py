"""Tests for the streaming chat-completions client over httpx.MockTransport."""

import json

import httpx
import pytest

from fieldbot.config.schema import UpstreamConfig
from fieldbot.errors import UpstreamError
from fieldbot.providers.openai_stream import ChatCompletionsStreamClient, _error_message

SSE_BODY = (
    'data: {"choices":[{"delta":{"content":"สวัส"}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"ดี"},"finish_reason":"stop"}]}\n\n'
    "data: [DONE]\n\n"
).encode("utf-8")


def _client(handler, api_key="sk-test-abcdefghijkl") -> ChatCompletionsStreamClient:
    config = UpstreamConfig(api_key=api_key, api_base="https://llm.example.test/v1/")
    return ChatCompletionsStreamClient(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def _collect(client, payload=None) -> bytes:
    chunks = []
    async for chunk in client.stream_chat(payload or {"model": "gpt-4o-mini", "messages": []}):
        chunks.append(chunk)
    return b"".join(chunks)


@pytest.mark.asyncio
async def test_streams_body_and_sends_stream_options():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=SSE_BODY, headers={"content-type": "text/event-stream"})

    body = await _collect(_client(handler), {"model": "gpt-4o-mini", "messages": [{"role": "user", "content": "hi"}]})

    assert body == SSE_BODY
    assert seen["url"] == "https://llm.example.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test-abcdefghijkl"
    assert seen["body"]["stream"] is True
    assert seen["body"]["stream_options"] == {"include_usage": True}
    assert seen["body"]["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_no_authorization_header_without_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    await _collect(_client(handler, api_key=""))
    assert seen["auth"] is None


@pytest.mark.asyncio
async def test_non_2xx_raises_with_upstream_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Rate limit reached"}})

    with pytest.raises(UpstreamError) as exc_info:
        await _collect(_client(handler))

    assert exc_info.value.status_code == 429
    assert str(exc_info.value) == "Upstream error 429: Rate limit reached"


@pytest.mark.asyncio
async def test_transport_error_masks_api_key():
    key = "sk-test-abcdefghijkl"

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"connection refused for {key}")

    with pytest.raises(UpstreamError) as exc_info:
        await _collect(_client(handler, api_key=key))

    assert key not in str(exc_info.value)
    assert "Upstream request failed" in str(exc_info.value)
    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_injected_client_is_not_closed():
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    client = ChatCompletionsStreamClient(UpstreamConfig(), client=http)
    await client.aclose()
    assert not http.is_closed
    await http.aclose()


@pytest.mark.parametrize(
    "status,body,expected",
    [
        (500, b'{"error": {"message": "boom"}}', "Upstream error 500: boom"),
        (502, b"<html>bad gateway</html>", "Upstream error 502"),
        (400, b'{"error": "plain string"}', "Upstream error 400"),
        (401, b"[]", "Upstream error 401"),
    ],
)
def test_error_message(status, body, expected):
    assert _error_message(status, body) == expected
