"""Streaming chat-completions client over httpx."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from fieldbot.config.schema import UpstreamConfig
from fieldbot.errors import UpstreamError
from fieldbot.logging import get_logger, mask_secret

logger = get_logger("fieldbot.providers.stream")


def _error_message(status_code: int, body: bytes) -> str:
    try:
        data = json.loads(body)
        message = (data.get("error") or {}).get("message")
        if message:
            return f"Upstream error {status_code}: {message}"
    except (json.JSONDecodeError, AttributeError, TypeError):
        pass
    return f"Upstream error {status_code}"


class ChatCompletionsStreamClient:
    """
    POSTs a chat-completions payload with ``stream=True`` and yields raw body chunks.

    A non-2xx status raises :class:`UpstreamError` before any chunk is
    yielded. The iterator is single-use; a retry means a new request.
    """

    def __init__(self, config: UpstreamConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(config.timeout, connect=10.0))
        self._owns_client = client is None

    @property
    def url(self) -> str:
        return self.config.api_base.rstrip("/") + "/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self.config.resolved_api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def stream_chat(self, payload: dict[str, Any]) -> AsyncIterator[bytes]:
        body = {**payload, "stream": True, "stream_options": {"include_usage": True}}
        try:
            async with self._client.stream("POST", self.url, json=body, headers=self._headers()) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    raw = await response.aread()
                    message = _error_message(response.status_code, raw)
                    logger.error(
                        "upstream_request_failed",
                        status=response.status_code,
                        model=payload.get("model"),
                        error=message,
                    )
                    raise UpstreamError(message, status_code=response.status_code)
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            error_msg = str(e)
            api_key = self.config.resolved_api_key
            if api_key and api_key in error_msg:
                error_msg = error_msg.replace(api_key, mask_secret(api_key))
            logger.error("upstream_transport_failed", model=payload.get("model"), error=error_msg)
            raise UpstreamError(f"Upstream request failed: {error_msg}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
