"""Decode a chunked ``data: <json>`` byte stream into parsed records."""

from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator

from fieldbot.errors import ProtocolError
from fieldbot.logging import get_logger

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data:"


class SSELineDecoder:
    """Incremental UTF-8 line splitter; partial lines and split code points wait for the next chunk."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return [rest.rstrip("\r")] if rest.strip() else []


def parse_data_line(line: str) -> dict[str, Any] | None:
    """Return the JSON record of a ``data:`` line, ``None`` for anything to skip.

    Raises:
        ProtocolError: the payload is not a JSON object or its fields have the wrong types.
    """
    if not line.startswith(_DATA_PREFIX):
        return None
    data = line[len(_DATA_PREFIX):].strip()
    if not data or data == DONE_SENTINEL:
        return None
    try:
        record = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON in stream record: {e}") from e
    if not isinstance(record, dict):
        raise ProtocolError("stream record is not an object")
    _check_shape(record)
    return record


def _check_shape(record: dict[str, Any]) -> None:
    """Raise ProtocolError when *record* does not have the chat-completions chunk shape."""
    usage = record.get("usage")
    if usage is not None:
        if not isinstance(usage, dict):
            raise ProtocolError("usage is not an object")
        for key in ("prompt_tokens", "completion_tokens"):
            value = usage.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise ProtocolError(f"usage.{key} is not a number")

    choices = record.get("choices")
    if choices is None:
        return
    if not isinstance(choices, list) or any(not isinstance(c, dict) for c in choices):
        raise ProtocolError("choices is not a list of objects")
    for choice in choices:
        finish_reason = choice.get("finish_reason")
        if finish_reason is not None and not isinstance(finish_reason, str):
            raise ProtocolError("finish_reason is not a string")
        delta = choice.get("delta")
        if delta is None:
            continue
        if not isinstance(delta, dict):
            raise ProtocolError("delta is not an object")
        content = delta.get("content")
        if content is not None and not isinstance(content, str):
            raise ProtocolError("delta.content is not a string")
        tool_calls = delta.get("tool_calls")
        if tool_calls is None:
            continue
        if not isinstance(tool_calls, list):
            raise ProtocolError("delta.tool_calls is not a list")
        for tc in tool_calls:
            if not isinstance(tc, dict):
                raise ProtocolError("tool call fragment is not an object")
            fn = tc.get("function")
            if fn is not None and not isinstance(fn, dict):
                raise ProtocolError("tool call function is not an object")
            if tc.get("id") is not None and not isinstance(tc["id"], str):
                raise ProtocolError("tool call id is not a string")
            if fn and fn.get("name") is not None and not isinstance(fn["name"], str):
                raise ProtocolError("tool call name is not a string")


async def iter_stream_records(chunks: AsyncIterable[bytes]) -> AsyncIterator[dict[str, Any]]:
    """Yield parsed records until the upstream closes. Malformed lines are dropped."""
    decoder = SSELineDecoder()

    def _records(lines: list[str]) -> list[dict[str, Any]]:
        out = []
        for line in lines:
            try:
                record = parse_data_line(line)
            except ProtocolError as e:
                logger.debug("stream_record_dropped", error=str(e), line_preview=line[:80])
                continue
            if record is not None:
                out.append(record)
        return out

    async for chunk in chunks:
        for record in _records(decoder.feed(chunk)):
            yield record
    for record in _records(decoder.flush()):
        yield record
