"""Tests for the chunked ``data:`` line decoder."""

import json

import pytest

from fieldbot.errors import ProtocolError
from fieldbot.providers.stream_parser import SSELineDecoder, iter_stream_records, parse_data_line


async def _aiter(chunks):
    for chunk in chunks:
        yield chunk


async def _collect(chunks):
    return [r async for r in iter_stream_records(_aiter(chunks))]


def test_decoder_holds_partial_lines():
    decoder = SSELineDecoder()
    assert decoder.feed(b'data: {"a"') == []
    assert decoder.feed(b": 1}\r\n\r\n") == ['data: {"a": 1}', ""]
    assert decoder.flush() == []


def test_decoder_joins_split_utf8_code_points():
    encoded = 'data: {"t": "สวัสดี"}\n'.encode("utf-8")
    cut = encoded.index("ส".encode("utf-8")) + 1
    decoder = SSELineDecoder()
    assert decoder.feed(encoded[:cut]) == []
    assert decoder.feed(encoded[cut:]) == ['data: {"t": "สวัสดี"}']


def test_decoder_flushes_trailing_line():
    decoder = SSELineDecoder()
    decoder.feed(b'data: {"x": 1}')
    assert decoder.flush() == ['data: {"x": 1}']


class TestParseDataLine:
    def test_non_data_lines_skipped(self):
        assert parse_data_line(": keep-alive") is None
        assert parse_data_line("event: message") is None
        assert parse_data_line("") is None

    def test_done_sentinel_skipped(self):
        assert parse_data_line("data: [DONE]") is None

    def test_valid_record(self):
        assert parse_data_line('data:{"choices": []}') == {"choices": []}

    def test_invalid_json_raises(self):
        with pytest.raises(ProtocolError):
            parse_data_line("data: {oops")

    def test_non_object_raises(self):
        with pytest.raises(ProtocolError):
            parse_data_line("data: [1, 2]")


@pytest.mark.asyncio
async def test_records_survive_arbitrary_chunking():
    body = b'data: {"n": 1}\n\ndata: {"n": 2}\n\ndata: [DONE]\n\n'
    whole = await _collect([body])
    bytewise = await _collect([body[i:i + 1] for i in range(len(body))])
    assert whole == bytewise == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_malformed_records_are_dropped():
    records = await _collect([b'data: {"n": 1}\n', b"data: not-json\n", b'data: {"n": 2}\n'])
    assert records == [{"n": 1}, {"n": 2}]


@pytest.mark.parametrize(
    "record",
    [
        {"choices": [{"delta": "oops"}]},
        {"choices": "oops"},
        {"choices": ["oops"]},
        {"choices": [{"delta": {"content": 5}}]},
        {"choices": [{"delta": {"tool_calls": {"index": 0}}}]},
        {"choices": [{"delta": {"tool_calls": ["x"]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": "x"}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": 7}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": 1}]},
        {"usage": "lots"},
        {"usage": {"prompt_tokens": "many"}},
    ],
)
def test_wrongly_shaped_record_raises(record):
    with pytest.raises(ProtocolError):
        parse_data_line("data: " + json.dumps(record))


def test_well_shaped_chunk_accepted():
    record = {
        "choices": [{"index": 0, "delta": {"content": None, "tool_calls": [
            {"index": 0, "id": "call_1", "function": {"name": "search_sites", "arguments": "{"}},
        ]}, "finish_reason": None}],
        "usage": None,
    }
    assert parse_data_line("data: " + json.dumps(record)) == record
