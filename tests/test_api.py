"""Tests for the HTTP surface using FastAPI's TestClient."""

import asyncio
import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from fieldbot.agent.tools.registry import ToolRegistry
from fieldbot.api.app import create_app
from fieldbot.config.schema import Config
from fieldbot.errors import UpstreamError
from fieldbot.providers.base import LLMProvider, LLMResponse
from fieldbot.session.manager import SessionStore

HEADERS = {"X-Employee-Id": "emp-1", "X-Employee-Name": "Somsri", "X-Employee-Role": "admin"}


def _sse(record: dict) -> bytes:
    return f"data: {json.dumps(record, ensure_ascii=False)}\n\n".encode("utf-8")


class FakeStreamClient:
    def __init__(self, fail: bool = False):
        self.fail = fail

    async def stream_chat(self, payload):
        if self.fail:
            raise UpstreamError("Upstream error 429: rate limited", status_code=429)
        yield _sse({"choices": [{"delta": {"content": "สวัสดีค่ะ"}, "finish_reason": "stop"}]})
        yield b"data: [DONE]\n\n"


class FakeProvider(LLMProvider):
    def __init__(self, response: LLMResponse):
        super().__init__()
        self.response = response

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        return self.response

    def get_default_model(self) -> str:
        return "gpt-4o"


def _client(tmp_path: Path, *, fail_stream=False, provider=None) -> tuple[TestClient, SessionStore]:
    store = SessionStore(tmp_path)
    app = create_app(
        Config(),
        tools=ToolRegistry(audit=False),
        store=store,
        stream_client=FakeStreamClient(fail_stream),
        provider=provider or FakeProvider(LLMResponse(content="ตอบแล้ว")),
    )
    return TestClient(app), store


def _events(body: str) -> list[dict]:
    return [json.loads(block[len("data: "):]) for block in body.split("\n\n") if block.startswith("data: ")]


def test_health(tmp_path):
    client, _ = _client(tmp_path)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_missing_employee_header_is_rejected(tmp_path):
    client, _ = _client(tmp_path)
    assert client.get("/sessions").status_code == 401
    assert client.post("/assistant/stream", json={"query": "hi"}).status_code == 401


# ---------------------------------------------------------------------------
# assistant endpoints
# ---------------------------------------------------------------------------

class TestAssistantStream:
    def test_streams_sse_events(self, tmp_path):
        client, store = _client(tmp_path)
        resp = client.post("/assistant/stream", json={"query": "สวัสดี"}, headers=HEADERS)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        events = _events(resp.text)
        assert [e["type"] for e in events] == ["session", "model", "text", "done"]
        assert store.get_session(events[0]["sessionId"], "emp-1") is not None

    def test_blank_query_is_400(self, tmp_path):
        client, _ = _client(tmp_path)
        resp = client.post("/assistant/stream", json={"query": ""}, headers=HEADERS)
        assert resp.status_code == 400
        assert "query" in resp.json()["error"]

    def test_upstream_failure_is_an_error_event(self, tmp_path):
        client, _ = _client(tmp_path, fail_stream=True)
        events = _events(client.post("/assistant/stream", json={"query": "สวัสดี"}, headers=HEADERS).text)
        assert events[-1] == {"type": "error", "message": "Upstream error 429: rate limited"}
        assert "done" not in [e["type"] for e in events]


class TestAssistant:
    def test_returns_json_answer(self, tmp_path):
        client, _ = _client(tmp_path)
        resp = client.post("/assistant", json={"query": "สวัสดี"}, headers=HEADERS)
        body = resp.json()
        assert resp.status_code == 200
        assert body["response"] == "ตอบแล้ว"
        assert body["sessionId"]
        assert set(body) == {"response", "sessionId", "entityMemory", "usage", "model", "contextStats"}

    def test_provider_error_is_502(self, tmp_path):
        client, _ = _client(tmp_path, provider=FakeProvider(LLMResponse(content="down", finish_reason="error")))
        resp = client.post("/assistant", json={"query": "สวัสดี"}, headers=HEADERS)
        assert resp.status_code == 502
        assert resp.json() == {"error": "down"}


# ---------------------------------------------------------------------------
# session routes
# ---------------------------------------------------------------------------

class TestSessionRoutes:
    def test_create_list_get_delete(self, tmp_path):
        client, _ = _client(tmp_path)

        created = client.post("/sessions", headers=HEADERS)
        assert created.status_code == 201
        session_id = created.json()["id"]

        listed = client.get("/sessions", headers=HEADERS).json()["sessions"]
        assert [s["id"] for s in listed] == [session_id]

        detail = client.get(f"/sessions/{session_id}", headers=HEADERS).json()
        assert detail["entityMemory"]
        assert detail["conversationSummary"]["recentSummaries"] == []

        other = {**HEADERS, "X-Employee-Id": "emp-2"}
        assert client.get(f"/sessions/{session_id}", headers=other).status_code == 404
        assert client.delete(f"/sessions/{session_id}", headers=other).status_code == 404

        assert client.delete(f"/sessions/{session_id}", headers=HEADERS).json() == {"deleted": True}
        assert client.get(f"/sessions/{session_id}", headers=HEADERS).status_code == 404

    def test_delete_all(self, tmp_path):
        client, store = _client(tmp_path)
        store.create_session("emp-1")
        store.create_session("emp-1")
        assert client.delete("/sessions", headers=HEADERS).json() == {"deleted": 2}

    def test_message_pagination(self, tmp_path):
        client, store = _client(tmp_path)
        session = store.create_session("emp-1")
        store.save_messages(session.id, [{"role": "user", "content": str(i)} for i in range(6)])
        url = f"/sessions/{session.id}/messages"

        page = client.get(url, params={"limit": 2, "offset": 1}, headers=HEADERS).json()["messages"]
        assert [m["content"] for m in page] == ["1", "2"]

        after = client.get(url, params={"afterSequence": 4}, headers=HEADERS).json()["messages"]
        assert [m["sequence_number"] for m in after] == [5, 6]

        recent = client.get(url, params={"recent": 1}, headers=HEADERS).json()["messages"]
        assert [m["content"] for m in recent] == ["5"]

    @pytest.mark.parametrize("params", [{"limit": 0}, {"offset": -1}])
    def test_invalid_paging_is_rejected(self, tmp_path, params):
        client, store = _client(tmp_path)
        session = store.create_session("emp-1")
        assert client.get(f"/sessions/{session.id}/messages", params=params, headers=HEADERS).status_code == 422


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_shutdown_waits_for_quick_saves_and_cancels_stuck_ones(tmp_path):
    store = SessionStore(tmp_path)
    app = create_app(
        Config(),
        tools=ToolRegistry(audit=False),
        store=store,
        stream_client=FakeStreamClient(),
        provider=FakeProvider(LLMResponse(content="ok")),
        shutdown_timeout=0.05,
    )
    finished = []

    async def quick():
        await asyncio.sleep(0)
        finished.append("quick")

    async def stuck():
        await asyncio.sleep(10)
        finished.append("stuck")

    async with app.router.lifespan_context(app):
        store.background.submit("save:s1", quick)
        store.background.submit("save:s2", stuck)

    assert finished == ["quick"]
    assert not store.background.tasks
