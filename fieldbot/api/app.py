"""HTTP surface: assistant endpoints and the session REST routes."""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from fieldbot import __version__
from fieldbot.agent.directory import Directory
from fieldbot.agent.orchestrator import AssistantOrchestrator, AssistantService
from fieldbot.agent.request import Actor, AssistantRequest
from fieldbot.agent.sse_events import SSE_HEADERS, SSEEvent, error_event, format_sse
from fieldbot.agent.tools.base import ToolExecutor
from fieldbot.agent.tools.registry import ToolRegistry
from fieldbot.agent.turn_runner import StreamingModelAPI
from fieldbot.config.schema import Config
from fieldbot.errors import PersistenceError, UpstreamError, ValidationError
from fieldbot.logging import bind_request_context, get_logger
from fieldbot.providers.base import LLMProvider
from fieldbot.providers.litellm_provider import LiteLLMProvider
from fieldbot.providers.openai_stream import ChatCompletionsStreamClient
from fieldbot.session.manager import SessionStore

logger = get_logger(__name__)


def get_actor(
    x_employee_id: str | None = Header(default=None),
    x_employee_name: str | None = Header(default=None),
    x_employee_role: str | None = Header(default=None),
) -> Actor:
    """The caller is identified by ``X-Employee-Id``; authentication happens upstream of this service."""
    if not x_employee_id:
        raise HTTPException(status_code=401, detail="X-Employee-Id header is required")
    return Actor(employee_id=x_employee_id, name=x_employee_name, role=x_employee_role)


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


async def _sse_body(events: AsyncIterator[SSEEvent]) -> AsyncIterator[str]:
    """Frame events; an unexpected failure becomes a final ``error`` event so the stream closes cleanly."""
    try:
        async for event in events:
            yield format_sse(event)
    except Exception as e:
        logger.exception("assistant_stream_failed", error=str(e))
        yield format_sse(error_event("เกิดข้อผิดพลาดภายในระบบ"))


def create_app(
    config: Config | None = None,
    *,
    tools: ToolExecutor | None = None,
    store: SessionStore | None = None,
    stream_client: StreamingModelAPI | None = None,
    provider: LLMProvider | None = None,
    directory: Directory | None = None,
    shutdown_timeout: float = 10.0,
) -> FastAPI:
    """Build the application; collaborators default to the configured production ones.

    On shutdown, pending background saves get ``shutdown_timeout`` seconds
    to finish before the rest are cancelled.
    """
    config = config or Config()
    tools = tools if tools is not None else ToolRegistry()
    store = store or SessionStore(config.sessions.storage_path, config.sessions)
    stream_client = stream_client or ChatCompletionsStreamClient(config.upstream)
    provider = provider or LiteLLMProvider(
        api_key=config.upstream.resolved_api_key or None,
        api_base=config.upstream.api_base,
        default_model=config.models.standard.model,
        resilience_config=config.resilience,
    )

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        background = app.state.store.background
        if not background.tasks:
            return
        _, pending = await asyncio.wait(list(background.tasks), timeout=shutdown_timeout)
        if pending:
            logger.warning("background_tasks_cancelled", pending=len(pending))
            await background.cancel_all()

    app = FastAPI(title="fieldbot", version=__version__, lifespan=_lifespan)
    app.state.config = config
    app.state.store = store
    app.state.orchestrator = AssistantOrchestrator(
        config=config, client=stream_client, tools=tools, store=store, directory=directory
    )
    app.state.service = AssistantService(
        config=config, provider=provider, tools=tools, store=store, directory=directory
    )

    @app.middleware("http")
    async def _log_context(request: Request, call_next):
        bind_request_context(
            request_id=uuid.uuid4().hex[:12],
            employee_id=request.headers.get("x-employee-id"),
            path=request.url.path,
        )
        return await call_next(request)

    @app.exception_handler(ValidationError)
    async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(UpstreamError)
    async def _upstream_error(_: Request, exc: UpstreamError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"error": str(exc)})

    @app.exception_handler(PersistenceError)
    async def _persistence_error(_: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("session_store_unavailable", error=str(exc))
        return JSONResponse(status_code=503, content={"error": "session store unavailable"})

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.post("/assistant")
    async def ask(payload: dict[str, Any], actor: Actor = Depends(get_actor)) -> dict[str, Any]:
        request = AssistantRequest.parse(payload)
        return await app.state.service.ask(request, actor)

    @app.post("/assistant/stream")
    async def ask_stream(payload: dict[str, Any], actor: Actor = Depends(get_actor)) -> StreamingResponse:
        request = AssistantRequest.parse(payload)
        events = app.state.orchestrator.stream(request, actor)
        return StreamingResponse(_sse_body(events), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/sessions")
    async def list_sessions(
        actor: Actor = Depends(get_actor), store: SessionStore = Depends(get_store)
    ) -> dict[str, Any]:
        return {"sessions": [s.info() for s in store.list_sessions(actor.employee_id)]}

    @app.post("/sessions", status_code=201)
    async def create_session(
        actor: Actor = Depends(get_actor), store: SessionStore = Depends(get_store)
    ) -> dict[str, Any]:
        return store.create_new_session(actor.employee_id).info()

    @app.get("/sessions/{session_id}")
    async def get_session(
        session_id: str, actor: Actor = Depends(get_actor), store: SessionStore = Depends(get_store)
    ) -> dict[str, Any]:
        session = store.get_session(session_id, actor.employee_id)
        if session is None:
            raise HTTPException(status_code=404, detail="session not found")
        return {
            **session.info(),
            "entityMemory": session.entity_memory.serialize(),
            "conversationSummary": session.summary.to_dict(),
        }

    @app.delete("/sessions/{session_id}")
    async def delete_session(
        session_id: str, actor: Actor = Depends(get_actor), store: SessionStore = Depends(get_store)
    ) -> dict[str, Any]:
        if not store.delete_session(session_id, actor.employee_id):
            raise HTTPException(status_code=404, detail="session not found")
        return {"deleted": True}

    @app.delete("/sessions")
    async def delete_all_sessions(
        actor: Actor = Depends(get_actor), store: SessionStore = Depends(get_store)
    ) -> dict[str, Any]:
        return {"deleted": store.delete_all_sessions(actor.employee_id)}

    @app.get("/sessions/{session_id}/messages")
    async def list_messages(
        session_id: str,
        limit: int | None = Query(default=None, ge=1),
        offset: int = Query(default=0, ge=0),
        after_sequence: int | None = Query(default=None, alias="afterSequence"),
        recent: int | None = Query(default=None, ge=1),
        actor: Actor = Depends(get_actor),
        store: SessionStore = Depends(get_store),
    ) -> dict[str, Any]:
        if store.get_session(session_id, actor.employee_id) is None:
            raise HTTPException(status_code=404, detail="session not found")
        if recent is not None:
            rows = store.load_recent_messages(session_id, recent)
        else:
            rows = store.load_messages(session_id, limit=limit, offset=offset, after_sequence=after_sequence)
        return {"messages": [r.to_dict() for r in rows]}

    return app
