"""Per-request composition of the conversation engine."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from fieldbot.agent.confirmation import ToolConfirmationWorkflow
from fieldbot.agent.directory import Directory, PartialIdResolver
from fieldbot.agent.prompt import SystemPromptBuilder
from fieldbot.agent.request import Actor, AssistantRequest
from fieldbot.agent.router import ModelRouter, RoutingDecision, detect_tone, log_routing
from fieldbot.agent.sequence import repair_messages
from fieldbot.agent.sse_events import (
    SSEEvent,
    done_event,
    file_processing_event,
    model_event,
    session_event,
)
from fieldbot.agent.stream_handler import AssembledToolCall
from fieldbot.agent.tools.base import ToolExecutor
from fieldbot.agent.turn_runner import StreamingModelAPI, StreamingTurnRunner
from fieldbot.agent.turn_state import TurnState
from fieldbot.config.schema import Config
from fieldbot.context.compressor import CompressedContext, compress_context
from fieldbot.errors import PersistenceError, UpstreamError
from fieldbot.files import BasicFileProcessor, FileProcessor, ProcessedFile, build_message_content
from fieldbot.logging import get_logger
from fieldbot.memory.entities import EntityMemory
from fieldbot.memory.extraction import EntityExtractor
from fieldbot.providers.base import LLMProvider
from fieldbot.session.history import TurnHistoryWriter
from fieldbot.session.manager import Session, SessionStore

logger = get_logger(__name__)


@dataclass
class PreparedTurn:
    """Everything assembled before the first model call."""

    session: Session | None
    state: TurnState
    compressed: CompressedContext
    processed_files: list[ProcessedFile] = field(default_factory=list)


class _TurnPipeline:
    """Collaborators and steps shared by the streaming and non-streaming entry points."""

    def __init__(
        self,
        *,
        config: Config,
        tools: ToolExecutor,
        store: SessionStore | None = None,
        directory: Directory | None = None,
        file_processor: FileProcessor | None = None,
        prompt_builder: SystemPromptBuilder | None = None,
        extractor: EntityExtractor | None = None,
    ) -> None:
        self.config = config
        self.tools = tools
        self.store = store
        self.file_processor = file_processor or BasicFileProcessor()
        self.prompt_builder = prompt_builder or SystemPromptBuilder()
        self.extractor = extractor or EntityExtractor()
        self.router = ModelRouter(config.models)
        self.history = TurnHistoryWriter(recent_window=config.sessions.recent_window)
        self.workflow = ToolConfirmationWorkflow(tools, PartialIdResolver(directory), self.extractor)

    def _load_session(
        self, request: AssistantRequest, actor: Actor
    ) -> tuple[Session | None, EntityMemory, list[dict[str, Any]]]:
        """Resolve session, memory and history; store failures downgrade to memory-only mode."""
        session: Session | None = None
        if self.store is not None:
            try:
                session = self.store.get_or_create_session(actor.employee_id, request.session_id)
            except PersistenceError as e:
                logger.warning("session_load_failed", employee_id=actor.employee_id, error=str(e))

        memory = EntityMemory.deserialize(request.entity_memory)
        history: list[dict[str, Any]] = []
        if session is not None:
            # stored records win over a client echo of the same id
            memory.merge(session.entity_memory)
            history = [m for m in session.recent_messages if m.get("role") != "system"]

        if not history:
            history = [m for m in request.conversation_history if m.get("role") != "system"]
        return session, memory, history

    def _prepare(
        self,
        request: AssistantRequest,
        actor: Actor,
        session: Session | None,
        memory: EntityMemory,
        history: list[dict[str, Any]],
        processed: list[ProcessedFile],
    ) -> PreparedTurn:
        system_prompt = self.prompt_builder.build(actor, detect_tone(request.query), memory)
        user_message: dict[str, Any] = {"role": "user", "content": request.query}
        raw = [{"role": "system", "content": system_prompt}, *history, user_message]

        compressed = compress_context(
            raw,
            memory,
            recent_turns_to_keep=self.config.assistant.recent_turns_to_keep,
            max_summary_length=self.config.assistant.max_summary_length,
            previous_summary=session.summary if session is not None else None,
            extractor=self.extractor,
        )

        messages = list(compressed.recent_messages)
        turn_start = len(messages) - 1
        for i, msg in enumerate(messages):
            if msg is user_message:
                turn_start = i
                if processed:
                    messages[i] = {**msg, "content": build_message_content(request.query, processed)}
                break

        state = TurnState(
            actor=actor,
            messages=messages,
            entity_memory=compressed.entities,
            session_id=session.id if session is not None else None,
            turn_start=turn_start,
        )
        return PreparedTurn(session=session, state=state, compressed=compressed, processed_files=processed)

    def _route(self, query: str, memory: EntityMemory) -> RoutingDecision:
        decision = self.router.route(query, memory.routing_hint())
        log_routing(query, decision)
        return decision

    def _persist(self, turn: PreparedTurn, query: str) -> None:
        """Append the turn to the log and update the session; failures are logged, never raised."""
        if self.store is None or turn.session is None:
            return
        state = turn.state
        new_messages = [self.history.normalize(m) for m in state.new_messages]
        try:
            self.store.save_messages(
                turn.session.id,
                new_messages,
                input_tokens=state.input_tokens,
                output_tokens=state.output_tokens,
            )
            self.store.update_session_after_turn(
                turn.session,
                entity_memory=state.entity_memory,
                summary=turn.compressed.summary,
                recent_messages=self.history.recent_window_of(state.messages),
                query=query,
                new_message_count=len(new_messages),
                input_tokens=state.input_tokens,
                output_tokens=state.output_tokens,
            )
        except PersistenceError as e:
            logger.error("session_save_failed", session_id=turn.session.id, error=str(e))
            return
        logger.info(
            "session_saved",
            session_id=turn.session.id,
            new_messages=len(new_messages),
            summaries=len(turn.compressed.summary.recent_summaries),
        )

    def _persist_in_background(self, turn: PreparedTurn, query: str) -> None:
        if self.store is None or turn.session is None:
            return

        async def _work() -> None:
            self._persist(turn, query)

        self.store.background.submit(f"save:{turn.session.id}", _work)


class AssistantOrchestrator(_TurnPipeline):
    """
    Streaming assistant: one call to :meth:`stream` is one request/response cycle.

    Event order is ``session`` (when persisted), ``file_processing``*,
    ``tool_start``/``tool_end`` for confirmed tools, ``model``, then the
    runner's ``text``/tool events, and finally ``done`` or ``error``.
    """

    def __init__(
        self,
        *,
        config: Config,
        client: StreamingModelAPI,
        tools: ToolExecutor,
        store: SessionStore | None = None,
        directory: Directory | None = None,
        file_processor: FileProcessor | None = None,
        prompt_builder: SystemPromptBuilder | None = None,
        extractor: EntityExtractor | None = None,
    ) -> None:
        super().__init__(
            config=config,
            tools=tools,
            store=store,
            directory=directory,
            file_processor=file_processor,
            prompt_builder=prompt_builder,
            extractor=extractor,
        )
        self.runner = StreamingTurnRunner(
            client=client,
            tools=tools,
            workflow=self.workflow,
            max_iterations=config.assistant.max_tool_iterations,
        )

    async def _process_files(self, request: AssistantRequest) -> AsyncIterator[SSEEvent | ProcessedFile]:
        for attachment in request.files:
            yield file_processing_event(attachment.name, "start")
            try:
                results = await self.file_processor.process([attachment])
            except Exception as e:
                logger.warning("file_processing_failed", file_name=attachment.name, error=str(e))
                yield file_processing_event(attachment.name, "error", str(e))
                continue
            for processed in results:
                yield processed
            yield file_processing_event(attachment.name, "done")

    async def stream(self, request: AssistantRequest | dict[str, Any], actor: Actor) -> AsyncIterator[SSEEvent]:
        """
        Run one turn, yielding SSE events.

        Raises :class:`ValidationError` before the first event for a malformed
        request. Closing the generator early (client disconnect) abandons the
        upstream read and hands the session save to the background queue.
        """
        if not isinstance(request, AssistantRequest):
            request = AssistantRequest.parse(request)

        logger.info(
            "assistant_turn_started",
            employee_id=actor.employee_id,
            files=len(request.files),
            confirmed_tools=len(request.confirmed_tools),
        )
        session, memory, history = self._load_session(request, actor)
        if session is not None:
            yield session_event(session.id)

        processed: list[ProcessedFile] = []
        async for item in self._process_files(request):
            if isinstance(item, ProcessedFile):
                processed.append(item)
            else:
                yield item

        turn = self._prepare(request, actor, session, memory, history, processed)
        state = turn.state
        require_confirmation = (
            self.config.assistant.require_tool_confirmation and not request.skip_tool_confirmation
        )

        try:
            if request.confirmed_tools:
                async for event in self.workflow.apply_confirmed(state, request.confirmed_tools):
                    yield event

            decision = self._route(request.query, state.entity_memory)
            yield model_event(decision.tier, decision.config.model)

            async for event in self.runner.run(state, decision, require_confirmation=require_confirmation):
                yield event
        except (GeneratorExit, asyncio.CancelledError):
            logger.info("client_disconnected", session_id=state.session_id, iterations=state.iterations)
            self._persist_in_background(turn, request.query)
            raise

        self._persist(turn, request.query)

        if state.upstream_error is not None:
            return

        logger.info(
            "assistant_turn_completed",
            session_id=state.session_id,
            iterations=state.iterations,
            tools_used=state.tools_used,
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
            awaiting_confirmation=state.awaiting_confirmation,
        )
        yield done_event(
            session_id=state.session_id,
            entity_memory=state.entity_memory.serialize(),
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
            compression_ratio=turn.compressed.compression_ratio,
            entities_tracked=state.entity_memory.entities_tracked,
            files_processed=len(turn.processed_files),
            awaiting_confirmation=state.awaiting_confirmation,
        )


class AssistantService(_TurnPipeline):
    """Non-streaming assistant over an :class:`LLMProvider`; tool calls execute without confirmation."""

    def __init__(
        self,
        *,
        config: Config,
        provider: LLMProvider,
        tools: ToolExecutor,
        store: SessionStore | None = None,
        directory: Directory | None = None,
        file_processor: FileProcessor | None = None,
        prompt_builder: SystemPromptBuilder | None = None,
        extractor: EntityExtractor | None = None,
    ) -> None:
        super().__init__(
            config=config,
            tools=tools,
            store=store,
            directory=directory,
            file_processor=file_processor,
            prompt_builder=prompt_builder,
            extractor=extractor,
        )
        self.provider = provider
        self.max_iterations = config.assistant.max_tool_iterations

    async def _run_tools(self, state: TurnState, decision: RoutingDecision) -> str:
        definitions = self.tools.get_definitions() or None
        final = ""
        while state.iterations < self.max_iterations:
            state.iterations += 1
            state.replace_messages(repair_messages(state.messages))
            response = await self.provider.chat(
                state.messages,
                tools=definitions,
                model=decision.config.model,
                max_tokens=decision.config.max_tokens,
                temperature=decision.config.temperature,
            )
            if response.finish_reason == "error":
                state.upstream_error = response.content or "model call failed"
                raise UpstreamError(state.upstream_error)
            state.add_usage(
                int(response.usage.get("prompt_tokens") or 0),
                int(response.usage.get("completion_tokens") or 0),
            )

            if not response.has_tool_calls:
                final = response.content or ""
                if final:
                    state.messages.append({"role": "assistant", "content": final})
                return final

            calls = [
                AssembledToolCall(
                    index=i,
                    id=tc.id,
                    name=tc.name,
                    arguments=json.dumps(tc.arguments, ensure_ascii=False),
                )
                for i, tc in enumerate(response.tool_calls)
            ]
            pending = await self.workflow.prepare(calls)
            state.messages.append({
                "role": "assistant",
                "content": response.content or None,
                "tool_calls": [p.to_tool_call() for p in pending],
            })
            async for _ in self.workflow.execute(state, pending):
                pass

        logger.warning(
            "tool_iterations_exhausted",
            session_id=state.session_id,
            max_iterations=self.max_iterations,
            tools_used=state.tools_used,
        )
        return final

    async def ask(self, request: AssistantRequest | dict[str, Any], actor: Actor) -> dict[str, Any]:
        """
        Answer one request.

        Returns ``{response, sessionId, entityMemory, usage, model, contextStats}``.
        Raises :class:`UpstreamError` when the model call fails; whatever the
        turn completed before the failure is still persisted.
        """
        if not isinstance(request, AssistantRequest):
            request = AssistantRequest.parse(request)

        session, memory, history = self._load_session(request, actor)
        processed: list[ProcessedFile] = []
        for attachment in request.files:
            try:
                processed.extend(await self.file_processor.process([attachment]))
            except Exception as e:
                logger.warning("file_processing_failed", file_name=attachment.name, error=str(e))

        turn = self._prepare(request, actor, session, memory, history, processed)
        state = turn.state

        try:
            if request.confirmed_tools:
                async for _ in self.workflow.apply_confirmed(state, request.confirmed_tools):
                    pass
            decision = self._route(request.query, state.entity_memory)
            answer = await self._run_tools(state, decision)
        finally:
            self._persist(turn, request.query)

        return {
            "response": answer,
            "sessionId": state.session_id,
            "entityMemory": state.entity_memory.serialize(),
            "usage": {"inputTokens": state.input_tokens, "outputTokens": state.output_tokens},
            "model": {"tier": decision.tier, "model": decision.config.model},
            "contextStats": {
                "compressionRatio": turn.compressed.compression_ratio,
                "entitiesTracked": state.entity_memory.entities_tracked,
                "filesProcessed": len(processed),
            },
        }
