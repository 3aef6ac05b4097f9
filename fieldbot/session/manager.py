"""File-backed session store: session state plus an append-only message log."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from fieldbot.agent.background import BackgroundTasks
from fieldbot.config.schema import SessionConfig
from fieldbot.context.compressor import ConversationSummary
from fieldbot.errors import PersistenceError
from fieldbot.logging import get_logger
from fieldbot.memory.entities import EntityMemory
from fieldbot.utils.helpers import atomic_append_text, atomic_write_text, ensure_dir, safe_filename

logger = get_logger(__name__)

TITLE_MAX_CHARS = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any, fallback: datetime) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return fallback
    return fallback


@dataclass
class Session:
    """
    One conversation of one employee.

    ``recent_messages`` is a small window used to rebuild context on the next
    request; the full history lives in the message log.
    """

    id: str
    employee_id: str
    entity_memory: EntityMemory = field(default_factory=EntityMemory)
    summary: ConversationSummary = field(default_factory=ConversationSummary)
    recent_messages: list[dict[str, Any]] = field(default_factory=list)
    title: str | None = None
    message_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_message_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "entity_memory": self.entity_memory.to_dict(),
            "conversation_summary": self.summary.to_dict(),
            "recent_messages": self.recent_messages,
            "title": self.title,
            "message_count": self.message_count,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_message_at": self.last_message_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        now = _utcnow()
        return cls(
            id=data["id"],
            employee_id=data["employee_id"],
            entity_memory=EntityMemory.from_dict(data.get("entity_memory")),
            summary=ConversationSummary.from_dict(data.get("conversation_summary")),
            recent_messages=list(data.get("recent_messages") or []),
            title=data.get("title"),
            message_count=int(data.get("message_count") or 0),
            total_input_tokens=int(data.get("total_input_tokens") or 0),
            total_output_tokens=int(data.get("total_output_tokens") or 0),
            created_at=_parse_dt(data.get("created_at"), now),
            updated_at=_parse_dt(data.get("updated_at"), now),
            last_message_at=_parse_dt(data.get("last_message_at"), now),
        )

    def info(self) -> dict[str, Any]:
        """List-view projection (no memory, no messages)."""
        return {
            "id": self.id,
            "title": self.title,
            "message_count": self.message_count,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_message_at": self.last_message_at.isoformat(),
        }


@dataclass
class StoredMessage:
    """One row of the durable log; never rewritten once appended."""

    session_id: str
    sequence_number: int
    role: str
    content: Any = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "sequence_number": self.sequence_number,
            "role": self.role,
            "content": self.content,
            "tool_calls": self.tool_calls,
            "tool_call_id": self.tool_call_id,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredMessage:
        return cls(
            session_id=data["session_id"],
            sequence_number=int(data["sequence_number"]),
            role=data["role"],
            content=data.get("content"),
            tool_calls=data.get("tool_calls"),
            tool_call_id=data.get("tool_call_id"),
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            created_at=data.get("created_at") or "",
        )

    def to_chat_message(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        return msg


class SessionStore:
    """
    Persists sessions under ``<root>/sessions/<employee>/<id>.json`` and the
    message log under ``<root>/messages/<id>.jsonl``.

    Session writes are atomic (temp file + rename). There is no optimistic
    concurrency control: concurrent updates of one session are last-writer-wins.
    """

    def __init__(
        self,
        root: Path,
        config: SessionConfig | None = None,
        *,
        background: BackgroundTasks | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or SessionConfig()
        self.root = root
        self.sessions_dir = ensure_dir(root / "sessions")
        self.messages_dir = ensure_dir(root / "messages")
        self.background = background or BackgroundTasks()
        self.clock = clock
        self._persisted_signatures: dict[str, str] = {}
        self._sequences: dict[str, int] = {}

    # -- paths -------------------------------------------------------------

    def _employee_dir(self, employee_id: str) -> Path:
        return self.sessions_dir / safe_filename(employee_id)

    def _session_path(self, employee_id: str, session_id: str) -> Path:
        return self._employee_dir(employee_id) / f"{safe_filename(session_id)}.json"

    def _messages_path(self, session_id: str) -> Path:
        return self.messages_dir / f"{safe_filename(session_id)}.jsonl"

    def _find_session_path(self, session_id: str) -> Path | None:
        name = f"{safe_filename(session_id)}.json"
        for path in self.sessions_dir.glob(f"*/{name}"):
            return path
        return None

    # -- sessions ----------------------------------------------------------

    def _read(self, path: Path) -> Session:
        try:
            with open(path, encoding="utf-8") as f:
                return Session.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise PersistenceError(f"cannot read session file {path.name}: {e}") from e

    def get_session(self, session_id: str, employee_id: str | None = None) -> Session | None:
        """Load a session; with *employee_id* given, sessions of other employees are invisible."""
        if employee_id is not None:
            path = self._session_path(employee_id, session_id)
            if not path.exists():
                return None
        else:
            path = self._find_session_path(session_id)
            if path is None:
                return None
        session = self._read(path)
        self._persisted_signatures[session.id] = self._persist_signature(session)
        return session

    def list_sessions(self, employee_id: str) -> list[Session]:
        """Sessions of *employee_id*, most recently active first. Unreadable files are skipped."""
        sessions: list[Session] = []
        directory = self._employee_dir(employee_id)
        if not directory.exists():
            return sessions
        for path in directory.glob("*.json"):
            try:
                sessions.append(self._read(path))
            except PersistenceError as e:
                logger.warning("session_file_skipped", path=str(path), error=str(e))
        return sorted(sessions, key=lambda s: s.last_message_at, reverse=True)

    @staticmethod
    def _persist_signature(session: Session) -> str:
        return json.dumps(session.to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))

    def save(self, session: Session) -> None:
        """Write a session snapshot; identical snapshots are not rewritten."""
        path = self._session_path(session.employee_id, session.id)
        started = time.perf_counter()
        signature = self._persist_signature(session)
        if path.exists() and self._persisted_signatures.get(session.id) == signature:
            logger.debug("session_save_skipped", session_id=session.id)
            return
        try:
            atomic_write_text(path, json.dumps(session.to_dict(), ensure_ascii=False, indent=2))
        except OSError as e:
            raise PersistenceError(f"cannot write session {session.id}: {e}") from e
        self._persisted_signatures[session.id] = signature
        logger.debug(
            "session_save_written",
            session_id=session.id,
            message_count=session.message_count,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    def create_session(self, employee_id: str, title: str | None = None) -> Session:
        now = self.clock()
        session = Session(
            id=str(uuid.uuid4()),
            employee_id=employee_id,
            title=title[:TITLE_MAX_CHARS] if title else None,
            created_at=now,
            updated_at=now,
            last_message_at=now,
        )
        self.save(session)
        logger.info("session_created", session_id=session.id, employee_id=employee_id)
        return session

    def create_new_session(self, employee_id: str, title: str | None = None) -> Session:
        """Create a session and schedule pruning of the employee's oldest sessions."""
        session = self.create_session(employee_id, title)
        self.schedule_cleanup(employee_id)
        return session

    def schedule_cleanup(self, employee_id: str) -> None:
        async def _work() -> None:
            self.cleanup_old_sessions(employee_id)

        self.background.submit(f"cleanup:{employee_id}", _work)

    def get_or_create_session(self, employee_id: str, session_id: str | None = None) -> Session:
        """
        Resolve the session for a request.

        An explicit *session_id* owned by the employee wins; otherwise the most
        recent session is reused if idle for less than ``idle_reuse_minutes``;
        otherwise a new session is created (and pruning scheduled).
        """
        if session_id:
            session = self.get_session(session_id, employee_id)
            if session is not None:
                return session
            logger.info("session_not_found", session_id=session_id, employee_id=employee_id)

        sessions = self.list_sessions(employee_id)
        if sessions:
            latest = sessions[0]
            idle = self.clock() - latest.last_message_at
            if idle < timedelta(minutes=self.config.idle_reuse_minutes):
                return latest

        return self.create_new_session(employee_id)

    def update_session_after_turn(
        self,
        session: Session,
        *,
        entity_memory: EntityMemory,
        summary: ConversationSummary,
        recent_messages: list[dict[str, Any]],
        query: str,
        new_message_count: int,
        input_tokens: int,
        output_tokens: int,
    ) -> Session:
        now = self.clock()
        session.entity_memory = entity_memory.clone()
        session.summary = summary
        session.recent_messages = recent_messages[-self.config.recent_window:]
        if not session.title and query:
            session.title = query[:TITLE_MAX_CHARS]
        session.message_count += new_message_count
        session.total_input_tokens += input_tokens
        session.total_output_tokens += output_tokens
        session.updated_at = now
        session.last_message_at = now
        self.save(session)
        return session

    def delete_session(self, session_id: str, employee_id: str) -> bool:
        path = self._session_path(employee_id, session_id)
        if not path.exists():
            return False
        try:
            path.unlink()
            self._messages_path(session_id).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"cannot delete session {session_id}: {e}") from e
        self._persisted_signatures.pop(session_id, None)
        self._sequences.pop(session_id, None)
        logger.info("session_deleted", session_id=session_id, employee_id=employee_id)
        return True

    def delete_all_sessions(self, employee_id: str) -> int:
        deleted = 0
        for session in self.list_sessions(employee_id):
            if self.delete_session(session.id, employee_id):
                deleted += 1
        return deleted

    def cleanup_old_sessions(self, employee_id: str, keep: int | None = None) -> int:
        """Delete the employee's least recently active sessions beyond *keep*."""
        keep = self.config.max_sessions_per_employee if keep is None else keep
        sessions = self.list_sessions(employee_id)
        deleted = 0
        for session in sessions[keep:]:
            if self.delete_session(session.id, employee_id):
                deleted += 1
        if deleted:
            logger.info("session_pruned", employee_id=employee_id, deleted=deleted, kept=keep)
        return deleted

    # -- message log -------------------------------------------------------

    def _read_log(self, session_id: str) -> list[StoredMessage]:
        path = self._messages_path(session_id)
        if not path.exists():
            return []
        rows: list[StoredMessage] = []
        try:
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        rows.append(StoredMessage.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        logger.warning("message_log_line_skipped", session_id=session_id)
        except OSError as e:
            raise PersistenceError(f"cannot read message log of {session_id}: {e}") from e
        return rows

    def _next_sequence(self, session_id: str) -> int:
        if session_id not in self._sequences:
            rows = self._read_log(session_id)
            self._sequences[session_id] = max((r.sequence_number for r in rows), default=0)
        self._sequences[session_id] += 1
        return self._sequences[session_id]

    def save_messages(
        self,
        session_id: str,
        messages: list[dict[str, Any]],
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> list[StoredMessage]:
        """Append *messages* to the log; token usage is attributed to the last one."""
        if not messages:
            return []
        created_at = self.clock().isoformat()
        rows: list[StoredMessage] = []
        for i, msg in enumerate(messages):
            is_last = i == len(messages) - 1
            rows.append(StoredMessage(
                session_id=session_id,
                sequence_number=self._next_sequence(session_id),
                role=msg.get("role", ""),
                content=msg.get("content"),
                tool_calls=msg.get("tool_calls") or None,
                tool_call_id=msg.get("tool_call_id"),
                input_tokens=input_tokens if is_last else 0,
                output_tokens=output_tokens if is_last else 0,
                created_at=created_at,
            ))
        payload = "".join(json.dumps(r.to_dict(), ensure_ascii=False) + "\n" for r in rows)
        try:
            atomic_append_text(self._messages_path(session_id), payload)
        except OSError as e:
            # sequence numbers handed out above were never written
            self._sequences.pop(session_id, None)
            raise PersistenceError(f"cannot append messages to {session_id}: {e}") from e
        return rows

    def load_messages(
        self,
        session_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        after_sequence: int | None = None,
    ) -> list[StoredMessage]:
        """Page through the log in sequence order; ``limit`` is clamped to ``max_message_page``."""
        limit = self.config.default_message_page if limit is None else limit
        limit = max(1, min(limit, self.config.max_message_page))
        rows = sorted(self._read_log(session_id), key=lambda r: r.sequence_number)
        if after_sequence is not None:
            rows = [r for r in rows if r.sequence_number > after_sequence]
        offset = max(0, offset)
        return rows[offset:offset + limit]

    def load_recent_messages(self, session_id: str, count: int | None = None) -> list[StoredMessage]:
        count = self.config.recent_window if count is None else count
        if count <= 0:
            return []
        rows = sorted(self._read_log(session_id), key=lambda r: r.sequence_number)
        return rows[-count:]

    def message_count(self, session_id: str) -> int:
        return len(self._read_log(session_id))
