"""Mutable per-request state shared by the turn runner and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fieldbot.agent.request import Actor
from fieldbot.memory.entities import EntityMemory


@dataclass
class TurnState:
    """Everything one request accumulates between loading and persisting a session."""

    actor: Actor
    messages: list[dict[str, Any]]
    entity_memory: EntityMemory
    session_id: str | None = None
    # index of the current user message; everything from here on is new this turn
    turn_start: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    iterations: int = 0
    awaiting_confirmation: bool = False
    upstream_error: str | None = None
    tools_used: list[str] = field(default_factory=list)

    def add_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens

    @property
    def new_messages(self) -> list[dict[str, Any]]:
        return self.messages[self.turn_start:]

    def replace_messages(self, messages: list[dict[str, Any]]) -> None:
        """Swap in a repaired list, keeping ``turn_start`` on the same user message."""
        anchor = self.messages[self.turn_start] if self.turn_start < len(self.messages) else None
        self.messages = messages
        if anchor is None:
            return
        for i, msg in enumerate(messages):
            if msg is anchor:
                self.turn_start = i
                return
