"""Inbound assistant request shapes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from fieldbot.errors import ValidationError


@dataclass(frozen=True)
class Actor:
    """The authenticated employee a request runs on behalf of."""

    employee_id: str
    name: str | None = None
    role: str | None = None


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FileAttachment(_WireModel):
    name: str
    mime_type: str
    data: str | None = None
    url: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class ConfirmedTool(_WireModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class AssistantRequest(_WireModel):
    """Shared shape of the streaming and non-streaming assistant endpoints."""

    query: str
    context: dict[str, Any] = Field(default_factory=dict)
    conversation_history: list[dict[str, Any]] = Field(default_factory=list)
    entity_memory: str | None = None
    session_id: str | None = None
    files: list[FileAttachment] = Field(default_factory=list)
    confirmed_tools: list[ConfirmedTool] = Field(default_factory=list)
    skip_tool_confirmation: bool = False

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("query is required")
        return value

    @classmethod
    def parse(cls, data: Any) -> AssistantRequest:
        """Validate a raw payload, raising the engine's :class:`ValidationError`."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(problems) from e
