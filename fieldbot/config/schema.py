"""Configuration schema using Pydantic."""

from __future__ import annotations

import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_ENV_REF = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")


def _resolve_env(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references; unknown variables are returned as-is."""
    if not value:
        return value
    m = _ENV_REF.match(value)
    if not m:
        return value
    return os.environ.get(m.group(1), value)


class Base(BaseModel):
    """Accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UpstreamConfig(Base):
    """Chat-completions endpoint used for streaming turns."""

    api_key: str = ""
    api_base: str = "https://api.openai.com/v1"
    timeout: float = 120.0

    @property
    def resolved_api_key(self) -> str:
        return _resolve_env(self.api_key)


class ResilienceConfig(Base):
    """Timeout / retry / circuit-breaker settings for the non-streaming provider."""

    timeout: int = 120
    max_retries: int = 2
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: int = 60


class ModelTierConfig(Base):
    model: str
    max_tokens: int
    temperature: float


class ModelsConfig(Base):
    """Generation parameters per routing tier."""

    mini: ModelTierConfig = Field(
        default_factory=lambda: ModelTierConfig(model="gpt-4o-mini", max_tokens=2000, temperature=0.3)
    )
    standard: ModelTierConfig = Field(
        default_factory=lambda: ModelTierConfig(model="gpt-4o", max_tokens=8192, temperature=0.5)
    )
    reasoning: ModelTierConfig = Field(
        default_factory=lambda: ModelTierConfig(model="o3-mini", max_tokens=8192, temperature=0.2)
    )
    # Reasoning queries use the standard tier until a dedicated model is enabled.
    reasoning_enabled: bool = False


class AssistantConfig(Base):
    max_tool_iterations: int = 5
    recent_turns_to_keep: int = 3
    max_summary_length: int = 800
    require_tool_confirmation: bool = True


class SessionConfig(Base):
    storage_dir: str = "~/.fieldbot"
    idle_reuse_minutes: int = 30
    max_sessions_per_employee: int = 10
    recent_window: int = 8
    default_message_page: int = 100
    max_message_page: int = 500

    @property
    def storage_path(self) -> Path:
        return Path(self.storage_dir).expanduser()


class LoggingConfig(Base):
    json_output: bool = True
    level: str = "INFO"


class ServerConfig(Base):
    host: str = "0.0.0.0"
    port: int = 8080


class Config(Base):
    """Root configuration."""

    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
