"""LiteLLM provider used for non-streaming assistant requests."""

import asyncio
from typing import Any

import json_repair
import litellm
from litellm import acompletion

from fieldbot.config.schema import ResilienceConfig
from fieldbot.logging import get_logger, mask_secret
from fieldbot.providers.base import LLMProvider, LLMResponse, ToolCallRequest, sanitize_messages
from fieldbot.providers.circuit_breaker import CircuitBreaker

logger = get_logger("fieldbot.providers.litellm")

# Extra headroom over the request timeout LiteLLM enforces itself.
_WAIT_MARGIN_S = 30


def _field(obj: Any, key: str) -> Any:
    """Read *key* from a LiteLLM object or a plain dict."""
    return obj.get(key) if isinstance(obj, dict) else getattr(obj, key, None)


def _arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json_repair.loads(raw)
    except Exception:
        logger.warning("tool_arguments_unparseable", raw=raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_tool_calls(message: Any) -> list[ToolCallRequest]:
    """Tool calls of a completion message; entries without a function name are skipped."""
    calls: list[ToolCallRequest] = []
    for position, raw in enumerate(_field(message, "tool_calls") or []):
        function = _field(raw, "function") or {}
        name = _field(function, "name")
        if not name or not isinstance(name, str):
            continue
        calls.append(ToolCallRequest(
            id=str(_field(raw, "id") or f"call_{position}"),
            name=name,
            arguments=_arguments(_field(function, "arguments")),
        ))
    return calls


def parse_completion(response: Any) -> LLMResponse:
    choice = response.choices[0]
    usage: dict[str, int] = {}
    raw_usage = getattr(response, "usage", None)
    if raw_usage:
        usage = {
            key: getattr(raw_usage, key, 0) or 0
            for key in ("prompt_tokens", "completion_tokens", "total_tokens")
        }
    return LLMResponse(
        content=choice.message.content,
        tool_calls=parse_tool_calls(choice.message),
        finish_reason=choice.finish_reason or "stop",
        usage=usage,
    )


class LiteLLMProvider(LLMProvider):
    """
    Chat-completions provider backed by LiteLLM.

    Never raises for upstream trouble: timeouts, transport failures and an
    open circuit breaker all come back as ``finish_reason="error"`` with the
    reason in ``content`` (API key masked).
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gpt-4o",
        resilience_config: ResilienceConfig | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.resilience = resilience_config
        self.breaker = CircuitBreaker.from_config(resilience_config) if resilience_config else None

        litellm.suppress_debug_info = True
        # o-series models reject temperature
        litellm.drop_params = True

        if api_key:
            logger.info("provider_initialized", model=default_model, api_key=mask_secret(api_key))

    def get_default_model(self) -> str:
        return self.default_model

    def _request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "messages": sanitize_messages(self._sanitize_empty_content(messages)),
            "max_tokens": max(1, max_tokens),
            "temperature": temperature,
        }
        if tools:
            request.update(tools=tools, tool_choice="auto")
        if self.api_key:
            request["api_key"] = self.api_key
        if self.api_base:
            request["api_base"] = self.api_base
        if self.resilience:
            request["request_timeout"] = self.resilience.timeout
            request["num_retries"] = self.resilience.max_retries
        return request

    def _masked(self, text: str) -> str:
        if self.api_key and self.api_key in text:
            return text.replace(self.api_key, mask_secret(self.api_key))
        return text

    def _failure(self, reason: str) -> LLMResponse:
        if self.breaker:
            self.breaker.record_failure()
        return LLMResponse(content=f"Error calling LLM: {reason}", finish_reason="error")

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        model = model or self.default_model

        rejected = self.breaker.rejection() if self.breaker else None
        if rejected:
            logger.warning("llm_call_rejected", model=model, reason=rejected)
            return LLMResponse(content=f"Error calling LLM: {rejected}", finish_reason="error")

        request = self._request(messages, tools, model, max_tokens, temperature)
        try:
            if self.resilience:
                response = await asyncio.wait_for(
                    acompletion(**request), timeout=self.resilience.timeout + _WAIT_MARGIN_S
                )
            else:
                response = await acompletion(**request)
        except asyncio.TimeoutError:
            logger.error("llm_call_timeout", model=model)
            return self._failure("request timed out")
        except Exception as e:
            error = self._masked(str(e))
            logger.error("llm_call_failed", model=model, error=error)
            return self._failure(error)

        if self.breaker:
            self.breaker.record_success()
        return parse_completion(response)
