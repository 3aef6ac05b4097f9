"""Model API clients."""

from fieldbot.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from fieldbot.providers.litellm_provider import LiteLLMProvider
from fieldbot.providers.openai_stream import ChatCompletionsStreamClient

__all__ = [
    "ChatCompletionsStreamClient",
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "ToolCallRequest",
]
