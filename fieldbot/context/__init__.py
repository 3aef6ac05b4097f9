"""Context compression for long conversations."""

from fieldbot.context.compressor import (
    CompressedContext,
    ConversationSummary,
    compress_context,
    estimate_tokens,
)

__all__ = ["CompressedContext", "ConversationSummary", "compress_context", "estimate_tokens"]
