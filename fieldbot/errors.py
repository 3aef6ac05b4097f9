"""Error taxonomy for the conversation engine."""

from __future__ import annotations


class FieldbotError(Exception):
    """Base class for all engine errors."""


class ValidationError(FieldbotError):
    """Malformed or missing request fields; rejected before any upstream call."""


class UpstreamError(FieldbotError):
    """The model API answered with a non-2xx status or an unusable body."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(FieldbotError):
    """The session store could not be read or written."""


class ToolExecutionError(FieldbotError):
    """
    Raised by a tool for an expected domain failure (unknown site, duplicate ticket).

    The registry turns it into a failed result whose error is ``reason`` as-is.
    """

    def __init__(self, tool: str, reason: str) -> None:
        super().__init__(f"{tool}: {reason}")
        self.tool = tool
        self.reason = reason


class ProtocolError(FieldbotError):
    """A streamed record from the model API could not be decoded."""
