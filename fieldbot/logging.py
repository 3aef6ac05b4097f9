"""structlog setup plus secret redaction for every log line."""

import json
import logging
import re
import sys
from typing import Any

import structlog

_SECRET_PATTERNS = (
    re.compile(r"sk-[A-Za-z0-9_-]{10,}"),
    re.compile(r"Bearer\s+[A-Za-z0-9_\-.]{10,}"),
    re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_.-]+"),
)

# Event keys whose values are masked whole, whatever they look like.
_SENSITIVE_KEYS = frozenset({"api_key", "apikey", "authorization", "password", "token", "secret"})


def mask_secret(value: str) -> str:
    """Keep the first and last four characters of *value*.

    >>> mask_secret("sk-abc123456789xyz")
    'sk-a****9xyz'
    """
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-4:]}"


def _redact_value(value: str) -> str:
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(lambda m: mask_secret(m.group(0)), value)
    return value


def _redact_event(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor: mask sensitive keys and secret-looking substrings."""
    for key, val in event_dict.items():
        if not isinstance(val, str):
            continue
        if key.lower() in _SENSITIVE_KEYS and "****" not in val:
            event_dict[key] = mask_secret(val)
        else:
            event_dict[key] = _redact_value(val)
    return event_dict


def _renderer(json_output: bool) -> Any:
    if not json_output:
        return structlog.dev.ConsoleRenderer()
    # Thai stays readable in the JSON lines
    return structlog.processors.JSONRenderer(
        serializer=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, **kw)
    )


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Route structlog through stdlib logging to stderr.

    Calling it again replaces the previous handler on the ``fieldbot`` logger.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _redact_event,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, _renderer(json_output)],
    ))

    package_logger = logging.getLogger("fieldbot")
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.setLevel(getattr(logging, level.upper()))


def bind_request_context(**values: Any) -> None:
    """Attach *values* to every log line emitted by the current request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{k: v for k, v in values.items() if v is not None})


def get_logger(name: str = "fieldbot") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
