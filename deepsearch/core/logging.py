"""Structured logging setup using structlog.

Configures structlog to:
- Output JSON in production, pretty console in debug
- Bind context vars (request_id, user_id, chat_id, stream_id) to every log line
- Integrate with stdlib logging so library loggers get structured output
"""

import logging
import sys
from contextvars import ContextVar

import structlog

from deepsearch.config import get_settings

# ── Context variables (bound per-request/per-generation) ────────────

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
chat_id_var: ContextVar[str | None] = ContextVar("chat_id", default=None)
stream_id_var: ContextVar[str | None] = ContextVar("stream_id", default=None)

_CONTEXT_VARS = (
    (request_id_var, "request_id"),
    (user_id_var, "user_id"),
    (chat_id_var, "chat_id"),
    (stream_id_var, "stream_id"),
)


def _inject_context_vars(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Structlog processor that injects context vars into every log entry."""
    for var, key in _CONTEXT_VARS:
        val = var.get(None)
        if val is not None:
            event_dict.setdefault(key, val)
    return event_dict


def setup_logging() -> None:
    """Configure structlog + stdlib logging. Call once at app startup."""
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # Reduce noise from third-party libs
    for noisy in ("httpx", "httpcore", "openai", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance."""
    return structlog.get_logger(name)
