"""Structured logging for the chat service.

structlog renders JSON in production and a colored console view when the
service runs with DEBUG enabled. Request and connection context is carried in
contextvars so every event emitted while handling a request is tagged with it.
"""

import logging
import sys
from typing import Any

import structlog

# Third-party loggers that are chatty at INFO during reconnect storms.
_QUIET_LOGGERS = ("aio_pika", "aiormq", "sqlalchemy.engine", "httpx")

# Event keys that may carry user-written text.
_PRIVATE_KEYS = frozenset({"content", "body"})


def _drop_private_fields(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in _PRIVATE_KEYS & event_dict.keys():
        event_dict[key] = "<redacted>"
    return event_dict


def configure_logging(json_format: bool = True, level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        json_format: Emit JSON lines when True, console output otherwise.
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    processors: list[Any] = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _drop_private_fields,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, usually named after the calling module."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach fields (request_id, user_id, ...) to every later log event."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
