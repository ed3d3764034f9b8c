"""
Structured logging configuration using structlog.

Usage:
    from apps.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("subscription_activated", organization_id="42", period_end="2026-11-16")

Context bound with ``bind_contextvars`` (correlation id, organization id,
actor) is merged into every log line emitted in the same request or task.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor


def _add_trace_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Rename correlation_id to trace_id so logs join up with request traces.

    Also ensures the trace_id field is a string.
    """
    if "correlation_id" in event_dict:
        event_dict["trace_id"] = str(event_dict.pop("correlation_id"))
    return event_dict


def configure_logging(json_format: bool = True, log_level: str = "INFO") -> None:
    """
    Configure structlog for the application.

    Uses stdlib integration for compatibility with Django and third-party libraries.

    Args:
        json_format: If True, output JSON (production). If False, pretty console output.
        log_level: Minimum log level to output.
    """
    log_level_int = getattr(logging, log_level.upper(), logging.INFO)

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _add_trace_id,
    ]

    if json_format:
        renderer: Processor = structlog.processors.JSONRenderer()
        pre_chain.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
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
    root_logger.setLevel(log_level_int)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name, typically __name__ of the calling module.
    """
    return structlog.get_logger(name)


def bind_contextvars(**kwargs: Any) -> None:
    """
    Bind key-value pairs to the current context.

    These values are included in all subsequent log messages
    within the current request/task context.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def get_contextvars() -> dict[str, Any]:
    """Return the context currently bound for this request/task."""
    return structlog.contextvars.get_contextvars()


def clear_contextvars() -> None:
    """
    Clear all bound context variables.

    Call this at the end of request processing to prevent
    context leakage between requests.
    """
    structlog.contextvars.clear_contextvars()
