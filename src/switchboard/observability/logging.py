"""Structured logging configuration with request-scoped context.

Logging goes through structlog. While a request is being routed the
orchestrator opens a :func:`correlation_scope`, so every event emitted on its
behalf (context reads, agent selection, delegation hops, and agent code
running on worker threads) carries the request id as ``correlation_id`` and
the active ``conversation_id``.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
conversation_id_var: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)


def add_correlation_id(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor adding the current correlation and conversation ids.

    Ids already present on the event are left alone.
    """
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    conversation_id = conversation_id_var.get()
    if conversation_id:
        event_dict.setdefault("conversation_id", conversation_id)
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog on top of the standard library logging module.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON lines; otherwise use the console renderer

    Example:
        >>> setup_logging(log_level="INFO", json_logs=True)
        >>> logger = get_logger(__name__)
        >>> logger.info("orchestrator_started", max_delegation_depth=5)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.processors.ExceptionPrettyPrinter(), structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger; pass ``__name__``.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("agent_selected", agent="ContentAgent", score=75.0)
    """
    return structlog.get_logger(name)


@contextmanager
def correlation_scope(
    correlation_id: str, conversation_id: Optional[str] = None
) -> Iterator[str]:
    """Bind ids for the duration of a block, restoring the previous ones on exit.

    Scopes nest: an inner scope shadows the outer ids and the outer ids are
    visible again once it closes.

    Args:
        correlation_id: Id stamped on every event (the request id)
        conversation_id: Conversation the request belongs to

    Yields:
        The correlation id

    Example:
        >>> with correlation_scope("req_42", "conv_1"):
        ...     get_correlation_id()
        'req_42'
    """
    correlation_token = correlation_id_var.set(correlation_id)
    conversation_token = conversation_id_var.set(conversation_id)
    try:
        yield correlation_id
    finally:
        conversation_id_var.reset(conversation_token)
        correlation_id_var.reset(correlation_token)


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def get_conversation_id() -> Optional[str]:
    return conversation_id_var.get()


def clear_correlation_id() -> None:
    """Clear both the correlation id and the conversation id."""
    correlation_id_var.set(None)
    conversation_id_var.set(None)
