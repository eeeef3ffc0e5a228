"""Centralized structured logging configuration using structlog.

All taskweave modules log through structlog with snake_case event names and
keyword fields. Applications embedding the library call ``configure_logging``
once at startup; until then structlog's defaults apply.

Example:
    >>> from taskweave.log_config import configure_logging, get_logger
    >>> configure_logging(level="INFO")
    >>> logger = get_logger(__name__)
    >>> logger.info("pool_task_started", task_id="task-1", running=3)
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog


def configure_logging(
    level: str = "INFO",
    json_logs: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for the orchestration core.

    Sets up structlog with processors for timestamps, log levels, callsite
    information and exception rendering, routed through the standard library
    ``logging`` module so host applications keep control of handlers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, use JSONRenderer; if False, use ConsoleRenderer for development
        stream: Output stream for the root handler (default: stdout)

    Raises:
        ValueError: If an invalid log level is provided
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        msg = f"Invalid log level: {level}"
        raise ValueError(msg)

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=numeric_level,
        force=True,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            ],
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured structlog logger.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        A structlog BoundLogger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("pool_task_queued", task_id="task-1", queued=3)
    """
    return structlog.get_logger(name)


def bind_correlation_id(correlation_id: str) -> None:
    """Bind a correlation ID to every subsequent log entry in this context.

    Use it at the entry point of a batch or request so that pool, retry
    and breaker events emitted on its behalf can be grouped together.

    Args:
        correlation_id: Unique identifier for correlating related log entries

    Example:
        >>> bind_correlation_id("batch-2024-06-01")
        >>> logger.info("batch_started", total_tasks=12)  # carries correlation_id
    """
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def unbind_correlation_id() -> None:
    """Remove the correlation ID from the logging context.

    Example:
        >>> unbind_correlation_id()
    """
    structlog.contextvars.unbind_contextvars("correlation_id")


def bind_context(**kwargs: Any) -> None:
    """Bind arbitrary context variables to the logging context.

    Args:
        **kwargs: Key-value pairs to add to the logging context

    Example:
        >>> bind_context(circuit="quotes-api", tenant="acme")
        >>> logger.warning("circuit_trial_failed")  # includes circuit and tenant
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific context variables from the logging context.

    Args:
        *keys: Names of context variables to remove

    Example:
        >>> unbind_context("circuit", "tenant")
    """
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all context variables from the logging context.

    Example:
        >>> clear_context()
    """
    structlog.contextvars.clear_contextvars()


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """Bind context variables for the duration of a block.

    Each asyncio task runs in a copy of the context it was created in, so
    binding inside a task's coroutine never leaks into sibling tasks.

    Example:
        >>> with bound_context(task_id="task-1"):
        ...     logger.info("pool_task_started")  # includes task_id
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
