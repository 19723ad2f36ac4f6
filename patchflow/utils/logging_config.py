"""
Logging configuration using structlog for structured, JSON-based logging.

Every patchflow module logs through structlog with snake_case event names and
keyword context, e.g. ``log.info("checkpoint_created", checkpoint_id=...)``.
The host process (the worker that owns the ``WorkflowDriver``) calls
``configure_logging(settings.log_level)`` once at start; the library itself
never configures logging.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("restore_started", workflow_id="wf-1", checkpoint_id="cp_1")
    """
    return structlog.get_logger(name)


def bind_workflow(workflow_id: str) -> None:
    """Bind a workflow id to the structlog context of the current task."""
    structlog.contextvars.bind_contextvars(workflow_id=workflow_id)


def unbind_workflow() -> None:
    structlog.contextvars.unbind_contextvars("workflow_id")
