"""Structured logging configuration for bootrescue.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- A run identifier attached to every event of one batch
- Per-target context binding inside each repair worker

The logging system integrates structlog with Python's stdlib logging
for handlers (file rotation), while using structlog exclusively for
actual log emission.

Example usage:
    >>> from bootrescue.config import LoggingConfig
    >>> from bootrescue.logging import setup_logging, get_logger, bind_target_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> bind_target_context(subscription="prod", resource_group="rg1", vm_name="vm1")
    >>> logger.info("repair_step_started", step="diagnose_power")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from bootrescue.config import LoggingConfig

_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "run_id", default=None
)


def add_run_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add run_id to log event if set in context.

    Args:
        logger: Logger instance (unused, required by structlog protocol)
        method_name: Log method name (unused, required by structlog protocol)
        event_dict: Current event dictionary to augment

    Returns:
        Event dictionary with run_id added if available
    """
    run_id = _run_id.get()
    if run_id is not None:
        event_dict["run_id"] = run_id
    return event_dict


def set_run_id(run_id: str | None) -> None:
    """Set the batch run identifier for the current context."""
    _run_id.set(run_id)


def get_run_id() -> str | None:
    """Get the batch run identifier from the current context."""
    return _run_id.get()


def bind_target_context(
    subscription: str,
    resource_group: str,
    vm_name: str,
    job_id: str | None = None,
) -> None:
    """Bind target identity to all subsequent logs in the current context.

    Each repair worker runs in its own asyncio task, and tasks copy the
    context on creation, so bindings made inside a worker never leak into
    sibling workers or the drain loop.

    Args:
        subscription: Subscription name owning the target
        resource_group: Resource group of the target VM
        vm_name: Name of the target VM
        job_id: Optional scheduler job identifier
    """
    values: dict[str, Any] = {
        "subscription": subscription,
        "resource_group": resource_group,
        "vm_name": vm_name,
    }
    if job_id is not None:
        values["job_id"] = job_id
    structlog.contextvars.bind_contextvars(**values)


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog with the given configuration.

    This function sets up the complete logging pipeline including:
    - JSON or console rendering based on config.format
    - File rotation if config.file is specified
    - Timestamp, log level, and logger name processors
    - Run id processor

    Args:
        config: Logging configuration from RescueConfig
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)

        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=config.file,
            maxBytes=config.rotation_size_mb * 1024 * 1024,
            backupCount=config.retention_count,
            encoding="utf-8",
        )
    else:
        # stderr keeps stdout free for the per-target report lines
        handler = logging.StreamHandler(sys.stderr)

    shared_processors: list[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        add_run_id,
        structlog.processors.StackInfoRenderer(),
    ]
    if config.format == "json":
        # Tracebacks become a string field so each event stays one JSON line
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    # Rendering happens in the formatter, which clears the record exc_info
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
