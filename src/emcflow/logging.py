"""Structured logging setup for emcflow.

All components log through structlog with snake_case event names and
key/value context, e.g. ``log.info("step_completed", step_id=...)``.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        json_output: Render JSON lines if True, otherwise a console format.
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[handler],
        force=True,
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger for an emcflow component.

    Args:
        name: Component name; prefixed with ``emcflow.``.
    """
    return structlog.get_logger(f"emcflow.{name}")
