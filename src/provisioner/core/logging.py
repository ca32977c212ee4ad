"""
Logging configuration.

Provides a single entry point for configuring structured logging.
Supports environment-based configuration for:
- Log level (DEBUG, INFO, WARNING, ERROR)
- Output format (json, console)

Configuration is read from environment variables when not passed:
- PROVISIONER_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
- PROVISIONER_LOG_FORMAT: json | console (default: console)

Usage:
    # Configure at application startup
    from provisioner.core.logging import configure_logging, get_logger
    configure_logging()

    logger = get_logger(__name__).bind(operation_id="op-1")
    logger.info("stage_started", stage="WaitingForInstallation")
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Literal

import structlog
from structlog.types import Processor

# Track if logging has been configured
_configured = False


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
    force: bool = False,
) -> None:
    """
    Configure structured logging for the application.

    Should be called once at startup (CLI entry, worker startup, etc.).
    Subsequent calls are no-ops unless force=True.

    Args:
        level: Log level (overrides PROVISIONER_LOG_LEVEL env var)
        format: Output format (overrides PROVISIONER_LOG_FORMAT env var)
        force: Reconfigure even if already configured
    """
    global _configured

    if _configured and not force:
        return

    log_level = (level or os.environ.get("PROVISIONER_LOG_LEVEL", "INFO")).upper()
    log_format = (format or os.environ.get("PROVISIONER_LOG_FORMAT", "console")).lower()

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        # Worker / operation context bound via contextvars
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
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

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level, logging.INFO),
        force=True,
    )
    logging.getLogger("provisioner").setLevel(getattr(logging, log_level, logging.INFO))

    _configured = True


def get_logger(name: str | None = None, **initial_values: Any) -> Any:
    """Get a structured logger, optionally pre-bound with *initial_values*."""
    return structlog.get_logger(name, **initial_values)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs of this thread."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def is_configured() -> bool:
    """Check if logging has been configured."""
    return _configured


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "is_configured",
]
