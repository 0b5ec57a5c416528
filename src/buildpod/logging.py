"""
Logging configuration.

Provides a single entry point for configuring structured logging.
Library modules log through stdlib ``logging.getLogger(__name__)``; the
CLI logs through ``structlog.get_logger()``. Both end up on stderr,
rendered by the same structlog processor chain, so container output on
stdout stays clean.

Configuration is read from environment variables:
- BUILDPOD_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
- BUILDPOD_LOG_FORMAT: json | console (default: console)

Usage:
    # Configure at application startup
    from buildpod.logging import configure_logging
    configure_logging()

    # Or with explicit settings
    configure_logging(level="DEBUG", format="json")
"""

import logging
import os
import sys
from typing import Literal

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

    Should be called once at startup. Subsequent calls are no-ops unless
    force=True.

    Args:
        level: Log level (overrides BUILDPOD_LOG_LEVEL env var)
        format: Output format (overrides BUILDPOD_LOG_FORMAT env var)
        force: Reconfigure even if already configured
    """
    global _configured

    if _configured and not force:
        return

    log_level = (level or os.environ.get("BUILDPOD_LOG_LEVEL", "INFO")).upper()
    log_format = (format or os.environ.get("BUILDPOD_LOG_FORMAT", "console")).lower()

    # Shared by structlog loggers and foreign (stdlib) records
    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        renderers: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *renderers,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, log_level))

    # Client libraries are chatty at DEBUG
    for noisy in ("urllib3", "aiohttp", "kubernetes_asyncio"):
        logging.getLogger(noisy).setLevel(max(logging.INFO, root.level))

    _configured = True


def is_debug_enabled() -> bool:
    """Check if DEBUG level logging is enabled."""
    return logging.getLogger().isEnabledFor(logging.DEBUG)


def is_configured() -> bool:
    """Check if logging has been configured."""
    return _configured
