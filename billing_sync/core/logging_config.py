"""
Structured logging configuration using structlog.

Provides JSON-formatted logs for production (searchable/aggregatable)
and human-readable colored output for development.

Usage:
    from billing_sync.core.logging_config import get_logger, mask_identifier

    logger = get_logger(__name__)
    logger.info("webhook_processed", event_type="invoice.paid", customer=mask_identifier("cus_123"))

Output in production (JSON):
    {"event": "webhook_processed", "event_type": "invoice.paid", "customer": "cus_***123",
     "timestamp": "2024-01-01T12:00:00Z", "level": "info", "logger": "billing_sync.services.reconciler"}

Output in development (colored):
    2024-01-01 12:00:00 [info     ] webhook_processed    event_type=invoice.paid customer=cus_***123
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog

# Determine environment
IS_PRODUCTION = os.getenv("ENVIRONMENT") == "production"
IS_TEST = "pytest" in sys.modules


def configure_logging() -> None:
    """Configure structlog with appropriate processors for the environment."""

    # Shared processors for all environments
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if IS_PRODUCTION:
        # Production: JSON output for log aggregation
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # Development: colored, human-readable output
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=not IS_TEST),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Also configure standard logging for third-party libraries
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.INFO,
    )

    # Reduce noise from chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        A structlog bound logger with JSON/console output based on environment
    """
    return structlog.get_logger(name)


def mask_identifier(value: Optional[Any], visible: int = 3) -> Optional[str]:
    """
    Mask an identifier for logging, keeping its prefix and last characters.

    Processor ids keep their type prefix so logs stay searchable by kind:
        "cus_Nf3kPz0a9Q" -> "cus_***a9Q"
        "1234567"        -> "***567"
        "42"             -> "***"
    """
    if value is None or value == "":
        return None

    text = str(value)
    prefix = ""
    if "_" in text:
        head, _, text = text.partition("_")
        prefix = f"{head}_"

    tail = text[-visible:] if len(text) > visible else ""
    return f"{prefix}***{tail}"


# Configure on import
configure_logging()
