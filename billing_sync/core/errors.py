"""
Webhook error taxonomy and unified error reporting with Sentry integration.

The exception classes map one-to-one onto the processor-visible outcomes
(see billing_sync.services.outcome):

- WebhookSignatureError, MalformedPayloadError -> rejected, never redelivered
- StorageError, ConcurrentUpdateError,
  DuplicateAccountError                        -> retryable, processor redelivers

Reporting helpers:

    # Capture an exception
    capture_exception(exc, context={"event_type": "invoice.paid"})

    # Capture a message (non-exception event)
    capture_message("Payload missing customer", level="warning")
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from billing_sync.core.context import get_context_dict, get_event_id, get_request_id

logger = structlog.get_logger(__name__)

__all__ = [
    "WebhookError",
    "WebhookSignatureError",
    "MalformedPayloadError",
    "StorageError",
    "ConcurrentUpdateError",
    "DuplicateAccountError",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "is_sentry_enabled",
]


class WebhookError(Exception):
    """Base class for failures while handling a processor webhook."""


class WebhookSignatureError(WebhookError):
    """Signature header missing, malformed, stale or not matching the body."""


class MalformedPayloadError(WebhookError):
    """Verified body that cannot be parsed or lacks required fields."""


class StorageError(WebhookError):
    """Database or network failure while reading or writing account state."""


class ConcurrentUpdateError(StorageError):
    """Optimistic write kept losing to concurrent writers for the same account."""


class DuplicateAccountError(StorageError):
    """Another account is already linked to this Stripe customer."""


_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN (from project settings)
        environment: Environment name (production, staging, development)
        traces_sample_rate: Percentage of transactions to trace (0.0-1.0)
        release: Release version

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
            ignore_errors=[
                KeyboardInterrupt,
                SystemExit,
            ],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info(
        "Sentry initialized",
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        release=release,
    )
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag events with the request and processor event they belong to."""
    if "request" in event:
        url = event["request"].get("url", "")
        if "/health" in url:
            return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    event_id = get_event_id()
    if event_id:
        event.setdefault("tags", {})["stripe_event_id"] = event_id

    return event


def is_sentry_enabled() -> bool:
    """Check if Sentry is initialized and available."""
    return _sentry_initialized


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"event_type": "invoice.paid"})
        level: Severity level (debug, info, warning, error, fatal)
        tags: Additional tags for filtering in Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    # Log with structlog (always, even without Sentry)
    logger.error(
        "Exception captured",
        exc_info=exc,
        **enriched_context,
    )

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)

            if tags:
                for key, value in tags.items():
                    scope.set_tag(key, value)

            scope.level = level
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("Failed to send exception to Sentry", error=str(e))

    return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for non-exception events).

    Useful for payloads the processor signed but that the pipeline could not
    use, which an operator should look at without the delivery being retried.

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)

            if tags:
                for key, value in tags.items():
                    scope.set_tag(key, value)

            scope.level = level
            return sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.warning("Failed to send message to Sentry", error=str(e))

    return None
