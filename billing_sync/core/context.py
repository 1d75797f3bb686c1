"""
Request context management for log correlation.

Provides request_id and event_id correlation across logs and error tracking.
Uses contextvars for async-safe context propagation.

Usage:
    # In middleware (automatic)
    set_request_id(generate_request_id())

    # In the webhook pipeline, once the event is authenticated
    set_event_id(event.id)

    # In error handlers
    capture_exception(exc, context=get_context_dict())
"""

from contextvars import ContextVar
from typing import Optional
import uuid

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_correlation_id",
    "get_correlation_id",
    "set_event_id",
    "get_event_id",
    "clear_context",
    "get_context_dict",
]

# Context variables for request tracking (async-safe)
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_event_id: ContextVar[Optional[str]] = ContextVar("event_id", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    Example: req_a1b2c3d4e5f6a7b8
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    """Set request ID for current async context."""
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    """Get request ID from current async context."""
    return _request_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """
    Set correlation ID for distributed tracing.

    Passed via X-Correlation-ID header for end-to-end tracing.
    """
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from current context."""
    return _correlation_id.get()


def set_event_id(event_id: str) -> None:
    """Set the processor event ID being handled in this context."""
    _event_id.set(event_id)


def get_event_id() -> Optional[str]:
    return _event_id.get()


def clear_context() -> None:
    """
    Clear all context variables.

    Called at end of request to prevent context leaking.
    """
    _request_id.set(None)
    _correlation_id.set(None)
    _event_id.set(None)


def get_context_dict() -> dict:
    """
    Get all context variables as dict.

    Useful for enriching error reports.
    """
    return {
        "request_id": get_request_id(),
        "correlation_id": get_correlation_id(),
        "event_id": get_event_id(),
    }
