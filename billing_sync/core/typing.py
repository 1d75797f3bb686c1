"""
Type and datetime helpers for SQLAlchemy/SQLModel code.

SQLModel fields are declared with Python types (e.g., `email: str`) but at the
class level they're actually InstrumentedAttribute descriptors with SQLAlchemy
column methods like .desc(), .in_(), .is_(), etc. Type checkers see them as
plain Python types and report errors when column methods are called.

SQLite hands timestamps back without tzinfo even when they were written
timezone-aware, so every comparison against stored datetimes goes through
ensure_utc().
"""

from typing import TYPE_CHECKING, Any, Optional, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op - it just returns the input unchanged.

    Usage:
        select(Account).order_by(col(Account.created_at).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def safe_getattr(obj: Any, name: str, default: T = None) -> T:  # type: ignore[assignment]
    """
    Type-safe getattr for dynamically accessed attributes.

    Usage:
        count = safe_getattr(result, "rowcount", 0)
    """
    return getattr(obj, name, default)


__all__ = [
    "col",
    "utc_now",
    "ensure_utc",
    "safe_getattr",
]
