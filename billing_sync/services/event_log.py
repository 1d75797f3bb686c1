"""
Processed-event log for webhook idempotency.

Stripe may deliver the same event more than once. Acknowledged event ids are
kept for the length of Stripe's redelivery window so a repeat can be
short-circuited before any account is touched.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from billing_sync.core.errors import StorageError
from billing_sync.core.logging_config import get_logger
from billing_sync.core.typing import col, safe_getattr, utc_now
from billing_sync.models.processed_event import ProcessedEvent

logger = get_logger(__name__)

DEFAULT_RETENTION_HOURS = 72


class ProcessedEventStore:
    def __init__(self, engine: Engine, retention_hours: int = DEFAULT_RETENTION_HOURS):
        self.engine = engine
        self.retention = timedelta(hours=retention_hours)

    def _cutoff(self, now: Optional[datetime]) -> datetime:
        return (now or utc_now()) - self.retention

    def has_seen(self, event_id: str, now: Optional[datetime] = None) -> bool:
        """Check if an event was acknowledged within the retention window."""
        try:
            with Session(self.engine) as session:
                existing = session.exec(
                    select(ProcessedEvent)
                    .where(ProcessedEvent.event_id == event_id)
                    .where(col(ProcessedEvent.processed_at) >= self._cutoff(now))
                ).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read processed events: {e}") from e
        return existing is not None

    def record(
        self,
        event_id: str,
        event_type: str,
        status: str,
        event_created: Optional[datetime] = None,
        account_id: Optional[int] = None,
    ) -> None:
        """
        Record an acknowledged event.

        An id already present (expired entry, or a concurrent delivery of the
        same event) is refreshed in place.
        """
        now = utc_now()
        try:
            with Session(self.engine) as session:
                session.add(ProcessedEvent(
                    event_id=event_id,
                    event_type=event_type,
                    event_created=event_created,
                    processed_at=now,
                    status=status,
                    account_id=account_id,
                ))
                try:
                    session.commit()
                    return
                except IntegrityError:
                    session.rollback()

                existing = session.exec(
                    select(ProcessedEvent).where(ProcessedEvent.event_id == event_id)
                ).first()
                if existing is None:
                    raise StorageError(f"Could not record event {event_id}")
                existing.processed_at = now
                existing.status = status
                existing.account_id = account_id
                session.add(existing)
                session.commit()
                logger.debug("processed_event_refreshed", event_id=event_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to record processed event: {e}") from e

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete entries older than the retention window. Returns rows deleted."""
        try:
            with Session(self.engine) as session:
                result = session.execute(
                    delete(ProcessedEvent).where(col(ProcessedEvent.processed_at) < self._cutoff(now))
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to prune processed events: {e}") from e
        return safe_getattr(result, "rowcount", 0) or 0
