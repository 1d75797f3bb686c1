"""
Model for tracking processed webhook events to ensure idempotency.
"""
from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel

from billing_sync.core.typing import utc_now


class ProcessedEvent(SQLModel, table=True):
    """
    Tracks acknowledged Stripe events so redeliveries are not re-applied.

    Stripe retries a delivery until it sees a 2xx, for up to three days, and
    may also resend an event that was already acknowledged. Only acknowledged
    events are recorded here: a delivery that failed with a retryable error
    must run again when Stripe redelivers it.
    """
    __tablename__ = "processed_event"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Event identification
    event_id: str = Field(unique=True, index=True)  # Stripe event ID (evt_...)
    event_type: str = Field(index=True)  # e.g., "invoice.paid", "checkout.session.completed"
    event_created: Optional[datetime] = Field(default=None, nullable=True)  # Declared by Stripe

    # Processing result
    processed_at: datetime = Field(default_factory=utc_now, index=True)
    status: str = Field(default="applied")  # HandlerResult value: "applied", "stale", "unresolved", ...

    account_id: Optional[int] = Field(default=None, nullable=True, index=True)
