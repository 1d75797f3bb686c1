from enum import Enum
from typing import Any, Dict, Optional
from datetime import datetime

from sqlmodel import JSON, Column, Field, SQLModel

from billing_sync.core.typing import ensure_utc, utc_now


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FREE = "FREE"


class Account(SQLModel, table=True):
    """
    Local profile whose paid access mirrors the processor's subscription state.

    Email is not unique: one person can own several profiles. Only the profile
    carrying the matching stripe_customer_id is authoritative for a customer.
    """
    __tablename__ = "account"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, nullable=True, index=True)  # External identity ID
    name: str = Field(default="Unknown User")
    email: str = Field(index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)

    # Stripe linkage
    # At most one profile per Stripe customer; NULLs do not collide
    stripe_customer_id: Optional[str] = Field(default=None, nullable=True, index=True, unique=True)
    stripe_session_id: Optional[str] = Field(default=None, nullable=True)
    stripe_subscription_id: Optional[str] = Field(default=None, nullable=True, index=True)
    stripe_product_id: Optional[str] = Field(default=None, nullable=True)
    stripe_price_id: Optional[str] = Field(default=None, nullable=True)
    stripe_customer_email: Optional[str] = Field(default=None, nullable=True)

    # Subscription state
    subscription_status: SubscriptionStatus = Field(default=SubscriptionStatus.FREE)
    subscription_start: Optional[datetime] = Field(default=None, nullable=True)
    subscription_end: Optional[datetime] = Field(default=None, nullable=True)
    subscription_created: Optional[datetime] = Field(default=None, nullable=True)
    subscription_cancelled_at: Optional[datetime] = Field(default=None, nullable=True)
    subscription_auto_renew: Optional[bool] = Field(default=None, nullable=True)

    # Billing metadata (amounts in minor currency units)
    subscription_amount: Optional[int] = Field(default=None, nullable=True)  # What the customer pays after discount
    original_amount: Optional[int] = Field(default=None, nullable=True)  # Price before discount
    subscription_currency: Optional[str] = Field(default=None, nullable=True)
    subscription_interval: Optional[str] = Field(default=None, nullable=True)  # "month", "year"
    discount_percent: Optional[float] = Field(default=None, nullable=True)
    discount_name: Optional[str] = Field(default=None, nullable=True)

    # Reconciliation bookkeeping
    last_event_applied_at: Optional[datetime] = Field(default=None, nullable=True)  # Newest event that wrote anything
    # Snapshot field name -> ISO time of the event that last wrote it
    field_event_times: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    version: int = Field(default=0)  # Bumped on every webhook write, guards concurrent updates

    def has_paid_access(self, now: Optional[datetime] = None) -> bool:
        """Active subscription whose window has not run out."""
        if self.subscription_status != SubscriptionStatus.ACTIVE:
            return False
        end = ensure_utc(self.subscription_end)
        if end is None:
            return True
        return end > (now or utc_now())
