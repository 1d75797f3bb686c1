from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

MAX_UNIX_SECONDS = 253402300799  # 9999-12-31T23:59:59Z


class StripeEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    object_: Dict[str, Any] = Field(alias="object")
    previous_attributes: Optional[Dict[str, Any]] = None


class StripeEvent(BaseModel):
    """Envelope of a Stripe webhook delivery, parsed only after the signature checks out."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int = Field(ge=0, le=MAX_UNIX_SECONDS)  # Unix seconds, declared by Stripe
    livemode: bool = False
    data: StripeEventData

    @property
    def payload(self) -> Dict[str, Any]:
        return self.data.object_

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=timezone.utc)


class WebhookResponse(BaseModel):
    received: bool
    outcome: str  # "ack", "retryable_failure", "rejected"
    result: Optional[str] = None  # HandlerResult value when the event was dispatched
    event_id: Optional[str] = None
