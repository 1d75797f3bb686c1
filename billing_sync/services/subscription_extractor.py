"""
Normalizes raw Stripe payloads into subscription snapshots.

Every function here is pure: same payload in, same snapshot out, nothing
read from or written to storage. Fields Stripe leaves out (or sends in a
shape that cannot be used) are replaced by conservative fallbacks rather than
raised, so one bad field never blocks an otherwise valid event.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, FrozenSet, Optional, Tuple

from billing_sync.core.typing import utc_now
from billing_sync.models.account import SubscriptionStatus

DEFAULT_PERIOD_DAYS = 30

STATUS_MAP = {
    "canceled": SubscriptionStatus.CANCELLED,
    "unpaid": SubscriptionStatus.EXPIRED,
    "past_due": SubscriptionStatus.EXPIRED,
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
}

UNKNOWN_STATUS_POLICIES = {
    "expired": SubscriptionStatus.EXPIRED,
    "active": SubscriptionStatus.ACTIVE,
}

# Snapshot field -> Account column
FIELD_COLUMNS = {
    "status": "subscription_status",
    "period_start": "subscription_start",
    "period_end": "subscription_end",
    "subscription_id": "stripe_subscription_id",
    "product_id": "stripe_product_id",
    "price_id": "stripe_price_id",
    "base_amount": "original_amount",
    "actual_amount": "subscription_amount",
    "discount_percent": "discount_percent",
    "discount_name": "discount_name",
    "currency": "subscription_currency",
    "interval": "subscription_interval",
    "auto_renew": "subscription_auto_renew",
    "cancelled_at": "subscription_cancelled_at",
    "subscription_created": "subscription_created",
}

FULL_SNAPSHOT_FIELDS: FrozenSet[str] = frozenset(FIELD_COLUMNS)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """
    Subscription facts derived from one event.

    `carries` names the fields this event is authoritative for. Fields outside
    it are left untouched on the account, so a cancellation does not wipe the
    last known price and an invoice without a period keeps the current window.

    A `provisional` snapshot only fills fields no dated event has written yet,
    and never blocks a later authoritative one.
    """
    status: SubscriptionStatus
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    subscription_id: Optional[str] = None
    product_id: Optional[str] = None
    price_id: Optional[str] = None
    base_amount: Optional[int] = None
    discount_percent: Optional[float] = None
    discount_name: Optional[str] = None
    actual_amount: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    auto_renew: Optional[bool] = None
    cancelled_at: Optional[datetime] = None
    subscription_created: Optional[datetime] = None
    period_source: Optional[str] = None  # "subscription", "item", "created", "now", "provisional", "invoice"
    carries: FrozenSet[str] = field(default=FULL_SNAPSHOT_FIELDS)
    provisional: bool = False

    def changes(self) -> Dict[str, Any]:
        """Account column values for the fields this snapshot carries."""
        return {
            column: getattr(self, name)
            for name, column in FIELD_COLUMNS.items()
            if name in self.carries
        }


@dataclass(frozen=True)
class CheckoutDetails:
    session_id: Optional[str]
    customer_id: Optional[str]
    email: Optional[str]
    name: Optional[str]
    snapshot: SubscriptionSnapshot
    subscription_attached: bool  # Session carried the full subscription object


@dataclass(frozen=True)
class InvoiceDetails:
    invoice_id: Optional[str]
    customer_id: Optional[str]
    email: Optional[str]
    subscription_id: Optional[str]
    snapshot: SubscriptionSnapshot


# --- Primitive coercion -----------------------------------------------------


def timestamp_from_epoch(value: Any) -> Optional[datetime]:
    """Unix seconds -> aware UTC datetime, or None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _as_amount(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return None


def _as_percent(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        percent = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(percent):
        return None
    return percent


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def customer_reference(value: Any) -> Tuple[Optional[str], Optional[str]]:
    """(customer id, email) from a `customer` field, id string or expanded object."""
    if isinstance(value, dict):
        email = None if value.get("deleted") else value.get("email")
        return _object_id(value), email if isinstance(email, str) and email else None
    return _object_id(value), None


# --- Field resolution -------------------------------------------------------


def map_status(
    raw_status: Any,
    unknown_status: SubscriptionStatus = SubscriptionStatus.EXPIRED,
) -> SubscriptionStatus:
    """Collapse Stripe's subscription statuses onto the four local ones."""
    if isinstance(raw_status, str) and raw_status in STATUS_MAP:
        return STATUS_MAP[raw_status]
    return unknown_status


def unknown_status_from_policy(policy: str) -> SubscriptionStatus:
    try:
        return UNKNOWN_STATUS_POLICIES[policy.strip().lower()]
    except KeyError:
        raise ValueError(
            f"UNKNOWN_STATUS_POLICY must be one of {sorted(UNKNOWN_STATUS_POLICIES)}, got {policy!r}"
        ) from None


def first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    """First billable item of a subscription, or an empty dict."""
    data = _as_dict(subscription.get("items")).get("data")
    if isinstance(data, list) and data:
        return _as_dict(data[0])
    return {}


def resolve_period(
    subscription: Dict[str, Any],
    now: Optional[datetime] = None,
    period_days: int = DEFAULT_PERIOD_DAYS,
) -> Tuple[datetime, datetime, str]:
    """
    Billing window as (start, end, source).

    Chain: subscription-level current period, then the first item's current
    period, then [created, created + period_days], then [now, now + period_days].
    A level only wins when both of its timestamps are usable.
    """
    item = first_item(subscription)
    candidates = (
        ("subscription", subscription),
        ("item", item),
    )
    for source, holder in candidates:
        start = timestamp_from_epoch(holder.get("current_period_start"))
        end = timestamp_from_epoch(holder.get("current_period_end"))
        if start is not None and end is not None:
            return start, end, source

    window = timedelta(days=period_days)
    created = timestamp_from_epoch(subscription.get("created"))
    if created is not None:
        try:
            return created, created + window, "created"
        except OverflowError:
            pass

    current = now or utc_now()
    return current, current + window, "now"


def active_discount(subscription: Dict[str, Any]) -> Dict[str, Any]:
    """
    First usable discount: the `discounts` array (current API) wins over the
    legacy single `discount` field. Unexpanded ids in the array are skipped.
    """
    discounts = subscription.get("discounts")
    if isinstance(discounts, list):
        for discount in discounts:
            if isinstance(discount, dict):
                return discount
    return _as_dict(subscription.get("discount"))


def discount_coupon(discount: Dict[str, Any]) -> Dict[str, Any]:
    coupon = discount.get("coupon")
    if isinstance(coupon, dict):
        return coupon
    # Newer API versions nest the coupon under `source`
    return _as_dict(_as_dict(discount.get("source")).get("coupon"))


def discounted_amount(base_amount: int, percent_off: Optional[float]) -> int:
    """
    Amount actually charged after a percent-off coupon, in minor units.

    Rounds half up: 9999 at 33% off is 6699.33 -> 6699, 1005 at 50% is 502.5 -> 503.
    """
    if percent_off is None or percent_off <= 0:
        return base_amount
    percent = min(Decimal(str(percent_off)), Decimal(100))
    value = Decimal(base_amount) * (Decimal(100) - percent) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# --- Snapshots --------------------------------------------------------------


def extract_subscription(
    subscription: Dict[str, Any],
    now: Optional[datetime] = None,
    unknown_status: SubscriptionStatus = SubscriptionStatus.EXPIRED,
    period_days: int = DEFAULT_PERIOD_DAYS,
) -> SubscriptionSnapshot:
    """Full snapshot from a Stripe subscription object."""
    start, end, period_source = resolve_period(subscription, now=now, period_days=period_days)

    price = _as_dict(first_item(subscription).get("price"))
    base_amount = _as_amount(price.get("unit_amount"))
    currency = price.get("currency") if isinstance(price.get("currency"), str) else None
    interval = _as_dict(price.get("recurring")).get("interval")

    coupon = discount_coupon(active_discount(subscription))
    discount_percent = _as_percent(coupon.get("percent_off"))
    discount_name = coupon.get("name") if isinstance(coupon.get("name"), str) else None

    actual_amount = None
    if base_amount is not None:
        actual_amount = discounted_amount(base_amount, discount_percent)

    subscription_id = _object_id(subscription.get("id"))
    carries = FULL_SNAPSHOT_FIELDS
    if subscription_id is None:
        carries = carries - {"subscription_id"}

    return SubscriptionSnapshot(
        status=map_status(subscription.get("status"), unknown_status),
        period_start=start,
        period_end=end,
        subscription_id=subscription_id,
        product_id=_object_id(price.get("product")),
        price_id=_object_id(price.get("id")),
        base_amount=base_amount,
        discount_percent=discount_percent,
        discount_name=discount_name,
        actual_amount=actual_amount,
        currency=currency,
        interval=interval if isinstance(interval, str) else None,
        auto_renew=not bool(subscription.get("cancel_at_period_end")),
        cancelled_at=timestamp_from_epoch(subscription.get("canceled_at")),
        subscription_created=timestamp_from_epoch(subscription.get("created")),
        period_source=period_source,
        carries=carries,
    )


def extract_cancellation(subscription: Dict[str, Any], event_time: datetime) -> SubscriptionSnapshot:
    """
    Snapshot for a deleted subscription: status and end of access only.

    Access ends when Stripe says the subscription ended, falling back to the
    cancellation time and then to the event time.
    """
    cancelled_at = timestamp_from_epoch(subscription.get("canceled_at"))
    ended_at = timestamp_from_epoch(subscription.get("ended_at"))
    subscription_id = _object_id(subscription.get("id"))

    carries = {"status", "period_end", "cancelled_at", "auto_renew"}
    if subscription_id is not None:
        carries.add("subscription_id")

    return SubscriptionSnapshot(
        status=SubscriptionStatus.CANCELLED,
        period_end=ended_at or cancelled_at or event_time,
        subscription_id=subscription_id,
        auto_renew=False,
        cancelled_at=cancelled_at or event_time,
        carries=frozenset(carries),
    )


def extract_checkout(
    session: Dict[str, Any],
    event_time: datetime,
    provisional_days: int = DEFAULT_PERIOD_DAYS,
    unknown_status: SubscriptionStatus = SubscriptionStatus.EXPIRED,
) -> CheckoutDetails:
    """
    Customer and access details from a completed checkout session.

    When the session already embeds the subscription object its snapshot is
    used as is. Otherwise access is unlocked for a provisional window anchored
    on the event time; the subscription events that follow correct it.
    """
    customer_id, customer_email = customer_reference(session.get("customer"))
    details = _as_dict(session.get("customer_details"))
    email = details.get("email") or session.get("customer_email") or customer_email
    name = details.get("name")

    subscription = session.get("subscription")
    if isinstance(subscription, dict) and subscription.get("object", "subscription") == "subscription":
        snapshot = extract_subscription(
            subscription,
            now=event_time,
            unknown_status=unknown_status,
            period_days=provisional_days,
        )
        if customer_id is None:
            customer_id, _ = customer_reference(subscription.get("customer"))
        attached = True
    else:
        subscription_id = _object_id(subscription)
        carries = {"status", "period_start", "period_end"}
        if subscription_id is not None:
            carries.add("subscription_id")
        snapshot = SubscriptionSnapshot(
            status=SubscriptionStatus.ACTIVE,
            period_start=event_time,
            period_end=event_time + timedelta(days=provisional_days),
            subscription_id=subscription_id,
            period_source="provisional",
            carries=frozenset(carries),
            provisional=True,
        )
        attached = False

    return CheckoutDetails(
        session_id=_object_id(session.get("id")),
        customer_id=customer_id,
        email=email if isinstance(email, str) and email else None,
        name=name if isinstance(name, str) and name else None,
        snapshot=snapshot,
        subscription_attached=attached,
    )


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id is None:
        # Newer API versions move the reference under parent.subscription_details
        details = _as_dict(_as_dict(invoice.get("parent")).get("subscription_details"))
        subscription_id = _object_id(details.get("subscription"))
    return subscription_id


def extract_invoice(invoice: Dict[str, Any], paid: bool) -> InvoiceDetails:
    """
    Snapshot from an invoice outcome.

    A paid invoice reactivates access and, when its first line has a usable
    billing period, moves the window to it. A failed invoice only marks the
    subscription as lapsed; Stripe's own retries arrive as later events.
    """
    customer_id, customer_email = customer_reference(invoice.get("customer"))
    email = invoice.get("customer_email") or customer_email
    subscription_id = invoice_subscription_id(invoice)

    carries = {"status"}
    if subscription_id is not None:
        carries.add("subscription_id")

    period_start = period_end = None
    period_source = None
    if paid:
        lines = _as_dict(invoice.get("lines")).get("data")
        line = _as_dict(lines[0]) if isinstance(lines, list) and lines else {}
        period = _as_dict(line.get("period"))
        period_start = timestamp_from_epoch(period.get("start"))
        period_end = timestamp_from_epoch(period.get("end"))
        if period_start is not None and period_end is not None:
            carries.update({"period_start", "period_end"})
            period_source = "invoice"
        else:
            period_start = period_end = None

    snapshot = SubscriptionSnapshot(
        status=SubscriptionStatus.ACTIVE if paid else SubscriptionStatus.EXPIRED,
        period_start=period_start,
        period_end=period_end,
        subscription_id=subscription_id,
        period_source=period_source,
        carries=frozenset(carries),
    )

    return InvoiceDetails(
        invoice_id=_object_id(invoice.get("id")),
        customer_id=customer_id,
        email=email if isinstance(email, str) and email else None,
        subscription_id=subscription_id,
        snapshot=snapshot,
    )
