"""
Applies subscription snapshots to accounts.

Stripe does not guarantee delivery order, so every write is guarded twice.
Ordering is tracked per field: a carried field is written only when no newer
event has written it already, so an older event still fills in fields that
later events did not carry. The row must also not have changed since it was
read.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from billing_sync.core.errors import ConcurrentUpdateError
from billing_sync.core.logging_config import get_logger, mask_identifier
from billing_sync.core.typing import ensure_utc, utc_now
from billing_sync.models.account import Account
from billing_sync.services.account_store import AccountStore
from billing_sync.services.subscription_extractor import FIELD_COLUMNS, SubscriptionSnapshot

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

# Account column -> snapshot field
_COLUMN_FIELDS = {column: name for name, column in FIELD_COLUMNS.items()}


class WriteResult(str, Enum):
    APPLIED = "applied"
    STALE = "stale"


def _recorded_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def fresh_fields(account: Account, snapshot: SubscriptionSnapshot, event_time: datetime) -> FrozenSet[str]:
    """
    Carried fields this event may write.

    A dated field is fresh unless a strictly newer event wrote it; equal times
    re-apply. Provisional fields are fresh only where nothing dated has landed.
    """
    recorded = account.field_event_times or {}
    event_time = ensure_utc(event_time)
    fresh = set()
    for name in snapshot.carries:
        last_written = _recorded_time(recorded.get(name))
        if last_written is None:
            fresh.add(name)
        elif not snapshot.provisional and event_time >= last_written:
            fresh.add(name)
    return frozenset(fresh)


class StateWriter:
    def __init__(self, store: AccountStore, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.store = store
        self.max_attempts = max(1, max_attempts)

    def apply(
        self,
        account: Account,
        snapshot: SubscriptionSnapshot,
        event_time: datetime,
        link_customer_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> WriteResult:
        """
        Write the fresh fields `snapshot` carries onto `account`.

        `link_customer_id` is stored only when the account has no customer id
        yet. `extra` holds additional columns from the event itself (checkout
        session id, customer email); these are not ordered against other
        events. Raises ConcurrentUpdateError once every attempt lost to a
        concurrent writer.
        """
        current: Optional[Account] = account
        for attempt in range(1, self.max_attempts + 1):
            if current is None:
                # Accounts are never deleted by this service
                raise ConcurrentUpdateError(f"Account {account.id} disappeared during update")

            fresh = fresh_fields(current, snapshot, event_time)
            links = bool(link_customer_id and not current.stripe_customer_id)
            if not fresh and not extra and not links:
                logger.info(
                    "stale_event_skipped",
                    account_id=mask_identifier(current.id),
                    event_time=event_time.isoformat(),
                    fields=sorted(snapshot.carries),
                )
                return WriteResult.STALE

            changes = self._changes_for(current, snapshot, fresh, event_time, link_customer_id, extra)
            if self.store.update_if_unchanged(current.id, current.version, changes):
                return WriteResult.APPLIED if fresh else WriteResult.STALE

            logger.info(
                "write_conflict_retry",
                account_id=mask_identifier(current.id),
                attempt=attempt,
                max_attempts=self.max_attempts,
            )
            current = self.store.get(account.id)

        raise ConcurrentUpdateError(
            f"Account {account.id} kept changing, gave up after {self.max_attempts} attempts"
        )

    def create(
        self,
        snapshot: SubscriptionSnapshot,
        event_time: datetime,
        email: str,
        customer_id: Optional[str] = None,
        name: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Account:
        """
        New account for a first-time checkout, with the snapshot already applied.

        Raises DuplicateAccountError when another delivery linked the customer
        first.
        """
        now = utc_now()
        fields: Dict[str, Any] = {
            "email": email,
            "stripe_customer_id": customer_id,
            "created_at": now,
            "updated_at": now,
            "last_event_applied_at": event_time,
            "field_event_times": _stamp({}, snapshot, snapshot.carries, event_time),
            "version": 1,
        }
        if name:
            fields["name"] = name
        fields.update(extra or {})
        fields.update(snapshot.changes())
        return self.store.create(**fields)

    @staticmethod
    def _changes_for(
        account: Account,
        snapshot: SubscriptionSnapshot,
        fresh: FrozenSet[str],
        event_time: datetime,
        link_customer_id: Optional[str],
        extra: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = dict(extra or {})
        changes.update({
            column: value
            for column, value in snapshot.changes().items()
            if _COLUMN_FIELDS[column] in fresh
        })
        if link_customer_id and not account.stripe_customer_id:
            changes["stripe_customer_id"] = link_customer_id
        if fresh:
            changes["field_event_times"] = _stamp(account.field_event_times, snapshot, fresh, event_time)
            last_applied = ensure_utc(account.last_event_applied_at)
            if last_applied is None or ensure_utc(event_time) > last_applied:
                changes["last_event_applied_at"] = event_time
        changes["updated_at"] = utc_now()
        changes["version"] = account.version + 1
        return changes


def _stamp(
    recorded: Optional[Dict[str, Any]],
    snapshot: SubscriptionSnapshot,
    written: FrozenSet[str],
    event_time: datetime,
) -> Dict[str, Any]:
    """Field times after writing `written`. Provisional writes leave no time behind."""
    stamped = dict(recorded or {})
    if not snapshot.provisional:
        stamp = ensure_utc(event_time).isoformat()
        stamped.update({name: stamp for name in written})
    return stamped
