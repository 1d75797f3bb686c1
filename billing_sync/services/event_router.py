"""
Dispatches authenticated Stripe events to their handlers.

Each handler resolves the account the event is about, extracts a snapshot and
hands it to the StateWriter. Handlers run synchronously; the processor puts
them on a worker thread.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from billing_sync.core.errors import DuplicateAccountError, MalformedPayloadError
from billing_sync.core.logging_config import get_logger, mask_identifier
from billing_sync.models.account import SubscriptionStatus
from billing_sync.schemas import StripeEvent
from billing_sync.services.account_resolver import AccountResolver
from billing_sync.services.state_writer import StateWriter, WriteResult
from billing_sync.services.subscription_extractor import (
    DEFAULT_PERIOD_DAYS,
    SubscriptionSnapshot,
    customer_reference,
    extract_cancellation,
    extract_checkout,
    extract_invoice,
    extract_subscription,
)

logger = get_logger(__name__)


class HandlerResult(str, Enum):
    APPLIED = "applied"
    CREATED = "created"
    STALE = "stale"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class RouteOutcome:
    result: HandlerResult
    account_id: Optional[int] = None
    customer_id: Optional[str] = None


class EventRouter:
    def __init__(
        self,
        resolver: AccountResolver,
        writer: StateWriter,
        provisional_days: int = DEFAULT_PERIOD_DAYS,
        unknown_status: SubscriptionStatus = SubscriptionStatus.EXPIRED,
    ):
        self.resolver = resolver
        self.writer = writer
        self.provisional_days = provisional_days
        self.unknown_status = unknown_status
        self.handlers: Dict[str, Callable[[StripeEvent], RouteOutcome]] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.created": self.handle_subscription_change,
            "customer.subscription.updated": self.handle_subscription_change,
            "customer.subscription.paused": self.handle_subscription_change,
            "customer.subscription.resumed": self.handle_subscription_change,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.paid": self.handle_invoice_paid,
            "invoice.payment_succeeded": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_invoice_failed,
        }

    def route(self, event: StripeEvent) -> RouteOutcome:
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("unhandled_event_type", event_id=event.id, event_type=event.type)
            return RouteOutcome(HandlerResult.IGNORED)
        return handler(event)

    # --- Handlers -----------------------------------------------------------

    def handle_checkout_completed(self, event: StripeEvent) -> RouteOutcome:
        """Link the paying customer to an account, creating one on first purchase."""
        details = extract_checkout(
            event.payload,
            event.created_at,
            provisional_days=self.provisional_days,
            unknown_status=self.unknown_status,
        )
        if not details.customer_id and not details.email:
            raise MalformedPayloadError("Checkout session has neither customer nor email")

        extra: Dict[str, Any] = {}
        if details.session_id:
            extra["stripe_session_id"] = details.session_id
        if details.email:
            extra["stripe_customer_email"] = details.email

        resolution = self.resolver.resolve(details.customer_id, details.email)
        if resolution is None:
            if not details.email:
                logger.warning(
                    "checkout_unresolved",
                    event_id=event.id,
                    customer_id=mask_identifier(details.customer_id),
                )
                return RouteOutcome(HandlerResult.UNRESOLVED, customer_id=details.customer_id)

            try:
                account = self.writer.create(
                    details.snapshot,
                    event.created_at,
                    email=details.email,
                    customer_id=details.customer_id,
                    name=details.name,
                    extra=extra,
                )
            except DuplicateAccountError:
                # A concurrent delivery linked the customer first; update its account instead
                linked = self.resolver.resolve(details.customer_id)
                if linked is None:
                    raise
                logger.info(
                    "checkout_create_lost_race",
                    event_id=event.id,
                    account_id=mask_identifier(linked.account.id),
                    customer_id=mask_identifier(details.customer_id),
                )
                return self._write(event, linked.account, details.snapshot, details.customer_id, extra)

            logger.info(
                "account_created_from_checkout",
                event_id=event.id,
                account_id=mask_identifier(account.id),
                customer_id=mask_identifier(details.customer_id),
            )
            return RouteOutcome(HandlerResult.CREATED, account.id, details.customer_id)

        return self._write(event, resolution.account, details.snapshot, details.customer_id, extra)

    def handle_subscription_change(self, event: StripeEvent) -> RouteOutcome:
        """Created, updated, paused and resumed all carry the full subscription."""
        payload = event.payload
        customer_id, email = self._require_subscription_refs(payload)

        snapshot = extract_subscription(
            payload,
            now=event.created_at,
            unknown_status=self.unknown_status,
            period_days=self.provisional_days,
        )
        if snapshot.period_source in ("created", "now"):
            logger.warning(
                "subscription_period_fallback",
                event_id=event.id,
                source=snapshot.period_source,
            )
        return self._resolve_and_write(event, customer_id, email, snapshot)

    def handle_subscription_deleted(self, event: StripeEvent) -> RouteOutcome:
        payload = event.payload
        customer_id, email = self._require_subscription_refs(payload)
        snapshot = extract_cancellation(payload, event.created_at)
        return self._resolve_and_write(event, customer_id, email, snapshot)

    def handle_invoice_paid(self, event: StripeEvent) -> RouteOutcome:
        return self._handle_invoice(event, paid=True)

    def handle_invoice_failed(self, event: StripeEvent) -> RouteOutcome:
        return self._handle_invoice(event, paid=False)

    # --- Helpers ------------------------------------------------------------

    def _handle_invoice(self, event: StripeEvent, paid: bool) -> RouteOutcome:
        details = extract_invoice(event.payload, paid=paid)
        if details.subscription_id is None:
            # One-off invoices say nothing about subscription state
            logger.info("invoice_without_subscription", event_id=event.id, event_type=event.type)
            return RouteOutcome(HandlerResult.IGNORED, customer_id=details.customer_id)
        if not details.customer_id:
            raise MalformedPayloadError("Invoice has no customer")
        return self._resolve_and_write(event, details.customer_id, details.email, details.snapshot)

    @staticmethod
    def _require_subscription_refs(payload: Dict[str, Any]):
        if not payload.get("id"):
            raise MalformedPayloadError("Subscription payload has no id")
        customer_id, email = customer_reference(payload.get("customer"))
        if not customer_id:
            raise MalformedPayloadError("Subscription payload has no customer")
        return customer_id, email

    def _resolve_and_write(
        self,
        event: StripeEvent,
        customer_id: str,
        email: Optional[str],
        snapshot: SubscriptionSnapshot,
    ) -> RouteOutcome:
        resolution = self.resolver.resolve(customer_id, email)
        if resolution is None:
            logger.warning(
                "account_not_found",
                event_id=event.id,
                event_type=event.type,
                customer_id=mask_identifier(customer_id),
            )
            return RouteOutcome(HandlerResult.UNRESOLVED, customer_id=customer_id)
        return self._write(event, resolution.account, snapshot, customer_id)

    def _write(
        self,
        event: StripeEvent,
        account,
        snapshot: SubscriptionSnapshot,
        customer_id: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> RouteOutcome:
        written = self.writer.apply(
            account,
            snapshot,
            event.created_at,
            link_customer_id=customer_id,
            extra=extra,
        )
        result = HandlerResult.STALE if written == WriteResult.STALE else HandlerResult.APPLIED
        return RouteOutcome(result, account.id, customer_id)
