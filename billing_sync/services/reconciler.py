"""
Webhook reconciliation pipeline.

One delivery goes through: authenticate -> duplicate check -> route ->
record -> classify. Storage work runs on a worker thread under a deadline so
a slow database turns into a retryable failure instead of a hung request.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from billing_sync.core.config import Settings
from billing_sync.core.context import set_event_id
from billing_sync.core.errors import (
    MalformedPayloadError,
    StorageError,
    WebhookSignatureError,
    capture_exception,
    capture_message,
)
from billing_sync.core.logging_config import get_logger, mask_identifier
from billing_sync.schemas import StripeEvent
from billing_sync.services.account_resolver import AccountResolver
from billing_sync.services.account_store import SqlAccountStore
from billing_sync.services.event_log import ProcessedEventStore
from billing_sync.services.event_router import EventRouter, HandlerResult, RouteOutcome
from billing_sync.services.outcome import Outcome, classify
from billing_sync.services.state_writer import StateWriter
from billing_sync.services.subscription_extractor import unknown_status_from_policy
from billing_sync.services.webhook_signature import WebhookAuthenticator

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ProcessingResult:
    outcome: Outcome
    result: Optional[HandlerResult] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    account_id: Optional[int] = None
    customer_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def http_status(self) -> int:
        return self.outcome.http_status


class WebhookProcessor:
    def __init__(
        self,
        authenticator: WebhookAuthenticator,
        event_log: ProcessedEventStore,
        router: EventRouter,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.authenticator = authenticator
        self.event_log = event_log
        self.router = router
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, engine: Engine) -> "WebhookProcessor":
        """Wire the full pipeline from configuration."""
        store = SqlAccountStore(engine)
        router = EventRouter(
            resolver=AccountResolver(store),
            writer=StateWriter(store, max_attempts=settings.WRITE_CONFLICT_RETRIES),
            provisional_days=settings.PROVISIONAL_PERIOD_DAYS,
            unknown_status=unknown_status_from_policy(settings.UNKNOWN_STATUS_POLICY),
        )
        return cls(
            authenticator=WebhookAuthenticator(
                settings.STRIPE_WEBHOOK_SECRET,
                tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
            ),
            event_log=ProcessedEventStore(engine, retention_hours=settings.PROCESSED_EVENT_RETENTION_HOURS),
            router=router,
            timeout_seconds=settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
        )

    async def process(self, body: bytes, signature: Optional[str]) -> ProcessingResult:
        started = time.monotonic()

        try:
            event = self.authenticator.authenticate(body, signature)
        except (WebhookSignatureError, MalformedPayloadError) as e:
            result = ProcessingResult(outcome=classify(e), error=str(e), error_type=type(e).__name__)
            self._log(result, started)
            return result

        set_event_id(event.id)
        try:
            routed = await asyncio.wait_for(
                asyncio.to_thread(self._handle, event),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            result = self._failure(event, e, f"Processing exceeded {self.timeout_seconds}s")
        except MalformedPayloadError as e:
            capture_message(
                "Signed webhook payload could not be used",
                level="warning",
                context={"event_id": event.id, "event_type": event.type, "reason": str(e)},
            )
            result = self._failure(event, e, str(e))
        except StorageError as e:
            capture_exception(e, context={"event_id": event.id, "event_type": event.type}, level="warning")
            result = self._failure(event, e, str(e))
        except Exception as e:
            capture_exception(e, context={"event_id": event.id, "event_type": event.type})
            result = self._failure(event, e, f"Unexpected error: {type(e).__name__}")
        else:
            result = ProcessingResult(
                outcome=classify(routed.result),
                result=routed.result,
                event_id=event.id,
                event_type=event.type,
                account_id=routed.account_id,
                customer_id=routed.customer_id,
            )

        self._log(result, started)
        return result

    def _handle(self, event: StripeEvent) -> RouteOutcome:
        """Blocking part of the pipeline, run on a worker thread."""
        if self.event_log.has_seen(event.id):
            return RouteOutcome(HandlerResult.DUPLICATE)

        routed = self.router.route(event)
        # Only acknowledged events are recorded, failures above never get here
        self.event_log.record(
            event.id,
            event.type,
            routed.result.value,
            event_created=event.created_at,
            account_id=routed.account_id,
        )
        return routed

    @staticmethod
    def _failure(event: StripeEvent, exc: BaseException, message: str) -> ProcessingResult:
        return ProcessingResult(
            outcome=classify(exc),
            event_id=event.id,
            event_type=event.type,
            error=message,
            error_type=type(exc).__name__,
        )

    @staticmethod
    def _log(result: ProcessingResult, started: float) -> None:
        fields = {
            "event_id": result.event_id,
            "event_type": result.event_type,
            "customer_id": mask_identifier(result.customer_id),
            "account_id": mask_identifier(result.account_id),
            "result": result.result.value if result.result else None,
            "outcome": result.outcome.value,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
        }
        if result.error:
            fields["error"] = result.error
            fields["error_type"] = result.error_type

        if result.outcome == Outcome.ACK:
            logger.info("webhook_processed", **fields)
        elif result.outcome == Outcome.REJECTED:
            logger.warning("webhook_processed", **fields)
        else:
            logger.error("webhook_processed", **fields)
