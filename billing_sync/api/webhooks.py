"""
Stripe webhook endpoint.
"""
from functools import lru_cache

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from billing_sync.core.config import settings
from billing_sync.core.rate_limit import webhook_rate_limit
from billing_sync.db import engine
from billing_sync.schemas import WebhookResponse
from billing_sync.services.outcome import Outcome
from billing_sync.services.reconciler import WebhookProcessor

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@lru_cache
def get_processor() -> WebhookProcessor:
    """Pipeline built once from settings; tests override this dependency."""
    return WebhookProcessor.from_settings(settings, engine)


@router.post("/stripe", response_model=WebhookResponse, dependencies=[Depends(webhook_rate_limit)])
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_processor),
):
    """
    Handle Stripe webhook events for subscription lifecycle.

    Events handled:
    - checkout.session.completed: Customer paid, account linked or created
    - customer.subscription.created/updated/paused/resumed: Subscription snapshot
    - customer.subscription.deleted: Access ends
    - invoice.paid / invoice.payment_succeeded: Renewal
    - invoice.payment_failed: Access lapses until a later payment succeeds

    200 tells Stripe to stop, 500 asks for redelivery, 400 refuses the request.
    """
    # Raw body: the signature covers the exact bytes Stripe sent
    body = await request.body()
    signature = request.headers.get(settings.STRIPE_SIGNATURE_HEADER)

    result = await processor.process(body, signature)

    response = WebhookResponse(
        received=result.outcome == Outcome.ACK,
        outcome=result.outcome.value,
        result=result.result.value if result.result else None,
        event_id=result.event_id,
    )
    return JSONResponse(status_code=result.http_status, content=response.model_dump())
