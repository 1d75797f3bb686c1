"""
Maps handler results and failures onto what Stripe is told.

Stripe redelivers anything that is not a 2xx. A 200 must therefore only be
returned when redelivery would not help, and a 500 only when it might.
"""
from enum import Enum
from typing import Union

from billing_sync.core.errors import MalformedPayloadError, WebhookSignatureError
from billing_sync.services.event_router import HandlerResult


class Outcome(str, Enum):
    ACK = "ack"
    RETRYABLE_FAILURE = "retryable_failure"
    REJECTED = "rejected"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    Outcome.ACK: 200,
    Outcome.RETRYABLE_FAILURE: 500,
    Outcome.REJECTED: 400,
}


def classify(result_or_error: Union[HandlerResult, BaseException]) -> Outcome:
    if isinstance(result_or_error, HandlerResult):
        return Outcome.ACK
    if isinstance(result_or_error, (WebhookSignatureError, MalformedPayloadError)):
        return Outcome.REJECTED
    # Storage errors, timeouts and anything unexpected: let Stripe try again
    return Outcome.RETRYABLE_FAILURE
