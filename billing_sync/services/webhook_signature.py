"""
Stripe webhook authentication.

Stripe signs each delivery with a header of the form

    t=1700000000,v1=5257a869e7...,v1=...

where every v1 value is HMAC-SHA256(secret, "{t}.{raw body}") in hex. More
than one v1 entry is sent while a signing secret is being rolled.
"""
import hashlib
import hmac
import json
import time
from typing import List, Optional, Tuple

from pydantic import ValidationError

from billing_sync.core.errors import MalformedPayloadError, WebhookSignatureError
from billing_sync.schemas import StripeEvent

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(payload: bytes, timestamp: int | str, secret: str) -> str:
    """Compute the hex v1 signature Stripe would send for this body."""
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload,
        hashlib.sha256
    ).hexdigest()


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    """Split a Stripe-Signature header into its timestamp and v1 signatures."""
    timestamp: Optional[int] = None
    signatures: List[str] = []

    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    header: str,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Stripe webhook signature.

    Every comparison goes through hmac.compare_digest. A tolerance of 0 skips
    the timestamp age check.
    """
    if not header or not secret:
        return False

    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures:
        return False

    if tolerance_seconds > 0:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance_seconds:
            return False

    expected_sig = compute_signature(payload, timestamp, secret)
    matched = False
    for candidate in signatures:
        # No early exit, every candidate is compared
        if hmac.compare_digest(expected_sig, candidate):
            matched = True
    return matched


class WebhookAuthenticator:
    """Turns a raw delivery into a typed StripeEvent, or refuses it."""

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def authenticate(
        self,
        payload: bytes,
        header: Optional[str],
        now: Optional[float] = None,
    ) -> StripeEvent:
        if not self.secret:
            raise WebhookSignatureError("Webhook signing secret is not configured")
        if not header:
            raise WebhookSignatureError("Missing signature header")
        if not verify_stripe_signature(payload, header, self.secret, self.tolerance_seconds, now):
            raise WebhookSignatureError("Signature verification failed")

        # The body is only looked at once it is known to come from Stripe
        try:
            body = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedPayloadError(f"Body is not valid JSON: {e}") from e

        try:
            return StripeEvent.model_validate(body)
        except ValidationError as e:
            raise MalformedPayloadError(
                f"Body is not a Stripe event: {e.error_count()} validation error(s)"
            ) from e
