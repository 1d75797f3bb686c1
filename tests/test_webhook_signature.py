"""
Tests for Stripe webhook authentication.

Tests cover:
- Signature computation and header parsing
- Timestamp tolerance
- Secret rotation (several v1 entries)
- Authenticator errors: missing secret/header, tampering, malformed bodies
"""

import hashlib
import hmac
import json

import pytest

from billing_sync.core.errors import MalformedPayloadError, WebhookSignatureError
from billing_sync.schemas import StripeEvent
from billing_sync.services.webhook_signature import (
    WebhookAuthenticator,
    compute_signature,
    parse_signature_header,
    verify_stripe_signature,
)

from conftest import WEBHOOK_SECRET, encode, sign, stripe_event, subscription_object

TS = 1_700_000_000


class TestSignatureHelpers:
    """Tests for signature computation and header parsing."""

    def test_compute_signature_matches_stripe_scheme(self):
        """Test signature is HMAC-SHA256 over '{t}.{body}'."""
        body = b'{"id": "evt_1"}'
        expected = hmac.new(
            WEBHOOK_SECRET.encode(),
            f"{TS}.".encode() + body,
            hashlib.sha256,
        ).hexdigest()

        assert compute_signature(body, TS, WEBHOOK_SECRET) == expected

    def test_parse_header_collects_v1_entries(self):
        """Test timestamp and every v1 signature are extracted, other schemes ignored."""
        ts, sigs = parse_signature_header(f"t={TS},v1=aaa,v0=zzz,v1=bbb")

        assert ts == TS
        assert sigs == ["aaa", "bbb"]

    def test_parse_header_non_numeric_timestamp(self):
        """Test a non-numeric timestamp yields nothing usable."""
        assert parse_signature_header("t=abc,v1=aaa") == (None, [])

    def test_parse_header_garbage(self):
        """Test a header without key=value parts yields nothing usable."""
        assert parse_signature_header("garbage") == (None, [])


class TestVerifyStripeSignature:
    """Tests for verify_stripe_signature."""

    def test_valid_signature(self):
        body = b'{"id": "evt_1"}'
        header = sign(body, timestamp=TS)

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, now=TS + 10) is True

    def test_tampered_body_fails(self):
        """Test any change to the body invalidates the signature."""
        header = sign(b'{"amount": 100}', timestamp=TS)

        assert verify_stripe_signature(b'{"amount": 999}', header, WEBHOOK_SECRET, now=TS) is False

    def test_wrong_secret_fails(self):
        body = b"{}"
        header = sign(body, secret="whsec_other", timestamp=TS)

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, now=TS) is False

    def test_timestamp_outside_tolerance_fails(self):
        """Test replayed deliveries older than the tolerance are refused."""
        body = b"{}"
        header = sign(body, timestamp=TS)

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, tolerance_seconds=300, now=TS + 301) is False
        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, tolerance_seconds=300, now=TS - 301) is False

    def test_timestamp_inside_tolerance_passes(self):
        body = b"{}"
        header = sign(body, timestamp=TS)

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, tolerance_seconds=300, now=TS + 299) is True

    def test_zero_tolerance_skips_age_check(self):
        body = b"{}"
        header = sign(body, timestamp=TS)

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, tolerance_seconds=0, now=TS + 10**6) is True

    def test_any_matching_v1_entry_passes(self):
        """Test secret rotation: one valid v1 among several is enough."""
        body = b"{}"
        good = compute_signature(body, TS, WEBHOOK_SECRET)
        header = f"t={TS},v1={'0' * 64},v1={good}"

        assert verify_stripe_signature(body, header, WEBHOOK_SECRET, now=TS) is True

    def test_missing_header_or_secret_fails(self):
        body = b"{}"
        header = sign(body, timestamp=TS)

        assert verify_stripe_signature(body, "", WEBHOOK_SECRET, now=TS) is False
        assert verify_stripe_signature(body, header, "", now=TS) is False

    def test_header_without_signatures_fails(self):
        assert verify_stripe_signature(b"{}", f"t={TS}", WEBHOOK_SECRET, now=TS) is False


class TestWebhookAuthenticator:
    """Tests for WebhookAuthenticator.authenticate."""

    def test_authenticates_valid_event(self):
        event = stripe_event("customer.subscription.updated", subscription_object())
        body = encode(event)

        parsed = WebhookAuthenticator(WEBHOOK_SECRET).authenticate(body, sign(body))

        assert isinstance(parsed, StripeEvent)
        assert parsed.id == "evt_test_1"
        assert parsed.type == "customer.subscription.updated"
        assert parsed.payload["id"] == "sub_123"
        assert parsed.created_at.tzinfo is not None

    def test_missing_secret_rejects(self):
        body = encode(stripe_event("invoice.paid", {}))

        with pytest.raises(WebhookSignatureError):
            WebhookAuthenticator("").authenticate(body, sign(body))

    def test_missing_header_rejects(self):
        body = encode(stripe_event("invoice.paid", {}))

        with pytest.raises(WebhookSignatureError):
            WebhookAuthenticator(WEBHOOK_SECRET).authenticate(body, None)

    def test_tampered_body_is_not_parsed(self):
        """Test a bad signature is reported as such even if the body is not JSON."""
        header = sign(b'{"id": "evt_1"}')

        with pytest.raises(WebhookSignatureError):
            WebhookAuthenticator(WEBHOOK_SECRET).authenticate(b"not json at all", header)

    def test_signed_invalid_json_is_malformed(self):
        body = b"{not json"

        with pytest.raises(MalformedPayloadError):
            WebhookAuthenticator(WEBHOOK_SECRET).authenticate(body, sign(body))

    def test_signed_body_missing_event_fields_is_malformed(self):
        body = json.dumps({"type": "invoice.paid", "data": {"object": {}}}).encode()

        with pytest.raises(MalformedPayloadError):
            WebhookAuthenticator(WEBHOOK_SECRET).authenticate(body, sign(body))

    def test_signed_json_array_is_malformed(self):
        body = b"[]"

        with pytest.raises(MalformedPayloadError):
            WebhookAuthenticator(WEBHOOK_SECRET).authenticate(body, sign(body))
