"""
Tests for outcome classification.
"""

import asyncio

import pytest

from billing_sync.core.errors import (
    ConcurrentUpdateError,
    MalformedPayloadError,
    StorageError,
    WebhookSignatureError,
)
from billing_sync.services.event_router import HandlerResult
from billing_sync.services.outcome import Outcome, classify


class TestClassify:
    """Tests for classify."""

    @pytest.mark.parametrize("result", list(HandlerResult))
    def test_every_handler_result_is_acknowledged(self, result):
        assert classify(result) == Outcome.ACK

    @pytest.mark.parametrize("error", [
        StorageError("db down"),
        ConcurrentUpdateError("lost the race"),
        asyncio.TimeoutError(),
        TimeoutError(),
        RuntimeError("bug"),
    ])
    def test_retryable(self, error):
        assert classify(error) == Outcome.RETRYABLE_FAILURE

    @pytest.mark.parametrize("error", [
        WebhookSignatureError("bad signature"),
        MalformedPayloadError("no customer"),
    ])
    def test_rejected(self, error):
        assert classify(error) == Outcome.REJECTED


class TestHttpStatus:
    """Tests for the HTTP status each outcome maps to."""

    def test_statuses(self):
        assert Outcome.ACK.http_status == 200
        assert Outcome.RETRYABLE_FAILURE.http_status == 500
        assert Outcome.REJECTED.http_status == 400
