"""
Test fixtures for billing-sync tests.

Provides an in-memory database, account factories, Stripe payload builders
and a signing helper that produces valid Stripe-Signature headers.
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from billing_sync.core.config import Settings
from billing_sync.models.account import Account
from billing_sync.services.account_store import SqlAccountStore
from billing_sync.services.reconciler import WebhookProcessor
from billing_sync.services.webhook_signature import compute_signature

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"

# 2023-11-14T22:13:20Z, declared creation time of the default test event
EVENT_CREATED = 1_700_000_000
PERIOD_START = 1_700_000_000
PERIOD_END = PERIOD_START + 30 * 86400


def pytest_collection_modifyitems(config, items):
    """Skip integration tests in CI (they need a real PostgreSQL database)."""
    import os

    if os.environ.get("CI") == "true":
        skip_integration = pytest.mark.skip(reason="Integration tests skipped in CI (no database)")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def clear_rate_limiters():
    """Clear the webhook rate limiter before each test to prevent 429 errors."""
    from billing_sync.core.rate_limit import webhook_rate_limiter

    webhook_rate_limiter.clear()
    yield
    webhook_rate_limiter.clear()


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def store(test_engine) -> SqlAccountStore:
    return SqlAccountStore(test_engine)


@pytest.fixture
def make_account(test_engine) -> Callable[..., Account]:
    """Factory persisting an Account; defaults to a FREE profile with no Stripe link."""

    def _make(**fields: Any) -> Account:
        fields.setdefault("email", "buyer@example.com")
        with Session(test_engine, expire_on_commit=False) as session:
            account = Account(**fields)
            session.add(account)
            session.commit()
            session.refresh(account)
            return account

    return _make


@pytest.fixture
def reload(test_engine) -> Callable[[int], Optional[Account]]:
    """Read an account back through a fresh session."""

    def _reload(account_id: int) -> Optional[Account]:
        with Session(test_engine, expire_on_commit=False) as session:
            return session.get(Account, account_id)

    return _reload


@pytest.fixture
def count_accounts(test_engine) -> Callable[[], int]:
    def _count() -> int:
        with Session(test_engine) as session:
            return len(session.exec(select(Account)).all())

    return _count


# --- Stripe payload builders -------------------------------------------------


def subscription_object(
    sub_id: str = "sub_123",
    customer: Any = "cus_123",
    status: str = "active",
    start: Optional[int] = PERIOD_START,
    end: Optional[int] = PERIOD_END,
    unit_amount: Optional[int] = 999,
    percent_off: Optional[float] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """Minimal Stripe subscription object as sent in customer.subscription.* events."""
    obj: Dict[str, Any] = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "created": PERIOD_START - 60,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "ended_at": None,
        "current_period_start": start,
        "current_period_end": end,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": "si_123",
                    "current_period_start": start,
                    "current_period_end": end,
                    "price": {
                        "id": "price_123",
                        "product": "prod_123",
                        "unit_amount": unit_amount,
                        "currency": "usd",
                        "recurring": {"interval": "month"},
                    },
                }
            ],
        },
        "discounts": [],
        "discount": None,
    }
    if percent_off is not None:
        obj["discounts"] = [{"id": "di_1", "coupon": {"id": "co_1", "name": "Launch", "percent_off": percent_off}}]
    obj.update(overrides)
    return obj


def checkout_session_object(
    customer: Any = "cus_123",
    email: Optional[str] = "buyer@example.com",
    subscription: Any = "sub_123",
    **overrides: Any,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "customer_email": None,
        "customer_details": {"email": email, "name": "Ada Buyer"},
        "subscription": subscription,
        "payment_status": "paid",
    }
    obj.update(overrides)
    return obj


def invoice_object(
    customer: Any = "cus_123",
    subscription: Optional[str] = "sub_123",
    start: Optional[int] = PERIOD_END,
    end: Optional[int] = PERIOD_END + 30 * 86400,
    **overrides: Any,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": "in_123",
        "object": "invoice",
        "customer": customer,
        "customer_email": "buyer@example.com",
        "subscription": subscription,
        "lines": {"object": "list", "data": [{"id": "il_1", "period": {"start": start, "end": end}}]},
    }
    obj.update(overrides)
    return obj


def stripe_event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: str = "evt_test_1",
    created: int = EVENT_CREATED,
) -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for `body`, signed now unless told otherwise."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(body, ts, secret)}"


def encode(event: Dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")


def utc(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


# --- Pipeline ---------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        WEBHOOK_PROCESSING_TIMEOUT_SECONDS=5.0,
        DATABASE_URL=TEST_DATABASE_URL,
    )


@pytest.fixture
def processor(test_settings, test_engine) -> WebhookProcessor:
    return WebhookProcessor.from_settings(test_settings, test_engine)


@pytest.fixture
def client(processor) -> Generator[TestClient, None, None]:
    """TestClient whose webhook endpoint uses the in-memory pipeline."""
    from billing_sync.api.webhooks import get_processor
    from billing_sync.main import app

    app.dependency_overrides[get_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()
