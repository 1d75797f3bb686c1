"""
Tests for the processed-event log.

Tests cover:
- Recording and duplicate detection
- Retention window
- Re-recording an existing id
- Pruning
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from billing_sync.core.errors import StorageError
from billing_sync.core.typing import utc_now
from billing_sync.models.processed_event import ProcessedEvent
from billing_sync.services.event_log import ProcessedEventStore

from conftest import utc


class TestHasSeen:
    """Tests for duplicate detection."""

    def test_unknown_event(self, test_engine):
        assert ProcessedEventStore(test_engine).has_seen("evt_new") is False

    def test_recorded_event(self, test_engine):
        log = ProcessedEventStore(test_engine)
        log.record("evt_1", "invoice.paid", "applied", event_created=utc(1_700_000_000), account_id=7)

        assert log.has_seen("evt_1") is True

    def test_entry_outside_retention_is_ignored(self, test_engine):
        log = ProcessedEventStore(test_engine, retention_hours=72)
        log.record("evt_1", "invoice.paid", "applied")

        assert log.has_seen("evt_1", now=utc_now() + timedelta(hours=71)) is True
        assert log.has_seen("evt_1", now=utc_now() + timedelta(hours=73)) is False


class TestRecord:
    """Tests for recording acknowledged events."""

    def test_stores_fields(self, test_engine):
        ProcessedEventStore(test_engine).record(
            "evt_1", "checkout.session.completed", "created", event_created=utc(1_700_000_000), account_id=3
        )

        with Session(test_engine) as session:
            entry = session.exec(select(ProcessedEvent)).one()
        assert entry.event_id == "evt_1"
        assert entry.event_type == "checkout.session.completed"
        assert entry.status == "created"
        assert entry.account_id == 3

    def test_recording_twice_refreshes_single_row(self, test_engine):
        log = ProcessedEventStore(test_engine)
        log.record("evt_1", "invoice.paid", "unresolved")
        log.record("evt_1", "invoice.paid", "applied", account_id=9)

        with Session(test_engine) as session:
            entries = session.exec(select(ProcessedEvent)).all()
        assert len(entries) == 1
        assert entries[0].status == "applied"
        assert entries[0].account_id == 9

    def test_database_failure_is_storage_error(self, test_engine):
        log = ProcessedEventStore(test_engine)

        with patch("billing_sync.services.event_log.Session") as mock_session:
            mock_session.return_value.__enter__.return_value.commit.side_effect = OperationalError(
                "INSERT", {}, Exception("database is locked")
            )
            with pytest.raises(StorageError):
                log.record("evt_1", "invoice.paid", "applied")


class TestPrune:
    """Tests for pruning expired entries."""

    def test_prunes_only_expired(self, test_engine):
        now = utc_now()
        with Session(test_engine) as session:
            session.add(ProcessedEvent(event_id="evt_old", event_type="invoice.paid", processed_at=now - timedelta(hours=100)))
            session.add(ProcessedEvent(event_id="evt_recent", event_type="invoice.paid", processed_at=now - timedelta(hours=1)))
            session.commit()

        deleted = ProcessedEventStore(test_engine, retention_hours=72).prune(now=now)

        with Session(test_engine) as session:
            remaining = [e.event_id for e in session.exec(select(ProcessedEvent)).all()]
        assert deleted == 1
        assert remaining == ["evt_recent"]

    def test_nothing_to_prune(self, test_engine):
        assert ProcessedEventStore(test_engine).prune() == 0
