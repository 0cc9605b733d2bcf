"""Tests for the idempotency ledger.

Covers:
- First delivery accepted, redelivery reported as already processed
- Non-uniqueness database failures raise LedgerUnavailable
- Retention pruning
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from billsync.errors import LedgerUnavailable
from billsync.extensions import db
from billsync.models.stripe_event import ProcessedEvent
from billsync.services.ledger import (
    LedgerResult,
    accept_event,
    prune_processed_events,
)


def _recorded(event_id):
    return ProcessedEvent.query.filter_by(event_id=event_id).first() is not None


class TestAcceptEvent:

    def test_first_delivery_is_accepted(self):
        result = accept_event("evt_001", "invoice.paid")

        assert result is LedgerResult.ACCEPTED
        assert result.accepted
        assert _recorded("evt_001")

    def test_redelivery_is_already_processed(self):
        accept_event("evt_001", "invoice.paid")

        result = accept_event("evt_001", "invoice.paid")

        assert result is LedgerResult.ALREADY_PROCESSED
        assert not result.accepted
        assert ProcessedEvent.query.filter_by(event_id="evt_001").count() == 1

    def test_session_usable_after_duplicate(self):
        """The IntegrityError is rolled back; later inserts still work."""
        accept_event("evt_001", "invoice.paid")
        accept_event("evt_001", "invoice.paid")

        assert accept_event("evt_002", "invoice.paid") is LedgerResult.ACCEPTED
        assert ProcessedEvent.query.count() == 2

    def test_database_failure_raises_ledger_unavailable(self):
        error = OperationalError("INSERT", {}, Exception("disk I/O error"))
        with patch.object(db.session, "commit", side_effect=error):
            with pytest.raises(LedgerUnavailable):
                accept_event("evt_001", "invoice.paid")

        assert not _recorded("evt_001")


class TestPrune:

    def test_prunes_entries_older_than_window(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        accept_event("evt_old", "invoice.paid", received_at=now - timedelta(days=31))
        accept_event("evt_recent", "invoice.paid", received_at=now - timedelta(days=29))

        removed = prune_processed_events(30, now=now)

        assert removed == 1
        assert not _recorded("evt_old")
        assert _recorded("evt_recent")

    def test_pruned_event_can_be_accepted_again(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        accept_event("evt_old", "invoice.paid", received_at=now - timedelta(days=60))
        prune_processed_events(30, now=now)

        assert accept_event("evt_old", "invoice.paid") is LedgerResult.ACCEPTED
