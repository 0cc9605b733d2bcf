"""Idempotency ledger — exactly-once effect for at-least-once webhooks.

accept_event() inserts the Stripe event ID into stripe_events. The unique
constraint decides the race: the first insert wins, every later insert of
the same ID comes back as ALREADY_PROCESSED. A duplicate is a normal
outcome, not an error.
"""

import enum
import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from billsync.errors import LedgerUnavailable
from billsync.extensions import db
from billsync.models.stripe_event import ProcessedEvent
from billsync.timeutils import utcnow

logger = logging.getLogger(__name__)


class LedgerResult(enum.Enum):
    ACCEPTED = "accepted"
    ALREADY_PROCESSED = "already_processed"

    @property
    def accepted(self):
        return self is LedgerResult.ACCEPTED


def accept_event(event_id, event_type, received_at=None):
    """Record event_id as accepted.

    Returns LedgerResult.ACCEPTED for the first delivery and
    LedgerResult.ALREADY_PROCESSED for any redelivery.
    Raises LedgerUnavailable if the insert fails for any other reason.
    """
    entry = ProcessedEvent(
        event_id=event_id,
        event_type=event_type,
        received_at=received_at or utcnow(),
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Event already processed: {event_id}")
        return LedgerResult.ALREADY_PROCESSED
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to record event {event_id}: {e}", exc_info=True)
        raise LedgerUnavailable(detail=str(e)) from e

    return LedgerResult.ACCEPTED


def prune_processed_events(retention_days, now=None):
    """Delete ledger entries older than the retention window.

    Stripe stops redelivering after a few days, so entries past the window
    can no longer block a duplicate. Returns the number of rows removed.
    """
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    result = db.session.execute(
        delete(ProcessedEvent).where(ProcessedEvent.received_at < cutoff)
    )
    db.session.commit()
    removed = result.rowcount or 0
    logger.info(f"Pruned {removed} processed events older than {cutoff.isoformat()}")
    return removed
