"""Webhook ingestion — verify, record, hand off.

The inbound path is synchronous and short: verify the signature, insert
the event ID into the ledger, enqueue. Effects run later in dispatch_event,
on a worker thread (or inline when workers are disabled or the queue is
full and the policy says so).
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import stripe

from billsync.errors import DecodeFailure, InvalidSignature
from billsync.extensions import db
from billsync.logging_utils import get_correlation_id
from billsync.services import ledger
from billsync.services.events import decode_event
from billsync.services.handlers import HANDLERS
from billsync.timeutils import from_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedEvent:
    event_id: str
    event_type: str
    payload: Any
    created_at: datetime


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    event_type: str
    already_processed: bool = False
    queued: bool = False
    processed_inline: bool = False
    dropped: bool = False

    @property
    def message(self):
        if self.already_processed:
            return "already processed"
        if self.dropped:
            return "dropped"
        return "processed inline" if self.processed_inline else "queued"


# ──────────────────────────────────────────────
# Verification
# ──────────────────────────────────────────────

def verify_and_decode(payload, sig_header, secret, tolerance=300):
    """Verify the Stripe-Signature header and decode the event envelope.

    Raises InvalidSignature for a missing header, a bad or stale signature,
    a non-JSON body, or an envelope without id and type.
    """
    if not sig_header:
        raise InvalidSignature(detail="missing Stripe-Signature header")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignature(detail="payload is not UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(detail=str(e)) from e

    try:
        envelope = json.loads(payload)
    except ValueError as e:
        raise InvalidSignature(detail="payload is not valid JSON") from e

    if not isinstance(envelope, dict):
        raise InvalidSignature(detail="payload is not an event object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not event_id or not event_type:
        raise InvalidSignature(detail="event is missing id or type")

    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None

    created = envelope.get("created")
    created_at = from_timestamp(created) if isinstance(created, (int, float)) else None

    return VerifiedEvent(
        event_id=event_id,
        event_type=event_type,
        payload=obj,
        created_at=created_at or utcnow(),
    )


# ──────────────────────────────────────────────
# Ingestion
# ──────────────────────────────────────────────

def ingest_webhook(payload, sig_header, engine):
    """Verify, record and hand off one webhook delivery.

    Raises InvalidSignature (400) or LedgerUnavailable (500). Handler
    failures never surface here.
    """
    event = verify_and_decode(
        payload, sig_header, engine.webhook_secret, engine.webhook_tolerance
    )

    result = ledger.accept_event(event.event_id, event.event_type)
    if not result.accepted:
        return IngestResult(event.event_id, event.event_type, already_processed=True)

    pool = engine.pool
    if pool is not None and pool.enqueue(event, get_correlation_id()):
        logger.info(f"Queued webhook {event.event_id} ({event.event_type})")
        return IngestResult(event.event_id, event.event_type, queued=True)

    if pool is not None and engine.queue_full_policy == "drop":
        logger.error(
            f"ALERT: webhook {event.event_id} ({event.event_type}) dropped, "
            f"queue unavailable; reconciliation will repair"
        )
        return IngestResult(event.event_id, event.event_type, dropped=True)

    logger.info(f"Processing webhook {event.event_id} ({event.event_type}) inline")
    dispatch_event(event, engine)
    return IngestResult(event.event_id, event.event_type, processed_inline=True)


def dispatch_event(event, engine):
    """Decode and route one verified event to its handler.

    Decode failures and handler errors are logged with the event id and
    swallowed: the event is already in the ledger and Stripe must not be
    told to redeliver it.
    Returns True if a handler ran to completion.
    """
    logger.info(f"Processing event: {event.event_id}, type: {event.event_type}")

    try:
        typed = decode_event(event)
    except DecodeFailure as e:
        logger.error(f"Failed to decode event {event.event_id} ({event.event_type}): {e.detail}")
        return False

    if typed is None:
        logger.info(f"Unhandled event type: {event.event_type}")
        return False

    handler = HANDLERS[event.event_type]
    try:
        handler(typed, engine)
    except Exception as e:
        db.session.rollback()
        logger.error(
            f"Error handling {event.event_type} event {event.event_id}: {e}",
            exc_info=True,
        )
        return False
    return True
