"""Stripe event model (idempotency ledger).

Every accepted webhook event is recorded by its Stripe event ID. The unique
constraint on event_id is the only exactly-once boundary in the system: a
second insert of the same ID fails and the event is treated as already
handled. Rows older than PROCESSED_EVENT_RETENTION_DAYS are pruned.
"""

import uuid

from billsync.extensions import db


class ProcessedEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    received_at = db.Column(
        db.DateTime(timezone=True), nullable=False, index=True
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.event_id} ({self.event_type})>"
