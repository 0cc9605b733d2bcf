"""Billing models.

- PaymentProfile: links a user to a Stripe customer ID (the "payments" table).
- SubscriptionRecord: local mirror of a Stripe subscription. Stripe is the
  source of truth; every column here is overwritten from Stripe data.
"""

import uuid

from billsync.extensions import db
from billsync.timeutils import as_utc


class PaymentProfile(db.Model):
    __tablename__ = "payments"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )
    # unique + nullable: NULLs never collide, so this behaves as a sparse index
    stripe_customer_id = db.Column(db.String(255), unique=True, nullable=True)
    has_payment_method = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="payment_profile")

    def __repr__(self):
        return f"<PaymentProfile stripe={self.stripe_customer_id}>"


class SubscriptionRecord(db.Model):
    __tablename__ = "subscriptions"

    # -- Statuses Stripe can report --
    STATUSES = [
        "incomplete",
        "incomplete_expired",
        "trialing",
        "active",
        "past_due",
        "canceled",
        "unpaid",
        "paused",
    ]
    ACTIVE_STATUSES = ("active", "trialing")
    REPLACEABLE_STATUSES = ("incomplete", "incomplete_expired", "canceled")

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )
    stripe_customer_id = db.Column(db.String(255), nullable=True)
    stripe_subscription_id = db.Column(db.String(255), unique=True, nullable=True)
    status = db.Column(db.String(50), nullable=False, default="incomplete")
    price_id = db.Column(db.String(255), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    # Stripe "created" time of the newest subscription event applied here
    last_event_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscription")

    @property
    def is_orphan(self):
        return not self.stripe_subscription_id

    def to_summary(self):
        """Public view of the subscription (no customer id)."""
        return {
            "id": self.stripe_subscription_id,
            "status": self.status,
            "price_id": self.price_id,
            "current_period_end": (
                as_utc(self.current_period_end).isoformat()
                if self.current_period_end else None
            ),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
        }

    def __repr__(self):
        return f"<SubscriptionRecord {self.stripe_subscription_id} ({self.status})>"
