"""Subscription record store — typed access to subscriptions and payments.

All mutations are single UPDATE statements that set absolute values keyed
by an immutable column (stripe_subscription_id or user_id). Nothing here
reads a row, changes it in Python and writes it back, so a webhook worker
and a direct API call racing on the same row cannot lose each other's
fields beyond normal last-write-wins.
"""

import logging

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError

from billsync.errors import DataInconsistency
from billsync.extensions import db
from billsync.models.audit import AuditEvent
from billsync.models.billing import PaymentProfile, SubscriptionRecord
from billsync.timeutils import utcnow

logger = logging.getLogger(__name__)

SUBSCRIPTION_FIELDS = frozenset({
    "stripe_customer_id",
    "stripe_subscription_id",
    "status",
    "price_id",
    "current_period_end",
    "cancel_at_period_end",
})


def _check_fields(fields):
    unknown = set(fields) - SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")


# ──────────────────────────────────────────────
# Subscription reads
# ──────────────────────────────────────────────

def get_by_user(user_id):
    return SubscriptionRecord.query.filter_by(user_id=user_id).first()


def get_by_subscription_id(stripe_subscription_id):
    if not stripe_subscription_id:
        return None
    return SubscriptionRecord.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()


def list_all():
    return SubscriptionRecord.query.order_by(SubscriptionRecord.created_at).all()


# ──────────────────────────────────────────────
# Subscription writes
# ──────────────────────────────────────────────

def _execute_update(statement):
    # The commit below expires loaded rows; skip in-session evaluation.
    result = db.session.execute(
        statement.execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount or 0


def set_fields(stripe_subscription_id, **fields):
    """Unconditionally set fields on the record for a Stripe subscription.

    Returns the number of rows matched (0 when no local record exists).
    """
    _check_fields(fields)
    return _execute_update(
        update(SubscriptionRecord)
        .where(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id)
        .values(**fields, updated_at=utcnow())
    )


def set_fields_if_newer(stripe_subscription_id, event_created, **fields):
    """Set fields only if event_created is not older than the last applied event.

    The filter lives in the UPDATE itself, so two workers applying events
    for the same subscription cannot interleave a stale write.
    Returns the number of rows changed (0 for unknown or stale).
    """
    _check_fields(fields)
    return _execute_update(
        update(SubscriptionRecord)
        .where(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id)
        .where(or_(
            SubscriptionRecord.last_event_at.is_(None),
            SubscriptionRecord.last_event_at <= event_created,
        ))
        .values(**fields, last_event_at=event_created, updated_at=utcnow())
    )


def set_fields_for_user(user_id, **fields):
    _check_fields(fields)
    return _execute_update(
        update(SubscriptionRecord)
        .where(SubscriptionRecord.user_id == user_id)
        .values(**fields, updated_at=utcnow())
    )


def upsert_for_user(user_id, **fields):
    """Create the user's subscription record, or update it if one exists.

    Whichever writer (checkout webhook or direct create call) arrives first
    wins the insert; the other lands on the unique user_id constraint and
    falls through to an update.
    Returns the SubscriptionRecord.
    """
    _check_fields(fields)
    record = SubscriptionRecord(user_id=user_id, **fields)
    try:
        db.session.add(record)
        db.session.commit()
        return record
    except IntegrityError:
        db.session.rollback()

    try:
        matched = set_fields_for_user(user_id, **fields)
    except IntegrityError as e:
        db.session.rollback()
        # stripe_subscription_id already belongs to another user's record
        flag_inconsistency(user_id, "subscription id owned by another record", {
            "stripe_subscription_id": fields.get("stripe_subscription_id"),
        })
        raise DataInconsistency(detail=str(e)) from e

    if not matched:
        flag_inconsistency(user_id, "subscription id owned by another record", {
            "stripe_subscription_id": fields.get("stripe_subscription_id"),
        })
        raise DataInconsistency(
            detail="subscription id is already linked to a different user"
        )
    return get_by_user(user_id)


def delete_record(record_id):
    return _execute_update(
        delete(SubscriptionRecord).where(SubscriptionRecord.id == record_id)
    )


# ──────────────────────────────────────────────
# Payment profiles
# ──────────────────────────────────────────────

def get_payment_profile(user_id):
    return PaymentProfile.query.filter_by(user_id=user_id).first()


def create_payment_profile(user_id, stripe_customer_id):
    """Insert the user's payment profile.

    A concurrent request may have inserted it first. That is fine as long
    as both resolved the same Stripe customer; a different customer ID is
    a DataInconsistency and is flagged for review.
    Returns (profile, created).
    """
    profile = PaymentProfile(
        user_id=user_id,
        stripe_customer_id=stripe_customer_id,
        has_payment_method=False,
    )
    try:
        db.session.add(profile)
        db.session.commit()
        return profile, True
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Duplicate payment profile insert for user {user_id}, checking existing record")

    existing = get_payment_profile(user_id)
    if existing is None:
        # The conflict was on stripe_customer_id: the customer belongs to someone else
        flag_inconsistency(user_id, "stripe customer linked to another user", {
            "stripe_customer_id": stripe_customer_id,
        })
        raise DataInconsistency(detail="customer is linked to a different user")

    if existing.stripe_customer_id != stripe_customer_id:
        logger.error(
            f"Data inconsistency: payment profile for user {user_id} has customer "
            f"{existing.stripe_customer_id}, expected {stripe_customer_id}"
        )
        flag_inconsistency(user_id, "payment profile customer mismatch", {
            "expected": stripe_customer_id,
            "found": existing.stripe_customer_id,
        })
        raise DataInconsistency()

    return existing, False


def set_has_payment_method(user_id, value):
    return _execute_update(
        update(PaymentProfile)
        .where(PaymentProfile.user_id == user_id)
        .values(has_payment_method=value, updated_at=utcnow())
    )


# ──────────────────────────────────────────────
# Audit
# ──────────────────────────────────────────────

def log_billing_audit(user_id, action, metadata=None):
    """Record a billing audit event (committed)."""
    event = AuditEvent(
        user_id=user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.commit()
    return event


def flag_inconsistency(user_id, reason, metadata=None):
    """Record a data inconsistency for manual review."""
    logger.error(f"Billing data inconsistency for user {user_id}: {reason}")
    details = dict(metadata or {})
    details["reason"] = reason
    return log_billing_audit(user_id, "billing.inconsistency", details)
