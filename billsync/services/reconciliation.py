"""Reconciliation — Stripe is the source of truth, local records follow.

Runs lazily on every status read and eagerly as an admin sweep. Each pass
fetches the subscription from Stripe and overwrites local fields that
have drifted. It never writes local values back to Stripe.
"""

import enum
import logging

from billsync.errors import ProviderRequestError, ProviderUnavailable, SubscriptionMissing
from billsync.models.billing import SubscriptionRecord
from billsync.services import subscription_store as store
from billsync.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


class ReconcileOutcome(enum.Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    MISSING = "missing"
    UNAVAILABLE = "unavailable"
    ORPHAN = "orphan"


def is_subscription_active(status, cancel_at_period_end, current_period_end, now=None):
    """Active for product purposes.

    status must be active or trialing, and a scheduled cancellation whose
    period has already ended counts as inactive even if the status has
    not caught up yet.
    """
    if status not in SubscriptionRecord.ACTIVE_STATUSES:
        return False
    period_end = as_utc(current_period_end)
    if cancel_at_period_end and period_end is not None:
        now = as_utc(now) if now is not None else utcnow()
        if now > period_end:
            return False
    return True


def _drifted_fields(record, sub):
    """Provider values for every mirrored field that differs locally."""
    drift = {}
    if record.status != sub.status:
        drift["status"] = sub.status
    if as_utc(record.current_period_end) != sub.current_period_end:
        drift["current_period_end"] = sub.current_period_end
    if bool(record.cancel_at_period_end) != sub.cancel_at_period_end:
        drift["cancel_at_period_end"] = sub.cancel_at_period_end
    if sub.price_id and record.price_id != sub.price_id:
        drift["price_id"] = sub.price_id
    return drift


def reconcile_record(record, gateway):
    """Bring one record in line with Stripe. Returns a ReconcileOutcome."""
    if record.is_orphan:
        logger.warning(f"Subscription record {record.id} for user {record.user_id} has no Stripe ID")
        return ReconcileOutcome.ORPHAN

    sub_id = record.stripe_subscription_id
    try:
        sub = gateway.retrieve_subscription(sub_id)
    except SubscriptionMissing:
        logger.info(f"Subscription {sub_id} not found in Stripe, marking as canceled")
        if record.status != "canceled":
            store.set_fields(sub_id, status="canceled")
        return ReconcileOutcome.MISSING
    except (ProviderUnavailable, ProviderRequestError) as e:
        logger.warning(f"Failed to fetch subscription {sub_id} from Stripe: {e.detail or e}")
        return ReconcileOutcome.UNAVAILABLE

    drift = _drifted_fields(record, sub)
    if not drift:
        return ReconcileOutcome.UNCHANGED

    if "status" in drift:
        logger.info(
            f"Status mismatch for {sub_id} - local: {record.status}, "
            f"Stripe: {sub.status}, syncing"
        )
    store.set_fields(sub_id, **drift)
    logger.info(f"Synced {', '.join(sorted(drift))} for {sub_id} from Stripe")

    if sub.cancel_at_period_end and sub.status != "canceled" and sub.current_period_end:
        if utcnow() > sub.current_period_end:
            logger.warning(
                f"Subscription {sub_id} has cancel_at_period_end=true and its period "
                f"has ended, but status is {sub.status}"
            )
    return ReconcileOutcome.UPDATED


def get_subscription_status(user_id, gateway, now=None):
    """Status query with lazy reconciliation.

    If Stripe cannot be reached the local record is served as-is.
    """
    record = store.get_by_user(user_id)
    if record is None:
        return {"hasActiveSubscription": False, "subscription": None}

    outcome = reconcile_record(record, gateway)
    if outcome in (ReconcileOutcome.UPDATED, ReconcileOutcome.MISSING):
        record = store.get_by_user(user_id)

    return {
        "hasActiveSubscription": is_subscription_active(
            record.status,
            record.cancel_at_period_end,
            record.current_period_end,
            now,
        ),
        "subscription": record.to_summary(),
    }


def sweep_subscriptions(gateway):
    """Reconcile every record.

    Records without a Stripe ID and records Stripe no longer has are
    deleted. Returns {"synced": n, "removed": n}.
    """
    synced = removed = 0
    for record in store.list_all():
        record_id = record.id
        outcome = reconcile_record(record, gateway)

        if outcome in (ReconcileOutcome.ORPHAN, ReconcileOutcome.MISSING):
            store.delete_record(record_id)
            removed += 1
        elif outcome in (ReconcileOutcome.UNCHANGED, ReconcileOutcome.UPDATED):
            synced += 1

    logger.info(f"Subscription sweep finished: synced={synced}, removed={removed}")
    return {"synced": synced, "removed": removed}
