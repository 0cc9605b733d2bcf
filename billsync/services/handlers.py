"""State transition handlers — one per webhook event type.

Every state change is a set-style UPDATE keyed by the Stripe subscription
ID, so the same business fact arriving twice under different event IDs
lands on the same values. Handlers receive a typed event (see events.py)
and the BillingEngine.
"""

import logging

from billsync.errors import ProviderUnavailable, SubscriptionMissing
from billsync.extensions import db
from billsync.models.user import User
from billsync.services import subscription_store as store

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────

def handle_checkout_completed(event, engine):
    """Create or update the user's subscription record.

    The user comes from client_reference_id, set when the session was
    created. Period end and price are read from Stripe; if Stripe is
    unreachable the values carried on the session are used instead.
    """
    if event.mode != "subscription":
        logger.info(f"Checkout session {event.session_id} is mode={event.mode}, nothing to sync")
        return

    user_id = event.client_reference_id
    if not user_id or not event.subscription_id:
        logger.warning(
            f"checkout.session.completed {event.session_id} missing "
            f"client_reference_id or subscription"
        )
        return

    if db.session.get(User, user_id) is None:
        logger.warning(f"checkout.session.completed for unknown user {user_id}")
        return

    price_id = event.price_id
    period_end = event.current_period_end
    try:
        sub = engine.gateway.retrieve_subscription(event.subscription_id)
        price_id = sub.price_id or price_id
        period_end = sub.current_period_end or period_end
    except (ProviderUnavailable, SubscriptionMissing) as e:
        logger.warning(
            f"Could not fetch subscription {event.subscription_id} for checkout "
            f"{event.session_id}, using session data: {e}"
        )

    store.upsert_for_user(
        user_id,
        stripe_customer_id=event.customer_id,
        stripe_subscription_id=event.subscription_id,
        status="active",
        price_id=price_id,
        current_period_end=period_end,
        cancel_at_period_end=False,
    )

    if event.customer_id and store.get_payment_profile(user_id) is None:
        store.create_payment_profile(user_id, event.customer_id)

    store.log_billing_audit(user_id, "subscription.created", {
        "stripe_subscription_id": event.subscription_id,
        "price_id": price_id,
        "source": "checkout",
    })
    logger.info(f"Checkout completed: user {user_id} subscribed with {event.subscription_id}")


# ──────────────────────────────────────────────
# Subscription lifecycle
# ──────────────────────────────────────────────

def handle_subscription_changed(event, engine):
    """customer.subscription.updated / .deleted.

    Applied only if the event is not older than the last subscription
    event applied to the record; a stale redelivery is skipped.
    """
    if event.deleted:
        fields = {"status": "canceled", "cancel_at_period_end": True}
    else:
        fields = {
            "status": event.status,
            "current_period_end": event.current_period_end,
            "cancel_at_period_end": event.cancel_at_period_end,
        }
        if event.price_id:
            fields["price_id"] = event.price_id

    changed = store.set_fields_if_newer(event.subscription_id, event.created_at, **fields)

    record = store.get_by_subscription_id(event.subscription_id)
    if record is None:
        logger.warning(
            f"subscription event {event.event_id}: no local record for {event.subscription_id}"
        )
        return
    if not changed:
        logger.info(
            f"Skipping stale event {event.event_id} for {event.subscription_id} "
            f"(created {event.created_at.isoformat()})"
        )
        return

    action = "subscription.deleted" if event.deleted else "subscription.updated"
    store.log_billing_audit(record.user_id, action, {
        "stripe_subscription_id": event.subscription_id,
        "status": fields["status"],
        "cancel_at_period_end": fields["cancel_at_period_end"],
    })
    logger.info(f"{action}: {event.subscription_id} -> {fields['status']}")


def handle_trial_will_end(event, engine):
    trial_end = event.trial_end.isoformat() if event.trial_end else "unknown"
    logger.info(f"Trial ending for subscription {event.subscription_id} at {trial_end}")


# ──────────────────────────────────────────────
# Invoices
# ──────────────────────────────────────────────

def _record_for_invoice(event):
    if not event.subscription_id:
        logger.info(f"invoice.{event.kind} {event.invoice_id} has no subscription")
        return None
    record = store.get_by_subscription_id(event.subscription_id)
    if record is None:
        logger.warning(
            f"invoice.{event.kind}: no local record for {event.subscription_id}"
        )
    return record


def handle_invoice_paid(event, engine):
    record = _record_for_invoice(event)
    if record is None:
        return
    if record.cancel_at_period_end:
        logger.error(
            f"ANOMALY: invoice {event.invoice_id} paid for subscription "
            f"{event.subscription_id} which is marked cancel_at_period_end "
            f"(user {record.user_id}, amount_paid={event.amount_paid})"
        )
        return
    logger.info(f"Invoice {event.invoice_id} paid for {event.subscription_id}")


def handle_invoice_payment_failed(event, engine):
    if not event.subscription_id:
        logger.warning(f"invoice.payment_failed {event.invoice_id} has no subscription")
        return

    matched = store.set_fields(event.subscription_id, status="past_due")
    if not matched:
        logger.warning(f"invoice.payment_failed: no local record for {event.subscription_id}")
        return

    record = store.get_by_subscription_id(event.subscription_id)
    store.log_billing_audit(record.user_id, "invoice.payment_failed", {
        "stripe_subscription_id": event.subscription_id,
        "invoice_id": event.invoice_id,
        "amount_due": event.amount_due,
    })
    logger.error(
        f"Payment failed for subscription {event.subscription_id}, marked past_due"
    )


def handle_invoice_upcoming(event, engine):
    record = _record_for_invoice(event)
    if record is None:
        return
    if record.cancel_at_period_end:
        logger.critical(
            f"ANOMALY: upcoming invoice for subscription {event.subscription_id} "
            f"which is marked cancel_at_period_end (user {record.user_id}, "
            f"amount_due={event.amount_due})"
        )


# ──────────────────────────────────────────────
# Payments & disputes (logging only)
# ──────────────────────────────────────────────

def handle_payment_intent(event, engine):
    if event.succeeded:
        logger.info(f"Payment {event.payment_intent_id} succeeded (amount={event.amount})")
        return
    logger.error(
        f"ALERT: payment {event.payment_intent_id} failed for customer "
        f"{event.customer_id}: {event.failure_message or 'no reason given'}"
    )


def handle_dispute_created(event, engine):
    logger.critical(
        f"ALERT: dispute {event.dispute_id} opened on charge {event.charge_id} "
        f"(amount={event.amount}, reason={event.reason})"
    )


HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_changed,
    "customer.subscription.trial_will_end": handle_trial_will_end,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.upcoming": handle_invoice_upcoming,
    "payment_intent.succeeded": handle_payment_intent,
    "payment_intent.payment_failed": handle_payment_intent,
    "charge.dispute.created": handle_dispute_created,
}
