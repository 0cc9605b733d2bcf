"""Billing service — direct user actions against Stripe and the local store.

Responsible for:
- Finding or creating the Stripe customer behind a user's payment profile
- Card setup (SetupIntent, attach, default payment method)
- Creating, resuming and cancelling subscriptions
- Promotion codes, invoice history, card management

The authenticated user ID always comes from the session, never from the
request body. Every mutating action writes an audit event.
"""

import logging

from billsync.errors import (
    BillingError,
    InvalidRequest,
    NotFound,
    ProviderRequestError,
)
from billsync.models.billing import SubscriptionRecord
from billsync.services import subscription_store as store
from billsync.timeutils import from_timestamp

logger = logging.getLogger(__name__)

INVOICE_STATUS_LABELS = {
    "paid": "success",
    "open": "pending",
    "draft": "draft",
    "uncollectible": "failed",
    "void": "voided",
}

DEFAULT_INVOICE_DESCRIPTION = "Subscription"


def _require_profile(user_id):
    profile = store.get_payment_profile(user_id)
    if profile is None or not profile.stripe_customer_id:
        raise NotFound("Payment profile not found")
    return profile


def _require_subscription(user_id):
    record = store.get_by_user(user_id)
    if record is None:
        raise NotFound("Subscription not found")
    return record


# ──────────────────────────────────────────────
# Customers & payment methods
# ──────────────────────────────────────────────

def ensure_payment_profile(user, engine):
    """Return (profile, created) for the user, creating the Stripe customer if needed.

    An existing Stripe customer is reused when its e-mail matches and its
    metadata.user_id is this user. Otherwise a customer is created with a
    per-user idempotency key, so a retried request cannot create two.
    """
    existing = store.get_payment_profile(user.id)
    if existing is not None:
        return existing, False

    gateway = engine.gateway
    customer = gateway.find_customer_for_user(user.email, user.id)
    if customer is not None:
        logger.info(f"Found existing Stripe customer {customer['id']} for user {user.id}")
        updates = {}
        if user.full_name and user.full_name != customer.get("name"):
            updates["name"] = user.full_name
        if user.student_id:
            updates["metadata"] = {"student_id": user.student_id}
        if updates:
            try:
                gateway.update_customer(customer["id"], **updates)
            except BillingError as e:
                logger.warning(f"Failed to update customer info for {customer['id']}: {e.detail or e}")
    else:
        customer = gateway.create_customer(
            user.id, user.email, name=user.full_name, student_id=user.student_id
        )
        logger.info(f"Created Stripe customer {customer['id']} for {user.email}")

    profile, created = store.create_payment_profile(user.id, customer["id"])
    if created:
        store.log_billing_audit(user.id, "billing.customer_created", {
            "stripe_customer_id": customer["id"],
        })
    return profile, created


def create_setup_intent(user_id, engine):
    profile = _require_profile(user_id)
    return engine.gateway.create_setup_intent(profile.stripe_customer_id)


def confirm_payment_method(user_id, payment_method_id, engine):
    """Attach a card to the customer and make it the invoice default."""
    if not payment_method_id:
        raise InvalidRequest("paymentMethodId is required")

    profile = _require_profile(user_id)
    gateway = engine.gateway
    gateway.attach_payment_method(payment_method_id, profile.stripe_customer_id)
    gateway.set_default_payment_method(profile.stripe_customer_id, payment_method_id)
    store.set_has_payment_method(user_id, True)

    store.log_billing_audit(user_id, "billing.payment_method_added", {
        "payment_method_id": payment_method_id,
    })


def list_payment_methods(user_id, engine):
    profile = store.get_payment_profile(user_id)
    if profile is None:
        raise NotFound("Payment profile not found")
    if not profile.stripe_customer_id:
        return []

    methods = []
    for index, pm in enumerate(engine.gateway.list_card_payment_methods(profile.stripe_customer_id)):
        card = pm.get("card") or {}
        methods.append({
            "id": pm.get("id"),
            "card": {
                "brand": card.get("brand"),
                "last4": card.get("last4"),
                "exp_month": card.get("exp_month"),
                "exp_year": card.get("exp_year"),
            },
            # Stripe lists newest first; the newest card is the one set as default
            "isDefault": index == 0,
        })
    return methods


def delete_payment_method(user_id, payment_method_id, engine):
    """Detach one of the user's cards. Only cards on the user's own customer qualify."""
    profile = _require_profile(user_id)
    gateway = engine.gateway

    cards = gateway.list_card_payment_methods(profile.stripe_customer_id)
    if not any(pm.get("id") == payment_method_id for pm in cards):
        raise NotFound("Payment method not found")

    gateway.detach_payment_method(payment_method_id)

    remaining = gateway.list_card_payment_methods(profile.stripe_customer_id)
    if not remaining:
        store.set_has_payment_method(user_id, False)

    store.log_billing_audit(user_id, "billing.payment_method_removed", {
        "payment_method_id": payment_method_id,
        "remaining": len(remaining),
    })


# ──────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────

def create_subscription(user_id, price_id, engine):
    """Subscribe the user to price_id.

    - A subscription scheduled to cancel is resumed (switching price if needed)
    - An active subscription is left alone and the request is rejected
    - Incomplete or canceled leftovers are canceled upstream and replaced
    Returns a dict with the subscription summary and, when Stripe needs
    client-side confirmation, the PaymentIntent client secret.
    """
    if price_id not in engine.allowed_price_ids:
        raise InvalidRequest("Invalid price ID")

    gateway = engine.gateway
    existing = store.get_by_user(user_id)
    if existing is not None:
        if existing.status in SubscriptionRecord.ACTIVE_STATUSES:
            if existing.cancel_at_period_end and not existing.is_orphan:
                return _resume_subscription(existing, price_id, engine)
            logger.warning(
                f"User {user_id} already has an active subscription "
                f"{existing.stripe_subscription_id}"
            )
            raise InvalidRequest("An active subscription already exists")

        if existing.status not in SubscriptionRecord.REPLACEABLE_STATUSES:
            raise InvalidRequest(
                f"Existing subscription is {existing.status}; update the payment method instead"
            )

        logger.info(f"Removing old subscription with status {existing.status} for user {user_id}")
        if existing.stripe_subscription_id:
            try:
                gateway.cancel_now(existing.stripe_subscription_id)
                logger.info(f"Canceled old subscription {existing.stripe_subscription_id} in Stripe")
            except BillingError as e:
                # Usually already canceled upstream
                logger.warning(
                    f"Failed to cancel old subscription {existing.stripe_subscription_id}: "
                    f"{e.detail or e}"
                )
        store.delete_record(existing.id)

    profile = _require_profile(user_id)
    if not gateway.list_card_payment_methods(profile.stripe_customer_id):
        raise InvalidRequest("No payment method on file")

    sub = gateway.create_subscription(user_id, profile.stripe_customer_id, price_id)
    record = store.upsert_for_user(
        user_id,
        stripe_customer_id=profile.stripe_customer_id,
        stripe_subscription_id=sub.id,
        price_id=price_id,
        **sub.local_fields(),
    )

    store.log_billing_audit(user_id, "subscription.created", {
        "stripe_subscription_id": sub.id,
        "price_id": price_id,
        "status": sub.status,
        "source": "direct",
    })
    logger.info(f"Created subscription {sub.id} for user {user_id} with status {sub.status}")

    result = {"subscription": record.to_summary()}
    if sub.payment_intent_client_secret:
        result["payment_intent_client_secret"] = sub.payment_intent_client_secret
    return result


def _resume_subscription(record, price_id, engine):
    sub_id = record.stripe_subscription_id
    user_id = record.user_id
    new_price = price_id if price_id != record.price_id else None

    sub = engine.gateway.resume_subscription(sub_id, new_price_id=new_price)
    store.set_fields(sub_id, price_id=sub.price_id or price_id, **sub.local_fields())

    store.log_billing_audit(user_id, "subscription.resumed", {
        "stripe_subscription_id": sub_id,
        "price_id": sub.price_id or price_id,
    })
    logger.info(f"Resumed subscription {sub_id} for user {user_id}")
    return {"subscription": store.get_by_user(user_id).to_summary(), "resumed": True}


def cancel_subscription(user_id, engine):
    """Schedule cancellation at period end; raises unless Stripe confirms it."""
    record = _require_subscription(user_id)
    if record.is_orphan:
        logger.error(f"Subscription record for user {user_id} has no Stripe ID")
        raise InvalidRequest("Subscription record is incomplete")

    sub_id = record.stripe_subscription_id
    sub = engine.gateway.cancel_at_period_end(sub_id)
    store.set_fields(sub_id, **sub.local_fields())

    store.log_billing_audit(user_id, "subscription.cancel_scheduled", {
        "stripe_subscription_id": sub_id,
        "current_period_end": (
            sub.current_period_end.isoformat() if sub.current_period_end else None
        ),
    })
    logger.info(f"Scheduled cancellation of {sub_id} at period end")
    return store.get_by_user(user_id).to_summary()


def _promotion_error_message(error):
    if error.code == "coupon_expired":
        return "This coupon has expired"
    if error.code == "resource_already_exists":
        return "This coupon has already been applied"
    if "prior transactions" in (error.detail or ""):
        return "This coupon is only valid for first-time customers"
    return "Could not apply the coupon"


def apply_promotion_code(user_id, code, engine):
    code = (code or "").strip()
    if not code:
        raise InvalidRequest("Promotion code is required")

    record = _require_subscription(user_id)
    if record.status not in SubscriptionRecord.ACTIVE_STATUSES or record.is_orphan:
        raise InvalidRequest("No active subscription")

    gateway = engine.gateway
    logger.info(f"Searching for promotion code {code}")
    promo = gateway.find_promotion_code(code, record.stripe_customer_id)
    if promo is None:
        logger.warning(f"No valid promotion code found for {code}")
        raise InvalidRequest("Invalid promotion code")

    try:
        sub = gateway.apply_promotion_code(record.stripe_subscription_id, promo["id"])
    except ProviderRequestError as e:
        logger.warning(f"Stripe refused promotion {promo['id']}: code={e.code}, msg={e.detail}")
        raise InvalidRequest(_promotion_error_message(e), detail=e.detail) from e

    store.log_billing_audit(user_id, "subscription.promotion_applied", {
        "stripe_subscription_id": sub.id,
        "promotion_code_id": promo["id"],
    })

    coupon = promo.get("coupon") or {}
    return {
        "coupon": {
            "id": coupon.get("id"),
            "name": coupon.get("name"),
            "percent_off": coupon.get("percent_off"),
            "amount_off": coupon.get("amount_off"),
        },
        "subscription": {
            "status": sub.status,
            "current_period_end": (
                sub.current_period_end.isoformat() if sub.current_period_end else None
            ),
        },
    }


# ──────────────────────────────────────────────
# History
# ──────────────────────────────────────────────

def _invoice_description(invoice):
    if invoice.get("description"):
        return invoice["description"]
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines and lines[0].get("description"):
        return lines[0]["description"]
    return DEFAULT_INVOICE_DESCRIPTION


def payment_history(user_id, engine):
    """The customer's invoices, newest first."""
    profile = store.get_payment_profile(user_id)
    if profile is None:
        raise NotFound("Payment profile not found")
    if not profile.stripe_customer_id:
        return []

    history = []
    for invoice in engine.gateway.list_invoices(profile.stripe_customer_id):
        status = invoice.get("status")
        created = from_timestamp(invoice.get("created"))
        history.append({
            "id": invoice.get("id"),
            "amount": invoice.get("amount_paid") or invoice.get("amount_due") or 0,
            "currency": invoice.get("currency"),
            "status": INVOICE_STATUS_LABELS.get(status, status),
            "stripe_status": status,
            "type": "subscription",
            "created_at": created.isoformat() if created else None,
            "description": _invoice_description(invoice),
            "invoice_number": invoice.get("number"),
        })

    history.sort(key=lambda entry: entry["created_at"] or "", reverse=True)
    return history
