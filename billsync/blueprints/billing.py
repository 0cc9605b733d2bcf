"""Billing blueprint — /billing/*

JSON API for the signed-in user's own billing. The user is always
current_user; nothing in the request body can name another user.

Routes:
- POST   /billing/customer                  — find or create the Stripe customer
- POST   /billing/setup-intent              — SetupIntent client secret for card entry
- POST   /billing/confirm-setup             — attach card + make it the default
- POST   /billing/subscription              — create (or resume) a subscription
- GET    /billing/subscription/status       — status with lazy reconciliation
- POST   /billing/subscription/cancel       — cancel at period end
- POST   /billing/subscription/promotion    — apply a promotion code
- GET    /billing/history                   — invoice history
- GET    /billing/payment-methods           — saved cards
- DELETE /billing/payment-methods/<pm_id>   — remove a card
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from billsync.engine import get_engine
from billsync.extensions import limiter
from billsync.services import billing_service
from billsync.services.reconciliation import get_subscription_status

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/billing")


def _json_body():
    return request.get_json(silent=True) or {}


# ──────────────────────────────────────────────
# Customer & cards
# ──────────────────────────────────────────────

@billing_bp.route("/customer", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def create_customer():
    profile, created = billing_service.ensure_payment_profile(current_user, get_engine())
    if created:
        return jsonify({"message": "Customer created"}), 201
    return jsonify({
        "message": "Payment profile already exists",
        "has_payment_method": profile.has_payment_method,
    }), 200


@billing_bp.route("/setup-intent", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def setup_intent():
    client_secret = billing_service.create_setup_intent(current_user.id, get_engine())
    return jsonify({"clientSecret": client_secret})


@billing_bp.route("/confirm-setup", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def confirm_setup():
    payment_method_id = _json_body().get("paymentMethodId")
    billing_service.confirm_payment_method(current_user.id, payment_method_id, get_engine())
    return jsonify({"message": "Payment method saved"})


@billing_bp.route("/payment-methods", methods=["GET"])
@login_required
def payment_methods():
    methods = billing_service.list_payment_methods(current_user.id, get_engine())
    return jsonify({"paymentMethods": methods})


@billing_bp.route("/payment-methods/<pm_id>", methods=["DELETE"])
@login_required
def delete_payment_method(pm_id):
    billing_service.delete_payment_method(current_user.id, pm_id, get_engine())
    return jsonify({"message": "Payment method removed"})


# ──────────────────────────────────────────────
# Subscription
# ──────────────────────────────────────────────

@billing_bp.route("/subscription", methods=["POST"])
@login_required
@limiter.limit("5 per minute")
def create_subscription():
    price_id = _json_body().get("priceId")
    result = billing_service.create_subscription(current_user.id, price_id, get_engine())
    result["message"] = (
        "Subscription resumed" if result.pop("resumed", False) else "Subscription created"
    )
    return jsonify(result)


@billing_bp.route("/subscription/status", methods=["GET"])
@login_required
def subscription_status():
    return jsonify(get_subscription_status(current_user.id, get_engine().gateway))


@billing_bp.route("/subscription/cancel", methods=["POST"])
@login_required
@limiter.limit("5 per minute")
def cancel_subscription():
    summary = billing_service.cancel_subscription(current_user.id, get_engine())
    return jsonify({
        "message": "Subscription will be canceled at the end of the billing period",
        "subscription": summary,
    })


@billing_bp.route("/subscription/promotion", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def apply_promotion():
    code = _json_body().get("code")
    result = billing_service.apply_promotion_code(current_user.id, code, get_engine())
    result["message"] = "Coupon applied"
    return jsonify(result)


# ──────────────────────────────────────────────
# History
# ──────────────────────────────────────────────

@billing_bp.route("/history", methods=["GET"])
@login_required
def history():
    return jsonify({
        "payment_history": billing_service.payment_history(current_user.id, get_engine()),
    })
