"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, jsonify, request

from billsync.engine import get_engine
from billsync.errors import InvalidSignature
from billsync.services.webhook_service import ingest_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive Stripe webhook events.

    1. Verify the signature against STRIPE_WEBHOOK_SECRET
    2. Record the event ID (duplicates are acknowledged, not reprocessed)
    3. Hand the event to the worker pool
    4. Return 200 to acknowledge receipt

    Handler failures never produce a non-2xx response; Stripe would only
    redeliver into the same bug. LedgerUnavailable propagates as a 500 so
    Stripe retries.
    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    try:
        result = ingest_webhook(payload, sig_header, get_engine())
    except InvalidSignature as e:
        logger.warning(f"Webhook signature verification failed: {e.detail}")
        return jsonify({"error": "Invalid signature"}), 400

    body = {"received": True}
    if result.already_processed:
        body["message"] = result.message
    return jsonify(body), 200
