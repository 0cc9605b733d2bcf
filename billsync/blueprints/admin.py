"""Admin blueprint — /admin/billing/*

Operator endpoints. All routes protected by @admin_required.

Route Map:
  POST /admin/billing/sync     — reconcile every subscription with Stripe
  GET  /admin/billing/workers  — webhook worker pool counters
"""

import logging

from flask import Blueprint, jsonify
from flask_login import current_user

from billsync.decorators import admin_required
from billsync.engine import get_engine
from billsync.services import subscription_store as store
from billsync.services.reconciliation import sweep_subscriptions

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin/billing")


@admin_bp.route("/sync", methods=["POST"])
@admin_required
def sync_subscriptions():
    """Sweep all subscription records against Stripe. Returns {synced, removed}."""
    result = sweep_subscriptions(get_engine().gateway)
    store.log_billing_audit(current_user.id, "admin.subscriptions_synced", result)
    return jsonify(result)


@admin_bp.route("/workers", methods=["GET"])
@admin_required
def worker_stats():
    return jsonify(get_engine().worker_stats())
