import atexit
import logging
import os
import re

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from billsync.config import config_by_name
from billsync.engine import EXTENSION_KEY, BillingEngine
from billsync.errors import BillingError
from billsync.extensions import db, migrate, login_manager, csrf, limiter
from billsync.logging_utils import configure_logging, get_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Logging ---
    configure_logging(logging.DEBUG if app.debug else logging.INFO)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from billsync import models  # noqa: F401

    # --- Correlation id ---
    @app.before_request
    def assign_correlation_id():
        incoming = request.headers.get("X-Correlation-ID", "")
        set_correlation_id(incoming if _CORRELATION_ID_RE.match(incoming) else None)

    # --- Register blueprints ---
    from billsync.blueprints.admin import admin_bp
    from billsync.blueprints.billing import billing_bp
    from billsync.blueprints.webhooks import webhooks_bp

    app.register_blueprint(billing_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF: the raw body is needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Billing engine + webhook workers ---
    init_engine(app)

    # --- Error handlers ---
    @app.errorhandler(BillingError)
    def billing_error(e):
        if e.status_code >= 500:
            logger.error(f"{type(e).__name__}: {e.message} ({e.detail})")
        else:
            logger.warning(f"{type(e).__name__}: {e.message} ({e.detail})")
        expose = app.config.get("EXPOSE_PROVIDER_ERRORS", False)
        return jsonify(e.to_dict(expose_detail=expose)), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.description or e.name}), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Response headers ---
    @app.after_request
    def add_response_headers(response):
        """Echo the correlation id and add security headers to every response."""
        response.headers["X-Correlation-ID"] = get_correlation_id()
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing should be framed, scripted or embedded
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    return app


def init_engine(app):
    """Build the BillingEngine and start the webhook worker pool if enabled."""
    engine = BillingEngine.from_config(app.config)
    app.extensions[EXTENSION_KEY] = engine

    if app.config.get("WEBHOOK_WORKERS_ENABLED"):
        engine.start_workers(
            app,
            worker_count=app.config["WEBHOOK_WORKER_COUNT"],
            queue_size=app.config["WEBHOOK_QUEUE_SIZE"],
        )
        atexit.register(engine.shutdown, app.config["WEBHOOK_SHUTDOWN_TIMEOUT"])
    else:
        logger.info("Webhook workers disabled, events are processed inline")
    return engine


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("sync-subscriptions")
    def sync_subscriptions():
        """Reconcile every local subscription with Stripe.

        Deletes records without a Stripe subscription ID and records
        Stripe no longer knows about.

        Usage:
            flask sync-subscriptions
        """
        from billsync.services.reconciliation import sweep_subscriptions

        engine = app.extensions[EXTENSION_KEY]
        result = sweep_subscriptions(engine.gateway)
        click.echo(f"Synced: {result['synced']}  Removed: {result['removed']}")

    @app.cli.command("prune-stripe-events")
    @click.option("--days", type=int, default=None,
                  help="Retention window in days (default PROCESSED_EVENT_RETENTION_DAYS).")
    def prune_stripe_events(days):
        """Delete processed webhook event IDs older than the retention window.

        Usage:
            flask prune-stripe-events
            flask prune-stripe-events --days 45
        """
        from billsync.services.ledger import prune_processed_events

        if days is None:
            days = app.config["PROCESSED_EVENT_RETENTION_DAYS"]
        removed = prune_processed_events(days)
        click.echo(f"Removed {removed} processed events older than {days} days")
