"""Billing engine — the dependencies the billing services share.

Built once in create_app() and stored on app.extensions, so services get
their Stripe gateway, worker pool and settings from one object instead
of module globals.
"""

import functools
import logging

from flask import current_app

from billsync.services.stripe_gateway import StripeGateway
from billsync.services.webhook_service import dispatch_event
from billsync.services.worker_pool import WebhookWorkerPool

logger = logging.getLogger(__name__)

EXTENSION_KEY = "billing_engine"


class BillingEngine:
    def __init__(self, gateway, allowed_price_ids=(), webhook_secret=None,
                 webhook_tolerance=300, queue_full_policy="inline",
                 retention_days=30):
        if queue_full_policy not in ("inline", "drop"):
            raise ValueError(f"Unknown queue full policy: {queue_full_policy}")
        self.gateway = gateway
        self.allowed_price_ids = frozenset(p for p in allowed_price_ids if p)
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self.queue_full_policy = queue_full_policy
        self.retention_days = retention_days
        self.pool = None

    @classmethod
    def from_config(cls, config):
        return cls(
            gateway=StripeGateway(config.get("STRIPE_SECRET_KEY")),
            allowed_price_ids=(
                config.get("STRIPE_PRICE_ID_MONTHLY"),
                config.get("STRIPE_PRICE_ID_YEARLY"),
                config.get("STRIPE_PRICE_ID_2YEARS"),
            ),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
            queue_full_policy=config.get("WEBHOOK_QUEUE_FULL_POLICY", "inline"),
            retention_days=config.get("PROCESSED_EVENT_RETENTION_DAYS", 30),
        )

    # ── Worker pool ──

    def start_workers(self, app, worker_count=5, queue_size=100):
        if self.pool is not None:
            return self.pool
        self.pool = WebhookWorkerPool(
            app,
            functools.partial(dispatch_event, engine=self),
            worker_count=worker_count,
            queue_size=queue_size,
        )
        self.pool.start()
        return self.pool

    def shutdown(self, timeout=30.0):
        """Drain and stop the worker pool. Returns the number of abandoned jobs."""
        if self.pool is None:
            return 0
        pool, self.pool = self.pool, None
        return pool.shutdown(timeout)

    def worker_stats(self):
        if self.pool is None:
            return {"running": False, "mode": "inline"}
        stats = self.pool.stats()
        stats["mode"] = "pool"
        return stats


def get_engine():
    return current_app.extensions[EXTENSION_KEY]
