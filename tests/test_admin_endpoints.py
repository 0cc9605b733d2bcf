"""Tests for /admin/billing.

Covers:
- Admin-only access
- Subscription sweep results and audit entry
- Worker pool stats in inline and pool mode
"""

from unittest.mock import MagicMock

from billsync.models.audit import AuditEvent
from billsync.services.worker_pool import WebhookWorkerPool

from conftest import make_subscription, provider_sub


class TestAccess:

    def test_requires_login(self, client):
        assert client.post("/admin/billing/sync").status_code == 401

    def test_non_admin_forbidden(self, client, seed_data, login):
        login(seed_data["user_id"])

        resp = client.post("/admin/billing/sync")

        assert resp.status_code == 403


class TestSync:

    def test_sweep(self, client, seed_data, login, gateway):
        login(seed_data["admin_id"])
        make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.return_value = provider_sub(status="past_due")

        resp = client.post("/admin/billing/sync")

        assert resp.status_code == 200
        assert resp.get_json() == {"synced": 1, "removed": 0}
        audit = AuditEvent.query.filter_by(action="admin.subscriptions_synced").one()
        assert audit.user_id == seed_data["admin_id"]


class TestWorkers:

    def test_inline_mode(self, client, seed_data, login):
        login(seed_data["admin_id"])

        body = client.get("/admin/billing/workers").get_json()

        assert body == {"running": False, "mode": "inline"}

    def test_pool_mode(self, app, client, seed_data, login, engine):
        login(seed_data["admin_id"])
        pool = WebhookWorkerPool(app, MagicMock(), worker_count=2, queue_size=7)
        engine.pool = pool
        try:
            body = client.get("/admin/billing/workers").get_json()
        finally:
            engine.pool = None

        assert body["mode"] == "pool"
        assert body["workers"] == 2
        assert body["queue_capacity"] == 7
        assert body["running"] is False
        assert body["processed"] == 0
