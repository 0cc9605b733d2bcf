"""Tests for reconciliation against Stripe.

Covers:
- is_subscription_active predicate (including an ended cancel period)
- Drift repair on a status read
- Stripe no longer has the subscription -> canceled
- Stripe unreachable -> local record served unchanged
- Admin sweep removes orphans and missing subscriptions
"""

from datetime import datetime, timezone

from billsync.errors import ProviderUnavailable, SubscriptionMissing
from billsync.services import subscription_store as store
from billsync.services.reconciliation import (
    ReconcileOutcome,
    get_subscription_status,
    is_subscription_active,
    reconcile_record,
    sweep_subscriptions,
)

from conftest import PERIOD_END, make_subscription, provider_sub


class TestIsSubscriptionActive:

    def test_active(self):
        assert is_subscription_active("active", False, PERIOD_END)

    def test_trialing(self):
        assert is_subscription_active("trialing", False, None)

    def test_canceled_status(self):
        assert not is_subscription_active("canceled", False, PERIOD_END)

    def test_past_due(self):
        assert not is_subscription_active("past_due", False, PERIOD_END)

    def test_cancel_scheduled_period_not_ended(self):
        now = datetime(2024, 12, 31, tzinfo=timezone.utc)
        end = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert is_subscription_active("active", True, end, now=now)

    def test_cancel_scheduled_period_ended(self):
        """Status still says active, but the paid period is over."""
        now = datetime(2025, 1, 2, tzinfo=timezone.utc)
        end = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert not is_subscription_active("active", True, end, now=now)

    def test_naive_period_end_treated_as_utc(self):
        now = datetime(2025, 1, 2, tzinfo=timezone.utc)
        assert not is_subscription_active("active", True, datetime(2025, 1, 1), now=now)


class TestReconcileRecord:

    def test_unchanged(self, seed_data, gateway):
        record = make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.return_value = provider_sub()

        assert reconcile_record(record, gateway) is ReconcileOutcome.UNCHANGED

    def test_drift_repaired_from_stripe(self, seed_data, gateway):
        record = make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.return_value = provider_sub(
            status="canceled", cancel_at_period_end=True,
        )

        assert reconcile_record(record, gateway) is ReconcileOutcome.UPDATED

        record = store.get_by_user(seed_data["user_id"])
        assert record.status == "canceled"
        assert record.cancel_at_period_end is True

    def test_missing_marks_canceled(self, seed_data, gateway):
        record = make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.side_effect = SubscriptionMissing()

        assert reconcile_record(record, gateway) is ReconcileOutcome.MISSING
        assert store.get_by_user(seed_data["user_id"]).status == "canceled"

    def test_unavailable_leaves_record(self, seed_data, gateway):
        record = make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.side_effect = ProviderUnavailable()

        assert reconcile_record(record, gateway) is ReconcileOutcome.UNAVAILABLE
        assert store.get_by_user(seed_data["user_id"]).status == "active"

    def test_orphan(self, seed_data, gateway):
        record = make_subscription(seed_data["user_id"], stripe_subscription_id=None)

        assert reconcile_record(record, gateway) is ReconcileOutcome.ORPHAN
        gateway.retrieve_subscription.assert_not_called()


class TestGetSubscriptionStatus:

    def test_no_record(self, seed_data, gateway):
        result = get_subscription_status(seed_data["user_id"], gateway)

        assert result == {"hasActiveSubscription": False, "subscription": None}
        gateway.retrieve_subscription.assert_not_called()

    def test_drift_corrected_on_read(self, seed_data, gateway):
        make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.return_value = provider_sub(status="canceled")

        result = get_subscription_status(seed_data["user_id"], gateway)

        assert result["hasActiveSubscription"] is False
        assert result["subscription"]["status"] == "canceled"

    def test_stripe_unavailable_serves_local(self, seed_data, gateway):
        make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.side_effect = ProviderUnavailable()

        result = get_subscription_status(seed_data["user_id"], gateway)

        assert result["hasActiveSubscription"] is True
        assert result["subscription"]["id"] == "sub_test_001"
        assert result["subscription"]["current_period_end"] == PERIOD_END.isoformat()

    def test_cancel_period_ended_reports_inactive(self, seed_data, gateway):
        end = datetime(2025, 1, 1, tzinfo=timezone.utc)
        make_subscription(seed_data["user_id"], cancel_at_period_end=True, current_period_end=end)
        gateway.retrieve_subscription.return_value = provider_sub(
            cancel_at_period_end=True, current_period_end=end,
        )

        result = get_subscription_status(
            seed_data["user_id"], gateway, now=datetime(2025, 1, 2, tzinfo=timezone.utc),
        )

        assert result["hasActiveSubscription"] is False
        assert result["subscription"]["status"] == "active"


class TestSweep:

    def test_sweep_counts_and_removes(self, seed_data, gateway):
        from billsync.extensions import db
        from billsync.models.user import User

        users = [User(email=f"sweep{i}@example.com") for i in range(2)]
        db.session.add_all(users)
        db.session.commit()

        make_subscription(seed_data["user_id"], "sub_live")
        make_subscription(users[0].id, "sub_gone")
        make_subscription(users[1].id, stripe_subscription_id=None)

        def retrieve(sub_id):
            if sub_id == "sub_gone":
                raise SubscriptionMissing()
            return provider_sub(sub_id, status="past_due")

        gateway.retrieve_subscription.side_effect = retrieve

        result = sweep_subscriptions(gateway)

        assert result == {"synced": 1, "removed": 2}
        remaining = store.list_all()
        assert [r.stripe_subscription_id for r in remaining] == ["sub_live"]
        assert remaining[0].status == "past_due"

    def test_sweep_skips_unavailable(self, seed_data, gateway):
        make_subscription(seed_data["user_id"])
        gateway.retrieve_subscription.side_effect = ProviderUnavailable()

        assert sweep_subscriptions(gateway) == {"synced": 0, "removed": 0}
        assert len(store.list_all()) == 1
