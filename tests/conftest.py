"""Shared test fixtures for the billsync test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off,
  webhook workers off so events are processed inline)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- engine: the app's BillingEngine
- gateway: a mock StripeGateway swapped into the engine for the test
- seed_data: a regular user and an admin user
- login: log the test client in as a given user
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from billsync import create_app
from billsync.extensions import db as _db
from billsync.models.billing import PaymentProfile, SubscriptionRecord
from billsync.models.user import User
from billsync.services.stripe_gateway import ProviderSubscription, StripeGateway

WEBHOOK_SECRET = "whsec_test_fake"
PERIOD_END = datetime(2026, 12, 31, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def engine(app):
    return app.extensions["billing_engine"]


@pytest.fixture
def gateway(engine):
    """Replace the engine's Stripe gateway with a mock for one test."""
    original = engine.gateway
    mock_gateway = MagicMock(spec=StripeGateway)
    engine.gateway = mock_gateway
    yield mock_gateway
    engine.gateway = original


@pytest.fixture
def seed_data(app, db_session):
    """A regular user and an admin user.

    Returns plain IDs so tests can use them across app contexts.
    """
    user = User(
        email="student@example.com",
        full_name="Test Student",
        student_id="S-1001",
    )
    admin = User(
        email="admin@example.com",
        full_name="Admin User",
        is_admin=True,
    )
    _db.session.add_all([user, admin])
    _db.session.commit()
    return {
        "user_id": user.id,
        "user_email": user.email,
        "admin_id": admin.id,
    }


@pytest.fixture
def login(client):
    """Log the test client in as the given user ID (Flask-Login session)."""

    def _login(user_id):
        with client.session_transaction() as session:
            session["_user_id"] = user_id
            session["_fresh"] = True

    return _login


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def make_profile(user_id, customer_id="cus_test_001", has_payment_method=True):
    profile = PaymentProfile(
        user_id=user_id,
        stripe_customer_id=customer_id,
        has_payment_method=has_payment_method,
    )
    _db.session.add(profile)
    _db.session.commit()
    return profile


def make_subscription(user_id, stripe_subscription_id="sub_test_001", **fields):
    values = {
        "stripe_customer_id": "cus_test_001",
        "status": "active",
        "price_id": "price_monthly_test",
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
    }
    values.update(fields)
    record = SubscriptionRecord(
        user_id=user_id,
        stripe_subscription_id=stripe_subscription_id,
        **values,
    )
    _db.session.add(record)
    _db.session.commit()
    return record


def provider_sub(sub_id="sub_test_001", status="active", **fields):
    values = {
        "customer_id": "cus_test_001",
        "price_id": "price_monthly_test",
        "item_id": "si_test_001",
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
    }
    values.update(fields)
    return ProviderSubscription(id=sub_id, status=status, **values)


def stripe_subscription_payload(sub_id="sub_test_001", status="active",
                                cancel_at_period_end=False, period_end=None,
                                price_id="price_monthly_test"):
    """Subscription object shaped like Stripe's API response."""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_test_001",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {
            "data": [{
                "id": "si_test_001",
                "price": {"id": price_id},
                "current_period_end": period_end or int(PERIOD_END.timestamp()),
            }],
        },
    }


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_body(event_id, event_type, obj, created=None):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": obj},
    })
