"""Tests for webhook signature verification and typed event decoding.

Covers:
- Valid signatures accepted (str and bytes payloads)
- Missing header, wrong secret, stale timestamp rejected
- Non-JSON and id-less envelopes rejected
- Each handled event type decodes into its typed variant
- Malformed payloads raise DecodeFailure; unknown types decode to None
"""

import json
import time
from datetime import datetime, timezone

import pytest

from billsync.errors import DecodeFailure, InvalidSignature
from billsync.services.events import (
    CheckoutCompleted,
    DisputeCreated,
    InvoiceEvent,
    PaymentIntentEvent,
    SubscriptionChanged,
    decode_event,
)
from billsync.services.webhook_service import VerifiedEvent, verify_and_decode

from conftest import PERIOD_END, WEBHOOK_SECRET, event_body, sign_payload, stripe_subscription_payload

CREATED = datetime(2026, 4, 1, 9, 30, tzinfo=timezone.utc)


def _verified(event_type, payload, event_id="evt_001"):
    return VerifiedEvent(event_id=event_id, event_type=event_type,
                         payload=payload, created_at=CREATED)


class TestVerifyAndDecode:

    def test_valid_signature(self):
        body = event_body("evt_001", "invoice.paid", {"id": "in_1"},
                          created=int(CREATED.timestamp()))

        event = verify_and_decode(body, sign_payload(body), WEBHOOK_SECRET)

        assert event.event_id == "evt_001"
        assert event.event_type == "invoice.paid"
        assert event.payload == {"id": "in_1"}
        assert event.created_at == CREATED

    def test_bytes_payload(self):
        body = event_body("evt_001", "invoice.paid", {"id": "in_1"})

        event = verify_and_decode(body.encode("utf-8"), sign_payload(body), WEBHOOK_SECRET)

        assert event.event_id == "evt_001"

    def test_missing_header(self):
        body = event_body("evt_001", "invoice.paid", {})
        with pytest.raises(InvalidSignature):
            verify_and_decode(body, None, WEBHOOK_SECRET)

    def test_wrong_secret(self):
        body = event_body("evt_001", "invoice.paid", {})
        with pytest.raises(InvalidSignature):
            verify_and_decode(body, sign_payload(body, secret="whsec_other"), WEBHOOK_SECRET)

    def test_tampered_body(self):
        body = event_body("evt_001", "invoice.paid", {"amount_paid": 100})
        header = sign_payload(body)
        tampered = body.replace("100", "1")
        with pytest.raises(InvalidSignature):
            verify_and_decode(tampered, header, WEBHOOK_SECRET)

    def test_stale_timestamp(self):
        body = event_body("evt_001", "invoice.paid", {})
        header = sign_payload(body, timestamp=int(time.time()) - 3600)
        with pytest.raises(InvalidSignature):
            verify_and_decode(body, header, WEBHOOK_SECRET, tolerance=300)

    def test_non_json_body(self):
        body = "not json at all"
        with pytest.raises(InvalidSignature):
            verify_and_decode(body, sign_payload(body), WEBHOOK_SECRET)

    def test_envelope_without_id(self):
        body = json.dumps({"type": "invoice.paid", "data": {"object": {}}})
        with pytest.raises(InvalidSignature):
            verify_and_decode(body, sign_payload(body), WEBHOOK_SECRET)

    def test_missing_created_defaults_to_now(self):
        body = json.dumps({"id": "evt_001", "type": "invoice.paid", "data": {"object": {}}})

        event = verify_and_decode(body, sign_payload(body), WEBHOOK_SECRET)

        assert event.created_at.tzinfo is not None


class TestDecodeEvent:

    def test_unknown_type_is_none(self):
        assert decode_event(_verified("customer.created", {"id": "cus_1"})) is None

    def test_checkout_with_expanded_subscription(self):
        payload = {
            "id": "cs_1",
            "mode": "subscription",
            "client_reference_id": "user-1",
            "customer": "cus_1",
            "subscription": stripe_subscription_payload("sub_1"),
        }

        event = decode_event(_verified("checkout.session.completed", payload))

        assert isinstance(event, CheckoutCompleted)
        assert event.subscription_id == "sub_1"
        assert event.price_id == "price_monthly_test"
        assert event.current_period_end == PERIOD_END

    def test_checkout_with_subscription_id(self):
        payload = {"id": "cs_1", "mode": "payment", "customer": {"id": "cus_1"},
                   "subscription": None}

        event = decode_event(_verified("checkout.session.completed", payload))

        assert event.customer_id == "cus_1"
        assert event.subscription_id is None
        assert event.mode == "payment"

    def test_subscription_deleted(self):
        payload = stripe_subscription_payload("sub_1", status="canceled")

        event = decode_event(_verified("customer.subscription.deleted", payload))

        assert isinstance(event, SubscriptionChanged)
        assert event.deleted is True
        assert event.status == "canceled"
        assert event.created_at == CREATED

    def test_invoice_subscription_from_parent(self):
        payload = {
            "id": "in_1",
            "customer": "cus_1",
            "amount_due": 1500,
            "amount_paid": 1500,
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        }

        event = decode_event(_verified("invoice.paid", payload))

        assert isinstance(event, InvoiceEvent)
        assert event.kind == "paid"
        assert event.subscription_id == "sub_1"

    def test_payment_intent_failure_message(self):
        payload = {"id": "pi_1", "amount": 1500,
                   "last_payment_error": {"message": "Your card was declined."}}

        event = decode_event(_verified("payment_intent.payment_failed", payload))

        assert isinstance(event, PaymentIntentEvent)
        assert event.succeeded is False
        assert event.failure_message == "Your card was declined."

    def test_dispute(self):
        payload = {"id": "dp_1", "charge": "ch_1", "amount": 1500, "reason": "fraudulent"}

        event = decode_event(_verified("charge.dispute.created", payload))

        assert isinstance(event, DisputeCreated)
        assert event.charge_id == "ch_1"

    def test_non_object_payload(self):
        with pytest.raises(DecodeFailure):
            decode_event(_verified("invoice.paid", ["not", "an", "object"]))

    def test_subscription_missing_status(self):
        payload = stripe_subscription_payload("sub_1")
        del payload["status"]
        with pytest.raises(DecodeFailure):
            decode_event(_verified("customer.subscription.updated", payload))

    def test_bad_timestamp(self):
        payload = stripe_subscription_payload("sub_1")
        payload["current_period_end"] = "tomorrow"
        with pytest.raises(DecodeFailure):
            decode_event(_verified("customer.subscription.updated", payload))

    def test_bad_amount(self):
        with pytest.raises(DecodeFailure):
            decode_event(_verified("invoice.paid", {"id": "in_1", "amount_due": "15.00"}))
