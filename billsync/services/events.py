"""Typed webhook events.

Each handled Stripe event type decodes once, at the boundary, into one of
the dataclasses below. Handlers read typed fields and never touch the raw
payload dict.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from billsync.errors import DecodeFailure
from billsync.timeutils import from_timestamp


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    created_at: datetime
    session_id: str
    mode: Optional[str]
    client_reference_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionChanged:
    """customer.subscription.updated / customer.subscription.deleted."""

    event_id: str
    created_at: datetime
    deleted: bool
    subscription_id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool


@dataclass(frozen=True)
class TrialWillEnd:
    event_id: str
    created_at: datetime
    subscription_id: str
    customer_id: Optional[str]
    trial_end: Optional[datetime]


@dataclass(frozen=True)
class InvoiceEvent:
    """invoice.paid / invoice.payment_failed / invoice.upcoming."""

    event_id: str
    created_at: datetime
    kind: str
    invoice_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount_due: Optional[int]
    amount_paid: Optional[int]


@dataclass(frozen=True)
class PaymentIntentEvent:
    event_id: str
    created_at: datetime
    succeeded: bool
    payment_intent_id: str
    customer_id: Optional[str]
    amount: Optional[int]
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class DisputeCreated:
    event_id: str
    created_at: datetime
    dispute_id: str
    charge_id: Optional[str]
    amount: Optional[int]
    reason: Optional[str]


# ──────────────────────────────────────────────
# Payload helpers
# ──────────────────────────────────────────────

def _ref(value):
    """Expandable fields arrive as an ID string or as the expanded object."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    raise DecodeFailure(detail=f"unexpected reference value {value!r}")


def _require(obj, key):
    value = obj.get(key)
    if not value:
        raise DecodeFailure(detail=f"missing {key}")
    return value


def _timestamp(obj, key):
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise DecodeFailure(detail=f"{key} is not a unix timestamp")
    return from_timestamp(value)


def _amount(obj, key):
    value = obj.get(key)
    if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
        raise DecodeFailure(detail=f"{key} is not an integer amount")
    return value


def _first_item(obj):
    items = obj.get("items") or {}
    if not isinstance(items, dict):
        raise DecodeFailure(detail="items is not a list object")
    data = items.get("data") or []
    if not data:
        return {}
    if not isinstance(data[0], dict):
        raise DecodeFailure(detail="subscription item is not an object")
    return data[0]


def _period_end(obj):
    # Newer API versions carry the period on the subscription item
    end = _timestamp(obj, "current_period_end")
    if end is None:
        end = _timestamp(_first_item(obj), "current_period_end")
    return end


def _price_id(obj):
    return _ref(_first_item(obj).get("price"))


def _invoice_subscription(obj):
    sub_id = _ref(obj.get("subscription"))
    if sub_id:
        return sub_id
    # Newer API versions moved it under parent.subscription_details
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref(details.get("subscription"))


# ──────────────────────────────────────────────
# Decoders
# ──────────────────────────────────────────────

def _decode_checkout(event_id, created_at, obj):
    subscription = obj.get("subscription")
    price_id = None
    period_end = None
    if isinstance(subscription, dict):
        price_id = _price_id(subscription)
        period_end = _period_end(subscription)
    return CheckoutCompleted(
        event_id=event_id,
        created_at=created_at,
        session_id=_require(obj, "id"),
        mode=obj.get("mode"),
        client_reference_id=obj.get("client_reference_id"),
        customer_id=_ref(obj.get("customer")),
        subscription_id=_ref(subscription),
        price_id=price_id,
        current_period_end=period_end,
    )


def _decode_subscription(deleted):
    def decode(event_id, created_at, obj):
        return SubscriptionChanged(
            event_id=event_id,
            created_at=created_at,
            deleted=deleted,
            subscription_id=_require(obj, "id"),
            customer_id=_ref(obj.get("customer")),
            status=_require(obj, "status"),
            price_id=_price_id(obj),
            current_period_end=_period_end(obj),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        )
    return decode


def _decode_trial_will_end(event_id, created_at, obj):
    return TrialWillEnd(
        event_id=event_id,
        created_at=created_at,
        subscription_id=_require(obj, "id"),
        customer_id=_ref(obj.get("customer")),
        trial_end=_timestamp(obj, "trial_end"),
    )


def _decode_invoice(kind):
    def decode(event_id, created_at, obj):
        return InvoiceEvent(
            event_id=event_id,
            created_at=created_at,
            kind=kind,
            # Upcoming invoices have no id yet
            invoice_id=obj.get("id"),
            customer_id=_ref(obj.get("customer")),
            subscription_id=_invoice_subscription(obj),
            amount_due=_amount(obj, "amount_due"),
            amount_paid=_amount(obj, "amount_paid"),
        )
    return decode


def _decode_payment_intent(succeeded):
    def decode(event_id, created_at, obj):
        error = obj.get("last_payment_error") or {}
        return PaymentIntentEvent(
            event_id=event_id,
            created_at=created_at,
            succeeded=succeeded,
            payment_intent_id=_require(obj, "id"),
            customer_id=_ref(obj.get("customer")),
            amount=_amount(obj, "amount"),
            failure_message=error.get("message") if isinstance(error, dict) else None,
        )
    return decode


def _decode_dispute(event_id, created_at, obj):
    return DisputeCreated(
        event_id=event_id,
        created_at=created_at,
        dispute_id=_require(obj, "id"),
        charge_id=_ref(obj.get("charge")),
        amount=_amount(obj, "amount"),
        reason=obj.get("reason"),
    )


DECODERS = {
    "checkout.session.completed": _decode_checkout,
    "customer.subscription.updated": _decode_subscription(deleted=False),
    "customer.subscription.deleted": _decode_subscription(deleted=True),
    "customer.subscription.trial_will_end": _decode_trial_will_end,
    "invoice.paid": _decode_invoice("paid"),
    "invoice.payment_failed": _decode_invoice("payment_failed"),
    "invoice.upcoming": _decode_invoice("upcoming"),
    "payment_intent.succeeded": _decode_payment_intent(succeeded=True),
    "payment_intent.payment_failed": _decode_payment_intent(succeeded=False),
    "charge.dispute.created": _decode_dispute,
}


def decode_event(verified):
    """Decode a VerifiedEvent into its typed variant.

    Returns None for event types the engine does not handle.
    Raises DecodeFailure when the payload does not have the expected shape.
    """
    decoder = DECODERS.get(verified.event_type)
    if decoder is None:
        return None

    obj = verified.payload
    if not isinstance(obj, dict):
        raise DecodeFailure(detail=f"{verified.event_type} payload is not an object")

    try:
        return decoder(verified.event_id, verified.created_at, obj)
    except DecodeFailure:
        raise
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise DecodeFailure(detail=f"{verified.event_type}: {e}") from e
