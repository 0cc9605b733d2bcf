"""Stripe gateway — every call the engine makes to Stripe goes through here.

Responsible for:
- Deterministic idempotency keys on mutating calls, so a retry after a
  timeout returns the original object instead of creating a second one
- Translating Stripe SDK errors into the billing error taxonomy
- Returning plain data (ProviderSubscription, dicts) instead of SDK objects
- Verifying cancellations before reporting success
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Optional

import stripe

from billsync.errors import (
    CancellationUnconfirmed,
    ProviderRequestError,
    ProviderUnavailable,
    SubscriptionMissing,
)
from billsync.timeutils import from_timestamp

logger = logging.getLogger(__name__)

# A replayed create pointing at one of these must not be reported as new
TERMINAL_STATUSES = ("canceled", "incomplete_expired")


# ──────────────────────────────────────────────
# Idempotency keys
# ──────────────────────────────────────────────

def customer_create_key(user_id):
    return f"customer-create:{user_id}"


def subscription_create_key(user_id, customer_id, price_id):
    return f"sub-create:{user_id}:{customer_id}:{price_id}"


def subscription_cancel_key(subscription_id, day):
    return f"sub-cancel:{subscription_id}:{day.isoformat()}"


def promotion_apply_key(subscription_id, promotion_code_id):
    return f"promo-apply:{subscription_id}:{promotion_code_id}"


# ──────────────────────────────────────────────
# Stripe object helpers
# ──────────────────────────────────────────────

def _to_dict(obj):
    """Plain-dict view of a Stripe object (or a dict passed through)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    for name in ("to_dict_recursive", "to_dict"):
        method = getattr(obj, name, None)
        if callable(method):
            return method()
    return dict(obj)


def _id_of(value):
    """Expandable fields arrive as an ID string or as the expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _to_dict(value).get("id")


def _list_data(result):
    return list(_to_dict(result).get("data") or [])


def extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a timezone-aware datetime or None.
    """
    ts = sub_data.get("current_period_end")

    if not ts:
        items = sub_data.get("items")
        if items and items.get("data"):
            ts = items["data"][0].get("current_period_end")

    return from_timestamp(ts)


def _first_item(sub_data):
    items = sub_data.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else {}


def _is_idempotent_replay(obj):
    last_response = getattr(obj, "last_response", None)
    headers = getattr(last_response, "headers", None) or {}
    value = headers.get("Idempotent-Replayed") or headers.get("idempotent-replayed")
    return str(value).lower() == "true"


@dataclass
class ProviderSubscription:
    """The fields of a Stripe subscription the engine mirrors locally."""

    id: str
    status: str
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    item_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    payment_intent_client_secret: Optional[str] = None
    replayed: bool = False

    @classmethod
    def from_stripe(cls, obj):
        data = _to_dict(obj)
        item = _first_item(data)
        price = item.get("price")

        client_secret = None
        invoice = data.get("latest_invoice")
        if isinstance(invoice, dict):
            intent = invoice.get("payment_intent")
            if isinstance(intent, dict):
                client_secret = intent.get("client_secret")

        return cls(
            id=data.get("id"),
            status=data.get("status") or "incomplete",
            customer_id=_id_of(data.get("customer")),
            price_id=_id_of(price),
            item_id=item.get("id"),
            current_period_end=extract_period_end(data),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            payment_intent_client_secret=client_secret,
            replayed=_is_idempotent_replay(obj),
        )

    def local_fields(self):
        """Columns of SubscriptionRecord that mirror this subscription."""
        return {
            "status": self.status,
            "current_period_end": self.current_period_end,
            "cancel_at_period_end": self.cancel_at_period_end,
        }


@contextmanager
def _stripe_call(operation, missing_error=None):
    """Map Stripe SDK exceptions onto the billing error taxonomy."""
    try:
        yield
    except stripe.InvalidRequestError as e:
        code = getattr(e, "code", None)
        if code == "resource_missing" and missing_error is not None:
            raise missing_error(detail=getattr(e, "user_message", None) or str(e)) from e
        logger.warning(f"Stripe rejected {operation}: {e}")
        raise ProviderRequestError(
            detail=getattr(e, "user_message", None) or str(e), code=code
        ) from e
    except stripe.CardError as e:
        logger.warning(f"Stripe card error during {operation}: {e}")
        raise ProviderRequestError(
            detail=getattr(e, "user_message", None) or str(e),
            code=getattr(e, "code", None),
        ) from e
    except stripe.StripeError as e:
        # Connection, rate-limit, authentication and 5xx errors
        logger.error(f"Stripe unavailable during {operation}: {e}")
        raise ProviderUnavailable(detail=str(e)) from e


class StripeGateway:
    """Thin call surface over the Stripe API, bound to one secret key."""

    def __init__(self, api_key):
        self.api_key = api_key

    # ── Customers ──

    def find_customer_for_user(self, email, user_id):
        """Return the Stripe customer with this email whose metadata.user_id matches."""
        with _stripe_call("customer lookup"):
            result = stripe.Customer.list(email=email, limit=10, api_key=self.api_key)

        for customer in _list_data(result):
            customer = _to_dict(customer)
            meta_user_id = (customer.get("metadata") or {}).get("user_id")
            if meta_user_id == user_id:
                return customer
            if meta_user_id:
                logger.warning(
                    f"Customer {customer.get('id')} shares email but belongs to "
                    f"user {meta_user_id}, expected {user_id}"
                )
        return None

    def create_customer(self, user_id, email, name=None, student_id=None):
        metadata = {"user_id": user_id}
        if student_id:
            metadata["student_id"] = student_id
        with _stripe_call("customer create"):
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata=metadata,
                idempotency_key=customer_create_key(user_id),
                api_key=self.api_key,
            )
        return _to_dict(customer)

    def update_customer(self, customer_id, **params):
        with _stripe_call("customer update"):
            customer = stripe.Customer.modify(customer_id, api_key=self.api_key, **params)
        return _to_dict(customer)

    # ── Payment methods ──

    def create_setup_intent(self, customer_id):
        with _stripe_call("setup intent create"):
            intent = stripe.SetupIntent.create(
                customer=customer_id, usage="off_session", api_key=self.api_key
            )
        return _to_dict(intent).get("client_secret")

    def attach_payment_method(self, payment_method_id, customer_id):
        """Attach a payment method; one that is already attached counts as success."""
        try:
            with _stripe_call("payment method attach"):
                stripe.PaymentMethod.attach(
                    payment_method_id, customer=customer_id, api_key=self.api_key
                )
        except ProviderRequestError as e:
            text = f"{e.detail or ''}".lower()
            if (e.code == "resource_already_exists"
                    or "already attached" in text or "already exists" in text):
                logger.warning(f"Payment method {payment_method_id} already attached, continuing")
                return False
            raise
        return True

    def set_default_payment_method(self, customer_id, payment_method_id):
        return self.update_customer(
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    def list_card_payment_methods(self, customer_id):
        with _stripe_call("payment method list"):
            result = stripe.PaymentMethod.list(
                customer=customer_id, type="card", api_key=self.api_key
            )
        return [_to_dict(pm) for pm in _list_data(result)]

    def detach_payment_method(self, payment_method_id):
        with _stripe_call("payment method detach"):
            stripe.PaymentMethod.detach(payment_method_id, api_key=self.api_key)

    # ── Subscriptions ──

    def create_subscription(self, user_id, customer_id, price_id):
        """Create a subscription that errors instead of staying incomplete.

        The idempotency key is built from user, customer and price, so a
        retried call returns the subscription created by the first attempt.
        A replayed response is re-fetched: if that subscription has since
        ended, one more create is made under a key derived from the ended
        subscription, so the re-subscribe is still safe to retry.
        """
        key = subscription_create_key(user_id, customer_id, price_id)
        sub = self._create_subscription(customer_id, price_id, key)
        if not sub.replayed:
            return sub

        current = self._refetch_replayed_create(sub)
        if current.status not in TERMINAL_STATUSES:
            return replace(current, payment_intent_client_secret=sub.payment_intent_client_secret)

        logger.warning(
            f"Replayed create returned ended subscription {sub.id} "
            f"({current.status}), creating a new one"
        )
        sub = self._create_subscription(customer_id, price_id, f"{key}:after:{sub.id}")
        if not sub.replayed:
            return sub

        current = self._refetch_replayed_create(sub)
        if current.status in TERMINAL_STATUSES:
            logger.error(
                f"Replayed create for user {user_id} returned ended subscription "
                f"{sub.id} ({current.status})"
            )
            raise ProviderRequestError(
                "Subscription could not be created. Please try again later.",
                detail=f"replayed subscription {sub.id} is {current.status}",
                code="stale_idempotent_replay",
            )
        return replace(current, payment_intent_client_secret=sub.payment_intent_client_secret)

    def _create_subscription(self, customer_id, price_id, idempotency_key):
        with _stripe_call("subscription create"):
            sub = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="error_if_incomplete",
                expand=["latest_invoice.payment_intent"],
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        return ProviderSubscription.from_stripe(sub)

    def _refetch_replayed_create(self, sub):
        logger.info(f"Create for {sub.id} was an idempotent replay, re-fetching")
        try:
            return self.retrieve_subscription(sub.id)
        except SubscriptionMissing:
            return ProviderSubscription(id=sub.id, status="canceled")

    def retrieve_subscription(self, subscription_id):
        """Raises SubscriptionMissing if Stripe no longer has it."""
        with _stripe_call("subscription retrieve", missing_error=SubscriptionMissing):
            sub = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        return ProviderSubscription.from_stripe(sub)

    def cancel_at_period_end(self, subscription_id, today=None):
        """Schedule cancellation and confirm Stripe actually recorded it.

        If the update response does not show cancel_at_period_end (or is a
        replay of an earlier request), re-fetch once. A replay whose
        subscription was resumed since gets one more update without an
        idempotency key. Still unset means the cancellation is unconfirmed
        and the caller must not report success.
        """
        today = today or date.today()
        logger.info(f"Initiating cancellation for subscription {subscription_id}")
        with _stripe_call("subscription cancel", missing_error=SubscriptionMissing):
            result = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                idempotency_key=subscription_cancel_key(subscription_id, today),
                api_key=self.api_key,
            )
        sub = ProviderSubscription.from_stripe(result)

        if sub.cancel_at_period_end and not sub.replayed:
            return sub

        logger.warning(
            f"Cancel flag not confirmed for {subscription_id} "
            f"(replayed={sub.replayed}), re-fetching"
        )
        replayed = sub.replayed
        sub = self.retrieve_subscription(subscription_id)
        if not sub.cancel_at_period_end and replayed:
            logger.warning(
                f"Replayed cancel for {subscription_id} is stale, updating without key"
            )
            with _stripe_call("subscription cancel", missing_error=SubscriptionMissing):
                result = stripe.Subscription.modify(
                    subscription_id, cancel_at_period_end=True, api_key=self.api_key
                )
            sub = ProviderSubscription.from_stripe(result)
        if not sub.cancel_at_period_end:
            logger.critical(
                f"CRITICAL: cancellation of {subscription_id} failed, "
                f"cancel_at_period_end is still false"
            )
            raise CancellationUnconfirmed()
        return sub

    def resume_subscription(self, subscription_id, new_price_id=None):
        """Clear a scheduled cancellation, optionally switching the first item's price."""
        current = self.retrieve_subscription(subscription_id)
        params = {"cancel_at_period_end": False}
        if new_price_id and new_price_id != current.price_id and current.item_id:
            params["items"] = [{"id": current.item_id, "price": new_price_id}]

        with _stripe_call("subscription resume", missing_error=SubscriptionMissing):
            sub = stripe.Subscription.modify(
                subscription_id, api_key=self.api_key, **params
            )
        return ProviderSubscription.from_stripe(sub)

    def cancel_now(self, subscription_id):
        with _stripe_call("subscription cancel now", missing_error=SubscriptionMissing):
            sub = stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
        return ProviderSubscription.from_stripe(sub)

    # ── Promotions ──

    def find_promotion_code(self, code, customer_id):
        """First active promotion code usable by this customer, or None."""
        with _stripe_call("promotion code lookup"):
            result = stripe.PromotionCode.list(code=code, active=True, api_key=self.api_key)

        for promo in _list_data(result):
            promo = _to_dict(promo)
            restricted_to = _id_of(promo.get("customer"))
            if restricted_to and restricted_to != customer_id:
                logger.info(
                    f"Promotion code {promo.get('id')} is restricted to another customer"
                )
                continue
            return promo
        return None

    def apply_promotion_code(self, subscription_id, promotion_code_id):
        with _stripe_call("promotion apply", missing_error=SubscriptionMissing):
            sub = stripe.Subscription.modify(
                subscription_id,
                promotion_code=promotion_code_id,
                idempotency_key=promotion_apply_key(subscription_id, promotion_code_id),
                api_key=self.api_key,
            )
        return ProviderSubscription.from_stripe(sub)

    # ── Invoices ──

    def list_invoices(self, customer_id, limit=100):
        with _stripe_call("invoice list"):
            result = stripe.Invoice.list(
                customer=customer_id, limit=limit, api_key=self.api_key
            )
        return [_to_dict(inv) for inv in _list_data(result)]
