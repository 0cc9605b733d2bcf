"""Billing error taxonomy.

Every error carries the HTTP status and a message that is safe to show a
user. Provider error text is kept on ``detail`` and only appended to the
public message when EXPOSE_PROVIDER_ERRORS is on.
"""


class BillingError(Exception):
    status_code = 500
    message = "Billing request failed"

    def __init__(self, message=None, detail=None):
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.detail = detail

    def to_dict(self, expose_detail=False):
        message = self.message
        if expose_detail and self.detail:
            message = f"{message}: {self.detail}"
        return {"error": message}


class InvalidSignature(BillingError):
    status_code = 400
    message = "Webhook signature verification failed"


class DecodeFailure(BillingError):
    """A verified event whose payload does not match its declared type."""

    status_code = 400
    message = "Event payload could not be decoded"


class LedgerUnavailable(BillingError):
    status_code = 500
    message = "Failed to record event"


class ProviderUnavailable(BillingError):
    """Transient Stripe failure (network, rate limit, 5xx)."""

    status_code = 503
    message = "Payment provider is temporarily unavailable"


class ProviderRequestError(BillingError):
    """Stripe rejected the request itself."""

    status_code = 400
    message = "Payment provider rejected the request"

    def __init__(self, message=None, detail=None, code=None):
        super().__init__(message, detail)
        self.code = code


class SubscriptionMissing(BillingError):
    """Stripe no longer knows the subscription (resource_missing)."""

    status_code = 404
    message = "Subscription not found at payment provider"


class CancellationUnconfirmed(BillingError):
    status_code = 500
    message = "Cancellation could not be confirmed. Please contact support."


class DataInconsistency(BillingError):
    """Local and provider identity fields disagree; needs manual review."""

    status_code = 409
    message = "Billing data inconsistency detected. Please contact support."


class NotFound(BillingError):
    status_code = 404
    message = "Not found"


class InvalidRequest(BillingError):
    status_code = 400
    message = "Invalid request"
