# Import all models here so Alembic can discover them.

from billsync.models.user import User  # noqa: F401
from billsync.models.billing import PaymentProfile, SubscriptionRecord  # noqa: F401
from billsync.models.stripe_event import ProcessedEvent  # noqa: F401
from billsync.models.audit import AuditEvent  # noqa: F401
