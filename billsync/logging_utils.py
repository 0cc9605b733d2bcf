"""
Logging helpers: correlation ids and identifier masking.

The correlation id lives in a ContextVar so it follows the request thread
and is restored explicitly by webhook workers before each job.
"""

import logging
import re
import uuid
from contextvars import ContextVar

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

_EMAIL_RE = re.compile(r"([a-zA-Z0-9._%+-]+)@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
_STRIPE_ID_RE = re.compile(r"\b(cus|sub|pm|pi|seti|in|ch|dp|evt)_([a-zA-Z0-9]+)\b")

LOG_FORMAT = "%(asctime)s %(levelname)s [cid=%(correlation_id)s] %(name)s: %(message)s"


def new_correlation_id():
    return str(uuid.uuid4())


def set_correlation_id(correlation_id=None):
    """Set the correlation id for the current context, generating one if empty."""
    correlation_id = correlation_id or new_correlation_id()
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id():
    return correlation_id_var.get("")


def mask_email(email):
    """user@example.com -> u***r@example.com"""
    if not email:
        return ""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***@***"
    if len(local) <= 2:
        return f"*@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


def mask_stripe_id(stripe_id):
    """cus_1234567890abcdef -> cus_***cdef"""
    if not stripe_id:
        return ""
    prefix, sep, suffix = stripe_id.partition("_")
    if not sep or "_" in suffix:
        return "***"
    if len(suffix) <= 4:
        return f"{prefix}_***"
    return f"{prefix}_***{suffix[-4:]}"


def mask_pii(text):
    """Mask e-mail addresses and Stripe object ids inside free text."""
    text = _EMAIL_RE.sub(lambda m: mask_email(m.group(0)), text)
    return _STRIPE_ID_RE.sub(lambda m: mask_stripe_id(m.group(0)), text)


class CorrelationFilter(logging.Filter):
    """Stamp correlation_id on every record and mask identifiers in the message."""

    def __init__(self, mask=True):
        super().__init__()
        self.mask = mask

    def filter(self, record):
        record.correlation_id = correlation_id_var.get("") or "-"
        if self.mask:
            message = record.getMessage()
            masked = mask_pii(message)
            if masked != message:
                record.msg = masked
                record.args = None
        return True


def configure_logging(level=logging.INFO, mask=True):
    """Attach a correlation-aware handler to the root logger (idempotent)."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers:
        if getattr(handler, "_billsync", False):
            return root_logger

    handler = logging.StreamHandler()
    handler._billsync = True
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationFilter(mask=mask))
    root_logger.addHandler(handler)
    return root_logger
