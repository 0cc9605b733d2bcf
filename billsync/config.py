import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    # Seconds a signed webhook timestamp stays valid (replay window).
    STRIPE_WEBHOOK_TOLERANCE = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE", 300))

    # Purchasable prices. Anything else is rejected before hitting Stripe.
    STRIPE_PRICE_ID_MONTHLY = os.environ.get("STRIPE_PRICE_ID_MONTHLY")
    STRIPE_PRICE_ID_YEARLY = os.environ.get("STRIPE_PRICE_ID_YEARLY")
    STRIPE_PRICE_ID_2YEARS = os.environ.get("STRIPE_PRICE_ID_2YEARS")

    # --- Webhook worker pool ---
    WEBHOOK_WORKERS_ENABLED = _env_flag("WEBHOOK_WORKERS_ENABLED", "true")
    WEBHOOK_WORKER_COUNT = int(os.environ.get("WEBHOOK_WORKER_COUNT", 5))
    WEBHOOK_QUEUE_SIZE = int(os.environ.get("WEBHOOK_QUEUE_SIZE", 100))
    WEBHOOK_SHUTDOWN_TIMEOUT = float(os.environ.get("WEBHOOK_SHUTDOWN_TIMEOUT", 30))
    # "inline" processes on the request thread when the queue is full,
    # "drop" logs and leaves the repair to reconciliation.
    WEBHOOK_QUEUE_FULL_POLICY = os.environ.get("WEBHOOK_QUEUE_FULL_POLICY", "inline")

    # --- Idempotency ledger ---
    PROCESSED_EVENT_RETENTION_DAYS = int(
        os.environ.get("PROCESSED_EVENT_RETENTION_DAYS", 30)
    )

    # Append Stripe's error text to user-facing messages.
    EXPOSE_PROVIDER_ERRORS = False

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "STRIPE_PRICE_ID_MONTHLY",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    EXPOSE_PROVIDER_ERRORS = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled, webhooks processed inline."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_PRICE_ID_MONTHLY = "price_monthly_test"
    STRIPE_PRICE_ID_YEARLY = "price_yearly_test"
    STRIPE_PRICE_ID_2YEARS = None
    WEBHOOK_WORKERS_ENABLED = False  # no background threads against SQLite
    WEBHOOK_QUEUE_FULL_POLICY = "inline"
    EXPOSE_PROVIDER_ERRORS = False
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
