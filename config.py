import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as bookings.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "bookings.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Shared secret presented by the auth gateway in X-Auth-Gateway-Key.
    # Unset means identity headers are trusted as-is (local development only)
    AUTH_GATEWAY_SECRET = os.getenv("AUTH_GATEWAY_SECRET")

    # Booking lifecycle
    HOLD_TTL_MINUTES = int(os.getenv("HOLD_TTL_MINUTES", "10"))
    TOKEN_TTL_HOURS = int(os.getenv("TOKEN_TTL_HOURS", str(24 * 30)))
    WAITLIST_OFFER_MINUTES = int(os.getenv("WAITLIST_OFFER_MINUTES", "120"))
    AVAILABILITY_MAX_DAYS = int(os.getenv("AVAILABILITY_MAX_DAYS", "62"))
    # Stripe checkout session lifetime; the hold is extended to match
    CHECKOUT_TTL_MINUTES = int(os.getenv("CHECKOUT_TTL_MINUTES", "35"))

    # Simple rate limit for hold creation (per identity, falls back to IP)
    HOLD_RATE_WINDOW_SECONDS = 60      # window size
    HOLD_RATE_MAX_REQUESTS = int(os.getenv("HOLD_RATE_MAX_REQUESTS", "20"))

    # Links and calendar invites
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL")
    ORGANIZATION_NAME = os.getenv("ORGANIZATION_NAME", "Studio Bookings")
    CALENDAR_DOMAIN = os.getenv("CALENDAR_DOMAIN")

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Notifications go out on a small thread pool; false sends inline
    NOTIFY_ASYNC = os.getenv("NOTIFY_ASYNC", "true").lower() == "true"
    NOTIFY_WORKERS = int(os.getenv("NOTIFY_WORKERS", "2"))

    # Stripe keys are read from the environment at call time:
    # STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, STRIPE_SUCCESS_URL, STRIPE_CANCEL_URL

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False
