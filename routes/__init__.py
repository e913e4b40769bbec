from routes.health import health_bp
from routes.resources import resource_bp
from routes.availability import availability_bp
from routes.bookings import booking_bp
from routes.participants import participant_bp
from routes.waitlist import waitlist_bp
from routes.payments import payments_bp
from routes.stripe_webhook import webhook_bp
from routes.audit_logs import audit_bp

__all__ = [
    "health_bp",
    "resource_bp",
    "availability_bp",
    "booking_bp",
    "participant_bp",
    "waitlist_bp",
    "payments_bp",
    "webhook_bp",
    "audit_bp",
]
