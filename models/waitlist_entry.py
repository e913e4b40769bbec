from models.db import db
from utils.timeutil import utcnow

PENDING = "pending"
NOTIFIED = "notified"
CANCELLED = "cancelled"
EXPIRED = "expired"


class WaitlistEntry(db.Model):
    __tablename__ = "waitlist_entries"

    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.id"), nullable=False, index=True)

    identity = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=True)

    requested_start = db.Column(db.DateTime, nullable=False)
    requested_end = db.Column(db.DateTime, nullable=False)
    capacity = db.Column(db.Integer, nullable=False, default=1)

    status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)
    notified_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)  # offer expiry once notified

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
