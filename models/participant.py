from models.db import db
from utils.timeutil import utcnow

REGISTERED = "registered"
CONFIRMED = "confirmed"
WAITLISTED = "waitlisted"
CANCELLED = "cancelled"

SEATED_STATUSES = (REGISTERED, CONFIRMED)


class Participant(db.Model):
    __tablename__ = "participants"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=False, index=True)

    identity = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=REGISTERED)
    # status values: registered, confirmed, waitlisted, cancelled

    # FIFO key for promotion; ties broken by id
    waitlisted_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
