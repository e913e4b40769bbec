from models.db import db
from utils.timeutil import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    identity = db.Column(db.String(128), nullable=True)  # nullable for sweeps and webhooks
    action = db.Column(db.String(80), nullable=False)  # e.g. BOOKING_HOLD, BOOKING_CANCEL
    entity = db.Column(db.String(80), nullable=True)   # e.g. reservation, resource
    entity_id = db.Column(db.String(80), nullable=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
