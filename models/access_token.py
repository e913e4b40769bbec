from models.db import db
from utils.timeutil import utcnow

PURPOSES = ("reschedule", "cancel", "magic_link")


class AccessToken(db.Model):
    __tablename__ = "access_tokens"

    id = db.Column(db.Integer, primary_key=True)

    # store only hashed token in DB (never store raw token)
    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)
    purpose = db.Column(db.String(32), nullable=False)
    subject_reference = db.Column(db.String(128), nullable=False, index=True)  # e.g. reservation:42

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    used = db.Column(db.Boolean, default=False, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    # set when the token was voided rather than redeemed, e.g. booking_cancelled
    revoked_reason = db.Column(db.String(32), nullable=True)
