from models.db import db
from utils.timeutil import utcnow


class RateLimitBucket(db.Model):
    __tablename__ = "rate_limit_buckets"

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(32), nullable=False)   # e.g. HOLD
    key = db.Column(db.String(160), nullable=False)    # identity or ip

    window_start = db.Column(db.DateTime, nullable=False)
    count = db.Column(db.Integer, default=0, nullable=False)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("scope", "key", name="uq_rate_limit_scope_key"),
    )
