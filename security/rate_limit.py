from datetime import timedelta
from typing import Optional

from flask import current_app, g, request

from models import db
from models.rate_limit import RateLimitBucket
from utils.timeutil import utcnow


def _client_ip() -> str:
    return request.headers.get("X-Forwarded-For", request.remote_addr) or "unknown"


def rate_key() -> str:
    identity = getattr(g, "identity", None)
    return f"id:{identity}" if identity else f"ip:{_client_ip()}"


def check_and_increment_rate(scope: str, key: Optional[str] = None) -> tuple[bool, int]:
    """
    Returns (allowed, retry_after_seconds).
    Simple fixed window per (scope, identity or IP).
    """
    key = key or rate_key()
    now = utcnow()

    window_seconds = current_app.config.get(f"{scope}_RATE_WINDOW_SECONDS", 60)
    max_requests = current_app.config.get(f"{scope}_RATE_MAX_REQUESTS", 20)

    row = RateLimitBucket.query.filter_by(scope=scope, key=key).first()
    if not row:
        row = RateLimitBucket(scope=scope, key=key, window_start=now, count=0)
        db.session.add(row)

    window_end = row.window_start + timedelta(seconds=window_seconds)

    # Reset window if expired
    if now >= window_end:
        row.window_start = now
        row.count = 0
        window_end = row.window_start + timedelta(seconds=window_seconds)

    row.count += 1
    db.session.commit()

    if row.count > max_requests:
        retry_after = int((window_end - now).total_seconds())
        return False, max(retry_after, 1)

    return True, 0
