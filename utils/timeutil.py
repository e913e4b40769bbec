from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db(dt: datetime) -> datetime:
    # Aware -> naive UTC for storage
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def from_db(dt):
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc)


def isoformat(dt):
    # Stored values are naive UTC; expose them with an explicit offset
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_instant(value: str) -> datetime:
    """
    Parse an ISO-8601 instant. An explicit UTC offset is mandatory.
    Raises ValueError on malformed or naive input.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("timestamp must be a non-empty string")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValueError("timestamp must include a UTC offset")
    return dt.astimezone(timezone.utc)
