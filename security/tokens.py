import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update

from models.access_token import PURPOSES, AccessToken
from utils.timeutil import to_db


def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue(session, subject_reference: str, ttl: timedelta, purpose: str = "magic_link",
          now: Optional[datetime] = None, commit: bool = False) -> str:
    """
    Creates a single-use token and returns the RAW token (for a link or email).
    Only the hash is stored in DB.
    """
    if purpose not in PURPOSES:
        raise ValueError(f"Unknown token purpose {purpose!r}")
    if ttl.total_seconds() <= 0:
        raise ValueError("Token ttl must be positive")

    now = now or datetime.now(timezone.utc)
    raw_token = secrets.token_urlsafe(32)

    row = AccessToken(
        token_hash=_hash_token(raw_token),
        purpose=purpose,
        subject_reference=subject_reference,
        expires_at=to_db(now + ttl),
        used=False,
    )
    session.add(row)
    if commit:
        session.commit()
    else:
        session.flush()
    return raw_token


def validate_and_consume(session, token: str, expected_subject_reference: str, purpose: Optional[str] = None,
                         now: Optional[datetime] = None, commit: bool = False) -> bool:
    """
    Marks the token used iff it is unused, unexpired and bound to the subject.

    A single conditional UPDATE does check and consume together, so the same
    token never succeeds twice, even under concurrent calls. With commit=False
    the consumption joins the caller's transaction and is undone if the caller
    rolls back the action it authorizes.
    """
    if not token or not isinstance(token, str):
        return False

    now = now or datetime.now(timezone.utc)
    conditions = [
        AccessToken.token_hash == _hash_token(token),
        AccessToken.used.is_(False),
        AccessToken.expires_at > to_db(now),
        AccessToken.subject_reference == expected_subject_reference,
    ]
    if purpose is not None:
        conditions.append(AccessToken.purpose == purpose)

    result = session.execute(
        update(AccessToken)
        .where(*conditions)
        .values(used=True, used_at=to_db(now))
        .execution_options(synchronize_session=False)
    )
    consumed = result.rowcount == 1
    if commit:
        session.commit()
    return consumed


def revoke_for_subject(session, subject_reference: str, purpose: Optional[str] = None,
                       now: Optional[datetime] = None, reason: Optional[str] = None) -> int:
    """Void every unused token of the subject. ``reason`` is kept so a later lookup can tell revoked from redeemed."""
    now = now or datetime.now(timezone.utc)
    conditions = [
        AccessToken.subject_reference == subject_reference,
        AccessToken.used.is_(False),
    ]
    if purpose is not None:
        conditions.append(AccessToken.purpose == purpose)
    result = session.execute(
        update(AccessToken)
        .where(*conditions)
        .values(used=True, used_at=to_db(now), revoked_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def was_revoked(session, token: str, expected_subject_reference: str, reason: str,
                purpose: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    """True if this unexpired token was voided with ``reason`` instead of being redeemed."""
    if not token or not isinstance(token, str):
        return False

    now = now or datetime.now(timezone.utc)
    stmt = select(AccessToken.id).where(
        AccessToken.token_hash == _hash_token(token),
        AccessToken.subject_reference == expected_subject_reference,
        AccessToken.revoked_reason == reason,
        AccessToken.expires_at > to_db(now),
    )
    if purpose is not None:
        stmt = stmt.where(AccessToken.purpose == purpose)
    return session.execute(stmt).first() is not None
