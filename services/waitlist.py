"""
Resource waitlist: people asking to be told when a specific interval on a
fully booked resource opens up.

Entries are offered strictly in arrival order. An offer does not reserve
anything; the person still has to take a hold, so overlapping entries
behind an offered one wait for the next opening.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select

from models.waitlist_entry import CANCELLED, EXPIRED, NOTIFIED, PENDING, WaitlistEntry
from services.availability import AvailabilityCalculator
from services.errors import NotFound, SlotUnavailable, ValidationError
from services.reservations import get_bookable_resource, validate_interval
from utils.timeutil import from_db, isoformat, to_db

logger = logging.getLogger(__name__)


def join(session, resource_id, identity: str, start: datetime, end: datetime, capacity: int = 1,
         email: Optional[str] = None, now: Optional[datetime] = None) -> WaitlistEntry:
    now = now or datetime.now(timezone.utc)
    if not identity:
        raise ValidationError("identity is required")
    validate_interval(start, end, now)
    resource = get_bookable_resource(session, resource_id)
    if isinstance(capacity, bool) or not isinstance(capacity, int) or not 1 <= capacity <= resource.capacity:
        raise ValidationError(f"capacity must be between 1 and {resource.capacity}")

    duplicate = session.execute(
        select(WaitlistEntry).where(
            WaitlistEntry.resource_id == resource.id,
            WaitlistEntry.identity == identity,
            WaitlistEntry.requested_start == to_db(start),
            WaitlistEntry.requested_end == to_db(end),
            WaitlistEntry.status.in_((PENDING, NOTIFIED)),
        )
    ).scalars().first()
    if duplicate is not None:
        raise ValidationError("Already on the waitlist for this interval", entry_id=duplicate.id)

    entry = WaitlistEntry(
        resource_id=resource.id,
        identity=identity,
        email=email,
        requested_start=to_db(start),
        requested_end=to_db(end),
        capacity=capacity,
        status=PENDING,
        created_at=to_db(now),
    )
    session.add(entry)
    session.commit()
    logger.info("%s joined waitlist of resource %s (entry %s)", identity, resource.id, entry.id)
    return entry


def leave(session, entry_id, identity: Optional[str] = None, admin: bool = False) -> WaitlistEntry:
    entry = session.get(WaitlistEntry, entry_id)
    if entry is None or (not admin and entry.identity != identity):
        raise NotFound("Waitlist entry not found")
    if entry.status in (PENDING, NOTIFIED):
        entry.status = CANCELLED
        session.commit()
    return entry


def process(session, resource, now: Optional[datetime] = None,
            offer_ttl: timedelta = timedelta(hours=2)) -> List[WaitlistEntry]:
    """
    Offer freed capacity to pending entries, oldest first.

    Runs inside the caller's transaction, which must hold the resource lock
    and have flushed the change that freed capacity. Returns the entries
    that were marked notified; the caller sends the emails after commit.
    """
    now = now or datetime.now(timezone.utc)
    pending = session.execute(
        select(WaitlistEntry)
        .where(WaitlistEntry.resource_id == resource.id, WaitlistEntry.status == PENDING)
        .order_by(WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc())
    ).scalars().all()
    if not pending:
        return []

    calc = AvailabilityCalculator(session, resource, now=now)
    offered: List[WaitlistEntry] = []
    for entry in pending:
        start, end = from_db(entry.requested_start), from_db(entry.requested_end)
        if start <= now:
            entry.status = EXPIRED
            continue
        if any(from_db(o.requested_start) < end and start < from_db(o.requested_end) for o in offered):
            continue
        try:
            calc.check(start, end, entry.capacity)
        except SlotUnavailable:
            continue
        entry.status = NOTIFIED
        entry.notified_at = to_db(now)
        entry.expires_at = to_db(now + offer_ttl)
        offered.append(entry)

    if offered:
        logger.info("Offered freed capacity on resource %s to %d waitlist entries", resource.id, len(offered))
    return offered


def expire_offers(session, now: Optional[datetime] = None) -> int:
    """Lapse notified entries whose offer window has passed."""
    now = now or datetime.now(timezone.utc)
    lapsed = session.execute(
        select(WaitlistEntry).where(
            WaitlistEntry.status == NOTIFIED,
            WaitlistEntry.expires_at.isnot(None),
            WaitlistEntry.expires_at <= to_db(now),
        )
    ).scalars().all()
    for entry in lapsed:
        entry.status = EXPIRED
    session.commit()
    return len(lapsed)


def entry_to_dict(entry: WaitlistEntry) -> dict:
    return {
        "id": entry.id,
        "resource_id": entry.resource_id,
        "identity": entry.identity,
        "start_time": isoformat(entry.requested_start),
        "end_time": isoformat(entry.requested_end),
        "capacity": entry.capacity,
        "status": entry.status,
        "notified_at": isoformat(entry.notified_at),
        "expires_at": isoformat(entry.expires_at),
        "created_at": isoformat(entry.created_at),
    }
