"""
Periodic maintenance: reap expired holds, complete past bookings and
lapse stale waitlist offers. Run from ``flask sweep`` (see app.py).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select

from models.reservation import CONFIRMED, HELD, Reservation
from services import waitlist
from services.reservations import complete_if_finished, lock_resource, reap_expired_holds_for_resource
from utils.timeutil import to_db

logger = logging.getLogger(__name__)


def reap_expired_holds(session, now: Optional[datetime] = None, notifier=None,
                       waitlist_offer_ttl: timedelta = timedelta(hours=2)) -> int:
    """Cancel every hold past its TTL, one resource transaction at a time."""
    now = now or datetime.now(timezone.utc)
    resource_ids = session.execute(
        select(Reservation.resource_id)
        .where(
            Reservation.status == HELD,
            Reservation.hold_expires_at.isnot(None),
            Reservation.hold_expires_at <= to_db(now),
        )
        .distinct()
    ).scalars().all()
    session.rollback()

    total = 0
    for resource_id in resource_ids:
        try:
            lock_resource(session, resource_id)
            reaped = reap_expired_holds_for_resource(session, resource_id, now)
            offers = []
            if reaped:
                session.flush()
                offers = waitlist.process(session, reaped[0].resource, now=now, offer_ttl=waitlist_offer_ttl)
            session.commit()
        except Exception:
            session.rollback()
            raise
        total += len(reaped)
        if notifier is not None:
            for reservation in reaped:
                notifier.notify("cancelled", reservation)
            for entry in offers:
                notifier.notify_waitlist_offer(entry, reaped[0].resource)

    if total:
        logger.info("Reaped %d expired holds", total)
    return total


def complete_finished(session, now: Optional[datetime] = None) -> int:
    """confirmed -> completed once the end time has passed, one resource transaction at a time."""
    now = now or datetime.now(timezone.utc)
    resource_ids = session.execute(
        select(Reservation.resource_id)
        .where(
            Reservation.status == CONFIRMED,
            Reservation.end_time <= to_db(now),
        )
        .distinct()
    ).scalars().all()
    session.rollback()

    total = 0
    for resource_id in resource_ids:
        try:
            lock_resource(session, resource_id)
            finished = session.execute(
                select(Reservation)
                .where(
                    Reservation.resource_id == resource_id,
                    Reservation.status == CONFIRMED,
                    Reservation.end_time <= to_db(now),
                )
                .execution_options(populate_existing=True)
            ).scalars().all()
            total += sum(complete_if_finished(r, now) for r in finished)
            session.commit()
        except Exception:
            session.rollback()
            raise

    if total:
        logger.info("Marked %d bookings completed", total)
    return total


def run_once(session, now: Optional[datetime] = None, notifier=None,
             waitlist_offer_ttl: timedelta = timedelta(hours=2)) -> dict:
    now = now or datetime.now(timezone.utc)
    return {
        "reaped": reap_expired_holds(session, now=now, notifier=notifier, waitlist_offer_ttl=waitlist_offer_ttl),
        "completed": complete_finished(session, now=now),
        "offers_expired": waitlist.expire_offers(session, now=now),
    }
