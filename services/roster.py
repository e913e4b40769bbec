"""
Participant Roster: the people attending a booking.

Seats are bounded by the booking's ``capacity_consumed``. When the roster
is full, new participants join a FIFO waitlist and are promoted, oldest
first, as seats free up. Every change bumps ``reservations.roster_version``
first so attach/detach on one booking are serialized.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update

from models.participant import CANCELLED, REGISTERED, SEATED_STATUSES, WAITLISTED, Participant
from models.reservation import ACTIVE_STATUSES, Reservation
from services.errors import InvalidTransition, NotFound, ValidationError
from services.reservations import complete_if_finished
from utils.timeutil import isoformat, to_db

logger = logging.getLogger(__name__)


def _lock_booking(session, booking_id) -> Reservation:
    result = session.execute(
        update(Reservation)
        .where(Reservation.id == booking_id)
        .values(roster_version=Reservation.roster_version + 1, updated_at=Reservation.updated_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound("Booking not found")
    return session.execute(
        select(Reservation)
        .where(Reservation.id == booking_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


def _seated_count(session, booking_id) -> int:
    return session.execute(
        select(func.count(Participant.id)).where(
            Participant.booking_id == booking_id,
            Participant.status.in_(SEATED_STATUSES),
        )
    ).scalar_one()


def _current(session, booking_id, identity) -> Optional[Participant]:
    return session.execute(
        select(Participant).where(
            Participant.booking_id == booking_id,
            Participant.identity == identity,
            Participant.status != CANCELLED,
        )
    ).scalars().first()


def attach(session, booking_id, identity: str, email: Optional[str] = None,
           now: Optional[datetime] = None) -> Tuple[Participant, bool]:
    """
    Add a participant. Seated as ``registered`` while seats remain,
    otherwise ``waitlisted``. Returns (participant, created); attaching an
    identity already on the roster returns the existing row.
    """
    if not identity:
        raise ValidationError("participant identity is required")
    now = now or datetime.now(timezone.utc)

    try:
        booking = _lock_booking(session, booking_id)
        if complete_if_finished(booking, now):
            session.commit()
            raise InvalidTransition("Cannot join a completed booking")
        if booking.status not in ACTIVE_STATUSES:
            raise InvalidTransition(f"Cannot join a {booking.status} booking")

        existing = _current(session, booking.id, identity)
        if existing is not None:
            session.rollback()
            return existing, False

        participant = Participant(booking_id=booking.id, identity=identity, email=email)
        if _seated_count(session, booking.id) < booking.capacity_consumed:
            participant.status = REGISTERED
        else:
            participant.status = WAITLISTED
            participant.waitlisted_at = to_db(now)
        session.add(participant)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("Participant %s %s on booking %s", identity, participant.status, booking_id)
    return participant, True


def detach(session, booking_id, identity: str,
           now: Optional[datetime] = None) -> Tuple[Participant, Optional[Participant]]:
    """
    Remove a participant. If a seat was freed, the oldest waitlisted
    participant is promoted to ``registered`` in the same transaction.
    Returns (removed, promoted_or_None).
    """
    now = now or datetime.now(timezone.utc)

    try:
        booking = _lock_booking(session, booking_id)
        participant = _current(session, booking.id, identity)
        if participant is None:
            raise NotFound("Participant not found")

        freed_seat = participant.status in SEATED_STATUSES
        participant.status = CANCELLED
        participant.cancelled_at = to_db(now)
        session.flush()

        promoted = None
        if (
            freed_seat
            and booking.status in ACTIVE_STATUSES
            and _seated_count(session, booking.id) < booking.capacity_consumed
        ):
            promoted = session.execute(
                select(Participant)
                .where(Participant.booking_id == booking.id, Participant.status == WAITLISTED)
                .order_by(Participant.waitlisted_at.asc(), Participant.id.asc())
                .limit(1)
            ).scalars().first()
            if promoted is not None:
                promoted.status = REGISTERED
        session.commit()
    except Exception:
        session.rollback()
        raise

    if promoted is not None:
        logger.info("Participant %s promoted from waitlist on booking %s", promoted.identity, booking_id)
    return participant, promoted


def list_participants(session, booking_id, include_cancelled: bool = False) -> List[Participant]:
    stmt = select(Participant).where(Participant.booking_id == booking_id)
    if not include_cancelled:
        stmt = stmt.where(Participant.status != CANCELLED)
    rows = session.execute(stmt.order_by(Participant.id.asc())).scalars().all()
    seated = [p for p in rows if p.status != WAITLISTED]
    waiting = sorted((p for p in rows if p.status == WAITLISTED), key=lambda p: (p.waitlisted_at, p.id))
    return seated + waiting


def participant_to_dict(p: Participant) -> dict:
    return {
        "id": p.id,
        "booking_id": p.booking_id,
        "identity": p.identity,
        "email": p.email,
        "status": p.status,
        "waitlisted_at": isoformat(p.waitlisted_at),
        "created_at": isoformat(p.created_at),
    }
