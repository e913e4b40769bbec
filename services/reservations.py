"""
Reservation Lifecycle Manager.

State machine of a single booking::

    held --confirm--> confirmed --(end passes)--> completed
      |                   |
      +------cancel-------+--> cancelled      (also: hold TTL expiry)

Every mutation runs as one transaction whose first write bumps
``resources.lock_version``. That write takes the resource's row lock
(PostgreSQL) or the database write lock (SQLite), so the overlap check and
the insert/update that follows it are atomic relative to every other booking
transaction on the same resource.

All functions take the session explicitly and commit or roll back before
returning. None of them retries on SlotUnavailable.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import select, update

from models.participant import Participant, CANCELLED as PARTICIPANT_CANCELLED, CONFIRMED as PARTICIPANT_CONFIRMED, REGISTERED
from models.reservation import (
    ACTIVE_STATUSES,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    HELD,
    RescheduleAudit,
    Reservation,
)
from models.resource import Resource
from security import tokens
from services.availability import AvailabilityCalculator
from services.errors import InvalidToken, InvalidTransition, NotFound, ValidationError
from utils.timeutil import from_db, isoformat, to_db

logger = logging.getLogger(__name__)

DEFAULT_HOLD_TTL = timedelta(minutes=10)
DEFAULT_TOKEN_TTL = timedelta(days=30)

REVOKED_ON_CANCEL = "booking_cancelled"


@dataclass
class LifecycleResult:
    reservation: Reservation
    tokens: Dict[str, str] = field(default_factory=dict)  # purpose -> raw token
    changed: bool = True
    waitlist_offers: list = field(default_factory=list)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _notify(notifier, event: str, reservation, **context):
    if notifier is not None:
        notifier.notify(event, reservation, **context)


# ----------------------------------------------------------------------
# locking and loading
# ----------------------------------------------------------------------
def lock_resource(session, resource_id: int) -> None:
    """Serialize booking transactions on one resource. Must be the first write of the transaction."""
    result = session.execute(
        update(Resource)
        .where(Resource.id == resource_id)
        .values(lock_version=Resource.lock_version + 1, updated_at=Resource.updated_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound("Resource not found")


def reload_reservation(session, reservation_id: int) -> Optional[Reservation]:
    return session.execute(
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_reservation(session, reservation_id) -> Reservation:
    reservation = session.get(Reservation, reservation_id) if reservation_id is not None else None
    if reservation is None:
        raise NotFound("Booking not found")
    return reservation


def get_bookable_resource(session, resource_id) -> Resource:
    resource = session.get(Resource, resource_id) if resource_id is not None else None
    if resource is None or not resource.is_active:
        raise NotFound("Resource not found")
    if not resource.is_bookable:
        raise ValidationError("Resource is not bookable")
    return resource


def validate_interval(start: datetime, end: datetime, now: datetime) -> None:
    if not isinstance(start, datetime) or not isinstance(end, datetime):
        raise ValidationError("start_time and end_time are required")
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError("start_time and end_time must include a UTC offset")
    if end <= start:
        raise ValidationError("end_time must be after start_time")
    if start <= now:
        raise ValidationError("Cannot book past/started slots")


def _duration_minutes(start: datetime, end: datetime) -> int:
    seconds = (end - start).total_seconds()
    if seconds % 60:
        raise ValidationError("duration must be a whole number of minutes")
    return int(seconds // 60)


def mark_cancelled(session, reservation: Reservation, now: datetime, reason: str) -> None:
    """Cancel in the current transaction: frees capacity, releases the roster and revokes links."""
    reservation.status = CANCELLED
    reservation.cancelled_at = to_db(now)
    reservation.cancel_reason = (reason or "")[:120] or None
    reservation.hold_expires_at = None
    reservation.sequence = (reservation.sequence or 0) + 1

    participants = session.execute(
        select(Participant).where(
            Participant.booking_id == reservation.id,
            Participant.status != PARTICIPANT_CANCELLED,
        )
    ).scalars().all()
    for p in participants:
        p.status = PARTICIPANT_CANCELLED
        p.cancelled_at = to_db(now)

    tokens.revoke_for_subject(session, reservation.subject_reference, now=now, reason=REVOKED_ON_CANCEL)


def complete_if_finished(reservation: Reservation, now: datetime) -> bool:
    """confirmed -> completed once end_time has passed. Caller holds a lock covering the row."""
    if reservation.status != CONFIRMED or from_db(reservation.end_time) > now:
        return False
    reservation.status = COMPLETED
    reservation.completed_at = to_db(now)
    return True


def reap_expired_holds_for_resource(session, resource_id: int, now: datetime) -> list:
    """Cancel this resource's holds whose TTL has passed. Caller holds the resource lock."""
    expired = session.execute(
        select(Reservation)
        .where(
            Reservation.resource_id == resource_id,
            Reservation.status == HELD,
            Reservation.hold_expires_at.isnot(None),
            Reservation.hold_expires_at <= to_db(now),
        )
        .execution_options(populate_existing=True)
    ).scalars().all()
    for r in expired:
        mark_cancelled(session, r, now, "hold_expired")
        logger.info("Hold %s on resource %s expired", r.id, resource_id)
    return expired


# ----------------------------------------------------------------------
# operations
# ----------------------------------------------------------------------
def create_hold(session, resource_id, start: datetime, end: datetime, capacity: int = 1,
                requester: Optional[str] = None, requester_email: Optional[str] = None, *,
                now: Optional[datetime] = None, hold_ttl: timedelta = DEFAULT_HOLD_TTL,
                token_ttl: timedelta = DEFAULT_TOKEN_TTL, meeting_url: Optional[str] = None,
                notes: Optional[str] = None, notifier=None) -> LifecycleResult:
    """
    Claim [start, end) on a resource as a short-lived hold.

    Raises ValidationError for malformed input, SlotUnavailable when the
    interval is no longer open for ``capacity``.
    """
    now = _now(now)
    if not requester:
        raise ValidationError("requester identity is required")
    validate_interval(start, end, now)
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise ValidationError("capacity must be a positive integer")

    resource = get_bookable_resource(session, resource_id)
    if capacity > resource.capacity:
        raise ValidationError(f"capacity must not exceed {resource.capacity}")
    AvailabilityCalculator(session, resource, now=now).validate_duration(_duration_minutes(start, end))

    try:
        lock_resource(session, resource.id)
        reap_expired_holds_for_resource(session, resource.id, now)

        host = AvailabilityCalculator(session, resource, now=now).check(start, end, capacity)

        reservation = Reservation(
            resource_id=resource.id,
            requester_identity=requester,
            requester_email=requester_email,
            start_time=to_db(start),
            end_time=to_db(end),
            status=HELD,
            capacity_consumed=capacity,
            host_identifier=host,
            hold_expires_at=to_db(now + hold_ttl),
            meeting_url=meeting_url,
            notes=notes,
        )
        session.add(reservation)
        session.flush()

        cancel_token = tokens.issue(session, reservation.subject_reference, token_ttl, purpose="cancel", now=now)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "Hold %s created on resource %s for %s (%s - %s, host=%s)",
        reservation.id, resource.id, requester, start.isoformat(), end.isoformat(), host,
    )
    _notify(notifier, "created", reservation)
    return LifecycleResult(reservation, tokens={"cancel": cancel_token})


def confirm(session, reservation_id, *, now: Optional[datetime] = None,
            token_ttl: timedelta = DEFAULT_TOKEN_TTL, notifier=None) -> LifecycleResult:
    """
    held -> confirmed. Confirming a confirmed booking is a no-op.
    A hold whose TTL has passed is cancelled instead and InvalidTransition raised.
    """
    now = _now(now)
    reservation = get_reservation(session, reservation_id)

    expired = False
    issued: Dict[str, str] = {}
    try:
        lock_resource(session, reservation.resource_id)
        reservation = reload_reservation(session, reservation.id)

        if reservation.status == CONFIRMED:
            session.rollback()
            return LifecycleResult(reservation, changed=False)
        if reservation.status in (CANCELLED, COMPLETED):
            raise InvalidTransition(f"Cannot confirm a {reservation.status} booking")

        if reservation.hold_expires_at is not None and from_db(reservation.hold_expires_at) <= now:
            mark_cancelled(session, reservation, now, "hold_expired")
            expired = True
        else:
            reservation.status = CONFIRMED
            reservation.confirmed_at = to_db(now)
            reservation.hold_expires_at = None

            registered = session.execute(
                select(Participant).where(
                    Participant.booking_id == reservation.id,
                    Participant.status == REGISTERED,
                )
            ).scalars().all()
            for p in registered:
                p.status = PARTICIPANT_CONFIRMED

            # Links handed out with the hold are superseded by the confirmation links
            tokens.revoke_for_subject(session, reservation.subject_reference, now=now)
            for purpose in ("reschedule", "cancel"):
                issued[purpose] = tokens.issue(session, reservation.subject_reference, token_ttl, purpose=purpose, now=now)
        session.commit()
    except Exception:
        session.rollback()
        raise

    if expired:
        logger.info("Hold %s expired before confirmation", reservation.id)
        _notify(notifier, "cancelled", reservation)
        raise InvalidTransition("Hold expired before confirmation")

    logger.info("Reservation %s confirmed", reservation.id)
    _notify(notifier, "confirmed", reservation, tokens=issued)
    return LifecycleResult(reservation, tokens=issued)


def reschedule(session, reservation_id, start: datetime, end: datetime, token: Optional[str] = None, *,
               admin_override: bool = False, actor: Optional[str] = None, now: Optional[datetime] = None,
               token_ttl: timedelta = DEFAULT_TOKEN_TTL, notifier=None) -> LifecycleResult:
    """
    Move a held or confirmed reservation to [start, end) in place.

    The token is consumed in the same transaction as the move; if the new
    interval is unavailable the whole transaction rolls back and the token
    stays valid. The reservation's own interval never blocks its new one.
    """
    now = _now(now)
    validate_interval(start, end, now)
    reservation = get_reservation(session, reservation_id)
    subject = reservation.subject_reference

    try:
        lock_resource(session, reservation.resource_id)
        reap_expired_holds_for_resource(session, reservation.resource_id, now)
        reservation = reload_reservation(session, reservation.id)
        if complete_if_finished(reservation, now):
            session.commit()
            raise InvalidTransition("Cannot reschedule a completed booking")

        if not admin_override:
            if not tokens.validate_and_consume(session, token, subject, purpose="reschedule", now=now):
                raise InvalidToken("Invalid or expired reschedule token")
        if reservation.status not in ACTIVE_STATUSES:
            raise InvalidTransition(f"Cannot reschedule a {reservation.status} booking")

        resource = reservation.resource
        calc = AvailabilityCalculator(session, resource, now=now, exclude_reservation_id=reservation.id)
        calc.validate_duration(_duration_minutes(start, end))
        host = calc.check(start, end, reservation.capacity_consumed, preferred_host=reservation.host_identifier)

        session.add(RescheduleAudit(
            reservation_id=reservation.id,
            previous_start=reservation.start_time,
            previous_end=reservation.end_time,
            previous_host=reservation.host_identifier,
            new_start=to_db(start),
            new_end=to_db(end),
            actor=actor or ("admin" if admin_override else "token"),
            rescheduled_at=to_db(now),
        ))
        previous = (from_db(reservation.start_time), from_db(reservation.end_time))
        reservation.start_time = to_db(start)
        reservation.end_time = to_db(end)
        reservation.host_identifier = host
        reservation.sequence = (reservation.sequence or 0) + 1

        tokens.revoke_for_subject(session, subject, purpose="reschedule", now=now)
        new_token = tokens.issue(session, subject, token_ttl, purpose="reschedule", now=now)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "Reservation %s rescheduled from %s to %s",
        reservation.id, previous[0].isoformat(), start.isoformat(),
    )
    _notify(notifier, "rescheduled", reservation, tokens={"reschedule": new_token}, previous=previous)
    return LifecycleResult(reservation, tokens={"reschedule": new_token})


def cancel(session, reservation_id, token: Optional[str] = None, *, admin_override: bool = False,
           reason: Optional[str] = None, now: Optional[datetime] = None,
           waitlist_offer_ttl: timedelta = timedelta(hours=2), notifier=None) -> LifecycleResult:
    """
    Cancel a reservation. Idempotent: cancelling a cancelled booking succeeds
    and changes nothing, including through a cancel link that the earlier
    cancellation voided. Freed capacity is offered to the resource waitlist
    in the same transaction.
    """
    from services import waitlist

    now = _now(now)
    reservation = get_reservation(session, reservation_id)
    subject = reservation.subject_reference

    try:
        lock_resource(session, reservation.resource_id)
        reservation = reload_reservation(session, reservation.id)
        if complete_if_finished(reservation, now):
            session.commit()
            raise InvalidTransition("Cannot cancel a completed booking")

        if not admin_override:
            if not tokens.validate_and_consume(session, token, subject, purpose="cancel", now=now):
                if reservation.status == CANCELLED and tokens.was_revoked(
                    session, token, subject, REVOKED_ON_CANCEL, purpose="cancel", now=now,
                ):
                    session.rollback()
                    return LifecycleResult(reservation, changed=False)
                raise InvalidToken("Invalid or expired cancel token")

        if reservation.status == CANCELLED:
            session.rollback()
            return LifecycleResult(reservation, changed=False)
        if reservation.status == COMPLETED:
            raise InvalidTransition("Cannot cancel a completed booking")

        mark_cancelled(session, reservation, now, reason or ("admin" if admin_override else "requester"))
        session.flush()
        offers = waitlist.process(session, reservation.resource, now=now, offer_ttl=waitlist_offer_ttl)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("Reservation %s cancelled (%s)", reservation.id, reservation.cancel_reason)
    _notify(notifier, "cancelled", reservation)
    if notifier is not None:
        for entry in offers:
            notifier.notify_waitlist_offer(entry, reservation.resource)
    return LifecycleResult(reservation, waitlist_offers=offers)


def extend_hold(session, reservation_id, until: datetime, *, now: Optional[datetime] = None) -> Reservation:
    """
    Push a live hold's expiry out to ``until`` (never shortens it), e.g. to
    cover a checkout session. An already-lapsed hold is cancelled instead.
    """
    now = _now(now)
    reservation = get_reservation(session, reservation_id)

    expired = False
    try:
        lock_resource(session, reservation.resource_id)
        reservation = reload_reservation(session, reservation.id)
        if reservation.status != HELD:
            raise InvalidTransition(f"Cannot extend a {reservation.status} booking")

        current = from_db(reservation.hold_expires_at) if reservation.hold_expires_at is not None else None
        if current is not None and current <= now:
            mark_cancelled(session, reservation, now, "hold_expired")
            expired = True
        elif current is not None and current < until:
            reservation.hold_expires_at = to_db(until)
        session.commit()
    except Exception:
        session.rollback()
        raise

    if expired:
        raise InvalidTransition("Hold expired")
    logger.info("Hold %s extended to %s", reservation.id, isoformat(reservation.hold_expires_at))
    return reservation


def issue_links(session, reservation_id, *, now: Optional[datetime] = None,
                token_ttl: timedelta = DEFAULT_TOKEN_TTL) -> Dict[str, str]:
    """Privileged re-issue of reschedule/cancel links for an active booking."""
    now = _now(now)
    reservation = get_reservation(session, reservation_id)

    try:
        lock_resource(session, reservation.resource_id)
        reservation = reload_reservation(session, reservation.id)
        if reservation.status not in ACTIVE_STATUSES:
            raise InvalidTransition(f"Cannot issue links for a {reservation.status} booking")
        tokens.revoke_for_subject(session, reservation.subject_reference, now=now)
        purposes = ("reschedule", "cancel") if reservation.status == CONFIRMED else ("cancel",)
        issued = {
            purpose: tokens.issue(session, reservation.subject_reference, token_ttl, purpose=purpose, now=now)
            for purpose in purposes
        }
        session.commit()
    except Exception:
        session.rollback()
        raise
    return issued
