from datetime import timedelta

from flask import Blueprint, Response, request, jsonify, current_app, g

from models import db
from models.reservation import HELD, Reservation
from models.resource import Resource
from security.rate_limit import check_and_increment_rate
from security.rbac import can_act_on, require_roles
from services import ics, reservations
from services.errors import NotFound, ValidationError
from services.notifications import get_notifier
from utils.auth_context import identity_required
from utils.audit import log_event
from utils.timeutil import isoformat, parse_instant

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


def parse_instant_field(data, name):
    value = data.get(name)
    if not value:
        raise ValidationError(f"{name} is required")
    try:
        return parse_instant(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp with a UTC offset, e.g. 2030-01-08T17:00:00Z")


def booking_to_dict(r: Reservation, tokens=None) -> dict:
    out = {
        "id": r.id,
        "resource_id": r.resource_id,
        "requester": r.requester_identity,
        "start_time": isoformat(r.start_time),
        "end_time": isoformat(r.end_time),
        "status": r.status,
        "capacity": r.capacity_consumed,
        "host": r.host_identifier,
        "hold_expires_at": isoformat(r.hold_expires_at),
        "confirmed_at": isoformat(r.confirmed_at),
        "cancelled_at": isoformat(r.cancelled_at),
        "cancel_reason": r.cancel_reason,
        "meeting_url": r.meeting_url,
        "notes": r.notes,
        "sequence": r.sequence,
        "created_at": isoformat(r.created_at),
    }
    if tokens:
        out["tokens"] = tokens
    return out


def lifecycle_settings() -> dict:
    cfg = current_app.config
    return {
        "token_ttl": timedelta(hours=cfg.get("TOKEN_TTL_HOURS", 24 * 30)),
        "notifier": get_notifier(),
    }


def waitlist_offer_ttl() -> timedelta:
    return timedelta(minutes=current_app.config.get("WAITLIST_OFFER_MINUTES", 120))


def is_owner(r: Reservation) -> bool:
    return g.identity is not None and r.requester_identity == g.identity


def visible_booking(booking_id: int) -> Reservation:
    """Owner or an admin of the resource's organization; anyone else gets 404."""
    r = reservations.get_reservation(db.session, booking_id)
    if not (is_owner(r) or can_act_on(r.resource)):
        raise NotFound("Booking not found")
    return r


def _token_from(data):
    return data.get("token") or request.args.get("token")


# ---------- hold (and auto-confirm) ----------
@booking_bp.post("")
@identity_required
def create_booking():
    allowed, retry_after = check_and_increment_rate("HOLD")
    if not allowed:
        log_event("BOOKING_RATE_LIMITED", entity="resource")
        return jsonify(error="Too many booking attempts", retry_after_seconds=retry_after), 429

    data = request.get_json(silent=True) or {}
    resource_id = data.get("resource_id")
    if isinstance(resource_id, bool) or not isinstance(resource_id, int):
        return jsonify(error="resource_id required"), 400
    start = parse_instant_field(data, "start_time")
    end = parse_instant_field(data, "end_time")
    capacity = data.get("capacity", 1)

    settings = lifecycle_settings()
    target = db.session.get(Resource, resource_id)
    auto_confirm = bool(target and target.auto_approve and not target.requires_payment)

    result = reservations.create_hold(
        db.session,
        resource_id,
        start,
        end,
        capacity=capacity,
        requester=g.identity,
        requester_email=(data.get("email") or g.email),
        hold_ttl=timedelta(minutes=current_app.config.get("HOLD_TTL_MINUTES", 10)),
        meeting_url=(data.get("meeting_url") or "").strip() or None,
        notes=(data.get("notes") or "").strip() or None,
        token_ttl=settings["token_ttl"],
        # auto-approved bookings only get the confirmation email
        notifier=None if auto_confirm else settings["notifier"],
    )
    booking = result.reservation
    tokens = dict(result.tokens)
    log_event("BOOKING_HOLD", entity="reservation", entity_id=booking.id,
              metadata={"resource_id": booking.resource_id, "start_time": isoformat(booking.start_time)})

    resource = booking.resource
    if auto_confirm:
        confirmed = reservations.confirm(db.session, booking.id, **settings)
        booking = confirmed.reservation
        tokens.update(confirmed.tokens)
        log_event("BOOKING_CONFIRM", entity="reservation", entity_id=booking.id, metadata={"auto_approve": True})

    body = booking_to_dict(booking, tokens=tokens)
    body["requires_payment"] = resource.requires_payment and booking.status == HELD
    return jsonify(body), 201


@booking_bp.get("/<int:booking_id>")
@identity_required
def get_booking(booking_id: int):
    return jsonify(booking_to_dict(visible_booking(booking_id))), 200


@booking_bp.get("/me")
@identity_required
def my_bookings():
    status = request.args.get("status")
    q = Reservation.query.filter_by(requester_identity=g.identity)
    if status:
        q = q.filter_by(status=status)
    rows = q.order_by(Reservation.start_time.desc()).limit(200).all()
    return jsonify([booking_to_dict(r) for r in rows]), 200


# ---------- ADMIN: list bookings ----------
@booking_bp.get("")
@require_roles("ADMIN")
def list_bookings():
    status = request.args.get("status")
    resource_id = request.args.get("resource_id", type=int)

    q = Reservation.query.join(Resource, Resource.id == Reservation.resource_id)
    if g.orgs and "SUPER_ADMIN" not in g.roles:
        q = q.filter(Resource.organization_id.in_(g.orgs))
    if resource_id:
        q = q.filter(Reservation.resource_id == resource_id)
    if status:
        q = q.filter(Reservation.status == status)

    rows = q.order_by(Reservation.start_time.asc()).limit(200).all()
    return jsonify([booking_to_dict(r) for r in rows]), 200


# ---------- ADMIN: approve a hold ----------
@booking_bp.post("/<int:booking_id>/confirm")
@require_roles("ADMIN")
def confirm_booking(booking_id: int):
    r = reservations.get_reservation(db.session, booking_id)
    if not can_act_on(r.resource):
        return jsonify(error="Forbidden"), 403

    result = reservations.confirm(db.session, booking_id, **lifecycle_settings())
    if result.changed:
        log_event("BOOKING_CONFIRM", entity="reservation", entity_id=booking_id)
    return jsonify(booking_to_dict(result.reservation, tokens=result.tokens)), 200


# ---------- reschedule (token or admin) ----------
@booking_bp.post("/<int:booking_id>/reschedule")
def reschedule_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    start = parse_instant_field(data, "start_time")
    end = parse_instant_field(data, "end_time")
    token = _token_from(data)

    r = reservations.get_reservation(db.session, booking_id)
    admin_override = not token and g.identity is not None and can_act_on(r.resource)

    result = reservations.reschedule(
        db.session,
        booking_id,
        start,
        end,
        token=token,
        admin_override=admin_override,
        actor=g.identity,
        **lifecycle_settings(),
    )
    log_event("BOOKING_RESCHEDULE", entity="reservation", entity_id=booking_id,
              metadata={"start_time": isoformat(start), "end_time": isoformat(end), "admin": admin_override})
    return jsonify(booking_to_dict(result.reservation, tokens=result.tokens)), 200


# ---------- cancel (token, owner of a hold, or admin) ----------
@booking_bp.post("/<int:booking_id>/cancel")
def cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None
    token = _token_from(data)

    r = reservations.get_reservation(db.session, booking_id)
    admin_override = False
    if not token and g.identity is not None:
        admin_override = can_act_on(r.resource) or (is_owner(r) and r.status == HELD)

    settings = lifecycle_settings()
    result = reservations.cancel(
        db.session,
        booking_id,
        token=token,
        admin_override=admin_override,
        reason=reason,
        waitlist_offer_ttl=waitlist_offer_ttl(),
        notifier=settings["notifier"],
    )
    if result.changed:
        log_event("BOOKING_CANCEL", entity="reservation", entity_id=booking_id,
                  metadata={"reason": reason, "admin": admin_override})
    return jsonify(booking_to_dict(result.reservation)), 200


# ---------- ADMIN: re-issue manage links ----------
@booking_bp.post("/<int:booking_id>/tokens")
@require_roles("ADMIN")
def issue_booking_tokens(booking_id: int):
    r = reservations.get_reservation(db.session, booking_id)
    if not can_act_on(r.resource):
        return jsonify(error="Forbidden"), 403

    issued = reservations.issue_links(db.session, booking_id, token_ttl=lifecycle_settings()["token_ttl"])
    log_event("BOOKING_TOKENS_ISSUED", entity="reservation", entity_id=booking_id, metadata={"purposes": sorted(issued)})
    return jsonify(tokens=issued), 201


@booking_bp.get("/<int:booking_id>/calendar.ics")
@identity_required
def booking_calendar(booking_id: int):
    r = visible_booking(booking_id)
    snapshot = ics.BookingSnapshot.from_reservation(r)
    body = ics.build_calendar(
        snapshot,
        organization_name=current_app.config.get("ORGANIZATION_NAME", "Studio Bookings"),
        domain=current_app.config.get("CALENDAR_DOMAIN"),
    )
    resp = Response(body, mimetype="text/calendar")
    resp.headers["Content-Disposition"] = f'attachment; filename="{ics.filename(snapshot)}"'
    return resp
