from flask import Blueprint, request, jsonify, g

from models import db
from routes.bookings import is_owner, visible_booking
from security.rbac import can_act_on
from services import reservations, roster
from utils.auth_context import identity_required
from utils.audit import log_event

participant_bp = Blueprint("participant", __name__, url_prefix="/bookings")


def _may_manage(booking) -> bool:
    return is_owner(booking) or can_act_on(booking.resource)


@participant_bp.get("/<int:booking_id>/participants")
@identity_required
def list_participants(booking_id: int):
    visible_booking(booking_id)
    rows = roster.list_participants(db.session, booking_id)
    return jsonify([roster.participant_to_dict(p) for p in rows]), 200


@participant_bp.post("/<int:booking_id>/participants")
@identity_required
def attach_participant(booking_id: int):
    data = request.get_json(silent=True) or {}
    identity = (data.get("identity") or "").strip() or g.identity
    email = (data.get("email") or "").strip() or (g.email if identity == g.identity else None)

    booking = reservations.get_reservation(db.session, booking_id)
    # Anyone may add themselves; adding someone else is for the booker or an admin
    if identity != g.identity and not _may_manage(booking):
        return jsonify(error="Forbidden"), 403

    participant, created = roster.attach(db.session, booking_id, identity, email=email)
    if created:
        log_event("PARTICIPANT_ATTACH", entity="reservation", entity_id=booking_id,
                  metadata={"participant": identity, "status": participant.status})
    return jsonify(roster.participant_to_dict(participant)), 201 if created else 200


@participant_bp.post("/<int:booking_id>/participants/detach")
@identity_required
def detach_participant(booking_id: int):
    data = request.get_json(silent=True) or {}
    identity = (data.get("identity") or "").strip() or g.identity

    booking = reservations.get_reservation(db.session, booking_id)
    if identity != g.identity and not _may_manage(booking):
        return jsonify(error="Forbidden"), 403

    removed, promoted = roster.detach(db.session, booking_id, identity)
    log_event("PARTICIPANT_DETACH", entity="reservation", entity_id=booking_id,
              metadata={"participant": identity, "promoted": promoted.identity if promoted else None})
    return jsonify(
        removed=roster.participant_to_dict(removed),
        promoted=roster.participant_to_dict(promoted) if promoted else None,
    ), 200
