from flask import Blueprint, request, jsonify, g

from models import db
from models.waitlist_entry import WaitlistEntry
from routes.bookings import parse_instant_field
from security.rbac import has_role
from services import waitlist
from utils.auth_context import identity_required
from utils.audit import log_event

waitlist_bp = Blueprint("waitlist", __name__)


@waitlist_bp.post("/resources/<int:resource_id>/waitlist")
@identity_required
def join_waitlist(resource_id: int):
    data = request.get_json(silent=True) or {}
    start = parse_instant_field(data, "start_time")
    end = parse_instant_field(data, "end_time")

    entry = waitlist.join(
        db.session,
        resource_id,
        g.identity,
        start,
        end,
        capacity=data.get("capacity", 1),
        email=(data.get("email") or g.email),
    )
    log_event("WAITLIST_JOIN", entity="waitlist_entry", entity_id=entry.id, metadata={"resource_id": resource_id})
    return jsonify(waitlist.entry_to_dict(entry)), 201


@waitlist_bp.get("/waitlist/me")
@identity_required
def my_waitlist_entries():
    rows = (
        WaitlistEntry.query
        .filter_by(identity=g.identity)
        .order_by(WaitlistEntry.created_at.desc())
        .limit(200)
        .all()
    )
    return jsonify([waitlist.entry_to_dict(e) for e in rows]), 200


@waitlist_bp.delete("/waitlist/<int:entry_id>")
@identity_required
def leave_waitlist(entry_id: int):
    entry = waitlist.leave(db.session, entry_id, identity=g.identity, admin=has_role("ADMIN"))
    log_event("WAITLIST_LEAVE", entity="waitlist_entry", entity_id=entry.id)
    return jsonify(waitlist.entry_to_dict(entry)), 200
