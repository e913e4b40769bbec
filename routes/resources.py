from flask import Blueprint, request, jsonify, g

from models import db
from models.resource import RESOURCE_KINDS, Resource
from security.rbac import can_act_on, require_roles, SUPER_ADMIN
from services.errors import NotFound, ValidationError
from services.rules import AvailabilityRules
from utils.audit import log_event
from utils.timeutil import isoformat

resource_bp = Blueprint("resource", __name__, url_prefix="/resources")

EDITABLE_TEXT = ("title", "description", "location", "currency")
EDITABLE_FLAGS = ("is_bookable", "auto_approve", "allow_arbitrary_duration")


def resource_to_dict(r: Resource) -> dict:
    return {
        "id": r.id,
        "organization_id": r.organization_id,
        "title": r.title,
        "kind": r.kind,
        "description": r.description,
        "location": r.location,
        "capacity": r.capacity,
        "is_bookable": r.is_bookable,
        "is_active": r.is_active,
        "auto_approve": r.auto_approve,
        "allow_arbitrary_duration": r.allow_arbitrary_duration,
        "price": r.price,
        "currency": r.currency,
        "availability_rules": r.availability_rules or {},
        "created_at": isoformat(r.created_at),
        "updated_at": isoformat(r.updated_at),
    }


def get_visible_resource(resource_id: int) -> Resource:
    r = db.session.get(Resource, resource_id)
    if not r or not r.is_active:
        raise NotFound("Resource not found")
    return r


def _positive_int(data, name, default=None, minimum=1):
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(f"{name} must be an integer >= {minimum}")
    return value


def _normalized_rules(doc, kind: str) -> dict:
    # Store the canonical form so every later read parses the same document
    return AvailabilityRules.from_document(doc or {}, default_exclusive_hosts=(kind == "person")).to_document()


@resource_bp.post("")
@require_roles("ADMIN")
def create_resource():
    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    kind = (data.get("kind") or "space").strip().lower()
    organization_id = (data.get("organization_id") or "").strip() or (g.orgs[0] if g.orgs else "")

    if not title:
        return jsonify(error="title is required"), 400
    if kind not in RESOURCE_KINDS:
        return jsonify(error=f"kind must be one of {', '.join(RESOURCE_KINDS)}"), 400
    if not organization_id:
        return jsonify(error="organization_id is required"), 400
    if g.orgs and organization_id not in g.orgs and SUPER_ADMIN not in g.roles:
        return jsonify(error="Forbidden"), 403

    r = Resource(
        organization_id=organization_id,
        title=title,
        kind=kind,
        description=(data.get("description") or "").strip() or None,
        location=(data.get("location") or "").strip() or None,
        capacity=_positive_int(data, "capacity", 1),
        price=_positive_int(data, "price", 0, minimum=0),
        currency=(data.get("currency") or "USD").strip().upper(),
        is_bookable=bool(data.get("is_bookable", True)),
        auto_approve=bool(data.get("auto_approve", False)),
        allow_arbitrary_duration=bool(data.get("allow_arbitrary_duration", False)),
        availability_rules=_normalized_rules(data.get("availability_rules"), kind),
        created_by=g.identity,
    )
    db.session.add(r)
    db.session.commit()

    log_event("RESOURCE_CREATE", entity="resource", entity_id=r.id, metadata={"kind": kind})
    return jsonify(resource_to_dict(r)), 201


@resource_bp.get("")
def list_resources():
    kind = (request.args.get("kind") or "").strip().lower()
    organization_id = (request.args.get("organization_id") or "").strip()

    q = Resource.query.filter(Resource.is_active.is_(True))
    if organization_id:
        q = q.filter(Resource.organization_id == organization_id)
    elif getattr(g, "orgs", None):
        q = q.filter(Resource.organization_id.in_(g.orgs))
    if kind:
        q = q.filter(Resource.kind == kind)

    rows = q.order_by(Resource.title.asc(), Resource.id.asc()).limit(200).all()
    return jsonify([resource_to_dict(r) for r in rows]), 200


@resource_bp.get("/<int:resource_id>")
def get_resource(resource_id: int):
    return jsonify(resource_to_dict(get_visible_resource(resource_id))), 200


@resource_bp.patch("/<int:resource_id>")
@require_roles("ADMIN")
def update_resource(resource_id: int):
    r = get_visible_resource(resource_id)
    if not can_act_on(r):
        return jsonify(error="Forbidden"), 403

    data = request.get_json(silent=True) or {}
    changed = []

    for name in EDITABLE_TEXT:
        if name in data:
            value = (data.get(name) or "").strip() or None
            if name == "title" and not value:
                return jsonify(error="title must not be empty"), 400
            if name == "currency":
                value = (value or "USD").upper()
            setattr(r, name, value)
            changed.append(name)
    for name in EDITABLE_FLAGS:
        if name in data:
            setattr(r, name, bool(data[name]))
            changed.append(name)
    if "capacity" in data:
        r.capacity = _positive_int(data, "capacity")
        changed.append("capacity")
    if "price" in data:
        r.price = _positive_int(data, "price", minimum=0)
        changed.append("price")
    if "availability_rules" in data:
        r.availability_rules = _normalized_rules(data.get("availability_rules"), r.kind)
        changed.append("availability_rules")

    if not changed:
        return jsonify(error="No editable fields supplied"), 400
    db.session.commit()

    log_event("RESOURCE_UPDATE", entity="resource", entity_id=r.id, metadata={"fields": changed})
    return jsonify(resource_to_dict(r)), 200


@resource_bp.post("/<int:resource_id>/deactivate")
@require_roles("ADMIN")
def deactivate_resource(resource_id: int):
    r = get_visible_resource(resource_id)
    if not can_act_on(r):
        return jsonify(error="Forbidden"), 403

    r.is_active = False
    db.session.commit()

    log_event("RESOURCE_DEACTIVATE", entity="resource", entity_id=resource_id)
    return jsonify(message="Resource deactivated"), 200
