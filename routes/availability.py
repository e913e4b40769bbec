import logging
from datetime import date, timedelta
from itertools import islice

from flask import Blueprint, request, jsonify, current_app

from models import db
from routes.resources import get_visible_resource
from services.availability import AvailabilityCalculator

logger = logging.getLogger(__name__)

availability_bp = Blueprint("availability", __name__)

MAX_SLOTS = 2000


def _parse_day(value):
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        return None


@availability_bp.get("/resources/<int:resource_id>/availability")
def resource_availability(resource_id: int):
    start_date = _parse_day(request.args.get("start_date"))
    end_date = _parse_day(request.args.get("end_date") or request.args.get("start_date"))
    if start_date is None or end_date is None:
        return jsonify(error="start_date and end_date must be YYYY-MM-DD"), 400

    max_days = current_app.config.get("AVAILABILITY_MAX_DAYS", 62)
    if end_date - start_date > timedelta(days=max_days - 1):
        return jsonify(error=f"Date range must be at most {max_days} days"), 400

    duration = request.args.get("duration_minutes", type=int)
    capacity = request.args.get("capacity", default=1, type=int)

    r = get_visible_resource(resource_id)
    calc = AvailabilityCalculator(db.session, r)
    slots = calc.slots(start_date, end_date, duration_minutes=duration, capacity=capacity)
    rows = [s.to_dict() for s in islice(slots, MAX_SLOTS)]

    logger.debug("Resource %s: %d slots between %s and %s", resource_id, len(rows), start_date, end_date)
    return jsonify(
        resource_id=r.id,
        timezone=calc.rules.timezone,
        duration_minutes=duration or calc.rules.slot_minutes,
        capacity=capacity,
        slots=rows,
    ), 200
