import os
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

import stripe
from flask import Blueprint, current_app, request, jsonify, g

from models import db
from models.payment import Payment
from models.reservation import HELD
from routes.bookings import is_owner, waitlist_offer_ttl
from services import reservations
from services.notifications import get_notifier
from utils.auth_context import identity_required
from utils.audit import log_event

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")

def _append_query(url: str, params: dict) -> str:
    if not url:
        return url
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    new_query = urlencode(query)
    return urlunparse(parts._replace(query=new_query))


@payments_bp.post("/start")
@identity_required
def start_payment():
    stripe.api_key = os.getenv("STRIPE_SECRET_KEY")
    if not stripe.api_key:
        return jsonify(error="Stripe secret key missing (STRIPE_SECRET_KEY)"), 500

    data = request.get_json(silent=True) or {}
    booking_id = data.get("booking_id")
    if isinstance(booking_id, bool) or not isinstance(booking_id, int):
        return jsonify(error="booking_id required"), 400

    booking = reservations.get_reservation(db.session, booking_id)
    if not is_owner(booking):
        return jsonify(error="Booking not found"), 404
    if booking.status != HELD:
        return jsonify(error=f"Booking is {booking.status}; only held bookings can be paid"), 409

    resource = booking.resource
    if not resource.requires_payment:
        return jsonify(error="This booking does not require payment"), 400

    success_url = os.getenv("STRIPE_SUCCESS_URL")
    cancel_url = os.getenv("STRIPE_CANCEL_URL")
    if not success_url or not cancel_url:
        return jsonify(error="Stripe success/cancel URLs not configured"), 500

    existing = Payment.query.filter_by(reservation_id=booking.id, status="PAID").first()
    if existing:
        return jsonify(error="Booking already paid"), 409

    # Stripe rejects session expiries less than 30 minutes out; the hold lives as long as the session
    checkout_minutes = max(31, current_app.config.get("CHECKOUT_TTL_MINUTES", 35))
    checkout_expires = datetime.now(timezone.utc) + timedelta(minutes=checkout_minutes)
    booking = reservations.extend_hold(db.session, booking.id, checkout_expires)

    amount = int(resource.price) * booking.capacity_consumed
    payment = Payment(
        reservation_id=booking.id,
        provider="STRIPE",
        amount=amount,
        currency=resource.currency,
        status="INIT",
    )
    db.session.add(payment)
    db.session.commit()

    cancel_url = _append_query(cancel_url, {"booking_id": str(booking.id), "payment_id": str(payment.id)})

    session = stripe.checkout.Session.create(
        mode="payment",
        line_items=[{
            "price_data": {
                "currency": resource.currency.lower(),
                "product_data": {"name": f"{resource.title} (Booking #{booking.id})"},
                "unit_amount": int(resource.price),
            },
            "quantity": booking.capacity_consumed,
        }],
        success_url=success_url,
        cancel_url=cancel_url,
        expires_at=int(checkout_expires.timestamp()),
        customer_email=booking.requester_email or None,
        metadata={
            "reservation_id": str(booking.id),
            "payment_id": str(payment.id),
            "identity": g.identity,
        },
    )

    payment.stripe_session_id = session["id"]
    db.session.commit()

    log_event("PAYMENT_SESSION_CREATED", entity="payment", entity_id=payment.id,
              metadata={"stripe_session_id": session["id"], "reservation_id": booking.id})
    return jsonify(checkout_url=session["url"], payment_id=payment.id), 200


@payments_bp.get("/cancel")
@identity_required
def cancel_payment():
    payment_id = request.args.get("payment_id", type=int)
    payment = db.session.get(Payment, payment_id) if payment_id else None
    if not payment:
        return jsonify(error="Payment not found"), 404

    booking = reservations.get_reservation(db.session, payment.reservation_id)
    if not is_owner(booking):
        return jsonify(error="Payment not found"), 404
    if payment.status == "PAID":
        return jsonify(error="Payment already confirmed"), 400

    payment.status = "FAILED"
    db.session.commit()

    # Abandoning checkout releases the held slot right away
    if booking.status == HELD:
        reservations.cancel(
            db.session,
            booking.id,
            admin_override=True,
            reason="payment_cancelled",
            waitlist_offer_ttl=waitlist_offer_ttl(),
            notifier=get_notifier(),
        )
    log_event("PAYMENT_CANCELLED", entity="payment", entity_id=payment.id, metadata={"reason": "user_cancelled"})
    return jsonify(message="Payment cancelled"), 200
