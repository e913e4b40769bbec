import logging
import os
from datetime import timedelta

import stripe
from flask import Blueprint, request, jsonify, current_app

from models import db
from models.payment import Payment
from models.reservation import HELD
from services import reservations
from services.errors import InvalidTransition
from services.notifications import get_notifier
from utils.audit import log_event
from utils.timeutil import utcnow

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


def _find_payment(session_obj):
    meta = session_obj.get("metadata", {}) or {}
    payment_id = meta.get("payment_id")
    payment = None
    if payment_id:
        payment = db.session.get(Payment, int(payment_id))
    if not payment and session_obj.get("id"):
        payment = Payment.query.filter_by(stripe_session_id=session_obj.get("id")).first()
    return payment


@webhook_bp.post("/stripe")
def stripe_webhook():
    endpoint_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.data

    if not endpoint_secret:
        return jsonify(error="Webhook secret not configured"), 500

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except Exception:
        return jsonify(error="Invalid webhook signature"), 400

    event_type = event.get("type")
    if event_type not in ("checkout.session.completed", "checkout.session.expired"):
        return jsonify(received=True), 200

    session_obj = event["data"]["object"]
    session_id = session_obj.get("id")
    payment = _find_payment(session_obj)
    if payment is None:
        logger.warning("Stripe session %s does not match any payment", session_id)
        return jsonify(received=True), 200

    notifier = get_notifier()
    token_ttl = timedelta(hours=current_app.config.get("TOKEN_TTL_HOURS", 24 * 30))

    if event_type == "checkout.session.completed":
        if payment.status != "PAID":
            payment.status = "PAID"
            payment.paid_at = utcnow()
            db.session.commit()
            try:
                reservations.confirm(db.session, payment.reservation_id, token_ttl=token_ttl, notifier=notifier)
            except InvalidTransition as exc:
                # Paid after the hold lapsed; the slot was released and needs a manual refund
                logger.warning("Payment %s settled for reservation %s which could not be confirmed: %s",
                               payment.id, payment.reservation_id, exc)
                log_event("PAYMENT_ORPHANED", entity="payment", entity_id=payment.id,
                          metadata={"stripe_session_id": session_id, "reservation_id": payment.reservation_id})
                return jsonify(received=True), 200
            log_event("PAYMENT_PAID", entity="payment", entity_id=payment.id,
                      metadata={"stripe_session_id": session_id, "reservation_id": payment.reservation_id})
    else:
        if payment.status != "PAID":
            payment.status = "FAILED"
            db.session.commit()
            booking = reservations.get_reservation(db.session, payment.reservation_id)
            if booking.status == HELD:
                reservations.cancel(
                    db.session,
                    booking.id,
                    admin_override=True,
                    reason="payment_expired",
                    waitlist_offer_ttl=timedelta(minutes=current_app.config.get("WAITLIST_OFFER_MINUTES", 120)),
                    notifier=notifier,
                )
            log_event("PAYMENT_EXPIRED", entity="payment", entity_id=payment.id,
                      metadata={"stripe_session_id": session_id, "reservation_id": payment.reservation_id})

    return jsonify(received=True), 200
