"""
Notification Dispatcher.

Sends the booking emails (with an .ics attachment) after a lifecycle
transition has committed. Delivery is fire-and-forget: failures are logged
and never reach the caller, whose transaction is already final.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from flask import current_app

from services import ics
from utils.emailer import send_email
from utils.timeutil import from_db

logger = logging.getLogger(__name__)

EXTENSION_KEY = "booking_notifier"

SUBJECTS = {
    "created": "Booking request received: {title}",
    "confirmed": "Booking confirmed: {title}",
    "rescheduled": "Booking rescheduled: {title}",
    "cancelled": "Booking cancelled: {title}",
}


@dataclass(frozen=True)
class WaitlistOffer:
    entry_id: int
    resource_id: int
    resource_title: str
    identity: str
    email: Optional[str]
    start: datetime
    end: datetime
    expires_at: Optional[datetime]


class Notifier:
    def __init__(self, app=None):
        self.app = None
        self._executor = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        if app.config.get("NOTIFY_ASYNC", True):
            self._executor = ThreadPoolExecutor(
                max_workers=int(app.config.get("NOTIFY_WORKERS", 2)),
                thread_name_prefix="notify",
            )
        app.extensions[EXTENSION_KEY] = self

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # ------------------------------------------------------------------
    # entry points (called after commit)
    # ------------------------------------------------------------------
    def notify(self, event: str, reservation, tokens: Optional[Dict[str, str]] = None, previous=None):
        try:
            snapshot = ics.BookingSnapshot.from_reservation(reservation)
        except Exception:
            logger.exception("Could not snapshot reservation for %s notification", event)
            return
        self._submit(self._deliver_booking, event, snapshot, dict(tokens or {}), previous)

    def notify_waitlist_offer(self, entry, resource):
        try:
            offer = WaitlistOffer(
                entry_id=entry.id,
                resource_id=resource.id,
                resource_title=resource.title,
                identity=entry.identity,
                email=entry.email,
                start=from_db(entry.requested_start),
                end=from_db(entry.requested_end),
                expires_at=from_db(entry.expires_at),
            )
        except Exception:
            logger.exception("Could not snapshot waitlist entry for slot_available notification")
            return
        self._submit(self._deliver_offer, offer)

    # ------------------------------------------------------------------
    # delivery
    # ------------------------------------------------------------------
    def _submit(self, fn, *args):
        if self._executor is not None:
            try:
                self._executor.submit(self._run, fn, *args)
                return
            except RuntimeError:
                logger.warning("Notification pool is shut down; delivering inline")
        self._run(fn, *args)

    def _run(self, fn, *args):
        try:
            if self.app is not None:
                with self.app.app_context():
                    fn(*args)
            else:
                fn(*args)
        except Exception:
            logger.exception("Notification delivery failed")

    def _config(self, key, default=None):
        return current_app.config.get(key, default)

    def _manage_url(self, booking_id: int) -> Optional[str]:
        base = (self._config("PUBLIC_BASE_URL") or "").rstrip("/")
        if not base:
            return None
        return f"{base}/bookings/{booking_id}"

    def _deliver_booking(self, event: str, snapshot: ics.BookingSnapshot, tokens: Dict[str, str], previous):
        if not snapshot.requester_email:
            logger.info("Reservation %s has no email on file; %s notification skipped", snapshot.id, event)
            return

        org = self._config("ORGANIZATION_NAME", "Studio Bookings")
        manage_url = self._manage_url(snapshot.id)
        calendar = ics.build_calendar(
            snapshot,
            organization_name=org,
            domain=self._config("CALENDAR_DOMAIN"),
            url=manage_url,
        )

        lines = [
            f"Hello {snapshot.requester_identity},",
            "",
            f"{snapshot.resource_title}: {snapshot.start.isoformat()} to {snapshot.end.isoformat()}",
        ]
        if event == "created":
            lines.append("Your request is on hold and will be confirmed shortly.")
        elif event == "rescheduled" and previous:
            lines.append(f"Previously: {previous[0].isoformat()} to {previous[1].isoformat()}")
        elif event == "cancelled":
            lines.append("This booking has been cancelled.")
        if snapshot.meeting_url:
            lines.append(f"Join: {snapshot.meeting_url}")
        if manage_url:
            for purpose, token in sorted(tokens.items()):
                lines.append(f"{purpose.capitalize()}: {manage_url}/{purpose}?token={token}")
        lines.extend(["", org])

        subject = SUBJECTS.get(event, "Booking update: {title}").format(title=snapshot.resource_title)
        ok, error = send_email(
            snapshot.requester_email,
            subject,
            "\n".join(lines),
            attachments=[(ics.filename(snapshot), calendar, "text/calendar")],
        )
        if ok:
            logger.info("Sent %s notification for reservation %s", event, snapshot.id)
        else:
            logger.warning("%s notification for reservation %s not sent: %s", event, snapshot.id, error)

    def _deliver_offer(self, offer: WaitlistOffer):
        if not offer.email:
            logger.info("Waitlist entry %s has no email on file; offer not sent", offer.entry_id)
            return
        org = self._config("ORGANIZATION_NAME", "Studio Bookings")
        lines = [
            f"Hello {offer.identity},",
            "",
            f"A spot opened up on {offer.resource_title}: {offer.start.isoformat()} to {offer.end.isoformat()}.",
            "Book it before someone else does.",
        ]
        if offer.expires_at:
            lines.append(f"This offer lapses at {offer.expires_at.isoformat()}.")
        lines.extend(["", org])

        ok, error = send_email(offer.email, f"A spot opened up: {offer.resource_title}", "\n".join(lines))
        if not ok:
            logger.warning("Waitlist offer %s not sent: %s", offer.entry_id, error)


def get_notifier(app=None) -> Optional[Notifier]:
    app = app or current_app
    return app.extensions.get(EXTENSION_KEY)
