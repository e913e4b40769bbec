"""
iCalendar (RFC 5545) documents for booking emails and downloads.

Builders take a BookingSnapshot, a plain copy of the reservation, so they
can run on the notification thread pool without touching the session.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from models.reservation import CANCELLED, CONFIRMED, HELD
from utils.timeutil import from_db

PRODID = "-//Studio Bookings//Reservation Calendar//EN"

_STATUS = {HELD: "TENTATIVE", CONFIRMED: "CONFIRMED", CANCELLED: "CANCELLED"}


@dataclass(frozen=True)
class BookingSnapshot:
    id: int
    resource_id: int
    resource_title: str
    location: Optional[str]
    status: str
    start: datetime
    end: datetime
    requester_identity: str
    requester_email: Optional[str]
    host: Optional[str]
    meeting_url: Optional[str]
    notes: Optional[str]
    sequence: int

    @classmethod
    def from_reservation(cls, reservation) -> "BookingSnapshot":
        resource = reservation.resource
        return cls(
            id=reservation.id,
            resource_id=reservation.resource_id,
            resource_title=resource.title if resource is not None else "Booking",
            location=resource.location if resource is not None else None,
            status=reservation.status,
            start=from_db(reservation.start_time),
            end=from_db(reservation.end_time),
            requester_identity=reservation.requester_identity,
            requester_email=reservation.requester_email,
            host=reservation.host_identifier,
            meeting_url=reservation.meeting_url,
            notes=reservation.notes,
            sequence=reservation.sequence or 0,
        )


def _stamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _escape(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def _param(value: str) -> str:
    # Parameter values are DQUOTE-wrapped when they hold : ; or , and may not contain DQUOTE or controls
    value = re.sub(r'[\x00-\x1f\x7f"]', "", value)
    return f'"{value}"' if re.search(r"[:;,]", value) else value


def _fold(line: str) -> str:
    # Content lines are limited to 75 octets; continuation lines start with a space
    raw = line.encode("utf-8")
    if len(raw) <= 75:
        return line
    parts = []
    current = ""
    size = 0
    limit = 75
    for ch in line:
        width = len(ch.encode("utf-8"))
        if size + width > limit:
            parts.append(current)
            current, size, limit = "", 0, 74
        current += ch
        size += width
    parts.append(current)
    return "\r\n ".join(parts)


def _domain(organization_name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", organization_name.lower()) + ".org"


def build_calendar(snapshot: BookingSnapshot, organization_name: str, domain: Optional[str] = None,
                   url: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """One VEVENT calendar. Cancelled bookings produce a METHOD:CANCEL update for the same UID."""
    now = now or datetime.now(timezone.utc)
    domain = domain or _domain(organization_name)
    cancelled = snapshot.status == CANCELLED

    summary = snapshot.resource_title
    if cancelled:
        summary = f"[CANCELLED] {summary}"

    description = [f"Booking #{snapshot.id} with {organization_name}"]
    if snapshot.host:
        description.append(f"Host: {snapshot.host}")
    if snapshot.meeting_url:
        description.append(f"Join: {snapshot.meeting_url}")
    if snapshot.notes:
        description.append("")
        description.append(snapshot.notes)
    if url:
        description.append("")
        description.append(f"Manage: {url}")

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        f"METHOD:{'CANCEL' if cancelled else 'PUBLISH'}",
        "BEGIN:VEVENT",
        f"UID:reservation-{snapshot.id}@{domain}",
        f"DTSTAMP:{_stamp(now)}",
        f"DTSTART:{_stamp(snapshot.start)}",
        f"DTEND:{_stamp(snapshot.end)}",
        f"SEQUENCE:{snapshot.sequence}",
        f"SUMMARY:{_escape(summary)}",
        f"DESCRIPTION:{_escape(chr(10).join(description))}",
        f"STATUS:{_STATUS.get(snapshot.status, 'CONFIRMED')}",
        "TRANSP:OPAQUE",
        f"ORGANIZER;CN={_param(organization_name)}:mailto:bookings@{domain}",
    ]
    location = snapshot.meeting_url or snapshot.location
    if location:
        lines.append(f"LOCATION:{_escape(location)}")
    if url:
        lines.append(f"URL:{url}")
    if not cancelled:
        for trigger, label in (("-PT24H", "24 hours"), ("-PT1H", "1 hour")):
            lines.extend([
                "BEGIN:VALARM",
                f"TRIGGER:{trigger}",
                "ACTION:DISPLAY",
                f"DESCRIPTION:{_escape(snapshot.resource_title)} reminder - {label}",
                "END:VALARM",
            ])
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    return "\r\n".join(_fold(line) for line in lines) + "\r\n"


def filename(snapshot: BookingSnapshot) -> str:
    title = re.sub(r"[^a-z0-9\s]", "", snapshot.resource_title.lower())
    title = re.sub(r"\s+", "-", title.strip())[:30] or "booking"
    kind = "cancellation" if snapshot.status == CANCELLED else "booking"
    return f"{title}-{snapshot.start.strftime('%Y-%m-%d')}-{kind}.ics"
