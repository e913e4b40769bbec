from models.db import db
from utils.timeutil import utcnow

HELD = "held"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = (HELD, CONFIRMED)


class Reservation(db.Model):
    __tablename__ = "reservations"

    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey("resources.id"), nullable=False, index=True)

    requester_identity = db.Column(db.String(128), nullable=False, index=True)
    requester_email = db.Column(db.String(255), nullable=True)

    # naive UTC
    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, default=HELD, index=True)
    capacity_consumed = db.Column(db.Integer, nullable=False, default=1)
    host_identifier = db.Column(db.String(128), nullable=True)

    hold_expires_at = db.Column(db.DateTime, nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(120), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    # MeetingDetails
    meeting_url = db.Column(db.String(500), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Bumped to serialize roster changes on this reservation
    roster_version = db.Column(db.Integer, nullable=False, default=0)
    # iCalendar SEQUENCE; incremented on every reschedule
    sequence = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    resource = db.relationship("Resource", lazy="joined")
    reschedules = db.relationship(
        "RescheduleAudit",
        back_populates="reservation",
        order_by="RescheduleAudit.id",
        lazy="select",
    )

    __table_args__ = (
        db.CheckConstraint("start_time < end_time", name="ck_reservations_interval"),
        db.CheckConstraint("capacity_consumed >= 1", name="ck_reservations_capacity_positive"),
        db.Index("ix_reservations_resource_window", "resource_id", "status", "start_time", "end_time"),
    )

    @property
    def subject_reference(self) -> str:
        return f"reservation:{self.id}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class RescheduleAudit(db.Model):
    __tablename__ = "reservation_reschedules"

    id = db.Column(db.Integer, primary_key=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservations.id"), nullable=False, index=True)

    previous_start = db.Column(db.DateTime, nullable=False)
    previous_end = db.Column(db.DateTime, nullable=False)
    previous_host = db.Column(db.String(128), nullable=True)
    new_start = db.Column(db.DateTime, nullable=False)
    new_end = db.Column(db.DateTime, nullable=False)

    actor = db.Column(db.String(128), nullable=True)  # identity or "token"
    rescheduled_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    reservation = db.relationship("Reservation", back_populates="reschedules")
