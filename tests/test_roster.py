"""Tests for the participant roster and its FIFO waitlist."""

from datetime import timedelta

import pytest

from conftest import NOW, at
from services import reservations, roster
from services.errors import InvalidTransition, NotFound, ValidationError


@pytest.fixture
def booking(session, room):
    """A two-seat hold in the Print Room."""
    return reservations.create_hold(
        session, room.id, at(12), at(13), capacity=2, requester="host@example.org", now=NOW,
    ).reservation


def statuses(session, booking_id):
    return [(p.identity, p.status) for p in roster.list_participants(session, booking_id)]


class TestAttach:
    def test_seats_until_full_then_waitlists(self, session, booking):
        for i, who in enumerate(["a", "b", "c", "d"]):
            roster.attach(session, booking.id, who, now=NOW + timedelta(minutes=i))
        assert statuses(session, booking.id) == [
            ("a", "registered"), ("b", "registered"), ("c", "waitlisted"), ("d", "waitlisted"),
        ]

    def test_attach_is_idempotent_per_identity(self, session, booking):
        first, created = roster.attach(session, booking.id, "a", email="a@example.org", now=NOW)
        again, created_again = roster.attach(session, booking.id, "a", now=NOW)
        assert created is True
        assert created_again is False
        assert again.id == first.id

    def test_confirm_marks_seated_participants_confirmed(self, session, booking):
        roster.attach(session, booking.id, "a", now=NOW)
        reservations.confirm(session, booking.id, now=NOW)
        assert statuses(session, booking.id) == [("a", "confirmed")]

    def test_cannot_join_cancelled_booking(self, session, booking):
        reservations.cancel(session, booking.id, admin_override=True, now=NOW)
        with pytest.raises(InvalidTransition):
            roster.attach(session, booking.id, "a", now=NOW)

    def test_cannot_join_finished_booking(self, session, booking):
        reservations.confirm(session, booking.id, now=NOW)
        with pytest.raises(InvalidTransition):
            roster.attach(session, booking.id, "late", now=at(14))
        session.refresh(booking)
        assert booking.status == "completed"
        assert statuses(session, booking.id) == []

    def test_unknown_booking(self, session):
        with pytest.raises(NotFound):
            roster.attach(session, 999, "a", now=NOW)

    def test_identity_required(self, session, booking):
        with pytest.raises(ValidationError):
            roster.attach(session, booking.id, "", now=NOW)


class TestDetach:
    def test_detach_promotes_oldest_waitlisted(self, session, booking):
        """Seats [A, B] with C waiting: removing A seats C."""
        for i, who in enumerate(["A", "B", "C"]):
            roster.attach(session, booking.id, who, now=NOW + timedelta(minutes=i))

        removed, promoted = roster.detach(session, booking.id, "A", now=NOW)

        assert removed.status == "cancelled"
        assert promoted.identity == "C"
        assert statuses(session, booking.id) == [("B", "registered"), ("C", "registered")]

    def test_promotion_follows_arrival_order(self, session, booking):
        for i, who in enumerate(["A", "B", "C", "D", "E"]):
            roster.attach(session, booking.id, who, now=NOW + timedelta(minutes=i))

        _, first = roster.detach(session, booking.id, "A", now=NOW)
        _, second = roster.detach(session, booking.id, "B", now=NOW)
        assert (first.identity, second.identity) == ("C", "D")
        assert statuses(session, booking.id) == [
            ("C", "registered"), ("D", "registered"), ("E", "waitlisted"),
        ]

    def test_removing_a_waitlisted_participant_promotes_nobody(self, session, booking):
        for i, who in enumerate(["A", "B", "C"]):
            roster.attach(session, booking.id, who, now=NOW + timedelta(minutes=i))
        _, promoted = roster.detach(session, booking.id, "C", now=NOW)
        assert promoted is None
        assert statuses(session, booking.id) == [("A", "registered"), ("B", "registered")]

    def test_unknown_participant(self, session, booking):
        with pytest.raises(NotFound):
            roster.detach(session, booking.id, "nobody", now=NOW)

    def test_rejoin_after_detach_creates_new_row(self, session, booking):
        first, _ = roster.attach(session, booking.id, "A", now=NOW)
        roster.detach(session, booking.id, "A", now=NOW)
        second, created = roster.attach(session, booking.id, "A", now=NOW)
        assert created is True
        assert second.id != first.id

    def test_list_can_include_cancelled(self, session, booking):
        roster.attach(session, booking.id, "A", now=NOW)
        roster.detach(session, booking.id, "A", now=NOW)
        assert roster.list_participants(session, booking.id) == []
        assert len(roster.list_participants(session, booking.id, include_cancelled=True)) == 1
