"""Tests for the periodic sweeper."""

from datetime import timedelta

from conftest import NOW, at, recorded_writes
from models.reservation import CANCELLED, COMPLETED, CONFIRMED, HELD, Reservation
from models.waitlist_entry import NOTIFIED
from services import reservations, sweeper, waitlist


class RecordingNotifier:
    def __init__(self):
        self.events = []
        self.offers = []

    def notify(self, event, reservation, **context):
        self.events.append((event, reservation.id))

    def notify_waitlist_offer(self, entry, resource):
        self.offers.append((entry.id, resource.id))


def hold(session, resource, start=None, end=None, requester="ana@example.org"):
    return reservations.create_hold(
        session, resource.id, start or at(12), end or at(12, 30), requester=requester, now=NOW,
    ).reservation


class TestReapExpiredHolds:
    def test_reaps_across_resources(self, session, studio, room):
        a = hold(session, studio)
        b = hold(session, room)
        notifier = RecordingNotifier()

        assert sweeper.reap_expired_holds(session, now=NOW + timedelta(minutes=15), notifier=notifier) == 2

        session.refresh(a)
        session.refresh(b)
        assert (a.status, b.status) == (CANCELLED, CANCELLED)
        assert sorted(notifier.events) == sorted([("cancelled", a.id), ("cancelled", b.id)])

    def test_confirmed_bookings_are_untouched(self, session, studio):
        booking = hold(session, studio)
        reservations.confirm(session, booking.id, now=NOW)
        assert sweeper.reap_expired_holds(session, now=NOW + timedelta(hours=1)) == 0
        session.refresh(booking)
        assert booking.status == CONFIRMED

    def test_reaped_capacity_goes_to_waitlist(self, session, studio):
        booking = hold(session, studio)
        entry = waitlist.join(session, studio.id, "ben@example.org", at(12), at(12, 30), email="ben@example.org", now=NOW)
        notifier = RecordingNotifier()

        sweeper.reap_expired_holds(session, now=NOW + timedelta(minutes=10), notifier=notifier)

        session.refresh(entry)
        assert entry.status == NOTIFIED
        assert notifier.offers == [(entry.id, studio.id)]
        assert notifier.events == [("cancelled", booking.id)]


class TestRunOnce:
    def test_completes_finished_bookings(self, session, studio):
        booking = hold(session, studio)
        reservations.confirm(session, booking.id, now=NOW)
        live = hold(session, studio, at(13), at(13, 30), requester="ben@example.org")

        summary = sweeper.run_once(session, now=at(12, 45))

        assert summary == {"reaped": 1, "completed": 1, "offers_expired": 0}
        session.refresh(booking)
        session.refresh(live)
        assert booking.status == COMPLETED
        assert booking.completed_at is not None
        assert live.status == CANCELLED

    def test_nothing_to_do(self, session, studio):
        hold(session, studio)
        assert sweeper.run_once(session, now=NOW) == {"reaped": 0, "completed": 0, "offers_expired": 0}
        assert session.query(Reservation).filter_by(status=HELD).count() == 1


class TestCompleteFinished:
    def test_takes_the_resource_lock_first(self, session, studio):
        booking = hold(session, studio)
        reservations.confirm(session, booking.id, now=NOW)

        writes = recorded_writes(lambda: sweeper.complete_finished(session, now=at(12, 45)))

        assert writes[0].startswith("UPDATE resources")
        session.refresh(booking)
        assert booking.status == COMPLETED

    def test_only_past_confirmed_bookings(self, session, studio, room):
        early = hold(session, studio)
        reservations.confirm(session, early.id, now=NOW)
        late = hold(session, room, at(14), at(15))
        reservations.confirm(session, late.id, now=NOW)

        assert sweeper.complete_finished(session, now=at(13)) == 1
        session.refresh(early)
        session.refresh(late)
        assert (early.status, late.status) == (COMPLETED, CONFIRMED)
