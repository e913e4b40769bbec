"""Tests for the availability calculator."""

from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import NOW, STUDIO_RULES, TUESDAY, at, make_resource
from services import reservations
from services.availability import AvailabilityCalculator
from services.errors import SlotUnavailable, ValidationError

UTC = timezone.utc


def slots_for(session, resource, first=TUESDAY, last=None, now=NOW, **kwargs):
    calc = AvailabilityCalculator(session, resource, now=now)
    return list(calc.slots(first, last or first, **kwargs))


def hold(session, resource, start, end, requester="ana@example.org", capacity=1, now=NOW):
    return reservations.create_hold(
        session, resource.id, start, end, capacity=capacity, requester=requester, now=now,
    ).reservation


class TestWeeklyWindows:
    """Slots derived from the weekly windows."""

    def test_tuesday_has_eight_half_hour_slots(self, session, studio):
        """Remote Studio Visit offers 12:00-16:00 New York time in 30 minute slots."""
        slots = slots_for(session, studio)
        assert len(slots) == 8
        assert slots[0].start == at(12) and slots[0].end == at(12, 30)
        assert slots[-1].start == at(15, 30) and slots[-1].end == at(16)
        assert all(s.host == "mo@example.org" for s in slots)
        assert [s.start for s in slots] == sorted(s.start for s in slots)

    def test_holding_a_slot_removes_it(self, session, studio):
        hold(session, studio, at(12), at(12, 30))
        slots = slots_for(session, studio)
        assert len(slots) == 7
        assert at(12) not in [s.start for s in slots]

    def test_no_slots_outside_window_days(self, session, studio):
        monday = date(2030, 1, 7)
        assert slots_for(session, studio, first=monday) == []

    def test_multi_day_range(self, session, studio):
        # Tue, Wed, Thu open; Fri closed
        slots = slots_for(session, studio, first=TUESDAY, last=date(2030, 1, 11))
        assert len(slots) == 24

    def test_longer_duration_steps_by_slot_length(self, session, studio):
        slots = slots_for(session, studio, duration_minutes=60)
        assert [s.start for s in slots] == [at(12), at(12, 30), at(13), at(13, 30), at(14), at(14, 30), at(15)]

    def test_duration_must_be_multiple_of_slot_length(self, session, studio):
        with pytest.raises(ValidationError):
            slots_for(session, studio, duration_minutes=45)

    def test_arbitrary_duration_when_allowed(self, session):
        resource = make_resource(session, allow_arbitrary_duration=True)
        slots = slots_for(session, resource, duration_minutes=45)
        assert slots[0].end - slots[0].start == timedelta(minutes=45)

    def test_reversed_date_range_rejected(self, session, studio):
        with pytest.raises(ValidationError):
            slots_for(session, studio, first=TUESDAY, last=date(2030, 1, 7))

    def test_started_slots_are_not_offered(self, session, studio):
        slots = slots_for(session, studio, now=at(13))
        assert slots[0].start == at(13, 30)
        assert len(slots) == 5

    def test_slots_are_produced_lazily(self, session, studio):
        calc = AvailabilityCalculator(session, studio, now=NOW)
        iterator = calc.slots(TUESDAY, TUESDAY + timedelta(days=365))
        assert next(iterator).start == at(12)


class TestDaylightSaving:
    """Slot boundaries stay on wall-clock time across DST changes."""

    def test_noon_shifts_utc_offset_after_spring_forward(self, session, studio):
        # 2030-03-12 is a Tuesday after DST began on 2030-03-10 (EDT, UTC-4)
        slots = slots_for(session, studio, first=date(2030, 3, 12))
        assert slots[0].start == datetime(2030, 3, 12, 16, 0, tzinfo=UTC)
        assert len(slots) == 8

    def test_nonexistent_local_times_are_skipped(self, session):
        rules = dict(STUDIO_RULES, windows=[{"host": "h", "days": ["Sunday"], "start": "01:00", "end": "04:00"}])
        resource = make_resource(session, availability_rules=rules)
        slots = slots_for(session, resource, first=date(2030, 3, 10))
        # 02:00-03:00 does not exist that night; 01:30-02:00 ends inside the gap
        assert [s.start for s in slots] == [
            datetime(2030, 3, 10, 6, 0, tzinfo=UTC),
            datetime(2030, 3, 10, 7, 0, tzinfo=UTC),
            datetime(2030, 3, 10, 7, 30, tzinfo=UTC),
        ]


class TestBlackouts:
    """Blackouts remove days or instants."""

    def test_full_day_blackout(self, session):
        rules = dict(STUDIO_RULES, blackouts=[{"date": "2030-01-08"}])
        resource = make_resource(session, availability_rules=rules)
        assert slots_for(session, resource) == []
        assert len(slots_for(session, resource, first=date(2030, 1, 9))) == 8

    def test_instant_blackout_removes_overlapping_slots(self, session):
        rules = dict(STUDIO_RULES, blackouts=[{"start": "2030-01-08T12:00:00-05:00", "end": "2030-01-08T13:00:00-05:00"}])
        resource = make_resource(session, availability_rules=rules)
        slots = slots_for(session, resource)
        assert len(slots) == 6
        assert slots[0].start == at(13)

    def test_host_blackout_only_affects_that_host(self, session):
        rules = dict(
            STUDIO_RULES,
            windows=[
                {"host": "a", "days": ["Tue"], "start": "12:00", "end": "13:00"},
                {"host": "b", "days": ["Tue"], "start": "12:00", "end": "13:00"},
            ],
            blackouts=[{"date": "2030-01-08", "host": "a"}],
        )
        resource = make_resource(session, availability_rules=rules, capacity=2)
        slots = slots_for(session, resource)
        assert len(slots) == 2
        assert {s.host for s in slots} == {"b"}


class TestCapacityAndBuffers:
    """Existing reservations, capacity and buffer padding."""

    def test_buffer_after_blocks_following_slot(self, session):
        rules = dict(STUDIO_RULES, buffer_after_minutes=30)
        resource = make_resource(session, availability_rules=rules)
        hold(session, resource, at(13), at(13, 30))
        starts = [s.start for s in slots_for(session, resource)]
        assert at(13) not in starts
        assert at(13, 30) not in starts
        # 12:30-13:00 ends exactly where the padded reservation starts
        assert at(12, 30) in starts

    def test_buffer_before_blocks_preceding_slot(self, session):
        rules = dict(STUDIO_RULES, buffer_before_minutes=15)
        resource = make_resource(session, availability_rules=rules)
        hold(session, resource, at(13), at(13, 30))
        starts = [s.start for s in slots_for(session, resource)]
        assert at(12, 30) not in starts
        assert at(13, 30) in starts

    def test_shared_space_reports_remaining_capacity(self, session, room):
        hold(session, room, at(12), at(12, 30), capacity=2)
        first = slots_for(session, room)[0]
        assert first.start == at(12)
        assert first.remaining_capacity == 1

    def test_slot_without_requested_capacity_is_omitted(self, session, room):
        hold(session, room, at(12), at(12, 30), capacity=2)
        starts = [s.start for s in slots_for(session, room, capacity=2)]
        assert at(12) not in starts
        assert at(12, 30) in starts

    def test_capacity_above_resource_capacity_rejected(self, session, studio):
        with pytest.raises(ValidationError):
            slots_for(session, studio, capacity=2)

    def test_expired_holds_no_longer_block(self, session, studio):
        hold(session, studio, at(12), at(12, 30))
        slots = slots_for(session, studio, now=NOW + timedelta(minutes=11))
        assert at(12) in [s.start for s in slots]


class TestHostPooling:
    """Host assignment across pooled windows."""

    @pytest.fixture
    def pooled(self, session):
        rules = dict(
            STUDIO_RULES,
            windows=[
                {"host": "b", "days": ["Tue"], "start": "12:00", "end": "16:00"},
                {"host": "a", "days": ["Tue"], "start": "12:00", "end": "16:00"},
            ],
        )
        return make_resource(session, title="Portfolio Review", availability_rules=rules, capacity=2)

    def test_round_robin_ties_go_to_smallest_host(self, session, pooled):
        assert slots_for(session, pooled)[0].host == "a"

    def test_round_robin_prefers_host_with_fewer_confirmed_bookings(self, session, pooled):
        booking = hold(session, pooled, at(12), at(12, 30))
        assert booking.host_identifier == "a"
        reservations.confirm(session, booking.id, now=NOW)

        slots = slots_for(session, pooled)
        by_start = {s.start: s for s in slots}
        # 12:00 is still open for the other host
        assert by_start[at(12)].host == "b"
        assert by_start[at(13)].host == "b"

    def test_first_available_follows_window_order(self, session):
        rules = dict(
            STUDIO_RULES,
            pooling_policy="first_available",
            windows=[
                {"host": "b", "days": ["Tue"], "start": "12:00", "end": "16:00"},
                {"host": "a", "days": ["Tue"], "start": "12:00", "end": "16:00"},
            ],
        )
        resource = make_resource(session, availability_rules=rules, capacity=2)
        assert slots_for(session, resource)[0].host == "b"

    def test_exclusive_host_is_not_double_booked(self, session, pooled):
        hold(session, pooled, at(12), at(12, 30), requester="one@example.org")
        hold(session, pooled, at(12), at(12, 30), requester="two@example.org")
        assert at(12) not in [s.start for s in slots_for(session, pooled)]

    def test_max_per_day_per_host(self, session):
        rules = dict(STUDIO_RULES, max_per_day_per_host=1)
        resource = make_resource(session, availability_rules=rules)
        hold(session, resource, at(12), at(12, 30))
        assert slots_for(session, resource) == []
        assert len(slots_for(session, resource, first=date(2030, 1, 9))) == 8


class TestCheck:
    """Point checks used by holds and reschedules."""

    def test_offered_slot_returns_host(self, session, studio):
        calc = AvailabilityCalculator(session, studio, now=NOW)
        assert calc.check(at(12), at(12, 30)) == "mo@example.org"

    @pytest.mark.parametrize("start,end", [
        (at(12, 10), at(12, 40)),   # off the slot grid
        (at(11, 30), at(12)),       # before the window
        (at(15, 30), at(16, 30)),   # runs past the window
        (at(12, day=7), at(12, 30, day=7)),  # Monday
    ])
    def test_intervals_outside_the_offer_are_unavailable(self, session, studio, start, end):
        calc = AvailabilityCalculator(session, studio, now=NOW)
        with pytest.raises(SlotUnavailable):
            calc.check(start, end)

    def test_full_interval_is_unavailable(self, session, studio):
        hold(session, studio, at(12), at(13))
        calc = AvailabilityCalculator(session, studio, now=NOW)
        with pytest.raises(SlotUnavailable):
            calc.check(at(12, 30), at(13))
