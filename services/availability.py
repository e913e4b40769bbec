"""
Availability Calculator.

Derives open slots for a resource from its weekly windows, minus blackouts,
minus the (buffer padded) intervals of held and confirmed reservations.
Slot boundaries are computed as wall-clock times in the resource timezone
and only then converted to UTC instants, so a 12:00 window stays at 12:00
local on both sides of a daylight-saving change.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import select

from models.reservation import ACTIVE_STATUSES, CONFIRMED, HELD, Reservation
from services.errors import SlotUnavailable, ValidationError
from services.rules import MINUTES_PER_DAY, ROUND_ROBIN
from utils.timeutil import from_db, isoformat, to_db

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    host: str
    remaining_capacity: int

    def to_dict(self) -> dict:
        return {
            "start": isoformat(self.start),
            "end": isoformat(self.end),
            "host": self.host,
            "remaining_capacity": self.remaining_capacity,
        }


@dataclass(frozen=True)
class _Booked:
    id: int
    start: datetime
    end: datetime
    padded_start: datetime
    padded_end: datetime
    capacity: int
    host: Optional[str]
    status: str
    local_day: date


def localize(day: date, minute: int, tz) -> Optional[datetime]:
    """
    Wall-clock ``minute`` of local ``day`` as an aware UTC instant.
    Returns None when the wall-clock time does not exist (DST gap).
    """
    naive = datetime.combine(day, time()) + timedelta(minutes=minute)
    instant = naive.replace(tzinfo=tz).astimezone(timezone.utc)
    if instant.astimezone(tz).replace(tzinfo=None) != naive:
        return None
    return instant


def _local_midnight(day: date, tz) -> datetime:
    # Midnight can itself fall in a DST gap in a few zones; step forward to the first valid minute
    for minute in range(0, 180):
        instant = localize(day, minute, tz)
        if instant is not None:
            return instant
    return datetime.combine(day, time(), tzinfo=tz).astimezone(timezone.utc)


class AvailabilityCalculator:
    """
    One calculator instance works on one rules snapshot and one read of the
    resource's reservations. Build a fresh instance per query.
    """

    def __init__(self, session, resource, now: Optional[datetime] = None, exclude_reservation_id=None):
        self.session = session
        self.resource = resource
        self.rules = resource.rules()
        self.capacity = resource.capacity
        self.now = now or datetime.now(timezone.utc)
        self.exclude_reservation_id = exclude_reservation_id

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def validate_duration(self, minutes) -> timedelta:
        if minutes is None:
            minutes = self.rules.slot_minutes
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise ValidationError("duration must be a positive number of minutes")
        if minutes > MINUTES_PER_DAY:
            raise ValidationError("duration must be at most 24 hours")
        if not self.resource.allow_arbitrary_duration and minutes % self.rules.slot_minutes != 0:
            raise ValidationError(
                f"duration must be a multiple of {self.rules.slot_minutes} minutes",
                slot_minutes=self.rules.slot_minutes,
            )
        return timedelta(minutes=minutes)

    def slots(self, first_day: date, last_day: date, duration_minutes=None, capacity: int = 1) -> Iterator[Slot]:
        """
        Open slots between two local dates (inclusive), ascending by start.
        Input is validated eagerly; slots are produced lazily, one day at a time.
        """
        if last_day < first_day:
            raise ValidationError("end_date must not be before start_date")
        duration = self.validate_duration(duration_minutes)
        if capacity < 1 or capacity > self.capacity:
            raise ValidationError(f"capacity must be between 1 and {self.capacity}")
        return self._iter_slots(first_day, last_day, duration, capacity)

    def check(self, start: datetime, end: datetime, capacity: int = 1, preferred_host: Optional[str] = None) -> str:
        """
        Re-run the derivation for exactly [start, end).
        Returns the host to assign, or raises SlotUnavailable.
        """
        tz = self.rules.tz
        day = start.astimezone(tz).date()
        minutes = self._local_bounds(day, start, end)
        if minutes is None:
            raise SlotUnavailable("Requested interval is not an offered slot")
        start_minute, end_minute = minutes

        hosts = []
        weekday = day.weekday()
        for window in self.rules.windows:
            if not window.covers(weekday):
                continue
            if not (window.start_minute <= start_minute and end_minute <= window.end_minute):
                continue
            if not self.resource.allow_arbitrary_duration:
                if (start_minute - window.start_minute) % self.rules.slot_minutes != 0:
                    continue
            if any(b.covers_day(day, window.host) for b in self.rules.blackouts):
                continue
            if window.host not in hosts:
                hosts.append(window.host)
        if not hosts:
            raise SlotUnavailable("Requested interval is not an offered slot")

        day_start = _local_midnight(day, tz)
        day_end = _local_midnight(day + timedelta(days=1), tz)
        booked = self._load(min(start, day_start), max(end, day_end))
        active_counts, confirmed_counts = self._host_day_counts(day, booked)

        eligible = self._eligible_hosts(start, end, hosts, booked, active_counts)
        if not eligible:
            raise SlotUnavailable("No host is available for the requested interval")
        remaining = self.capacity - self._peak_load(start, end, booked)
        if remaining < capacity:
            raise SlotUnavailable(
                "Requested capacity is not available for this interval",
                remaining_capacity=max(remaining, 0),
            )
        if preferred_host and preferred_host in eligible:
            return preferred_host
        return self._pick_host(eligible, confirmed_counts)

    # ------------------------------------------------------------------
    # derivation
    # ------------------------------------------------------------------
    def _iter_slots(self, first_day, last_day, duration, capacity):
        if not self.rules.windows:
            return
        tz = self.rules.tz
        booked = self._load(_local_midnight(first_day, tz), _local_midnight(last_day + timedelta(days=1), tz))

        day = first_day
        while day <= last_day:
            yield from self._day_slots(day, duration, capacity, booked)
            day += timedelta(days=1)

    def _day_slots(self, day, duration, capacity, booked):
        weekday = day.weekday()
        candidates: Dict[Tuple[datetime, datetime], List[str]] = {}
        for window in self.rules.windows:
            if not window.covers(weekday):
                continue
            if any(b.covers_day(day, window.host) for b in self.rules.blackouts):
                continue
            for start, end in self._window_candidates(day, window, duration):
                hosts = candidates.setdefault((start, end), [])
                if window.host not in hosts:
                    hosts.append(window.host)

        if not candidates:
            return
        active_counts, confirmed_counts = self._host_day_counts(day, booked)

        for start, end in sorted(candidates):
            if start <= self.now:
                continue
            eligible = self._eligible_hosts(start, end, candidates[(start, end)], booked, active_counts)
            if not eligible:
                continue
            remaining = self.capacity - self._peak_load(start, end, booked)
            if remaining < capacity:
                continue
            yield Slot(
                start=start,
                end=end,
                host=self._pick_host(eligible, confirmed_counts),
                remaining_capacity=remaining,
            )

    def _window_candidates(self, day, window, duration):
        tz = self.rules.tz
        length = int(duration.total_seconds() // 60)
        minute = window.start_minute
        while minute + length <= window.end_minute:
            start = localize(day, minute, tz)
            end = localize(day, minute + length, tz)
            # Skip boundaries in a DST gap and slots stretched or squeezed by a DST change
            if start is not None and end is not None and end - start == duration:
                yield start, end
            minute += self.rules.slot_minutes

    def _local_bounds(self, day, start, end):
        tz = self.rules.tz
        local_start = start.astimezone(tz)
        local_end = end.astimezone(tz)
        if local_start.second or local_start.microsecond or local_end.second or local_end.microsecond:
            return None
        start_minute = local_start.hour * 60 + local_start.minute
        if local_end.date() == day:
            end_minute = local_end.hour * 60 + local_end.minute
        elif local_end.date() == day + timedelta(days=1) and local_end.time() == time():
            end_minute = MINUTES_PER_DAY
        else:
            return None
        if start_minute >= end_minute:
            return None
        if localize(day, start_minute, tz) != start or localize(day, end_minute, tz) != end:
            return None
        return start_minute, end_minute

    def _eligible_hosts(self, start, end, hosts, booked, active_counts):
        rules = self.rules
        tz = rules.tz
        eligible = []
        for host in hosts:
            if any(b.intersects(start, end, tz, host) for b in rules.blackouts):
                continue
            if rules.max_per_day_per_host is not None and active_counts.get(host, 0) >= rules.max_per_day_per_host:
                continue
            if rules.exclusive_hosts and self._host_busy(host, start, end, booked):
                continue
            eligible.append(host)
        return eligible

    def _pick_host(self, eligible, confirmed_counts):
        if self.rules.pooling_policy == ROUND_ROBIN:
            return min(eligible, key=lambda h: (confirmed_counts.get(h, 0), h))
        return eligible[0]

    @staticmethod
    def _host_busy(host, start, end, booked) -> bool:
        return any(
            b.host == host and b.padded_start < end and start < b.padded_end
            for b in booked
        )

    @staticmethod
    def _peak_load(start, end, booked) -> int:
        """Highest summed capacity of padded reservations at any instant of [start, end)."""
        events = []
        for b in booked:
            lo = max(b.padded_start, start)
            hi = min(b.padded_end, end)
            if lo < hi:
                events.append((lo, b.capacity))
                events.append((hi, -b.capacity))
        # Half-open intervals: a release at t sorts before a claim at t
        events.sort(key=lambda ev: (ev[0], ev[1]))
        load = peak = 0
        for _, delta in events:
            load += delta
            peak = max(peak, load)
        return peak

    @staticmethod
    def _host_day_counts(day, booked):
        active: Dict[str, int] = {}
        confirmed: Dict[str, int] = {}
        for b in booked:
            if b.local_day != day or not b.host:
                continue
            active[b.host] = active.get(b.host, 0) + 1
            if b.status == CONFIRMED:
                confirmed[b.host] = confirmed.get(b.host, 0) + 1
        return active, confirmed

    # ------------------------------------------------------------------
    # data access
    # ------------------------------------------------------------------
    def _load(self, range_start: datetime, range_end: datetime) -> List[_Booked]:
        rules = self.rules
        lo = range_start - rules.buffer_after
        hi = range_end + rules.buffer_before

        stmt = (
            select(Reservation)
            .where(
                Reservation.resource_id == self.resource.id,
                Reservation.status.in_(ACTIVE_STATUSES),
                Reservation.start_time < to_db(hi),
                Reservation.end_time > to_db(lo),
            )
            .execution_options(populate_existing=True)
        )
        rows = self.session.execute(stmt).scalars().all()

        tz = rules.tz
        booked = []
        for r in rows:
            if self.exclude_reservation_id is not None and r.id == self.exclude_reservation_id:
                continue
            # Expired holds are waiting for the reaper; they no longer claim capacity
            if r.status == HELD and r.hold_expires_at is not None and from_db(r.hold_expires_at) <= self.now:
                continue
            start, end = from_db(r.start_time), from_db(r.end_time)
            booked.append(_Booked(
                id=r.id,
                start=start,
                end=end,
                padded_start=start - rules.buffer_before,
                padded_end=end + rules.buffer_after,
                capacity=r.capacity_consumed,
                host=r.host_identifier,
                status=r.status,
                local_day=start.astimezone(tz).date(),
            ))
        logger.debug("Loaded %d active reservations for resource %s", len(booked), self.resource.id)
        return booked
