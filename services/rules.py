"""
Availability rules document for a bookable resource.

The JSON stored on ``Resource.availability_rules`` is parsed into an immutable
``AvailabilityRules`` snapshot. A calculator works on one snapshot for the
whole query, so concurrent edits of the resource never change the rules half
way through a computation.

Document shape::

    {
        "timezone": "America/New_York",
        "slot_minutes": 30,
        "buffer_before_minutes": 0,
        "buffer_after_minutes": 15,
        "max_per_day_per_host": 6,
        "pooling_policy": "round_robin",
        "exclusive_hosts": true,
        "windows": [
            {"host": "mo@example.org", "days": ["Tuesday", "Wednesday"],
             "start": "12:00", "end": "16:00"}
        ],
        "blackouts": [
            {"date": "2030-12-25"},
            {"range": ["2030-07-01", "2030-07-14"], "host": "mo@example.org"},
            {"start": "2030-03-05T13:00:00-05:00", "end": "2030-03-05T14:00:00-05:00"}
        ]
    }
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from services.errors import ValidationError
from utils.timeutil import parse_instant

ROUND_ROBIN = "round_robin"
FIRST_AVAILABLE = "first_available"
POOLING_POLICIES = (ROUND_ROBIN, FIRST_AVAILABLE)

MINUTES_PER_DAY = 24 * 60

_DAY_LABELS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_DAY_LOOKUP = {}
for _index, _label in enumerate(_DAY_LABELS):
    _DAY_LOOKUP[_label.lower()] = _index
    _DAY_LOOKUP[_label[:3].lower()] = _index


def _parse_day(value) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid day {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ValueError(f"day index must be 0-6, got {value}")
    if isinstance(value, str) and value.strip().lower() in _DAY_LOOKUP:
        return _DAY_LOOKUP[value.strip().lower()]
    raise ValueError(f"invalid day {value!r}")


def _parse_clock(value) -> int:
    """'HH:MM' -> minutes since midnight. '24:00' is accepted as end of day."""
    if not isinstance(value, str):
        raise ValueError(f"invalid time {value!r}")
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid time {value!r}")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = int(parts[2]) if len(parts) == 3 else 0
    except ValueError:
        raise ValueError(f"invalid time {value!r}") from None
    if seconds != 0 or not (0 <= minutes < 60):
        raise ValueError(f"invalid time {value!r}")
    total = hours * 60 + minutes
    if not (0 <= total <= MINUTES_PER_DAY):
        raise ValueError(f"invalid time {value!r}")
    return total


def _format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_date(value) -> date:
    if not isinstance(value, str):
        raise ValueError(f"invalid date {value!r}")
    return date.fromisoformat(value.strip())


@dataclass(frozen=True)
class Window:
    host: str
    days: frozenset
    start_minute: int
    end_minute: int

    def covers(self, weekday: int) -> bool:
        return weekday in self.days

    def overlaps(self, other: "Window") -> bool:
        if self.host != other.host or not (self.days & other.days):
            return False
        return self.start_minute < other.end_minute and other.start_minute < self.end_minute

    def to_document(self) -> dict:
        return {
            "host": self.host,
            "days": [_DAY_LABELS[d] for d in sorted(self.days)],
            "start": _format_clock(self.start_minute),
            "end": _format_clock(self.end_minute),
        }


@dataclass(frozen=True)
class Blackout:
    host: Optional[str] = None
    first_day: Optional[date] = None
    last_day: Optional[date] = None
    start: Optional[datetime] = None  # aware UTC
    end: Optional[datetime] = None

    @property
    def is_instant_range(self) -> bool:
        return self.start is not None

    def applies_to(self, host: str) -> bool:
        return self.host is None or self.host == host

    def covers_day(self, day: date, host: str) -> bool:
        if self.is_instant_range or not self.applies_to(host):
            return False
        return self.first_day <= day <= self.last_day

    def intersects(self, start: datetime, end: datetime, tz, host: str) -> bool:
        if not self.applies_to(host):
            return False
        if self.is_instant_range:
            return start < self.end and self.start < end
        first_local = start.astimezone(tz).date()
        last_local = (end - timedelta(microseconds=1)).astimezone(tz).date()
        return first_local <= self.last_day and self.first_day <= last_local

    def to_document(self) -> dict:
        if self.is_instant_range:
            doc = {"start": self.start.isoformat(), "end": self.end.isoformat()}
        elif self.first_day == self.last_day:
            doc = {"date": self.first_day.isoformat()}
        else:
            doc = {"range": [self.first_day.isoformat(), self.last_day.isoformat()]}
        if self.host is not None:
            doc["host"] = self.host
        return doc


@dataclass(frozen=True)
class AvailabilityRules:
    timezone: str = "UTC"
    slot_minutes: int = 30
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    max_per_day_per_host: Optional[int] = None
    windows: Tuple[Window, ...] = ()
    blackouts: Tuple[Blackout, ...] = ()
    pooling_policy: str = ROUND_ROBIN
    exclusive_hosts: bool = True

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def buffer_before(self) -> timedelta:
        return timedelta(minutes=self.buffer_before_minutes)

    @property
    def buffer_after(self) -> timedelta:
        return timedelta(minutes=self.buffer_after_minutes)

    def hosts(self) -> List[str]:
        seen = []
        for window in self.windows:
            if window.host not in seen:
                seen.append(window.host)
        return seen

    def to_document(self) -> dict:
        return {
            "timezone": self.timezone,
            "slot_minutes": self.slot_minutes,
            "buffer_before_minutes": self.buffer_before_minutes,
            "buffer_after_minutes": self.buffer_after_minutes,
            "max_per_day_per_host": self.max_per_day_per_host,
            "pooling_policy": self.pooling_policy,
            "exclusive_hosts": self.exclusive_hosts,
            "windows": [w.to_document() for w in self.windows],
            "blackouts": [b.to_document() for b in self.blackouts],
        }

    @classmethod
    def from_document(cls, doc, default_exclusive_hosts: bool = True) -> "AvailabilityRules":
        """
        Parse and validate a rules document.
        Raises ValidationError listing every problem found.
        """
        if doc is None:
            doc = {}
        if not isinstance(doc, dict):
            raise ValidationError("availability_rules must be an object")

        errors: List[str] = []

        tz_name = doc.get("timezone") or "UTC"
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError, TypeError):
            errors.append(f"Unknown timezone {tz_name!r}")

        slot_minutes = _int_field(doc, errors, "slot_minutes", 30, minimum=1)
        if slot_minutes is not None and slot_minutes > MINUTES_PER_DAY:
            errors.append("slot_minutes must be at most 1440")
        buffer_before = _int_field(doc, errors, "buffer_before_minutes", 0, minimum=0, alias="buffer_before")
        buffer_after = _int_field(doc, errors, "buffer_after_minutes", 0, minimum=0, alias="buffer_after")
        max_per_day = _int_field(doc, errors, "max_per_day_per_host", None, minimum=1)

        pooling = doc.get("pooling_policy") or doc.get("pooling") or ROUND_ROBIN
        if pooling not in POOLING_POLICIES:
            errors.append(f"pooling_policy must be one of {', '.join(POOLING_POLICIES)}")

        exclusive = doc.get("exclusive_hosts")
        if exclusive is None:
            exclusive = default_exclusive_hosts
        elif not isinstance(exclusive, bool):
            errors.append("exclusive_hosts must be a boolean")

        windows = _parse_windows(doc.get("windows") or [], slot_minutes, errors)
        blackouts = _parse_blackouts(doc.get("blackouts") or doc.get("blackout_dates") or [], errors)

        if errors:
            raise ValidationError("Invalid availability rules", details=errors)

        return cls(
            timezone=tz_name,
            slot_minutes=slot_minutes,
            buffer_before_minutes=buffer_before,
            buffer_after_minutes=buffer_after,
            max_per_day_per_host=max_per_day,
            windows=tuple(windows),
            blackouts=tuple(blackouts),
            pooling_policy=pooling,
            exclusive_hosts=bool(exclusive),
        )


def _int_field(doc, errors, name, default, minimum=None, alias=None):
    value = doc.get(name)
    if value is None and alias:
        value = doc.get(alias)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{name} must be an integer")
        return default
    if minimum is not None and value < minimum:
        errors.append(f"{name} must be >= {minimum}")
        return default
    return value


def _parse_windows(raw, slot_minutes, errors) -> List[Window]:
    if not isinstance(raw, list):
        errors.append("windows must be a list")
        return []

    windows: List[Window] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            errors.append(f"windows[{i}] must be an object")
            continue
        host = item.get("host") or item.get("host_identifier")
        if not isinstance(host, str) or not host.strip():
            errors.append(f"windows[{i}].host is required")
            continue
        try:
            days = frozenset(_parse_day(d) for d in (item.get("days") or item.get("days_of_week") or []))
            start = _parse_clock(item.get("start") or item.get("start_time"))
            end = _parse_clock(item.get("end") or item.get("end_time"))
        except ValueError as exc:
            errors.append(f"windows[{i}]: {exc}")
            continue
        if not days:
            errors.append(f"windows[{i}].days must not be empty")
            continue
        if start >= end:
            errors.append(f"windows[{i}]: start must be before end")
            continue
        if slot_minutes and (end - start) % slot_minutes != 0:
            errors.append(f"windows[{i}]: slot_minutes ({slot_minutes}) must evenly divide the window length")
            continue
        windows.append(Window(host=host.strip(), days=days, start_minute=start, end_minute=end))

    for i, a in enumerate(windows):
        for b in windows[i + 1:]:
            if a.overlaps(b):
                errors.append(f"windows for host {a.host!r} overlap")
    return windows


def _parse_blackouts(raw, errors) -> List[Blackout]:
    if not isinstance(raw, list):
        errors.append("blackouts must be a list")
        return []

    blackouts: List[Blackout] = []
    for i, item in enumerate(raw):
        # Bare "YYYY-MM-DD" strings are accepted as single days
        if isinstance(item, str):
            item = {"date": item}
        if not isinstance(item, dict):
            errors.append(f"blackouts[{i}] must be an object")
            continue
        host = item.get("host")
        if host is not None and (not isinstance(host, str) or not host.strip()):
            errors.append(f"blackouts[{i}].host must be a non-empty string")
            continue
        host = host.strip() if host else None
        try:
            if "start" in item or "end" in item:
                start = parse_instant(item.get("start"))
                end = parse_instant(item.get("end"))
                if start >= end:
                    errors.append(f"blackouts[{i}]: start must be before end")
                    continue
                blackouts.append(Blackout(host=host, start=start, end=end))
            elif "range" in item:
                rng = item.get("range")
                if not isinstance(rng, list) or len(rng) != 2:
                    errors.append(f"blackouts[{i}].range must be [first_date, last_date]")
                    continue
                first, last = _parse_date(rng[0]), _parse_date(rng[1])
                if first > last:
                    errors.append(f"blackouts[{i}]: range is reversed")
                    continue
                blackouts.append(Blackout(host=host, first_day=first, last_day=last))
            elif "date" in item:
                day = _parse_date(item.get("date"))
                blackouts.append(Blackout(host=host, first_day=day, last_day=day))
            else:
                errors.append(f"blackouts[{i}] needs date, range or start/end")
        except ValueError as exc:
            errors.append(f"blackouts[{i}]: {exc}")
    return blackouts
