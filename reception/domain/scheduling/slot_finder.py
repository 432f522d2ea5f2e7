"""
Open-slot search.

Pure functions: the caller supplies the current instant, the business
timezone and the busy intervals. Candidate windows step forward in
half-hour increments from max(search_from, now + lead time), rounded up
to the next half-hour boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from ...models import DEFAULT_BOOKING_MINUTES
from ...shared.timeutils import format_schedule_label, to_local
from .schemas import SlotOption

LEAD_TIME = timedelta(hours=2)
SLOT_STEP = timedelta(minutes=30)
MAX_SEARCH_STEPS = 1500

DEFAULT_SLOT_COUNT = 3
MAX_SLOT_COUNT = 9
DEFAULT_HORIZON_DAYS = 21
MIN_HORIZON_DAYS = 3
MAX_HORIZON_DAYS = 45
MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 720

SUNDAY = 6


@dataclass(frozen=True)
class BusinessHoursPolicy:
    """Working window, evaluated in business-local time"""

    excluded_weekdays: frozenset = field(default_factory=lambda: frozenset({SUNDAY}))
    earliest_start_hour: int = 8
    latest_start_hour: int = 18
    latest_end: time = time(20, 0)

    def contains(self, start_local: datetime, end_local: datetime) -> bool:
        if start_local.weekday() in self.excluded_weekdays:
            return False
        if not self.earliest_start_hour <= start_local.hour <= self.latest_start_hour:
            return False
        # Windows never run past midnight
        if end_local.date() != start_local.date():
            return False
        return end_local.time() <= self.latest_end


DEFAULT_POLICY = BusinessHoursPolicy()


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    booking_id: Optional[int] = None

    @classmethod
    def from_booking(cls, booking_id: Optional[int], start: datetime, end: Optional[datetime]) -> "BusyInterval":
        if end is None or end <= start:
            end = start + timedelta(minutes=DEFAULT_BOOKING_MINUTES)
        return cls(start=start, end=end, booking_id=booking_id)


def normalize_duration(minutes) -> int:
    """Clamp a duration to [15, 720]; anything unusable becomes the 120-minute default"""
    try:
        value = int(round(float(minutes)))
    except (TypeError, ValueError):
        return DEFAULT_BOOKING_MINUTES
    if value <= 0:
        return DEFAULT_BOOKING_MINUTES
    return min(MAX_DURATION_MINUTES, max(MIN_DURATION_MINUTES, value))


def normalize_count(count: Optional[int]) -> int:
    if not count or count < 1:
        return DEFAULT_SLOT_COUNT
    return min(MAX_SLOT_COUNT, int(count))


def normalize_horizon(days: Optional[int]) -> int:
    if not days or days < 1:
        return DEFAULT_HORIZON_DAYS
    return min(MAX_HORIZON_DAYS, max(MIN_HORIZON_DAYS, int(days)))


def ceil_to_half_hour(value: datetime) -> datetime:
    floored = value.replace(minute=(value.minute // 30) * 30, second=0, microsecond=0)
    if floored == value:
        return value
    return floored + SLOT_STEP


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap test; touching intervals do not overlap"""
    return start_a < end_b and end_a > start_b


def search_bounds(now: datetime, search_from: Optional[datetime], horizon_days: Optional[int]) -> tuple[datetime, datetime]:
    earliest = now + LEAD_TIME
    start = search_from if search_from and search_from > earliest else earliest
    start = ceil_to_half_hour(start)
    return start, start + timedelta(days=normalize_horizon(horizon_days))


def find_open_slots(
    duration_minutes,
    tz: ZoneInfo,
    busy: Iterable[BusyInterval],
    now: datetime,
    search_from: Optional[datetime] = None,
    count: Optional[int] = DEFAULT_SLOT_COUNT,
    horizon_days: Optional[int] = DEFAULT_HORIZON_DAYS,
    exclude_booking_id: Optional[int] = None,
    policy: BusinessHoursPolicy = DEFAULT_POLICY,
) -> list[SlotOption]:
    """
    Return up to ``count`` windows inside business hours that avoid every busy interval.

    All datetimes are naive UTC. An empty list means no availability within
    the horizon; it is not an error.
    """
    duration = timedelta(minutes=normalize_duration(duration_minutes))
    wanted = normalize_count(count)
    start, end_of_search = search_bounds(now, search_from, horizon_days)

    blocking = [
        interval
        for interval in busy
        if exclude_booking_id is None or interval.booking_id != exclude_booking_id
    ]

    slots: list[SlotOption] = []
    candidate = start
    steps = 0
    while candidate < end_of_search and len(slots) < wanted and steps < MAX_SEARCH_STEPS:
        steps += 1
        candidate_end = candidate + duration

        if policy.contains(to_local(candidate, tz), to_local(candidate_end, tz)) and not any(
            intervals_overlap(candidate, candidate_end, b.start, b.end) for b in blocking
        ):
            slots.append(
                SlotOption(
                    index=len(slots) + 1,
                    start=candidate,
                    end=candidate_end,
                    label=format_schedule_label(candidate, tz),
                )
            )

        candidate += SLOT_STEP

    return slots
