"""Slot finder service - loads busy intervals and runs the slot search"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...shared.timeutils import resolve_timezone, utcnow
from ..bookings.repository import BookingRepository
from .schemas import SlotOption
from .slot_finder import (
    DEFAULT_HORIZON_DAYS,
    DEFAULT_POLICY,
    DEFAULT_SLOT_COUNT,
    BusinessHoursPolicy,
    BusyInterval,
    find_open_slots,
    intervals_overlap,
    search_bounds,
)

logger = logging.getLogger(__name__)

# Bookings starting this long before the search window can still overlap it
BUSY_LOOKBACK = timedelta(hours=24)


class SlotFinder:
    """Find open appointment windows for one business"""

    def __init__(
        self,
        db: Session,
        user_id: int,
        clock: Callable[[], datetime] = utcnow,
        policy: BusinessHoursPolicy = DEFAULT_POLICY,
    ):
        self.db = db
        self.user_id = user_id
        self.clock = clock
        self.policy = policy
        self.repo = BookingRepository()

    def busy_intervals(
        self, window_start: datetime, window_end: datetime, exclude_booking_id: Optional[int] = None
    ) -> list[BusyInterval]:
        bookings = self.repo.get_active_bookings_between(
            self.db, self.user_id, window_start - BUSY_LOOKBACK, window_end, exclude_booking_id
        )
        return [BusyInterval.from_booking(b.id, b.scheduled_start, b.scheduled_end) for b in bookings]

    def find_slots(
        self,
        duration_minutes,
        timezone: Optional[str],
        exclude_booking_id: Optional[int] = None,
        count: Optional[int] = DEFAULT_SLOT_COUNT,
        search_from: Optional[datetime] = None,
        horizon_days: Optional[int] = DEFAULT_HORIZON_DAYS,
    ) -> list[SlotOption]:
        now = self.clock()
        window_start, window_end = search_bounds(now, search_from, horizon_days)
        busy = self.busy_intervals(window_start, window_end, exclude_booking_id)

        slots = find_open_slots(
            duration_minutes,
            resolve_timezone(timezone),
            busy,
            now,
            search_from=search_from,
            count=count,
            horizon_days=horizon_days,
            exclude_booking_id=exclude_booking_id,
            policy=self.policy,
        )
        logger.info(
            f"🗓️ Slot search for user {self.user_id}: {len(slots)} option(s), "
            f"{len(busy)} busy interval(s), excluding booking {exclude_booking_id}"
        )
        return slots

    def is_slot_free(self, start: datetime, end: datetime, exclude_booking_id: Optional[int] = None) -> bool:
        """Re-check a previously offered window against the current calendar"""
        busy = self.busy_intervals(start, end, exclude_booking_id)
        return not any(intervals_overlap(start, end, b.start, b.end) for b in busy)
