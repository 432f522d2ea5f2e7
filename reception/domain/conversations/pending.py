"""
Pending reschedule selection stored inside conversation metadata.

A conversation holds at most one pending selection under PENDING_KEY. New
options always replace the stored value wholesale. Helpers return new
metadata dicts rather than mutating the one they were given.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..scheduling.schemas import SlotOption
from ..scheduling.slot_finder import MAX_SLOT_COUNT

logger = logging.getLogger(__name__)

PENDING_KEY = "pendingReschedule"
PENDING_TTL = timedelta(minutes=60)


class PendingSelection(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_id: int
    options: list[SlotOption] = Field(max_length=MAX_SLOT_COUNT)
    batch: int = 1
    created_at: datetime
    expires_at: datetime
    invalid_attempts: int = 0

    @classmethod
    def create(cls, booking_id: int, options: list[SlotOption], batch: int, now: datetime) -> "PendingSelection":
        return cls(
            booking_id=booking_id,
            options=options,
            batch=batch,
            created_at=now,
            expires_at=now + PENDING_TTL,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def option(self, index: int) -> Optional[SlotOption]:
        return next((option for option in self.options if option.index == index), None)

    def last_offered_start(self) -> Optional[datetime]:
        if not self.options:
            return None
        return max(option.start for option in self.options)


def read_pending(metadata: Optional[dict]) -> Optional[PendingSelection]:
    raw = (metadata or {}).get(PENDING_KEY)
    if not raw:
        return None
    try:
        return PendingSelection.model_validate(raw)
    except ValidationError as e:
        # Unreadable state is treated as absent; the next write replaces it
        logger.warning(f"⚠️ Discarding malformed pending selection: {e.error_count()} error(s)")
        return None


def with_pending(metadata: Optional[dict], pending: PendingSelection) -> dict:
    updated = dict(metadata or {})
    updated[PENDING_KEY] = pending.model_dump(mode="json", by_alias=True)
    return updated


def without_pending(metadata: Optional[dict]) -> dict:
    updated = dict(metadata or {})
    updated.pop(PENDING_KEY, None)
    return updated
