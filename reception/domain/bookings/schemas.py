"""Booking domain schemas"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...shared.timeutils import parse_iso

BookingStatus = Literal["pending", "confirmed", "completed", "cancelled", "rescheduled"]


class BookingUpdate(BaseModel):
    """Staff update of a booking's status, notes or timing"""

    status: Optional[BookingStatus] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    scheduledStart: Optional[datetime] = None
    scheduledEnd: Optional[datetime] = None

    @field_validator("scheduledStart", "scheduledEnd", mode="before")
    @classmethod
    def normalize_timestamp(cls, v):
        if v is None:
            return None
        parsed = parse_iso(v)
        if parsed is None:
            raise ValueError("Expected an ISO-8601 timestamp")
        return parsed

    @model_validator(mode="after")
    def require_any_field(self):
        if not self.model_fields_set & {"status", "notes", "scheduledStart", "scheduledEnd"}:
            raise ValueError("Provide at least one of status, notes, scheduledStart or scheduledEnd")
        if "status" in self.model_fields_set and self.status is None:
            raise ValueError("status cannot be null")
        if "scheduledStart" in self.model_fields_set and self.scheduledStart is None:
            raise ValueError("scheduledStart cannot be null")
        return self


class BookingResponse(BaseModel):
    id: int
    customerId: int
    serviceTypeId: Optional[int] = None
    scheduledStart: datetime
    scheduledEnd: Optional[datetime] = None
    status: str
    notes: Optional[str] = None
