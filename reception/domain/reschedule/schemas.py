"""Reschedule request schemas"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...shared.timeutils import parse_iso

RescheduleStatus = Literal["pending", "options_sent", "confirmed", "handoff", "closed"]
StaffRescheduleStatus = Literal["handoff", "closed", "options_sent"]


class RescheduleRequestUpdate(BaseModel):
    """Staff partial update; only the supplied fields are applied"""

    status: Optional[StaffRescheduleStatus] = None
    note: Optional[str] = Field(default=None, max_length=400)
    assignee: Optional[str] = Field(default=None, max_length=120)
    slaDueAt: Optional[datetime] = None

    @field_validator("slaDueAt", mode="before")
    @classmethod
    def normalize_sla(cls, v):
        if v is None:
            return None
        parsed = parse_iso(v)
        if parsed is None:
            raise ValueError("slaDueAt must be an ISO-8601 timestamp")
        return parsed

    @model_validator(mode="after")
    def require_any_field(self):
        if not self.model_fields_set & {"status", "note", "assignee", "slaDueAt"}:
            raise ValueError("Provide at least one of status, note, assignee or slaDueAt")
        if "status" in self.model_fields_set and self.status is None:
            raise ValueError("status cannot be null")
        return self


class BookingSummary(BaseModel):
    id: int
    scheduledStart: datetime
    scheduledEnd: Optional[datetime] = None
    status: str


class CustomerSummary(BaseModel):
    id: int
    fullName: Optional[str] = None
    phone: str


class RescheduleRequestResponse(BaseModel):
    id: int
    bookingId: int
    customerId: Optional[int] = None
    conversationId: Optional[int] = None
    status: str
    requestedAt: datetime
    resolvedAt: Optional[datetime] = None
    assignedTo: Optional[str] = None
    assignedAt: Optional[datetime] = None
    slaDueAt: Optional[datetime] = None
    escalationLevel: int = 0
    lastEscalatedAt: Optional[datetime] = None
    latestCustomerMessage: Optional[str] = None
    optionBatch: int = 0
    selectedOptionIndex: Optional[int] = None
    selectedStart: Optional[datetime] = None
    selectedEnd: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)
    isOverdue: bool = False
    isEscalated: bool = False
    booking: Optional[BookingSummary] = None
    customer: Optional[CustomerSummary] = None


class RescheduleQueueResponse(BaseModel):
    requests: list[RescheduleRequestResponse]
    counts: dict[str, int]
    actionRequired: int
    overdue: int
