"""Reminder domain schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SweepCounts(BaseModel):
    seeded: int = 0
    due: int = 0
    sent: int = 0
    skipped: int = 0
    errored: int = 0


class SweepResult(BaseModel):
    userId: int
    dryRun: bool
    counts: SweepCounts = Field(default_factory=SweepCounts)
    notes: list[str] = Field(default_factory=list)


class ReminderRunRequest(BaseModel):
    userId: Optional[int] = None
    dryRun: bool = False
    limitUsers: int = Field(default=50, ge=1, le=200)


class ReminderRunResponse(BaseModel):
    dryRun: bool
    processedUsers: int
    totals: SweepCounts
    results: list[SweepResult]


class ReminderResponse(BaseModel):
    id: int
    bookingId: int
    reminderType: str
    scheduledFor: datetime
    status: str
    sentAt: Optional[datetime] = None
    twilioMessageSid: Optional[str] = None
    errorMessage: Optional[str] = None


class ReminderStatusResponse(BaseModel):
    pendingDue: int
    reminders: list[ReminderResponse]
