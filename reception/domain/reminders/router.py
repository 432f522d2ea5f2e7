"""Reminder router - sweep trigger and reminder status"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ...auth import get_current_user, resolve_user, security
from ...database import get_db
from ...models import User
from ...shared.timeutils import utcnow
from ...webhook_security import verify_cron_secret
from .repository import ReminderStore
from .schemas import ReminderResponse, ReminderRunRequest, ReminderRunResponse, ReminderStatusResponse
from .service import list_reminder_users, run_sweeps

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reception/reminders", tags=["Reminders"])


@dataclass
class SweepCaller:
    is_cron: bool
    user: Optional[User] = None


async def get_sweep_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> SweepCaller:
    """Cron jobs authenticate with X-Cron-Secret; staff with a bearer token"""
    if verify_cron_secret(request.headers.get("X-Cron-Secret")):
        return SweepCaller(is_cron=True)
    if credentials:
        return SweepCaller(is_cron=False, user=resolve_user(credentials.credentials, db))
    raise HTTPException(status_code=401, detail="Not authenticated")


@router.post("/run", response_model=ReminderRunResponse)
async def run_reminders(
    data: Optional[ReminderRunRequest] = None,
    caller: SweepCaller = Depends(get_sweep_caller),
    db: Session = Depends(get_db),
):
    """Run the reminder sweep for the caller's business, or for every business when called by cron"""
    data = data or ReminderRunRequest()

    if caller.user:
        user_ids = [caller.user.id]
    elif data.userId is not None:
        user_ids = [data.userId]
    else:
        user_ids = list_reminder_users(db, data.limitUsers)

    logger.info(f"🔁 Reminder run requested for {len(user_ids)} business(es), dry_run={data.dryRun}")
    results, totals = await run_sweeps(db, user_ids, dry_run=data.dryRun)
    return ReminderRunResponse(dryRun=data.dryRun, processedUsers=len(results), totals=totals, results=results)


@router.get("/status", response_model=ReminderStatusResponse)
async def reminder_status(
    limit: int = Query(40, ge=5, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Recent reminder rows and how many pending reminders are already due"""
    store = ReminderStore(db, current_user.id)
    reminders = store.list_recent(limit)
    return ReminderStatusResponse(
        pendingDue=store.count_pending_due(utcnow()),
        reminders=[
            ReminderResponse(
                id=r.id,
                bookingId=r.booking_id,
                reminderType=r.reminder_type,
                scheduledFor=r.scheduled_for,
                status=r.status,
                sentAt=r.sent_at,
                twilioMessageSid=r.twilio_message_sid,
                errorMessage=r.error_message,
            )
            for r in reminders
        ],
    )
