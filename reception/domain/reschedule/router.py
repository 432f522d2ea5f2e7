"""Reschedule request router - staff queue and manual updates"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from ..bookings.repository import BookingRepository
from .schemas import RescheduleQueueResponse, RescheduleRequestResponse, RescheduleRequestUpdate
from .service import RescheduleRequestNotFound, RescheduleRequestTracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reception/reschedule-requests", tags=["Reschedule Requests"])

QUEUE_STATUS_FILTERS = ("pending", "options_sent", "confirmed", "handoff", "closed", "action_required")


def get_tracker(
    current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> RescheduleRequestTracker:
    """Dependency injection for RescheduleRequestTracker"""
    return RescheduleRequestTracker(db, current_user.id)


@router.get("", response_model=RescheduleQueueResponse)
async def list_reschedule_requests(
    status: Optional[str] = Query(None),
    limit: int = Query(60, ge=1, le=200),
    tracker: RescheduleRequestTracker = Depends(get_tracker),
):
    """Staff queue with derived overdue/escalated flags"""
    if status and status not in QUEUE_STATUS_FILTERS:
        raise HTTPException(status_code=422, detail=f"Unknown status filter: {status}")
    return tracker.queue(status, limit)


@router.patch("/{request_id}", response_model=RescheduleRequestResponse)
async def update_reschedule_request(
    request_id: int,
    data: RescheduleRequestUpdate,
    tracker: RescheduleRequestTracker = Depends(get_tracker),
    db: Session = Depends(get_db),
):
    """Assign, annotate, re-arm or close a reschedule request"""
    try:
        request = tracker.apply_staff_update(request_id, data)
    except RescheduleRequestNotFound as e:
        raise HTTPException(status_code=404, detail="Reschedule request not found") from e

    db.commit()
    db.refresh(request)

    booking = BookingRepository.get_booking(db, request.booking_id, tracker.user_id)
    customer = (
        BookingRepository.get_customer(db, request.customer_id, tracker.user_id) if request.customer_id else None
    )
    return tracker.to_response(request, tracker.clock(), booking, customer)
