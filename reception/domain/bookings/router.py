"""Booking router - staff booking updates"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from .schemas import BookingResponse, BookingUpdate
from .service import BookingService

router = APIRouter(prefix="/reception/bookings", tags=["Bookings"])


def get_booking_service(
    current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, current_user.id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: int, service: BookingService = Depends(get_booking_service)):
    return service.to_response(service.get_booking(booking_id))


@router.patch("/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: int,
    data: BookingUpdate,
    service: BookingService = Depends(get_booking_service),
):
    """Change a booking's status or timing; reminders and reschedule tracking follow"""
    return service.to_response(service.update_booking(booking_id, data))
