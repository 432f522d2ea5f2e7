"""Booking service - staff booking updates and their side effects"""

import logging
from datetime import datetime
from typing import Callable

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import ACTIVE_BOOKING_STATUSES, ServiceBooking
from ...services.audit import record_automation_event
from ...shared.timeutils import utcnow
from ..reminders.repository import ReminderStore
from ..reschedule.service import RescheduleRequestTracker
from .repository import BookingRepository
from .schemas import BookingResponse, BookingUpdate

logger = logging.getLogger(__name__)

# Statuses that end any open reschedule negotiation for the booking
NEGOTIATION_CLOSING_STATUSES = ("confirmed", "completed", "cancelled")


class BookingService:
    def __init__(self, db: Session, user_id: int, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.user_id = user_id
        self.clock = clock
        self.repo = BookingRepository()

    def get_booking(self, booking_id: int) -> ServiceBooking:
        booking = self.repo.get_booking(self.db, booking_id, self.user_id)
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found")
        return booking

    def update_booking(self, booking_id: int, data: BookingUpdate) -> ServiceBooking:
        booking = self.get_booking(booking_id)
        supplied = data.model_fields_set
        previous_status = booking.status

        if "status" in supplied:
            booking.status = data.status
        if "notes" in supplied:
            booking.notes = data.notes

        timing_changed = False
        if "scheduledStart" in supplied and data.scheduledStart != booking.scheduled_start:
            booking.scheduled_start = data.scheduledStart
            timing_changed = True
        if "scheduledEnd" in supplied and data.scheduledEnd != booking.scheduled_end:
            booking.scheduled_end = data.scheduledEnd
            timing_changed = True
        if booking.scheduled_end and booking.scheduled_end <= booking.scheduled_start:
            raise HTTPException(status_code=422, detail="scheduledEnd must be after scheduledStart")

        self.db.flush()
        status_changed = booking.status != previous_status

        reminders = ReminderStore(self.db, self.user_id, self.clock)
        if booking.status in ACTIVE_BOOKING_STATUSES:
            if timing_changed:
                reminders.skip_pending(booking.id, "booking_rescheduled")
            if timing_changed or status_changed:
                reminders.refresh_reminders(booking.id, booking.scheduled_start, booking.status)
        else:
            reminders.skip_pending(booking.id, "booking_status_updated")

        if status_changed and booking.status in NEGOTIATION_CLOSING_STATUSES:
            RescheduleRequestTracker(self.db, self.user_id, self.clock).mark_closed(
                booking.id, f"booking_status_{booking.status}"
            )

        record_automation_event(
            self.db,
            self.user_id,
            "booking_status_updated",
            {
                "bookingId": booking.id,
                "previousStatus": previous_status,
                "status": booking.status,
                "timingChanged": timing_changed,
            },
            entity_type="booking",
            entity_id=booking.id,
        )
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"✅ Booking {booking.id} updated by staff: {previous_status} -> {booking.status}")
        return booking

    @staticmethod
    def to_response(booking: ServiceBooking) -> BookingResponse:
        return BookingResponse(
            id=booking.id,
            customerId=booking.customer_id,
            serviceTypeId=booking.service_type_id,
            scheduledStart=booking.scheduled_start,
            scheduledEnd=booking.scheduled_end,
            status=booking.status,
            notes=booking.notes,
        )
