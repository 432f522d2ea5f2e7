"""
Reschedule request tracker.

One row per booking records where a reschedule negotiation stands:

    options_sent -> confirmed | handoff | closed
    handoff      -> options_sent | closed
    confirmed / closed -> options_sent | handoff   (a new negotiation cycle)

resolved_at is set only when the row becomes confirmed or closed. Every
other transition clears it. Writes flush but do not commit; the caller owns
the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...models import ServiceRescheduleRequest
from ...services.audit import record_automation_event
from ...shared.timeutils import isoformat_utc, utcnow
from ..bookings.repository import BookingRepository
from ..scheduling.schemas import SlotOption
from .repository import RescheduleRequestRepository
from .schemas import (
    BookingSummary,
    CustomerSummary,
    RescheduleQueueResponse,
    RescheduleRequestResponse,
    RescheduleRequestUpdate,
)

logger = logging.getLogger(__name__)

OPTIONS_SLA = timedelta(minutes=120)
HANDOFF_SLA = timedelta(minutes=30)

# Statuses that still need someone (customer or staff) to act
ACTION_REQUIRED_STATUSES = ("pending", "options_sent", "handoff")
RESOLVED_STATUSES = ("confirmed", "closed")


class RescheduleRequestNotFound(Exception):
    """Raised when a staff update targets a request outside the caller's business"""


@dataclass
class NegotiationContext:
    """Who and what a negotiation write is about"""

    booking_id: int
    customer_id: Optional[int] = None
    lead_id: Optional[int] = None
    conversation_id: Optional[int] = None
    latest_customer_message: Optional[str] = None

    def row_values(self) -> dict:
        values = {"booking_id": self.booking_id}
        if self.customer_id is not None:
            values["customer_id"] = self.customer_id
        if self.lead_id is not None:
            values["lead_id"] = self.lead_id
        if self.conversation_id is not None:
            values["conversation_id"] = self.conversation_id
        if self.latest_customer_message is not None:
            values["latest_customer_message"] = self.latest_customer_message
        return values


def is_overdue(request: ServiceRescheduleRequest, now: datetime) -> bool:
    return (
        request.sla_due_at is not None
        and request.sla_due_at < now
        and request.status in ACTION_REQUIRED_STATUSES
    )


def is_escalated(request: ServiceRescheduleRequest) -> bool:
    return (request.escalation_level or 0) > 0


class RescheduleRequestTracker:
    def __init__(self, db: Session, user_id: int, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.user_id = user_id
        self.clock = clock
        self.repo = RescheduleRequestRepository()

    def get(self, booking_id: int) -> Optional[ServiceRescheduleRequest]:
        return self.repo.get_by_booking(self.db, booking_id, self.user_id)

    def _replace(self, context: NegotiationContext, values: dict) -> Optional[ServiceRescheduleRequest]:
        written = self.repo.upsert_by_booking(self.db, self.user_id, {**context.row_values(), **values})
        if not written:
            logger.error(
                f"❌ Reschedule upsert for booking {context.booking_id} rejected (owned by another business)"
            )
            return None
        return self.get(context.booking_id)

    def upsert_options(
        self,
        context: NegotiationContext,
        batch: int,
        expires_at: datetime,
        options: list[SlotOption],
    ) -> Optional[ServiceRescheduleRequest]:
        now = self.clock()
        request = self._replace(
            context,
            {
                "status": "options_sent",
                "requested_at": now,
                "resolved_at": None,
                "sla_due_at": now + OPTIONS_SLA,
                "escalation_level": 0,
                "last_escalated_at": None,
                "option_batch": batch,
                "selected_option_index": None,
                "selected_start": None,
                "selected_end": None,
                "metadata": {
                    "expiresAt": isoformat_utc(expires_at),
                    "options": [option.model_dump(mode="json", by_alias=True) for option in options],
                },
            },
        )
        logger.info(f"📨 Reschedule request for booking {context.booking_id}: options_sent (batch {batch})")
        return request

    def mark_handoff(
        self, context: NegotiationContext, reason: str, option_batch: int = 0
    ) -> Optional[ServiceRescheduleRequest]:
        now = self.clock()
        request = self._replace(
            context,
            {
                "status": "handoff",
                "requested_at": now,
                "resolved_at": None,
                "sla_due_at": now + HANDOFF_SLA,
                "escalation_level": 0,
                "last_escalated_at": None,
                "option_batch": option_batch,
                "selected_option_index": None,
                "selected_start": None,
                "selected_end": None,
                "metadata": {"reason": reason},
            },
        )
        logger.info(f"🙋 Reschedule request for booking {context.booking_id}: handoff ({reason})")
        return request

    def mark_confirmed(
        self,
        booking_id: int,
        selected_index: int,
        start: datetime,
        end: datetime,
        latest_customer_message: Optional[str] = None,
    ) -> Optional[ServiceRescheduleRequest]:
        request = self.get(booking_id)
        if not request:
            logger.warning(f"⚠️ No reschedule request to confirm for booking {booking_id}")
            return None

        request.status = "confirmed"
        request.resolved_at = self.clock()
        request.sla_due_at = None
        request.escalation_level = 0
        request.last_escalated_at = None
        request.selected_option_index = selected_index
        request.selected_start = start
        request.selected_end = end
        if latest_customer_message is not None:
            request.latest_customer_message = latest_customer_message
        request.meta = {"resolution": "selected_option", "selectedIndex": selected_index}
        self.db.flush()
        logger.info(f"✅ Reschedule request for booking {booking_id}: confirmed option {selected_index}")
        return request

    def mark_closed(self, booking_id: int, reason: str) -> Optional[ServiceRescheduleRequest]:
        """Close the negotiation if one exists; a booking with no negotiation is left alone"""
        request = self.get(booking_id)
        if not request:
            return None

        request.status = "closed"
        request.resolved_at = self.clock()
        request.sla_due_at = None
        request.escalation_level = 0
        request.last_escalated_at = None
        request.meta = {"reason": reason}
        self.db.flush()
        logger.info(f"🔒 Reschedule request for booking {booking_id}: closed ({reason})")
        return request

    def apply_staff_update(self, request_id: int, data: RescheduleRequestUpdate) -> ServiceRescheduleRequest:
        request = self.repo.get_by_id(self.db, request_id, self.user_id)
        if not request:
            raise RescheduleRequestNotFound(request_id)

        now = self.clock()
        supplied = data.model_fields_set
        previous_status = request.status

        metadata = dict(request.meta or {})
        if "note" in supplied:
            note = (data.note or "").strip()
            if note:
                metadata["staffNote"] = note
            else:
                metadata.pop("staffNote", None)
        metadata["staffUpdatedAt"] = isoformat_utc(now)
        request.meta = metadata

        if "status" in supplied:
            request.status = data.status
            request.resolved_at = now if data.status == "closed" else None
            if "slaDueAt" in supplied:
                request.sla_due_at = data.slaDueAt
            elif data.status == "closed":
                request.sla_due_at = None
                request.escalation_level = 0
                request.last_escalated_at = None
            elif data.status == "handoff":
                request.sla_due_at = now + HANDOFF_SLA
            else:
                request.sla_due_at = now + OPTIONS_SLA
        elif "slaDueAt" in supplied:
            request.sla_due_at = data.slaDueAt

        if "assignee" in supplied:
            assignee = (data.assignee or "").strip() or None
            request.assigned_to = assignee
            request.assigned_at = now if assignee else None

        record_automation_event(
            self.db,
            self.user_id,
            "reschedule_request_status_updated",
            {
                "requestId": request.id,
                "bookingId": request.booking_id,
                "previousStatus": previous_status,
                "status": request.status,
                "fields": sorted(supplied),
            },
            entity_type="reschedule_request",
            entity_id=request.id,
        )
        self.db.flush()
        logger.info(f"🛠️ Staff updated reschedule request {request.id}: {previous_status} -> {request.status}")
        return request

    def to_response(
        self, request: ServiceRescheduleRequest, now: datetime, booking=None, customer=None
    ) -> RescheduleRequestResponse:
        return RescheduleRequestResponse(
            id=request.id,
            bookingId=request.booking_id,
            customerId=request.customer_id,
            conversationId=request.conversation_id,
            status=request.status,
            requestedAt=request.requested_at,
            resolvedAt=request.resolved_at,
            assignedTo=request.assigned_to,
            assignedAt=request.assigned_at,
            slaDueAt=request.sla_due_at,
            escalationLevel=request.escalation_level or 0,
            lastEscalatedAt=request.last_escalated_at,
            latestCustomerMessage=request.latest_customer_message,
            optionBatch=request.option_batch or 0,
            selectedOptionIndex=request.selected_option_index,
            selectedStart=request.selected_start,
            selectedEnd=request.selected_end,
            metadata=request.meta or {},
            isOverdue=is_overdue(request, now),
            isEscalated=is_escalated(request),
            booking=(
                BookingSummary(
                    id=booking.id,
                    scheduledStart=booking.scheduled_start,
                    scheduledEnd=booking.scheduled_end,
                    status=booking.status,
                )
                if booking
                else None
            ),
            customer=(
                CustomerSummary(id=customer.id, fullName=customer.full_name, phone=customer.phone_e164)
                if customer
                else None
            ),
        )

    def queue(self, status: Optional[str] = None, limit: int = 60) -> RescheduleQueueResponse:
        """Staff queue: newest requests first, enriched with booking and customer"""
        now = self.clock()
        if status == "action_required":
            statuses = list(ACTION_REQUIRED_STATUSES)
        elif status:
            statuses = [status]
        else:
            statuses = None

        rows = self.repo.list_requests(self.db, self.user_id, statuses, limit)
        bookings = BookingRepository.get_bookings(self.db, [r.booking_id for r in rows], self.user_id)
        customers = BookingRepository.get_customers(
            self.db, [r.customer_id for r in rows if r.customer_id], self.user_id
        )
        responses = [
            self.to_response(r, now, bookings.get(r.booking_id), customers.get(r.customer_id)) for r in rows
        ]

        counts = self.repo.count_by_status(self.db, self.user_id)
        return RescheduleQueueResponse(
            requests=responses,
            counts=counts,
            actionRequired=sum(counts.get(s, 0) for s in ACTION_REQUIRED_STATUSES),
            overdue=sum(1 for r in responses if r.isOverdue),
        )
