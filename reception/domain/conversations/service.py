"""
Conversation engine for inbound SMS.

Each webhook call is one turn. The engine resolves the customer thread,
reads the pending selection from the conversation row, routes the message
to exactly one branch and then runs the same bookkeeping for every branch:
inbound and outbound messages, an AI-run record, conversation and lead
activity and an optional automation event. The whole turn commits once.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import (
    ACTIVE_BOOKING_STATUSES,
    ServiceBooking,
    ServiceBusiness,
    ServiceConversation,
    ServiceCustomer,
    ServiceLead,
)
from ...services.audit import record_ai_run, record_automation_event
from ...shared.timeutils import format_schedule_label, resolve_timezone, utcnow
from ...shared.validators import mask_phone, normalize_phone
from ..bookings.repository import BookingRepository
from ..reminders.repository import ReminderStore
from ..reschedule.service import NegotiationContext, RescheduleRequestTracker
from ..scheduling.schemas import SlotOption
from ..scheduling.service import SlotFinder
from ..scheduling.slot_finder import SLOT_STEP
from .heuristics import build_reception_decision
from .intents import BookingCommand, Intent, classify
from .pending import PendingSelection, read_pending, with_pending, without_pending
from .repository import ConversationRepository

logger = logging.getLogger(__name__)

SELECTOR_MODEL = "booking-reschedule-selector-v2"
COMMAND_MODEL = "booking-command-router-v2"
HEURISTIC_MODEL = "heuristic-router-v1"

# Bookings that started up to this long ago still count as "upcoming" for commands
UPCOMING_GRACE = timedelta(hours=2)
MAX_INVALID_SELECTIONS = 3

GENERIC_REPLY = (
    "Thanks for reaching out. Please share your service need and address, "
    "and our team will contact you shortly."
)
OPTIONS_EXPIRED_REPLY = "Those options expired. Reply R to request a fresh set of reschedule times."
MORE_OPTIONS_MISSING_BOOKING_REPLY = "We couldn't find that booking now. Reply R to request fresh options."
NO_MORE_SLOTS_REPLY = (
    "No additional automatic slots are available right now. "
    "A team member will text you with manual options shortly."
)
SELECTION_RETRY_REPLY = "Please reply with 1, 2, or 3 to pick a slot, or 4 to get more times."
SELECTION_RETRIES_EXHAUSTED_REPLY = (
    "Sorry, we couldn't match that reply to a time. A team member will text you shortly to help."
)
SELECTION_MISSING_BOOKING_REPLY = "We couldn't locate that booking anymore. Reply R to request new options."
SLOT_TAKEN_REPLY = "Sorry, that time was just taken. Reply R to get a fresh set of available times."
NO_PENDING_OPTIONS_REPLY = (
    "There is no active reschedule option set right now. Reply R to request new available times."
)
NO_BOOKING_REPLY = (
    "Thanks for the update. We couldn't find an upcoming booking on this number. "
    "Please reply with your address and preferred date/time and we will help."
)
RESCHEDULE_HANDOFF_REPLY = (
    "Got it - we received your reschedule request. "
    "A team member will text you shortly with new time options."
)


def format_options_reply(options: list[SlotOption]) -> str:
    lines = ["Got it - here are available times:"]
    lines.extend(f"{option.index}) {option.label}" for option in options)
    lines.append("Reply 1, 2, or 3 to choose a slot. Reply 4 for more times.")
    return "\n".join(lines)


@dataclass
class TurnContext:
    business: ServiceBusiness
    customer: ServiceCustomer
    conversation: ServiceConversation
    lead: Optional[ServiceLead]
    body: str
    now: datetime
    started: float
    metadata: dict
    pending: Optional[PendingSelection]

    @property
    def user_id(self) -> int:
        return self.business.user_id

    def negotiation(self, booking_id: int) -> NegotiationContext:
        return NegotiationContext(
            booking_id=booking_id,
            customer_id=self.customer.id,
            lead_id=self.lead.id if self.lead else None,
            conversation_id=self.conversation.id,
            latest_customer_message=self.body,
        )


@dataclass
class TurnOutcome:
    reply: str
    outcome: str  # completed, fallback, handoff
    drift_score: float
    model: str
    confidence: Optional[float] = None
    conversation_state: Optional[str] = None
    lead_status: Optional[str] = None
    event_type: Optional[str] = None
    event_payload: dict = field(default_factory=dict)


class ConversationEngine:
    """Handle one inbound SMS and return the reply text"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.repo = ConversationRepository()
        self.bookings = BookingRepository()

    def handle_inbound(
        self,
        sender: Optional[str],
        recipient: Optional[str],
        body: Optional[str],
        message_sid: Optional[str] = None,
    ) -> str:
        started = time.monotonic()
        from_phone = normalize_phone(sender)
        to_phone = normalize_phone(recipient)
        text = (body or "").strip()

        if not from_phone or not to_phone or not text:
            logger.warning(f"⚠️ Inbound SMS missing sender, recipient or body (from={mask_phone(sender)})")
            return GENERIC_REPLY

        try:
            business = self.bookings.get_business_by_phone(self.db, to_phone)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Business lookup failed for inbound SMS to {mask_phone(to_phone)}: {e}")
            return GENERIC_REPLY

        if not business:
            logger.warning(f"⚠️ No business owns {mask_phone(to_phone)}; sending generic reply")
            return GENERIC_REPLY

        user_id = business.user_id
        try:
            context = self._open_turn(business, from_phone, text, message_sid, started)
            outcome = self._route(context)
            self._finish_turn(context, outcome)
            self.db.commit()
            logger.info(
                f"📱 Inbound SMS for user {user_id} from {mask_phone(from_phone)}: "
                f"{outcome.model} -> {outcome.outcome}"
            )
            return outcome.reply
        except Exception as e:
            logger.exception(f"❌ Inbound SMS turn failed for user {user_id}: {e}")
            self.db.rollback()
            self._record_failed_turn(user_id, from_phone, text, message_sid, started)
            return GENERIC_REPLY

    # ------------------------------------------------------------------
    # Turn setup and bookkeeping
    # ------------------------------------------------------------------

    def _find_or_open_thread(
        self, user_id: int, phone: str, now: datetime
    ) -> tuple[ServiceCustomer, ServiceConversation, Optional[ServiceLead]]:
        customer = self.repo.upsert_customer(self.db, user_id, phone)
        conversation = self.repo.get_active_conversation(self.db, user_id, customer.id)
        if conversation:
            return customer, conversation, self.repo.get_lead(self.db, conversation.lead_id, user_id)

        lead = self.repo.create_lead(self.db, user_id, customer.id, now)
        conversation = self.repo.create_conversation(self.db, user_id, customer.id, lead.id, now)
        logger.info(f"🆕 Opened SMS conversation {conversation.id} for user {user_id}")
        return customer, conversation, lead

    def _resolve_thread(
        self, user_id: int, phone: str, now: datetime
    ) -> tuple[ServiceCustomer, ServiceConversation, Optional[ServiceLead]]:
        try:
            return self._find_or_open_thread(user_id, phone, now)
        except IntegrityError:
            # A concurrent delivery opened the thread first; read theirs
            self.db.rollback()
            logger.info(f"🔁 Conversation for {mask_phone(phone)} created concurrently, re-reading")
            return self._find_or_open_thread(user_id, phone, now)

    def _open_turn(
        self,
        business: ServiceBusiness,
        phone: str,
        text: str,
        message_sid: Optional[str],
        started: float,
    ) -> TurnContext:
        now = self.clock()
        customer, conversation, lead = self._resolve_thread(business.user_id, phone, now)
        self.repo.save_message(
            self.db, business.user_id, conversation.id, "inbound", "customer", text, message_sid
        )
        metadata = dict(conversation.meta or {})
        return TurnContext(
            business=business,
            customer=customer,
            conversation=conversation,
            lead=lead,
            body=text,
            now=now,
            started=started,
            metadata=metadata,
            pending=read_pending(metadata),
        )

    def _finish_turn(self, context: TurnContext, outcome: TurnOutcome) -> None:
        user_id = context.user_id
        conversation = context.conversation

        self.repo.save_message(
            self.db, user_id, conversation.id, "outbound", "ai", outcome.reply, ai_confidence=outcome.confidence
        )
        record_ai_run(
            self.db,
            user_id,
            outcome.model,
            context.body,
            outcome.reply,
            (time.monotonic() - context.started) * 1000,
            outcome.outcome,
            outcome.drift_score,
            conversation_id=conversation.id,
            lead_id=context.lead.id if context.lead else None,
        )

        conversation.meta = context.metadata
        conversation.last_message_at = context.now
        conversation.state = outcome.conversation_state or "open"

        if context.lead:
            context.lead.last_activity_at = context.now
            if outcome.lead_status:
                context.lead.status = outcome.lead_status

        if outcome.event_type:
            record_automation_event(
                self.db,
                user_id,
                outcome.event_type,
                {"conversationId": conversation.id, "customerId": context.customer.id, **outcome.event_payload},
                entity_type="conversation",
                entity_id=conversation.id,
            )

    def _record_failed_turn(
        self, user_id: int, phone: str, text: str, message_sid: Optional[str], started: float
    ) -> None:
        """Best-effort bookkeeping for a turn that raised; the generic reply goes out regardless"""
        try:
            now = self.clock()
            customer = self.repo.upsert_customer(self.db, user_id, phone)
            conversation = self.repo.get_active_conversation(self.db, user_id, customer.id)
            if not conversation:
                return
            self.repo.save_message(self.db, user_id, conversation.id, "inbound", "customer", text, message_sid)
            self.repo.save_message(self.db, user_id, conversation.id, "outbound", "ai", GENERIC_REPLY)
            record_ai_run(
                self.db,
                user_id,
                HEURISTIC_MODEL,
                text,
                GENERIC_REPLY,
                (time.monotonic() - started) * 1000,
                "failed",
                conversation_id=conversation.id,
                lead_id=conversation.lead_id,
            )
            conversation.last_message_at = now
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Could not record failed SMS turn for user {user_id}: {e}")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route(self, context: TurnContext) -> TurnOutcome:
        intent, selection = classify(context.body, context.pending is not None)

        if context.pending and intent in (Intent.NUMBERED_SELECTION, Intent.MORE_OPTIONS):
            if context.pending.is_expired(context.now):
                return self._expire_pending(context)
            if intent is Intent.MORE_OPTIONS:
                return self._more_options(context)
            return self._select_option(context, selection)

        if intent is Intent.MORE_OPTIONS:
            return TurnOutcome(
                reply=NO_PENDING_OPTIONS_REPLY,
                outcome="fallback",
                drift_score=0.026,
                model=SELECTOR_MODEL,
            )

        if intent is Intent.CONFIRM:
            return self._booking_command(context, BookingCommand.CONFIRM)
        if intent is Intent.RESCHEDULE:
            return self._booking_command(context, BookingCommand.RESCHEDULE)

        return self._free_text(context)

    def _tracker(self, context: TurnContext) -> RescheduleRequestTracker:
        return RescheduleRequestTracker(self.db, context.user_id, self.clock)

    def _reminders(self, context: TurnContext) -> ReminderStore:
        return ReminderStore(self.db, context.user_id, self.clock)

    def _slot_finder(self, context: TurnContext) -> SlotFinder:
        return SlotFinder(self.db, context.user_id, self.clock)

    def _clear_pending(self, context: TurnContext) -> None:
        context.metadata = without_pending(context.metadata)
        context.pending = None

    def _store_pending(self, context: TurnContext, pending: PendingSelection) -> None:
        context.metadata = with_pending(context.metadata, pending)
        context.pending = pending

    def _fresh_booking(self, context: TurnContext, booking_id: int) -> Optional[ServiceBooking]:
        """Re-read the booking; anything gone, inactive or owned by another customer is treated as missing"""
        booking = self.bookings.get_booking(self.db, booking_id, context.user_id)
        if not booking or booking.customer_id != context.customer.id:
            return None
        if booking.status not in ACTIVE_BOOKING_STATUSES:
            return None
        return booking

    def _handoff_if_booking_exists(self, context: TurnContext, booking_id: int, reason: str, batch: int) -> None:
        if self.bookings.get_booking(self.db, booking_id, context.user_id) is None:
            logger.info(f"Booking {booking_id} no longer exists; no reschedule request to hand off")
            return
        self._tracker(context).mark_handoff(context.negotiation(booking_id), reason, option_batch=batch)

    def _offer_options(self, context: TurnContext, booking: ServiceBooking, options: list[SlotOption], batch: int) -> None:
        pending = PendingSelection.create(booking.id, options, batch, context.now)
        self._store_pending(context, pending)
        self._tracker(context).upsert_options(context.negotiation(booking.id), batch, pending.expires_at, options)

    def _label(self, context: TurnContext, value: datetime) -> str:
        return format_schedule_label(value, resolve_timezone(context.business.timezone))

    # ------------------------------------------------------------------
    # Pending selection branches
    # ------------------------------------------------------------------

    def _expire_pending(self, context: TurnContext) -> TurnOutcome:
        pending = context.pending
        self._clear_pending(context)
        self._handoff_if_booking_exists(context, pending.booking_id, "options_expired", pending.batch)
        logger.info(f"⌛ Pending options for booking {pending.booking_id} expired")
        return TurnOutcome(
            reply=OPTIONS_EXPIRED_REPLY,
            outcome="fallback",
            drift_score=0.027,
            model=SELECTOR_MODEL,
            event_type="sms_reschedule_options_expired",
            event_payload={"bookingId": pending.booking_id, "batch": pending.batch},
        )

    def _more_options(self, context: TurnContext) -> TurnOutcome:
        pending = context.pending
        booking = self._fresh_booking(context, pending.booking_id)
        if not booking:
            self._clear_pending(context)
            self._handoff_if_booking_exists(context, pending.booking_id, "booking_not_found", pending.batch)
            return TurnOutcome(
                reply=MORE_OPTIONS_MISSING_BOOKING_REPLY,
                outcome="fallback",
                drift_score=0.028,
                model=SELECTOR_MODEL,
            )

        last_start = pending.last_offered_start() or context.now
        options = self._slot_finder(context).find_slots(
            self.bookings.booking_duration_minutes(self.db, booking),
            context.business.timezone,
            exclude_booking_id=booking.id,
            search_from=last_start + SLOT_STEP,
        )

        if not options:
            self._clear_pending(context)
            self._tracker(context).mark_handoff(context.negotiation(booking.id), "no_more_slots", pending.batch)
            return TurnOutcome(
                reply=NO_MORE_SLOTS_REPLY,
                outcome="handoff",
                drift_score=0.019,
                model=SELECTOR_MODEL,
                conversation_state="handoff",
                lead_status="qualified",
                event_type="sms_reschedule_more_options_unavailable",
                event_payload={"bookingId": booking.id, "batch": pending.batch},
            )

        batch = pending.batch + 1
        self._offer_options(context, booking, options, batch)
        return TurnOutcome(
            reply=format_options_reply(options),
            outcome="completed",
            drift_score=0.012,
            model=SELECTOR_MODEL,
            event_type="sms_reschedule_more_options_sent",
            event_payload={"bookingId": booking.id, "batch": batch, "optionCount": len(options)},
        )

    def _select_option(self, context: TurnContext, selection: int) -> TurnOutcome:
        pending = context.pending
        option = pending.option(selection)

        if not option:
            attempts = pending.invalid_attempts + 1
            if attempts >= MAX_INVALID_SELECTIONS:
                self._clear_pending(context)
                self._handoff_if_booking_exists(
                    context, pending.booking_id, "invalid_selection_retries", pending.batch
                )
                return TurnOutcome(
                    reply=SELECTION_RETRIES_EXHAUSTED_REPLY,
                    outcome="handoff",
                    drift_score=0.024,
                    model=SELECTOR_MODEL,
                    conversation_state="handoff",
                    lead_status="qualified",
                )
            self._store_pending(context, pending.model_copy(update={"invalid_attempts": attempts}))
            return TurnOutcome(
                reply=SELECTION_RETRY_REPLY,
                outcome="fallback",
                drift_score=0.024,
                model=SELECTOR_MODEL,
            )

        booking = self._fresh_booking(context, pending.booking_id)
        if not booking:
            self._clear_pending(context)
            self._handoff_if_booking_exists(context, pending.booking_id, "booking_not_found", pending.batch)
            return TurnOutcome(
                reply=SELECTION_MISSING_BOOKING_REPLY,
                outcome="fallback",
                drift_score=0.03,
                model=SELECTOR_MODEL,
            )

        if not self._slot_finder(context).is_slot_free(option.start, option.end, exclude_booking_id=booking.id):
            self._clear_pending(context)
            return TurnOutcome(
                reply=SLOT_TAKEN_REPLY,
                outcome="fallback",
                drift_score=0.03,
                model=SELECTOR_MODEL,
                event_type="sms_reschedule_option_unavailable",
                event_payload={"bookingId": booking.id, "selectedIndex": selection},
            )

        booking.scheduled_start = option.start
        booking.scheduled_end = option.end
        booking.status = "confirmed"
        self.db.flush()

        reminders = self._reminders(context)
        reminders.skip_pending(booking.id, "booking_rescheduled")
        reminders.refresh_reminders(booking.id, option.start, "confirmed")
        self._tracker(context).mark_confirmed(booking.id, selection, option.start, option.end, context.body)
        self._clear_pending(context)

        label = self._label(context, option.start)
        logger.info(f"✅ Booking {booking.id} moved to option {selection} ({label})")
        return TurnOutcome(
            reply=f"Perfect - your booking is now confirmed for {label}.",
            outcome="completed",
            drift_score=0.011,
            model=SELECTOR_MODEL,
            lead_status="booked",
            event_type="sms_reschedule_option_selected",
            event_payload={
                "bookingId": booking.id,
                "selectedIndex": selection,
                "scheduledStart": option.start.isoformat(),
            },
        )

    # ------------------------------------------------------------------
    # Booking commands and free text
    # ------------------------------------------------------------------

    def _booking_command(self, context: TurnContext, command: BookingCommand) -> TurnOutcome:
        booking = self.bookings.get_nearest_upcoming_booking(
            self.db, context.user_id, context.customer.id, context.now - UPCOMING_GRACE
        )
        if not booking:
            return TurnOutcome(
                reply=NO_BOOKING_REPLY,
                outcome="fallback",
                drift_score=0.028,
                model=COMMAND_MODEL,
                event_type="sms_booking_command_no_match",
                event_payload={"command": command.value},
            )

        if command is BookingCommand.CONFIRM:
            return self._confirm_booking(context, booking)
        return self._reschedule_booking(context, booking)

    def _service_suffix(self, context: TurnContext, booking: ServiceBooking) -> str:
        service_type = self.bookings.get_service_type(self.db, booking.service_type_id, context.user_id)
        return f" for {service_type.name}" if service_type else ""

    def _confirm_booking(self, context: TurnContext, booking: ServiceBooking) -> TurnOutcome:
        already_confirmed = booking.status == "confirmed"
        booking.status = "confirmed"
        self.db.flush()

        self._reminders(context).refresh_reminders(booking.id, booking.scheduled_start, "confirmed")
        self._tracker(context).mark_closed(booking.id, "customer_confirmed")
        if context.pending and context.pending.booking_id == booking.id:
            self._clear_pending(context)

        when = self._label(context, booking.scheduled_start)
        service = self._service_suffix(context, booking)
        if already_confirmed:
            reply = f"You're all set - your booking{service} is already confirmed for {when}."
        else:
            reply = f"Confirmed. Your booking{service} is set for {when}. Reply R anytime if you need to reschedule."

        return TurnOutcome(
            reply=reply,
            outcome="completed",
            drift_score=0.011,
            model=COMMAND_MODEL,
            lead_status="booked",
            event_type="sms_booking_confirmed",
            event_payload={"bookingId": booking.id, "alreadyConfirmed": already_confirmed},
        )

    def _reschedule_booking(self, context: TurnContext, booking: ServiceBooking) -> TurnOutcome:
        booking.status = "rescheduled"
        self.db.flush()
        self._reminders(context).skip_pending(booking.id, "reschedule_requested")

        options = self._slot_finder(context).find_slots(
            self.bookings.booking_duration_minutes(self.db, booking),
            context.business.timezone,
            exclude_booking_id=booking.id,
        )

        if options:
            self._offer_options(context, booking, options, batch=1)
            return TurnOutcome(
                reply=format_options_reply(options),
                outcome="completed",
                drift_score=0.011,
                model=COMMAND_MODEL,
                lead_status="qualified",
                event_type="sms_booking_reschedule_options_sent",
                event_payload={"bookingId": booking.id, "optionCount": len(options)},
            )

        self._clear_pending(context)
        self._tracker(context).mark_handoff(context.negotiation(booking.id), "auto_options_unavailable")
        return TurnOutcome(
            reply=RESCHEDULE_HANDOFF_REPLY,
            outcome="handoff",
            drift_score=0.02,
            model=COMMAND_MODEL,
            conversation_state="handoff",
            lead_status="qualified",
            event_type="sms_booking_reschedule_requested",
            event_payload={"bookingId": booking.id, "reason": "auto_options_unavailable"},
        )

    def _free_text(self, context: TurnContext) -> TurnOutcome:
        decision = build_reception_decision(context.business.business_name, context.body)
        return TurnOutcome(
            reply=decision.reply,
            outcome=decision.outcome,
            drift_score=decision.drift_score,
            model=HEURISTIC_MODEL,
            confidence=decision.confidence,
            conversation_state="handoff" if decision.outcome == "handoff" else "open",
            lead_status="qualified" if decision.outcome == "handoff" else "new",
            event_type="sms_inbound_auto_reply",
            event_payload={"outcome": decision.outcome},
        )
