"""
Reminder sweep.

Seeds reminder rows for upcoming active bookings, then delivers whatever is
due. Every due row is re-validated against fresh booking, customer and
business data right before sending, and each row's outcome is committed on
its own so one failure never loses the others.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import REMINDER_SWEEP_BATCH_LIMIT, SMS_SEND_TIMEOUT_SECONDS
from ...models import ACTIVE_BOOKING_STATUSES, ServiceBookingReminder, ServiceBusiness
from ...services.audit import record_automation_event
from ...services.twilio_service import SmsResult, TwilioSmsGateway
from ...shared.timeutils import format_schedule_label, resolve_timezone, utcnow
from ...shared.validators import mask_phone
from ..bookings.repository import BookingRepository
from .repository import ReminderStore
from .schemas import SweepCounts, SweepResult

logger = logging.getLogger(__name__)

SWEEP_LOOKBACK = timedelta(hours=6)
SWEEP_LOOKAHEAD = timedelta(days=21)


def build_reminder_message(
    reminder_type: str,
    customer_name: Optional[str],
    business_name: str,
    service_name: Optional[str],
    start: datetime,
    timezone: Optional[str],
) -> str:
    when = format_schedule_label(start, resolve_timezone(timezone))
    person = customer_name or "there"
    service = f" for {service_name}" if service_name else ""

    if reminder_type == "24h":
        return (
            f"Hi {person}, this is your 24-hour reminder from {business_name}. "
            f"You are scheduled{service} on {when}. Reply C to confirm or R to reschedule."
        )
    return (
        f"Hi {person}, this is your 2-hour reminder from {business_name}. "
        f"We are scheduled{service} at {when}. Reply C to confirm or R to reschedule."
    )


class ReminderSweepWorker:
    """Run the reminder sweep for one business"""

    def __init__(
        self,
        db: Session,
        user_id: int,
        gateway: Optional[TwilioSmsGateway] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_limit: int = REMINDER_SWEEP_BATCH_LIMIT,
        send_timeout: float = SMS_SEND_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.user_id = user_id
        self.gateway = gateway or TwilioSmsGateway(db, user_id)
        self.clock = clock
        self.batch_limit = batch_limit
        self.send_timeout = send_timeout
        self.repo = BookingRepository()
        self.store = ReminderStore(db, user_id, clock)

    async def run_sweep(self, dry_run: bool = False) -> SweepResult:
        now = self.clock()
        result = SweepResult(userId=self.user_id, dryRun=dry_run)
        logger.info(f"🔁 Reminder sweep started for user {self.user_id} (dry_run={dry_run})")

        business = self._load_business(result)
        self._seed(now, result)

        try:
            due = self.store.list_due(now, self.batch_limit)
        except SQLAlchemyError as e:
            self.db.rollback()
            result.notes.append(f"due_lookup_failed:{e}")
            logger.error(f"❌ Due reminder lookup failed for user {self.user_id}: {e}")
            due = []

        result.counts.due = len(due)
        for reminder in due:
            outcome = await self._process(reminder, business, dry_run, result)
            setattr(result.counts, outcome, getattr(result.counts, outcome) + 1)

        logger.info(f"📊 Reminder sweep for user {self.user_id}: {result.counts.model_dump()} notes={result.notes}")
        return result

    def _load_business(self, result: SweepResult) -> Optional[ServiceBusiness]:
        try:
            return self.repo.get_business(self.db, self.user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            result.notes.append(f"business_lookup_failed:{e}")
            logger.error(f"❌ Business lookup failed for user {self.user_id}: {e}")
            return None

    def _seed(self, now: datetime, result: SweepResult) -> None:
        try:
            bookings = self.repo.get_active_bookings_between(
                self.db, self.user_id, now - SWEEP_LOOKBACK, now + SWEEP_LOOKAHEAD
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            result.notes.append(f"booking_lookup_failed:{e}")
            logger.error(f"❌ Booking lookup failed for user {self.user_id}: {e}")
            return

        for booking in bookings:
            try:
                result.counts.seeded += self.store.seed_missing(booking)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                result.notes.append(f"reminder_seed_failed:{booking.id}:{e}")
                logger.warning(f"⚠️ Reminder seeding failed for booking {booking.id}: {e}")

    async def _process(
        self,
        reminder: ServiceBookingReminder,
        business: Optional[ServiceBusiness],
        dry_run: bool,
        result: SweepResult,
    ) -> str:
        reminder_id = reminder.id
        try:
            outcome = await self._deliver(reminder, business, dry_run)
            if not dry_run:
                self.db.commit()
            return outcome
        except SQLAlchemyError as e:
            self.db.rollback()
            result.notes.append(f"reminder_update_failed:{reminder_id}:{e}")
            logger.error(f"❌ Reminder {reminder_id} could not be processed: {e}")
            return "errored"

    def _skip(self, reminder: ServiceBookingReminder, reason: str, dry_run: bool) -> str:
        logger.info(f"⏭️ Reminder {reminder.id} ({reminder.reminder_type}) skipped: {reason}")
        if not dry_run:
            self.store.mark_skipped(reminder, reason)
        return "skipped"

    async def _deliver(
        self, reminder: ServiceBookingReminder, business: Optional[ServiceBusiness], dry_run: bool
    ) -> str:
        now = self.clock()

        booking = self.repo.get_booking(self.db, reminder.booking_id, self.user_id)
        if not booking:
            return self._skip(reminder, "booking_not_found", dry_run)
        if booking.scheduled_start is None:
            return self._skip(reminder, "invalid_booking_start", dry_run)
        if booking.status not in ACTIVE_BOOKING_STATUSES:
            return self._skip(reminder, "booking_inactive", dry_run)
        if booking.scheduled_start <= now:
            return self._skip(reminder, "booking_already_started", dry_run)

        customer = self.repo.get_customer(self.db, booking.customer_id, self.user_id)
        if not customer or not customer.phone_e164:
            return self._skip(reminder, "missing_customer_phone", dry_run)
        if not business or not business.twilio_phone_number:
            return self._skip(reminder, "business_not_configured", dry_run)
        if not self.gateway.is_configured():
            return self._skip(reminder, "twilio_not_configured", dry_run)

        service_type = self.repo.get_service_type(self.db, booking.service_type_id, self.user_id)
        message = build_reminder_message(
            reminder.reminder_type,
            customer.full_name,
            business.business_name,
            service_type.name if service_type else None,
            booking.scheduled_start,
            business.timezone,
        )

        if dry_run:
            logger.info(f"🧪 Dry run: would send {reminder.reminder_type} reminder to {mask_phone(customer.phone_e164)}")
            return "sent"

        try:
            sms = await asyncio.wait_for(
                self.gateway.send(
                    customer.phone_e164,
                    business.twilio_phone_number,
                    message,
                    message_type="booking_reminder",
                    entity_type="booking",
                    entity_id=booking.id,
                ),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            sms = SmsResult(ok=False, error="sms_send_timeout")

        payload = {
            "reminderId": reminder.id,
            "reminderType": reminder.reminder_type,
            "bookingId": booking.id,
            "customerId": customer.id,
        }

        if sms.ok:
            self.store.mark_sent(
                reminder,
                sms.message_sid,
                {
                    "reminderType": reminder.reminder_type,
                    "customerId": customer.id,
                    "bookingId": booking.id,
                    "twilioStatus": sms.status,
                },
            )
            record_automation_event(
                self.db,
                self.user_id,
                "booking_reminder_sent",
                {**payload, "twilioMessageSid": sms.message_sid},
                entity_type="booking",
                entity_id=booking.id,
            )
            return "sent"

        self.store.mark_error(
            reminder,
            sms.error or "sms_send_failed",
            {
                "reason": "twilio_send_failed",
                "reminderType": reminder.reminder_type,
                "bookingId": booking.id,
                "customerId": customer.id,
            },
        )
        record_automation_event(
            self.db,
            self.user_id,
            "booking_reminder_error",
            {**payload, "error": sms.error},
            entity_type="booking",
            entity_id=booking.id,
            success=False,
            error_message=sms.error,
        )
        return "errored"


def list_reminder_users(db: Session, limit: int = 200) -> list[int]:
    """Businesses eligible for the sweep: those with a Twilio number"""
    return [b.user_id for b in BookingRepository.list_businesses_with_phone(db, limit)]


async def run_sweeps(
    db: Session,
    user_ids: list[int],
    dry_run: bool = False,
    clock: Callable[[], datetime] = utcnow,
) -> tuple[list[SweepResult], SweepCounts]:
    """Sweep several businesses in turn and total their counts"""
    results = []
    totals = SweepCounts()
    for user_id in user_ids:
        result = await ReminderSweepWorker(db, user_id, clock=clock).run_sweep(dry_run=dry_run)
        results.append(result)
        for name, value in result.counts.model_dump().items():
            setattr(totals, name, getattr(totals, name) + value)
    return results, totals
