"""Reminder store - idempotent reminder rows keyed by (booking_id, reminder_type)"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import ACTIVE_BOOKING_STATUSES, ServiceBooking, ServiceBookingReminder
from ...shared.persistence import insert_ignore, upsert
from ...shared.timeutils import isoformat_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderRule:
    reminder_type: str
    offset: timedelta


REMINDER_RULES = (
    ReminderRule("24h", timedelta(hours=24)),
    ReminderRule("2h", timedelta(hours=2)),
)

# Rows still owned by the scheduler; sent/error rows are history and never rewritten
REWRITABLE_STATUSES = ("pending", "skipped")

NATURAL_KEY = ("booking_id", "reminder_type")


class ReminderStore:
    """Reminder rows for one business"""

    def __init__(self, db: Session, user_id: int, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.user_id = user_id
        self.clock = clock

    def build_seeds(self, booking_id: int, start: Optional[datetime], status: str) -> list[dict]:
        """One pending row per reminder rule; nothing for inactive or undated bookings"""
        if start is None or status not in ACTIVE_BOOKING_STATUSES:
            return []

        now = self.clock()
        seeds = []
        for rule in REMINDER_RULES:
            scheduled_for = start - rule.offset
            seeds.append(
                {
                    "user_id": self.user_id,
                    "booking_id": booking_id,
                    "reminder_type": rule.reminder_type,
                    "scheduled_for": scheduled_for,
                    "status": "pending",
                    "sent_at": None,
                    "twilio_message_sid": None,
                    "error_message": None,
                    "metadata": {
                        "seededAt": isoformat_utc(now),
                        "bookingStatus": status,
                        "scheduleLagSeconds": round((now - scheduled_for).total_seconds()),
                    },
                }
            )
        return seeds

    def refresh_reminders(self, booking_id: int, start: Optional[datetime], status: str) -> int:
        """
        Upsert the reminder pair for a booking's current start time.

        Pending and skipped rows are re-armed with the new timing. Rows already
        sent or errored are left untouched.
        """
        seeds = self.build_seeds(booking_id, start, status)
        table = ServiceBookingReminder.__table__
        written = 0
        for seed in seeds:
            written += upsert(
                self.db,
                ServiceBookingReminder,
                seed,
                conflict_columns=NATURAL_KEY,
                update_columns=("scheduled_for", "status", "error_message", "metadata"),
                where=(table.c.user_id == self.user_id) & table.c.status.in_(REWRITABLE_STATUSES),
            )
        logger.debug(f"Refreshed {written} reminder(s) for booking {booking_id}")
        return written

    def seed_missing(self, booking: ServiceBooking) -> int:
        """Insert reminder rows that do not exist yet; existing rows keep their state"""
        inserted = 0
        for seed in self.build_seeds(booking.id, booking.scheduled_start, booking.status):
            inserted += insert_ignore(self.db, ServiceBookingReminder, seed, NATURAL_KEY)
        return inserted

    def skip_pending(self, booking_id: int, reason: str) -> int:
        updated = (
            self.db.query(ServiceBookingReminder)
            .filter(
                ServiceBookingReminder.user_id == self.user_id,
                ServiceBookingReminder.booking_id == booking_id,
                ServiceBookingReminder.status == "pending",
            )
            .update(
                {
                    ServiceBookingReminder.status: "skipped",
                    ServiceBookingReminder.error_message: reason,
                    ServiceBookingReminder.meta: {"reason": reason},
                },
                synchronize_session=False,
            )
        )
        if updated:
            logger.info(f"⏭️ Skipped {updated} pending reminder(s) for booking {booking_id}: {reason}")
        return updated

    def list_due(self, now: datetime, limit: int) -> list[ServiceBookingReminder]:
        return (
            self.db.query(ServiceBookingReminder)
            .populate_existing()
            .filter(
                ServiceBookingReminder.user_id == self.user_id,
                ServiceBookingReminder.status == "pending",
                ServiceBookingReminder.scheduled_for <= now,
            )
            .order_by(ServiceBookingReminder.scheduled_for.asc())
            .limit(limit)
            .all()
        )

    def list_recent(self, limit: int) -> list[ServiceBookingReminder]:
        return (
            self.db.query(ServiceBookingReminder)
            .filter(ServiceBookingReminder.user_id == self.user_id)
            .order_by(ServiceBookingReminder.scheduled_for.desc())
            .limit(limit)
            .all()
        )

    def count_pending_due(self, now: datetime) -> int:
        return (
            self.db.query(func.count(ServiceBookingReminder.id))
            .filter(
                ServiceBookingReminder.user_id == self.user_id,
                ServiceBookingReminder.status == "pending",
                ServiceBookingReminder.scheduled_for <= now,
            )
            .scalar()
        )

    def list_for_booking(self, booking_id: int) -> list[ServiceBookingReminder]:
        return (
            self.db.query(ServiceBookingReminder)
            .populate_existing()
            .filter(
                ServiceBookingReminder.user_id == self.user_id,
                ServiceBookingReminder.booking_id == booking_id,
            )
            .order_by(ServiceBookingReminder.scheduled_for.asc())
            .all()
        )

    def mark_sent(self, reminder: ServiceBookingReminder, message_sid: Optional[str], metadata: dict) -> None:
        reminder.status = "sent"
        reminder.sent_at = self.clock()
        reminder.twilio_message_sid = message_sid
        reminder.error_message = None
        reminder.meta = metadata

    def mark_skipped(self, reminder: ServiceBookingReminder, reason: str, metadata: Optional[dict] = None) -> None:
        reminder.status = "skipped"
        reminder.error_message = reason
        reminder.meta = {"reason": reason, **(metadata or {})}

    def mark_error(self, reminder: ServiceBookingReminder, error: str, metadata: dict) -> None:
        reminder.status = "error"
        reminder.error_message = error
        reminder.meta = metadata
