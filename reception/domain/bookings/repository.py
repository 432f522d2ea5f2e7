"""Booking repository - Database operations for bookings, customers and businesses"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import (
    ACTIVE_BOOKING_STATUSES,
    DEFAULT_BOOKING_MINUTES,
    ServiceBooking,
    ServiceBusiness,
    ServiceCustomer,
    ServiceType,
)


class BookingRepository:
    """Repository for booking database operations. Every query is scoped by user_id."""

    @staticmethod
    def get_business(db: Session, user_id: int) -> Optional[ServiceBusiness]:
        return db.query(ServiceBusiness).filter(ServiceBusiness.user_id == user_id).first()

    @staticmethod
    def get_business_by_phone(db: Session, phone: str) -> Optional[ServiceBusiness]:
        return db.query(ServiceBusiness).filter(ServiceBusiness.twilio_phone_number == phone).first()

    @staticmethod
    def list_businesses_with_phone(db: Session, limit: int = 200) -> list[ServiceBusiness]:
        return (
            db.query(ServiceBusiness)
            .filter(ServiceBusiness.twilio_phone_number.isnot(None))
            .order_by(ServiceBusiness.user_id.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def get_booking(db: Session, booking_id: int, user_id: int) -> Optional[ServiceBooking]:
        """Fetch a booking fresh from the store, discarding any cached state"""
        return (
            db.query(ServiceBooking)
            .populate_existing()
            .filter(ServiceBooking.id == booking_id, ServiceBooking.user_id == user_id)
            .first()
        )

    @staticmethod
    def get_customer(db: Session, customer_id: int, user_id: int) -> Optional[ServiceCustomer]:
        return (
            db.query(ServiceCustomer)
            .filter(ServiceCustomer.id == customer_id, ServiceCustomer.user_id == user_id)
            .first()
        )

    @staticmethod
    def get_customers(db: Session, customer_ids: list[int], user_id: int) -> dict[int, ServiceCustomer]:
        if not customer_ids:
            return {}
        rows = (
            db.query(ServiceCustomer)
            .filter(ServiceCustomer.user_id == user_id, ServiceCustomer.id.in_(customer_ids))
            .all()
        )
        return {row.id: row for row in rows}

    @staticmethod
    def get_bookings(db: Session, booking_ids: list[int], user_id: int) -> dict[int, ServiceBooking]:
        if not booking_ids:
            return {}
        rows = (
            db.query(ServiceBooking)
            .filter(ServiceBooking.user_id == user_id, ServiceBooking.id.in_(booking_ids))
            .all()
        )
        return {row.id: row for row in rows}

    @staticmethod
    def get_active_bookings_between(
        db: Session,
        user_id: int,
        window_start: datetime,
        window_end: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> list[ServiceBooking]:
        query = db.query(ServiceBooking).filter(
            ServiceBooking.user_id == user_id,
            ServiceBooking.status.in_(ACTIVE_BOOKING_STATUSES),
            ServiceBooking.scheduled_start >= window_start,
            ServiceBooking.scheduled_start <= window_end,
        )
        if exclude_booking_id is not None:
            query = query.filter(ServiceBooking.id != exclude_booking_id)
        return query.order_by(ServiceBooking.scheduled_start.asc()).all()

    @staticmethod
    def get_nearest_upcoming_booking(
        db: Session, user_id: int, customer_id: int, since: datetime
    ) -> Optional[ServiceBooking]:
        return (
            db.query(ServiceBooking)
            .populate_existing()
            .filter(
                ServiceBooking.user_id == user_id,
                ServiceBooking.customer_id == customer_id,
                ServiceBooking.status.in_(ACTIVE_BOOKING_STATUSES),
                ServiceBooking.scheduled_start >= since,
            )
            .order_by(ServiceBooking.scheduled_start.asc())
            .first()
        )

    @staticmethod
    def get_service_type(db: Session, service_type_id: Optional[int], user_id: int) -> Optional[ServiceType]:
        if not service_type_id:
            return None
        return (
            db.query(ServiceType)
            .filter(ServiceType.id == service_type_id, ServiceType.user_id == user_id)
            .first()
        )

    @staticmethod
    def booking_duration_minutes(db: Session, booking: ServiceBooking) -> int:
        """Length from the booking itself, else the service type default, else 120"""
        if booking.scheduled_end and booking.scheduled_end > booking.scheduled_start:
            return int((booking.scheduled_end - booking.scheduled_start).total_seconds() // 60)
        service_type = BookingRepository.get_service_type(db, booking.service_type_id, booking.user_id)
        if service_type and service_type.default_duration_minutes:
            return int(service_type.default_duration_minutes)
        return DEFAULT_BOOKING_MINUTES
