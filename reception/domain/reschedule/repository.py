"""Reschedule request repository"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import ServiceRescheduleRequest
from ...shared.persistence import upsert


class RescheduleRequestRepository:
    """Repository for reschedule request rows, always scoped by user_id"""

    @staticmethod
    def get_by_booking(db: Session, booking_id: int, user_id: int) -> Optional[ServiceRescheduleRequest]:
        return (
            db.query(ServiceRescheduleRequest)
            .populate_existing()
            .filter(
                ServiceRescheduleRequest.booking_id == booking_id,
                ServiceRescheduleRequest.user_id == user_id,
            )
            .first()
        )

    @staticmethod
    def get_by_id(db: Session, request_id: int, user_id: int) -> Optional[ServiceRescheduleRequest]:
        return (
            db.query(ServiceRescheduleRequest)
            .populate_existing()
            .filter(ServiceRescheduleRequest.id == request_id, ServiceRescheduleRequest.user_id == user_id)
            .first()
        )

    @staticmethod
    def upsert_by_booking(db: Session, user_id: int, values: dict) -> int:
        """Replace the negotiation row for a booking; never touches another tenant's row"""
        table = ServiceRescheduleRequest.__table__
        return upsert(
            db,
            ServiceRescheduleRequest,
            {"user_id": user_id, **values},
            conflict_columns=("booking_id",),
            where=table.c.user_id == user_id,
        )

    @staticmethod
    def list_requests(
        db: Session, user_id: int, statuses: Optional[list[str]] = None, limit: int = 60
    ) -> list[ServiceRescheduleRequest]:
        query = db.query(ServiceRescheduleRequest).filter(ServiceRescheduleRequest.user_id == user_id)
        if statuses:
            query = query.filter(ServiceRescheduleRequest.status.in_(statuses))
        return query.order_by(ServiceRescheduleRequest.requested_at.desc()).limit(limit).all()

    @staticmethod
    def count_by_status(db: Session, user_id: int) -> dict[str, int]:
        rows = (
            db.query(ServiceRescheduleRequest.status, func.count(ServiceRescheduleRequest.id))
            .filter(ServiceRescheduleRequest.user_id == user_id)
            .group_by(ServiceRescheduleRequest.status)
            .all()
        )
        return {status: count for status, count in rows}
