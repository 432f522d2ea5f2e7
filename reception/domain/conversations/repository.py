"""Conversation repository - customers, leads, conversations and messages"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ServiceConversation, ServiceCustomer, ServiceLead, ServiceMessage
from ...shared.persistence import insert_ignore, upsert

OPEN_CONVERSATION_STATES = ("open", "handoff")


class ConversationRepository:
    """Repository for the inbound SMS thread, scoped by user_id"""

    @staticmethod
    def upsert_customer(db: Session, user_id: int, phone: str) -> ServiceCustomer:
        insert_ignore(
            db,
            ServiceCustomer,
            {"user_id": user_id, "phone_e164": phone},
            ("user_id", "phone_e164"),
        )
        return (
            db.query(ServiceCustomer)
            .filter(ServiceCustomer.user_id == user_id, ServiceCustomer.phone_e164 == phone)
            .one()
        )

    @staticmethod
    def get_active_conversation(
        db: Session, user_id: int, customer_id: int, channel: str = "sms"
    ) -> Optional[ServiceConversation]:
        """Open or handoff thread, row-locked for the rest of the turn where the database supports it"""
        return (
            db.query(ServiceConversation)
            .populate_existing()
            .filter(
                ServiceConversation.user_id == user_id,
                ServiceConversation.customer_id == customer_id,
                ServiceConversation.channel == channel,
                ServiceConversation.state.in_(OPEN_CONVERSATION_STATES),
            )
            .order_by(ServiceConversation.id.desc())
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_conversation(db: Session, conversation_id: int, user_id: int) -> Optional[ServiceConversation]:
        return (
            db.query(ServiceConversation)
            .filter(ServiceConversation.id == conversation_id, ServiceConversation.user_id == user_id)
            .first()
        )

    @staticmethod
    def get_lead(db: Session, lead_id: Optional[int], user_id: int) -> Optional[ServiceLead]:
        if not lead_id:
            return None
        return db.query(ServiceLead).filter(ServiceLead.id == lead_id, ServiceLead.user_id == user_id).first()

    @staticmethod
    def create_lead(db: Session, user_id: int, customer_id: int, now: datetime) -> ServiceLead:
        lead = ServiceLead(
            user_id=user_id,
            customer_id=customer_id,
            status="new",
            source="sms",
            summary="Inbound SMS lead",
            last_activity_at=now,
        )
        db.add(lead)
        db.flush()
        return lead

    @staticmethod
    def create_conversation(
        db: Session, user_id: int, customer_id: int, lead_id: Optional[int], now: datetime
    ) -> ServiceConversation:
        """Raises IntegrityError if another delivery opened the thread first"""
        conversation = ServiceConversation(
            user_id=user_id,
            customer_id=customer_id,
            lead_id=lead_id,
            channel="sms",
            state="open",
            meta={"source": "sms_inbound"},
            last_message_at=now,
        )
        db.add(conversation)
        db.flush()
        return conversation

    @staticmethod
    def save_message(
        db: Session,
        user_id: int,
        conversation_id: int,
        direction: str,
        sender_type: str,
        body: str,
        message_sid: Optional[str] = None,
        ai_confidence: Optional[float] = None,
    ) -> None:
        values = {
            "user_id": user_id,
            "conversation_id": conversation_id,
            "direction": direction,
            "sender_type": sender_type,
            "body": body,
            "ai_confidence": ai_confidence,
        }
        if message_sid:
            # Redelivered webhooks update the existing row instead of duplicating it
            table = ServiceMessage.__table__
            upsert(
                db,
                ServiceMessage,
                {**values, "twilio_message_sid": message_sid},
                conflict_columns=("twilio_message_sid",),
                where=table.c.user_id == user_id,
            )
        else:
            db.add(ServiceMessage(**values))
