from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Booking statuses that still hold a slot on the calendar
ACTIVE_BOOKING_STATUSES = ("pending", "confirmed", "rescheduled")
BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled", "rescheduled")

DEFAULT_BOOKING_MINUTES = 120


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    business = relationship("ServiceBusiness", back_populates="user", uselist=False)


class ServiceBusiness(Base):
    """Business profile used for SMS routing and localisation"""

    __tablename__ = "service_businesses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    business_name = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")  # IANA zone name
    # Inbound messages are routed to a business by the number they were sent to
    twilio_phone_number = Column(String(20), nullable=True, unique=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="business")


class ServiceCustomer(Base):
    __tablename__ = "service_customers"
    __table_args__ = (UniqueConstraint("user_id", "phone_e164", name="uq_service_customers_user_phone"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    phone_e164 = Column(String(20), nullable=False)
    full_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class ServiceType(Base):
    __tablename__ = "service_types"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    default_duration_minutes = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class ServiceLead(Base):
    __tablename__ = "service_leads"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("service_customers.id"), nullable=True)
    status = Column(String(20), nullable=False, default="new")  # new, qualified, booked, lost
    source = Column(String(20), nullable=False, default="sms")
    summary = Column(Text, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class ServiceConversation(Base):
    __tablename__ = "service_conversations"
    __table_args__ = (
        # One open/handoff thread per customer and channel
        Index(
            "uq_service_conversations_active",
            "user_id",
            "customer_id",
            "channel",
            unique=True,
            postgresql_where=text("state IN ('open', 'handoff')"),
            sqlite_where=text("state IN ('open', 'handoff')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("service_customers.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("service_leads.id"), nullable=True)
    channel = Column(String(10), nullable=False, default="sms")  # sms, voice
    state = Column(String(10), nullable=False, default="open")  # open, handoff, closed
    meta = Column("metadata", JSON, nullable=False, default=dict)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class ServiceMessage(Base):
    __tablename__ = "service_messages"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    conversation_id = Column(Integer, ForeignKey("service_conversations.id"), nullable=False, index=True)
    direction = Column(String(10), nullable=False)  # inbound, outbound
    sender_type = Column(String(10), nullable=False)  # customer, ai, staff, system
    body = Column(Text, nullable=False)
    ai_confidence = Column(Float, nullable=True)
    twilio_message_sid = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime, server_default=func.now())


class ServiceBooking(Base):
    __tablename__ = "service_bookings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("service_customers.id"), nullable=False, index=True)
    service_type_id = Column(Integer, ForeignKey("service_types.id"), nullable=True)
    scheduled_start = Column(DateTime, nullable=False, index=True)
    scheduled_end = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    service_type = relationship("ServiceType")


class ServiceBookingReminder(Base):
    __tablename__ = "service_booking_reminders"
    __table_args__ = (
        UniqueConstraint("booking_id", "reminder_type", name="uq_service_booking_reminders_booking_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("service_bookings.id"), nullable=False, index=True)
    reminder_type = Column(String(8), nullable=False)  # 24h, 2h
    scheduled_for = Column(DateTime, nullable=False, index=True)
    status = Column(String(10), nullable=False, default="pending")  # pending, sent, skipped, error
    sent_at = Column(DateTime, nullable=True)
    twilio_message_sid = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class ServiceRescheduleRequest(Base):
    """Staff-facing record of a reschedule negotiation, one per booking"""

    __tablename__ = "service_reschedule_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("service_bookings.id"), nullable=False, unique=True)
    customer_id = Column(Integer, ForeignKey("service_customers.id"), nullable=True)
    lead_id = Column(Integer, ForeignKey("service_leads.id"), nullable=True)
    conversation_id = Column(Integer, ForeignKey("service_conversations.id"), nullable=True)
    # pending, options_sent, confirmed, handoff, closed
    status = Column(String(20), nullable=False, default="pending")
    requested_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    assigned_to = Column(String(120), nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    sla_due_at = Column(DateTime, nullable=True)
    escalation_level = Column(Integer, nullable=False, default=0)
    last_escalated_at = Column(DateTime, nullable=True)
    latest_customer_message = Column(Text, nullable=True)
    option_batch = Column(Integer, nullable=False, default=0)
    selected_option_index = Column(Integer, nullable=True)
    selected_start = Column(DateTime, nullable=True)
    selected_end = Column(DateTime, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class ServiceAutomationEvent(Base):
    """Append-only log of automated transitions"""

    __tablename__ = "service_automation_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_type = Column(String(80), nullable=False, index=True)
    entity_type = Column(String(40), nullable=True)
    entity_id = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class ServiceAIRun(Base):
    """Audit record for each automated reply"""

    __tablename__ = "service_ai_runs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    conversation_id = Column(Integer, ForeignKey("service_conversations.id"), nullable=True)
    lead_id = Column(Integer, ForeignKey("service_leads.id"), nullable=True)
    model = Column(String(80), nullable=False)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    latency_ms = Column(Integer, nullable=False, default=0)
    estimated_cost = Column(Float, nullable=False, default=0.0)
    outcome = Column(String(20), nullable=False)  # completed, fallback, handoff, failed
    drift_score = Column(Float, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
