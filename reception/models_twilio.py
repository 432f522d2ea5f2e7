"""
Twilio Integration Models
Per-business gateway credentials and the outbound SMS audit log
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class TwilioIntegration(Base):
    """Store Twilio credentials for a business"""

    __tablename__ = "twilio_integrations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    # Twilio credentials (encrypted)
    account_sid = Column(Text, nullable=False)
    auth_token = Column(Text, nullable=False)
    messaging_service_sid = Column(Text, nullable=True)

    # Settings
    sms_enabled = Column(Boolean, default=True)
    send_booking_reminders = Column(Boolean, default=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class TwilioSMSLog(Base):
    """Track SMS messages sent via Twilio"""

    __tablename__ = "twilio_sms_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    integration_id = Column(Integer, ForeignKey("twilio_integrations.id"), nullable=True)

    # Message details
    to_phone = Column(String(20), nullable=False)
    from_phone = Column(String(20), nullable=True)
    message_body = Column(Text, nullable=False)
    message_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Integer, nullable=True)

    # Twilio response
    twilio_message_sid = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    integration = relationship("TwilioIntegration")
