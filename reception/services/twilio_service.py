"""
Twilio SMS Service
Outbound SMS gateway used by the reminder sweep
"""

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ..config import (
    SECRET_KEY,
    SMS_SEND_TIMEOUT_SECONDS,
    TWILIO_ACCOUNT_SID,
    TWILIO_API_BASE,
    TWILIO_AUTH_TOKEN,
)
from ..models_twilio import TwilioIntegration, TwilioSMSLog
from ..shared.validators import mask_phone

logger = logging.getLogger(__name__)


def get_fernet_key() -> bytes:
    key = hashlib.sha256(SECRET_KEY.encode()).digest()
    return base64.urlsafe_b64encode(key)


# Encryption for credentials
cipher_suite = Fernet(get_fernet_key())


def encrypt_credential(credential: str) -> str:
    """Encrypt a credential for storage"""
    return cipher_suite.encrypt(credential.encode()).decode()


def decrypt_credential(encrypted_credential: str) -> str:
    """Decrypt a stored credential"""
    return cipher_suite.decrypt(encrypted_credential.encode()).decode()


@dataclass
class SmsResult:
    ok: bool
    message_sid: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TwilioCredentials:
    account_sid: str
    auth_token: str
    messaging_service_sid: Optional[str] = None
    integration_id: Optional[int] = None


def load_credentials(
    db: Session, user_id: int, integration: Optional[TwilioIntegration] = None
) -> Optional[TwilioCredentials]:
    """Business credentials if stored, else the platform TWILIO_* credentials"""
    if integration is None:
        integration = db.query(TwilioIntegration).filter(TwilioIntegration.user_id == user_id).first()

    if integration:
        try:
            return TwilioCredentials(
                account_sid=decrypt_credential(integration.account_sid),
                auth_token=decrypt_credential(integration.auth_token),
                messaging_service_sid=(
                    decrypt_credential(integration.messaging_service_sid)
                    if integration.messaging_service_sid
                    else None
                ),
                integration_id=integration.id,
            )
        except InvalidToken:
            logger.error(f"❌ Failed to decrypt Twilio credentials for user {user_id}")
            return None

    if TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN:
        return TwilioCredentials(account_sid=TWILIO_ACCOUNT_SID, auth_token=TWILIO_AUTH_TOKEN)
    return None


class TwilioSmsGateway:
    """
    Send SMS for one business.

    Credentials come from the business's TwilioIntegration row when present,
    otherwise from the platform-level TWILIO_* environment variables.
    ``send`` never raises: failures come back as ``SmsResult(ok=False, error=...)``.
    """

    def __init__(self, db: Session, user_id: int, timeout: float = SMS_SEND_TIMEOUT_SECONDS):
        self.db = db
        self.user_id = user_id
        self.timeout = timeout

    def _integration(self) -> Optional[TwilioIntegration]:
        return (
            self.db.query(TwilioIntegration).filter(TwilioIntegration.user_id == self.user_id).first()
        )

    def resolve_credentials(self) -> Optional[TwilioCredentials]:
        integration = self._integration()
        if integration and (not integration.sms_enabled or not integration.send_booking_reminders):
            logger.debug(f"SMS disabled for user {self.user_id}")
            return None
        return load_credentials(self.db, self.user_id, integration)

    def is_configured(self) -> bool:
        return self.resolve_credentials() is not None

    async def send(
        self,
        to_phone: str,
        from_phone: Optional[str],
        body: str,
        message_type: str = "booking_reminder",
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
    ) -> SmsResult:
        if not to_phone or not body or not body.strip():
            return SmsResult(ok=False, error="invalid_sms_payload")

        credentials = self.resolve_credentials()
        if not credentials:
            return SmsResult(ok=False, error="twilio_not_configured")

        data = {"To": to_phone, "Body": body}
        if credentials.messaging_service_sid:
            data["MessagingServiceSid"] = credentials.messaging_service_sid
        elif from_phone:
            data["From"] = from_phone
        else:
            return SmsResult(ok=False, error="twilio_not_configured")

        logger.info(f"📱 Sending SMS: type={message_type}, to={mask_phone(to_phone)}, user={self.user_id}")

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{TWILIO_API_BASE}/Accounts/{credentials.account_sid}/Messages.json",
                    auth=(credentials.account_sid, credentials.auth_token),
                    data=data,
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"❌ Twilio API error: {error}")
            self._log(credentials, to_phone, from_phone, body, message_type, entity_type, entity_id, None, "failed", error)
            return SmsResult(ok=False, error=error)

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code in (200, 201):
            message_sid = payload.get("sid")
            status = payload.get("status") or "queued"
            self._log(credentials, to_phone, from_phone, body, message_type, entity_type, entity_id, message_sid, "sent", None)
            logger.info(f"✅ SMS sent: {message_type} to {mask_phone(to_phone)} (SID: {message_sid})")
            return SmsResult(ok=True, message_sid=message_sid, status=status)

        error_message = payload.get("message") or f"Twilio request failed ({response.status_code})"
        error_code = payload.get("code")
        error = f"[{error_code}] {error_message}" if error_code else error_message
        self._log(credentials, to_phone, from_phone, body, message_type, entity_type, entity_id, None, "failed", error)
        logger.error(f"❌ Twilio API error: {error}")
        return SmsResult(ok=False, error=error)

    def _log(
        self,
        credentials: TwilioCredentials,
        to_phone: str,
        from_phone: Optional[str],
        body: str,
        message_type: str,
        entity_type: Optional[str],
        entity_id: Optional[int],
        message_sid: Optional[str],
        status: str,
        error: Optional[str],
    ) -> None:
        self.db.add(
            TwilioSMSLog(
                user_id=self.user_id,
                integration_id=credentials.integration_id,
                to_phone=to_phone,
                from_phone=from_phone,
                message_body=body,
                message_type=message_type,
                entity_type=entity_type,
                entity_id=entity_id,
                twilio_message_sid=message_sid,
                status=status,
                error_message=error,
            )
        )
