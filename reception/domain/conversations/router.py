"""Inbound SMS webhook"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from ...config import TWILIO_AUTH_TOKEN, TWILIO_VALIDATE_SIGNATURE
from ...database import get_db
from ...services.twilio_service import load_credentials
from ...shared.validators import normalize_phone
from ...webhook_security import public_request_url, verify_twilio_signature
from ..bookings.repository import BookingRepository
from .service import ConversationEngine
from .twiml import build_sms_twiml

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["Twilio SMS"])


def get_conversation_engine(db: Session = Depends(get_db)) -> ConversationEngine:
    """Dependency injection for ConversationEngine"""
    return ConversationEngine(db)


def webhook_auth_token(db: Session, recipient: Optional[str]) -> Optional[str]:
    """Auth token of the business that owns the called number, else the platform token"""
    phone = normalize_phone(recipient)
    business = BookingRepository.get_business_by_phone(db, phone) if phone else None
    if business:
        credentials = load_credentials(db, business.user_id)
        if credentials:
            return credentials.auth_token
    return TWILIO_AUTH_TOKEN


@router.post("/sms/inbound")
async def inbound_sms(
    request: Request,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_conversation_engine),
):
    """Twilio messaging webhook; replies with TwiML"""
    form = await request.form()
    params = {key: value for key, value in form.items() if isinstance(value, str)}

    if TWILIO_VALIDATE_SIGNATURE:
        token = webhook_auth_token(db, params.get("To"))
        signature = request.headers.get("X-Twilio-Signature")
        if not verify_twilio_signature(token, public_request_url(request), params, signature):
            raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    reply = engine.handle_inbound(
        params.get("From"),
        params.get("To"),
        params.get("Body"),
        params.get("MessageSid"),
    )
    return Response(content=build_sms_twiml(reply), media_type="text/xml")
