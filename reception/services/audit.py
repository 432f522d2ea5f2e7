"""
Automation audit trail: automation events and AI-run records.

Both helpers only add rows to the session; the caller owns the commit.
"""

import logging
import math
from typing import Optional

from sqlalchemy.orm import Session

from ..models import ServiceAIRun, ServiceAutomationEvent

logger = logging.getLogger(__name__)


def estimate_token_count(text: Optional[str]) -> int:
    """Rough token estimate: one token per four characters, at least one for non-empty text"""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


def record_automation_event(
    db: Session,
    user_id: int,
    event_type: str,
    payload: Optional[dict] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    success: bool = True,
    error_message: Optional[str] = None,
) -> ServiceAutomationEvent:
    event = ServiceAutomationEvent(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        success=success,
        error_message=error_message,
    )
    db.add(event)
    if not success:
        logger.warning(f"⚠️ Automation event {event_type} failed for user {user_id}: {error_message}")
    return event


def record_ai_run(
    db: Session,
    user_id: int,
    model: str,
    input_text: Optional[str],
    output_text: Optional[str],
    latency_ms: int,
    outcome: str,
    drift_score: Optional[float] = None,
    conversation_id: Optional[int] = None,
    lead_id: Optional[int] = None,
) -> ServiceAIRun:
    run = ServiceAIRun(
        user_id=user_id,
        conversation_id=conversation_id,
        lead_id=lead_id,
        model=model,
        input_tokens=estimate_token_count(input_text),
        output_tokens=estimate_token_count(output_text),
        latency_ms=max(0, int(latency_ms)),
        estimated_cost=0.0,
        outcome=outcome,
        drift_score=round(drift_score, 3) if drift_score is not None else None,
    )
    db.add(run)
    return run
