"""Keyword heuristic for free-text messages that match no command"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ReceptionDecision:
    reply: str
    confidence: float
    outcome: str  # completed, handoff, fallback
    drift_score: float


HANDOFF_KEYWORDS = ("human", "agent", "person", "call me", "speak to someone")
BOOKING_KEYWORDS = ("book", "schedule", "appointment", "tomorrow", "today")
QUOTE_KEYWORDS = ("quote", "price", "cost", "estimate", "how much")
URGENT_KEYWORDS = ("urgent", "asap", "emergency")


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def _mentions(text: str, keywords) -> bool:
    return any(keyword in text for keyword in keywords)


def build_reception_decision(business_name: str, customer_message: str) -> ReceptionDecision:
    # drift_score is 1 - confidence plus a small per-branch bias; analysis only
    normalized = (customer_message or "").lower()

    if _mentions(normalized, HANDOFF_KEYWORDS):
        confidence = 0.93
        return ReceptionDecision(
            reply="No problem - a team member will reach out shortly. If helpful, send your address and best callback time.",
            confidence=confidence,
            outcome="handoff",
            drift_score=_clamp(1 - confidence + 0.02),
        )

    if _mentions(normalized, BOOKING_KEYWORDS):
        confidence = 0.88
        return ReceptionDecision(
            reply="Great - please share preferred date/time and your service address. We will confirm the nearest available slot.",
            confidence=confidence,
            outcome="completed",
            drift_score=_clamp(1 - confidence),
        )

    if _mentions(normalized, QUOTE_KEYWORDS):
        confidence = 0.86
        return ReceptionDecision(
            reply="Happy to help with a quote. Please send the service type, property size, and address and we will send pricing options.",
            confidence=confidence,
            outcome="completed",
            drift_score=_clamp(1 - confidence),
        )

    if _mentions(normalized, URGENT_KEYWORDS):
        confidence = 0.9
        return ReceptionDecision(
            reply="Understood - this looks urgent. A team member will contact you right away. Please confirm your address.",
            confidence=confidence,
            outcome="handoff",
            drift_score=_clamp(1 - confidence + 0.025),
        )

    confidence = 0.7
    return ReceptionDecision(
        reply=(
            f"Thanks for contacting {business_name}. Please share your service need, address, "
            "and preferred time window so we can assist right away."
        ),
        confidence=confidence,
        outcome="fallback",
        drift_score=_clamp(1 - confidence + 0.01),
    )
