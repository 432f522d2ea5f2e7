"""Shared validation utilities"""

import re
from typing import Optional


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    Ten-digit numbers are treated as US numbers. Anything already carrying a
    country code keeps it. Returns None when the input cannot be a phone number.
    """
    if not phone:
        return None

    raw = phone.strip()
    digits = re.sub(r"\D", "", raw)

    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if raw.startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    return None


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number for log output"""
    if not phone:
        return "<none>"
    return f"***{phone[-4:]}"
