"""
Webhook Security Module

Signature verification for inbound Twilio webhooks and the shared-secret
check used by the reminder cron trigger.
"""

import base64
import hashlib
import hmac
import logging
from typing import Mapping, Optional

from fastapi import Request

from .config import PUBLIC_WEBHOOK_BASE_URL, RECEPTION_REMINDER_CRON_SECRET

logger = logging.getLogger(__name__)


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two strings in constant time"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """
    Twilio request signature: base64(HMAC-SHA1(auth_token, url + sorted key/value pairs)).

    Params are the POSTed form fields, concatenated as key followed by value
    in key order with no separators.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def public_request_url(request: Request) -> str:
    """URL Twilio signed; behind a proxy PUBLIC_WEBHOOK_BASE_URL replaces scheme and host"""
    if PUBLIC_WEBHOOK_BASE_URL:
        url = PUBLIC_WEBHOOK_BASE_URL.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"
        return url
    return str(request.url)


def verify_twilio_signature(
    auth_token: Optional[str], url: str, params: Mapping[str, str], signature: Optional[str]
) -> bool:
    if not auth_token:
        logger.warning("🚫 Twilio webhook rejected: no auth token available for verification")
        return False
    if not signature:
        logger.warning("🚫 Twilio webhook rejected: missing X-Twilio-Signature header")
        return False

    expected = compute_twilio_signature(auth_token, url, params)
    if not constant_time_compare(expected, signature):
        logger.warning(f"🚫 Twilio webhook signature mismatch for {url}")
        return False
    return True


def verify_cron_secret(provided: Optional[str]) -> bool:
    """True when the X-Cron-Secret header matches RECEPTION_REMINDER_CRON_SECRET"""
    if not RECEPTION_REMINDER_CRON_SECRET:
        return False
    return constant_time_compare(provided, RECEPTION_REMINDER_CRON_SECRET)
