"""
Time helpers.

Timestamps are stored as naive UTC. Business-local time only exists at the
edges: working-hours checks and customer-facing labels.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    """Look up an IANA zone, falling back to UTC for blank or unknown names"""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"⚠️ Unknown timezone '{name}', falling back to UTC")
        return UTC


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Convert a naive UTC timestamp into an aware business-local one"""
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def format_schedule_label(value: datetime, tz: ZoneInfo) -> str:
    """Render a naive UTC timestamp as e.g. 'Mon, Jan 5, 2:00 PM' in the given zone"""
    local = to_local(value, tz)
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{local:%a}, {local:%b} {local.day}, {hour}:{local.minute:02d} {meridiem}"


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into naive UTC; None if unparseable"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC timestamp for JSON metadata"""
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + "Z"
