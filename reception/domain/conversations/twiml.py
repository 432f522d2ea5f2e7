"""TwiML rendering for webhook replies"""

from xml.sax.saxutils import escape

_QUOTES = {'"': "&quot;", "'": "&apos;"}


def build_sms_twiml(message: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message>{escape(message, _QUOTES)}</Message></Response>"
    )
