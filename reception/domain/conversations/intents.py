"""
Keyword intent classification for inbound SMS.

Matchers are tried in a fixed order and each maps literal customer text to
one member of a closed enum. Whether a numbered reply counts as a selection
depends on conversation state, which the caller passes in.
"""

import re
from enum import Enum
from typing import Optional

MORE_OPTIONS_CHOICE = 4


class Intent(str, Enum):
    NUMBERED_SELECTION = "numbered_selection"
    MORE_OPTIONS = "more_options"
    CONFIRM = "confirm"
    RESCHEDULE = "reschedule"
    NONE = "none"


class BookingCommand(str, Enum):
    CONFIRM = "confirm"
    RESCHEDULE = "reschedule"


_OPTION_PHRASE = re.compile(r"option\s*([1-4])")


def normalize_command_input(text: Optional[str]) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace"""
    if not text:
        return ""
    lowered = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    return re.sub(r"\s+", " ", lowered).strip()


def detect_selection(text: Optional[str]) -> Optional[int]:
    """A reply of 1-4 (first word) or 'option N'; None otherwise"""
    normalized = normalize_command_input(text)
    if not normalized:
        return None

    first = normalized.split(" ")[0]
    if first.isdigit() and 1 <= int(first) <= 4:
        return int(first)

    match = _OPTION_PHRASE.search(normalized)
    if match:
        return int(match.group(1))
    return None


def detect_booking_command(text: Optional[str]) -> Optional[BookingCommand]:
    normalized = normalize_command_input(text)
    if not normalized:
        return None

    first = normalized.split(" ")[0]

    if first in ("c", "confirm", "confirmed", "yes"):
        return BookingCommand.CONFIRM

    if first in ("r", "reschedule") or normalized.startswith(("change ", "move ")):
        return BookingCommand.RESCHEDULE

    return None


def classify(text: Optional[str], has_pending_selection: bool) -> tuple[Intent, Optional[int]]:
    """
    Classify an inbound message.

    Returns the intent plus the selected number for selection intents.
    """
    selection = detect_selection(text)
    if selection is not None:
        if has_pending_selection:
            if selection == MORE_OPTIONS_CHOICE:
                return Intent.MORE_OPTIONS, selection
            return Intent.NUMBERED_SELECTION, selection
        if selection == MORE_OPTIONS_CHOICE:
            return Intent.MORE_OPTIONS, selection

    command = detect_booking_command(text)
    if command is BookingCommand.CONFIRM:
        return Intent.CONFIRM, None
    if command is BookingCommand.RESCHEDULE:
        return Intent.RESCHEDULE, None

    return Intent.NONE, None
