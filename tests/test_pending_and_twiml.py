from datetime import datetime, timedelta

from reception.domain.conversations.pending import (
    PENDING_KEY,
    PendingSelection,
    read_pending,
    with_pending,
    without_pending,
)
from reception.domain.conversations.twiml import build_sms_twiml
from reception.domain.scheduling.schemas import SlotOption
from reception.webhook_security import compute_twilio_signature, verify_twilio_signature

NOW = datetime(2026, 1, 5, 12, 0)


def _options(*starts):
    return [
        SlotOption(index=i, start=start, end=start + timedelta(hours=2), label=f"slot {i}")
        for i, start in enumerate(starts, start=1)
    ]


def test_pending_selection_round_trips_through_metadata():
    pending = PendingSelection.create(42, _options(datetime(2026, 1, 5, 14), datetime(2026, 1, 5, 15)), 1, NOW)

    metadata = with_pending({"source": "sms_inbound"}, pending)

    assert metadata["source"] == "sms_inbound"
    assert metadata[PENDING_KEY]["bookingId"] == 42
    assert metadata[PENDING_KEY]["invalidAttempts"] == 0
    restored = read_pending(metadata)
    assert restored.booking_id == 42
    assert restored.expires_at == NOW + timedelta(minutes=60)
    assert restored.option(2).start == datetime(2026, 1, 5, 15)
    assert restored.option(3) is None


def test_new_options_replace_previous_selection():
    first = PendingSelection.create(1, _options(datetime(2026, 1, 5, 14)), 1, NOW)
    second = PendingSelection.create(1, _options(datetime(2026, 1, 6, 9)), 2, NOW)

    metadata = with_pending(with_pending({}, first), second)

    restored = read_pending(metadata)
    assert restored.batch == 2
    assert [o.start for o in restored.options] == [datetime(2026, 1, 6, 9)]


def test_without_pending_leaves_input_untouched():
    metadata = with_pending({}, PendingSelection.create(1, _options(NOW), 1, NOW))

    cleared = without_pending(metadata)

    assert PENDING_KEY not in cleared
    assert PENDING_KEY in metadata


def test_expiry_is_strictly_after_expires_at():
    pending = PendingSelection.create(1, _options(NOW), 1, NOW)

    assert not pending.is_expired(NOW + timedelta(minutes=60))
    assert pending.is_expired(NOW + timedelta(minutes=61))


def test_malformed_pending_is_treated_as_absent():
    assert read_pending({PENDING_KEY: {"bookingId": "not-a-number"}}) is None
    assert read_pending(None) is None


def test_last_offered_start():
    pending = PendingSelection.create(1, _options(datetime(2026, 1, 5, 15), datetime(2026, 1, 5, 14)), 1, NOW)

    assert pending.last_offered_start() == datetime(2026, 1, 5, 15)


def test_twiml_escapes_message():
    xml = build_sms_twiml('Tom & Jerry <3 "quotes"')

    assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?><Response><Message>')
    assert "Tom &amp; Jerry &lt;3 &quot;quotes&quot;" in xml
    assert xml.endswith("</Message></Response>")


def test_twilio_signature_verification():
    url = "https://reception.example.com/twilio/sms/inbound"
    params = {"From": "+15552223333", "To": "+15550001111", "Body": "R", "MessageSid": "SM1"}
    signature = compute_twilio_signature("token-123", url, params)

    assert verify_twilio_signature("token-123", url, params, signature)
    assert not verify_twilio_signature("other-token", url, params, signature)
    assert not verify_twilio_signature("token-123", url, {**params, "Body": "C"}, signature)
    assert not verify_twilio_signature("token-123", url, params, None)
    assert not verify_twilio_signature(None, url, params, signature)
