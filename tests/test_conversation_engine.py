from datetime import datetime, timedelta

import pytest

from reception.domain.conversations.pending import PENDING_KEY, PendingSelection, with_pending
from reception.domain.conversations.service import (
    GENERIC_REPLY,
    NO_BOOKING_REPLY,
    NO_PENDING_OPTIONS_REPLY,
    OPTIONS_EXPIRED_REPLY,
    RESCHEDULE_HANDOFF_REPLY,
    SELECTION_MISSING_BOOKING_REPLY,
    SELECTION_RETRIES_EXHAUSTED_REPLY,
    SELECTION_RETRY_REPLY,
    SLOT_TAKEN_REPLY,
    ConversationEngine,
)
from reception.domain.scheduling.schemas import SlotOption
from reception.models import (
    ServiceAIRun,
    ServiceAutomationEvent,
    ServiceBooking,
    ServiceBookingReminder,
    ServiceConversation,
    ServiceCustomer,
    ServiceLead,
    ServiceMessage,
    ServiceRescheduleRequest,
)


@pytest.fixture
def conversation_engine(db, business, customer, clock):
    return ConversationEngine(db, clock)


@pytest.fixture
def send(conversation_engine, business, customer):
    def _send(body, message_sid=None):
        return conversation_engine.handle_inbound(
            customer.phone_e164, business.twilio_phone_number, body, message_sid
        )

    return _send


def _conversation(db):
    return db.query(ServiceConversation).populate_existing().one()


def _booking(db, booking_id):
    return db.query(ServiceBooking).populate_existing().filter_by(id=booking_id).one()


def _request(db):
    return db.query(ServiceRescheduleRequest).populate_existing().one()


def _lead(db):
    return db.query(ServiceLead).populate_existing().one()


def _events(db, event_type):
    return db.query(ServiceAutomationEvent).filter_by(event_type=event_type).all()


def test_first_message_opens_thread_and_records_turn(db, send, customer, clock):
    reply = send("Hello there")

    conversation = _conversation(db)
    assert conversation.state == "open"
    assert conversation.customer_id == customer.id
    assert conversation.meta["source"] == "sms_inbound"
    assert conversation.last_message_at == clock.now

    lead = _lead(db)
    assert lead.status == "new"
    assert lead.source == "sms"
    assert conversation.lead_id == lead.id

    messages = db.query(ServiceMessage).order_by(ServiceMessage.id).all()
    assert [(m.direction, m.sender_type) for m in messages] == [("inbound", "customer"), ("outbound", "ai")]
    assert messages[1].body == reply

    run = db.query(ServiceAIRun).one()
    assert run.outcome == "fallback"
    assert run.input_tokens == 3
    assert run.conversation_id == conversation.id
    assert run.lead_id == lead.id


def test_redelivered_message_is_stored_once(db, send):
    send("Hello there", "SM100")
    send("Hello there", "SM100")

    assert db.query(ServiceMessage).filter_by(twilio_message_sid="SM100").count() == 1
    assert db.query(ServiceConversation).count() == 1


def test_unknown_business_gets_generic_reply(db, conversation_engine, customer):
    assert conversation_engine.handle_inbound(customer.phone_e164, "+15559998888", "hi") == GENERIC_REPLY
    assert db.query(ServiceConversation).count() == 0


def test_blank_body_gets_generic_reply(db, conversation_engine, business, customer):
    reply = conversation_engine.handle_inbound(customer.phone_e164, business.twilio_phone_number, "   ")

    assert reply == GENERIC_REPLY
    assert db.query(ServiceMessage).count() == 0


def test_more_options_without_pending_changes_nothing(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))

    reply = send("4")

    assert reply == NO_PENDING_OPTIONS_REPLY
    assert db.query(ServiceRescheduleRequest).count() == 0
    assert db.query(ServiceAutomationEvent).count() == 0
    assert db.query(ServiceBookingReminder).count() == 0
    assert _booking(db, booking.id).status == "confirmed"
    assert PENDING_KEY not in _conversation(db).meta
    assert db.query(ServiceAIRun).one().outcome == "fallback"


def test_reschedule_offers_three_options(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))

    reply = send("R")

    assert reply == (
        "Got it - here are available times:\n"
        "1) Mon, Jan 5, 2:00 PM\n"
        "2) Mon, Jan 5, 2:30 PM\n"
        "3) Mon, Jan 5, 3:00 PM\n"
        "Reply 1, 2, or 3 to choose a slot. Reply 4 for more times."
    )
    assert _booking(db, booking.id).status == "rescheduled"

    pending = _conversation(db).meta[PENDING_KEY]
    assert pending["bookingId"] == booking.id
    assert pending["batch"] == 1
    assert len(pending["options"]) == 3

    request = _request(db)
    assert request.status == "options_sent"
    assert request.option_batch == 1
    assert request.latest_customer_message == "R"
    assert _lead(db).status == "qualified"
    assert len(_events(db, "sms_booking_reschedule_options_sent")) == 1
    assert db.query(ServiceAIRun).one().model == "booking-command-router-v2"


def test_selecting_an_option_moves_the_booking(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))
    send("R")

    reply = send("2")

    assert reply == "Perfect - your booking is now confirmed for Mon, Jan 5, 2:30 PM."
    moved = _booking(db, booking.id)
    assert moved.status == "confirmed"
    assert moved.scheduled_start == datetime(2026, 1, 5, 14, 30)
    assert moved.scheduled_end == datetime(2026, 1, 5, 16, 30)

    assert PENDING_KEY not in _conversation(db).meta
    request = _request(db)
    assert request.status == "confirmed"
    assert request.resolved_at == clock.now
    assert request.selected_option_index == 2
    assert _lead(db).status == "booked"

    reminders = {r.reminder_type: r for r in db.query(ServiceBookingReminder).all()}
    assert reminders["2h"].status == "pending"
    assert reminders["2h"].scheduled_for == datetime(2026, 1, 5, 12, 30)


def test_more_options_replaces_pending_batch(db, send, make_booking, clock):
    make_booking(clock.now + timedelta(days=3))
    send("R")

    reply = send("4")

    assert reply.splitlines()[1] == "1) Mon, Jan 5, 3:30 PM"
    pending = _conversation(db).meta[PENDING_KEY]
    assert pending["batch"] == 2
    assert [o["start"] for o in pending["options"]] == [
        "2026-01-05T15:30:00",
        "2026-01-05T16:00:00",
        "2026-01-05T16:30:00",
    ]
    assert _request(db).option_batch == 2
    assert len(_events(db, "sms_reschedule_more_options_sent")) == 1


def test_expired_selection_hands_off(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))
    send("R")
    clock.advance(minutes=61)

    reply = send("2")

    assert reply == OPTIONS_EXPIRED_REPLY
    assert PENDING_KEY not in _conversation(db).meta
    request = _request(db)
    assert request.status == "handoff"
    assert request.meta["reason"] == "options_expired"
    assert request.sla_due_at == clock.now + timedelta(minutes=30)
    unchanged = _booking(db, booking.id)
    assert unchanged.status == "rescheduled"
    assert unchanged.scheduled_start == datetime(2026, 1, 8, 12, 0)


def test_invalid_selection_is_capped(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))
    send("Hello there")
    conversation = _conversation(db)
    option = SlotOption(
        index=1,
        start=datetime(2026, 1, 6, 9, 0),
        end=datetime(2026, 1, 6, 11, 0),
        label="Tue, Jan 6, 9:00 AM",
    )
    conversation.meta = with_pending(conversation.meta, PendingSelection.create(booking.id, [option], 1, clock.now))
    db.commit()

    assert send("3") == SELECTION_RETRY_REPLY
    assert _conversation(db).meta[PENDING_KEY]["invalidAttempts"] == 1
    assert send("2") == SELECTION_RETRY_REPLY
    assert send("3") == SELECTION_RETRIES_EXHAUSTED_REPLY

    conversation = _conversation(db)
    assert PENDING_KEY not in conversation.meta
    assert conversation.state == "handoff"
    request = _request(db)
    assert request.status == "handoff"
    assert request.meta["reason"] == "invalid_selection_retries"


def test_taken_slot_is_rejected(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))
    send("R")
    make_booking(datetime(2026, 1, 5, 13, 30), minutes=60)

    reply = send("1")

    assert reply == SLOT_TAKEN_REPLY
    assert PENDING_KEY not in _conversation(db).meta
    assert _booking(db, booking.id).status == "rescheduled"
    assert len(_events(db, "sms_reschedule_option_unavailable")) == 1


def test_selection_for_cancelled_booking_hands_off(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))
    send("R")
    booking = _booking(db, booking.id)
    booking.status = "cancelled"
    db.commit()

    reply = send("1")

    assert reply == SELECTION_MISSING_BOOKING_REPLY
    assert PENDING_KEY not in _conversation(db).meta
    request = _request(db)
    assert request.status == "handoff"
    assert request.meta["reason"] == "booking_not_found"


def test_reschedule_without_availability_hands_off(db, send, make_booking, user, clock):
    neighbour = ServiceCustomer(user_id=user.id, phone_e164="+15554445555")
    db.add(neighbour)
    db.commit()
    make_booking(clock.now, minutes=60 * 24 * 30, customer_id=neighbour.id)
    booking = make_booking(clock.now + timedelta(days=3))

    reply = send("reschedule please")

    assert reply == RESCHEDULE_HANDOFF_REPLY
    assert _booking(db, booking.id).status == "rescheduled"
    assert _conversation(db).state == "handoff"
    request = _request(db)
    assert request.status == "handoff"
    assert request.meta["reason"] == "auto_options_unavailable"
    assert db.query(ServiceAIRun).one().outcome == "handoff"


def test_first_confirmation(db, send, make_booking, service_type, clock):
    booking = make_booking(clock.now + timedelta(days=1), status="pending", service_type_id=service_type.id)

    reply = send("C")

    assert reply == (
        "Confirmed. Your booking for Deep Clean is set for Tue, Jan 6, 12:00 PM. "
        "Reply R anytime if you need to reschedule."
    )
    assert _booking(db, booking.id).status == "confirmed"
    assert db.query(ServiceBookingReminder).count() == 2
    assert _lead(db).status == "booked"
    assert _events(db, "sms_booking_confirmed")[0].payload["alreadyConfirmed"] is False


def test_repeat_confirmation_uses_already_confirmed_wording(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=1))

    reply = send("C")

    assert reply == "You're all set - your booking is already confirmed for Tue, Jan 6, 12:00 PM."
    assert _booking(db, booking.id).status == "confirmed"


def test_confirm_closes_open_negotiation(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=3))
    send("R")

    send("yes")

    assert _booking(db, booking.id).status == "confirmed"
    assert PENDING_KEY not in _conversation(db).meta
    request = _request(db)
    assert request.status == "closed"
    assert request.meta["reason"] == "customer_confirmed"


def test_command_without_booking(db, send):
    assert send("C") == NO_BOOKING_REPLY
    assert len(_events(db, "sms_booking_command_no_match")) == 1


def test_past_bookings_are_not_matched(db, send, make_booking, clock):
    make_booking(clock.now - timedelta(hours=3))

    assert send("C") == NO_BOOKING_REPLY


def test_human_request_hands_off_conversation(db, send):
    reply = send("Can I talk to a person?")

    assert reply.startswith("No problem - a team member will reach out shortly.")
    assert _conversation(db).state == "handoff"
    assert db.query(ServiceAIRun).one().outcome == "handoff"
    assert len(_events(db, "sms_inbound_auto_reply")) == 1


def test_confirmation_after_handoff_reopens_conversation(db, send, make_booking, clock):
    booking = make_booking(clock.now + timedelta(days=2), status="pending")
    send("I want to speak to a human")
    assert _conversation(db).state == "handoff"

    reply = send("C")

    assert reply.startswith("Confirmed.")
    assert _booking(db, booking.id).status == "confirmed"
    assert _conversation(db).state == "open"
    assert db.query(ServiceConversation).count() == 1


def test_urgent_free_text_qualifies_lead(db, send):
    send("urgent please call me")

    assert _conversation(db).state == "handoff"
    assert _lead(db).status == "qualified"


def test_plain_free_text_after_handoff_returns_to_open(db, send):
    send("Can I talk to a person?")

    send("How much for a deep clean?")

    assert _conversation(db).state == "open"
    assert _lead(db).status == "new"


def test_thread_is_reused_across_turns(db, send):
    send("Hello there")
    send("How much for a deep clean?")

    assert db.query(ServiceConversation).count() == 1
    assert db.query(ServiceLead).count() == 1
    assert db.query(ServiceMessage).count() == 4
    assert db.query(ServiceAIRun).count() == 2


def test_failed_turn_still_replies_and_records(db, conversation_engine, send, monkeypatch):
    send("Hello there")

    def explode(context):
        raise RuntimeError("slot search unavailable")

    monkeypatch.setattr(conversation_engine, "_route", explode)

    assert send("R") == GENERIC_REPLY
    failed = db.query(ServiceAIRun).filter_by(outcome="failed").one()
    assert failed.conversation_id == _conversation(db).id
    last = db.query(ServiceMessage).order_by(ServiceMessage.id.desc()).first()
    assert last.body == GENERIC_REPLY
