from datetime import timedelta

import pytest

from reception.auth import create_access_token
from reception.domain.conversations import router as sms_router
from reception.domain.reminders.repository import ReminderStore
from reception.domain.reschedule.service import NegotiationContext, RescheduleRequestTracker
from reception.models import ServiceBookingReminder, ServiceRescheduleRequest
from reception.shared.timeutils import utcnow
from reception.webhook_security import compute_twilio_signature

INBOUND_URL = "http://testserver/twilio/sms/inbound"


def _reminder_statuses(db, booking_id):
    rows = db.query(ServiceBookingReminder).populate_existing().filter_by(booking_id=booking_id).all()
    return {r.reminder_type: r for r in rows}


@pytest.fixture
def upcoming_booking(make_booking):
    return make_booking(utcnow().replace(microsecond=0) + timedelta(days=3))


# Inbound webhook


def test_inbound_sms_replies_with_twiml(client, business, customer):
    response = client.post(
        "/twilio/sms/inbound",
        data={"From": customer.phone_e164, "To": business.twilio_phone_number, "Body": "Hi", "MessageSid": "SM1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")
    assert response.text.startswith('<?xml version="1.0" encoding="UTF-8"?><Response><Message>')
    assert "Sparkle Cleaning" in response.text


def test_inbound_sms_for_unknown_number_still_replies(client, customer):
    response = client.post("/twilio/sms/inbound", data={"From": customer.phone_e164, "To": "+15559998888"})

    assert response.status_code == 200
    assert "<Message>Thanks for reaching out." in response.text


def test_inbound_sms_signature_is_enforced(client, business, customer, monkeypatch):
    monkeypatch.setattr(sms_router, "TWILIO_VALIDATE_SIGNATURE", True)
    monkeypatch.setattr(sms_router, "TWILIO_AUTH_TOKEN", "platform-token")
    params = {"From": customer.phone_e164, "To": business.twilio_phone_number, "Body": "Hi", "MessageSid": "SM2"}

    rejected = client.post("/twilio/sms/inbound", data=params, headers={"X-Twilio-Signature": "bogus"})
    missing = client.post("/twilio/sms/inbound", data=params)
    accepted = client.post(
        "/twilio/sms/inbound",
        data=params,
        headers={"X-Twilio-Signature": compute_twilio_signature("platform-token", INBOUND_URL, params)},
    )

    assert rejected.status_code == 403
    assert missing.status_code == 403
    assert accepted.status_code == 200


# Reminder sweep trigger


def test_reminder_run_requires_credentials(client):
    assert client.post("/reception/reminders/run", json={}).status_code == 401


def test_reminder_run_for_authenticated_business(client, db, business, customer, make_booking, auth_headers):
    booking = make_booking(utcnow() + timedelta(hours=10))

    response = client.post("/reception/reminders/run", json={"dryRun": False}, headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["processedUsers"] == 1
    assert body["totals"]["seeded"] == 2
    assert body["totals"]["due"] == 1
    # No Twilio credentials are configured in the test environment
    assert body["totals"]["skipped"] == 1
    assert _reminder_statuses(db, booking.id)["24h"].error_message == "twilio_not_configured"


def test_reminder_run_with_cron_secret_sweeps_every_business(client, business):
    response = client.post(
        "/reception/reminders/run",
        json={"dryRun": True},
        headers={"X-Cron-Secret": "test-cron-secret"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["dryRun"] is True
    assert [r["userId"] for r in body["results"]] == [business.user_id]


def test_reminder_run_rejects_wrong_cron_secret(client, business):
    response = client.post("/reception/reminders/run", json={}, headers={"X-Cron-Secret": "nope"})

    assert response.status_code == 401


def test_reminder_status(client, db, business, upcoming_booking, auth_headers):
    ReminderStore(db, business.user_id).refresh_reminders(
        upcoming_booking.id, upcoming_booking.scheduled_start, "confirmed"
    )
    db.commit()

    response = client.get("/reception/reminders/status?limit=10", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["pendingDue"] == 0
    assert {r["reminderType"] for r in body["reminders"]} == {"24h", "2h"}


# Staff reschedule queue


def test_reschedule_queue_requires_auth(client):
    assert client.get("/reception/reschedule-requests").status_code == 401


def test_reschedule_queue_and_close(client, db, business, customer, upcoming_booking, auth_headers):
    tracker = RescheduleRequestTracker(db, business.user_id)
    request = tracker.mark_handoff(
        NegotiationContext(upcoming_booking.id, customer_id=customer.id), "auto_options_unavailable"
    )
    db.commit()

    queue = client.get("/reception/reschedule-requests?status=action_required", headers=auth_headers)
    assert queue.status_code == 200
    body = queue.json()
    assert body["actionRequired"] == 1
    assert body["requests"][0]["customer"]["phone"] == customer.phone_e164
    assert body["requests"][0]["isOverdue"] is False

    patched = client.patch(
        f"/reception/reschedule-requests/{request.id}",
        json={"status": "closed", "assignee": "Dana", "note": "Rebooked by phone"},
        headers=auth_headers,
    )
    assert patched.status_code == 200
    data = patched.json()
    assert data["status"] == "closed"
    assert data["resolvedAt"] is not None
    assert data["slaDueAt"] is None
    assert data["assignedTo"] == "Dana"
    assert data["metadata"]["staffNote"] == "Rebooked by phone"


def test_reschedule_patch_validation(client, db, business, upcoming_booking, auth_headers):
    request = RescheduleRequestTracker(db, business.user_id).mark_handoff(
        NegotiationContext(upcoming_booking.id), "options_expired"
    )
    db.commit()

    empty = client.patch(f"/reception/reschedule-requests/{request.id}", json={}, headers=auth_headers)
    bad_status = client.patch(
        f"/reception/reschedule-requests/{request.id}", json={"status": "confirmed"}, headers=auth_headers
    )
    missing = client.patch("/reception/reschedule-requests/999", json={"status": "closed"}, headers=auth_headers)
    bad_filter = client.get("/reception/reschedule-requests?status=bogus", headers=auth_headers)

    assert empty.status_code == 422
    assert bad_status.status_code == 422
    assert missing.status_code == 404
    assert bad_filter.status_code == 422


# Staff booking updates


def test_cancelling_booking_skips_reminders_and_closes_request(
    client, db, business, customer, upcoming_booking, auth_headers
):
    ReminderStore(db, business.user_id).refresh_reminders(
        upcoming_booking.id, upcoming_booking.scheduled_start, "confirmed"
    )
    RescheduleRequestTracker(db, business.user_id).mark_handoff(
        NegotiationContext(upcoming_booking.id), "options_expired"
    )
    db.commit()

    response = client.patch(
        f"/reception/bookings/{upcoming_booking.id}", json={"status": "cancelled"}, headers=auth_headers
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    reminders = _reminder_statuses(db, upcoming_booking.id)
    assert {r.status for r in reminders.values()} == {"skipped"}
    assert reminders["24h"].error_message == "booking_status_updated"
    request = db.query(ServiceRescheduleRequest).populate_existing().one()
    assert request.status == "closed"
    assert request.meta["reason"] == "booking_status_cancelled"


def test_moving_booking_rearms_reminders(client, db, business, upcoming_booking, auth_headers):
    store = ReminderStore(db, business.user_id)
    store.refresh_reminders(upcoming_booking.id, upcoming_booking.scheduled_start, "confirmed")
    db.commit()
    new_start = upcoming_booking.scheduled_start + timedelta(days=1)

    response = client.patch(
        f"/reception/bookings/{upcoming_booking.id}",
        json={
            "scheduledStart": new_start.isoformat() + "Z",
            "scheduledEnd": (new_start + timedelta(hours=2)).isoformat() + "Z",
        },
        headers=auth_headers,
    )

    assert response.status_code == 200
    reminders = _reminder_statuses(db, upcoming_booking.id)
    assert reminders["24h"].status == "pending"
    assert reminders["24h"].scheduled_for == new_start - timedelta(hours=24)


def test_booking_update_validation(client, upcoming_booking, auth_headers):
    empty = client.patch(f"/reception/bookings/{upcoming_booking.id}", json={}, headers=auth_headers)
    missing = client.patch("/reception/bookings/999", json={"status": "confirmed"}, headers=auth_headers)
    backwards = client.patch(
        f"/reception/bookings/{upcoming_booking.id}",
        json={"scheduledEnd": (upcoming_booking.scheduled_start - timedelta(hours=1)).isoformat()},
        headers=auth_headers,
    )

    assert empty.status_code == 422
    assert missing.status_code == 404
    assert backwards.status_code == 422


def test_bookings_are_tenant_scoped(client, db, other_user, upcoming_booking):
    headers = {"Authorization": f"Bearer {create_access_token(other_user.id)}"}

    assert client.get(f"/reception/bookings/{upcoming_booking.id}", headers=headers).status_code == 404
