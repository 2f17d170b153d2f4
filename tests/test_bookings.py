import time
from datetime import date, timedelta

import pytest

import villa_ops
from conftest import future_day, load


def _booking_payload(property_id, **overrides):
    payload = {
        "guestName": "Emma Larsen",
        "guestEmail": "Emma@Example.com",
        "propertyId": property_id,
        "checkInDate": future_day(10),
        "checkOutDate": future_day(14),
        "guestCount": 4,
        "totalAmount": 48000,
    }
    payload.update(overrides)
    return payload


def _webhook_headers(timestamp=None):
    return {
        "x-webhook-token": "test-webhook-secret",
        "x-webhook-timestamp": str(int(timestamp if timestamp is not None else time.time())),
    }


def test_create_booking_is_pending_and_duplicates_are_rejected(client, make_property):
    property_id = make_property()

    created = client.post("/api/bookings", json=_booking_payload(property_id))
    assert created.status_code == 201
    booking = created.get_json()["booking"]
    assert booking["status"] == "pending_approval"
    assert booking["guestEmail"] == "emma@example.com"
    assert booking["propertyName"] == "Villa Serenity"

    duplicate = client.post("/api/bookings", json=_booking_payload(property_id))
    assert duplicate.status_code == 409
    assert duplicate.get_json()["error"] == "Duplicate booking"


def test_create_booking_validation(client, make_property):
    property_id = make_property()
    missing = client.post("/api/bookings", json={"guestName": "Emma"})
    assert missing.status_code == 400
    backwards = client.post("/api/bookings", json=_booking_payload(
        property_id, checkInDate=future_day(5), checkOutDate=future_day(3)))
    assert backwards.status_code == 400
    unknown = client.post("/api/bookings", json=_booking_payload("no-such-villa"))
    assert unknown.status_code == 404


def test_approval_creates_template_jobs_and_calendar_events(client, make_property):
    property_id = make_property()
    booking = client.post("/api/bookings", json=_booking_payload(property_id)).get_json()["booking"]

    approved = client.post("/api/bookings/approve", json={
        "bookingId": booking["id"], "action": "approve", "adminId": "admin-1", "adminName": "Kobi",
    })

    body = approved.get_json()
    assert approved.status_code == 200
    assert body["booking"]["status"] == "approved"
    assert body["booking"]["approvedBy"] == "admin-1"
    jobs = {job["title"]: job for job in body["createdJobs"]}
    assert len(body["createdJobIds"]) == 5
    check_in = date.fromisoformat(booking["checkInDate"])
    assert jobs["Pre-arrival Deep Clean"]["scheduledDate"] == (check_in - timedelta(days=1)).isoformat()
    assert jobs["Pre-arrival Deep Clean"]["scheduledTime"] == "09:00"
    assert jobs["Welcome Setup"]["scheduledDate"] == check_in.isoformat()
    assert jobs["Post-departure Inspection"]["scheduledDate"] == booking["checkOutDate"]
    assert all(job["autoGenerated"] and job["status"] == "pending" for job in jobs.values())

    events = client.get(f"/api/calendar/events?property_id={property_id}").get_json()["events"]
    assert sum(1 for e in events if e["type"] == "booking") == 1
    assert len(events) == 6

    detail = client.get(f"/api/bookings/{booking['id']}").get_json()
    assert [a["newStatus"] for a in detail["approvals"]] == ["approved"]

    again = client.post("/api/bookings/approve", json={"bookingId": booking["id"], "action": "approve", "adminId": "admin-1"})
    assert again.status_code == 409


def test_reject_requires_reason_and_cancels_open_jobs(client, make_property):
    property_id = make_property()
    booking = client.post("/api/bookings", json=_booking_payload(property_id)).get_json()["booking"]
    client.post("/api/bookings/approve", json={"bookingId": booking["id"], "action": "approve", "adminId": "admin-1"})

    no_reason = client.post("/api/bookings/approve", json={"bookingId": booking["id"], "action": "reject", "adminId": "admin-1"})
    assert no_reason.status_code == 400

    rejected = client.post("/api/bookings/approve", json={
        "bookingId": booking["id"], "action": "reject", "adminId": "admin-1", "reason": "Owner blocked the dates",
    })
    assert rejected.get_json()["booking"]["status"] == "rejected"
    jobs = client.get(f"/api/jobs?booking_id={booking['id']}").get_json()["jobs"]
    assert jobs and all(job["status"] == "cancelled" for job in jobs)


def test_assign_staff_creates_and_assigns_default_tasks(client, make_property, make_booking, make_staff):
    property_id = make_property()
    booking_id = make_booking(property_id)
    first = make_staff(name="Nok")
    second = make_staff(name="Somchai", role="supervisor")

    missing = client.post("/api/bookings/assign-staff", json={
        "bookingId": booking_id, "staffIds": [first, "ghost"], "assignedBy": "admin-1"})
    assert missing.status_code == 404

    created = client.post("/api/bookings/assign-staff", json={
        "bookingId": booking_id, "staffIds": [first, second], "assignedBy": "admin-1",
        "generalInstructions": "Gate code changes on Friday",
    })
    assignments = created.get_json()["assignments"]
    assert created.status_code == 201
    assert len(assignments) == 4
    assert {a["job"]["status"] for a in assignments} == {"assigned"}
    assert {a["job"]["title"] for a in assignments} == {"Guest Check-in", "Property Preparation"}
    assert {a["assignment"]["staffId"] for a in assignments} == {first, second}


def test_ai_review_approves_valid_booking(client, make_property, make_booking):
    property_id = make_property()
    booking_id = make_booking(property_id)

    result = client.post(f"/api/bookings/{booking_id}/ai-review", json={}).get_json()

    assert result["review"]["decision"] == "approved"
    assert result["review"]["confidence"] == 95
    booking = load(villa_ops.BookingModel, booking_id)
    assert booking.status == "approved"
    assert booking.approved_by == "AI_SYSTEM"
    entries, _ = villa_ops.list_ai_logs(agent="COO")
    assert entries[0]["source"] == "ai_booking_review"
    assert entries[0]["bookingId"] == booking_id


@pytest.mark.parametrize("overrides,reason", [
    ({"guest_email": None}, "Missing required fields: guestEmail"),
    ({"guest_email": "not-an-email"}, "Invalid guest email format"),
    ({"total_amount": 0.0}, "Total amount must be positive"),
    ({"check_in_date": future_day(-2), "check_out_date": future_day(2)}, "cannot be in the past"),
    ({"guest_count": 10}, "exceeds property capacity"),
    ({"check_in_date": future_day(10), "check_out_date": future_day(11)}, "Minimum stay"),
    ({"check_in_date": future_day(400), "check_out_date": future_day(404)}, "365 days in advance"),
])
def test_ai_review_rejections(make_property, make_booking, overrides, reason):
    property_id = make_property()
    booking_id = make_booking(property_id, **overrides)

    result = villa_ops.review_booking_with_ai(booking_id, dry_run=True)

    assert result["applied"] is False
    assert result["review"]["decision"] == "rejected"
    assert result["review"]["confidence"] == 90
    assert reason in result["review"]["reason"]
    assert load(villa_ops.BookingModel, booking_id).status == "pending_approval"


def test_ai_review_rejects_overlap_with_approved_booking(make_property, make_booking):
    property_id = make_property()
    make_booking(property_id, status="approved", guest_email="first@example.com")
    booking_id = make_booking(property_id, check_in_date=future_day(12), check_out_date=future_day(16))

    result = villa_ops.review_booking_with_ai(booking_id)

    assert result["review"]["decision"] == "rejected"
    assert "overlap" in result["review"]["reason"]
    booking = load(villa_ops.BookingModel, booking_id)
    assert booking.status == "rejected"
    assert booking.rejected_by == "AI_SYSTEM"


def test_auto_approval_runs_when_enabled(client, make_property):
    villa_ops.save_setting("aiAutomation", {"enabled": True, "autoApproveBookings": True})
    property_id = make_property()

    body = client.post("/api/bookings", json=_booking_payload(property_id)).get_json()

    assert body["booking"]["status"] == "approved"
    assert body["aiReview"]["review"]["decision"] == "approved"
    assert len(body["aiReview"]["createdJobs"]) == 5


def test_pms_webhook_rejects_bad_token_and_stale_timestamp(client):
    payload = {"externalBookingId": "HM1", "source": "airbnb", "action": "create"}
    no_token = client.post("/api/pms-webhook", json=payload, headers={"x-webhook-timestamp": str(int(time.time()))})
    assert no_token.status_code == 401
    stale = client.post("/api/pms-webhook", json=payload, headers=_webhook_headers(time.time() - 600))
    assert stale.status_code == 401
    unsupported = client.post("/api/pms-webhook", json=dict(payload, source="expedia"), headers=_webhook_headers())
    assert unsupported.status_code == 400


def test_pms_webhook_lifecycle(client, make_property):
    property_id = make_property()
    payload = {
        "externalBookingId": "HMX42", "source": "airbnb", "action": "create",
        "propertyId": property_id, "guestName": "Liam Chen", "guestEmail": "liam@example.com",
        "checkInDate": future_day(8), "checkOutDate": future_day(12), "guestCount": 2, "totalPrice": 36000,
    }

    created = client.post("/api/pms-webhook", json=payload, headers=_webhook_headers())
    assert created.status_code == 201
    booking_id = created.get_json()["bookingId"]
    assert load(villa_ops.BookingModel, booking_id).status == "pending_approval"

    duplicate = client.post("/api/pms-webhook", json=payload, headers=_webhook_headers())
    assert duplicate.status_code == 200
    assert duplicate.get_json()["bookingId"] == booking_id

    villa_ops.set_booking_decision(booking_id, "approve", admin_id="admin-1")
    updated = client.post("/api/pms-webhook", headers=_webhook_headers(), json={
        "externalBookingId": "HMX42", "source": "airbnb", "action": "update", "guestCount": 3,
    })
    assert updated.status_code == 200
    booking = load(villa_ops.BookingModel, booking_id)
    assert booking.status == "pending_approval"
    assert booking.requires_reapproval == 1
    assert booking.guest_count == 3

    cancelled = client.post("/api/pms-webhook", headers=_webhook_headers(), json={
        "externalBookingId": "HMX42", "source": "airbnb", "action": "cancel",
    })
    assert cancelled.get_json()["status"] == "cancelled"
    jobs = client.get(f"/api/jobs?booking_id={booking_id}").get_json()["jobs"]
    assert len(jobs) == 5
    assert all(job["status"] == "cancelled" for job in jobs)

    missing = client.post("/api/pms-webhook", headers=_webhook_headers(), json={
        "externalBookingId": "nope", "source": "airbnb", "action": "cancel",
    })
    assert missing.status_code == 404


def test_pms_webhook_description(client):
    body = client.get("/api/pms-webhook").get_json()
    assert body["actions"] == ["create", "update", "cancel"]
    assert "make.com" in body["sources"]
