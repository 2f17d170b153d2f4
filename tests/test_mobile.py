import io
from datetime import datetime, timedelta, timezone

import pytest

import villa_ops
from conftest import load


def _assign(job_id, staff_id):
    session = villa_ops.SessionLocal()
    try:
        job = session.query(villa_ops.OperationalJobModel).filter_by(id=job_id).first()
        staff = session.query(villa_ops.StaffAccountModel).filter_by(id=staff_id).first()
        assignment = villa_ops.assign_job_to_staff(session, job, staff)
        session.commit()
        return assignment.id
    finally:
        session.close()


@pytest.fixture
def assigned_job(make_property, make_booking, make_staff, make_job):
    property_id = make_property(requirements=villa_ops.dump_json(["Pool cleaned"]), access_instructions="Gate code 4411")
    booking_id = make_booking(property_id, special_requests="Late arrival")
    staff_id = make_staff(name="Nok")
    job_id = make_job(propertyId=property_id, bookingId=booking_id,
                      scheduledStart=(datetime.now(timezone.utc) + timedelta(hours=6)).isoformat())
    assignment_id = _assign(job_id, staff_id)
    return {"property": property_id, "booking": booking_id, "staff": staff_id, "job": job_id, "assignment": assignment_id}


def test_mobile_routes_require_api_key_and_secret(client):
    assert client.get("/api/mobile/jobs").status_code == 401
    wrong = {"X-API-Key": "test-mobile-key", "X-Mobile-Secret": "nope"}
    assert client.get("/api/mobile/jobs", headers=wrong).status_code == 401


def test_mobile_job_payload_includes_property_and_booking(client, mobile_headers, assigned_job):
    body = client.get(f"/api/mobile/jobs?staffId={assigned_job['staff']}", headers=mobile_headers).get_json()

    assert body["count"] == 1
    job = body["jobs"][0]
    assert job["id"] == assigned_job["job"]
    assert job["status"] == "assigned"
    assert job["property"]["requirements"] == ["Pool cleaned"]
    assert job["property"]["accessInstructions"] == "Gate code 4411"
    assert job["booking"]["specialRequests"] == "Late arrival"
    assert job["assignment"]["staffId"] == assigned_job["staff"]
    assert isinstance(body["syncTimestamp"], int)


def test_completing_an_unstarted_job_walks_through_in_progress(client, mobile_headers, assigned_job):
    response = client.patch("/api/mobile/jobs", headers=mobile_headers, json={
        "jobId": assigned_job["job"],
        "staffId": assigned_job["staff"],
        "status": "completed",
        "completionData": {"notes": "All done", "photos": ["https://cdn.example/pool.jpg"], "timeSpent": 95},
        "location": {"lat": 9.51, "lng": 100.06},
    })

    assert response.status_code == 200
    job = response.get_json()["job"]
    assert job["status"] == "completed"
    assert job["startedAt"] and job["completedAt"]
    assert job["completionNotes"] == "All done"
    assert job["completionPhotos"] == ["https://cdn.example/pool.jpg"]
    staff = load(villa_ops.StaffAccountModel, assigned_job["staff"])
    assert staff.availability_status == "available"
    assert staff.last_lat == 9.51
    assignment = load(villa_ops.JobAssignmentModel, assigned_job["assignment"])
    assert assignment.status == "completed"
    assert assignment.time_spent == 95


def test_mobile_job_update_rejections(client, mobile_headers, assigned_job, make_staff):
    other = make_staff(name="Ploy")
    wrong_staff = client.patch("/api/mobile/jobs", headers=mobile_headers, json={
        "jobId": assigned_job["job"], "staffId": other, "status": "in_progress"})
    assert wrong_staff.status_code == 403

    bad_location = client.patch("/api/mobile/jobs", headers=mobile_headers, json={
        "jobId": assigned_job["job"], "status": "in_progress", "location": "9.5,100.0"})
    assert bad_location.status_code == 400

    illegal = client.patch("/api/mobile/jobs", headers=mobile_headers, json={
        "jobId": assigned_job["job"], "status": "verified"})
    assert illegal.status_code == 409


@pytest.mark.parametrize("completion", [["photo.jpg"], "done", 5])
def test_completion_data_must_be_an_object(client, mobile_headers, assigned_job, completion):
    response = client.patch("/api/mobile/jobs", headers=mobile_headers, json={
        "jobId": assigned_job["job"], "status": "in_progress", "completionData": completion})
    assert response.status_code == 400
    assert response.get_json()["error"] == "completionData must be an object"
    assert load(villa_ops.OperationalJobModel, assigned_job["job"]).status == "assigned"


def test_assignment_update_validation_details(client, mobile_headers, assigned_job):
    response = client.patch(f"/api/mobile/assignments/{assigned_job['assignment']}", headers=mobile_headers,
                            json={"status": "done", "timeSpent": -5})

    body = response.get_json()
    assert response.status_code == 400
    assert body["error"] == "Validation failed"
    assert any("status must be one of" in d for d in body["details"])
    assert any("updatedBy" in d for d in body["details"])
    assert any("timestamp" in d for d in body["details"])
    assert any("timeSpent" in d for d in body["details"])


def test_assignment_progresses_to_completion(client, mobile_headers, assigned_job):
    url = f"/api/mobile/assignments/{assigned_job['assignment']}"

    def patch(status, **extra):
        payload = {"status": status, "updatedBy": assigned_job["staff"], "timestamp": villa_ops.now_iso()}
        payload.update(extra)
        return client.patch(url, headers=mobile_headers, json=payload)

    accepted = patch("accepted")
    assert accepted.get_json()["job"]["status"] == "accepted"
    started = patch("in-progress")
    assert started.get_json()["job"]["status"] == "in_progress"
    assert load(villa_ops.StaffAccountModel, assigned_job["staff"]).availability_status == "busy"
    finished = patch("completed", notes="Linen replaced", photos=["https://cdn.example/bed.jpg"], timeSpent=40)
    body = finished.get_json()
    assert body["assignment"]["status"] == "completed"
    assert body["assignment"]["timeSpent"] == 40
    assert body["job"]["completionPhotos"] == ["https://cdn.example/bed.jpg"]

    again = patch("completed")
    assert again.status_code == 409

    detail = client.get(url, headers=mobile_headers).get_json()["assignment"]
    assert detail["job"]["id"] == assigned_job["job"]


def test_cancelled_assignment_returns_job_to_pool(client, mobile_headers, assigned_job):
    response = client.patch(f"/api/mobile/assignments/{assigned_job['assignment']}", headers=mobile_headers, json={
        "status": "cancelled", "updatedBy": assigned_job["staff"], "timestamp": villa_ops.now_iso(),
    })

    assert response.status_code == 200
    job = load(villa_ops.OperationalJobModel, assigned_job["job"])
    assert job.status == "pending"
    assert job.assigned_staff_id is None
    assert response.get_json()["assignment"]["status"] == "cancelled"


def test_sync_requires_mobile_platform(client, mobile_headers):
    response = client.post("/api/mobile/sync", headers=mobile_headers, json={"lastSyncTimestamp": 0, "platform": "web"})
    assert response.status_code == 400
    negative = client.post("/api/mobile/sync", headers=mobile_headers, json={"lastSyncTimestamp": -1, "platform": "mobile"})
    assert negative.status_code == 400


@pytest.mark.parametrize("stamp", [10 ** 20, villa_ops.MAX_SYNC_TIMESTAMP_MS + 1, True, "0"])
def test_sync_rejects_out_of_range_timestamps(client, mobile_headers, stamp):
    response = client.post("/api/mobile/sync", headers=mobile_headers,
                           json={"lastSyncTimestamp": stamp, "platform": "mobile"})
    assert response.status_code == 400
    assert response.is_json
    assert response.get_json()["success"] is False


def test_sync_skips_changes_to_another_staff_members_assignment(client, mobile_headers, assigned_job, make_staff):
    intruder = make_staff(name="Ploy")

    response = client.post("/api/mobile/sync", headers=mobile_headers, json={
        "lastSyncTimestamp": 0,
        "platform": "mobile",
        "staffId": intruder,
        "pendingChanges": {
            "assignments": [
                {"type": "update", "id": assigned_job["assignment"], "data": {"status": "cancelled"}},
                "not-a-change",
            ],
        },
    })

    body = response.get_json()
    assert body["stats"]["appliedChanges"] == 0
    assert [c["error"] for c in body["conflicts"]] == [
        "Assignment belongs to another staff member", "Each pending change must be an object"]
    assert load(villa_ops.JobAssignmentModel, assigned_job["assignment"]).status == "pending"
    assert load(villa_ops.OperationalJobModel, assigned_job["job"]).assigned_staff_id == assigned_job["staff"]


def test_sync_applies_changes_and_reports_conflicts(client, mobile_headers, assigned_job):
    response = client.post("/api/mobile/sync", headers=mobile_headers, json={
        "lastSyncTimestamp": 0,
        "platform": "mobile",
        "staffId": assigned_job["staff"],
        "pendingChanges": {
            "bookings": [
                {"type": "update", "id": assigned_job["booking"], "data": {"notes": "Guest asked for extra towels"}},
                {"type": "update", "id": "missing-booking", "data": {"notes": "x"}},
            ],
            "assignments": [
                {"type": "update", "id": assigned_job["assignment"], "data": {"status": "accepted"}},
                {"type": "delete", "id": assigned_job["assignment"]},
            ],
        },
    })

    body = response.get_json()
    assert response.status_code == 200
    assert body["stats"]["appliedChanges"] == 2
    assert body["stats"]["failedChanges"] == 2
    assert {c["id"] for c in body["conflicts"]} == {"missing-booking", assigned_job["assignment"]}
    assert load(villa_ops.BookingModel, assigned_job["booking"]).notes == "Guest asked for extra towels"
    assert load(villa_ops.OperationalJobModel, assigned_job["job"]).status == "accepted"
    assert [a["id"] for a in body["data"]["assignments"]] == [assigned_job["assignment"]]
    assert len(body["data"]["properties"]) == 1


def test_location_updates(client, mobile_headers, make_staff):
    staff_id = make_staff()
    ok = client.post("/api/mobile/location", headers=mobile_headers, json={"staffId": staff_id, "lat": 9.53, "lng": 100.05})
    assert ok.status_code == 200
    assert ok.get_json()["location"]["lat"] == 9.53
    bad = client.post("/api/mobile/location", headers=mobile_headers, json={"staffId": staff_id, "lat": 120, "lng": 100})
    assert bad.status_code == 400
    unknown = client.post("/api/mobile/location", headers=mobile_headers, json={"staffId": "ghost", "lat": 9.5, "lng": 100})
    assert unknown.status_code == 404


def test_mobile_offer_accept(client, mobile_headers, make_staff, make_job):
    staff_id = make_staff()
    job_id = make_job(scheduledStart=(datetime.now(timezone.utc) + timedelta(days=1)).isoformat())
    villa_ops.create_offer(job_id)

    offers = client.get(f"/api/mobile/offers?staffId={staff_id}", headers=mobile_headers).get_json()["offers"]
    assert len(offers) == 1
    accepted = client.post(f"/api/mobile/offers/{offers[0]['id']}/accept", headers=mobile_headers, json={"staffId": staff_id})
    assert accepted.status_code == 200
    assert accepted.get_json()["job"]["assignedStaffId"] == staff_id

    notifications = client.get(f"/api/mobile/notifications?staffId={staff_id}", headers=mobile_headers).get_json()
    assert [n["kind"] for n in notifications["notifications"]] == ["job_offer"]


def test_photo_upload(client, mobile_headers, assigned_job):
    url = f"/api/mobile/jobs/{assigned_job['job']}/photos"
    uploaded = client.post(url, headers=mobile_headers, content_type="multipart/form-data", data={
        "photo": (io.BytesIO(b"\xff\xd8\xff fake jpeg"), "pool deck.jpg"),
        "staffId": assigned_job["staff"],
    })
    assert uploaded.status_code == 201
    photo_url = uploaded.get_json()["url"]
    assert f"/uploads/jobs/{assigned_job['job']}/" in photo_url
    assert photo_url.endswith("pool_deck.jpg")

    rejected = client.post(url, headers=mobile_headers, content_type="multipart/form-data", data={
        "photo": (io.BytesIO(b"MZ"), "payload.exe"),
    })
    assert rejected.status_code == 400
