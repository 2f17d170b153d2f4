import json
from datetime import datetime, timedelta, timezone

import villa_ops
from conftest import load


def _start_in(**delta):
    return (datetime.now(timezone.utc) + timedelta(**delta)).isoformat()


def _notifications(recipient_id, kind=None):
    session = villa_ops.SessionLocal()
    try:
        query = session.query(villa_ops.NotificationModel).filter_by(recipient_id=recipient_id)
        if kind:
            query = query.filter_by(kind=kind)
        return query.all()
    finally:
        session.close()


def test_first_attempt_offers_only_available_staff_with_push_token(make_staff, make_job):
    ready = make_staff(name="Nok")
    busy = make_staff(name="Ploy", availability_status="busy")
    no_token = make_staff(name="Dao", push_token=None)
    make_staff(name="Arthit", role="maintenance")
    job_id = make_job(scheduledStart=_start_in(days=2))

    result = villa_ops.create_offer(job_id)

    assert result["success"] is True
    assert result["offer"]["eligibleStaffIds"] == [ready]
    assert result["offer"]["attemptNumber"] == 1
    job = load(villa_ops.OperationalJobModel, job_id)
    assert job.status == "offered"
    assert job.offer_id_active == result["offer"]["id"]
    assert len(_notifications(ready, "job_offer")) == 1
    assert _notifications(busy, "job_offer") == []
    assert _notifications(no_token, "job_offer") == []


def test_offer_expiry_is_capped_at_scheduled_start(make_staff, make_job):
    make_staff()
    now = datetime.now(timezone.utc)
    start = now + timedelta(minutes=5)
    job_id = make_job(scheduledStart=start.isoformat())

    result = villa_ops.create_offer(job_id, now=now)

    assert villa_ops.parse_iso_datetime(result["offer"]["expiresAt"]) == start


def test_offer_rejected_outside_dispatch_window_and_without_staff(make_staff, make_job):
    far_job = make_job(scheduledStart=_start_in(days=30))
    assert villa_ops.create_offer(far_job)["code"] == 400

    near_job = make_job(scheduledStart=_start_in(days=1))
    result = villa_ops.create_offer(near_job)
    assert result["success"] is False
    assert result["code"] == 409
    assert "No eligible staff" in result["error"]


def test_second_offer_for_same_job_is_rejected(make_staff, make_job):
    make_staff()
    job_id = make_job(scheduledStart=_start_in(days=1))
    assert villa_ops.create_offer(job_id)["success"]
    assert villa_ops.create_offer(job_id)["code"] == 409


def test_only_first_acceptance_wins(make_staff, make_job):
    first = make_staff(name="Nok")
    second = make_staff(name="Ploy")
    job_id = make_job(scheduledStart=_start_in(days=1))
    offer_id = villa_ops.create_offer(job_id)["offer"]["id"]

    won = villa_ops.accept_offer(offer_id, first)
    lost = villa_ops.accept_offer(offer_id, second)

    assert won["success"] is True
    assert won["job"]["assignedStaffId"] == first
    assert won["job"]["status"] == "assigned"
    assert lost["success"] is False
    assert lost["code"] == 409
    job = load(villa_ops.OperationalJobModel, job_id)
    assert job.assigned_staff_id == first
    session = villa_ops.SessionLocal()
    try:
        assignments = session.query(villa_ops.JobAssignmentModel).filter_by(job_id=job_id).all()
    finally:
        session.close()
    assert [a.staff_id for a in assignments] == [first]
    assert assignments[0].status == "accepted"


def test_accept_requires_eligibility_and_unexpired_offer(make_staff, make_job):
    eligible = make_staff(name="Nok")
    outsider = make_staff(name="Arthit", role="maintenance")
    open_job = make_job(scheduledStart=_start_in(days=1))
    open_offer = villa_ops.create_offer(open_job)["offer"]["id"]
    assert villa_ops.accept_offer(open_offer, outsider)["code"] == 403

    stale_job = make_job(scheduledStart=_start_in(days=1))
    past = datetime.now(timezone.utc) - timedelta(minutes=30)
    stale_offer = villa_ops.create_offer(stale_job, now=past)["offer"]["id"]
    expired = villa_ops.accept_offer(stale_offer, eligible)
    assert expired["code"] == 409
    assert "expired" in expired["error"]


def test_cancel_offer_returns_job_to_pending(make_staff, make_job):
    make_staff()
    job_id = make_job(scheduledStart=_start_in(days=1))
    offer_id = villa_ops.create_offer(job_id)["offer"]["id"]

    assert villa_ops.cancel_offer(offer_id, "plans changed")["success"] is True
    assert load(villa_ops.OperationalJobModel, job_id).status == "pending"
    assert villa_ops.cancel_offer(offer_id)["code"] == 409


def test_escalation_ladder_widens_then_escalates_to_admin(make_staff, make_job):
    available = make_staff(name="Nok")
    busy = make_staff(name="Ploy", availability_status="busy")
    unreachable = make_staff(name="Dao", push_token=None)
    now = datetime.now(timezone.utc)
    job_id = make_job(scheduledStart=(now + timedelta(days=2)).isoformat())
    first = villa_ops.create_offer(job_id, now=now)["offer"]
    assert first["eligibleStaffIds"] == [available]

    stats = villa_ops.process_expired_offers(now + timedelta(minutes=16))
    assert stats["processed"] == 1
    assert stats["escalated"] == 1
    second = villa_ops.get_offers_for_staff(busy, now + timedelta(minutes=16))[0]
    assert second["attemptNumber"] == 2
    assert set(second["eligibleStaffIds"]) == {available, busy}
    offered_at = villa_ops.parse_iso_datetime(second["offeredAt"])
    assert villa_ops.parse_iso_datetime(second["expiresAt"]) - offered_at == timedelta(minutes=10)

    villa_ops.process_expired_offers(now + timedelta(minutes=27))
    third = villa_ops.get_offers_for_staff(unreachable, now + timedelta(minutes=27))[0]
    assert third["attemptNumber"] == 3
    assert unreachable in third["eligibleStaffIds"]

    stats = villa_ops.process_expired_offers(now + timedelta(minutes=33))
    assert stats["maxAttemptsReached"] == 1
    job = load(villa_ops.OperationalJobModel, job_id)
    assert job.status == "pending"
    assert job.escalation_required == 1
    assert len(_notifications("admin", "escalation")) == 1


def test_expired_offer_is_processed_once(make_staff, make_job):
    make_staff()
    now = datetime.now(timezone.utc)
    job_id = make_job(scheduledStart=(now + timedelta(days=2)).isoformat())
    villa_ops.create_offer(job_id, now=now)

    later = now + timedelta(minutes=16)
    assert villa_ops.process_expired_offers(later)["processed"] == 1
    assert villa_ops.process_expired_offers(later)["processed"] == 0


def test_dispatcher_offers_jobs_inside_window(make_staff, make_job):
    make_staff()
    soon = make_job(scheduledStart=_start_in(days=1))
    later = make_job(scheduledStart=_start_in(days=20))

    result = villa_ops.dispatch_pending_jobs()

    assert result == {"offered": 1, "skipped": 0}
    assert load(villa_ops.OperationalJobModel, soon).status == "offered"
    assert load(villa_ops.OperationalJobModel, later).status == "pending"


def test_offer_routes(client, make_staff, make_job):
    staff_id = make_staff()
    job_id = make_job(scheduledStart=_start_in(days=1))

    created = client.post("/api/offers", json={"jobId": job_id})
    assert created.status_code == 201
    offer_id = created.get_json()["offer"]["id"]

    listed = client.get(f"/api/offers/staff/{staff_id}").get_json()
    assert [o["id"] for o in listed["offers"]] == [offer_id]
    assert listed["offers"][0]["job"]["id"] == job_id

    accepted = client.post(f"/api/offers/{offer_id}/accept", json={"staffId": staff_id})
    assert accepted.status_code == 200
    again = client.post(f"/api/offers/{offer_id}/accept", json={"staffId": staff_id})
    assert again.status_code == 409

    stats = client.get("/api/offers/escalation-stats").get_json()["stats"]
    assert stats["byStatus"] == {"accepted": 1}


def test_dispatch_settings_validation_and_versioning(client):
    bad = client.put("/api/dispatch/settings", json={"maxAttempts": 7})
    assert bad.status_code == 400
    assert bad.get_json()["details"]

    ok = client.put("/api/dispatch/settings", json={"offerExpiryMinutes": 20})
    body = ok.get_json()
    assert ok.status_code == 200
    assert body["settings"]["offerExpiryMinutes"] == 20
    assert body["settings"]["maxAttempts"] == 3
    assert body["version"] == 1
    assert villa_ops.offer_expiry_minutes(1) == 20


class _HookedClock(datetime):
    """A `now` that runs `before_write` the moment accept_offer stamps its
    conditional UPDATEs, after every pre-check has already passed."""
    before_write = None

    def isoformat(self, *args, **kwargs):
        hook, self.before_write = self.before_write, None
        if hook:
            hook()
        return super().isoformat(*args, **kwargs)


def _open_offers(job_id):
    session = villa_ops.SessionLocal()
    try:
        return session.query(villa_ops.JobOfferModel).filter_by(job_id=job_id, status="open").count()
    finally:
        session.close()


def test_concurrent_accept_loses_the_offer_claim(make_staff, make_job):
    first = make_staff(name="Nok")
    second = make_staff(name="Ploy")
    job_id = make_job(scheduledStart=_start_in(days=1))
    offer_id = villa_ops.create_offer(job_id)["offer"]["id"]
    rival = []
    clock = _HookedClock.now(timezone.utc)
    clock.before_write = lambda: rival.append(villa_ops.accept_offer(offer_id, second))

    lost = villa_ops.accept_offer(offer_id, first, now=clock)

    assert rival[0]["success"] is True
    assert lost["code"] == 409
    assert lost["error"] == "Offer was already accepted by another staff member"
    assert load(villa_ops.OperationalJobModel, job_id).assigned_staff_id == second
    session = villa_ops.SessionLocal()
    try:
        assignments = session.query(villa_ops.JobAssignmentModel).filter_by(job_id=job_id).all()
    finally:
        session.close()
    assert [a.staff_id for a in assignments] == [second]


def test_job_taken_mid_accept_rolls_back_the_offer_claim(make_staff, make_job):
    staff_id = make_staff(name="Nok")
    other = make_staff(name="Ploy")
    job_id = make_job(scheduledStart=_start_in(days=1))
    offer_id = villa_ops.create_offer(job_id)["offer"]["id"]

    def assign_elsewhere():
        session = villa_ops.SessionLocal()
        try:
            session.query(villa_ops.OperationalJobModel).filter_by(id=job_id).update(
                {"assigned_staff_id": other, "status": "assigned"}, synchronize_session=False)
            session.commit()
        finally:
            session.close()

    clock = _HookedClock.now(timezone.utc)
    clock.before_write = assign_elsewhere

    result = villa_ops.accept_offer(offer_id, staff_id, now=clock)

    assert result["code"] == 409
    assert result["error"] == "Job has already been assigned"
    offer = load(villa_ops.JobOfferModel, offer_id)
    assert offer.status == "open"
    assert offer.accepted_by_staff_id is None
    assert load(villa_ops.OperationalJobModel, job_id).assigned_staff_id == other


def test_returning_offered_job_to_pending_cancels_its_offer(client, make_staff, make_job):
    first_staff = make_staff(name="Nok")
    job_id = make_job(scheduledStart=_start_in(days=1))
    first = villa_ops.create_offer(job_id)["offer"]["id"]

    response = client.patch(f"/api/jobs/{job_id}", json={"status": "pending"})

    assert response.status_code == 200
    offer = load(villa_ops.JobOfferModel, first)
    assert offer.status == "cancelled"
    assert offer.cancel_reason == "returned_to_pending"
    assert load(villa_ops.OperationalJobModel, job_id).offer_id_active is None

    assert villa_ops.create_offer(job_id)["success"] is True
    assert _open_offers(job_id) == 1
    stale = villa_ops.accept_offer(first, first_staff)
    assert stale["code"] == 409
    assert load(villa_ops.OperationalJobModel, job_id).status == "offered"


def test_job_stream_delivers_published_updates(client, monkeypatch):
    monkeypatch.setattr(villa_ops, "STREAM_KEEPALIVE_SECONDS", 0.01)
    before = len(villa_ops.EVENT_LISTENERS)
    response = client.get("/api/stream/jobs", buffered=False)
    assert response.mimetype == "text/event-stream"
    assert len(villa_ops.EVENT_LISTENERS) == before + 1
    chunks = iter(response.response)
    assert next(chunks) == b": keep-alive\n\n"

    villa_ops.publish_job_update({"id": "job-1", "status": "assigned"})

    assert next(chunks) == b"event: job_updated\n"
    data = next(chunks)
    assert data.startswith(b"data: ")
    assert json.loads(data[len(b"data: "):]) == {"id": "job-1", "status": "assigned"}
    response.close()
    assert len(villa_ops.EVENT_LISTENERS) == before
