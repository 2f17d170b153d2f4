from datetime import date, timedelta, timezone

import villa_ops
from conftest import future_day


def _ics(*events):
    blocks = []
    for uid, start, end, summary in events:
        blocks.append("\r\n".join([
            "BEGIN:VEVENT",
            f"UID:{uid}",
            f"DTSTART;VALUE=DATE:{start.replace('-', '')}",
            f"DTEND;VALUE=DATE:{end.replace('-', '')}",
            f"SUMMARY:{summary}",
            "END:VEVENT",
        ]))
    return "BEGIN:VCALENDAR\r\nVERSION:2.0\r\n" + "\r\n".join(blocks) + "\r\nEND:VCALENDAR\r\n"


def _serve_feed(monkeypatch, text):
    monkeypatch.setattr(villa_ops, "fetch_ical_text", lambda cache_key, url, force=False: (text, '"etag-1"', None))


def _ical_bookings(property_id):
    session = villa_ops.SessionLocal()
    try:
        rows = session.query(villa_ops.BookingModel).filter_by(property_id=property_id, source="ical").all()
        return {b.external_booking_id: b for b in rows}
    finally:
        session.close()


def test_parse_ical_events_skips_invalid_blocks():
    text = _ics(
        ("stay-1@airbnb", "2026-12-01", "2026-12-05", "Reserved"),
        ("broken@airbnb", "2026-12-09", "2026-12-08", "Backwards"),
    )
    text = text.replace("END:VCALENDAR", "BEGIN:VEVENT\r\nSUMMARY:No dates\r\nEND:VEVENT\r\nEND:VCALENDAR")

    events = villa_ops.parse_ical_events(text)

    assert events == [{"uid": "stay-1@airbnb", "start": date(2026, 12, 1), "end": date(2026, 12, 5), "summary": "Reserved"}]


def test_booking_event_spans_check_in_afternoon_to_check_out_morning(make_property, make_booking):
    property_id = make_property()
    booking_id = make_booking(property_id)

    event = villa_ops.list_calendar_events(property_id=property_id)[0]

    assert event.booking_id == booking_id
    assert event.event_type == "booking"
    assert event.color == villa_ops.EVENT_TYPE_COLORS["booking"]
    start = villa_ops.parse_iso_datetime(event.start_date).astimezone(timezone.utc)
    end = villa_ops.parse_iso_datetime(event.end_date).astimezone(timezone.utc)
    assert start.date().isoformat() == future_day(10)
    assert start.hour == 7
    assert end.hour == 4


def test_overlapping_bookings_are_critical_conflicts(client, make_property, make_booking, make_job):
    property_id = make_property()
    first = make_booking(property_id)
    make_booking(property_id, guest_email="second@example.com",
                 check_in_date=future_day(12), check_out_date=future_day(15))
    # overlaps the second stay, not its own
    make_job(propertyId=property_id, bookingId=first, scheduledDate=future_day(13), scheduledTime="10:00")

    body = client.get(f"/api/calendar/conflicts?property_id={property_id}").get_json()

    assert body["count"] == 2
    assert [c["severity"] for c in body["conflicts"]] == ["critical", "critical"]
    pair = {e["type"] for e in body["conflicts"][0]["events"]}
    assert pair == {"booking"}


def test_events_of_the_same_booking_do_not_conflict(make_property, make_booking, make_job):
    property_id = make_property()
    booking_id = make_booking(property_id)
    make_job(propertyId=property_id, bookingId=booking_id, scheduledDate=future_day(11), scheduledTime="10:00")

    assert villa_ops.detect_conflicts(property_id) == []


def test_cancelled_events_are_ignored(make_property, make_booking):
    property_id = make_property()
    make_booking(property_id)
    make_booking(property_id, guest_email="second@example.com", status="cancelled")

    assert villa_ops.detect_conflicts(property_id) == []


def test_ical_import_creates_updates_and_cancels(client, monkeypatch, make_property):
    property_id = make_property()
    _serve_feed(monkeypatch, _ics(
        ("a@airbnb", future_day(3), future_day(6), "Airbnb (Not available)"),
        ("b@airbnb", future_day(20), future_day(24), "Reserved"),
    ))

    response = client.post("/api/calendar/ical-import", json={
        "propertyId": property_id, "icalUrl": "https://www.airbnb.com/calendar/ical/123.ics",
    })

    result = response.get_json()["result"]
    assert response.status_code == 200
    assert (result["created"], result["updated"], result["cancelled"]) == (2, 0, 0)
    bookings = _ical_bookings(property_id)
    assert {b.status for b in bookings.values()} == {"confirmed"}
    assert bookings["a@airbnb"].check_in_date == future_day(3)

    _serve_feed(monkeypatch, _ics(("a@airbnb", future_day(4), future_day(7), "Airbnb (Not available)")))
    second = villa_ops.sync_ical_for_property(property_id, force=True)

    assert (second["created"], second["updated"], second["cancelled"]) == (0, 1, 1)
    bookings = _ical_bookings(property_id)
    assert bookings["a@airbnb"].check_in_date == future_day(4)
    assert bookings["b@airbnb"].status == "cancelled"


def test_unchanged_feed_is_not_reprocessed(monkeypatch, make_property):
    property_id = make_property(ical_url="https://example.com/villa.ics")
    _serve_feed(monkeypatch, _ics(("a@vrbo", future_day(3), future_day(6), "Blocked")))

    assert villa_ops.sync_ical_for_property(property_id)["changed"] is True
    assert villa_ops.sync_ical_for_property(property_id) == {"synced": True, "changed": False}


def test_ical_import_validation_and_fetch_failure(client, monkeypatch, make_property):
    property_id = make_property()
    assert client.post("/api/calendar/ical-import", json={"propertyId": property_id}).status_code == 400
    assert client.post("/api/calendar/ical-import", json={
        "propertyId": property_id, "icalUrl": "file:///etc/passwd"}).status_code == 400

    def unreachable(cache_key, url, force=False):
        raise OSError("connection refused")

    monkeypatch.setattr(villa_ops, "fetch_ical_text", unreachable)
    failed = client.post("/api/calendar/ical-import", json={
        "propertyId": property_id, "icalUrl": "https://example.com/villa.ics"})
    assert failed.status_code == 502


def test_sync_interval_tightens_during_checkout_window():
    morning = villa_ops.local_datetime(date.today(), 9)
    evening = morning + timedelta(hours=10)
    assert villa_ops.get_ical_sync_interval_seconds(morning) < villa_ops.get_ical_sync_interval_seconds(evening)
