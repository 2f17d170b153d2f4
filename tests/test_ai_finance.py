import json
from datetime import date

import pytest

import villa_ops
from conftest import future_day


REPAIR_MONTH = [
    {"date": "2026-10-02", "category": "Repairs", "amount": 12000, "vendor": "Samui Pumps"},
    {"date": "2026-10-05", "category": "Cleaning supplies", "amount": 800, "description": "Detergent"},
    {"date": "2026-10-09", "category": "Utilities", "amount": 3200},
]


@pytest.fixture
def fake_gemini(monkeypatch):
    calls = []

    def install(reply):
        def generate(prompt, temperature=0.4, max_output_tokens=2000, system_instruction=None):
            calls.append({"prompt": prompt, "system_instruction": system_instruction})
            if isinstance(reply, Exception):
                raise reply
            return reply

        monkeypatch.setattr(villa_ops, "_GEMINI_CLIENT", object())
        monkeypatch.setattr(villa_ops, "_gemini_generate", generate)
        return calls

    return install


def _expense_count():
    session = villa_ops.SessionLocal()
    try:
        return session.query(villa_ops.ExpenseModel).count()
    finally:
        session.close()


def _assign_all(staff_id, *job_ids):
    session = villa_ops.SessionLocal()
    try:
        staff = session.query(villa_ops.StaffAccountModel).filter_by(id=staff_id).first()
        for job_id in job_ids:
            job = session.query(villa_ops.OperationalJobModel).filter_by(id=job_id).first()
            villa_ops.assign_job_to_staff(session, job, staff)
        session.commit()
    finally:
        session.close()


def test_offline_expense_analysis_flags_large_repairs():
    analysis = villa_ops.analyze_expenses(REPAIR_MONTH)

    assert [a["note"] for a in analysis["anomalies"]] == [
        "High-value repairs expense requires review",
        "Unusual repair cost - investigate vendor pricing",
    ]
    assert analysis["confidence"] == 65.0
    assert analysis["riskLevel"] == "high"
    assert analysis["summary"] == ("Analyzed 3 expenses totaling ฿16,000. "
                                   "Found 2 anomalies requiring attention. High expense period detected")
    assert "Review vendor contracts for large repairs" in analysis["recommendations"]
    assert "Collect receipts for 1 expense(s) without a vendor or description" in analysis["recommendations"]
    assert analysis["insights"][0] == "Repairs accounts for 75% of spend"
    assert analysis["categoryTotals"]["Repairs"] == 12000


def test_small_expenses_pass_without_escalation(client):
    body = client.post("/api/ai-cfo", json={"expenses": [
        {"date": "2026-10-01", "category": "Cleaning supplies", "amount": 600, "vendor": "Makro"}]}).get_json()

    assert body["escalate"] is False
    assert body["anomalies"] == []
    assert body["riskLevel"] == "low"
    assert body["recommendations"] == ["Monitor cash flow trends weekly"]
    assert body["metadata"]["categoryTotals"] == {"Cleaning supplies": 600.0}


def test_cfo_escalates_and_logs_high_value_spend(client):
    response = client.post("/api/ai-cfo", json={"expenses": REPAIR_MONTH, "period": "October 2026", "record": True})

    body = response.get_json()
    assert response.status_code == 200
    assert body["source"] == "rules"
    assert body["escalate"] is True
    assert "1 expense(s) over ฿5,000" in body["escalationReasons"]
    assert "Risk level is high" in body["escalationReasons"]
    assert body["simulationMode"] is True
    assert body["recorded"] == 0
    assert _expense_count() == 0

    entries, _ = villa_ops.list_ai_logs(agent="CFO")
    assert entries[0]["id"] == body["logId"]
    assert entries[0]["status"] == "escalated"
    assert entries[0]["notes"] == "2 anomalies detected"
    notifications = client.get("/api/notifications").get_json()["notifications"]
    assert notifications[0]["kind"] == "ai_escalation"


def test_cfo_records_expenses_outside_simulation(client):
    villa_ops.save_setting("aiSettings", {"simulationMode": False})

    body = client.post("/api/ai-cfo", json={"expenses": REPAIR_MONTH, "record": True}).get_json()

    assert body["recorded"] == 3
    assert _expense_count() == 3


def test_cfo_validation(client):
    assert client.post("/api/ai-cfo", json={"period": "October"}).get_json()["details"] == ["expenses array is required"]
    assert client.post("/api/ai-cfo", json={"expenses": []}).status_code == 400
    bad = client.post("/api/ai-cfo", json={"expenses": [
        {"date": "yesterday", "category": "", "amount": -5}, "receipt"]})
    assert bad.status_code == 400
    assert bad.get_json()["details"] == [
        "expenses[0].date must be YYYY-MM-DD",
        "expenses[0].category is required",
        "expenses[0].amount must be a non-negative number",
        "expenses[1] must be an object",
    ]


def test_cfo_uses_gemini_analysis_when_configured(client, fake_gemini):
    calls = fake_gemini(json.dumps({
        "summary": "Repairs dominate the month.",
        "insights": ["Pool pump replaced at Villa Serenity"],
        "recommendations": ["Get two quotes for repairs"],
        "confidence": 88,
    }))

    body = client.post("/api/ai-cfo", json={"expenses": REPAIR_MONTH}).get_json()

    assert body["source"] == "gemini"
    assert body["summary"] == "Repairs dominate the month."
    assert body["insights"][0] == "Pool pump replaced at Villa Serenity"
    assert body["recommendations"][0] == "Get two quotes for repairs"
    assert body["confidence"] == 88
    assert calls[0]["system_instruction"] == villa_ops.AI_CFO_SYSTEM_INSTRUCTION
    assert "Samui Pumps" in calls[0]["prompt"]


def test_cfo_falls_back_to_rules_when_gemini_fails(client, fake_gemini):
    fake_gemini(RuntimeError("quota exceeded"))
    body = client.post("/api/ai-cfo", json={"expenses": REPAIR_MONTH}).get_json()
    assert body["source"] == "rules"
    assert body["confidence"] == 65.0


def test_cfo_status(client):
    body = client.get("/api/ai-cfo").get_json()
    assert body["status"] == "operational"
    assert body["thresholds"]["highValueFlag"] == 5000
    assert body["thresholds"]["confidenceThreshold"] == 75.0


def test_monthly_reports_use_bookings_and_recorded_expenses(make_property, make_booking):
    property_id = make_property()
    make_booking(property_id, status="confirmed", check_in_date="2026-11-20", check_out_date="2026-11-24",
                 total_amount=30000.0)
    make_booking(property_id, status="approved", guest_email="oct@example.com",
                 check_in_date="2026-10-12", check_out_date="2026-10-15", total_amount=20000.0)
    make_booking(property_id, guest_email="pending@example.com",
                 check_in_date="2026-11-02", check_out_date="2026-11-04", total_amount=5000.0)
    villa_ops.record_expenses([
        {"date": "2026-11-06", "category": "Repairs", "amount": 6000},
        {"date": "2026-10-08", "category": "Utilities", "amount": 4000},
    ])

    result = villa_ops.get_monthly_financial_reports(months=3, today=date(2026, 11, 15))

    november, october, september = result["reports"]
    assert november["month"] == "November 2026"
    assert (november["revenue"], november["expenses"], november["profit"]) == (30000.0, 6000.0, 24000.0)
    assert november["profitMargin"] == 80.0
    assert november["trends"]["revenueChange"] == 50.0
    assert november["trends"]["expenseChange"] == 50.0
    assert "Strong revenue growth" in november["insight"]
    assert "Expenses rose sharply" in november["insight"]
    assert november["breakdown"]["expensesByCategory"] == {"Repairs": 6000.0}
    assert october["trends"]["revenueChange"] is None
    assert september["insight"] == "No bookings or expenses recorded for this month."
    assert september["aiConfidence"] == 70

    summary = result["summary"]
    assert summary["totalRevenue"] == 50000.0
    assert summary["totalProfit"] == 40000.0
    assert summary["avgProfitMargin"] == 80.0
    assert summary["avgConfidence"] == 83.3
    assert summary["reportPeriod"] == "September 2026 - November 2026"


def test_report_routes(client):
    assert len(client.get("/api/ai-cfo/reports?months=2").get_json()["reports"]) == 2
    assert client.get("/api/ai-cfo/reports?months=abc").status_code == 400

    single = client.post("/api/ai-cfo/reports", json={"month": "Nov", "year": 2026})
    assert single.get_json()["report"]["month"] == "November 2026"
    assert client.post("/api/ai-cfo/reports", json={"month": 13, "year": 2026}).status_code == 400
    assert client.post("/api/ai-cfo/reports", json={"month": "November"}).status_code == 400


def test_day_prediction_covers_traffic_routes_guests_weather_and_value(make_property, make_booking, make_staff, make_job):
    day = future_day(3)
    property_id = make_property()
    booking_id = make_booking(property_id)
    staff_id = make_staff()
    turnover = make_job(propertyId=property_id, bookingId=booking_id, scheduledDate=day, scheduledTime="08:30")
    pool = make_job(jobType="maintenance", title="Pool pump service", propertyId=property_id,
                    scheduledDate=day, scheduledTime="10:00")
    walkthrough = make_job(jobType="inspection", propertyId=property_id, scheduledDate=day, scheduledTime="13:00")
    _assign_all(staff_id, turnover, pool, walkthrough)
    make_job(scheduledDate=future_day(4), scheduledTime="08:00")

    result = villa_ops.predict_day_operations(date.fromisoformat(day))

    by_type = {p["type"]: p for p in result["predictions"]}
    assert [p["type"] for p in result["predictions"]] == ["traffic", "optimization", "guest_behavior", "weather", "anomaly"]
    assert by_type["traffic"]["affectedJobs"] == [turnover]
    assert by_type["optimization"]["estimatedSavings"] == 45
    assert by_type["optimization"]["impact"] == "low"
    assert by_type["weather"]["affectedJobs"] == [pool]
    assert by_type["anomaly"]["affectedJobs"] == [turnover]
    assert result["confidence"] == 83
    assert result["summary"]["totalJobs"] == 3
    assert result["summary"]["riskLevel"] == "medium"
    assert result["summary"]["expectedCompletionRate"] == 90


def test_day_prediction_detects_hourly_bottleneck(client, make_job):
    day = future_day(5)
    for _ in range(5):
        make_job(scheduledDate=day, scheduledTime="11:00")

    body = client.post("/api/ai/predict-day-operations", json={"date": day}).get_json()

    assert [p["type"] for p in body["predictions"]] == ["bottleneck"]
    assert body["predictions"][0]["impact"] == "medium"
    assert body["summary"]["bottlenecks"] == 1
    assert body["summary"]["riskLevel"] == "low"


def test_day_prediction_route_validation(client):
    assert client.post("/api/ai/predict-day-operations", json={"date": "someday"}).status_code == 400
    empty = client.post("/api/ai/predict-day-operations", json={"date": future_day(30)}).get_json()
    assert empty["predictions"] == []
    assert empty["confidence"] == 0


def test_offline_chat_answers_from_live_snapshot(client, make_property, make_booking):
    make_booking(make_property())

    body = client.post("/api/ai-chat", json={"message": "Which bookings need approval?"}).get_json()

    assert body["source"] == "rules"
    assert body["response"] == "1 booking(s) are waiting for approval."
    assert body["context"]["pendingBookings"] == 1
    assert body["suggestedAction"]["type"] == "booking_update"
    events = client.get("/api/activity-feed").get_json()["events"]
    assert [e["source"] for e in events if e["type"] == "ai_chat"] == ["rules"]


def test_offline_chat_points_at_unassigned_jobs(client, make_job):
    make_job(scheduledDate=future_day(2), scheduledTime="10:00")
    body = client.post("/api/ai-chat", json={"message": "How are the jobs looking?"}).get_json()
    assert "1 not yet assigned" in body["response"]
    assert body["actionRequired"] is True
    assert body["suggestedAction"]["type"] == "staff_optimization"


def test_chat_validation(client):
    assert client.post("/api/ai-chat", json={}).status_code == 400
    assert client.post("/api/ai-chat", json={"message": "x" * 2001}).status_code == 400
    assert client.post("/api/ai-chat", json={"message": "hi", "conversationHistory": "earlier"}).status_code == 400


def test_chat_sends_history_and_snapshot_to_gemini(client, fake_gemini):
    calls = fake_gemini("Nothing needs your attention right now.")

    body = client.post("/api/ai-chat", json={
        "message": "Anything urgent?",
        "conversationHistory": [{"sender": "user", "message": "Good morning"}, {"sender": "ai", "message": "Hello!"}],
        "sessionId": "session-42",
    }).get_json()

    assert body["source"] == "gemini"
    assert body["response"] == "Nothing needs your attention right now."
    assert body["actionRequired"] is False
    assert body["sessionId"] == "session-42"
    prompt = calls[0]["prompt"]
    assert calls[0]["system_instruction"] == villa_ops.AI_CHAT_SYSTEM_INSTRUCTION
    assert "Admin: Good morning\nAssistant: Hello!\nAdmin: Anything urgent?\nAssistant:" in prompt
    assert '"pendingBookings": 0' in prompt


def test_chat_falls_back_when_gemini_fails(client, fake_gemini):
    fake_gemini(RuntimeError("503 unavailable"))
    body = client.post("/api/ai-chat", json={"message": "staff?"}).get_json()
    assert body["source"] == "rules"
    assert body["response"] == "0 staff member(s) are available right now."
