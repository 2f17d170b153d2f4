import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="villa_ops_tests_")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP_DIR, "test.db")
os.environ["UPLOAD_ROOT"] = os.path.join(_TMP_DIR, "uploads")
os.environ["AUTH_DISABLED"] = "true"
os.environ["TWILIO_SIMULATE"] = "1"
os.environ["BACKGROUND_WORKERS"] = "false"
os.environ["MOBILE_API_KEY"] = "test-mobile-key"
os.environ["MOBILE_SECRET"] = "test-mobile-secret"
os.environ["PMS_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["ADMIN_PHONE"] = "+66800000000"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.pop("GEMINI_API_KEY", None)
os.environ.pop("TWILIO_ACCOUNT_SID", None)

import villa_ops  # noqa: E402

MOBILE_HEADERS = {"X-API-Key": "test-mobile-key", "X-Mobile-Secret": "test-mobile-secret"}


@pytest.fixture(autouse=True)
def fresh_db():
    villa_ops.Base.metadata.drop_all(villa_ops.ENGINE)
    villa_ops.init_db()
    villa_ops.ICAL_CACHE.clear()
    villa_ops.ICAL_LAST_SYNC.clear()
    villa_ops._ACTIVITY_LOG.clear()
    yield


@pytest.fixture
def client():
    villa_ops.app.config["TESTING"] = True
    with villa_ops.app.test_client() as test_client:
        yield test_client


@pytest.fixture
def mobile_headers():
    return dict(MOBILE_HEADERS)


def future_day(days):
    return (datetime.now(timezone.utc).date() + timedelta(days=days)).isoformat()


@pytest.fixture
def make_property():
    def _make(**overrides):
        stamp = villa_ops.now_iso()
        fields = dict(
            id=str(uuid.uuid4()),
            name="Villa Serenity",
            address="Chaweng Noi, Koh Samui",
            lat=9.5120,
            lng=100.0600,
            max_occupancy=6,
            min_stay=2,
            active=1,
            created_at=stamp,
            updated_at=stamp,
        )
        fields.update(overrides)
        session = villa_ops.SessionLocal()
        try:
            prop = villa_ops.PropertyModel(**fields)
            session.add(prop)
            session.commit()
            return prop.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_staff():
    def _make(**overrides):
        stamp = villa_ops.now_iso()
        fields = dict(
            id=str(uuid.uuid4()),
            name="Nok",
            email=f"{uuid.uuid4().hex[:8]}@villa-ops.test",
            phone="0812345678",
            role="cleaner",
            skills=villa_ops.dump_json([]),
            is_active=1,
            is_suspended=0,
            availability_status="available",
            push_token="push-token",
            created_at=stamp,
            updated_at=stamp,
        )
        fields.update(overrides)
        session = villa_ops.SessionLocal()
        try:
            staff = villa_ops.StaffAccountModel(**fields)
            session.add(staff)
            session.commit()
            return staff.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_booking():
    def _make(property_id, **overrides):
        stamp = villa_ops.now_iso()
        fields = dict(
            id=str(uuid.uuid4()),
            property_id=property_id,
            property_name="Villa Serenity",
            guest_name="Emma Larsen",
            guest_email="emma@example.com",
            guest_count=4,
            check_in_date=future_day(10),
            check_out_date=future_day(14),
            total_amount=12000.0,
            currency="THB",
            status="pending_approval",
            source="manual",
            sync_version=1,
            created_at=stamp,
            updated_at=stamp,
        )
        fields.update(overrides)
        session = villa_ops.SessionLocal()
        try:
            booking = villa_ops.BookingModel(**fields)
            session.add(booking)
            villa_ops.sync_booking_calendar_event(session, booking)
            session.commit()
            return booking.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_job():
    def _make(**fields):
        payload = {"jobType": "cleaning", "title": "Deep clean"}
        payload.update(fields)
        session = villa_ops.SessionLocal()
        try:
            job = villa_ops.build_job(session, payload, created_by="test", strict_refs=False)
            session.commit()
            return job.id
        finally:
            session.close()
    return _make


def load(model, record_id):
    session = villa_ops.SessionLocal()
    try:
        return session.query(model).filter_by(id=record_id).first()
    finally:
        session.close()
