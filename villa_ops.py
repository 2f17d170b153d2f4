import os
import json
import time
import uuid
import queue
import random
import string
import threading
import traceback
import base64
import hmac
import hashlib
import re
import math
from collections import deque
from urllib.request import urlopen, Request
from urllib.error import HTTPError
from functools import wraps
from datetime import datetime, date, timezone, timedelta

from dotenv import load_dotenv

_app_dir = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(_app_dir, ".env"))
load_dotenv()

from flask import Flask, request, jsonify, Response, send_from_directory, g
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
from werkzeug.security import generate_password_hash, check_password_hash
from flask_cors import CORS
from sqlalchemy import create_engine, Column, String, Integer, Float, Text, text, or_
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.exc import SQLAlchemyError
from twilio.rest import Client as TwilioClient
from google import genai
from google.genai import types as genai_types

# ── Shared activity log — every outbound message and escalation lands here ──
# The admin dashboard polls /api/activity-feed for the operations ticker.
_ACTIVITY_LOG: deque = deque(maxlen=200)

# ══════════════════════════════════════════════════════════════════
# GEMINI AI — google.genai SDK, used by the AI COO, the AI CFO and ops chat
# Model priority: gemini-2.0-flash → gemini-2.0-flash-lite → offline rules
# ══════════════════════════════════════════════════════════════════
GEMINI_API_KEY = (os.getenv("GEMINI_API_KEY") or "").strip()
_GEMINI_CLIENT = None

if GEMINI_API_KEY:
    try:
        _GEMINI_CLIENT = genai.Client(api_key=GEMINI_API_KEY)
        print("[Gemini] google.genai client ready")
    except Exception as _ge:
        print(f"[Gemini] client init failed: {type(_ge).__name__}: {_ge}")
        traceback.print_exc()
else:
    print("[Gemini] GEMINI_API_KEY not set — AI agents run on offline rules")

_GEMINI_MODELS = ["gemini-2.0-flash", "gemini-2.0-flash-lite", "gemini-1.5-flash"]

AI_COO_SYSTEM_INSTRUCTION = """You are the AI COO of a villa management company.
You receive an operational request (a job description, optionally a property and a booking amount)
together with the company rules and the list of available staff.
Respond with ONLY a JSON object, no markdown, with keys:
jobType (cleaning|maintenance|inspection|setup|checkout|repair), priority (low|medium|high|urgent),
staffId (one of the listed staff ids or null), confidence (0-100), reasoning (one sentence), escalate (boolean).
Escalate whenever a company rule requires human review."""

AI_CFO_SYSTEM_INSTRUCTION = """You are the AI CFO of a villa management company in Thailand.
You receive a list of expenses in THB together with the company rules.
Respond with ONLY a JSON object, no markdown, with keys:
summary (one or two sentences), insights (array of short strings),
recommendations (array of short strings), confidence (0-100).
Only discuss the expenses you were given."""

AI_CHAT_SYSTEM_INSTRUCTION = """You are the operations assistant of a villa management company.
Answer the admin using only the live operations snapshot and the company rules in the prompt.
Be brief and specific. When something needs doing, name the action; never claim you already did it."""


def _gemini_generate(prompt: str, temperature: float = 0.4, max_output_tokens: int = 2000,
                     system_instruction: str = None) -> str:
    """
    Unified Gemini call. Tries each model in _GEMINI_MODELS until one works.
    Raises on hard failure so the caller can fall back to the offline rules.
    """
    if not _GEMINI_CLIENT:
        raise RuntimeError("[Gemini] Client not initialised — set GEMINI_API_KEY")

    last_exc = None
    for model_name in _GEMINI_MODELS:
        try:
            print(f"[Gemini] → calling {model_name} …")
            resp = _GEMINI_CLIENT.models.generate_content(
                model=model_name,
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_instruction or AI_COO_SYSTEM_INSTRUCTION,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                ),
            )
            result = (resp.text or "").strip()
            print(f"[Gemini] {model_name} responded ({len(result)} chars)")
            return result
        except Exception as e:
            last_exc = e
            err_str = str(e).lower()
            print(f"[Gemini] {model_name} failed: {type(e).__name__}: {e}")
            if "not_found" in err_str or "404" in err_str:
                continue   # model not available for this key
            if "quota" in err_str or "429" in err_str or "resource_exhausted" in err_str:
                continue   # quota hit, try cheaper model
            break

    raise last_exc or RuntimeError("[Gemini] All models failed")


TWILIO_CLIENT = None
_twilio_sid = (os.getenv("TWILIO_ACCOUNT_SID") or "").strip()
_twilio_token = (os.getenv("TWILIO_AUTH_TOKEN") or "").strip()
if _twilio_sid and _twilio_token and _twilio_sid.startswith("AC"):
    try:
        TWILIO_CLIENT = TwilioClient(_twilio_sid, _twilio_token)
        print("[Twilio] Connected with SID", _twilio_sid[:12] + "...")
    except Exception as e:
        TWILIO_CLIENT = None
        print("[Twilio] Init failed (server will run without SMS/WhatsApp):", e)
else:
    print("[Twilio] Skipped - TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN required in .env")

app = Flask(__name__)
CORS_HEADERS = "Content-Type, Authorization, X-API-Key, X-Mobile-Secret, X-Webhook-Token, X-Webhook-Timestamp"
CORS(app, resources={r"/*": {"origins": "*", "methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"], "allow_headers": [h.strip() for h in CORS_HEADERS.split(",")]}})


@app.before_request
def handle_options_preflight():
    if request.method == "OPTIONS":
        resp = Response(status=204)
        resp.headers["Access-Control-Allow-Origin"] = "*"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
        return resp


@app.after_request
def add_cors_headers(response):
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
    return response


def _env_flag(name, default="false"):
    return str(os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///villa_ops.db")
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_ISSUER = os.getenv("JWT_ISSUER", "villa-ops")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "villa-ops-dashboard")
JWT_EXP_HOURS = int(os.getenv("JWT_EXP_HOURS", "24"))
AUTH_DISABLED = _env_flag("AUTH_DISABLED")
MOBILE_API_KEY = (os.getenv("MOBILE_API_KEY") or "").strip()
MOBILE_SECRET = (os.getenv("MOBILE_SECRET") or "").strip()
PMS_WEBHOOK_SECRET = (os.getenv("PMS_WEBHOOK_SECRET") or "").strip()
PMS_WEBHOOK_MAX_AGE_SECONDS = int(os.getenv("PMS_WEBHOOK_MAX_AGE_SECONDS", "300"))
ADMIN_PHONE = (os.getenv("ADMIN_PHONE") or "").strip()
DEFAULT_COUNTRY_CODE = (os.getenv("DEFAULT_COUNTRY_CODE") or "+66").strip()
BACKGROUND_WORKERS = _env_flag("BACKGROUND_WORKERS", "true")
DISPATCH_INTERVAL = int(os.getenv("DISPATCH_INTERVAL_SECONDS", "60"))
TIMEOUT_MONITOR_INTERVAL = int(os.getenv("TIMEOUT_MONITOR_INTERVAL_SECONDS", "300"))
PROPERTY_TZ_OFFSET_HOURS = int(os.getenv("PROPERTY_TIMEZONE_OFFSET_HOURS", "7"))
IS_PRODUCTION = (os.getenv("APP_ENV") or os.getenv("FLASK_ENV") or "development").lower() == "production"
API_BASE_URL = os.getenv("API_BASE_URL", "http://127.0.0.1:5000").rstrip("/")
APP_URL = (os.getenv("APP_URL") or "http://localhost:3000").rstrip("/")
UPLOAD_ROOT = os.path.abspath(os.getenv("UPLOAD_ROOT") or os.path.join(_app_dir, "uploads"))
ALLOWED_PHOTO_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "heic"}


connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine_kwargs = {"connect_args": connect_args, "pool_pre_ping": True}
if not DATABASE_URL.startswith("sqlite"):
    engine_kwargs["pool_size"] = int(os.getenv("DB_POOL_SIZE", "10"))
    engine_kwargs["max_overflow"] = int(os.getenv("DB_MAX_OVERFLOW", "20"))
ENGINE = create_engine(DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(bind=ENGINE)
Base = declarative_base()


class UserModel(Base):
    """Admin dashboard users."""
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, unique=True)
    name = Column(String)
    password_hash = Column(String)
    role = Column(String)
    created_at = Column(String)


class PropertyModel(Base):
    __tablename__ = "properties"

    id = Column(String, primary_key=True)
    name = Column(String)
    address = Column(Text)
    lat = Column(Float)
    lng = Column(Float)
    max_occupancy = Column(Integer)
    min_stay = Column(Integer, default=1)
    requirements = Column(Text)  # JSON array of checklist items
    access_instructions = Column(Text)
    parking_instructions = Column(Text)
    ical_url = Column(Text)
    ical_last_sync = Column(String)
    active = Column(Integer, default=1)
    created_at = Column(String)
    updated_at = Column(String)


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True)
    property_id = Column(String, index=True)
    property_name = Column(String)
    guest_name = Column(String)
    guest_email = Column(String)
    guest_phone = Column(String)
    guest_count = Column(Integer)
    check_in_date = Column(String)   # YYYY-MM-DD
    check_out_date = Column(String)  # YYYY-MM-DD
    total_amount = Column(Float)
    currency = Column(String, default="THB")
    status = Column(String, index=True)
    source = Column(String)
    external_booking_id = Column(String, index=True)
    duplicate_check_hash = Column(String, index=True)
    payment_status = Column(String)
    special_requests = Column(Text)
    notes = Column(Text)
    approved_by = Column(String)
    approved_at = Column(String)
    rejected_by = Column(String)
    rejected_at = Column(String)
    rejection_reason = Column(Text)
    requires_reapproval = Column(Integer, default=0)
    sync_version = Column(Integer, default=0)
    created_at = Column(String)
    updated_at = Column(String, index=True)


class BookingApprovalModel(Base):
    __tablename__ = "booking_approvals"

    id = Column(String, primary_key=True)
    booking_id = Column(String, index=True)
    action = Column(String)
    admin_id = Column(String)
    admin_name = Column(String)
    notes = Column(Text)
    reason = Column(Text)
    previous_status = Column(String)
    new_status = Column(String)
    created_at = Column(String)


class StaffAccountModel(Base):
    __tablename__ = "staff_accounts"

    id = Column(String, primary_key=True)
    name = Column(String)
    email = Column(String, unique=True)
    phone = Column(String)
    role = Column(String)
    skills = Column(Text)  # JSON array
    is_active = Column(Integer, default=1)
    is_suspended = Column(Integer, default=0)
    availability_status = Column(String, default="available")
    push_token = Column(Text)
    password_hash = Column(String)
    last_lat = Column(Float)
    last_lng = Column(Float)
    last_location_at = Column(String)
    last_assigned_at = Column(String)
    created_at = Column(String)
    updated_at = Column(String)


class OperationalJobModel(Base):
    __tablename__ = "operational_jobs"

    id = Column(String, primary_key=True)
    booking_id = Column(String, index=True)
    property_id = Column(String, index=True)
    property_name = Column(String)
    title = Column(String)
    description = Column(Text)
    job_type = Column(String)
    required_role = Column(String)
    priority = Column(String, default="medium")
    status = Column(String, index=True)
    scheduled_date = Column(String)
    scheduled_time = Column(String)
    scheduled_start = Column(String)
    estimated_duration = Column(Integer)
    deadline = Column(String)
    required_skills = Column(Text)  # JSON array
    special_instructions = Column(Text)
    assigned_staff_id = Column(String, index=True)
    offer_id_active = Column(String)
    assigned_at = Column(String)
    accepted_at = Column(String)
    started_at = Column(String)
    completed_at = Column(String)
    completion_notes = Column(Text)
    completion_photos = Column(Text)  # JSON array of URLs
    escalation_required = Column(Integer, default=0)
    escalation_reason = Column(Text)
    auto_generated = Column(Integer, default=0)
    created_by = Column(String)
    sync_version = Column(Integer, default=0)
    created_at = Column(String)
    updated_at = Column(String, index=True)


class JobOfferModel(Base):
    __tablename__ = "job_offers"

    id = Column(String, primary_key=True)
    job_id = Column(String, index=True)
    property_id = Column(String)
    required_role = Column(String)
    eligible_staff_ids = Column(Text)  # JSON snapshot taken at creation
    status = Column(String, index=True)
    attempt_number = Column(Integer, default=1)
    offered_at = Column(String)
    expires_at = Column(String)
    accepted_by_staff_id = Column(String)
    acceptance_at = Column(String)
    cancel_reason = Column(Text)
    cancelled_at = Column(String)
    expired_at = Column(String)
    created_by = Column(String)
    created_at = Column(String)


class JobAssignmentModel(Base):
    __tablename__ = "job_assignments"

    id = Column(String, primary_key=True)
    job_id = Column(String, index=True)
    booking_id = Column(String)
    staff_id = Column(String, index=True)
    status = Column(String)
    notes = Column(Text)
    photos = Column(Text)  # JSON array
    time_spent = Column(Integer)  # minutes
    accepted_at = Column(String)
    started_at = Column(String)
    completed_at = Column(String)
    cancelled_at = Column(String)
    last_updated_by = Column(String)
    sync_version = Column(Integer, default=0)
    created_at = Column(String)
    updated_at = Column(String, index=True)


class CalendarEventModel(Base):
    __tablename__ = "calendar_events"

    id = Column(String, primary_key=True)
    title = Column(String)
    event_type = Column(String)
    status = Column(String)
    color = Column(String)
    property_id = Column(String, index=True)
    property_name = Column(String)
    booking_id = Column(String, index=True)
    job_id = Column(String, index=True)
    assigned_staff_id = Column(String)
    start_date = Column(String)
    end_date = Column(String)
    description = Column(Text)
    created_at = Column(String)
    updated_at = Column(String)


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    recipient_id = Column(String, index=True)  # staff id or "admin"
    kind = Column(String)
    title = Column(String)
    message = Column(Text)
    data = Column(Text)
    channel = Column(String)
    delivery_status = Column(String)
    delivery_error = Column(Text)
    read_at = Column(String)
    created_at = Column(String)


class SyncEventModel(Base):
    __tablename__ = "sync_events"

    id = Column(String, primary_key=True)
    event_type = Column(String)
    entity_type = Column(String)
    entity_id = Column(String)
    triggered_by = Column(String)
    platform = Column(String)
    changes = Column(Text)
    created_at = Column(String)


class AuditLogModel(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True)
    action = Column(String, index=True)
    entity_type = Column(String)
    entity_id = Column(String, index=True)
    actor = Column(String)
    details = Column(Text)
    created_at = Column(String, index=True)


class AILogModel(Base):
    __tablename__ = "ai_logs"

    id = Column(String, primary_key=True)
    timestamp = Column(String)
    agent = Column(String)
    decision = Column(Text)
    confidence = Column(Float)
    source = Column(String)
    escalate = Column(Integer, default=0)
    notes = Column(Text)
    rationale = Column(Text)
    status = Column(String)
    booking_id = Column(String)
    job_id = Column(String)
    created_at = Column(String, index=True)


class AIOverrideModel(Base):
    __tablename__ = "ai_overrides"

    id = Column(String, primary_key=True)
    log_id = Column(String, index=True)
    original_log_entry = Column(Text)
    override_action = Column(String)
    reason = Column(Text)
    admin_notes = Column(Text)
    priority = Column(String)
    new_decision = Column(Text)
    admin_user = Column(String)
    timestamp = Column(String)
    created_at = Column(String, index=True)


class SettingModel(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text)
    version = Column(Integer, default=0)
    updated_by = Column(String)
    updated_at = Column(String)


class SettingChangeModel(Base):
    __tablename__ = "setting_changes"

    id = Column(String, primary_key=True)
    key = Column(String, index=True)
    version = Column(Integer)
    changes = Column(Text)
    changed_by = Column(String)
    created_at = Column(String)


class ExpenseModel(Base):
    __tablename__ = "expenses"

    id = Column(String, primary_key=True)
    expense_date = Column(String, index=True)  # YYYY-MM-DD
    category = Column(String)
    amount = Column(Float)
    description = Column(Text)
    vendor = Column(String)
    property_id = Column(String, index=True)
    approved = Column(Integer, default=0)
    created_by = Column(String)
    created_at = Column(String)


def init_db():
    Base.metadata.create_all(ENGINE)
    ensure_indexes()


def ensure_indexes():
    """Composite lookups the ORM index flags don't cover."""
    with ENGINE.connect() as connection:
        for stmt in (
            "CREATE INDEX IF NOT EXISTS ix_bookings_external ON bookings (external_booking_id, source)",
            "CREATE INDEX IF NOT EXISTS ix_offers_status_expires ON job_offers (status, expires_at)",
        ):
            try:
                connection.execute(text(stmt))
                connection.commit()
            except SQLAlchemyError as e:
                print("[ensure_indexes] Note:", e)


INIT_DONE = False
INIT_LOCK = threading.Lock()
EVENT_LISTENERS = []
EVENT_LOCK = threading.Lock()
DISPATCH_STARTED = False
DISPATCH_LOCK = threading.Lock()
TIMEOUT_MONITOR_STARTED = False
TIMEOUT_MONITOR_LOCK = threading.Lock()
ICAL_CACHE = {}
ICAL_LAST_SYNC = {}
ICAL_SYNC_LOCK = threading.Lock()
ICAL_SYNC_STARTED = False
TWILIO_QUEUE = queue.Queue()
STREAM_KEEPALIVE_SECONDS = 25
TWILIO_WORKER_STARTED = False
TWILIO_WORKER_LOCK = threading.Lock()
os.makedirs(UPLOAD_ROOT, exist_ok=True)


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def now_ms():
    return int(time.time() * 1000)


def parse_iso_datetime(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value):
    """Accepts YYYY-MM-DD or a full ISO timestamp; returns a date or None."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    try:
        return datetime.strptime(raw[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def iso_from_ms(value):
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc).isoformat()


def load_json(value, default=None):
    if value in (None, ""):
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def dump_json(value):
    return json.dumps(value) if value is not None else None


def haversine_km(lat1, lng1, lat2, lng2):
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def error_response(message, status=400, details=None):
    body = {"success": False, "error": message}
    if details:
        body["details"] = details
    return jsonify(body), status


def service_error(message, code=400):
    return {"success": False, "error": message, "code": code}


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


def base64url_encode(data):
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def base64url_decode(data):
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def encode_jwt(payload):
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = base64url_encode(json.dumps(header).encode("utf-8"))
    payload_b64 = base64url_encode(json.dumps(payload).encode("utf-8"))
    signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
    signature = hmac.new(JWT_SECRET.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{base64url_encode(signature)}"


def decode_jwt(token):
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("Invalid token format")
    header_b64, payload_b64, signature_b64 = parts
    signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
    expected_signature = hmac.new(JWT_SECRET.encode("utf-8"), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(expected_signature, base64url_decode(signature_b64)):
        raise ValueError("Invalid token signature")
    payload = json.loads(base64url_decode(payload_b64))
    if not isinstance(payload, dict):
        raise ValueError("Invalid token payload")
    if payload.get("iss") != JWT_ISSUER or payload.get("aud") != JWT_AUDIENCE:
        raise ValueError("Invalid token issuer/audience")
    exp = payload.get("exp")
    if exp and datetime.now(timezone.utc).timestamp() > exp:
        raise ValueError("Token expired")
    return payload


def issue_token(subject, role):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=JWT_EXP_HOURS)).timestamp()),
    }
    return encode_jwt(payload)


def hash_password(password):
    return generate_password_hash(password or "", method="pbkdf2:sha256")


def verify_password(password_hash, password):
    if not password_hash:
        return False
    return check_password_hash(password_hash, password or "")


def get_auth_context_from_request():
    """Returns the decoded token payload for the current request."""
    token = None
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
    if not token:
        token = request.args.get("token")
    if not token:
        raise ValueError("Missing authorization token")
    return decode_jwt(token)


def require_auth(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if AUTH_DISABLED:
            g.user_id = request.headers.get("X-Admin-Id") or "admin"
            g.role = "admin"
            return fn(*args, **kwargs)
        try:
            payload = get_auth_context_from_request()
        except ValueError as error:
            return error_response(str(error), 401)
        if payload.get("role") not in ("admin", "manager"):
            return error_response("Admin access required", 403)
        g.user_id = payload.get("sub")
        g.role = payload.get("role")
        return fn(*args, **kwargs)
    return wrapper


def _secret_matches(provided, expected):
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_mobile_auth(fn):
    """Mobile clients authenticate with the shared X-API-Key / X-Mobile-Secret pair."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        api_key = request.headers.get("X-API-Key") or ""
        mobile_secret = request.headers.get("X-Mobile-Secret") or ""
        if not (_secret_matches(api_key, MOBILE_API_KEY) and _secret_matches(mobile_secret, MOBILE_SECRET)):
            print("[Mobile] rejected request without valid API key/secret:", request.path)
            return error_response("Unauthorized mobile request", 401)
        return fn(*args, **kwargs)
    return wrapper


def verify_webhook_request(headers, now_ts=None):
    """Returns an error string, or None when the PMS webhook headers are valid."""
    if not PMS_WEBHOOK_SECRET:
        return "Webhook secret not configured"
    if not _secret_matches(headers.get("x-webhook-token") or "", PMS_WEBHOOK_SECRET):
        return "Invalid webhook token"
    raw_ts = headers.get("x-webhook-timestamp")
    if not raw_ts:
        return "Missing webhook timestamp"
    try:
        sent_at = float(raw_ts)
    except ValueError:
        return "Invalid webhook timestamp"
    if sent_at > 1e12:
        sent_at = sent_at / 1000.0
    current = now_ts if now_ts is not None else time.time()
    if abs(current - sent_at) > PMS_WEBHOOK_MAX_AGE_SECONDS:
        return "Webhook timestamp outside allowed window"
    return None


# ── Serializers — API payloads are camelCase ─────────────────────────────

def property_to_dict(prop):
    return {
        "id": prop.id,
        "name": prop.name,
        "address": prop.address,
        "coordinates": {"lat": prop.lat, "lng": prop.lng} if prop.lat is not None and prop.lng is not None else None,
        "maxOccupancy": prop.max_occupancy,
        "minStay": prop.min_stay or 1,
        "requirements": load_json(prop.requirements, []),
        "accessInstructions": prop.access_instructions,
        "parkingInstructions": prop.parking_instructions,
        "icalUrl": prop.ical_url,
        "icalLastSync": prop.ical_last_sync,
        "active": bool(prop.active),
        "createdAt": prop.created_at,
        "updatedAt": prop.updated_at,
    }


def booking_to_dict(booking):
    return {
        "id": booking.id,
        "propertyId": booking.property_id,
        "propertyName": booking.property_name,
        "guestName": booking.guest_name,
        "guestEmail": booking.guest_email,
        "guestPhone": booking.guest_phone,
        "guestCount": booking.guest_count,
        "checkInDate": booking.check_in_date,
        "checkOutDate": booking.check_out_date,
        "totalAmount": booking.total_amount,
        "currency": booking.currency,
        "status": booking.status,
        "source": booking.source,
        "externalBookingId": booking.external_booking_id,
        "paymentStatus": booking.payment_status,
        "specialRequests": booking.special_requests,
        "notes": booking.notes,
        "approvedBy": booking.approved_by,
        "approvedAt": booking.approved_at,
        "rejectedBy": booking.rejected_by,
        "rejectedAt": booking.rejected_at,
        "rejectionReason": booking.rejection_reason,
        "requiresReapproval": bool(booking.requires_reapproval),
        "syncVersion": booking.sync_version or 0,
        "createdAt": booking.created_at,
        "updatedAt": booking.updated_at,
    }


def staff_to_dict(staff):
    return {
        "id": staff.id,
        "name": staff.name,
        "email": staff.email,
        "phone": staff.phone,
        "role": staff.role,
        "skills": load_json(staff.skills, []),
        "isActive": bool(staff.is_active),
        "isSuspended": bool(staff.is_suspended),
        "availabilityStatus": staff.availability_status,
        "hasPushToken": bool(staff.push_token),
        "lastLocation": {
            "lat": staff.last_lat,
            "lng": staff.last_lng,
            "updatedAt": staff.last_location_at,
        } if staff.last_lat is not None else None,
        "lastAssignedAt": staff.last_assigned_at,
        "createdAt": staff.created_at,
        "updatedAt": staff.updated_at,
    }


def job_to_dict(job):
    return {
        "id": job.id,
        "bookingId": job.booking_id,
        "propertyId": job.property_id,
        "propertyName": job.property_name,
        "title": job.title,
        "description": job.description,
        "jobType": job.job_type,
        "requiredRole": job.required_role,
        "priority": job.priority,
        "status": job.status,
        "scheduledDate": job.scheduled_date,
        "scheduledTime": job.scheduled_time,
        "scheduledStart": job.scheduled_start,
        "estimatedDuration": job.estimated_duration,
        "deadline": job.deadline,
        "requiredSkills": load_json(job.required_skills, []),
        "specialInstructions": job.special_instructions,
        "assignedStaffId": job.assigned_staff_id,
        "offerIdActive": job.offer_id_active,
        "assignedAt": job.assigned_at,
        "acceptedAt": job.accepted_at,
        "startedAt": job.started_at,
        "completedAt": job.completed_at,
        "completionNotes": job.completion_notes,
        "completionPhotos": load_json(job.completion_photos, []),
        "escalationRequired": bool(job.escalation_required),
        "escalationReason": job.escalation_reason,
        "autoGenerated": bool(job.auto_generated),
        "syncVersion": job.sync_version or 0,
        "createdAt": job.created_at,
        "updatedAt": job.updated_at,
    }


def offer_to_dict(offer):
    return {
        "id": offer.id,
        "jobId": offer.job_id,
        "propertyId": offer.property_id,
        "requiredRole": offer.required_role,
        "eligibleStaffIds": load_json(offer.eligible_staff_ids, []),
        "status": offer.status,
        "attemptNumber": offer.attempt_number,
        "offeredAt": offer.offered_at,
        "expiresAt": offer.expires_at,
        "acceptedByStaffId": offer.accepted_by_staff_id,
        "acceptanceAt": offer.acceptance_at,
        "cancelReason": offer.cancel_reason,
        "cancelledAt": offer.cancelled_at,
        "expiredAt": offer.expired_at,
        "createdBy": offer.created_by,
    }


def assignment_to_dict(assignment):
    return {
        "id": assignment.id,
        "jobId": assignment.job_id,
        "bookingId": assignment.booking_id,
        "staffId": assignment.staff_id,
        "status": assignment.status,
        "notes": assignment.notes,
        "photos": load_json(assignment.photos, []),
        "timeSpent": assignment.time_spent,
        "acceptedAt": assignment.accepted_at,
        "startedAt": assignment.started_at,
        "completedAt": assignment.completed_at,
        "cancelledAt": assignment.cancelled_at,
        "lastUpdatedBy": assignment.last_updated_by,
        "syncVersion": assignment.sync_version or 0,
        "createdAt": assignment.created_at,
        "updatedAt": assignment.updated_at,
    }


def calendar_event_to_dict(event):
    return {
        "id": event.id,
        "title": event.title,
        "type": event.event_type,
        "status": event.status,
        "color": event.color,
        "propertyId": event.property_id,
        "propertyName": event.property_name,
        "bookingId": event.booking_id,
        "jobId": event.job_id,
        "assignedStaffId": event.assigned_staff_id,
        "startDate": event.start_date,
        "endDate": event.end_date,
        "description": event.description,
    }


def notification_to_dict(notification):
    return {
        "id": notification.id,
        "recipientId": notification.recipient_id,
        "kind": notification.kind,
        "title": notification.title,
        "message": notification.message,
        "data": load_json(notification.data, {}),
        "channel": notification.channel,
        "deliveryStatus": notification.delivery_status,
        "read": bool(notification.read_at),
        "readAt": notification.read_at,
        "createdAt": notification.created_at,
    }


def ai_log_to_dict(entry):
    return {
        "id": entry.id,
        "timestamp": entry.timestamp,
        "agent": entry.agent,
        "decision": entry.decision,
        "confidence": entry.confidence,
        "source": entry.source,
        "escalate": bool(entry.escalate),
        "notes": entry.notes,
        "rationale": entry.rationale,
        "status": entry.status,
        "bookingId": entry.booking_id,
        "jobId": entry.job_id,
    }


def override_to_dict(override):
    return {
        "id": override.id,
        "logId": override.log_id,
        "originalLogEntry": load_json(override.original_log_entry, {}),
        "overrideAction": override.override_action,
        "reason": override.reason,
        "adminNotes": override.admin_notes,
        "priority": override.priority,
        "newDecision": override.new_decision,
        "adminUser": override.admin_user,
        "timestamp": override.timestamp,
    }


# ── Live events (SSE) ────────────────────────────────────────────────────

def subscribe_events():
    listener = queue.Queue()
    with EVENT_LOCK:
        EVENT_LISTENERS.append(listener)
    return listener


def unsubscribe_events(listener):
    with EVENT_LOCK:
        if listener in EVENT_LISTENERS:
            EVENT_LISTENERS.remove(listener)


def broadcast_event(event_type, payload):
    event = {"type": event_type, "timestamp": now_iso(), "payload": payload}
    with EVENT_LOCK:
        listeners = list(EVENT_LISTENERS)
    for listener in listeners:
        listener.put(event)


def log_activity(kind, text_line, **extra):
    entry = {"id": str(uuid.uuid4()), "ts": now_ms(), "type": kind, "text": text_line}
    entry.update(extra)
    _ACTIVITY_LOG.append(entry)


def record_audit(session, action, entity_type, entity_id, actor="system", details=None):
    """Adds an audit row to the caller's session; committed with the caller's work."""
    session.add(AuditLogModel(
        id=str(uuid.uuid4()),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        actor=actor or "system",
        details=dump_json(details or {}),
        created_at=now_iso(),
    ))


def record_sync_event(session, event_type, entity_type, entity_id, triggered_by, changes=None, platform="web"):
    session.add(SyncEventModel(
        id=str(uuid.uuid4()),
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        triggered_by=triggered_by or "system",
        platform=platform,
        changes=dump_json(changes or {}),
        created_at=now_iso(),
    ))


# ── Runtime settings (settings table, merged over defaults) ──────────────

DEFAULT_AI_SETTINGS = {
    "temperature": 0.4,
    "escalationThreshold": 0.75,
    "simulationMode": not IS_PRODUCTION,
    "fallbackMessage": "AI analysis unavailable. Escalating to human review for safety.",
    "maxTokens": 2000,
    "timeoutMs": 30000,
    "retryAttempts": 3,
    "confidenceBoost": 0,
    "debugMode": not IS_PRODUCTION,
    "modelVersion": _GEMINI_MODELS[0],
    "customPromptSuffix": "",
    "rateLimit": {"requestsPerMinute": 60, "enabled": True},
    "security": {"requireAuth": True, "allowedIPs": [], "logAllRequests": True},
}

DEFAULT_AI_AUTOMATION = {
    "enabled": False,
    "autoApproveBookings": False,
    "autoCreateJobs": True,
}

DEFAULT_DISPATCH_SETTINGS = {
    "dispatchWindowDays": 7,
    "offerExpiryMinutes": 15,
    "maxAttempts": 3,
    "autoDispatchEnabled": True,
}

DEFAULT_COMPANY_RULES = [
    "Never assign a cleaner to a job at a property they have not been trained on",
    "All jobs over ฿5,000 must be escalated for human review",
    "Do not assign staff more than 5km away unless marked as remote-capable",
    "Maintenance jobs require a staff member with the matching skill",
    "Guest-facing jobs must be completed at least 2 hours before check-in",
]

SETTING_DEFAULTS = {
    "aiSettings": DEFAULT_AI_SETTINGS,
    "aiAutomation": DEFAULT_AI_AUTOMATION,
    "dispatch": DEFAULT_DISPATCH_SETTINGS,
    "companyRules": {"rules": DEFAULT_COMPANY_RULES},
}

# Offer expiry per escalation attempt (minutes); attempt 1 uses offerExpiryMinutes
ESCALATION_LADDER_MINUTES = {1: 15, 2: 10, 3: 5}


def _merge_settings(defaults, stored):
    merged = json.loads(json.dumps(defaults))
    for key, value in (stored or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_settings(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_setting(key, session=None):
    own_session = session is None
    session = session or SessionLocal()
    try:
        row = session.query(SettingModel).filter_by(key=key).first()
        stored = load_json(row.value, {}) if row else {}
        return _merge_settings(SETTING_DEFAULTS.get(key, {}), stored)
    finally:
        if own_session:
            session.close()


def get_setting_version(key):
    session = SessionLocal()
    try:
        row = session.query(SettingModel).filter_by(key=key).first()
        return {"version": row.version if row else 0, "updatedBy": row.updated_by if row else None, "updatedAt": row.updated_at if row else None}
    finally:
        session.close()


def save_setting(key, updates, changed_by="admin", replace=False):
    """Merges (or replaces) a settings document and appends a changelog row."""
    session = SessionLocal()
    try:
        row = session.query(SettingModel).filter_by(key=key).first()
        current = load_json(row.value, {}) if row else {}
        new_value = dict(updates) if replace else _merge_settings(current, updates)
        if not row:
            row = SettingModel(key=key, version=0)
            session.add(row)
        row.value = dump_json(new_value)
        row.version = (row.version or 0) + 1
        row.updated_by = changed_by
        row.updated_at = now_iso()
        session.add(SettingChangeModel(
            id=str(uuid.uuid4()),
            key=key,
            version=row.version,
            changes=dump_json(updates),
            changed_by=changed_by,
            created_at=now_iso(),
        ))
        record_audit(session, "settings_updated", "setting", key, changed_by, {"changes": updates})
        session.commit()
        print(f"[Settings] {key} updated to v{row.version} by {changed_by}")
        return _merge_settings(SETTING_DEFAULTS.get(key, {}), new_value)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


def get_setting_history(key, limit=20):
    session = SessionLocal()
    try:
        rows = (
            session.query(SettingChangeModel)
            .filter_by(key=key)
            .order_by(SettingChangeModel.version.desc())
            .limit(limit)
            .all()
        )
        return [
            {"version": r.version, "changes": load_json(r.changes, {}), "changedBy": r.changed_by, "changedAt": r.created_at}
            for r in rows
        ]
    finally:
        session.close()


def get_company_rules():
    rules = get_setting("companyRules").get("rules") or []
    return [r for r in rules if isinstance(r, str) and r.strip()]



# ══════════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS — Twilio WhatsApp first, SMS fallback, async queue
# ══════════════════════════════════════════════════════════════════════════════

def _normalize_phone(phone):
    """Local numbers (leading 0) get DEFAULT_COUNTRY_CODE."""
    p = (phone or "").strip().replace("-", "").replace(" ", "").replace("(", "").replace(")", "")
    if not p:
        return ""
    if p.startswith("+"):
        return p
    if p.startswith("0"):
        return DEFAULT_COUNTRY_CODE + p[1:]
    return "+" + p


def _is_retryable_error(err):
    """Temporary/rate-limit errors worth retrying."""
    s = (err or "").lower()
    return "429" in s or "rate" in s or "timeout" in s or "503" in s or "502" in s or "temporarily" in s


TWILIO_SIMULATE = _env_flag("TWILIO_SIMULATE")
if TWILIO_SIMULATE:
    print("[Twilio] SIMULATE mode - messages print to terminal, no API calls")


def _simulate_send(kind, to, message):
    preview = (message or "")[:80]
    print(f"[Twilio SIMULATE] {kind} ->", to, "|", preview)
    log_activity(kind, f"{kind} → {to}: {preview}", to=to)
    return {"success": True, "sid": "sim-" + str(time.time()), "simulated": True}


def send_whatsapp(to_number, message, media_url=None, _retries=3):
    to = _normalize_phone(to_number)
    if not to:
        return {"success": False, "error": "Missing recipient number"}
    if TWILIO_SIMULATE:
        return _simulate_send("whatsapp", to, message)
    if not TWILIO_CLIENT:
        return {"success": False, "error": "Twilio not configured"}
    raw = (os.getenv("TWILIO_WHATSAPP_FROM") or os.getenv("TWILIO_PHONE_FROM") or "").strip()
    from_val = raw if raw.startswith("whatsapp:") else f"whatsapp:{raw}"
    for attempt in range(max(1, _retries)):
        try:
            payload = {"from_": from_val, "to": f"whatsapp:{to}", "body": message}
            if media_url:
                payload["media_url"] = [media_url]
            msg = TWILIO_CLIENT.messages.create(**payload)
            return {"success": True, "sid": msg.sid}
        except Exception as e:
            err_str = str(e)
            print("[Twilio] WhatsApp send failed (attempt %d):" % (attempt + 1), e)
            if attempt < _retries - 1 and _is_retryable_error(err_str):
                time.sleep(1.5 * (attempt + 1))
                continue
            return {"success": False, "error": err_str}
    return {"success": False, "error": "Twilio send failed after retries"}


def send_sms(to_number, message, _retries=3):
    to = _normalize_phone(to_number)
    if not to:
        return {"success": False, "error": "Missing recipient number"}
    if TWILIO_SIMULATE:
        return _simulate_send("sms", to, message)
    if not TWILIO_CLIENT:
        return {"success": False, "error": "Twilio not configured"}
    from_number = (os.getenv("TWILIO_PHONE_FROM") or "").strip().replace("whatsapp:", "")
    for attempt in range(max(1, _retries)):
        try:
            msg = TWILIO_CLIENT.messages.create(from_=from_number, to=to, body=message)
            return {"success": True, "sid": msg.sid}
        except Exception as e:
            if attempt < _retries - 1 and _is_retryable_error(str(e)):
                time.sleep(1.5 * (attempt + 1))
                continue
            print("[Twilio] SMS send failed:", e)
            return {"success": False, "error": str(e)}
    return {"success": False, "error": "SMS failed after retries"}


def deliver_notification(notification_id, to, message):
    """WhatsApp first, SMS when WhatsApp fails; stores the outcome on the notification row."""
    result = send_whatsapp(to, message)
    channel = "whatsapp"
    if not result.get("success"):
        sms_result = send_sms(to, message)
        if sms_result.get("success"):
            result = sms_result
            channel = "sms"
    session = SessionLocal()
    try:
        row = session.query(NotificationModel).filter_by(id=notification_id).first()
        if row:
            row.channel = channel
            row.delivery_status = "sent" if result.get("success") else "failed"
            row.delivery_error = None if result.get("success") else result.get("error")
            session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        print("[Notify] could not store delivery result:", e)
    finally:
        session.close()
    return result


def _process_twilio_item(item):
    action = item.get("action")
    if action == "notify":
        deliver_notification(item.get("notification_id"), item.get("to"), item.get("message"))
    elif action == "whatsapp":
        send_whatsapp(item.get("to"), item.get("message"), item.get("media_url"))
    elif action == "sms":
        send_sms(item.get("to"), item.get("message"))


def _twilio_worker():
    """Background worker: drains TWILIO_QUEUE."""
    while True:
        item = TWILIO_QUEUE.get()
        if item is None:
            break
        try:
            _process_twilio_item(item)
        except Exception as e:
            print("[Twilio Queue] Worker error:", e)
            traceback.print_exc()
        finally:
            TWILIO_QUEUE.task_done()


def start_twilio_worker():
    global TWILIO_WORKER_STARTED
    with TWILIO_WORKER_LOCK:
        if TWILIO_WORKER_STARTED:
            return
        threading.Thread(target=_twilio_worker, daemon=True, name="TwilioWorker").start()
        TWILIO_WORKER_STARTED = True
        print("[Twilio] Background queue worker started")


def enqueue_twilio_task(action, **kwargs):
    """Queued when the worker runs, delivered inline otherwise (CLI, tests)."""
    item = {"action": action, **kwargs}
    if TWILIO_WORKER_STARTED:
        TWILIO_QUEUE.put_nowait(item)
        return True
    try:
        _process_twilio_item(item)
    except Exception as e:
        print("[Twilio] inline delivery failed:", e)
        return False
    return True


def send_notification(recipient_id, title, message, kind="info", data=None):
    """Stores an in-app notification and pushes it to the recipient's phone.
    Never raises: a failed notification must not fail the operation that triggered it."""
    session = SessionLocal()
    try:
        phone = None
        if recipient_id == "admin":
            phone = ADMIN_PHONE
        else:
            staff = session.query(StaffAccountModel).filter_by(id=recipient_id).first()
            phone = staff.phone if staff else None
        notification = NotificationModel(
            id=str(uuid.uuid4()),
            recipient_id=recipient_id,
            kind=kind,
            title=title,
            message=message,
            data=dump_json(data or {}),
            channel="whatsapp" if phone else "in_app",
            delivery_status="queued" if phone else "stored",
            created_at=now_iso(),
        )
        session.add(notification)
        session.commit()
        notification_id = notification.id
    except SQLAlchemyError as e:
        session.rollback()
        print(f"[Notify] failed to store notification for {recipient_id}: {e}")
        return None
    finally:
        session.close()
    broadcast_event("notification", {"id": notification_id, "recipientId": recipient_id, "kind": kind, "title": title})
    if phone:
        enqueue_twilio_task("notify", notification_id=notification_id, to=phone, message=f"{title}\n{message}")
    return notification_id


def notify_admin(title, message, kind="escalation", data=None):
    log_activity(kind, f"🚨 {title}: {message}")
    return send_notification("admin", title, message, kind=kind, data=data)


# ══════════════════════════════════════════════════════════════════════════════
# CALENDAR — colour-coded events for bookings and jobs, conflict detection
# ══════════════════════════════════════════════════════════════════════════════

EVENT_TYPE_COLORS = {
    "booking": "#3B82F6",
    "cleaning": "#10B981",
    "maintenance": "#F59E0B",
    "check_in_prep": "#8B5CF6",
    "inspection": "#EAB308",
}
DEFAULT_EVENT_COLOR = "#6B7280"
STATUS_COLORS = {
    "completed": "#10B981",
    "in_progress": "#F59E0B",
    "cancelled": "#EF4444",
}
JOB_TYPE_EVENT_TYPES = {
    "cleaning": "cleaning",
    "maintenance": "maintenance",
    "repair": "maintenance",
    "inspection": "inspection",
    "checkout": "inspection",
    "setup": "check_in_prep",
}
CONFLICT_SEVERITY = {
    "booking": "critical",
    "reservation": "critical",
    "maintenance": "high",
    "cleaning": "high",
    "inspection": "medium",
    "meeting": "low",
    "other": "low",
}
SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}
CHECK_IN_HOUR = int(os.getenv("CHECK_IN_HOUR", "14"))
CHECK_OUT_HOUR = int(os.getenv("CHECK_OUT_HOUR", "11"))
PROPERTY_TZ = timezone(timedelta(hours=PROPERTY_TZ_OFFSET_HOURS))


def get_event_color(event_type, status=None):
    if status in STATUS_COLORS:
        return STATUS_COLORS[status]
    return EVENT_TYPE_COLORS.get(event_type, DEFAULT_EVENT_COLOR)


def local_datetime(day, hour=0, minute=0):
    """Property-local wall time on `day`, returned in UTC."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=PROPERTY_TZ).astimezone(timezone.utc)


def sync_job_calendar_event(session, job):
    """Upsert the calendar event that mirrors a job. Uncommitted."""
    start = parse_iso_datetime(job.scheduled_start)
    if not start:
        scheduled_day = parse_date(job.scheduled_date)
        if not scheduled_day:
            return None
        start = local_datetime(scheduled_day, 9)
    end = start + timedelta(minutes=job.estimated_duration or 60)
    event_type = JOB_TYPE_EVENT_TYPES.get(job.job_type, "other")
    event = session.query(CalendarEventModel).filter_by(job_id=job.id).first()
    if not event:
        event = CalendarEventModel(id=str(uuid.uuid4()), job_id=job.id, created_at=now_iso())
        session.add(event)
    event.title = job.title
    event.event_type = event_type
    event.status = job.status
    event.color = get_event_color(event_type, job.status)
    event.property_id = job.property_id
    event.property_name = job.property_name
    event.booking_id = job.booking_id
    event.assigned_staff_id = job.assigned_staff_id
    event.start_date = start.isoformat()
    event.end_date = end.isoformat()
    event.description = job.description
    event.updated_at = now_iso()
    return event


def sync_booking_calendar_event(session, booking):
    """One stay event per booking, check-in afternoon to check-out morning. Uncommitted."""
    check_in = parse_date(booking.check_in_date)
    check_out = parse_date(booking.check_out_date)
    if not check_in or not check_out:
        return None
    event = (
        session.query(CalendarEventModel)
        .filter(CalendarEventModel.booking_id == booking.id, CalendarEventModel.job_id.is_(None))
        .first()
    )
    if not event:
        event = CalendarEventModel(id=str(uuid.uuid4()), booking_id=booking.id, created_at=now_iso())
        session.add(event)
    status = "cancelled" if booking.status in ("cancelled", "rejected") else booking.status
    event.title = f"{booking.guest_name or 'Guest'} @ {booking.property_name or booking.property_id}"
    event.event_type = "booking"
    event.status = status
    event.color = get_event_color("booking", status)
    event.property_id = booking.property_id
    event.property_name = booking.property_name
    event.start_date = local_datetime(check_in, CHECK_IN_HOUR).isoformat()
    event.end_date = local_datetime(check_out, CHECK_OUT_HOUR).isoformat()
    event.description = f"{booking.guest_count or '?'} guests · {booking.source or 'manual'}"
    event.updated_at = now_iso()
    return event


def list_calendar_events(start=None, end=None, property_id=None, event_type=None, include_cancelled=True):
    session = SessionLocal()
    try:
        query = session.query(CalendarEventModel)
        if property_id:
            query = query.filter_by(property_id=property_id)
        if event_type:
            query = query.filter_by(event_type=event_type)
        events = query.all()
    finally:
        session.close()
    range_start = parse_iso_datetime(start) if start else None
    range_end = parse_iso_datetime(end) if end else None
    result = []
    for event in events:
        if not include_cancelled and event.status == "cancelled":
            continue
        ev_start = parse_iso_datetime(event.start_date)
        ev_end = parse_iso_datetime(event.end_date) or ev_start
        if range_start and ev_end and ev_end < range_start:
            continue
        if range_end and ev_start and ev_start > range_end:
            continue
        result.append(event)
    result.sort(key=lambda e: e.start_date or "")
    return result


def detect_conflicts(property_id=None, start=None, end=None):
    """Overlapping events at the same property. Events that belong to the same
    booking (its stay and its prep jobs) are expected to overlap and are skipped."""
    events = list_calendar_events(start, end, property_id=property_id, include_cancelled=False)
    conflicts = []
    for i, first in enumerate(events):
        first_start = parse_iso_datetime(first.start_date)
        first_end = parse_iso_datetime(first.end_date)
        if not first_start or not first_end:
            continue
        for second in events[i + 1:]:
            if second.property_id != first.property_id:
                continue
            if first.booking_id and first.booking_id == second.booking_id:
                continue
            second_start = parse_iso_datetime(second.start_date)
            second_end = parse_iso_datetime(second.end_date)
            if not second_start or not second_end:
                continue
            if first_start < second_end and first_end > second_start:
                severity = max(
                    CONFLICT_SEVERITY.get(first.event_type, "medium"),
                    CONFLICT_SEVERITY.get(second.event_type, "medium"),
                    key=lambda s: SEVERITY_RANK[s],
                )
                conflicts.append({
                    "propertyId": first.property_id,
                    "severity": severity,
                    "events": [calendar_event_to_dict(first), calendar_event_to_dict(second)],
                    "overlapStart": max(first_start, second_start).isoformat(),
                    "overlapEnd": min(first_end, second_end).isoformat(),
                })
    conflicts.sort(key=lambda c: -SEVERITY_RANK[c["severity"]])
    return conflicts


# ── iCal import ──────────────────────────────────────────────────────────

def parse_ical_events(ics_text):
    """VEVENT blocks → [{uid, start, end, summary}] with whole-day dates."""
    events = []
    current = None
    for raw_line in (ics_text or "").splitlines():
        line = raw_line.strip()
        if line == "BEGIN:VEVENT":
            current = {}
            continue
        if line == "END:VEVENT":
            if current is not None:
                try:
                    start_dt = datetime.strptime(current.get("DTSTART", "")[:8], "%Y%m%d").date()
                    end_dt = datetime.strptime(current.get("DTEND", "")[:8], "%Y%m%d").date()
                except ValueError:
                    start_dt = end_dt = None
                if start_dt and end_dt and end_dt > start_dt:
                    uid = current.get("UID") or f"{start_dt.isoformat()}_{end_dt.isoformat()}"
                    events.append({
                        "uid": uid,
                        "start": start_dt,
                        "end": end_dt,
                        "summary": current.get("SUMMARY") or "",
                    })
            current = None
            continue
        if current is not None and ":" in line:
            key, value = line.split(":", 1)
            name = key.split(";", 1)[0].upper()
            if name in ("UID", "DTSTART", "DTEND", "SUMMARY"):
                current[name] = value.strip()
    return events


def is_checkout_priority_window(now_local):
    start_hour = int(os.getenv("CHECKOUT_PRIORITY_START", "8"))
    end_hour = int(os.getenv("CHECKOUT_PRIORITY_END", "12"))
    return start_hour <= now_local.hour < end_hour


def get_ical_sync_interval_seconds(now_local):
    if is_checkout_priority_window(now_local):
        return int(os.getenv("ICAL_SYNC_PRIORITY_SECONDS", "240"))
    return int(os.getenv("ICAL_SYNC_DEFAULT_SECONDS", "1200"))


def fetch_ical_text(cache_key, ical_url, force=False):
    """Conditional GET; returns (None, None, None) when the feed is unchanged (304)."""
    headers = {}
    cache = ICAL_CACHE.get(cache_key, {})
    if not force:
        if cache.get("etag"):
            headers["If-None-Match"] = cache["etag"]
        if cache.get("last_modified"):
            headers["If-Modified-Since"] = cache["last_modified"]
    req = Request(ical_url, headers=headers)
    try:
        with urlopen(req, timeout=12) as response:
            ics_text = response.read().decode("utf-8", errors="ignore")
            return ics_text, response.headers.get("ETag"), response.headers.get("Last-Modified")
    except HTTPError as e:
        if e.code == 304:
            return None, None, None
        raise


def sync_ical_for_property(property_id, force=False):
    session = SessionLocal()
    try:
        prop = session.query(PropertyModel).filter_by(id=property_id).first()
        if not prop or not prop.ical_url:
            return None
        ics_text, etag, last_modified = fetch_ical_text(prop.id, prop.ical_url, force=force)
        if not ics_text:
            return {"synced": True, "changed": False}
        ics_hash = hashlib.sha256(ics_text.encode("utf-8")).hexdigest()
        if ICAL_CACHE.get(prop.id, {}).get("hash") == ics_hash and not force:
            return {"synced": True, "changed": False}

        feed_events = parse_ical_events(ics_text)
        existing = {
            b.external_booking_id: b
            for b in session.query(BookingModel).filter_by(property_id=prop.id, source="ical").all()
        }
        created = updated = cancelled = 0
        seen = set()
        stamp = now_iso()
        for ev in feed_events:
            seen.add(ev["uid"])
            booking = existing.get(ev["uid"])
            check_in = ev["start"].isoformat()
            check_out = ev["end"].isoformat()
            if booking is None:
                booking = BookingModel(
                    id=str(uuid.uuid4()),
                    property_id=prop.id,
                    property_name=prop.name,
                    guest_name=ev["summary"] or "Blocked (iCal)",
                    check_in_date=check_in,
                    check_out_date=check_out,
                    status="confirmed",
                    source="ical",
                    external_booking_id=ev["uid"],
                    sync_version=1,
                    created_at=stamp,
                    updated_at=stamp,
                )
                session.add(booking)
                created += 1
            elif booking.check_in_date != check_in or booking.check_out_date != check_out or booking.status == "cancelled":
                booking.check_in_date = check_in
                booking.check_out_date = check_out
                booking.status = "confirmed"
                booking.updated_at = stamp
                booking.sync_version = (booking.sync_version or 0) + 1
                updated += 1
            else:
                continue
            session.flush()
            sync_booking_calendar_event(session, booking)

        today = datetime.now(timezone.utc).date()
        for uid, booking in existing.items():
            if uid in seen or booking.status == "cancelled":
                continue
            check_out_day = parse_date(booking.check_out_date)
            if check_out_day and check_out_day >= today:
                booking.status = "cancelled"
                booking.updated_at = stamp
                booking.sync_version = (booking.sync_version or 0) + 1
                sync_booking_calendar_event(session, booking)
                cancelled += 1

        prop.ical_last_sync = stamp
        record_audit(session, "ical_synced", "property", prop.id, "system",
                     {"created": created, "updated": updated, "cancelled": cancelled})
        session.commit()
        ICAL_CACHE[prop.id] = {"hash": ics_hash, "etag": etag, "last_modified": last_modified}
        print(f"[iCal] {prop.name}: +{created} ~{updated} -{cancelled}")
        return {"synced": True, "changed": True, "created": created, "updated": updated,
                "cancelled": cancelled, "events": len(feed_events)}
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


def calendar_sync_loop():
    while True:
        now_local = datetime.now(PROPERTY_TZ)
        interval = get_ical_sync_interval_seconds(now_local)
        time.sleep(60)
        session = SessionLocal()
        try:
            property_ids = [p.id for p in session.query(PropertyModel).filter(PropertyModel.ical_url.isnot(None)).all()]
        finally:
            session.close()
        for property_id in property_ids:
            last_sync = ICAL_LAST_SYNC.get(property_id)
            if last_sync and (time.time() - last_sync) < interval:
                continue
            try:
                if sync_ical_for_property(property_id):
                    ICAL_LAST_SYNC[property_id] = time.time()
            except Exception as e:
                print(f"[iCal] sync failed for {property_id}: {e}")


def start_calendar_syncer():
    global ICAL_SYNC_STARTED
    with ICAL_SYNC_LOCK:
        if ICAL_SYNC_STARTED:
            return
        threading.Thread(target=calendar_sync_loop, daemon=True, name="CalendarSync").start()
        ICAL_SYNC_STARTED = True


# ══════════════════════════════════════════════════════════════════════════════
# OPERATIONAL JOBS — lifecycle, direct assignment
# ══════════════════════════════════════════════════════════════════════════════

JOB_TYPES = ("cleaning", "maintenance", "inspection", "setup", "checkout", "repair", "check_in", "other")
JOB_PRIORITIES = ("low", "medium", "high", "urgent")
JOB_TYPE_ROLES = {
    "cleaning": "cleaner",
    "setup": "cleaner",
    "checkout": "cleaner",
    "inspection": "inspector",
    "maintenance": "maintenance",
    "repair": "maintenance",
    "check_in": "supervisor",
}
# Roles that can cover for each other when matching staff to a job
ROLE_GROUPS = {
    "cleaner": {"cleaner", "housekeeper"},
    "housekeeper": {"cleaner", "housekeeper"},
    "inspector": {"inspector", "supervisor"},
    "supervisor": {"inspector", "supervisor", "manager"},
    "maintenance": {"maintenance"},
}
JOB_STATUS_TRANSITIONS = {
    "pending": {"offered", "assigned", "cancelled"},
    "offered": {"pending", "assigned", "cancelled"},
    "assigned": {"accepted", "in_progress", "stuck_accepted", "pending", "cancelled"},
    "accepted": {"in_progress", "stuck_accepted", "pending", "cancelled"},
    "stuck_accepted": {"in_progress", "pending", "cancelled"},
    "in_progress": {"completed", "stuck_started", "cancelled"},
    "stuck_started": {"completed", "cancelled"},
    "completed": {"verified"},
    "verified": set(),
    "cancelled": set(),
}
CLOSED_JOB_STATUSES = ("completed", "verified", "cancelled")
ASSIGNMENT_STATUS_FOR_JOB = {
    "accepted": "accepted",
    "in_progress": "in-progress",
    "completed": "completed",
    "cancelled": "cancelled",
    "pending": "cancelled",
}


def staff_matches_role(staff_role, required_role):
    if not required_role:
        return True
    return (staff_role or "") in ROLE_GROUPS.get(required_role, {required_role})


def compute_scheduled_start(scheduled_date, scheduled_time=None):
    day = parse_date(scheduled_date)
    if not day:
        return None
    hour, minute = 9, 0
    match = re.match(r"^(\d{1,2}):(\d{2})", str(scheduled_time or ""))
    if match:
        hour, minute = min(int(match.group(1)), 23), min(int(match.group(2)), 59)
    return local_datetime(day, hour, minute).isoformat()


def build_job(session, fields, created_by="admin", auto_generated=False, strict_refs=True):
    """Validates job fields and adds a pending job to the session. Uncommitted."""
    job_type = (fields.get("jobType") or "").strip().lower()
    if not job_type:
        raise ValueError("jobType is required")
    if job_type not in JOB_TYPES:
        raise ValueError(f"jobType must be one of: {', '.join(JOB_TYPES)}")
    priority = (fields.get("priority") or "medium").strip().lower()
    if priority not in JOB_PRIORITIES:
        raise ValueError(f"priority must be one of: {', '.join(JOB_PRIORITIES)}")

    prop = None
    property_id = fields.get("propertyId")
    if property_id:
        prop = session.query(PropertyModel).filter_by(id=property_id).first()
        if not prop and strict_refs:
            raise NotFoundError("Property not found")
    booking_id = fields.get("bookingId")
    if booking_id and strict_refs and not session.query(BookingModel).filter_by(id=booking_id).first():
        raise NotFoundError("Booking not found")

    scheduled_start = fields.get("scheduledStart")
    if scheduled_start and not parse_iso_datetime(scheduled_start):
        raise ValueError("scheduledStart must be an ISO timestamp")
    scheduled_date = fields.get("scheduledDate")
    if scheduled_date and not parse_date(scheduled_date):
        raise ValueError("scheduledDate must be YYYY-MM-DD")
    if not scheduled_start and scheduled_date:
        scheduled_start = compute_scheduled_start(scheduled_date, fields.get("scheduledTime"))
    if scheduled_start and not scheduled_date:
        scheduled_date = parse_iso_datetime(scheduled_start).astimezone(PROPERTY_TZ).date().isoformat()
    deadline = fields.get("deadline")
    if deadline and not parse_iso_datetime(deadline):
        raise ValueError("deadline must be an ISO timestamp")
    try:
        duration = int(fields.get("estimatedDuration") or 60)
    except (TypeError, ValueError):
        raise ValueError("estimatedDuration must be a number of minutes")
    if duration <= 0:
        raise ValueError("estimatedDuration must be positive")

    stamp = now_iso()
    job = OperationalJobModel(
        id=str(uuid.uuid4()),
        booking_id=booking_id,
        property_id=property_id,
        property_name=prop.name if prop else fields.get("propertyName"),
        title=(fields.get("title") or job_type.replace("_", " ").title()).strip(),
        description=fields.get("description"),
        job_type=job_type,
        required_role=fields.get("requiredRole") or JOB_TYPE_ROLES.get(job_type),
        priority=priority,
        status="pending",
        scheduled_date=scheduled_date,
        scheduled_time=fields.get("scheduledTime"),
        scheduled_start=scheduled_start,
        estimated_duration=duration,
        deadline=deadline,
        required_skills=dump_json(fields.get("requiredSkills") or []),
        special_instructions=fields.get("specialInstructions"),
        escalation_required=0,
        auto_generated=1 if auto_generated else 0,
        created_by=created_by,
        sync_version=1,
        created_at=stamp,
        updated_at=stamp,
    )
    session.add(job)
    sync_job_calendar_event(session, job)
    record_audit(session, "job_created", "job", job.id, created_by,
                 {"jobType": job_type, "bookingId": booking_id, "autoGenerated": auto_generated})
    return job


def _touch_job(job):
    job.updated_at = now_iso()
    job.sync_version = (job.sync_version or 0) + 1


def _cancel_open_offer(session, job, reason):
    if not job.offer_id_active:
        return None
    offer = session.query(JobOfferModel).filter_by(id=job.offer_id_active).first()
    job.offer_id_active = None
    if offer and offer.status == "open":
        offer.status = "cancelled"
        offer.cancel_reason = reason
        offer.cancelled_at = now_iso()
        record_audit(session, "offer_cancelled", "offer", offer.id, "system", {"reason": reason, "jobId": job.id})
    return offer


def _active_assignment(session, job_id, staff_id):
    if not staff_id:
        return None
    return (
        session.query(JobAssignmentModel)
        .filter(
            JobAssignmentModel.job_id == job_id,
            JobAssignmentModel.staff_id == staff_id,
            JobAssignmentModel.status.notin_(["completed", "cancelled"]),
        )
        .order_by(JobAssignmentModel.created_at.desc())
        .first()
    )


def _set_staff_availability(session, staff_id, status):
    if not staff_id:
        return
    staff = session.query(StaffAccountModel).filter_by(id=staff_id).first()
    if staff and staff.is_active:
        staff.availability_status = status
        staff.updated_at = now_iso()


def assign_job_to_staff(session, job, staff, assigned_by="admin", via="direct"):
    """Direct assignment. Cancels any open offer for the job. Uncommitted."""
    if job.status in CLOSED_JOB_STATUSES or job.status in ("in_progress", "stuck_started"):
        raise ConflictError(f"Job cannot be assigned while {job.status}")
    if not staff.is_active or staff.is_suspended:
        raise ConflictError("Staff member is not active")
    _cancel_open_offer(session, job, "direct_assignment")
    previous_staff_id = job.assigned_staff_id
    if previous_staff_id and previous_staff_id != staff.id:
        previous = _active_assignment(session, job.id, previous_staff_id)
        if previous:
            previous.status = "cancelled"
            previous.cancelled_at = now_iso()
            previous.updated_at = now_iso()
    stamp = now_iso()
    job.assigned_staff_id = staff.id
    job.status = "assigned"
    job.assigned_at = stamp
    job.escalation_required = 0
    _touch_job(job)
    staff.last_assigned_at = stamp
    assignment = _active_assignment(session, job.id, staff.id)
    if not assignment:
        assignment = JobAssignmentModel(
            id=str(uuid.uuid4()),
            job_id=job.id,
            booking_id=job.booking_id,
            staff_id=staff.id,
            status="pending",
            sync_version=1,
            created_at=stamp,
            updated_at=stamp,
        )
        session.add(assignment)
    sync_job_calendar_event(session, job)
    record_audit(session, "job_assigned", "job", job.id, assigned_by, {"staffId": staff.id, "via": via})
    return assignment


def transition_job_status(session, job, new_status, actor="system", notes=None, photos=None):
    """Moves a job along JOB_STATUS_TRANSITIONS and mirrors the change onto its
    assignment, its calendar event and the staff member's availability. Uncommitted."""
    current = job.status or "pending"
    if new_status == current:
        return job
    if new_status not in JOB_STATUS_TRANSITIONS:
        raise ValueError(f"Unknown job status: {new_status}")
    if new_status not in JOB_STATUS_TRANSITIONS.get(current, set()):
        raise ConflictError(f"Cannot change job status from {current} to {new_status}")
    if new_status in ("accepted", "in_progress") and not job.assigned_staff_id:
        raise ConflictError("Job must be assigned before it can be accepted or started")

    stamp = now_iso()
    staff_id = job.assigned_staff_id
    assignment = _active_assignment(session, job.id, staff_id)
    job.status = new_status
    if new_status == "accepted":
        job.accepted_at = stamp
    elif new_status == "in_progress":
        job.started_at = job.started_at or stamp
        _set_staff_availability(session, staff_id, "busy")
    elif new_status == "completed":
        job.completed_at = stamp
        if notes:
            job.completion_notes = notes
        if photos:
            job.completion_photos = dump_json(load_json(job.completion_photos, []) + list(photos))
        _set_staff_availability(session, staff_id, "available")
    elif new_status == "pending":
        _cancel_open_offer(session, job, "returned_to_pending")
        job.assigned_staff_id = None
        job.assigned_at = None
        job.accepted_at = None
    elif new_status == "cancelled":
        _cancel_open_offer(session, job, "job_cancelled")
        if current in ("in_progress", "stuck_started"):
            _set_staff_availability(session, staff_id, "available")
    _touch_job(job)

    if assignment and new_status in ASSIGNMENT_STATUS_FOR_JOB:
        assignment.status = ASSIGNMENT_STATUS_FOR_JOB[new_status]
        assignment.updated_at = stamp
        assignment.last_updated_by = actor
        assignment.sync_version = (assignment.sync_version or 0) + 1
        if new_status == "accepted":
            assignment.accepted_at = stamp
        elif new_status == "in_progress":
            assignment.started_at = stamp
        elif new_status == "completed":
            assignment.completed_at = stamp
            if notes:
                assignment.notes = notes
        else:
            assignment.cancelled_at = stamp

    sync_job_calendar_event(session, job)
    record_audit(session, "job_status_changed", "job", job.id, actor,
                 {"from": current, "to": new_status, "notes": notes})
    return job


def publish_job_update(job_dict):
    broadcast_event("job_updated", job_dict)


# ══════════════════════════════════════════════════════════════════════════════
# JOB PRIORITIZATION — weighted factor scoring
# ══════════════════════════════════════════════════════════════════════════════

PRIORITY_WEIGHTS = {
    "timeUrgency": 0.30,
    "revenueImpact": 0.25,
    "guestImpact": 0.20,
    "dependencyImpact": 0.15,
    "resourceAvailability": 0.10,
}
BASE_URGENCY = {"urgent": 100, "high": 75, "medium": 50, "low": 25}
REVENUE_CRITICAL_JOB_TYPES = ("cleaning", "maintenance", "setup")
BLOCKING_JOB_TYPES = ("cleaning", "maintenance", "repair")
PREPARATION_JOB_TYPES = ("setup", "preparation")
SPECIALIZED_SKILLS = ("electrical", "plumbing", "hvac", "pool")


def _hours_until(value, now, hour=0):
    """Hours from `now` to an ISO timestamp, or to `hour` local time on a plain date."""
    if not value:
        return None
    moment = None
    if len(str(value)) > 10:
        moment = parse_iso_datetime(value)
    if moment is None:
        day = parse_date(value)
        if not day:
            return None
        moment = local_datetime(day, hour)
    return (moment - now).total_seconds() / 3600.0


def _time_urgency_score(job, booking, now):
    score = BASE_URGENCY.get(job.priority, 50)
    reasons = []
    hours = _hours_until(job.deadline or job.scheduled_start, now)
    if hours is not None:
        if hours < 0:
            score += 100
            reasons.append("Job is overdue")
        elif hours <= 1:
            score += 80
            reasons.append("Due within 1 hour")
        elif hours <= 2:
            score += 60
            reasons.append("Due within 2 hours")
        elif hours <= 4:
            score += 40
        elif hours <= 8:
            score += 20
    if booking:
        to_checkout = _hours_until(booking.check_out_date, now, CHECK_OUT_HOUR)
        if to_checkout is not None and to_checkout >= 0:
            if to_checkout <= 2:
                score += 60
                reasons.append("Guest checks out within 2 hours")
            elif to_checkout <= 4:
                score += 40
            elif to_checkout <= 8:
                score += 20
    return min(100, score), reasons


def _revenue_impact_score(job, booking):
    amount = (booking.total_amount or 0) if booking else 0
    score = 0
    if amount >= 10000:
        score = 100
    elif amount >= 7500:
        score = 80
    elif amount >= 5000:
        score = 60
    elif amount >= 3000:
        score = 40
    elif amount >= 1500:
        score = 20
    reasons = []
    if amount >= 5000:
        reasons.append(f"High-value booking (฿{amount:,.0f})")
    if job.job_type in REVENUE_CRITICAL_JOB_TYPES:
        score += 30
    return min(100, score), reasons


def _guest_impact_score(job, booking, now):
    score = 0
    reasons = []
    if booking:
        if (booking.total_amount or 0) > 8000:
            score += 50
            reasons.append("VIP booking value")
        to_checkin = _hours_until(booking.check_in_date, now, CHECK_IN_HOUR)
        if to_checkin is not None and 0 <= to_checkin <= 4:
            score += 40
            reasons.append("Guest arrives within 4 hours")
        to_checkout = _hours_until(booking.check_out_date, now, CHECK_OUT_HOUR)
        if to_checkout is not None and 0 <= to_checkout <= 2:
            score += 60
    if job.special_instructions and len(job.special_instructions) > 50:
        score += 20
        reasons.append("Detailed special instructions")
    return min(100, score), reasons


def _dependency_impact_score(job, property_jobs):
    score = 0
    reasons = []
    if job.job_type in BLOCKING_JOB_TYPES:
        own_start = job.scheduled_start or ""
        later = [
            other for other in property_jobs
            if other.id != job.id and (other.scheduled_start or "") > own_start
        ]
        if later:
            score += min(50, 15 * len(later))
            reasons.append(f"Blocks {len(later)} later job(s) at this property")
    if job.job_type in PREPARATION_JOB_TYPES:
        score += 40
    return min(100, score), reasons


def _resource_availability_score(job, open_jobs_for_staff):
    score = 100
    reasons = []
    if open_jobs_for_staff > 1:
        score -= min(50, (open_jobs_for_staff - 1) * 10)
        reasons.append(f"Assigned staff has {open_jobs_for_staff} open jobs")
    skills = [s.lower() for s in load_json(job.required_skills, []) if isinstance(s, str)]
    if any(skill in SPECIALIZED_SKILLS for skill in skills):
        score -= 20
        reasons.append("Requires specialized skills")
    return max(0, score), reasons


def recommended_priority(score):
    if score >= 80:
        return "urgent"
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


def calculate_job_priority(job, booking=None, property_jobs=None, open_jobs_for_staff=0, now=None):
    now = now or datetime.now(timezone.utc)
    factor_results = {
        "timeUrgency": _time_urgency_score(job, booking, now),
        "revenueImpact": _revenue_impact_score(job, booking),
        "guestImpact": _guest_impact_score(job, booking, now),
        "dependencyImpact": _dependency_impact_score(job, property_jobs or []),
        "resourceAvailability": _resource_availability_score(job, open_jobs_for_staff),
    }
    factors = {name: value for name, (value, _) in factor_results.items()}
    reasoning = [reason for _, reasons in factor_results.values() for reason in reasons]
    score = round(sum(PRIORITY_WEIGHTS[name] * value for name, value in factors.items()), 1)
    return {
        "jobId": job.id,
        "score": score,
        "factors": factors,
        "recommendedPriority": recommended_priority(score),
        "reasoning": reasoning or ["Standard priority"],
    }


def prioritize_jobs(session, jobs=None, now=None):
    """Scores open jobs and returns (job, priority) pairs, highest score first."""
    if jobs is None:
        jobs = session.query(OperationalJobModel).filter(OperationalJobModel.status.notin_(CLOSED_JOB_STATUSES)).all()
    booking_ids = {j.booking_id for j in jobs if j.booking_id}
    bookings = {}
    if booking_ids:
        bookings = {b.id: b for b in session.query(BookingModel).filter(BookingModel.id.in_(booking_ids)).all()}
    by_property = {}
    workload = {}
    for j in jobs:
        if j.property_id:
            by_property.setdefault(j.property_id, []).append(j)
        if j.assigned_staff_id:
            workload[j.assigned_staff_id] = workload.get(j.assigned_staff_id, 0) + 1
    scored = []
    for j in jobs:
        priority = calculate_job_priority(
            j,
            booking=bookings.get(j.booking_id),
            property_jobs=by_property.get(j.property_id, []),
            open_jobs_for_staff=workload.get(j.assigned_staff_id, 0),
            now=now,
        )
        scored.append((j, priority))
    scored.sort(key=lambda pair: (-pair[1]["score"], pair[0].scheduled_start or "9999"))
    return scored, bookings


def calculate_revenue_at_risk(scored, bookings):
    """Booking value behind jobs nobody has started yet (each booking counted once)."""
    at_risk = {}
    for job, _ in scored:
        if job.status in ("pending", "offered", "assigned") and job.booking_id in bookings:
            at_risk[job.booking_id] = bookings[job.booking_id].total_amount or 0
    return sum(at_risk.values())


# ══════════════════════════════════════════════════════════════════════════════
# AUTOMATIC ASSIGNMENTS — job templates created when a booking is approved
# ══════════════════════════════════════════════════════════════════════════════

ASSIGNMENT_TEMPLATES = [
    {
        "jobType": "cleaning",
        "title": "Pre-arrival Deep Clean",
        "description": "Full deep clean of the villa before guest arrival",
        "priority": "high",
        "anchor": "checkIn",
        "daysBefore": 1,
        "estimatedDuration": 180,
        "requiredRole": "housekeeper",
    },
    {
        "jobType": "inspection",
        "title": "Pre-arrival Inspection",
        "description": "Walk-through inspection against the property checklist",
        "priority": "high",
        "anchor": "checkIn",
        "daysBefore": 1,
        "estimatedDuration": 60,
        "requiredRole": "supervisor",
    },
    {
        "jobType": "setup",
        "title": "Welcome Setup",
        "description": "Welcome pack, linens and amenities on arrival day",
        "priority": "medium",
        "anchor": "checkIn",
        "daysBefore": 0,
        "estimatedDuration": 90,
        "requiredRole": "housekeeper",
    },
    {
        "jobType": "maintenance",
        "title": "Pool & Equipment Check",
        "description": "Pool chemistry, filters, AC and appliances",
        "priority": "medium",
        "anchor": "checkIn",
        "daysBefore": 1,
        "estimatedDuration": 120,
        "requiredRole": "maintenance",
        "requiredSkills": ["pool"],
    },
    {
        "jobType": "checkout",
        "title": "Post-departure Inspection",
        "description": "Damage and inventory check after guest departure",
        "priority": "medium",
        "anchor": "checkOut",
        "daysBefore": 0,
        "estimatedDuration": 60,
        "requiredRole": "supervisor",
    },
]
DEFAULT_JOB_TIMES = {
    "cleaning": "09:00",
    "maintenance": "14:00",
    "inspection": "11:00",
    "setup": "15:00",
    "checkout": "12:00",
}


def create_jobs_for_booking(session, booking, created_by="system"):
    """Creates the template jobs for an approved booking, skipping ones that already exist. Uncommitted."""
    check_in = parse_date(booking.check_in_date)
    check_out = parse_date(booking.check_out_date)
    if not check_in or not check_out:
        raise ValueError("Booking has invalid dates")
    existing_titles = {
        j.title for j in session.query(OperationalJobModel).filter_by(booking_id=booking.id).all()
        if j.status != "cancelled"
    }
    jobs = []
    for template in ASSIGNMENT_TEMPLATES:
        if template["title"] in existing_titles:
            continue
        anchor = check_in if template["anchor"] == "checkIn" else check_out
        scheduled_day = anchor - timedelta(days=template["daysBefore"])
        fields = {
            "jobType": template["jobType"],
            "title": template["title"],
            "description": template["description"],
            "priority": template["priority"],
            "propertyId": booking.property_id,
            "propertyName": booking.property_name,
            "bookingId": booking.id,
            "scheduledDate": scheduled_day.isoformat(),
            "scheduledTime": DEFAULT_JOB_TIMES.get(template["jobType"], "10:00"),
            "estimatedDuration": template["estimatedDuration"],
            "requiredRole": template["requiredRole"],
            "requiredSkills": template.get("requiredSkills") or [],
            "specialInstructions": booking.special_requests,
        }
        if template["anchor"] == "checkIn":
            fields["deadline"] = local_datetime(check_in, CHECK_IN_HOUR).isoformat()
        jobs.append(build_job(session, fields, created_by=created_by, auto_generated=True, strict_refs=False))
    return jobs



# ══════════════════════════════════════════════════════════════════════════════
# OFFER ENGINE — time-boxed offers to a snapshot of eligible staff, first accept wins
# ══════════════════════════════════════════════════════════════════════════════

ACCEPTED_START_TIMEOUT_HOURS = int(os.getenv("ACCEPTED_START_TIMEOUT_HOURS", "2"))
STARTED_FINISH_TIMEOUT_HOURS = int(os.getenv("STARTED_FINISH_TIMEOUT_HOURS", "8"))
EXPIRED_OFFER_BATCH = 100
UNOFFERABLE_JOB_STATUSES = ("assigned", "accepted", "in_progress", "stuck_accepted", "stuck_started") + CLOSED_JOB_STATUSES


def get_dispatch_settings():
    return get_setting("dispatch")


def offer_expiry_minutes(attempt_number, settings=None):
    settings = settings or get_dispatch_settings()
    if attempt_number <= 1:
        return int(settings.get("offerExpiryMinutes") or ESCALATION_LADDER_MINUTES[1])
    return ESCALATION_LADDER_MINUTES.get(attempt_number, ESCALATION_LADDER_MINUTES[3])


def calculate_eligible_staff(session, required_role, attempt_number=1):
    """Attempt 1: available staff with a push token. Attempt 2: anyone reachable
    by push. Attempt 3+: every active staff member of the role."""
    candidates = session.query(StaffAccountModel).filter_by(is_active=1).all()
    eligible = []
    for staff in candidates:
        if staff.is_suspended:
            continue
        if not staff_matches_role(staff.role, required_role):
            continue
        if attempt_number <= 1 and (staff.availability_status != "available" or not staff.push_token):
            continue
        if attempt_number == 2 and not staff.push_token:
            continue
        eligible.append(staff)
    eligible.sort(key=lambda s: s.last_assigned_at or "")
    return eligible


def create_offer(job_id, created_by="system", attempt_number=1, now=None):
    now = now or datetime.now(timezone.utc)
    settings = get_dispatch_settings()
    max_attempts = int(settings.get("maxAttempts") or 3)
    if attempt_number < 1 or attempt_number > max_attempts:
        return service_error(f"attemptNumber must be between 1 and {max_attempts}", 400)
    session = SessionLocal()
    try:
        job = session.query(OperationalJobModel).filter_by(id=job_id).first()
        if not job:
            return service_error("Job not found", 404)
        if job.assigned_staff_id or job.status in UNOFFERABLE_JOB_STATUSES:
            return service_error(f"Job is not open for offers ({job.status})", 409)
        if job.offer_id_active:
            active = session.query(JobOfferModel).filter_by(id=job.offer_id_active).first()
            if active and active.status == "open":
                return service_error("Job already has an open offer", 409)
        start = parse_iso_datetime(job.scheduled_start)
        window_days = int(settings.get("dispatchWindowDays") or 7)
        if start and start > now + timedelta(days=window_days):
            return service_error(f"Job is scheduled outside the {window_days}-day dispatch window", 400)

        eligible = calculate_eligible_staff(session, job.required_role, attempt_number)
        if not eligible:
            return service_error("No eligible staff available for this job", 409)

        minutes = offer_expiry_minutes(attempt_number, settings)
        expires = now + timedelta(minutes=minutes)
        if start and now < start < expires:
            expires = start
        stamp = now.isoformat()
        offer = JobOfferModel(
            id=str(uuid.uuid4()),
            job_id=job.id,
            property_id=job.property_id,
            required_role=job.required_role,
            eligible_staff_ids=dump_json([s.id for s in eligible]),
            status="open",
            attempt_number=attempt_number,
            offered_at=stamp,
            expires_at=expires.isoformat(),
            created_by=created_by,
            created_at=stamp,
        )
        session.add(offer)
        job.status = "offered"
        job.offer_id_active = offer.id
        _touch_job(job)
        sync_job_calendar_event(session, job)
        record_audit(session, "offer_created", "offer", offer.id, created_by,
                     {"jobId": job.id, "attempt": attempt_number, "eligible": len(eligible), "expiresAt": offer.expires_at})
        session.commit()
        offer_dict = offer_to_dict(offer)
        job_dict = job_to_dict(job)
        staff_ids = [s.id for s in eligible]
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    print(f"[Offers] offer {offer_dict['id']} for job {job_id} → {len(staff_ids)} staff (attempt {attempt_number}, {minutes} min)")
    for staff_id in staff_ids:
        send_notification(
            staff_id,
            "New job offer",
            f"{job_dict['title']} at {job_dict['propertyName'] or 'a property'}. Accept within {minutes} min.",
            kind="job_offer",
            data={"offerId": offer_dict["id"], "jobId": job_id},
        )
    publish_job_update(job_dict)
    return {"success": True, "offer": offer_dict, "eligibleCount": len(staff_ids)}


def accept_offer(offer_id, staff_id, now=None):
    """Exactly one staff member can win an offer. Both writes are conditional
    UPDATEs in one transaction, so a concurrent accept sees rowcount 0."""
    now = now or datetime.now(timezone.utc)
    if not staff_id:
        return service_error("staffId is required", 400)
    session = SessionLocal()
    try:
        offer = session.query(JobOfferModel).filter_by(id=offer_id).first()
        if not offer:
            return service_error("Offer not found", 404)
        if offer.status != "open":
            return service_error(f"Offer is no longer available ({offer.status})", 409)
        expires = parse_iso_datetime(offer.expires_at)
        if expires and expires <= now:
            return service_error("Offer has expired", 409)
        if staff_id not in load_json(offer.eligible_staff_ids, []):
            return service_error("Staff member is not eligible for this offer", 403)
        staff = session.query(StaffAccountModel).filter_by(id=staff_id).first()
        if not staff or not staff.is_active or staff.is_suspended:
            return service_error("Staff member is not active", 403)
        job = session.query(OperationalJobModel).filter_by(id=offer.job_id).first()
        if not job:
            return service_error("Job not found", 404)
        if job.assigned_staff_id or job.status in ("assigned", "in_progress", "completed"):
            return service_error("Job has already been assigned", 409)

        stamp = now.isoformat()
        claimed = (
            session.query(JobOfferModel)
            .filter(JobOfferModel.id == offer.id, JobOfferModel.status == "open")
            .update({
                JobOfferModel.status: "accepted",
                JobOfferModel.accepted_by_staff_id: staff_id,
                JobOfferModel.acceptance_at: stamp,
            }, synchronize_session=False)
        )
        if claimed != 1:
            session.rollback()
            return service_error("Offer was already accepted by another staff member", 409)
        taken = (
            session.query(OperationalJobModel)
            .filter(
                OperationalJobModel.id == job.id,
                OperationalJobModel.assigned_staff_id.is_(None),
                OperationalJobModel.status.notin_(["assigned", "in_progress", "completed"]),
            )
            .update({
                OperationalJobModel.status: "assigned",
                OperationalJobModel.assigned_staff_id: staff_id,
                OperationalJobModel.assigned_at: stamp,
                OperationalJobModel.accepted_at: stamp,
                OperationalJobModel.offer_id_active: None,
                OperationalJobModel.updated_at: stamp,
                OperationalJobModel.sync_version: OperationalJobModel.sync_version + 1,
            }, synchronize_session=False)
        )
        if taken != 1:
            session.rollback()
            return service_error("Job has already been assigned", 409)

        staff.last_assigned_at = stamp
        session.add(JobAssignmentModel(
            id=str(uuid.uuid4()),
            job_id=job.id,
            booking_id=job.booking_id,
            staff_id=staff_id,
            status="accepted",
            accepted_at=stamp,
            last_updated_by=staff_id,
            sync_version=1,
            created_at=stamp,
            updated_at=stamp,
        ))
        record_audit(session, "offer_accepted", "offer", offer.id, staff_id,
                     {"jobId": job.id, "attempt": offer.attempt_number})
        session.commit()

        session.expire_all()
        job = session.query(OperationalJobModel).filter_by(id=offer.job_id).first()
        sync_job_calendar_event(session, job)
        session.commit()
        offer = session.query(JobOfferModel).filter_by(id=offer_id).first()
        offer_dict = offer_to_dict(offer)
        job_dict = job_to_dict(job)
        staff_name = staff.name
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    print(f"[Offers] {staff_name} accepted offer {offer_id} (job {job_dict['id']})")
    log_activity("offer_accepted", f"✅ {staff_name} took {job_dict['title']}")
    send_notification("admin", "Job accepted", f"{staff_name} accepted {job_dict['title']}", kind="job_accepted",
                      data={"jobId": job_dict["id"], "staffId": staff_id})
    publish_job_update(job_dict)
    return {"success": True, "offer": offer_dict, "job": job_dict}


def decline_offer(offer_id, staff_id, reason=None):
    session = SessionLocal()
    try:
        offer = session.query(JobOfferModel).filter_by(id=offer_id).first()
        if not offer:
            return service_error("Offer not found", 404)
        if staff_id not in load_json(offer.eligible_staff_ids, []):
            return service_error("Staff member is not eligible for this offer", 403)
        if offer.status != "open":
            return service_error(f"Offer is no longer available ({offer.status})", 409)
        record_audit(session, "offer_declined", "offer", offer.id, staff_id, {"reason": reason})
        session.commit()
        return {"success": True, "offer": offer_to_dict(offer)}
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


def cancel_offer(offer_id, reason=None, cancelled_by="admin"):
    session = SessionLocal()
    try:
        offer = session.query(JobOfferModel).filter_by(id=offer_id).first()
        if not offer:
            return service_error("Offer not found", 404)
        if offer.status != "open":
            return service_error(f"Only open offers can be cancelled ({offer.status})", 409)
        stamp = now_iso()
        offer.status = "cancelled"
        offer.cancel_reason = reason or "cancelled"
        offer.cancelled_at = stamp
        job = session.query(OperationalJobModel).filter_by(id=offer.job_id).first()
        if job and job.offer_id_active == offer.id:
            job.offer_id_active = None
            if job.status == "offered":
                job.status = "pending"
            _touch_job(job)
            sync_job_calendar_event(session, job)
        record_audit(session, "offer_cancelled", "offer", offer.id, cancelled_by, {"reason": offer.cancel_reason})
        session.commit()
        offer_dict = offer_to_dict(offer)
        job_dict = job_to_dict(job) if job else None
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    if job_dict:
        publish_job_update(job_dict)
    return {"success": True, "offer": offer_dict}


def get_offer(offer_id):
    session = SessionLocal()
    try:
        offer = session.query(JobOfferModel).filter_by(id=offer_id).first()
        return offer_to_dict(offer) if offer else None
    finally:
        session.close()


def get_offers_for_staff(staff_id, now=None):
    """Open, unexpired offers the staff member is eligible for, newest first."""
    now = now or datetime.now(timezone.utc)
    session = SessionLocal()
    try:
        offers = session.query(JobOfferModel).filter_by(status="open").all()
        jobs = {}
        result = []
        for offer in offers:
            expires = parse_iso_datetime(offer.expires_at)
            if expires and expires <= now:
                continue
            if staff_id not in load_json(offer.eligible_staff_ids, []):
                continue
            if offer.job_id not in jobs:
                jobs[offer.job_id] = session.query(OperationalJobModel).filter_by(id=offer.job_id).first()
            item = offer_to_dict(offer)
            job = jobs.get(offer.job_id)
            item["job"] = job_to_dict(job) if job else None
            result.append(item)
        result.sort(key=lambda o: o["offeredAt"] or "", reverse=True)
        return result
    finally:
        session.close()


def get_expired_offers(now=None, limit=EXPIRED_OFFER_BATCH):
    now = now or datetime.now(timezone.utc)
    session = SessionLocal()
    try:
        offers = session.query(JobOfferModel).filter_by(status="open").all()
        expired = []
        for offer in offers:
            expires = parse_iso_datetime(offer.expires_at)
            if expires and expires <= now:
                expired.append(offer_to_dict(offer))
        expired.sort(key=lambda o: o["expiresAt"])
        return expired[:limit]
    finally:
        session.close()


def _expire_offer(offer_id, now):
    """Marks one offer expired and frees its job. Returns (job_id, attempt) or None when already handled."""
    session = SessionLocal()
    try:
        stamp = now.isoformat()
        changed = (
            session.query(JobOfferModel)
            .filter(JobOfferModel.id == offer_id, JobOfferModel.status == "open")
            .update({JobOfferModel.status: "expired", JobOfferModel.expired_at: stamp}, synchronize_session=False)
        )
        if changed != 1:
            session.rollback()
            return None
        offer = session.query(JobOfferModel).filter_by(id=offer_id).first()
        job = session.query(OperationalJobModel).filter_by(id=offer.job_id).first()
        if job and job.offer_id_active == offer.id:
            job.offer_id_active = None
            if job.status == "offered":
                job.status = "pending"
            _touch_job(job)
            sync_job_calendar_event(session, job)
        record_audit(session, "offer_expired", "offer", offer.id, "system",
                     {"jobId": offer.job_id, "attempt": offer.attempt_number})
        session.commit()
        job_dict = job_to_dict(job) if job else None
        result = (offer.job_id, offer.attempt_number or 1, job.status if job else None)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    if job_dict:
        publish_job_update(job_dict)
    return result


def escalate_job_to_admin(job_id, reason, kind="escalation"):
    session = SessionLocal()
    try:
        job = session.query(OperationalJobModel).filter_by(id=job_id).first()
        if not job:
            return None
        job.escalation_required = 1
        job.escalation_reason = reason
        _touch_job(job)
        record_audit(session, "job_escalated", "job", job.id, "system", {"reason": reason})
        session.commit()
        title = job.title
        job_dict = job_to_dict(job)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    print(f"[Escalation] job {job_id}: {reason}")
    notify_admin(f"Job needs attention: {title}", reason, kind=kind, data={"jobId": job_id})
    publish_job_update(job_dict)
    return job_dict


def process_expired_offers(now=None):
    """Expire overdue offers, re-offer on the next ladder rung, escalate to admin after the last one."""
    now = now or datetime.now(timezone.utc)
    max_attempts = int(get_dispatch_settings().get("maxAttempts") or 3)
    stats = {"processed": 0, "escalated": 0, "maxAttemptsReached": 0, "errors": 0}
    for offer in get_expired_offers(now):
        try:
            expired = _expire_offer(offer["id"], now)
            if not expired:
                continue
            stats["processed"] += 1
            job_id, attempt, job_status = expired
            if job_status != "pending":
                continue
            reoffered = None
            next_attempt = attempt + 1
            while next_attempt <= max_attempts:
                reoffered = create_offer(job_id, created_by="escalation", attempt_number=next_attempt, now=now)
                if reoffered.get("success"):
                    break
                next_attempt += 1
            if reoffered and reoffered.get("success"):
                stats["escalated"] += 1
            else:
                stats["maxAttemptsReached"] += 1
                escalate_job_to_admin(job_id, f"No staff accepted the job after {min(next_attempt, max_attempts + 1) - 1} offer attempt(s)")
        except Exception as e:
            stats["errors"] += 1
            print(f"[Offers] failed processing expired offer {offer['id']}: {e}")
            traceback.print_exc()
    if stats["processed"]:
        print(f"[Offers] expired offers processed: {stats}")
    return stats


def get_escalation_stats():
    session = SessionLocal()
    try:
        offers = session.query(JobOfferModel).all()
        escalated_jobs = (
            session.query(OperationalJobModel)
            .filter(OperationalJobModel.escalation_required == 1, OperationalJobModel.status.notin_(CLOSED_JOB_STATUSES))
            .count()
        )
    finally:
        session.close()
    by_status = {}
    by_attempt = {}
    accept_minutes = []
    for offer in offers:
        by_status[offer.status] = by_status.get(offer.status, 0) + 1
        bucket = by_attempt.setdefault(str(offer.attempt_number or 1), {"total": 0, "accepted": 0})
        bucket["total"] += 1
        if offer.status == "accepted":
            bucket["accepted"] += 1
            offered = parse_iso_datetime(offer.offered_at)
            accepted = parse_iso_datetime(offer.acceptance_at)
            if offered and accepted:
                accept_minutes.append((accepted - offered).total_seconds() / 60.0)
    for bucket in by_attempt.values():
        bucket["acceptanceRate"] = round(bucket["accepted"] / bucket["total"], 3) if bucket["total"] else 0
    return {
        "totalOffers": len(offers),
        "byStatus": by_status,
        "byAttempt": by_attempt,
        "openEscalations": escalated_jobs,
        "averageMinutesToAccept": round(sum(accept_minutes) / len(accept_minutes), 1) if accept_minutes else None,
    }


def dispatch_pending_jobs(now=None):
    """Offers pending, unassigned jobs that have entered the dispatch window."""
    now = now or datetime.now(timezone.utc)
    settings = get_dispatch_settings()
    if not settings.get("autoDispatchEnabled", True):
        return {"offered": 0, "skipped": 0}
    window_end = now + timedelta(days=int(settings.get("dispatchWindowDays") or 7))
    session = SessionLocal()
    try:
        candidates = (
            session.query(OperationalJobModel)
            .filter(
                OperationalJobModel.status == "pending",
                OperationalJobModel.assigned_staff_id.is_(None),
                or_(OperationalJobModel.escalation_required.is_(None), OperationalJobModel.escalation_required == 0),
            )
            .all()
        )
        job_ids = []
        for job in candidates:
            start = parse_iso_datetime(job.scheduled_start)
            if start and start > window_end:
                continue
            job_ids.append(job.id)
    finally:
        session.close()
    offered = skipped = 0
    for job_id in job_ids:
        result = create_offer(job_id, created_by="dispatcher", now=now)
        if result.get("success"):
            offered += 1
        else:
            skipped += 1
    if job_ids:
        print(f"[Dispatch] offered {offered} job(s), skipped {skipped}")
    return {"offered": offered, "skipped": skipped}


def dispatch_loop():
    while True:
        time.sleep(DISPATCH_INTERVAL)
        try:
            dispatch_pending_jobs()
        except Exception as e:
            print("[Dispatch] loop error:", e)
            traceback.print_exc()


def start_dispatcher():
    global DISPATCH_STARTED
    with DISPATCH_LOCK:
        if DISPATCH_STARTED:
            return
        threading.Thread(target=dispatch_loop, daemon=True, name="Dispatcher").start()
        DISPATCH_STARTED = True


# ══════════════════════════════════════════════════════════════════════════════
# TIMEOUT MONITOR — expired offers, accepted-but-not-started, started-but-not-finished
# ══════════════════════════════════════════════════════════════════════════════

def run_timeout_monitor(now=None):
    now = now or datetime.now(timezone.utc)
    try:
        offer_stats = process_expired_offers(now)
        alerts = []
        session = SessionLocal()
        try:
            accepted_cutoff = now - timedelta(hours=ACCEPTED_START_TIMEOUT_HOURS)
            started_cutoff = now - timedelta(hours=STARTED_FINISH_TIMEOUT_HOURS)
            stuck_accepted = 0
            stuck_started = 0
            waiting = session.query(OperationalJobModel).filter(OperationalJobModel.status.in_(["assigned", "accepted"])).all()
            for job in waiting:
                reference = parse_iso_datetime(job.accepted_at or job.assigned_at)
                if job.started_at or not reference or reference > accepted_cutoff:
                    continue
                transition_job_status(session, job, "stuck_accepted", "timeout_monitor")
                job.escalation_required = 1
                job.escalation_reason = f"Accepted but not started within {ACCEPTED_START_TIMEOUT_HOURS}h"
                alerts.append((job.id, job.title, job.escalation_reason))
                stuck_accepted += 1
            running = session.query(OperationalJobModel).filter_by(status="in_progress").all()
            for job in running:
                started = parse_iso_datetime(job.started_at)
                if not started or started > started_cutoff:
                    continue
                transition_job_status(session, job, "stuck_started", "timeout_monitor")
                job.escalation_required = 1
                job.escalation_reason = f"Started but not completed within {STARTED_FINISH_TIMEOUT_HOURS}h"
                alerts.append((job.id, job.title, job.escalation_reason))
                stuck_started += 1
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()
        for job_id, title, reason in alerts:
            notify_admin(f"Job stuck: {title}", reason, kind="timeout", data={"jobId": job_id})
        result = {
            "expiredOffers": offer_stats,
            "stuckAccepted": stuck_accepted,
            "stuckStarted": stuck_started,
            "alertsSent": len(alerts),
            "ranAt": now.isoformat(),
        }
        if alerts:
            print(f"[TimeoutMonitor] {result}")
        return result
    except Exception as e:
        print(f"[TimeoutMonitor] run failed: {e}")
        traceback.print_exc()
        notify_admin("Timeout monitor failure", str(e), kind="critical")
        raise


def timeout_monitor_loop():
    while True:
        time.sleep(TIMEOUT_MONITOR_INTERVAL)
        try:
            run_timeout_monitor()
        except Exception:
            continue


def start_timeout_monitor():
    global TIMEOUT_MONITOR_STARTED
    with TIMEOUT_MONITOR_LOCK:
        if TIMEOUT_MONITOR_STARTED:
            return
        threading.Thread(target=timeout_monitor_loop, daemon=True, name="TimeoutMonitor").start()
        TIMEOUT_MONITOR_STARTED = True



# ══════════════════════════════════════════════════════════════════════════════
# AI DECISION LOG
# ══════════════════════════════════════════════════════════════════════════════

AI_AGENTS = ("COO", "CFO")
AI_LOG_LIMIT = 1000


def log_ai_decision(agent, decision, confidence, source, escalate=False, notes=None, rationale=None,
                    status=None, booking_id=None, job_id=None, timestamp=None):
    """Stores an AI decision and keeps only the newest AI_LOG_LIMIT entries."""
    session = SessionLocal()
    try:
        stamp = now_iso()
        entry = AILogModel(
            id=f"{agent.lower()}_{now_ms()}_{uuid.uuid4().hex[:6]}",
            timestamp=timestamp or stamp,
            agent=agent,
            decision=decision,
            confidence=float(confidence),
            source=source,
            escalate=1 if escalate else 0,
            notes=notes,
            rationale=rationale,
            status=status,
            booking_id=booking_id,
            job_id=job_id,
            created_at=stamp,
        )
        session.add(entry)
        session.flush()
        stale = [
            row.id for row in
            session.query(AILogModel.id).order_by(AILogModel.created_at.desc()).offset(AI_LOG_LIMIT).all()
        ]
        if stale:
            session.query(AILogModel).filter(AILogModel.id.in_(stale)).delete(synchronize_session=False)
        session.commit()
        level = "WARN" if escalate else "INFO"
        print(f"[{level}] AI-{agent}-{entry.id}: {decision} ({confidence}%, {source})")
        return ai_log_to_dict(entry)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


def validate_ai_log_entry(body):
    errors = []
    timestamp = body.get("timestamp")
    if not timestamp or not isinstance(timestamp, str):
        errors.append("timestamp is required and must be a string")
    elif not parse_iso_datetime(timestamp):
        errors.append("timestamp must be a valid ISO date string")
    agent = body.get("agent")
    if not agent or not isinstance(agent, str):
        errors.append("agent is required and must be a string")
    elif agent not in AI_AGENTS:
        errors.append('agent must be either "COO" or "CFO"')
    if not body.get("decision") or not isinstance(body.get("decision"), str):
        errors.append("decision is required and must be a string")
    confidence = body.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        errors.append("confidence is required and must be a number")
    elif confidence < 0 or confidence > 100:
        errors.append("confidence must be between 0 and 100")
    if not body.get("source") or not isinstance(body.get("source"), str):
        errors.append("source is required and must be a string")
    if "escalate" in body and not isinstance(body.get("escalate"), bool):
        errors.append("escalate must be a boolean if provided")
    for optional in ("notes", "rationale", "status"):
        if optional in body and body.get(optional) is not None and not isinstance(body.get(optional), str):
            errors.append(f"{optional} must be a string if provided")
    return errors


def list_ai_logs(agent=None, escalation=None, limit=50, offset=0):
    session = SessionLocal()
    try:
        query = session.query(AILogModel)
        if agent and agent != "all":
            query = query.filter_by(agent=agent)
        if escalation and escalation != "all":
            query = query.filter_by(escalate=1 if escalation == "true" else 0)
        total = query.count()
        rows = query.order_by(AILogModel.created_at.desc()).offset(offset).limit(limit).all()
        return [ai_log_to_dict(r) for r in rows], total
    finally:
        session.close()


OVERRIDE_ACTIONS = ("approve", "reject", "modify", "escalate")
OVERRIDE_PRIORITIES = ("low", "medium", "high", "critical")


def validate_override_request(body):
    errors = []
    if not body.get("logId") or not isinstance(body.get("logId"), str):
        errors.append("logId is required and must be a string")
    if not isinstance(body.get("originalLogEntry"), dict):
        errors.append("originalLogEntry is required and must be an object")
    override = body.get("override")
    if not isinstance(override, dict):
        errors.append("override is required and must be an object")
    else:
        if override.get("action") not in OVERRIDE_ACTIONS:
            errors.append("override.action must be one of: approve, reject, modify, escalate")
        if not isinstance(override.get("reason"), str) or len(override.get("reason").strip()) < 10:
            errors.append("override.reason is required and must be at least 10 characters")
        if not isinstance(override.get("adminNotes"), str) or len(override.get("adminNotes").strip()) < 10:
            errors.append("override.adminNotes is required and must be at least 10 characters")
        if override.get("priority") not in OVERRIDE_PRIORITIES:
            errors.append("override.priority must be one of: low, medium, high, critical")
        if override.get("action") == "modify":
            new_decision = override.get("newDecision")
            if not isinstance(new_decision, str) or len(new_decision.strip()) < 5:
                errors.append('override.newDecision is required when action is "modify" and must be at least 5 characters')
    if not body.get("timestamp") or not isinstance(body.get("timestamp"), str):
        errors.append("timestamp is required and must be a string")
    if not body.get("adminUser") or not isinstance(body.get("adminUser"), str):
        errors.append("adminUser is required and must be a string")
    return errors


def generate_override_id():
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"override_{now_ms()}_{suffix}"


def create_ai_override(body):
    """Stores an admin override and records it as a manual AI decision (confidence 100)."""
    override = body["override"]
    original = body.get("originalLogEntry") or {}
    session = SessionLocal()
    try:
        row = AIOverrideModel(
            id=generate_override_id(),
            log_id=body["logId"],
            original_log_entry=dump_json(original),
            override_action=override["action"],
            reason=override["reason"].strip(),
            admin_notes=override["adminNotes"].strip(),
            priority=override["priority"],
            new_decision=(override.get("newDecision") or "").strip() or None,
            admin_user=body["adminUser"],
            timestamp=body["timestamp"],
            created_at=now_iso(),
        )
        session.add(row)
        original_row = session.query(AILogModel).filter_by(id=body["logId"]).first()
        if original_row:
            original_row.status = "overridden"
        record_audit(session, "ai_override", "ai_log", body["logId"], body["adminUser"],
                     {"action": row.override_action, "priority": row.priority})
        session.commit()
        override_dict = override_to_dict(row)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    agent = original.get("agent") if original.get("agent") in AI_AGENTS else "COO"
    decision_text = override_dict["newDecision"] or f"{override_dict['overrideAction']} (admin override)"
    log_entry = log_ai_decision(
        agent=agent,
        decision=f"OVERRIDE: {decision_text}",
        confidence=100,
        source="manual",
        escalate=override_dict["overrideAction"] == "escalate",
        notes=override_dict["adminNotes"],
        rationale=override_dict["reason"],
        status="override",
    )
    if override_dict["priority"] in ("high", "critical"):
        notify_admin(f"AI decision overridden ({override_dict['priority']})", override_dict["reason"], kind="ai_override",
                     data={"overrideId": override_dict["id"], "logId": override_dict["logId"]})
    return {"override": override_dict, "logEntry": log_entry}


def list_ai_overrides(admin_user=None, action=None, priority=None, log_id=None, limit=50, offset=0):
    session = SessionLocal()
    try:
        query = session.query(AIOverrideModel)
        if admin_user:
            query = query.filter_by(admin_user=admin_user)
        if action:
            query = query.filter_by(override_action=action)
        if priority:
            query = query.filter_by(priority=priority)
        if log_id:
            query = query.filter_by(log_id=log_id)
        total = query.count()
        rows = query.order_by(AIOverrideModel.created_at.desc()).offset(offset).limit(limit).all()
        return [override_to_dict(r) for r in rows], total
    finally:
        session.close()


def get_override_stats(now=None):
    now = now or datetime.now(timezone.utc)
    session = SessionLocal()
    try:
        rows = session.query(AIOverrideModel).all()
    finally:
        session.close()
    stats = {"total": len(rows), "byAction": {}, "byPriority": {}, "byAdmin": {}, "recentCount": 0}
    recent_cutoff = now - timedelta(hours=24)
    for row in rows:
        stats["byAction"][row.override_action] = stats["byAction"].get(row.override_action, 0) + 1
        stats["byPriority"][row.priority] = stats["byPriority"].get(row.priority, 0) + 1
        stats["byAdmin"][row.admin_user] = stats["byAdmin"].get(row.admin_user, 0) + 1
        created = parse_iso_datetime(row.timestamp) or parse_iso_datetime(row.created_at)
        if created and created > recent_cutoff:
            stats["recentCount"] += 1
    return stats


def get_ai_performance_summary():
    threshold = float(get_setting("aiSettings").get("escalationThreshold") or 0.75) * 100
    session = SessionLocal()
    try:
        logs = session.query(AILogModel).all()
        overrides = session.query(AIOverrideModel).all()
    finally:
        session.close()
    agents = {}
    for entry in logs:
        bucket = agents.setdefault(entry.agent, {"decisions": 0, "confidenceTotal": 0.0, "escalations": 0,
                                                  "lowConfidence": 0, "manual": 0, "overrides": 0})
        bucket["decisions"] += 1
        bucket["confidenceTotal"] += entry.confidence or 0
        bucket["escalations"] += 1 if entry.escalate else 0
        bucket["lowConfidence"] += 1 if (entry.confidence or 0) < threshold else 0
        bucket["manual"] += 1 if entry.source == "manual" else 0
    for override in overrides:
        agent = (load_json(override.original_log_entry, {}) or {}).get("agent") or "COO"
        agents.setdefault(agent, {"decisions": 0, "confidenceTotal": 0.0, "escalations": 0,
                                  "lowConfidence": 0, "manual": 0, "overrides": 0})["overrides"] += 1
    summary = {}
    for agent, bucket in agents.items():
        automated = bucket["decisions"] - bucket["manual"]
        summary[agent] = {
            "decisions": bucket["decisions"],
            "averageConfidence": round(bucket["confidenceTotal"] / bucket["decisions"], 1) if bucket["decisions"] else 0,
            "escalations": bucket["escalations"],
            "escalationRate": round(bucket["escalations"] / bucket["decisions"], 3) if bucket["decisions"] else 0,
            "lowConfidenceDecisions": bucket["lowConfidence"],
            "overrides": bucket["overrides"],
            "overrideRate": round(bucket["overrides"] / automated, 3) if automated > 0 else 0,
        }
    return {"agents": summary, "escalationThreshold": threshold, "totalDecisions": len(logs), "totalOverrides": len(overrides)}


# ══════════════════════════════════════════════════════════════════════════════
# BOOKINGS — intake, approval, staff assignment, AI review, PMS webhook
# ══════════════════════════════════════════════════════════════════════════════

BOOKING_STATUSES = ("pending_approval", "approved", "rejected", "confirmed", "cancelled", "error")
AI_APPROVE_CONFIDENCE = 95
AI_REJECT_CONFIDENCE = 90
MAX_ADVANCE_BOOKING_DAYS = 365
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def booking_duplicate_hash(property_id, guest_key, check_in, check_out):
    raw = f"{property_id}|{(guest_key or '').strip().lower()}|{check_in}|{check_out}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _to_number(value, cast=float):
    if value in (None, ""):
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid number: {value}")


def get_booking_dict(booking_id):
    session = SessionLocal()
    try:
        booking = session.query(BookingModel).filter_by(id=booking_id).first()
        return booking_to_dict(booking) if booking else None
    finally:
        session.close()


def cancel_open_jobs_for_booking(session, booking_id, actor, only_auto_generated=False):
    """Cancels jobs of a booking that haven't started. Uncommitted; returns the cancelled jobs."""
    cancelled = []
    jobs = session.query(OperationalJobModel).filter_by(booking_id=booking_id).all()
    for job in jobs:
        if only_auto_generated and not job.auto_generated:
            continue
        if "cancelled" not in JOB_STATUS_TRANSITIONS.get(job.status, set()):
            continue
        if job.status in ("in_progress", "stuck_started"):
            continue
        transition_job_status(session, job, "cancelled", actor, notes="Booking changed")
        cancelled.append(job)
    return cancelled


def create_booking(fields, created_by="admin"):
    missing = [f for f in ("guestName", "propertyId", "checkInDate", "checkOutDate") if not fields.get(f)]
    if missing:
        return service_error(f"Missing required fields: {', '.join(missing)}", 400)
    check_in = parse_date(fields.get("checkInDate"))
    check_out = parse_date(fields.get("checkOutDate"))
    if not check_in or not check_out:
        return service_error("checkInDate and checkOutDate must be YYYY-MM-DD", 400)
    if check_out <= check_in:
        return service_error("Check-out date must be after check-in date", 400)
    try:
        guest_count = _to_number(fields.get("guestCount", fields.get("numberOfGuests")), int)
        total_amount = _to_number(fields.get("totalAmount", fields.get("price")), float)
    except ValueError as e:
        return service_error(str(e), 400)
    guest_email = (fields.get("guestEmail") or "").strip().lower() or None
    if guest_email and not EMAIL_RE.match(guest_email):
        return service_error("Invalid guest email format", 400)

    session = SessionLocal()
    try:
        prop = session.query(PropertyModel).filter_by(id=fields["propertyId"]).first()
        if not prop:
            return service_error("Property not found", 404)
        dup_hash = booking_duplicate_hash(prop.id, guest_email or fields["guestName"], check_in.isoformat(), check_out.isoformat())
        duplicate = (
            session.query(BookingModel)
            .filter(BookingModel.duplicate_check_hash == dup_hash, BookingModel.status.notin_(["cancelled", "rejected"]))
            .first()
        )
        if duplicate:
            result = service_error("Duplicate booking", 409)
            result["bookingId"] = duplicate.id
            return result
        stamp = now_iso()
        booking = BookingModel(
            id=str(uuid.uuid4()),
            property_id=prop.id,
            property_name=prop.name,
            guest_name=fields["guestName"].strip(),
            guest_email=guest_email,
            guest_phone=fields.get("guestPhone"),
            guest_count=guest_count,
            check_in_date=check_in.isoformat(),
            check_out_date=check_out.isoformat(),
            total_amount=total_amount,
            currency=fields.get("currency") or "THB",
            status="pending_approval",
            source=fields.get("source") or "manual",
            duplicate_check_hash=dup_hash,
            special_requests=fields.get("specialRequests"),
            notes=fields.get("notes"),
            sync_version=1,
            created_at=stamp,
            updated_at=stamp,
        )
        session.add(booking)
        sync_booking_calendar_event(session, booking)
        record_sync_event(session, "booking_created", "booking", booking.id, created_by, {"status": booking.status})
        record_audit(session, "booking_created", "booking", booking.id, created_by, {"source": booking.source})
        session.commit()
        booking_id = booking.id
        summary = f"{booking.guest_name} · {booking.property_name} · {booking.check_in_date} → {booking.check_out_date}"
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    print(f"[Bookings] created {booking_id}: {summary}")
    automation = get_setting("aiAutomation")
    ai_review = None
    if automation.get("enabled") and automation.get("autoApproveBookings"):
        ai_review = review_booking_with_ai(booking_id)
    else:
        notify_admin("New booking pending approval", summary, kind="booking", data={"bookingId": booking_id})
    booking_dict = get_booking_dict(booking_id)
    broadcast_event("booking_updated", booking_dict)
    return {"success": True, "booking": booking_dict, "aiReview": ai_review}


def set_booking_decision(booking_id, action, admin_id, admin_name=None, notes=None, reason=None):
    """Approve or reject a booking. Approval generates the template jobs."""
    if action not in ("approve", "reject"):
        return service_error("action must be approve or reject", 400)
    if not admin_id:
        return service_error("adminId is required", 400)
    if action == "reject" and not (reason or notes):
        return service_error("reason is required when rejecting a booking", 400)
    session = SessionLocal()
    try:
        booking = session.query(BookingModel).filter_by(id=booking_id).first()
        if not booking:
            return service_error("Booking not found", 404)
        if booking.status == "cancelled":
            return service_error("Cancelled bookings cannot be reviewed", 409)
        if action == "approve" and booking.status in ("approved", "confirmed") and not booking.requires_reapproval:
            return service_error("Booking is already approved", 409)
        if action == "reject" and booking.status == "rejected":
            return service_error("Booking is already rejected", 409)

        previous_status = booking.status
        stamp = now_iso()
        if action == "approve":
            booking.status = "approved"
            booking.approved_by = admin_id
            booking.approved_at = stamp
            booking.rejected_by = None
            booking.rejected_at = None
            booking.rejection_reason = None
        else:
            booking.status = "rejected"
            booking.rejected_by = admin_id
            booking.rejected_at = stamp
            booking.rejection_reason = reason or notes
        booking.requires_reapproval = 0
        booking.updated_at = stamp
        booking.sync_version = (booking.sync_version or 0) + 1
        session.add(BookingApprovalModel(
            id=str(uuid.uuid4()),
            booking_id=booking.id,
            action=action,
            admin_id=admin_id,
            admin_name=admin_name,
            notes=notes,
            reason=reason,
            previous_status=previous_status,
            new_status=booking.status,
            created_at=stamp,
        ))
        record_sync_event(session, f"booking_{booking.status}", "booking", booking.id, admin_id,
                          {"status": booking.status, "previousStatus": previous_status})
        sync_booking_calendar_event(session, booking)

        created_jobs = []
        cancelled_jobs = []
        if action == "approve":
            if get_setting("aiAutomation", session).get("autoCreateJobs", True):
                created_jobs = create_jobs_for_booking(session, booking, created_by=admin_id)
        else:
            cancelled_jobs = cancel_open_jobs_for_booking(session, booking.id, admin_id)
        record_audit(session, f"booking_{action}d", "booking", booking.id, admin_id,
                     {"previousStatus": previous_status, "jobsCreated": len(created_jobs)})
        session.commit()
        booking_dict = booking_to_dict(booking)
        job_dicts = [job_to_dict(j) for j in created_jobs]
        cancelled_dicts = [job_to_dict(j) for j in cancelled_jobs]
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    print(f"[Bookings] {booking_id} {booking_dict['status']} by {admin_id} ({len(job_dicts)} jobs created)")
    broadcast_event("booking_updated", booking_dict)
    for job_dict in job_dicts + cancelled_dicts:
        publish_job_update(job_dict)
    return {"success": True, "booking": booking_dict, "createdJobs": job_dicts, "previousStatus": previous_status}


DEFAULT_BOOKING_TASKS = [
    {"title": "Guest Check-in", "jobType": "check_in", "offsetDays": 0, "scheduledTime": "14:00", "priority": "high",
     "description": "Meet the guests, hand over keys and walk them through the villa"},
    {"title": "Property Preparation", "jobType": "cleaning", "offsetDays": -1, "scheduledTime": "10:00", "priority": "medium",
     "description": "Prepare the villa for arrival"},
]


def assign_staff_to_booking(data):
    booking_id = data.get("bookingId")
    staff_ids = data.get("staffIds")
    assigned_by = data.get("assignedBy")
    if not booking_id or not assigned_by:
        return service_error("bookingId and assignedBy are required", 400)
    if not isinstance(staff_ids, list) or not staff_ids:
        return service_error("staffIds must be a non-empty array", 400)
    session = SessionLocal()
    try:
        booking = session.query(BookingModel).filter_by(id=booking_id).first()
        if not booking:
            return service_error("Booking not found", 404)
        staff_members = []
        for staff_id in staff_ids:
            staff = session.query(StaffAccountModel).filter_by(id=staff_id).first()
            if not staff:
                return service_error(f"Staff member not found: {staff_id}", 404)
            staff_members.append(staff)
        check_in = parse_date(booking.check_in_date)
        tasks = data.get("tasks") or [
            dict(task, scheduledDate=(check_in + timedelta(days=task["offsetDays"])).isoformat())
            for task in DEFAULT_BOOKING_TASKS
        ]
        created = []
        for staff in staff_members:
            for task in tasks:
                fields = {
                    "jobType": task.get("jobType") or "other",
                    "title": task.get("title"),
                    "description": task.get("description"),
                    "priority": task.get("priority") or "medium",
                    "propertyId": booking.property_id,
                    "propertyName": booking.property_name,
                    "bookingId": booking.id,
                    "scheduledDate": task.get("scheduledDate") or booking.check_in_date,
                    "scheduledTime": task.get("scheduledTime"),
                    "estimatedDuration": task.get("estimatedDuration"),
                    "requiredRole": staff.role,
                    "specialInstructions": data.get("generalInstructions"),
                    "deadline": data.get("deadline"),
                }
                job = build_job(session, fields, created_by=assigned_by, strict_refs=False)
                session.flush()
                assignment = assign_job_to_staff(session, job, staff, assigned_by, via="booking_assignment")
                created.append((job, assignment, staff))
        record_sync_event(session, "booking_staff_assigned", "booking", booking.id, assigned_by,
                          {"staffIds": staff_ids, "jobs": len(created)})
        session.commit()
        result = [
            {"job": job_to_dict(job), "assignment": assignment_to_dict(assignment), "staffName": staff.name}
            for job, assignment, staff in created
        ]
    except ValueError as e:
        session.rollback()
        return service_error(str(e), 400)
    except ConflictError as e:
        session.rollback()
        return service_error(str(e), 409)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    for item in result:
        job = item["job"]
        send_notification(job["assignedStaffId"], "New job assigned",
                          f"{job['title']} at {job['propertyName'] or 'a property'} on {job['scheduledDate']}",
                          kind="job_assigned", data={"jobId": job["id"]})
        publish_job_update(job)
    return {"success": True, "assignments": result}


def evaluate_booking(session, booking, today=None):
    """Ordered rule checks; the first failing rule rejects the booking."""
    today = today or datetime.now(timezone.utc).date()
    checks = []

    def reject(reason):
        return {"decision": "rejected", "reason": reason, "confidence": AI_REJECT_CONFIDENCE, "passedChecks": checks}

    required = {
        "guestName": booking.guest_name,
        "guestEmail": booking.guest_email,
        "propertyId": booking.property_id,
        "checkInDate": booking.check_in_date,
        "checkOutDate": booking.check_out_date,
        "numberOfGuests": booking.guest_count,
        "totalAmount": booking.total_amount,
    }
    missing = [name for name, value in required.items() if value in (None, "")]
    if missing:
        return reject(f"Missing required fields: {', '.join(missing)}")
    checks.append("required_fields")
    if not EMAIL_RE.match(booking.guest_email):
        return reject("Invalid guest email format")
    checks.append("email_format")
    if booking.guest_count <= 0:
        return reject("Number of guests must be positive")
    if booking.total_amount <= 0:
        return reject("Total amount must be positive")
    checks.append("positive_values")
    check_in = parse_date(booking.check_in_date)
    check_out = parse_date(booking.check_out_date)
    if not check_in or not check_out:
        return reject("Invalid booking dates")
    if check_out <= check_in:
        return reject("Check-out date must be after check-in date")
    if check_in < today:
        return reject("Check-in date cannot be in the past")
    checks.append("dates")
    prop = session.query(PropertyModel).filter_by(id=booking.property_id).first()
    if not prop:
        return reject("Property not found")
    checks.append("property_exists")
    if prop.max_occupancy and booking.guest_count > prop.max_occupancy:
        return reject(f"Guest count ({booking.guest_count}) exceeds property capacity ({prop.max_occupancy})")
    checks.append("capacity")
    nights = (check_out - check_in).days
    if nights < (prop.min_stay or 1):
        return reject(f"Minimum stay for this property is {prop.min_stay} nights")
    checks.append("minimum_stay")
    others = (
        session.query(BookingModel)
        .filter(
            BookingModel.property_id == booking.property_id,
            BookingModel.id != booking.id,
            BookingModel.status.in_(["approved", "confirmed"]),
        )
        .all()
    )
    for other in others:
        other_in = parse_date(other.check_in_date)
        other_out = parse_date(other.check_out_date)
        if other_in and other_out and check_in < other_out and check_out > other_in:
            return reject(f"Dates overlap with an existing booking ({other.check_in_date} → {other.check_out_date})")
    checks.append("availability")
    if (check_in - today).days > MAX_ADVANCE_BOOKING_DAYS:
        return reject(f"Bookings cannot be made more than {MAX_ADVANCE_BOOKING_DAYS} days in advance")
    checks.append("advance_window")
    return {"decision": "approved", "reason": "All validation checks passed", "confidence": AI_APPROVE_CONFIDENCE, "passedChecks": checks}


def review_booking_with_ai(booking_id, dry_run=False):
    session = SessionLocal()
    try:
        booking = session.query(BookingModel).filter_by(id=booking_id).first()
        if not booking:
            return service_error("Booking not found", 404)
        if not dry_run and booking.status != "pending_approval":
            return service_error(f"Booking is not pending approval ({booking.status})", 409)
        review = evaluate_booking(session, booking)
    finally:
        session.close()
    if dry_run:
        return {"success": True, "review": review, "applied": False}

    approved = review["decision"] == "approved"
    decision = set_booking_decision(
        booking_id,
        "approve" if approved else "reject",
        admin_id="AI_SYSTEM",
        admin_name="AI Booking Review",
        notes=f"Automated review ({review['confidence']}% confidence)",
        reason=None if approved else review["reason"],
    )
    log_ai_decision(
        agent="COO",
        decision=f"Booking {review['decision']}: {review['reason']}",
        confidence=review["confidence"],
        source="ai_booking_review",
        rationale=", ".join(review["passedChecks"]),
        status="applied" if decision.get("success") else "failed",
        booking_id=booking_id,
    )
    if not approved:
        notify_admin("Booking rejected by AI review", review["reason"], kind="booking", data={"bookingId": booking_id})
    return {
        "success": bool(decision.get("success")),
        "review": review,
        "applied": bool(decision.get("success")),
        "createdJobs": decision.get("createdJobs", []),
        "error": decision.get("error"),
    }


PMS_ALLOWED_SOURCES = ("make.com", "airbnb", "booking.com", "vrbo")
PMS_ACTIONS = ("create", "update", "cancel")


def _find_external_booking(session, external_booking_id, source):
    return (
        session.query(BookingModel)
        .filter_by(external_booking_id=external_booking_id, source=source)
        .first()
    )


def _apply_pms_fields(booking, data):
    if data.get("propertyId"):
        booking.property_id = data["propertyId"]
    if data.get("propertyName"):
        booking.property_name = data["propertyName"]
    for key, attr in (("guestName", "guest_name"), ("guestPhone", "guest_phone"), ("currency", "currency"),
                      ("paymentStatus", "payment_status"), ("specialRequests", "special_requests")):
        if data.get(key) is not None:
            setattr(booking, attr, data[key])
    if data.get("guestEmail"):
        booking.guest_email = data["guestEmail"].strip().lower()
    if data.get("guestCount") is not None:
        booking.guest_count = _to_number(data["guestCount"], int)
    if data.get("totalPrice") is not None:
        booking.total_amount = _to_number(data["totalPrice"], float)
    for key, attr in (("checkInDate", "check_in_date"), ("checkOutDate", "check_out_date")):
        if data.get(key):
            day = parse_date(data[key])
            if not day:
                raise ValueError(f"{key} must be YYYY-MM-DD")
            setattr(booking, attr, day.isoformat())


def process_pms_webhook(data):
    """Returns (body, http_status)."""
    external_id = data.get("externalBookingId")
    source = data.get("source")
    action = data.get("action")
    if not external_id or not source or not action:
        return service_error("externalBookingId, source and action are required", 400), 400
    if source not in PMS_ALLOWED_SOURCES:
        return service_error(f"Unsupported source: {source}", 400), 400
    if action not in PMS_ACTIONS:
        return service_error(f"Unsupported action: {action}", 400), 400

    session = SessionLocal()
    try:
        existing = _find_external_booking(session, external_id, source)
        stamp = now_iso()
        jobs_changed = []
        if action == "create":
            if existing:
                return {"success": True, "bookingId": existing.id, "action": "duplicate",
                        "message": "Booking already exists"}, 200
            missing = [f for f in ("propertyId", "guestName", "checkInDate", "checkOutDate") if not data.get(f)]
            if missing:
                return service_error(f"Missing required fields: {', '.join(missing)}", 400), 400
            booking = BookingModel(
                id=str(uuid.uuid4()),
                status="pending_approval",
                source=source,
                external_booking_id=external_id,
                currency="THB",
                sync_version=1,
                created_at=stamp,
                updated_at=stamp,
            )
            _apply_pms_fields(booking, data)
            if not booking.property_name:
                prop = session.query(PropertyModel).filter_by(id=booking.property_id).first()
                booking.property_name = prop.name if prop else None
            if parse_date(booking.check_out_date) <= parse_date(booking.check_in_date):
                return service_error("Check-out date must be after check-in date", 400), 400
            booking.duplicate_check_hash = booking_duplicate_hash(
                booking.property_id, booking.guest_email or booking.guest_name, booking.check_in_date, booking.check_out_date)
            session.add(booking)
            event_type, http_status = "booking_created", 201
        else:
            if not existing:
                return service_error("Booking not found", 404), 404
            booking = existing
            if action == "update":
                old_dates = (booking.check_in_date, booking.check_out_date, booking.property_id)
                _apply_pms_fields(booking, data)
                if (booking.check_in_date, booking.check_out_date, booking.property_id) != old_dates:
                    jobs_changed = cancel_open_jobs_for_booking(session, booking.id, "pms_webhook", only_auto_generated=True)
                if booking.status != "cancelled":
                    booking.status = "pending_approval"
                    booking.requires_reapproval = 1
                event_type = "booking_updated"
            else:
                booking.status = "cancelled"
                jobs_changed = cancel_open_jobs_for_booking(session, booking.id, "pms_webhook")
                event_type = "booking_cancelled"
            booking.updated_at = stamp
            booking.sync_version = (booking.sync_version or 0) + 1
            http_status = 200
        session.flush()
        sync_booking_calendar_event(session, booking)
        record_sync_event(session, event_type, "booking", booking.id, f"pms:{source}",
                          {"action": action, "externalBookingId": external_id}, platform="pms")
        record_audit(session, f"pms_{action}", "booking", booking.id, f"pms:{source}", {"externalBookingId": external_id})
        session.commit()
        booking_dict = booking_to_dict(booking)
        job_dicts = [job_to_dict(j) for j in jobs_changed]
    except ValueError as e:
        session.rollback()
        return service_error(str(e), 400), 400
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()

    print(f"[PMS] {action} {source}:{external_id} → {booking_dict['id']} ({booking_dict['status']})")
    if action in ("create", "update"):
        notify_admin("Booking needs approval", f"{booking_dict['guestName']} · {booking_dict['checkInDate']} → {booking_dict['checkOutDate']} ({source})",
                     kind="booking", data={"bookingId": booking_dict["id"]})
    else:
        notify_admin("Booking cancelled", f"{booking_dict['guestName']} ({source})", kind="booking",
                     data={"bookingId": booking_dict["id"]})
    broadcast_event("booking_updated", booking_dict)
    for job_dict in job_dicts:
        publish_job_update(job_dict)
    return {"success": True, "bookingId": booking_dict["id"], "action": action, "status": booking_dict["status"]}, http_status



# ══════════════════════════════════════════════════════════════════════════════
# AI COO — Gemini recommendation with an offline keyword/distance fallback
# ══════════════════════════════════════════════════════════════════════════════

AI_ESCALATION_AMOUNT = float(os.getenv("AI_ESCALATION_AMOUNT", "5000"))
MAX_ASSIGN_DISTANCE_KM = float(os.getenv("MAX_ASSIGN_DISTANCE_KM", "5"))
JOB_KEYWORDS = {
    "cleaning": ["clean", "housekeep", "laundry", "linen", "towel", "dirty", "stain", "trash"],
    "maintenance": ["fix", "broken", "leak", "repair", "air con", "aircon", "pool", "pump", "electric",
                    "plumb", "power", "light", "water heater"],
    "inspection": ["inspect", "damage", "audit", "check the", "walkthrough", "walk-through"],
    "setup": ["welcome", "setup", "set up", "prepare", "amenit", "flowers"],
    "checkout": ["checkout", "check-out", "check out", "departure"],
}


def classify_job_request(description, job_type=None):
    """Returns (job_type, confidence). An explicit valid job type wins outright."""
    if job_type and job_type in JOB_TYPES:
        return job_type, 90
    text_lower = (description or "").lower()
    hits = {}
    for candidate, keywords in JOB_KEYWORDS.items():
        count = sum(1 for keyword in keywords if keyword in text_lower)
        if count:
            hits[candidate] = count
    if not hits:
        return "other", 50
    best = max(hits, key=hits.get)
    return best, min(90, 75 + 5 * hits[best])


def find_nearest_staff(session, required_role, prop=None, required_skills=None):
    """Available staff of the role, nearest first; staff beyond MAX_ASSIGN_DISTANCE_KM
    are dropped unless they carry the `remote` skill."""
    required_skills = [s.lower() for s in (required_skills or [])]
    ranked = []
    for staff in session.query(StaffAccountModel).filter_by(is_active=1).all():
        if staff.is_suspended or staff.availability_status != "available":
            continue
        if not staff_matches_role(staff.role, required_role):
            continue
        skills = [s.lower() for s in load_json(staff.skills, []) if isinstance(s, str)]
        if any(skill not in skills for skill in required_skills):
            continue
        distance = None
        if prop and prop.lat is not None and prop.lng is not None and staff.last_lat is not None and staff.last_lng is not None:
            distance = haversine_km(prop.lat, prop.lng, staff.last_lat, staff.last_lng)
            if distance > MAX_ASSIGN_DISTANCE_KM and "remote" not in skills:
                continue
        ranked.append((staff, distance))
    ranked.sort(key=lambda pair: (pair[1] is None, pair[1] or 0, pair[0].last_assigned_at or ""))
    return ranked


def _parse_ai_json(raw):
    cleaned = (raw or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned).rstrip("`").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in model response")
    return json.loads(cleaned[start:end + 1])


def build_coo_prompt(data, prop, amount, rules, candidates, settings):
    staff_lines = "\n".join(
        f"- {staff.id}: {staff.name} ({staff.role}){f', {distance:.1f} km away' if distance is not None else ''}"
        for staff, distance in candidates[:10]
    ) or "- none available"
    rules_text = "\n".join(f"{i + 1}. {rule}" for i, rule in enumerate(rules)) or "None"
    prompt = (
        f"Request: {data.get('description') or ''}\n"
        f"Requested job type: {data.get('jobType') or 'unspecified'}\n"
        f"Property: {prop.name if prop else 'unspecified'}\n"
        f"Booking amount: {amount if amount is not None else 'unknown'} THB\n\n"
        f"Company rules:\n{rules_text}\n\n"
        f"Available staff:\n{staff_lines}\n"
    )
    suffix = (settings.get("customPromptSuffix") or "").strip()
    if suffix:
        prompt += f"\n{suffix}\n"
    return prompt


def ai_coo_recommend(data, actor="admin"):
    description = (data.get("description") or "").strip()
    if not description:
        return service_error("description is required", 400)
    if data.get("jobType") and data["jobType"] not in JOB_TYPES:
        return service_error(f"jobType must be one of: {', '.join(JOB_TYPES)}", 400)
    try:
        amount = _to_number(data.get("amount"), float)
    except ValueError as e:
        return service_error(str(e), 400)
    settings = get_setting("aiSettings")
    rules = get_company_rules()

    session = SessionLocal()
    try:
        prop = None
        if data.get("propertyId"):
            prop = session.query(PropertyModel).filter_by(id=data["propertyId"]).first()
            if not prop:
                return service_error("Property not found", 404)
        booking = None
        if data.get("bookingId"):
            booking = session.query(BookingModel).filter_by(id=data["bookingId"]).first()
            if not booking:
                return service_error("Booking not found", 404)
            if amount is None:
                amount = booking.total_amount
            if not prop and booking.property_id:
                prop = session.query(PropertyModel).filter_by(id=booking.property_id).first()

        job_type, confidence = classify_job_request(description, data.get("jobType"))
        required_role = JOB_TYPE_ROLES.get(job_type)
        candidates = find_nearest_staff(session, required_role, prop)
        nearest = candidates[0] if candidates else (None, None)
        recommendation = {
            "jobType": job_type,
            "priority": "high" if any(w in description.lower() for w in ("urgent", "asap", "leak", "broken")) else "medium",
            "staffId": nearest[0].id if nearest[0] else None,
            "staffName": nearest[0].name if nearest[0] else None,
            "distanceKm": round(nearest[1], 2) if nearest[1] is not None else None,
            "confidence": confidence,
            "reasoning": f"Keyword match → {job_type}; "
                         + (f"nearest available {required_role or 'staff'}: {nearest[0].name}" if nearest[0]
                            else "no available staff for the role"),
            "escalate": False,
        }
        source = "rules"
        if _GEMINI_CLIENT:
            try:
                raw = _gemini_generate(
                    build_coo_prompt(data, prop, amount, rules, candidates, settings),
                    temperature=float(settings.get("temperature") or 0.4),
                    max_output_tokens=int(settings.get("maxTokens") or 2000),
                )
                parsed = _parse_ai_json(raw)
                if parsed.get("jobType") in JOB_TYPES:
                    recommendation["jobType"] = parsed["jobType"]
                if parsed.get("priority") in JOB_PRIORITIES:
                    recommendation["priority"] = parsed["priority"]
                candidate_ids = {staff.id: (staff, distance) for staff, distance in candidates}
                if parsed.get("staffId") in candidate_ids:
                    staff, distance = candidate_ids[parsed["staffId"]]
                    recommendation.update(staffId=staff.id, staffName=staff.name,
                                          distanceKm=round(distance, 2) if distance is not None else None)
                if isinstance(parsed.get("confidence"), (int, float)):
                    recommendation["confidence"] = parsed["confidence"]
                if parsed.get("reasoning"):
                    recommendation["reasoning"] = str(parsed["reasoning"])
                recommendation["escalate"] = bool(parsed.get("escalate"))
                source = "gemini"
            except Exception as e:
                print(f"[AI COO] Gemini unavailable, using offline rules: {type(e).__name__}: {e}")
                recommendation["reasoning"] += f" ({settings.get('fallbackMessage')})"
    finally:
        session.close()

    boost = float(settings.get("confidenceBoost") or 0)
    recommendation["confidence"] = max(0, min(100, round(float(recommendation["confidence"]) + boost, 1)))
    threshold = float(settings.get("escalationThreshold") or 0.75) * 100
    reasons = []
    if recommendation["confidence"] < threshold:
        reasons.append(f"Confidence {recommendation['confidence']}% is below the {threshold:.0f}% threshold")
    if amount is not None and amount > AI_ESCALATION_AMOUNT:
        reasons.append(f"Amount ฿{amount:,.0f} exceeds ฿{AI_ESCALATION_AMOUNT:,.0f}")
    if not recommendation["staffId"]:
        reasons.append("No eligible staff member found")
    if recommendation["escalate"] and source == "gemini":
        reasons.append("Model requested human review")
    escalate = bool(reasons)
    simulation = bool(settings.get("simulationMode"))

    job_dict = None
    if data.get("apply") and not escalate and not simulation:
        session = SessionLocal()
        try:
            fields = {
                "jobType": recommendation["jobType"],
                "title": data.get("title") or description[:80],
                "description": description,
                "priority": recommendation["priority"],
                "propertyId": prop.id if prop else None,
                "bookingId": data.get("bookingId"),
                "scheduledStart": data.get("scheduledStart"),
                "scheduledDate": data.get("scheduledDate"),
                "scheduledTime": data.get("scheduledTime"),
            }
            job = build_job(session, fields, created_by="AI_COO", auto_generated=True)
            session.flush()
            staff = session.query(StaffAccountModel).filter_by(id=recommendation["staffId"]).first()
            assign_job_to_staff(session, job, staff, assigned_by="AI_COO", via="ai_coo")
            session.commit()
            job_dict = job_to_dict(job)
        except (ValueError, NotFoundError) as e:
            session.rollback()
            return service_error(str(e), 400)
        except ConflictError as e:
            session.rollback()
            return service_error(str(e), 409)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    log_entry = log_ai_decision(
        agent="COO",
        decision=f"{recommendation['jobType']} ({recommendation['priority']}) → {recommendation['staffName'] or 'unassigned'}",
        confidence=recommendation["confidence"],
        source=source,
        escalate=escalate,
        notes=description[:500],
        rationale=recommendation["reasoning"],
        status="applied" if job_dict else ("escalated" if escalate else "recommended"),
        booking_id=data.get("bookingId"),
        job_id=job_dict["id"] if job_dict else None,
    )
    if escalate:
        notify_admin("AI COO needs a decision", "; ".join(reasons), kind="ai_escalation", data={"logId": log_entry["id"]})
    if job_dict:
        send_notification(job_dict["assignedStaffId"], "New job assigned",
                          f"{job_dict['title']} at {job_dict['propertyName'] or 'a property'}",
                          kind="job_assigned", data={"jobId": job_dict["id"]})
        publish_job_update(job_dict)
    return {
        "success": True,
        "recommendation": recommendation,
        "source": source,
        "escalate": escalate,
        "escalationReasons": reasons,
        "simulationMode": simulation,
        "applied": job_dict is not None,
        "job": job_dict,
        "logId": log_entry["id"],
    }


# ══════════════════════════════════════════════════════════════════════════════
# AI CFO — expense screening and monthly P&L reports
# ══════════════════════════════════════════════════════════════════════════════

CFO_HIGH_VALUE_AMOUNT = 5000
CFO_CRITICAL_AMOUNT = 10000
CFO_REPAIR_ALERT_AMOUNT = 8000
CFO_AUTO_APPROVE_AMOUNT = 1000
CFO_MIN_CONFIDENCE = 60.0
REVENUE_BOOKING_STATUSES = ("approved", "confirmed")


def validate_expenses(expenses):
    if not isinstance(expenses, list):
        return ["expenses array is required"]
    if not expenses:
        return ["expenses must contain at least one expense"]
    errors = []
    for i, expense in enumerate(expenses):
        if not isinstance(expense, dict):
            errors.append(f"expenses[{i}] must be an object")
            continue
        if not isinstance(expense.get("date"), str) or not parse_date(expense["date"]):
            errors.append(f"expenses[{i}].date must be YYYY-MM-DD")
        if not isinstance(expense.get("category"), str) or not expense["category"].strip():
            errors.append(f"expenses[{i}].category is required")
        amount = expense.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
            errors.append(f"expenses[{i}].amount must be a non-negative number")
    return errors


def analyze_expenses(expenses):
    """Offline CFO screen. Every anomaly costs confidence (floored at
    CFO_MIN_CONFIDENCE) and the risk level only ever goes up."""
    total = 0.0
    by_category = {}
    anomalies = []
    confidence = 90.0
    risk = "low"
    undocumented = 0
    for expense in expenses:
        amount = float(expense["amount"])
        category = expense["category"].strip()
        total += amount
        by_category[category] = by_category.get(category, 0.0) + amount
        if not (expense.get("vendor") or expense.get("description")):
            undocumented += 1
        if amount > CFO_HIGH_VALUE_AMOUNT:
            severity = "high" if amount > CFO_CRITICAL_AMOUNT else "medium"
            anomalies.append({"date": expense["date"], "amount": amount, "category": category,
                              "note": f"High-value {category.lower()} expense requires review", "severity": severity})
            confidence = max(CFO_MIN_CONFIDENCE, confidence - 10)
            if severity == "high" or risk == "high":
                risk = "high"
            else:
                risk = "medium"
        if "repair" in category.lower() and amount > CFO_REPAIR_ALERT_AMOUNT:
            anomalies.append({"date": expense["date"], "amount": amount, "category": category,
                              "note": "Unusual repair cost - investigate vendor pricing", "severity": "high"})
            confidence = max(CFO_MIN_CONFIDENCE, confidence - 15)
            risk = "high"
    if len(anomalies) > 2:
        risk = "medium" if risk == "low" else "high"
        confidence = max(CFO_MIN_CONFIDENCE, confidence - 10)

    def category_total(word):
        return sum(amount for name, amount in by_category.items() if word in name.lower())

    recommendations = []
    if total > 20000:
        recommendations.append("Total expenses exceed ฿20,000 - consider a budget review")
    if category_total("repair") > CFO_REPAIR_ALERT_AMOUNT:
        recommendations.append("Review vendor contracts for large repairs")
    if category_total("maintenance") > CFO_HIGH_VALUE_AMOUNT:
        recommendations.append("High maintenance costs - evaluate preventive measures")
    if any(a["severity"] in ("medium", "high") for a in anomalies):
        recommendations.append(f"Route expenses over ฿{CFO_HIGH_VALUE_AMOUNT:,} through the approval workflow")
    if undocumented:
        recommendations.append(f"Collect receipts for {undocumented} expense(s) without a vendor or description")
    recommendations.append("Monitor cash flow trends weekly")

    insights = []
    if total:
        top = max(by_category, key=by_category.get)
        insights.append(f"{top} accounts for {by_category[top] / total * 100:.0f}% of spend")
    insights.append(f"Average expense is ฿{total / len(expenses):,.0f}")
    small = sum(1 for e in expenses if float(e["amount"]) < CFO_AUTO_APPROVE_AMOUNT)
    if small:
        insights.append(f"{small} expense(s) fall under the ฿{CFO_AUTO_APPROVE_AMOUNT:,} auto-approve limit")

    summary = f"Analyzed {len(expenses)} expenses totaling ฿{total:,.0f}"
    if anomalies:
        summary += f". Found {len(anomalies)} anomalies requiring attention"
    summary += ". High expense period detected" if total > 15000 else ". Expenses within normal range"
    return {
        "summary": summary,
        "anomalies": anomalies,
        "recommendations": recommendations,
        "insights": insights,
        "confidence": round(confidence, 1),
        "riskLevel": risk,
        "totalAmount": round(total, 2),
        "categoryTotals": {name: round(amount, 2) for name, amount in by_category.items()},
    }


def build_cfo_prompt(expenses, rules, period=None):
    rules_text = "\n".join(f"{i + 1}. {rule}" for i, rule in enumerate(rules)) or "None"
    return (
        f"Period: {period or 'unspecified'}\n"
        f"Company rules:\n{rules_text}\n\n"
        f"Expenses (THB):\n{json.dumps(expenses, ensure_ascii=False, indent=2)}\n\n"
        "Return summary, insights, recommendations and confidence."
    )


def record_expenses(expenses, actor="admin", property_id=None):
    session = SessionLocal()
    try:
        stamp = now_iso()
        for expense in expenses:
            session.add(ExpenseModel(
                id=str(uuid.uuid4()),
                expense_date=parse_date(expense["date"]).isoformat(),
                category=expense["category"].strip(),
                amount=float(expense["amount"]),
                description=expense.get("description"),
                vendor=expense.get("vendor"),
                property_id=expense.get("propertyId") or property_id,
                approved=1 if expense.get("approved") else 0,
                created_by=actor,
                created_at=stamp,
            ))
        session.commit()
        return len(expenses)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()


def run_cfo_analysis(data, actor="admin"):
    expenses = data.get("expenses")
    errors = validate_expenses(expenses)
    if errors:
        result = service_error("Invalid expense data", 400)
        result["details"] = errors
        return result
    settings = get_setting("aiSettings")
    analysis = analyze_expenses(expenses)
    source = "rules"
    if _GEMINI_CLIENT:
        try:
            raw = _gemini_generate(
                build_cfo_prompt(expenses, get_company_rules(), data.get("period")),
                temperature=float(settings.get("temperature") or 0.4),
                max_output_tokens=int(settings.get("maxTokens") or 2000),
                system_instruction=AI_CFO_SYSTEM_INSTRUCTION,
            )
            parsed = _parse_ai_json(raw)
            if parsed.get("summary"):
                analysis["summary"] = str(parsed["summary"])
            for key in ("insights", "recommendations"):
                if isinstance(parsed.get(key), list):
                    extra = [str(item) for item in parsed[key] if str(item).strip()]
                    analysis[key] = extra + [item for item in analysis[key] if item not in extra]
            if isinstance(parsed.get("confidence"), (int, float)) and not isinstance(parsed["confidence"], bool):
                analysis["confidence"] = float(parsed["confidence"])
            source = "gemini"
        except Exception as e:
            print(f"[AI CFO] Gemini unavailable, using offline rules: {type(e).__name__}: {e}")

    boost = float(settings.get("confidenceBoost") or 0)
    analysis["confidence"] = max(0, min(100, round(analysis["confidence"] + boost, 1)))
    threshold = float(settings.get("escalationThreshold") or 0.75) * 100
    high_value = [e for e in expenses if float(e["amount"]) > CFO_HIGH_VALUE_AMOUNT]
    reasons = []
    if analysis["confidence"] < threshold:
        reasons.append(f"Confidence {analysis['confidence']}% is below the {threshold:.0f}% threshold")
    if high_value:
        reasons.append(f"{len(high_value)} expense(s) over ฿{CFO_HIGH_VALUE_AMOUNT:,}")
    if analysis["riskLevel"] == "high":
        reasons.append("Risk level is high")
    escalate = bool(reasons)
    simulation = bool(settings.get("simulationMode"))

    recorded = 0
    if data.get("record") and not simulation:
        recorded = record_expenses(expenses, actor=actor, property_id=data.get("propertyId"))

    log_entry = log_ai_decision(
        agent="CFO",
        decision="Financial summary generated",
        confidence=analysis["confidence"],
        source=source,
        escalate=escalate,
        notes=f"{len(analysis['anomalies'])} anomalies detected" if analysis["anomalies"] else None,
        rationale=analysis["summary"],
        status="escalated" if escalate else "completed",
    )
    if escalate:
        notify_admin("AI CFO needs a review", "; ".join(reasons), kind="ai_escalation", data={"logId": log_entry["id"]})
    return {
        "success": True,
        "summary": analysis["summary"],
        "anomalies": analysis["anomalies"],
        "recommendations": analysis["recommendations"],
        "insights": analysis["insights"],
        "confidence": analysis["confidence"],
        "riskLevel": analysis["riskLevel"],
        "escalate": escalate,
        "escalationReasons": reasons,
        "source": source,
        "simulationMode": simulation,
        "recorded": recorded,
        "logId": log_entry["id"],
        "metadata": {
            "totalExpenses": len(expenses),
            "totalAmount": analysis["totalAmount"],
            "categoryTotals": analysis["categoryTotals"],
            "period": data.get("period"),
            "timestamp": now_iso(),
        },
    }


def get_cfo_status():
    settings = get_setting("aiSettings")
    return {
        "success": True,
        "status": "operational",
        "geminiConfigured": _GEMINI_CLIENT is not None,
        "capabilities": ["financial_analysis", "anomaly_detection", "expense_categorization",
                         "budget_monitoring", "monthly_reports"],
        "thresholds": {
            "highValueFlag": CFO_HIGH_VALUE_AMOUNT,
            "autoApprove": CFO_AUTO_APPROVE_AMOUNT,
            "criticalAmount": CFO_CRITICAL_AMOUNT,
            "confidenceThreshold": float(settings.get("escalationThreshold") or 0.75) * 100,
        },
    }


def _pct_change(current, previous):
    if not previous:
        return None
    return round((current - previous) / previous * 100, 1)


def financial_insight(revenue, expenses, revenue_change=None, expense_change=None):
    if not revenue and not expenses:
        return "No bookings or expenses recorded for this month."
    notes = []
    if revenue_change is not None:
        if revenue_change > 15:
            notes.append("Strong revenue growth from higher booking value")
        elif revenue_change < -10:
            notes.append("Revenue declined against the previous month")
        elif revenue_change > 5:
            notes.append("Steady revenue growth across the portfolio")
    if expense_change is not None:
        if expense_change > 15:
            notes.append("Expenses rose sharply - check maintenance and staffing costs")
        elif expense_change < -5:
            notes.append("Costs came down against the previous month")
    margin = (revenue - expenses) / revenue * 100 if revenue else None
    if margin is None:
        notes.append("Expenses were recorded with no booking revenue")
    elif margin > 35:
        notes.append("Excellent profit margin")
    elif margin < 15:
        notes.append("Profit margin is compressed by operating costs")
    if notes:
        return ". ".join(notes) + "."
    return f"Profit margin of {margin:.1f}% is in the normal range."


def _month_report(year, month, bookings, expenses, previous=None):
    prefix = f"{year:04d}-{month:02d}"
    month_bookings = [b for b in bookings if (b.check_in_date or "").startswith(prefix)]
    month_expenses = [e for e in expenses if (e.expense_date or "").startswith(prefix)]
    revenue = round(sum(b.total_amount or 0 for b in month_bookings), 2)
    spent = round(sum(e.amount or 0 for e in month_expenses), 2)
    by_source = {}
    for booking in month_bookings:
        key = booking.source or "manual"
        by_source[key] = round(by_source.get(key, 0) + (booking.total_amount or 0), 2)
    by_category = {}
    for expense in month_expenses:
        by_category[expense.category] = round(by_category.get(expense.category, 0) + (expense.amount or 0), 2)
    revenue_change = _pct_change(revenue, previous["revenue"]) if previous else None
    expense_change = _pct_change(spent, previous["expenses"]) if previous else None
    return {
        "month": date(year, month, 1).strftime("%B %Y"),
        "year": year,
        "monthNumber": month,
        "revenue": revenue,
        "expenses": spent,
        "profit": round(revenue - spent, 2),
        "profitMargin": round((revenue - spent) / revenue * 100, 1) if revenue else None,
        "bookings": len(month_bookings),
        "insight": financial_insight(revenue, spent, revenue_change, expense_change),
        "breakdown": {"revenueBySource": by_source, "expensesByCategory": by_category},
        "trends": {
            "revenueChange": revenue_change,
            "expenseChange": expense_change,
            "profitChange": _pct_change(revenue - spent, previous["profit"]) if previous else None,
        },
        "aiConfidence": 90 if month_bookings and month_expenses else 70,
        "generatedAt": now_iso(),
    }


def _load_financials():
    session = SessionLocal()
    try:
        bookings = session.query(BookingModel).filter(BookingModel.status.in_(REVENUE_BOOKING_STATUSES)).all()
        expenses = session.query(ExpenseModel).all()
        return bookings, expenses
    finally:
        session.close()


def _shift_month(year, month, delta):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def get_monthly_financial_reports(months=6, today=None):
    """Newest month first; revenue is approved/confirmed bookings by check-in month."""
    today = today or datetime.now(PROPERTY_TZ).date()
    bookings, expenses = _load_financials()
    reports = []
    oldest_year, oldest_month = _shift_month(today.year, today.month, -months)
    previous = _month_report(oldest_year, oldest_month, bookings, expenses)
    for offset in range(months - 1, -1, -1):
        year, month = _shift_month(today.year, today.month, -offset)
        report = _month_report(year, month, bookings, expenses, previous)
        reports.append(report)
        previous = report
    reports.reverse()
    total_revenue = round(sum(r["revenue"] for r in reports), 2)
    total_expenses = round(sum(r["expenses"] for r in reports), 2)
    summary = {
        "totalReports": len(reports),
        "totalRevenue": total_revenue,
        "totalExpenses": total_expenses,
        "totalProfit": round(total_revenue - total_expenses, 2),
        "avgProfitMargin": round((total_revenue - total_expenses) / total_revenue * 100, 1) if total_revenue else None,
        "avgConfidence": round(sum(r["aiConfidence"] for r in reports) / len(reports), 1),
        "reportPeriod": f"{reports[-1]['month']} - {reports[0]['month']}",
    }
    return {"success": True, "reports": reports, "summary": summary}


MONTH_NAMES = {date(2000, m, 1).strftime("%B").lower(): m for m in range(1, 13)}


def parse_report_month(value):
    if isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 12:
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw.isdigit() and 1 <= int(raw) <= 12:
            return int(raw)
        for name, number in MONTH_NAMES.items():
            if len(raw) >= 3 and name.startswith(raw):
                return number
    return None


def generate_month_report(data):
    month = parse_report_month(data.get("month"))
    year = data.get("year")
    if month is None or isinstance(year, bool) or not isinstance(year, int) or not 2000 <= year <= 2100:
        return service_error("month (1-12 or a month name) and year (2000-2100) are required", 400)
    bookings, expenses = _load_financials()
    prev_year, prev_month = _shift_month(year, month, -1)
    previous = _month_report(prev_year, prev_month, bookings, expenses)
    report = _month_report(year, month, bookings, expenses, previous)
    return {"success": True, "report": report, "message": f"Financial report generated for {report['month']}"}


# ══════════════════════════════════════════════════════════════════════════════
# AI DAY PREDICTIONS — rule-based forecast of a day's operational risks
# ══════════════════════════════════════════════════════════════════════════════

PEAK_TRAFFIC_HOURS = (8, 9, 17, 18, 19)
OUTDOOR_KEYWORDS = ("pool", "garden", "landscap", "outdoor", "roof")
PREDICTION_MIN_CONFIDENCE = 70
ROUTE_SAVING_MINUTES_PER_JOB = 15


def _job_local_start(job):
    start = parse_iso_datetime(job.scheduled_start)
    if start:
        return start.astimezone(PROPERTY_TZ)
    day = parse_date(job.scheduled_date)
    return local_datetime(day, 9).astimezone(PROPERTY_TZ) if day else None


def _is_outdoor(job):
    text_lower = f"{job.title or ''} {job.description or ''}".lower()
    return job.job_type == "maintenance" or any(word in text_lower for word in OUTDOOR_KEYWORDS)


def predict_day_operations(day):
    session = SessionLocal()
    try:
        jobs = []
        for job in session.query(OperationalJobModel).filter(OperationalJobModel.status.notin_(CLOSED_JOB_STATUSES)).all():
            start = _job_local_start(job)
            if start and start.date() == day:
                jobs.append((job, start))
        jobs.sort(key=lambda pair: pair[1])
        booking_ids = {job.booking_id for job, _ in jobs if job.booking_id}
        bookings = {
            b.id: b for b in session.query(BookingModel).filter(BookingModel.id.in_(booking_ids)).all()
        } if booking_ids else {}
        staff_names = {s.id: s.name for s in session.query(StaffAccountModel).all()}
    finally:
        session.close()

    predictions = []
    peak = [job for job, start in jobs if start.hour in PEAK_TRAFFIC_HOURS]
    if peak:
        predictions.append({
            "id": "traffic-1", "type": "traffic", "title": "Peak hour traffic delays",
            "description": f"Rush-hour traffic may delay {len(peak)} job(s) by 15-30 minutes.",
            "confidence": 85, "impact": "high" if len(peak) > 3 else "medium",
            "recommendation": "Move non-urgent jobs out of rush hour or send staff who are already nearby.",
            "affectedJobs": [j.id for j in peak], "timeframe": "08:00-10:00, 17:00-20:00",
        })

    by_staff = {}
    for job, _ in jobs:
        if job.assigned_staff_id:
            by_staff.setdefault(job.assigned_staff_id, []).append(job)
    for staff_id, staff_jobs in by_staff.items():
        if len(staff_jobs) > 2:
            savings = len(staff_jobs) * ROUTE_SAVING_MINUTES_PER_JOB
            predictions.append({
                "id": f"optimization-{staff_id}", "type": "optimization", "title": "Route optimization available",
                "description": f"Reordering {len(staff_jobs)} jobs for {staff_names.get(staff_id, staff_id)} could cut travel time.",
                "confidence": 90, "impact": "medium" if savings > 45 else "low",
                "recommendation": "Group the jobs by property location before the shift starts.",
                "affectedJobs": [j.id for j in staff_jobs], "estimatedSavings": savings, "timeframe": "All day",
            })

    turnovers = [job for job, _ in jobs if job.booking_id and job.job_type in ("cleaning", "checkout")]
    if turnovers:
        first = turnovers[0]
        predictions.append({
            "id": "guest-behavior-1", "type": "guest_behavior", "title": "Early checkout likely",
            "description": f"The guest at {first.property_name or 'the property'} may leave before {CHECK_OUT_HOUR}:00.",
            "confidence": 75, "impact": "low",
            "recommendation": "Have the cleaning crew ready to start early.",
            "affectedJobs": [first.id], "timeframe": f"{CHECK_OUT_HOUR - 2:02d}:00-{CHECK_OUT_HOUR:02d}:00",
        })

    outdoor = [job for job, _ in jobs if _is_outdoor(job)]
    if outdoor:
        predictions.append({
            "id": "weather-1", "type": "weather", "title": "Weather risk for outdoor tasks",
            "description": f"Afternoon showers could interrupt {len(outdoor)} outdoor task(s).",
            "confidence": 70, "impact": "medium" if len(outdoor) > 3 else "low",
            "recommendation": "Schedule outdoor work in the morning and keep indoor backup tasks ready.",
            "affectedJobs": [j.id for j in outdoor], "timeframe": "14:00-18:00",
        })

    by_hour = {}
    for job, start in jobs:
        by_hour.setdefault(start.hour, []).append(job)
    for hour, hour_jobs in sorted(by_hour.items()):
        if len(hour_jobs) > 4:
            predictions.append({
                "id": f"bottleneck-{hour}", "type": "bottleneck", "title": "Workload bottleneck",
                "description": f"{len(hour_jobs)} jobs start at {hour:02d}:00.",
                "confidence": 88, "impact": "high" if len(hour_jobs) > 6 else "medium",
                "recommendation": "Spread the jobs across neighbouring hours or add staff.",
                "affectedJobs": [j.id for j in hour_jobs], "timeframe": f"{hour:02d}:00-{hour + 1:02d}:00",
            })

    high_value = [
        (job, bookings[job.booking_id]) for job, _ in jobs
        if job.booking_id in bookings and (bookings[job.booking_id].total_amount or 0) > AI_ESCALATION_AMOUNT
    ]
    if high_value:
        job, booking = max(high_value, key=lambda pair: pair[1].total_amount)
        predictions.append({
            "id": "high-value-risk-1", "type": "anomaly", "title": "High-value booking at stake",
            "description": f"Booking at {job.property_name or 'a property'} (฿{booking.total_amount:,.0f}) needs extra attention.",
            "confidence": 95, "impact": "high",
            "recommendation": "Assign the most experienced staff and add a quality check.",
            "affectedJobs": [job.id], "timeframe": "All day",
        })

    predictions = [p for p in predictions if p["confidence"] >= PREDICTION_MIN_CONFIDENCE]
    high = sum(1 for p in predictions if p["impact"] == "high")
    critical = sum(1 for p in predictions if p["impact"] == "critical")
    if critical or high > 2:
        risk = "high"
    elif high or len(jobs) > 8:
        risk = "medium"
    else:
        risk = "low"
    return {
        "success": True,
        "date": day.isoformat(),
        "predictions": predictions,
        "confidence": round(sum(p["confidence"] for p in predictions) / len(predictions)) if predictions else 0,
        "generatedAt": now_iso(),
        "summary": {
            "totalJobs": len(jobs),
            "expectedCompletionRate": max(70, 95 - 5 * (high + critical)),
            "riskLevel": risk,
            "bottlenecks": sum(1 for p in predictions if p["type"] == "bottleneck"),
            "optimizations": sum(1 for p in predictions if p["type"] == "optimization"),
        },
    }


# ══════════════════════════════════════════════════════════════════════════════
# OPS CHAT — Gemini answers over a live operations snapshot, offline fallback
# ══════════════════════════════════════════════════════════════════════════════

CHAT_MAX_MESSAGE_LENGTH = 2000
CHAT_HISTORY_TURNS = 10


def build_ops_snapshot(now=None):
    now = now or datetime.now(timezone.utc)
    today = now.astimezone(PROPERTY_TZ).date()
    session = SessionLocal()
    try:
        open_jobs = session.query(OperationalJobModel).filter(OperationalJobModel.status.notin_(CLOSED_JOB_STATUSES)).all()
        pending_bookings = session.query(BookingModel).filter_by(status="pending_approval").count()
        available_staff = (
            session.query(StaffAccountModel)
            .filter_by(is_active=1, is_suspended=0, availability_status="available")
            .count()
        )
    finally:
        session.close()
    today_jobs = 0
    for job in open_jobs:
        start = _job_local_start(job)
        if start and start.date() == today:
            today_jobs += 1
    return {
        "pendingBookings": pending_bookings,
        "openJobs": len(open_jobs),
        "unassignedJobs": sum(1 for j in open_jobs if j.status in ("pending", "offered")),
        "jobsToday": today_jobs,
        "escalations": sum(1 for j in open_jobs if j.escalation_required),
        "availableStaff": available_staff,
    }


def offline_chat_answer(message, snapshot):
    text_lower = message.lower()
    parts = []
    if "booking" in text_lower or "guest" in text_lower:
        parts.append(f"{snapshot['pendingBookings']} booking(s) are waiting for approval.")
    if any(word in text_lower for word in ("job", "task", "clean", "today")):
        parts.append(f"There are {snapshot['openJobs']} open job(s), {snapshot['unassignedJobs']} not yet assigned "
                     f"and {snapshot['jobsToday']} scheduled today.")
    if any(word in text_lower for word in ("staff", "team", "who", "available")):
        parts.append(f"{snapshot['availableStaff']} staff member(s) are available right now.")
    if any(word in text_lower for word in ("escalat", "urgent", "problem", "stuck")):
        parts.append(f"{snapshot['escalations']} job(s) need an admin decision.")
    if not parts:
        parts.append(
            f"Operations overview: {snapshot['pendingBookings']} booking(s) pending approval, "
            f"{snapshot['openJobs']} open job(s) ({snapshot['unassignedJobs']} unassigned), "
            f"{snapshot['availableStaff']} staff available, {snapshot['escalations']} escalation(s)."
        )
    return " ".join(parts)


def suggest_chat_action(reply, snapshot):
    text_lower = reply.lower()
    if snapshot["unassignedJobs"] and ("assign" in text_lower or "unassigned" in text_lower or "not yet assigned" in text_lower):
        return {"type": "staff_optimization", "label": "Review unassigned jobs", "path": "/api/jobs?status=pending"}
    if snapshot["pendingBookings"] and "approv" in text_lower:
        return {"type": "booking_update", "label": "Review pending bookings", "path": "/api/bookings?status=pending_approval"}
    return None


def ops_chat(data, actor="admin"):
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        return service_error("message is required", 400)
    if len(message) > CHAT_MAX_MESSAGE_LENGTH:
        return service_error(f"message must be at most {CHAT_MAX_MESSAGE_LENGTH} characters", 400)
    history = data.get("conversationHistory") or []
    if not isinstance(history, list) or not all(isinstance(turn, dict) for turn in history):
        return service_error("conversationHistory must be an array of objects", 400)
    message = message.strip()
    snapshot = build_ops_snapshot()
    reply = None
    source = "rules"
    if _GEMINI_CLIENT:
        settings = get_setting("aiSettings")
        rules_text = "\n".join(f"- {rule}" for rule in get_company_rules()) or "- none"
        lines = [
            f"{'Admin' if turn.get('sender') == 'user' else 'Assistant'}: {turn.get('message') or ''}"
            for turn in history[-CHAT_HISTORY_TURNS:]
        ]
        lines.append(f"Admin: {message}")
        prompt = (
            f"Operations snapshot: {json.dumps(snapshot)}\n"
            f"Company rules:\n{rules_text}\n\n"
            + "\n".join(lines) + "\nAssistant:"
        )
        try:
            reply = _gemini_generate(
                prompt,
                temperature=float(settings.get("temperature") or 0.4),
                max_output_tokens=int(settings.get("maxTokens") or 2000),
                system_instruction=AI_CHAT_SYSTEM_INSTRUCTION,
            ) or None
            source = "gemini" if reply else "rules"
        except Exception as e:
            print(f"[AI Chat] Gemini unavailable, using offline answer: {type(e).__name__}: {e}")
    if not reply:
        reply = offline_chat_answer(message, snapshot)
    action = suggest_chat_action(reply, snapshot)
    log_activity("ai_chat", f"{actor}: {message[:80]}", source=source)
    return {
        "success": True,
        "response": reply,
        "source": source,
        "actionRequired": action is not None,
        "suggestedAction": action,
        "context": snapshot,
        "sessionId": data.get("sessionId") or f"session_{now_ms()}",
        "timestamp": now_iso(),
    }


# ══════════════════════════════════════════════════════════════════════════════
# MOBILE — staff app payloads, status updates, offline sync, GPS, photos
# ══════════════════════════════════════════════════════════════════════════════

MOBILE_ASSIGNMENT_STATUSES = ("accepted", "in-progress", "completed", "cancelled")
ASSIGNMENT_TO_JOB_STATUS = {
    "accepted": "accepted",
    "in-progress": "in_progress",
    "completed": "completed",
    "cancelled": "pending",
}
MOBILE_BOOKING_FIELDS = {
    "notes": "notes",
    "specialRequests": "special_requests",
    "paymentStatus": "payment_status",
}
SYNC_BOOKING_LIMIT = 100
SYNC_ASSIGNMENT_LIMIT = 100
SYNC_PROPERTY_LIMIT = 50
# datetime.max in epoch milliseconds
MAX_SYNC_TIMESTAMP_MS = 253402300799999


def mobile_job_payload(job, prop=None, booking=None):
    return {
        "id": job.id,
        "title": job.title,
        "description": job.description,
        "jobType": job.job_type,
        "status": job.status,
        "priority": job.priority,
        "property": {
            "id": prop.id,
            "name": prop.name,
            "address": prop.address,
            "coordinates": {"lat": prop.lat, "lng": prop.lng} if prop.lat is not None else None,
            "accessInstructions": prop.access_instructions,
            "parkingInstructions": prop.parking_instructions,
            "requirements": load_json(prop.requirements, []),
        } if prop else {"id": job.property_id, "name": job.property_name},
        "booking": {
            "id": booking.id,
            "guestName": booking.guest_name,
            "guestCount": booking.guest_count,
            "checkInDate": booking.check_in_date,
            "checkOutDate": booking.check_out_date,
            "specialRequests": booking.special_requests,
        } if booking else None,
        "scheduling": {
            "scheduledDate": job.scheduled_date,
            "scheduledTime": job.scheduled_time,
            "scheduledStart": job.scheduled_start,
            "estimatedDuration": job.estimated_duration,
            "deadline": job.deadline,
        },
        "assignment": {
            "staffId": job.assigned_staff_id,
            "assignedAt": job.assigned_at,
            "acceptedAt": job.accepted_at,
            "startedAt": job.started_at,
        },
        "completion": {
            "completedAt": job.completed_at,
            "notes": job.completion_notes,
            "photos": load_json(job.completion_photos, []),
        },
        "requiredSkills": load_json(job.required_skills, []),
        "specialInstructions": job.special_instructions,
        "escalationRequired": bool(job.escalation_required),
        "syncVersion": job.sync_version or 0,
        "updatedAt": job.updated_at,
    }


def list_mobile_jobs(staff_id=None, status=None, limit=50, include_completed=False):
    session = SessionLocal()
    try:
        query = session.query(OperationalJobModel)
        if staff_id:
            query = query.filter_by(assigned_staff_id=staff_id)
        if status:
            query = query.filter_by(status=status)
        elif not include_completed:
            query = query.filter(OperationalJobModel.status.notin_(CLOSED_JOB_STATUSES))
        jobs = query.order_by(OperationalJobModel.scheduled_start.asc()).limit(limit).all()
        property_ids = {j.property_id for j in jobs if j.property_id}
        booking_ids = {j.booking_id for j in jobs if j.booking_id}
        props = {p.id: p for p in session.query(PropertyModel).filter(PropertyModel.id.in_(property_ids)).all()} if property_ids else {}
        bookings = {b.id: b for b in session.query(BookingModel).filter(BookingModel.id.in_(booking_ids)).all()} if booking_ids else {}
        return [mobile_job_payload(j, props.get(j.property_id), bookings.get(j.booking_id)) for j in jobs]
    finally:
        session.close()


def advance_job_status(session, job, target, actor, notes=None, photos=None):
    """Like transition_job_status, but a job that was never started passes through
    in_progress on its way to completed."""
    if target == job.status:
        return job
    allowed = JOB_STATUS_TRANSITIONS.get(job.status, set())
    if target == "completed" and target not in allowed and "in_progress" in allowed:
        transition_job_status(session, job, "in_progress", actor)
    return transition_job_status(session, job, target, actor, notes=notes, photos=photos)


def _update_staff_location(session, staff, lat, lng):
    staff.last_lat = lat
    staff.last_lng = lng
    staff.last_location_at = now_iso()
    staff.updated_at = staff.last_location_at


def _valid_coordinates(lat, lng):
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def update_mobile_job(data):
    job_id = data.get("jobId")
    status = data.get("status")
    if not job_id or not status:
        return service_error("jobId and status are required", 400)
    if status not in JOB_STATUS_TRANSITIONS:
        return service_error(f"Unknown job status: {status}", 400)
    completion = data.get("completionData") or {}
    if not isinstance(completion, dict):
        return service_error("completionData must be an object", 400)
    photos = completion.get("photos") or []
    if not isinstance(photos, list):
        return service_error("completionData.photos must be an array", 400)
    location = data.get("location")
    if location is not None and (not isinstance(location, dict) or not _valid_coordinates(location.get("lat"), location.get("lng"))):
        return service_error("location must contain valid lat and lng", 400)
    staff_id = data.get("staffId")
    session = SessionLocal()
    try:
        job = session.query(OperationalJobModel).filter_by(id=job_id).first()
        if not job:
            return service_error("Job not found", 404)
        if staff_id and job.assigned_staff_id != staff_id:
            return service_error("Job is not assigned to this staff member", 403)
        actor = staff_id or job.assigned_staff_id or "mobile"
        notes = completion.get("notes") or data.get("notes")
        assignment = _active_assignment(session, job.id, job.assigned_staff_id)
        advance_job_status(session, job, status, actor, notes=notes, photos=photos)
        if assignment and completion.get("timeSpent") is not None:
            assignment.time_spent = int(completion["timeSpent"])
        if location and job.assigned_staff_id:
            staff = session.query(StaffAccountModel).filter_by(id=job.assigned_staff_id).first()
            if staff:
                _update_staff_location(session, staff, location["lat"], location["lng"])
        record_sync_event(session, "job_status_updated", "job", job.id, actor, {"status": status}, platform="mobile")
        session.commit()
        job_dict = job_to_dict(job)
    except ConflictError as e:
        session.rollback()
        return service_error(str(e), 409)
    except (ValueError, TypeError) as e:
        session.rollback()
        return service_error(str(e), 400)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    if status == "completed":
        notify_admin("Job completed", f"{job_dict['title']} at {job_dict['propertyName'] or 'a property'}",
                     kind="job_completed", data={"jobId": job_id})
    publish_job_update(job_dict)
    return {"success": True, "job": job_dict}


def validate_assignment_update(body):
    errors = []
    if body.get("status") not in MOBILE_ASSIGNMENT_STATUSES:
        errors.append(f"status must be one of: {', '.join(MOBILE_ASSIGNMENT_STATUSES)}")
    if not body.get("updatedBy") or not isinstance(body.get("updatedBy"), str):
        errors.append("updatedBy is required and must be a string")
    if not body.get("timestamp") or not parse_iso_datetime(body.get("timestamp")):
        errors.append("timestamp is required and must be a valid ISO date string")
    if body.get("notes") is not None and not isinstance(body.get("notes"), str):
        errors.append("notes must be a string if provided")
    photos = body.get("photos")
    if photos is not None and (not isinstance(photos, list) or not all(isinstance(p, str) for p in photos)):
        errors.append("photos must be an array of strings if provided")
    time_spent = body.get("timeSpent")
    if time_spent is not None and (isinstance(time_spent, bool) or not isinstance(time_spent, (int, float)) or time_spent < 0):
        errors.append("timeSpent must be a non-negative number if provided")
    return errors


def _apply_assignment_update(session, assignment, status=None, updated_by="mobile", notes=None, photos=None, time_spent=None):
    """Applies a staff update to an assignment and mirrors the status onto its job. Uncommitted."""
    if assignment.status in ("completed", "cancelled"):
        raise ConflictError(f"Assignment is already {assignment.status}")
    job = session.query(OperationalJobModel).filter_by(id=assignment.job_id).first()
    if not job:
        raise NotFoundError("Job not found")
    if status:
        if status not in ASSIGNMENT_TO_JOB_STATUS:
            raise ValueError(f"Unsupported assignment status: {status}")
        if job.assigned_staff_id != assignment.staff_id:
            raise ConflictError("Assignment is no longer active for this job")
        advance_job_status(session, job, ASSIGNMENT_TO_JOB_STATUS[status], updated_by, notes=notes, photos=photos)
        assignment.status = status
    if notes is not None:
        assignment.notes = notes
    if photos:
        assignment.photos = dump_json(load_json(assignment.photos, []) + list(photos))
    if time_spent is not None:
        assignment.time_spent = int(time_spent)
    assignment.last_updated_by = updated_by
    assignment.updated_at = now_iso()
    assignment.sync_version = (assignment.sync_version or 0) + 1
    record_sync_event(session, "assignment_updated", "assignment", assignment.id, updated_by,
                      {"status": status, "jobId": job.id}, platform="mobile")
    return job


def get_assignment(assignment_id):
    session = SessionLocal()
    try:
        assignment = session.query(JobAssignmentModel).filter_by(id=assignment_id).first()
        if not assignment:
            return None
        result = assignment_to_dict(assignment)
        job = session.query(OperationalJobModel).filter_by(id=assignment.job_id).first()
        result["job"] = job_to_dict(job) if job else None
        return result
    finally:
        session.close()


def update_assignment(assignment_id, body):
    errors = validate_assignment_update(body)
    if errors:
        result = service_error("Validation failed", 400)
        result["details"] = errors
        return result
    session = SessionLocal()
    try:
        assignment = session.query(JobAssignmentModel).filter_by(id=assignment_id).first()
        if not assignment:
            return service_error("Assignment not found", 404)
        job = _apply_assignment_update(
            session, assignment,
            status=body["status"],
            updated_by=body["updatedBy"],
            notes=body.get("notes"),
            photos=body.get("photos"),
            time_spent=body.get("timeSpent"),
        )
        session.commit()
        assignment_dict = assignment_to_dict(assignment)
        job_dict = job_to_dict(job)
    except ConflictError as e:
        session.rollback()
        return service_error(str(e), 409)
    except NotFoundError as e:
        session.rollback()
        return service_error(str(e), 404)
    except ValueError as e:
        session.rollback()
        return service_error(str(e), 400)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    if body["status"] == "completed":
        notify_admin("Job completed", f"{job_dict['title']} ({body['updatedBy']})", kind="job_completed",
                     data={"jobId": job_dict["id"], "assignmentId": assignment_id})
    elif body["status"] == "cancelled":
        notify_admin("Staff dropped a job", f"{job_dict['title']} is back in the pool", kind="escalation",
                     data={"jobId": job_dict["id"]})
    publish_job_update(job_dict)
    return {"success": True, "assignment": assignment_dict, "job": job_dict}


def _apply_sync_change(session, entity, change, actor, staff_id=None):
    if not isinstance(change, dict):
        raise ValueError("Each pending change must be an object")
    if change.get("type") != "update":
        raise ValueError(f"Unsupported change type: {change.get('type')}")
    payload = change.get("data") or {}
    if not isinstance(payload, dict):
        raise ValueError("Change data must be an object")
    if entity == "bookings":
        booking = session.query(BookingModel).filter_by(id=change.get("id")).first()
        if not booking:
            raise NotFoundError("Booking not found")
        updates = {MOBILE_BOOKING_FIELDS[k]: v for k, v in payload.items() if k in MOBILE_BOOKING_FIELDS}
        if not updates:
            raise ValueError("No syncable booking fields in change")
        for attr, value in updates.items():
            setattr(booking, attr, value)
        booking.updated_at = now_iso()
        booking.sync_version = (booking.sync_version or 0) + 1
        record_sync_event(session, "booking_updated", "booking", booking.id, actor, payload, platform="mobile")
        return
    assignment = session.query(JobAssignmentModel).filter_by(id=change.get("id")).first()
    if not assignment:
        raise NotFoundError("Assignment not found")
    if staff_id and assignment.staff_id != staff_id:
        raise ConflictError("Assignment belongs to another staff member")
    status = payload.get("status")
    if status is not None and status not in MOBILE_ASSIGNMENT_STATUSES:
        raise ValueError(f"Unsupported assignment status: {status}")
    _apply_assignment_update(
        session, assignment,
        status=status,
        updated_by=actor,
        notes=payload.get("notes"),
        photos=payload.get("photos"),
        time_spent=payload.get("timeSpent"),
    )


def apply_mobile_sync(data):
    """Applies queued offline changes one by one, then returns what changed since lastSyncTimestamp."""
    last_sync = data.get("lastSyncTimestamp")
    if isinstance(last_sync, bool) or not isinstance(last_sync, (int, float)) or not 0 <= last_sync <= MAX_SYNC_TIMESTAMP_MS:
        return service_error("lastSyncTimestamp must be a non-negative number (ms)", 400)
    if data.get("platform") != "mobile":
        return service_error("platform must be 'mobile'", 400)
    pending = data.get("pendingChanges") or {}
    if not isinstance(pending, dict):
        return service_error("pendingChanges must be an object", 400)
    staff_id = data.get("staffId")
    actor = staff_id or data.get("deviceId") or "mobile"
    since = iso_from_ms(last_sync)

    applied = 0
    conflicts = []
    touched_jobs = []
    session = SessionLocal()
    try:
        for entity in ("bookings", "assignments"):
            for change in pending.get(entity) or []:
                # each change commits on its own so one bad change can't undo the others
                try:
                    _apply_sync_change(session, entity, change, actor, staff_id=staff_id)
                    session.commit()
                    applied += 1
                except (ValueError, TypeError, NotFoundError, ConflictError) as e:
                    session.rollback()
                    change_id = change.get("id") if isinstance(change, dict) else None
                    conflicts.append({"entity": entity, "id": change_id, "error": str(e)})

        bookings = (
            session.query(BookingModel)
            .filter(BookingModel.updated_at > since)
            .order_by(BookingModel.updated_at.desc())
            .limit(SYNC_BOOKING_LIMIT)
            .all()
        )
        assignment_query = session.query(JobAssignmentModel).filter(JobAssignmentModel.updated_at > since)
        if staff_id:
            assignment_query = assignment_query.filter_by(staff_id=staff_id)
        assignments = assignment_query.order_by(JobAssignmentModel.updated_at.desc()).limit(SYNC_ASSIGNMENT_LIMIT).all()
        properties = session.query(PropertyModel).filter_by(active=1).limit(SYNC_PROPERTY_LIMIT).all()
        if applied:
            job_ids = {a.job_id for a in assignments}
            touched_jobs = [
                job_to_dict(j) for j in
                session.query(OperationalJobModel).filter(OperationalJobModel.id.in_(job_ids)).all()
            ] if job_ids else []
        payload = {
            "bookings": [booking_to_dict(b) for b in bookings],
            "assignments": [assignment_to_dict(a) for a in assignments],
            "properties": [property_to_dict(p) for p in properties],
        }
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    for job_dict in touched_jobs:
        publish_job_update(job_dict)
    print(f"[Sync] {actor}: applied {applied}, conflicts {len(conflicts)}")
    return {
        "success": True,
        "data": payload,
        "syncTimestamp": now_ms(),
        "conflicts": conflicts,
        "stats": {
            "appliedChanges": applied,
            "failedChanges": len(conflicts),
            "bookings": len(payload["bookings"]),
            "assignments": len(payload["assignments"]),
            "properties": len(payload["properties"]),
        },
    }


def record_staff_location(data):
    staff_id = data.get("staffId")
    if not staff_id:
        return service_error("staffId is required", 400)
    if not _valid_coordinates(data.get("lat"), data.get("lng")):
        return service_error("lat and lng must be valid coordinates", 400)
    session = SessionLocal()
    try:
        staff = session.query(StaffAccountModel).filter_by(id=staff_id).first()
        if not staff:
            return service_error("Staff member not found", 404)
        _update_staff_location(session, staff, float(data["lat"]), float(data["lng"]))
        session.commit()
        location = {"staffId": staff.id, "lat": staff.last_lat, "lng": staff.last_lng, "updatedAt": staff.last_location_at}
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    broadcast_event("staff_location", location)
    return {"success": True, "location": location}


def allowed_photo(filename):
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_PHOTO_EXTENSIONS


def save_job_photo(job_id, file_storage, staff_id=None):
    if not file_storage or not file_storage.filename:
        return service_error("photo file is required", 400)
    if not allowed_photo(file_storage.filename):
        return service_error(f"Unsupported file type; allowed: {', '.join(sorted(ALLOWED_PHOTO_EXTENSIONS))}", 400)
    session = SessionLocal()
    try:
        job = session.query(OperationalJobModel).filter_by(id=job_id).first()
        if not job:
            return service_error("Job not found", 404)
        if staff_id and job.assigned_staff_id != staff_id:
            return service_error("Job is not assigned to this staff member", 403)
        folder = os.path.join(UPLOAD_ROOT, "jobs", job.id)
        os.makedirs(folder, exist_ok=True)
        filename = f"{uuid.uuid4().hex[:8]}_{secure_filename(file_storage.filename)}"
        file_storage.save(os.path.join(folder, filename))
        url = f"{API_BASE_URL}/uploads/jobs/{job.id}/{filename}"
        job.completion_photos = dump_json(load_json(job.completion_photos, []) + [url])
        _touch_job(job)
        record_audit(session, "job_photo_uploaded", "job", job.id, staff_id or "mobile", {"url": url})
        session.commit()
        job_dict = job_to_dict(job)
    except SQLAlchemyError:
        session.rollback()
        raise
    finally:
        session.close()
    publish_job_update(job_dict)
    return {"success": True, "url": url, "job": job_dict}


# ══════════════════════════════════════════════════════════════════════════════
# REPORTS
# ══════════════════════════════════════════════════════════════════════════════

def generate_operations_report(days=1, now=None):
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=days)

    def in_window(value):
        moment = parse_iso_datetime(value)
        return bool(moment and since <= moment <= now)

    session = SessionLocal()
    try:
        jobs = session.query(OperationalJobModel).all()
        bookings = session.query(BookingModel).all()
        ai_logs = session.query(AILogModel).all()
        overrides = session.query(AIOverrideModel).all()
        staff_names = {s.id: s.name for s in session.query(StaffAccountModel).all()}
    finally:
        session.close()

    created = [j for j in jobs if in_window(j.created_at)]
    completed = [j for j in jobs if j.status in ("completed", "verified") and in_window(j.completed_at)]
    cancelled = [j for j in jobs if j.status == "cancelled" and in_window(j.updated_at)]
    durations = []
    per_staff = {}
    for job in completed:
        started = parse_iso_datetime(job.started_at)
        finished = parse_iso_datetime(job.completed_at)
        minutes = (finished - started).total_seconds() / 60.0 if started and finished else None
        if minutes is not None:
            durations.append(minutes)
        bucket = per_staff.setdefault(job.assigned_staff_id or "unassigned", {"completed": 0, "minutes": []})
        bucket["completed"] += 1
        if minutes is not None:
            bucket["minutes"].append(minutes)
    approved = [b for b in bookings if b.approved_at and in_window(b.approved_at)]
    rejected = [b for b in bookings if b.rejected_at and b.status == "rejected" and in_window(b.rejected_at)]
    window_logs = [entry for entry in ai_logs if in_window(entry.created_at)]
    return {
        "period": {"start": since.isoformat(), "end": now.isoformat(), "days": days},
        "jobs": {
            "created": len(created),
            "completed": len(completed),
            "cancelled": len(cancelled),
            "averageCompletionMinutes": round(sum(durations) / len(durations), 1) if durations else None,
            "openEscalations": sum(1 for j in jobs if j.escalation_required and j.status not in CLOSED_JOB_STATUSES),
        },
        "staff": sorted(
            [
                {
                    "staffId": staff_id,
                    "name": staff_names.get(staff_id, staff_id),
                    "completed": bucket["completed"],
                    "averageMinutes": round(sum(bucket["minutes"]) / len(bucket["minutes"]), 1) if bucket["minutes"] else None,
                }
                for staff_id, bucket in per_staff.items()
            ],
            key=lambda s: -s["completed"],
        ),
        "bookings": {
            "approved": len(approved),
            "rejected": len(rejected),
            "revenue": round(sum(b.total_amount or 0 for b in approved), 2),
        },
        "ai": {
            "decisions": len(window_logs),
            "escalations": sum(1 for entry in window_logs if entry.escalate),
            "overrides": sum(1 for o in overrides if in_window(o.created_at)),
        },
        "generatedAt": now.isoformat(),
    }


def format_report_message(report):
    jobs = report["jobs"]
    bookings = report["bookings"]
    lines = [
        f"📊 Villa ops report ({report['period']['days']} day(s))",
        f"Jobs: {jobs['created']} created, {jobs['completed']} completed, {jobs['cancelled']} cancelled",
        f"Bookings: {bookings['approved']} approved, {bookings['rejected']} rejected, ฿{bookings['revenue']:,.0f} revenue",
        f"AI: {report['ai']['decisions']} decisions, {report['ai']['escalations']} escalations",
    ]
    if jobs["openEscalations"]:
        lines.append(f"⚠️ {jobs['openEscalations']} open escalation(s)")
    top = report["staff"][:3]
    if top:
        lines.append("Top staff: " + ", ".join(f"{s['name']} ({s['completed']})" for s in top))
    return "\n".join(lines)



WEEKLY_REPORT_STARTED = False
WEEKLY_REPORT_LOCK = threading.Lock()


def send_weekly_report(days=7):
    report = generate_operations_report(days=days)
    if not ADMIN_PHONE:
        return {"success": False, "error": "ADMIN_PHONE not configured", "report": report}
    result = send_whatsapp(ADMIN_PHONE, format_report_message(report))
    print(f"[WeeklyReport] WhatsApp → {ADMIN_PHONE}: {'✅' if result.get('success') else '❌ ' + str(result.get('error'))}")
    return {"success": bool(result.get("success")), "error": result.get("error"), "report": report}


def weekly_report_loop():
    """Fires every Sunday at 09:00 UTC."""
    last_sent_week = -1
    while True:
        time.sleep(300)
        now = datetime.now(timezone.utc)
        if now.weekday() == 6 and now.hour == 9 and now.isocalendar()[1] != last_sent_week:
            last_sent_week = now.isocalendar()[1]
            try:
                send_weekly_report()
            except Exception as e:
                print(f"[WeeklyReport] error: {e}")


def start_weekly_report_scheduler():
    global WEEKLY_REPORT_STARTED
    with WEEKLY_REPORT_LOCK:
        if WEEKLY_REPORT_STARTED:
            return
        threading.Thread(target=weekly_report_loop, daemon=True, name="WeeklyReportScheduler").start()
        WEEKLY_REPORT_STARTED = True


# ══════════════════════════════════════════════════════════════════════════════
# HTTP API
# ══════════════════════════════════════════════════════════════════════════════

def service_response(result, success_status=200):
    """Maps a service dict onto a Flask response."""
    if result.get("success"):
        return jsonify(result), success_status
    return error_response(result.get("error") or "Request failed", result.get("code", 400), result.get("details"))


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    """JSON body for every unhandled error. Route sessions are closed in their
    finally blocks, which rolls back anything uncommitted."""
    if isinstance(e, HTTPException):
        return error_response(e.description or e.name, e.code or 500)
    print(f"[Error] {request.method} {request.path}: {type(e).__name__}: {e}")
    traceback.print_exc()
    return error_response(str(e) or type(e).__name__, 500)


def _int_arg(name, default, minimum=0, maximum=None):
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


def _bool_arg(name, default=False):
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")


def current_actor():
    return getattr(g, "user_id", None) or "admin"


@app.route("/uploads/<path:filename>", methods=["GET"])
def serve_uploads(filename):
    """Job completion photos: /uploads/jobs/<job_id>/<file>."""
    return send_from_directory(UPLOAD_ROOT, filename)


@app.route("/health", methods=["GET"])
def health():
    db_ready = True
    try:
        with ENGINE.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        print("[health] database check failed:", e)
        db_ready = False
    return jsonify({
        "ok": db_ready,
        "time": now_iso(),
        "db_ready": db_ready,
        "whatsapp_ready": bool(TWILIO_SIMULATE or (TWILIO_CLIENT and os.getenv("TWILIO_WHATSAPP_FROM"))),
        "twilio_simulate": TWILIO_SIMULATE,
        "gemini_configured": bool(_GEMINI_CLIENT),
        "auth_enabled": not AUTH_DISABLED,
        "background_workers": BACKGROUND_WORKERS,
    }), 200 if db_ready else 503


@app.route("/api/activity-feed", methods=["GET"])
def activity_feed():
    """Recent outbound messages and escalations. ?since=<unix_ms> returns only newer entries."""
    try:
        since_ms = float(request.args.get("since", 0) or 0)
    except ValueError:
        return error_response("since must be a unix timestamp in ms", 400)
    events = [e for e in _ACTIVITY_LOG if e.get("ts", 0) > since_ms]
    return jsonify({"events": events, "server_ts": now_ms()})


# ── Auth ─────────────────────────────────────────────────────────────────

@app.route("/api/auth/register", methods=["POST"])
def auth_register():
    """The first user becomes admin; after that only an admin token may register users."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not EMAIL_RE.match(email):
        return error_response("A valid email is required", 400)
    if len(password) < 8:
        return error_response("Password must be at least 8 characters", 400)
    session = SessionLocal()
    try:
        has_users = session.query(UserModel).count() > 0
        role = "admin"
        if has_users:
            if not AUTH_DISABLED:
                try:
                    payload = get_auth_context_from_request()
                except ValueError as e:
                    return error_response(str(e), 401)
                if payload.get("role") != "admin":
                    return error_response("Admin access required", 403)
            role = data.get("role") if data.get("role") in ("admin", "manager") else "manager"
        if session.query(UserModel).filter_by(email=email).first():
            return error_response("Email already registered", 409)
        user = UserModel(
            id=str(uuid.uuid4()),
            email=email,
            name=(data.get("name") or "").strip() or None,
            password_hash=hash_password(password),
            role=role,
            created_at=now_iso(),
        )
        session.add(user)
        record_audit(session, "user_registered", "user", user.id, user.id, {"role": role})
        session.commit()
        return jsonify({"success": True, "token": issue_token(user.id, role), "role": role, "userId": user.id}), 201
    except SQLAlchemyError as e:
        session.rollback()
        print("[auth_register] DB_ERROR:", e)
        return error_response("Could not register user", 500)
    finally:
        session.close()


@app.route("/api/auth/login", methods=["POST"])
def auth_login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email:
        return error_response("Email required", 400)
    session = SessionLocal()
    try:
        user = session.query(UserModel).filter_by(email=email).first()
    finally:
        session.close()
    if not user or not verify_password(user.password_hash, password):
        return error_response("Invalid credentials", 401)
    return jsonify({"success": True, "token": issue_token(user.id, user.role), "role": user.role, "userId": user.id})


@app.route("/api/mobile/auth/login", methods=["POST"])
@require_mobile_auth
def mobile_login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    if not email or not data.get("password"):
        return error_response("email and password are required", 400)
    session = SessionLocal()
    try:
        staff = session.query(StaffAccountModel).filter_by(email=email).first()
        if not staff or not verify_password(staff.password_hash, data.get("password")):
            return error_response("Invalid credentials", 401)
        if not staff.is_active or staff.is_suspended:
            return error_response("Account is not active", 403)
        if data.get("pushToken"):
            staff.push_token = data["pushToken"]
            staff.updated_at = now_iso()
            session.commit()
        return jsonify({"success": True, "token": issue_token(staff.id, "staff"), "staff": staff_to_dict(staff)})
    finally:
        session.close()


# ── Properties ───────────────────────────────────────────────────────────

def _clean_requirements(value):
    if not isinstance(value, list):
        raise ValueError("requirements must be an array of strings")
    cleaned = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if len(cleaned) != len(value):
        raise ValueError("requirements must only contain non-empty strings")
    return cleaned


def _apply_property_fields(prop, data):
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValueError("name cannot be empty")
        prop.name = name
    for key, attr in (("address", "address"), ("accessInstructions", "access_instructions"),
                      ("parkingInstructions", "parking_instructions")):
        if key in data:
            setattr(prop, attr, data.get(key))
    coordinates = data.get("coordinates")
    if coordinates is not None:
        if not isinstance(coordinates, dict) or not _valid_coordinates(coordinates.get("lat"), coordinates.get("lng")):
            raise ValueError("coordinates must contain valid lat and lng")
        prop.lat = float(coordinates["lat"])
        prop.lng = float(coordinates["lng"])
    if "maxOccupancy" in data:
        occupancy = _to_number(data.get("maxOccupancy"), int)
        if occupancy is not None and occupancy <= 0:
            raise ValueError("maxOccupancy must be positive")
        prop.max_occupancy = occupancy
    if "minStay" in data:
        min_stay = _to_number(data.get("minStay"), int) or 1
        if min_stay < 1:
            raise ValueError("minStay must be at least 1")
        prop.min_stay = min_stay
    if "requirements" in data:
        prop.requirements = dump_json(_clean_requirements(data.get("requirements")))
    if "icalUrl" in data:
        url = (data.get("icalUrl") or "").strip() or None
        if url and not url.lower().startswith(("http://", "https://")):
            raise ValueError("icalUrl must be an http(s) URL")
        prop.ical_url = url
    if "active" in data:
        prop.active = 1 if data.get("active") else 0


@app.route("/api/properties", methods=["GET", "POST"])
@require_auth
def properties_collection():
    session = SessionLocal()
    try:
        if request.method == "GET":
            query = session.query(PropertyModel)
            if not _bool_arg("includeInactive"):
                query = query.filter_by(active=1)
            return jsonify({"success": True, "properties": [property_to_dict(p) for p in query.order_by(PropertyModel.name).all()]})
        data = request.get_json(silent=True) or {}
        if not (data.get("name") or "").strip():
            return error_response("name is required", 400)
        stamp = now_iso()
        prop = PropertyModel(id=data.get("id") or str(uuid.uuid4()), active=1, min_stay=1, created_at=stamp, updated_at=stamp)
        if session.query(PropertyModel).filter_by(id=prop.id).first():
            return error_response("Property id already exists", 409)
        _apply_property_fields(prop, data)
        session.add(prop)
        record_audit(session, "property_created", "property", prop.id, current_actor(), {"name": prop.name})
        session.commit()
        return jsonify({"success": True, "property": property_to_dict(prop)}), 201
    except ValueError as e:
        session.rollback()
        return error_response(str(e), 400)
    except SQLAlchemyError as e:
        session.rollback()
        print("[properties] DB_ERROR:", e)
        return error_response("Database error", 500)
    finally:
        session.close()


@app.route("/api/properties/<property_id>", methods=["GET", "PATCH"])
@require_auth
def property_detail(property_id):
    session = SessionLocal()
    try:
        prop = session.query(PropertyModel).filter_by(id=property_id).first()
        if not prop:
            return error_response("Property not found", 404)
        if request.method == "PATCH":
            data = request.get_json(silent=True) or {}
            _apply_property_fields(prop, data)
            prop.updated_at = now_iso()
            record_audit(session, "property_updated", "property", prop.id, current_actor(), {"fields": sorted(data.keys())})
            session.commit()
        return jsonify({"success": True, "property": property_to_dict(prop)})
    except ValueError as e:
        session.rollback()
        return error_response(str(e), 400)
    except SQLAlchemyError as e:
        session.rollback()
        print("[properties] DB_ERROR:", e)
        return error_response("Database error", 500)
    finally:
        session.close()


@app.route("/api/properties/<property_id>/requirements", methods=["GET", "PUT"])
@require_auth
def property_requirements(property_id):
    session = SessionLocal()
    try:
        prop = session.query(PropertyModel).filter_by(id=property_id).first()
        if not prop:
            return error_response("Property not found", 404)
        if request.method == "PUT":
            data = request.get_json(silent=True) or {}
            prop.requirements = dump_json(_clean_requirements(data.get("requirements")))
            prop.updated_at = now_iso()
            record_audit(session, "property_requirements_updated", "property", prop.id, current_actor())
            session.commit()
        return jsonify({"success": True, "propertyId": prop.id, "requirements": load_json(prop.requirements, [])})
    except ValueError as e:
        session.rollback()
        return error_response(str(e), 400)
    finally:
        session.close()


# ── Staff ────────────────────────────────────────────────────────────────

STAFF_ROLES = ("cleaner", "housekeeper", "inspector", "supervisor", "maintenance", "manager")
AVAILABILITY_STATUSES = ("available", "busy", "off_duty")


def _apply_staff_fields(staff, data):
    if "name" in data:
        if not (data.get("name") or "").strip():
            raise ValueError("name cannot be empty")
        staff.name = data["name"].strip()
    if "role" in data:
        if data.get("role") not in STAFF_ROLES:
            raise ValueError(f"role must be one of: {', '.join(STAFF_ROLES)}")
        staff.role = data["role"]
    if "email" in data:
        email = (data.get("email") or "").strip().lower() or None
        if email and not EMAIL_RE.match(email):
            raise ValueError("Invalid email format")
        staff.email = email
    if "phone" in data:
        staff.phone = data.get("phone")
    if "skills" in data:
        skills = data.get("skills") or []
        if not isinstance(skills, list) or not all(isinstance(s, str) for s in skills):
            raise ValueError("skills must be an array of strings")
        staff.skills = dump_json([s.strip().lower() for s in skills if s.strip()])
    if "pushToken" in data:
        staff.push_token = data.get("pushToken") or None
    if "password" in data and data.get("password"):
        if len(data["password"]) < 6:
            raise ValueError("password must be at least 6 characters")
        staff.password_hash = hash_password(data["password"])
    if "isActive" in data:
        staff.is_active = 1 if data.get("isActive") else 0
    if "isSuspended" in data:
        staff.is_suspended = 1 if data.get("isSuspended") else 0
    if "availabilityStatus" in data:
        if data.get("availabilityStatus") not in AVAILABILITY_STATUSES:
            raise ValueError(f"availabilityStatus must be one of: {', '.join(AVAILABILITY_STATUSES)}")
        staff.availability_status = data["availabilityStatus"]


@app.route("/api/staff", methods=["GET", "POST"])
@require_auth
def staff_collection():
    session = SessionLocal()
    try:
        if request.method == "GET":
            query = session.query(StaffAccountModel)
            if request.args.get("role"):
                query = query.filter_by(role=request.args["role"])
            if request.args.get("availability"):
                query = query.filter_by(availability_status=request.args["availability"])
            if not _bool_arg("includeInactive"):
                query = query.filter_by(is_active=1)
            return jsonify({"success": True, "staff": [staff_to_dict(s) for s in query.order_by(StaffAccountModel.name).all()]})
        data = request.get_json(silent=True) or {}
        if not (data.get("name") or "").strip() or not data.get("role"):
            return error_response("name and role are required", 400)
        stamp = now_iso()
        staff = StaffAccountModel(id=str(uuid.uuid4()), is_active=1, is_suspended=0, availability_status="available",
                                  skills=dump_json([]), created_at=stamp, updated_at=stamp)
        _apply_staff_fields(staff, data)
        if staff.email and session.query(StaffAccountModel).filter_by(email=staff.email).first():
            return error_response("Email already registered", 409)
        session.add(staff)
        record_audit(session, "staff_created", "staff", staff.id, current_actor(), {"role": staff.role})
        session.commit()
        return jsonify({"success": True, "staff": staff_to_dict(staff)}), 201
    except ValueError as e:
        session.rollback()
        return error_response(str(e), 400)
    except SQLAlchemyError as e:
        session.rollback()
        print("[staff] DB_ERROR:", e)
        return error_response("Database error", 500)
    finally:
        session.close()


@app.route("/api/staff/<staff_id>", methods=["GET", "PATCH", "DELETE"])
@require_auth
def staff_detail(staff_id):
    session = SessionLocal()
    try:
        staff = session.query(StaffAccountModel).filter_by(id=staff_id).first()
        if not staff:
            return error_response("Staff member not found", 404)
        if request.method == "PATCH":
            data = request.get_json(silent=True) or {}
            old_email = staff.email
            _apply_staff_fields(staff, data)
            if staff.email and staff.email != old_email and \
                    session.query(StaffAccountModel).filter(StaffAccountModel.email == staff.email, StaffAccountModel.id != staff.id).first():
                session.rollback()
                return error_response("Email already registered", 409)
            staff.updated_at = now_iso()
            record_audit(session, "staff_updated", "staff", staff.id, current_actor(),
                         {"fields": sorted(k for k in data.keys() if k != "password")})
            session.commit()
        elif request.method == "DELETE":
            staff.is_active = 0
            staff.availability_status = "off_duty"
            staff.updated_at = now_iso()
            record_audit(session, "staff_deactivated", "staff", staff.id, current_actor())
            session.commit()
        return jsonify({"success": True, "staff": staff_to_dict(staff)})
    except ValueError as e:
        session.rollback()
        return error_response(str(e), 400)
    finally:
        session.close()


@app.route("/api/staff/<staff_id>/availability", methods=["POST"])
@require_auth
def staff_availability(staff_id):
    data = request.get_json(silent=True) or {}
    status = data.get("status")
    if status not in AVAILABILITY_STATUSES:
        return error_response(f"status must be one of: {', '.join(AVAILABILITY_STATUSES)}", 400)
    session = SessionLocal()
    try:
        staff = session.query(StaffAccountModel).filter_by(id=staff_id).first()
        if not staff:
            return error_response("Staff member not found", 404)
        staff.availability_status = status
        staff.updated_at = now_iso()
        record_audit(session, "staff_availability", "staff", staff.id, current_actor(), {"status": status})
        session.commit()
        staff_dict = staff_to_dict(staff)
    finally:
        session.close()
    broadcast_event("staff_updated", staff_dict)
    return jsonify({"success": True, "staff": staff_dict})


@app.route("/api/staff/<staff_id>/jobs", methods=["GET"])
@require_auth
def staff_jobs(staff_id):
    session = SessionLocal()
    try:
        if not session.query(StaffAccountModel).filter_by(id=staff_id).first():
            return error_response("Staff member not found", 404)
        query = session.query(OperationalJobModel).filter_by(assigned_staff_id=staff_id)
        if not _bool_arg("includeCompleted"):
            query = query.filter(OperationalJobModel.status.notin_(CLOSED_JOB_STATUSES))
        jobs = query.order_by(OperationalJobModel.scheduled_start.asc()).all()
        return jsonify({"success": True, "jobs": [job_to_dict(j) for j in jobs]})
    finally:
        session.close()


# ── Bookings ─────────────────────────────────────────────────────────────

@app.route("/api/bookings", methods=["GET", "POST"])
@require_auth
def bookings_collection():
    if request.method == "POST":
        return service_response(create_booking(request.get_json(silent=True) or {}, created_by=current_actor()), 201)
    try:
        limit = _int_arg("limit", 100, minimum=1, maximum=500)
    except ValueError as e:
        return error_response(str(e), 400)
    session = SessionLocal()
    try:
        query = session.query(BookingModel)
        status = request.args.get("status")
        if status:
            if status not in BOOKING_STATUSES:
                return error_response(f"status must be one of: {', '.join(BOOKING_STATUSES)}", 400)
            query = query.filter_by(status=status)
        property_id = request.args.get("property_id") or request.args.get("propertyId")
        if property_id:
            query = query.filter_by(property_id=property_id)
        bookings = query.order_by(BookingModel.check_in_date.asc()).limit(limit).all()
        return jsonify({"success": True, "bookings": [booking_to_dict(b) for b in bookings]})
    finally:
        session.close()


@app.route("/api/bookings/<booking_id>", methods=["GET"])
@require_auth
def booking_detail(booking_id):
    session = SessionLocal()
    try:
        booking = session.query(BookingModel).filter_by(id=booking_id).first()
        if not booking:
            return error_response("Booking not found", 404)
        approvals = (
            session.query(BookingApprovalModel)
            .filter_by(booking_id=booking_id)
            .order_by(BookingApprovalModel.created_at.asc())
            .all()
        )
        jobs = session.query(OperationalJobModel).filter_by(booking_id=booking_id).all()
        return jsonify({
            "success": True,
            "booking": booking_to_dict(booking),
            "approvals": [
                {"action": a.action, "adminId": a.admin_id, "adminName": a.admin_name, "notes": a.notes,
                 "reason": a.reason, "previousStatus": a.previous_status, "newStatus": a.new_status, "createdAt": a.created_at}
                for a in approvals
            ],
            "jobs": [job_to_dict(j) for j in jobs],
        })
    finally:
        session.close()


@app.route("/api/bookings/approve", methods=["POST"])
@require_auth
def booking_approve():
    data = request.get_json(silent=True) or {}
    if not data.get("bookingId"):
        return error_response("bookingId is required", 400)
    result = set_booking_decision(
        data["bookingId"],
        data.get("action"),
        admin_id=data.get("adminId") or current_actor(),
        admin_name=data.get("adminName"),
        notes=data.get("notes"),
        reason=data.get("reason"),
    )
    if result.get("success"):
        result["createdJobIds"] = [j["id"] for j in result["createdJobs"]]
    return service_response(result)


@app.route("/api/bookings/assign-staff", methods=["POST"])
@require_auth
def booking_assign_staff():
    return service_response(assign_staff_to_booking(request.get_json(silent=True) or {}), 201)


@app.route("/api/bookings/<booking_id>/ai-review", methods=["POST"])
@require_auth
def booking_ai_review(booking_id):
    data = request.get_json(silent=True) or {}
    return service_response(review_booking_with_ai(booking_id, dry_run=bool(data.get("dryRun"))))


@app.route("/api/pms-webhook", methods=["GET", "POST"])
def pms_webhook():
    if request.method == "GET":
        return jsonify({
            "endpoint": "/api/pms-webhook",
            "method": "POST",
            "headers": ["x-webhook-token", "x-webhook-timestamp"],
            "actions": list(PMS_ACTIONS),
            "sources": list(PMS_ALLOWED_SOURCES),
            "requiredFields": ["externalBookingId", "source", "action"],
            "createFields": ["propertyId", "guestName", "checkInDate", "checkOutDate"],
            "configured": bool(PMS_WEBHOOK_SECRET),
        })
    error = verify_webhook_request(request.headers)
    if error:
        print("[PMS] rejected webhook:", error)
        return error_response(error, 401)
    body, status = process_pms_webhook(request.get_json(silent=True) or {})
    if not body.get("success"):
        return error_response(body.get("error"), status)
    return jsonify(body), status


# ── Jobs ─────────────────────────────────────────────────────────────────

JOB_EDITABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "specialInstructions": "special_instructions",
}


@app.route("/api/jobs", methods=["GET", "POST"])
@require_auth
def jobs_collection():
    if request.method == "POST":
        data = request.get_json(silent=True) or {}
        session = SessionLocal()
        try:
            job = build_job(session, data, created_by=current_actor())
            session.flush()
            staff_id = data.get("staffId")
            if staff_id:
                staff = session.query(StaffAccountModel).filter_by(id=staff_id).first()
                if not staff:
                    session.rollback()
                    return error_response("Staff member not found", 404)
                assign_job_to_staff(session, job, staff, current_actor())
            session.commit()
            job_dict = job_to_dict(job)
        except ValueError as e:
            session.rollback()
            return error_response(str(e), 400)
        except NotFoundError as e:
            session.rollback()
            return error_response(str(e), 404)
        except ConflictError as e:
            session.rollback()
            return error_response(str(e), 409)
        finally:
            session.close()
        if job_dict["assignedStaffId"]:
            send_notification(job_dict["assignedStaffId"], "New job assigned",
                              f"{job_dict['title']} on {job_dict['scheduledDate'] or 'an upcoming day'}",
                              kind="job_assigned", data={"jobId": job_dict["id"]})
        publish_job_update(job_dict)
        return jsonify({"success": True, "job": job_dict}), 201

    try:
        limit = _int_arg("limit", 100, minimum=1, maximum=500)
    except ValueError as e:
        return error_response(str(e), 400)
    session = SessionLocal()
    try:
        query = session.query(OperationalJobModel)
        for arg, column in (("status", "status"), ("staff_id", "assigned_staff_id"),
                            ("property_id", "property_id"), ("booking_id", "booking_id")):
            if request.args.get(arg):
                query = query.filter(getattr(OperationalJobModel, column) == request.args[arg])
        jobs = query.order_by(OperationalJobModel.scheduled_start.asc()).limit(limit).all()
        if _bool_arg("prioritized"):
            scored, _ = prioritize_jobs(session, jobs)
            payload = [dict(job_to_dict(job), priorityScore=priority) for job, priority in scored]
        else:
            payload = [job_to_dict(j) for j in jobs]
        return jsonify({"success": True, "jobs": payload})
    finally:
        session.close()


@app.route("/api/jobs/prioritized", methods=["GET"])
@require_auth
def jobs_prioritized():
    session = SessionLocal()
    try:
        scored, bookings = prioritize_jobs(session)
        return jsonify({
            "success": True,
            "jobs": [dict(job_to_dict(job), priorityScore=priority) for job, priority in scored],
            "revenueAtRisk": calculate_revenue_at_risk(scored, bookings),
            "generatedAt": now_iso(),
        })
    finally:
        session.close()


@app.route("/api/jobs/timeouts/run", methods=["POST"])
@require_auth
def jobs_timeouts_run():
    try:
        result = run_timeout_monitor()
    except Exception as e:
        return error_response(f"Timeout monitor failed: {e}", 500)
    return jsonify({"success": True, "result": result})


@app.route("/api/jobs/<job_id>", methods=["GET", "PATCH", "DELETE"])
@require_auth
def job_detail(job_id):
    session = SessionLocal()
    try:
        job = session.query(OperationalJobModel).filter_by(id=job_id).first()
        if not job:
            return error_response("Job not found", 404)
        if request.method == "GET":
            return jsonify({"success": True, "job": job_to_dict(job)})
        if request.method == "DELETE":
            transition_job_status(session, job, "cancelled", current_actor(), notes="Cancelled by admin")
        else:
            data = request.get_json(silent=True) or {}
            for key, attr in JOB_EDITABLE_FIELDS.items():
                if key in data:
                    setattr(job, attr, data[key])
            if "priority" in data:
                if data["priority"] not in JOB_PRIORITIES:
                    raise ValueError(f"priority must be one of: {', '.join(JOB_PRIORITIES)}")
                job.priority = data["priority"]
            if "requiredSkills" in data:
                job.required_skills = dump_json(data.get("requiredSkills") or [])
            if "estimatedDuration" in data:
                duration = _to_number(data["estimatedDuration"], int)
                if not duration or duration <= 0:
                    raise ValueError("estimatedDuration must be positive")
                job.estimated_duration = duration
            if "deadline" in data:
                if data["deadline"] and not parse_iso_datetime(data["deadline"]):
                    raise ValueError("deadline must be an ISO timestamp")
                job.deadline = data["deadline"]
            if "scheduledStart" in data or "scheduledDate" in data or "scheduledTime" in data:
                if data.get("scheduledStart"):
                    start = parse_iso_datetime(data["scheduledStart"])
                    if not start:
                        raise ValueError("scheduledStart must be an ISO timestamp")
                    job.scheduled_start = start.isoformat()
                    job.scheduled_date = start.astimezone(PROPERTY_TZ).date().isoformat()
                else:
                    scheduled_date = data.get("scheduledDate") or job.scheduled_date
                    if not parse_date(scheduled_date):
                        raise ValueError("scheduledDate must be YYYY-MM-DD")
                    job.scheduled_date = parse_date(scheduled_date).isoformat()
                    job.scheduled_time = data.get("scheduledTime", job.scheduled_time)
                    job.scheduled_start = compute_scheduled_start(job.scheduled_date, job.scheduled_time)
            if data.get("status"):
                transition_job_status(session, job, data["status"], current_actor(), notes=data.get("notes"))
            _touch_job(job)
            sync_job_calendar_event(session, job)
            record_audit(session, "job_updated", "job", job.id, current_actor(), {"fields": sorted(data.keys())})
        session.commit()
        job_dict = job_to_dict(job)
    except ValueError as e:
        session.rollback()
        return error_response(str(e), 400)
    except ConflictError as e:
        session.rollback()
        return error_response(str(e), 409)
    finally:
        session.close()
    publish_job_update(job_dict)
    return jsonify({"success": True, "job": job_dict})


@app.route("/api/jobs/<job_id>/assign", methods=["POST"])
@require_auth
def job_assign(job_id):
    data = request.get_json(silent=True) or {}
    if not data.get("staffId"):
        return error_response("staffId is required", 400)
    session = SessionLocal()
    try:
        job = session.query(OperationalJobModel).filter_by(id=job_id).first()
        if not job:
            return error_response("Job not found", 404)
        staff = session.query(StaffAccountModel).filter_by(id=data["staffId"]).first()
        if not staff:
            return error_response("Staff member not found", 404)
        assignment = assign_job_to_staff(session, job, staff, current_actor())
        session.commit()
        job_dict = job_to_dict(job)
        assignment_dict = assignment_to_dict(assignment)
    except ConflictError as e:
        session.rollback()
        return error_response(str(e), 409)
    finally:
        session.close()
    send_notification(job_dict["assignedStaffId"], "New job assigned",
                      f"{job_dict['title']} at {job_dict['propertyName'] or 'a property'} on {job_dict['scheduledDate']}",
                      kind="job_assigned", data={"jobId": job_id})
    publish_job_update(job_dict)
    return jsonify({"success": True, "job": job_dict, "assignment": assignment_dict})


# ── Offers & dispatch ────────────────────────────────────────────────────

@app.route("/api/offers", methods=["POST"])
@require_auth
def offers_create():
    data = request.get_json(silent=True) or {}
    if not data.get("jobId"):
        return error_response("jobId is required", 400)
    attempt = data.get("attemptNumber", 1)
    if isinstance(attempt, bool) or not isinstance(attempt, int):
        return error_response("attemptNumber must be an integer", 400)
    return service_response(create_offer(data["jobId"], created_by=current_actor(), attempt_number=attempt), 201)


@app.route("/api/offers/escalation-stats", methods=["GET"])
@require_auth
def offers_escalation_stats():
    return jsonify({"success": True, "stats": get_escalation_stats()})


@app.route("/api/offers/process-expired", methods=["POST"])
@require_auth
def offers_process_expired():
    return jsonify({"success": True, "result": process_expired_offers()})


@app.route("/api/offers/staff/<staff_id>", methods=["GET"])
@require_auth
def offers_for_staff(staff_id):
    return jsonify({"success": True, "offers": get_offers_for_staff(staff_id)})


@app.route("/api/offers/<offer_id>", methods=["GET"])
@require_auth
def offers_detail(offer_id):
    offer = get_offer(offer_id)
    if not offer:
        return error_response("Offer not found", 404)
    return jsonify({"success": True, "offer": offer})


@app.route("/api/offers/<offer_id>/accept", methods=["POST"])
@require_auth
def offers_accept(offer_id):
    data = request.get_json(silent=True) or {}
    return service_response(accept_offer(offer_id, data.get("staffId")))


@app.route("/api/offers/<offer_id>/decline", methods=["POST"])
@require_auth
def offers_decline(offer_id):
    data = request.get_json(silent=True) or {}
    if not data.get("staffId"):
        return error_response("staffId is required", 400)
    return service_response(decline_offer(offer_id, data["staffId"], data.get("reason")))


@app.route("/api/offers/<offer_id>/cancel", methods=["POST"])
@require_auth
def offers_cancel(offer_id):
    data = request.get_json(silent=True) or {}
    return service_response(cancel_offer(offer_id, data.get("reason"), cancelled_by=current_actor()))


def validate_dispatch_settings(data):
    errors = []
    unknown = sorted(set(data) - set(DEFAULT_DISPATCH_SETTINGS))
    if unknown:
        errors.append(f"Unknown settings: {', '.join(unknown)}")
    bounds = {"dispatchWindowDays": (1, 30), "offerExpiryMinutes": (1, 240), "maxAttempts": (1, 3)}
    for key, (low, high) in bounds.items():
        if key in data:
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
                errors.append(f"{key} must be an integer between {low} and {high}")
    if "autoDispatchEnabled" in data and not isinstance(data["autoDispatchEnabled"], bool):
        errors.append("autoDispatchEnabled must be a boolean")
    return errors


@app.route("/api/dispatch/settings", methods=["GET", "PUT"])
@require_auth
def dispatch_settings():
    if request.method == "PUT":
        data = request.get_json(silent=True) or {}
        errors = validate_dispatch_settings(data)
        if errors:
            return error_response("Invalid dispatch settings", 400, errors)
        settings = save_setting("dispatch", data, changed_by=current_actor())
    else:
        settings = get_dispatch_settings()
    return jsonify({"success": True, "settings": settings, "escalationLadderMinutes": ESCALATION_LADDER_MINUTES,
                    **get_setting_version("dispatch")})


@app.route("/api/dispatch/run", methods=["POST"])
@require_auth
def dispatch_run():
    return jsonify({"success": True, "result": dispatch_pending_jobs()})


# ── Calendar ─────────────────────────────────────────────────────────────

@app.route("/api/calendar/events", methods=["GET"])
@require_auth
def calendar_events():
    start = request.args.get("start")
    end = request.args.get("end")
    for name, value in (("start", start), ("end", end)):
        if value and not parse_iso_datetime(value):
            return error_response(f"{name} must be an ISO date", 400)
    events = list_calendar_events(
        start, end,
        property_id=request.args.get("property_id"),
        event_type=request.args.get("event_type"),
        include_cancelled=_bool_arg("includeCancelled", True),
    )
    return jsonify({"success": True, "events": [calendar_event_to_dict(e) for e in events]})


@app.route("/api/calendar/conflicts", methods=["GET"])
@require_auth
def calendar_conflicts():
    conflicts = detect_conflicts(request.args.get("property_id"), request.args.get("start"), request.args.get("end"))
    return jsonify({"success": True, "conflicts": conflicts, "count": len(conflicts)})


@app.route("/api/calendar/ical-import", methods=["POST"])
@require_auth
def calendar_ical_import():
    data = request.get_json(silent=True) or {}
    property_id = data.get("propertyId")
    ical_url = (data.get("icalUrl") or "").strip()
    if not property_id or not ical_url:
        return error_response("propertyId and icalUrl are required", 400)
    if not ical_url.lower().startswith(("http://", "https://")):
        return error_response("icalUrl must be an http(s) URL", 400)
    session = SessionLocal()
    try:
        prop = session.query(PropertyModel).filter_by(id=property_id).first()
        if not prop:
            return error_response("Property not found", 404)
        prop.ical_url = ical_url
        prop.updated_at = now_iso()
        session.commit()
    finally:
        session.close()
    try:
        result = sync_ical_for_property(property_id, force=True)
    except (OSError, ValueError) as e:
        print(f"[iCal] import failed for {property_id}: {e}")
        return error_response(f"Could not fetch calendar: {e}", 502)
    ICAL_LAST_SYNC[property_id] = time.time()
    return jsonify({"success": True, "result": result})


@app.route("/api/stream/jobs", methods=["GET"])
@require_auth
def stream_jobs():
    listener = subscribe_events()

    def event_stream():
        try:
            while True:
                try:
                    event = listener.get(timeout=STREAM_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {event['type']}\n"
                yield f"data: {json.dumps(event['payload'])}\n\n"
        finally:
            unsubscribe_events(listener)

    return Response(event_stream(), mimetype="text/event-stream")


# ── Mobile ───────────────────────────────────────────────────────────────

@app.route("/api/mobile/jobs", methods=["GET", "PATCH"])
@require_mobile_auth
def mobile_jobs():
    if request.method == "PATCH":
        return service_response(update_mobile_job(request.get_json(silent=True) or {}))
    try:
        limit = _int_arg("limit", 50, minimum=1, maximum=200)
    except ValueError as e:
        return error_response(str(e), 400)
    status = request.args.get("status")
    if status and status not in JOB_STATUS_TRANSITIONS:
        return error_response(f"Unknown job status: {status}", 400)
    jobs = list_mobile_jobs(
        staff_id=request.args.get("staffId"),
        status=status,
        limit=limit,
        include_completed=_bool_arg("includeCompleted"),
    )
    return jsonify({"success": True, "jobs": jobs, "count": len(jobs), "syncTimestamp": now_ms()})


@app.route("/api/mobile/jobs/<job_id>/photos", methods=["POST"])
@require_mobile_auth
def mobile_job_photo(job_id):
    return service_response(save_job_photo(job_id, request.files.get("photo"), request.form.get("staffId")), 201)


@app.route("/api/mobile/assignments/<assignment_id>", methods=["GET", "PATCH"])
@require_mobile_auth
def mobile_assignment(assignment_id):
    if request.method == "PATCH":
        return service_response(update_assignment(assignment_id, request.get_json(silent=True) or {}))
    assignment = get_assignment(assignment_id)
    if not assignment:
        return error_response("Assignment not found", 404)
    return jsonify({"success": True, "assignment": assignment})


@app.route("/api/mobile/sync", methods=["POST"])
@require_mobile_auth
def mobile_sync():
    return service_response(apply_mobile_sync(request.get_json(silent=True) or {}))


@app.route("/api/mobile/location", methods=["POST"])
@require_mobile_auth
def mobile_location():
    return service_response(record_staff_location(request.get_json(silent=True) or {}))


@app.route("/api/mobile/offers", methods=["GET"])
@require_mobile_auth
def mobile_offers():
    staff_id = request.args.get("staffId")
    if not staff_id:
        return error_response("staffId is required", 400)
    return jsonify({"success": True, "offers": get_offers_for_staff(staff_id), "syncTimestamp": now_ms()})


@app.route("/api/mobile/offers/<offer_id>/accept", methods=["POST"])
@require_mobile_auth
def mobile_offer_accept(offer_id):
    data = request.get_json(silent=True) or {}
    return service_response(accept_offer(offer_id, data.get("staffId")))


@app.route("/api/mobile/notifications", methods=["GET"])
@require_mobile_auth
def mobile_notifications():
    staff_id = request.args.get("staffId")
    if not staff_id:
        return error_response("staffId is required", 400)
    return jsonify({"success": True, "notifications": list_notifications(staff_id, _bool_arg("unread"), 50)})


# ── Notifications ────────────────────────────────────────────────────────

def list_notifications(recipient_id=None, unread_only=False, limit=50):
    session = SessionLocal()
    try:
        query = session.query(NotificationModel)
        if recipient_id:
            query = query.filter_by(recipient_id=recipient_id)
        if unread_only:
            query = query.filter(NotificationModel.read_at.is_(None))
        rows = query.order_by(NotificationModel.created_at.desc()).limit(limit).all()
        return [notification_to_dict(n) for n in rows]
    finally:
        session.close()


@app.route("/api/notifications", methods=["GET"])
@require_auth
def notifications_list():
    try:
        limit = _int_arg("limit", 50, minimum=1, maximum=500)
    except ValueError as e:
        return error_response(str(e), 400)
    recipient = request.args.get("recipient") or "admin"
    return jsonify({"success": True, "notifications": list_notifications(recipient, _bool_arg("unread"), limit)})


@app.route("/api/notifications/<notification_id>/read", methods=["POST"])
@require_auth
def notifications_read(notification_id):
    session = SessionLocal()
    try:
        notification = session.query(NotificationModel).filter_by(id=notification_id).first()
        if not notification:
            return error_response("Notification not found", 404)
        if not notification.read_at:
            notification.read_at = now_iso()
            session.commit()
        return jsonify({"success": True, "notification": notification_to_dict(notification)})
    finally:
        session.close()


# ── AI operations ────────────────────────────────────────────────────────

@app.route("/api/ai-coo", methods=["POST"])
@require_auth
def ai_coo():
    return service_response(ai_coo_recommend(request.get_json(silent=True) or {}, actor=current_actor()))


@app.route("/api/ai-cfo", methods=["GET", "POST"])
@require_auth
def ai_cfo():
    if request.method == "GET":
        return jsonify(get_cfo_status())
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response("Invalid expense data", 400, ["expenses array is required"])
    return service_response(run_cfo_analysis(data, actor=current_actor()))


@app.route("/api/ai-cfo/reports", methods=["GET", "POST"])
@require_auth
def ai_cfo_reports():
    if request.method == "POST":
        return service_response(generate_month_report(request.get_json(silent=True) or {}))
    try:
        months = _int_arg("months", 6, minimum=1, maximum=24)
    except ValueError as e:
        return error_response(str(e), 400)
    return jsonify(get_monthly_financial_reports(months))


@app.route("/api/ai/predict-day-operations", methods=["POST"])
@require_auth
def ai_predict_day_operations():
    data = request.get_json(silent=True) or {}
    raw = data.get("date")
    if raw is None:
        day = datetime.now(PROPERTY_TZ).date()
    else:
        day = parse_date(raw) if isinstance(raw, str) else None
        if not day:
            return error_response("date must be YYYY-MM-DD", 400)
    return jsonify(predict_day_operations(day))


@app.route("/api/ai-chat", methods=["POST"])
@require_auth
def ai_chat():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return error_response("message is required", 400)
    return service_response(ops_chat(data, actor=current_actor()))


@app.route("/api/ai-log", methods=["GET", "POST"])
@require_auth
def ai_log():
    if request.method == "POST":
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return error_response("Request body must be a JSON object", 400)
        errors = validate_ai_log_entry(body)
        if errors:
            return error_response("Validation failed", 400, errors)
        entry = log_ai_decision(
            agent=body["agent"],
            decision=body["decision"],
            confidence=body["confidence"],
            source=body["source"],
            escalate=body.get("escalate", False),
            notes=body.get("notes"),
            rationale=body.get("rationale"),
            status=body.get("status"),
            timestamp=body["timestamp"],
        )
        if entry["escalate"]:
            notify_admin(f"AI {entry['agent']} escalation", entry["decision"], kind="ai_escalation", data={"logId": entry["id"]})
        return jsonify({"success": True, "entry": entry}), 201
    try:
        limit = _int_arg("limit", 50, minimum=1, maximum=AI_LOG_LIMIT)
        offset = _int_arg("offset", 0)
    except ValueError as e:
        return error_response(str(e), 400)
    agent = request.args.get("agent")
    if agent and agent not in AI_AGENTS + ("all",):
        return error_response('agent must be "COO", "CFO" or "all"', 400)
    escalation = request.args.get("escalation")
    if escalation and escalation not in ("true", "false", "all"):
        return error_response('escalation must be "true", "false" or "all"', 400)
    entries, total = list_ai_logs(agent, escalation, limit, offset)
    return jsonify({"success": True, "entries": entries, "total": total, "limit": limit, "offset": offset,
                    "hasMore": offset + len(entries) < total})


@app.route("/api/ai-log/override", methods=["GET", "POST"])
@require_auth
def ai_log_override():
    if request.method == "POST":
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return error_response("Request body must be a JSON object", 400)
        errors = validate_override_request(body)
        if errors:
            return error_response("Validation failed", 400, errors)
        result = create_ai_override(body)
        return jsonify({"success": True, "overrideId": result["override"]["id"], **result}), 201
    try:
        limit = _int_arg("limit", 50, minimum=1, maximum=500)
        offset = _int_arg("offset", 0)
    except ValueError as e:
        return error_response(str(e), 400)
    overrides, total = list_ai_overrides(
        admin_user=request.args.get("adminUser"),
        action=request.args.get("action"),
        priority=request.args.get("priority"),
        log_id=request.args.get("logId"),
        limit=limit,
        offset=offset,
    )
    return jsonify({"success": True, "overrides": overrides, "total": total, "limit": limit, "offset": offset,
                    "hasMore": offset + len(overrides) < total})


@app.route("/api/ai-log/override/stats", methods=["GET"])
@require_auth
def ai_log_override_stats():
    return jsonify({"success": True, "stats": get_override_stats()})


@app.route("/api/ai-policy", methods=["GET", "POST", "PUT", "DELETE"])
@require_auth
def ai_policy():
    rules = get_company_rules()
    if request.method == "GET":
        return jsonify({"success": True, "rules": rules, **get_setting_version("companyRules")})
    data = request.get_json(silent=True) or {}
    if request.method == "POST":
        rule = (data.get("rule") or "").strip()
        if not rule:
            return error_response("rule is required", 400)
        if rule.lower() in (r.lower() for r in rules):
            return error_response("Rule already exists", 409)
        rules.append(rule)
    elif request.method == "PUT":
        new_rules = data.get("rules")
        if not isinstance(new_rules, list) or not all(isinstance(r, str) for r in new_rules):
            return error_response("rules must be an array of strings", 400)
        rules = []
        for rule in (r.strip() for r in new_rules):
            if rule and rule.lower() not in (r.lower() for r in rules):
                rules.append(rule)
    else:
        index = data.get("index", request.args.get("index"))
        if isinstance(index, str) and re.fullmatch(r"\d+", index.strip()):
            index = int(index)
        if isinstance(index, bool) or not isinstance(index, int):
            return error_response("index must be an integer", 400)
        if index < 0 or index >= len(rules):
            return error_response("Rule index out of range", 404)
        rules.pop(index)
    saved = save_setting("companyRules", {"rules": rules}, changed_by=current_actor(), replace=True)
    return jsonify({"success": True, "rules": saved["rules"]}), 201 if request.method == "POST" else 200


def validate_ai_settings(data):
    errors = []
    unknown = sorted(set(data) - set(DEFAULT_AI_SETTINGS))
    if unknown:
        errors.append(f"Unknown settings: {', '.join(unknown)}")
    numeric = {"temperature": (0, 2), "escalationThreshold": (0, 1), "maxTokens": (1, 8192),
               "timeoutMs": (1000, 120000), "retryAttempts": (0, 10), "confidenceBoost": (-50, 50)}
    for key, (low, high) in numeric.items():
        if key in data:
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not low <= value <= high:
                errors.append(f"{key} must be a number between {low} and {high}")
    for key in ("simulationMode", "debugMode"):
        if key in data and not isinstance(data[key], bool):
            errors.append(f"{key} must be a boolean")
    for key in ("fallbackMessage", "modelVersion", "customPromptSuffix"):
        if key in data and not isinstance(data[key], str):
            errors.append(f"{key} must be a string")
    for key in ("rateLimit", "security"):
        if key in data and not isinstance(data[key], dict):
            errors.append(f"{key} must be an object")
    return errors


@app.route("/api/ai-settings", methods=["GET", "PUT"])
@require_auth
def ai_settings():
    if request.method == "PUT":
        data = request.get_json(silent=True) or {}
        errors = validate_ai_settings(data)
        if errors:
            return error_response("Invalid AI settings", 400, errors)
        settings = save_setting("aiSettings", data, changed_by=current_actor())
    else:
        settings = get_setting("aiSettings")
    return jsonify({"success": True, "settings": settings, **get_setting_version("aiSettings")})


@app.route("/api/ai-settings/history", methods=["GET"])
@require_auth
def ai_settings_history():
    return jsonify({"success": True, "history": get_setting_history("aiSettings")})


@app.route("/api/ai-automation", methods=["GET", "PUT"])
@require_auth
def ai_automation():
    if request.method == "PUT":
        data = request.get_json(silent=True) or {}
        unknown = sorted(set(data) - set(DEFAULT_AI_AUTOMATION))
        if unknown:
            return error_response(f"Unknown settings: {', '.join(unknown)}", 400)
        if not all(isinstance(v, bool) for v in data.values()):
            return error_response("Automation toggles must be booleans", 400)
        settings = save_setting("aiAutomation", data, changed_by=current_actor())
    else:
        settings = get_setting("aiAutomation")
    return jsonify({"success": True, "settings": settings, **get_setting_version("aiAutomation")})


@app.route("/api/ai-audit/performance-summary", methods=["GET"])
@require_auth
def ai_performance_summary():
    return jsonify({"success": True, "summary": get_ai_performance_summary(), "overrides": get_override_stats()})


# ── Reports & audit ──────────────────────────────────────────────────────

@app.route("/api/reports/daily", methods=["GET"])
@require_auth
def report_daily():
    return jsonify({"success": True, "report": generate_operations_report(days=1)})


@app.route("/api/reports/weekly", methods=["GET"])
@require_auth
def report_weekly():
    try:
        days = _int_arg("days", 7, minimum=1, maximum=90)
    except ValueError as e:
        return error_response(str(e), 400)
    return jsonify({"success": True, "report": generate_operations_report(days=days)})


@app.route("/api/reports/weekly/send", methods=["POST"])
@require_auth
def report_weekly_send():
    result = send_weekly_report()
    if not result["success"]:
        return error_response(result.get("error") or "Send failed", 502)
    return jsonify(result)


@app.route("/api/audit", methods=["GET"])
@require_auth
def audit_trail():
    try:
        limit = _int_arg("limit", 100, minimum=1, maximum=1000)
    except ValueError as e:
        return error_response(str(e), 400)
    session = SessionLocal()
    try:
        query = session.query(AuditLogModel)
        for arg, column in (("entity_type", "entity_type"), ("entity_id", "entity_id"), ("action", "action"), ("actor", "actor")):
            if request.args.get(arg):
                query = query.filter(getattr(AuditLogModel, column) == request.args[arg])
        rows = query.order_by(AuditLogModel.created_at.desc()).limit(limit).all()
        return jsonify({"success": True, "entries": [
            {"id": r.id, "action": r.action, "entityType": r.entity_type, "entityId": r.entity_id,
             "actor": r.actor, "details": load_json(r.details, {}), "createdAt": r.created_at}
            for r in rows
        ]})
    finally:
        session.close()


# ══════════════════════════════════════════════════════════════════════════════
# STARTUP — background workers, CLI
# ══════════════════════════════════════════════════════════════════════════════

def start_background_workers():
    start_twilio_worker()
    start_dispatcher()
    start_timeout_monitor()
    start_calendar_syncer()
    start_weekly_report_scheduler()


@app.before_request
def init_background_tasks():
    global INIT_DONE
    if INIT_DONE:
        return
    with INIT_LOCK:
        if INIT_DONE:
            return
        init_db()
        if BACKGROUND_WORKERS:
            start_background_workers()
        INIT_DONE = True


def seed_demo_data():
    """Two villas on Koh Samui, one staff member per role and a pending booking."""
    session = SessionLocal()
    try:
        if session.query(PropertyModel).count():
            return False
        stamp = now_iso()
        demo_password = os.getenv("DEMO_STAFF_PASSWORD", "villa-demo-123")
        properties = [
            PropertyModel(id="villa-serenity", name="Villa Serenity", address="Chaweng Noi, Koh Samui",
                          lat=9.5120, lng=100.0600, max_occupancy=8, min_stay=2,
                          requirements=dump_json(["Pool cleaned", "Welcome basket", "AC filters checked"]),
                          access_instructions="Key box at the gate, code sent on assignment",
                          active=1, created_at=stamp, updated_at=stamp),
            PropertyModel(id="villa-azure", name="Villa Azure", address="Bophut Hills, Koh Samui",
                          lat=9.5560, lng=100.0250, max_occupancy=6, min_stay=3,
                          requirements=dump_json(["Linens changed", "Garden watered"]),
                          active=1, created_at=stamp, updated_at=stamp),
        ]
        staff = [
            ("Nok", "nok@villa-ops.local", "cleaner", ["cleaning"], 9.5300, 100.0500),
            ("Ploy", "ploy@villa-ops.local", "housekeeper", ["cleaning", "laundry"], 9.5400, 100.0450),
            ("Somchai", "somchai@villa-ops.local", "supervisor", ["inspection"], 9.5200, 100.0550),
            ("Arthit", "arthit@villa-ops.local", "maintenance", ["pool", "plumbing", "electrical"], 9.5500, 100.0300),
        ]
        session.add_all(properties)
        for name, email, role, skills, lat, lng in staff:
            session.add(StaffAccountModel(
                id=str(uuid.uuid4()), name=name, email=email, role=role, skills=dump_json(skills),
                is_active=1, is_suspended=0, availability_status="available",
                push_token=f"demo-push-{name.lower()}", password_hash=hash_password(demo_password),
                last_lat=lat, last_lng=lng, last_location_at=stamp, created_at=stamp, updated_at=stamp,
            ))
        session.commit()
    finally:
        session.close()
    check_in = datetime.now(timezone.utc).date() + timedelta(days=5)
    create_booking({
        "guestName": "Emma Larsen",
        "guestEmail": "emma.larsen@example.com",
        "propertyId": "villa-serenity",
        "checkInDate": check_in.isoformat(),
        "checkOutDate": (check_in + timedelta(days=4)).isoformat(),
        "guestCount": 4,
        "totalAmount": 48000,
        "source": "manual",
    }, created_by="seed")
    return True


@app.cli.command("create-tables")
def create_tables_cmd():
    """Create all tables and indexes."""
    init_db()
    print("[create-tables] Done")


@app.cli.command("seed-demo")
def seed_demo_cmd():
    """Insert demo villas, staff and a pending booking into an empty database."""
    init_db()
    if seed_demo_data():
        print("[seed-demo] Demo data created")
    else:
        print("[seed-demo] Properties already exist; nothing to do")


@app.cli.command("process-timeouts")
def process_timeouts_cmd():
    """Run one pass of the timeout monitor (for cron)."""
    init_db()
    print("[process-timeouts]", json.dumps(run_timeout_monitor()))


@app.cli.command("dispatch-jobs")
def dispatch_jobs_cmd():
    """Offer pending jobs inside the dispatch window (for cron)."""
    init_db()
    print("[dispatch-jobs]", json.dumps(dispatch_pending_jobs()))


if __name__ == "__main__":
    init_db()
    if BACKGROUND_WORKERS:
        start_background_workers()
    INIT_DONE = True
    print("[villa_ops] AUTH_DISABLED:", AUTH_DISABLED)
    print("[villa_ops] TWILIO_SIMULATE:", TWILIO_SIMULATE)
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
