"""
Shared fixtures.

The application reads its configuration at import time, so the environment is
prepared here before anything from ``medizap`` is imported:
- a throwaway SQLite file database (tables recreated for every test)
- fixed shared secret and JWT secret
- no vendor or email keys, so nothing reaches the network
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone

_tmp = tempfile.mkdtemp(prefix="medizap-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmp, 'test.db')}"
os.environ["ELEVENLABS_FUNCTION_SECRET"] = "test-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ.pop("JWT_AUDIENCE", None)
os.environ["OPENAI_API_KEY"] = ""
os.environ["ELEVENLABS_API_KEY"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["CONVERSATION_TTL_MINUTES"] = "30"
os.environ["CONVERSATION_MAX_ATTEMPTS"] = "3"
os.environ["SEED_PATH"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402

from medizap.db import engine, get_session  # noqa: E402
from medizap.identifiers import ensure_counters  # noqa: E402
from medizap.main import app  # noqa: E402
from medizap.models import Base, Clinic, ClinicUser, Department, Doctor  # noqa: E402
from medizap.voice import VendorError, VoiceServices, get_voice_services  # noqa: E402

AGENT_HEADERS = {"X-Elevenlabs-Secret": "test-secret"}
WEEKDAYS_ONLY = ["monday", "tuesday", "wednesday", "thursday", "friday"]


def make_token(user_id, expires_in=3600, secret="test-jwt-secret"):
    claims = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, secret, algorithm="HS256")


def bearer(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def next_weekday(weekday, today=None):
    """The next ``weekday`` (0 is Monday) strictly after today, in UTC like the server."""
    today = today or datetime.now(timezone.utc).date()
    return today + timedelta(days=(weekday - today.weekday()) % 7 or 7)


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    with get_session() as db:
        ensure_counters(db)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def clinics():
    """
    Two clinics:
    - c1 "Sunrise Clinic": General Medicine (dept1, Dr. Maya Patel d1),
      Cardiology (dept2, Dr. Arjun Mehta d2)
    - c2 "Harbor Clinic": Pediatrics (dept3, Dr. Lena Fischer d3)
    """
    with get_session() as db:
        db.add_all([
            Clinic(id="c1", name="Sunrise Clinic", email="front@sunrise.test", slug="sunrise-clinic",
                   phone="+15551230000", address="120 Harbor Street"),
            Clinic(id="c2", name="Harbor Clinic", email="desk@harbor.test", slug="harbor-clinic"),
        ])
        db.flush()
        db.add_all([
            Department(id="dept1", clinic_id="c1", name="General Medicine"),
            Department(id="dept2", clinic_id="c1", name="Cardiology"),
            Department(id="dept3", clinic_id="c2", name="Pediatrics"),
        ])
        db.flush()
        db.add_all([
            Doctor(id="d1", clinic_id="c1", department_id="dept1", name="Dr. Maya Patel",
                   specialization="Family Medicine", available_days=WEEKDAYS_ONLY,
                   available_times=["09:00", "10:00", "11:00"]),
            Doctor(id="d2", clinic_id="c1", department_id="dept2", name="Dr. Arjun Mehta",
                   specialization="Cardiology", available_days=["monday", "thursday"],
                   available_times=["13:00", "14:00"]),
            Doctor(id="d3", clinic_id="c2", department_id="dept3", name="Dr. Lena Fischer",
                   specialization="Pediatrics", available_days=["tuesday"],
                   available_times=["09:00"]),
        ])
    return {"clinic": "c1", "doctor": "d1", "department": "dept1"}


@pytest.fixture
def members(clinics):
    """admin-1 is admin of c1, staff-1 is staff of c1, outsider has no membership."""
    with get_session() as db:
        db.add_all([
            ClinicUser(clinic_id="c1", user_id="admin-1", role="admin"),
            ClinicUser(clinic_id="c1", user_id="staff-1", role="staff"),
        ])
    return {
        "admin": bearer("admin-1"),
        "staff": bearer("staff-1"),
        "outsider": bearer("outsider"),
    }


# ============================================================================
# HTTP client and vendor fakes
# ============================================================================

@pytest.fixture
def client():
    return TestClient(app)


class FakeLLM:
    """Returns queued replies in order; an exception instance is raised instead."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def complete(self, messages):
        self.calls.append(messages)
        if not self.replies:
            raise VendorError("no reply queued")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeTranscriber:
    def __init__(self, text="I would like to book an appointment", fail=False):
        self.text = text
        self.fail = fail
        self.received = []

    def transcribe(self, audio, language="en", filename="audio.webm"):
        self.received.append((audio, language))
        if self.fail:
            raise VendorError("transcription unavailable")
        return self.text


class FakeSpeech:
    def __init__(self, url=None):
        self.url = url
        self.spoken = []

    def synthesize(self, text):
        self.spoken.append(text)
        return self.url


@pytest.fixture
def voice():
    services = VoiceServices(llm=FakeLLM(), transcriber=FakeTranscriber(), speech=FakeSpeech())
    app.dependency_overrides[get_voice_services] = lambda: services
    return services
