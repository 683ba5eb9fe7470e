"""
conftest.py — Shared test fixtures for freightintel

Provides an in-memory SQLite database, a fake LLM oracle that stands in for
the classification and extraction calls, and factories for messages.

Business Rules:
- All tests run against an isolated in-memory DB
- No test ever reaches the Anthropic API (key is blank, oracle is patched)
- Each test function gets fresh tables

Called by: all test files via pytest autodiscovery
Depends on: freightintel.models (Base), freightintel.services
"""

import os

# Must be set before importing freightintel modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["LLM_MIN_INTERVAL_SECONDS"] = "0"
os.environ["LLM_BASE_DELAY_SECONDS"] = "0"

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from freightintel.exceptions import ExtractionError
from freightintel.models import Base
from freightintel.schemas.messages import InboundMessage
from freightintel.schemas.oracle import ExtractionOutput
from freightintel.services.extraction import normalize_output, validate_observations

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


BASE_TIME = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def reset_db(db_session: Session):
    """Callable that wipes every table and returns a fresh session."""
    sessions = []

    def _reset() -> Session:
        db_session.close()
        for s in sessions:
            s.close()
        Base.metadata.drop_all(bind=engine)
        Base.metadata.create_all(bind=engine)
        s = TestSessionLocal()
        sessions.append(s)
        return s

    yield _reset
    for s in sessions:
        s.close()


@pytest.fixture()
def make_message():
    """Factory for InboundMessage with sensible defaults."""
    counter = {"n": 0}

    def _make(**kw) -> InboundMessage:
        counter["n"] += 1
        n = counter["n"]
        defaults = {
            "message_id": f"<msg-{n}@test>",
            "thread_id": None,
            "subject": f"Message {n}",
            "sender": "ops@customer-co.com",
            "received_at": BASE_TIME + timedelta(hours=n),
            "attachment_names": [],
            "body_text": "",
            "attachment_text": "",
        }
        defaults.update(kw)
        return InboundMessage(**defaults)

    return _make


def payload(confidence: float = 95, **values) -> dict:
    """Extraction oracle payload: payload(booking_number="123", vessel_name="X")."""
    return {
        "fields": [
            {"field_name": name, "value": value, "confidence": confidence}
            for name, value in values.items()
        ],
        "overall_confidence": confidence,
    }


class FakeOracle:
    """Scripted stand-in for the classification and extraction oracles.

    classifications: subject → {"document_type", "confidence", "reasoning"}
    extractions:     message_id or (message_id, tier) → payload dict,
                     None (oracle failure) or an Exception instance (crash)
    """

    def __init__(self):
        self.classifications: dict[str, dict] = {}
        self.extractions: dict = {}
        self.classify_calls: list[str] = []
        self.extract_calls: list[tuple[str, str]] = []

    def classify_as(self, subject: str, document_type: str, confidence: float = 95) -> None:
        self.classifications[subject] = {
            "document_type": document_type, "confidence": confidence, "reasoning": "scripted",
        }

    def returns(self, message_id: str, *, tier: str | None = None, confidence: float = 95, **values) -> None:
        key = (message_id, tier) if tier else message_id
        self.extractions[key] = payload(confidence, **values)

    async def classify(self, prompt: str, schema: dict, **kwargs):
        subject = prompt.split("\n", 1)[0].removeprefix("Subject: ")
        self.classify_calls.append(subject)
        return self.classifications.get(subject)

    async def extract(self, message: InboundMessage, document_type: str, *, tier: str = "fast"):
        self.extract_calls.append((message.message_id, tier))
        key = (message.message_id, tier)
        raw = self.extractions[key] if key in self.extractions else self.extractions.get(
            message.message_id, payload()
        )
        if isinstance(raw, Exception):
            raise raw
        if raw is None:
            raise ExtractionError(f"extraction oracle returned nothing for {message.message_id}", tier=tier)
        output = ExtractionOutput.model_validate(raw)
        observations = validate_observations(normalize_output(output), message.received_at)
        return observations, output.overall_confidence


@pytest.fixture()
def oracle():
    fake = FakeOracle()
    with patch("freightintel.services.classifier.claude_structured", new=fake.classify), \
         patch("freightintel.services.pipeline.extract_fields", new=fake.extract):
        yield fake
