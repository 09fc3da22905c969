"""
Shared fixtures: in-memory SQLite store, fake mailbox, fake LLM provider
and fake classifier.

No test touches Gmail, a real LLM, or PostgreSQL.
"""

import os

# Must be set before anything imports schoolsync.database
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from schoolsync.config import Settings
from schoolsync.database import Base
from schoolsync.errors import ExtractionError, MailFetchError
from schoolsync.models import EmailSource, User
from schoolsync.services.db_service import SqlStore
from schoolsync.services.extraction import CallUsage, CandidateEvent, EmailClassification, Summary
from schoolsync.services.gmail_service import RawMessage

SENT = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeMailSource:
    """In-memory MailSource; listing order is insertion order."""

    def __init__(self, messages, list_error=None, fetch_errors=()):
        self.messages = {m.id: m for m in messages}
        self.order = [m.id for m in messages]
        self.list_error = list_error
        self.fetch_errors = set(fetch_errors)
        self.queries = []
        self.fetched = []

    def list_messages(self, query, max_results):
        self.queries.append((query, max_results))
        if self.list_error:
            raise self.list_error
        return [{"id": message_id} for message_id in self.order[:max_results]]

    def get_message(self, message_id):
        self.fetched.append(message_id)
        if message_id in self.fetch_errors:
            raise MailFetchError(f"Gmail fetch failed for {message_id}: 500")
        return self.messages[message_id]


class FakeProvider:
    """ExtractionProvider + SummaryProvider keyed by email subject."""

    name = "fake"
    model = "fake-model"

    def __init__(self, events_by_subject=None, fail_subjects=(), fail_summaries=False):
        self.events_by_subject = events_by_subject or {}
        self.fail_subjects = set(fail_subjects)
        self.fail_summaries = fail_summaries
        self.calls = []
        self.summary_calls = []
        self.last_usage = None

    def _usage(self):
        return CallUsage(
            provider=self.name,
            model=self.model,
            input_tokens=120,
            output_tokens=30,
            cost=0.001,
            elapsed_ms=5,
        )

    def extract_dates(self, subject, body, sender, sent_date):
        self.calls.append(subject)
        self.last_usage = self._usage()
        if subject in self.fail_subjects:
            self.last_usage.retry_count = 2
            raise ExtractionError("backend exploded", retry_count=2, usage=self.last_usage)
        return list(self.events_by_subject.get(subject, []))

    def summarize(self, subject, body, sender, sent_date):
        self.summary_calls.append(subject)
        self.last_usage = self._usage()
        if self.fail_summaries:
            raise ExtractionError("summary backend down", usage=self.last_usage)
        return Summary(
            key_points=[f"About {subject}"],
            action_items=["Sign the form"],
            categories=["Events"],
            confidence=0.9,
        )


class FakeClassifier:
    """ClassificationProvider; every subject has date content unless listed."""

    name = "fake-classifier"
    model = "fake-mini"

    def __init__(self, verdicts_by_subject=None, fail=False):
        self.verdicts_by_subject = verdicts_by_subject or {}
        self.fail = fail
        self.calls = []
        self.last_usage = None

    def classify(self, subject, body, sender, sent_date):
        self.calls.append(subject)
        self.last_usage = CallUsage(
            provider=self.name,
            model=self.model,
            input_tokens=60,
            output_tokens=10,
            cost=0.0002,
            elapsed_ms=3,
        )
        if self.fail:
            raise ExtractionError("classifier returned garbage", usage=self.last_usage)
        has_dates = self.verdicts_by_subject.get(subject, True)
        return EmailClassification(
            has_date_content=has_dates,
            confidence=0.95,
            reasoning="mentions an event" if has_dates else "newsletter without dates",
        )


def make_event(title="Science Fair", event_date=date(2024, 3, 15), event_time=None, confidence=0.9):
    return CandidateEvent(
        title=title,
        event_date=event_date,
        event_time=event_time,
        description=f"{title} description",
        confidence=confidence,
    )


def make_message(message_id, subject=None, body=None, sender="Ms. Smith <teacher@school.org>", sent=SENT):
    return RawMessage(
        id=message_id,
        subject=subject or f"Subject {message_id}",
        sender=sender,
        sent_date=sent,
        body=body if body is not None else f"<p>Body of {message_id}</p>",
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def store(db_session):
    return SqlStore(db_session)


@pytest.fixture
def user(db_session):
    """A user monitoring one teacher address."""
    user = User(email="parent@example.com")
    db_session.add(user)
    db_session.commit()
    db_session.add(EmailSource(user_id=user.id, email="teacher@school.org", is_active=True))
    db_session.commit()
    return user


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        llm_provider="openai",
        openai_api_key="test-key",
        inter_message_delay_seconds=0,
        llm_retry_base_delay_seconds=0,
        sync_time_budget_seconds=0,
    )


@pytest.fixture
def fake_mail():
    return FakeMailSource


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def fake_classifier():
    return FakeClassifier
