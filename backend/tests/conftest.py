"""Pytest configuration and shared fixtures."""

import asyncio
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Set test environment variables before importing app
os.environ.update({
    "DATABASE_URL": "sqlite://",
    "OPENAI_API_KEY": "sk-test-key",
    "GOOGLE_ACCESS_TOKEN": "test-google-token",
    "CRON_SECRET": "test-cron-secret",
    "LOG_LEVEL": "WARNING",
})

from parley.core.config import Settings  # noqa: E402
from parley.core.db import init_db  # noqa: E402
from parley.integrations.provider import BookingResult, SendResult  # noqa: E402
from parley.models.drafts import Draft  # noqa: E402
from parley.models.enums import AttendeeSide, DraftType  # noqa: E402
from parley.scheduler.requests import AttendeeSpec  # noqa: E402
from parley.scheduler.response_processor import InboundReply  # noqa: E402
from parley.scheduler.services import SchedulerServices, build_services  # noqa: E402

UTC = timezone.utc

# Friday 2 Jan 2026, 09:00 in New York
PROPOSAL_NOW = datetime(2026, 1, 2, 14, 0, tzinfo=UTC)

# Mon 10:30, Tue 14:00 and Wed 11:00 New York time
OFFERED_SLOTS = [
    datetime(2026, 1, 5, 15, 30, tzinfo=UTC),
    datetime(2026, 1, 6, 19, 0, tzinfo=UTC),
    datetime(2026, 1, 7, 16, 0, tzinfo=UTC),
]


class FakeCompletion:
    """Text-completion double returning canned classify/extract payloads."""

    def __init__(self):
        self.classify_result: dict[str, Any] = {"intent": "unclear", "confidence": "low"}
        self.extract_result: dict[str, Any] = {"times": []}
        self.classify_prompts: list[str] = []
        self.extract_prompts: list[str] = []
        self.error: Exception | None = None

    async def classify(self, prompt: str) -> dict[str, Any]:
        self.classify_prompts.append(prompt)
        if self.error:
            raise self.error
        return self.classify_result

    async def extract(self, prompt: str) -> dict[str, Any]:
        self.extract_prompts.append(prompt)
        if self.error:
            raise self.error
        return self.extract_result


class FakeProvider:
    """Email/calendar double. Every call yields to the event loop once."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.booked: list[dict[str, Any]] = []
        self.updated: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.availability_checks: list[datetime] = []
        self.available = True
        self.free_slots: list[datetime] = list(OFFERED_SLOTS)
        self.send_error: Exception | None = None
        self.slots_error: Exception | None = None

    async def send(self, to, subject, body, reply_to_id=None, thread_id=None) -> SendResult:
        await asyncio.sleep(0)
        if self.send_error:
            raise self.send_error
        self.sent.append({"to": to, "subject": subject, "body": body, "reply_to_id": reply_to_id, "thread_id": thread_id})
        n = len(self.sent)
        return SendResult(message_id=f"msg-{n}", thread_id=thread_id or f"thread-{n}")

    async def book(self, start, duration_minutes, attendees, title, timezone="UTC") -> BookingResult:
        await asyncio.sleep(0)
        self.booked.append({"start": start, "duration_minutes": duration_minutes, "attendees": attendees, "title": title})
        return BookingResult(event_id=f"evt-{len(self.booked)}", meeting_link="https://meet.google.com/abc-defg-hij")

    async def update_event(self, event_id, start, duration_minutes, timezone="UTC") -> BookingResult:
        await asyncio.sleep(0)
        self.updated.append({"event_id": event_id, "start": start})
        return BookingResult(event_id=event_id)

    async def cancel_event(self, event_id) -> None:
        await asyncio.sleep(0)
        self.cancelled.append(event_id)

    async def check_availability(self, start, duration_minutes, attendee_emails) -> bool:
        await asyncio.sleep(0)
        self.availability_checks.append(start)
        return self.available

    async def find_free_slots(
        self,
        window_start,
        window_end,
        timezone,
        duration_minutes,
        max_slots=3,
        business_hours_start=9,
        business_hours_end=17,
    ) -> list[datetime]:
        await asyncio.sleep(0)
        if self.slots_error:
            raise self.slots_error
        return self.free_slots[:max_slots]


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    test_engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    init_db(test_engine)
    yield test_engine
    SQLModel.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def test_settings() -> Settings:
    return Settings()


@pytest.fixture
def services(engine, provider: FakeProvider, completion: FakeCompletion, test_settings: Settings) -> SchedulerServices:
    return build_services(test_settings, engine=engine, provider=provider, completion=completion)


class SchedulingFlow:
    """Drives a request through the real services up to a given stage."""

    def __init__(self, services: SchedulerServices):
        self.services = services
        self.engine = services.engine

    def create(self, now: datetime = PROPOSAL_NOW, **overrides) -> uuid.UUID:
        options: dict[str, Any] = {
            "user_id": "rep-1",
            "title": "Intro call",
            "attendees": [
                AttendeeSpec(email="dana@acme.example", side=AttendeeSide.EXTERNAL, name="Dana"),
                AttendeeSpec(email="rep@ourco.example", side=AttendeeSide.INTERNAL, name="Rep", is_organizer=True),
            ],
            "timezone": "America/New_York",
        }
        options.update(overrides)
        with Session(self.engine) as session:
            request = self.services.requests.create_request(session, now=now, **options)
            session.commit()
            return request.id

    async def propose(self, request_id: uuid.UUID, now: datetime = PROPOSAL_NOW) -> uuid.UUID:
        with Session(self.engine) as session:
            draft = await self.services.requests.propose_times(session, request_id, now=now)
            session.commit()
            return draft.id

    def approve(self, draft_id: uuid.UUID, now: datetime = PROPOSAL_NOW, edits: dict | None = None) -> None:
        with Session(self.engine) as session:
            self.services.drafts.approve(session, draft_id, approved_by="rep-1", edits=edits, now=now)
            session.commit()

    async def awaiting_response(self, now: datetime = PROPOSAL_NOW, **overrides) -> uuid.UUID:
        """Create, propose, approve and send: the request ends in awaiting_response."""
        request_id = self.create(now=now, **overrides)
        draft_id = await self.propose(request_id, now=now)
        self.approve(draft_id, now=now)
        await self.services.drafts.execute_draft(draft_id, now=now)
        return request_id

    async def confirmed(self, now: datetime = PROPOSAL_NOW, **overrides) -> uuid.UUID:
        """The contact accepts the Monday 10:30 slot and the booking is sent."""
        request_id = await self.awaiting_response(now=now, **overrides)
        completion = self.services.completion
        previous = completion.classify_result
        completion.classify_result = {"intent": "accept", "confidence": "high", "sentiment": "positive"}
        result = await self.services.processor.process_reply(
            InboundReply(
                request_id=request_id,
                message_id=f"accept-{request_id}",
                body="Monday at 10:30 works for me",
                received_at=now,
                from_email="dana@acme.example",
                from_name="Dana",
            ),
            now=now,
        )
        completion.classify_result = previous
        self.approve(result.draft_id, now=now)
        await self.services.drafts.execute_draft(result.draft_id, now=now)
        return request_id

    def drafts(self, request_id: uuid.UUID, draft_type: DraftType | None = None) -> list[Draft]:
        with Session(self.engine) as session:
            drafts = self.services.drafts.list_drafts(session, request_id=request_id)
            if draft_type is not None:
                drafts = [d for d in drafts if d.draft_type == draft_type.value]
            return drafts


@pytest.fixture
def flow(services: SchedulerServices) -> SchedulingFlow:
    return SchedulingFlow(services)


@pytest.fixture
def client(engine, services: SchedulerServices) -> Generator[TestClient, None, None]:
    """FastAPI test client bound to the per-test database and fakes."""
    from parley.core.db import get_session
    from parley.main import app
    from parley.scheduler.services import get_services

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()
