"""
Test configuration and fixtures.

Provides:
- In-memory SQLite schema created and dropped around each test
- Organization and worker fixtures
- Connected Google account plus a fake Calendar API client
- HTTPX AsyncClient with a signed session header
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

from cryptography.fernet import Fernet

# Settings are read at import time; configure before importing the app.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ.setdefault("INTERNAL_SECRET", "test-internal-secret")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("ENV", "test")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from fieldcal.core.deps import get_db
from fieldcal.core.security import create_session_token
from fieldcal.db.base import Base
from fieldcal.db.enums import CalendarRole
from fieldcal.db.models import Organization, User
from fieldcal.db.session import SessionLocal, engine
from fieldcal.main import app
from fieldcal.services import google_account_service, google_sync_service
from fieldcal.services.google_calendar_client import (
    GOOGLE_CALENDAR_READONLY_SCOPE,
    GOOGLE_CALENDAR_WRITE_SCOPE,
    GoogleApiError,
)

# Monday 2026-06-15 08:00 in America/Los_Angeles (PDT, UTC-7)
NOW = datetime(2026, 6, 15, 15, 0, tzinfo=timezone.utc)
WORKER_CALENDAR_ID = "worker@example.com"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    Application code commits freely; the tables are dropped afterwards.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    org = Organization(id=uuid.uuid4(), name="Test Plumbing Co")
    db.add(org)
    db.commit()
    return org


def _make_user(db: Session, org: Organization, name: str, role: CalendarRole) -> User:
    user = User(
        id=uuid.uuid4(),
        organization_id=org.id,
        email=f"{name.lower()}-{uuid.uuid4().hex[:8]}@test.com",
        display_name=name,
        calendar_role=role.value,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def owner(db: Session, test_org: Organization) -> User:
    return _make_user(db, test_org, "Alice", CalendarRole.OWNER)


@pytest.fixture(scope="function")
def worker(db: Session, test_org: Organization) -> User:
    return _make_user(db, test_org, "Bob", CalendarRole.WORKER)


@pytest.fixture(scope="function")
def make_user(db: Session, test_org: Organization):
    def factory(name: str, role: CalendarRole = CalendarRole.WORKER) -> User:
        return _make_user(db, test_org, name, role)

    return factory


# =============================================================================
# Google Fixtures
# =============================================================================

class FakeGoogleCalendar:
    """In-memory stand-in for GoogleCalendarClient."""

    def __init__(self):
        self.calendars = [
            {
                "id": WORKER_CALENDAR_ID,
                "summary": "Bob",
                "primary": True,
                "access_role": "owner",
                "time_zone": "America/Los_Angeles",
            }
        ]
        self.events: dict[str, list[dict]] = {}
        self.created: list[tuple[str, dict]] = []
        self.updated: list[tuple[str, str, dict]] = []
        self.deleted: list[tuple[str, str]] = []
        self.tokens: list[str] = []
        self.fail_with: GoogleApiError | None = None
        self._next_id = 0

    def __call__(self, access_token: str, **kwargs) -> "FakeGoogleCalendar":
        self.tokens.append(access_token)
        return self

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def list_calendars(self) -> list[dict]:
        self._maybe_fail()
        return list(self.calendars)

    async def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[dict]:
        self._maybe_fail()
        return list(self.events.get(calendar_id, []))

    async def create_event(self, calendar_id: str, body: dict) -> str:
        self._maybe_fail()
        self._next_id += 1
        self.created.append((calendar_id, body))
        return f"g-evt-{self._next_id}"

    async def update_event(self, calendar_id: str, event_id: str, body: dict) -> None:
        self._maybe_fail()
        self.updated.append((calendar_id, event_id, body))

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        self._maybe_fail()
        self.deleted.append((calendar_id, event_id))

    async def create_calendar(self, summary: str, time_zone: str | None = None) -> dict:
        self._maybe_fail()
        return {"id": "dedicated@group.calendar.google.com", "summary": summary}


def _google_record(event_id: str, start: str, end: str, **overrides) -> dict:
    """Normalized Google event record with timed bounds."""
    record = {
        "id": event_id,
        "status": "confirmed",
        "summary": "Dentist",
        "description": None,
        "location": None,
        "transparency": None,
        "start_date_time": start,
        "start_date": None,
        "start_time_zone": None,
        "end_date_time": end,
        "end_date": None,
        "end_time_zone": None,
        "updated": None,
    }
    record.update(overrides)
    return record


@pytest.fixture
def google_record():
    return _google_record


@pytest.fixture(scope="function")
def fake_google(monkeypatch) -> FakeGoogleCalendar:
    fake = FakeGoogleCalendar()
    monkeypatch.setattr(google_sync_service, "GoogleCalendarClient", fake)
    return fake


@pytest.fixture(scope="function")
def google_account(db: Session, test_org: Organization, worker: User):
    """Worker's connected account with read and write access."""
    return google_account_service.save_google_account(
        db,
        org_id=test_org.id,
        user_id=worker.id,
        access_token="access-token-1",
        refresh_token="refresh-token-1",
        expires_at=NOW + timedelta(days=365),
        scopes=[GOOGLE_CALENDAR_READONLY_SCOPE, GOOGLE_CALENDAR_WRITE_SCOPE],
        google_email=WORKER_CALENDAR_ID,
        write_calendar_id=WORKER_CALENDAR_ID,
        read_calendar_ids=[WORKER_CALENDAR_ID],
        now=NOW,
    )


# =============================================================================
# HTTP Client Fixtures
# =============================================================================

@pytest.fixture
def auth_headers():
    """Bearer header for a user, optionally overriding the token's role."""
    def build(user: User, role: CalendarRole | None = None) -> dict[str, str]:
        token = create_session_token(
            user.id, user.organization_id, (role.value if role else user.calendar_role)
        )
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient bound to the test session."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
