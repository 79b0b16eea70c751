"""HTTP tests for the calendar, availability, integration and internal routers."""

import uuid
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from fieldcal.core.config import settings
from fieldcal.db.enums import CalendarRole, SyncAction, SyncJobStatus
from fieldcal.db.models import Organization, SyncJob, SyncRun, User
from fieldcal.routers import integrations as integrations_router
from fieldcal.services import google_calendar_client
from fieldcal.services.google_calendar_client import (
    GOOGLE_CALENDAR_READONLY_SCOPE,
    GOOGLE_CALENDAR_WRITE_SCOPE,
    GoogleTokenSet,
)

# Monday; 09:00 in Los Angeles is 17:00Z in January
DATE = "2030-01-07"
INTERNAL = {"X-Internal-Secret": "test-internal-secret"}


def parse_slots(values: list[str]) -> list[datetime]:
    return [datetime.fromisoformat(value) for value in values]


def utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2030, 1, 7, hour, minute, tzinfo=timezone.utc)


async def book(client, headers, start: str, end: str, **fields):
    return await client.post(
        "/calendar/events",
        json={"title": "Water heater install", "start_at": start, "end_at": end, **fields},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_requires_session(client):
    response = await client.get("/availability", params={"date": DATE})
    assert response.status_code == 401


# =============================================================================
# Availability & Events
# =============================================================================

@pytest.mark.asyncio
async def test_booking_updates_availability(client, worker, auth_headers):
    headers = auth_headers(worker)

    before = await client.get("/availability", params={"date": DATE}, headers=headers)
    assert before.status_code == 200
    body = before.json()
    assert body["timezone"] == "America/Los_Angeles"
    assert len(body["slots"]) == 16
    assert parse_slots(body["slots"])[0] == utc(17)

    created = await book(client, headers, "2030-01-07T18:00:00Z", "2030-01-07T19:00:00Z")
    assert created.status_code == 201
    event = created.json()["event"]
    assert event["worker_ids"] == [str(worker.id)]
    assert len(created.json()["availability_by_worker"][str(worker.id)]) == 14

    after = await client.get("/availability", params={"date": DATE}, headers=headers)
    slots = parse_slots(after.json()["slots"])
    assert len(slots) == 14
    assert utc(18) not in slots
    assert utc(18, 30) not in slots

    cancelled = await client.delete(f"/calendar/events/{event['id']}", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    again = await client.get("/availability", params={"date": DATE}, headers=headers)
    assert len(again.json()["slots"]) == 16


@pytest.mark.asyncio
async def test_invalid_date_is_rejected(client, worker, auth_headers):
    response = await client.get(
        "/availability", params={"date": "2030-13-40"}, headers=auth_headers(worker)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_conflicting_booking_returns_409_with_suggestions(client, worker, auth_headers):
    headers = auth_headers(worker)
    await book(client, headers, "2030-01-07T18:00:00Z", "2030-01-07T19:00:00Z")

    response = await book(client, headers, "2030-01-07T18:30:00Z", "2030-01-07T19:30:00Z")

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["timezone"] == "America/Los_Angeles"
    assert detail["conflicts"][0]["worker_id"] == str(worker.id)
    assert detail["conflicts"][0]["source"] == "event"
    assert parse_slots(detail["suggested_slots"])[0] == utc(17)


@pytest.mark.asyncio
async def test_worker_cannot_book_for_someone_else(client, owner, worker, auth_headers):
    response = await book(
        client,
        auth_headers(worker),
        "2030-01-07T18:00:00Z",
        "2030-01-07T19:00:00Z",
        worker_ids=[str(owner.id)],
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_owner_can_book_for_worker(client, owner, worker, auth_headers):
    response = await book(
        client,
        auth_headers(owner),
        "2030-01-07T18:00:00Z",
        "2030-01-07T19:00:00Z",
        worker_ids=[str(worker.id)],
    )

    assert response.status_code == 201
    assert response.json()["event"]["assigned_to_user_id"] == str(worker.id)


@pytest.mark.asyncio
async def test_read_only_user_cannot_book(client, worker, auth_headers):
    response = await book(
        client,
        auth_headers(worker, role=CalendarRole.READ_ONLY),
        "2030-01-07T18:00:00Z",
        "2030-01-07T19:00:00Z",
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_worker_cannot_edit_another_workers_event(client, owner, worker, auth_headers):
    created = await book(client, auth_headers(owner), "2030-01-07T18:00:00Z", "2030-01-07T19:00:00Z")
    event_id = created.json()["event"]["id"]

    response = await client.patch(
        f"/calendar/events/{event_id}",
        json={"title": "Renamed"},
        headers=auth_headers(worker),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_reschedule_event(client, worker, auth_headers):
    headers = auth_headers(worker)
    created = await book(client, headers, "2030-01-07T18:00:00Z", "2030-01-07T19:00:00Z")
    event_id = created.json()["event"]["id"]

    response = await client.patch(
        f"/calendar/events/{event_id}",
        json={"start_at": "2030-01-07T20:00:00Z"},
        headers=headers,
    )

    assert response.status_code == 200
    assert datetime.fromisoformat(response.json()["end_at"]) == utc(21)


@pytest.mark.asyncio
async def test_next_open_slot(client, worker, auth_headers):
    response = await client.post(
        "/availability/next-open",
        json={"date": DATE, "preferred_worker_id": str(worker.id)},
        headers=auth_headers(worker),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["strategy_used"] == "preferred"
    assert body["worker_id"] == str(worker.id)
    assert datetime.fromisoformat(body["slot"]) == utc(17)


@pytest.mark.asyncio
async def test_conflict_check_reports_time_off(client, worker, auth_headers):
    headers = auth_headers(worker)
    time_off = await client.post(
        "/calendar/time-off",
        json={"start_at": "2030-01-07T17:00:00Z", "end_at": "2030-01-07T20:00:00Z", "reason": "Dentist"},
        headers=headers,
    )
    assert time_off.status_code == 201

    response = await client.post(
        "/calendar/conflicts",
        json={
            "worker_ids": [str(worker.id)],
            "start_at": "2030-01-07T19:00:00Z",
            "end_at": "2030-01-07T21:00:00Z",
        },
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json() == [
        {"worker_id": str(worker.id), "source": "time_off", "source_id": time_off.json()["id"]}
    ]


@pytest.fixture
def outsider(db):
    org = Organization(id=uuid.uuid4(), name="Rival Rooter")
    db.add(org)
    db.commit()
    user = User(
        id=uuid.uuid4(),
        organization_id=org.id,
        email=f"carol-{uuid.uuid4().hex[:8]}@test.com",
        display_name="Carol",
        calendar_role=CalendarRole.WORKER.value,
    )
    db.add(user)
    db.commit()
    return user


@pytest.mark.asyncio
async def test_availability_rejects_workers_outside_the_org(
    client, worker, outsider, auth_headers
):
    headers = auth_headers(worker)

    foreign = await client.get(
        "/availability", params={"date": DATE, "worker_id": str(outsider.id)}, headers=headers
    )
    unknown = await client.get(
        "/availability", params={"date": DATE, "worker_id": str(uuid.uuid4())}, headers=headers
    )

    assert foreign.status_code == 400
    assert "Unknown worker" in foreign.json()["detail"]
    assert unknown.status_code == 400


@pytest.mark.asyncio
async def test_next_open_rejects_foreign_candidates(client, worker, outsider, auth_headers):
    response = await client.post(
        "/availability/next-open",
        json={
            "date": DATE,
            "preferred_worker_id": str(worker.id),
            "candidate_worker_ids": [str(outsider.id)],
        },
        headers=auth_headers(worker),
    )

    assert response.status_code == 400
    assert str(outsider.id) in response.json()["detail"]


@pytest.mark.asyncio
async def test_conflict_check_rejects_foreign_workers(client, worker, outsider, auth_headers):
    response = await client.post(
        "/calendar/conflicts",
        json={
            "worker_ids": [str(worker.id), str(outsider.id)],
            "start_at": "2030-01-07T19:00:00Z",
            "end_at": "2030-01-07T21:00:00Z",
        },
        headers=auth_headers(worker),
    )

    assert response.status_code == 400
    assert str(outsider.id) in response.json()["detail"]
    assert str(worker.id) not in response.json()["detail"]


# =============================================================================
# Holds
# =============================================================================

@pytest.mark.asyncio
async def test_hold_then_confirm(client, worker, auth_headers):
    headers = auth_headers(worker)
    created = await client.post(
        "/calendar/holds",
        json={"start_at": "2030-01-07T18:00:00Z", "title": "Estimate"},
        headers=headers,
    )
    assert created.status_code == 201
    hold_id = created.json()["id"]

    confirmed = await client.post(f"/calendar/holds/{hold_id}/confirm", json={}, headers=headers)

    assert confirmed.status_code == 200
    assert confirmed.json()["title"] == "Estimate"
    holds = await client.get("/calendar/holds", headers=headers)
    assert holds.json() == []


# =============================================================================
# Settings & Working Hours
# =============================================================================

@pytest.mark.asyncio
async def test_settings_update_requires_owner_or_admin(client, owner, worker, auth_headers):
    denied = await client.patch(
        "/calendar/settings", json={"allow_overlaps": True}, headers=auth_headers(worker)
    )
    assert denied.status_code == 403

    allowed = await client.patch(
        "/calendar/settings", json={"default_slot_minutes": 60}, headers=auth_headers(owner)
    )
    assert allowed.status_code == 200
    assert allowed.json()["default_slot_minutes"] == 60


@pytest.mark.asyncio
async def test_working_hours_drive_availability(client, worker, auth_headers):
    headers = auth_headers(worker)
    response = await client.put(
        f"/calendar/working-hours/{worker.id}",
        json={"days": [{"day_of_week": 1, "start_minute": 7 * 60, "end_minute": 9 * 60}]},
        headers=headers,
    )
    assert response.status_code == 200

    stored = await client.get(f"/calendar/working-hours/{worker.id}", headers=headers)
    assert [day["day_of_week"] for day in stored.json()] == [1]

    slots = await client.get("/availability", params={"date": DATE}, headers=headers)
    assert parse_slots(slots.json()["slots"]) == [utc(15), utc(15, 30), utc(16), utc(16, 30)]


# =============================================================================
# Google Integration
# =============================================================================

@pytest.mark.asyncio
async def test_google_status_when_not_connected(client, worker, auth_headers):
    response = await client.get("/integrations/google/status", headers=auth_headers(worker))

    assert response.status_code == 200
    assert response.json()["connected"] is False


@pytest.mark.asyncio
async def test_google_connect_and_callback(client, db, worker, auth_headers, fake_google, monkeypatch):
    async def fake_exchange(code: str, redirect_uri: str) -> GoogleTokenSet:
        assert code == "auth-code"
        return GoogleTokenSet(
            access_token="access-token-1",
            refresh_token="refresh-token-1",
            scopes=[GOOGLE_CALENDAR_READONLY_SCOPE, GOOGLE_CALENDAR_WRITE_SCOPE],
        )

    monkeypatch.setattr(google_calendar_client, "exchange_code_for_tokens", fake_exchange)
    monkeypatch.setattr(integrations_router, "GoogleCalendarClient", fake_google)

    connect = await client.get(
        "/integrations/google/connect", params={"write": "true"}, headers=auth_headers(worker)
    )
    assert connect.status_code == 302
    location = urlparse(connect.headers["location"])
    assert location.netloc == "accounts.google.com"
    state = parse_qs(location.query)["state"][0]

    callback = await client.get(
        "/integrations/google/callback", params={"code": "auth-code", "state": state}
    )
    assert callback.status_code == 302
    assert "saved=google-connected" in callback.headers["location"]

    status = await client.get("/integrations/google/status", headers=auth_headers(worker))
    body = status.json()
    assert body["connected"] is True
    assert body["has_write_scope"] is True
    assert body["write_calendar_id"] == "worker@example.com"
    jobs = db.query(SyncJob).filter(SyncJob.user_id == worker.id).all()
    assert [job.action for job in jobs] == [SyncAction.PULL_CALENDARS.value]

    replay = await client.get(
        "/integrations/google/callback", params={"code": "auth-code", "state": state}
    )
    assert "error=invalid_state" in replay.headers["location"]


@pytest.mark.asyncio
async def test_google_disconnect(client, worker, auth_headers, google_account):
    response = await client.post("/integrations/google/disconnect", headers=auth_headers(worker))

    assert response.json() == {"success": True, "was_connected": True}
    status = await client.get("/integrations/google/status", headers=auth_headers(worker))
    assert status.json()["connected"] is False


# =============================================================================
# Internal
# =============================================================================

@pytest.mark.asyncio
async def test_internal_requires_secret(client):
    missing = await client.post("/internal/scheduled/expire-holds")
    wrong = await client.post(
        "/internal/scheduled/expire-holds", headers={"X-Internal-Secret": "nope"}
    )

    assert missing.status_code == 403
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_internal_secret_not_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "")

    response = await client.post("/internal/scheduled/expire-holds", headers=INTERNAL)

    assert response.status_code == 501


@pytest.mark.asyncio
async def test_internal_expire_holds(client):
    response = await client.post("/internal/scheduled/expire-holds", headers=INTERNAL)

    assert response.status_code == 200
    assert response.json() == {"expired": 0}


@pytest.mark.asyncio
async def test_internal_sync_cycle_records_run(client, db, worker):
    response = await client.post("/internal/scheduled/google-sync", headers=INTERNAL)

    assert response.status_code == 200
    run = db.query(SyncRun).one()
    assert run.source == "cron"
    assert run.status == "ok"

    health = await client.get("/internal/google-sync/health", headers=INTERNAL)
    assert health.status_code == 200
    assert health.json()["last_cron_run"]["id"] == str(run.id)
    assert health.json()["queue_depth"]["total_open"] == 0

    runs = await client.get("/internal/google-sync/runs", headers=INTERNAL)
    assert [item["id"] for item in runs.json()] == [str(run.id)]


@pytest.mark.asyncio
async def test_internal_retry_failed(client, db, test_org, worker):
    db.add(
        SyncJob(
            organization_id=test_org.id,
            user_id=worker.id,
            action=SyncAction.PULL_CALENDARS.value,
            status=SyncJobStatus.ERROR.value,
            attempt_count=3,
        )
    )
    db.commit()

    response = await client.post("/internal/google-sync/retry-failed", headers=INTERNAL)

    assert response.status_code == 200
    assert response.json()["retried"] == 1

    jobs = await client.get(
        "/internal/google-sync/jobs", params={"status": "pending"}, headers=INTERNAL
    )
    assert [job["attempt_count"] for job in jobs.json()] == [3]
