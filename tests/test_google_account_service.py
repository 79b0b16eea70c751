"""Tests for the Google account store, token refresh and OAuth state."""

from datetime import datetime, timedelta, timezone

import pytest

from fieldcal.core.encryption import decrypt_token
from fieldcal.db.enums import AccountSyncStatus
from fieldcal.services import google_account_service, google_oauth_state_service
from fieldcal.services.google_calendar_client import (
    GOOGLE_CALENDAR_READONLY_SCOPE,
    GoogleApiError,
    GoogleCredentialError,
    GoogleTokenSet,
)

NOW = datetime(2026, 6, 15, 15, 0, tzinfo=timezone.utc)


def test_tokens_are_stored_encrypted(db, google_account):
    assert google_account.access_token_encrypted != "access-token-1"
    assert decrypt_token(google_account.access_token_encrypted) == "access-token-1"
    assert decrypt_token(google_account.refresh_token_encrypted) == "refresh-token-1"
    assert google_account.sync_status == AccountSyncStatus.IDLE.value


def test_resave_keeps_omitted_calendar_selection(db, test_org, worker, google_account):
    updated = google_account_service.save_google_account(
        db, org_id=test_org.id, user_id=worker.id, access_token="access-token-2", now=NOW
    )

    assert updated.id == google_account.id
    assert updated.write_calendar_id == "worker@example.com"
    assert updated.read_calendar_ids == ["worker@example.com"]
    assert decrypt_token(updated.access_token_encrypted) == "access-token-2"


def test_read_calendar_fallbacks(db, google_account):
    google_account.read_calendar_ids = [" a ", "a", "", "b"]
    assert google_account_service.get_read_calendar_ids(google_account) == ["a", "b"]

    google_account.read_calendar_ids = []
    assert google_account_service.get_read_calendar_ids(google_account) == ["worker@example.com"]

    google_account.write_calendar_id = None
    assert google_account_service.get_read_calendar_ids(google_account) == ["primary"]


def test_block_rules_default_to_blocking():
    rules = google_account_service.normalize_block_rules(
        {"cal-1": {"block_if_busy_only": False}, "": {}, "cal-2": "nope"}
    )
    assert rules == {"cal-1": {"block_if_busy_only": False, "block_all_day": True}}


def test_write_calendar_requires_write_scope(db, test_org, worker):
    account = google_account_service.save_google_account(
        db,
        org_id=test_org.id,
        user_id=worker.id,
        access_token="t",
        scopes=[GOOGLE_CALENDAR_READONLY_SCOPE],
        now=NOW,
    )

    with pytest.raises(ValueError):
        google_account_service.update_google_account_settings(
            db,
            account,
            is_enabled=True,
            write_calendar_id="primary",
            read_calendar_ids=["primary"],
            block_availability_rules={},
        )


def test_disconnect_clears_credentials(db, test_org, worker, google_account):
    account = google_account_service.disconnect_google_account(db, test_org.id, worker.id)

    assert account.access_token_encrypted == ""
    assert account.refresh_token_encrypted is None
    assert account.write_calendar_id is None
    assert account.read_calendar_ids == []
    assert account.sync_status == AccountSyncStatus.DISCONNECTED.value
    assert google_account_service.is_connected(account) is False


# =============================================================================
# Token access
# =============================================================================

@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(db, google_account):
    async def fail_refresh(refresh_token: str) -> GoogleTokenSet:
        raise AssertionError("refresh should not be called")

    token = await google_account_service.get_access_token_for_account(
        db, google_account, refresh=fail_refresh, now=NOW
    )

    assert token == "access-token-1"


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed(db, google_account):
    google_account.token_expires_at = NOW + timedelta(seconds=30)
    db.commit()
    calls = []

    async def fake_refresh(refresh_token: str) -> GoogleTokenSet:
        calls.append(refresh_token)
        return GoogleTokenSet(access_token="access-token-2", expires_at=NOW + timedelta(hours=1))

    token = await google_account_service.get_access_token_for_account(
        db, google_account, refresh=fake_refresh, now=NOW
    )

    assert token == "access-token-2"
    assert calls == ["refresh-token-1"]
    db.refresh(google_account)
    assert decrypt_token(google_account.access_token_encrypted) == "access-token-2"
    assert decrypt_token(google_account.refresh_token_encrypted) == "refresh-token-1"
    assert google_account.token_expires_at == NOW + timedelta(hours=1)


@pytest.mark.asyncio
async def test_rejected_refresh_requires_reconnect(db, google_account):
    google_account.token_expires_at = NOW - timedelta(minutes=1)
    db.commit()

    async def rejecting_refresh(refresh_token: str) -> GoogleTokenSet:
        raise GoogleApiError("invalid_grant", 400)

    with pytest.raises(GoogleCredentialError):
        await google_account_service.get_access_token_for_account(
            db, google_account, refresh=rejecting_refresh, now=NOW
        )

    db.refresh(google_account)
    assert google_account.sync_status == AccountSyncStatus.RECONNECT_REQUIRED.value
    assert "reconnect" in google_account.sync_error


@pytest.mark.asyncio
async def test_transient_refresh_failure_propagates_unchanged(db, google_account):
    google_account.token_expires_at = NOW - timedelta(minutes=1)
    db.commit()

    async def flaky_refresh(refresh_token: str) -> GoogleTokenSet:
        raise GoogleApiError("backend error", 503)

    with pytest.raises(GoogleApiError) as exc_info:
        await google_account_service.get_access_token_for_account(
            db, google_account, refresh=flaky_refresh, now=NOW
        )

    assert not isinstance(exc_info.value, GoogleCredentialError)
    db.refresh(google_account)
    assert google_account.sync_status == AccountSyncStatus.IDLE.value


@pytest.mark.asyncio
async def test_expired_token_without_refresh_token(db, test_org, worker):
    account = google_account_service.save_google_account(
        db,
        org_id=test_org.id,
        user_id=worker.id,
        access_token="t",
        expires_at=NOW - timedelta(minutes=5),
        now=NOW,
    )

    with pytest.raises(GoogleCredentialError):
        await google_account_service.get_access_token_for_account(db, account, now=NOW)


# =============================================================================
# OAuth state
# =============================================================================

def test_oauth_state_is_single_use(db, test_org, worker):
    state = google_oauth_state_service.create_oauth_state(
        db,
        org_id=test_org.id,
        user_id=worker.id,
        redirect_uri="http://test/callback",
        scopes=[GOOGLE_CALENDAR_READONLY_SCOPE],
        wants_write=False,
        now=NOW,
    )

    row = google_oauth_state_service.consume_oauth_state(db, state, now=NOW + timedelta(minutes=1))
    assert row is not None
    assert row.user_id == worker.id
    assert google_oauth_state_service.consume_oauth_state(db, state, now=NOW + timedelta(minutes=2)) is None


def test_oauth_state_expires(db, test_org, worker):
    state = google_oauth_state_service.create_oauth_state(
        db,
        org_id=test_org.id,
        user_id=worker.id,
        redirect_uri="http://test/callback",
        scopes=[],
        wants_write=False,
        now=NOW,
    )

    assert google_oauth_state_service.consume_oauth_state(db, state, now=NOW + timedelta(minutes=11)) is None
