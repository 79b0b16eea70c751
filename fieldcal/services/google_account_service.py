"""Google Calendar account store: encrypted tokens, calendar selection, sync status.

Credential columns are written only by save (connect/callback), token
refresh, and disconnect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from fieldcal.core.encryption import decrypt_token, encrypt_token
from fieldcal.db.enums import AccountSyncStatus
from fieldcal.db.models import GoogleCalendarAccount
from fieldcal.services import google_calendar_client
from fieldcal.services.google_calendar_client import (
    GOOGLE_CALENDAR_WRITE_SCOPE,
    GoogleApiError,
    GoogleCredentialError,
    GoogleTokenSet,
)
from fieldcal.utils.calendar_time import utc_now

logger = logging.getLogger(__name__)

TOKEN_REFRESH_EARLY = timedelta(seconds=60)
SYNC_ERROR_MAX_LENGTH = 1500
DEFAULT_READ_CALENDAR_ID = "primary"

RefreshHandler = Callable[[str], Awaitable[GoogleTokenSet]]

_UNSET: Any = object()


@dataclass(frozen=True)
class BlockRule:
    """Which events on a read calendar block availability."""

    block_if_busy_only: bool = True
    block_all_day: bool = True


# =============================================================================
# Normalization
# =============================================================================

def normalize_calendar_ids(value: Any) -> list[str]:
    """Trimmed, de-duplicated calendar ids in input order."""
    if not isinstance(value, (list, tuple)):
        return []
    seen: set[str] = set()
    ids: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        trimmed = item.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        ids.append(trimmed)
    return ids


def normalize_block_rules(value: Any) -> dict[str, dict[str, bool]]:
    if not isinstance(value, dict):
        return {}
    rules: dict[str, dict[str, bool]] = {}
    for calendar_id, rule in value.items():
        if not isinstance(calendar_id, str) or not calendar_id.strip() or not isinstance(rule, dict):
            continue
        rules[calendar_id.strip()] = {
            "block_if_busy_only": rule.get("block_if_busy_only") is not False,
            "block_all_day": rule.get("block_all_day") is not False,
        }
    return rules


def has_write_scope(account: GoogleCalendarAccount) -> bool:
    return GOOGLE_CALENDAR_WRITE_SCOPE in (account.scopes or [])


def get_read_calendar_ids(account: GoogleCalendarAccount) -> list[str]:
    """Calendars whose events block availability; never empty."""
    ids = normalize_calendar_ids(account.read_calendar_ids)
    if ids:
        return ids
    if account.write_calendar_id:
        return [account.write_calendar_id]
    return [DEFAULT_READ_CALENDAR_ID]


def get_block_rule(account: GoogleCalendarAccount, calendar_id: str) -> BlockRule:
    rule = normalize_block_rules(account.block_availability_rules).get(calendar_id)
    if not rule:
        return BlockRule()
    return BlockRule(
        block_if_busy_only=rule["block_if_busy_only"],
        block_all_day=rule["block_all_day"],
    )


def is_connected(account: GoogleCalendarAccount | None) -> bool:
    return bool(account and account.access_token_encrypted)


# =============================================================================
# CRUD
# =============================================================================

def get_account(db: Session, org_id: UUID, user_id: UUID) -> GoogleCalendarAccount | None:
    return (
        db.query(GoogleCalendarAccount)
        .filter(
            GoogleCalendarAccount.organization_id == org_id,
            GoogleCalendarAccount.user_id == user_id,
        )
        .first()
    )


def save_google_account(
    db: Session,
    *,
    org_id: UUID,
    user_id: UUID,
    access_token: str,
    refresh_token: str | None = None,
    expires_at: datetime | None = None,
    scopes: list[str] | None = None,
    google_email: str | None = _UNSET,
    is_enabled: bool | None = None,
    write_calendar_id: str | None = _UNSET,
    read_calendar_ids: list[str] | None = None,
    block_availability_rules: dict | None = None,
    now: datetime | None = None,
) -> GoogleCalendarAccount:
    """
    Create or update the account for (org, user) after an OAuth grant.

    Omitted calendar settings keep their stored values on update. Saving
    always resets the sync status to idle.
    """
    now = now or utc_now()
    account = get_account(db, org_id, user_id)
    if account is None:
        account = GoogleCalendarAccount(
            organization_id=org_id,
            user_id=user_id,
            is_enabled=True if is_enabled is None else is_enabled,
            read_calendar_ids=[],
            block_availability_rules={},
        )
        db.add(account)

    account.access_token_encrypted = encrypt_token(access_token)
    account.refresh_token_encrypted = encrypt_token(refresh_token) if refresh_token else None
    account.token_expires_at = expires_at
    account.scopes = list(scopes or [])
    account.connected_at = now
    if google_email is not _UNSET:
        account.google_email = google_email
    if is_enabled is not None:
        account.is_enabled = is_enabled
    if write_calendar_id is not _UNSET:
        account.write_calendar_id = write_calendar_id or None
    if read_calendar_ids is not None:
        account.read_calendar_ids = normalize_calendar_ids(read_calendar_ids)
    if block_availability_rules is not None:
        account.block_availability_rules = normalize_block_rules(block_availability_rules)
    account.sync_status = AccountSyncStatus.IDLE.value
    account.sync_error = None

    db.commit()
    db.refresh(account)
    return account


def disconnect_google_account(db: Session, org_id: UUID, user_id: UUID) -> GoogleCalendarAccount | None:
    """Zero credentials and calendar selection; the row stays for history."""
    account = get_account(db, org_id, user_id)
    if account is None:
        return None
    account.is_enabled = False
    account.access_token_encrypted = ""
    account.refresh_token_encrypted = None
    account.token_expires_at = None
    account.scopes = []
    account.write_calendar_id = None
    account.read_calendar_ids = []
    account.block_availability_rules = {}
    account.sync_status = AccountSyncStatus.DISCONNECTED.value
    account.sync_error = None
    db.commit()
    logger.info("Disconnected Google Calendar for user %s in org %s", user_id, org_id)
    return account


def update_google_account_settings(
    db: Session,
    account: GoogleCalendarAccount,
    *,
    is_enabled: bool,
    write_calendar_id: str | None,
    read_calendar_ids: list[str],
    block_availability_rules: dict,
) -> GoogleCalendarAccount:
    if write_calendar_id and not has_write_scope(account):
        raise ValueError("Write access was not granted; reconnect with write access first.")
    account.is_enabled = is_enabled
    account.write_calendar_id = write_calendar_id or None
    account.read_calendar_ids = normalize_calendar_ids(read_calendar_ids)
    account.block_availability_rules = normalize_block_rules(block_availability_rules)
    account.sync_status = (
        AccountSyncStatus.IDLE.value if is_enabled else AccountSyncStatus.DISCONNECTED.value
    )
    account.sync_error = None
    db.commit()
    db.refresh(account)
    return account


def mark_google_account_sync_result(
    db: Session,
    account: GoogleCalendarAccount,
    *,
    ok: bool,
    error: str | None = None,
    status: AccountSyncStatus | None = None,
    now: datetime | None = None,
) -> None:
    account.last_sync_at = now or utc_now()
    if ok:
        account.sync_status = AccountSyncStatus.OK.value
        account.sync_error = None
    else:
        account.sync_status = (status or AccountSyncStatus.ERROR).value
        account.sync_error = (error or "Sync failed.")[:SYNC_ERROR_MAX_LENGTH]
    db.commit()


# =============================================================================
# Token access
# =============================================================================

async def get_access_token_for_account(
    db: Session,
    account: GoogleCalendarAccount,
    *,
    refresh: RefreshHandler | None = None,
    now: datetime | None = None,
) -> str:
    """
    Decrypted access token, refreshed when it expires within 60 seconds.

    Raises:
        GoogleCredentialError: no token, no refresh token, or the refresh
            token was rejected (account flagged for reconnect)
    """
    now = now or utc_now()
    if not account.access_token_encrypted:
        raise GoogleCredentialError("Google account is not connected.")

    needs_refresh = bool(
        account.token_expires_at and account.token_expires_at <= now + TOKEN_REFRESH_EARLY
    )
    if not needs_refresh:
        return decrypt_token(account.access_token_encrypted)

    if not account.refresh_token_encrypted:
        raise GoogleCredentialError(
            "Google access token expired and no refresh token is available."
        )

    refresh = refresh or google_calendar_client.refresh_access_token
    current_refresh_token = decrypt_token(account.refresh_token_encrypted)
    try:
        refreshed = await refresh(current_refresh_token)
    except GoogleApiError as exc:
        if isinstance(exc, GoogleCredentialError) or exc.status in (400, 401):
            mark_google_account_sync_result(
                db,
                account,
                ok=False,
                error=f"Google refresh token rejected; reconnect required. {exc}",
                status=AccountSyncStatus.RECONNECT_REQUIRED,
                now=now,
            )
            raise GoogleCredentialError(
                f"Google refresh token rejected: {exc}", exc.status
            ) from exc
        raise

    account.access_token_encrypted = encrypt_token(refreshed.access_token)
    account.refresh_token_encrypted = encrypt_token(
        refreshed.refresh_token or current_refresh_token
    )
    account.token_expires_at = refreshed.expires_at
    if refreshed.scopes:
        account.scopes = refreshed.scopes
    db.commit()
    logger.info("Refreshed Google access token for account %s", account.id)
    return refreshed.access_token
