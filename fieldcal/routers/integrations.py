"""Google Calendar integration router.

Each worker connects their own Google account. The connect flow stores a
single-use state row; the callback consumes it, saves encrypted tokens and
queues an initial pull.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from fieldcal.core.config import settings
from fieldcal.core.deps import get_current_session, get_db, require_calendar_write
from fieldcal.db.enums import SyncAction
from fieldcal.schemas.auth import UserSession
from fieldcal.schemas.integrations import (
    GoogleCalendarCreate,
    GoogleStatusResponse,
    GoogleSettingsUpdate,
)
from fieldcal.services import (
    calendar_settings_service,
    google_account_service,
    google_calendar_client,
    google_oauth_state_service,
    google_sync_service,
)
from fieldcal.services.google_calendar_client import GoogleApiError, GoogleCalendarClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations/google", tags=["integrations"])

INTEGRATIONS_PATH = "/settings/integrations"


def _frontend_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.FRONTEND_URL}{INTEGRATIONS_PATH}?{urlencode(params)}",
        status_code=302,
    )


def _status_payload(account) -> GoogleStatusResponse:
    if not google_account_service.is_connected(account):
        return GoogleStatusResponse(
            connected=False,
            sync_status=account.sync_status if account else None,
        )
    return GoogleStatusResponse(
        connected=True,
        is_enabled=account.is_enabled,
        google_email=account.google_email,
        has_write_scope=google_account_service.has_write_scope(account),
        write_calendar_id=account.write_calendar_id,
        read_calendar_ids=google_account_service.get_read_calendar_ids(account),
        block_availability_rules=google_account_service.normalize_block_rules(
            account.block_availability_rules
        ),
        sync_status=account.sync_status,
        sync_error=account.sync_error,
        last_sync_at=account.last_sync_at,
        connected_at=account.connected_at,
    )


# ============================================================================
# OAuth
# ============================================================================

@router.get("/connect")
def google_connect(
    write: bool = Query(False, description="Also request event write access"),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> RedirectResponse:
    """Redirect to Google consent. Read-only unless write access is requested."""
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(
            status_code=503,
            detail="Google Calendar integration not configured. Set GOOGLE_CLIENT_ID.",
        )
    scopes = google_calendar_client.get_google_scopes(wants_write=write)
    state = google_oauth_state_service.create_oauth_state(
        db,
        org_id=session.org_id,
        user_id=session.user_id,
        redirect_uri=settings.GOOGLE_REDIRECT_URI,
        scopes=scopes,
        wants_write=write,
    )
    auth_url = google_calendar_client.build_authorize_url(
        state=state, redirect_uri=settings.GOOGLE_REDIRECT_URI, scopes=scopes
    )
    return RedirectResponse(auth_url, status_code=302)


@router.get("/callback")
async def google_callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    db: Session = Depends(get_db),
) -> RedirectResponse:
    """Complete the OAuth grant and land back on the integrations page."""
    if error:
        return _frontend_redirect(error=error)
    if not code or not state:
        return _frontend_redirect(error="missing_code")

    oauth_state = google_oauth_state_service.consume_oauth_state(db, state)
    if oauth_state is None:
        return _frontend_redirect(error="invalid_state")

    org_id = oauth_state.organization_id
    user_id = oauth_state.user_id
    try:
        tokens = await google_calendar_client.exchange_code_for_tokens(
            code, oauth_state.redirect_uri
        )
        calendars = await GoogleCalendarClient(tokens.access_token).list_calendars()
    except (GoogleApiError, RuntimeError) as e:
        logger.warning("Google OAuth callback failed for user %s: %s", user_id, e)
        return _frontend_redirect(error="google_connect_failed")

    primary = next((c for c in calendars if c["primary"]), None)
    primary_id = primary["id"] if primary else google_account_service.DEFAULT_READ_CALENDAR_ID
    scopes = tokens.scopes or list(oauth_state.scopes or [])
    can_write = google_calendar_client.GOOGLE_CALENDAR_WRITE_SCOPE in scopes

    google_account_service.save_google_account(
        db,
        org_id=org_id,
        user_id=user_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_at=tokens.expires_at,
        scopes=scopes,
        google_email=primary_id if "@" in primary_id else None,
        is_enabled=True,
        write_calendar_id=primary_id if can_write else None,
        read_calendar_ids=[primary_id],
        block_availability_rules={
            primary_id: {"block_if_busy_only": True, "block_all_day": True}
        },
    )
    google_sync_service.enqueue_sync_job(
        db, org_id=org_id, user_id=user_id, action=SyncAction.PULL_CALENDARS
    )
    logger.info("Connected Google Calendar for user %s in org %s", user_id, org_id)
    return _frontend_redirect(saved="google-connected")


# ============================================================================
# Account status & settings
# ============================================================================

@router.get("/status", response_model=GoogleStatusResponse)
def google_status(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    account = google_account_service.get_account(db, session.org_id, session.user_id)
    return _status_payload(account)


@router.patch("/settings", response_model=GoogleStatusResponse)
def update_google_settings(
    data: GoogleSettingsUpdate,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """Choose read calendars, the write calendar and per-calendar block rules."""
    account = google_account_service.get_account(db, session.org_id, session.user_id)
    if not google_account_service.is_connected(account):
        raise HTTPException(status_code=404, detail="Google Calendar is not connected")
    try:
        account = google_account_service.update_google_account_settings(
            db,
            account,
            is_enabled=data.is_enabled,
            write_calendar_id=data.write_calendar_id,
            read_calendar_ids=data.read_calendar_ids,
            block_availability_rules={
                calendar_id: rule.model_dump()
                for calendar_id, rule in data.block_availability_rules.items()
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if account.is_enabled:
        google_sync_service.enqueue_sync_job(
            db,
            org_id=session.org_id,
            user_id=session.user_id,
            action=SyncAction.PULL_CALENDARS,
        )
    return _status_payload(account)


@router.post("/disconnect")
def google_disconnect(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> dict[str, bool]:
    account = google_account_service.disconnect_google_account(
        db, session.org_id, session.user_id
    )
    return {"success": True, "was_connected": account is not None}


@router.post("/sync")
async def google_sync_now(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Pull the caller's Google calendars immediately."""
    try:
        result = await google_sync_service.sync_google_busy_blocks(
            db, org_id=session.org_id, user_id=session.user_id
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GoogleApiError as e:
        raise HTTPException(status_code=502, detail=f"Google sync failed: {e}")
    return result


@router.get("/calendars")
async def google_list_calendars(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    try:
        return await google_sync_service.list_google_calendars_for_user(
            db, org_id=session.org_id, user_id=session.user_id
        )
    except GoogleApiError as e:
        raise HTTPException(status_code=502, detail=f"Google request failed: {e}")


@router.post("/calendars", status_code=201)
async def google_create_calendar(
    data: GoogleCalendarCreate,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """Create a dedicated calendar and make it the write calendar."""
    time_zone = data.time_zone
    if not time_zone:
        org_settings = calendar_settings_service.get_org_calendar_settings(db, session.org_id)
        time_zone = calendar_settings_service.get_worker_time_zone(
            db, session.user_id, fallback=org_settings.calendar_timezone
        )
    try:
        return await google_sync_service.create_dedicated_calendar(
            db,
            org_id=session.org_id,
            user_id=session.user_id,
            summary=data.summary,
            time_zone=time_zone,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GoogleApiError as e:
        raise HTTPException(status_code=502, detail=f"Google request failed: {e}")
