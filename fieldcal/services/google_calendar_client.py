"""Google Calendar gateway.

Handles:
- OAuth authorize URL, code exchange and token refresh
- Calendar listing and dedicated calendar creation
- Event listing in a range and event create/update/delete
- Payload shaping for timed vs all-day events

Callers only deal with UTC instants and an all_day flag; Google's
date/dateTime payload shapes stay inside this module. Non-2xx responses
raise GoogleApiError carrying the HTTP status so the sync queue can
classify failures.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypedDict
from urllib.parse import quote, urlencode

import httpx

from fieldcal.core.config import settings
from fieldcal.utils.calendar_time import (
    add_days,
    ensure_time_zone,
    local_date_from_utc,
    parse_utc_date_time,
    to_utc_from_local_date_time,
)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_BASE_URL = "https://www.googleapis.com/calendar/v3"

GOOGLE_CALENDAR_READONLY_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"
GOOGLE_CALENDAR_WRITE_SCOPE = "https://www.googleapis.com/auth/calendar.events"

CALENDAR_LIST_PAGE_SIZE = 250
EVENTS_PAGE_SIZE = 2500
DEFAULT_EVENT_MINUTES = 30

_SCOPE_SPLIT_RE = re.compile(r"[,\s]+")


# =============================================================================
# Errors & Types
# =============================================================================

class GoogleApiError(Exception):
    """Non-success response from a Google endpoint."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class GoogleCredentialError(GoogleApiError):
    """Credentials are missing or can no longer be refreshed; user must reconnect."""

    def __init__(self, message: str, status: int | None = 401):
        super().__init__(message, status)


@dataclass
class GoogleTokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)


class GoogleCalendarInfo(TypedDict):
    id: str
    summary: str
    primary: bool
    access_role: str
    time_zone: str | None


class GoogleEventRecord(TypedDict):
    id: str
    status: str | None
    summary: str | None
    description: str | None
    location: str | None
    transparency: str | None
    start_date_time: str | None
    start_date: str | None
    start_time_zone: str | None
    end_date_time: str | None
    end_date: str | None
    end_time_zone: str | None
    updated: str | None


@dataclass(frozen=True)
class GoogleEventRange:
    start_at: datetime
    end_at: datetime
    all_day: bool


def _get_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _get_dicts(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _safe_json(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _isoformat_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# OAuth
# =============================================================================

def parse_scopes(scope: Any) -> list[str]:
    if not isinstance(scope, str):
        return []
    return [item for item in _SCOPE_SPLIT_RE.split(scope.strip()) if item]


def get_google_scopes(wants_write: bool = False) -> list[str]:
    if wants_write:
        return [GOOGLE_CALENDAR_READONLY_SCOPE, GOOGLE_CALENDAR_WRITE_SCOPE]
    return [GOOGLE_CALENDAR_READONLY_SCOPE]


def _require_client_credentials() -> tuple[str, str]:
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        raise RuntimeError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be configured")
    return settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET


def build_authorize_url(*, state: str, redirect_uri: str, scopes: list[str]) -> str:
    """Consent URL requesting offline access so a refresh token is issued."""
    if not settings.GOOGLE_CLIENT_ID:
        raise RuntimeError("GOOGLE_CLIENT_ID must be configured")
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
        "scope": " ".join(scopes),
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def parse_token_response(payload: dict, *, now: datetime | None = None) -> GoogleTokenSet:
    access_token = _get_string(payload.get("access_token"))
    if not access_token:
        raise GoogleApiError("Google token response did not include access_token.")

    expires_at = None
    try:
        expires_in = int(payload.get("expires_in") or 0)
    except (TypeError, ValueError):
        expires_in = 0
    if expires_in > 0:
        expires_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=expires_in)

    return GoogleTokenSet(
        access_token=access_token,
        refresh_token=_get_string(payload.get("refresh_token")),
        expires_at=expires_at,
        scopes=parse_scopes(payload.get("scope")),
    )


async def _request_token(
    data: dict[str, str], transport: httpx.AsyncBaseTransport | None = None
) -> GoogleTokenSet:
    async with httpx.AsyncClient(
        timeout=settings.GOOGLE_HTTP_TIMEOUT_SECONDS, transport=transport
    ) as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data=data,
            headers={"Accept": "application/json"},
        )
    payload = _safe_json(response)
    if not response.is_success:
        message = (
            _get_string(payload.get("error_description"))
            or _get_string(payload.get("error"))
            or "Google token request failed."
        )
        raise GoogleApiError(message, response.status_code)
    return parse_token_response(payload)


async def exchange_code_for_tokens(
    code: str,
    redirect_uri: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GoogleTokenSet:
    client_id, client_secret = _require_client_credentials()
    return await _request_token(
        {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        transport,
    )


async def refresh_access_token(
    refresh_token: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GoogleTokenSet:
    client_id, client_secret = _require_client_credentials()
    return await _request_token(
        {
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
        },
        transport,
    )


# =============================================================================
# Event payloads
# =============================================================================

def build_google_event_body(
    *,
    summary: str,
    start_at: datetime,
    end_at: datetime,
    all_day: bool,
    time_zone: str,
    description: str | None = None,
    location: str | None = None,
) -> dict:
    """
    Google event resource for a local event.

    All-day end dates are exclusive; an end that collapses onto the start
    date is pushed to the following day.
    """
    tz = ensure_time_zone(time_zone)
    body: dict[str, Any] = {"summary": summary}
    if description:
        body["description"] = description
    if location:
        body["location"] = location

    if all_day:
        start_date = local_date_from_utc(start_at, tz)
        end_date = local_date_from_utc(end_at, tz)
        if end_date <= start_date:
            end_date = add_days(start_date, 1)
        body["start"] = {"date": start_date, "timeZone": tz}
        body["end"] = {"date": end_date, "timeZone": tz}
        return body

    body["start"] = {"dateTime": _isoformat_z(start_at), "timeZone": tz}
    body["end"] = {"dateTime": _isoformat_z(end_at), "timeZone": tz}
    return body


def parse_google_event_range(event: GoogleEventRecord, fallback_time_zone: str) -> GoogleEventRange | None:
    """UTC range of a Google event; None when it carries no usable start."""
    start_raw = event.get("start_date_time")
    end_raw = event.get("end_date_time")
    if start_raw and end_raw:
        start_at = parse_utc_date_time(start_raw)
        end_at = parse_utc_date_time(end_raw)
        if start_at and end_at:
            if end_at <= start_at:
                end_at = start_at + timedelta(minutes=DEFAULT_EVENT_MINUTES)
            return GoogleEventRange(start_at, end_at, all_day=False)

    start_date = event.get("start_date")
    if not start_date:
        return None
    tz = ensure_time_zone(event.get("start_time_zone") or fallback_time_zone)
    try:
        start_at = to_utc_from_local_date_time(start_date, "00:00", tz)
        end_at = to_utc_from_local_date_time(event.get("end_date") or add_days(start_date, 1), "00:00", tz)
    except ValueError:
        return None
    if end_at <= start_at:
        end_at = to_utc_from_local_date_time(add_days(start_date, 1), "00:00", tz)
    return GoogleEventRange(start_at, end_at, all_day=True)


def _to_event_record(item: dict) -> GoogleEventRecord | None:
    event_id = _get_string(item.get("id"))
    if not event_id:
        return None
    start = item.get("start") if isinstance(item.get("start"), dict) else {}
    end = item.get("end") if isinstance(item.get("end"), dict) else {}
    return GoogleEventRecord(
        id=event_id,
        status=_get_string(item.get("status")),
        summary=_get_string(item.get("summary")),
        description=_get_string(item.get("description")),
        location=_get_string(item.get("location")),
        transparency=_get_string(item.get("transparency")),
        start_date_time=_get_string(start.get("dateTime")),
        start_date=_get_string(start.get("date")),
        start_time_zone=_get_string(start.get("timeZone")),
        end_date_time=_get_string(end.get("dateTime")),
        end_date=_get_string(end.get("date")),
        end_time_zone=_get_string(end.get("timeZone")),
        updated=_get_string(item.get("updated")),
    )


# =============================================================================
# Calendar API client
# =============================================================================

class GoogleCalendarClient:
    """Calendar API client scoped to one access token."""

    def __init__(
        self,
        access_token: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        if not access_token:
            raise GoogleCredentialError("Google access token is missing.")
        self._access_token = access_token
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.GOOGLE_HTTP_TIMEOUT_SECONDS

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict | None = None,
    ) -> dict:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.request(
                method,
                f"{GOOGLE_CALENDAR_BASE_URL}{path}",
                params=params,
                json=json,
                headers=headers,
            )

        if response.status_code == 204:
            return {}
        payload = _safe_json(response)
        if not response.is_success:
            error = payload.get("error")
            message = (
                _get_string(payload.get("error_description"))
                or (_get_string(error.get("message")) if isinstance(error, dict) else None)
                or _get_string(error)
                or f"Google API request failed ({response.status_code})."
            )
            raise GoogleApiError(message, response.status_code)
        return payload

    async def list_calendars(self) -> list[GoogleCalendarInfo]:
        calendars: list[GoogleCalendarInfo] = []
        page_token: str | None = None
        while True:
            params = {"maxResults": str(CALENDAR_LIST_PAGE_SIZE)}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request("GET", "/users/me/calendarList", params=params)
            for item in _get_dicts(payload.get("items")):
                calendar_id = _get_string(item.get("id"))
                if not calendar_id:
                    continue
                calendars.append(
                    GoogleCalendarInfo(
                        id=calendar_id,
                        summary=_get_string(item.get("summary")) or calendar_id,
                        primary=item.get("primary") is True,
                        access_role=_get_string(item.get("accessRole")) or "",
                        time_zone=_get_string(item.get("timeZone")),
                    )
                )
            page_token = _get_string(payload.get("nextPageToken"))
            if not page_token:
                return calendars

    async def create_calendar(self, summary: str, time_zone: str | None = None) -> dict:
        body: dict[str, Any] = {"summary": summary}
        if time_zone:
            body["timeZone"] = time_zone
        payload = await self._request("POST", "/calendars", json=body)
        calendar_id = _get_string(payload.get("id"))
        if not calendar_id:
            raise GoogleApiError("Google create calendar response did not include id.")
        return {"id": calendar_id, "summary": _get_string(payload.get("summary")) or summary}

    async def list_events(
        self, calendar_id: str, time_min: datetime, time_max: datetime
    ) -> list[GoogleEventRecord]:
        """Expanded (singleEvents) events in range, including cancelled ones."""
        records: list[GoogleEventRecord] = []
        page_token: str | None = None
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        while True:
            params = {
                "singleEvents": "true",
                "showDeleted": "true",
                "orderBy": "startTime",
                "timeMin": _isoformat_z(time_min),
                "timeMax": _isoformat_z(time_max),
                "maxResults": str(EVENTS_PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request("GET", path, params=params)
            for item in _get_dicts(payload.get("items")):
                record = _to_event_record(item)
                if record:
                    records.append(record)
            page_token = _get_string(payload.get("nextPageToken"))
            if not page_token:
                return records

    async def create_event(self, calendar_id: str, body: dict) -> str:
        payload = await self._request(
            "POST", f"/calendars/{quote(calendar_id, safe='')}/events", json=body
        )
        event_id = _get_string(payload.get("id"))
        if not event_id:
            raise GoogleApiError("Google event create response did not include id.")
        return event_id

    async def update_event(self, calendar_id: str, event_id: str, body: dict) -> None:
        await self._request(
            "PUT",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            json=body,
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._request(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
        )
