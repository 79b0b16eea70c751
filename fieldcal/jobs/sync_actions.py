"""Typed sync actions decoded from queued sync jobs.

Each SyncJob row carries an action string plus optional event id and
payload. ``parse_sync_action`` turns a row into exactly one of the action
types below; processors dispatch on the type and close with
``assert_never`` so an unhandled action fails type checking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union
from uuid import UUID

from fieldcal.db.enums import SyncAction
from fieldcal.db.models import SyncJob


@dataclass(frozen=True)
class UpsertEventAction:
    event_id: UUID


@dataclass(frozen=True)
class DeleteEventAction:
    event_id: UUID | None
    google_event_id: str | None
    google_calendar_id: str | None


@dataclass(frozen=True)
class PullCalendarsAction:
    pass


SyncActionType = Union[UpsertEventAction, DeleteEventAction, PullCalendarsAction]


def _payload_string(payload: dict | None, key: str) -> str | None:
    if not isinstance(payload, dict):
        return None
    value = payload.get(key)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def parse_sync_action(job: SyncJob) -> SyncActionType:
    """
    Decode a job row.

    Raises:
        ValueError: unknown action or missing required fields
    """
    try:
        action = SyncAction(job.action)
    except ValueError:
        raise ValueError(f"Unknown sync action: {job.action}")

    if action == SyncAction.UPSERT_EVENT:
        if not job.event_id:
            raise ValueError("upsert_event job requires event_id")
        return UpsertEventAction(event_id=job.event_id)
    if action == SyncAction.DELETE_EVENT:
        return DeleteEventAction(
            event_id=job.event_id,
            google_event_id=_payload_string(job.payload, "google_event_id"),
            google_calendar_id=_payload_string(job.payload, "google_calendar_id"),
        )
    return PullCalendarsAction()
