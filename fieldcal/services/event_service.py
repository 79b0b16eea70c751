"""Calendar event and time-off booking.

Booking writes go through conflict detection, then enqueue outbound sync
work. The sync processor owns ``sync_status`` and the Google ids; nothing
here writes them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from fieldcal.db.enums import (
    CalendarView,
    EventProvider,
    EventStatus,
    EventType,
    SyncAction,
)
from fieldcal.db.models import Event, EventWorker, TimeOff, User
from fieldcal.services import availability_service, calendar_settings_service, google_sync_service
from fieldcal.services.calendar_errors import (
    CalendarConflictError,
    CalendarNotFoundError,
    CalendarPermissionError,
)
from fieldcal.services.calendar_settings_service import CalendarSettings
from fieldcal.utils.calendar_time import (
    get_utc_range_for_date,
    get_visible_range,
    require_date_key,
    utc_now,
)

logger = logging.getLogger(__name__)

SUGGESTED_SLOT_LIMIT = 6
TIME_OFF_REASON_MAX_LENGTH = 500

UPDATABLE_EVENT_FIELDS = frozenset(
    {
        "title",
        "description",
        "customer_name",
        "address_line",
        "type",
        "status",
        "busy",
        "all_day",
        "start_at",
        "end_at",
        "worker_ids",
    }
)
SCHEDULE_FIELDS = frozenset({"start_at", "end_at", "busy", "status", "worker_ids"})


# =============================================================================
# Helpers
# =============================================================================

def is_importer_owned(event: Event) -> bool:
    """Busy blocks imported from Google; only the importer may change them."""
    return event.provider == EventProvider.GOOGLE.value or event.type == EventType.GCAL_BLOCK.value


def _require_aware(value: datetime, field: str) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"{field} must include a UTC offset")
    return value


def normalize_worker_ids(worker_ids: Iterable[UUID] | None) -> list[UUID]:
    """De-duplicate worker ids, keeping the first occurrence order."""
    seen: set[UUID] = set()
    result: list[UUID] = []
    for worker_id in worker_ids or []:
        if worker_id in seen:
            continue
        seen.add(worker_id)
        result.append(worker_id)
    return result


def validate_workers(db: Session, org_id: UUID, worker_ids: list[UUID]) -> None:
    found = {
        row.id
        for row in db.query(User.id)
        .filter(User.organization_id == org_id, User.id.in_(worker_ids))
        .all()
    }
    missing = [str(worker_id) for worker_id in worker_ids if worker_id not in found]
    if missing:
        raise ValueError(f"Unknown worker(s) for this organization: {', '.join(missing)}")


def ensure_no_conflicts(
    db: Session,
    *,
    org_id: UUID,
    worker_ids: list[UUID],
    start_at: datetime,
    end_at: datetime,
    settings: CalendarSettings,
    exclude_event_id: UUID | None = None,
    exclude_hold_id: UUID | None = None,
    now: datetime | None = None,
) -> None:
    """
    Raise CalendarConflictError when the range is blocked for any worker.

    The error carries alternative slots for the first worker on the same day.
    """
    conflicts = availability_service.detect_worker_conflicts(
        db,
        org_id=org_id,
        worker_ids=worker_ids,
        start_at=start_at,
        end_at=end_at,
        exclude_event_id=exclude_event_id,
        exclude_hold_id=exclude_hold_id,
        settings=settings,
        now=now,
    )
    if not conflicts:
        return
    suggestions = availability_service.suggest_slots_for_conflict(
        db,
        org_id=org_id,
        worker_id=worker_ids[0],
        start_at=start_at,
        end_at=end_at,
        settings=settings,
        limit=SUGGESTED_SLOT_LIMIT,
    )
    raise CalendarConflictError(conflicts, suggestions.slots_utc, suggestions.timezone)


def _enqueue_upsert(db: Session, event: Event, now: datetime) -> None:
    if event.provider != EventProvider.LOCAL.value or not event.assigned_to_user_id:
        return
    google_sync_service.enqueue_sync_job(
        db,
        org_id=event.organization_id,
        user_id=event.assigned_to_user_id,
        action=SyncAction.UPSERT_EVENT,
        event_id=event.id,
        now=now,
        commit=False,
    )


def _enqueue_remote_delete(
    db: Session,
    *,
    org_id: UUID,
    user_id: UUID | None,
    event_id: UUID | None,
    google_event_id: str | None,
    google_calendar_id: str | None,
    now: datetime,
) -> None:
    google_sync_service.enqueue_sync_job(
        db,
        org_id=org_id,
        user_id=user_id,
        action=SyncAction.DELETE_EVENT,
        event_id=event_id,
        payload={
            "google_event_id": google_event_id,
            "google_calendar_id": google_calendar_id,
        },
        now=now,
        commit=False,
    )


# =============================================================================
# Events
# =============================================================================

def get_event(db: Session, org_id: UUID, event_id: UUID) -> Event | None:
    return (
        db.query(Event)
        .filter(Event.organization_id == org_id, Event.id == event_id)
        .first()
    )


def list_events(
    db: Session,
    *,
    org_id: UUID,
    view: CalendarView = CalendarView.WEEK,
    date_key: str,
    worker_ids: list[UUID] | None = None,
    include_cancelled: bool = False,
) -> list[Event]:
    """Events overlapping the visible day/week/month range in the org zone."""
    settings = calendar_settings_service.get_org_calendar_settings(db, org_id)
    first_day, end_day = get_visible_range(
        view.value, require_date_key(date_key), settings.week_starts_on
    )
    range_start = get_utc_range_for_date(first_day, settings.calendar_timezone)[0]
    range_end = get_utc_range_for_date(end_day, settings.calendar_timezone)[0]

    query = db.query(Event).filter(
        Event.organization_id == org_id,
        Event.start_at < range_end,
        or_(
            Event.end_at > range_start,
            and_(Event.end_at.is_(None), Event.start_at >= range_start),
        ),
    )
    if not include_cancelled:
        query = query.filter(Event.status != EventStatus.CANCELLED.value)
    if worker_ids:
        query = query.filter(
            or_(
                Event.assigned_to_user_id.in_(worker_ids),
                Event.worker_assignments.any(EventWorker.worker_user_id.in_(worker_ids)),
            )
        )
    return query.order_by(Event.start_at, Event.created_at).all()


def create_event(
    db: Session,
    *,
    org_id: UUID,
    actor_id: UUID | None,
    title: str,
    start_at: datetime,
    end_at: datetime | None = None,
    duration_minutes: int | None = None,
    worker_ids: list[UUID] | None = None,
    event_type: EventType = EventType.JOB,
    status: EventStatus = EventStatus.SCHEDULED,
    busy: bool = True,
    all_day: bool = False,
    description: str | None = None,
    customer_name: str | None = None,
    address_line: str | None = None,
    lead_id: UUID | None = None,
    exclude_hold_id: UUID | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> Event:
    """
    Create a local event, conflict-checked when busy.

    End defaults to start plus the (clamped) duration. Workers default to
    the actor; the first worker becomes the assignee.

    Raises:
        ValueError: invalid input
        CalendarConflictError: the time is blocked for a worker
    """
    now = now or utc_now()
    title = (title or "").strip()
    if not title:
        raise ValueError("title is required")
    if event_type == EventType.GCAL_BLOCK:
        raise ValueError("gcal_block events are created by Google sync only")
    start_at = _require_aware(start_at, "start_at")
    if end_at is None:
        end_at = start_at + timedelta(
            minutes=availability_service.clamp_duration_minutes(duration_minutes)
        )
    end_at = _require_aware(end_at, "end_at")
    if end_at <= start_at:
        raise ValueError("end_at must be after start_at")

    workers = normalize_worker_ids(worker_ids) or normalize_worker_ids([actor_id] if actor_id else [])
    if workers:
        validate_workers(db, org_id, workers)

    settings = calendar_settings_service.get_org_calendar_settings(db, org_id)
    if busy and workers and status != EventStatus.CANCELLED:
        ensure_no_conflicts(
            db,
            org_id=org_id,
            worker_ids=workers,
            start_at=start_at,
            end_at=end_at,
            settings=settings,
            exclude_hold_id=exclude_hold_id,
            now=now,
        )

    event = Event(
        organization_id=org_id,
        lead_id=lead_id,
        type=event_type.value,
        status=status.value,
        busy=busy,
        all_day=all_day,
        title=title,
        description=description,
        customer_name=customer_name,
        address_line=address_line,
        start_at=start_at,
        end_at=end_at,
        assigned_to_user_id=workers[0] if workers else None,
        created_by_user_id=actor_id,
        provider=EventProvider.LOCAL.value,
    )
    for worker_id in workers:
        event.worker_assignments.append(
            EventWorker(organization_id=org_id, worker_user_id=worker_id)
        )
    db.add(event)
    db.flush()

    _enqueue_upsert(db, event, now)
    if commit:
        db.commit()
        db.refresh(event)
    logger.info("Created event %s for org %s (%s worker(s))", event.id, org_id, len(workers))
    return event


def _replace_workers(event: Event, workers: list[UUID]) -> None:
    for assignment in list(event.worker_assignments):
        if assignment.worker_user_id not in workers:
            event.worker_assignments.remove(assignment)
    existing = set(event.worker_ids)
    for worker_id in workers:
        if worker_id not in existing:
            event.worker_assignments.append(
                EventWorker(organization_id=event.organization_id, worker_user_id=worker_id)
            )
    event.assigned_to_user_id = workers[0]


def update_event(
    db: Session,
    *,
    org_id: UUID,
    event_id: UUID,
    changes: dict[str, Any],
    now: datetime | None = None,
) -> Event:
    """
    Apply a partial update (reschedule, reassign, retitle).

    Moving ``start_at`` alone keeps the event's duration. Reassigning a
    synced event queues a remote delete for the previous assignee before
    the upsert for the new one.
    """
    now = now or utc_now()
    event = get_event(db, org_id, event_id)
    if event is None:
        raise CalendarNotFoundError("Event not found")
    if is_importer_owned(event):
        raise CalendarPermissionError("Google-imported busy blocks are read-only")

    unknown = set(changes) - UPDATABLE_EVENT_FIELDS
    if unknown:
        raise ValueError(f"Unsupported field(s): {', '.join(sorted(unknown))}")

    previous_assignee = event.assigned_to_user_id
    previous_google_event_id = event.google_event_id
    previous_google_calendar_id = event.google_calendar_id
    original_duration = (
        availability_service.event_end_or_default(event.start_at, event.end_at) - event.start_at
    )

    if "title" in changes:
        title = (changes["title"] or "").strip()
        if not title:
            raise ValueError("title is required")
        event.title = title
    for field in ("description", "customer_name", "address_line"):
        if field in changes:
            setattr(event, field, changes[field])
    if changes.get("type") is not None:
        event_type = EventType(changes["type"])
        if event_type == EventType.GCAL_BLOCK:
            raise ValueError("gcal_block events are created by Google sync only")
        event.type = event_type.value
    if changes.get("status") is not None:
        event.status = EventStatus(changes["status"]).value
    if changes.get("busy") is not None:
        event.busy = bool(changes["busy"])
    if changes.get("all_day") is not None:
        event.all_day = bool(changes["all_day"])

    if changes.get("start_at") is not None:
        event.start_at = _require_aware(changes["start_at"], "start_at")
        if "end_at" not in changes:
            event.end_at = event.start_at + original_duration
    if "end_at" in changes:
        end_at = changes["end_at"]
        event.end_at = _require_aware(end_at, "end_at") if end_at is not None else None
    if event.end_at is not None and event.end_at <= event.start_at:
        raise ValueError("end_at must be after start_at")

    if "worker_ids" in changes:
        workers = normalize_worker_ids(changes["worker_ids"])
        if not workers:
            raise ValueError("At least one worker is required")
        validate_workers(db, org_id, workers)
        _replace_workers(event, workers)

    workers = event.worker_ids or ([event.assigned_to_user_id] if event.assigned_to_user_id else [])
    schedule_changed = bool(SCHEDULE_FIELDS & set(changes))
    if schedule_changed and workers and event.busy and event.status != EventStatus.CANCELLED.value:
        settings = calendar_settings_service.get_org_calendar_settings(db, org_id)
        try:
            ensure_no_conflicts(
                db,
                org_id=org_id,
                worker_ids=workers,
                start_at=event.start_at,
                end_at=availability_service.event_end_or_default(event.start_at, event.end_at),
                settings=settings,
                exclude_event_id=event.id,
                now=now,
            )
        except CalendarConflictError:
            db.rollback()
            raise

    if (
        previous_assignee
        and previous_assignee != event.assigned_to_user_id
        and previous_google_event_id
    ):
        _enqueue_remote_delete(
            db,
            org_id=org_id,
            user_id=previous_assignee,
            event_id=None,
            google_event_id=previous_google_event_id,
            google_calendar_id=previous_google_calendar_id,
            now=now,
        )
    db.flush()
    _enqueue_upsert(db, event, now)
    db.commit()
    db.refresh(event)
    return event


def cancel_event(
    db: Session,
    *,
    org_id: UUID,
    event_id: UUID,
    now: datetime | None = None,
) -> Event:
    """Cancel an event and queue its remote removal. Repeat calls are no-ops."""
    now = now or utc_now()
    event = get_event(db, org_id, event_id)
    if event is None:
        raise CalendarNotFoundError("Event not found")
    if is_importer_owned(event):
        raise CalendarPermissionError("Google-imported busy blocks are read-only")
    if event.status == EventStatus.CANCELLED.value:
        return event

    event.status = EventStatus.CANCELLED.value
    if event.provider == EventProvider.LOCAL.value and event.assigned_to_user_id:
        _enqueue_remote_delete(
            db,
            org_id=org_id,
            user_id=event.assigned_to_user_id,
            event_id=event.id,
            google_event_id=event.google_event_id,
            google_calendar_id=event.google_calendar_id,
            now=now,
        )
    db.commit()
    db.refresh(event)
    logger.info("Cancelled event %s for org %s", event.id, org_id)
    return event


# =============================================================================
# Time off
# =============================================================================

def list_time_off(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID | None = None,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
) -> list[TimeOff]:
    query = db.query(TimeOff).filter(TimeOff.organization_id == org_id)
    if worker_id:
        query = query.filter(TimeOff.worker_user_id == worker_id)
    if start_at:
        query = query.filter(TimeOff.end_at > start_at)
    if end_at:
        query = query.filter(TimeOff.start_at < end_at)
    return query.order_by(TimeOff.start_at).all()


def create_time_off(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID,
    start_at: datetime,
    end_at: datetime,
    reason: str | None = None,
) -> TimeOff:
    """Block a worker's time. Time off is never synced outward."""
    start_at = _require_aware(start_at, "start_at")
    end_at = _require_aware(end_at, "end_at")
    if end_at <= start_at:
        raise ValueError("end_at must be after start_at")
    validate_workers(db, org_id, [worker_id])

    row = TimeOff(
        organization_id=org_id,
        worker_user_id=worker_id,
        start_at=start_at,
        end_at=end_at,
        reason=(reason or "").strip()[:TIME_OFF_REASON_MAX_LENGTH] or None,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def get_time_off(db: Session, org_id: UUID, time_off_id: UUID) -> TimeOff | None:
    return (
        db.query(TimeOff)
        .filter(TimeOff.organization_id == org_id, TimeOff.id == time_off_id)
        .first()
    )


def delete_time_off(db: Session, *, org_id: UUID, time_off_id: UUID) -> None:
    row = get_time_off(db, org_id, time_off_id)
    if row is None:
        raise CalendarNotFoundError("Time off not found")
    db.delete(row)
    db.commit()
