"""Availability engine: blocked intervals, open slots, and conflict detection.

Everything here is read-only except round-robin bookkeeping in
find_next_open_slot. Intervals are local minutes (0-1440) within one
worker's local day; slots are returned as UTC instants.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from fieldcal.db.enums import (
    BlockedSource,
    CalendarRole,
    EventStatus,
    HoldStatus,
    NextOpenFallback,
)
from fieldcal.db.models import CalendarHold, Event, EventWorker, TimeOff, User
from fieldcal.services import calendar_settings_service
from fieldcal.services.calendar_settings_service import CalendarSettings
from fieldcal.utils.calendar_time import (
    DEFAULT_SLOT_MINUTES,
    add_days,
    clamp_int,
    clamp_slot_minutes,
    get_utc_range_for_date,
    local_date_from_utc,
    local_minute_to_utc,
    minutes_for_date_range,
    require_date_key,
    utc_now,
)

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 12 * 60
MAX_NEXT_OPEN_LOOKAHEAD_DAYS = 21
MAX_NEXT_OPEN_WORKERS = 200


@dataclass(frozen=True)
class BlockedInterval:
    start_minute: int
    end_minute: int
    source: BlockedSource
    source_id: UUID | None = None


@dataclass(frozen=True)
class WorkerConflict:
    worker_id: UUID
    source: BlockedSource
    source_id: UUID | None


@dataclass
class AvailabilityResult:
    slots_utc: list[datetime] = field(default_factory=list)
    timezone: str = ""


@dataclass(frozen=True)
class NextOpenSlot:
    strategy_used: str  # "preferred" | "owner" | "round_robin"
    worker_id: UUID
    slot: datetime
    duration_minutes: int


def event_end_or_default(start_at: datetime, end_at: datetime | None) -> datetime:
    """Events without an end occupy one default slot."""
    return end_at or start_at + timedelta(minutes=DEFAULT_SLOT_MINUTES)


def clamp_duration_minutes(value: int | None) -> int:
    return clamp_int(value, DEFAULT_SLOT_MINUTES, MIN_DURATION_MINUTES, MAX_DURATION_MINUTES)


# =============================================================================
# Interval math
# =============================================================================

def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """Half-open overlap test; touching intervals do not overlap."""
    return a_start < b_end and b_start < a_end


def merge_intervals(intervals: Iterable[BlockedInterval]) -> list[tuple[int, int]]:
    """Sort by start and fold overlapping or touching intervals together."""
    ordered = sorted(
        ((item.start_minute, item.end_minute) if isinstance(item, BlockedInterval) else tuple(item))
        for item in intervals
    )
    merged: list[list[int]] = []
    for start, end in ordered:
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(start, end) for start, end in merged]


# =============================================================================
# Blocked-interval finder
# =============================================================================

def find_worker_blocked_intervals(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID,
    date_key: str | date,
    tz: str,
    include_events: bool = True,
    include_holds: bool = True,
    include_time_off: bool = True,
    exclude_event_id: UUID | None = None,
    exclude_hold_id: UUID | None = None,
    now: datetime | None = None,
) -> list[BlockedInterval]:
    """
    Blocked local-minute intervals for one worker on one local date.

    Rows are clipped to the day; results are not merged.
    """
    now = now or utc_now()
    day_start, day_end = get_utc_range_for_date(date_key, tz)
    intervals: list[BlockedInterval] = []

    def add(start_at: datetime, end_at: datetime, source: BlockedSource, source_id: UUID) -> None:
        minutes = minutes_for_date_range(start_at, end_at, day_start, day_end, tz)
        if minutes is not None:
            intervals.append(BlockedInterval(minutes[0], minutes[1], source, source_id))

    if include_events:
        query = db.query(Event).filter(
            Event.organization_id == org_id,
            Event.busy.is_(True),
            Event.status != EventStatus.CANCELLED.value,
            Event.start_at < day_end,
            or_(Event.end_at.is_(None), Event.end_at > day_start),
            or_(
                Event.assigned_to_user_id == worker_id,
                Event.worker_assignments.any(EventWorker.worker_user_id == worker_id),
            ),
        )
        if exclude_event_id:
            query = query.filter(Event.id != exclude_event_id)
        for event in query.all():
            add(
                event.start_at,
                event_end_or_default(event.start_at, event.end_at),
                BlockedSource.EVENT,
                event.id,
            )

    if include_holds:
        query = db.query(CalendarHold).filter(
            CalendarHold.organization_id == org_id,
            CalendarHold.worker_user_id == worker_id,
            CalendarHold.status == HoldStatus.ACTIVE.value,
            CalendarHold.expires_at > now,
            CalendarHold.start_at < day_end,
            CalendarHold.end_at > day_start,
        )
        if exclude_hold_id:
            query = query.filter(CalendarHold.id != exclude_hold_id)
        for hold in query.all():
            add(hold.start_at, hold.end_at, BlockedSource.HOLD, hold.id)

    if include_time_off:
        rows = (
            db.query(TimeOff)
            .filter(
                TimeOff.organization_id == org_id,
                TimeOff.worker_user_id == worker_id,
                TimeOff.start_at < day_end,
                TimeOff.end_at > day_start,
            )
            .all()
        )
        for row in rows:
            add(row.start_at, row.end_at, BlockedSource.TIME_OFF, row.id)

    return intervals


# =============================================================================
# Availability computer
# =============================================================================

def compute_availability_for_worker(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID,
    date_key: str | date,
    duration_minutes: int | None = DEFAULT_SLOT_MINUTES,
    step_minutes: int | None = None,
    settings: CalendarSettings | None = None,
    ignore_event_conflicts: bool = False,
    exclude_event_id: UUID | None = None,
    exclude_hold_id: UUID | None = None,
    now: datetime | None = None,
) -> AvailabilityResult:
    """
    Open slot start times for a worker on a local date.

    Every returned slot, booked immediately, overlaps nothing that was
    blocked when this ran. Concurrent bookings are not guarded against.
    """
    require_date_key(date_key)
    settings = settings or calendar_settings_service.get_org_calendar_settings(db, org_id)
    tz = calendar_settings_service.get_worker_time_zone(
        db, worker_id, fallback=settings.calendar_timezone
    )
    duration = clamp_duration_minutes(duration_minutes)
    step = clamp_slot_minutes(step_minutes, fallback=settings.default_slot_minutes)

    window = calendar_settings_service.get_working_window(
        db, org_id=org_id, worker_id=worker_id, date_key=date_key, settings=settings
    )
    result = AvailabilityResult(timezone=tz)
    if not window.is_working or window.end_minute - window.start_minute < duration:
        return result

    blocked = merge_intervals(
        find_worker_blocked_intervals(
            db,
            org_id=org_id,
            worker_id=worker_id,
            date_key=date_key,
            tz=tz,
            include_events=not settings.allow_overlaps and not ignore_event_conflicts,
            include_holds=True,
            include_time_off=True,
            exclude_event_id=exclude_event_id,
            exclude_hold_id=exclude_hold_id,
            now=now,
        )
    )

    start = window.start_minute
    while start + duration <= window.end_minute:
        end = start + duration
        if not any(overlaps(b_start, b_end, start, end) for b_start, b_end in blocked):
            result.slots_utc.append(local_minute_to_utc(date_key, start, tz))
        start += step
    return result


def find_first_open_slot(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID,
    date_keys: list[str],
    duration_minutes: int,
    settings: CalendarSettings,
    now: datetime,
) -> datetime | None:
    for date_key in date_keys:
        availability = compute_availability_for_worker(
            db,
            org_id=org_id,
            worker_id=worker_id,
            date_key=date_key,
            duration_minutes=duration_minutes,
            step_minutes=DEFAULT_SLOT_MINUTES,
            settings=settings,
            now=now,
        )
        for slot in availability.slots_utc:
            if slot >= now:
                return slot
    return None


def _rotate(items: list[UUID], start_index: int) -> list[UUID]:
    if not items:
        return []
    index = start_index % len(items)
    return items[index:] + items[:index]


def find_next_open_slot(
    db: Session,
    *,
    org_id: UUID,
    date_key: str | date,
    duration_minutes: int | None = DEFAULT_SLOT_MINUTES,
    lookahead_days: int | None = 7,
    preferred_worker_id: UUID | None = None,
    candidate_worker_ids: list[UUID] | None = None,
    fallback_strategy: NextOpenFallback = NextOpenFallback.ROUND_ROBIN,
    now: datetime | None = None,
) -> NextOpenSlot | None:
    """
    Earliest open slot for the preferred worker, else a fallback worker.

    OWNER fallback tries owners only. ROUND_ROBIN rotates through the
    remaining workers starting after the last round-robin pick.
    """
    now = now or utc_now()
    start_date = require_date_key(date_key)
    duration = clamp_duration_minutes(duration_minutes)
    lookahead = clamp_int(lookahead_days, 7, 1, MAX_NEXT_OPEN_LOOKAHEAD_DAYS)
    settings = calendar_settings_service.get_org_calendar_settings(db, org_id)

    query = db.query(User).filter(
        User.organization_id == org_id,
        User.calendar_role != CalendarRole.READ_ONLY.value,
    )
    if candidate_worker_ids:
        query = query.filter(User.id.in_(candidate_worker_ids))
    workers = query.order_by(User.display_name, User.email, User.id).limit(MAX_NEXT_OPEN_WORKERS).all()
    if candidate_worker_ids:
        rank = {worker_id: index for index, worker_id in enumerate(candidate_worker_ids)}
        workers.sort(key=lambda worker: (rank.get(worker.id, len(rank)), str(worker.id)))
    if not workers:
        raise ValueError("No eligible workers available for this organization.")

    worker_ids = [worker.id for worker in workers]
    preferred = preferred_worker_id if preferred_worker_id in worker_ids else worker_ids[0]
    date_keys = [add_days(start_date, offset) for offset in range(lookahead)]

    def first_open(worker_id: UUID) -> datetime | None:
        return find_first_open_slot(
            db,
            org_id=org_id,
            worker_id=worker_id,
            date_keys=date_keys,
            duration_minutes=duration,
            settings=settings,
            now=now,
        )

    slot = first_open(preferred)
    if slot:
        return NextOpenSlot("preferred", preferred, slot, duration)

    if fallback_strategy == NextOpenFallback.OWNER:
        owners = [
            worker.id
            for worker in workers
            if worker.id != preferred and worker.calendar_role == CalendarRole.OWNER.value
        ]
        for worker_id in owners:
            slot = first_open(worker_id)
            if slot:
                return NextOpenSlot("owner", worker_id, slot, duration)
        return None

    candidates = [worker_id for worker_id in worker_ids if worker_id != preferred]
    settings_row = calendar_settings_service.get_or_create_settings_row(db, org_id)
    last_picked = settings_row.round_robin_last_worker_id
    start_index = candidates.index(last_picked) + 1 if last_picked in candidates else 0
    for worker_id in _rotate(candidates, start_index):
        slot = first_open(worker_id)
        if slot:
            settings_row.round_robin_last_worker_id = worker_id
            db.commit()
            return NextOpenSlot("round_robin", worker_id, slot, duration)
    return None


# =============================================================================
# Conflict detector
# =============================================================================

def local_date_keys_between(start_at: datetime, end_at: datetime, tz: str) -> list[str]:
    """Every local date touched by [start_at, end_at), in order."""
    start_key = local_date_from_utc(start_at, tz)
    last_key = local_date_from_utc(max(start_at, end_at - timedelta(microseconds=1)), tz)
    keys = [start_key]
    while keys[-1] < last_key:
        keys.append(add_days(keys[-1], 1))
    return keys


def detect_worker_conflicts(
    db: Session,
    *,
    org_id: UUID,
    worker_ids: Iterable[UUID],
    start_at: datetime,
    end_at: datetime,
    include_events: bool = True,
    exclude_event_id: UUID | None = None,
    exclude_hold_id: UUID | None = None,
    settings: CalendarSettings | None = None,
    now: datetime | None = None,
) -> list[WorkerConflict]:
    """
    Blocking records that overlap [start_at, end_at) for any worker.

    Each worker is evaluated in their own zone; an interval is checked
    against every local day it touches. Read-only.
    """
    settings = settings or calendar_settings_service.get_org_calendar_settings(db, org_id)
    seen: set[tuple[UUID, BlockedSource, UUID | None]] = set()
    conflicts: list[WorkerConflict] = []

    for worker_id in worker_ids:
        tz = calendar_settings_service.get_worker_time_zone(
            db, worker_id, fallback=settings.calendar_timezone
        )
        for date_key in local_date_keys_between(start_at, end_at, tz):
            day_start, day_end = get_utc_range_for_date(date_key, tz)
            candidate = minutes_for_date_range(start_at, end_at, day_start, day_end, tz)
            if candidate is None:
                continue

            blocked = find_worker_blocked_intervals(
                db,
                org_id=org_id,
                worker_id=worker_id,
                date_key=date_key,
                tz=tz,
                include_events=include_events and not settings.allow_overlaps,
                include_holds=True,
                include_time_off=True,
                exclude_event_id=exclude_event_id,
                exclude_hold_id=exclude_hold_id,
                now=now,
            )
            for item in blocked:
                if not overlaps(item.start_minute, item.end_minute, candidate[0], candidate[1]):
                    continue
                key = (worker_id, item.source, item.source_id)
                if key in seen:
                    continue
                seen.add(key)
                conflicts.append(WorkerConflict(worker_id, item.source, item.source_id))

    if conflicts:
        logger.info(
            "Detected %s scheduling conflict(s) for org %s between %s and %s",
            len(conflicts),
            org_id,
            start_at.isoformat(),
            end_at.isoformat(),
        )
    return conflicts


def suggest_slots_for_conflict(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID,
    start_at: datetime,
    end_at: datetime,
    settings: CalendarSettings | None = None,
    limit: int = 6,
) -> AvailabilityResult:
    """Alternative slots on the same local day, offered alongside a 409."""
    settings = settings or calendar_settings_service.get_org_calendar_settings(db, org_id)
    tz = calendar_settings_service.get_worker_time_zone(
        db, worker_id, fallback=settings.calendar_timezone
    )
    duration = max(MIN_DURATION_MINUTES, round((end_at - start_at).total_seconds() / 60))
    result = compute_availability_for_worker(
        db,
        org_id=org_id,
        worker_id=worker_id,
        date_key=local_date_from_utc(start_at, tz),
        duration_minutes=duration,
        settings=settings,
    )
    result.slots_utc = result.slots_utc[:limit]
    return result
