"""Org calendar settings and per-worker working hours."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy.orm import Session

from fieldcal.db.models import OrgCalendarSettings, User, WorkingHours
from fieldcal.utils.calendar_time import (
    DEFAULT_CALENDAR_TIMEZONE,
    DEFAULT_SLOT_MINUTES,
    MINUTES_PER_DAY,
    clamp_int,
    clamp_slot_minutes,
    clamp_week_starts_on,
    day_of_week,
    ensure_time_zone,
    is_valid_time_zone,
)

DEFAULT_UNTIMED_START_HOUR = 9
DEFAULT_WORKDAY_MINUTES = 8 * 60


@dataclass(frozen=True)
class CalendarSettings:
    """Normalized org scheduling settings."""

    allow_overlaps: bool = False
    default_slot_minutes: int = DEFAULT_SLOT_MINUTES
    default_untimed_start_hour: int = DEFAULT_UNTIMED_START_HOUR
    calendar_timezone: str = DEFAULT_CALENDAR_TIMEZONE
    week_starts_on: int = 0


@dataclass(frozen=True)
class WorkingWindow:
    is_working: bool
    start_minute: int
    end_minute: int


@dataclass(frozen=True)
class WorkingDayInput:
    """One weekday's working window as submitted by settings screens."""

    day_of_week: int
    is_working: bool
    start_minute: int
    end_minute: int
    timezone: str | None = None


# =============================================================================
# Org settings
# =============================================================================

def _normalize(row: OrgCalendarSettings) -> CalendarSettings:
    return CalendarSettings(
        allow_overlaps=bool(row.allow_overlaps),
        default_slot_minutes=clamp_slot_minutes(row.default_slot_minutes),
        default_untimed_start_hour=clamp_int(
            row.default_untimed_start_hour, DEFAULT_UNTIMED_START_HOUR, 0, 23
        ),
        calendar_timezone=ensure_time_zone(row.calendar_timezone),
        week_starts_on=clamp_week_starts_on(row.week_starts_on),
    )


def get_or_create_settings_row(db: Session, org_id: UUID) -> OrgCalendarSettings:
    row = (
        db.query(OrgCalendarSettings)
        .filter(OrgCalendarSettings.organization_id == org_id)
        .first()
    )
    if row:
        return row
    row = OrgCalendarSettings(organization_id=org_id)
    db.add(row)
    db.flush()
    return row


def get_org_calendar_settings(db: Session, org_id: UUID) -> CalendarSettings:
    """Settings for an org, creating the defaults row on first access."""
    return _normalize(get_or_create_settings_row(db, org_id))


def update_org_calendar_settings(
    db: Session,
    org_id: UUID,
    *,
    allow_overlaps: bool | None = None,
    default_slot_minutes: int | None = None,
    default_untimed_start_hour: int | None = None,
    calendar_timezone: str | None = None,
    week_starts_on: int | None = None,
) -> CalendarSettings:
    """Apply a partial update. Invalid zones and slot sizes are rejected."""
    row = get_or_create_settings_row(db, org_id)

    if calendar_timezone is not None:
        if not is_valid_time_zone(calendar_timezone):
            raise ValueError(f"Invalid timezone: {calendar_timezone}")
        row.calendar_timezone = calendar_timezone.strip()
    if default_slot_minutes is not None:
        if clamp_slot_minutes(default_slot_minutes, fallback=0) != default_slot_minutes:
            raise ValueError("default_slot_minutes must be one of 15, 30, 60, 90")
        row.default_slot_minutes = default_slot_minutes
    if default_untimed_start_hour is not None:
        if not 0 <= default_untimed_start_hour <= 23:
            raise ValueError("default_untimed_start_hour must be between 0 and 23")
        row.default_untimed_start_hour = default_untimed_start_hour
    if allow_overlaps is not None:
        row.allow_overlaps = allow_overlaps
    if week_starts_on is not None:
        row.week_starts_on = clamp_week_starts_on(week_starts_on)

    db.commit()
    db.refresh(row)
    return _normalize(row)


def get_worker_time_zone(db: Session, worker_id: UUID, fallback: str | None = None) -> str:
    """Worker's own zone, else the fallback (normally the org zone)."""
    worker = db.get(User, worker_id)
    if worker and worker.timezone and is_valid_time_zone(worker.timezone):
        return worker.timezone.strip()
    return ensure_time_zone(fallback)


# =============================================================================
# Working hours
# =============================================================================

def list_working_hours(db: Session, org_id: UUID, worker_id: UUID) -> list[WorkingHours]:
    return (
        db.query(WorkingHours)
        .filter(
            WorkingHours.organization_id == org_id,
            WorkingHours.worker_user_id == worker_id,
        )
        .order_by(WorkingHours.day_of_week)
        .all()
    )


def _validate_day(day: WorkingDayInput) -> None:
    if not 0 <= day.day_of_week <= 6:
        raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    if not (0 <= day.start_minute <= MINUTES_PER_DAY and 0 <= day.end_minute <= MINUTES_PER_DAY):
        raise ValueError("Working minutes must be between 0 and 1440")
    if day.is_working and day.end_minute <= day.start_minute:
        raise ValueError("end_minute must be after start_minute on working days")
    if day.timezone is not None and not is_valid_time_zone(day.timezone):
        raise ValueError(f"Invalid timezone: {day.timezone}")


def set_working_hours(
    db: Session,
    org_id: UUID,
    worker_id: UUID,
    days: list[WorkingDayInput],
) -> list[WorkingHours]:
    """
    Replace a worker's weekly working hours.

    Weekdays not included keep no row and use the derived default window.
    """
    seen: set[int] = set()
    for day in days:
        _validate_day(day)
        if day.day_of_week in seen:
            raise ValueError(f"Duplicate day_of_week {day.day_of_week}")
        seen.add(day.day_of_week)

    settings = get_org_calendar_settings(db, org_id)
    db.query(WorkingHours).filter(
        WorkingHours.organization_id == org_id,
        WorkingHours.worker_user_id == worker_id,
    ).delete(synchronize_session=False)

    for day in days:
        db.add(
            WorkingHours(
                organization_id=org_id,
                worker_user_id=worker_id,
                day_of_week=day.day_of_week,
                is_working=day.is_working,
                start_minute=day.start_minute,
                end_minute=day.end_minute,
                timezone=(day.timezone or settings.calendar_timezone).strip(),
            )
        )
    db.commit()
    return list_working_hours(db, org_id, worker_id)


def get_working_window(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID,
    date_key: str | date,
    settings: CalendarSettings,
) -> WorkingWindow:
    """
    Working window for a worker on a local date.

    Without an explicit row the worker works from the org's untimed start
    hour for eight hours, capped at midnight.
    """
    row = (
        db.query(WorkingHours)
        .filter(
            WorkingHours.organization_id == org_id,
            WorkingHours.worker_user_id == worker_id,
            WorkingHours.day_of_week == day_of_week(date_key),
        )
        .first()
    )
    if row is None:
        start = settings.default_untimed_start_hour * 60
        return WorkingWindow(
            is_working=True,
            start_minute=start,
            end_minute=min(MINUTES_PER_DAY, start + DEFAULT_WORKDAY_MINUTES),
        )
    return WorkingWindow(
        is_working=bool(row.is_working),
        start_minute=row.start_minute,
        end_minute=row.end_minute,
    )
