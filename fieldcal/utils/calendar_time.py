"""Time zone and local-minute helpers for calendar scheduling.

All stored instants are UTC. Working windows and blocked intervals are
expressed as minutes into a worker's local day (0-1440), anchored to an
IANA zone name. Dates are passed around as ``YYYY-MM-DD`` keys.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CALENDAR_TIMEZONE = "America/Los_Angeles"
ALLOWED_SLOT_MINUTES = (15, 30, 60, 90)
DEFAULT_SLOT_MINUTES = 30
MINUTES_PER_DAY = 24 * 60

_DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_OFFSET_SUFFIX_RE = re.compile(r"(Z|[+-]\d{2}:\d{2})$", re.IGNORECASE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Zone validation
# =============================================================================

@lru_cache(maxsize=512)
def _load_zone(name: str) -> ZoneInfo | None:
    """Resolve a zone name once; least-recently-used names are evicted past 512."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def is_valid_time_zone(value: str | None) -> bool:
    if not value or not value.strip():
        return False
    return _load_zone(value.strip()) is not None


def ensure_time_zone(value: str | None) -> str:
    """Return a usable IANA zone name, falling back to the default."""
    if value and is_valid_time_zone(value):
        return value.strip()
    return DEFAULT_CALENDAR_TIMEZONE


def get_zone(name: str | None) -> ZoneInfo:
    return _load_zone(ensure_time_zone(name))  # type: ignore[return-value]


def clamp_slot_minutes(value: int | None, fallback: int = DEFAULT_SLOT_MINUTES) -> int:
    if value in ALLOWED_SLOT_MINUTES:
        return int(value)  # type: ignore[arg-type]
    return fallback if fallback in ALLOWED_SLOT_MINUTES else DEFAULT_SLOT_MINUTES


def clamp_week_starts_on(value: int | None) -> int:
    return 1 if value == 1 else 0


def clamp_int(value: int | None, fallback: int, minimum: int, maximum: int) -> int:
    """Clamp an optional integer into [minimum, maximum]."""
    if value is None:
        return fallback
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(minimum, min(maximum, parsed))


# =============================================================================
# Date keys
# =============================================================================

def parse_date_key(value: str | date | None) -> date | None:
    """Parse ``YYYY-MM-DD``; return None when malformed."""
    if isinstance(value, date):
        return value
    if not value or not _DATE_KEY_RE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def require_date_key(value: str | date) -> date:
    parsed = parse_date_key(value)
    if parsed is None:
        raise ValueError("date must be in YYYY-MM-DD format")
    return parsed


def format_date_key(value: date) -> str:
    return value.isoformat()


def add_days(date_key: str | date, days: int) -> str:
    return format_date_key(require_date_key(date_key) + timedelta(days=days))


def day_of_week(date_key: str | date) -> int:
    """Weekday with Sunday as 0 and Saturday as 6."""
    return (require_date_key(date_key).weekday() + 1) % 7


# =============================================================================
# Local <-> UTC conversion
# =============================================================================

def _parse_hhmm(value: str) -> time:
    try:
        hours_raw, minutes_raw = value.strip().split(":")[:2]
        return time(int(hours_raw), int(minutes_raw))
    except (ValueError, AttributeError):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")


def to_utc_from_local_date_time(date_key: str | date, hhmm: str, tz: str | None) -> datetime:
    """Interpret a local wall time in ``tz`` and return the UTC instant."""
    local = datetime.combine(require_date_key(date_key), _parse_hhmm(hhmm), tzinfo=get_zone(tz))
    return local.astimezone(timezone.utc)


def get_utc_range_for_date(date_key: str | date, tz: str | None) -> tuple[datetime, datetime]:
    """UTC bounds of a local day. Spans 23 or 25 hours on DST transition days."""
    day = require_date_key(date_key)
    zone = get_zone(tz)
    start = datetime.combine(day, time(0, 0), tzinfo=zone).astimezone(timezone.utc)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=zone).astimezone(timezone.utc)
    return start, end


def get_local_minutes_in_day(instant: datetime, tz: str | None) -> int:
    local = instant.astimezone(get_zone(tz))
    return local.hour * 60 + local.minute


def minutes_to_hhmm(minutes: int) -> str:
    clamped = max(0, min(MINUTES_PER_DAY - 1, int(minutes)))
    return f"{clamped // 60:02d}:{clamped % 60:02d}"


def local_minute_to_utc(date_key: str | date, minutes: int, tz: str | None) -> datetime:
    return to_utc_from_local_date_time(date_key, minutes_to_hhmm(minutes), tz)


def local_date_from_utc(instant: datetime, tz: str | None) -> str:
    return format_date_key(instant.astimezone(get_zone(tz)).date())


def local_time_from_utc(instant: datetime, tz: str | None) -> str:
    return instant.astimezone(get_zone(tz)).strftime("%H:%M")


def move_utc_date_preserving_local_time(instant: datetime, target_date: str | date, tz: str | None) -> datetime:
    """Move an instant to another local date keeping its local wall time."""
    return to_utc_from_local_date_time(target_date, local_time_from_utc(instant, tz), tz)


def minutes_for_date_range(
    start_at: datetime,
    end_at: datetime,
    day_start: datetime,
    day_end: datetime,
    tz: str | None,
) -> tuple[int, int] | None:
    """
    Clip a UTC interval to one local day and express it in local minutes.

    Returns None when the interval does not touch the day. An interval that
    reaches the end of the day ends at 1440 rather than wrapping to 0.
    """
    clipped_start = max(start_at, day_start)
    clipped_end = min(end_at, day_end)
    if clipped_end <= clipped_start:
        return None

    start_minute = get_local_minutes_in_day(clipped_start, tz)
    if clipped_end >= day_end:
        end_minute = MINUTES_PER_DAY
    else:
        end_minute = max(start_minute + 1, get_local_minutes_in_day(clipped_end, tz))
    return start_minute, end_minute


# =============================================================================
# Parsing and views
# =============================================================================

def parse_utc_date_time(value: str | None) -> datetime | None:
    """Parse an ISO-8601 instant. Values without an explicit offset are rejected."""
    if not value or not value.strip():
        return None
    raw = value.strip()
    if not _OFFSET_SUFFIX_RE.search(raw):
        return None
    if raw[-1] in "zZ":
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parsed.astimezone(timezone.utc)


def get_visible_range(view: str, day: date, week_starts_on: int) -> tuple[date, date]:
    """First visible day and exclusive end day for a day/week/month view."""
    week_starts_on = clamp_week_starts_on(week_starts_on)

    def start_of_week(value: date) -> date:
        offset = (day_of_week(value) - week_starts_on) % 7
        return value - timedelta(days=offset)

    if view == "day":
        return day, day + timedelta(days=1)
    if view == "week":
        week_start = start_of_week(day)
        return week_start, week_start + timedelta(days=7)

    month_start = day.replace(day=1)
    next_month = (month_start + timedelta(days=32)).replace(day=1)
    month_end = next_month - timedelta(days=1)
    range_start = start_of_week(month_start)
    range_end = start_of_week(month_end) + timedelta(days=7)
    return range_start, range_end
