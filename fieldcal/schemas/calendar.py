"""Calendar schemas - Pydantic models for availability, events, holds and settings."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from fieldcal.db.enums import (
    BlockedSource,
    EventStatus,
    EventType,
    HoldSource,
    NextOpenFallback,
)


# =============================================================================
# Availability
# =============================================================================

class AvailabilityResponse(BaseModel):
    worker_id: UUID
    date: str
    duration_minutes: int
    slots: list[datetime]
    timezone: str


class NextOpenRequest(BaseModel):
    """Find the earliest open slot, falling back to other workers."""
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    duration_minutes: int = Field(30, ge=1)
    lookahead_days: int = Field(7, ge=1)
    preferred_worker_id: UUID | None = None
    candidate_worker_ids: list[UUID] | None = None
    fallback: NextOpenFallback = NextOpenFallback.ROUND_ROBIN


class NextOpenResponse(BaseModel):
    strategy_used: str
    worker_id: UUID
    slot: datetime
    duration_minutes: int


class ConflictCheckRequest(BaseModel):
    worker_ids: list[UUID] = Field(..., min_length=1)
    start_at: datetime
    end_at: datetime
    exclude_event_id: UUID | None = None
    exclude_hold_id: UUID | None = None


class ConflictRead(BaseModel):
    worker_id: UUID
    source: BlockedSource
    source_id: UUID | None


class ConflictErrorDetail(BaseModel):
    """Body of a 409 returned when a booking hits a blocked slot."""
    message: str
    conflicts: list[ConflictRead]
    suggested_slots: list[datetime]
    timezone: str | None


# =============================================================================
# Events
# =============================================================================

class EventCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    start_at: datetime
    end_at: datetime | None = None
    duration_minutes: int | None = None
    worker_ids: list[UUID] | None = None
    type: EventType = EventType.JOB
    status: EventStatus = EventStatus.SCHEDULED
    busy: bool = True
    all_day: bool = False
    description: str | None = None
    customer_name: str | None = Field(None, max_length=255)
    address_line: str | None = Field(None, max_length=500)
    lead_id: UUID | None = None


class EventUpdate(BaseModel):
    """Partial update; only fields that are sent are applied."""
    title: str | None = Field(None, min_length=1, max_length=255)
    start_at: datetime | None = None
    end_at: datetime | None = None
    worker_ids: list[UUID] | None = None
    type: EventType | None = None
    status: EventStatus | None = None
    busy: bool | None = None
    all_day: bool | None = None
    description: str | None = None
    customer_name: str | None = Field(None, max_length=255)
    address_line: str | None = Field(None, max_length=500)


class EventRead(BaseModel):
    id: UUID
    lead_id: UUID | None
    type: str
    status: str
    busy: bool
    all_day: bool
    title: str
    description: str | None
    customer_name: str | None
    address_line: str | None
    start_at: datetime
    end_at: datetime | None
    assigned_to_user_id: UUID | None
    worker_ids: list[UUID]
    provider: str
    sync_status: str
    last_synced_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class EventCreateResponse(BaseModel):
    event: EventRead
    availability_by_worker: dict[str, list[datetime]]


# =============================================================================
# Time Off
# =============================================================================

class TimeOffCreate(BaseModel):
    worker_id: UUID | None = None
    start_at: datetime
    end_at: datetime
    reason: str | None = Field(None, max_length=500)


class TimeOffRead(BaseModel):
    id: UUID
    worker_user_id: UUID
    start_at: datetime
    end_at: datetime
    reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Holds
# =============================================================================

class HoldCreate(BaseModel):
    worker_id: UUID | None = None
    start_at: datetime
    end_at: datetime | None = None
    duration_minutes: int | None = None
    title: str = Field("Hold", max_length=255)
    lead_id: UUID | None = None
    customer_name: str | None = Field(None, max_length=255)
    address_line: str | None = Field(None, max_length=500)
    source: HoldSource = HoldSource.MANUAL
    expires_in_minutes: int = Field(10, ge=1)


class HoldConfirm(BaseModel):
    title: str | None = Field(None, max_length=255)
    type: EventType = EventType.JOB


class HoldRead(BaseModel):
    id: UUID
    worker_user_id: UUID
    lead_id: UUID | None
    title: str
    customer_name: str | None
    address_line: str | None
    source: str
    status: str
    start_at: datetime
    end_at: datetime
    expires_at: datetime
    confirmed_event_id: UUID | None
    created_at: datetime

    model_config = {"from_attributes": True}


# =============================================================================
# Settings & Working Hours
# =============================================================================

class CalendarSettingsRead(BaseModel):
    allow_overlaps: bool
    default_slot_minutes: int
    default_untimed_start_hour: int
    calendar_timezone: str
    week_starts_on: int


class CalendarSettingsUpdate(BaseModel):
    allow_overlaps: bool | None = None
    default_slot_minutes: int | None = None
    default_untimed_start_hour: int | None = Field(None, ge=0, le=23)
    calendar_timezone: str | None = Field(None, max_length=64)
    week_starts_on: int | None = Field(None, ge=0, le=6)


class WorkingDay(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="Sunday=0, Saturday=6")
    is_working: bool = True
    start_minute: int = Field(..., ge=0, le=1440)
    end_minute: int = Field(..., ge=0, le=1440)
    timezone: str | None = Field(None, max_length=64)

    model_config = {"from_attributes": True}


class WorkingHoursSet(BaseModel):
    days: list[WorkingDay]
