"""Google Calendar integration and internal sync schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


# =============================================================================
# Google Calendar account
# =============================================================================

class BlockRuleInput(BaseModel):
    block_if_busy_only: bool = True
    block_all_day: bool = True


class GoogleStatusResponse(BaseModel):
    connected: bool
    is_enabled: bool = False
    google_email: str | None = None
    has_write_scope: bool = False
    write_calendar_id: str | None = None
    read_calendar_ids: list[str] = Field(default_factory=list)
    block_availability_rules: dict[str, BlockRuleInput] = Field(default_factory=dict)
    sync_status: str | None = None
    sync_error: str | None = None
    last_sync_at: datetime | None = None
    connected_at: datetime | None = None


class GoogleSettingsUpdate(BaseModel):
    is_enabled: bool = True
    write_calendar_id: str | None = None
    read_calendar_ids: list[str] = Field(default_factory=list)
    block_availability_rules: dict[str, BlockRuleInput] = Field(default_factory=dict)


class GoogleCalendarCreate(BaseModel):
    summary: str = Field("Field Jobs", min_length=1, max_length=255)
    time_zone: str | None = Field(None, max_length=64)


# =============================================================================
# Internal sync controls
# =============================================================================

class SyncCycleRequest(BaseModel):
    max_jobs: int = Field(40, ge=1)
    max_accounts: int = Field(20, ge=1)


class RetryFailedRequest(BaseModel):
    limit: int = Field(100, ge=1)


class ClearStuckRequest(BaseModel):
    stuck_minutes: int = Field(30, ge=1)
    limit: int = Field(100, ge=1)


class SyncAlertRequest(BaseModel):
    cron_stale_minutes: int = 15
    queue_depth_threshold: int = 80
    error_rate_threshold: float = 0.25
    error_rate_window_minutes: int = 60
    dedupe_window_minutes: int = 10


class SyncRunRead(BaseModel):
    id: UUID
    source: str
    status: str
    jobs_processed: int
    jobs_completed: int
    jobs_failed: int
    accounts_processed: int
    accounts_succeeded: int
    accounts_failed: int
    last_error: str | None
    started_at: datetime
    finished_at: datetime | None

    model_config = {"from_attributes": True}


class SyncJobRead(BaseModel):
    id: UUID
    organization_id: UUID
    user_id: UUID
    event_id: UUID | None
    action: str
    status: str
    attempt_count: int
    backoff_ms: int
    run_after: datetime
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
