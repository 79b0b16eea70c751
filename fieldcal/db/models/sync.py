"""Sync queue models: jobs, attempt audit trail, drain runs, health alerts."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from fieldcal.db.base import Base
from fieldcal.db.enums import DEFAULT_SYNC_JOB_STATUS, SyncRunSource, SyncRunStatus
from fieldcal.utils.calendar_time import utc_now


class SyncJob(Base):
    """
    Durable unit of Google Calendar sync work.

    Claimed with a conditional status update; the affected row count
    decides which worker owns the job.
    """
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("idx_sync_jobs_due", "status", "run_after", "created_at"),
        Index("idx_sync_jobs_org", "organization_id", "created_at"),
        Index("idx_sync_jobs_event", "event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("events.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_SYNC_JOB_STATUS.value, nullable=False
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    backoff_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    run_after: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class SyncJobAttempt(Base):
    """Append-only audit row for one processing attempt of a sync job."""
    __tablename__ = "sync_job_attempts"
    __table_args__ = (
        Index("idx_sync_attempts_job", "job_id", "created_at"),
        Index("idx_sync_attempts_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    retryable: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    backoff_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class SyncRun(Base):
    """One drain cycle: a bounded batch of jobs plus due account pulls."""
    __tablename__ = "sync_runs"
    __table_args__ = (Index("idx_sync_runs_source_started", "source", "started_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(
        String(20), default=SyncRunSource.CRON.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=SyncRunStatus.RUNNING.value, nullable=False
    )
    triggered_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    max_jobs: Mapped[int] = mapped_column(Integer, nullable=False)
    max_accounts: Mapped[int] = mapped_column(Integer, nullable=False)
    jobs_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jobs_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jobs_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounts_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounts_succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accounts_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)


class SyncHealthAlert(Base):
    """Threshold breach record, deduplicated per flag within a rolling window."""
    __tablename__ = "sync_health_alerts"
    __table_args__ = (Index("idx_sync_alerts_created", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    cron_stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    queue_high: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_rate_high: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metrics_snapshot: Mapped[dict] = mapped_column(default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
