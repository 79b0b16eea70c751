"""Calendar scheduling models: settings, working hours, events, holds, time off."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldcal.db.base import Base
from fieldcal.db.enums import (
    DEFAULT_EVENT_PROVIDER,
    DEFAULT_EVENT_STATUS,
    DEFAULT_EVENT_SYNC_STATUS,
    DEFAULT_HOLD_STATUS,
    EventType,
    HoldSource,
)
from fieldcal.utils.calendar_time import DEFAULT_CALENDAR_TIMEZONE, DEFAULT_SLOT_MINUTES, utc_now


# =============================================================================
# Configuration
# =============================================================================

class OrgCalendarSettings(Base):
    """
    Per-organization scheduling defaults.

    One row per organization, created lazily on first read.
    """
    __tablename__ = "org_calendar_settings"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    allow_overlaps: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_slot_minutes: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_SLOT_MINUTES, nullable=False
    )
    default_untimed_start_hour: Mapped[int] = mapped_column(Integer, default=9, nullable=False)
    calendar_timezone: Mapped[str] = mapped_column(
        String(64), default=DEFAULT_CALENDAR_TIMEZONE, nullable=False
    )
    week_starts_on: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Last worker picked by round-robin next-open fallback
    round_robin_last_worker_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )


class WorkingHours(Base):
    """Working window for one worker on one weekday (0 = Sunday)."""
    __tablename__ = "working_hours"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "worker_user_id", "day_of_week", name="uq_working_hours_day"
        ),
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_working_hours_dow"),
        CheckConstraint(
            "start_minute >= 0 AND end_minute <= 1440", name="ck_working_hours_minutes"
        ),
        CheckConstraint(
            "NOT is_working OR end_minute > start_minute", name="ck_working_hours_window"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    worker_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    is_working: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    start_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    end_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(
        String(64), default=DEFAULT_CALENDAR_TIMEZONE, nullable=False
    )


# =============================================================================
# Events
# =============================================================================

class Event(Base):
    """
    A scheduled block of time: the unit of busy truth.

    Rows with provider=google and type=gcal_block are created by the
    Google importer and only the importer may change them.
    """
    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_org_start", "organization_id", "start_at"),
        Index("idx_events_assignee_start", "assigned_to_user_id", "start_at"),
        UniqueConstraint(
            "organization_id",
            "google_calendar_id",
            "google_event_id",
            name="uq_events_google_ref",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    # Lead/job context lives in the CRM; reference only
    lead_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    type: Mapped[str] = mapped_column(String(30), default=EventType.JOB.value, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_EVENT_STATUS.value, nullable=False
    )
    busy: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_line: Mapped[str | None] = mapped_column(String(500), nullable=True)
    start_at: Mapped[datetime] = mapped_column(nullable=False)
    # Null end means the default 30-minute slot
    end_at: Mapped[datetime | None] = mapped_column(nullable=True)

    assigned_to_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # External linkage (written only by the sync processor / importer)
    provider: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_EVENT_PROVIDER.value, nullable=False
    )
    google_event_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    google_calendar_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_EVENT_SYNC_STATUS.value, nullable=False
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )

    worker_assignments: Mapped[list["EventWorker"]] = relationship(
        back_populates="event", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def worker_ids(self) -> list[uuid.UUID]:
        return [assignment.worker_user_id for assignment in self.worker_assignments]


class EventWorker(Base):
    """Assignment of an event to an additional worker."""
    __tablename__ = "event_workers"
    __table_args__ = (
        UniqueConstraint("event_id", "worker_user_id", name="uq_event_worker"),
        Index("idx_event_workers_worker", "worker_user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    worker_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    event: Mapped[Event] = relationship(back_populates="worker_assignments")


# =============================================================================
# Holds & Time Off
# =============================================================================

class CalendarHold(Base):
    """
    Tentative reservation that blocks a slot until confirmed or expired.

    At most one live (active, unexpired) hold set exists per
    (organization, lead, source).
    """
    __tablename__ = "calendar_holds"
    __table_args__ = (
        Index("idx_holds_worker_status", "worker_user_id", "status", "start_at"),
        Index("idx_holds_lead_source", "organization_id", "lead_id", "source", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    worker_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_line: Mapped[str | None] = mapped_column(String(500), nullable=True)
    source: Mapped[str] = mapped_column(
        String(20), default=HoldSource.MANUAL.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_HOLD_STATUS.value, nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(nullable=False)
    end_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    confirmed_event_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("events.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )


class TimeOff(Base):
    """Worker unavailability. Always blocking; never synced outward."""
    __tablename__ = "time_off"
    __table_args__ = (
        Index("idx_time_off_worker_start", "worker_user_id", "start_at"),
        CheckConstraint("end_at > start_at", name="ck_time_off_range"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    worker_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(nullable=False)
    end_at: Mapped[datetime] = mapped_column(nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
