"""Enum definitions for application constants."""

from fieldcal.db.enums.auth import CalendarRole
from fieldcal.db.enums.calendar import (
    BlockedSource,
    CalendarView,
    EventProvider,
    EventStatus,
    EventSyncStatus,
    EventType,
    HoldSource,
    HoldStatus,
    NextOpenFallback,
)
from fieldcal.db.enums.defaults import (
    DEFAULT_ACCOUNT_SYNC_STATUS,
    DEFAULT_EVENT_PROVIDER,
    DEFAULT_EVENT_STATUS,
    DEFAULT_EVENT_SYNC_STATUS,
    DEFAULT_HOLD_STATUS,
    DEFAULT_SYNC_JOB_STATUS,
)
from fieldcal.db.enums.sync import (
    AccountSyncStatus,
    SyncAction,
    SyncAttemptStatus,
    SyncJobStatus,
    SyncRunSource,
    SyncRunStatus,
)

__all__ = [
    "AccountSyncStatus",
    "BlockedSource",
    "CalendarRole",
    "CalendarView",
    "DEFAULT_ACCOUNT_SYNC_STATUS",
    "DEFAULT_EVENT_PROVIDER",
    "DEFAULT_EVENT_STATUS",
    "DEFAULT_EVENT_SYNC_STATUS",
    "DEFAULT_HOLD_STATUS",
    "DEFAULT_SYNC_JOB_STATUS",
    "EventProvider",
    "EventStatus",
    "EventSyncStatus",
    "EventType",
    "HoldSource",
    "HoldStatus",
    "NextOpenFallback",
    "SyncAction",
    "SyncAttemptStatus",
    "SyncJobStatus",
    "SyncRunSource",
    "SyncRunStatus",
]
