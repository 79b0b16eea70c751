"""Google Calendar sync enums."""

from enum import Enum


class SyncAction(str, Enum):
    """Work items for the sync queue."""

    UPSERT_EVENT = "upsert_event"
    DELETE_EVENT = "delete_event"
    PULL_CALENDARS = "pull_calendars"


class SyncJobStatus(str, Enum):
    """
    Sync job state machine.

    PENDING -> PROCESSING -> DONE | ERROR; ERROR -> PENDING on retry.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class SyncAttemptStatus(str, Enum):
    DONE = "done"
    ERROR = "error"


class SyncRunSource(str, Enum):
    CRON = "cron"
    MANUAL = "manual"
    WORKER = "worker"


class SyncRunStatus(str, Enum):
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"


class AccountSyncStatus(str, Enum):
    """Sync state of a connected Google account."""

    IDLE = "idle"
    OK = "ok"
    ERROR = "error"
    RECONNECT_REQUIRED = "reconnect_required"  # Refresh token rejected; automatic sync paused
    DISCONNECTED = "disconnected"
