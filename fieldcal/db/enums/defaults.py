"""Default enum values used by models and migrations."""

from fieldcal.db.enums.calendar import EventProvider, EventStatus, EventSyncStatus, HoldStatus
from fieldcal.db.enums.sync import AccountSyncStatus, SyncJobStatus

DEFAULT_EVENT_STATUS = EventStatus.SCHEDULED
DEFAULT_EVENT_PROVIDER = EventProvider.LOCAL
DEFAULT_EVENT_SYNC_STATUS = EventSyncStatus.PENDING
DEFAULT_HOLD_STATUS = HoldStatus.ACTIVE
DEFAULT_SYNC_JOB_STATUS = SyncJobStatus.PENDING
DEFAULT_ACCOUNT_SYNC_STATUS = AccountSyncStatus.IDLE
