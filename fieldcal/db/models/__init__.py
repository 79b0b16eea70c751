"""SQLAlchemy ORM models."""

from fieldcal.db.models.calendar import (
    CalendarHold,
    Event,
    EventWorker,
    OrgCalendarSettings,
    TimeOff,
    WorkingHours,
)
from fieldcal.db.models.google import GoogleCalendarAccount, GoogleOAuthState
from fieldcal.db.models.org import Organization, User
from fieldcal.db.models.sync import SyncHealthAlert, SyncJob, SyncJobAttempt, SyncRun

__all__ = [
    "CalendarHold",
    "Event",
    "EventWorker",
    "GoogleCalendarAccount",
    "GoogleOAuthState",
    "Organization",
    "OrgCalendarSettings",
    "SyncHealthAlert",
    "SyncJob",
    "SyncJobAttempt",
    "SyncRun",
    "TimeOff",
    "User",
    "WorkingHours",
]
