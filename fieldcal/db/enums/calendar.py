"""Calendar scheduling enums."""

from enum import Enum


class EventType(str, Enum):
    """Kinds of calendar events."""

    JOB = "job"
    ESTIMATE = "estimate"
    CALL = "call"
    BLOCK = "block"
    ADMIN = "admin"
    TRAVEL = "travel"
    FOLLOW_UP = "follow_up"
    DEMO = "demo"
    ONBOARDING = "onboarding"
    TASK = "task"
    GCAL_BLOCK = "gcal_block"  # Imported busy block, owned by the Google importer


class EventStatus(str, Enum):
    """Lifecycle of a calendar event. Everything except CANCELLED blocks time."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    EN_ROUTE = "en_route"
    ON_SITE = "on_site"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class EventProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


class EventSyncStatus(str, Enum):
    """Outbound sync state of a local event."""

    PENDING = "pending"
    OK = "ok"
    ERROR = "error"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class HoldSource(str, Enum):
    """Who placed a tentative hold."""

    MANUAL = "manual"
    SMS_AGENT = "sms_agent"  # Automated intake conversation
    GOOGLE_SYNC = "google_sync"


class BlockedSource(str, Enum):
    """Origin of a blocked interval."""

    EVENT = "event"
    HOLD = "hold"
    TIME_OFF = "time_off"


class CalendarView(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class NextOpenFallback(str, Enum):
    """Who to try when the preferred worker has no opening."""

    OWNER = "owner"
    ROUND_ROBIN = "round_robin"
