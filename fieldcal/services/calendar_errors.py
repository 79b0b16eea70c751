"""Domain errors raised by the calendar booking services."""

from __future__ import annotations

from datetime import datetime

from fieldcal.services.availability_service import WorkerConflict


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""

    pass


class CalendarNotFoundError(CalendarServiceError):
    """Event, hold, or time-off row not found in the organization."""

    pass


class CalendarPermissionError(CalendarServiceError):
    """Actor may not edit the targeted calendar."""

    pass


class CalendarConflictError(CalendarServiceError):
    """Requested time overlaps a blocking record for at least one worker."""

    def __init__(
        self,
        conflicts: list[WorkerConflict],
        suggested_slots: list[datetime] | None = None,
        timezone: str | None = None,
        message: str = "Requested time conflicts with existing calendar items.",
    ):
        super().__init__(message)
        self.conflicts = conflicts
        self.suggested_slots = suggested_slots or []
        self.timezone = timezone
