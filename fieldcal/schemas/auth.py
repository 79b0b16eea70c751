"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from fieldcal.db.enums import CalendarRole


class UserSession(BaseModel):
    """
    Session context for authenticated requests.

    Returned by the get_current_session dependency.
    """
    user_id: UUID
    org_id: UUID
    role: CalendarRole
