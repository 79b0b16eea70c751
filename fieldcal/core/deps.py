"""FastAPI dependencies for session resolution, authorization, and database access."""

from typing import Generator

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from fieldcal.core.security import decode_session_token
from fieldcal.db.session import SessionLocal
from fieldcal.db.enums import CalendarRole
from fieldcal.schemas.auth import UserSession


COOKIE_NAME = "fieldcal_session"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


def get_current_session(request: Request, db: Session = Depends(get_db)) -> UserSession:
    """
    Resolve the caller's session: user_id, org_id, calendar role.

    Session issuance lives in the platform's auth service; this only
    verifies the signed token and loads the user it names.

    Raises:
        HTTPException 401: Not authenticated
        HTTPException 403: User not in the token's organization
    """
    from fieldcal.db.models import User

    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_session_token(token)
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid session")

    try:
        session = UserSession(
            user_id=payload["sub"],
            org_id=payload["org_id"],
            role=payload.get("role") or CalendarRole.WORKER.value,
        )
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid session")

    user = db.get(User, session.user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.organization_id != session.org_id:
        raise HTTPException(status_code=403, detail="No organization membership")
    return session


def require_calendar_write(session: UserSession = Depends(get_current_session)) -> UserSession:
    """Reject read-only calendar users."""
    if session.role == CalendarRole.READ_ONLY:
        raise HTTPException(status_code=403, detail="Read-only users cannot edit calendar data.")
    return session


def can_edit_any_calendar(session: UserSession) -> bool:
    return session.role in (CalendarRole.OWNER, CalendarRole.ADMIN)


def assert_worker_edit_allowed(session: UserSession, worker_ids) -> None:
    """Workers may only edit calendars they are assigned to."""
    if can_edit_any_calendar(session):
        return
    if session.role == CalendarRole.READ_ONLY:
        raise HTTPException(status_code=403, detail="Read-only users cannot edit calendar data.")
    if session.user_id not in set(worker_ids):
        raise HTTPException(
            status_code=403, detail="Workers can only edit events assigned to themselves."
        )
