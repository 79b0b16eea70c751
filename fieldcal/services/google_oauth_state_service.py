"""Single-use OAuth state for the Google Calendar connect flow."""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from fieldcal.core.security import generate_oauth_state
from fieldcal.db.models import GoogleOAuthState
from fieldcal.utils.calendar_time import utc_now

OAUTH_STATE_TTL = timedelta(minutes=10)


def create_oauth_state(
    db: Session,
    *,
    org_id: UUID,
    user_id: UUID,
    redirect_uri: str,
    scopes: list[str],
    wants_write: bool,
    now: datetime | None = None,
) -> str:
    now = now or utc_now()
    state = generate_oauth_state()
    db.add(
        GoogleOAuthState(
            organization_id=org_id,
            user_id=user_id,
            state=state,
            redirect_uri=redirect_uri,
            scopes=list(scopes),
            wants_write=wants_write,
            expires_at=now + OAUTH_STATE_TTL,
        )
    )
    db.commit()
    return state


def consume_oauth_state(db: Session, state: str, *, now: datetime | None = None) -> GoogleOAuthState | None:
    """Return the state row once; expired or already-used states yield None."""
    now = now or utc_now()
    row = db.query(GoogleOAuthState).filter(GoogleOAuthState.state == state).first()
    if row is None or row.expires_at <= now or row.consumed_at is not None:
        return None
    row.consumed_at = now
    db.commit()
    return row
