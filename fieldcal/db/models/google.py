"""Google Calendar account and OAuth state models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from fieldcal.db.base import Base
from fieldcal.db.enums import DEFAULT_ACCOUNT_SYNC_STATUS
from fieldcal.utils.calendar_time import utc_now


class GoogleCalendarAccount(Base):
    """
    A worker's connected Google Calendar.

    Tokens are stored Fernet-encrypted. Disconnecting clears credentials
    but keeps the row so sync history stays attributable.
    """
    __tablename__ = "google_calendar_accounts"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_google_account_org_user"),
        Index("idx_google_accounts_due", "is_enabled", "last_sync_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    google_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    scopes: Mapped[list] = mapped_column(default=list, nullable=False)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    write_calendar_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    read_calendar_ids: Mapped[list] = mapped_column(default=list, nullable=False)
    # {calendar_id: {"block_if_busy_only": bool, "block_all_day": bool}}
    block_availability_rules: Mapped[dict] = mapped_column(default=dict, nullable=False)

    sync_status: Mapped[str] = mapped_column(
        String(30), default=DEFAULT_ACCOUNT_SYNC_STATUS.value, nullable=False
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, server_default=func.now(), nullable=False
    )


class GoogleOAuthState(Base):
    """Single-use OAuth state issued by the connect flow."""
    __tablename__ = "google_oauth_states"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    state: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    redirect_uri: Mapped[str] = mapped_column(String(1024), nullable=False)
    scopes: Mapped[list] = mapped_column(default=list, nullable=False)
    wants_write: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
