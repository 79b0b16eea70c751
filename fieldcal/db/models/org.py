"""Tenant and worker models.

Organization and user management belong to the wider platform; only the
columns scheduling reads are mapped here.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from fieldcal.db.base import Base
from fieldcal.db.enums import CalendarRole
from fieldcal.utils.calendar_time import utc_now


class Organization(Base):
    """
    A tenant/company in the multi-tenant system.

    All calendar entities belong to an organization
    and must be scoped by organization_id in all queries.
    """
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )


class User(Base):
    """A member of an organization who can be scheduled (a worker)."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Worker's own zone; falls back to the org calendar zone when null
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    calendar_role: Mapped[str] = mapped_column(
        String(20), default=CalendarRole.WORKER.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, server_default=func.now(), nullable=False
    )
