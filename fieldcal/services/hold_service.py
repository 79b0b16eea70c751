"""Calendar holds: tentative reservations that block a slot until they expire.

A hold blocks availability while ACTIVE and unexpired. Confirming turns it
into an event; expired holds are swept to EXPIRED by the scheduled task
but stop blocking as soon as ``expires_at`` passes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from fieldcal.db.enums import (
    CalendarRole,
    EventStatus,
    EventType,
    HoldSource,
    HoldStatus,
)
from fieldcal.db.models import CalendarHold, Event, User
from fieldcal.services import availability_service, calendar_settings_service, event_service
from fieldcal.services.calendar_errors import CalendarConflictError, CalendarNotFoundError
from fieldcal.utils.calendar_time import add_days, clamp_int, local_date_from_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_HOLD_EXPIRY_MINUTES = 10
MAX_HOLD_EXPIRY_MINUTES = 120

INTAKE_OPTION_COUNT = 3
INTAKE_LOOKAHEAD_DAYS = 10
INTAKE_STEP_MINUTES = 30
INTAKE_HOLD_MINUTES = 10
INTAKE_MAX_WORKERS = 50
INTAKE_CALLBACK_TITLE = "SMS Callback Scheduled"
INTAKE_CALLBACK_DESCRIPTION = "Auto-scheduled from SMS intake flow."

_ROLE_RANK = {
    CalendarRole.OWNER.value: 0,
    CalendarRole.ADMIN.value: 1,
    CalendarRole.WORKER.value: 2,
}


def get_hold(db: Session, org_id: UUID, hold_id: UUID) -> CalendarHold | None:
    return (
        db.query(CalendarHold)
        .filter(CalendarHold.organization_id == org_id, CalendarHold.id == hold_id)
        .first()
    )


def list_holds(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID | None = None,
    lead_id: UUID | None = None,
    status: HoldStatus | None = None,
    now: datetime | None = None,
) -> list[CalendarHold]:
    """Holds for an org; without a status filter only live holds are returned."""
    now = now or utc_now()
    query = db.query(CalendarHold).filter(CalendarHold.organization_id == org_id)
    if worker_id:
        query = query.filter(CalendarHold.worker_user_id == worker_id)
    if lead_id:
        query = query.filter(CalendarHold.lead_id == lead_id)
    if status:
        query = query.filter(CalendarHold.status == status.value)
    else:
        query = query.filter(
            CalendarHold.status == HoldStatus.ACTIVE.value,
            CalendarHold.expires_at > now,
        )
    return query.order_by(CalendarHold.start_at, CalendarHold.created_at).all()


def create_hold(
    db: Session,
    *,
    org_id: UUID,
    worker_id: UUID,
    start_at: datetime,
    end_at: datetime | None = None,
    duration_minutes: int | None = None,
    title: str = "Hold",
    lead_id: UUID | None = None,
    customer_name: str | None = None,
    address_line: str | None = None,
    source: HoldSource = HoldSource.MANUAL,
    expires_in_minutes: int | None = DEFAULT_HOLD_EXPIRY_MINUTES,
    created_by_user_id: UUID | None = None,
    now: datetime | None = None,
) -> CalendarHold:
    """
    Reserve a slot for one worker.

    Raises:
        ValueError: invalid range or unknown worker
        CalendarConflictError: the slot is already blocked
    """
    now = now or utc_now()
    if start_at.tzinfo is None:
        raise ValueError("start_at must include a UTC offset")
    if end_at is None:
        end_at = start_at + timedelta(
            minutes=availability_service.clamp_duration_minutes(duration_minutes)
        )
    if end_at <= start_at:
        raise ValueError("end_at must be after start_at")
    title = (title or "").strip() or "Hold"

    worker = db.get(User, worker_id)
    if worker is None or worker.organization_id != org_id:
        raise ValueError("Unknown worker for this organization")

    settings = calendar_settings_service.get_org_calendar_settings(db, org_id)
    event_service.ensure_no_conflicts(
        db,
        org_id=org_id,
        worker_ids=[worker_id],
        start_at=start_at,
        end_at=end_at,
        settings=settings,
        now=now,
    )

    expiry = clamp_int(expires_in_minutes, DEFAULT_HOLD_EXPIRY_MINUTES, 1, MAX_HOLD_EXPIRY_MINUTES)
    hold = CalendarHold(
        organization_id=org_id,
        worker_user_id=worker_id,
        lead_id=lead_id,
        title=title,
        customer_name=customer_name,
        address_line=address_line,
        source=source.value,
        status=HoldStatus.ACTIVE.value,
        start_at=start_at,
        end_at=end_at,
        expires_at=now + timedelta(minutes=expiry),
        created_by_user_id=created_by_user_id,
    )
    db.add(hold)
    db.commit()
    db.refresh(hold)
    return hold


def confirm_hold(
    db: Session,
    *,
    org_id: UUID,
    hold_id: UUID,
    actor_id: UUID | None,
    title: str | None = None,
    event_type: EventType = EventType.JOB,
    now: datetime | None = None,
) -> Event:
    """
    Convert a live hold into a scheduled event.

    An expired hold is marked EXPIRED and rejected. The event, the hold
    transition and the sync job are committed together.
    """
    now = now or utc_now()
    hold = get_hold(db, org_id, hold_id)
    if hold is None:
        raise CalendarNotFoundError("Hold not found")
    if hold.status != HoldStatus.ACTIVE.value:
        raise ValueError(f"Hold is {hold.status}, not active")
    if hold.expires_at <= now:
        hold.status = HoldStatus.EXPIRED.value
        db.commit()
        raise ValueError("Hold has expired")

    try:
        event = event_service.create_event(
            db,
            org_id=org_id,
            actor_id=actor_id,
            title=title or hold.title,
            start_at=hold.start_at,
            end_at=hold.end_at,
            worker_ids=[hold.worker_user_id],
            event_type=event_type,
            customer_name=hold.customer_name,
            address_line=hold.address_line,
            lead_id=hold.lead_id,
            exclude_hold_id=hold.id,
            now=now,
            commit=False,
        )
    except CalendarConflictError:
        db.rollback()
        raise

    hold.status = HoldStatus.CONFIRMED.value
    hold.confirmed_event_id = event.id
    db.commit()
    db.refresh(event)
    logger.info("Confirmed hold %s as event %s", hold.id, event.id)
    return event


def cancel_hold(db: Session, *, org_id: UUID, hold_id: UUID) -> CalendarHold:
    """Release a hold. Already released holds are returned unchanged."""
    hold = get_hold(db, org_id, hold_id)
    if hold is None:
        raise CalendarNotFoundError("Hold not found")
    if hold.status == HoldStatus.CONFIRMED.value:
        raise ValueError("Confirmed holds cannot be cancelled; cancel the event instead")
    if hold.status == HoldStatus.ACTIVE.value:
        hold.status = HoldStatus.CANCELLED.value
        db.commit()
        db.refresh(hold)
    return hold


def expire_stale_holds(db: Session, *, now: datetime | None = None) -> int:
    """Mark ACTIVE holds past their expiry as EXPIRED. Returns the count."""
    now = now or utc_now()
    expired = (
        db.query(CalendarHold)
        .filter(
            CalendarHold.status == HoldStatus.ACTIVE.value,
            CalendarHold.expires_at <= now,
        )
        .update(
            {
                CalendarHold.status: HoldStatus.EXPIRED.value,
                CalendarHold.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if expired:
        logger.info("Expired %s stale calendar hold(s)", expired)
    return expired


# =============================================================================
# Intake callback options
# =============================================================================

def _intake_workers(db: Session, org_id: UUID, worker_ids: list[UUID] | None) -> list[User]:
    query = db.query(User).filter(
        User.organization_id == org_id,
        User.calendar_role != CalendarRole.READ_ONLY.value,
    )
    if worker_ids:
        query = query.filter(User.id.in_(worker_ids))
    workers = query.limit(INTAKE_MAX_WORKERS).all()
    return sorted(
        workers,
        key=lambda user: (
            _ROLE_RANK.get(user.calendar_role, 99),
            (user.display_name or user.email).lower(),
        ),
    )


def create_intake_hold_options(
    db: Session,
    *,
    org_id: UUID,
    lead_id: UUID,
    worker_ids: list[UUID] | None = None,
    customer_name: str | None = None,
    address_line: str | None = None,
    duration_minutes: int | None = None,
    now: datetime | None = None,
) -> list[CalendarHold]:
    """
    Offer up to three callback slots for an intake conversation.

    The lead's previous live option set is retired and the new one created
    in a single transaction. Each day, each worker contributes at most its
    first open slot not already offered.
    """
    now = now or utc_now()
    settings = calendar_settings_service.get_org_calendar_settings(db, org_id)
    duration = availability_service.clamp_duration_minutes(
        duration_minutes or settings.default_slot_minutes
    )

    try:
        db.query(CalendarHold).filter(
            CalendarHold.organization_id == org_id,
            CalendarHold.lead_id == lead_id,
            CalendarHold.source == HoldSource.SMS_AGENT.value,
            CalendarHold.status == HoldStatus.ACTIVE.value,
        ).update(
            {
                CalendarHold.status: HoldStatus.EXPIRED.value,
                CalendarHold.expires_at: now,
                CalendarHold.updated_at: now,
            },
            synchronize_session=False,
        )
        db.flush()

        workers = _intake_workers(db, org_id, worker_ids)
        candidates: list[tuple[UUID, datetime]] = []
        offered: set[datetime] = set()
        today = local_date_from_utc(now, settings.calendar_timezone)

        for offset in range(INTAKE_LOOKAHEAD_DAYS):
            date_key = add_days(today, offset)
            for worker in workers:
                if len(candidates) >= INTAKE_OPTION_COUNT:
                    break
                availability = availability_service.compute_availability_for_worker(
                    db,
                    org_id=org_id,
                    worker_id=worker.id,
                    date_key=date_key,
                    duration_minutes=duration,
                    step_minutes=INTAKE_STEP_MINUTES,
                    settings=settings,
                    now=now,
                )
                slot = next(
                    (s for s in availability.slots_utc if s >= now and s not in offered),
                    None,
                )
                if slot is None:
                    continue
                offered.add(slot)
                candidates.append((worker.id, slot))
            if len(candidates) >= INTAKE_OPTION_COUNT:
                break

        expires_at = now + timedelta(minutes=INTAKE_HOLD_MINUTES)
        holds = [
            CalendarHold(
                organization_id=org_id,
                worker_user_id=worker_id,
                lead_id=lead_id,
                title=INTAKE_CALLBACK_TITLE,
                customer_name=customer_name,
                address_line=address_line,
                source=HoldSource.SMS_AGENT.value,
                status=HoldStatus.ACTIVE.value,
                start_at=slot,
                end_at=slot + timedelta(minutes=duration),
                expires_at=expires_at,
            )
            for worker_id, slot in candidates
        ]
        db.add_all(holds)
        db.commit()
    except Exception:
        db.rollback()
        raise

    for hold in holds:
        db.refresh(hold)
    holds.sort(key=lambda hold: hold.start_at)
    logger.info("Created %s intake callback option(s) for lead %s", len(holds), lead_id)
    return holds


def confirm_intake_selection(
    db: Session,
    *,
    org_id: UUID,
    lead_id: UUID,
    selection: int,
    now: datetime | None = None,
) -> Event:
    """
    Book option ``selection`` (1-based) of the lead's live intake holds.

    Live holds are ordered by start then creation. Sibling holds are
    cancelled; an existing callback event for the lead is reused.

    Raises:
        ValueError: no live option with that number
    """
    now = now or utc_now()
    live = (
        db.query(CalendarHold)
        .filter(
            CalendarHold.organization_id == org_id,
            CalendarHold.lead_id == lead_id,
            CalendarHold.source == HoldSource.SMS_AGENT.value,
            CalendarHold.status == HoldStatus.ACTIVE.value,
            CalendarHold.expires_at > now,
        )
        .order_by(CalendarHold.start_at, CalendarHold.created_at)
        .limit(INTAKE_OPTION_COUNT)
        .all()
    )
    if selection < 1 or selection > len(live):
        raise ValueError(f"No callback option {selection} is available")
    selected = live[selection - 1]

    try:
        db.query(CalendarHold).filter(
            CalendarHold.organization_id == org_id,
            CalendarHold.lead_id == lead_id,
            CalendarHold.source == HoldSource.SMS_AGENT.value,
            CalendarHold.status == HoldStatus.ACTIVE.value,
            CalendarHold.id != selected.id,
        ).update(
            {CalendarHold.status: HoldStatus.CANCELLED.value, CalendarHold.updated_at: now},
            synchronize_session=False,
        )
        db.flush()

        event = (
            db.query(Event)
            .filter(
                Event.organization_id == org_id,
                Event.lead_id == lead_id,
                Event.type == EventType.FOLLOW_UP.value,
                Event.title == INTAKE_CALLBACK_TITLE,
                Event.status != EventStatus.CANCELLED.value,
            )
            .first()
        )
        if event is None:
            event = event_service.create_event(
                db,
                org_id=org_id,
                actor_id=None,
                title=INTAKE_CALLBACK_TITLE,
                description=INTAKE_CALLBACK_DESCRIPTION,
                start_at=selected.start_at,
                end_at=selected.end_at,
                worker_ids=[selected.worker_user_id],
                event_type=EventType.FOLLOW_UP,
                customer_name=selected.customer_name,
                address_line=selected.address_line,
                lead_id=lead_id,
                exclude_hold_id=selected.id,
                now=now,
                commit=False,
            )

        selected.status = HoldStatus.CONFIRMED.value
        selected.confirmed_event_id = event.id
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(event)
    logger.info("Lead %s picked intake option %s (event %s)", lead_id, selection, event.id)
    return event
