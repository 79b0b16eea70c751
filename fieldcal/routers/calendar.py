"""Calendar router - events, time off, holds, settings and working hours."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from fieldcal.core.deps import (
    assert_worker_edit_allowed,
    can_edit_any_calendar,
    get_current_session,
    get_db,
    require_calendar_write,
)
from fieldcal.db.enums import CalendarView, HoldStatus
from fieldcal.db.models import Event
from fieldcal.schemas.auth import UserSession
from fieldcal.schemas.calendar import (
    CalendarSettingsRead,
    CalendarSettingsUpdate,
    ConflictErrorDetail,
    ConflictRead,
    EventCreate,
    EventCreateResponse,
    EventRead,
    EventUpdate,
    HoldConfirm,
    HoldCreate,
    HoldRead,
    TimeOffCreate,
    TimeOffRead,
    WorkingDay,
    WorkingHoursSet,
)
from fieldcal.services import (
    availability_service,
    calendar_settings_service,
    event_service,
    hold_service,
)
from fieldcal.services.calendar_errors import (
    CalendarConflictError,
    CalendarNotFoundError,
    CalendarPermissionError,
)
from fieldcal.services.calendar_settings_service import WorkingDayInput
from fieldcal.utils.calendar_time import local_date_from_utc

router = APIRouter(prefix="/calendar", tags=["calendar"])


# =============================================================================
# Helper Functions
# =============================================================================

def _conflict_response(exc: CalendarConflictError) -> HTTPException:
    detail = ConflictErrorDetail(
        message=str(exc),
        conflicts=[
            ConflictRead(worker_id=c.worker_id, source=c.source, source_id=c.source_id)
            for c in exc.conflicts
        ],
        suggested_slots=exc.suggested_slots,
        timezone=exc.timezone,
    )
    return HTTPException(status_code=409, detail=detail.model_dump(mode="json"))


def _event_workers(event: Event) -> list[UUID]:
    workers = list(event.worker_ids)
    if event.assigned_to_user_id and event.assigned_to_user_id not in workers:
        workers.append(event.assigned_to_user_id)
    return workers


def _get_event_or_404(db: Session, session: UserSession, event_id: UUID) -> Event:
    event = event_service.get_event(db, session.org_id, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _settings_to_read(settings) -> CalendarSettingsRead:
    return CalendarSettingsRead(
        allow_overlaps=settings.allow_overlaps,
        default_slot_minutes=settings.default_slot_minutes,
        default_untimed_start_hour=settings.default_untimed_start_hour,
        calendar_timezone=settings.calendar_timezone,
        week_starts_on=settings.week_starts_on,
    )


# =============================================================================
# Events
# =============================================================================

@router.get("/events", response_model=list[EventRead])
def list_events(
    date: str = Query(..., pattern=r"^\d{4}-\d{2}-\d{2}$"),
    view: CalendarView = Query(CalendarView.WEEK),
    worker_ids: list[UUID] | None = Query(None),
    include_cancelled: bool = Query(False),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Events overlapping the visible day/week/month range."""
    try:
        return event_service.list_events(
            db,
            org_id=session.org_id,
            view=view,
            date_key=date,
            worker_ids=worker_ids,
            include_cancelled=include_cancelled,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/events", response_model=EventCreateResponse, status_code=201)
def create_event(
    data: EventCreate,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """
    Book an event.

    Returns 409 with conflicts and suggested slots when a worker is busy.
    """
    worker_ids = event_service.normalize_worker_ids(data.worker_ids) or [session.user_id]
    assert_worker_edit_allowed(session, worker_ids)
    try:
        event = event_service.create_event(
            db,
            org_id=session.org_id,
            actor_id=session.user_id,
            title=data.title,
            start_at=data.start_at,
            end_at=data.end_at,
            duration_minutes=data.duration_minutes,
            worker_ids=worker_ids,
            event_type=data.type,
            status=data.status,
            busy=data.busy,
            all_day=data.all_day,
            description=data.description,
            customer_name=data.customer_name,
            address_line=data.address_line,
            lead_id=data.lead_id,
        )
    except CalendarConflictError as e:
        raise _conflict_response(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    settings = calendar_settings_service.get_org_calendar_settings(db, session.org_id)
    availability_by_worker = {}
    for worker_id in event.worker_ids:
        tz = calendar_settings_service.get_worker_time_zone(
            db, worker_id, fallback=settings.calendar_timezone
        )
        result = availability_service.compute_availability_for_worker(
            db,
            org_id=session.org_id,
            worker_id=worker_id,
            date_key=local_date_from_utc(event.start_at, tz),
            settings=settings,
        )
        availability_by_worker[str(worker_id)] = result.slots_utc
    return EventCreateResponse(
        event=EventRead.model_validate(event),
        availability_by_worker=availability_by_worker,
    )


@router.patch("/events/{event_id}", response_model=EventRead)
def update_event(
    event_id: UUID,
    data: EventUpdate,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """Reschedule, reassign or edit an event."""
    event = _get_event_or_404(db, session, event_id)
    assert_worker_edit_allowed(session, _event_workers(event))
    changes = data.model_dump(exclude_unset=True)
    if changes.get("worker_ids") and not can_edit_any_calendar(session):
        assert_worker_edit_allowed(session, changes["worker_ids"])
    try:
        return event_service.update_event(
            db, org_id=session.org_id, event_id=event_id, changes=changes
        )
    except CalendarConflictError as e:
        raise _conflict_response(e)
    except CalendarPermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/events/{event_id}", response_model=EventRead)
def cancel_event(
    event_id: UUID,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """Cancel an event. Cancelling twice is a no-op."""
    event = _get_event_or_404(db, session, event_id)
    assert_worker_edit_allowed(session, _event_workers(event))
    try:
        return event_service.cancel_event(db, org_id=session.org_id, event_id=event_id)
    except CalendarPermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))


# =============================================================================
# Time Off
# =============================================================================

@router.get("/time-off", response_model=list[TimeOffRead])
def list_time_off(
    worker_id: UUID | None = Query(None),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return event_service.list_time_off(db, org_id=session.org_id, worker_id=worker_id)


@router.post("/time-off", response_model=TimeOffRead, status_code=201)
def create_time_off(
    data: TimeOffCreate,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    worker_id = data.worker_id or session.user_id
    assert_worker_edit_allowed(session, [worker_id])
    try:
        return event_service.create_time_off(
            db,
            org_id=session.org_id,
            worker_id=worker_id,
            start_at=data.start_at,
            end_at=data.end_at,
            reason=data.reason,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/time-off/{time_off_id}", status_code=204)
def delete_time_off(
    time_off_id: UUID,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    row = event_service.get_time_off(db, session.org_id, time_off_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Time off not found")
    assert_worker_edit_allowed(session, [row.worker_user_id])
    try:
        event_service.delete_time_off(db, org_id=session.org_id, time_off_id=time_off_id)
    except CalendarNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# =============================================================================
# Holds
# =============================================================================

@router.get("/holds", response_model=list[HoldRead])
def list_holds(
    worker_id: UUID | None = Query(None),
    lead_id: UUID | None = Query(None),
    status: HoldStatus | None = Query(None),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Live holds by default; pass status to see released ones."""
    return hold_service.list_holds(
        db, org_id=session.org_id, worker_id=worker_id, lead_id=lead_id, status=status
    )


@router.post("/holds", response_model=HoldRead, status_code=201)
def create_hold(
    data: HoldCreate,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    worker_id = data.worker_id or session.user_id
    assert_worker_edit_allowed(session, [worker_id])
    try:
        return hold_service.create_hold(
            db,
            org_id=session.org_id,
            worker_id=worker_id,
            start_at=data.start_at,
            end_at=data.end_at,
            duration_minutes=data.duration_minutes,
            title=data.title,
            lead_id=data.lead_id,
            customer_name=data.customer_name,
            address_line=data.address_line,
            source=data.source,
            expires_in_minutes=data.expires_in_minutes,
            created_by_user_id=session.user_id,
        )
    except CalendarConflictError as e:
        raise _conflict_response(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/holds/{hold_id}/confirm", response_model=EventRead)
def confirm_hold(
    hold_id: UUID,
    data: HoldConfirm | None = None,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """Turn a live hold into an event."""
    hold = hold_service.get_hold(db, session.org_id, hold_id)
    if hold is None:
        raise HTTPException(status_code=404, detail="Hold not found")
    assert_worker_edit_allowed(session, [hold.worker_user_id])
    data = data or HoldConfirm()
    try:
        return hold_service.confirm_hold(
            db,
            org_id=session.org_id,
            hold_id=hold_id,
            actor_id=session.user_id,
            title=data.title,
            event_type=data.type,
        )
    except CalendarConflictError as e:
        raise _conflict_response(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/holds/{hold_id}/cancel", response_model=HoldRead)
def cancel_hold(
    hold_id: UUID,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    hold = hold_service.get_hold(db, session.org_id, hold_id)
    if hold is None:
        raise HTTPException(status_code=404, detail="Hold not found")
    assert_worker_edit_allowed(session, [hold.worker_user_id])
    try:
        return hold_service.cancel_hold(db, org_id=session.org_id, hold_id=hold_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# Settings & Working Hours
# =============================================================================

@router.get("/settings", response_model=CalendarSettingsRead)
def get_calendar_settings(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    settings = calendar_settings_service.get_org_calendar_settings(db, session.org_id)
    db.commit()
    return _settings_to_read(settings)


@router.patch("/settings", response_model=CalendarSettingsRead)
def update_calendar_settings(
    data: CalendarSettingsUpdate,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """Org-wide settings; owners and admins only."""
    if not can_edit_any_calendar(session):
        raise HTTPException(status_code=403, detail="Only owners and admins can change calendar settings")
    try:
        settings = calendar_settings_service.update_org_calendar_settings(
            db, session.org_id, **data.model_dump(exclude_unset=True)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _settings_to_read(settings)


@router.get("/working-hours/{worker_id}", response_model=list[WorkingDay])
def get_working_hours(
    worker_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return calendar_settings_service.list_working_hours(db, session.org_id, worker_id)


@router.put("/working-hours/{worker_id}", response_model=list[WorkingDay])
def set_working_hours(
    worker_id: UUID,
    data: WorkingHoursSet,
    session: UserSession = Depends(require_calendar_write),
    db: Session = Depends(get_db),
):
    """Replace a worker's weekly hours."""
    assert_worker_edit_allowed(session, [worker_id])
    days = [
        WorkingDayInput(
            day_of_week=day.day_of_week,
            is_working=day.is_working,
            start_minute=day.start_minute,
            end_minute=day.end_minute,
            timezone=day.timezone,
        )
        for day in data.days
    ]
    try:
        return calendar_settings_service.set_working_hours(db, session.org_id, worker_id, days)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
