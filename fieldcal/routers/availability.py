"""Availability router - open slots, next-open search and conflict checks."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from fieldcal.core.deps import get_current_session, get_db
from fieldcal.schemas.auth import UserSession
from fieldcal.schemas.calendar import (
    AvailabilityResponse,
    ConflictCheckRequest,
    ConflictRead,
    NextOpenRequest,
    NextOpenResponse,
)
from fieldcal.services import availability_service, calendar_settings_service, event_service

router = APIRouter()


def _ensure_org_workers(db: Session, org_id: UUID, worker_ids: list[UUID]) -> None:
    try:
        event_service.validate_workers(db, org_id, worker_ids)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/availability", response_model=AvailabilityResponse)
def get_availability(
    date: str = Query(..., pattern=r"^\d{4}-\d{2}-\d{2}$"),
    worker_id: UUID | None = Query(None),
    duration_minutes: int = Query(30, ge=1),
    step_minutes: int | None = Query(None),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Open slot start times for one worker on a local date."""
    worker_id = worker_id or session.user_id
    _ensure_org_workers(db, session.org_id, [worker_id])
    try:
        result = availability_service.compute_availability_for_worker(
            db,
            org_id=session.org_id,
            worker_id=worker_id,
            date_key=date,
            duration_minutes=duration_minutes,
            step_minutes=step_minutes,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AvailabilityResponse(
        worker_id=worker_id,
        date=date,
        duration_minutes=availability_service.clamp_duration_minutes(duration_minutes),
        slots=result.slots_utc,
        timezone=result.timezone,
    )


@router.post("/availability/next-open", response_model=NextOpenResponse)
def find_next_open(
    data: NextOpenRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Earliest open slot for the preferred worker, else a fallback worker."""
    preferred_worker_id = data.preferred_worker_id or session.user_id
    _ensure_org_workers(
        db, session.org_id, [preferred_worker_id, *(data.candidate_worker_ids or [])]
    )
    try:
        found = availability_service.find_next_open_slot(
            db,
            org_id=session.org_id,
            date_key=data.date,
            duration_minutes=data.duration_minutes,
            lookahead_days=data.lookahead_days,
            preferred_worker_id=preferred_worker_id,
            candidate_worker_ids=data.candidate_worker_ids,
            fallback_strategy=data.fallback,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if found is None:
        raise HTTPException(status_code=404, detail="No open slot found in the lookahead window")
    return NextOpenResponse(
        strategy_used=found.strategy_used,
        worker_id=found.worker_id,
        slot=found.slot,
        duration_minutes=found.duration_minutes,
    )


@router.post("/calendar/conflicts", response_model=list[ConflictRead])
def check_conflicts(
    data: ConflictCheckRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Blocking records overlapping the range for any of the workers. Read-only."""
    if data.start_at.tzinfo is None or data.end_at.tzinfo is None:
        raise HTTPException(status_code=400, detail="start_at and end_at must include a UTC offset")
    if data.end_at <= data.start_at:
        raise HTTPException(status_code=400, detail="end_at must be after start_at")
    _ensure_org_workers(db, session.org_id, data.worker_ids)
    settings = calendar_settings_service.get_org_calendar_settings(db, session.org_id)
    conflicts = availability_service.detect_worker_conflicts(
        db,
        org_id=session.org_id,
        worker_ids=data.worker_ids,
        start_at=data.start_at,
        end_at=data.end_at,
        exclude_event_id=data.exclude_event_id,
        exclude_hold_id=data.exclude_hold_id,
        settings=settings,
    )
    return [
        ConflictRead(worker_id=c.worker_id, source=c.source, source_id=c.source_id)
        for c in conflicts
    ]
