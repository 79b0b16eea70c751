"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron; every operation is safe to repeat.
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from fieldcal.core.config import settings
from fieldcal.core.deps import get_db
from fieldcal.db.enums import SyncJobStatus, SyncRunSource
from fieldcal.schemas.integrations import (
    ClearStuckRequest,
    RetryFailedRequest,
    SyncAlertRequest,
    SyncCycleRequest,
    SyncJobRead,
    SyncRunRead,
)
from fieldcal.services import google_sync_service, hold_service, sync_health_service

logger = logging.getLogger(__name__)


def verify_internal_secret(x_internal_secret: str | None = Header(None)) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.post("/scheduled/google-sync")
async def run_google_sync(
    data: SyncCycleRequest | None = None,
    db: Session = Depends(get_db),
):
    """One drain cycle: due sync jobs, then due account pulls."""
    data = data or SyncCycleRequest()
    return await google_sync_service.run_sync_cycle(
        db,
        max_jobs=data.max_jobs,
        max_accounts=data.max_accounts,
        source=SyncRunSource.CRON,
    )


@router.post("/google-sync/retry-failed")
def retry_failed_jobs(
    data: RetryFailedRequest | None = None,
    db: Session = Depends(get_db),
):
    data = data or RetryFailedRequest()
    return google_sync_service.retry_failed_jobs(db, limit=data.limit)


@router.post("/google-sync/clear-stuck")
def clear_stuck_jobs(
    data: ClearStuckRequest | None = None,
    db: Session = Depends(get_db),
):
    data = data or ClearStuckRequest()
    return google_sync_service.clear_stuck_jobs(
        db, stuck_minutes=data.stuck_minutes, limit=data.limit
    )


@router.get("/google-sync/health")
def google_sync_health(
    window_hours: int = 24,
    error_limit: int = 20,
    stuck_minutes: int = 30,
    db: Session = Depends(get_db),
):
    return sync_health_service.get_sync_health_snapshot(
        db,
        window_hours=window_hours,
        error_limit=error_limit,
        stuck_minutes=stuck_minutes,
    )


@router.post("/google-sync/alerts")
def evaluate_google_sync_alerts(
    data: SyncAlertRequest | None = None,
    db: Session = Depends(get_db),
):
    """Check thresholds and record a deduplicated alert when one is breached."""
    data = data or SyncAlertRequest()
    return sync_health_service.evaluate_sync_alerts(db, **data.model_dump())


@router.get("/google-sync/runs", response_model=list[SyncRunRead])
def list_google_sync_runs(limit: int = 20, db: Session = Depends(get_db)):
    return google_sync_service.list_sync_runs(db, limit=limit)


@router.get("/google-sync/jobs", response_model=list[SyncJobRead])
def list_google_sync_jobs(
    status: SyncJobStatus | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """Most recent queue rows, optionally filtered by status."""
    return google_sync_service.list_sync_jobs(db, status=status, limit=limit)


@router.post("/scheduled/expire-holds")
def expire_holds(db: Session = Depends(get_db)) -> dict[str, int]:
    expired = hold_service.expire_stale_holds(db)
    return {"expired": expired}
