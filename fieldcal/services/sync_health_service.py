"""Sync queue health snapshot and threshold alerting."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from fieldcal.db.enums import SyncAttemptStatus, SyncJobStatus, SyncRunSource, SyncRunStatus
from fieldcal.db.models import SyncHealthAlert, SyncJob, SyncJobAttempt, SyncRun
from fieldcal.utils.calendar_time import clamp_int, utc_now

logger = logging.getLogger(__name__)

OPEN_STATUSES = (SyncJobStatus.PENDING.value, SyncJobStatus.ERROR.value)
# Unattended drain cycles: the internal cron endpoint and the background worker
SCHEDULED_SOURCES = (SyncRunSource.CRON.value, SyncRunSource.WORKER.value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _run_summary(run: SyncRun | None) -> dict | None:
    if run is None:
        return None
    return {
        "id": str(run.id),
        "source": run.source,
        "status": run.status,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "jobs_processed": run.jobs_processed,
        "jobs_completed": run.jobs_completed,
        "jobs_failed": run.jobs_failed,
        "accounts_processed": run.accounts_processed,
        "accounts_failed": run.accounts_failed,
        "last_error": run.last_error,
    }


def _queue_depth(db: Session, now: datetime) -> dict[str, int]:
    ready = (
        db.query(SyncJob)
        .filter(SyncJob.status.in_(OPEN_STATUSES), SyncJob.run_after <= now)
        .count()
    )
    delayed = (
        db.query(SyncJob)
        .filter(SyncJob.status.in_(OPEN_STATUSES), SyncJob.run_after > now)
        .count()
    )
    processing = (
        db.query(SyncJob).filter(SyncJob.status == SyncJobStatus.PROCESSING.value).count()
    )
    return {
        "ready": ready,
        "delayed": delayed,
        "processing": processing,
        "total_open": ready + delayed + processing,
    }


def _attempt_counts(db: Session, since: datetime) -> tuple[int, int]:
    successes = (
        db.query(SyncJobAttempt)
        .filter(
            SyncJobAttempt.status == SyncAttemptStatus.DONE.value,
            SyncJobAttempt.created_at >= since,
        )
        .count()
    )
    errors = (
        db.query(SyncJobAttempt)
        .filter(
            SyncJobAttempt.status == SyncAttemptStatus.ERROR.value,
            SyncJobAttempt.created_at >= since,
        )
        .count()
    )
    return successes, errors


def _last_cron_run(db: Session) -> SyncRun | None:
    return (
        db.query(SyncRun)
        .filter(SyncRun.source.in_(SCHEDULED_SOURCES))
        .order_by(SyncRun.started_at.desc())
        .first()
    )


def get_sync_health_snapshot(
    db: Session,
    *,
    window_hours: int | None = 24,
    error_limit: int | None = 20,
    stuck_minutes: int | None = 30,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Queue depth, attempt and cron outcomes over a window, plus recent errors."""
    now = now or utc_now()
    window_hours = clamp_int(window_hours, 24, 1, 24 * 14)
    error_limit = clamp_int(error_limit, 20, 1, 100)
    stuck_minutes = clamp_int(stuck_minutes, 30, 5, 24 * 60)
    since = now - timedelta(hours=window_hours)
    stuck_cutoff = now - timedelta(minutes=stuck_minutes)

    queue_depth = _queue_depth(db, now)
    queue_depth["failed"] = (
        db.query(SyncJob).filter(SyncJob.status == SyncJobStatus.ERROR.value).count()
    )
    queue_depth["stuck"] = (
        db.query(SyncJob)
        .filter(
            SyncJob.status == SyncJobStatus.PROCESSING.value,
            SyncJob.updated_at <= stuck_cutoff,
        )
        .count()
    )
    job_success, job_error = _attempt_counts(db, since)

    def cron_count(status: SyncRunStatus) -> int:
        return (
            db.query(SyncRun)
            .filter(
                SyncRun.source.in_(SCHEDULED_SOURCES),
                SyncRun.status == status.value,
                SyncRun.started_at >= since,
            )
            .count()
        )

    last_run = db.query(SyncRun).order_by(SyncRun.started_at.desc()).first()
    recent_errors = (
        db.query(SyncJobAttempt)
        .filter(
            SyncJobAttempt.status == SyncAttemptStatus.ERROR.value,
            SyncJobAttempt.error_message.is_not(None),
        )
        .order_by(SyncJobAttempt.created_at.desc())
        .limit(error_limit)
        .all()
    )

    return {
        "generated_at": now.isoformat(),
        "window_hours": window_hours,
        "error_limit": error_limit,
        "stuck_minutes": stuck_minutes,
        "queue_depth": queue_depth,
        "counts": {
            "job_success": job_success,
            "job_error": job_error,
            "cron_success": cron_count(SyncRunStatus.OK),
            "cron_error": cron_count(SyncRunStatus.ERROR),
        },
        "last_cron_run": _run_summary(_last_cron_run(db)),
        "last_run": _run_summary(last_run),
        "recent_errors": [
            {
                "id": str(attempt.id),
                "job_id": str(attempt.job_id),
                "org_id": str(attempt.organization_id),
                "user_id": str(attempt.user_id),
                "action": attempt.action,
                "attempt_number": attempt.attempt_number,
                "retryable": attempt.retryable,
                "backoff_ms": attempt.backoff_ms,
                "next_run_at": _iso(attempt.next_run_at),
                "error_message": attempt.error_message,
                "created_at": _iso(attempt.created_at),
            }
            for attempt in recent_errors
        ],
    }


def evaluate_sync_alerts(
    db: Session,
    *,
    cron_stale_minutes: int | None = 15,
    queue_depth_threshold: int | None = 80,
    error_rate_threshold: float | None = 0.25,
    error_rate_window_minutes: int | None = 60,
    dedupe_window_minutes: int | None = 10,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Evaluate cron staleness, queue depth, and error rate against thresholds.

    An alert row is written only when a raised flag has no alert carrying
    that same flag inside the dedupe window. Safe to call repeatedly.
    """
    now = now or utc_now()
    cron_stale_minutes = clamp_int(cron_stale_minutes, 15, 5, 24 * 60)
    queue_depth_threshold = clamp_int(queue_depth_threshold, 80, 1, 100_000)
    error_rate_window_minutes = clamp_int(error_rate_window_minutes, 60, 5, 24 * 60)
    dedupe_window_minutes = clamp_int(dedupe_window_minutes, 10, 1, 24 * 60)
    if error_rate_threshold is None:
        error_rate_threshold = 0.25
    error_rate_threshold = max(0.0, min(1.0, float(error_rate_threshold)))

    queue_depth = _queue_depth(db, now)
    successes, errors = _attempt_counts(db, now - timedelta(minutes=error_rate_window_minutes))
    attempts = successes + errors
    error_rate = errors / attempts if attempts else 0.0

    last_cron = _last_cron_run(db)
    last_cron_minutes_ago = (
        max(0, int((now - last_cron.started_at).total_seconds() // 60)) if last_cron else None
    )

    flags = {
        "cron_stale": last_cron is None or last_cron_minutes_ago > cron_stale_minutes,
        "queue_high": queue_depth["total_open"] > queue_depth_threshold,
        "error_rate_high": attempts > 0 and error_rate > error_rate_threshold,
    }
    metrics = {
        "generated_at": now.isoformat(),
        "thresholds": {
            "cron_stale_minutes": cron_stale_minutes,
            "queue_depth_threshold": queue_depth_threshold,
            "error_rate_threshold": error_rate_threshold,
            "error_rate_window_minutes": error_rate_window_minutes,
            "dedupe_window_minutes": dedupe_window_minutes,
        },
        "queue_depth": queue_depth,
        "recent": {
            "attempts": attempts,
            "successes": successes,
            "errors": errors,
            "error_rate": error_rate,
            "window_minutes": error_rate_window_minutes,
        },
        "last_cron_run": _run_summary(last_cron),
        "last_cron_minutes_ago": last_cron_minutes_ago,
        "flags": flags,
    }

    raised = [name for name, value in flags.items() if value]
    emitted = False
    if raised:
        cutoff = now - timedelta(minutes=dedupe_window_minutes)
        columns = {
            "cron_stale": SyncHealthAlert.cron_stale,
            "queue_high": SyncHealthAlert.queue_high,
            "error_rate_high": SyncHealthAlert.error_rate_high,
        }
        recent = (
            db.query(SyncHealthAlert)
            .filter(
                SyncHealthAlert.created_at >= cutoff,
                or_(*(columns[name].is_(True) for name in raised)),
            )
            .order_by(SyncHealthAlert.created_at.desc())
            .limit(100)
            .all()
        )
        unlogged = [
            name for name in raised if not any(getattr(alert, name) for alert in recent)
        ]
        if unlogged:
            db.add(
                SyncHealthAlert(
                    cron_stale=flags["cron_stale"],
                    queue_high=flags["queue_high"],
                    error_rate_high=flags["error_rate_high"],
                    message=f"Google sync health degraded: {', '.join(raised)}",
                    metrics_snapshot=metrics,
                    created_at=now,
                )
            )
            db.commit()
            emitted = True
            logger.warning("Google sync health alert raised: %s", ", ".join(raised))

    return {
        "flags": flags,
        "metrics": metrics,
        "show_banner": bool(raised),
        "alert_emitted": emitted,
    }
