"""Google Calendar sync queue.

Outbound: local event changes enqueue UPSERT_EVENT / DELETE_EVENT jobs.
Inbound: PULL_CALENDARS jobs and periodic account pulls import remote
events as busy blocks (type gcal_block, provider google).

Jobs move PENDING -> PROCESSING -> DONE | ERROR. A job is claimed with a
conditional UPDATE guarded on its current status; the affected row count
decides ownership. Every attempt leaves an append-only SyncJobAttempt row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TypedDict, assert_never
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from fieldcal.core.config import settings
from fieldcal.core.structured_logging import build_log_context
from fieldcal.db.enums import (
    AccountSyncStatus,
    EventProvider,
    EventStatus,
    EventSyncStatus,
    EventType,
    SyncAction,
    SyncAttemptStatus,
    SyncJobStatus,
    SyncRunSource,
    SyncRunStatus,
)
from fieldcal.db.models import (
    Event,
    EventWorker,
    GoogleCalendarAccount,
    SyncJob,
    SyncJobAttempt,
    SyncRun,
)
from fieldcal.jobs.sync_actions import (
    DeleteEventAction,
    PullCalendarsAction,
    SyncActionType,
    UpsertEventAction,
    parse_sync_action,
)
from fieldcal.services import calendar_settings_service, google_account_service
from fieldcal.services.availability_service import event_end_or_default
from fieldcal.services.google_calendar_client import (
    GoogleApiError,
    GoogleCalendarClient,
    GoogleCredentialError,
    GoogleEventRecord,
    build_google_event_body,
    parse_google_event_range,
)
from fieldcal.utils.calendar_time import clamp_int, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_LIMIT = 25
MAX_PROCESS_LIMIT = 100
BASE_BACKOFF_MS = 30_000
MAX_BACKOFF_MS = 60 * 60 * 1000
NON_RETRYABLE_BACKOFF_MS = 24 * 60 * 60 * 1000

JOB_ERROR_MAX_LENGTH = 1000
ATTEMPT_ERROR_MAX_LENGTH = 2000
RUN_ERROR_MAX_LENGTH = 1500

PULL_LOOKBACK = timedelta(days=7)
PULL_LOOKAHEAD = timedelta(days=90)
GOOGLE_BLOCK_DEFAULT_TITLE = "Google Busy"

CLAIMABLE_STATUSES = (SyncJobStatus.PENDING.value, SyncJobStatus.ERROR.value)


# =============================================================================
# Types
# =============================================================================

class ProcessJobsResult(TypedDict):
    processed: int
    completed: int
    failed: int


class PullResult(TypedDict):
    account_id: str
    calendars: int
    upserted: int
    cancelled: int
    skipped: bool


class AccountSyncOutcome(TypedDict):
    account_id: str
    ok: bool
    error: str | None


class DueAccountsResult(TypedDict):
    processed: int
    succeeded: int
    failed: int
    results: list[AccountSyncOutcome]


class SyncCycleResult(TypedDict):
    run_id: str
    status: str
    jobs: ProcessJobsResult
    accounts: DueAccountsResult


class RetryFailedResult(TypedDict):
    selected: int
    retried: int


class ClearStuckResult(TypedDict):
    selected: int
    cleared: int


# =============================================================================
# Enqueue & Classification
# =============================================================================

def enqueue_sync_job(
    db: Session,
    *,
    org_id: UUID,
    user_id: UUID | None,
    action: SyncAction,
    event_id: UUID | None = None,
    payload: dict | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> SyncJob | None:
    """Queue sync work for a user; jobs without a user are dropped."""
    if not user_id:
        return None
    now = now or utc_now()
    job = SyncJob(
        organization_id=org_id,
        user_id=user_id,
        event_id=event_id,
        action=action.value,
        payload=payload,
        status=SyncJobStatus.PENDING.value,
        attempt_count=0,
        backoff_ms=0,
        run_after=now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    if commit:
        db.commit()
    else:
        db.flush()
    return job


def is_retryable_sync_error(exc: BaseException) -> bool:
    """Provider 429/5xx and non-provider failures retry; other provider errors do not."""
    if isinstance(exc, GoogleCredentialError):
        return False
    if isinstance(exc, GoogleApiError):
        return exc.status is not None and (exc.status == 429 or exc.status >= 500)
    return True


def compute_backoff_ms(attempt: int, retryable: bool) -> int:
    """Exponential 30s base capped at 1h; non-retryable failures wait 24h."""
    if not retryable:
        return NON_RETRYABLE_BACKOFF_MS
    return min(MAX_BACKOFF_MS, BASE_BACKOFF_MS * 2 ** max(0, attempt - 1))


def _error_message(exc: BaseException, fallback: str = "Google sync failed.") -> str:
    return str(exc).strip() or fallback


# =============================================================================
# Claim & Attempt bookkeeping
# =============================================================================

def claim_sync_job(db: Session, job_id: UUID, *, now: datetime | None = None) -> bool:
    """
    Move one job to PROCESSING if it is still PENDING or ERROR.

    Returns True only for the caller whose update touched the row.
    """
    now = now or utc_now()
    job = db.get(SyncJob, job_id)
    next_attempt = (job.attempt_count if job else 0) + 1
    claimed = (
        db.query(SyncJob)
        .filter(SyncJob.id == job_id, SyncJob.status.in_(CLAIMABLE_STATUSES))
        .update(
            {
                SyncJob.status: SyncJobStatus.PROCESSING.value,
                SyncJob.attempt_count: SyncJob.attempt_count + 1,
                SyncJob.backoff_ms: 0,
                SyncJob.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if claimed == 1 and job is not None:
        db.refresh(job)
        logger.debug("Claimed sync job %s (attempt %s)", job_id, next_attempt)
    return claimed == 1


def get_due_jobs(db: Session, *, limit: int, now: datetime) -> list[SyncJob]:
    return (
        db.query(SyncJob)
        .filter(
            SyncJob.status.in_(CLAIMABLE_STATUSES),
            SyncJob.run_after <= now,
        )
        .order_by(SyncJob.run_after, SyncJob.created_at)
        .limit(limit)
        .all()
    )


def _record_attempt(
    db: Session,
    job: SyncJob,
    *,
    status: SyncAttemptStatus,
    now: datetime,
    retryable: bool | None = None,
    backoff_ms: int | None = None,
    next_run_at: datetime | None = None,
    error_message: str | None = None,
) -> None:
    db.add(
        SyncJobAttempt(
            job_id=job.id,
            organization_id=job.organization_id,
            user_id=job.user_id,
            event_id=job.event_id,
            action=job.action,
            status=status.value,
            attempt_number=job.attempt_count,
            retryable=retryable,
            backoff_ms=backoff_ms,
            next_run_at=next_run_at,
            error_message=error_message[:ATTEMPT_ERROR_MAX_LENGTH] if error_message else None,
            created_at=now,
        )
    )


def _mark_job_done(db: Session, job: SyncJob, now: datetime) -> None:
    job.status = SyncJobStatus.DONE.value
    job.backoff_ms = 0
    job.last_error = None
    job.updated_at = now
    _record_attempt(db, job, status=SyncAttemptStatus.DONE, now=now)
    db.commit()


def _mark_job_failed(db: Session, job: SyncJob, exc: BaseException, now: datetime) -> None:
    retryable = is_retryable_sync_error(exc)
    backoff_ms = compute_backoff_ms(job.attempt_count, retryable)
    next_run_at = now + timedelta(milliseconds=backoff_ms)
    message = _error_message(exc)

    job.status = SyncJobStatus.ERROR.value
    job.backoff_ms = backoff_ms
    job.run_after = next_run_at
    job.last_error = message[:JOB_ERROR_MAX_LENGTH]
    job.updated_at = now
    _record_attempt(
        db,
        job,
        status=SyncAttemptStatus.ERROR,
        now=now,
        retryable=retryable,
        backoff_ms=backoff_ms,
        next_run_at=next_run_at,
        error_message=message,
    )
    if job.event_id:
        event = db.get(Event, job.event_id)
        if event:
            event.sync_status = EventSyncStatus.ERROR.value
            event.last_synced_at = now
    db.commit()


def _set_event_sync_error(db: Session, event: Event, message: str, now: datetime) -> None:
    """Outbound sync is impossible for now; the job itself still completes."""
    event.sync_status = EventSyncStatus.ERROR.value
    event.last_synced_at = now
    db.commit()
    logger.warning("Event %s not synced: %s", event.id, message)


# =============================================================================
# Action handlers
# =============================================================================

async def _delete_remote_event(
    db: Session,
    *,
    org_id: UUID,
    user_id: UUID,
    google_calendar_id: str | None,
    google_event_id: str | None,
    now: datetime,
) -> None:
    """Best-effort remote delete; a 404 means it is already gone."""
    if not google_calendar_id or not google_event_id:
        return
    account = google_account_service.get_account(db, org_id, user_id)
    if not google_account_service.is_connected(account):
        return
    token = await google_account_service.get_access_token_for_account(db, account, now=now)
    try:
        await GoogleCalendarClient(token).delete_event(google_calendar_id, google_event_id)
    except GoogleApiError as exc:
        if exc.status == 404:
            return
        raise


async def process_upsert_event(db: Session, job: SyncJob, action: UpsertEventAction, now: datetime) -> None:
    event = db.get(Event, action.event_id)
    if event is None:
        return
    if event.provider == EventProvider.GOOGLE.value or event.type == EventType.GCAL_BLOCK.value:
        return

    if not event.assigned_to_user_id or event.status == EventStatus.CANCELLED.value:
        await _delete_remote_event(
            db,
            org_id=event.organization_id,
            user_id=job.user_id,
            google_calendar_id=event.google_calendar_id,
            google_event_id=event.google_event_id,
            now=now,
        )
        event.google_event_id = None
        event.google_calendar_id = None
        event.sync_status = EventSyncStatus.OK.value
        event.last_synced_at = now
        db.commit()
        return

    account = google_account_service.get_account(
        db, event.organization_id, event.assigned_to_user_id
    )
    if (
        account is None
        or not account.is_enabled
        or not account.write_calendar_id
        or not google_account_service.has_write_scope(account)
    ):
        _set_event_sync_error(
            db, event, "Google write sync is not enabled for assigned worker.", now
        )
        return

    token = await google_account_service.get_access_token_for_account(db, account, now=now)
    client = GoogleCalendarClient(token)
    org_settings = calendar_settings_service.get_org_calendar_settings(db, event.organization_id)
    time_zone = calendar_settings_service.get_worker_time_zone(
        db, event.assigned_to_user_id, fallback=org_settings.calendar_timezone
    )
    end_at = event.end_at if event.end_at and event.end_at > event.start_at else None
    body = build_google_event_body(
        summary=event.title,
        description=event.description,
        location=event.address_line,
        start_at=event.start_at,
        end_at=event_end_or_default(event.start_at, end_at),
        all_day=event.all_day,
        time_zone=time_zone,
    )

    remote_event_id = event.google_event_id
    remote_calendar_id = event.google_calendar_id or account.write_calendar_id
    if remote_event_id and event.google_calendar_id == account.write_calendar_id:
        try:
            await client.update_event(account.write_calendar_id, remote_event_id, body)
        except GoogleApiError as exc:
            if exc.status != 404:
                raise
            remote_event_id = None
    else:
        remote_event_id = None

    if not remote_event_id:
        remote_event_id = await client.create_event(account.write_calendar_id, body)
        remote_calendar_id = account.write_calendar_id

    event.google_event_id = remote_event_id
    event.google_calendar_id = remote_calendar_id
    event.sync_status = EventSyncStatus.OK.value
    event.last_synced_at = now
    db.commit()


async def process_delete_event(db: Session, job: SyncJob, action: DeleteEventAction, now: datetime) -> None:
    target_user_id = job.user_id
    google_calendar_id = action.google_calendar_id
    google_event_id = action.google_event_id

    event = db.get(Event, action.event_id) if action.event_id else None
    if event is not None:
        if event.assigned_to_user_id:
            target_user_id = event.assigned_to_user_id
        google_calendar_id = event.google_calendar_id or google_calendar_id
        google_event_id = event.google_event_id or google_event_id

    await _delete_remote_event(
        db,
        org_id=job.organization_id,
        user_id=target_user_id,
        google_calendar_id=google_calendar_id,
        google_event_id=google_event_id,
        now=now,
    )
    if event is not None:
        event.google_event_id = None
        event.google_calendar_id = None
        event.sync_status = EventSyncStatus.OK.value
        event.last_synced_at = now
        db.commit()


async def process_pull_calendars(db: Session, job: SyncJob, action: PullCalendarsAction, now: datetime) -> None:
    account = google_account_service.get_account(db, job.organization_id, job.user_id)
    if account is None:
        return
    await sync_google_busy_blocks_for_account(db, account, now=now)


async def execute_sync_action(db: Session, job: SyncJob, action: SyncActionType, now: datetime) -> None:
    if isinstance(action, UpsertEventAction):
        await process_upsert_event(db, job, action, now)
    elif isinstance(action, DeleteEventAction):
        await process_delete_event(db, job, action, now)
    elif isinstance(action, PullCalendarsAction):
        await process_pull_calendars(db, job, action, now)
    else:
        assert_never(action)


# =============================================================================
# Queue processing
# =============================================================================

async def process_sync_jobs(
    db: Session,
    *,
    limit: int | None = DEFAULT_PROCESS_LIMIT,
    now: datetime | None = None,
) -> ProcessJobsResult:
    """Claim and execute up to ``limit`` due jobs in run_after, created_at order."""
    now = now or utc_now()
    limit = clamp_int(limit, DEFAULT_PROCESS_LIMIT, 1, MAX_PROCESS_LIMIT)
    result = ProcessJobsResult(processed=0, completed=0, failed=0)

    for job in get_due_jobs(db, limit=limit, now=now):
        if not claim_sync_job(db, job.id, now=now):
            continue
        result["processed"] += 1
        log_context = build_log_context(
            org_id=job.organization_id, user_id=job.user_id, job_id=job.id, action=job.action
        )
        try:
            action = parse_sync_action(job)
            await execute_sync_action(db, job, action, now)
        except Exception as exc:
            db.rollback()
            job = db.get(SyncJob, job.id)
            _mark_job_failed(db, job, exc, now)
            result["failed"] += 1
            logger.warning(
                "Sync job %s (%s) failed on attempt %s: %s",
                job.id,
                job.action,
                job.attempt_count,
                _error_message(exc),
                extra=log_context,
            )
            continue
        _mark_job_done(db, job, now)
        result["completed"] += 1

    return result


def retry_failed_jobs(db: Session, *, limit: int | None = 100, now: datetime | None = None) -> RetryFailedResult:
    """Reset ERROR jobs to PENDING so the next drain cycle picks them up."""
    now = now or utc_now()
    limit = clamp_int(limit, 100, 1, 2000)
    job_ids = [
        row.id
        for row in db.query(SyncJob.id)
        .filter(SyncJob.status == SyncJobStatus.ERROR.value)
        .order_by(SyncJob.run_after, SyncJob.updated_at)
        .limit(limit)
        .all()
    ]
    if not job_ids:
        return RetryFailedResult(selected=0, retried=0)

    retried = (
        db.query(SyncJob)
        .filter(SyncJob.id.in_(job_ids), SyncJob.status == SyncJobStatus.ERROR.value)
        .update(
            {
                SyncJob.status: SyncJobStatus.PENDING.value,
                SyncJob.run_after: now,
                SyncJob.backoff_ms: 0,
                SyncJob.last_error: None,
                SyncJob.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info("Retried %s failed sync job(s)", retried)
    return RetryFailedResult(selected=len(job_ids), retried=retried)


def clear_stuck_jobs(
    db: Session,
    *,
    stuck_minutes: int | None = 30,
    limit: int | None = 100,
    now: datetime | None = None,
) -> ClearStuckResult:
    """Return jobs stuck in PROCESSING to ERROR (due now) so another cycle can reclaim them."""
    now = now or utc_now()
    stuck_minutes = clamp_int(stuck_minutes, 30, 5, 24 * 60)
    limit = clamp_int(limit, 100, 1, 1000)
    cutoff = now - timedelta(minutes=stuck_minutes)
    message = f"Marked as stuck after {stuck_minutes} minutes in PROCESSING; reset for retry."

    stuck = (
        db.query(SyncJob)
        .filter(
            SyncJob.status == SyncJobStatus.PROCESSING.value,
            SyncJob.updated_at <= cutoff,
        )
        .order_by(SyncJob.updated_at)
        .limit(limit)
        .all()
    )
    cleared = 0
    for job in stuck:
        updated = (
            db.query(SyncJob)
            .filter(
                SyncJob.id == job.id,
                SyncJob.status == SyncJobStatus.PROCESSING.value,
                SyncJob.updated_at <= cutoff,
            )
            .update(
                {
                    SyncJob.status: SyncJobStatus.ERROR.value,
                    SyncJob.run_after: now,
                    SyncJob.backoff_ms: 0,
                    SyncJob.last_error: message,
                    SyncJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            continue
        cleared += 1
        _record_attempt(
            db,
            job,
            status=SyncAttemptStatus.ERROR,
            now=now,
            retryable=True,
            backoff_ms=0,
            next_run_at=now,
            error_message=message,
        )
    db.commit()
    if cleared:
        logger.warning("Cleared %s stuck sync job(s) older than %s minutes", cleared, stuck_minutes)
    return ClearStuckResult(selected=len(stuck), cleared=cleared)


def list_sync_jobs(
    db: Session,
    *,
    org_id: UUID | None = None,
    status: SyncJobStatus | None = None,
    limit: int = 50,
) -> list[SyncJob]:
    query = db.query(SyncJob)
    if org_id:
        query = query.filter(SyncJob.organization_id == org_id)
    if status:
        query = query.filter(SyncJob.status == status.value)
    return query.order_by(SyncJob.created_at.desc()).limit(clamp_int(limit, 50, 1, 500)).all()


def list_sync_runs(db: Session, *, limit: int = 20) -> list[SyncRun]:
    return db.query(SyncRun).order_by(SyncRun.started_at.desc()).limit(clamp_int(limit, 20, 1, 200)).all()


# =============================================================================
# Inbound pull
# =============================================================================

def _busy_key(calendar_id: str, event_id: str) -> tuple[str, str]:
    return calendar_id, event_id


def _upsert_google_busy_block(
    db: Session,
    *,
    account: GoogleCalendarAccount,
    calendar_id: str,
    calendar_summary: str,
    record: GoogleEventRecord,
    fallback_time_zone: str,
    now: datetime,
) -> bool:
    """Create or refresh the local block for one remote event. Returns True if it blocks."""
    time_range = parse_google_event_range(record, fallback_time_zone)
    if time_range is None:
        return False
    rule = google_account_service.get_block_rule(account, calendar_id)
    if record.get("status") == "cancelled":
        return False
    if rule.block_if_busy_only and record.get("transparency") == "transparent":
        return False
    if time_range.all_day and not rule.block_all_day:
        return False

    details = "\n\n".join(
        part
        for part in (record.get("description") or "", f"Source: Google Calendar ({calendar_summary})")
        if part
    )
    event = (
        db.query(Event)
        .filter(
            Event.organization_id == account.organization_id,
            Event.google_calendar_id == calendar_id,
            Event.google_event_id == record["id"],
        )
        .first()
    )
    if event is None:
        event = Event(
            organization_id=account.organization_id,
            google_calendar_id=calendar_id,
            google_event_id=record["id"],
        )
        db.add(event)

    event.type = EventType.GCAL_BLOCK.value
    event.provider = EventProvider.GOOGLE.value
    event.sync_status = EventSyncStatus.OK.value
    event.last_synced_at = now
    event.status = EventStatus.CONFIRMED.value
    event.busy = True
    event.all_day = time_range.all_day
    event.title = record.get("summary") or GOOGLE_BLOCK_DEFAULT_TITLE
    event.description = details or None
    event.address_line = record.get("location")
    event.start_at = time_range.start_at
    event.end_at = time_range.end_at
    event.assigned_to_user_id = account.user_id
    event.created_by_user_id = None

    for assignment in list(event.worker_assignments):
        if assignment.worker_user_id != account.user_id:
            event.worker_assignments.remove(assignment)
    if account.user_id not in event.worker_ids:
        event.worker_assignments.append(
            EventWorker(organization_id=account.organization_id, worker_user_id=account.user_id)
        )
    db.flush()
    return True


def _cancel_stale_google_blocks(
    db: Session,
    *,
    account: GoogleCalendarAccount,
    read_calendar_ids: list[str],
    seen: set[tuple[str, str]],
    now: datetime,
) -> int:
    """Cancel imported blocks in the read calendars that the pull no longer saw."""
    if not read_calendar_ids:
        return 0
    existing = (
        db.query(Event)
        .filter(
            Event.organization_id == account.organization_id,
            Event.provider == EventProvider.GOOGLE.value,
            Event.assigned_to_user_id == account.user_id,
            Event.google_calendar_id.in_(read_calendar_ids),
            Event.status != EventStatus.CANCELLED.value,
        )
        .all()
    )
    cancelled = 0
    for event in existing:
        if not event.google_calendar_id or not event.google_event_id:
            continue
        if _busy_key(event.google_calendar_id, event.google_event_id) in seen:
            continue
        event.status = EventStatus.CANCELLED.value
        event.busy = False
        event.sync_status = EventSyncStatus.OK.value
        event.last_synced_at = now
        cancelled += 1
    return cancelled


async def sync_google_busy_blocks_for_account(
    db: Session,
    account: GoogleCalendarAccount,
    *,
    now: datetime | None = None,
) -> PullResult:
    """
    Import remote events from the account's read calendars as busy blocks.

    Window is now - 7 days to now + 90 days. Blocks not observed in this
    pull are cancelled; blocks from other remote events are untouched.
    """
    now = now or utc_now()
    skipped = PullResult(account_id=str(account.id), calendars=0, upserted=0, cancelled=0, skipped=True)
    if not account.is_enabled or not google_account_service.is_connected(account):
        return skipped

    token = await google_account_service.get_access_token_for_account(db, account, now=now)
    client = GoogleCalendarClient(token)
    org_settings = calendar_settings_service.get_org_calendar_settings(db, account.organization_id)
    account_time_zone = calendar_settings_service.get_worker_time_zone(
        db, account.user_id, fallback=org_settings.calendar_timezone
    )
    read_calendar_ids = google_account_service.get_read_calendar_ids(account)

    calendars = await client.list_calendars()
    calendar_by_id = {calendar["id"]: calendar for calendar in calendars}
    primary = next((calendar for calendar in calendars if calendar["primary"]), None)
    if primary and "@" in primary["id"] and primary["id"] != account.google_email:
        account.google_email = primary["id"]

    time_min = now - PULL_LOOKBACK
    time_max = now + PULL_LOOKAHEAD
    seen: set[tuple[str, str]] = set()
    upserted = 0
    for calendar_id in read_calendar_ids:
        records = await client.list_events(calendar_id, time_min, time_max)
        summary = calendar_by_id[calendar_id]["summary"] if calendar_id in calendar_by_id else calendar_id
        for record in records:
            blocked = _upsert_google_busy_block(
                db,
                account=account,
                calendar_id=calendar_id,
                calendar_summary=summary,
                record=record,
                fallback_time_zone=account_time_zone,
                now=now,
            )
            if blocked:
                seen.add(_busy_key(calendar_id, record["id"]))
                upserted += 1

    cancelled = _cancel_stale_google_blocks(
        db, account=account, read_calendar_ids=read_calendar_ids, seen=seen, now=now
    )
    google_account_service.mark_google_account_sync_result(db, account, ok=True, now=now)
    logger.info(
        "Pulled Google calendars for account %s: %s upserted, %s cancelled",
        account.id,
        upserted,
        cancelled,
    )
    return PullResult(
        account_id=str(account.id),
        calendars=len(read_calendar_ids),
        upserted=upserted,
        cancelled=cancelled,
        skipped=False,
    )


async def sync_google_busy_blocks(
    db: Session, *, org_id: UUID, user_id: UUID, now: datetime | None = None
) -> PullResult:
    """Immediate pull for one user; failures are recorded on the account and re-raised."""
    account = google_account_service.get_account(db, org_id, user_id)
    if account is None:
        raise ValueError("Google account is not connected for this user.")
    try:
        return await sync_google_busy_blocks_for_account(db, account, now=now)
    except Exception as exc:
        db.rollback()
        _record_account_failure(db, account, exc, now or utc_now())
        raise


def _record_account_failure(
    db: Session, account: GoogleCalendarAccount, exc: BaseException, now: datetime
) -> None:
    account = db.get(GoogleCalendarAccount, account.id)
    if account is None:
        return
    if isinstance(exc, GoogleCredentialError):
        status = AccountSyncStatus.RECONNECT_REQUIRED
    else:
        status = AccountSyncStatus.ERROR
    google_account_service.mark_google_account_sync_result(
        db, account, ok=False, error=_error_message(exc, "Google read sync failed."), status=status, now=now
    )


def get_due_accounts(db: Session, *, limit: int, now: datetime) -> list[GoogleCalendarAccount]:
    stale_before = now - timedelta(minutes=settings.SYNC_ACCOUNT_INTERVAL_MINUTES)
    return (
        db.query(GoogleCalendarAccount)
        .filter(
            GoogleCalendarAccount.is_enabled.is_(True),
            GoogleCalendarAccount.access_token_encrypted.is_not(None),
            GoogleCalendarAccount.access_token_encrypted != "",
            GoogleCalendarAccount.sync_status != AccountSyncStatus.RECONNECT_REQUIRED.value,
            or_(
                GoogleCalendarAccount.last_sync_at.is_(None),
                GoogleCalendarAccount.last_sync_at < stale_before,
            ),
        )
        .order_by(GoogleCalendarAccount.last_sync_at.is_not(None), GoogleCalendarAccount.last_sync_at)
        .limit(limit)
        .all()
    )


async def sync_due_accounts(
    db: Session,
    *,
    max_accounts: int | None = 20,
    now: datetime | None = None,
) -> DueAccountsResult:
    """Pull every enabled account whose last sync is older than the interval."""
    now = now or utc_now()
    max_accounts = clamp_int(max_accounts, 20, 1, 100)
    result = DueAccountsResult(processed=0, succeeded=0, failed=0, results=[])

    for account in get_due_accounts(db, limit=max_accounts, now=now):
        account_id = account.id
        result["processed"] += 1
        try:
            await sync_google_busy_blocks_for_account(db, account, now=now)
        except Exception as exc:
            db.rollback()
            _record_account_failure(db, account, exc, now)
            result["failed"] += 1
            result["results"].append(
                AccountSyncOutcome(account_id=str(account_id), ok=False, error=_error_message(exc))
            )
            logger.warning(
                "Google pull failed for account %s: %s",
                account_id,
                _error_message(exc),
                extra=build_log_context(org_id=account.organization_id, user_id=account.user_id),
            )
            continue
        result["succeeded"] += 1
        result["results"].append(AccountSyncOutcome(account_id=str(account_id), ok=True, error=None))

    return result


# =============================================================================
# Drain cycle
# =============================================================================

async def run_sync_cycle(
    db: Session,
    *,
    max_jobs: int | None = 40,
    max_accounts: int | None = 20,
    source: SyncRunSource = SyncRunSource.CRON,
    triggered_by_user_id: UUID | None = None,
    now: datetime | None = None,
) -> SyncCycleResult:
    """One drain cycle: due jobs, then due account pulls, recorded as a SyncRun."""
    now = now or utc_now()
    max_jobs = clamp_int(max_jobs, 40, 1, 300)
    max_accounts = clamp_int(max_accounts, 20, 1, 200)

    run = SyncRun(
        source=source.value,
        status=SyncRunStatus.RUNNING.value,
        triggered_by_user_id=triggered_by_user_id,
        max_jobs=max_jobs,
        max_accounts=max_accounts,
        started_at=now,
    )
    db.add(run)
    db.commit()
    run_id = run.id

    try:
        jobs = await process_sync_jobs(db, limit=max_jobs, now=now)
        accounts = await sync_due_accounts(db, max_accounts=max_accounts, now=now)
    except Exception as exc:
        db.rollback()
        run = db.get(SyncRun, run_id)
        run.status = SyncRunStatus.ERROR.value
        run.finished_at = utc_now()
        run.last_error = _error_message(exc, "Google sync run failed.")[:RUN_ERROR_MAX_LENGTH]
        db.commit()
        logger.exception("Google sync run %s failed", run_id)
        raise

    run = db.get(SyncRun, run_id)
    failed = jobs["failed"] > 0 or accounts["failed"] > 0
    run.status = (SyncRunStatus.ERROR if failed else SyncRunStatus.OK).value
    run.jobs_processed = jobs["processed"]
    run.jobs_completed = jobs["completed"]
    run.jobs_failed = jobs["failed"]
    run.accounts_processed = accounts["processed"]
    run.accounts_succeeded = accounts["succeeded"]
    run.accounts_failed = accounts["failed"]
    run.finished_at = utc_now()
    if failed:
        first_error = next(
            (item["error"] for item in accounts["results"] if not item["ok"] and item["error"]),
            None,
        )
        run.last_error = (first_error or "Google sync run completed with failures.")[:RUN_ERROR_MAX_LENGTH]
    db.commit()

    return SyncCycleResult(run_id=str(run_id), status=run.status, jobs=jobs, accounts=accounts)


# =============================================================================
# Account helpers used by the integrations surface
# =============================================================================

async def list_google_calendars_for_user(db: Session, *, org_id: UUID, user_id: UUID) -> dict:
    account = google_account_service.get_account(db, org_id, user_id)
    if not google_account_service.is_connected(account):
        return {"connected": False, "calendars": [], "has_write_scope": False}
    token = await google_account_service.get_access_token_for_account(db, account)
    calendars = await GoogleCalendarClient(token).list_calendars()
    return {
        "connected": True,
        "calendars": calendars,
        "has_write_scope": google_account_service.has_write_scope(account),
    }


async def create_dedicated_calendar(
    db: Session, *, org_id: UUID, user_id: UUID, summary: str, time_zone: str
) -> dict:
    """Create a calendar in the user's Google account and make it the write target."""
    account = google_account_service.get_account(db, org_id, user_id)
    if not google_account_service.is_connected(account):
        raise ValueError("Google account is not connected.")
    if not google_account_service.has_write_scope(account):
        raise ValueError("Google write scope is not enabled. Reconnect with write access.")

    token = await google_account_service.get_access_token_for_account(db, account)
    created = await GoogleCalendarClient(token).create_calendar(summary, time_zone)

    read_ids = google_account_service.normalize_calendar_ids(account.read_calendar_ids)
    if created["id"] not in read_ids:
        read_ids.append(created["id"])
    account.write_calendar_id = created["id"]
    account.read_calendar_ids = read_ids
    account.sync_status = AccountSyncStatus.IDLE.value
    account.sync_error = None
    db.commit()
    return created

