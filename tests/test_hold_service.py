"""Tests for calendar holds and the intake callback flow."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from fieldcal.db.enums import EventType, HoldSource, HoldStatus, SyncAction
from fieldcal.db.models import CalendarHold, SyncJob
from fieldcal.services import availability_service, hold_service
from fieldcal.services.calendar_errors import CalendarConflictError, CalendarNotFoundError

NOW = datetime(2026, 6, 15, 15, 0, tzinfo=timezone.utc)


def utc(hour: int, minute: int = 0, day: int = 15) -> datetime:
    return datetime(2026, 6, day, hour, minute, tzinfo=timezone.utc)


def hold_for(db, org, user, start_at, **kwargs) -> CalendarHold:
    return hold_service.create_hold(
        db, org_id=org.id, worker_id=user.id, start_at=start_at, now=NOW, **kwargs
    )


# =============================================================================
# Manual holds
# =============================================================================

def test_hold_blocks_slot_and_second_hold_conflicts(db, test_org, worker):
    hold = hold_for(db, test_org, worker, utc(17))

    assert hold.end_at == utc(17, 30)
    assert hold.expires_at == NOW + timedelta(minutes=10)
    assert hold.status == HoldStatus.ACTIVE.value

    slots = availability_service.compute_availability_for_worker(
        db, org_id=test_org.id, worker_id=worker.id, date_key="2026-06-15", now=NOW
    ).slots_utc
    assert utc(17) not in slots

    with pytest.raises(CalendarConflictError):
        hold_for(db, test_org, worker, utc(17))


def test_hold_expiry_is_clamped(db, test_org, worker):
    hold = hold_for(db, test_org, worker, utc(17), expires_in_minutes=10_000)
    assert hold.expires_at == NOW + timedelta(minutes=hold_service.MAX_HOLD_EXPIRY_MINUTES)


def test_hold_for_worker_in_other_org_is_rejected(db, test_org, worker):
    with pytest.raises(ValueError):
        hold_service.create_hold(
            db, org_id=uuid.uuid4(), worker_id=worker.id, start_at=utc(17), now=NOW
        )


def test_confirm_hold_creates_event_and_sync_job(db, test_org, owner, worker):
    hold = hold_for(db, test_org, worker, utc(17), title="Estimate", customer_name="Pat")

    event = hold_service.confirm_hold(
        db, org_id=test_org.id, hold_id=hold.id, actor_id=owner.id, now=NOW + timedelta(minutes=5)
    )

    db.refresh(hold)
    assert hold.status == HoldStatus.CONFIRMED.value
    assert hold.confirmed_event_id == event.id
    assert event.title == "Estimate"
    assert event.customer_name == "Pat"
    assert event.assigned_to_user_id == worker.id
    assert (event.start_at, event.end_at) == (utc(17), utc(17, 30))
    jobs = db.query(SyncJob).filter(SyncJob.action == SyncAction.UPSERT_EVENT.value).all()
    assert [job.event_id for job in jobs] == [event.id]


def test_confirm_expired_hold_marks_it_expired(db, test_org, owner, worker):
    hold = hold_for(db, test_org, worker, utc(17))

    with pytest.raises(ValueError):
        hold_service.confirm_hold(
            db,
            org_id=test_org.id,
            hold_id=hold.id,
            actor_id=owner.id,
            now=NOW + timedelta(minutes=11),
        )

    db.refresh(hold)
    assert hold.status == HoldStatus.EXPIRED.value


def test_confirm_hold_rejects_when_slot_was_taken(db, test_org, owner, worker):
    hold = hold_for(db, test_org, worker, utc(17))
    # Written directly, bypassing the conflict check
    db.add(
        CalendarHold(
            organization_id=test_org.id,
            worker_user_id=worker.id,
            title="Other",
            start_at=utc(17),
            end_at=utc(17, 30),
            expires_at=NOW + timedelta(minutes=10),
        )
    )
    db.commit()

    with pytest.raises(CalendarConflictError):
        hold_service.confirm_hold(
            db, org_id=test_org.id, hold_id=hold.id, actor_id=owner.id, now=NOW
        )

    db.refresh(hold)
    assert hold.status == HoldStatus.ACTIVE.value


def test_cancel_hold(db, test_org, owner, worker):
    hold = hold_for(db, test_org, worker, utc(17))

    cancelled = hold_service.cancel_hold(db, org_id=test_org.id, hold_id=hold.id)
    again = hold_service.cancel_hold(db, org_id=test_org.id, hold_id=hold.id)

    assert cancelled.status == HoldStatus.CANCELLED.value
    assert again.status == HoldStatus.CANCELLED.value
    with pytest.raises(CalendarNotFoundError):
        hold_service.cancel_hold(db, org_id=test_org.id, hold_id=uuid.uuid4())


def test_confirmed_hold_cannot_be_cancelled(db, test_org, owner, worker):
    hold = hold_for(db, test_org, worker, utc(17))
    hold_service.confirm_hold(db, org_id=test_org.id, hold_id=hold.id, actor_id=owner.id, now=NOW)

    with pytest.raises(ValueError):
        hold_service.cancel_hold(db, org_id=test_org.id, hold_id=hold.id)


def test_expire_stale_holds(db, test_org, worker):
    stale = hold_for(db, test_org, worker, utc(17))
    fresh = hold_for(db, test_org, worker, utc(18), expires_in_minutes=60)

    expired = hold_service.expire_stale_holds(db, now=NOW + timedelta(minutes=15))

    assert expired == 1
    db.refresh(stale)
    db.refresh(fresh)
    assert stale.status == HoldStatus.EXPIRED.value
    assert fresh.status == HoldStatus.ACTIVE.value
    assert hold_service.list_holds(db, org_id=test_org.id, now=NOW + timedelta(minutes=15)) == [fresh]


# =============================================================================
# Intake callback options
# =============================================================================

def test_intake_offers_three_distinct_options(db, test_org, owner, worker):
    lead_id = uuid.uuid4()

    holds = hold_service.create_intake_hold_options(
        db, org_id=test_org.id, lead_id=lead_id, customer_name="Pat", now=NOW
    )

    assert [(h.worker_user_id, h.start_at) for h in holds] == [
        (owner.id, utc(16)),
        (worker.id, utc(16, 30)),
        (owner.id, utc(16, day=16)),
    ]
    assert all(h.source == HoldSource.SMS_AGENT.value for h in holds)
    assert all(h.expires_at == NOW + timedelta(minutes=10) for h in holds)


def test_intake_replaces_previous_option_set(db, test_org, owner, worker):
    lead_id = uuid.uuid4()
    first = hold_service.create_intake_hold_options(db, org_id=test_org.id, lead_id=lead_id, now=NOW)

    second = hold_service.create_intake_hold_options(
        db, org_id=test_org.id, lead_id=lead_id, now=NOW + timedelta(minutes=1)
    )

    for hold in first:
        db.refresh(hold)
        assert hold.status == HoldStatus.EXPIRED.value
    live = hold_service.list_holds(
        db, org_id=test_org.id, lead_id=lead_id, now=NOW + timedelta(minutes=1)
    )
    assert {h.id for h in live} == {h.id for h in second}


def test_intake_selection_books_callback_and_cancels_siblings(db, test_org, owner, worker):
    lead_id = uuid.uuid4()
    holds = hold_service.create_intake_hold_options(db, org_id=test_org.id, lead_id=lead_id, now=NOW)

    event = hold_service.confirm_intake_selection(
        db, org_id=test_org.id, lead_id=lead_id, selection=2, now=NOW + timedelta(minutes=2)
    )

    assert event.type == EventType.FOLLOW_UP.value
    assert event.title == hold_service.INTAKE_CALLBACK_TITLE
    assert event.lead_id == lead_id
    assert event.assigned_to_user_id == worker.id
    assert event.start_at == utc(16, 30)

    statuses = {}
    for hold in holds:
        db.refresh(hold)
        statuses[hold.id] = hold.status
    assert statuses[holds[1].id] == HoldStatus.CONFIRMED.value
    assert statuses[holds[0].id] == HoldStatus.CANCELLED.value
    assert statuses[holds[2].id] == HoldStatus.CANCELLED.value

    with pytest.raises(ValueError):
        hold_service.confirm_intake_selection(
            db, org_id=test_org.id, lead_id=lead_id, selection=2, now=NOW + timedelta(minutes=3)
        )


def test_intake_selection_out_of_range(db, test_org, owner, worker):
    lead_id = uuid.uuid4()
    hold_service.create_intake_hold_options(db, org_id=test_org.id, lead_id=lead_id, now=NOW)

    with pytest.raises(ValueError):
        hold_service.confirm_intake_selection(
            db, org_id=test_org.id, lead_id=lead_id, selection=4, now=NOW
        )


def test_intake_selection_after_expiry_fails(db, test_org, owner, worker):
    lead_id = uuid.uuid4()
    hold_service.create_intake_hold_options(db, org_id=test_org.id, lead_id=lead_id, now=NOW)

    with pytest.raises(ValueError):
        hold_service.confirm_intake_selection(
            db, org_id=test_org.id, lead_id=lead_id, selection=1, now=NOW + timedelta(minutes=11)
        )
