"""
Tests for availability computation and conflict detection.

Coverage:
- Interval merging
- Default and explicit working windows
- Events, holds and time off as blockers
- allow_overlaps
- Next-open search with preferred, owner and round-robin fallback
- Conflicts for intervals that cross local midnight
"""

from datetime import datetime, timedelta, timezone

import pytest

from fieldcal.db.enums import BlockedSource, CalendarRole, EventStatus, NextOpenFallback
from fieldcal.db.models import CalendarHold, Event, EventWorker, TimeOff
from fieldcal.services import availability_service, calendar_settings_service
from fieldcal.services.availability_service import BlockedInterval
from fieldcal.services.calendar_settings_service import WorkingDayInput

MONDAY = "2026-06-15"
NOW = datetime(2026, 6, 15, 15, 0, tzinfo=timezone.utc)  # 08:00 PDT


def utc(hour: int, minute: int = 0, day: int = 15) -> datetime:
    return datetime(2026, 6, day, hour, minute, tzinfo=timezone.utc)


def add_event(db, org, user, start_at, end_at, **kwargs) -> Event:
    event = Event(
        organization_id=org.id,
        title=kwargs.pop("title", "Job"),
        start_at=start_at,
        end_at=end_at,
        assigned_to_user_id=user.id,
        **kwargs,
    )
    event.worker_assignments.append(EventWorker(organization_id=org.id, worker_user_id=user.id))
    db.add(event)
    db.commit()
    return event


def availability(db, org, user, date_key=MONDAY, **kwargs):
    return availability_service.compute_availability_for_worker(
        db, org_id=org.id, worker_id=user.id, date_key=date_key, now=NOW, **kwargs
    )


# =============================================================================
# Interval math
# =============================================================================

def test_merge_intervals_folds_overlapping_and_touching():
    merged = availability_service.merge_intervals(
        [
            BlockedInterval(600, 660, BlockedSource.EVENT),
            BlockedInterval(540, 600, BlockedSource.HOLD),
            BlockedInterval(900, 960, BlockedSource.TIME_OFF),
            BlockedInterval(650, 700, BlockedSource.EVENT),
        ]
    )
    assert merged == [(540, 700), (900, 960)]


@pytest.mark.parametrize(
    "intervals",
    [
        [],
        [(600, 660)],
        [(600, 660), (660, 720), (720, 780)],
        [(900, 960), (540, 1000), (600, 610)],
        [(0, 30), (60, 90), (30, 60), (1400, 1440), (1380, 1400)],
        [(100, 200), (150, 160), (300, 301), (301, 302), (500, 600)],
    ],
)
def test_merge_intervals_is_idempotent_and_leaves_gaps(intervals):
    blocked = [BlockedInterval(start, end, BlockedSource.EVENT) for start, end in intervals]

    merged = availability_service.merge_intervals(blocked)

    assert availability_service.merge_intervals(merged) == merged
    for (_, previous_end), (next_start, _) in zip(merged, merged[1:]):
        assert previous_end < next_start
    covered = {m for start, end in intervals for m in range(start, end)}
    assert {m for start, end in merged for m in range(start, end)} == covered


def test_overlaps_is_half_open():
    assert availability_service.overlaps(0, 30, 29, 60)
    assert not availability_service.overlaps(0, 30, 30, 60)


# =============================================================================
# Availability computer
# =============================================================================

def test_default_window_is_nine_to_five_local(db, test_org, worker):
    result = availability(db, test_org, worker)

    assert result.timezone == "America/Los_Angeles"
    assert len(result.slots_utc) == 16
    assert result.slots_utc[0] == utc(16)
    assert result.slots_utc[-1] == utc(23, 30)


def test_event_blocks_overlapping_slots(db, test_org, worker):
    add_event(db, test_org, worker, utc(17), utc(18))

    slots = availability(db, test_org, worker).slots_utc

    assert utc(16, 30) in slots
    assert utc(17) not in slots
    assert utc(17, 30) not in slots
    assert utc(18) in slots
    assert len(slots) == 14


def test_event_without_end_blocks_one_default_slot(db, test_org, worker):
    add_event(db, test_org, worker, utc(17), None)

    slots = availability(db, test_org, worker).slots_utc

    assert utc(17) not in slots
    assert utc(17, 30) in slots


def test_cancelled_and_free_events_do_not_block(db, test_org, worker):
    add_event(db, test_org, worker, utc(17), utc(18), status=EventStatus.CANCELLED.value)
    add_event(db, test_org, worker, utc(19), utc(20), busy=False)

    assert len(availability(db, test_org, worker).slots_utc) == 16


def test_event_on_additional_worker_blocks_them(db, test_org, owner, worker):
    event = add_event(db, test_org, owner, utc(17), utc(18))
    event.worker_assignments.append(
        EventWorker(organization_id=test_org.id, worker_user_id=worker.id)
    )
    db.commit()

    assert utc(17) not in availability(db, test_org, worker).slots_utc


def test_live_hold_blocks_until_expiry(db, test_org, worker):
    db.add(
        CalendarHold(
            organization_id=test_org.id,
            worker_user_id=worker.id,
            title="Hold",
            start_at=utc(17),
            end_at=utc(17, 30),
            expires_at=NOW + timedelta(minutes=10),
        )
    )
    db.commit()

    assert utc(17) not in availability(db, test_org, worker).slots_utc
    later = availability_service.compute_availability_for_worker(
        db,
        org_id=test_org.id,
        worker_id=worker.id,
        date_key=MONDAY,
        now=NOW + timedelta(minutes=11),
    )
    assert utc(17) in later.slots_utc


def test_time_off_blocks_even_with_overlaps_allowed(db, test_org, worker):
    calendar_settings_service.update_org_calendar_settings(db, test_org.id, allow_overlaps=True)
    add_event(db, test_org, worker, utc(17), utc(18))
    db.add(
        TimeOff(
            organization_id=test_org.id,
            worker_user_id=worker.id,
            start_at=utc(20),
            end_at=utc(21),
        )
    )
    db.commit()

    slots = availability(db, test_org, worker).slots_utc

    assert utc(17) in slots
    assert utc(20) not in slots
    assert utc(20, 30) not in slots


def test_non_working_day_has_no_slots(db, test_org, worker):
    calendar_settings_service.set_working_hours(
        db,
        test_org.id,
        worker.id,
        [WorkingDayInput(day_of_week=1, is_working=False, start_minute=0, end_minute=0)],
    )

    assert availability(db, test_org, worker).slots_utc == []


def test_explicit_working_hours_and_step(db, test_org, worker):
    calendar_settings_service.set_working_hours(
        db,
        test_org.id,
        worker.id,
        [WorkingDayInput(day_of_week=1, is_working=True, start_minute=7 * 60, end_minute=9 * 60)],
    )

    slots = availability(db, test_org, worker, duration_minutes=60, step_minutes=15).slots_utc

    assert slots == [utc(14), utc(14, 15), utc(14, 30), utc(14, 45), utc(15)]


def test_worker_time_zone_overrides_org_zone(db, test_org, worker):
    worker.timezone = "America/New_York"
    db.commit()

    result = availability(db, test_org, worker)

    assert result.timezone == "America/New_York"
    assert result.slots_utc[0] == utc(13)


def test_invalid_date_key_raises(db, test_org, worker):
    with pytest.raises(ValueError):
        availability(db, test_org, worker, date_key="06/15/2026")


# =============================================================================
# Next open slot
# =============================================================================

def test_next_open_prefers_requested_worker(db, test_org, owner, worker):
    found = availability_service.find_next_open_slot(
        db,
        org_id=test_org.id,
        date_key=MONDAY,
        preferred_worker_id=worker.id,
        now=NOW,
    )

    assert found.strategy_used == "preferred"
    assert found.worker_id == worker.id
    assert found.slot == utc(16)


def test_next_open_skips_past_slots(db, test_org, worker):
    found = availability_service.find_next_open_slot(
        db,
        org_id=test_org.id,
        date_key=MONDAY,
        preferred_worker_id=worker.id,
        now=utc(18, 10),
    )

    assert found.slot == utc(18, 30)


def _block_week(db, org, user):
    for offset in range(7):
        start = utc(0, day=15 + offset)
        db.add(
            TimeOff(
                organization_id=org.id,
                worker_user_id=user.id,
                start_at=start,
                end_at=start + timedelta(days=1),
            )
        )
    db.commit()


def test_next_open_round_robin_rotates_fallback_workers(db, test_org, owner, make_user):
    carol = make_user("Carol")
    dave = make_user("Dave")
    _block_week(db, test_org, owner)

    first = availability_service.find_next_open_slot(
        db, org_id=test_org.id, date_key=MONDAY, preferred_worker_id=owner.id, now=NOW
    )
    second = availability_service.find_next_open_slot(
        db, org_id=test_org.id, date_key=MONDAY, preferred_worker_id=owner.id, now=NOW
    )

    assert first.strategy_used == "round_robin"
    assert {first.worker_id, second.worker_id} == {carol.id, dave.id}
    assert first.worker_id != second.worker_id


def test_next_open_owner_fallback_only_tries_owners(db, test_org, worker, make_user):
    boss = make_user("Zed", CalendarRole.OWNER)
    make_user("Carol")
    _block_week(db, test_org, worker)

    found = availability_service.find_next_open_slot(
        db,
        org_id=test_org.id,
        date_key=MONDAY,
        preferred_worker_id=worker.id,
        fallback_strategy=NextOpenFallback.OWNER,
        now=NOW,
    )

    assert found.strategy_used == "owner"
    assert found.worker_id == boss.id


def test_next_open_returns_none_when_everyone_is_busy(db, test_org, worker):
    _block_week(db, test_org, worker)

    found = availability_service.find_next_open_slot(
        db, org_id=test_org.id, date_key=MONDAY, preferred_worker_id=worker.id, now=NOW
    )

    assert found is None


# =============================================================================
# Conflict detection
# =============================================================================

def test_conflict_found_on_second_local_day(db, test_org, worker):
    # 00:00-01:00 PDT on Tuesday
    time_off = TimeOff(
        organization_id=test_org.id,
        worker_user_id=worker.id,
        start_at=utc(7, day=16),
        end_at=utc(8, day=16),
    )
    db.add(time_off)
    db.commit()

    # 23:30 Monday to 00:30 Tuesday local
    conflicts = availability_service.detect_worker_conflicts(
        db,
        org_id=test_org.id,
        worker_ids=[worker.id],
        start_at=utc(6, 30, day=16),
        end_at=utc(7, 30, day=16),
        now=NOW,
    )

    assert len(conflicts) == 1
    assert conflicts[0].source == BlockedSource.TIME_OFF
    assert conflicts[0].source_id == time_off.id


def test_touching_ranges_do_not_conflict(db, test_org, worker):
    add_event(db, test_org, worker, utc(17), utc(18))

    conflicts = availability_service.detect_worker_conflicts(
        db,
        org_id=test_org.id,
        worker_ids=[worker.id],
        start_at=utc(18),
        end_at=utc(19),
        now=NOW,
    )

    assert conflicts == []


def test_exclude_event_ignores_the_event_being_moved(db, test_org, worker):
    event = add_event(db, test_org, worker, utc(17), utc(18))

    conflicts = availability_service.detect_worker_conflicts(
        db,
        org_id=test_org.id,
        worker_ids=[worker.id],
        start_at=utc(17, 30),
        end_at=utc(18, 30),
        exclude_event_id=event.id,
        now=NOW,
    )

    assert conflicts == []


def test_conflicts_reported_per_worker(db, test_org, owner, worker):
    add_event(db, test_org, owner, utc(17), utc(18))
    add_event(db, test_org, worker, utc(17), utc(18))

    conflicts = availability_service.detect_worker_conflicts(
        db,
        org_id=test_org.id,
        worker_ids=[owner.id, worker.id],
        start_at=utc(17),
        end_at=utc(17, 30),
        now=NOW,
    )

    assert {c.worker_id for c in conflicts} == {owner.id, worker.id}


def test_local_date_keys_cover_every_touched_day():
    # Monday 12:00 PDT to Wednesday 12:00 PDT
    assert availability_service.local_date_keys_between(
        utc(19), utc(19, day=17), "America/Los_Angeles"
    ) == ["2026-06-15", "2026-06-16", "2026-06-17"]
    # Ending exactly at local midnight does not touch the next day
    assert availability_service.local_date_keys_between(
        utc(17), utc(7, day=16), "America/Los_Angeles"
    ) == ["2026-06-15"]


def test_conflict_found_on_a_middle_day(db, test_org, worker):
    # Tuesday 10:00-11:00 PDT
    event = add_event(db, test_org, worker, utc(17, day=16), utc(18, day=16))

    conflicts = availability_service.detect_worker_conflicts(
        db,
        org_id=test_org.id,
        worker_ids=[worker.id],
        start_at=utc(19),
        end_at=utc(19, day=17),
        now=NOW,
    )

    assert [(c.source, c.source_id) for c in conflicts] == [(BlockedSource.EVENT, event.id)]
