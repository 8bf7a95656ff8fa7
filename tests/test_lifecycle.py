"""Tests for the booking lifecycle engine, run against every store implementation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import combinations

import pytest

from allocra.config import Settings
from allocra.domain.bus import EventBus
from allocra.domain.errors import (
    BookingNotFound,
    ConflictDetected,
    InvalidInterval,
    NotPending,
    RoomNotFound,
    StaleRequest,
    StoreError,
)
from allocra.domain.events import BookingApproved
from allocra.domain.handlers import HandlerRegistry
from allocra.domain.models import BookingStatus, TimelineEntryType
from allocra.repos.memory import MemoryAllocationStore, MemoryTransaction, TimelineRepository
from allocra.repos.sql import SqlAllocationStore, SqlTransaction
from allocra.services.conflicts import overlaps
from allocra.services.lifecycle import BookingEngine
from allocra.services.usage import RequestCounters

_NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
_DAY = datetime(2026, 6, 2, tzinfo=timezone.utc)


def _at(hour: int, minute: int = 0) -> datetime:
    return _DAY.replace(hour=hour, minute=minute)


@pytest.fixture(params=["memory", "sqlite"])
def env(request, tmp_path):
    """Fresh store + bus + engine for each test."""
    if request.param == "memory":
        store = MemoryAllocationStore()
        tx_cls = MemoryTransaction
    else:
        store = SqlAllocationStore(f"sqlite:///{tmp_path / 'allocra.db'}")
        store.create_schema()
        request.addfinalizer(store.dispose)
        tx_cls = SqlTransaction

    bus = EventBus()
    timeline_repo = TimelineRepository()
    counters = RequestCounters()
    registry = HandlerRegistry(bus=bus, timeline_repo=timeline_repo, counters=counters)
    engine = BookingEngine(store, bus=bus, settings=Settings(), clock=lambda: _NOW)

    class Env:
        pass

    e = Env()
    e.store = store
    e.tx_cls = tx_cls
    e.bus = bus
    e.timeline_repo = timeline_repo
    e.counters = counters
    e.registry = registry
    e.engine = engine
    e.room = store.add_room("NODE-AX-01", 64)
    return e


def _statuses(env) -> dict[int, BookingStatus]:
    return {b.id: b.status for b in env.store.list_bookings()}


def _assert_no_double_allocation(store) -> None:
    approved = [b for b in store.list_bookings() if b.status == BookingStatus.APPROVED]
    for a, b in combinations(approved, 2):
        if a.room_id == b.room_id:
            assert not overlaps(a.start_time, a.end_time, b.start_time, b.end_time)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


def test_create_without_conflict_is_approved(env):
    booking = env.engine.create(env.room.id, 7, _at(10), _at(11))

    assert booking.status == BookingStatus.APPROVED
    assert booking.room_id == env.room.id
    assert booking.user_id == 7
    assert _statuses(env) == {booking.id: BookingStatus.APPROVED}


@pytest.mark.parametrize(
    "start, end",
    [
        (_at(10, 30), _at(11, 30)),  # tail overlap
        (_at(9, 30), _at(10, 30)),  # head overlap
        (_at(10, 15), _at(10, 45)),  # full enclosure
    ],
)
def test_create_overlapping_is_recorded_as_rejected(env, start, end):
    existing = env.engine.create(env.room.id, 1, _at(10), _at(11))

    with pytest.raises(ConflictDetected) as excinfo:
        env.engine.create(env.room.id, 2, start, end)

    rejected = excinfo.value.booking
    assert rejected is not None
    assert rejected.status == BookingStatus.REJECTED
    assert _statuses(env) == {
        existing.id: BookingStatus.APPROVED,
        rejected.id: BookingStatus.REJECTED,
    }


def test_create_touching_is_approved(env):
    env.engine.create(env.room.id, 1, _at(10), _at(11))
    booking = env.engine.create(env.room.id, 2, _at(11), _at(12))

    assert booking.status == BookingStatus.APPROVED
    _assert_no_double_allocation(env.store)


def test_create_other_room_does_not_conflict(env):
    other = env.store.add_room("NODE-AX-02", 32)
    env.engine.create(env.room.id, 1, _at(10), _at(11))
    booking = env.engine.create(other.id, 2, _at(10), _at(11))

    assert booking.status == BookingStatus.APPROVED


def test_rejected_bookings_do_not_block(env):
    env.engine.create(env.room.id, 1, _at(10), _at(11))
    with pytest.raises(ConflictDetected):
        env.engine.create(env.room.id, 2, _at(10, 30), _at(12))

    # The rejected [10:30, 12:00) must not stand in the way of [11:00, 12:00).
    booking = env.engine.create(env.room.id, 3, _at(11), _at(12))
    assert booking.status == BookingStatus.APPROVED


@pytest.mark.parametrize("start, end", [(_at(11), _at(10)), (_at(10), _at(10))])
def test_create_invalid_interval(env, start, end):
    with pytest.raises(InvalidInterval):
        env.engine.create(env.room.id, 1, start, end)
    assert env.store.list_bookings() == []


def test_create_within_grace_period_succeeds(env):
    start = _NOW - timedelta(seconds=119)
    booking = env.engine.create(env.room.id, 1, start, _NOW + timedelta(hours=1))
    assert booking.status == BookingStatus.APPROVED


def test_create_beyond_grace_period_is_stale(env):
    start = _NOW - timedelta(seconds=121)
    with pytest.raises(StaleRequest):
        env.engine.create(env.room.id, 1, start, _NOW + timedelta(hours=1))
    assert env.store.list_bookings() == []


def test_create_naive_datetimes_are_utc(env):
    booking = env.engine.create(
        env.room.id, 1, _at(10).replace(tzinfo=None), _at(11).replace(tzinfo=None)
    )
    assert booking.start_time == _at(10)
    assert booking.end_time == _at(11)


def test_create_unknown_room(env):
    with pytest.raises(RoomNotFound):
        env.engine.create(9999, 1, _at(10), _at(11))
    assert env.store.list_bookings() == []


# ---------------------------------------------------------------------------
# Submit / approve / reject
# ---------------------------------------------------------------------------


def test_submit_stores_pending_without_conflict_check(env):
    env.engine.create(env.room.id, 1, _at(10), _at(11))
    pending = env.engine.submit(env.room.id, 2, _at(10), _at(11))

    assert pending.status == BookingStatus.PENDING


def test_approve_pending(env):
    pending = env.engine.submit(env.room.id, 1, _at(10), _at(11))
    approved = env.engine.approve(pending.id)

    assert approved.status == BookingStatus.APPROVED
    assert _statuses(env)[pending.id] == BookingStatus.APPROVED


def test_approve_with_conflict_leaves_booking_pending(env):
    env.engine.create(env.room.id, 1, _at(10), _at(11))
    pending = env.engine.submit(env.room.id, 2, _at(10, 30), _at(11, 30))

    with pytest.raises(ConflictDetected) as excinfo:
        env.engine.approve(pending.id)

    assert excinfo.value.booking is None
    assert _statuses(env)[pending.id] == BookingStatus.PENDING


def test_approve_two_overlapping_pending(env):
    first = env.engine.submit(env.room.id, 1, _at(10), _at(11))
    second = env.engine.submit(env.room.id, 2, _at(10, 30), _at(11, 30))

    env.engine.approve(first.id)
    with pytest.raises(ConflictDetected):
        env.engine.approve(second.id)
    _assert_no_double_allocation(env.store)


@pytest.mark.parametrize("status_setter", ["create", "reject"])
def test_approve_not_pending(env, status_setter):
    if status_setter == "create":
        booking = env.engine.create(env.room.id, 1, _at(10), _at(11))
    else:
        booking = env.engine.submit(env.room.id, 1, _at(10), _at(11))
        env.engine.reject(booking.id)

    before = _statuses(env)
    with pytest.raises(NotPending):
        env.engine.approve(booking.id)
    assert _statuses(env) == before


def test_approve_missing_booking(env):
    with pytest.raises(BookingNotFound):
        env.engine.approve(4242)


def test_reject_twice(env):
    pending = env.engine.submit(env.room.id, 1, _at(10), _at(11))

    env.engine.reject(pending.id)
    assert _statuses(env)[pending.id] == BookingStatus.REJECTED

    with pytest.raises(NotPending):
        env.engine.reject(pending.id)
    assert _statuses(env)[pending.id] == BookingStatus.REJECTED


def test_reject_approved_is_refused(env):
    booking = env.engine.create(env.room.id, 1, _at(10), _at(11))
    with pytest.raises(NotPending):
        env.engine.reject(booking.id)
    assert _statuses(env)[booking.id] == BookingStatus.APPROVED


def test_reject_missing_booking(env):
    with pytest.raises(NotPending):
        env.engine.reject(4242)


# ---------------------------------------------------------------------------
# Force allocation
# ---------------------------------------------------------------------------


def test_force_allocate_displaces_overlapping(env):
    a = env.engine.create(env.room.id, 1, _at(9), _at(10, 30))
    b = env.engine.create(env.room.id, 2, _at(10, 30), _at(12))
    untouched = env.engine.create(env.room.id, 3, _at(13), _at(14))
    target = env.engine.submit(env.room.id, 4, _at(10), _at(11))

    displaced = env.engine.force_allocate(target.id)

    assert displaced == 2
    assert _statuses(env) == {
        a.id: BookingStatus.REJECTED,
        b.id: BookingStatus.REJECTED,
        untouched.id: BookingStatus.APPROVED,
        target.id: BookingStatus.APPROVED,
    }
    _assert_no_double_allocation(env.store)


def test_force_allocate_promotes_rejected_booking(env):
    env.engine.create(env.room.id, 1, _at(10), _at(11))
    with pytest.raises(ConflictDetected) as excinfo:
        env.engine.create(env.room.id, 2, _at(10), _at(11))
    loser = excinfo.value.booking

    assert env.engine.force_allocate(loser.id) == 1
    assert _statuses(env)[loser.id] == BookingStatus.APPROVED
    _assert_no_double_allocation(env.store)


def test_force_allocate_already_approved_is_noop_for_others(env):
    booking = env.engine.create(env.room.id, 1, _at(10), _at(11))
    assert env.engine.force_allocate(booking.id) == 0
    assert _statuses(env) == {booking.id: BookingStatus.APPROVED}


def test_force_allocate_missing_booking(env):
    with pytest.raises(BookingNotFound):
        env.engine.force_allocate(4242)


def test_force_allocate_failure_is_atomic(env, monkeypatch):
    a = env.engine.create(env.room.id, 1, _at(9), _at(10, 30))
    b = env.engine.create(env.room.id, 2, _at(10, 30), _at(12))
    target = env.engine.submit(env.room.id, 3, _at(10), _at(11))
    before = _statuses(env)

    def _fail(self, booking_id, to_status, from_status=None):
        raise StoreError("injected failure")

    # reject_overlapping has already run when the promotion fails
    monkeypatch.setattr(env.tx_cls, "update_status", _fail)

    with pytest.raises(StoreError):
        env.engine.force_allocate(target.id)

    monkeypatch.undo()
    assert _statuses(env) == before
    assert before[a.id] == before[b.id] == BookingStatus.APPROVED
    assert before[target.id] == BookingStatus.PENDING


# ---------------------------------------------------------------------------
# Domain events: timeline and counters
# ---------------------------------------------------------------------------


def test_create_writes_timeline(env):
    booking = env.engine.create(env.room.id, 1, _at(10), _at(11))

    entries = env.timeline_repo.list_for_booking(booking.id)
    assert [e.type for e in entries] == [TimelineEntryType.CREATED]
    assert entries[0].payload["status"] == BookingStatus.APPROVED


def test_conflict_writes_timeline_and_counts(env):
    env.engine.create(env.room.id, 1, _at(10), _at(11))
    with pytest.raises(ConflictDetected) as excinfo:
        env.engine.create(env.room.id, 2, _at(10), _at(11))

    types = [e.type for e in env.timeline_repo.list_for_booking(excinfo.value.booking.id)]
    assert types == [TimelineEntryType.CREATED, TimelineEntryType.CONFLICT_DETECTED]
    assert env.counters.requests == 2
    assert env.counters.approvals == 1
    assert env.counters.conflicts == 1


def test_deferred_flow_timeline(env):
    pending = env.engine.submit(env.room.id, 1, _at(10), _at(11))
    env.engine.approve(pending.id)
    env.engine.force_allocate(pending.id)

    types = [e.type for e in env.timeline_repo.list_for_booking(pending.id)]
    assert types == [
        TimelineEntryType.SUBMITTED,
        TimelineEntryType.APPROVED,
        TimelineEntryType.PREEMPTED,
    ]
    assert env.counters.preemptions == 1


def test_failed_operations_publish_nothing(env):
    with pytest.raises(InvalidInterval):
        env.engine.create(env.room.id, 1, _at(11), _at(10))
    with pytest.raises(NotPending):
        env.engine.reject(4242)

    assert env.timeline_repo._entries == []
    assert env.counters.requests == 0


def test_failing_handler_does_not_fail_committed_write(env):
    def _broken(event):
        raise RuntimeError("timeline unavailable")

    env.bus.subscribe(BookingApproved, _broken)
    pending = env.engine.submit(env.room.id, 1, _at(10), _at(11))

    approved = env.engine.approve(pending.id)

    assert approved.status == BookingStatus.APPROVED
    assert _statuses(env)[pending.id] == BookingStatus.APPROVED
    types = [e.type for e in env.timeline_repo.list_for_booking(pending.id)]
    assert types == [TimelineEntryType.SUBMITTED, TimelineEntryType.APPROVED]
    assert env.counters.approvals == 1


def test_publish_reports_failed_handlers():
    bus = EventBus()
    seen = []
    bus.subscribe(BookingApproved, lambda event: 1 / 0)
    bus.subscribe(BookingApproved, seen.append)

    assert bus.publish(BookingApproved(booking_id=7)) == 1
    assert [e.booking_id for e in seen] == [7]
