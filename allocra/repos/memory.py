"""In-memory allocation store and timeline repository."""

from __future__ import annotations

import itertools
import threading
from datetime import datetime

from allocra.domain.errors import (
    BookingNotFound,
    RoomNotFound,
    StoreError,
    TransactionTimeout,
)
from allocra.domain.models import (
    Booking,
    BookingStatus,
    Room,
    RoomKind,
    RoomState,
    TimelineEntry,
)
from allocra.repos.base import AllocationStore, Transaction
from allocra.services.conflicts import find_conflicts

_LockKey = tuple[str, int]


class MemoryTransaction(Transaction):
    """Read-committed transaction over a MemoryAllocationStore.

    Writes are staged privately and published in one step on commit.
    Row locks are plain ``threading.Lock`` objects owned by the store and held
    until the transaction finishes.
    """

    def __init__(self, store: MemoryAllocationStore, timeout: float) -> None:
        super().__init__(timeout)
        self._store = store
        self._staged: dict[int, Booking] = {}
        self._inserted: set[int] = set()
        self._held: dict[_LockKey, threading.Lock] = {}
        self._done = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def commit(self) -> None:
        self._ensure_open()
        try:
            self.remaining()
        except TransactionTimeout:
            self.rollback()
            raise
        with self._store._mutex:
            bookings = self._store._bookings
            for booking_id, booking in self._staged.items():
                # Rows removed by a reset or room deletion stay removed.
                if booking_id in self._inserted or booking_id in bookings:
                    bookings[booking_id] = booking
        self._finish()

    def rollback(self) -> None:
        if self._done:
            return
        self._finish()

    def _finish(self) -> None:
        self._staged.clear()
        self._inserted.clear()
        self._done = True
        for lock in self._held.values():
            lock.release()
        self._held.clear()

    def _ensure_open(self) -> None:
        if self._done:
            raise StoreError("transaction is already closed")

    def _acquire(self, key: _LockKey) -> None:
        if key in self._held:
            return
        while True:
            lock = self._store._row_lock(key)
            if not lock.acquire(timeout=self.remaining()):
                raise TransactionTimeout(f"timed out waiting for {key[0]} {key[1]} lock")
            if self._store._is_live(key, lock):
                break
            lock.release()
        self._held[key] = lock

    # ------------------------------------------------------------------
    # Reads (committed state overlaid with this transaction's writes)
    # ------------------------------------------------------------------

    def _current(self, booking_id: int) -> Booking | None:
        if booking_id in self._staged:
            return self._staged[booking_id]
        with self._store._mutex:
            return self._store._bookings.get(booking_id)

    def _room_bookings(self, room_id: int) -> list[Booking]:
        with self._store._mutex:
            merged = {
                b.id: b for b in self._store._bookings.values() if b.room_id == room_id
            }
        merged.update({b.id: b for b in self._staged.values() if b.room_id == room_id})
        return list(merged.values())

    def _approved_overlapping(
        self, room_id: int, start: datetime, end: datetime, exclude_id: int | None
    ) -> list[Booking]:
        approved = [
            b
            for b in self._room_bookings(room_id)
            if b.status == BookingStatus.APPROVED and b.id != exclude_id
        ]
        return find_conflicts(start, end, approved)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def lock_resource_for_update(self, room_id: int) -> None:
        self._ensure_open()
        if self._store.get_room(room_id) is None:
            raise RoomNotFound(room_id)
        self._acquire(("room", room_id))
        if self._store.get_room(room_id) is None:
            raise RoomNotFound(room_id)

    def find_overlapping_approved(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
        timeout: float | None = None,
    ) -> bool:
        self._ensure_open()
        self.remaining(timeout)
        return bool(self._approved_overlapping(room_id, start, end, exclude_id))

    def insert_booking(
        self,
        room_id: int,
        user_id: int,
        start: datetime,
        end: datetime,
        status: BookingStatus,
    ) -> Booking:
        self._ensure_open()
        self.remaining()
        booking = Booking(
            id=self._store._next_booking_id(),
            room_id=room_id,
            user_id=user_id,
            start_time=start,
            end_time=end,
            status=status,
        )
        self._staged[booking.id] = booking
        self._inserted.add(booking.id)
        return booking

    def get_booking(self, booking_id: int) -> Booking:
        self._ensure_open()
        booking = self._current(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking

    def get_booking_for_update(self, booking_id: int) -> Booking:
        self.get_booking(booking_id)
        self._acquire(("booking", booking_id))
        # Re-read: another transaction may have committed while we waited.
        return self.get_booking(booking_id)

    def update_status(
        self,
        booking_id: int,
        to_status: BookingStatus,
        from_status: BookingStatus | None = None,
    ) -> int:
        self._ensure_open()
        if self._current(booking_id) is None:
            return 0
        self._acquire(("booking", booking_id))
        current = self._current(booking_id)
        if current is None:
            return 0
        if from_status is not None and current.status != from_status:
            return 0
        self._staged[booking_id] = current.model_copy(update={"status": to_status})
        return 1

    def reject_overlapping(
        self, room_id: int, start: datetime, end: datetime, exclude_id: int
    ) -> int:
        self._ensure_open()
        self.remaining()
        displaced = self._approved_overlapping(room_id, start, end, exclude_id)
        for booking in displaced:
            self._staged[booking.id] = booking.model_copy(
                update={"status": BookingStatus.REJECTED}
            )
        return len(displaced)


class MemoryAllocationStore(AllocationStore):
    """Dict-backed store for rooms and bookings, keyed by id."""

    def __init__(self) -> None:
        self._rooms: dict[int, Room] = {}
        self._bookings: dict[int, Booking] = {}
        self._locks: dict[_LockKey, threading.Lock] = {}
        self._mutex = threading.RLock()
        self._room_ids = itertools.count(1)
        self._booking_ids = itertools.count(1)

    def _row_lock(self, key: _LockKey) -> threading.Lock:
        with self._mutex:
            return self._locks.setdefault(key, threading.Lock())

    def _is_live(self, key: _LockKey, lock: threading.Lock) -> bool:
        """False when ``lock`` was pruned from the table while a caller waited on it."""
        with self._mutex:
            return self._locks.get(key) is lock

    def _hold(self, key: _LockKey) -> threading.Lock:
        while True:
            lock = self._row_lock(key)
            lock.acquire()
            if self._is_live(key, lock):
                return lock
            lock.release()

    def _next_booking_id(self) -> int:
        with self._mutex:
            return next(self._booking_ids)

    def begin(self, timeout: float) -> MemoryTransaction:
        return MemoryTransaction(self, timeout)

    # -- rooms ---------------------------------------------------------

    def add_room(
        self,
        name: str,
        capacity: int,
        kind: RoomKind = RoomKind.SHARED,
        state: RoomState = RoomState.ONLINE,
    ) -> Room:
        with self._mutex:
            room = Room(
                id=next(self._room_ids),
                name=name,
                capacity=capacity,
                kind=kind,
                state=state,
            )
            self._rooms[room.id] = room
        return room

    def get_room(self, room_id: int) -> Room | None:
        with self._mutex:
            return self._rooms.get(room_id)

    def list_rooms(self) -> list[Room]:
        with self._mutex:
            return sorted(self._rooms.values(), key=lambda r: (r.name, r.id))

    def update_room(
        self, room_id: int, name: str, capacity: int, kind: RoomKind, state: RoomState
    ) -> Room:
        with self._mutex:
            room = self._rooms.get(room_id)
            if room is None:
                raise RoomNotFound(room_id)
            updated = room.model_copy(
                update={"name": name, "capacity": capacity, "kind": kind, "state": state}
            )
            self._rooms[room_id] = updated
        return updated

    def delete_room(self, room_id: int) -> None:
        # Wait for in-flight lifecycle transactions on this room to finish.
        lock = self._hold(("room", room_id))
        try:
            with self._mutex:
                self._rooms.pop(room_id, None)
                for booking_id in [
                    b.id for b in self._bookings.values() if b.room_id == room_id
                ]:
                    del self._bookings[booking_id]
                    self._locks.pop(("booking", booking_id), None)
                self._locks.pop(("room", room_id), None)
        finally:
            lock.release()

    def count_rooms(self) -> int:
        with self._mutex:
            return len(self._rooms)

    # -- committed-state reads -----------------------------------------

    def list_bookings(self, room_id: int | None = None) -> list[Booking]:
        with self._mutex:
            bookings = [
                b
                for b in self._bookings.values()
                if room_id is None or b.room_id == room_id
            ]
        return sorted(bookings, key=lambda b: (b.start_time, b.id), reverse=True)

    def approved_between(self, start: datetime, end: datetime) -> list[Booking]:
        with self._mutex:
            return [
                b
                for b in self._bookings.values()
                if b.status == BookingStatus.APPROVED and start <= b.start_time < end
            ]

    def count_bookings(self, status: BookingStatus | None = None) -> int:
        with self._mutex:
            return sum(
                1
                for b in self._bookings.values()
                if status is None or b.status == status
            )

    def delete_all_bookings(self) -> None:
        """Remove every booking once in-flight transactions have released their rows.

        Room locks are taken before booking locks, the same order transactions use.
        """
        with self._mutex:
            keys = sorted(self._locks, key=lambda k: (k[0] != "room", k[1]))
        held: list[threading.Lock] = []
        try:
            for key in keys:
                held.append(self._hold(key))
            with self._mutex:
                self._bookings.clear()
                for key in [k for k in self._locks if k[0] == "booking"]:
                    del self._locks[key]
        finally:
            for lock in held:
                lock.release()


class TimelineRepository:
    """List-backed store for TimelineEntry instances."""

    def __init__(self) -> None:
        self._entries: list[TimelineEntry] = []

    def add(self, entry: TimelineEntry) -> None:
        self._entries.append(entry)

    def list_for_booking(self, booking_id: int) -> list[TimelineEntry]:
        return sorted(
            [e for e in self._entries if e.booking_id == booking_id],
            key=lambda e: e.timestamp,
        )

    def clear(self) -> None:
        self._entries.clear()
