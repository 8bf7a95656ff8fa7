"""Transaction contract every allocation store implements.

Usage in the engine::

    with store.begin(timeout=10) as tx:
        tx.lock_resource_for_update(room_id)
        ...
        tx.commit()

Leaving the block without ``commit()`` rolls the transaction back.
"""

from __future__ import annotations

import abc
import time
from datetime import datetime

from allocra.domain.errors import TransactionTimeout
from allocra.domain.models import Booking, BookingStatus, Room, RoomKind, RoomState


class Transaction(abc.ABC):
    """One unit of work against the store, bounded by a deadline."""

    def __init__(self, timeout: float) -> None:
        self.deadline = time.monotonic() + timeout

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, *args) -> None:
        self.rollback()

    def remaining(self, timeout: float | None = None) -> float:
        """Seconds left before the deadline, optionally tightened by ``timeout``.

        Raises TransactionTimeout once the deadline has passed.
        """
        left = self.deadline - time.monotonic()
        if timeout is not None:
            left = min(left, timeout)
        if left <= 0:
            raise TransactionTimeout("transaction deadline exceeded")
        return left

    @abc.abstractmethod
    def commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        """Discard uncommitted work. Safe to call again, or after commit."""
        raise NotImplementedError

    @abc.abstractmethod
    def lock_resource_for_update(self, room_id: int) -> None:
        """Take the exclusive room lock until commit/rollback; RoomNotFound if missing."""
        raise NotImplementedError

    @abc.abstractmethod
    def find_overlapping_approved(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
        timeout: float | None = None,
    ) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def insert_booking(
        self,
        room_id: int,
        user_id: int,
        start: datetime,
        end: datetime,
        status: BookingStatus,
    ) -> Booking:
        raise NotImplementedError

    @abc.abstractmethod
    def get_booking(self, booking_id: int) -> Booking:
        """Plain read of committed state (plus this transaction's writes)."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_booking_for_update(self, booking_id: int) -> Booking:
        raise NotImplementedError

    @abc.abstractmethod
    def update_status(
        self,
        booking_id: int,
        to_status: BookingStatus,
        from_status: BookingStatus | None = None,
    ) -> int:
        """Set the status, only where the current status is ``from_status`` if given.

        Returns the number of rows affected.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def reject_overlapping(
        self, room_id: int, start: datetime, end: datetime, exclude_id: int
    ) -> int:
        """Demote every other approved booking on the room overlapping ``[start, end)``."""
        raise NotImplementedError


class AllocationStore(abc.ABC):
    """Durable owner of rooms and bookings."""

    @abc.abstractmethod
    def begin(self, timeout: float) -> Transaction:
        """Open a read-committed transaction that must finish within ``timeout`` seconds."""
        raise NotImplementedError

    # -- rooms ---------------------------------------------------------

    @abc.abstractmethod
    def add_room(
        self,
        name: str,
        capacity: int,
        kind: RoomKind = RoomKind.SHARED,
        state: RoomState = RoomState.ONLINE,
    ) -> Room:
        raise NotImplementedError

    @abc.abstractmethod
    def get_room(self, room_id: int) -> Room | None:
        raise NotImplementedError

    @abc.abstractmethod
    def list_rooms(self) -> list[Room]:
        raise NotImplementedError

    @abc.abstractmethod
    def update_room(
        self, room_id: int, name: str, capacity: int, kind: RoomKind, state: RoomState
    ) -> Room:
        raise NotImplementedError

    @abc.abstractmethod
    def delete_room(self, room_id: int) -> None:
        """Delete the room together with its bookings."""
        raise NotImplementedError

    @abc.abstractmethod
    def count_rooms(self) -> int:
        raise NotImplementedError

    # -- committed-state reads -----------------------------------------

    @abc.abstractmethod
    def list_bookings(self, room_id: int | None = None) -> list[Booking]:
        """Bookings ordered by start time, newest first."""
        raise NotImplementedError

    @abc.abstractmethod
    def approved_between(self, start: datetime, end: datetime) -> list[Booking]:
        """Approved bookings whose start falls in ``[start, end)``."""
        raise NotImplementedError

    @abc.abstractmethod
    def count_bookings(self, status: BookingStatus | None = None) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def delete_all_bookings(self) -> None:
        raise NotImplementedError
