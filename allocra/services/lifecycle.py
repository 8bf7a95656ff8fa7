"""Booking lifecycle engine: create, submit, approve, reject and force-allocate.

Every write runs in its own store transaction. Create, Submit, Approve and
Force-allocate begin by taking the room's exclusive row lock, so two
requests for the same room are decided one after the other and can never
both see "no conflict". Locks are always taken room first, then booking.

The engine keeps no shared state of its own and never retries; a
``StoreError`` means the transaction was rolled back and nothing changed.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

from loguru import logger

from allocra.config import Settings
from allocra.domain.bus import EventBus
from allocra.domain.errors import (
    ConflictDetected,
    InvalidInterval,
    NotPending,
    StaleRequest,
    StoreError,
)
from allocra.domain.events import (
    BookingApproved,
    BookingCreated,
    BookingPreempted,
    BookingRejected,
    BookingSubmitted,
)
from allocra.domain.events import ConflictDetected as ConflictDetectedEvent
from allocra.domain.models import Booking, BookingStatus, as_utc
from allocra.repos.base import AllocationStore
from allocra.services.conflicts import has_approved_conflict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingEngine:
    def __init__(
        self,
        store: AllocationStore,
        bus: EventBus | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.bus = bus or EventBus()
        self.settings = settings or Settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_interval(
        self, start: datetime, end: datetime
    ) -> tuple[datetime, datetime]:
        start, end = as_utc(start), as_utc(end)
        if start >= end:
            raise InvalidInterval("invalid time range: start must be before end")
        grace = timedelta(seconds=self.settings.grace_seconds)
        if start < self.clock() - grace:
            raise StaleRequest(
                f"cannot book in the past (beyond {self.settings.grace_seconds}s grace period)"
            )
        return start, end

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(
        self, room_id: int, user_id: int, start: datetime, end: datetime
    ) -> Booking:
        """Decide a booking request immediately.

        The attempt is always recorded: a conflicting request is committed as
        ``rejected`` and then reported by raising ConflictDetected, which
        carries the stored row.
        """
        start, end = self._check_interval(start, end)

        with self.store.begin(timeout=self.settings.create_timeout) as tx:
            tx.lock_resource_for_update(room_id)
            conflict = has_approved_conflict(
                tx, room_id, start, end, timeout=self.settings.conflict_check_timeout
            )
            status = BookingStatus.REJECTED if conflict else BookingStatus.APPROVED
            booking = tx.insert_booking(room_id, user_id, start, end, status)
            tx.commit()

        self.bus.publish(
            BookingCreated(booking_id=booking.id, room_id=room_id, status=status)
        )
        if conflict:
            self.bus.publish(ConflictDetectedEvent(booking_id=booking.id, room_id=room_id))
            raise ConflictDetected("booking conflict detected", booking=booking)
        return booking

    def submit(
        self, room_id: int, user_id: int, start: datetime, end: datetime
    ) -> Booking:
        """Store a pending booking; the conflict decision is left to approve()."""
        start, end = self._check_interval(start, end)

        with self.store.begin(timeout=self.settings.create_timeout) as tx:
            tx.lock_resource_for_update(room_id)
            booking = tx.insert_booking(
                room_id, user_id, start, end, BookingStatus.PENDING
            )
            tx.commit()

        self.bus.publish(BookingSubmitted(booking_id=booking.id, room_id=room_id))
        return booking

    def approve(self, booking_id: int) -> Booking:
        """Approve a pending booking after re-checking it against approved ones."""
        with self.store.begin(timeout=self.settings.approve_timeout) as tx:
            room_id = tx.get_booking(booking_id).room_id
            tx.lock_resource_for_update(room_id)
            booking = tx.get_booking_for_update(booking_id)
            if booking.status != BookingStatus.PENDING:
                raise NotPending(f"booking {booking_id} is not pending")
            if has_approved_conflict(
                tx,
                room_id,
                booking.start_time,
                booking.end_time,
                exclude_booking_id=booking_id,
                timeout=self.settings.conflict_check_timeout,
            ):
                logger.info("Booking {} cannot be approved: conflict", booking_id)
                raise ConflictDetected("conflict detected, cannot approve")
            if tx.update_status(booking_id, BookingStatus.APPROVED) != 1:
                raise StoreError(f"failed to approve booking {booking_id}")
            tx.commit()

        self.bus.publish(BookingApproved(booking_id=booking_id))
        return booking.model_copy(update={"status": BookingStatus.APPROVED})

    def reject(self, booking_id: int) -> None:
        """Reject a pending booking with a single conditional update.

        A missing booking and one that is no longer pending look the same
        here: both leave zero rows affected and raise NotPending.
        """
        with self.store.begin(timeout=self.settings.reject_timeout) as tx:
            rows = tx.update_status(
                booking_id, BookingStatus.REJECTED, from_status=BookingStatus.PENDING
            )
            if rows == 0:
                raise NotPending(f"booking {booking_id} not found or not pending")
            tx.commit()

        self.bus.publish(BookingRejected(booking_id=booking_id))

    def force_allocate(self, booking_id: int) -> int:
        """Approve ``booking_id`` unconditionally, rejecting every overlapping grant.

        Returns how many approved bookings were displaced. Displacement and
        promotion commit together or not at all.
        """
        with self.store.begin(timeout=self.settings.preempt_timeout) as tx:
            room_id = tx.get_booking(booking_id).room_id
            tx.lock_resource_for_update(room_id)
            booking = tx.get_booking_for_update(booking_id)
            displaced = tx.reject_overlapping(
                room_id, booking.start_time, booking.end_time, exclude_id=booking_id
            )
            if tx.update_status(booking_id, BookingStatus.APPROVED) != 1:
                raise StoreError(f"failed to approve booking {booking_id}")
            tx.commit()

        self.bus.publish(
            BookingPreempted(
                booking_id=booking_id, room_id=room_id, displaced_count=displaced
            )
        )
        return displaced
