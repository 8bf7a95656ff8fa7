"""Service for detecting booking conflicts on a room."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from allocra.domain.models import Booking

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from allocra.repos.base import Transaction


def overlaps(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Return True when the half-open intervals ``[a)`` and ``[b)`` intersect.

    Exact boundary touches (end_a == start_b) are NOT considered conflicts.
    """
    return start_a < end_b and start_b < end_a


def find_conflicts(
    new_start: datetime,
    new_end: datetime,
    existing_bookings: Iterable[Booking],
) -> list[Booking]:
    """Return existing bookings whose interval overlaps the given time range."""
    return [
        booking
        for booking in existing_bookings
        if overlaps(new_start, new_end, booking.start_time, booking.end_time)
    ]


def has_approved_conflict(
    tx: Transaction,
    room_id: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: int | None = None,
    timeout: float | None = None,
) -> bool:
    """Check, inside ``tx``, for an approved booking on ``room_id`` overlapping ``[start, end)``.

    ``exclude_booking_id`` keeps a booking already in the store from
    conflicting with itself when it is being re-checked for approval.
    """
    return tx.find_overlapping_approved(
        room_id, start, end, exclude_id=exclude_booking_id, timeout=timeout
    )
