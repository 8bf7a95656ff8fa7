"""Error kinds surfaced by the allocation engine and its store."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from allocra.domain.models import Booking


class AllocraError(Exception):
    """Base error; ``status_code`` is the HTTP status the API layer maps it to."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidInterval(AllocraError):
    status_code = 400


class StaleRequest(AllocraError):
    status_code = 400


class InvalidRoom(AllocraError):
    status_code = 400


class ConflictDetected(AllocraError):
    """The requested interval overlaps an approved booking.

    A business outcome, not a failure: on the create path ``booking`` holds
    the committed ``rejected`` row that records the attempt.
    """

    status_code = 409

    def __init__(self, message: str, booking: Booking | None = None) -> None:
        super().__init__(message)
        self.booking = booking


class NotFound(AllocraError):
    status_code = 404


class BookingNotFound(NotFound):
    def __init__(self, booking_id: int) -> None:
        super().__init__(f"booking {booking_id} not found")
        self.booking_id = booking_id


class RoomNotFound(NotFound):
    def __init__(self, room_id: int) -> None:
        super().__init__(f"room {room_id} not found")
        self.room_id = room_id


class NotPending(AllocraError):
    status_code = 409


class StoreError(AllocraError):
    """Any transaction, lock or connection failure. The mutation did not happen."""

    status_code = 500


class TransactionTimeout(StoreError):
    """A lock wait or statement outlived the transaction deadline."""
