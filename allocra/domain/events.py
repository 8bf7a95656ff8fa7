"""Domain events published after a lifecycle transition has been committed."""

from __future__ import annotations

from pydantic import BaseModel

from allocra.domain.models import BookingStatus


class BookingCreated(BaseModel):
    """Fired when Create has committed a decided (approved or rejected) booking."""

    booking_id: int
    room_id: int
    status: BookingStatus


class ConflictDetected(BaseModel):
    """Fired when a request overlapped an approved booking on the same room."""

    booking_id: int
    room_id: int


class BookingSubmitted(BaseModel):
    """Fired when a booking is stored as pending, awaiting approve/reject."""

    booking_id: int
    room_id: int


class BookingApproved(BaseModel):
    booking_id: int


class BookingRejected(BaseModel):
    booking_id: int


class BookingPreempted(BaseModel):
    """Fired when a booking was force-allocated, displacing overlapping grants."""

    booking_id: int
    room_id: int
    displaced_count: int


class AllocationsReset(BaseModel):
    """Fired after the administrative reset removed every booking."""
