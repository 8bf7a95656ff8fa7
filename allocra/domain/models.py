"""Domain models for the room allocation system."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator, model_validator


class BookingStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RoomKind(StrEnum):
    SHARED = "shared"
    EXCLUSIVE = "exclusive"


class RoomState(StrEnum):
    ONLINE = "online"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class TimelineEntryType(StrEnum):
    CREATED = "created"
    CONFLICT_DETECTED = "conflict_detected"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PREEMPTED = "preempted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class Room(BaseModel):
    id: int
    name: str
    capacity: int = Field(gt=0)
    kind: RoomKind = RoomKind.SHARED
    state: RoomState = RoomState.ONLINE
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Booking(BaseModel):
    """A hold on a room for the half-open interval ``[start_time, end_time)``."""

    id: int
    room_id: int
    user_id: int
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("start_time", "end_time", "created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> Booking:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600


class TimelineEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    booking_id: int
    timestamp: datetime = Field(default_factory=_utcnow)
    type: TimelineEntryType
    payload: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class CreateBookingRequest(BaseModel):
    room_id: int
    user_id: int
    start_time: datetime
    end_time: datetime


class RoomRequest(BaseModel):
    name: str
    capacity: int
    kind: RoomKind = RoomKind.SHARED
    state: RoomState = RoomState.ONLINE


class BookingDetail(BaseModel):
    booking: Booking
    timeline: list[TimelineEntry] = Field(default_factory=list)


class MonthlyUsageReport(BaseModel):
    room_id: int
    room_name: str
    total_bookings: int
    total_hours: float


class SystemStats(BaseModel):
    status: str = "nominal"
    version: str
    total_bookings: int
    active_bookings: int
    conflicts: int
    utilization: float
    load_index: float
