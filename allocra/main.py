"""FastAPI application — entry point for the room allocation service."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger

from allocra.config import Settings, get_settings
from allocra.domain.bus import EventBus
from allocra.domain.errors import AllocraError, ConflictDetected, StoreError
from allocra.domain.events import AllocationsReset
from allocra.domain.handlers import HandlerRegistry
from allocra.domain.models import (
    Booking,
    BookingDetail,
    CreateBookingRequest,
    MonthlyUsageReport,
    Room,
    RoomRequest,
    SystemStats,
)
from allocra.logger import configure_logging
from allocra.repos.base import AllocationStore
from allocra.repos.memory import MemoryAllocationStore, TimelineRepository
from allocra.repos.sql import SqlAllocationStore
from allocra.services.lifecycle import BookingEngine
from allocra.services.rooms import RoomService, seed_rooms
from allocra.services.usage import RequestCounters, monthly_usage, system_stats


def build_store(settings: Settings) -> AllocationStore:
    if settings.database_url.startswith("memory://"):
        return MemoryAllocationStore()
    store = SqlAllocationStore(
        settings.database_url,
        echo=settings.sql_echo,
        connect_retries=settings.connect_retries,
        connect_retry_delay=settings.connect_retry_delay,
        sqlite_busy_timeout=settings.sqlite_busy_timeout,
    )
    store.create_schema()
    logger.info("Database connection established")
    return store


settings = get_settings()
configure_logging(settings.log_level)

app = FastAPI(title=f"{settings.project_name} Allocation Service", version=settings.version)

# ── Singletons (created at import time for simplicity) ────────────────
store = build_store(settings)
event_bus = EventBus()
timeline_repo = TimelineRepository()
counters = RequestCounters()

handler_registry = HandlerRegistry(bus=event_bus, timeline_repo=timeline_repo, counters=counters)
engine = BookingEngine(store, bus=event_bus, settings=settings)
room_service = RoomService(store)

if settings.seed_rooms:
    seed_rooms(room_service)


# ── Error mapping ─────────────────────────────────────────────────────


@app.exception_handler(AllocraError)
async def allocra_error_handler(request: Request, exc: AllocraError) -> JSONResponse:
    if isinstance(exc, StoreError):
        logger.opt(exception=exc).error("Store error on {}: {}", request.url.path, exc.message)
    else:
        logger.warning("{} on {}: {}", type(exc).__name__, request.url.path, exc.message)

    content: dict = {"error": exc.message}
    if isinstance(exc, ConflictDetected) and exc.booking is not None:
        content["booking"] = jsonable_encoder(exc.booking)
    return JSONResponse(status_code=exc.status_code, content=content)


# ── Rooms ─────────────────────────────────────────────────────────────


@app.post("/api/rooms", response_model=Room, status_code=201)
def create_room(payload: RoomRequest) -> Room:
    return room_service.create_room(payload.name, payload.capacity, payload.kind, payload.state)


@app.get("/api/rooms", response_model=list[Room])
def list_rooms() -> list[Room]:
    return room_service.list_rooms()


@app.put("/api/rooms/{room_id}", response_model=Room)
def update_room(room_id: int, payload: RoomRequest) -> Room:
    return room_service.update_room(
        room_id, payload.name, payload.capacity, payload.kind, payload.state
    )


@app.delete("/api/rooms/{room_id}")
def delete_room(room_id: int) -> dict:
    room_service.delete_room(room_id)
    return {"status": "deleted"}


# ── Bookings ──────────────────────────────────────────────────────────


@app.post("/api/bookings", response_model=Booking, status_code=201)
def create_booking(payload: CreateBookingRequest, deferred: bool = False) -> Booking:
    """Request a room. With ``deferred=true`` the booking waits for approve/reject."""
    operation = engine.submit if deferred else engine.create
    return operation(payload.room_id, payload.user_id, payload.start_time, payload.end_time)


@app.get("/api/bookings/all", response_model=list[Booking])
def list_all_bookings() -> list[Booking]:
    return store.list_bookings()


@app.get("/api/bookings", response_model=list[Booking])
def list_room_bookings(room_id: int) -> list[Booking]:
    return store.list_bookings(room_id=room_id)


@app.get("/api/bookings/{booking_id}", response_model=BookingDetail)
def get_booking(booking_id: int) -> BookingDetail:
    """Return one booking with its activity timeline."""
    with store.begin(timeout=settings.read_timeout) as tx:
        booking = tx.get_booking(booking_id)
    return BookingDetail(booking=booking, timeline=timeline_repo.list_for_booking(booking_id))


@app.patch("/api/bookings/{booking_id}/approve", response_model=Booking)
def approve_booking(booking_id: int) -> Booking:
    return engine.approve(booking_id)


@app.patch("/api/bookings/{booking_id}/reject")
def reject_booking(booking_id: int) -> dict:
    engine.reject(booking_id)
    return {"status": "rejected"}


@app.patch("/api/bookings/{booking_id}/force")
def force_allocate(booking_id: int) -> dict:
    """Administrative override: approve the booking and displace overlapping ones."""
    displaced = engine.force_allocate(booking_id)
    return {"status": "approved", "displaced": displaced}


# ── Reports & system ──────────────────────────────────────────────────


@app.get("/api/reports/monthly-usage", response_model=list[MonthlyUsageReport])
def get_monthly_report() -> list[MonthlyUsageReport]:
    return monthly_usage(store, tz=settings.report_timezone)


@app.get("/api/system/stats", response_model=SystemStats)
def get_system_stats() -> SystemStats:
    return system_stats(store, counters, version=settings.version)


@app.post("/api/allocations/reset")
def reset_allocations() -> dict:
    store.delete_all_bookings()
    event_bus.publish(AllocationsReset())
    return {"message": "All allocations have been reset"}
