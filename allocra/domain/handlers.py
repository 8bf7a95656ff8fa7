"""Domain event handlers: timeline entries, request counters and logging."""

from __future__ import annotations

from loguru import logger

from allocra.domain.bus import EventBus
from allocra.domain.events import (
    AllocationsReset,
    BookingApproved,
    BookingCreated,
    BookingPreempted,
    BookingRejected,
    BookingSubmitted,
    ConflictDetected,
)
from allocra.domain.models import BookingStatus, TimelineEntry, TimelineEntryType
from allocra.repos.memory import TimelineRepository
from allocra.services.usage import RequestCounters


class HandlerRegistry:
    """Wires domain-event handlers to the bus with access to the timeline and counters."""

    def __init__(
        self,
        bus: EventBus,
        timeline_repo: TimelineRepository,
        counters: RequestCounters,
    ) -> None:
        self.bus = bus
        self.timeline_repo = timeline_repo
        self.counters = counters
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(BookingCreated, self.on_booking_created)
        self.bus.subscribe(ConflictDetected, self.on_conflict_detected)
        self.bus.subscribe(BookingSubmitted, self.on_booking_submitted)
        self.bus.subscribe(BookingApproved, self.on_booking_approved)
        self.bus.subscribe(BookingRejected, self.on_booking_rejected)
        self.bus.subscribe(BookingPreempted, self.on_booking_preempted)
        self.bus.subscribe(AllocationsReset, self.on_allocations_reset)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_booking_created(self, event: BookingCreated) -> None:
        self.counters.incr("requests")
        if event.status == BookingStatus.APPROVED:
            self.counters.incr("approvals")
        self.timeline_repo.add(
            TimelineEntry(
                booking_id=event.booking_id,
                type=TimelineEntryType.CREATED,
                payload={"room_id": event.room_id, "status": event.status},
            )
        )
        logger.info(
            "Booking {} on room {} created as {}",
            event.booking_id,
            event.room_id,
            event.status,
        )

    def on_conflict_detected(self, event: ConflictDetected) -> None:
        self.counters.incr("conflicts")
        self.timeline_repo.add(
            TimelineEntry(
                booking_id=event.booking_id,
                type=TimelineEntryType.CONFLICT_DETECTED,
                payload={"room_id": event.room_id},
            )
        )
        logger.info(
            "Booking {} conflicts with an approved booking on room {}",
            event.booking_id,
            event.room_id,
        )

    def on_booking_submitted(self, event: BookingSubmitted) -> None:
        self.counters.incr("requests")
        self.timeline_repo.add(
            TimelineEntry(
                booking_id=event.booking_id,
                type=TimelineEntryType.SUBMITTED,
                payload={"room_id": event.room_id},
            )
        )
        logger.info("Booking {} submitted for approval", event.booking_id)

    def on_booking_approved(self, event: BookingApproved) -> None:
        self.counters.incr("approvals")
        self.timeline_repo.add(
            TimelineEntry(booking_id=event.booking_id, type=TimelineEntryType.APPROVED)
        )
        logger.info("Booking {} approved", event.booking_id)

    def on_booking_rejected(self, event: BookingRejected) -> None:
        self.timeline_repo.add(
            TimelineEntry(booking_id=event.booking_id, type=TimelineEntryType.REJECTED)
        )
        logger.info("Booking {} rejected", event.booking_id)

    def on_booking_preempted(self, event: BookingPreempted) -> None:
        self.counters.incr("preemptions")
        self.timeline_repo.add(
            TimelineEntry(
                booking_id=event.booking_id,
                type=TimelineEntryType.PREEMPTED,
                payload={
                    "room_id": event.room_id,
                    "displaced_count": event.displaced_count,
                },
            )
        )
        logger.warning(
            "Booking {} force-allocated on room {}, displacing {} booking(s)",
            event.booking_id,
            event.room_id,
            event.displaced_count,
        )

    def on_allocations_reset(self, event: AllocationsReset) -> None:
        self.timeline_repo.clear()
        self.counters.reset()
        logger.warning("All allocations have been reset")
