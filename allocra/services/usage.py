"""Read-only usage reporting over committed bookings.

Nothing here runs inside a write transaction; figures are point-in-time
snapshots meant for dashboards, not for allocation decisions.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from allocra.domain.models import BookingStatus, MonthlyUsageReport, SystemStats
from allocra.repos.base import AllocationStore


class RequestCounters:
    """Lifecycle outcomes seen by this process, fed by the domain-event handlers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.requests = 0
        self.approvals = 0
        self.conflicts = 0
        self.preemptions = 0

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def reset(self) -> None:
        with self._lock:
            self.requests = self.approvals = self.conflicts = self.preemptions = 0

    def conflict_ratio(self) -> float:
        with self._lock:
            return self.conflicts / self.requests if self.requests else 0.0


def month_bounds(now: datetime, tz: str = "UTC") -> tuple[datetime, datetime]:
    """Return ``[first instant of now's month, first instant of the next month)`` in ``tz``."""
    local = now.astimezone(ZoneInfo(tz))
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def monthly_usage(
    store: AllocationStore, now: datetime | None = None, tz: str = "UTC"
) -> list[MonthlyUsageReport]:
    """Approved bookings starting this calendar month, aggregated per room.

    Ordered by total hours, busiest room first.
    """
    start, end = month_bounds(now or datetime.now(timezone.utc), tz)
    room_names = {room.id: room.name for room in store.list_rooms()}

    counts: dict[int, int] = defaultdict(int)
    hours: dict[int, float] = defaultdict(float)
    for booking in store.approved_between(start, end):
        counts[booking.room_id] += 1
        hours[booking.room_id] += booking.hours

    reports = [
        MonthlyUsageReport(
            room_id=room_id,
            room_name=room_names.get(room_id, ""),
            total_bookings=counts[room_id],
            total_hours=round(hours[room_id], 2),
        )
        for room_id in counts
    ]
    reports.sort(key=lambda r: (-r.total_hours, r.room_id))
    return reports


def load_index(utilization: float, counters: RequestCounters) -> float:
    """Synthetic dashboard load figure, in percent.

    ``0.7 * utilization + 30 * (conflicts / requests)``, capped at 99.9.
    """
    return round(min(99.9, 0.7 * utilization + 30.0 * counters.conflict_ratio()), 2)


def system_stats(
    store: AllocationStore, counters: RequestCounters, version: str = "1.0.0"
) -> SystemStats:
    total = store.count_bookings()
    approved = store.count_bookings(BookingStatus.APPROVED)
    rejected = store.count_bookings(BookingStatus.REJECTED)
    total_rooms = store.count_rooms()

    utilization = 0.0
    if total_rooms > 0:
        utilization = min(100.0, approved / total_rooms * 100)

    return SystemStats(
        version=version,
        total_bookings=total,
        active_bookings=approved,
        conflicts=rejected,
        utilization=round(utilization, 2),
        load_index=load_index(utilization, counters),
    )
