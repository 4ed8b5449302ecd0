# ============================================================
# capacity.py — Available capacity over a time window
# ------------------------------------------------------------
# Pure computation over the bookings returned by
# BookingRepository.find_overlapping(). Never cached: the value
# is only trustworthy inside the admission lock (locking.py).
# ============================================================
from dataclasses import asdict, dataclass
from typing import Iterable

from booking.models import Booking, Resource


@dataclass(frozen=True)
class CapacityReport:
    available_capacity: int
    total_capacity: int
    current_allocation: int
    conflicting_bookings_count: int

    def to_dict(self) -> dict:
        return asdict(self)


def current_allocation(overlapping: Iterable[Booking]) -> int:
    return sum(b.held_quantity for b in overlapping)


def raw_available(resource: Resource, overlapping: Iterable[Booking]) -> int:
    """Remaining capacity; negative when the window is already over-committed."""
    return resource.total_capacity - current_allocation(overlapping)


def capacity_report(resource: Resource, overlapping: Iterable[Booking]) -> CapacityReport:
    overlapping = list(overlapping)
    allocated = current_allocation(overlapping)
    return CapacityReport(
        available_capacity=max(0, resource.total_capacity - allocated),
        total_capacity=resource.total_capacity,
        current_allocation=allocated,
        conflicting_bookings_count=len(overlapping),
    )
