# ============================================================
# constraints.py — Resource-level booking rules
# ------------------------------------------------------------
# Checks a proposed (quantity, booking type) against what the
# resource allows. Every failing rule is reported, so the
# caller can list all of them at once.
# ============================================================
from datetime import datetime, timedelta
from typing import List, Optional

from booking.models import BookingType, Resource, ResourceStatus, as_utc


def resource_violations(resource: Resource, requested_quantity: int, booking_type: str) -> List[str]:
    violations = []
    unit = resource.capacity_unit

    if resource.is_indivisible:
        if requested_quantity != resource.total_capacity:
            violations.append(
                f"Resource is indivisible and requires full allocation of {resource.total_capacity} {unit}"
            )
        if booking_type != BookingType.EXCLUSIVE.value:
            violations.append("Indivisible resources can only be booked exclusively")
    else:
        if resource.min_allocation and requested_quantity < resource.min_allocation:
            violations.append(
                f"Requested quantity is below minimum allocation of {resource.min_allocation} {unit}"
            )
        if resource.max_allocation and requested_quantity > resource.max_allocation:
            violations.append(
                f"Requested quantity exceeds maximum allocation of {resource.max_allocation} {unit}"
            )
        if booking_type == BookingType.EXCLUSIVE.value and requested_quantity != resource.total_capacity:
            violations.append("Exclusive bookings require full resource capacity allocation")

    status_error = availability_violation(resource)
    if status_error:
        violations.append(status_error)
    return violations


def availability_violation(resource: Resource) -> Optional[str]:
    if not resource.is_active:
        return "Resource is disabled"
    if resource.status == ResourceStatus.MAINTENANCE.value:
        return "Resource is in maintenance"
    if resource.status == ResourceStatus.OFFLINE.value:
        return "Resource is offline"
    if resource.status != ResourceStatus.AVAILABLE.value:
        return "Resource not available"
    return None


def interval_violations(
    start: datetime,
    end: datetime,
    now: Optional[datetime] = None,
    grace_hours: Optional[int] = None,
) -> List[str]:
    violations = []
    if end <= start:
        violations.append("End time must be after start time")
    if now is not None and grace_hours is not None:
        if as_utc(start) < as_utc(now) - timedelta(hours=grace_hours):
            violations.append(f"Start time cannot be earlier than {grace_hours} hours ago")
    return violations

