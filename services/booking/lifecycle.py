# ============================================================
# lifecycle.py — Booking status state machine
# ------------------------------------------------------------
#   pending  -> approved | rejected | cancelled
#   approved -> active | cancelled
#   active   -> completed
# completed, cancelled and rejected are terminal. Nothing ever
# moves backwards.
# ============================================================
from booking.errors import StateError
from booking.models import BookingStatus

S = BookingStatus

TRANSITIONS = {
    S.PENDING.value: {S.APPROVED.value, S.REJECTED.value, S.CANCELLED.value},
    S.APPROVED.value: {S.ACTIVE.value, S.CANCELLED.value},
    S.ACTIVE.value: {S.COMPLETED.value},
    S.COMPLETED.value: set(),
    S.CANCELLED.value: set(),
    S.REJECTED.value: set(),
}

# owners may still edit times/quantity/type in these states
EDITABLE = frozenset({S.PENDING.value, S.APPROVED.value})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def ensure_transition(current: str, target: str):
    if not can_transition(current, target):
        raise StateError(f"Cannot move booking from {current} to {target}")


def ensure_editable(current: str):
    if current not in EDITABLE:
        raise StateError(f"Cannot update {current} bookings")
