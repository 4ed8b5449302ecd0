# ============================================================
# errors.py — Booking error taxonomy
# ------------------------------------------------------------
# Raised by the service layer, translated to HTTP responses by
# the exception handler installed in app.py.
# ============================================================
from typing import List, Optional


class BookingError(Exception):
    """Base class for every locally-detected booking failure."""

    status_code = 400

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.violations = list(violations) if violations else [message]


class NotFoundError(BookingError):
    status_code = 404


class AuthorizationError(BookingError):
    status_code = 403


class ValidationError(BookingError):
    """Malformed interval, resource constraint or usage limit violation."""

    status_code = 400


class ConflictError(BookingError):
    """Not enough capacity left because of overlapping bookings."""

    status_code = 409


class StateError(BookingError):
    """Illegal lifecycle transition."""

    status_code = 409
