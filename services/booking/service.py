# ============================================================
# service.py — Booking admission and lifecycle
# ------------------------------------------------------------
# The operations the API (and the consumer) call into:
#   check_available_capacity / validate_booking  (read-only)
#   get / list_bookings / usage_summary          (read-only)
#   create / update / approve / reject / cancel  (mutating)
#   activate / complete                          (scheduler)
#
# Admission pipeline for create and update:
#   1. interval + resource constraints  (constraints.py)
#   2. per-resource lock + row lock     (locking.py)
#   3. overlap query + capacity         (capacity.py)
#   4. usage limits, create only        (quota.py)
#   5. insert / update, commit, release lock, publish event
# A failure at any step rolls back and leaves nothing behind.
# ============================================================
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlmodel import Session

from booking.access import ensure_access
from booking.capacity import CapacityReport, capacity_report, raw_available
from booking.config import Settings, settings as default_settings
from booking.constraints import interval_violations, resource_violations
from booking.errors import (
    AuthorizationError,
    BookingError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from booking.lifecycle import can_transition, ensure_editable, ensure_transition
from booking.locking import ResourceLocks, resource_locks
from booking.models import (
    Booking,
    BookingPriority,
    BookingStatus,
    BookingType,
    Resource,
    User,
    as_utc,
    utcnow,
)
from booking.publisher import emit
from booking.quota import LimitCheckResult, LimitEvaluator, UsageSummary, summarize_usage, usage_windows
from booking.repository import BookingRepository

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"title", "description", "start_time", "end_time", "requested_quantity", "booking_type", "priority"}
)
ADMISSION_FIELDS = frozenset({"start_time", "end_time", "requested_quantity", "booking_type"})


def from_client(dt: datetime, tz) -> datetime:
    """Client timestamps without tz are local time; everything is stored in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def _raise_if(violations, message: str):
    if violations:
        raise ValidationError(violations[0] if len(violations) == 1 else message, violations)


def _field_violations(title=None, requested_quantity=None, booking_type=None, priority=None):
    out = []
    if title is not None and not (1 <= len(title.strip()) <= 255):
        out.append("Title must be between 1 and 255 characters")
    if requested_quantity is not None and requested_quantity < 1:
        out.append("Requested quantity must be at least 1")
    if booking_type is not None and booking_type not in {t.value for t in BookingType}:
        out.append(f"Unknown booking type '{booking_type}'")
    if priority is not None and priority not in {p.value for p in BookingPriority}:
        out.append(f"Unknown priority '{priority}'")
    return out


class BookingService:
    def __init__(
        self,
        session: Session,
        settings: Settings = default_settings,
        locks: ResourceLocks = resource_locks,
        now: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.repo = BookingRepository(session)
        self.settings = settings
        self.locks = locks
        self.now = now
        self.limits = LimitEvaluator(self.repo, settings)

    # --- lookups ---------------------------------------------------

    def _user(self, user_id: str) -> User:
        user = self.repo.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.is_active:
            raise AuthorizationError("User account is disabled")
        return user

    def _admin(self, user_id: str) -> User:
        user = self._user(user_id)
        if not user.is_admin:
            raise AuthorizationError("Unauthorized: Admin access required")
        return user

    def _booking(self, booking_id: int) -> Booking:
        b = self.repo.get(booking_id)
        if not b:
            raise NotFoundError("Booking not found")
        return b

    def _resource(self, resource_id: str, lock: bool = False) -> Resource:
        resource = self.repo.get_resource(resource_id, lock=lock)
        if not resource:
            raise NotFoundError("Resource not found")
        return resource

    def _owned(self, booking_id: int, caller_id: str, action: str):
        caller = self._user(caller_id)
        b = self._booking(booking_id)
        if not caller.is_admin and b.user_id != caller.id:
            raise AuthorizationError(f"Unauthorized: Can only {action} own bookings")
        return caller, b

    def _emit(self, event_type: str, b: Booking):
        if self.settings.events_enabled:
            emit(event_type, b)

    def _ensure_capacity(
        self,
        resource: Resource,
        start: datetime,
        end: datetime,
        quantity: int,
        exclude_id: Optional[int] = None,
    ):
        overlapping = self.repo.find_overlapping(resource.id, start, end, exclude_id=exclude_id)
        available = raw_available(resource, overlapping)
        if quantity > available:
            unit = resource.capacity_unit
            raise ConflictError(
                f"Insufficient capacity. Available: {max(0, available)} {unit}, Requested: {quantity} {unit}"
            )

    # --- read-only -------------------------------------------------

    def check_available_capacity(self, resource_id: str, start_time: datetime, end_time: datetime) -> CapacityReport:
        start, end = from_client(start_time, self.settings.tz), from_client(end_time, self.settings.tz)
        _raise_if(interval_violations(start, end), "Invalid time window")
        resource = self._resource(resource_id)
        return capacity_report(resource, self.repo.find_overlapping(resource.id, start, end))

    def validate_booking(
        self,
        user_id: str,
        resource_id: str,
        start_time: datetime,
        end_time: datetime,
        booking_type: str,
        caller_id: Optional[str] = None,
    ) -> LimitCheckResult:
        if caller_id is not None and caller_id != user_id and not self._user(caller_id).is_admin:
            raise AuthorizationError("Unauthorized: Can only validate own bookings")
        self._user(user_id)
        self._resource(resource_id)
        start, end = from_client(start_time, self.settings.tz), from_client(end_time, self.settings.tz)
        _raise_if(
            interval_violations(start, end) + _field_violations(booking_type=booking_type),
            "Invalid booking request",
        )
        return self.limits.evaluate(user_id, resource_id, start, end, booking_type)

    def get_booking(self, booking_id: int, caller_id: str) -> Booking:
        _, b = self._owned(booking_id, caller_id, "view")
        return b

    def list_bookings(
        self,
        caller_id: str,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Booking]:
        caller = self._user(caller_id)
        if not caller.is_admin:
            if user_id is not None and user_id != caller.id:
                raise AuthorizationError("Unauthorized: Can only list own bookings")
            user_id = caller.id

        violations = []
        if status is not None and status not in {s.value for s in BookingStatus}:
            violations.append(f"Unknown status '{status}'")
        if not 1 <= limit <= 100:
            violations.append("Limit must be between 1 and 100")
        if offset < 0:
            violations.append("Offset cannot be negative")
        _raise_if(violations, "Invalid booking query")

        tz = self.settings.tz
        return self.repo.list_bookings(
            user_id=user_id,
            resource_id=resource_id,
            status=status,
            start=from_client(start_time, tz) if start_time else None,
            end=from_client(end_time, tz) if end_time else None,
            limit=limit,
            offset=offset,
        )

    def usage_summary(
        self,
        caller_id: str,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> UsageSummary:
        """Consumed time over a period, the current local month by default."""
        caller = self._user(caller_id)
        target_id = user_id or caller.id
        if target_id != caller.id:
            if not caller.is_admin:
                raise AuthorizationError("Unauthorized: Can only view own usage statistics")
            if not self.repo.get_user(target_id):
                raise NotFoundError("User not found")

        month = usage_windows(self.now(), self.settings.tz)
        start = from_client(start_time, self.settings.tz) if start_time else month.month_start
        end = from_client(end_time, self.settings.tz) if end_time else month.month_end
        _raise_if(interval_violations(start, end), "Invalid time window")

        bookings = self.repo.consumed_bookings(target_id, start, end, resource_id=resource_id)
        return summarize_usage(target_id, bookings, start, end)

    # --- creation --------------------------------------------------

    def create_booking(
        self,
        user_id: str,
        resource_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        requested_quantity: int,
        booking_type: str,
        priority: str = BookingPriority.NORMAL.value,
        description: Optional[str] = None,
    ) -> Booking:
        user = self._user(user_id)
        start, end = from_client(start_time, self.settings.tz), from_client(end_time, self.settings.tz)
        _raise_if(
            interval_violations(start, end, self.now(), self.settings.booking_start_grace_hours)
            + _field_violations(title, requested_quantity, booking_type, priority),
            "Invalid booking request",
        )

        resource = self._resource(resource_id)
        if not user.is_admin:
            ensure_access(self.repo.access_rules(resource.id, self.repo.group_ids_for_user(user.id)))

        with self.locks.hold(resource.id):
            try:
                # status and allocation rules are read from the locked row
                resource = self._resource(resource.id, lock=True)
                _raise_if(
                    resource_violations(resource, requested_quantity, booking_type),
                    "Booking violates resource constraints",
                )
                self._ensure_capacity(resource, start, end, requested_quantity)
                if not user.is_admin:
                    result = self.limits.evaluate(user.id, resource.id, start, end, booking_type)
                    if not result.valid:
                        raise ValidationError("Booking violates resource limits", result.violations)

                b = Booking(
                    resource_id=resource.id,
                    user_id=user.id,
                    title=title.strip(),
                    description=description,
                    start_time=start,
                    end_time=end,
                    requested_quantity=requested_quantity,
                    booking_type=booking_type,
                    priority=priority,
                )
                if user.is_admin:
                    # admin bookings are self-approved
                    b.status = BookingStatus.APPROVED.value
                    b.allocated_quantity = requested_quantity
                    b.approved_by_id = user.id
                    b.approved_at = self.now()
                created = self.repo.create(b)
            except BookingError:
                self.session.rollback()
                raise

        logger.info(
            "[booking] created #%s on %s for %s (%s x%s, %s)",
            created.id, resource.id, user.id, booking_type, requested_quantity, created.status,
        )
        self._emit("BookingCreated", created)
        return created

    # --- owner edits -----------------------------------------------

    def update_booking(self, booking_id: int, caller_id: str, **fields) -> Booking:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in fields.items() if v is not None or k == "description"}

        _, b = self._owned(booking_id, caller_id, "update")
        ensure_editable(b.status)
        if as_utc(b.end_time) <= self.now():
            raise StateError("Cannot update bookings that have already ended")

        _raise_if(
            _field_violations(
                changes.get("title"),
                changes.get("requested_quantity"),
                changes.get("booking_type"),
                changes.get("priority"),
            ),
            "Invalid booking update",
        )
        for key in ("start_time", "end_time"):
            if key in changes:
                changes[key] = from_client(changes[key], self.settings.tz)

        if ADMISSION_FIELDS & set(changes):
            self._readmit(b, changes)
        else:
            self._apply(b, changes)
            b = self.repo.save(b)

        logger.info("[booking] updated #%s (%s)", b.id, ", ".join(sorted(changes)) or "no changes")
        self._emit("BookingUpdated", b)
        return b

    def _readmit(self, b: Booking, changes: dict):
        start = changes.get("start_time", as_utc(b.start_time))
        end = changes.get("end_time", as_utc(b.end_time))
        quantity = changes.get("requested_quantity", b.requested_quantity)
        booking_type = changes.get("booking_type", b.booking_type)

        grace = self.settings.booking_start_grace_hours if "start_time" in changes else None
        _raise_if(interval_violations(start, end, self.now(), grace), "Invalid booking update")

        with self.locks.hold(b.resource_id):
            try:
                resource = self._resource(b.resource_id, lock=True)
                _raise_if(resource_violations(resource, quantity, booking_type), "Booking violates resource constraints")
                # the booking's own prior allocation does not count against it
                self._ensure_capacity(resource, start, end, quantity, exclude_id=b.id)
                self._apply(b, changes)
                if b.allocated_quantity is not None:
                    if b.booking_type == BookingType.EXCLUSIVE.value:
                        # exclusive bookings always hold the full quantity
                        b.allocated_quantity = b.requested_quantity
                    else:
                        b.allocated_quantity = min(b.allocated_quantity, b.requested_quantity)
                self.repo.save(b)
            except BookingError:
                self.session.rollback()
                raise

    @staticmethod
    def _apply(b: Booking, changes: dict):
        for key, value in changes.items():
            setattr(b, key, value.strip() if key == "title" else value)

    # --- admin decisions -------------------------------------------

    def approve_booking(self, booking_id: int, admin_id: str, allocated_quantity: Optional[int] = None) -> Booking:
        admin = self._admin(admin_id)
        b = self._booking(booking_id)
        ensure_transition(b.status, BookingStatus.APPROVED.value)

        allocated = b.requested_quantity if allocated_quantity is None else allocated_quantity
        if allocated < 1:
            raise ValidationError("Allocated quantity must be at least 1")
        if allocated > b.requested_quantity:
            raise ValidationError("Allocated quantity cannot exceed requested quantity")
        if allocated != b.requested_quantity and b.booking_type == BookingType.EXCLUSIVE.value:
            raise ValidationError("Exclusive bookings cannot be partially allocated")

        with self.locks.hold(b.resource_id):
            try:
                # a pending booking already holds its requested quantity,
                # so approving at or below it never over-allocates
                self._resource(b.resource_id, lock=True)
                b.status = BookingStatus.APPROVED.value
                b.allocated_quantity = allocated
                b.approved_by_id = admin.id
                b.approved_at = self.now()
                b = self.repo.save(b)
            except BookingError:
                self.session.rollback()
                raise

        logger.info("[booking] approved #%s by %s (allocated %s)", b.id, admin.id, allocated)
        self._emit("BookingApproved", b)
        return b

    def reject_booking(self, booking_id: int, admin_id: str, reason: str) -> Booking:
        admin = self._admin(admin_id)
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        b = self._booking(booking_id)
        ensure_transition(b.status, BookingStatus.REJECTED.value)

        b.status = BookingStatus.REJECTED.value
        b.rejection_reason = reason.strip()
        b.approved_by_id = admin.id
        b.approved_at = self.now()
        b = self.repo.save(b)

        logger.info("[booking] rejected #%s by %s", b.id, admin.id)
        self._emit("BookingRejected", b)
        return b

    def cancel_booking(self, booking_id: int, caller_id: str) -> Booking:
        _, b = self._owned(booking_id, caller_id, "cancel")
        if not can_transition(b.status, BookingStatus.CANCELLED.value):
            raise StateError(f"Cannot cancel {b.status} bookings")
        if as_utc(b.end_time) <= self.now():
            raise StateError("Cannot cancel bookings that have already ended")

        b.status = BookingStatus.CANCELLED.value
        b = self.repo.save(b)

        logger.info("[booking] cancelled #%s by %s", b.id, caller_id)
        self._emit("BookingCancelled", b)
        return b

    # --- scheduler-driven ------------------------------------------

    def activate_booking(self, booking_id: int) -> Booking:
        b = self._booking(booking_id)
        ensure_transition(b.status, BookingStatus.ACTIVE.value)
        b.status = BookingStatus.ACTIVE.value
        b.actual_start_time = self.now()
        b = self.repo.save(b)
        self._emit("BookingActivated", b)
        return b

    def complete_booking(self, booking_id: int) -> Booking:
        b = self._booking(booking_id)
        ensure_transition(b.status, BookingStatus.COMPLETED.value)
        b.status = BookingStatus.COMPLETED.value
        b.actual_end_time = self.now()
        b = self.repo.save(b)
        self._emit("BookingCompleted", b)
        return b
