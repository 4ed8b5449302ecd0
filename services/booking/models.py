# ============================================================
# models.py — SQLModel data model (Booking Service)
# ------------------------------------------------------------
# Tables owned by this service:
#   1. Booking : a reservation of part (or all) of a resource
#   2. ResourceLimit : usage quotas attached to a user or group
#   3. ProcessedMessage : RabbitMQ messages already handled
# Tables read from the admin side (never written here):
#   Resource, User, Group, UserGroup, GroupResourceAccess
# ============================================================
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import uuid

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # naive values coming back from the DB are stored in UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def _timestamp(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class ResourceStatus(str, Enum):
    AVAILABLE = "available"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class BookingType(str, Enum):
    SHARED = "shared"
    EXCLUSIVE = "exclusive"


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# statuses that hold capacity and count toward quotas
HOLDING_STATUSES = (
    BookingStatus.PENDING.value,
    BookingStatus.APPROVED.value,
    BookingStatus.ACTIVE.value,
)

# statuses reported as consumed time in usage summaries
CONSUMED_STATUSES = (
    BookingStatus.APPROVED.value,
    BookingStatus.ACTIVE.value,
    BookingStatus.COMPLETED.value,
)


class BookingPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AccessType(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


class LimitTargetKind(str, Enum):
    USER = "user"
    GROUP = "group"
    GROUP_PER_PERSON = "group_per_person"


# ------------------------------------------------------------
# Collaborator records
# ------------------------------------------------------------
class User(SQLModel, table=True):
    id: str = Field(default_factory=_uuid, primary_key=True)
    name: Optional[str] = None
    email: str
    role: str = UserRole.USER.value
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


class Group(SQLModel, table=True):
    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    is_active: bool = True


class UserGroup(SQLModel, table=True):
    user_id: str = Field(foreign_key="user.id", primary_key=True)
    group_id: str = Field(foreign_key="group.id", primary_key=True)


# ------------------------------------------------------------
# Resource
# ------------------------------------------------------------
# A capacity pool (GPU cards, cores, GB...). If is_indivisible,
# min/max allocation are ignored and every booking takes the
# whole total_capacity.
# ------------------------------------------------------------
class Resource(SQLModel, table=True):
    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    type: str
    description: Optional[str] = None
    location: Optional[str] = None
    total_capacity: int = Field(gt=0)
    capacity_unit: str
    is_indivisible: bool = False
    min_allocation: Optional[int] = None
    max_allocation: Optional[int] = None
    status: str = ResourceStatus.AVAILABLE.value
    is_active: bool = True


class GroupResourceAccess(SQLModel, table=True):
    group_id: str = Field(foreign_key="group.id", primary_key=True)
    resource_id: str = Field(foreign_key="resource.id", primary_key=True)
    access_type: str  # allowed | denied


# ------------------------------------------------------------
# Booking
# ------------------------------------------------------------
# Lifecycle: pending -> approved -> active -> completed, with
# cancelled / rejected as early exits (see lifecycle.py).
# Bookings are never deleted, only moved to a terminal status.
# ------------------------------------------------------------
class Booking(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    resource_id: str = Field(foreign_key="resource.id", index=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    title: str
    description: Optional[str] = None
    start_time: datetime = Field(sa_column=_timestamp())
    end_time: datetime = Field(sa_column=_timestamp())
    requested_quantity: int
    allocated_quantity: Optional[int] = None
    booking_type: str
    status: str = Field(default=BookingStatus.PENDING.value, index=True)
    priority: str = BookingPriority.NORMAL.value
    approved_by_id: Optional[str] = None
    approved_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(True))
    rejection_reason: Optional[str] = None
    actual_start_time: Optional[datetime] = Field(default=None, sa_column=_timestamp(True))
    actual_end_time: Optional[datetime] = Field(default=None, sa_column=_timestamp(True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    updated_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(True))

    @property
    def held_quantity(self) -> int:
        # what this booking takes out of the resource
        if self.allocated_quantity is not None:
            return self.allocated_quantity
        return self.requested_quantity

    @property
    def duration_hours(self) -> float:
        return (as_utc(self.end_time) - as_utc(self.start_time)).total_seconds() / 3600


# ------------------------------------------------------------
# ResourceLimit
# ------------------------------------------------------------
# resource_id = None means the limit applies to every resource.
# target_kind tells whether target_id is a user or a group.
# ------------------------------------------------------------
class ResourceLimit(SQLModel, table=True):
    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    description: Optional[str] = None
    target_kind: str = LimitTargetKind.USER.value
    target_id: str = Field(index=True)
    resource_id: Optional[str] = Field(default=None, foreign_key="resource.id")
    max_hours_per_day: Optional[int] = None
    max_hours_per_week: Optional[int] = None
    max_hours_per_month: Optional[int] = None
    max_concurrent_bookings: Optional[int] = None
    max_bookings_per_day: Optional[int] = None
    allowed_booking_types: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    priority: int = 0
    is_active: bool = True


class ProcessedMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True, unique=True)
    processed_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
