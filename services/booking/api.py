# ============================================================
# Booking API Router
# ------------------------------------------------------------
# REST endpoints over BookingService: capacity lookup, limit
# preview, listing and usage summaries, and the booking
# lifecycle (create, update, approve, reject, cancel). The
# caller is identified by the X-User-Id header set by the
# upstream auth gateway.
# ============================================================
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlmodel import Session, SQLModel, create_engine

from booking.config import settings
from booking.models import Booking, BookingPriority, as_utc
from booking.service import BookingService

# SQLite (tests, local runs) needs the connection shared across threads
_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
router = APIRouter()


# FastAPI dependency: one DB session per request, auto-closed
def get_session():
    with Session(engine) as s:
        yield s


def get_service(s: Session = Depends(get_session)) -> BookingService:
    return BookingService(s, settings)


# ------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------
class BookingCreate(SQLModel):
    resource_id: str
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    requested_quantity: int
    booking_type: str
    priority: str = BookingPriority.NORMAL.value


class BookingUpdate(SQLModel):
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    requested_quantity: Optional[int] = None
    booking_type: Optional[str] = None
    priority: Optional[str] = None


class ValidateRequest(SQLModel):
    user_id: Optional[str] = None
    resource_id: str
    start_time: datetime
    end_time: datetime
    booking_type: str


class ApproveRequest(SQLModel):
    allocated_quantity: Optional[int] = None


class RejectRequest(SQLModel):
    reason: str


def booking_out(b: Booking) -> dict:
    def iso(dt):
        return as_utc(dt).isoformat() if dt else None

    return {
        "id": b.id,
        "resource_id": b.resource_id,
        "user_id": b.user_id,
        "title": b.title,
        "description": b.description,
        "start_time": iso(b.start_time),
        "end_time": iso(b.end_time),
        "requested_quantity": b.requested_quantity,
        "allocated_quantity": b.allocated_quantity,
        "booking_type": b.booking_type,
        "status": b.status,
        "priority": b.priority,
        "approved_by_id": b.approved_by_id,
        "approved_at": iso(b.approved_at),
        "rejection_reason": b.rejection_reason,
        "created_at": iso(b.created_at),
        "updated_at": iso(b.updated_at),
    }


# ------------------------------------------------------------
# GET /v1/resources/{id}/capacity — free capacity over a window
# ------------------------------------------------------------
@router.get("/v1/resources/{resource_id}/capacity")
def resource_capacity(resource_id: str, start: datetime, end: datetime, svc: BookingService = Depends(get_service)):
    return svc.check_available_capacity(resource_id, start, end).to_dict()


# ------------------------------------------------------------
# POST /v1/bookings/validate — limit preview, no side effect
# ------------------------------------------------------------
# Same evaluation as the one enforced at creation time.
# ------------------------------------------------------------
@router.post("/v1/bookings/validate")
def validate_booking(body: ValidateRequest, x_user_id: str = Header(...), svc: BookingService = Depends(get_service)):
    result = svc.validate_booking(
        body.user_id or x_user_id,
        body.resource_id,
        body.start_time,
        body.end_time,
        body.booking_type,
        caller_id=x_user_id,
    )
    return result.to_dict()


@router.post("/v1/bookings", status_code=201)
def create_booking(body: BookingCreate, x_user_id: str = Header(...), svc: BookingService = Depends(get_service)):
    b = svc.create_booking(
        x_user_id,
        body.resource_id,
        body.title,
        body.start_time,
        body.end_time,
        body.requested_quantity,
        body.booking_type,
        body.priority,
        description=body.description,
    )
    return booking_out(b)


# ------------------------------------------------------------
# GET /v1/bookings — own bookings, or everyone's for admins
# ------------------------------------------------------------
@router.get("/v1/bookings")
def list_bookings(
    user_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 20,
    offset: int = 0,
    x_user_id: str = Header(...),
    svc: BookingService = Depends(get_service),
):
    bookings = svc.list_bookings(
        x_user_id,
        user_id=user_id,
        resource_id=resource_id,
        status=status,
        start_time=start,
        end_time=end,
        limit=limit,
        offset=offset,
    )
    return [booking_out(b) for b in bookings]


@router.get("/v1/users/{user_id}/usage")
def user_usage(
    user_id: str,
    resource_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    x_user_id: str = Header(...),
    svc: BookingService = Depends(get_service),
):
    return svc.usage_summary(x_user_id, user_id, resource_id, start, end).to_dict()


@router.get("/v1/bookings/{booking_id}")
def get_booking(booking_id: int, x_user_id: str = Header(...), svc: BookingService = Depends(get_service)):
    return booking_out(svc.get_booking(booking_id, x_user_id))


@router.patch("/v1/bookings/{booking_id}")
def update_booking(
    booking_id: int,
    body: BookingUpdate,
    x_user_id: str = Header(...),
    svc: BookingService = Depends(get_service),
):
    # only the fields the client actually sent
    b = svc.update_booking(booking_id, x_user_id, **body.model_dump(exclude_unset=True))
    return booking_out(b)


# ------------------------------------------------------------
# Admin decisions and cancellation
# ------------------------------------------------------------
@router.post("/v1/bookings/{booking_id}/approve")
def approve_booking(
    booking_id: int,
    body: Optional[ApproveRequest] = None,
    x_user_id: str = Header(...),
    svc: BookingService = Depends(get_service),
):
    allocated = body.allocated_quantity if body else None
    return booking_out(svc.approve_booking(booking_id, x_user_id, allocated))


@router.post("/v1/bookings/{booking_id}/reject")
def reject_booking(
    booking_id: int,
    body: RejectRequest,
    x_user_id: str = Header(...),
    svc: BookingService = Depends(get_service),
):
    return booking_out(svc.reject_booking(booking_id, x_user_id, body.reason))


@router.post("/v1/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: int, x_user_id: str = Header(...), svc: BookingService = Depends(get_service)):
    return booking_out(svc.cancel_booking(booking_id, x_user_id))
