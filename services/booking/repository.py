# ============================================================
# repository.py — Data access for the Booking Service
# ------------------------------------------------------------
# Repository pattern over the SQLModel session. Isolates every
# query the admission pipeline needs from the service and API
# layers. Transaction boundaries stay with the caller: create()
# and save() commit, the read helpers never do.
# ============================================================
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlmodel import Session, select

from booking.models import (
    CONSUMED_STATUSES,
    HOLDING_STATUSES,
    Booking,
    GroupResourceAccess,
    LimitTargetKind,
    ProcessedMessage,
    Resource,
    ResourceLimit,
    User,
    UserGroup,
    as_utc,
    utcnow,
)


class BookingRepository:
    def __init__(self, session: Session):
        self.session = session

    # --- bookings ------------------------------------------------

    def create(self, b: Booking) -> Booking:
        self.session.add(b)
        self.session.commit()
        self.session.refresh(b)
        return b

    def save(self, b: Booking) -> Booking:
        b.updated_at = utcnow()
        self.session.add(b)
        self.session.commit()
        self.session.refresh(b)
        return b

    def get(self, booking_id: int) -> Optional[Booking]:
        return self.session.exec(select(Booking).where(Booking.id == booking_id)).first()

    def find_overlapping(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[int] = None,
    ) -> List[Booking]:
        # strict inequalities: a booking ending exactly at `start`
        # (or starting exactly at `end`) is adjacent, not overlapping
        start, end = as_utc(start), as_utc(end)
        stmt = select(Booking).where(
            Booking.resource_id == resource_id,
            Booking.status.in_(HOLDING_STATUSES),
            Booking.start_time < end,
            Booking.end_time > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(Booking.id != exclude_id)
        return list(self.session.exec(stmt).all())

    def holding_bookings_for_users(self, user_ids: Iterable[str], since: datetime) -> List[Booking]:
        """Capacity-holding bookings of the given users starting at or after `since`."""
        ids = list(user_ids)
        if not ids:
            return []
        since = as_utc(since)
        stmt = select(Booking).where(
            Booking.user_id.in_(ids),
            Booking.status.in_(HOLDING_STATUSES),
            Booking.start_time >= since,
        )
        return list(self.session.exec(stmt).all())

    def overlapping_for_users(self, user_ids: Iterable[str], start: datetime, end: datetime) -> List[Booking]:
        ids = list(user_ids)
        if not ids:
            return []
        start, end = as_utc(start), as_utc(end)
        stmt = select(Booking).where(
            Booking.user_id.in_(ids),
            Booking.status.in_(HOLDING_STATUSES),
            Booking.start_time < end,
            Booking.end_time > start,
        )
        return list(self.session.exec(stmt).all())

    def list_bookings(
        self,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Booking]:
        """Bookings lying entirely inside [start, end], latest start first."""
        stmt = select(Booking)
        if user_id is not None:
            stmt = stmt.where(Booking.user_id == user_id)
        if resource_id is not None:
            stmt = stmt.where(Booking.resource_id == resource_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        if start is not None:
            stmt = stmt.where(Booking.start_time >= as_utc(start))
        if end is not None:
            stmt = stmt.where(Booking.end_time <= as_utc(end))
        stmt = stmt.order_by(Booking.start_time.desc(), Booking.id.desc()).offset(offset).limit(limit)
        return list(self.session.exec(stmt).all())

    def consumed_bookings(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        resource_id: Optional[str] = None,
    ) -> List[Booking]:
        stmt = select(Booking).where(
            Booking.user_id == user_id,
            Booking.status.in_(CONSUMED_STATUSES),
            Booking.start_time >= as_utc(start),
            Booking.end_time <= as_utc(end),
        )
        if resource_id is not None:
            stmt = stmt.where(Booking.resource_id == resource_id)
        return list(self.session.exec(stmt).all())

    # --- resources & users -----------------------------------------

    def get_resource(self, resource_id: str, lock: bool = False) -> Optional[Resource]:
        stmt = select(Resource).where(Resource.id == resource_id)
        if lock:
            # row lock held until the admission transaction commits;
            # refresh the identity-mapped instance from the locked row
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.exec(stmt).first()

    def get_user(self, user_id: str) -> Optional[User]:
        return self.session.exec(select(User).where(User.id == user_id)).first()

    def group_ids_for_user(self, user_id: str) -> List[str]:
        rows = self.session.exec(select(UserGroup.group_id).where(UserGroup.user_id == user_id))
        return list(rows.all())

    def member_ids_for_group(self, group_id: str) -> List[str]:
        rows = self.session.exec(select(UserGroup.user_id).where(UserGroup.group_id == group_id))
        return list(rows.all())

    def access_rules(self, resource_id: str, group_ids: Iterable[str]) -> List[GroupResourceAccess]:
        ids = list(group_ids)
        if not ids:
            return []
        stmt = select(GroupResourceAccess).where(
            GroupResourceAccess.resource_id == resource_id,
            GroupResourceAccess.group_id.in_(ids),
        )
        return list(self.session.exec(stmt).all())

    # --- limits ----------------------------------------------------

    def active_limits(self, user_id: str, group_ids: Iterable[str], resource_id: str) -> List[ResourceLimit]:
        """Stored limits that apply to this user on this resource (or on all resources)."""
        ids = list(group_ids)
        target = and_(
            ResourceLimit.target_kind == LimitTargetKind.USER.value,
            ResourceLimit.target_id == user_id,
        )
        if ids:
            target = or_(
                target,
                and_(
                    ResourceLimit.target_kind.in_(
                        [LimitTargetKind.GROUP.value, LimitTargetKind.GROUP_PER_PERSON.value]
                    ),
                    ResourceLimit.target_id.in_(ids),
                ),
            )
        stmt = select(ResourceLimit).where(
            ResourceLimit.is_active == True,  # noqa: E712
            or_(ResourceLimit.resource_id == resource_id, ResourceLimit.resource_id.is_(None)),
            target,
        )
        return list(self.session.exec(stmt).all())

    # --- consumer bookkeeping --------------------------------------

    def already_processed(self, mid: str) -> bool:
        return self.session.exec(
            select(ProcessedMessage).where(ProcessedMessage.message_id == mid)
        ).first() is not None

    def mark_processed(self, mid: str):
        self.session.add(ProcessedMessage(message_id=mid))
        self.session.commit()
