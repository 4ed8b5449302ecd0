"""
Shared fixtures for the booking service tests.

Every test runs against a fresh in-memory SQLite database with
event publication disabled and a frozen clock.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENTS_ENABLED", "false")
os.environ.setdefault("CONSUMER_ENABLED", "false")

from datetime import datetime, timezone

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from booking.config import Settings
from booking.locking import ResourceLocks
from booking.models import Booking, Resource, User
from booking.service import BookingService

# Wednesday; the bookings under test are on Thursday 2026-10-15
NOW = datetime(2026, 10, 14, 8, 0, tzinfo=timezone.utc)


def at(day: int, hour: int = 0, minute: int = 0) -> datetime:
    """A UTC instant in October 2026."""
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


def add_user(session, role="user", name="alice", **kwargs) -> User:
    user = User(name=name, email=f"{name}@example.org", role=role, **kwargs)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def add_resource(session, **kwargs) -> Resource:
    fields = dict(name="A100 pool", type="gpu", total_capacity=100, capacity_unit="GB")
    fields.update(kwargs)
    resource = Resource(**fields)
    session.add(resource)
    session.commit()
    session.refresh(resource)
    return resource


def add_booking(session, resource, user, start, end, quantity, status="approved", **kwargs) -> Booking:
    """Insert a booking directly, bypassing admission."""
    fields = dict(
        resource_id=resource.id,
        user_id=user.id,
        title="existing",
        start_time=start,
        end_time=end,
        requested_quantity=quantity,
        booking_type="shared",
        status=status,
    )
    if status == "approved" and "allocated_quantity" not in kwargs:
        fields["allocated_quantity"] = quantity
    fields.update(kwargs)
    b = Booking(**fields)
    session.add(b)
    session.commit()
    session.refresh(b)
    return b


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        events_enabled=False,
        consumer_enabled=False,
        local_tz="UTC",
        default_max_hours_per_day=24,
        default_max_hours_per_week=40,
        default_max_hours_per_month=120,
    )


@pytest.fixture
def service(session, settings):
    return BookingService(session, settings, locks=ResourceLocks(), now=lambda: NOW)


@pytest.fixture
def user(session):
    return add_user(session)


@pytest.fixture
def other_user(session):
    return add_user(session, name="bob")


@pytest.fixture
def admin(session):
    return add_user(session, role="admin", name="root")


@pytest.fixture
def resource(session):
    return add_resource(session)


@pytest.fixture
def indivisible(session):
    return add_resource(session, name="DGX node", type="server", total_capacity=1,
                        capacity_unit="node", is_indivisible=True)
