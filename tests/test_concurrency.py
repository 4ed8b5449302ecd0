"""Concurrent admission against one resource never over-allocates."""
import threading

import pytest
from sqlmodel import Session, SQLModel, create_engine

from booking.errors import ConflictError
from booking.locking import ResourceLocks
from booking.service import BookingService

from conftest import NOW, add_resource, add_user, at

WORKERS = 6


@pytest.fixture
def file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'bookings.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


def test_concurrent_requests_respect_capacity(file_engine, settings):
    with Session(file_engine) as s:
        resource_id = add_resource(s).id
        user_ids = [add_user(s, name=f"user{i}").id for i in range(WORKERS)]

    locks = ResourceLocks()
    barrier = threading.Barrier(WORKERS)
    admitted, conflicts, failures = [], [], []

    def book(user_id):
        with Session(file_engine) as s:
            svc = BookingService(s, settings, locks=locks, now=lambda: NOW)
            barrier.wait()
            try:
                b = svc.create_booking(user_id, resource_id, "job", at(15, 10), at(15, 12), 50, "shared")
                admitted.append(b.id)
            except ConflictError:
                conflicts.append(user_id)
            except Exception as e:  # surfaced by the assertion below
                failures.append(e)

    threads = [threading.Thread(target=book, args=(uid,)) for uid in user_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert failures == []
    assert len(admitted) == 2
    assert len(conflicts) == WORKERS - 2

    with Session(file_engine) as s:
        report = BookingService(s, settings).check_available_capacity(resource_id, at(15, 10), at(15, 12))
    assert report.current_allocation == 100
    assert report.available_capacity == 0



def test_lock_registry_hands_out_one_lock_per_resource():
    locks = ResourceLocks()
    assert locks._lock_for("r1") is locks._lock_for("r1")
    assert locks._lock_for("r1") is not locks._lock_for("r2")

    with locks.hold("r1"):
        assert not locks._lock_for("r1").acquire(blocking=False)
        other = locks._lock_for("r2")
        assert other.acquire(blocking=False)
        other.release()
    assert locks._lock_for("r1").acquire(blocking=False)
