# ============================================================
# locking.py — Per-resource admission lock
# ------------------------------------------------------------
# Sync FastAPI endpoints run in a threadpool, so two requests
# for the same resource can race between the capacity read and
# the insert. Admissions for the same resource are serialised
# by a threading.Lock; different resources never wait on each
# other. Across processes the SELECT ... FOR UPDATE taken in
# BookingRepository.get_resource(lock=True) does the same job.
# ============================================================
import threading
from collections import defaultdict
from contextlib import contextmanager


class ResourceLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)

    def _lock_for(self, resource_id: str) -> threading.Lock:
        with self._guard:
            return self._locks[resource_id]

    @contextmanager
    def hold(self, resource_id: str):
        lock = self._lock_for(resource_id)
        with lock:
            yield


resource_locks = ResourceLocks()
