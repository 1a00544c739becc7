# jobs/permits.py
from __future__ import annotations

import logging
import threading

from jobs.registry import JobQueue

logger = logging.getLogger(__name__)


class PermitPool:
    """
    Non-blocking counting semaphore for one queue's external resource.

    Process-local. A permit held by a worker that crashed is not tracked
    here; the job row's lock timeout takes care of that case.
    """

    def __init__(self, capacity: int, name: str = "permits") -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.name = name
        self._acquired = 0
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            if self._acquired >= self.capacity:
                return False
            self._acquired += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._acquired == 0:
                raise RuntimeError(f"{self.name}: release() without a held permit")
            self._acquired -= 1

    def available(self) -> int:
        with self._lock:
            return self.capacity - self._acquired

    def acquired(self) -> int:
        with self._lock:
            return self._acquired

    def __repr__(self) -> str:
        return f"PermitPool({self.name!r}, {self.available()}/{self.capacity} free)"


def build_permit_pools() -> dict[JobQueue, PermitPool]:
    """One pool per queue that carries a concurrency ceiling."""
    pools = {
        q: PermitPool(q.concurrency_ceiling, name=q.value)
        for q in JobQueue
        if q.concurrency_ceiling is not None
    }
    for queue, pool in pools.items():
        logger.info("Permit pool %s initialised with %d permits", queue.value, pool.capacity)
    return pools
