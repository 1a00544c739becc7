# services/metrics.py
"""
In-process job metrics.

Counters and gauges are kept in memory and logged; shipping them to a
collector is left to whatever scrapes the worker.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter

from sqlalchemy.ext.asyncio import AsyncSession

from jobs.admin import queue_depths
from jobs.permits import PermitPool
from jobs.registry import JobQueue
from services.ai_usage import load_ledger

logger = logging.getLogger(__name__)

TagKey = tuple[tuple[str, str], ...]


def _key(tags: dict[str, str]) -> TagKey:
    return tuple(sorted(tags.items()))


class JobMetrics:
    def __init__(self) -> None:
        self._counters: Counter[tuple[str, TagKey]] = Counter()
        self._gauges: dict[tuple[str, TagKey], float] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, amount: int = 1, **tags: str) -> None:
        with self._lock:
            self._counters[(name, _key(tags))] += amount

    def gauge(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._gauges[(name, _key(tags))] = value

    def counter_value(self, name: str, **tags: str) -> int:
        with self._lock:
            return self._counters.get((name, _key(tags)), 0)

    def gauge_value(self, name: str, **tags: str) -> float | None:
        with self._lock:
            return self._gauges.get((name, _key(tags)))

    def snapshot(self) -> dict[str, list[dict]]:
        with self._lock:
            counters = [
                {"name": name, "tags": dict(tags), "value": value}
                for (name, tags), value in sorted(self._counters.items())
            ]
            gauges = [
                {"name": name, "tags": dict(tags), "value": value}
                for (name, tags), value in sorted(self._gauges.items())
            ]
        return {"counters": counters, "gauges": gauges}


metrics = JobMetrics()


async def collect_gauges(
    db: AsyncSession,
    sink: JobMetrics,
    pools: dict[JobQueue, PermitPool],
) -> None:
    depths = await queue_depths(db)
    for queue, depth in depths.items():
        sink.gauge("jobs_queue_depth", depth, queue=queue)

    for queue, pool in pools.items():
        available = pool.available()
        sink.gauge("permits_available", available, queue=queue.value)
        if available == 0:
            logger.warning("Permit pool %s exhausted (%d/%d in use)", queue.value, pool.capacity, pool.capacity)

    ledger = await load_ledger(db)
    sink.gauge("ai_budget_percent_used", round(ledger.percent_used, 2))

    logger.info(
        "Metrics: depth=%s budget=%.1f%%",
        depths,
        ledger.percent_used,
    )
