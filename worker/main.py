# worker/main.py
"""
Background worker: runs dispatcher slots plus the lock reclaimer and
metrics collector until SIGINT/SIGTERM.
"""
from __future__ import annotations

import asyncio
import logging
import os
import platform
import signal
import sys
import uuid

# Ensure project root is on path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from api.app.config import get_settings
from db.session import get_session_factory
from jobs.dispatcher import Dispatcher, sleep_or_stop
from jobs.permits import build_permit_pools
from jobs.queue import reclaim_stale_locks
from services.metrics import collect_gauges, metrics

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")


WORKER_ID = f"worker-{platform.node()}-{uuid.uuid4().hex[:8]}"


async def reclaim_loop(session_factory, stop: asyncio.Event) -> None:
    settings = get_settings()
    while not stop.is_set():
        try:
            async with session_factory() as db:
                count = await reclaim_stale_locks(db, settings.job_lock_timeout_seconds)
                await db.commit()
            if count:
                logger.warning("Reclaimed %d stale job locks", count)
        except Exception as exc:
            logger.exception("Lock reclaim failed: %s", exc)
        await sleep_or_stop(stop, settings.worker_reclaim_interval)


async def metrics_loop(session_factory, pools, stop: asyncio.Event) -> None:
    settings = get_settings()
    while not stop.is_set():
        try:
            async with session_factory() as db:
                await collect_gauges(db, metrics, pools)
        except Exception as exc:
            logger.exception("Metrics collection failed: %s", exc)
        await sleep_or_stop(stop, settings.worker_metrics_interval)


async def run_worker() -> None:
    settings = get_settings()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            pass

    session_factory = get_session_factory()
    pools = build_permit_pools()
    slots = [
        Dispatcher(session_factory, f"{WORKER_ID}-{n}", permit_pools=pools)
        for n in range(settings.worker_concurrency)
    ]
    logger.info(
        "Worker %s starting %d slots, permits=%s",
        WORKER_ID,
        len(slots),
        {queue.value: pool.capacity for queue, pool in pools.items()},
    )

    await asyncio.gather(
        *(slot.run_forever(stop) for slot in slots),
        reclaim_loop(session_factory, stop),
        metrics_loop(session_factory, pools, stop),
    )
    logger.info("Worker %s shut down; metrics=%s", WORKER_ID, metrics.snapshot())


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
