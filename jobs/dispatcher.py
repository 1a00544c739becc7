# jobs/dispatcher.py
"""
Claims jobs in queue-priority order and runs their handlers.

One Dispatcher is one worker slot. Several slots in a process share the
same permit pools, so a ceiling-bound queue is capped per process no
matter how many slots are polling.
"""
from __future__ import annotations

import asyncio
import logging
import traceback

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.app.config import get_settings
from jobs.errors import BudgetExceededError, JobDeferred, PermanentJobError
from jobs.handlers import HANDLERS, Handler
from jobs.permits import PermitPool
from jobs.queue import claim_next, complete_job, defer_job, fail_job
from jobs.registry import JobQueue, JobType, queues_by_priority
from models.job import Job, JobErrorKind, JobStatus
from services.metrics import JobMetrics
from services.metrics import metrics as default_metrics
from services.observability import log_event

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 4000


def format_error(exc: BaseException) -> str:
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    text = f"{type(exc).__name__}: {exc}\n{tb}"
    return text[:MAX_ERROR_CHARS]


class Dispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker_id: str,
        permit_pools: dict[JobQueue, PermitPool] | None = None,
        handlers: dict[JobType, Handler] | None = None,
        metrics: JobMetrics | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.worker_id = worker_id
        self.permit_pools = permit_pools if permit_pools is not None else {}
        self.handlers = handlers if handlers is not None else HANDLERS
        self.metrics = metrics or default_metrics

    def _reserve_permits(self) -> tuple[list[JobQueue], list[JobQueue]]:
        """Returns (eligible queues, queues whose permit we now hold)."""
        eligible: list[JobQueue] = []
        held: list[JobQueue] = []
        for queue in queues_by_priority():
            pool = self.permit_pools.get(queue)
            if pool is None:
                eligible.append(queue)
            elif pool.try_acquire():
                eligible.append(queue)
                held.append(queue)
            else:
                logger.debug("Worker %s skipping %s: no permits free", self.worker_id, queue.value)
        return eligible, held

    async def run_once(self) -> bool:
        """
        One dispatch cycle. Returns True if a job was claimed and run.
        Storage errors from the claim propagate; handler errors never do.
        """
        eligible, held = self._reserve_permits()
        try:
            async with self.session_factory() as db:
                job = await claim_next(db, self.worker_id, eligible)
                await db.commit()

            # Keep only the permit for the queue we actually got work from.
            for queue in list(held):
                if job is None or queue != job.queue:
                    self.permit_pools[queue].release()
                    held.remove(queue)

            if job is None:
                return False

            await self._execute(job)
            return True
        finally:
            for queue in held:
                self.permit_pools[queue].release()

    async def _execute(self, job: Job) -> None:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            await self._resolve_failure(
                job,
                f"No handler registered for {job.job_type.value}",
                retry=False,
                kind=JobErrorKind.UNKNOWN_TYPE,
            )
            return

        try:
            async with self.session_factory() as db:
                try:
                    result = await handler(db, dict(job.payload or {}))
                    await db.commit()
                except Exception:
                    # Revert any partial writes from the handler
                    await db.rollback()
                    raise
        except JobDeferred as exc:
            await self._resolve_deferral(job, exc)
        except BudgetExceededError as exc:
            await self._resolve_failure(job, str(exc), retry=False, kind=JobErrorKind.BUDGET)
        except PermanentJobError as exc:
            await self._resolve_failure(job, format_error(exc), retry=False, kind=JobErrorKind.PERMANENT)
        except Exception as exc:
            logger.warning(
                "Job %s [%s] raised %s trace=%s",
                job.id,
                job.job_type.value,
                type(exc).__name__,
                job.trace_id,
            )
            await self._resolve_failure(job, format_error(exc), retry=True)
        else:
            await self._resolve_success(job, result)

    async def _resolve_success(self, job: Job, result: dict | None) -> None:
        async with self.session_factory() as db:
            done = await complete_job(db, job.id, result, worker_id=self.worker_id)
            await db.commit()
        if done:
            self.metrics.increment("jobs_succeeded_total", job_type=job.job_type.value)

    async def _resolve_failure(
        self,
        job: Job,
        error: str,
        *,
        retry: bool,
        kind: JobErrorKind | None = None,
    ) -> None:
        async with self.session_factory() as db:
            status = await fail_job(db, job.id, error, retry=retry, kind=kind, worker_id=self.worker_id)
            if status is not None:
                dead = status == JobStatus.DEAD
                # fail_job decides the kind when retries run out
                row = await db.get(Job, job.id)
                await log_event(
                    db,
                    "job_dead" if dead else "job_failed",
                    "error" if dead else "warning",
                    source="worker",
                    message=error.splitlines()[0] if error else None,
                    metadata={"error_kind": row.error_kind.value if row.error_kind else None},
                    job=job,
                )
            await db.commit()

        if status is None:
            return
        self.metrics.increment("jobs_failed_total", job_type=job.job_type.value)
        if status == JobStatus.DEAD:
            self.metrics.increment("jobs_dead_total", job_type=job.job_type.value)

    async def _resolve_deferral(self, job: Job, exc: JobDeferred) -> None:
        async with self.session_factory() as db:
            deferred = await defer_job(
                db,
                job.id,
                exc.delay_seconds,
                exc.reason,
                worker_id=self.worker_id,
            )
            if deferred:
                await log_event(
                    db,
                    "job_deferred",
                    "info",
                    source="worker",
                    message=exc.reason,
                    metadata={"delay_seconds": exc.delay_seconds},
                    job=job,
                )
            await db.commit()
        if deferred:
            self.metrics.increment("jobs_deferred_total", job_type=job.job_type.value)

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        settings = get_settings()
        stop = stop or asyncio.Event()
        logger.info(
            "Worker %s starting (poll=%.1fs)",
            self.worker_id,
            settings.worker_poll_interval,
        )

        while not stop.is_set():
            try:
                claimed = await self.run_once()
            except Exception as exc:
                logger.exception("Worker %s loop error: %s", self.worker_id, exc)
                await sleep_or_stop(stop, settings.worker_error_backoff)
                continue

            if not claimed:
                await sleep_or_stop(stop, settings.worker_poll_interval)

        logger.info("Worker %s stopped", self.worker_id)


async def sleep_or_stop(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
