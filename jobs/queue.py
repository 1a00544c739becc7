# jobs/queue.py
from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from jobs.registry import JobQueue, JobType
from models.base import utcnow
from models.job import Job, JobErrorKind, JobStatus

logger = logging.getLogger(__name__)

# How many times claim_next re-selects after losing a compare-and-swap race.
CLAIM_RETRIES = 5

_QUEUE_PRIORITY = case(
    *[(Job.queue == q, q.priority) for q in JobQueue],
    else_=1000,
)


def compute_backoff(
    attempt: int,
    base_seconds: float | None = None,
    max_seconds: float | None = None,
) -> float:
    """
    Exponential backoff with +/-25% jitter: 2**attempt * base,
    capped at max_seconds.
    """
    settings = get_settings()
    base = settings.job_backoff_base_seconds if base_seconds is None else base_seconds
    cap = settings.job_backoff_max_seconds if max_seconds is None else max_seconds

    jitter = 0.75 + random.random() * 0.5
    return min((2 ** attempt) * base * jitter, cap)


async def enqueue(
    db: AsyncSession,
    job_type: JobType | str,
    payload: dict | None = None,
    max_attempts: int | None = None,
    *,
    queue: JobQueue | str | None = None,
    delay: float = 0.0,
    requeued_from: uuid.UUID | None = None,
    now: datetime | None = None,
) -> Job:
    job_type = JobType(job_type)
    queue = JobQueue(queue) if queue is not None else job_type.queue
    if max_attempts is None:
        max_attempts = get_settings().job_default_max_attempts
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if delay < 0:
        raise ValueError("delay must be >= 0")

    now = now or utcnow()
    job = Job(
        queue=queue,
        job_type=job_type,
        payload=payload or {},
        status=JobStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts,
        next_run_at=now + timedelta(seconds=delay),
        requeued_from=requeued_from,
    )
    db.add(job)
    await db.flush()
    logger.info(
        "Enqueued job %s [%s] queue=%s delay=%.0fs trace=%s",
        job.id,
        job.job_type.value,
        job.queue.value,
        delay,
        job.trace_id,
    )
    return job


async def _compare_and_lock(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str,
    now: datetime,
) -> bool:
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PENDING)
        .values(
            status=JobStatus.LOCKED,
            locked_by=worker_id,
            locked_at=now,
            attempts=Job.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def claim_next(
    db: AsyncSession,
    worker_id: str,
    queues: Iterable[JobQueue] | None = None,
    *,
    now: datetime | None = None,
) -> Job | None:
    """
    Claims the next runnable job across the given queues.

    Candidates are ordered by queue priority, then next_run_at. The row is
    taken with a conditional UPDATE on status, so of any number of
    concurrent claimers exactly one wins; SKIP LOCKED keeps PostgreSQL
    workers from queueing up behind each other on the same row.
    """
    queues = list(JobQueue) if queues is None else list(queues)
    if not queues:
        return None

    now = now or utcnow()
    stmt = (
        select(Job)
        .where(
            Job.status == JobStatus.PENDING,
            Job.next_run_at <= now,
            Job.queue.in_(queues),
        )
        .order_by(_QUEUE_PRIORITY, Job.next_run_at.asc(), Job.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )

    for _ in range(CLAIM_RETRIES):
        job = (await db.execute(stmt)).scalar_one_or_none()
        if job is None:
            return None

        if await _compare_and_lock(db, job.id, worker_id, now):
            await db.refresh(job)
            logger.info(
                "Worker %s claimed job %s [%s] queue=%s attempt=%d/%d trace=%s",
                worker_id,
                job.id,
                job.job_type.value,
                job.queue.value,
                job.attempts,
                job.max_attempts,
                job.trace_id,
            )
            return job

        logger.debug("Worker %s lost claim race for job %s", worker_id, job.id)

    return None


async def _load_locked(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str | None,
    action: str,
) -> Job | None:
    job = await db.get(Job, job_id, with_for_update=True, populate_existing=True)
    if job is None:
        logger.warning("Cannot %s job %s: not found", action, job_id)
        return None
    if job.status != JobStatus.LOCKED:
        logger.warning("Cannot %s job %s: status is %s", action, job_id, job.status.value)
        return None
    if worker_id is not None and job.locked_by != worker_id:
        logger.warning(
            "Cannot %s job %s: lock held by %s, not %s",
            action,
            job_id,
            job.locked_by,
            worker_id,
        )
        return None
    return job


def _clear_lock(job: Job) -> None:
    job.locked_by = None
    job.locked_at = None


async def complete_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    result: dict | None = None,
    *,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    job = await _load_locked(db, job_id, worker_id, "complete")
    if job is None:
        return False

    job.status = JobStatus.SUCCEEDED
    job.result = result or {}
    job.last_error = None
    job.error_kind = None
    job.completed_at = now or utcnow()
    _clear_lock(job)
    await db.flush()

    logger.info("Job %s completed trace=%s", job_id, job.trace_id)
    return True


async def fail_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    error: str,
    *,
    retry: bool = True,
    kind: JobErrorKind | None = None,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> JobStatus | None:
    """
    Schedules retry with backoff or moves the job to DEAD.
    No sleeping here.
    """
    job = await _load_locked(db, job_id, worker_id, "fail")
    if job is None:
        return None

    now = now or utcnow()
    job.last_error = error
    _clear_lock(job)

    if retry and job.attempts < job.max_attempts:
        backoff_seconds = compute_backoff(job.attempts)
        job.status = JobStatus.PENDING
        job.next_run_at = now + timedelta(seconds=backoff_seconds)

        logger.warning(
            "Job %s retry %d/%d in %.0fs trace=%s",
            job.id,
            job.attempts,
            job.max_attempts,
            backoff_seconds,
            job.trace_id,
        )
    else:
        job.status = JobStatus.DEAD
        job.error_kind = kind or (JobErrorKind.FAILURE if retry else JobErrorKind.PERMANENT)
        job.failed_at = now

        logger.error(
            "Job %s dead (%s) after %d attempts trace=%s",
            job.id,
            job.error_kind.value,
            job.attempts,
            job.trace_id,
        )

    await db.flush()
    return job.status


async def defer_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    delay_seconds: float,
    reason: str,
    *,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Re-schedules a claimed job without charging it an attempt."""
    job = await _load_locked(db, job_id, worker_id, "defer")
    if job is None:
        return False

    now = now or utcnow()
    job.status = JobStatus.PENDING
    job.next_run_at = now + timedelta(seconds=delay_seconds)
    job.attempts = max(job.attempts - 1, 0)
    job.last_error = f"deferred: {reason}"
    _clear_lock(job)
    await db.flush()

    logger.info(
        "Job %s deferred %.0fs (%s) trace=%s",
        job.id,
        delay_seconds,
        reason,
        job.trace_id,
    )
    return True


async def reclaim_stale_locks(
    db: AsyncSession,
    timeout_seconds: float | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """
    Releases jobs whose worker has held the lock longer than the timeout.

    The claim already counted the abandoned attempt, so a job that was on
    its last attempt goes DEAD instead of back to PENDING.
    """
    if timeout_seconds is None:
        timeout_seconds = get_settings().job_lock_timeout_seconds
    now = now or utcnow()
    cutoff = now - timedelta(seconds=timeout_seconds)
    stale = (Job.status == JobStatus.LOCKED, Job.locked_at < cutoff)

    exhausted = await db.execute(
        update(Job)
        .where(*stale, Job.attempts >= Job.max_attempts)
        .values(
            status=JobStatus.DEAD,
            error_kind=JobErrorKind.LOCK_TIMEOUT,
            last_error=f"Lock expired after {timeout_seconds:.0f}s on final attempt",
            failed_at=now,
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    revived = await db.execute(
        update(Job)
        .where(*stale)
        .values(
            status=JobStatus.PENDING,
            next_run_at=now,
            last_error=f"Lock expired after {timeout_seconds:.0f}s; reclaimed",
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.flush()

    dead_count = exhausted.rowcount or 0
    revived_count = revived.rowcount or 0
    if dead_count or revived_count:
        logger.warning(
            "Reclaimed stale locks: %d back to pending, %d dead (timeout=%.0fs)",
            revived_count,
            dead_count,
            timeout_seconds,
        )
    return dead_count + revived_count
