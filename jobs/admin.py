# jobs/admin.py
"""
Operator queries over the job table: depth, dead letters, manual re-enqueue.
"""
from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobs.queue import enqueue
from jobs.registry import JobQueue
from models.job import Job, JobErrorKind, JobStatus

logger = logging.getLogger(__name__)


class JobNotFound(Exception):
    pass


class JobNotDead(Exception):
    pass


async def queue_depths(db: AsyncSession) -> dict[str, int]:
    """Pending jobs per queue, including ones scheduled for later."""
    rows = await db.execute(
        select(Job.queue, func.count(Job.id))
        .where(Job.status == JobStatus.PENDING)
        .group_by(Job.queue)
    )
    counts = {queue: count for queue, count in rows.all()}
    return {queue.value: counts.get(queue, 0) for queue in JobQueue}


async def dead_letter_counts(db: AsyncSession) -> dict[str, int]:
    rows = await db.execute(
        select(Job.error_kind, func.count(Job.id))
        .where(Job.status == JobStatus.DEAD)
        .group_by(Job.error_kind)
    )
    counts = {kind: count for kind, count in rows.all()}
    return {kind.value: counts.get(kind, 0) for kind in JobErrorKind}


async def list_dead_jobs(
    db: AsyncSession,
    kind: JobErrorKind | None = None,
    limit: int = 50,
) -> list[Job]:
    stmt = select(Job).where(Job.status == JobStatus.DEAD)
    if kind is not None:
        stmt = stmt.where(Job.error_kind == kind)
    stmt = stmt.order_by(Job.failed_at.desc(), Job.created_at.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def requeue_dead_job(db: AsyncSession, job_id: uuid.UUID) -> Job:
    """
    Inserts a fresh PENDING copy of a dead job. The dead row stays as it
    is so the dead-letter history is kept.
    """
    dead = await db.get(Job, job_id)
    if dead is None:
        raise JobNotFound(str(job_id))
    if dead.status != JobStatus.DEAD:
        raise JobNotDead(f"Job {job_id} is {dead.status.value}")

    job = await enqueue(
        db,
        dead.job_type,
        dict(dead.payload or {}),
        dead.max_attempts,
        queue=dead.queue,
        requeued_from=dead.id,
    )
    logger.info("Requeued dead job %s as %s", dead.id, job.id)
    return job
