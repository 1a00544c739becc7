# services/observability.py
"""
Structured event logging to the events table.

Events raised while a job runs carry the job's id and trace id in their
own columns, so one trace can be followed across retries, deferrals
and hand-offs to follow-up jobs.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.event import Event
from models.job import Job

logger = logging.getLogger(__name__)


def job_context(job: Job) -> dict:
    return {
        "job_id": str(job.id),
        "job_type": job.job_type.value,
        "queue": job.queue.value,
        "attempt": job.attempts,
        "trace_id": str(job.trace_id),
    }


async def log_event(
    db: AsyncSession,
    event_type: str,
    level: str = "info",
    source: str | None = None,
    message: str | None = None,
    metadata: dict | None = None,
    *,
    job: Job | None = None,
) -> Event:
    """
    Persist a structured event log entry.

    With `job`, the entry is tied to that job and its metadata starts
    from the job's context; keys in `metadata` win over it.
    """
    if job is not None:
        metadata = {**job_context(job), **(metadata or {})}

    event = Event(
        event_type=event_type,
        level=level,
        source=source,
        message=message,
        metadata_=metadata,
        job_id=job.id if job is not None else None,
        trace_id=job.trace_id if job is not None else None,
    )
    db.add(event)
    await db.flush()
    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        "[%s] %s: %s trace=%s",
        event_type,
        message or "",
        metadata or {},
        event.trace_id,
    )
    return event


async def events_for_trace(db: AsyncSession, trace_id) -> list[Event]:
    """Every event recorded under one trace, oldest first."""
    result = await db.execute(
        select(Event).where(Event.trace_id == trace_id).order_by(Event.created_at)
    )
    return list(result.scalars().all())
