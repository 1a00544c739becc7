# api/app/routes/jobs.py
"""
Operator endpoints for the job queue.
"""
from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_session, require_admin
from api.app.schemas.jobs import DeadJobResponse, QueueDepthResponse, RequeueResponse
from jobs.admin import (
    JobNotDead,
    JobNotFound,
    dead_letter_counts,
    list_dead_jobs,
    queue_depths,
    requeue_dead_job,
)
from models.job import JobErrorKind
from services.observability import log_event

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/jobs",
    tags=["admin-jobs"],
    dependencies=[Depends(require_admin)],
)


@router.get("/depth", response_model=QueueDepthResponse)
async def get_queue_depth(db: AsyncSession = Depends(get_session)):
    return QueueDepthResponse(
        depths=await queue_depths(db),
        dead=await dead_letter_counts(db),
    )


@router.get("/dead", response_model=list[DeadJobResponse])
async def get_dead_jobs(
    kind: JobErrorKind | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
):
    jobs = await list_dead_jobs(db, kind=kind, limit=limit)
    return [DeadJobResponse.model_validate(job) for job in jobs]


@router.post("/{job_id}/requeue", response_model=RequeueResponse, status_code=201)
async def requeue_job(job_id: uuid.UUID, db: AsyncSession = Depends(get_session)):
    try:
        job = await requeue_dead_job(db, job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobNotDead as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    await log_event(
        db,
        "job_requeued",
        "info",
        source="admin",
        metadata={"requeued_from": str(job_id)},
        job=job,
    )
    return RequeueResponse(
        job_id=job.id,
        requeued_from=job_id,
        queue=job.queue,
        next_run_at=job.next_run_at,
    )
