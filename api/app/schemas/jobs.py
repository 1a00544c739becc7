# api/app/schemas/jobs.py
from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel

from jobs.registry import JobQueue, JobType
from models.job import JobErrorKind, JobStatus


class QueueDepthResponse(BaseModel):
    depths: dict[str, int]
    dead: dict[str, int]


class DeadJobResponse(BaseModel):
    id: uuid.UUID
    queue: JobQueue
    job_type: JobType
    status: JobStatus
    attempts: int
    max_attempts: int
    error_kind: JobErrorKind | None = None
    last_error: str | None = None
    payload: dict | None = None
    trace_id: uuid.UUID
    failed_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class RequeueResponse(BaseModel):
    job_id: uuid.UUID
    requeued_from: uuid.UUID
    queue: JobQueue
    next_run_at: datetime
