# models/job.py
from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobs.registry import JobQueue, JobType
from models.base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKey, utcnow


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    LOCKED = "LOCKED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DEAD = "DEAD"


class JobErrorKind(str, enum.Enum):
    FAILURE = "FAILURE"            # retries exhausted
    PERMANENT = "PERMANENT"        # handler said don't retry
    BUDGET = "BUDGET"              # refused by AI cost governance
    LOCK_TIMEOUT = "LOCK_TIMEOUT"  # worker vanished on the last attempt
    UNKNOWN_TYPE = "UNKNOWN_TYPE"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.DEAD})


def _enum(cls: type[enum.Enum]) -> Enum:
    return Enum(cls, native_enum=False, length=32, validate_strings=True)


class Job(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_ready", "status", "queue", "next_run_at"),
        Index("ix_jobs_status_locked_at", "status", "locked_at"),
    )

    queue: Mapped[JobQueue] = mapped_column(_enum(JobQueue), nullable=False)
    job_type: Mapped[JobType] = mapped_column(_enum(JobType), nullable=False)

    # PENDING | LOCKED | SUCCEEDED | FAILED | DEAD
    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.PENDING, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[JobErrorKind | None] = mapped_column(_enum(JobErrorKind), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    requeued_from: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    trace_id: Mapped[uuid.UUID] = mapped_column(Uuid, default=uuid.uuid4, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
