# models/__init__.py
from models.base import Base
from models.job import Job, JobErrorKind, JobStatus
from models.ai_usage import AiUsageEntry
from models.event import Event

__all__ = [
    "Base",
    "Job",
    "JobErrorKind",
    "JobStatus",
    "AiUsageEntry",
    "Event",
]
