# jobs/registry.py
"""
Queue families and job types.

The table is static: changing a priority or ceiling is a deploy, not a
database write, so dispatch order stays deterministic.
"""
from __future__ import annotations

import enum


class JobQueue(str, enum.Enum):
    HIGH = "HIGH"
    DEFAULT = "DEFAULT"
    LOW = "LOW"
    BULK = "BULK"
    SCREENSHOT = "SCREENSHOT"

    @property
    def priority(self) -> int:
        """Lower is served first."""
        return QUEUE_PRIORITIES[self]

    @property
    def concurrency_ceiling(self) -> int | None:
        return QUEUE_CEILINGS.get(self)


QUEUE_PRIORITIES: dict[JobQueue, int] = {
    JobQueue.HIGH: 0,
    JobQueue.DEFAULT: 5,
    JobQueue.SCREENSHOT: 6,
    JobQueue.LOW: 7,
    JobQueue.BULK: 8,
}

# Per worker process. Each headless browser costs a few hundred MB.
QUEUE_CEILINGS: dict[JobQueue, int] = {
    JobQueue.SCREENSHOT: 3,
}


class JobType(str, enum.Enum):
    FEED_REFRESH = "FEED_REFRESH"
    AI_TAG = "AI_TAG"
    SCREENSHOT_CAPTURE = "SCREENSHOT_CAPTURE"
    EMAIL_RELAY = "EMAIL_RELAY"

    @property
    def queue(self) -> JobQueue:
        return JOB_TYPE_QUEUES[self]


JOB_TYPE_QUEUES: dict[JobType, JobQueue] = {
    JobType.FEED_REFRESH: JobQueue.DEFAULT,
    JobType.AI_TAG: JobQueue.BULK,
    JobType.SCREENSHOT_CAPTURE: JobQueue.SCREENSHOT,
    JobType.EMAIL_RELAY: JobQueue.HIGH,
}

# Types whose handlers spend against the monthly AI budget.
AI_JOB_TYPES: frozenset[JobType] = frozenset({JobType.AI_TAG})


def queues_by_priority() -> list[JobQueue]:
    return sorted(JobQueue, key=lambda q: q.priority)


def is_ai_type(job_type: JobType) -> bool:
    return job_type in AI_JOB_TYPES
