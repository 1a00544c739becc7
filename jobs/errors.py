# jobs/errors.py
"""
Exceptions handlers raise to steer how the dispatcher resolves a job.

Anything not listed here is treated as a transient failure and retried.
"""
from __future__ import annotations


class JobError(Exception):
    pass


class PermanentJobError(JobError):
    """Malformed payload or vanished resource. Goes straight to DEAD."""


class BudgetExceededError(PermanentJobError):
    """AI spend ceiling reached. Dead-lettered with the BUDGET tag."""


class JobDeferred(JobError):
    """Put the job back for later without spending an attempt."""

    def __init__(self, delay_seconds: float, reason: str = "deferred") -> None:
        super().__init__(reason)
        self.delay_seconds = delay_seconds
        self.reason = reason
