# tests/test_registry.py
from __future__ import annotations

from jobs.registry import JobQueue, JobType, is_ai_type, queues_by_priority


def test_queues_sorted_by_priority():
    assert queues_by_priority() == [
        JobQueue.HIGH,
        JobQueue.DEFAULT,
        JobQueue.SCREENSHOT,
        JobQueue.LOW,
        JobQueue.BULK,
    ]


def test_only_screenshot_has_a_ceiling():
    assert JobQueue.SCREENSHOT.concurrency_ceiling == 3
    for queue in (JobQueue.HIGH, JobQueue.DEFAULT, JobQueue.LOW, JobQueue.BULK):
        assert queue.concurrency_ceiling is None


def test_job_type_home_queues():
    assert JobType.FEED_REFRESH.queue == JobQueue.DEFAULT
    assert JobType.AI_TAG.queue == JobQueue.BULK
    assert JobType.SCREENSHOT_CAPTURE.queue == JobQueue.SCREENSHOT
    assert JobType.EMAIL_RELAY.queue == JobQueue.HIGH


def test_ai_types():
    assert is_ai_type(JobType.AI_TAG)
    assert not is_ai_type(JobType.EMAIL_RELAY)
