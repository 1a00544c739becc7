# tests/test_metrics.py
from __future__ import annotations

import pytest

from jobs.queue import enqueue
from jobs.registry import JobQueue, JobType
from models.ai_usage import AiUsageEntry
from services.metrics import JobMetrics, collect_gauges


def test_counters_are_tagged():
    sink = JobMetrics()
    sink.increment("jobs_failed_total", job_type="AI_TAG")
    sink.increment("jobs_failed_total", job_type="AI_TAG")
    sink.increment("jobs_failed_total", job_type="EMAIL_RELAY")

    assert sink.counter_value("jobs_failed_total", job_type="AI_TAG") == 2
    assert sink.counter_value("jobs_failed_total", job_type="EMAIL_RELAY") == 1
    assert sink.counter_value("jobs_failed_total", job_type="FEED_REFRESH") == 0


def test_snapshot_lists_counters_and_gauges():
    sink = JobMetrics()
    sink.increment("jobs_dead_total", job_type="AI_TAG")
    sink.gauge("ai_budget_percent_used", 42.5)

    snap = sink.snapshot()
    assert snap["counters"] == [{"name": "jobs_dead_total", "tags": {"job_type": "AI_TAG"}, "value": 1}]
    assert snap["gauges"] == [{"name": "ai_budget_percent_used", "tags": {}, "value": 42.5}]


@pytest.mark.asyncio
async def test_collect_gauges(db, pools, sink):
    await enqueue(db, JobType.AI_TAG, {"items": []})
    await enqueue(db, JobType.AI_TAG, {"items": []})
    db.add(AiUsageEntry(provider="openai", service="tagging", model="gpt-4o", cost_cents=12_500))
    await db.commit()
    pools[JobQueue.SCREENSHOT].try_acquire()

    await collect_gauges(db, sink, pools)

    assert sink.gauge_value("jobs_queue_depth", queue="BULK") == 2
    assert sink.gauge_value("jobs_queue_depth", queue="HIGH") == 0
    assert sink.gauge_value("permits_available", queue="SCREENSHOT") == 2
    assert sink.gauge_value("ai_budget_percent_used") == 25.0
