# tests/test_job_queue.py
"""
Tests for the job record store: enqueue, claim, resolve, reclaim.

Runs against a file-backed SQLite database; the claim path is the same
compare-and-swap UPDATE that PostgreSQL executes.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest

from jobs.queue import (
    claim_next,
    complete_job,
    compute_backoff,
    defer_job,
    enqueue,
    fail_job,
    reclaim_stale_locks,
)
from jobs.registry import JobQueue, JobType
from models.base import utcnow
from models.job import Job, JobErrorKind, JobStatus


async def _reload(db, job_id: uuid.UUID) -> Job:
    return await db.get(Job, job_id, populate_existing=True)


@pytest.mark.asyncio
async def test_enqueue_defaults(db):
    job = await enqueue(db, JobType.FEED_REFRESH, {"feed_url": "https://example.com/rss"})
    await db.commit()

    assert job.id is not None
    assert job.queue == JobQueue.DEFAULT
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.trace_id is not None
    assert job.locked_at is None


@pytest.mark.asyncio
async def test_enqueue_accepts_string_job_type_and_queue_override(db):
    job = await enqueue(db, "EMAIL_RELAY", {}, queue="LOW")
    assert job.job_type == JobType.EMAIL_RELAY
    assert job.queue == JobQueue.LOW


@pytest.mark.asyncio
async def test_enqueue_rejects_bad_arguments(db):
    with pytest.raises(ValueError):
        await enqueue(db, JobType.AI_TAG, {}, max_attempts=0)
    with pytest.raises(ValueError):
        await enqueue(db, JobType.AI_TAG, {}, delay=-1)
    with pytest.raises(ValueError):
        await enqueue(db, JobType.AI_TAG, {}, queue="NOPE")
    with pytest.raises(ValueError):
        await enqueue(db, "NOT_A_TYPE", {})


@pytest.mark.asyncio
async def test_claim_sets_lock_and_counts_attempt(db):
    job = await enqueue(db, JobType.EMAIL_RELAY, {"to": "a@b.c"})
    await db.commit()

    claimed = await claim_next(db, "worker-1")
    await db.commit()

    assert claimed.id == job.id
    assert claimed.status == JobStatus.LOCKED
    assert claimed.locked_by == "worker-1"
    assert claimed.locked_at is not None
    assert claimed.attempts == 1


@pytest.mark.asyncio
async def test_claim_orders_by_queue_priority(db):
    bulk = await enqueue(db, JobType.AI_TAG, {"items": []})
    low = await enqueue(db, JobType.FEED_REFRESH, {}, queue=JobQueue.LOW)
    high = await enqueue(db, JobType.EMAIL_RELAY, {})
    await db.commit()

    order = []
    for _ in range(3):
        job = await claim_next(db, "worker-1")
        await db.commit()
        order.append(job.id)

    assert order == [high.id, low.id, bulk.id]
    assert await claim_next(db, "worker-1") is None


@pytest.mark.asyncio
async def test_claim_is_fifo_within_a_queue(db):
    now = utcnow()
    later = await enqueue(db, JobType.FEED_REFRESH, {}, now=now - timedelta(seconds=5))
    earlier = await enqueue(db, JobType.FEED_REFRESH, {}, now=now - timedelta(seconds=60))
    await db.commit()

    first = await claim_next(db, "worker-1", now=now)
    assert first.id == earlier.id
    second = await claim_next(db, "worker-1", now=now)
    assert second.id == later.id


@pytest.mark.asyncio
async def test_claim_skips_jobs_not_yet_due(db):
    job = await enqueue(db, JobType.FEED_REFRESH, {}, delay=300)
    await db.commit()

    assert await claim_next(db, "worker-1") is None

    claimed = await claim_next(db, "worker-1", now=utcnow() + timedelta(seconds=301))
    assert claimed.id == job.id


@pytest.mark.asyncio
async def test_claim_only_from_requested_queues(db):
    await enqueue(db, JobType.SCREENSHOT_CAPTURE, {"site_id": "s1", "url": "https://x.org"})
    await db.commit()

    assert await claim_next(db, "worker-1", []) is None
    assert await claim_next(db, "worker-1", [JobQueue.HIGH, JobQueue.DEFAULT]) is None

    claimed = await claim_next(db, "worker-1", [JobQueue.SCREENSHOT])
    assert claimed.queue == JobQueue.SCREENSHOT


@pytest.mark.asyncio
async def test_concurrent_claimers_get_the_job_once(db, session_factory):
    job = await enqueue(db, JobType.EMAIL_RELAY, {})
    await db.commit()

    async def claim(worker_id: str):
        async with session_factory() as session:
            claimed = await claim_next(session, worker_id)
            await session.commit()
            return claimed

    results = await asyncio.gather(*(claim(f"worker-{n}") for n in range(5)))
    winners = [r for r in results if r is not None]

    assert len(winners) == 1
    assert winners[0].id == job.id
    stored = await _reload(db, job.id)
    assert stored.attempts == 1
    assert stored.locked_by == winners[0].locked_by


@pytest.mark.asyncio
async def test_complete_job(db):
    job = await enqueue(db, JobType.EMAIL_RELAY, {})
    await claim_next(db, "worker-1")

    assert await complete_job(db, job.id, {"message_id": "m-1"}, worker_id="worker-1")
    await db.commit()

    stored = await _reload(db, job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.result == {"message_id": "m-1"}
    assert stored.locked_by is None
    assert stored.locked_at is None
    assert stored.completed_at is not None
    assert stored.is_terminal


@pytest.mark.asyncio
async def test_resolving_an_unlocked_job_is_ignored(db):
    job = await enqueue(db, JobType.EMAIL_RELAY, {})
    await db.commit()

    assert await complete_job(db, job.id, {}) is False
    assert await fail_job(db, job.id, "boom") is None
    assert await complete_job(db, uuid.uuid4(), {}) is False

    stored = await _reload(db, job.id)
    assert stored.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_resolving_with_someone_elses_lock_is_ignored(db):
    job = await enqueue(db, JobType.EMAIL_RELAY, {})
    await claim_next(db, "worker-1")

    assert await complete_job(db, job.id, {}, worker_id="worker-2") is False
    stored = await _reload(db, job.id)
    assert stored.status == JobStatus.LOCKED


@pytest.mark.asyncio
async def test_fail_job_retries_until_max_attempts(db):
    job = await enqueue(db, JobType.EMAIL_RELAY, {}, max_attempts=2)

    await claim_next(db, "worker-1")
    status = await fail_job(db, job.id, "smtp timeout")
    assert status == JobStatus.PENDING

    stored = await _reload(db, job.id)
    assert stored.last_error == "smtp timeout"
    assert stored.locked_by is None
    assert stored.error_kind is None

    await claim_next(db, "worker-1", now=utcnow() + timedelta(hours=2))
    status = await fail_job(db, job.id, "smtp timeout again")
    assert status == JobStatus.DEAD

    stored = await _reload(db, job.id)
    assert stored.attempts == 2
    assert stored.error_kind == JobErrorKind.FAILURE
    assert stored.failed_at is not None


@pytest.mark.asyncio
async def test_fail_job_without_retry_goes_dead(db):
    job = await enqueue(db, JobType.EMAIL_RELAY, {})
    await claim_next(db, "worker-1")

    status = await fail_job(db, job.id, "bad payload", retry=False)
    assert status == JobStatus.DEAD

    stored = await _reload(db, job.id)
    assert stored.attempts == 1
    assert stored.error_kind == JobErrorKind.PERMANENT


@pytest.mark.asyncio
async def test_dead_job_is_never_touched_again(db):
    job = await enqueue(db, JobType.EMAIL_RELAY, {})
    await claim_next(db, "worker-1")
    await fail_job(db, job.id, "bad payload", retry=False, kind=JobErrorKind.BUDGET)

    assert await complete_job(db, job.id, {}) is False
    assert await defer_job(db, job.id, 60, "later") is False

    stored = await _reload(db, job.id)
    assert stored.status == JobStatus.DEAD
    assert stored.error_kind == JobErrorKind.BUDGET


@pytest.mark.asyncio
async def test_defer_gives_the_attempt_back(db):
    job = await enqueue(db, JobType.AI_TAG, {"items": []})
    await claim_next(db, "worker-1")

    now = utcnow()
    assert await defer_job(db, job.id, 600, "budget at 92%", now=now)

    stored = await _reload(db, job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 0
    assert stored.next_run_at == now + timedelta(seconds=600)
    assert stored.last_error == "deferred: budget at 92%"


def test_compute_backoff_grows_and_caps():
    for attempt in range(1, 5):
        delay = compute_backoff(attempt, base_seconds=30, max_seconds=3600)
        assert 0.75 * 30 * 2 ** attempt <= delay <= 1.25 * 30 * 2 ** attempt

    assert compute_backoff(20, base_seconds=30, max_seconds=3600) == 3600


@pytest.mark.asyncio
async def test_reclaim_releases_stale_locks(db):
    t0 = utcnow()
    stale = await enqueue(db, JobType.FEED_REFRESH, {}, now=t0)
    await claim_next(db, "worker-gone", now=t0)
    fresh = await enqueue(db, JobType.FEED_REFRESH, {}, now=t0)
    await claim_next(db, "worker-alive", now=t0 + timedelta(seconds=500))
    await db.commit()

    count = await reclaim_stale_locks(db, 600, now=t0 + timedelta(seconds=700))
    await db.commit()
    assert count == 1

    stale_row = await _reload(db, stale.id)
    assert stale_row.status == JobStatus.PENDING
    assert stale_row.locked_by is None
    assert stale_row.attempts == 1
    assert stale_row.next_run_at == t0 + timedelta(seconds=700)

    fresh_row = await _reload(db, fresh.id)
    assert fresh_row.status == JobStatus.LOCKED
    assert fresh_row.locked_by == "worker-alive"


@pytest.mark.asyncio
async def test_reclaim_on_final_attempt_goes_dead(db):
    t0 = utcnow()
    job = await enqueue(db, JobType.FEED_REFRESH, {}, max_attempts=1, now=t0)
    await claim_next(db, "worker-gone", now=t0)
    await db.commit()

    assert await reclaim_stale_locks(db, 600, now=t0 + timedelta(seconds=601)) == 1

    stored = await _reload(db, job.id)
    assert stored.status == JobStatus.DEAD
    assert stored.error_kind == JobErrorKind.LOCK_TIMEOUT
    assert stored.locked_at is None


@pytest.mark.asyncio
async def test_reclaimed_job_can_be_claimed_again(db):
    t0 = utcnow()
    job = await enqueue(db, JobType.FEED_REFRESH, {}, now=t0)
    await claim_next(db, "worker-gone", now=t0)
    await reclaim_stale_locks(db, 600, now=t0 + timedelta(seconds=601))

    again = await claim_next(db, "worker-new", now=t0 + timedelta(seconds=602))
    assert again.id == job.id
    assert again.attempts == 2
    assert again.locked_by == "worker-new"


@pytest.mark.asyncio
async def test_high_beats_low_at_equal_run_time(db):
    now = utcnow()
    low = await enqueue(db, JobType.FEED_REFRESH, {}, queue=JobQueue.LOW, now=now)
    high = await enqueue(db, JobType.FEED_REFRESH, {}, queue=JobQueue.HIGH, now=now)
    await db.commit()

    assert (await claim_next(db, "worker-1", now=now)).id == high.id
    assert (await claim_next(db, "worker-1", now=now)).id == low.id
