# jobs/handlers.py
"""
Job handlers for each job type.

Every handler takes (db, payload) and returns a result dict or raises.
Handlers may run more than once for the same job (retries, reclaimed
locks), so each one is written to be safe to repeat.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from jobs.errors import BudgetExceededError, JobDeferred, PermanentJobError
from jobs.queue import compute_backoff, enqueue
from jobs.registry import JobType
from models.job import Job
from services.ai_tagging import tag_batch
from services.ai_usage import load_ledger, record_usage
from services.cost_governance import (
    BudgetAction,
    batch_size,
    budget_alerter,
    evaluate,
    model_for,
    should_stop,
)
from services.email import EmailRejectedError, send_email
from services.feeds import FeedGoneError, FeedParseError, fetch_feed, parse_feed
from services.screenshot import FULL_SIZE, THUMBNAIL_SIZE, capture_screenshot, is_capturable_url

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, dict], Awaitable[dict]]

DEFAULT_FEED_ITEM_LIMIT = 50


# ─────────────────────────────────────────────
# FEED_REFRESH
# ─────────────────────────────────────────────

async def handle_feed_refresh(db: AsyncSession, payload: dict) -> dict:
    url = payload.get("feed_url")
    if not url:
        raise PermanentJobError("FEED_REFRESH payload is missing feed_url")

    try:
        body = await fetch_feed(url)
        items = parse_feed(body)
    except (FeedGoneError, FeedParseError) as exc:
        raise PermanentJobError(str(exc)) from exc

    items = items[: int(payload.get("max_items", DEFAULT_FEED_ITEM_LIMIT))]
    logger.info("Feed %s: %d items", url, len(items))

    tag_job_id = None
    if items and payload.get("tag", True):
        tag_job = await enqueue(
            db,
            JobType.AI_TAG,
            {"source_id": payload.get("source_id"), "items": items},
        )
        tag_job_id = str(tag_job.id)

    return {"feed_url": url, "items": len(items), "tag_job_id": tag_job_id}


# ─────────────────────────────────────────────
# AI_TAG
# ─────────────────────────────────────────────

def _validate_items(payload: dict) -> list[dict]:
    items = payload.get("items")
    if not isinstance(items, list):
        raise PermanentJobError("AI_TAG payload needs an items list")
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            raise PermanentJobError("AI_TAG items must be objects with an id")
    return items


async def _hand_off_rest(db: AsyncSession, payload: dict, remaining: list[dict], delay: float) -> Job:
    return await enqueue(
        db,
        JobType.AI_TAG,
        {**payload, "items": remaining},
        delay=delay,
    )


async def handle_ai_tag(db: AsyncSession, payload: dict) -> dict:
    """
    Tags items in batches, checking the budget before each model call.

    HARD_STOP before any call refuses the job, QUEUE defers it. Once a
    batch has been tagged and billed the job no longer fails as a whole:
    if the budget tips over or a later model call errors, the untagged
    rest is handed to a new delayed job and the work already done is kept.
    A retry therefore never tags or bills the same batch twice.
    """
    settings = get_settings()
    items = _validate_items(payload)
    remaining = list(items)
    tags: dict[str, dict] = {}
    models_used: list[str] = []
    error: str | None = None

    while remaining:
        ledger = await load_ledger(db)
        action = evaluate(ledger)
        await budget_alerter.observe(db, ledger, action)
        # Commit before network call
        await db.commit()

        if should_stop(action):
            if not models_used:
                if action == BudgetAction.HARD_STOP:
                    raise BudgetExceededError(
                        f"AI budget exhausted: {ledger.percent_used:.1f}% of "
                        f"{ledger.budget_cents} cents used"
                    )
                raise JobDeferred(
                    settings.ai_queue_defer_seconds,
                    reason=f"AI budget at {ledger.percent_used:.1f}%",
                )

            rest = await _hand_off_rest(db, payload, remaining, settings.ai_queue_defer_seconds)
            logger.warning(
                "AI tagging stopped mid-run at %.1f%% (%s); %d items moved to job %s",
                ledger.percent_used,
                action.value,
                len(remaining),
                rest.id,
            )
            break

        batch = remaining[: batch_size(action)]
        try:
            batch_tags, llm = await tag_batch(batch, model_for(action))
        except Exception as exc:
            if not models_used:
                raise
            rest = await _hand_off_rest(db, payload, remaining, compute_backoff(1))
            error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "AI tagging batch failed after %d tagged (%s); %d items moved to job %s",
                len(tags),
                error,
                len(remaining),
                rest.id,
            )
            break

        await record_usage(
            db,
            service="tagging",
            model=llm.model,
            input_tokens=llm.input_tokens,
            output_tokens=llm.output_tokens,
        )
        await db.commit()

        tags.update(batch_tags)
        models_used.append(llm.model)
        remaining = remaining[len(batch):]

    return {
        "requested": len(items),
        "tagged": len(tags),
        "deferred": len(remaining),
        "models": sorted(set(models_used)),
        "tags": tags,
        "error": error,
    }


# ─────────────────────────────────────────────
# SCREENSHOT_CAPTURE
# ─────────────────────────────────────────────

async def handle_screenshot_capture(db: AsyncSession, payload: dict) -> dict:
    settings = get_settings()
    site_id = payload.get("site_id")
    url = payload.get("url")
    if not site_id:
        raise PermanentJobError("SCREENSHOT_CAPTURE payload is missing site_id")
    if not is_capturable_url(url):
        raise PermanentJobError(f"SCREENSHOT_CAPTURE url is not http(s): {url!r}")

    version = int(payload.get("version", 1))
    base = settings.screenshot_dir / str(site_id) / f"v{version}"
    full_path = base / "full.png"
    thumb_path = base / "thumbnail.png"

    # ── Idempotency: a previous run may have finished after its lock expired ──
    if full_path.exists() and thumb_path.exists() and not payload.get("recapture"):
        logger.info("Screenshot site=%s v%d already captured", site_id, version)
        return {
            "site_id": str(site_id),
            "version": version,
            "full_path": str(full_path),
            "thumbnail_path": str(thumb_path),
            "idempotent": True,
        }

    t0 = time.monotonic()
    await capture_screenshot(url, *FULL_SIZE, full_path)
    await capture_screenshot(url, *THUMBNAIL_SIZE, thumb_path)
    duration_ms = int((time.monotonic() - t0) * 1000)

    logger.info("Screenshot site=%s v%d captured in %dms", site_id, version, duration_ms)
    return {
        "site_id": str(site_id),
        "version": version,
        "full_path": str(full_path),
        "thumbnail_path": str(thumb_path),
        "duration_ms": duration_ms,
    }


# ─────────────────────────────────────────────
# EMAIL_RELAY
# ─────────────────────────────────────────────

async def handle_email_relay(db: AsyncSession, payload: dict) -> dict:
    to_address = (payload.get("to") or "").strip()
    body = (payload.get("body") or "").strip()
    if "@" not in to_address:
        raise PermanentJobError(f"EMAIL_RELAY has no valid recipient: {to_address!r}")
    if not body:
        raise PermanentJobError("EMAIL_RELAY body is empty")

    subject = payload.get("subject") or "New message about your listing"
    try:
        message_id = await send_email(
            to_address,
            subject,
            body,
            reply_to=payload.get("reply_to"),
        )
    except EmailRejectedError as exc:
        raise PermanentJobError(str(exc)) from exc

    return {"message_id": message_id}


HANDLERS: dict[JobType, Handler] = {
    JobType.FEED_REFRESH: handle_feed_refresh,
    JobType.AI_TAG: handle_ai_tag,
    JobType.SCREENSHOT_CAPTURE: handle_screenshot_capture,
    JobType.EMAIL_RELAY: handle_email_relay,
}
