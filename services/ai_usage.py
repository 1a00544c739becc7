# services/ai_usage.py
"""
Append-only AI spend ledger and its monthly aggregate.
"""
from __future__ import annotations

import logging
import math
import uuid
from datetime import date, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from models.ai_usage import AiUsageEntry
from models.base import utcnow
from services.cost_governance import CostLedger

logger = logging.getLogger(__name__)

# Cents per 1M tokens: (input, output)
MODEL_PRICING_CENTS: dict[str, tuple[float, float]] = {
    "gpt-4o": (250.0, 1000.0),
    "gpt-4o-mini": (15.0, 60.0),
    "text-embedding-3-small": (2.0, 0.0),
}
DEFAULT_PRICING_CENTS = MODEL_PRICING_CENTS["gpt-4o"]


def calculate_cost_cents(model: str, input_tokens: int, output_tokens: int) -> int:
    """Rounded up so the ledger never under-reports spend."""
    input_rate, output_rate = MODEL_PRICING_CENTS.get(model, DEFAULT_PRICING_CENTS)
    cost = (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000
    return math.ceil(cost)


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_month_start(now: datetime) -> datetime:
    start = month_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


async def record_usage(
    db: AsyncSession,
    *,
    service: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    job_id: uuid.UUID | None = None,
    provider: str | None = None,
) -> AiUsageEntry:
    entry = AiUsageEntry(
        provider=provider or get_settings().ai_provider,
        service=service,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost_cents=calculate_cost_cents(model, input_tokens, output_tokens),
        job_id=job_id,
    )
    db.add(entry)
    await db.flush()
    logger.debug(
        "Recorded AI usage: service=%s model=%s in=%d out=%d cost=%d cents",
        service,
        model,
        input_tokens,
        output_tokens,
        entry.cost_cents,
    )
    return entry


async def load_ledger(
    db: AsyncSession,
    *,
    provider: str | None = None,
    budget_cents: int | None = None,
    now: datetime | None = None,
) -> CostLedger:
    """Snapshot of this calendar month's (UTC) spend for one provider."""
    settings = get_settings()
    provider = provider or settings.ai_provider
    budget_cents = settings.ai_monthly_budget_cents if budget_cents is None else budget_cents
    now = now or utcnow()

    stmt = select(
        func.coalesce(func.sum(AiUsageEntry.cost_cents), 0),
        func.count(AiUsageEntry.id),
    ).where(
        AiUsageEntry.provider == provider,
        AiUsageEntry.created_at >= month_start(now),
        AiUsageEntry.created_at < next_month_start(now),
    )
    spent, requests = (await db.execute(stmt)).one()

    return CostLedger(
        month=date(now.year, now.month, 1),
        spent_cents=int(spent),
        budget_cents=budget_cents,
        request_count=int(requests),
    )
