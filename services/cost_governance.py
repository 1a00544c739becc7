# services/cost_governance.py
"""
Monthly AI budget policy.

`evaluate()` maps a ledger snapshot to one of four actions and has no side
effects. AI handlers load a fresh ledger and evaluate it right before every
spend-incurring call; nothing is cached between calls.

    < 75%    NORMAL     full model, full batch
    75-90%   REDUCE     cheaper model, smaller batch
    90-100%  QUEUE      defer the job to spread the rest of the budget
    >= 100%  HARD_STOP  refuse; job is dead-lettered with the BUDGET tag
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from services.observability import log_event

logger = logging.getLogger(__name__)

REDUCE_THRESHOLD = 75.0
QUEUE_THRESHOLD = 90.0
HARD_STOP_THRESHOLD = 100.0


class BudgetAction(str, enum.Enum):
    NORMAL = "NORMAL"
    REDUCE = "REDUCE"
    QUEUE = "QUEUE"
    HARD_STOP = "HARD_STOP"


@dataclass(frozen=True)
class CostLedger:
    month: date
    spent_cents: int
    budget_cents: int
    request_count: int = 0

    @property
    def percent_used(self) -> float:
        if self.budget_cents <= 0:
            return 0.0
        return self.spent_cents / self.budget_cents * 100.0

    @property
    def remaining_cents(self) -> int:
        return self.budget_cents - self.spent_cents


def evaluate(ledger: CostLedger) -> BudgetAction:
    percent = ledger.percent_used
    if percent >= HARD_STOP_THRESHOLD:
        return BudgetAction.HARD_STOP
    if percent >= QUEUE_THRESHOLD:
        return BudgetAction.QUEUE
    if percent >= REDUCE_THRESHOLD:
        return BudgetAction.REDUCE
    return BudgetAction.NORMAL


def should_stop(action: BudgetAction) -> bool:
    return action in (BudgetAction.QUEUE, BudgetAction.HARD_STOP)


def batch_size(action: BudgetAction) -> int:
    settings = get_settings()
    if action == BudgetAction.NORMAL:
        return settings.ai_tagging_batch_size
    if action == BudgetAction.REDUCE:
        return settings.ai_tagging_reduced_batch_size
    return 0


def model_for(action: BudgetAction) -> str:
    settings = get_settings()
    if action == BudgetAction.REDUCE:
        return settings.openai_reduced_model
    return settings.openai_model


_ALERT_LEVELS: dict[BudgetAction, tuple[str, str]] = {
    BudgetAction.REDUCE: ("warning", "WARNING"),
    BudgetAction.QUEUE: ("error", "CRITICAL"),
    BudgetAction.HARD_STOP: ("critical", "EMERGENCY"),
}

_ORDER = [BudgetAction.NORMAL, BudgetAction.REDUCE, BudgetAction.QUEUE, BudgetAction.HARD_STOP]


class BudgetAlerter:
    """
    Raises one `ai_budget_alert` event each time spend crosses into a
    higher band. Falling back (a new month) re-arms the lower bands.
    """

    def __init__(self) -> None:
        self._last: BudgetAction = BudgetAction.NORMAL

    @property
    def last_alerted(self) -> BudgetAction:
        return self._last

    async def observe(self, db: AsyncSession, ledger: CostLedger, action: BudgetAction) -> bool:
        previous = self._last
        self._last = action
        if _ORDER.index(action) <= _ORDER.index(previous):
            return False

        level, label = _ALERT_LEVELS[action]
        await log_event(
            db,
            "ai_budget_alert",
            level,
            source="cost_governance",
            message=f"{label}: AI spend at {ledger.percent_used:.1f}% of monthly budget, action={action.value}",
            metadata={
                "action": action.value,
                "percent_used": round(ledger.percent_used, 2),
                "spent_cents": ledger.spent_cents,
                "budget_cents": ledger.budget_cents,
                "month": ledger.month.isoformat(),
            },
        )
        return True


budget_alerter = BudgetAlerter()
