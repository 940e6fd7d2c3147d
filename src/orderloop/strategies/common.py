"""Pieces shared by the two strategy executors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from orderloop.models import EventKind, Strategy, StrategyStatus

if TYPE_CHECKING:
    from orderloop.activity import ActivityLog
    from orderloop.store.sqlite_store import TradingStore

EXECUTED = "executed"
SKIPPED = "skipped"
ENDED = "ended"


@dataclass
class ExecutionResult:
    """Outcome of one executor run for one strategy."""

    strategy_id: str
    outcome: str
    message: str = ""
    submitted: int = 0
    cancelled: int = 0
    failed: int = 0


async def end_strategy(
    store: TradingStore,
    activity: ActivityLog,
    strategy: Strategy,
    reason: str,
) -> ExecutionResult:
    """Force a strategy to ENDED, audit it, and tell the owner."""
    store.set_strategy_status(strategy.id, StrategyStatus.ENDED)
    strategy.status = StrategyStatus.ENDED
    await activity.record(
        strategy.owner_id,
        f"Strategy '{strategy.name}' ended: {reason}",
        event_kind=EventKind.STRATEGY_ENDED,
        strategy_id=strategy.id,
        notify_title=f"Strategy ended: {strategy.name}",
        notify_body=reason,
    )
    return ExecutionResult(strategy.id, ENDED, reason)
