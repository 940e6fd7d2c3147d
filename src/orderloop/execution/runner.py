"""StrategyRunner: batch ticks, dedup fence, and APScheduler wiring.

Two independent ticks, both safe to invoke repeatedly and both taking an
owner window ``(offset, size)`` for sharding:

    * execution tick: load active strategies, group by owner, open one
      gateway per owner, and run that owner's strategies sequentially
      through the executor matching each strategy type.
    * reconciliation tick: delegate to ``OrderReconciler``.

Per strategy, before dispatch:
    1. Validity window: a strategy past its end date is ended.
    2. Dedup fence: a strategy executed less than
       ``execution_interval_minutes`` ago is skipped.
    3. The fence is committed, then the executor runs.

``execute_immediately`` runs a single strategy right after a user edit,
bounded by a timeout; the fence is committed whatever the outcome so the
next scheduled tick does not double-execute.

Live mode requires explicit ``ORDERLOOP_LIVE_CONFIRMED=true`` env var.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from orderloop.activity import ActivityLog
from orderloop.config.settings import EngineSettings
from orderloop.errors import ConfigurationError
from orderloop.execution.batching import (
    GatewayFactory,
    group_by_owner,
    owner_gateway,
    owner_window,
    run_per_owner,
)
from orderloop.execution.order_manager import OrderManager
from orderloop.execution.reconciler import OrderReconciler, ReconcileSummary
from orderloop.execution.retry import RetryingGateway
from orderloop.kis.client import KisGateway
from orderloop.kis.credentials import CredentialStore
from orderloop.kis.token_cache import TokenCache
from orderloop.market.clock import MarketClock
from orderloop.models import (
    EventKind,
    LogLevel,
    Strategy,
    StrategyStatus,
    StrategyType,
)
from orderloop.strategies.common import (
    ENDED,
    EXECUTED,
    SKIPPED,
    ExecutionResult,
    end_strategy,
)
from orderloop.strategies.loo_loc import LooLocExecutor
from orderloop.strategies.split_order import SplitOrderExecutor

if TYPE_CHECKING:
    from orderloop.execution.broker import BrokerGateway
    from orderloop.notify import Notifier
    from orderloop.store.sqlite_store import TradingStore

logger = structlog.get_logger(__name__)

FAILED = "failed"


def build_gateway_factory(
    settings: EngineSettings,
    credential_store: CredentialStore | None = None,
    token_cache: TokenCache | None = None,
) -> GatewayFactory:
    """Gateway factory backed by the KIS open API.

    Every gateway goes through ``RetryingGateway``.  The token cache is
    shared by all gateways built by this factory so concurrent owners
    with the same app key coalesce onto one token refresh.
    """
    credentials = credential_store or CredentialStore(settings.credentials_path)
    tokens = token_cache or TokenCache(
        min_refresh_interval=settings.token_min_refresh_interval_seconds,
        expiry_margin=settings.token_expiry_margin_seconds,
    )
    policy = settings.retry_policy()

    def factory(owner_id: str) -> BrokerGateway:
        gateway = KisGateway(
            credentials.load(owner_id),
            tokens,
            is_paper=settings.is_paper,
            throttle_seconds=settings.quote_throttle_ms / 1000,
            timeout=settings.http_timeout_seconds,
            order_history_days=settings.order_history_days,
        )
        return RetryingGateway(gateway, policy)

    return factory


class StrategyRunner:
    """Drives the execution and reconciliation ticks.

    All dependencies are injected for testability.

    Parameters
    ----------
    store : TradingStore
        Strategy, order, and audit persistence.
    gateway_factory : GatewayFactory
        Opens one broker session per owner.
    settings : EngineSettings | None
        Fence interval, timeouts, cron expressions, trading mode.
    notifier : Notifier | None
        Owner notification channel.
    clock : MarketClock | None
        Session clock; built from ``settings`` when None.
    """

    def __init__(
        self,
        store: TradingStore,
        gateway_factory: GatewayFactory,
        settings: EngineSettings | None = None,
        notifier: Notifier | None = None,
        clock: MarketClock | None = None,
    ) -> None:
        self._store = store
        self._gateway_factory = gateway_factory
        self._settings = settings or EngineSettings()
        self._clock = clock or MarketClock(self._settings.closing_debounce_minutes)
        self._activity = ActivityLog(store, notifier)
        self._order_manager = OrderManager(store, self._activity)
        self._executors = {
            StrategyType.LOO_LOC: LooLocExecutor(
                store, self._order_manager, self._activity, self._clock
            ),
            StrategyType.SPLIT_ORDER: SplitOrderExecutor(
                store, self._order_manager, self._activity, self._clock
            ),
        }
        self._reconciler = OrderReconciler(store, self._activity, self._clock)
        self._fence = timedelta(minutes=self._settings.execution_interval_minutes)
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def activity(self) -> ActivityLog:
        return self._activity

    # ------------------------------------------------------------------
    # Scheduler lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the cron-driven ticks.

        Raises
        ------
        ValueError
            If trading_mode is "live" and ORDERLOOP_LIVE_CONFIRMED is not set.
        """
        if not self._settings.is_paper:
            confirmed = os.environ.get("ORDERLOOP_LIVE_CONFIRMED", "").lower()
            if confirmed != "true":
                raise ValueError(
                    "Live trading requires ORDERLOOP_LIVE_CONFIRMED=true env var. "
                    "Set it explicitly to confirm live trading intent."
                )

        size = self._settings.batch_size or None
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_execution_tick,
            trigger=CronTrigger(
                minute=self._settings.execution_cron,
                timezone=self._settings.schedule_timezone,
            ),
            kwargs={"size": size},
            id="execute_strategies",
            name="Execute due strategies",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.run_reconciliation_tick,
            trigger=CronTrigger(
                minute=self._settings.reconcile_cron,
                timezone=self._settings.schedule_timezone,
            ),
            kwargs={"size": size},
            id="reconcile_orders",
            name="Reconcile pending orders",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()

        logger.info(
            "runner_started",
            trading_mode=self._settings.trading_mode,
            execution_cron=self._settings.execution_cron,
            reconcile_cron=self._settings.reconcile_cron,
            timezone=self._settings.schedule_timezone,
        )

    async def stop(self) -> None:
        """Shut down the scheduler and close the store."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._store.close()
        logger.info("runner_stopped")

    # ------------------------------------------------------------------
    # Execution tick
    # ------------------------------------------------------------------

    async def run_execution_tick(
        self,
        offset: int = 0,
        size: int | None = None,
        now: datetime | None = None,
    ) -> dict:
        """Execute every due strategy of the owners in the window.

        Returns
        -------
        dict
            Tick summary with keys: tick_time, owners, executed, skipped,
            failed, ended, owners_skipped.
        """
        now = now or datetime.now(timezone.utc)
        grouped = group_by_owner(self._store.list_active_strategies())
        owners = owner_window(grouped, offset, size)
        summary = {
            "tick_time": now.isoformat(),
            "owners": len(owners),
            EXECUTED: 0,
            SKIPPED: 0,
            FAILED: 0,
            ENDED: 0,
            "owners_skipped": 0,
        }
        logger.info(
            "execution_tick_started",
            owners=len(owners),
            strategies=sum(len(grouped[o]) for o in owners),
        )

        async def work(owner_id: str) -> list[ExecutionResult] | None:
            return await self._run_owner(owner_id, grouped[owner_id], now)

        results = await run_per_owner(owners, work)
        for outcome in results.values():
            if not isinstance(outcome, list):
                summary["owners_skipped"] += 1
                continue
            for result in outcome:
                summary[result.outcome] += 1

        logger.info("execution_tick_complete", **summary)
        return summary

    async def _run_owner(
        self, owner_id: str, strategies: list[Strategy], now: datetime
    ) -> list[ExecutionResult] | None:
        try:
            async with owner_gateway(self._gateway_factory, owner_id) as gateway:
                return [
                    await self._run_strategy(strategy, gateway, now)
                    for strategy in strategies
                ]
        except Exception as exc:
            # Gateway setup failed; the whole owner is retried next tick.
            logger.error(
                "execution_owner_skipped", owner_id=owner_id, error=str(exc)
            )
            return None

    def _fenced(self, strategy: Strategy, now: datetime) -> bool:
        last = strategy.last_executed_at
        return last is not None and now - last < self._fence

    async def _run_strategy(
        self, strategy: Strategy, gateway: BrokerGateway, now: datetime
    ) -> ExecutionResult:
        log = logger.bind(strategy_id=strategy.id, strategy_type=strategy.strategy_type)

        today = self._clock.trading_day(now, strategy.market)
        if strategy.end_date is not None and strategy.end_date < today:
            return await end_strategy(
                self._store, self._activity, strategy, "validity window ended"
            )
        if strategy.start_date is not None and strategy.start_date > today:
            return ExecutionResult(strategy.id, SKIPPED, "not started yet")

        if self._fenced(strategy, now):
            log.debug("strategy_fenced", last_executed_at=str(strategy.last_executed_at))
            return ExecutionResult(strategy.id, SKIPPED, "executed recently")

        self._store.mark_executed(strategy.id, now)
        try:
            result = await self._dispatch(strategy, gateway, now)
        except ConfigurationError as exc:
            await self._activity.record(
                strategy.owner_id,
                f"Strategy '{strategy.name}' skipped: {exc}",
                event_kind=EventKind.SYSTEM,
                level=LogLevel.WARN,
                strategy_id=strategy.id,
            )
            return ExecutionResult(strategy.id, SKIPPED, str(exc))
        except Exception as exc:
            log.error(
                "strategy_execution_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ExecutionResult(strategy.id, FAILED, str(exc))
        return result

    async def _dispatch(
        self, strategy: Strategy, gateway: BrokerGateway, now: datetime
    ) -> ExecutionResult:
        try:
            executor = self._executors[StrategyType(strategy.strategy_type)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(
                f"unknown strategy type {strategy.strategy_type!r}"
            ) from exc
        return await executor.execute(strategy, gateway, now)

    # ------------------------------------------------------------------
    # Immediate execution
    # ------------------------------------------------------------------

    async def execute_immediately(
        self,
        strategy_id: str,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> tuple[bool, str]:
        """Run one strategy right away, bounded by ``timeout`` seconds.

        The dedup fence is committed on success, failure, and timeout.

        Returns
        -------
        tuple[bool, str]
            ``(success, message)``.
        """
        now = now or datetime.now(timezone.utc)
        timeout = (
            timeout
            if timeout is not None
            else self._settings.immediate_execution_timeout_seconds
        )
        strategy = self._store.get_strategy(strategy_id)
        if strategy is None:
            return False, f"strategy {strategy_id} not found"
        if strategy.status != StrategyStatus.ACTIVE:
            return False, f"strategy is {strategy.status.value}"

        try:
            async with owner_gateway(self._gateway_factory, strategy.owner_id) as gateway:
                result = await asyncio.wait_for(
                    self._dispatch(strategy, gateway, now), timeout=timeout
                )
        except asyncio.TimeoutError:
            logger.warning(
                "immediate_execution_timeout", strategy_id=strategy_id, timeout=timeout
            )
            return False, f"timed out after {timeout:g}s; the next tick will retry"
        except Exception as exc:
            logger.error(
                "immediate_execution_failed", strategy_id=strategy_id, error=str(exc)
            )
            return False, str(exc)
        finally:
            self._store.mark_executed(strategy_id, now)

        logger.info(
            "immediate_execution_complete",
            strategy_id=strategy_id,
            outcome=result.outcome,
            submitted=result.submitted,
        )
        return result.outcome != FAILED, result.message or result.outcome

    # ------------------------------------------------------------------
    # Reconciliation tick
    # ------------------------------------------------------------------

    async def run_reconciliation_tick(
        self,
        offset: int = 0,
        size: int | None = None,
        now: datetime | None = None,
    ) -> ReconcileSummary:
        return await self._reconciler.reconcile(
            self._gateway_factory, offset=offset, size=size, now=now
        )
