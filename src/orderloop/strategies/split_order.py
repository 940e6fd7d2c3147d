"""Split-order executor: a single-day buy ladder with one standing target sell.

Per run:

1. Validity: the strategy lives for the trading session it was created
   for.  Once that session day has passed it is ended.
2. A filled target sell ends the strategy.
3. Fill sync: filled ladder buys not yet in ``processed_order_ids`` are
   folded into (avg cost, qty); ids and position are saved together.
4. Sell management: with a position, keep exactly one limit sell for the
   whole quantity at the target price.  A new fill replaces the standing
   sell; without a new fill the standing sell is left alone.
5. Buy ladder: placed once.  An edit after placement cancels the pending
   rungs and places a fresh ladder.

All orders of a split-order strategy belong to its single session day,
so "today's orders" are simply the strategy's orders.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, cast

import structlog

from orderloop.models import (
    ACTIVE_ORDER_STATUSES,
    LIVE_OR_FILLED_STATUSES,
    EventKind,
    Order,
    OrderAction,
    OrderStatus,
    OrderType,
    Side,
    Strategy,
)
from orderloop.pricing import build_plan, target_sell_price
from orderloop.strategies.common import (
    EXECUTED,
    SKIPPED,
    ExecutionResult,
    end_strategy,
)
from orderloop.strategies.params import SplitOrderParams, parse_parameters

if TYPE_CHECKING:
    from orderloop.activity import ActivityLog
    from orderloop.execution.broker import BrokerGateway
    from orderloop.execution.order_manager import OrderManager
    from orderloop.market.clock import MarketClock
    from orderloop.store.sqlite_store import TradingStore

logger = structlog.get_logger(__name__)


class SplitOrderExecutor:
    """Executes SPLIT_ORDER strategies.

    Args:
        store: Strategy and order persistence.
        order_manager: Applies submit/cancel actions.
        activity: Audit trail plus notifications.
        clock: Market session clock.
    """

    def __init__(
        self,
        store: TradingStore,
        order_manager: OrderManager,
        activity: ActivityLog,
        clock: MarketClock,
    ) -> None:
        self._store = store
        self._orders = order_manager
        self._activity = activity
        self._clock = clock

    async def execute(
        self, strategy: Strategy, gateway: BrokerGateway, now: datetime
    ) -> ExecutionResult:
        params = cast(
            SplitOrderParams,
            parse_parameters(strategy.strategy_type, strategy.parameters),
        )
        log = logger.bind(strategy_id=strategy.id, symbol=strategy.symbol)

        created = strategy.created_at or now
        if self._clock.session_day(created, strategy.market) != self._clock.session_day(
            now, strategy.market
        ):
            return await end_strategy(
                self._store,
                self._activity,
                strategy,
                "split-order strategies run for a single trading day",
            )

        orders = self._store.list_orders(strategy_id=strategy.id)

        if any(
            o.side == Side.SELL
            and o.status == OrderStatus.FILLED
            and params.side == Side.BUY
            for o in orders
        ):
            return await end_strategy(
                self._store, self._activity, strategy, "target sell filled"
            )

        if self._clock.is_weekend(now, strategy.market):
            log.info("split_order_skipped_weekend")
            return ExecutionResult(strategy.id, SKIPPED, "weekend")

        params, new_fills = await self._sync_fills(strategy, params, orders)

        submitted = cancelled = failed = 0

        # ------------------------------------------------------------------
        # Target sell
        # ------------------------------------------------------------------
        if params.side == Side.BUY and params.current_qty > 0 and params.current_avg_cost > 0:
            s, c, f = await self._manage_sell(
                strategy, params, orders, gateway, now, new_fills
            )
            submitted, cancelled, failed = submitted + s, cancelled + c, failed + f

        # ------------------------------------------------------------------
        # Buy ladder
        # ------------------------------------------------------------------
        s, c, f = await self._place_ladder(strategy, params, orders, gateway, now)
        submitted, cancelled, failed = submitted + s, cancelled + c, failed + f

        log.info(
            "split_order_executed",
            submitted=submitted,
            cancelled=cancelled,
            failed=failed,
            new_fills=new_fills,
        )
        return ExecutionResult(
            strategy.id,
            EXECUTED,
            submitted=submitted,
            cancelled=cancelled,
            failed=failed,
        )

    async def _sync_fills(
        self, strategy: Strategy, params: SplitOrderParams, orders: list[Order]
    ) -> tuple[SplitOrderParams, bool]:
        folded = params
        for order in orders:
            if (
                order.side == params.side
                and order.side == Side.BUY
                and order.status == OrderStatus.FILLED
                and order.id not in folded.processed_order_ids
            ):
                folded = folded.fold_fill(
                    order.id,
                    order.avg_fill_price or order.price or 0.0,
                    order.filled_quantity or order.quantity,
                )
        if folded is params:
            return params, False

        self._store.save_parameters(strategy.id, folded.to_storage())
        strategy.parameters = folded.to_storage()
        await self._activity.record(
            strategy.owner_id,
            f"Position updated: {folded.current_qty} @ {folded.current_avg_cost:.4f}",
            event_kind=EventKind.SYSTEM,
            strategy_id=strategy.id,
            notify_title=f"Buy filled: {strategy.name}",
            notify_body=(
                f"{strategy.symbol} position {folded.current_qty} shares, "
                f"average cost {folded.current_avg_cost:.2f}"
            ),
            avg_cost=folded.current_avg_cost,
            qty=folded.current_qty,
        )
        return folded, True

    async def _manage_sell(
        self,
        strategy: Strategy,
        params: SplitOrderParams,
        orders: list[Order],
        gateway: BrokerGateway,
        now: datetime,
        new_fills: bool,
    ) -> tuple[int, int, int]:
        standing = [
            o
            for o in orders
            if o.side == Side.SELL and o.status in ACTIVE_ORDER_STATUSES
        ]
        if standing and not new_fills:
            return 0, 0, 0

        cancelled = 0
        for order in standing:
            # A failed cancel is logged by the manager; a fresh sell still goes out.
            if await self._orders.cancel(
                gateway, strategy, order, "position changed; replacing target sell"
            ):
                cancelled += 1

        action = OrderAction.submit(
            strategy.symbol,
            Side.SELL,
            OrderType.LIMIT,
            params.current_qty,
            target_sell_price(
                params.current_avg_cost, params.target_return_rate, strategy.market
            ),
            daytime=params.is_daytime,
            reason="target sell",
        )
        order = await self._orders.submit(
            gateway, strategy, action, now, exchange_code=params.exchange_code
        )
        return (1, cancelled, 0) if order else (0, cancelled, 1)

    async def _place_ladder(
        self,
        strategy: Strategy,
        params: SplitOrderParams,
        orders: list[Order],
        gateway: BrokerGateway,
        now: datetime,
    ) -> tuple[int, int, int]:
        ladder = [
            o
            for o in orders
            if o.side == params.side
            and o.order_type == OrderType.LIMIT
            and o.status in LIVE_OR_FILLED_STATUSES
        ]
        edited_at = strategy.updated_at
        fresh = [
            o
            for o in ladder
            if edited_at is None or o.submitted_at is None or o.submitted_at >= edited_at
        ]
        if fresh:
            return 0, 0, 0

        cancelled = 0
        for order in ladder:
            if order.status in ACTIVE_ORDER_STATUSES:
                if await self._orders.cancel(
                    gateway, strategy, order, "strategy edited after order was placed"
                ):
                    cancelled += 1

        plan = build_plan(
            params.base_price,
            params.decline_value,
            params.decline_unit,
            params.split_count,
            params.side,
            params.total_amount,
            params.distribution_type,
            strategy.market,
        )
        actions = [
            OrderAction.submit(
                strategy.symbol,
                params.side,
                OrderType.LIMIT,
                qty,
                price,
                daytime=params.is_daytime,
                reason=f"ladder rung {i + 1}/{params.split_count}",
            )
            for i, (price, qty) in enumerate(plan.slots())
            if qty > 0
        ]
        results = await self._orders.apply(
            gateway, strategy, actions, now, exchange_code=params.exchange_code
        )
        return len(results.submitted), cancelled, len(results.failed)
