"""LOO/LOC executor: opening-auction buy, closing-auction buy and sell.

One run per scheduler tick:

1. Preconditions: the strategy must trade the foreign market (otherwise
   it is ended as misconfigured) and the market must not be in its
   weekend close.
2. Orders still open from before the strategy's last edit are cancelled.
3. Duplicate check against two sources, today's local rows and the
   broker's open-order list.  A local Cancelled row the broker still
   lists as open is repaired back to Submitted.
4. Same-day fills not yet in the position are folded in: buys into the
   running average, sells off the share count.
5. Decisions, each independent of the others:
   - PreMarket: opening-limit buy at the prior close.
   - Regular, debounce elapsed: closing-limit buy at the average cost
     (or the opening print when flat) and closing-limit sell of the whole
     position at ``avg_cost * (1 + target_return_rate / 100)``.

The closing sell is issued whenever it is eligible and absent, whatever
the live quote: the closing auction decides whether it fills.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, cast

import structlog

from orderloop.config.markets import FOREIGN_MARKET
from orderloop.errors import ReconciliationConflict
from orderloop.models import (
    ACTIVE_ORDER_STATUSES,
    LIVE_OR_FILLED_STATUSES,
    EventKind,
    LogLevel,
    Market,
    Order,
    OrderAction,
    OrderStatus,
    OrderType,
    Side,
    Strategy,
)
from orderloop.pricing import round_to_market_tick, target_sell_price
from orderloop.strategies.common import (
    EXECUTED,
    SKIPPED,
    ExecutionResult,
    end_strategy,
)
from orderloop.strategies.params import LooLocParams, parse_parameters

if TYPE_CHECKING:
    from orderloop.activity import ActivityLog
    from orderloop.execution.broker import BrokerGateway, BrokerOpenOrder, Quote
    from orderloop.execution.order_manager import OrderManager
    from orderloop.market.clock import MarketClock
    from orderloop.store.sqlite_store import TradingStore

logger = structlog.get_logger(__name__)


class LooLocExecutor:
    """Executes LOO_LOC strategies.

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
            LooLocParams, parse_parameters(strategy.strategy_type, strategy.parameters)
        )
        log = logger.bind(strategy_id=strategy.id, symbol=strategy.symbol)

        if Market(strategy.market) != FOREIGN_MARKET:
            return await end_strategy(
                self._store,
                self._activity,
                strategy,
                f"LOO/LOC orders are only supported on the {FOREIGN_MARKET.value} market",
            )

        status = self._clock.status(now, FOREIGN_MARKET)
        if status.is_weekend:
            log.info("loo_loc_skipped_weekend")
            return ExecutionResult(strategy.id, SKIPPED, "weekend")

        start, end = self._clock.trading_day_bounds(now, FOREIGN_MARKET)
        today = self._store.list_orders_for_trading_day(strategy.id, start, end)

        # ------------------------------------------------------------------
        # Stale orders: anything still open from before the last edit
        # ------------------------------------------------------------------
        cancelled_now: set[str] = set()
        stale = [
            o
            for o in today
            if o.status in ACTIVE_ORDER_STATUSES
            and strategy.updated_at is not None
            and o.submitted_at is not None
            and o.submitted_at < strategy.updated_at
        ]
        cancelled = 0
        for order in stale:
            if await self._orders.cancel(
                gateway, strategy, order, "strategy edited after order was placed"
            ):
                cancelled += 1
                if order.broker_order_id:
                    cancelled_now.add(order.broker_order_id)
        if stale:
            today = self._store.list_orders_for_trading_day(strategy.id, start, end)

        # ------------------------------------------------------------------
        # Broker view and duplicate repair
        # ------------------------------------------------------------------
        broker_open: list[BrokerOpenOrder] | None
        try:
            broker_open = await gateway.get_open_orders(
                strategy.symbol, params.exchange_code
            )
        except Exception as exc:
            broker_open = None
            log.warning("loo_loc_open_orders_unavailable", error=str(exc))

        if broker_open:
            today = await self._repair_cancelled(
                strategy, today, broker_open, cancelled_now, start, end
            )

        def exists(order_type: OrderType, side: Side) -> bool:
            # Without the broker's view a duplicate cannot be ruled out.
            if broker_open is None:
                return True
            local = any(
                o.order_type == order_type
                and o.side == side
                and o.status in LIVE_OR_FILLED_STATUSES
                for o in today
            )
            remote = any(
                b.order_type == order_type
                and b.side == side
                and b.broker_order_id not in cancelled_now
                for b in broker_open
            )
            return local or remote

        # ------------------------------------------------------------------
        # Fold same-day fills into the position
        # ------------------------------------------------------------------
        params = self._fold_fills(strategy, params, today)

        # ------------------------------------------------------------------
        # Decisions
        # ------------------------------------------------------------------
        actions: list[OrderAction] = []
        quote: Quote | None = None
        quote_failed = False

        async def get_quote() -> Quote | None:
            nonlocal quote, quote_failed
            if quote is None and not quote_failed:
                try:
                    quote = await gateway.get_quote(
                        strategy.symbol, params.exchange_code
                    )
                except Exception as exc:
                    quote_failed = True
                    await self._activity.record(
                        strategy.owner_id,
                        f"Quote for {strategy.symbol} unavailable: {exc}",
                        event_kind=EventKind.SYSTEM,
                        level=LogLevel.ERROR,
                        strategy_id=strategy.id,
                    )
            return quote

        if (
            status.can_submit_opening_limit
            and params.loo_enabled
            and params.loo_qty > 0
            and not exists(OrderType.LOO, Side.BUY)
        ):
            q = await get_quote()
            if q is not None and q.previous_close > 0:
                actions.append(
                    OrderAction.submit(
                        strategy.symbol,
                        Side.BUY,
                        OrderType.LOO,
                        params.loo_qty,
                        round_to_market_tick(q.previous_close, FOREIGN_MARKET, Side.BUY),
                        reason="opening buy at prior close",
                    )
                )
            elif q is not None:
                log.warning("loo_skipped_no_previous_close")

        if self._clock.can_evaluate_closing_condition(now, FOREIGN_MARKET):
            if (
                params.loc_buy_enabled
                and params.loc_buy_qty > 0
                and not exists(OrderType.LOC, Side.BUY)
            ):
                price = await self._closing_buy_price(params, get_quote)
                if price is not None:
                    actions.append(
                        OrderAction.submit(
                            strategy.symbol,
                            Side.BUY,
                            OrderType.LOC,
                            params.loc_buy_qty,
                            price,
                            reason="closing buy",
                        )
                    )

            if (
                params.current_qty > 0
                and params.current_avg_cost > 0
                and not exists(OrderType.LOC, Side.SELL)
            ):
                actions.append(
                    OrderAction.submit(
                        strategy.symbol,
                        Side.SELL,
                        OrderType.LOC,
                        params.current_qty,
                        target_sell_price(
                            params.current_avg_cost,
                            params.target_return_rate,
                            FOREIGN_MARKET,
                        ),
                        reason="closing sell at target return",
                    )
                )

        results = await self._orders.apply(
            gateway, strategy, actions, now, exchange_code=params.exchange_code
        )
        log.info(
            "loo_loc_executed",
            session=status.session.value,
            submitted=len(results.submitted),
            failed=len(results.failed),
            cancelled=cancelled,
        )
        return ExecutionResult(
            strategy.id,
            EXECUTED,
            submitted=len(results.submitted),
            cancelled=cancelled,
            failed=len(results.failed),
        )

    @staticmethod
    async def _closing_buy_price(params: LooLocParams, get_quote) -> float | None:
        if params.current_qty > 0 and params.current_avg_cost > 0:
            return round_to_market_tick(
                params.current_avg_cost, FOREIGN_MARKET, Side.BUY
            )
        if params.current_qty == 0:
            q = await get_quote()
            if q is not None and q.opening_price > 0:
                return round_to_market_tick(q.opening_price, FOREIGN_MARKET, Side.BUY)
        return None

    async def _repair_cancelled(
        self,
        strategy: Strategy,
        today: list[Order],
        broker_open: list[BrokerOpenOrder],
        cancelled_now: set[str],
        start: datetime,
        end: datetime,
    ) -> list[Order]:
        """Restore local Cancelled rows the broker still lists as open."""
        open_ids = {b.broker_order_id for b in broker_open} - cancelled_now
        repaired = False
        for order in today:
            if (
                order.status == OrderStatus.CANCELLED
                and order.broker_order_id in open_ids
            ):
                conflict = ReconciliationConflict(
                    order.id, order.status.value, "open at broker"
                )
                logger.warning(
                    "reconciliation_conflict_repaired",
                    strategy_id=strategy.id,
                    detail=str(conflict),
                )
                self._store.update_order_status(
                    order.id, OrderStatus.SUBMITTED, repair=True
                )
                await self._activity.record(
                    strategy.owner_id,
                    f"Order {order.broker_order_id} is still open at the broker; "
                    "restored to Submitted",
                    event_kind=EventKind.SYSTEM,
                    level=LogLevel.WARN,
                    strategy_id=strategy.id,
                    order_id=order.id,
                )
                repaired = True
        if repaired:
            return self._store.list_orders_for_trading_day(strategy.id, start, end)
        return today

    def _fold_fills(
        self, strategy: Strategy, params: LooLocParams, today: list[Order]
    ) -> LooLocParams:
        folded = params
        for order in today:
            if (
                order.status == OrderStatus.FILLED
                and order.id not in folded.processed_order_ids
            ):
                folded = folded.apply_fill(
                    order.id,
                    order.side,
                    order.avg_fill_price or order.price or 0.0,
                    order.filled_quantity or order.quantity,
                )
        if folded is not params:
            self._store.save_parameters(strategy.id, folded.to_storage())
            strategy.parameters = folded.to_storage()
            logger.info(
                "loo_loc_average_updated",
                strategy_id=strategy.id,
                avg_cost=folded.current_avg_cost,
                qty=folded.current_qty,
            )
        return folded
