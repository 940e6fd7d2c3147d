"""Order reconciler: converge local order rows to the broker's view.

Runs as its own tick, independent of strategy execution:

    1. Load every Submitted/PartiallyFilled order system-wide.
    2. Group by owner, window the owners, and run one coroutine per owner
       with one gateway session; orders of one owner go sequentially.
    3. Per order: skip opening/closing-auction orders on the foreign
       market outside Regular (the fill endpoint does not list them yet
       and would report them as cancelled), query the order detail, map
       the broker status, and write only when status or filled quantity
       changed.  A newly filled LOO/LOC buy is folded into the strategy's
       running average; a filled sell is taken off its position.
    4. Expiry sweep: an order still Submitted from an earlier session day
       is force-cancelled once its market is closed for the day.

Reconciling twice against an unchanged broker writes nothing the second
time.  Per-order failures are counted, never raised.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, cast

import structlog

from orderloop.config.markets import FOREIGN_MARKET
from orderloop.errors import StatusTransitionError
from orderloop.execution.batching import (
    GatewayFactory,
    group_by_owner,
    owner_gateway,
    owner_window,
    run_per_owner,
)
from orderloop.execution.broker import BrokerOrderStatus
from orderloop.models import (
    EventKind,
    LogLevel,
    Market,
    Order,
    OrderStatus,
    OrderType,
    Session,
    StrategyType,
    can_transition,
)
from orderloop.strategies.params import LooLocParams, parse_parameters

if TYPE_CHECKING:
    from orderloop.activity import ActivityLog
    from orderloop.execution.broker import BrokerGateway, BrokerOrderDetail
    from orderloop.market.clock import MarketClock
    from orderloop.store.sqlite_store import TradingStore

logger = structlog.get_logger(__name__)

_STATUS_MAP: dict[BrokerOrderStatus, OrderStatus] = {
    BrokerOrderStatus.OPEN: OrderStatus.SUBMITTED,
    BrokerOrderStatus.PARTIALLY_FILLED: OrderStatus.PARTIALLY_FILLED,
    BrokerOrderStatus.FILLED: OrderStatus.FILLED,
    BrokerOrderStatus.CANCELLED: OrderStatus.CANCELLED,
    # The broker drops expired conditional orders from its books.
    BrokerOrderStatus.NOT_FOUND: OrderStatus.CANCELLED,
}

_EVENTS: dict[OrderStatus, tuple[EventKind, LogLevel, str]] = {
    OrderStatus.FILLED: (EventKind.ORDER_FILLED, LogLevel.INFO, "filled"),
    OrderStatus.PARTIALLY_FILLED: (
        EventKind.ORDER_FILLED,
        LogLevel.INFO,
        "partially filled",
    ),
    OrderStatus.CANCELLED: (EventKind.ORDER_CANCELLED, LogLevel.INFO, "cancelled"),
    OrderStatus.FAILED: (EventKind.ORDER_FAILED, LogLevel.ERROR, "failed"),
}

_AUCTION_TYPES = frozenset({OrderType.LOO, OrderType.LOC})

UPDATED = "updated"
UNCHANGED = "unchanged"
SKIPPED = "skipped"


def map_broker_status(status: BrokerOrderStatus | str) -> OrderStatus:
    """Broker status to local status; anything unrecognised is Failed."""
    try:
        return _STATUS_MAP[BrokerOrderStatus(status)]
    except (KeyError, ValueError):
        return OrderStatus.FAILED


@dataclass
class ReconcileSummary:
    """Aggregate counts of one reconciliation tick."""

    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    expired: int = 0
    owners_skipped: int = 0

    def merge(self, other: ReconcileSummary) -> None:
        for key, value in asdict(other).items():
            setattr(self, key, getattr(self, key) + value)

    def as_dict(self) -> dict:
        return asdict(self)


class OrderReconciler:
    """Order Reconciliation Engine.

    Parameters
    ----------
    store : TradingStore
        Order and strategy persistence.
    activity : ActivityLog
        Audit trail plus owner notifications.
    clock : MarketClock
        Session clock for the auction skip rule and the expiry sweep.
    """

    def __init__(
        self, store: TradingStore, activity: ActivityLog, clock: MarketClock
    ) -> None:
        self._store = store
        self._activity = activity
        self._clock = clock

    async def reconcile(
        self,
        gateway_factory: GatewayFactory,
        offset: int = 0,
        size: int | None = None,
        now: datetime | None = None,
    ) -> ReconcileSummary:
        """Reconcile every pending order of the owners in the window.

        Parameters
        ----------
        gateway_factory : GatewayFactory
            Opens one gateway session per owner.
        offset, size : int
            Owner window; ``size`` of 0/None means every owner from ``offset``.
        now : datetime | None
            Evaluation instant; defaults to the current UTC time.

        Returns
        -------
        ReconcileSummary
            Counts across all owners.  Never raises for per-order failures.
        """
        now = now or datetime.now(timezone.utc)
        pending = group_by_owner(self._store.list_pending_orders())
        owners = owner_window(pending, offset, size)

        logger.info(
            "reconciliation_started",
            owners=len(owners),
            orders=sum(len(pending[o]) for o in owners),
        )

        async def work(owner_id: str) -> ReconcileSummary:
            return await self._reconcile_owner(
                owner_id, pending[owner_id], gateway_factory, now
            )

        results = await run_per_owner(owners, work)

        summary = ReconcileSummary()
        for result in results.values():
            if isinstance(result, ReconcileSummary):
                summary.merge(result)
            else:
                summary.owners_skipped += 1

        summary.expired = await self.sweep_expired(now, owners=set(owners))

        logger.info("reconciliation_complete", **summary.as_dict())
        return summary

    async def _reconcile_owner(
        self,
        owner_id: str,
        orders: list[Order],
        gateway_factory: GatewayFactory,
        now: datetime,
    ) -> ReconcileSummary:
        summary = ReconcileSummary()
        try:
            async with owner_gateway(gateway_factory, owner_id) as gateway:
                for order in orders:
                    summary.checked += 1
                    try:
                        outcome = await self.reconcile_order(gateway, order, now)
                    except Exception as exc:
                        summary.failed += 1
                        logger.error(
                            "order_reconciliation_failed",
                            order_id=order.id,
                            broker_order_id=order.broker_order_id,
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )
                        continue
                    if outcome == UPDATED:
                        summary.updated += 1
                    elif outcome == UNCHANGED:
                        summary.unchanged += 1
                    else:
                        summary.skipped += 1
        except Exception as exc:
            # Gateway setup failed (e.g. missing credentials); retried next tick.
            logger.error(
                "reconciliation_owner_skipped", owner_id=owner_id, error=str(exc)
            )
            summary.owners_skipped = 1
        return summary

    async def reconcile_order(
        self, gateway: BrokerGateway, order: Order, now: datetime
    ) -> str:
        """Reconcile one order; returns ``updated``, ``unchanged`` or ``skipped``."""
        log = logger.bind(order_id=order.id, broker_order_id=order.broker_order_id)

        if not order.broker_order_id:
            log.warning("reconciliation_missing_broker_id")
            return SKIPPED

        market = Market(order.market)
        if (
            order.order_type in _AUCTION_TYPES
            and market == FOREIGN_MARKET
            and self._clock.session(now, market) != Session.REGULAR
        ):
            return SKIPPED

        detail = await gateway.get_order_detail(
            order.broker_order_id,
            order.symbol,
            market,
            exchange_code=order.exchange_code,
        )
        new_status = map_broker_status(detail.status)
        filled_qty = detail.filled_quantity

        if new_status == order.status and filled_qty == order.filled_quantity:
            return UNCHANGED

        if not can_transition(order.status, new_status):
            log.warning(
                "reconciliation_backward_transition_ignored",
                local_status=order.status.value,
                broker_status=str(detail.status),
            )
            return SKIPPED

        newly_filled = new_status == OrderStatus.FILLED and order.status != OrderStatus.FILLED
        try:
            updated = self._store.update_order_status(
                order.id,
                new_status,
                filled_quantity=filled_qty,
                avg_fill_price=detail.avg_fill_price,
                filled_at=now if newly_filled else None,
            )
        except StatusTransitionError as exc:
            log.warning("reconciliation_transition_rejected", error=str(exc))
            return SKIPPED

        await self._announce(updated, detail)

        if newly_filled:
            await self._fold_loo_loc_fill(updated)
        return UPDATED

    async def _announce(self, order: Order, detail: BrokerOrderDetail) -> None:
        kind, level, verb = _EVENTS[order.status]
        price = f" @ {order.avg_fill_price:g}" if order.avg_fill_price else ""
        message = (
            f"{order.order_type.value} {order.side.value} {order.symbol} "
            f"{order.filled_quantity}/{order.quantity}{price} {verb}"
        )
        await self._activity.record(
            order.owner_id,
            message,
            event_kind=kind,
            level=level,
            strategy_id=order.strategy_id,
            notify_title=f"Order {verb}: {order.symbol}",
            order_id=order.id,
            broker_status=str(getattr(detail.status, "value", detail.status)),
        )

    async def _fold_loo_loc_fill(self, order: Order) -> None:
        if order.strategy_id is None:
            return
        strategy = self._store.get_strategy(order.strategy_id)
        if strategy is None or strategy.strategy_type != StrategyType.LOO_LOC:
            return
        params = cast(
            LooLocParams, parse_parameters(strategy.strategy_type, strategy.parameters)
        )
        folded = params.apply_fill(
            order.id,
            order.side,
            order.avg_fill_price or order.price or 0.0,
            order.filled_quantity or order.quantity,
        )
        if folded is params:
            return
        self._store.save_parameters(strategy.id, folded.to_storage())
        logger.info(
            "loo_loc_average_updated",
            strategy_id=strategy.id,
            order_id=order.id,
            avg_cost=folded.current_avg_cost,
            qty=folded.current_qty,
        )

    async def sweep_expired(
        self, now: datetime, owners: set[str] | None = None
    ) -> int:
        """Force-cancel Submitted orders left over from an earlier session day.

        Only orders whose market is closed for the day are touched.  The
        order's own market is used, so orphaned orders are swept too.
        """
        expired = 0
        for order in self._store.list_stale_submitted_orders(before=now):
            if owners is not None and order.owner_id not in owners:
                continue
            if order.submitted_at is None:
                continue
            market = Market(order.market)
            if self._clock.session_day(order.submitted_at, market) >= self._clock.session_day(
                now, market
            ):
                continue
            if not self._clock.is_closed_for_day(now, market):
                continue
            try:
                updated = self._store.update_order_status(
                    order.id,
                    OrderStatus.CANCELLED,
                    error_message="expired: not filled by the end of its trading day",
                )
            except (KeyError, StatusTransitionError) as exc:
                logger.warning("expired_sweep_skipped", order_id=order.id, error=str(exc))
                continue
            expired += 1
            await self._activity.record(
                updated.owner_id,
                f"{updated.order_type.value} {updated.side.value} {updated.symbol} "
                f"x{updated.quantity} expired and was cancelled",
                event_kind=EventKind.ORDER_CANCELLED,
                strategy_id=updated.strategy_id,
                notify_title=f"Order expired: {updated.symbol}",
                order_id=updated.id,
            )
        if expired:
            logger.info("expired_orders_swept", count=expired)
        return expired
