"""OrderManager: turns executor decisions into broker calls and order rows.

Executors decide *what* to do and hand ``OrderAction`` intents here.  The
manager sends each one through the (retrying) gateway, persists the
outcome, and records an audit row plus an owner notification.

A failed submission is stored as a FAILED row so the attempt stays
visible; a failed cancellation leaves the local row untouched so the
order keeps counting as live for duplicate checks.

Architecture:
    Executor -> OrderManager -> RetryingGateway -> KisGateway
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from orderloop.models import (
    EventKind,
    LogLevel,
    Order,
    OrderAction,
    OrderStatus,
    Strategy,
)

if TYPE_CHECKING:
    from orderloop.activity import ActivityLog
    from orderloop.execution.broker import BrokerGateway
    from orderloop.store.sqlite_store import TradingStore

logger = structlog.get_logger(__name__)


def describe(action: OrderAction) -> str:
    price = f" @ {action.price:g}" if action.price else ""
    return (
        f"{action.order_type.value if action.order_type else ''} "
        f"{action.side.value if action.side else ''} "
        f"{action.symbol} x{action.quantity}{price}"
    ).strip()


@dataclass
class ActionResults:
    """What happened to a batch of actions."""

    submitted: list[Order] = field(default_factory=list)
    failed: list[OrderAction] = field(default_factory=list)
    cancelled: list[Order] = field(default_factory=list)
    cancel_failed: list[Order] = field(default_factory=list)


class OrderManager:
    """Applies submit/cancel intents for one strategy at a time.

    Args:
        store: Order and audit persistence.
        activity: Audit trail plus notifications.
    """

    def __init__(self, store: TradingStore, activity: ActivityLog) -> None:
        self._store = store
        self._activity = activity

    async def submit(
        self,
        gateway: BrokerGateway,
        strategy: Strategy,
        action: OrderAction,
        now: datetime,
        exchange_code: str | None = None,
    ) -> Order | None:
        """Place one order.  Returns the stored row, or None if the broker refused."""
        label = describe(action)
        try:
            ack = await gateway.submit_order(
                action.symbol,
                action.side,
                action.order_type,
                action.quantity,
                action.price,
                strategy.market,
                exchange_code=exchange_code,
                daytime=action.daytime,
            )
        except Exception as exc:
            self._store.add_order(
                Order(
                    owner_id=strategy.owner_id,
                    strategy_id=strategy.id,
                    symbol=action.symbol,
                    side=action.side,
                    order_type=action.order_type,
                    quantity=action.quantity,
                    price=action.price,
                    market=strategy.market,
                    exchange_code=exchange_code,
                    daytime=action.daytime,
                    status=OrderStatus.FAILED,
                    error_message=str(exc),
                    submitted_at=now,
                )
            )
            await self._activity.record(
                strategy.owner_id,
                f"{label} failed: {exc}",
                event_kind=EventKind.ORDER_FAILED,
                level=LogLevel.ERROR,
                strategy_id=strategy.id,
                notify_title=f"Order failed: {strategy.name}",
                reason=action.reason,
                error_type=type(exc).__name__,
            )
            return None

        order = Order(
            owner_id=strategy.owner_id,
            strategy_id=strategy.id,
            broker_order_id=ack.broker_order_id,
            symbol=action.symbol,
            side=action.side,
            order_type=action.order_type,
            quantity=action.quantity,
            price=action.price,
            market=strategy.market,
            exchange_code=exchange_code,
            daytime=action.daytime,
            status=OrderStatus.SUBMITTED,
            submitted_at=now,
        )
        self._store.add_order(order)
        await self._activity.record(
            strategy.owner_id,
            f"{label} submitted",
            event_kind=EventKind.ORDER_SUBMITTED,
            strategy_id=strategy.id,
            notify_title=f"Order submitted: {strategy.name}",
            order_id=order.id,
            broker_order_id=ack.broker_order_id,
            reason=action.reason,
        )
        return order

    async def cancel(
        self,
        gateway: BrokerGateway,
        strategy: Strategy,
        order: Order,
        reason: str,
    ) -> bool:
        """Cancel one order at the broker and mark it Cancelled locally.

        Returns False, leaving the row as it was, when the broker call fails.
        """
        if order.broker_order_id:
            try:
                await gateway.cancel_order(
                    order.broker_order_id,
                    order.symbol,
                    order.quantity - order.filled_quantity,
                    order.market,
                    exchange_code=order.exchange_code,
                    daytime=order.daytime,
                )
            except Exception as exc:
                logger.warning(
                    "order_cancel_failed",
                    order_id=order.id,
                    broker_order_id=order.broker_order_id,
                    strategy_id=strategy.id,
                    error=str(exc),
                )
                return False

        self._store.update_order_status(
            order.id, OrderStatus.CANCELLED, error_message=reason
        )
        await self._activity.record(
            strategy.owner_id,
            f"{order.order_type.value} {order.side.value} {order.symbol} "
            f"x{order.quantity} cancelled: {reason}",
            event_kind=EventKind.ORDER_CANCELLED,
            strategy_id=strategy.id,
            notify_title=f"Order cancelled: {strategy.name}",
            order_id=order.id,
        )
        return True

    async def apply(
        self,
        gateway: BrokerGateway,
        strategy: Strategy,
        actions: list[OrderAction],
        now: datetime,
        exchange_code: str | None = None,
    ) -> ActionResults:
        """Apply actions in order.  One action's failure never stops the rest."""
        results = ActionResults()
        for action in actions:
            if action.kind == OrderAction.CANCEL and action.order is not None:
                if await self.cancel(gateway, strategy, action.order, action.reason):
                    results.cancelled.append(action.order)
                else:
                    results.cancel_failed.append(action.order)
                continue
            order = await self.submit(
                gateway, strategy, action, now, exchange_code=exchange_code
            )
            if order is None:
                results.failed.append(action)
            else:
                results.submitted.append(order)
        return results
