"""Tests for TradingStore persistence.

Tests cover:
- Strategy CRUD and the updated_at contract (edits bump it, engine writes do not)
- Order status transitions, including repair of a Cancelled order
- Order queries by strategy, status, side, type and time window
- Strategy deletion detaching orders
- Audit trail ordering and filters
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from orderloop.errors import StatusTransitionError
from orderloop.models import (
    EventKind,
    ExecutionLogEntry,
    LogLevel,
    Market,
    Order,
    OrderStatus,
    OrderType,
    Side,
    Strategy,
    StrategyStatus,
    StrategyType,
)
from orderloop.store.sqlite_store import TradingStore

from conftest import CREATED, PRE_MARKET


def _make_order(
    strategy_id: str | None = "s1",
    submitted_at: datetime = PRE_MARKET,
    status: OrderStatus = OrderStatus.SUBMITTED,
    side: Side = Side.BUY,
    order_type: OrderType = OrderType.LOO,
    **kwargs,
) -> Order:
    return Order(
        owner_id=kwargs.pop("owner_id", "owner-1"),
        symbol=kwargs.pop("symbol", "TQQQ"),
        side=side,
        order_type=order_type,
        quantity=kwargs.pop("quantity", 3),
        market=Market.US,
        status=status,
        strategy_id=strategy_id,
        broker_order_id=kwargs.pop("broker_order_id", "B1"),
        price=kwargs.pop("price", 50.12),
        submitted_at=submitted_at,
        **kwargs,
    )


class TestStrategies:
    def test_add_and_get_round_trip(self, store: TradingStore) -> None:
        strategy = Strategy(
            owner_id="owner-1",
            name="TQQQ auction",
            strategy_type=StrategyType.LOO_LOC,
            symbol="TQQQ",
            market=Market.US,
            parameters={"looQty": 2, "targetReturnRate": 5},
            start_date=date(2026, 3, 1),
            end_date=date(2026, 6, 30),
            created_at=CREATED,
        )
        strategy_id = store.add_strategy(strategy)

        loaded = store.get_strategy(strategy_id)
        assert loaded is not None
        assert loaded.parameters == {"looQty": 2, "targetReturnRate": 5}
        assert loaded.status == StrategyStatus.ACTIVE
        assert loaded.end_date == date(2026, 6, 30)
        assert loaded.created_at == CREATED
        assert loaded.updated_at == CREATED
        assert loaded.last_executed_at is None

    def test_get_missing(self, store: TradingStore) -> None:
        assert store.get_strategy("nope") is None

    def test_save_parameters_keeps_updated_at(self, store, add_strategy) -> None:
        strategy = add_strategy(parameters={"looQty": 1})
        store.save_parameters(strategy.id, {"looQty": 1, "currentQty": 3})

        loaded = store.get_strategy(strategy.id)
        assert loaded.parameters["currentQty"] == 3
        assert loaded.updated_at == strategy.updated_at

    def test_edit_bumps_updated_at(self, store, add_strategy) -> None:
        strategy = add_strategy(parameters={"looQty": 1})
        store.edit_strategy(strategy.id, {"looQty": 4}, at=PRE_MARKET)

        loaded = store.get_strategy(strategy.id)
        assert loaded.parameters == {"looQty": 4}
        assert loaded.updated_at == PRE_MARKET

    def test_mark_executed(self, store, add_strategy) -> None:
        strategy = add_strategy()
        store.mark_executed(strategy.id, PRE_MARKET)
        assert store.get_strategy(strategy.id).last_executed_at == PRE_MARKET

    def test_list_filters(self, store, add_strategy) -> None:
        a = add_strategy(owner_id="owner-1")
        b = add_strategy(owner_id="owner-2")
        store.set_strategy_status(b.id, StrategyStatus.INACTIVE)

        assert [s.id for s in store.list_strategies(owner_id="owner-1")] == [a.id]
        assert [s.id for s in store.list_active_strategies()] == [a.id]
        assert [
            s.id for s in store.list_strategies(status=StrategyStatus.INACTIVE)
        ] == [b.id]

    def test_delete_detaches_orders(self, store, add_strategy) -> None:
        strategy = add_strategy()
        order_id = store.add_order(_make_order(strategy_id=strategy.id))

        store.delete_strategy(strategy.id)

        assert store.get_strategy(strategy.id) is None
        order = store.get_order(order_id)
        assert order is not None
        assert order.strategy_id is None


class TestOrderTransitions:
    def test_forward_transition(self, store: TradingStore) -> None:
        order_id = store.add_order(_make_order())
        filled_at = PRE_MARKET + timedelta(hours=2)

        updated = store.update_order_status(
            order_id,
            OrderStatus.FILLED,
            filled_quantity=3,
            avg_fill_price=50.1,
            filled_at=filled_at,
        )

        assert updated.status == OrderStatus.FILLED
        loaded = store.get_order(order_id)
        assert loaded.filled_quantity == 3
        assert loaded.avg_fill_price == pytest.approx(50.1)
        assert loaded.filled_at == filled_at

    def test_partial_fill_may_repeat(self, store: TradingStore) -> None:
        order_id = store.add_order(_make_order(quantity=5))
        store.update_order_status(order_id, OrderStatus.PARTIALLY_FILLED, filled_quantity=1)
        store.update_order_status(order_id, OrderStatus.PARTIALLY_FILLED, filled_quantity=3)
        assert store.get_order(order_id).filled_quantity == 3

    @pytest.mark.parametrize(
        "terminal", [OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.FAILED]
    )
    def test_terminal_states_do_not_move_back(self, store, terminal) -> None:
        order_id = store.add_order(_make_order(status=terminal))
        with pytest.raises(StatusTransitionError):
            store.update_order_status(order_id, OrderStatus.SUBMITTED)

    def test_repair_reopens_cancelled_only(self, store: TradingStore) -> None:
        cancelled = store.add_order(_make_order(status=OrderStatus.CANCELLED))
        failed = store.add_order(_make_order(status=OrderStatus.FAILED))

        repaired = store.update_order_status(cancelled, OrderStatus.SUBMITTED, repair=True)
        assert repaired.status == OrderStatus.SUBMITTED

        with pytest.raises(StatusTransitionError):
            store.update_order_status(failed, OrderStatus.SUBMITTED, repair=True)

    def test_missing_order(self, store: TradingStore) -> None:
        with pytest.raises(KeyError):
            store.update_order_status("ghost", OrderStatus.FILLED)


class TestOrderQueries:
    def test_filters_and_order(self, store: TradingStore) -> None:
        later = store.add_order(
            _make_order(submitted_at=PRE_MARKET + timedelta(minutes=5), side=Side.SELL)
        )
        earlier = store.add_order(_make_order(submitted_at=PRE_MARKET))
        store.add_order(_make_order(strategy_id="s2"))

        assert [o.id for o in store.list_orders(strategy_id="s1")] == [earlier, later]
        assert [o.id for o in store.list_orders(strategy_id="s1", side=Side.SELL)] == [later]
        assert store.list_orders(statuses=[]) == []

    def test_trading_day_window_is_half_open(self, store: TradingStore) -> None:
        start = PRE_MARKET
        end = PRE_MARKET + timedelta(days=1)
        inside = store.add_order(_make_order(submitted_at=start))
        store.add_order(_make_order(submitted_at=end))
        store.add_order(_make_order(submitted_at=start - timedelta(seconds=1)))

        assert [o.id for o in store.list_orders_for_trading_day("s1", start, end)] == [
            inside
        ]

    def test_pending_and_stale(self, store: TradingStore) -> None:
        old = store.add_order(_make_order(submitted_at=PRE_MARKET - timedelta(days=1)))
        partial = store.add_order(
            _make_order(status=OrderStatus.PARTIALLY_FILLED, submitted_at=PRE_MARKET)
        )
        store.add_order(_make_order(status=OrderStatus.FILLED))

        assert {o.id for o in store.list_pending_orders()} == {old, partial}
        assert [o.id for o in store.list_stale_submitted_orders(PRE_MARKET)] == [old]

    def test_naive_timestamps_are_utc(self, store: TradingStore) -> None:
        order_id = store.add_order(_make_order(submitted_at=datetime(2026, 3, 16, 12, 0)))
        assert store.get_order(order_id).submitted_at == datetime(
            2026, 3, 16, 12, 0, tzinfo=timezone.utc
        )


class TestAuditTrail:
    def test_newest_first_with_filters(self, store: TradingStore) -> None:
        for minute, kind in enumerate(
            [EventKind.ORDER_SUBMITTED, EventKind.ORDER_FILLED, EventKind.ORDER_SUBMITTED]
        ):
            store.log_event(
                ExecutionLogEntry(
                    owner_id="owner-1",
                    strategy_id="s1",
                    level=LogLevel.INFO,
                    message=f"event {minute}",
                    event_kind=kind,
                    metadata={"minute": minute},
                    created_at=PRE_MARKET + timedelta(minutes=minute),
                )
            )
        store.log_event(
            ExecutionLogEntry(owner_id="owner-2", level=LogLevel.WARN, message="other")
        )

        events = store.list_events(owner_id="owner-1")
        assert [e.message for e in events] == ["event 2", "event 1", "event 0"]
        assert events[0].metadata == {"minute": 2}

        submitted = store.list_events(event_kind=EventKind.ORDER_SUBMITTED)
        assert len(submitted) == 2
        assert store.list_events(owner_id="owner-1", limit=1)[0].message == "event 2"
