"""Shared test fixtures for the orderloop test suite.

Reference instants (America/New_York is on EDT from 2026-03-08):
    PRE_MARKET   2026-03-16 12:00 UTC = 08:00 EDT (Monday)
    REGULAR_EARLY 2026-03-16 13:35 UTC = 09:35 EDT (debounce not elapsed)
    REGULAR_LATE 2026-03-16 14:00 UTC = 10:00 EDT (30 min after the open)
    SATURDAY     2026-03-14 15:00 UTC
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from orderloop.activity import ActivityLog
from orderloop.errors import BrokerRejectionError
from orderloop.execution.broker import (
    BrokerOpenOrder,
    BrokerOrderAck,
    BrokerOrderDetail,
    BrokerOrderStatus,
    Holding,
    Quote,
)
from orderloop.execution.order_manager import OrderManager
from orderloop.market.clock import MarketClock
from orderloop.models import Market, Strategy, StrategyType
from orderloop.store.sqlite_store import TradingStore

PRE_MARKET = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)
REGULAR_EARLY = datetime(2026, 3, 16, 13, 35, tzinfo=timezone.utc)
REGULAR_LATE = datetime(2026, 3, 16, 14, 0, tzinfo=timezone.utc)
SATURDAY = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)
# Strategies in tests are created well before the instants above.
CREATED = PRE_MARKET - timedelta(hours=1)


class FakeGateway:
    """In-memory Broker Gateway recording every call."""

    def __init__(self) -> None:
        self.submitted: list[dict] = []
        self.cancelled: list[str] = []
        self.daytime_cancels: list[str] = []
        self.detail_calls: list[str] = []
        self.details: dict[str, BrokerOrderDetail] = {}
        self.open_orders: list[BrokerOpenOrder] = []
        self.quotes: dict[str, Quote] = {}
        self.holdings: list[Holding] = []
        self.fail_submit: Exception | None = None
        self.fail_cancel: Exception | None = None
        self.fail_open_orders: Exception | None = None
        self.closed = False
        self._next_id = 1000

    async def submit_order(
        self,
        symbol,
        side,
        order_type,
        quantity,
        price,
        market,
        exchange_code=None,
        daytime=False,
    ) -> BrokerOrderAck:
        if self.fail_submit is not None:
            raise self.fail_submit
        self._next_id += 1
        broker_order_id = f"B{self._next_id}"
        self.submitted.append(
            {
                "broker_order_id": broker_order_id,
                "symbol": symbol,
                "side": side,
                "order_type": order_type,
                "quantity": quantity,
                "price": price,
                "market": market,
                "exchange_code": exchange_code,
                "daytime": daytime,
            }
        )
        return BrokerOrderAck(broker_order_id)

    async def cancel_order(
        self, broker_order_id, symbol, quantity, market, exchange_code=None, daytime=False
    ) -> bool:
        if self.fail_cancel is not None:
            raise self.fail_cancel
        self.cancelled.append(broker_order_id)
        if daytime:
            self.daytime_cancels.append(broker_order_id)
        return True

    async def get_order_detail(
        self, broker_order_id, symbol, market, exchange_code=None
    ) -> BrokerOrderDetail:
        self.detail_calls.append(broker_order_id)
        return self.details.get(
            broker_order_id, BrokerOrderDetail(BrokerOrderStatus.OPEN)
        )

    async def get_holdings(self) -> list[Holding]:
        return list(self.holdings)

    async def get_quote(self, symbol, exchange_code=None) -> Quote:
        if symbol not in self.quotes:
            raise BrokerRejectionError(f"no quote for {symbol}")
        return self.quotes[symbol]

    async def get_quotes(self, symbols, exchange_code=None) -> dict[str, Quote]:
        return {s: self.quotes[s] for s in symbols if s in self.quotes}

    async def get_open_orders(self, symbol=None, exchange_code=None):
        if self.fail_open_orders is not None:
            raise self.fail_open_orders
        return [o for o in self.open_orders if symbol is None or o.symbol == symbol]

    async def aclose(self) -> None:
        self.closed = True


class RecordingNotifier:
    """Notifier that keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, str | None]] = []

    async def notify(self, owner_id, title, body, link=None) -> None:
        self.sent.append((owner_id, title, body, link))


def make_quote(
    symbol: str = "TQQQ",
    previous_close: float = 50.123,
    opening_price: float = 50.5,
    current_price: float = 51.0,
) -> Quote:
    return Quote(
        symbol=symbol,
        current_price=current_price,
        previous_close=previous_close,
        opening_price=opening_price,
    )


@pytest.fixture
def store(tmp_path: Path):
    """A fresh SQLite store in a temporary directory."""
    s = TradingStore(tmp_path / "orderloop.db")
    yield s
    s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def activity(store: TradingStore, notifier: RecordingNotifier) -> ActivityLog:
    return ActivityLog(store, notifier)


@pytest.fixture
def clock() -> MarketClock:
    return MarketClock(closing_debounce_minutes=10)


@pytest.fixture
def order_manager(store: TradingStore, activity: ActivityLog) -> OrderManager:
    return OrderManager(store, activity)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def add_strategy(store: TradingStore):
    """Factory fixture: persist a strategy and return the stored row."""

    def _add(
        strategy_type: StrategyType = StrategyType.LOO_LOC,
        parameters: dict | None = None,
        owner_id: str = "owner-1",
        symbol: str = "TQQQ",
        market: Market = Market.US,
        created_at: datetime = CREATED,
        **kwargs,
    ) -> Strategy:
        strategy = Strategy(
            owner_id=owner_id,
            name=kwargs.pop("name", f"{symbol} test"),
            strategy_type=strategy_type,
            symbol=symbol,
            market=market,
            parameters=parameters or {},
            created_at=created_at,
            updated_at=kwargs.pop("updated_at", created_at),
            **kwargs,
        )
        strategy_id = store.add_strategy(strategy)
        return store.get_strategy(strategy_id)

    return _add
