"""BrokerGateway: the contract the engine consumes from a securities broker.

The engine only ever talks to this interface.  ``orderloop.kis.client``
implements it against the Korea Investment & Securities open API and
``RetryingGateway`` wraps any implementation with backoff.

Order lookups report "the broker has no record" as
``BrokerOrderStatus.NOT_FOUND`` rather than raising: conditional auction
orders that expire unfilled simply disappear from the broker's books.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from orderloop.models import Market, OrderType, Side


class BrokerOrderStatus(str, Enum):
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class BrokerOrderAck:
    broker_order_id: str


@dataclass(frozen=True)
class BrokerOrderDetail:
    status: BrokerOrderStatus | str
    filled_quantity: int = 0
    avg_fill_price: float | None = None
    total_quantity: int | None = None


@dataclass(frozen=True)
class Holding:
    symbol: str
    quantity: int
    avg_cost: float
    current_price: float
    valuation_amount: float
    return_rate_pct: float
    exchange_code: str | None = None


@dataclass(frozen=True)
class Quote:
    symbol: str
    current_price: float
    previous_close: float
    opening_price: float
    high: float = 0.0
    low: float = 0.0
    volume: int = 0
    change: float = 0.0
    change_rate_pct: float = 0.0


@dataclass(frozen=True)
class BrokerOpenOrder:
    broker_order_id: str
    symbol: str
    side: Side
    order_type: OrderType
    quantity: int
    unfilled_quantity: int


class BrokerGateway(Protocol):
    """Async broker session for one owner's credentials."""

    async def submit_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: int,
        price: float | None,
        market: Market,
        exchange_code: str | None = None,
        daytime: bool = False,
    ) -> BrokerOrderAck:
        """Place an order.  Raises BrokerRejectionError with the broker's reason."""
        ...

    async def cancel_order(
        self,
        broker_order_id: str,
        symbol: str,
        quantity: int,
        market: Market,
        exchange_code: str | None = None,
        daytime: bool = False,
    ) -> bool:
        ...

    async def get_order_detail(
        self,
        broker_order_id: str,
        symbol: str,
        market: Market,
        exchange_code: str | None = None,
    ) -> BrokerOrderDetail:
        ...

    async def get_holdings(self) -> list[Holding]:
        ...

    async def get_quote(self, symbol: str, exchange_code: str | None = None) -> Quote:
        ...

    async def get_quotes(
        self, symbols: list[str], exchange_code: str | None = None
    ) -> dict[str, Quote]:
        """Quotes for several symbols, fetched sequentially with a fixed delay."""
        ...

    async def get_open_orders(
        self, symbol: str | None = None, exchange_code: str | None = None
    ) -> list[BrokerOpenOrder]:
        ...

    async def aclose(self) -> None:
        """Release the underlying HTTP session."""
        ...
