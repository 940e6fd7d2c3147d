"""Core domain types shared by the clock, executors, reconciler, and store.

Persisted records (Strategy, Order, ExecutionLogEntry) are plain
dataclasses mirroring the SQLite rows.  Transient values (MarketStatus,
DistributionPlan, OrderAction) never reach the database.

All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Market(str, Enum):
    US = "US"
    KR = "KR"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    LOO = "LOO"
    LOC = "LOC"


class OrderStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class StrategyType(str, Enum):
    SPLIT_ORDER = "SPLIT_ORDER"
    LOO_LOC = "LOO_LOC"


class StrategyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ENDED = "ENDED"


class Session(str, Enum):
    PRE_MARKET = "PRE_MARKET"
    REGULAR = "REGULAR"
    AFTER_MARKET = "AFTER_MARKET"
    CLOSED = "CLOSED"


class Distribution(str, Enum):
    EQUAL = "EQUAL"
    PYRAMID = "PYRAMID"
    INVERTED = "INVERTED"


class StepUnit(str, Enum):
    """How a split-order ladder walks away from its base price."""

    USD = "USD"
    PERCENT = "PERCENT"


class EventKind(str, Enum):
    ORDER_SUBMITTED = "ORDER_SUBMITTED"
    ORDER_FAILED = "ORDER_FAILED"
    ORDER_FILLED = "ORDER_FILLED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    STRATEGY_STARTED = "STRATEGY_STARTED"
    STRATEGY_ENDED = "STRATEGY_ENDED"
    SYSTEM = "SYSTEM"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


ACTIVE_ORDER_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.SUBMITTED, OrderStatus.PARTIALLY_FILLED}
)

# Statuses that count as "an order exists for today" for duplicate checks.
LIVE_OR_FILLED_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.SUBMITTED, OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED}
)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.SUBMITTED: frozenset(
        {
            OrderStatus.PARTIALLY_FILLED,
            OrderStatus.FILLED,
            OrderStatus.CANCELLED,
            OrderStatus.FAILED,
        }
    ),
    OrderStatus.PARTIALLY_FILLED: frozenset(
        {OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED, OrderStatus.CANCELLED}
    ),
    OrderStatus.FILLED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


def can_transition(
    current: OrderStatus, new: OrderStatus, repair: bool = False
) -> bool:
    """Return True if an order may move from ``current`` to ``new``.

    Status only moves forward.  The single exception is the repair of a
    locally Cancelled order that the broker still lists as open, which
    is allowed back to Submitted when ``repair`` is set.
    """
    if repair:
        return current == OrderStatus.CANCELLED and new == OrderStatus.SUBMITTED
    return new in ALLOWED_TRANSITIONS[current]


@dataclass
class Strategy:
    """A persisted trading strategy.

    Attributes
    ----------
    owner_id : str
        Account owner; one broker session is opened per owner per tick.
    strategy_type : StrategyType
        Tag selecting the executor and the parameter variant.
    parameters : dict
        Raw JSON-shaped parameters.  Validate with
        ``orderloop.strategies.params.parse_parameters`` before use.
    last_executed_at : datetime | None
        Dedup fence written by the scheduler.
    updated_at : datetime
        Bumped by user edits only.  Orders submitted before this moment
        are stale.
    """

    owner_id: str
    name: str
    strategy_type: StrategyType
    symbol: str
    market: Market
    parameters: dict
    status: StrategyStatus = StrategyStatus.ACTIVE
    start_date: date | None = None
    end_date: date | None = None
    last_executed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str | None = None


@dataclass
class Order:
    """A persisted order row.  Append-only; status moves forward only."""

    owner_id: str
    symbol: str
    side: Side
    order_type: OrderType
    quantity: int
    market: Market
    status: OrderStatus = OrderStatus.SUBMITTED
    strategy_id: str | None = None
    broker_order_id: str | None = None
    price: float | None = None
    exchange_code: str | None = None
    daytime: bool = False
    filled_quantity: int = 0
    avg_fill_price: float | None = None
    error_message: str | None = None
    submitted_at: datetime | None = None
    filled_at: datetime | None = None
    updated_at: datetime | None = None
    id: str | None = None


@dataclass
class ExecutionLogEntry:
    """One audit row describing a user-visible event."""

    owner_id: str
    level: LogLevel
    message: str
    event_kind: EventKind | None = None
    strategy_id: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class MarketStatus:
    """Snapshot of the market session at one instant."""

    session: Session
    is_dst: bool
    can_submit_opening_limit: bool
    can_submit_closing_limit: bool
    minutes_since_regular_open: int | None
    is_weekend: bool
    trading_day: date


@dataclass(frozen=True)
class DistributionPlan:
    """Ordered ladder of (price, quantity) slots."""

    prices: tuple[float, ...]
    quantities: tuple[int, ...]

    def slots(self) -> list[tuple[float, int]]:
        return list(zip(self.prices, self.quantities))

    @property
    def total_quantity(self) -> int:
        return sum(self.quantities)


@dataclass(frozen=True)
class OrderAction:
    """A submit or cancel intent produced by an executor.

    Exactly one of the two shapes is used: a submit carries
    side/order_type/quantity/price; a cancel carries ``order`` (the local
    row being cancelled).
    """

    kind: str
    symbol: str
    side: Side | None = None
    order_type: OrderType | None = None
    quantity: int = 0
    price: float | None = None
    order: Order | None = None
    daytime: bool = False
    reason: str = ""

    SUBMIT = "submit"
    CANCEL = "cancel"

    @classmethod
    def submit(
        cls,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: int,
        price: float | None,
        daytime: bool = False,
        reason: str = "",
    ) -> OrderAction:
        return cls(
            kind=cls.SUBMIT,
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            price=price,
            daytime=daytime,
            reason=reason,
        )

    @classmethod
    def cancel(cls, order: Order, reason: str = "") -> OrderAction:
        return cls(
            kind=cls.CANCEL,
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            quantity=order.quantity,
            price=order.price,
            order=order,
            reason=reason,
        )
