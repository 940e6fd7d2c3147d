"""Tick rounding, quantity ladders, and cost-basis arithmetic.

Pure functions, no I/O.  Prices are computed with ``Decimal`` and
returned as floats so repeated rounding is stable.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from orderloop.config.markets import get_market
from orderloop.models import (
    Distribution,
    DistributionPlan,
    Market,
    Side,
    StepUnit,
)


def _dec(value: float | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def tick_size(price: float | Decimal, market: Market | str = Market.KR) -> int:
    """Look up the tick size for ``price`` in the market's tick table.

    Raises
    ------
    ValueError
        If the market prices in decimals rather than ticks.
    """
    cfg = get_market(market)
    if not cfg.tick_table:
        raise ValueError(f"market {cfg.market.value} has no tick table")
    p = _dec(price)
    for ceiling, tick in cfg.tick_table:
        if p < _dec(ceiling):
            return tick
    return cfg.tick_table[-1][1]


def _round_decimal(
    price: float | Decimal, market: Market | str, side: Side | str
) -> Decimal:
    cfg = get_market(market)
    p = _dec(price)
    if cfg.price_decimals is not None:
        step = Decimal(1).scaleb(-cfg.price_decimals)
        return p.quantize(step, rounding=ROUND_HALF_UP)

    tick = Decimal(tick_size(p, market))
    # Buy rounds down, sell rounds up: both bias toward execution.
    rounding = ROUND_FLOOR if Side(side) == Side.BUY else ROUND_CEILING
    return (p / tick).to_integral_value(rounding=rounding) * tick


def round_to_market_tick(
    price: float | Decimal, market: Market | str, side: Side | str = Side.BUY
) -> float:
    """Round ``price`` onto the market's price grid.

    Cents markets round half-up to their decimal places regardless of
    side.  Tick-table markets round down for buys and up for sells.
    Idempotent: rounding an on-grid price returns it unchanged.

    Args:
        price: Raw price.
        market: Market whose grid applies.
        side: Order side; only matters for tick-table markets.

    Returns:
        The rounded price.
    """
    return float(_round_decimal(price, market, side))


def _round_half_up_div(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def equal_distribution(total: int, n: int) -> list[int]:
    """Floor division with the remainder handed out one by one from the first slot."""
    if n <= 0:
        return []
    base, remainder = divmod(total, n)
    return [base + 1 if i < remainder else base for i in range(n)]


def pyramid_distribution(total: int, n: int) -> list[int]:
    """Slot i weighted by i / triangular(n), rounded half-up.

    The rounding residual is added to the last slot so the ladder sums to
    ``total``.  When rounding overshoots, the excess is taken back from
    the highest slot that can give one unit without dropping below its
    predecessor, keeping the ladder non-decreasing.
    """
    if n <= 0:
        return []
    if n == 1:
        return [total]

    triangular = n * (n + 1) // 2
    quantities = [
        _round_half_up_div(total * (i + 1), triangular) for i in range(n)
    ]
    residual = total - sum(quantities)
    if residual > 0:
        quantities[-1] += residual
    while residual < 0:
        for i in range(n - 1, -1, -1):
            floor = quantities[i - 1] if i > 0 else 0
            if quantities[i] - 1 >= floor:
                quantities[i] -= 1
                residual += 1
                break
    return quantities


def distribute(
    total: int, n: int, shape: Distribution | str = Distribution.EQUAL
) -> list[int]:
    """Split ``total`` shares into ``n`` slots of the given shape.

    Every shape sums to exactly ``total``.  INVERTED is the reverse of
    PYRAMID.
    """
    shape = Distribution(shape)
    if total < 0:
        raise ValueError(f"total quantity must be non-negative, got {total}")
    if shape == Distribution.EQUAL:
        return equal_distribution(total, n)
    if shape == Distribution.PYRAMID:
        return pyramid_distribution(total, n)
    return list(reversed(pyramid_distribution(total, n)))


def split_prices(
    base_price: float,
    step: float,
    step_unit: StepUnit | str,
    n: int,
    side: Side | str,
    market: Market | str = Market.US,
) -> list[float]:
    """Build an ``n``-slot price ladder starting at ``base_price``.

    Each subsequent slot walks against the trader (down for buys, up for
    sells) by ``step`` in absolute terms or by ``step`` percent of the
    running, unrounded price.  Every slot is then tick-rounded.
    """
    side = Side(side)
    step_unit = StepUnit(step_unit)
    running = _dec(base_price)
    step_dec = _dec(step)
    prices: list[float] = []
    for i in range(n):
        if i > 0:
            change = (
                running * step_dec / Decimal(100)
                if step_unit == StepUnit.PERCENT
                else step_dec
            )
            running = running - change if side == Side.BUY else running + change
        prices.append(round_to_market_tick(running, market, side))
    return prices


def build_plan(
    base_price: float,
    step: float,
    step_unit: StepUnit | str,
    n: int,
    side: Side | str,
    total_quantity: int,
    shape: Distribution | str,
    market: Market | str = Market.US,
) -> DistributionPlan:
    """Combine ``split_prices`` and ``distribute`` into one ladder."""
    return DistributionPlan(
        prices=tuple(split_prices(base_price, step, step_unit, n, side, market)),
        quantities=tuple(distribute(total_quantity, n, shape)),
    )


def weighted_average_cost(
    cost: float, quantity: int, fill_price: float, fill_quantity: int
) -> tuple[float, int]:
    """Fold a fill into a (cost, quantity) position.

    ``new_cost = (cost * qty + fill_price * fill_qty) / (qty + fill_qty)``.
    Returns (0.0, 0) when the combined quantity is zero.
    """
    new_quantity = quantity + fill_quantity
    if new_quantity <= 0:
        return 0.0, 0
    new_cost = (cost * quantity + fill_price * fill_quantity) / new_quantity
    return new_cost, new_quantity


def target_sell_price(
    avg_cost: float, target_return_rate: float, market: Market | str = Market.US
) -> float:
    """Average cost marked up by ``target_return_rate`` percent, sell-rounded."""
    raw = _dec(avg_cost) * (Decimal(1) + _dec(target_return_rate) / Decimal(100))
    return round_to_market_tick(raw, market, Side.SELL)
