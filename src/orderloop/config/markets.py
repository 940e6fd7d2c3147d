"""Market registry: session hours, price grid, and exchange codes.

Session boundaries are wall-clock times in each market's own timezone.
The clock converts instants into that timezone through the IANA
database, so daylight saving shifts come from tzdata rather than from
hand-written offsets.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import time

from orderloop.models import Market


@dataclass(frozen=True)
class MarketConfig:
    """Immutable configuration for one market.

    Attributes
    ----------
    market : Market
        Market identifier.
    timezone : str
        IANA timezone of the exchange's local calendar.
    pre_open : time
        Start of the pre-market session (inclusive).
    regular_open : time
        Start of the regular session (inclusive).
    regular_close : time
        End of the regular session (exclusive).
    after_close : time
        End of the after-hours session (exclusive).
    price_decimals : int | None
        Decimal places for cents-denominated markets, None when the
        market uses a tick table.
    tick_table : tuple[tuple[float, int], ...]
        Ascending (price ceiling, tick size) pairs.  A price below the
        ceiling uses that tick.
    exchanges : tuple[str, ...]
        Order routing exchange codes.
    default_exchange : str
        Exchange used when a strategy does not name one.
    """

    market: Market
    timezone: str
    pre_open: time
    regular_open: time
    regular_close: time
    after_close: time
    price_decimals: int | None
    tick_table: tuple[tuple[float, int], ...] = ()
    exchanges: tuple[str, ...] = ()
    default_exchange: str = ""


MARKETS: dict[Market, MarketConfig] = {
    Market.US: MarketConfig(
        market=Market.US,
        timezone="America/New_York",
        pre_open=time(4, 0),
        regular_open=time(9, 30),
        regular_close=time(16, 0),
        after_close=time(20, 0),
        price_decimals=2,
        exchanges=("NASD", "NYSE", "AMEX"),
        default_exchange="NASD",
    ),
    Market.KR: MarketConfig(
        market=Market.KR,
        timezone="Asia/Seoul",
        pre_open=time(8, 30),
        regular_open=time(9, 0),
        regular_close=time(15, 30),
        after_close=time(18, 0),
        price_decimals=None,
        tick_table=(
            (2_000, 1),
            (5_000, 5),
            (20_000, 10),
            (50_000, 50),
            (200_000, 100),
            (500_000, 500),
            (float("inf"), 1_000),
        ),
        exchanges=("KRX",),
        default_exchange="KRX",
    ),
}

# The one foreign market that supports opening/closing auction orders.
FOREIGN_MARKET: Market = Market.US

# Reference timezone for operator-facing schedules.
REFERENCE_TIMEZONE: str = "Asia/Seoul"

# Order routing code -> quotation code used by the price endpoints.
QUOTE_EXCHANGE_CODES: dict[str, str] = {
    "NASD": "NAS",
    "NYSE": "NYS",
    "AMEX": "AMS",
}


def get_market(market: Market | str) -> MarketConfig:
    """Return the configuration for ``market``.

    Raises
    ------
    ValueError
        If the market is not registered.
    """
    return MARKETS[Market(market)]


def quote_exchange_code(exchange_code: str | None) -> str:
    """Map an order exchange code (NASD/NYSE/AMEX) to its quote code."""
    if not exchange_code:
        return "NAS"
    return QUOTE_EXCHANGE_CODES.get(exchange_code.upper(), "NAS")
