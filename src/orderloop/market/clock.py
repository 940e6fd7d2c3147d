"""Market session clock.

Maps an instant to the trading session of a market.  Session boundaries
are defined in the exchange's local time (see ``config.markets``) and the
instant is converted with ``zoneinfo``, so the US daylight saving switch
(2nd Sunday of March / 1st Sunday of November, 02:00 local) moves the
sessions in any other reference timezone automatically.  Seen from Seoul
the US regular session is 22:30-05:00 in summer and 23:30-06:00 in
winter.

Weekends are judged on the exchange's local calendar day: a US Friday
session that ends after midnight in Seoul still belongs to Friday.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from orderloop.config.markets import FOREIGN_MARKET, MarketConfig, get_market
from orderloop.models import Market, MarketStatus, Session

DEFAULT_CLOSING_DEBOUNCE_MINUTES = 10


def _minutes(t) -> int:
    return t.hour * 60 + t.minute


class MarketClock:
    """Pure function of wall-clock time to market session.

    Args:
        closing_debounce_minutes: Minutes that must elapse after the
            regular open before closing-side decisions are evaluated.
    """

    def __init__(
        self, closing_debounce_minutes: int = DEFAULT_CLOSING_DEBOUNCE_MINUTES
    ) -> None:
        self.closing_debounce_minutes = closing_debounce_minutes

    @staticmethod
    def local_time(now: datetime, market: Market = FOREIGN_MARKET) -> datetime:
        """Convert ``now`` into the market's local timezone.

        Naive datetimes are taken as UTC.
        """
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(ZoneInfo(get_market(market).timezone))

    def session(self, now: datetime, market: Market = FOREIGN_MARKET) -> Session:
        cfg = get_market(market)
        local = self.local_time(now, market)
        if local.weekday() >= 5:
            return Session.CLOSED
        return self._session_at(cfg, _minutes(local))

    @staticmethod
    def _session_at(cfg: MarketConfig, minute: int) -> Session:
        if _minutes(cfg.pre_open) <= minute < _minutes(cfg.regular_open):
            return Session.PRE_MARKET
        if _minutes(cfg.regular_open) <= minute < _minutes(cfg.regular_close):
            return Session.REGULAR
        if _minutes(cfg.regular_close) <= minute < _minutes(cfg.after_close):
            return Session.AFTER_MARKET
        return Session.CLOSED

    def is_weekend(self, now: datetime, market: Market = FOREIGN_MARKET) -> bool:
        return self.local_time(now, market).weekday() >= 5

    def is_dst(self, now: datetime, market: Market = FOREIGN_MARKET) -> bool:
        return bool(self.local_time(now, market).dst())

    def trading_day(self, now: datetime, market: Market = FOREIGN_MARKET) -> date:
        """Calendar date of ``now`` in the market's local timezone."""
        return self.local_time(now, market).date()

    def trading_day_bounds(
        self, now: datetime, market: Market = FOREIGN_MARKET
    ) -> tuple[datetime, datetime]:
        """Return the UTC [start, end) of the local trading day containing ``now``."""
        tz = ZoneInfo(get_market(market).timezone)
        day = self.trading_day(now, market)
        start = datetime(day.year, day.month, day.day, tzinfo=tz)
        # Wall-clock arithmetic: 23h and 25h DST days end at local midnight.
        end = start + timedelta(days=1)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def session_day(self, now: datetime, market: Market = FOREIGN_MARKET) -> date:
        """The trading day whose sessions ``now`` still belongs to.

        Before the after-hours close this is the local date; after it,
        the next weekday.  Weekends roll forward to Monday.
        """
        cfg = get_market(market)
        local = self.local_time(now, market)
        day = local.date()
        if _minutes(local) >= _minutes(cfg.after_close):
            day += timedelta(days=1)
        while day.weekday() >= 5:
            day += timedelta(days=1)
        return day

    def minutes_since_regular_open(
        self, now: datetime, market: Market = FOREIGN_MARKET
    ) -> int | None:
        """Whole minutes since today's regular open, or None outside Regular."""
        if self.session(now, market) != Session.REGULAR:
            return None
        cfg = get_market(market)
        local = self.local_time(now, market)
        opened = local.replace(
            hour=cfg.regular_open.hour,
            minute=cfg.regular_open.minute,
            second=0,
            microsecond=0,
        )
        return int((local - opened).total_seconds() // 60)

    def status(self, now: datetime, market: Market = FOREIGN_MARKET) -> MarketStatus:
        session = self.session(now, market)
        return MarketStatus(
            session=session,
            is_dst=self.is_dst(now, market),
            can_submit_opening_limit=session == Session.PRE_MARKET,
            can_submit_closing_limit=session == Session.REGULAR,
            minutes_since_regular_open=self.minutes_since_regular_open(now, market),
            is_weekend=self.is_weekend(now, market),
            trading_day=self.trading_day(now, market),
        )

    def can_evaluate_closing_condition(
        self, now: datetime, market: Market = FOREIGN_MARKET
    ) -> bool:
        """True once the debounce window after the regular open has elapsed."""
        elapsed = self.minutes_since_regular_open(now, market)
        return elapsed is not None and elapsed >= self.closing_debounce_minutes

    def is_closed_for_day(self, now: datetime, market: Market) -> bool:
        """True when the market's regular session is not running.

        Used by the expired-order sweep: outside the regular session the
        broker has already purged yesterday's intraday book.
        """
        return self.session(now, market) != Session.REGULAR
