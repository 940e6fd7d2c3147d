"""SQLite repository for strategies, orders, and the audit trail.

Storage uses SQLite with WAL mode.  Timestamps are stored as fixed-width
ISO 8601 UTC strings so lexical order matches time order.  Strategy
parameters are stored as JSON and validated by the executors on read.

Schema:
    strategies(
        id TEXT PRIMARY KEY,              -- uuid4 hex
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        strategy_type TEXT NOT NULL,      -- SPLIT_ORDER | LOO_LOC
        symbol TEXT NOT NULL,
        market TEXT NOT NULL,             -- US | KR
        status TEXT NOT NULL,             -- ACTIVE | INACTIVE | ENDED
        parameters TEXT NOT NULL,         -- JSON object
        start_date TEXT, end_date TEXT,   -- ISO dates, inclusive window
        last_executed_at TEXT,            -- dedup fence
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL          -- bumped by user edits only
    )
    orders(
        id TEXT PRIMARY KEY,
        strategy_id TEXT,                 -- NULL once the strategy is deleted
        owner_id TEXT NOT NULL,
        broker_order_id TEXT,
        symbol, side, order_type, quantity, price, market, exchange_code,
        daytime INTEGER NOT NULL DEFAULT 0,  -- US daytime (overnight) session
        status TEXT NOT NULL,
        filled_quantity INTEGER NOT NULL DEFAULT 0,
        avg_fill_price REAL, error_message TEXT,
        submitted_at TEXT NOT NULL, filled_at TEXT, updated_at TEXT NOT NULL
    )
    execution_logs(
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id, strategy_id, level, message, event_kind,
        metadata TEXT,                    -- JSON object
        created_at TEXT NOT NULL
    )
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import date, datetime, timezone
from pathlib import Path

import structlog

from orderloop.errors import StatusTransitionError
from orderloop.models import (
    ACTIVE_ORDER_STATUSES,
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
    can_transition,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


class TradingStore:
    """SQLite-backed persistence for the engine.

    Parameters
    ----------
    db_path : str | Path
        Path to the SQLite database file.  Created if it doesn't exist.
        ``":memory:"`` gives a private in-memory database.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.debug("trading_store_opened", db_path=self.db_path)

    def _create_tables(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS strategies (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                strategy_type TEXT NOT NULL,
                symbol TEXT NOT NULL,
                market TEXT NOT NULL,
                status TEXT NOT NULL,
                parameters TEXT NOT NULL,
                start_date TEXT,
                end_date TEXT,
                last_executed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                strategy_id TEXT,
                owner_id TEXT NOT NULL,
                broker_order_id TEXT,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                order_type TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                price REAL,
                market TEXT NOT NULL,
                exchange_code TEXT,
                daytime INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                filled_quantity INTEGER NOT NULL DEFAULT 0,
                avg_fill_price REAL,
                error_message TEXT,
                submitted_at TEXT NOT NULL,
                filled_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS execution_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                strategy_id TEXT,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                event_kind TEXT,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_strategies_status ON strategies(status)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_orders_strategy ON orders(strategy_id, submitted_at)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_logs_owner ON execution_logs(owner_id, created_at)"
        )
        self.conn.commit()

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def add_strategy(self, strategy: Strategy) -> str:
        """Insert a strategy and return its id (assigned when missing)."""
        now = _utcnow()
        strategy.id = strategy.id or uuid.uuid4().hex
        strategy.created_at = strategy.created_at or now
        strategy.updated_at = strategy.updated_at or strategy.created_at
        self.conn.execute(
            """
            INSERT INTO strategies
            (id, owner_id, name, strategy_type, symbol, market, status,
             parameters, start_date, end_date, last_executed_at,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                strategy.id,
                strategy.owner_id,
                strategy.name,
                StrategyType(strategy.strategy_type).value,
                strategy.symbol,
                Market(strategy.market).value,
                StrategyStatus(strategy.status).value,
                json.dumps(strategy.parameters),
                strategy.start_date.isoformat() if strategy.start_date else None,
                strategy.end_date.isoformat() if strategy.end_date else None,
                _ts(strategy.last_executed_at),
                _ts(strategy.created_at),
                _ts(strategy.updated_at),
            ),
        )
        self.conn.commit()
        logger.info(
            "strategy_added",
            strategy_id=strategy.id,
            owner_id=strategy.owner_id,
            strategy_type=StrategyType(strategy.strategy_type).value,
            symbol=strategy.symbol,
        )
        return strategy.id

    def get_strategy(self, strategy_id: str) -> Strategy | None:
        row = self.conn.execute(
            "SELECT * FROM strategies WHERE id = ?", (strategy_id,)
        ).fetchone()
        return self._row_to_strategy(row) if row else None

    def list_strategies(
        self,
        owner_id: str | None = None,
        status: StrategyStatus | None = None,
    ) -> list[Strategy]:
        """Strategies matching AND-combined filters, oldest first."""
        conditions: list[str] = []
        params: list[object] = []
        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(StrategyStatus(status).value)
        where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
        rows = self.conn.execute(
            f"SELECT * FROM strategies {where_clause} ORDER BY created_at, id",
            params,
        ).fetchall()
        return [self._row_to_strategy(row) for row in rows]

    def list_active_strategies(self) -> list[Strategy]:
        return self.list_strategies(status=StrategyStatus.ACTIVE)

    def set_strategy_status(self, strategy_id: str, status: StrategyStatus) -> None:
        self.conn.execute(
            "UPDATE strategies SET status = ? WHERE id = ?",
            (StrategyStatus(status).value, strategy_id),
        )
        self.conn.commit()
        logger.info(
            "strategy_status_changed",
            strategy_id=strategy_id,
            status=StrategyStatus(status).value,
        )

    def save_parameters(self, strategy_id: str, parameters: dict) -> None:
        """Persist engine-maintained parameters.  Does not bump ``updated_at``."""
        self.conn.execute(
            "UPDATE strategies SET parameters = ? WHERE id = ?",
            (json.dumps(parameters), strategy_id),
        )
        self.conn.commit()

    def edit_strategy(
        self,
        strategy_id: str,
        parameters: dict | None = None,
        at: datetime | None = None,
    ) -> None:
        """Record a user edit: optionally replace parameters and bump ``updated_at``.

        Orders submitted before the new ``updated_at`` become stale and
        are cancelled by the next execution.
        """
        if parameters is not None:
            self.conn.execute(
                "UPDATE strategies SET parameters = ? WHERE id = ?",
                (json.dumps(parameters), strategy_id),
            )
        self.conn.execute(
            "UPDATE strategies SET updated_at = ? WHERE id = ?",
            (_ts(at or _utcnow()), strategy_id),
        )
        self.conn.commit()
        logger.info("strategy_edited", strategy_id=strategy_id)

    def mark_executed(self, strategy_id: str, at: datetime | None = None) -> None:
        """Write the dedup fence."""
        self.conn.execute(
            "UPDATE strategies SET last_executed_at = ? WHERE id = ?",
            (_ts(at or _utcnow()), strategy_id),
        )
        self.conn.commit()

    def delete_strategy(self, strategy_id: str) -> None:
        """Delete a strategy, detaching (not deleting) its orders."""
        self.conn.execute(
            "UPDATE orders SET strategy_id = NULL WHERE strategy_id = ?",
            (strategy_id,),
        )
        self.conn.execute("DELETE FROM strategies WHERE id = ?", (strategy_id,))
        self.conn.commit()
        logger.info("strategy_deleted", strategy_id=strategy_id)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def add_order(self, order: Order) -> str:
        """Insert an order and return its id (assigned when missing)."""
        now = _utcnow()
        order.id = order.id or uuid.uuid4().hex
        order.submitted_at = order.submitted_at or now
        order.updated_at = order.updated_at or order.submitted_at
        self.conn.execute(
            """
            INSERT INTO orders
            (id, strategy_id, owner_id, broker_order_id, symbol, side,
             order_type, quantity, price, market, exchange_code, daytime,
             status, filled_quantity, avg_fill_price, error_message,
             submitted_at, filled_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.id,
                order.strategy_id,
                order.owner_id,
                order.broker_order_id,
                order.symbol,
                Side(order.side).value,
                OrderType(order.order_type).value,
                order.quantity,
                order.price,
                Market(order.market).value,
                order.exchange_code,
                int(order.daytime),
                OrderStatus(order.status).value,
                order.filled_quantity,
                order.avg_fill_price,
                order.error_message,
                _ts(order.submitted_at),
                _ts(order.filled_at),
                _ts(order.updated_at),
            ),
        )
        self.conn.commit()
        return order.id

    def get_order(self, order_id: str) -> Order | None:
        row = self.conn.execute(
            "SELECT * FROM orders WHERE id = ?", (order_id,)
        ).fetchone()
        return self._row_to_order(row) if row else None

    def list_orders(
        self,
        strategy_id: str | None = None,
        owner_id: str | None = None,
        statuses: Iterable[OrderStatus] | None = None,
        side: Side | None = None,
        order_type: OrderType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 1000,
    ) -> list[Order]:
        """Query orders with AND-combined filters.

        Parameters
        ----------
        since : datetime | None
            Inclusive lower bound on ``submitted_at``.
        until : datetime | None
            Exclusive upper bound on ``submitted_at``.

        Returns
        -------
        list[Order]
            Matching orders, oldest submission first.
        """
        conditions: list[str] = []
        params: list[object] = []

        if strategy_id is not None:
            conditions.append("strategy_id = ?")
            params.append(strategy_id)
        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if statuses is not None:
            values = [OrderStatus(s).value for s in statuses]
            if not values:
                return []
            conditions.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if side is not None:
            conditions.append("side = ?")
            params.append(Side(side).value)
        if order_type is not None:
            conditions.append("order_type = ?")
            params.append(OrderType(order_type).value)
        if since is not None:
            conditions.append("submitted_at >= ?")
            params.append(_ts(since))
        if until is not None:
            conditions.append("submitted_at < ?")
            params.append(_ts(until))

        where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
        sql = f"""
            SELECT * FROM orders
            {where_clause}
            ORDER BY submitted_at, id
            LIMIT ?
        """
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_order(row) for row in rows]

    def list_orders_for_trading_day(
        self, strategy_id: str, start: datetime, end: datetime
    ) -> list[Order]:
        """Orders of one strategy submitted within [start, end)."""
        return self.list_orders(strategy_id=strategy_id, since=start, until=end)

    def list_pending_orders(self) -> list[Order]:
        """System-wide Submitted and PartiallyFilled orders."""
        return self.list_orders(statuses=ACTIVE_ORDER_STATUSES, limit=100_000)

    def list_stale_submitted_orders(self, before: datetime) -> list[Order]:
        """Submitted orders placed before ``before``."""
        return self.list_orders(
            statuses=[OrderStatus.SUBMITTED], until=before, limit=100_000
        )

    def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        filled_quantity: int | None = None,
        avg_fill_price: float | None = None,
        filled_at: datetime | None = None,
        error_message: str | None = None,
        repair: bool = False,
    ) -> Order:
        """Move an order to ``status`` and return the updated row.

        Raises
        ------
        KeyError
            If the order does not exist.
        StatusTransitionError
            If the transition is not allowed.  ``repair=True`` permits
            only Cancelled -> Submitted.
        """
        order = self.get_order(order_id)
        if order is None:
            raise KeyError(order_id)
        status = OrderStatus(status)
        if not can_transition(order.status, status, repair=repair):
            raise StatusTransitionError(
                f"order {order_id}: {order.status.value} -> {status.value} not allowed"
            )

        order.status = status
        if filled_quantity is not None:
            order.filled_quantity = filled_quantity
        if avg_fill_price is not None:
            order.avg_fill_price = avg_fill_price
        if filled_at is not None:
            order.filled_at = filled_at
        if error_message is not None:
            order.error_message = error_message
        order.updated_at = _utcnow()

        self.conn.execute(
            """
            UPDATE orders
            SET status = ?, filled_quantity = ?, avg_fill_price = ?,
                filled_at = ?, error_message = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                order.status.value,
                order.filled_quantity,
                order.avg_fill_price,
                _ts(order.filled_at),
                order.error_message,
                _ts(order.updated_at),
                order_id,
            ),
        )
        self.conn.commit()
        logger.info(
            "order_status_updated",
            order_id=order_id,
            status=status.value,
            filled_quantity=order.filled_quantity,
            repair=repair,
        )
        return order

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def log_event(self, entry: ExecutionLogEntry) -> int:
        """Insert an audit row and return its id."""
        entry.created_at = entry.created_at or _utcnow()
        cursor = self.conn.execute(
            """
            INSERT INTO execution_logs
            (owner_id, strategy_id, level, message, event_kind, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.owner_id,
                entry.strategy_id,
                LogLevel(entry.level).value,
                entry.message,
                EventKind(entry.event_kind).value if entry.event_kind else None,
                json.dumps(entry.metadata, default=str),
                _ts(entry.created_at),
            ),
        )
        self.conn.commit()
        entry.id = cursor.lastrowid
        return entry.id

    def list_events(
        self,
        owner_id: str | None = None,
        strategy_id: str | None = None,
        event_kind: EventKind | None = None,
        limit: int = 100,
    ) -> list[ExecutionLogEntry]:
        """Audit rows matching AND-combined filters, newest first."""
        conditions: list[str] = []
        params: list[object] = []
        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if strategy_id is not None:
            conditions.append("strategy_id = ?")
            params.append(strategy_id)
        if event_kind is not None:
            conditions.append("event_kind = ?")
            params.append(EventKind(event_kind).value)
        where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
        params.append(limit)
        rows = self.conn.execute(
            f"""
            SELECT * FROM execution_logs
            {where_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [self._row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_strategy(self, row: sqlite3.Row) -> Strategy:
        return Strategy(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            strategy_type=StrategyType(row["strategy_type"]),
            symbol=row["symbol"],
            market=Market(row["market"]),
            status=StrategyStatus(row["status"]),
            parameters=json.loads(row["parameters"]),
            start_date=_parse_date(row["start_date"]),
            end_date=_parse_date(row["end_date"]),
            last_executed_at=_parse_ts(row["last_executed_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def _row_to_order(self, row: sqlite3.Row) -> Order:
        return Order(
            id=row["id"],
            strategy_id=row["strategy_id"],
            owner_id=row["owner_id"],
            broker_order_id=row["broker_order_id"],
            symbol=row["symbol"],
            side=Side(row["side"]),
            order_type=OrderType(row["order_type"]),
            quantity=row["quantity"],
            price=row["price"],
            market=Market(row["market"]),
            exchange_code=row["exchange_code"],
            daytime=bool(row["daytime"]),
            status=OrderStatus(row["status"]),
            filled_quantity=row["filled_quantity"],
            avg_fill_price=row["avg_fill_price"],
            error_message=row["error_message"],
            submitted_at=_parse_ts(row["submitted_at"]),
            filled_at=_parse_ts(row["filled_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def _row_to_event(self, row: sqlite3.Row) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            id=row["id"],
            owner_id=row["owner_id"],
            strategy_id=row["strategy_id"],
            level=LogLevel(row["level"]),
            message=row["message"],
            event_kind=EventKind(row["event_kind"]) if row["event_kind"] else None,
            metadata=json.loads(row["metadata"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
        logger.debug("trading_store_closed", db_path=self.db_path)
