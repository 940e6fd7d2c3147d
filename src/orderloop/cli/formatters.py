"""Rich output formatters for the orderloop CLI.

Each function accepts plain data and returns a Rich renderable (Table,
Panel).  The caller prints via ``console.print()``, which keeps the
formatters testable without capturing stdout.
"""

from __future__ import annotations

from datetime import datetime

from rich.panel import Panel
from rich.table import Table

from orderloop.models import (
    DistributionPlan,
    ExecutionLogEntry,
    LogLevel,
    Market,
    MarketStatus,
    Order,
    OrderStatus,
    Session,
    Side,
    Strategy,
    StrategyStatus,
)

_SESSION_COLORS = {
    Session.PRE_MARKET: "cyan",
    Session.REGULAR: "green",
    Session.AFTER_MARKET: "yellow",
    Session.CLOSED: "dim",
}

_ORDER_STATUS_COLORS = {
    OrderStatus.SUBMITTED: "cyan",
    OrderStatus.PARTIALLY_FILLED: "yellow",
    OrderStatus.FILLED: "green",
    OrderStatus.CANCELLED: "dim",
    OrderStatus.FAILED: "red",
}

_STRATEGY_STATUS_COLORS = {
    StrategyStatus.ACTIVE: "green",
    StrategyStatus.INACTIVE: "yellow",
    StrategyStatus.ENDED: "dim",
}

_LEVEL_COLORS = {LogLevel.INFO: "white", LogLevel.WARN: "yellow", LogLevel.ERROR: "red"}


def _ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _side(side: Side) -> str:
    return "[green]BUY[/green]" if side == Side.BUY else "[red]SELL[/red]"


def format_session_panel(
    market: Market, status: MarketStatus, now: datetime, local_time: datetime
) -> Panel:
    """Render the clock's view of one market at ``now``.

    Parameters
    ----------
    market : Market
        Market the status was computed for.
    status : MarketStatus
        Output of ``MarketClock.status()``.
    now : datetime
        Evaluation instant (UTC).
    local_time : datetime
        ``now`` in the market's timezone.
    """
    color = _SESSION_COLORS[status.session]
    since_open = (
        f"{status.minutes_since_regular_open} min"
        if status.minutes_since_regular_open is not None
        else "-"
    )
    lines = [
        f"[bold {color}]{status.session.value}[/bold {color}]",
        "",
        f"  UTC time:          {_ts(now)}",
        f"  Local time:        {_ts(local_time)} ({local_time.tzname()})",
        f"  Trading day:       {status.trading_day.isoformat()}",
        f"  DST:               {'yes' if status.is_dst else 'no'}",
        f"  Weekend:           {'yes' if status.is_weekend else 'no'}",
        f"  Opening orders:    {'allowed' if status.can_submit_opening_limit else '-'}",
        f"  Closing orders:    {'allowed' if status.can_submit_closing_limit else '-'}",
        f"  Since open:        {since_open}",
    ]
    return Panel("\n".join(lines), title=f"{market.value} Market Session", border_style=color)


def format_strategies_table(strategies: list[Strategy]) -> Table:
    table = Table(title="Strategies", show_lines=False)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Owner")
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("Symbol")
    table.add_column("Market", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Position", justify="right")
    table.add_column("Last Run")

    for strategy in strategies:
        color = _STRATEGY_STATUS_COLORS[strategy.status]
        qty = strategy.parameters.get("currentQty", 0)
        cost = strategy.parameters.get("currentAvgCost", 0)
        position = f"{qty} @ {float(cost):.2f}" if qty else "-"
        table.add_row(
            (strategy.id or "")[:8],
            strategy.owner_id,
            strategy.name,
            strategy.strategy_type.value,
            strategy.symbol,
            strategy.market.value,
            f"[{color}]{strategy.status.value}[/{color}]",
            position,
            _ts(strategy.last_executed_at),
        )
    return table


def format_orders_table(orders: list[Order]) -> Table:
    """Build a table of order rows, one per order, oldest first."""
    table = Table(title="Orders", show_lines=False)
    table.add_column("Submitted")
    table.add_column("Symbol", style="bold")
    table.add_column("Side", justify="center")
    table.add_column("Type", justify="center")
    table.add_column("Qty", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Filled", justify="right")
    table.add_column("Avg Fill", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Broker ID", style="dim")

    for order in orders:
        color = _ORDER_STATUS_COLORS[order.status]
        table.add_row(
            _ts(order.submitted_at),
            order.symbol,
            _side(order.side),
            order.order_type.value,
            str(order.quantity),
            f"{order.price:g}" if order.price is not None else "-",
            str(order.filled_quantity),
            f"{order.avg_fill_price:g}" if order.avg_fill_price else "-",
            f"[{color}]{order.status.value}[/{color}]",
            order.broker_order_id or "-",
        )
    return table


def format_events_table(events: list[ExecutionLogEntry]) -> Table:
    table = Table(title="Activity Log", show_lines=False)
    table.add_column("Time")
    table.add_column("Level", justify="center")
    table.add_column("Kind")
    table.add_column("Strategy", style="dim")
    table.add_column("Message")

    for event in events:
        color = _LEVEL_COLORS[event.level]
        table.add_row(
            _ts(event.created_at),
            f"[{color}]{event.level.value}[/{color}]",
            event.event_kind.value if event.event_kind else "-",
            (event.strategy_id or "-")[:8],
            event.message,
        )
    return table


def format_ladder_table(plan: DistributionPlan, side: Side) -> Table:
    """Preview of a split-order ladder: one row per (price, quantity) slot."""
    table = Table(title=f"{side.value} Ladder", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Price", justify="right")
    table.add_column("Qty", justify="right")

    for i, (price, qty) in enumerate(plan.slots(), start=1):
        table.add_row(str(i), f"{price:g}", str(qty) if qty else "[dim]0[/dim]")
    table.add_row("", "[bold]Total[/bold]", f"[bold]{plan.total_quantity}[/bold]")
    return table


def format_tick_summary(title: str, summary: dict) -> Panel:
    """Render a tick summary dict as ``key: value`` lines.

    Failed counts above zero are highlighted.
    """
    lines: list[str] = []
    for key, value in summary.items():
        label = key.replace("_", " ").capitalize()
        if key in ("failed", "owners_skipped") and value:
            lines.append(f"  {label + ':':<18} [red]{value}[/red]")
        else:
            lines.append(f"  {label + ':':<18} {value}")
    has_failures = bool(summary.get("failed")) or bool(summary.get("owners_skipped"))
    return Panel(
        "\n".join(lines),
        title=title,
        border_style="yellow" if has_failures else "green",
    )
