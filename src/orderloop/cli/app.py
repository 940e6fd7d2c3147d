"""orderloop CLI -- operator control surface for the order automation engine.

Commands:
    session          -- Show the market clock's view of a market
    execute          -- Run one strategy-execution tick
    reconcile        -- Run one order-reconciliation tick
    execute-now      -- Execute one strategy immediately (bounded by a timeout)
    serve            -- Start the cron-driven scheduler
    strategies       -- List strategies
    orders           -- List orders
    logs             -- Show the activity log
    add-loo-loc      -- Create a LOO/LOC strategy
    add-split-order  -- Create a split-order strategy (previews the ladder)
    edit             -- Change strategy parameters; orders placed before are replaced
    set-status       -- Activate, deactivate, or end a strategy
    delete           -- Delete a strategy (its orders are kept)
"""

from __future__ import annotations

import asyncio
import sys
from datetime import date, datetime, timezone
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from orderloop.activity import ActivityLog
from orderloop.cli.formatters import (
    format_events_table,
    format_ladder_table,
    format_orders_table,
    format_session_panel,
    format_strategies_table,
    format_tick_summary,
)
from orderloop.config.settings import EngineSettings
from orderloop.errors import ConfigurationError
from orderloop.execution.runner import StrategyRunner, build_gateway_factory
from orderloop.logging_config import configure_logging
from orderloop.market.clock import MarketClock
from orderloop.models import (
    Distribution,
    EventKind,
    Market,
    OrderStatus,
    Side,
    StepUnit,
    Strategy,
    StrategyStatus,
    StrategyType,
)
from orderloop.notify import LogNotifier
from orderloop.pricing import build_plan
from orderloop.store.sqlite_store import TradingStore
from orderloop.strategies.params import (
    LooLocParams,
    SplitOrderParams,
    parse_parameters,
)

app = typer.Typer(
    name="orderloop",
    help="Brokerage order automation engine CLI",
    rich_markup_mode="rich",
)
console = Console()


def _settings() -> EngineSettings:
    return EngineSettings()


def _open_store(db_path: Optional[str]) -> TradingStore:
    return TradingStore(db_path or _settings().database_path)


def _build_runner(store: TradingStore) -> StrategyRunner:
    settings = _settings()
    return StrategyRunner(
        store,
        build_gateway_factory(settings),
        settings=settings,
        notifier=LogNotifier(),
    )


def _parse_when(value: Optional[str]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"not an ISO 8601 timestamp: {value}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _find_strategy(store: TradingStore, strategy_id: str) -> Strategy:
    """Look a strategy up by full id or unique id prefix; exit 1 when missing."""
    strategy = store.get_strategy(strategy_id)
    if strategy is None:
        matches = [s for s in store.list_strategies() if (s.id or "").startswith(strategy_id)]
        if len(matches) == 1:
            strategy = matches[0]
    if strategy is None:
        console.print(
            Panel(
                f"[red]No strategy matches '{strategy_id}'.[/red]",
                title="Strategy",
                border_style="red",
            )
        )
        store.close()
        raise typer.Exit(1)
    return strategy


def _validation_failed(title: str, exc: Exception) -> None:
    console.print(Panel(f"[red]{exc}[/red]", title=title, border_style="red"))
    raise typer.Exit(1)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Minimum log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="JSON log lines"),
) -> None:
    """Brokerage order automation engine."""
    configure_logging(log_level, json_output=json_logs, stream=sys.stderr)


# ---------------------------------------------------------------------------
# session
# ---------------------------------------------------------------------------


@app.command()
def session(
    market: Market = typer.Option(Market.US, help="Market to evaluate"),
    at: Optional[str] = typer.Option(
        None, help="Instant to evaluate (ISO 8601, UTC when no offset); default now"
    ),
) -> None:
    """Show the market clock's session, DST flag, and order windows."""
    now = _parse_when(at)
    clock = MarketClock(_settings().closing_debounce_minutes)
    status = clock.status(now, market)
    console.print(
        format_session_panel(market, status, now, clock.local_time(now, market))
    )
    if clock.can_evaluate_closing_condition(now, market):
        console.print("[green]Closing-side decisions are being evaluated.[/green]")


# ---------------------------------------------------------------------------
# execute / reconcile / execute-now
# ---------------------------------------------------------------------------


@app.command()
def execute(
    offset: int = typer.Option(0, help="First owner of the window (sorted by id)"),
    size: int = typer.Option(0, help="Owners in the window; 0 = all"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Run one strategy-execution tick over the owner window."""
    store = _open_store(db)
    try:
        runner = _build_runner(store)
        summary = asyncio.run(runner.run_execution_tick(offset=offset, size=size or None))
    finally:
        store.close()
    console.print(format_tick_summary("Execution Tick", summary))


@app.command()
def reconcile(
    offset: int = typer.Option(0, help="First owner of the window (sorted by id)"),
    size: int = typer.Option(0, help="Owners in the window; 0 = all"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Run one order-reconciliation tick over the owner window."""
    store = _open_store(db)
    try:
        runner = _build_runner(store)
        summary = asyncio.run(
            runner.run_reconciliation_tick(offset=offset, size=size or None)
        )
    finally:
        store.close()
    console.print(format_tick_summary("Reconciliation Tick", summary.as_dict()))


@app.command(name="execute-now")
def execute_now(
    strategy_id: str = typer.Argument(help="Strategy id or unique id prefix"),
    timeout: Optional[float] = typer.Option(None, help="Timeout in seconds"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Execute one strategy immediately, bounded by a timeout."""
    store = _open_store(db)
    try:
        strategy = _find_strategy(store, strategy_id)
        runner = _build_runner(store)
        ok, message = asyncio.run(
            runner.execute_immediately(strategy.id, timeout=timeout)
        )
    finally:
        store.close()

    color = "green" if ok else "red"
    console.print(
        Panel(
            f"[{color}]{message}[/{color}]",
            title=f"Execute {strategy.name}",
            border_style=color,
        )
    )
    if not ok:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Start the scheduler: execution and reconciliation ticks on their crons."""
    settings = _settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    store = _open_store(db)
    runner = _build_runner(store)

    mode = "PAPER" if settings.is_paper else "LIVE"
    color = "green" if settings.is_paper else "red"
    console.print(
        Panel(
            f"[bold {color}]{mode} TRADING[/bold {color}]\n\n"
            f"  Execution:   minute {settings.execution_cron}\n"
            f"  Reconcile:   minute {settings.reconcile_cron}\n"
            f"  Timezone:    {settings.schedule_timezone}\n"
            f"  Fence:       {settings.execution_interval_minutes:g} min\n"
            f"  Database:    {db or settings.database_path}",
            title=f"Scheduler ({mode})",
            border_style=color,
        )
    )

    async def _serve() -> None:
        await runner.start()
        try:
            await asyncio.Event().wait()
        finally:
            await runner.stop()

    try:
        asyncio.run(_serve())
    except ValueError as exc:
        console.print(
            Panel(f"[bold red]{exc}[/bold red]", title="Live Trading", border_style="red")
        )
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped.[/yellow]")


# ---------------------------------------------------------------------------
# strategies / orders / logs
# ---------------------------------------------------------------------------


@app.command()
def strategies(
    owner: Optional[str] = typer.Option(None, help="Filter by owner id"),
    status: Optional[StrategyStatus] = typer.Option(None, help="Filter by status"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """List strategies."""
    store = _open_store(db)
    rows = store.list_strategies(owner_id=owner, status=status)
    store.close()

    if not rows:
        console.print(
            Panel("[dim]No strategies found.[/dim]", title="Strategies", border_style="dim")
        )
        return
    console.print(format_strategies_table(rows))


@app.command()
def orders(
    strategy: Optional[str] = typer.Option(None, help="Filter by strategy id"),
    owner: Optional[str] = typer.Option(None, help="Filter by owner id"),
    status: Optional[List[OrderStatus]] = typer.Option(
        None, help="Filter by status (repeatable)"
    ),
    limit: int = typer.Option(50, help="Max orders to display"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """List orders, oldest submission first."""
    store = _open_store(db)
    rows = store.list_orders(
        strategy_id=strategy, owner_id=owner, statuses=status or None, limit=limit
    )
    store.close()

    if not rows:
        console.print(
            Panel(
                "[dim]No orders found matching the given filters.[/dim]",
                title="Orders",
                border_style="dim",
            )
        )
        return
    console.print(format_orders_table(rows))
    console.print(f"\n[dim]{len(rows)} order(s) shown[/dim]")


@app.command()
def logs(
    owner: Optional[str] = typer.Option(None, help="Filter by owner id"),
    strategy: Optional[str] = typer.Option(None, help="Filter by strategy id"),
    kind: Optional[EventKind] = typer.Option(None, help="Filter by event kind"),
    limit: int = typer.Option(50, help="Max entries to display"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Show the activity log, newest first."""
    store = _open_store(db)
    rows = store.list_events(
        owner_id=owner, strategy_id=strategy, event_kind=kind, limit=limit
    )
    store.close()

    if not rows:
        console.print(
            Panel("[dim]No activity recorded.[/dim]", title="Activity Log", border_style="dim")
        )
        return
    console.print(format_events_table(rows))


# ---------------------------------------------------------------------------
# add-loo-loc / add-split-order
# ---------------------------------------------------------------------------


def _create(store: TradingStore, strategy: Strategy) -> str:
    strategy_id = store.add_strategy(strategy)
    activity = ActivityLog(store, LogNotifier())
    asyncio.run(
        activity.record(
            strategy.owner_id,
            f"Strategy '{strategy.name}' started ({strategy.strategy_type.value} "
            f"{strategy.symbol})",
            event_kind=EventKind.STRATEGY_STARTED,
            strategy_id=strategy_id,
        )
    )
    return strategy_id


@app.command(name="add-loo-loc")
def add_loo_loc(
    owner: str = typer.Argument(help="Owner id (must have broker credentials)"),
    symbol: str = typer.Argument(help="Ticker symbol, e.g. TQQQ"),
    name: Optional[str] = typer.Option(None, help="Display name"),
    loo_qty: int = typer.Option(1, help="Shares per opening buy; 0 disables"),
    loc_buy_qty: int = typer.Option(1, help="Shares per closing buy; 0 disables"),
    target_return: Optional[float] = typer.Option(
        None, help="Target return rate in percent"
    ),
    exchange: str = typer.Option("NASD", help="NASD, NYSE or AMEX"),
    end_date: Optional[str] = typer.Option(None, help="Last trading day (YYYY-MM-DD)"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Create a LOO/LOC strategy on the US market."""
    try:
        params = LooLocParams(
            loo_enabled=loo_qty > 0,
            loo_qty=loo_qty,
            loc_buy_enabled=loc_buy_qty > 0,
            loc_buy_qty=loc_buy_qty,
            target_return_rate=(
                target_return
                if target_return is not None
                else _settings().default_target_return_rate
            ),
            exchange_code=exchange,
        )
        end = date.fromisoformat(end_date) if end_date else None
    except (ValidationError, ValueError) as exc:
        _validation_failed("Invalid LOO/LOC parameters", exc)

    store = _open_store(db)
    strategy = Strategy(
        owner_id=owner,
        name=name or f"{symbol.upper()} LOO/LOC",
        strategy_type=StrategyType.LOO_LOC,
        symbol=symbol.upper(),
        market=Market.US,
        parameters=params.to_storage(),
        end_date=end,
    )
    strategy_id = _create(store, strategy)
    store.close()
    console.print(
        Panel(
            f"[green]Created[/green] {strategy.name}\n  ID: {strategy_id}",
            title="LOO/LOC Strategy",
            border_style="green",
        )
    )


@app.command(name="add-split-order")
def add_split_order(
    owner: str = typer.Argument(help="Owner id (must have broker credentials)"),
    symbol: str = typer.Argument(help="Ticker symbol or KRX code"),
    base_price: float = typer.Option(..., help="Price of the first rung"),
    step: float = typer.Option(..., help="Distance between rungs"),
    step_unit: StepUnit = typer.Option(StepUnit.USD, help="USD (absolute) or PERCENT"),
    count: int = typer.Option(..., help="Number of rungs"),
    total: int = typer.Option(..., help="Total shares across the ladder"),
    distribution: Distribution = typer.Option(Distribution.EQUAL, help="Quantity shape"),
    side: Side = typer.Option(Side.BUY, help="Ladder side"),
    market: Market = typer.Option(Market.US, help="US or KR"),
    target_return: Optional[float] = typer.Option(
        None, help="Target return rate in percent"
    ),
    exchange: Optional[str] = typer.Option(None, help="NASD, NYSE, AMEX or KRX"),
    daytime: bool = typer.Option(False, "--daytime", help="Use the daytime session"),
    name: Optional[str] = typer.Option(None, help="Display name"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Create a single-day split-order strategy and preview its ladder."""
    try:
        params = SplitOrderParams(
            base_price=base_price,
            decline_value=step,
            decline_unit=step_unit,
            split_count=count,
            distribution_type=distribution,
            total_amount=total,
            side=side,
            is_daytime=daytime,
            target_return_rate=(
                target_return
                if target_return is not None
                else _settings().default_target_return_rate
            ),
            exchange_code=exchange or ("KRX" if market == Market.KR else "NASD"),
        )
    except ValidationError as exc:
        _validation_failed("Invalid split-order parameters", exc)

    plan = build_plan(
        params.base_price,
        params.decline_value,
        params.decline_unit,
        params.split_count,
        params.side,
        params.total_amount,
        params.distribution_type,
        market,
    )
    console.print(format_ladder_table(plan, params.side))

    store = _open_store(db)
    strategy = Strategy(
        owner_id=owner,
        name=name or f"{symbol.upper()} split x{count}",
        strategy_type=StrategyType.SPLIT_ORDER,
        symbol=symbol.upper(),
        market=market,
        parameters=params.to_storage(),
    )
    strategy_id = _create(store, strategy)
    store.close()
    console.print(
        Panel(
            f"[green]Created[/green] {strategy.name}\n  ID: {strategy_id}",
            title="Split-Order Strategy",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# edit / set-status / delete
# ---------------------------------------------------------------------------


@app.command()
def edit(
    strategy_id: str = typer.Argument(help="Strategy id or unique id prefix"),
    param: List[str] = typer.Option(
        [], "--param", "-p", help="KEY=VALUE, e.g. basePrice=101 (repeatable)"
    ),
    run_now: bool = typer.Option(
        False, "--run-now", help="Execute immediately after saving"
    ),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Change parameters.  Open orders placed before the edit are replaced."""
    store = _open_store(db)
    strategy = _find_strategy(store, strategy_id)

    raw = dict(strategy.parameters)
    for item in param:
        key, sep, value = item.partition("=")
        if not sep:
            store.close()
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}")
        raw[key.strip()] = value.strip()

    try:
        params = parse_parameters(strategy.strategy_type, raw)
    except ConfigurationError as exc:
        store.close()
        _validation_failed("Invalid parameters", exc)

    store.edit_strategy(strategy.id, params.to_storage())
    console.print(
        Panel(
            f"[green]Saved[/green] {strategy.name}",
            title="Edit Strategy",
            border_style="green",
        )
    )

    if run_now:
        runner = _build_runner(store)
        ok, message = asyncio.run(runner.execute_immediately(strategy.id))
        color = "green" if ok else "red"
        console.print(f"[{color}]{message}[/{color}]")
    store.close()


@app.command(name="set-status")
def set_status(
    strategy_id: str = typer.Argument(help="Strategy id or unique id prefix"),
    status: StrategyStatus = typer.Argument(help="ACTIVE, INACTIVE or ENDED"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Activate, deactivate, or end a strategy."""
    store = _open_store(db)
    strategy = _find_strategy(store, strategy_id)
    store.set_strategy_status(strategy.id, status)
    if status == StrategyStatus.ENDED:
        asyncio.run(
            ActivityLog(store, LogNotifier()).record(
                strategy.owner_id,
                f"Strategy '{strategy.name}' ended by the operator",
                event_kind=EventKind.STRATEGY_ENDED,
                strategy_id=strategy.id,
            )
        )
    store.close()
    console.print(f"{strategy.name}: [bold]{status.value}[/bold]")


@app.command()
def delete(
    strategy_id: str = typer.Argument(help="Strategy id or unique id prefix"),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
    db: Optional[str] = typer.Option(None, help="SQLite database path"),
) -> None:
    """Delete a strategy.  Its orders are kept, detached from the strategy."""
    store = _open_store(db)
    strategy = _find_strategy(store, strategy_id)
    if not yes and not typer.confirm(f"Delete strategy '{strategy.name}'?"):
        store.close()
        raise typer.Exit(1)
    store.delete_strategy(strategy.id)
    store.close()
    console.print(f"[yellow]Deleted[/yellow] {strategy.name}")
