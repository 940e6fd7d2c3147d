"""Tests for StrategyRunner: ticks, dedup fence, windows, and immediate execution."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from orderloop.config.settings import EngineSettings
from orderloop.errors import ConfigurationError
from orderloop.execution.reconciler import ReconcileSummary
from orderloop.execution.runner import StrategyRunner
from orderloop.models import EventKind, LogLevel, StrategyStatus, StrategyType

from conftest import PRE_MARKET, FakeGateway, make_quote


def _quoted_gateway() -> FakeGateway:
    gateway = FakeGateway()
    gateway.quotes["TQQQ"] = make_quote()
    return gateway


def _make_runner(store, notifier, clock, gateways=None, settings=None) -> StrategyRunner:
    gateways = gateways if gateways is not None else {}

    def factory(owner_id: str) -> FakeGateway:
        if owner_id not in gateways:
            raise ConfigurationError(f"no broker credentials for owner {owner_id}")
        return gateways[owner_id]

    return StrategyRunner(
        store,
        factory,
        settings=settings or EngineSettings(execution_interval_minutes=9),
        notifier=notifier,
        clock=clock,
    )


class TestExecutionTick:
    @pytest.mark.asyncio
    async def test_executes_and_commits_fence(
        self, store, notifier, clock, add_strategy
    ) -> None:
        gateway = _quoted_gateway()
        strategy = add_strategy(parameters={"looQty": 3})
        runner = _make_runner(store, notifier, clock, {"owner-1": gateway})

        summary = await runner.run_execution_tick(now=PRE_MARKET)

        assert summary["executed"] == 1
        assert summary["owners"] == 1
        assert summary["tick_time"] == PRE_MARKET.isoformat()
        assert len(gateway.submitted) == 1
        assert store.get_strategy(strategy.id).last_executed_at == PRE_MARKET
        assert gateway.closed is True

    @pytest.mark.asyncio
    async def test_fence_skips_recent_execution(
        self, store, notifier, clock, add_strategy
    ) -> None:
        gateway = _quoted_gateway()
        add_strategy(parameters={"looQty": 3})
        runner = _make_runner(store, notifier, clock, {"owner-1": gateway})

        await runner.run_execution_tick(now=PRE_MARKET)
        again = await runner.run_execution_tick(now=PRE_MARKET + timedelta(minutes=5))
        later = await runner.run_execution_tick(now=PRE_MARKET + timedelta(minutes=10))

        assert again["skipped"] == 1
        assert later["executed"] == 1
        assert len(gateway.submitted) == 1

    @pytest.mark.asyncio
    async def test_end_date_in_past_ends_strategy(
        self, store, notifier, clock, add_strategy
    ) -> None:
        strategy = add_strategy(end_date=date(2026, 3, 15))
        runner = _make_runner(store, notifier, clock, {"owner-1": _quoted_gateway()})

        summary = await runner.run_execution_tick(now=PRE_MARKET)

        assert summary["ended"] == 1
        assert store.get_strategy(strategy.id).status == StrategyStatus.ENDED

    @pytest.mark.asyncio
    async def test_future_start_date_skips(
        self, store, notifier, clock, add_strategy
    ) -> None:
        strategy = add_strategy(start_date=date(2026, 3, 17))
        runner = _make_runner(store, notifier, clock, {"owner-1": _quoted_gateway()})

        summary = await runner.run_execution_tick(now=PRE_MARKET)

        assert summary["skipped"] == 1
        assert store.get_strategy(strategy.id).last_executed_at is None

    @pytest.mark.asyncio
    async def test_owner_window(self, store, notifier, clock, add_strategy) -> None:
        gateways = {"owner-a": _quoted_gateway(), "owner-b": _quoted_gateway()}
        add_strategy(owner_id="owner-a", parameters={"looQty": 1})
        add_strategy(owner_id="owner-b", parameters={"looQty": 1})
        runner = _make_runner(store, notifier, clock, gateways)

        summary = await runner.run_execution_tick(offset=1, size=1, now=PRE_MARKET)

        assert summary["owners"] == 1
        assert gateways["owner-a"].submitted == []
        assert len(gateways["owner-b"].submitted) == 1

    @pytest.mark.asyncio
    async def test_owner_without_gateway_is_skipped(
        self, store, notifier, clock, add_strategy
    ) -> None:
        add_strategy(owner_id="owner-1", parameters={"looQty": 1})
        add_strategy(owner_id="ghost", parameters={"looQty": 1})
        runner = _make_runner(store, notifier, clock, {"owner-1": _quoted_gateway()})

        summary = await runner.run_execution_tick(now=PRE_MARKET)

        assert summary["owners_skipped"] == 1
        assert summary["executed"] == 1

    @pytest.mark.asyncio
    async def test_bad_parameters_skip_with_warning(
        self, store, notifier, clock, add_strategy
    ) -> None:
        strategy = add_strategy(StrategyType.SPLIT_ORDER, parameters={"basePrice": -1})
        runner = _make_runner(store, notifier, clock, {"owner-1": _quoted_gateway()})

        summary = await runner.run_execution_tick(now=PRE_MARKET)

        assert summary["skipped"] == 1
        event = store.list_events(strategy_id=strategy.id, event_kind=EventKind.SYSTEM)[0]
        assert event.level == LogLevel.WARN
        assert store.get_strategy(strategy.id).status == StrategyStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_executor_crash_is_contained(
        self, store, notifier, clock, add_strategy
    ) -> None:
        add_strategy(owner_id="owner-1")
        add_strategy(owner_id="owner-1", symbol="SOXL")
        runner = _make_runner(store, notifier, clock, {"owner-1": _quoted_gateway()})
        runner._executors[StrategyType.LOO_LOC].execute = AsyncMock(
            side_effect=[RuntimeError("boom"), MagicMock(outcome="executed")]
        )

        summary = await runner.run_execution_tick(now=PRE_MARKET)

        assert summary["failed"] == 1
        assert summary["executed"] == 1


class TestExecuteImmediately:
    @pytest.mark.asyncio
    async def test_success(self, store, notifier, clock, add_strategy) -> None:
        gateway = _quoted_gateway()
        strategy = add_strategy(parameters={"looQty": 2})
        runner = _make_runner(store, notifier, clock, {"owner-1": gateway})

        ok, message = await runner.execute_immediately(strategy.id, now=PRE_MARKET)

        assert ok is True
        assert message == "executed"
        assert len(gateway.submitted) == 1
        assert store.get_strategy(strategy.id).last_executed_at == PRE_MARKET

    @pytest.mark.asyncio
    async def test_timeout_still_commits_fence(
        self, store, notifier, clock, add_strategy
    ) -> None:
        strategy = add_strategy()
        runner = _make_runner(store, notifier, clock, {"owner-1": _quoted_gateway()})

        async def _slow(*args, **kwargs):
            await asyncio.sleep(5)

        runner._executors[StrategyType.LOO_LOC].execute = _slow

        ok, message = await runner.execute_immediately(
            strategy.id, now=PRE_MARKET, timeout=0.01
        )

        assert ok is False
        assert "timed out" in message
        assert store.get_strategy(strategy.id).last_executed_at == PRE_MARKET

        summary = await runner.run_execution_tick(now=PRE_MARKET + timedelta(minutes=1))
        assert summary["skipped"] == 1

    @pytest.mark.asyncio
    async def test_missing_and_inactive(self, store, notifier, clock, add_strategy) -> None:
        strategy = add_strategy(status=StrategyStatus.INACTIVE)
        runner = _make_runner(store, notifier, clock, {"owner-1": _quoted_gateway()})

        assert await runner.execute_immediately("nope", now=PRE_MARKET) == (
            False,
            "strategy nope not found",
        )
        assert await runner.execute_immediately(strategy.id, now=PRE_MARKET) == (
            False,
            "strategy is INACTIVE",
        )

    @pytest.mark.asyncio
    async def test_gateway_failure_is_reported(
        self, store, notifier, clock, add_strategy
    ) -> None:
        strategy = add_strategy()
        runner = _make_runner(store, notifier, clock, {})

        ok, message = await runner.execute_immediately(strategy.id, now=PRE_MARKET)

        assert ok is False
        assert "no broker credentials" in message


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_live_mode_requires_confirmation(
        self, store, notifier, clock, monkeypatch
    ) -> None:
        monkeypatch.delenv("ORDERLOOP_LIVE_CONFIRMED", raising=False)
        runner = _make_runner(
            store, notifier, clock, settings=EngineSettings(trading_mode="live")
        )
        with pytest.raises(ValueError, match="ORDERLOOP_LIVE_CONFIRMED"):
            await runner.start()

    @pytest.mark.asyncio
    async def test_start_schedules_both_ticks(
        self, store, notifier, clock, monkeypatch
    ) -> None:
        monkeypatch.setenv("ORDERLOOP_LIVE_CONFIRMED", "true")
        runner = _make_runner(
            store,
            notifier,
            clock,
            settings=EngineSettings(trading_mode="live", batch_size=50),
        )
        with patch("orderloop.execution.runner.AsyncIOScheduler") as scheduler_cls:
            await runner.start()
            scheduler = scheduler_cls.return_value
            job_ids = [c.kwargs["id"] for c in scheduler.add_job.call_args_list]
            assert job_ids == ["execute_strategies", "reconcile_orders"]
            assert scheduler.add_job.call_args_list[0].kwargs["kwargs"] == {"size": 50}
            scheduler.start.assert_called_once()

            await runner.stop()
            scheduler.shutdown.assert_called_once_with(wait=False)

    @pytest.mark.asyncio
    async def test_reconciliation_tick_delegates(
        self, store, notifier, clock
    ) -> None:
        runner = _make_runner(store, notifier, clock, {"owner-1": FakeGateway()})

        summary = await runner.run_reconciliation_tick(now=PRE_MARKET)

        assert isinstance(summary, ReconcileSummary)
        assert summary.checked == 0
