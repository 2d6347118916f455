"""
test_backtesting.py - Tests for the portfolio, worker pool, reports and engine
"""

import asyncio
import json
import threading
import time
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from backtesting.engine import BacktestEngine, BacktestError, _BacktestRun, _SymbolData, run_backtest
from backtesting.portfolio import Portfolio
from backtesting.precompute import PrecomputeService, ShutdownTimeoutError
from backtesting.reports import daily_returns, save_report, summarize_results, symbol_statistics
from core.config import BacktestConfig, ConfigError
from data.candles import Bar
from data.market_feed import InMemoryDataProvider, TransientDataError
from data.storage import InMemoryTradeStore
from monitoring.logger import LoggerManager
from monitoring.metrics import TradeRecord
from strategies.base import OpportunityOrigin

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
N_BARS = 300


def trade(symbol, pnl, day=0, allocated=1000.0):
    ts = T0 + timedelta(days=day)
    return TradeRecord(
        trade_id=f"{symbol}-{day}", symbol=symbol, entry_time=ts, exit_time=ts + timedelta(hours=5),
        entry_price=100.0, exit_price=100.0 + pnl / 10, quantity=10.0, entry_commission=0.0,
        exit_commission=0.0, pnl=pnl, return_pct=pnl / allocated, holding_bars=5,
        exit_reason="take_profit", origin="signal", regime="strong_bull",
    )


def rising_bars(symbols, n=N_BARS, seed=11):
    rng = np.random.default_rng(seed)
    out = {}
    for symbol in symbols:
        prices = 100.0 * np.cumprod(1.0 + 0.003 + rng.normal(0.0, 0.0005, n))
        out[symbol] = [Bar(symbol, T0 + timedelta(hours=i), float(p), 1000.0) for i, p in enumerate(prices)]
    return out


def make_config(symbols, **kwargs):
    return BacktestConfig(symbols=symbols, start=T0, end=T0 + timedelta(hours=N_BARS), **kwargs)


class TestPortfolio:
    """Cash and PnL accounting."""

    def test_round_trip_pnl_identity(self):
        portfolio = Portfolio(10_000.0, commission=0.001, slippage=0.01)
        portfolio.open_position("A", 10.0, 100.0, T0, 0, OpportunityOrigin.signal(), stop_distance=0.03)

        assert portfolio.cash == pytest.approx(10_000.0 - 1010.0 - 1.01)
        assert portfolio.open_symbols() == ["A"]
        assert portfolio.exposures({"A": 100.0})["A"].capital_at_risk == pytest.approx(30.0)

        closed = portfolio.close_position("A", 110.0, T0 + timedelta(hours=3), 3, "take_profit")
        assert closed.pnl == pytest.approx((108.9 - 101.0) * 10 - (1.01 + 1.089))
        assert portfolio.cash == pytest.approx(10_000.0 + closed.pnl)
        assert portfolio.open_symbols() == []
        assert portfolio.state("A").last_trade_index == 3

    def test_insufficient_cash(self):
        portfolio = Portfolio(1_000.0, commission=0.001)
        with pytest.raises(ValueError):
            portfolio.open_position("A", 10.0, 100.0, T0, 0, OpportunityOrigin.signal())
        assert portfolio.cash == 1_000.0

    def test_holding_bars_and_peak(self):
        portfolio = Portfolio(10_000.0)
        state = portfolio.open_position("A", 1.0, 100.0, T0, 0, OpportunityOrigin.signal())
        state.mark(105.0)
        state.mark(103.0)
        assert state.holding_bars == 2
        assert state.snapshot().peak_gain == pytest.approx(0.05)

    def test_close_without_position(self):
        with pytest.raises(ValueError):
            Portfolio(100.0).close_position("A", 1.0, T0, 0, "stop_loss")


class TestPrecomputeService:
    """Bounded fan-out with retries, timeouts and shutdown."""

    @pytest.mark.asyncio
    async def test_results_and_failures(self):
        service = PrecomputeService(max_concurrency=2)

        def fn(symbol):
            if symbol == "BAD":
                raise LookupError("missing")
            return symbol.lower()

        batch = await service.run_batch(["A", "B", "BAD"], fn)
        await service.shutdown()

        assert batch.results == {"A": "a", "B": "b"}
        assert isinstance(batch.failures["BAD"], LookupError)
        assert not batch.ok

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        service = PrecomputeService(retry_attempts=3, retry_backoff=0.001)
        calls = []

        def flaky(symbol):
            calls.append(symbol)
            if len(calls) < 3:
                raise TransientDataError("try again")
            return 42

        batch = await service.run_batch(["A"], flaky)
        await service.shutdown()
        assert batch.results == {"A": 42}
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        service = PrecomputeService(max_concurrency=2)
        peak = []

        def fn(symbol):
            peak.append(service.active_workers)
            time.sleep(0.02)
            return symbol

        batch = await service.run_batch([f"S{i}" for i in range(6)], fn)
        await service.shutdown()
        assert len(batch.results) == 6
        assert max(peak) <= 2

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self):
        service = PrecomputeService()
        batch = await service.run_batch(["SLOW"], lambda s: time.sleep(0.3), timeout=0.02)
        assert batch.timed_out == ["SLOW"]
        await service.shutdown(deadline=2.0)

    @pytest.mark.asyncio
    async def test_shutdown_deadline(self):
        service = PrecomputeService()
        release = threading.Event()
        batch = await service.run_batch(["BLOCKED"], lambda s: release.wait(5.0), timeout=0.02)
        assert batch.timed_out == ["BLOCKED"]
        try:
            with pytest.raises(ShutdownTimeoutError):
                await service.shutdown(deadline=0.05)
        finally:
            release.set()

    @pytest.mark.asyncio
    async def test_stopped_service_cancels_batches(self):
        service = PrecomputeService()
        service.request_stop()
        batch = await service.run_batch(["A", "B"], lambda s: s)
        assert batch.cancelled == ["A", "B"]
        await service.shutdown()


class TestReports:
    """Result metrics and report files."""

    def test_summarize(self):
        trades = [trade("A", 50.0), trade("A", -20.0, day=1), trade("B", 30.0, day=2)]
        curve = [(T0 + timedelta(days=d), eq) for d, eq in enumerate([10_000.0, 10_050.0, 10_030.0, 10_060.0])]
        metrics = summarize_results(trades, curve, 10_000.0)

        assert metrics["total_trades"] == 3
        assert metrics["win_rate"] == pytest.approx(2 / 3)
        assert metrics["realized_pnl"] == pytest.approx(60.0)
        assert metrics["profit_factor"] == pytest.approx(4.0)
        assert metrics["ending_equity"] == 10_060.0
        assert metrics["total_return"] == pytest.approx(0.006)
        assert metrics["max_drawdown"] == pytest.approx(20.0 / 10_050.0)
        assert metrics["var_95"] == 0.0

    def test_empty_run(self):
        metrics = summarize_results([], [], 10_000.0)
        assert metrics["total_trades"] == 0
        assert metrics["ending_equity"] == 10_000.0
        assert metrics["sharpe_ratio"] == 0.0

    def test_daily_returns_use_last_sample_per_day(self):
        curve = [(T0, 100.0), (T0 + timedelta(hours=5), 200.0), (T0 + timedelta(days=1), 220.0)]
        assert np.allclose(daily_returns(curve), [0.1])

    def test_symbol_statistics(self):
        stats = symbol_statistics([trade("B", 10.0), trade("A", -5.0), trade("B", -2.0, day=1)])
        assert list(stats) == ["A", "B"]
        assert stats["B"]["trades"] == 2
        assert stats["B"]["win_rate"] == 0.5
        assert stats["B"]["pnl"] == pytest.approx(8.0)


class StopOnFirstEntry(LoggerManager):
    """Asks the engine to stop as soon as the first position opens."""

    engine = None

    def log_trade(self, event, trade):
        super().log_trade(event, trade)
        if event == "trade.open":
            self.engine.request_stop()


class FailingStore:
    def persist_trade(self, trade):
        raise IOError("disk full")

    def persist_run_summary(self, summary):
        raise IOError("disk full")


@pytest.fixture(scope="module")
def rising_run():
    symbols = ["AAA/USDT", "BBB/USDT", "CCC/USDT"]
    store = InMemoryTradeStore()
    monitor = LoggerManager("test.backtest.rising", recent_size=100_000)
    result = run_backtest(make_config(symbols), InMemoryDataProvider(rising_bars(symbols)), store, monitor)
    return result, store, monitor


class TestBacktestEngine:
    """End-to-end runs on synthetic data."""

    def test_rising_market_trades_and_classifies_bull(self, rising_run):
        result, _, _ = rising_run

        assert len(result.trades) >= 1
        assert result.metrics["total_trades"] == len(result.trades)
        assert any(t.to_regime.is_bull for t in result.regime_transitions)
        assert result.metrics["final_regime"] in ("strong_bull", "weak_bull")
        assert result.skipped_symbols == {}

    def test_equity_curve_and_accounting(self, rising_run):
        result, _, _ = rising_run

        assert len(result.equity_curve) >= N_BARS
        timestamps = [ts for ts, _ in result.equity_curve]
        assert timestamps == sorted(timestamps)
        realized = sum(t.pnl for t in result.trades)
        assert result.metrics["ending_equity"] == pytest.approx(10_000.0 + realized)
        assert all(t.quantity > 0 for t in result.trades)
        assert all(t.exit_time >= t.entry_time for t in result.trades)

    def test_store_and_events(self, rising_run):
        result, store, monitor = rising_run

        assert len(store.trades) == len(result.trades)
        assert len(store.summaries) == 1
        assert store.summaries[0]["metrics"]["total_trades"] == len(result.trades)
        assert monitor.get_recent(event="backtest.complete")
        assert len(monitor.get_recent(event="trade.open")) == len(result.trades)

    def test_save_report(self, rising_run, tmp_path):
        result, _, _ = rising_run
        paths = save_report(result, str(tmp_path / "report"))

        summary = json.loads(open(paths["summary"], encoding="utf-8").read())
        trades = json.loads(open(paths["trades"], encoding="utf-8").read())
        assert summary["metrics"]["total_trades"] == len(trades)

    def test_missing_symbol_is_skipped(self):
        bars = rising_bars(["AAA"], n=60)
        monitor = LoggerManager("test.backtest.skipped")
        config = BacktestConfig(symbols=["AAA", "ZZZ"], start=T0, end=T0 + timedelta(hours=60))
        result = run_backtest(config, InMemoryDataProvider(bars), monitor=monitor)

        assert list(result.skipped_symbols) == ["ZZZ"]
        assert result.skipped_symbols["ZZZ"].startswith("unavailable")
        assert monitor.get_recent(event="symbol.skipped")

    def test_no_data_raises(self):
        config = BacktestConfig(symbols=["ZZZ"], start=T0, end=T0 + timedelta(hours=60))
        with pytest.raises(BacktestError):
            run_backtest(config, InMemoryDataProvider({}))

    def test_invalid_config_raises(self):
        config = BacktestConfig(symbols=["AAA"], start=T0, end=T0 + timedelta(hours=60), initial_cash=0)
        with pytest.raises(ConfigError):
            run_backtest(config, InMemoryDataProvider(rising_bars(["AAA"], n=60)))

    def test_storage_failures_do_not_stop_the_run(self):
        symbols = ["AAA", "BBB"]
        monitor = LoggerManager("test.backtest.storage")
        result = run_backtest(make_config(symbols), InMemoryDataProvider(rising_bars(symbols, seed=5)),
                              FailingStore(), monitor)

        assert result.metrics["total_trades"] == len(result.trades)
        assert monitor.get_recent(event="storage.failed")

    def test_concurrent_run_rejected(self):
        symbols = ["AAA"]
        engine = BacktestEngine(InMemoryDataProvider(rising_bars(symbols, n=60)))
        config = BacktestConfig(symbols=symbols, start=T0, end=T0 + timedelta(hours=60))

        async def both():
            first = asyncio.ensure_future(engine.run(config))
            await asyncio.sleep(0)
            with pytest.raises(BacktestError):
                await engine.run(config)
            return await first

        result = asyncio.run(both())
        assert len(result.equity_curve) >= 60

    def test_naive_range_is_treated_as_utc(self):
        symbols = ["AAA", "BBB", "CCC"]
        config = BacktestConfig(symbols=symbols, start=datetime(2024, 1, 1),
                                end=datetime(2024, 1, 1) + timedelta(hours=N_BARS))
        result = run_backtest(config, InMemoryDataProvider(rising_bars(symbols)))

        assert result.skipped_symbols == {}
        assert len(result.equity_curve) >= N_BARS
        assert len(result.trades) >= 1

    def test_rotation_closes_demoted_position(self):
        n = 60
        bars = {
            "AAA": [Bar("AAA", T0 + timedelta(hours=i), 100.0 * 0.995 ** i, 1000.0) for i in range(n)],
            "BBB": [Bar("BBB", T0 + timedelta(hours=i), 100.0 * 1.005 ** i, 1000.0) for i in range(n)],
        }
        data = {
            symbol: _SymbolData(
                timestamps=[b.timestamp for b in rows],
                prices=np.array([b.price for b in rows]),
                volumes=np.array([b.volume for b in rows]),
            )
            for symbol, rows in bars.items()
        }
        config = BacktestConfig(symbols=["AAA", "BBB"], start=T0, end=T0 + timedelta(hours=n),
                                max_active_symbols=1, rotation_interval=24)
        store = InMemoryTradeStore()
        monitor = LoggerManager("test.backtest.rotation")
        run = _BacktestRun(config, data, PrecomputeService(max_concurrency=1), monitor, store)
        assert run.active == ["AAA"]

        entry_ts = T0 + timedelta(hours=20)
        run.advance(entry_ts)
        run.portfolio.open_position("AAA", 10.0, run.last_prices["AAA"], entry_ts, 20,
                                    OpportunityOrigin.signal(), stop_distance=0.03)
        ts = T0 + timedelta(hours=24)
        run.advance(ts)
        run.apply_rotation(ts, 24)

        assert run.active == ["BBB"]
        assert not run.portfolio.state("AAA").is_open
        closed = run.metrics.trades
        assert len(closed) == 1
        assert closed[0].exit_reason == "rotation"
        assert closed[0].pnl < 0
        # the performance book already holds the trade when the next scan reads it
        record = run.book.get("AAA")
        assert record.trades == 1
        assert record.total_pnl == pytest.approx(closed[0].pnl)
        assert store.trades[0]["exit_reason"] == "rotation"
        assert monitor.get_recent(event="rotation.applied")[0]["payload"]["demoted"] == ["AAA"]

    def test_request_stop_returns_partial_result(self):
        symbols = ["AAA", "BBB", "CCC"]
        store = InMemoryTradeStore()
        monitor = StopOnFirstEntry("test.backtest.stop")
        engine = BacktestEngine(InMemoryDataProvider(rising_bars(symbols)), store, monitor)
        monitor.engine = engine

        result = asyncio.run(engine.run(make_config(symbols)))

        assert len(monitor.get_recent(event="trade.open")) == 1
        assert len(result.trades) == 1
        assert result.trades[0].exit_reason == "end_of_backtest"
        assert len(result.equity_curve) < N_BARS
        assert result.metrics["total_trades"] == 1
        assert len(store.summaries) == 1
        assert store.summaries[0]["metrics"]["total_trades"] == 1
        assert monitor.get_recent(event="backtest.complete")
