"""
test_data_layer.py - Tests for bars, indicators, caches, providers and storage
"""

import json
import threading
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from data.cache import AdvisoryCache, CacheKey, ReadWriteLock
from data.candles import Bar, BarProcessor, Indicators
from data.market_feed import CsvDataProvider, DataUnavailableError, InMemoryDataProvider
from data.storage import InMemoryTradeStore, JsonlTradeStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_bars(symbol, prices, start=T0, step_minutes=60):
    return [
        Bar(symbol, start + timedelta(minutes=step_minutes * i), float(p), 100.0)
        for i, p in enumerate(prices)
    ]


class TestBar:
    """Bar validation and frame conversion."""

    def test_rejects_non_positive_price(self):
        with pytest.raises(ValueError):
            Bar("BTC/USDT", T0, 0.0, 1.0)

    def test_rejects_negative_volume(self):
        with pytest.raises(ValueError):
            Bar("BTC/USDT", T0, 100.0, -1.0)

    def test_from_frame_drops_invalid_and_duplicate_rows(self):
        df = pd.DataFrame({
            "timestamp": ["2024-01-01 00:00", "2024-01-01 01:00", "2024-01-01 01:00", "2024-01-01 02:00"],
            "close": [100.0, 101.0, 102.0, -5.0],
            "volume": [1.0, 2.0, 3.0, 4.0],
        })
        bars = BarProcessor.from_frame("BTC/USDT", df)

        assert [b.price for b in bars] == [100.0, 102.0]
        assert all(b.timestamp.tzinfo is not None for b in bars)

    def test_clean_sorts_and_localizes(self):
        naive = datetime(2024, 1, 1, 5)
        bars = [Bar("X", naive, 2.0, 1.0), Bar("X", T0, 1.0, 1.0)]
        cleaned = BarProcessor.clean(bars)

        assert [b.price for b in cleaned] == [1.0, 2.0]
        assert cleaned[1].timestamp.tzinfo is not None


class TestIndicators:
    """Stateless indicator calculations."""

    def test_trend_and_returns(self):
        prices = np.array([100.0, 110.0, 121.0])
        assert Indicators.trend(prices, 2) == pytest.approx(0.21)
        assert np.allclose(Indicators.pct_returns(prices), [0.1, 0.1])

    def test_short_inputs_are_neutral(self):
        one = np.array([100.0])
        assert Indicators.trend(one, 10) == 0.0
        assert Indicators.volatility(one, 10) == 0.0
        assert Indicators.rsi(one) == 50.0
        assert Indicators.range_position(np.array([5.0, 5.0]), 10) == 0.5

    def test_rsi_extremes(self):
        assert Indicators.rsi(np.arange(1.0, 30.0)) == 100.0
        assert Indicators.rsi(np.arange(30.0, 1.0, -1.0)) == pytest.approx(0.0)

    def test_correlation_of_scaled_series_is_one(self):
        rng = np.random.default_rng(7)
        a = 100 * np.cumprod(1 + rng.normal(0, 0.01, 200))
        assert Indicators.correlation(a, a * 3.0) == pytest.approx(1.0)

    def test_correlation_needs_three_returns(self):
        assert Indicators.correlation(np.array([1.0, 2.0]), np.array([1.0, 2.0])) == 0.0

    def test_max_drawdown(self):
        assert Indicators.max_drawdown(np.array([100.0, 120.0, 90.0, 130.0])) == pytest.approx(0.25)
        assert Indicators.max_drawdown(np.array([])) == 0.0

    def test_historical_var_requires_minimum_sample(self):
        returns = np.linspace(-0.05, 0.05, 20)
        assert Indicators.historical_var(returns, 0.95) == 0.0

    def test_historical_var_is_positive_loss(self):
        returns = np.linspace(-0.10, 0.10, 101)
        var = Indicators.historical_var(returns, 0.95)
        es = Indicators.expected_shortfall(returns, 0.95)

        assert var == pytest.approx(0.09, abs=1e-9)
        assert es >= var

    def test_ew_zscores_shape(self):
        z = Indicators.ew_zscores(np.linspace(100, 110, 50), 5, 20)
        assert z.shape == (50,)
        assert np.isfinite(z).all()


class TestAdvisoryCache:
    """Composite-key caches and the read/write lock."""

    def test_get_or_compute_hits_after_first_miss(self):
        cache = AdvisoryCache("features")
        key = CacheKey("BTC/USDT", T0, 50)
        calls = []

        def compute():
            calls.append(1)
            return {"value": 1}

        assert cache.get_or_compute(key, compute) == {"value": 1}
        assert cache.get_or_compute(key, compute) == {"value": 1}
        assert len(calls) == 1
        stats = cache.stats()
        assert stats["hits"] == 1 and stats["misses"] == 1

    def test_window_length_distinguishes_entries(self):
        cache = AdvisoryCache("features")
        cache.put(CacheKey("A", T0, 10), 1)
        assert cache.get(CacheKey("A", T0, 11)) is None

    def test_none_is_not_cached(self):
        cache = AdvisoryCache("predictions")
        key = CacheKey("A", T0, 10)
        cache.get_or_compute(key, lambda: None)
        assert len(cache) == 0

    def test_fifo_eviction_and_invalidate(self):
        cache = AdvisoryCache("decisions", max_entries=2)
        for i in range(3):
            cache.put(CacheKey("A", T0 + timedelta(hours=i), 10), i)
        assert len(cache) == 2
        assert cache.get(CacheKey("A", T0, 10)) is None

        cache.put(CacheKey("B", T0, 10), 9)
        assert cache.invalidate("A") == 1
        assert len(cache) == 1

    def test_concurrent_writers(self):
        cache = AdvisoryCache("features")

        def writer(offset):
            for i in range(200):
                cache.put(CacheKey(f"S{offset}", T0, i), i)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(cache) == 800

    def test_rw_lock_allows_shared_readers(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        lock.acquire_read()
        lock.release_read()
        lock.release_read()
        with lock.write_locked():
            pass


class TestProviders:
    """In-memory and CSV history providers."""

    def test_in_memory_slices_range(self):
        provider = InMemoryDataProvider({"A": make_bars("A", [1, 2, 3, 4])})
        bars = provider.get_historical_bars("A", T0 + timedelta(hours=1), T0 + timedelta(hours=2))
        assert [b.price for b in bars] == [2.0, 3.0]

    def test_in_memory_unknown_symbol(self):
        provider = InMemoryDataProvider({})
        with pytest.raises(DataUnavailableError):
            provider.get_historical_bars("A", T0, T0 + timedelta(days=1))

    def test_csv_provider(self, tmp_path):
        pd.DataFrame({
            "timestamp": ["2024-01-01T00:00:00Z", "2024-01-01T01:00:00Z"],
            "price": [10.0, 11.0],
            "volume": [5.0, 6.0],
        }).to_csv(tmp_path / "ETH_USDT.csv", index=False)
        provider = CsvDataProvider(str(tmp_path))

        bars = provider.get_historical_bars("ETH/USDT", T0, T0 + timedelta(days=1))
        assert [b.price for b in bars] == [10.0, 11.0]
        with pytest.raises(DataUnavailableError):
            provider.get_historical_bars("SOL/USDT", T0, T0 + timedelta(days=1))


class TestStorage:
    """Trade stores."""

    def test_in_memory_store(self):
        store = InMemoryTradeStore()
        store.persist_trade({"symbol": "A", "pnl": 1.0})
        store.persist_run_summary({"metrics": {}})
        assert store.trades == [{"symbol": "A", "pnl": 1.0}]
        assert len(store.summaries) == 1

    def test_jsonl_store(self, tmp_path):
        store = JsonlTradeStore(str(tmp_path / "out" / "trades.jsonl"))
        store.persist_trade({"symbol": "A", "exit_time": T0})
        store.persist_trade({"symbol": "B"})
        store.persist_run_summary({"metrics": {"total_trades": 2}})

        lines = (tmp_path / "out" / "trades.jsonl").read_text().splitlines()
        assert [json.loads(line)["symbol"] for line in lines] == ["A", "B"]
        summary = json.loads((tmp_path / "out" / "trades.summary.json").read_text())
        assert summary["metrics"]["total_trades"] == 2
