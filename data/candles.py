"""
candles.py - Bar data and price indicators

Provides the Bar record consumed by the backtest engine, helpers that turn
raw rows or DataFrames into clean bar lists, and the stateless indicator
functions used by regime classification, signal coordination, scanning and
stop-loss computation. Pure data processing with no trading decision logic.

Indicators operate on numpy arrays of prices (oldest first) and return the
latest value as a float, since every consumer only needs the value at the
current simulated step.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Bar:
    """
    One observation of a symbol.

    Attributes:
        symbol: Instrument symbol
        timestamp: Bar close time (timezone-aware UTC)
        price: Close price, strictly positive
        volume: Traded volume, non-negative
    """
    symbol: str
    timestamp: datetime
    price: float
    volume: float

    def __post_init__(self):
        if not (self.price > 0 and math.isfinite(self.price)):
            raise ValueError(f"Bar price must be positive and finite, got {self.price}")
        if self.volume < 0 or not math.isfinite(self.volume):
            raise ValueError(f"Bar volume must be non-negative and finite, got {self.volume}")

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "volume": self.volume,
        }


class BarProcessor:
    """Stateless conversions between raw rows, DataFrames and Bar lists."""

    @staticmethod
    def from_frame(symbol: str, df: pd.DataFrame) -> List[Bar]:
        """
        Convert a DataFrame with ``timestamp``, ``price`` and ``volume`` columns.

        A ``close`` column is accepted in place of ``price``. Rows with missing
        or non-positive prices are dropped; duplicates keep the last row.
        """
        if df.empty:
            return []
        frame = df.copy()
        if "price" not in frame.columns and "close" in frame.columns:
            frame = frame.rename(columns={"close": "price"})
        missing = {"timestamp", "price"} - set(frame.columns)
        if missing:
            raise ValueError(f"bar frame for {symbol} is missing columns: {sorted(missing)}")
        if "volume" not in frame.columns:
            frame["volume"] = 0.0

        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
        frame["price"] = pd.to_numeric(frame["price"], errors="coerce")
        frame["volume"] = pd.to_numeric(frame["volume"], errors="coerce").fillna(0.0)
        before = len(frame)
        frame = frame[(frame["price"] > 0) & np.isfinite(frame["price"])]
        frame = frame[frame["volume"] >= 0]
        frame = frame.drop_duplicates(subset="timestamp", keep="last").sort_values("timestamp")
        dropped = before - len(frame)
        if dropped:
            logger.warning("[BarProcessor] %s: dropped %d invalid/duplicate rows", symbol, dropped)

        return [
            Bar(symbol=symbol, timestamp=ts.to_pydatetime(), price=float(price), volume=float(volume))
            for ts, price, volume in zip(frame["timestamp"], frame["price"], frame["volume"])
        ]

    @staticmethod
    def to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "timestamp": [b.timestamp for b in bars],
                "price": [b.price for b in bars],
                "volume": [b.volume for b in bars],
            }
        )

    @staticmethod
    def clean(bars: Iterable[Bar]) -> List[Bar]:
        """Sort by timestamp and drop duplicate timestamps (last wins)."""
        by_ts = {}
        for bar in bars:
            ts = bar.timestamp if bar.timestamp.tzinfo else bar.timestamp.replace(tzinfo=timezone.utc)
            by_ts[ts] = bar if bar.timestamp.tzinfo else Bar(bar.symbol, ts, bar.price, bar.volume)
        return [by_ts[ts] for ts in sorted(by_ts)]


class Indicators:
    """
    Stateless indicator calculations on price/volume arrays.

    All methods tolerate short inputs and fall back to neutral values rather
    than raising, because callers run them on partially filled histories.
    """

    @staticmethod
    def pct_returns(prices: np.ndarray) -> np.ndarray:
        prices = np.asarray(prices, dtype=float)
        if prices.size < 2:
            return np.empty(0)
        return prices[1:] / prices[:-1] - 1.0

    @staticmethod
    def trend(prices: np.ndarray, period: int) -> float:
        """Fractional change over the last ``period`` bars (or all available)."""
        prices = np.asarray(prices, dtype=float)
        if prices.size < 2:
            return 0.0
        start = prices[-min(period + 1, prices.size)]
        return float(prices[-1] / start - 1.0)

    @staticmethod
    def sma(prices: np.ndarray, period: int) -> float:
        prices = np.asarray(prices, dtype=float)
        if prices.size == 0:
            return 0.0
        return float(prices[-period:].mean())

    @staticmethod
    def ema(prices: np.ndarray, period: int) -> float:
        prices = np.asarray(prices, dtype=float)
        if prices.size == 0:
            return 0.0
        return float(pd.Series(prices).ewm(span=period, adjust=False).mean().iloc[-1])

    @staticmethod
    def rsi(prices: np.ndarray, period: int = 14) -> float:
        """
        Relative Strength Index of the latest bar.

        Returns:
            RSI (0-100); 50 when there is no movement or too little data
        """
        prices = np.asarray(prices, dtype=float)
        if prices.size < 2:
            return 50.0
        delta = np.diff(prices[-(period + 1):])
        gain = delta[delta > 0].sum() / delta.size
        loss = -delta[delta < 0].sum() / delta.size
        if loss == 0:
            return 100.0 if gain > 0 else 50.0
        rs = gain / loss
        return float(100.0 - 100.0 / (1.0 + rs))

    @staticmethod
    def volatility(prices: np.ndarray, period: int) -> float:
        """Standard deviation of the last ``period`` bar returns."""
        returns = Indicators.pct_returns(np.asarray(prices, dtype=float)[-(period + 1):])
        if returns.size < 2:
            return 0.0
        return float(returns.std())

    @staticmethod
    def atr_like(prices: np.ndarray, period: int) -> float:
        """Mean absolute bar return, a close-only stand-in for ATR / price."""
        returns = Indicators.pct_returns(np.asarray(prices, dtype=float)[-(period + 1):])
        if returns.size == 0:
            return 0.0
        return float(np.abs(returns).mean())

    @staticmethod
    def volume_ratio(volumes: np.ndarray, period: int) -> float:
        """Latest volume relative to the average of the preceding ``period`` bars."""
        volumes = np.asarray(volumes, dtype=float)
        if volumes.size < 2:
            return 1.0
        baseline = volumes[-(period + 1):-1].mean()
        if baseline <= 0:
            return 1.0
        return float(volumes[-1] / baseline)

    @staticmethod
    def range_position(prices: np.ndarray, period: int) -> float:
        """Where the latest price sits between support (0) and resistance (1)."""
        window = np.asarray(prices, dtype=float)[-period:]
        if window.size == 0:
            return 0.5
        low, high = window.min(), window.max()
        if high - low <= 0:
            return 0.5
        return float((window[-1] - low) / (high - low))

    @staticmethod
    def correlation(a: np.ndarray, b: np.ndarray) -> float:
        """Pearson correlation of bar returns; 0.0 when undefined."""
        ra = Indicators.pct_returns(a)
        rb = Indicators.pct_returns(b)
        n = min(ra.size, rb.size)
        if n < 3:
            return 0.0
        ra, rb = ra[-n:], rb[-n:]
        if ra.std() == 0 or rb.std() == 0:
            # identical flat series move together
            return 1.0 if np.allclose(ra, rb) else 0.0
        value = float(np.corrcoef(ra, rb)[0, 1])
        return value if math.isfinite(value) else 0.0

    @staticmethod
    def dual_ew_mean(prices: np.ndarray, fast_half_life: float, slow_half_life: float) -> float:
        """Latest value of the equal blend of a fast and a slow EW mean."""
        series = pd.Series(np.asarray(prices, dtype=float))
        if series.empty:
            return 0.0
        fast = series.ewm(halflife=fast_half_life, adjust=True).mean().iloc[-1]
        slow = series.ewm(halflife=slow_half_life, adjust=True).mean().iloc[-1]
        return float(0.5 * (fast + slow))

    @staticmethod
    def ew_zscores(prices: np.ndarray, fast_half_life: float, slow_half_life: float) -> np.ndarray:
        """
        Exponentially weighted z-score of price against a dual-half-life mean.

        The mean blends a fast and a slow EW mean equally; the deviation scale
        is the slow EW standard deviation of price around that mean.
        """
        series = pd.Series(np.asarray(prices, dtype=float))
        if series.size < 3:
            return np.zeros(series.size)
        fast = series.ewm(halflife=fast_half_life, adjust=True).mean()
        slow = series.ewm(halflife=slow_half_life, adjust=True).mean()
        mean = 0.5 * (fast + slow)
        deviation = series - mean
        scale = np.sqrt((deviation ** 2).ewm(halflife=slow_half_life, adjust=True).mean())
        z = deviation / scale.replace(0.0, np.nan)
        return z.fillna(0.0).to_numpy()

    @staticmethod
    def historical_var(returns: np.ndarray, confidence: float = 0.95, min_points: int = 30) -> float:
        """
        Historical Value-at-Risk as a positive loss fraction.

        Returns 0.0 when fewer than ``min_points`` returns are available.
        """
        returns = np.sort(np.asarray(returns, dtype=float))
        if returns.size < max(1, min_points):
            return 0.0
        index = int(returns.size * (1.0 - confidence))
        index = min(max(index, 0), returns.size - 1)
        return float(max(0.0, -returns[index]))

    @staticmethod
    def expected_shortfall(returns: np.ndarray, confidence: float = 0.95, min_points: int = 30) -> float:
        returns = np.sort(np.asarray(returns, dtype=float))
        if returns.size < max(1, min_points):
            return 0.0
        index = max(1, int(returns.size * (1.0 - confidence)))
        return float(max(0.0, -returns[:index].mean()))

    @staticmethod
    def max_drawdown(values: np.ndarray) -> float:
        """Largest peak-to-trough decline of an equity-like series, as a fraction."""
        values = np.asarray(values, dtype=float)
        if values.size == 0:
            return 0.0
        peaks = np.maximum.accumulate(values)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - values) / peaks, 0.0)
        return float(drawdowns.max())
