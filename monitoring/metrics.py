"""
metrics.py - Trade and equity recorder for backtest runs.

Responsibilities:
- Keep every closed trade and the per-step equity curve of a run.
- Compute drawdowns and aggregate trade statistics on demand.
- Produce per-day views (last equity per UTC day, daily summaries).
- Thread-safe; no trading or execution logic included.

Design notes:
- Trades are recorded when they close, never updated afterwards.
- Equity samples are kept in timestamp order.
- Daily views are based on the UTC date of the sample/exit timestamps.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd


@dataclass
class TradeRecord:
    """A closed (realized) long trade."""
    trade_id: str
    symbol: str
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    quantity: float
    entry_commission: float
    exit_commission: float
    pnl: float           # (exit - entry) * qty - commissions
    return_pct: float    # pnl / entry notional
    holding_bars: int
    exit_reason: str
    origin: str
    regime: str
    info: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "symbol": self.symbol,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat(),
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "entry_commission": self.entry_commission,
            "exit_commission": self.exit_commission,
            "pnl": self.pnl,
            "return_pct": self.return_pct,
            "holding_bars": self.holding_bars,
            "exit_reason": self.exit_reason,
            "origin": self.origin,
            "regime": self.regime,
        }


@dataclass
class EquitySample:
    ts: datetime
    equity: float


@dataclass
class DailySummary:
    day: date
    trades: int = 0
    wins: int = 0
    losses: int = 0
    realized_pnl: float = 0.0
    win_rate: Optional[float] = None
    starting_equity: Optional[float] = None
    ending_equity: Optional[float] = None
    max_drawdown_pct: Optional[float] = None


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Key methods:
      - record_trade(trade: TradeRecord)
      - record_equity(ts: datetime, equity: float)
      - get_overall_metrics() -> dict
      - daily_equity() -> pandas.Series
      - daily_summary(day: date) -> DailySummary
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._trades: List[TradeRecord] = []
        self._equity: List[EquitySample] = []

    # -----------------------
    # Recording methods
    # -----------------------
    def record_trade(self, trade: TradeRecord) -> None:
        with self._lock:
            self._trades.append(copy.copy(trade))

    def record_equity(self, ts: datetime, equity: float) -> None:
        sample = EquitySample(ts=ts, equity=float(equity))
        with self._lock:
            if not self._equity or ts >= self._equity[-1].ts:
                self._equity.append(sample)
            else:
                idx = 0
                while idx < len(self._equity) and self._equity[idx].ts <= ts:
                    idx += 1
                self._equity.insert(idx, sample)

    # -----------------------
    # Computation helpers
    # -----------------------
    @staticmethod
    def _compute_drawdowns(samples: List[EquitySample]) -> Tuple[Optional[float], Optional[float]]:
        """(max drawdown absolute, max drawdown as a fraction of peak) or (None, None)."""
        if not samples:
            return None, None
        peak = samples[0].equity
        max_dd = 0.0
        max_dd_pct = 0.0
        for s in samples:
            peak = max(peak, s.equity)
            dd = peak - s.equity
            max_dd = max(max_dd, dd)
            if peak > 0:
                max_dd_pct = max(max_dd_pct, dd / peak)
        return max_dd, max_dd_pct

    # -----------------------
    # Public reporting
    # -----------------------
    @property
    def trades(self) -> List[TradeRecord]:
        with self._lock:
            return list(self._trades)

    def equity_curve(self) -> List[Tuple[datetime, float]]:
        with self._lock:
            return [(s.ts, s.equity) for s in self._equity]

    def get_overall_metrics(self) -> Dict[str, Any]:
        with self._lock:
            trades = list(self._trades)
            samples = list(self._equity)
        total = len(trades)
        wins = sum(1 for t in trades if t.pnl > 0)
        realized = sum(t.pnl for t in trades)
        max_dd_abs, max_dd_pct = self._compute_drawdowns(samples)
        return {
            "total_trades": total,
            "wins": wins,
            "losses": total - wins,
            "win_rate": (wins / total) if total else None,
            "realized_pnl": realized,
            "avg_trade_pnl": (realized / total) if total else None,
            "starting_equity": samples[0].equity if samples else None,
            "latest_equity": samples[-1].equity if samples else None,
            "max_drawdown_abs": max_dd_abs,
            "max_drawdown_pct": max_dd_pct,
        }

    def daily_equity(self) -> pd.Series:
        """Last equity sample of each UTC day, indexed by day."""
        with self._lock:
            samples = list(self._equity)
        if not samples:
            return pd.Series(dtype=float)
        index = pd.DatetimeIndex([s.ts for s in samples])
        if index.tz is None:
            index = index.tz_localize("UTC")
        else:
            index = index.tz_convert("UTC")
        series = pd.Series([s.equity for s in samples], index=index)
        return series.groupby(series.index.normalize()).last()

    def daily_summary(self, day: date) -> DailySummary:
        """Trades counted by exit date; equity and drawdown from samples on that date."""
        with self._lock:
            trades = [t for t in self._trades if t.exit_time.date() == day]
            samples = [s for s in self._equity if s.ts.date() == day]
        wins = sum(1 for t in trades if t.pnl > 0)
        _, max_dd_pct = self._compute_drawdowns(samples)
        return DailySummary(
            day=day,
            trades=len(trades),
            wins=wins,
            losses=len(trades) - wins,
            realized_pnl=sum(t.pnl for t in trades),
            win_rate=(wins / len(trades)) if trades else None,
            starting_equity=samples[0].equity if samples else None,
            ending_equity=samples[-1].equity if samples else None,
            max_drawdown_pct=max_dd_pct,
        )

    def reset(self) -> None:
        with self._lock:
            self._trades.clear()
            self._equity.clear()

    def export_trades(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [t.to_dict() for t in self._trades]
