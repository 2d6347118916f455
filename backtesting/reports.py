"""
reports.py - Backtest result metrics

Responsibilities:
- Turn the closed trades and equity curve of a run into summary metrics
- Per-symbol trade statistics
- Write the summary and trades as JSON files

This module provides:
- summarize_results(trades, equity_curve, initial_cash) -> dict
- symbol_statistics(trades) -> dict
- save_report(result, out_dir) -> dict(paths)

Notes:
- Return-based ratios use daily returns (last equity per UTC day) with a
  0.02 / 252 daily risk-free rate and sqrt(252) annualization.
- VaR and expected shortfall are historical and need at least 30 daily
  returns; with fewer they are reported as 0.
"""

from __future__ import annotations

import json
import math
import threading
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from data.candles import Indicators
from monitoring.metrics import TradeRecord

_LOCK = threading.RLock()

TRADING_DAYS = 252
RISK_FREE_RATE = 0.02


def daily_returns(equity_curve: Sequence[Tuple[datetime, float]]) -> np.ndarray:
    """Percent change of the last equity sample of each UTC day."""
    if len(equity_curve) < 2:
        return np.empty(0)
    index = pd.DatetimeIndex([ts for ts, _ in equity_curve])
    index = index.tz_localize("UTC") if index.tz is None else index.tz_convert("UTC")
    series = pd.Series([eq for _, eq in equity_curve], index=index)
    daily = series.groupby(series.index.normalize()).last()
    return daily.pct_change().dropna().to_numpy(dtype=float)


def _ratio(numerator: float, denominator: float) -> float:
    if denominator <= 0 or not math.isfinite(denominator):
        return 0.0
    return float(numerator / denominator)


def summarize_results(
    trades: Sequence[TradeRecord],
    equity_curve: Sequence[Tuple[datetime, float]],
    initial_cash: float,
) -> Dict[str, Any]:
    """
    Compute risk and performance metrics for a finished run.

    Returns dict with keys:
      - total_trades, wins, losses, win_rate
      - realized_pnl, gross_profit, gross_loss, profit_factor
      - avg_win, avg_loss, payoff_ratio
      - starting_equity, ending_equity, total_return
      - max_drawdown, volatility, sharpe_ratio, sortino_ratio, calmar_ratio
      - var_95, var_99, expected_shortfall_95
    """
    pnls = np.array([t.pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]
    gross_profit = float(wins.sum()) if wins.size else 0.0
    gross_loss = float(-losses.sum()) if losses.size else 0.0
    avg_win = float(wins.mean()) if wins.size else 0.0
    avg_loss = float(-losses.mean()) if losses.size else 0.0

    equity = np.array([eq for _, eq in equity_curve], dtype=float)
    ending_equity = float(equity[-1]) if equity.size else float(initial_cash)
    total_return = ending_equity / initial_cash - 1.0
    max_dd = Indicators.max_drawdown(np.concatenate(([initial_cash], equity)))

    returns = daily_returns(equity_curve)
    rf = RISK_FREE_RATE / TRADING_DAYS
    if returns.size >= 2:
        excess = returns - rf
        std = float(returns.std(ddof=1))
        sharpe = _ratio(float(excess.mean()), std) * math.sqrt(TRADING_DAYS)
        downside = returns[returns < 0]
        downside_std = float(np.sqrt(np.mean(downside ** 2))) if downside.size else 0.0
        sortino = _ratio(float(excess.mean()), downside_std) * math.sqrt(TRADING_DAYS)
        volatility = std * math.sqrt(TRADING_DAYS)
        annual_return = (1.0 + total_return) ** (TRADING_DAYS / returns.size) - 1.0 if total_return > -1 else -1.0
    else:
        sharpe = sortino = volatility = 0.0
        annual_return = total_return

    total = int(pnls.size)
    return {
        "total_trades": total,
        "wins": int(wins.size),
        "losses": int(losses.size),
        "win_rate": (wins.size / total) if total else 0.0,
        "realized_pnl": float(pnls.sum()) if total else 0.0,
        "gross_profit": gross_profit,
        "gross_loss": gross_loss,
        "profit_factor": _ratio(gross_profit, gross_loss) if gross_loss else (float("inf") if gross_profit else 0.0),
        "avg_win": avg_win,
        "avg_loss": avg_loss,
        "payoff_ratio": _ratio(avg_win, avg_loss),
        "starting_equity": float(initial_cash),
        "ending_equity": ending_equity,
        "total_return": total_return,
        "max_drawdown": max_dd,
        "volatility": volatility,
        "sharpe_ratio": sharpe,
        "sortino_ratio": sortino,
        "calmar_ratio": _ratio(annual_return, max_dd),
        "var_95": Indicators.historical_var(returns, 0.95),
        "var_99": Indicators.historical_var(returns, 0.99),
        "expected_shortfall_95": Indicators.expected_shortfall(returns, 0.95),
    }


def symbol_statistics(trades: Sequence[TradeRecord]) -> Dict[str, Dict[str, Any]]:
    """Per-symbol trades, wins, win rate, PnL and average return."""
    grouped: Dict[str, List[TradeRecord]] = defaultdict(list)
    for t in trades:
        grouped[t.symbol].append(t)
    out: Dict[str, Dict[str, Any]] = {}
    for symbol in sorted(grouped):
        items = grouped[symbol]
        wins = sum(1 for t in items if t.pnl > 0)
        out[symbol] = {
            "trades": len(items),
            "wins": wins,
            "win_rate": wins / len(items),
            "pnl": sum(t.pnl for t in items),
            "avg_return": sum(t.return_pct for t in items) / len(items),
        }
    return out


def save_report(result: Any, out_dir: str = "reports") -> Dict[str, str]:
    """
    Write ``summary.json`` (metrics, symbol stats, transitions) and
    ``trades.json`` for a BacktestResult.

    Returns dict with paths to the generated files.
    """
    out = Path(out_dir)
    with _LOCK:
        out.mkdir(parents=True, exist_ok=True)
        summary_path = out / "summary.json"
        trades_path = out / "trades.json"
        summary = {
            "metrics": result.metrics,
            "symbol_stats": result.symbol_stats,
            "regime_transitions": [t.to_dict() for t in result.regime_transitions],
            "skipped_symbols": result.skipped_symbols,
        }
        summary_path.write_text(json.dumps(summary, indent=2, default=str), encoding="utf-8")
        trades_path.write_text(json.dumps([t.to_dict() for t in result.trades], indent=2, default=str),
                               encoding="utf-8")
    return {"summary": str(summary_path), "trades": str(trades_path)}
