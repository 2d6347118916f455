"""
portfolio_risk_manager.py - Portfolio risk-budget gates

Hard gates a proposed trade must pass before its size is used:

1. per-symbol risk concentration (capital at risk in the symbol / equity)
2. total risk exposure (capital at risk across the portfolio / equity)
3. correlation risk (new exposure plus correlation-weighted exposure of
   existing positions / equity)
4. regime drawdown budget, adjusted by the symbol's own Sharpe and win rate

Capital at risk for a position is its notional times its stop distance.
A failed gate is a normal outcome, reported as RiskBudgetCheck(approved=False).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from config.engine_defaults import section
from core.state import MarketRegime, PerformanceRecord
from data.candles import Indicators
from risk.regime_capital_allocator import RegimeCapitalAllocator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionExposure:
    """Open position as seen by the risk gates."""
    symbol: str
    notional: float
    stop_distance: float

    @property
    def capital_at_risk(self) -> float:
        return self.notional * self.stop_distance


@dataclass
class RiskBudgetCheck:
    approved: bool
    reason: Optional[str] = None
    symbol_risk: float = 0.0
    total_risk: float = 0.0
    correlation_risk: float = 0.0
    drawdown: float = 0.0
    drawdown_budget: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "reason": self.reason,
            "symbol_risk": self.symbol_risk,
            "total_risk": self.total_risk,
            "correlation_risk": self.correlation_risk,
            "drawdown": self.drawdown,
            "drawdown_budget": self.drawdown_budget,
        }


class PortfolioRiskManager:
    """
    Evaluates risk-budget gates for a proposed position.

    Args:
        params: overrides for the ``sizing`` section of engine defaults
        allocator: regime profile source
        correlation_lookback: bars used for pairwise correlation
    """

    def __init__(
        self,
        params: Optional[Dict] = None,
        allocator: Optional[RegimeCapitalAllocator] = None,
        correlation_lookback: int = 100,
    ):
        self.params = section("sizing", params)
        self.allocator = allocator or RegimeCapitalAllocator()
        self.correlation_lookback = correlation_lookback
        self.max_symbol_risk = float(self.params["max_symbol_risk"])
        self.max_total_risk = float(self.params["max_total_risk"])
        self.max_correlation_risk = float(self.params["max_correlation_risk"])
        self._correlation_cache: Dict[Tuple[str, str, int], float] = {}

    def get_correlation(self, symbol_a: str, symbol_b: str, prices: Mapping[str, np.ndarray]) -> float:
        if symbol_a == symbol_b:
            return 1.0
        a, b = sorted((symbol_a, symbol_b))
        pa, pb = prices.get(a), prices.get(b)
        if pa is None or pb is None:
            return 0.0
        n = min(len(pa), len(pb), self.correlation_lookback + 1)
        key = (a, b, min(len(pa), len(pb)))
        cached = self._correlation_cache.get(key)
        if cached is None:
            cached = Indicators.correlation(np.asarray(pa)[-n:], np.asarray(pb)[-n:])
            if len(self._correlation_cache) > 10_000:
                self._correlation_cache.clear()
            self._correlation_cache[key] = cached
        return cached

    def drawdown_budget(self, regime: MarketRegime, record: Optional[PerformanceRecord] = None) -> float:
        p = self.params
        budget = self.allocator.profile(regime).drawdown_budget
        if record is not None and record.trades >= 3:
            if record.sharpe >= float(p["good_sharpe"]) and record.win_rate >= float(p["good_win_rate"]):
                budget *= float(p["budget_boost"])
            elif record.win_rate < float(p["poor_win_rate"]) or record.sharpe < 0:
                budget *= float(p["budget_cut"])
        return float(min(0.60, max(0.10, budget)))

    def check(
        self,
        symbol: str,
        notional: float,
        stop_distance: float,
        equity: float,
        positions: Mapping[str, PositionExposure],
        prices: Mapping[str, np.ndarray],
        regime: MarketRegime,
        drawdown: float,
        record: Optional[PerformanceRecord] = None,
        is_arbitrage: bool = False,
    ) -> RiskBudgetCheck:
        """Run every gate; the first failure rejects the trade."""
        if equity <= 0:
            return RiskBudgetCheck(approved=False, reason="non_positive_equity")

        existing = positions.get(symbol)
        existing_risk = existing.capital_at_risk if existing else 0.0
        new_risk = notional * stop_distance

        symbol_risk = (existing_risk + new_risk) / equity
        total_risk = (sum(p.capital_at_risk for p in positions.values()) + new_risk) / equity
        correlated = notional + sum(
            abs(self.get_correlation(symbol, other, prices)) * pos.notional
            for other, pos in positions.items()
        )
        correlation_risk = correlated / equity
        budget = self.drawdown_budget(regime, record)

        result = RiskBudgetCheck(
            approved=True,
            symbol_risk=symbol_risk,
            total_risk=total_risk,
            correlation_risk=correlation_risk,
            drawdown=drawdown,
            drawdown_budget=budget,
        )
        # small tolerance so an exact-limit allocation is not rejected on rounding
        eps = 1e-9
        if symbol_risk > self.max_symbol_risk + eps:
            result.approved, result.reason = False, "symbol_risk_concentration"
        elif total_risk > self.max_total_risk + eps:
            result.approved, result.reason = False, "total_risk_exposure"
        elif correlation_risk > self.max_correlation_risk + eps:
            result.approved, result.reason = False, "correlation_risk"
        elif not is_arbitrage and drawdown > budget:
            result.approved, result.reason = False, "drawdown_budget"

        if not result.approved:
            logger.debug(
                "[PortfolioRisk] %s rejected: %s (symbol=%.3f total=%.3f corr=%.3f dd=%.3f/%.3f)",
                symbol, result.reason, symbol_risk, total_risk, correlation_risk, drawdown, budget,
            )
        return result
