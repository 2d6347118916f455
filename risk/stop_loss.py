"""
stop_loss.py - Adaptive stop-loss and exit rules

Computes a per-position stop threshold from recent volatility and a chain of
named adjustments, then decides whether an open position should be closed.

    base      = weighted volatility (5/14/30 bars, 50/30/20) * regime stop factor
    dynamic   = base * performance * holding duration * ml blend
    floor     = tiered floor (poor / normal / excellent symbol)
    var floor = historical 95% VaR of daily returns
    threshold = min(max_threshold, max(floor, dynamic, var floor))

The threshold is non-decreasing in holding duration: the holding stage uses
increasing breakpoints and the ml blend's time component grows with holding
time, while every other input is independent of it.

Exit reasons, checked in order: stop_loss, take_profit, profit_protection,
max_holding. During the minimum holding period only a loss beyond
``early_exit_loss`` may close the position.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from config.engine_defaults import section
from core.state import MarketRegime, PerformanceRecord
from data.candles import Indicators
from risk.adjustments import AdjustmentPipeline, AdjustmentTrace
from risk.regime_capital_allocator import RegimeCapitalAllocator, RegimeRiskProfile
from strategies.base import OpportunityOrigin

logger = logging.getLogger(__name__)


class ExitReason(Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    PROFIT_PROTECTION = "profit_protection"
    MAX_HOLDING = "max_holding"
    ROTATION = "rotation"
    END_OF_BACKTEST = "end_of_backtest"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class PositionSnapshot:
    """Read-only view of an open position."""
    symbol: str
    entry_price: float
    peak_price: float
    holding_bars: int
    origin: OpportunityOrigin

    def pnl_pct(self, price: float) -> float:
        return price / self.entry_price - 1.0

    @property
    def peak_gain(self) -> float:
        return self.peak_price / self.entry_price - 1.0


@dataclass
class StopThreshold:
    value: float
    base: float
    dynamic: float
    floor: float
    var_floor: float
    trace: Optional[AdjustmentTrace] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "base": self.base,
            "dynamic": self.dynamic,
            "floor": self.floor,
            "var_floor": self.var_floor,
        }


@dataclass
class ExitDecision:
    should_exit: bool
    reason: Optional[ExitReason] = None
    pnl_pct: float = 0.0
    threshold: Optional[StopThreshold] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        if not self.should_exit:
            return f"ExitDecision(hold, pnl={self.pnl_pct:.2%})"
        return f"ExitDecision({self.reason.value}, pnl={self.pnl_pct:.2%})"


@dataclass(frozen=True)
class _StopContext:
    regime: MarketRegime
    record: PerformanceRecord
    holding_bars: int
    pnl_pct: float
    volatility: float


class AdaptiveStopLossEngine:
    """
    Per-position exit rules.

    Args:
        params: overrides for the ``stop_loss`` section of engine defaults
        allocator: regime profile source
        take_profit: fractional gain that closes a position
        max_holding_periods: holding limit in bars before the regime factor
        min_holding_periods: bars a position is held before non-emergency exits
        bars_per_day: bars in one day, used for the daily VaR floor
    """

    def __init__(
        self,
        params: Optional[Dict] = None,
        allocator: Optional[RegimeCapitalAllocator] = None,
        take_profit: float = 0.10,
        max_holding_periods: int = 168,
        min_holding_periods: int = 3,
        bars_per_day: int = 24,
    ):
        self.params = section("stop_loss", params)
        self.allocator = allocator or RegimeCapitalAllocator()
        self.take_profit = float(take_profit)
        self.max_holding_periods = int(max_holding_periods)
        self.min_holding_periods = int(min_holding_periods)
        self.bars_per_day = max(1, int(bars_per_day))
        self.pipeline = self._build_pipeline()

    # ------------------------------------------------------------------
    # Threshold
    # ------------------------------------------------------------------
    def weighted_volatility(self, prices: np.ndarray) -> float:
        total, weight_sum = 0.0, 0.0
        for window, weight in zip(self.params["volatility_windows"], self.params["volatility_weights"]):
            if len(prices) < 3:
                break
            total += weight * Indicators.volatility(prices, int(window))
            weight_sum += weight
        return total / weight_sum if weight_sum > 0 else 0.0

    def holding_factor(self, holding_bars: int) -> float:
        factor = 1.0
        for bars, value in self.params["holding_breakpoints"]:
            if holding_bars >= bars:
                factor = float(value)
        return factor

    def _build_pipeline(self) -> AdjustmentPipeline:
        p = self.params

        def performance(ctx: _StopContext) -> float:
            rec = ctx.record
            if rec.trades < int(p["min_trades"]):
                return float(p["new_symbol_factor"])
            if rec.win_rate >= float(p["good_win_rate"]):
                return float(p["good_factor"])
            if rec.win_rate < float(p["poor_win_rate"]):
                return float(p["poor_factor"])
            return 1.0

        def ml_blend(ctx: _StopContext) -> float:
            w_regime, w_vol, w_time = p["ml_weights"]
            if ctx.regime.is_bear:
                regime_score = 1.0
            elif ctx.regime.is_bull:
                regime_score = 0.25
            else:
                regime_score = 0.5
            vol_score = min(1.0, ctx.volatility / float(p["ml_volatility_cap"]))
            time_score = min(1.0, ctx.holding_bars / float(p["ml_time_horizon"]))
            loss_score = min(1.0, max(0.0, -ctx.pnl_pct) / float(p["ml_loss_scale"]))
            time_pnl = 0.5 * time_score + 0.5 * loss_score
            blend = w_regime * regime_score + w_vol * vol_score + w_time * time_pnl
            return float(p["ml_base"]) + float(p["ml_span"]) * blend

        return (
            AdjustmentPipeline("StopLoss")
            .add("performance", performance)
            .add("holding", lambda ctx: self.holding_factor(ctx.holding_bars))
            .add("ml_blend", ml_blend)
        )

    def floor(self, record: PerformanceRecord) -> float:
        p = self.params
        floors = p["floors"]
        if record.trades >= int(p["excellent_min_trades"]) and record.win_rate >= float(p["good_win_rate"]):
            return float(floors["excellent"])
        if record.trades >= int(p["poor_min_trades"]) and record.win_rate < float(p["poor_win_rate"]):
            return float(floors["poor"])
        return float(floors["normal"])

    def var_floor(self, prices: np.ndarray) -> float:
        daily = np.asarray(prices, dtype=float)[::-1][::self.bars_per_day][::-1]
        returns = Indicators.pct_returns(daily)
        return Indicators.historical_var(
            returns, float(self.params["var_confidence"]), int(self.params["min_var_points"])
        )

    def threshold(
        self,
        prices: np.ndarray,
        regime: MarketRegime,
        record: Optional[PerformanceRecord] = None,
        holding_bars: int = 0,
        pnl_pct: float = 0.0,
    ) -> StopThreshold:
        """Stop distance as a positive fraction of the entry price."""
        prices = np.asarray(prices, dtype=float)
        record = record or PerformanceRecord()
        profile: RegimeRiskProfile = self.allocator.profile(regime)
        volatility = self.weighted_volatility(prices)
        base = volatility * profile.stop_factor
        ctx = _StopContext(regime=regime, record=record, holding_bars=holding_bars,
                           pnl_pct=pnl_pct, volatility=volatility)
        trace = self.pipeline.run(base, ctx)
        floor = self.floor(record)
        var = self.var_floor(prices)
        value = min(float(self.params["max_threshold"]), max(floor, trace.final, var))
        return StopThreshold(value=value, base=base, dynamic=trace.final, floor=floor,
                             var_floor=var, trace=trace)

    def max_holding(self, regime: MarketRegime, origin: OpportunityOrigin) -> int:
        limit = self.max_holding_periods * self.allocator.profile(regime).hold_factor
        if origin.is_arbitrage:
            limit *= float(self.params["arbitrage_holding_factor"])
        return max(1, int(round(limit)))

    # ------------------------------------------------------------------
    # Exit decision
    # ------------------------------------------------------------------
    def evaluate(
        self,
        position: PositionSnapshot,
        price: float,
        prices: np.ndarray,
        regime: MarketRegime,
        record: Optional[PerformanceRecord] = None,
    ) -> ExitDecision:
        """Decide whether ``position`` should be closed at ``price``."""
        pnl = position.pnl_pct(price)
        threshold = self.threshold(prices, regime, record, position.holding_bars, pnl)
        meta = {"holding_bars": position.holding_bars, "origin": position.origin.label()}

        def exit_with(reason: ExitReason) -> ExitDecision:
            logger.debug("[StopLoss] %s exit %s pnl=%.4f threshold=%.4f",
                         position.symbol, reason.value, pnl, threshold.value)
            return ExitDecision(True, reason, pnl, threshold, meta)

        if position.holding_bars < self.min_holding_periods:
            if pnl < -float(self.params["early_exit_loss"]):
                return exit_with(ExitReason.STOP_LOSS)
            return ExitDecision(False, None, pnl, threshold, meta)

        if pnl <= -threshold.value:
            return exit_with(ExitReason.STOP_LOSS)
        if pnl >= self.take_profit:
            return exit_with(ExitReason.TAKE_PROFIT)
        peak_gain = position.peak_gain
        if (peak_gain > float(self.params["profit_protection_trigger"])
                and pnl < float(self.params["profit_protection_keep"]) * peak_gain):
            return exit_with(ExitReason.PROFIT_PROTECTION)
        if position.holding_bars >= self.max_holding(regime, position.origin):
            return exit_with(ExitReason.MAX_HOLDING)
        return ExitDecision(False, None, pnl, threshold, meta)
