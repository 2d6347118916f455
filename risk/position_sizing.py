"""
position_sizing.py - Regime-aware position size calculator

Converts a selected opportunity into a quantity. Does not generate trading
signals, only determines sizing for existing ones.

Sizing flow:
1. circuit-breaker decision (passed in, computed by DrawdownCircuitBreaker)
2. Kelly fraction of equity from the symbol's (or portfolio's) record
3. named multiplier stages: regime, risk tier, volatility, liquidity,
   performance, trade-frequency decay, opportunity confidence
4. portfolio constraints: max asset weight, max trade fraction of cash,
   diversification entropy penalty, circuit-breaker allowance, minimum notional
5. risk-budget gates from PortfolioRiskManager

size() never mutates any of its inputs; calling it twice with the same
arguments returns the same result.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import numpy as np

from config.engine_defaults import section
from core.state import MarketRegime, PerformanceRecord
from risk.adjustments import AdjustmentPipeline, AdjustmentTrace
from risk.drawdown_guard import VetoDecision
from risk.portfolio_risk_manager import PortfolioRiskManager, PositionExposure, RiskBudgetCheck
from risk.regime_capital_allocator import RegimeCapitalAllocator, RegimeRiskProfile
from strategies.base import Opportunity, RiskTier, Signal

logger = logging.getLogger(__name__)


@dataclass
class SizingResult:
    """
    Result of position sizing calculation.

    Attributes:
        approved: Whether position is approved for trading
        quantity: Units to buy
        notional: quantity * price
        kelly_fraction: Kelly fraction the size started from
        stop_distance: Estimated stop distance used for risk budgeting
        risk_amount: notional * stop_distance
        risk_percentage: risk_amount / equity
        rejection_reason: Reason if position was rejected
        trace: Multiplier pipeline trace
        risk_check: Risk-budget gate outcome
        metadata: Additional calculation details
    """
    approved: bool
    quantity: float = 0.0
    notional: float = 0.0
    kelly_fraction: float = 0.0
    stop_distance: float = 0.0
    risk_amount: float = 0.0
    risk_percentage: float = 0.0
    rejection_reason: Optional[str] = None
    trace: Optional[AdjustmentTrace] = None
    risk_check: Optional[RiskBudgetCheck] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def rejected(cls, reason: str, **metadata) -> "SizingResult":
        return cls(approved=False, rejection_reason=reason, metadata=metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'approved': self.approved,
            'quantity': self.quantity,
            'notional': self.notional,
            'kelly_fraction': self.kelly_fraction,
            'stop_distance': self.stop_distance,
            'risk_amount': self.risk_amount,
            'risk_percentage': self.risk_percentage,
            'rejection_reason': self.rejection_reason,
            'trace': self.trace.to_dict() if self.trace else None,
            'risk_check': self.risk_check.to_dict() if self.risk_check else None,
            'metadata': self.metadata,
        }

    def __repr__(self) -> str:
        if not self.approved:
            return f"SizingResult(approved=False, reason={self.rejection_reason})"
        return (f"SizingResult(approved=True, qty={self.quantity:.6f}, "
                f"notional=${self.notional:.2f}, risk=${self.risk_amount:.2f})")


@dataclass(frozen=True)
class SizingContext:
    """Everything the multiplier stages read."""
    opportunity: Opportunity
    profile: RegimeRiskProfile
    record: PerformanceRecord
    base_notional: float
    dollar_volume: float
    recent_symbol_trades: int


class RiskAndPositionSizer:
    """
    Position size calculator with regime-aware multipliers and risk gates.

    Args:
        params: overrides for the ``sizing`` section of engine defaults
        allocator: regime profile source (shared with the breaker and stop-loss)
        risk_manager: risk-budget gates
        commission: fractional commission reserved out of cash
    """

    def __init__(
        self,
        params: Optional[Dict] = None,
        allocator: Optional[RegimeCapitalAllocator] = None,
        risk_manager: Optional[PortfolioRiskManager] = None,
        commission: float = 0.0,
    ):
        self.params = section("sizing", params)
        self.allocator = allocator or RegimeCapitalAllocator()
        self.risk_manager = risk_manager or PortfolioRiskManager(params, self.allocator)
        self.commission = float(commission)
        self.pipeline = self._build_pipeline()

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------
    def kelly_fraction(self, record: PerformanceRecord) -> float:
        p = self.params
        if record.trades < int(p["min_kelly_trades"]) or record.wins == 0 or record.losses == 0:
            return float(p["default_kelly"])
        b = record.avg_win / record.avg_loss if record.avg_loss > 0 else 0.0
        if b <= 0:
            return float(p["min_kelly"])
        win = record.win_rate
        f = (win * b - (1.0 - win)) / b
        return float(min(float(p["max_kelly"]), max(float(p["min_kelly"]), f)))

    def risk_tier(self, opportunity: Opportunity) -> RiskTier:
        if opportunity.origin.arbitrage is not None:
            return opportunity.origin.arbitrage.risk_tier
        tiers = section("arbitrage")["risk_tier_volatility"]
        if opportunity.volatility < tiers["low"]:
            return RiskTier.LOW
        if opportunity.volatility < tiers["medium"]:
            return RiskTier.MEDIUM
        return RiskTier.HIGH

    def stop_distance(self, opportunity: Opportunity, profile: RegimeRiskProfile) -> float:
        p = self.params
        if opportunity.volatility <= 0:
            return float(p["default_stop_distance"])
        return max(float(p["min_stop_distance"]), opportunity.volatility * profile.stop_factor)

    def _build_pipeline(self) -> AdjustmentPipeline:
        p = self.params
        tier_multipliers = {RiskTier(k): float(v) for k, v in p["risk_tier_multipliers"].items()}

        def volatility(ctx: SizingContext) -> float:
            vol = ctx.opportunity.volatility
            hi = float(p["max_volatility_multiplier"])
            if vol <= 0:
                return hi
            return min(hi, max(float(p["min_volatility_multiplier"]), float(p["reference_volatility"]) / vol))

        def liquidity(ctx: SizingContext) -> float:
            if ctx.dollar_volume <= 0 or ctx.base_notional <= 0:
                return 1.0
            capacity = float(p["max_participation"]) * ctx.dollar_volume
            if ctx.base_notional <= capacity:
                return 1.0
            return max(float(p["min_liquidity_multiplier"]), capacity / ctx.base_notional)

        def performance(ctx: SizingContext) -> float:
            rec = ctx.record
            if rec.trades < int(p["min_kelly_trades"]):
                return 1.0
            if rec.win_rate >= float(p["good_win_rate"]):
                return float(p["good_performance_multiplier"])
            if rec.win_rate < float(p["poor_win_rate"]):
                return float(p["poor_performance_multiplier"])
            return 1.0

        def frequency(ctx: SizingContext) -> float:
            decay = 1.0 - float(p["frequency_decay_per_trade"]) * ctx.recent_symbol_trades
            return max(float(p["min_frequency_multiplier"]), decay)

        return (
            AdjustmentPipeline("PositionSizing")
            .add("regime", lambda ctx: ctx.profile.position_multiplier)
            .add("risk_tier", lambda ctx: tier_multipliers[self.risk_tier(ctx.opportunity)])
            .add("volatility", volatility)
            .add("liquidity", liquidity)
            .add("performance", performance)
            .add("frequency", frequency)
            .add("confidence", lambda ctx: 0.5 + 0.5 * ctx.opportunity.confidence)
        )

    def _diversification_factor(self, symbol: str, notional: float,
                                positions: Mapping[str, PositionExposure]) -> float:
        weights = {s: pos.notional for s, pos in positions.items()}
        weights[symbol] = weights.get(symbol, 0.0) + notional
        values = np.array([w for w in weights.values() if w > 0], dtype=float)
        if len(values) < 2:
            return 1.0
        probs = values / values.sum()
        entropy = float(-(probs * np.log(probs)).sum()) / math.log(len(values))
        if entropy < float(self.params["entropy_floor"]):
            return float(self.params["diversification_penalty"])
        return 1.0

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------
    def size(
        self,
        opportunity: Opportunity,
        equity: float,
        cash: float,
        regime: MarketRegime,
        veto: VetoDecision,
        positions: Mapping[str, PositionExposure],
        prices: Mapping[str, np.ndarray],
        volumes: Optional[Mapping[str, np.ndarray]] = None,
        symbol_record: Optional[PerformanceRecord] = None,
        portfolio_record: Optional[PerformanceRecord] = None,
        recent_symbol_trades: int = 0,
    ) -> SizingResult:
        """
        Size ``opportunity`` against the current portfolio.

        Args:
            opportunity: Selected opportunity
            equity: Current portfolio equity
            cash: Free cash
            regime: Current market regime
            veto: Circuit-breaker decision for this opportunity
            positions: Open positions by symbol
            prices: Price histories up to the current bar
            volumes: Volume histories up to the current bar
            symbol_record: Closed-trade record of the symbol
            portfolio_record: Closed-trade record of the whole portfolio
            recent_symbol_trades: Trades in this symbol inside the recent window

        Returns:
            SizingResult, rejected results carry ``rejection_reason``
        """
        symbol = opportunity.symbol
        if not veto.approved:
            reason = veto.veto_reason.value if veto.veto_reason else "circuit_breaker"
            return SizingResult.rejected(reason, drawdown=veto.current_metrics.drawdown if veto.current_metrics else None)
        if opportunity.action is not Signal.BUY:
            return SizingResult.rejected("unsupported_action")
        if opportunity.price <= 0 or equity <= 0 or cash <= 0:
            return SizingResult.rejected("no_capital")

        symbol_record = symbol_record or PerformanceRecord()
        portfolio_record = portfolio_record or PerformanceRecord()
        kelly_source = symbol_record if symbol_record.trades >= int(self.params["min_kelly_trades"]) else portfolio_record
        kelly = self.kelly_fraction(kelly_source)
        profile = self.allocator.profile(regime)

        dollar_volume = 0.0
        if volumes is not None and symbol in volumes and symbol in prices:
            n = min(len(prices[symbol]), len(volumes[symbol]), 20)
            if n > 0:
                dollar_volume = float(np.mean(np.asarray(prices[symbol])[-n:] * np.asarray(volumes[symbol])[-n:]))

        base_notional = equity * kelly
        ctx = SizingContext(
            opportunity=opportunity,
            profile=profile,
            record=symbol_record,
            base_notional=base_notional,
            dollar_volume=dollar_volume,
            recent_symbol_trades=recent_symbol_trades,
        )
        trace = self.pipeline.run(base_notional, ctx)
        notional = trace.final

        existing = positions.get(symbol)
        caps = {
            "asset_weight": profile.max_asset_weight * equity - (existing.notional if existing else 0.0),
            "trade_fraction": profile.max_trade_fraction * cash,
            "cash": cash / (1.0 + self.commission),
            "breaker_allowance": veto.loss_allowance * equity,
        }
        binding = min(caps, key=caps.get)
        if caps[binding] < notional:
            notional = max(0.0, caps[binding])
        diversification = self._diversification_factor(symbol, notional, positions)
        notional *= diversification

        metadata = {
            "regime": regime.value,
            "base_notional": base_notional,
            "binding_cap": binding if caps[binding] <= trace.final else None,
            "diversification": diversification,
            "origin": opportunity.origin.label(),
        }
        if notional < float(self.params["min_notional"]):
            return SizingResult(approved=False, notional=notional, kelly_fraction=kelly,
                                rejection_reason="below_min_notional", trace=trace, metadata=metadata)

        stop = self.stop_distance(opportunity, profile)
        drawdown = veto.current_metrics.drawdown if veto.current_metrics else 0.0
        check = self.risk_manager.check(
            symbol=symbol,
            notional=notional,
            stop_distance=stop,
            equity=equity,
            positions=positions,
            prices=prices,
            regime=regime,
            drawdown=drawdown,
            record=symbol_record,
            is_arbitrage=opportunity.is_arbitrage,
        )
        risk_amount = notional * stop
        result = SizingResult(
            approved=check.approved,
            quantity=notional / opportunity.price if check.approved else 0.0,
            notional=notional,
            kelly_fraction=kelly,
            stop_distance=stop,
            risk_amount=risk_amount,
            risk_percentage=risk_amount / equity,
            rejection_reason=check.reason,
            trace=trace,
            risk_check=check,
            metadata=metadata,
        )
        assert result.quantity >= 0.0
        return result
