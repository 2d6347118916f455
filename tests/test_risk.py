"""
test_risk.py - Tests for the circuit breaker, risk gates, sizing and stop-loss
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from core.config import RiskLimits
from core.state import MarketRegime, PerformanceRecord
from risk.adjustments import AdjustmentPipeline
from risk.drawdown_guard import _MAX_BREACH_HISTORY, DrawdownCircuitBreaker, VetoReason
from risk.portfolio_risk_manager import PortfolioRiskManager, PositionExposure
from risk.position_sizing import RiskAndPositionSizer
from risk.regime_capital_allocator import RegimeCapitalAllocator
from risk.stop_loss import AdaptiveStopLossEngine, ExitReason, PositionSnapshot
from strategies.base import (
    ArbitrageSignal,
    ArbitrageType,
    Opportunity,
    OpportunityOrigin,
    RiskTier,
    Signal,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_opportunity(symbol="A", confidence=0.8, volatility=0.01, arbitrage=False, action=Signal.BUY):
    origin = OpportunityOrigin.signal()
    if arbitrage:
        origin = OpportunityOrigin.from_arbitrage(ArbitrageSignal(
            type=ArbitrageType.CORRELATION, primary=symbol, secondary="B", direction=Signal.BUY,
            expected_return=0.02, confidence=confidence, statistic=0.9, horizon=5, risk_tier=RiskTier.LOW,
        ))
    return Opportunity(
        symbol=symbol, action=action, confidence=confidence, base_score=0.7, score=0.7,
        risk_adjusted_score=0.7, quality=0.6, price=100.0, origin=origin, volatility=volatility,
    )


def record_with(wins, losses, win_pnl=20.0, loss_pnl=-10.0):
    record = PerformanceRecord()
    for _ in range(wins):
        record.record(win_pnl, win_pnl / 1000)
    for _ in range(losses):
        record.record(loss_pnl, loss_pnl / 1000)
    return record


@pytest.fixture
def breaker_at_90pct():
    breaker = DrawdownCircuitBreaker(10_000.0, RiskLimits())
    breaker.update_equity(1_000.0, T0)
    return breaker


class TestAdjustmentPipeline:

    def test_stages_multiply_in_order(self):
        pipeline = AdjustmentPipeline("Test").add("double", lambda ctx: 2.0).add("ctx", lambda ctx: ctx)
        trace = pipeline.run(10.0, 0.5)

        assert trace.final == 10.0
        assert pipeline.stage_names == ["double", "ctx"]
        assert trace.factors() == {"double": 2.0, "ctx": 0.5}

    def test_duplicate_and_invalid_stages(self):
        pipeline = AdjustmentPipeline("Test").add("a", lambda ctx: -1.0)
        with pytest.raises(ValueError):
            pipeline.add("a", lambda ctx: 1.0)
        with pytest.raises(ValueError):
            pipeline.run(1.0, None)


class TestCircuitBreaker:
    """Drawdown ceilings, arbitrage exception and loss allowance."""

    def test_fresh_breaker_approves(self):
        decision = DrawdownCircuitBreaker(10_000.0).check_trade(MarketRegime.SIDEWAYS)
        assert decision.approved
        assert decision.loss_allowance == 1.0

    def test_ninety_percent_drawdown_blocks_signal_trades(self, breaker_at_90pct):
        decision = breaker_at_90pct.check_trade(MarketRegime.SIDEWAYS, is_arbitrage=False)
        assert not decision.approved
        assert decision.veto_reason is VetoReason.TOTAL_DRAWDOWN_EXCEEDED

    def test_ninety_percent_drawdown_allows_arbitrage(self, breaker_at_90pct):
        decision = breaker_at_90pct.check_trade(MarketRegime.SIDEWAYS, is_arbitrage=True, confidence=0.1)
        assert decision.approved
        assert decision.loss_allowance == pytest.approx(0.15)
        assert decision.warnings

    def test_low_confidence_arbitrage_rejected(self, breaker_at_90pct):
        decision = breaker_at_90pct.check_trade(MarketRegime.SIDEWAYS, is_arbitrage=True, confidence=0.05)
        assert decision.veto_reason is VetoReason.ARBITRAGE_CONFIDENCE_TOO_LOW

    def test_arbitrage_ceiling(self):
        breaker = DrawdownCircuitBreaker(10_000.0)
        breaker.update_equity(300.0, T0)
        decision = breaker.check_trade(MarketRegime.SIDEWAYS, is_arbitrage=True, confidence=0.9)
        assert decision.veto_reason is VetoReason.ARBITRAGE_CEILING_EXCEEDED

    def test_ceilings_scale_with_regime(self):
        breaker = DrawdownCircuitBreaker(10_000.0)
        assert breaker.ceiling(MarketRegime.STRONG_BULL) == pytest.approx(0.525)
        assert breaker.ceiling(MarketRegime.STRONG_BEAR) == pytest.approx(0.485)
        assert breaker.arbitrage_ceiling(MarketRegime.STRONG_BULL) == pytest.approx(0.9975)
        assert breaker.arbitrage_ceiling(MarketRegime.UNKNOWN) == pytest.approx(0.95)

    def test_ceiling_follows_risk_limits(self):
        breaker = DrawdownCircuitBreaker(10_000.0, RiskLimits(max_drawdown=0.30))
        assert breaker.ceiling(MarketRegime.SIDEWAYS) == pytest.approx(0.30)
        assert breaker.ceiling(MarketRegime.STRONG_BULL) == pytest.approx(0.315)
        assert set(breaker.params) == {
            "tiers", "arbitrage_ceiling", "max_arbitrage_ceiling", "min_arbitrage_confidence", "warning_fraction",
        }

    def test_loss_allowance_tiers(self):
        breaker = DrawdownCircuitBreaker(10_000.0)
        assert breaker.loss_allowance(0.2) == 1.0
        assert breaker.loss_allowance(0.6) == 0.35
        assert breaker.loss_allowance(0.75) == 0.25
        assert breaker.loss_allowance(0.9) == 0.15

    def test_daily_loss_limit(self):
        breaker = DrawdownCircuitBreaker(10_000.0, RiskLimits(max_drawdown=0.5, max_daily_loss=0.05))
        breaker.update_equity(10_000.0, T0)
        breaker.update_equity(9_400.0, T0 + timedelta(hours=3))
        assert breaker.check_trade(MarketRegime.SIDEWAYS).veto_reason is VetoReason.DAILY_LOSS_EXCEEDED

        breaker.update_equity(9_400.0, T0 + timedelta(days=1))
        assert breaker.check_trade(MarketRegime.SIDEWAYS).approved

    def test_losing_streak_pauses_signal_trades_only(self):
        breaker = DrawdownCircuitBreaker(10_000.0, RiskLimits(max_consecutive_losses=3, loss_cooldown_bars=10))
        for step in range(3):
            breaker.record_trade_result(-10.0, step)

        assert breaker.check_trade(MarketRegime.SIDEWAYS, step=5).veto_reason is VetoReason.CONSECUTIVE_LOSSES_EXCEEDED
        assert breaker.check_trade(MarketRegime.SIDEWAYS, is_arbitrage=True, confidence=0.5, step=5).approved
        assert breaker.check_trade(MarketRegime.SIDEWAYS, step=12).approved

    def test_capital_floor(self):
        breaker = DrawdownCircuitBreaker(10_000.0, RiskLimits(max_drawdown=0.8, min_capital_ratio=0.3))
        breaker.update_equity(2_500.0)
        assert breaker.check_trade(MarketRegime.SIDEWAYS).veto_reason is VetoReason.CAPITAL_FLOOR_BREACHED
        assert len(breaker.get_breach_history()) == 1

    def test_breach_history_is_bounded(self):
        breaker = DrawdownCircuitBreaker(10_000.0, RiskLimits(max_drawdown=0.8, min_capital_ratio=0.3))
        breaker.update_equity(2_500.0)
        for _ in range(_MAX_BREACH_HISTORY + 5):
            breaker.check_trade(MarketRegime.SIDEWAYS)

        assert len(breaker.get_breach_history()) == _MAX_BREACH_HISTORY
        assert len(breaker.get_breach_history(limit=3)) == 3


class TestPortfolioRiskGates:
    """Risk-budget gates."""

    @pytest.fixture
    def manager(self):
        return PortfolioRiskManager()

    @pytest.fixture
    def prices(self):
        rng = np.random.default_rng(1)
        base = 100 * np.cumprod(1 + rng.normal(0, 0.01, 120))
        return {"A": base, "B": base * 2.0, "C": 100 * np.cumprod(1 + rng.normal(0, 0.01, 120))}

    def test_symbol_concentration(self, manager, prices):
        positions = {"A": PositionExposure("A", 15_000.0, 0.1)}
        check = manager.check("A", 2_000.0, 0.1, 10_000.0, positions, prices, MarketRegime.SIDEWAYS, 0.0)
        assert check.reason == "symbol_risk_concentration"
        assert check.symbol_risk == pytest.approx(0.17)

    def test_total_risk(self, manager, prices):
        positions = {"B": PositionExposure("B", 1_000.0, 0.1), "C": PositionExposure("C", 1_000.0, 0.1)}
        manager.max_total_risk = 0.02
        check = manager.check("A", 500.0, 0.02, 10_000.0, positions, prices, MarketRegime.SIDEWAYS, 0.0)
        assert check.reason == "total_risk_exposure"

    def test_correlation_risk(self, manager, prices):
        positions = {"B": PositionExposure("B", 6_000.0, 0.02)}
        check = manager.check("A", 2_000.0, 0.02, 10_000.0, positions, prices, MarketRegime.SIDEWAYS, 0.0)
        assert manager.get_correlation("A", "B", prices) == pytest.approx(1.0)
        assert check.reason == "correlation_risk"
        assert check.correlation_risk == pytest.approx(0.8)

    def test_drawdown_budget_exempts_arbitrage(self, manager, prices):
        args = ("A", 500.0, 0.02, 10_000.0, {}, prices, MarketRegime.STRONG_BEAR, 0.5)
        assert manager.check(*args).reason == "drawdown_budget"
        assert manager.check(*args, is_arbitrage=True).approved

    def test_drawdown_budget_adjusts_by_record(self, manager):
        assert manager.drawdown_budget(MarketRegime.WEAK_BULL) == pytest.approx(0.5)
        assert manager.drawdown_budget(MarketRegime.WEAK_BULL, record_with(0, 4)) == pytest.approx(0.4)
        assert manager.drawdown_budget(MarketRegime.STRONG_BULL, record_with(1, 3)) == pytest.approx(0.48)

    def test_non_positive_equity(self, manager, prices):
        check = manager.check("A", 100.0, 0.02, 0.0, {}, prices, MarketRegime.SIDEWAYS, 0.0)
        assert check.reason == "non_positive_equity"


class TestPositionSizing:
    """Kelly sizing, multiplier stages, caps and gates."""

    @pytest.fixture
    def sizer(self):
        allocator = RegimeCapitalAllocator()
        return RiskAndPositionSizer(allocator=allocator, risk_manager=PortfolioRiskManager(allocator=allocator),
                                    commission=0.001)

    def _size(self, sizer, opportunity, regime=MarketRegime.STRONG_BULL, breaker=None, **kwargs):
        breaker = breaker or DrawdownCircuitBreaker(10_000.0)
        veto = breaker.check_trade(regime, opportunity.is_arbitrage, opportunity.confidence)
        defaults = dict(equity=breaker.current_equity, cash=breaker.current_equity, regime=regime, veto=veto,
                        positions={}, prices={})
        defaults.update(kwargs)
        return sizer.size(opportunity, **defaults)

    def test_kelly_fraction(self, sizer):
        assert sizer.kelly_fraction(PerformanceRecord()) == 0.3
        assert sizer.kelly_fraction(record_with(6, 4)) == pytest.approx(0.4)
        assert sizer.kelly_fraction(record_with(9, 1)) == pytest.approx(0.8)
        assert sizer.kelly_fraction(record_with(1, 9)) == pytest.approx(0.1)

    def test_asset_weight_caps_strong_bull_entry(self, sizer):
        result = self._size(sizer, make_opportunity(confidence=0.8, volatility=0.01))

        assert result.approved
        assert result.trace.final == pytest.approx(3000 * 1.3 * 1.0 * 1.2 * 1.0 * 1.0 * 1.0 * 0.9)
        assert result.notional == pytest.approx(3500.0)
        assert result.quantity == pytest.approx(35.0)
        assert result.stop_distance == pytest.approx(0.025)
        assert result.metadata["binding_cap"] == "asset_weight"
        assert result.risk_check.symbol_risk == pytest.approx(0.00875)

    def test_sizing_is_idempotent(self, sizer):
        opportunity = make_opportunity()
        positions = {"B": PositionExposure("B", 2_000.0, 0.03)}
        prices = {"A": np.linspace(100, 110, 50), "B": np.linspace(50, 40, 50)}
        first = self._size(sizer, opportunity, positions=positions, prices=prices)
        second = self._size(sizer, opportunity, positions=positions, prices=prices)

        assert first.to_dict() == second.to_dict()
        assert positions == {"B": PositionExposure("B", 2_000.0, 0.03)}

    def test_frequency_stage_decays(self, sizer):
        result = self._size(sizer, make_opportunity(), recent_symbol_trades=3)
        assert result.trace.factors()["frequency"] == pytest.approx(0.7)

    def test_liquidity_stage(self, sizer):
        prices = {"A": np.full(30, 100.0)}
        volumes = {"A": np.full(30, 100.0)}
        result = self._size(sizer, make_opportunity(), prices=prices, volumes=volumes)
        # capacity = 10% of 10k dollar volume = 1000 against a 3000 base
        assert result.trace.factors()["liquidity"] == pytest.approx(1000 / 3000)

    def test_ninety_percent_drawdown(self, sizer, breaker_at_90pct):
        signal = self._size(sizer, make_opportunity(), MarketRegime.SIDEWAYS, breaker_at_90pct)
        assert not signal.approved
        assert signal.rejection_reason == "total_drawdown_exceeded"

        arb = self._size(sizer, make_opportunity(confidence=0.5, arbitrage=True), MarketRegime.SIDEWAYS,
                         breaker_at_90pct)
        assert arb.approved
        assert arb.notional == pytest.approx(150.0)
        assert arb.metadata["binding_cap"] == "breaker_allowance"

    def test_sell_is_unsupported(self, sizer):
        result = self._size(sizer, make_opportunity(action=Signal.SELL))
        assert result.rejection_reason == "unsupported_action"

    def test_below_min_notional(self, sizer):
        result = self._size(sizer, make_opportunity(), cash=5.0)
        assert result.rejection_reason == "below_min_notional"

    def test_diversification_penalty(self, sizer):
        positions = {"B": PositionExposure("B", 9_000.0, 0.02)}
        assert sizer._diversification_factor("A", 500.0, positions) == pytest.approx(0.8)
        assert sizer._diversification_factor("A", 9_000.0, positions) == 1.0
        assert sizer._diversification_factor("A", 500.0, {}) == 1.0


class TestStopLoss:
    """Adaptive thresholds and exit ordering."""

    @pytest.fixture
    def engine(self):
        return AdaptiveStopLossEngine(take_profit=0.10, max_holding_periods=168, min_holding_periods=3)

    @pytest.fixture
    def noisy(self):
        rng = np.random.default_rng(3)
        return 100 * np.cumprod(1 + rng.normal(0, 0.01, 200))

    def position(self, holding=10, peak=100.0, arbitrage=False):
        origin = make_opportunity(arbitrage=arbitrage).origin
        return PositionSnapshot("A", 100.0, peak, holding, origin)

    def test_threshold_non_decreasing_in_holding(self, engine, noisy):
        thresholds = [engine.threshold(noisy, MarketRegime.WEAK_BEAR, holding_bars=h) for h in range(0, 200, 6)]
        values = [t.value for t in thresholds]
        assert all(b >= a - 1e-12 for a, b in zip(values, values[1:]))
        assert thresholds[-1].dynamic > thresholds[0].dynamic

    def test_flat_prices_use_floor(self, engine):
        threshold = engine.threshold(np.full(100, 100.0), MarketRegime.SIDEWAYS)
        assert threshold.value == pytest.approx(0.05)
        assert threshold.var_floor == 0.0

    def test_floor_tiers(self, engine):
        assert engine.floor(record_with(5, 0)) == 0.03
        assert engine.floor(record_with(0, 3)) == 0.08
        assert engine.floor(PerformanceRecord()) == 0.05

    def test_threshold_is_capped(self, engine):
        rng = np.random.default_rng(9)
        wild = 100 * np.cumprod(1 + rng.normal(0, 0.2, 200))
        assert engine.threshold(wild, MarketRegime.STRONG_BEAR, holding_bars=150).value <= 0.5

    def test_exit_reasons(self, engine):
        flat = np.full(100, 100.0)
        regime = MarketRegime.SIDEWAYS

        assert engine.evaluate(self.position(), 90.0, flat, regime).reason is ExitReason.STOP_LOSS
        assert engine.evaluate(self.position(), 111.0, flat, regime).reason is ExitReason.TAKE_PROFIT
        assert engine.evaluate(self.position(peak=106.0), 102.0, flat, regime).reason is ExitReason.PROFIT_PROTECTION
        assert engine.evaluate(self.position(holding=168), 100.0, flat, regime).reason is ExitReason.MAX_HOLDING
        assert not engine.evaluate(self.position(holding=100), 101.0, flat, regime).should_exit

    def test_arbitrage_holds_shorter(self, engine):
        origin = self.position(arbitrage=True).origin
        assert engine.max_holding(MarketRegime.SIDEWAYS, origin) == 84
        assert engine.max_holding(MarketRegime.STRONG_BULL, OpportunityOrigin.signal()) == 252

    def test_min_holding_blocks_small_losses(self, engine):
        flat = np.full(100, 100.0)
        assert not engine.evaluate(self.position(holding=1), 96.0, flat, MarketRegime.SIDEWAYS).should_exit
        decision = engine.evaluate(self.position(holding=1), 94.0, flat, MarketRegime.SIDEWAYS)
        assert decision.reason is ExitReason.STOP_LOSS
