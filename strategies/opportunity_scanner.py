"""
opportunity_scanner.py - Per-step opportunity scoring and selection

For every active symbol without an open position the scanner scores a
signal-driven candidate from its feature vector, collects arbitrage
candidates from the three detectors, adjusts everything with the
timeframe coordinator's composite signal, ranks by risk-adjusted score and
returns at most one opportunity that clears a dynamic threshold.

Scoring:
    base  = weighted(trend, momentum, rsi reversal, volatility, volume, consistency)
    score = clamp(base * regime multiplier * timeframe multiplier, 0, 1)
    risk_adjusted = score / (1 + 10 * volatility)     (signal candidates)
    risk_adjusted = score * risk-tier multiplier      (arbitrage candidates)

Selection:
- frequency throttle: nothing is returned after too many recent trades
- arbitrage preference when the top of the ranking is dominated by
  high-quality arbitrage, and more aggressively in capital recovery
- dynamic threshold from a regime x volatility x win-rate table, scaled by
  the symbol's own win rate and the candidate's quality

The simulation holds long positions only, so SELL candidates are scored
(for diagnostics) but never selected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Set, Tuple

import numpy as np

from ai.ml_edge_engine import MLSignal
from config.engine_defaults import section
from core.state import MarketRegime, PerformanceBook, PerformanceRecord
from strategies.arbitrage import ArbitrageDetector
from strategies.base import ArbitrageSignal, Opportunity, OpportunityOrigin, RiskTier, Signal
from strategies.features import FeatureVector, build_features
from strategies.timeframe_coordinator import CoordinatedSignal

logger = logging.getLogger(__name__)

_TIER_FACTORS = {RiskTier.LOW: 1.0, RiskTier.MEDIUM: 0.9, RiskTier.HIGH: 0.75}


def _clip(x: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return float(min(hi, max(lo, x)))


@dataclass
class ScanContext:
    """Inputs the scanner needs for one step."""
    timestamp: datetime
    regime: MarketRegime
    prices: Mapping[str, np.ndarray]
    volumes: Mapping[str, np.ndarray]
    open_positions: Set[str] = field(default_factory=set)
    features: Mapping[str, FeatureVector] = field(default_factory=dict)
    coordinated: Mapping[str, CoordinatedSignal] = field(default_factory=dict)
    predictions: Mapping[str, Optional[MLSignal]] = field(default_factory=dict)
    performance: Optional[PerformanceBook] = None
    recent_trades: int = 0
    drawdown: float = 0.0


@dataclass
class ScanResult:
    candidates: List[Opportunity] = field(default_factory=list)
    selected: Optional[Opportunity] = None
    threshold: Optional[float] = None
    rejections: Dict[str, str] = field(default_factory=dict)
    throttled: bool = False


class OpportunityScanner:
    """
    Scores, ranks and selects trade opportunities.

    Args:
        params: overrides for the ``scanner`` section of engine defaults
        detector: arbitrage detector (a default one is created if omitted)
    """

    def __init__(self, params: Optional[Dict] = None, detector: Optional[ArbitrageDetector] = None):
        self.params = section("scanner", params)
        self.weights = dict(self.params["weights"])
        self.detector = detector or ArbitrageDetector()

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def score_components(self, fv: FeatureVector) -> Dict[str, float]:
        if fv.rsi < 30.0:
            rsi_reversal = 1.0
        elif fv.rsi > 70.0:
            rsi_reversal = 0.0
        else:
            rsi_reversal = 0.5 + (50.0 - fv.rsi) / 80.0

        directions = [np.sign(fv.trend), np.sign(fv.momentum), np.sign(fv.range_position - 0.5)]
        nonzero = [d for d in directions if d != 0]
        if nonzero:
            majority = 1.0 if sum(nonzero) >= 0 else -1.0
            consistency = sum(1 for d in directions if d == majority) / len(directions)
        else:
            consistency = 0.0

        return {
            "trend": _clip(0.5 + fv.trend * 10.0),
            "momentum": _clip(0.5 + fv.momentum * 20.0),
            "rsi_reversal": _clip(rsi_reversal),
            "volatility": 1.0 - _clip(fv.volatility / 0.06),
            "volume": _clip(fv.volume_ratio / 2.0),
            "consistency": consistency,
        }

    def base_score(self, fv: FeatureVector) -> float:
        components = self.score_components(fv)
        total_weight = sum(self.weights.values())
        return _clip(sum(self.weights[k] * v for k, v in components.items()) / total_weight)

    def regime_multiplier(self, regime: MarketRegime) -> float:
        regime = regime.effective()
        if regime.is_bear:
            return float(self.params["bear_multiplier"])
        if regime.is_bull:
            return float(self.params["bull_multiplier"])
        return 1.0

    @staticmethod
    def _quality(coordinated: Optional[CoordinatedSignal], prediction: Optional[MLSignal]) -> float:
        coord_quality = coordinated.quality if coordinated is not None and not coordinated.is_empty else 0.5
        if prediction is None:
            return _clip(coord_quality)
        return _clip(0.5 * coord_quality + 0.5 * prediction.confidence)

    def signal_candidate(
        self,
        symbol: str,
        fv: FeatureVector,
        regime: MarketRegime,
        coordinated: Optional[CoordinatedSignal] = None,
        prediction: Optional[MLSignal] = None,
    ) -> Tuple[Optional[Opportunity], Optional[str]]:
        """Build the signal-driven candidate; returns (candidate, rejection reason)."""
        base = self.base_score(fv)
        action = Signal.BUY if fv.trend >= 0 else Signal.SELL
        score = base * self.regime_multiplier(regime)
        if coordinated is not None:
            if coordinated.vetoes(action, regime):
                return None, (f"timeframe veto (consistency "
                              f"{coordinated.directional_consistency(action):.2f})")
            score *= coordinated.score_multiplier(action)
        score = _clip(score)
        risk_adjusted = score / (1.0 + 10.0 * fv.volatility)
        candidate = Opportunity(
            symbol=symbol,
            action=action,
            confidence=score,
            base_score=base,
            score=score,
            risk_adjusted_score=risk_adjusted,
            quality=self._quality(coordinated, prediction),
            price=fv.price,
            origin=OpportunityOrigin.signal(),
            volatility=fv.volatility,
            metadata={"features": fv.to_dict()},
        )
        return candidate, None

    def arbitrage_candidate(
        self,
        signal: ArbitrageSignal,
        fv: FeatureVector,
        coordinated: Optional[CoordinatedSignal] = None,
    ) -> Opportunity:
        base = _clip(0.6 * signal.confidence + 0.4 * min(1.0, signal.expected_return / 0.03))
        score = base
        if coordinated is not None:
            score *= coordinated.score_multiplier(signal.direction)
        score = _clip(score)
        return Opportunity(
            symbol=signal.primary,
            action=signal.direction,
            confidence=signal.confidence,
            base_score=base,
            score=score,
            risk_adjusted_score=score * _TIER_FACTORS[signal.risk_tier],
            quality=signal.confidence,
            price=fv.price,
            origin=OpportunityOrigin.from_arbitrage(signal),
            volatility=fv.volatility,
            metadata={"arbitrage": signal.to_dict()},
        )

    # ------------------------------------------------------------------
    # Thresholds and selection
    # ------------------------------------------------------------------
    def dynamic_threshold(
        self,
        candidate: Opportunity,
        regime: MarketRegime,
        portfolio: Optional[PerformanceRecord] = None,
        symbol_record: Optional[PerformanceRecord] = None,
    ) -> float:
        p = self.params
        if candidate.volatility < float(p["low_vol_bucket"]):
            vol_bucket = "low"
        elif candidate.volatility < float(p["high_vol_bucket"]):
            vol_bucket = "normal"
        else:
            vol_bucket = "high"

        win_bucket = "mid"
        if portfolio is not None and portfolio.trades >= int(p["min_portfolio_trades"]):
            if portfolio.win_rate < float(p["low_win_rate_bucket"]):
                win_bucket = "low"
            elif portfolio.win_rate > float(p["high_win_rate_bucket"]):
                win_bucket = "high"

        threshold = float(p["threshold_table"][regime.group()][vol_bucket][win_bucket])

        if symbol_record is not None and symbol_record.trades >= int(p["min_symbol_trades"]):
            if symbol_record.win_rate < float(p["poor_symbol_win_rate"]):
                threshold *= float(p["poor_symbol_penalty"])
            elif symbol_record.win_rate > float(p["proven_symbol_win_rate"]):
                threshold *= float(p["proven_symbol_boost"])

        threshold *= 1.1 - 0.2 * candidate.quality
        return _clip(threshold, float(p["min_threshold"]), float(p["max_threshold"]))

    def rank(self, candidates: List[Opportunity], drawdown: float = 0.0) -> List[Opportunity]:
        """Order candidates by risk-adjusted score, then apply arbitrage preference."""
        p = self.params
        ranked = sorted(candidates, key=lambda c: c.risk_adjusted_score, reverse=True)
        if len(ranked) < 2:
            return ranked

        quality_floor = float(p["arbitrage_quality"])
        top = ranked[: int(p["top_n"])]
        strong_arbs = [c for c in top if c.is_arbitrage and c.quality > quality_floor]

        if drawdown > float(p["recovery_drawdown"]):
            tolerance = float(p["recovery_tolerance"])
            pool = [c for c in ranked if c.is_arbitrage]
        elif len(strong_arbs) * 2 > len(top):
            tolerance = float(p["arbitrage_tolerance"])
            pool = [c for c in ranked if c.is_arbitrage and c.quality > quality_floor]
        else:
            return ranked

        if not pool or pool[0] is ranked[0]:
            return ranked
        preferred = pool[0]
        if preferred.risk_adjusted_score >= (1.0 - tolerance) * ranked[0].risk_adjusted_score:
            ranked.remove(preferred)
            ranked.insert(0, preferred)
            logger.debug("[OpportunityScanner] preferring arbitrage %s over %s", preferred.symbol, ranked[1].symbol)
        return ranked

    def scan(self, ctx: ScanContext) -> ScanResult:
        """Score every eligible symbol and select at most one opportunity."""
        result = ScanResult()
        features: Dict[str, FeatureVector] = {}
        for symbol, prices in ctx.prices.items():
            if len(prices) == 0:
                continue
            fv = ctx.features.get(symbol)
            if fv is None:
                fv = build_features(prices, ctx.volumes.get(symbol, np.zeros(len(prices))), self.params)
            features[symbol] = fv

        for symbol, fv in features.items():
            if symbol in ctx.open_positions:
                continue
            candidate, reason = self.signal_candidate(
                symbol, fv, ctx.regime, ctx.coordinated.get(symbol), ctx.predictions.get(symbol),
            )
            if candidate is None:
                result.rejections[symbol] = reason or "rejected"
            else:
                result.candidates.append(candidate)

        for signal in self.detector.detect_all(ctx.prices, ctx.volumes, ctx.regime):
            if signal.primary in ctx.open_positions or signal.primary not in features:
                continue
            result.candidates.append(
                self.arbitrage_candidate(signal, features[signal.primary], ctx.coordinated.get(signal.primary))
            )

        if ctx.recent_trades >= int(self.params["max_recent_trades"]):
            result.throttled = True
            logger.debug("[OpportunityScanner] throttled: %d recent trades", ctx.recent_trades)
            return result

        executable = [c for c in result.candidates if c.action is Signal.BUY]
        portfolio = ctx.performance.portfolio() if ctx.performance else None
        for candidate in self.rank(executable, ctx.drawdown):
            symbol_record = ctx.performance.get(candidate.symbol) if ctx.performance else None
            threshold = self.dynamic_threshold(candidate, ctx.regime, portfolio, symbol_record)
            if candidate.score >= threshold:
                result.selected = candidate
                result.threshold = threshold
                break
            result.rejections.setdefault(
                candidate.symbol, f"score {candidate.score:.3f} below threshold {threshold:.3f}"
            )
        return result
