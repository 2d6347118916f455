"""
arbitrage.py - Arbitrage opportunity detectors

Three independent detectors:

- statistical: exponentially weighted z-score of price against a
  dual-half-life mean, traded only against the prevailing trend and only
  when similar past deviations mostly converged
- correlation: a strongly correlated pair whose last few bars diverged from
  the correlation-implied move; the laggard is expected to catch up
- temporal reversal: RSI extreme with short momentum already turning and a
  longer trend that contradicts the extreme

In bear regimes every detector requires higher confidence and expected
return. The extra strictness is scaled by the bear-market phase, derived
from how deep and how long the market-wide decline has been.
"""

from __future__ import annotations

import itertools
import logging
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from config.engine_defaults import section
from core.state import MarketRegime
from data.candles import Indicators
from strategies.base import ArbitrageSignal, ArbitrageType, RiskTier, Signal

logger = logging.getLogger(__name__)


class BearPhase(Enum):
    NONE = "none"
    EARLY = "early"
    MID = "mid"
    LATE = "late"
    DEEP = "deep"
    RECOVERY = "recovery"

    def __str__(self):
        return self.value


def detect_bear_phase(histories: Mapping[str, np.ndarray], lookback: int = 100) -> BearPhase:
    """
    Classify the decline phase of the market from per-symbol prices.

    Intensity is the mean drawdown from each symbol's peak within
    ``lookback`` bars; duration is the mean number of bars since that peak.
    """
    drawdowns, durations, rebounds = [], [], []
    for prices in histories.values():
        window = np.asarray(prices, dtype=float)[-lookback:]
        if window.size < 10:
            continue
        peak_idx = int(np.argmax(window))
        peak = window[peak_idx]
        drawdowns.append((peak - window[-1]) / peak)
        durations.append(window.size - 1 - peak_idx)
        rebounds.append(Indicators.trend(window, 5))
    if not drawdowns:
        return BearPhase.NONE

    intensity = float(np.mean(drawdowns))
    duration = float(np.mean(durations))
    rebound = float(np.mean(rebounds))
    if intensity < 0.05:
        return BearPhase.NONE
    if intensity >= 0.10 and rebound > 0.02:
        return BearPhase.RECOVERY
    if intensity >= 0.30:
        return BearPhase.DEEP
    if intensity >= 0.20 or duration > lookback * 0.8:
        return BearPhase.LATE
    if intensity >= 0.10:
        return BearPhase.MID
    return BearPhase.EARLY


def _sign(x: float, deadband: float = 0.0) -> int:
    if x > deadband:
        return 1
    if x < -deadband:
        return -1
    return 0


class ArbitrageDetector:
    """
    Runs the statistical, correlation and temporal-reversal detectors.

    Args:
        params: overrides for the ``arbitrage`` section of engine defaults
    """

    def __init__(self, params: Optional[Dict] = None):
        self.params = section("arbitrage", params)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def strictness(self, regime: MarketRegime, phase: BearPhase = BearPhase.NONE) -> float:
        if not regime.effective().is_bear:
            return 1.0
        phase_mult = float(self.params["phase_multipliers"].get(phase.value, 1.0))
        return float(self.params["bear_strictness"]) * phase_mult

    def thresholds(self, regime: MarketRegime, phase: BearPhase = BearPhase.NONE) -> Tuple[float, float]:
        """Minimum (confidence, expected return) a signal must reach."""
        strict = self.strictness(regime, phase)
        min_conf = min(float(self.params["max_confidence_threshold"]), float(self.params["min_confidence"]) * strict)
        min_ret = float(self.params["min_expected_return"]) * strict
        return min_conf, min_ret

    def risk_tier(self, volatility: float) -> RiskTier:
        tiers = self.params["risk_tier_volatility"]
        if volatility < float(tiers["low"]):
            return RiskTier.LOW
        if volatility < float(tiers["medium"]):
            return RiskTier.MEDIUM
        return RiskTier.HIGH

    def _passes(self, confidence: float, expected: float, regime: MarketRegime, phase: BearPhase) -> bool:
        min_conf, min_ret = self.thresholds(regime, phase)
        return confidence >= min_conf and expected >= min_ret

    # ------------------------------------------------------------------
    # Statistical mean reversion
    # ------------------------------------------------------------------
    def detect_statistical(
        self,
        symbol: str,
        prices: np.ndarray,
        regime: MarketRegime = MarketRegime.UNKNOWN,
        phase: BearPhase = BearPhase.NONE,
    ) -> Optional[ArbitrageSignal]:
        p = self.params
        lookback = int(p["lookback"])
        window = np.asarray(prices, dtype=float)[-lookback:]
        if window.size < lookback // 2:
            return None

        fast_hl, slow_hl = float(p["fast_half_life"]), float(p["slow_half_life"])
        zscores = Indicators.ew_zscores(window, fast_hl, slow_hl)
        z = float(zscores[-1])
        threshold = float(p["z_threshold"])
        if abs(z) < threshold:
            return None

        volatility = Indicators.volatility(window, 20)
        if volatility > float(p["max_volatility"]):
            logger.debug("[Arbitrage] %s statistical rejected: volatility %.4f", symbol, volatility)
            return None

        deviation = _sign(z)
        trend = Indicators.trend(window, int(p["trend_period"]))
        if _sign(trend, float(p["trend_deadband"])) == deviation:
            logger.debug("[Arbitrage] %s statistical rejected: deviation follows trend %.4f", symbol, trend)
            return None

        horizon = int(p["reversion_horizon"])
        samples = successes = 0
        for i in range(int(slow_hl), zscores.size - horizon - 1):
            past = zscores[i]
            if _sign(past) == deviation and abs(past) >= 0.8 * threshold:
                samples += 1
                if abs(zscores[i + horizon]) <= 0.5 * abs(past):
                    successes += 1
        success_rate = successes / samples if samples else float(p["neutral_success_rate"])
        if success_rate < float(p["min_success_rate"]):
            logger.debug("[Arbitrage] %s statistical rejected: success rate %.2f", symbol, success_rate)
            return None

        fair = Indicators.dual_ew_mean(window, fast_hl, slow_hl)
        gap = abs(window[-1] - fair) / window[-1]
        expected = min(0.10, 0.5 * gap)
        confidence = min(0.95, 0.35 + 0.1 * (abs(z) - threshold) + 0.4 * success_rate)
        if not self._passes(confidence, expected, regime, phase):
            return None

        return ArbitrageSignal(
            type=ArbitrageType.STATISTICAL,
            primary=symbol,
            direction=Signal.BUY if z < 0 else Signal.SELL,
            expected_return=float(expected),
            confidence=float(confidence),
            statistic=z,
            horizon=horizon,
            risk_tier=self.risk_tier(volatility),
            metadata={"success_rate": success_rate, "samples": samples, "fair_value": fair},
        )

    # ------------------------------------------------------------------
    # Pairwise correlation
    # ------------------------------------------------------------------
    def _pair_signal(
        self,
        a: str,
        b: str,
        pa: np.ndarray,
        pb: np.ndarray,
        va: np.ndarray,
        vb: np.ndarray,
        regime: MarketRegime,
        phase: BearPhase,
    ) -> Optional[ArbitrageSignal]:
        p = self.params
        lookback = int(p["lookback"])
        period = int(p["return_period"])
        n = min(pa.size, pb.size)
        if n < lookback + period + 1:
            return None
        pa, pb = pa[-n:], pb[-n:]

        # reference window ends before the deviation being tested
        ref_a = pa[-(lookback + period + 1):-period]
        ref_b = pb[-(lookback + period + 1):-period]
        corr = Indicators.correlation(ref_a, ref_b)
        if abs(corr) < float(p["min_correlation"]):
            return None

        min_liq = float(p["min_liquidity"])
        liq_a = float(np.mean(pa[-lookback:] * va[-lookback:])) if va.size >= lookback else 0.0
        liq_b = float(np.mean(pb[-lookback:] * vb[-lookback:])) if vb.size >= lookback else 0.0
        if liq_a < min_liq or liq_b < min_liq:
            return None

        vol_a = Indicators.volatility(ref_a, lookback)
        vol_b = Indicators.volatility(ref_b, lookback)
        max_vol = float(p["max_pair_volatility"])
        if vol_a > max_vol or vol_b > max_vol:
            return None

        beta = corr * (vol_a / vol_b) if vol_b > 0 else corr

        def deviation_at(end: int, prices_a: np.ndarray, prices_b: np.ndarray) -> float:
            ret_a = prices_a[end] / prices_a[end - period] - 1.0
            ret_b = prices_b[end] / prices_b[end - period] - 1.0
            return ret_a - beta * ret_b

        deviation = deviation_at(n - 1, pa, pb)
        min_dev = float(p["min_deviation"])
        if abs(deviation) < min_dev:
            return None

        samples = corrected = 0
        for end in range(period, ref_a.size - period):
            past = deviation_at(end, ref_a, ref_b)
            if abs(past) >= 0.5 * min_dev:
                samples += 1
                if abs(deviation_at(end + period, ref_a, ref_b)) <= 0.5 * abs(past):
                    corrected += 1
        correction_rate = corrected / samples if samples else float(p["neutral_success_rate"])
        if correction_rate < float(p["min_correction_rate"]):
            return None

        if deviation < 0:
            primary, secondary, direction, vol = a, b, Signal.BUY, vol_a
        else:
            primary, secondary, vol = b, a, vol_b
            direction = Signal.BUY if corr > 0 else Signal.SELL

        expected = min(0.20, 0.5 * abs(deviation))
        confidence = min(0.95, 0.5 * abs(corr) + 0.3 * min(1.0, abs(deviation) / 0.1) + 0.2 * correction_rate)
        if not self._passes(confidence, expected, regime, phase):
            return None

        return ArbitrageSignal(
            type=ArbitrageType.CORRELATION,
            primary=primary,
            secondary=secondary,
            direction=direction,
            expected_return=float(expected),
            confidence=float(confidence),
            statistic=float(corr),
            horizon=period,
            risk_tier=self.risk_tier(vol),
            metadata={"deviation": deviation, "beta": beta, "correction_rate": correction_rate},
        )

    def detect_correlation(
        self,
        prices: Mapping[str, np.ndarray],
        volumes: Mapping[str, np.ndarray],
        regime: MarketRegime = MarketRegime.UNKNOWN,
        phase: BearPhase = BearPhase.NONE,
    ) -> List[ArbitrageSignal]:
        signals = []
        for a, b in itertools.combinations(sorted(prices), 2):
            sig = self._pair_signal(
                a, b,
                np.asarray(prices[a], dtype=float),
                np.asarray(prices[b], dtype=float),
                np.asarray(volumes.get(a, []), dtype=float),
                np.asarray(volumes.get(b, []), dtype=float),
                regime, phase,
            )
            if sig is not None:
                signals.append(sig)
        return signals

    # ------------------------------------------------------------------
    # Temporal reversal
    # ------------------------------------------------------------------
    def detect_temporal_reversal(
        self,
        symbol: str,
        prices: np.ndarray,
        regime: MarketRegime = MarketRegime.UNKNOWN,
        phase: BearPhase = BearPhase.NONE,
    ) -> Optional[ArbitrageSignal]:
        p = self.params
        prices = np.asarray(prices, dtype=float)
        long_period = int(p["long_trend_period"])
        if prices.size < long_period + 1:
            return None

        rsi = Indicators.rsi(prices, int(p["rsi_period"]))
        momentum = Indicators.trend(prices, int(p["short_momentum_period"]))
        long_trend = Indicators.trend(prices, long_period)

        if rsi > float(p["rsi_overbought"]) and momentum < 0 and long_trend < 0:
            direction = Signal.SELL
        elif rsi < float(p["rsi_oversold"]) and momentum > 0 and long_trend > 0:
            direction = Signal.BUY
        else:
            return None

        extremity = abs(rsi - 50.0) - 20.0
        confidence = min(0.95, 0.4 + extremity / 50.0 + 0.2 * min(1.0, abs(momentum) / 0.02))
        expected = min(0.05, abs(momentum) + extremity / 1000.0)
        if not self._passes(confidence, expected, regime, phase):
            return None

        volatility = Indicators.volatility(prices, 20)
        return ArbitrageSignal(
            type=ArbitrageType.TEMPORAL_REVERSAL,
            primary=symbol,
            direction=direction,
            expected_return=float(expected),
            confidence=float(confidence),
            statistic=float(rsi),
            horizon=int(p["short_momentum_period"]),
            risk_tier=self.risk_tier(volatility),
            metadata={"momentum": momentum, "long_trend": long_trend},
        )

    def detect_all(
        self,
        prices: Mapping[str, np.ndarray],
        volumes: Mapping[str, np.ndarray],
        regime: MarketRegime = MarketRegime.UNKNOWN,
        phase: Optional[BearPhase] = None,
    ) -> List[ArbitrageSignal]:
        """Run every detector over the given symbols."""
        if phase is None:
            phase = detect_bear_phase(prices) if regime.effective().is_bear else BearPhase.NONE
        signals: List[ArbitrageSignal] = []
        for symbol, series in prices.items():
            for detector in (self.detect_statistical, self.detect_temporal_reversal):
                sig = detector(symbol, series, regime, phase)
                if sig is not None:
                    signals.append(sig)
        signals.extend(self.detect_correlation(prices, volumes, regime, phase))
        if signals:
            logger.debug("[Arbitrage] %d signals (regime=%s phase=%s)", len(signals), regime.value, phase.value)
        return signals
