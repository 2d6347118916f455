"""
regime_classifier.py - Multi-window market regime classification

Derives a market regime from the price histories of the whole trading
universe and applies it to a RegimeState under hysteresis.

Classification (pure):
- Each symbol's trend over a short, medium and long window is labelled
  strong/weak bull, strong/weak bear or sideways. Thresholds widen when the
  universe is small so that a couple of weak symbols cannot drag the whole
  market into a bear label.
- Each window votes with its majority label; windows are combined with
  weights favouring the medium window (25/45/30).
- A turning-point detector compares first-half vs second-half direction
  inside the medium and short windows; a broad reversal overrides the vote.

Transition (stateful, via update()):
- cooldown since the last switch (dynamic, >= 3h; bypassed by turning points)
- confidence above a dynamic threshold (0.6 - 0.9)
- the same proposal seen on >= 2 consecutive evaluations
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional

import numpy as np

from config.engine_defaults import section
from core.state import MarketRegime, RegimeState, RegimeTransition
from data.candles import Indicators

logger = logging.getLogger(__name__)

_TREND_LABELS = (
    MarketRegime.STRONG_BULL,
    MarketRegime.WEAK_BULL,
    MarketRegime.SIDEWAYS,
    MarketRegime.WEAK_BEAR,
    MarketRegime.STRONG_BEAR,
)


@dataclass
class RegimeAssessment:
    """Result of one classification pass."""
    regime: MarketRegime
    confidence: float
    consensus: Dict[str, str] = field(default_factory=dict)
    agreement: Dict[str, float] = field(default_factory=dict)
    turning_point: bool = False
    symbols_used: int = 0
    explanation: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "regime": self.regime.value,
            "confidence": round(self.confidence, 4),
            "consensus": dict(self.consensus),
            "turning_point": self.turning_point,
            "symbols_used": self.symbols_used,
            "explanation": self.explanation,
        }


@dataclass
class TransitionCheck:
    """Outcome of the hysteresis rules for one proposal."""
    proposed: MarketRegime
    cooldown_ok: bool
    confidence_ok: bool
    confirmations_ok: bool
    cooldown_hours: float
    elapsed_hours: float
    threshold: float
    confirmations: int

    @property
    def allowed(self) -> bool:
        return self.cooldown_ok and self.confidence_ok and self.confirmations_ok


def _label_trend(trend: float, weak: float, strong: float) -> MarketRegime:
    if trend >= strong:
        return MarketRegime.STRONG_BULL
    if trend >= weak:
        return MarketRegime.WEAK_BULL
    if trend <= -strong:
        return MarketRegime.STRONG_BEAR
    if trend <= -weak:
        return MarketRegime.WEAK_BEAR
    return MarketRegime.SIDEWAYS


def _half_reversal(window: np.ndarray, min_move: float) -> int:
    """
    Compare first-half and second-half direction of a window.

    Returns +1 for a down-to-up reversal, -1 for up-to-down, 0 otherwise.
    """
    if window.size < 4:
        return 0
    mid = window.size // 2
    first = window[mid] / window[0] - 1.0
    second = window[-1] / window[mid] - 1.0
    if abs(first) < min_move or abs(second) < min_move:
        return 0
    if first < 0 < second:
        return 1
    if first > 0 > second:
        return -1
    return 0


class RegimeClassifier:
    """
    Market regime classifier with hysteresis.

    Args:
        params: overrides for the ``regime`` section of engine defaults
    """

    def __init__(self, params: Optional[Dict] = None):
        self.params = section("regime", params)
        p = self.params
        self.windows = {
            "short": int(p["short_window"]),
            "medium": int(p["medium_window"]),
            "long": int(p["long_window"]),
        }
        self.window_weights = dict(p["window_weights"])
        self.trend_thresholds = dict(p["trend_thresholds"])
        self.last_assessment: Optional[RegimeAssessment] = None
        self.last_check: Optional[TransitionCheck] = None

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    def _threshold_scale(self, n_symbols: int) -> float:
        missing = max(0, int(self.params["reference_universe"]) - n_symbols)
        return 1.0 + float(self.params["small_universe_widening"]) * missing

    def classify(self, histories: Mapping[str, np.ndarray]) -> RegimeAssessment:
        """Classify the regime from per-symbol price arrays (oldest first)."""
        p = self.params
        min_len = self.windows["short"] + 1
        eligible = {s: np.asarray(h, dtype=float) for s, h in histories.items() if len(h) >= min_len}
        if not eligible:
            return RegimeAssessment(
                regime=MarketRegime.UNKNOWN,
                confidence=0.0,
                explanation="no symbol has sufficient history",
            )

        scale = self._threshold_scale(len(eligible))
        consensus: Dict[str, str] = {}
        agreement: Dict[str, float] = {}
        label_scores: Dict[MarketRegime, float] = {label: 0.0 for label in _TREND_LABELS}
        used_weight = 0.0
        long_trends: List[float] = []

        for name, period in self.windows.items():
            weak = float(self.trend_thresholds[name]) * scale
            strong = weak * float(p["strong_multiplier"])
            labels = []
            for prices in eligible.values():
                if prices.size < period + 1:
                    continue
                trend = Indicators.trend(prices, period)
                labels.append(_label_trend(trend, weak, strong))
                if name == "long":
                    long_trends.append(trend)
            if not labels:
                continue
            label, count = Counter(labels).most_common(1)[0]
            frac = count / len(labels)
            weight = float(self.window_weights[name])
            consensus[name] = label.value
            agreement[name] = frac
            label_scores[label] += weight * frac
            used_weight += weight

        best = max(label_scores, key=lambda r: label_scores[r])
        confidence = label_scores[best] / used_weight if used_weight else 0.0
        regime = best
        explanation = f"window vote -> {best.value} ({confidence:.2f})"

        if confidence < float(p["mixed_score_floor"]):
            regime = MarketRegime.MIXED
            confidence = 1.0 - confidence
            explanation = f"no window consensus (best {best.value})"
        elif best is MarketRegime.SIDEWAYS:
            short_vol = float(np.mean([Indicators.volatility(h, self.windows["short"]) for h in eligible.values()]))
            if short_vol < float(p["low_volatility_ceiling"]):
                regime = MarketRegime.LOW_VOLATILITY
                explanation = f"sideways with low volatility ({short_vol:.4f})"
            elif confidence >= float(p["true_sideways_confidence"]):
                regime = MarketRegime.TRUE_SIDEWAYS
                explanation = "broad sideways agreement"
        elif best is MarketRegime.STRONG_BEAR and long_trends:
            extreme = (float(self.trend_thresholds["long"]) * scale * float(p["strong_multiplier"])
                       * float(p["extreme_bear_multiplier"]))
            if float(np.mean(long_trends)) <= -extreme:
                regime = MarketRegime.EXTREME_BEAR
                explanation = f"deep long-window decline ({np.mean(long_trends):.2%})"

        turning = self._detect_turning_point(eligible)
        if turning is not None:
            regime = turning
            confidence = float(p["turning_point_confidence"])
            explanation = f"turning point -> {turning.value}"

        assessment = RegimeAssessment(
            regime=regime,
            confidence=float(min(1.0, max(0.0, confidence))),
            consensus=consensus,
            agreement=agreement,
            turning_point=turning is not None,
            symbols_used=len(eligible),
            explanation=explanation,
        )
        self.last_assessment = assessment
        return assessment

    def _detect_turning_point(self, eligible: Mapping[str, np.ndarray]) -> Optional[MarketRegime]:
        p = self.params
        min_move = float(p["turning_point_min_move"])
        medium, short = self.windows["medium"], self.windows["short"]

        medium_votes: List[int] = []
        medium_total = 0
        short_hits = 0
        short_total = 0
        for prices in eligible.values():
            if prices.size >= medium + 1:
                medium_total += 1
                direction = _half_reversal(prices[-(medium + 1):], min_move)
                if direction:
                    medium_votes.append(direction)
            if prices.size >= short + 1:
                short_total += 1
                if _half_reversal(prices[-(short + 1):], min_move / 2.0):
                    short_hits += 1

        if medium_total == 0 or short_total == 0:
            return None
        if len(medium_votes) / medium_total < float(p["turning_point_medium_fraction"]):
            return None
        if short_hits / short_total < float(p["turning_point_short_fraction"]):
            return None
        return MarketRegime.WEAK_BULL if sum(medium_votes) > 0 else MarketRegime.WEAK_BEAR

    # ------------------------------------------------------------------
    # Hysteresis
    # ------------------------------------------------------------------
    def cooldown_hours(self, current: MarketRegime, stability: float) -> float:
        p = self.params
        hours = float(p["base_cooldown_hours"])
        if stability < float(p["low_stability"]):
            hours *= float(p["low_stability_cooldown_factor"])
        if current.is_strong:
            hours *= float(p["strong_regime_cooldown_factor"])
        return hours

    def confidence_threshold(self, current: MarketRegime, target: MarketRegime, stability: float) -> float:
        p = self.params
        floor = float(p["base_confidence_threshold"])
        if current is MarketRegime.UNKNOWN:
            return floor
        threshold = floor
        if stability < float(p["low_stability"]):
            threshold += float(p["low_stability_threshold_bump"])
        if target.is_extreme:
            threshold += float(p["extreme_target_threshold_bump"])
        return min(float(p["max_confidence_threshold"]), threshold)

    def check_transition(
        self,
        current: MarketRegime,
        entered_at: Optional[datetime],
        stability: float,
        assessment: RegimeAssessment,
        confirmations: int,
        now: datetime,
    ) -> TransitionCheck:
        cooldown = self.cooldown_hours(current, stability)
        if entered_at is None:
            elapsed = math.inf
        else:
            elapsed = (now - entered_at).total_seconds() / 3600.0
        cooldown_ok = current is MarketRegime.UNKNOWN or elapsed >= cooldown or assessment.turning_point
        threshold = self.confidence_threshold(current, assessment.regime, stability)
        return TransitionCheck(
            proposed=assessment.regime,
            cooldown_ok=cooldown_ok,
            confidence_ok=assessment.confidence >= threshold,
            confirmations_ok=confirmations >= int(self.params["min_confirmations"]),
            cooldown_hours=cooldown,
            elapsed_hours=elapsed,
            threshold=threshold,
            confirmations=confirmations,
        )

    def update(self, state: RegimeState, histories: Mapping[str, np.ndarray], now: datetime) -> Optional[RegimeTransition]:
        """
        Classify and, if every hysteresis rule holds, switch the state's regime.

        Returns:
            The accepted RegimeTransition, or None when the regime is unchanged.
        """
        assessment = self.classify(histories)
        state.set_consensus(assessment.consensus)
        before = state.snapshot()
        confirmations = state.record_proposal(assessment.regime)
        self.last_check = None

        if assessment.regime is before.regime or assessment.regime is MarketRegime.UNKNOWN:
            return None

        check = self.check_transition(
            current=before.regime,
            entered_at=before.entered_at,
            stability=state.stability(),
            assessment=assessment,
            confirmations=confirmations,
            now=now,
        )
        self.last_check = check
        if not check.allowed:
            logger.debug(
                "[RegimeClassifier] %s -> %s held back (cooldown=%s confidence=%.2f/%.2f confirmations=%d)",
                before.regime.value, assessment.regime.value, check.cooldown_ok,
                assessment.confidence, check.threshold, confirmations,
            )
            return None

        reason = "turning_point" if assessment.turning_point else "consensus"
        transition = state.apply_transition(assessment.regime, now, assessment.confidence, reason)
        logger.info(
            "[RegimeClassifier] regime %s -> %s at %s (confidence=%.2f, reason=%s)",
            transition.from_regime.value, transition.to_regime.value, now.isoformat(),
            transition.confidence, reason,
        )
        return transition
