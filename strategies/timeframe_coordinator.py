"""
timeframe_coordinator.py - Multi-timeframe signal fusion

Combines trend, momentum, volume and volatility sub-signals computed on
several timeframes into a single advisory CoordinatedSignal.

Each timeframe is derived from the base bar series by taking every k-th
bar from the end (k = timeframe minutes / base minutes). Timeframes finer
than the base or without enough down-sampled bars are skipped.

Cross-timeframe disagreement is not discarded: when two timeframes point in
opposite directions with strength above 0.5, both are down-weighted
(quality x0.8, strength x0.9) and the conflict is recorded.

The result adjusts opportunity scores multiplicatively and can veto a
candidate whose direction too few timeframes agree with.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from config.engine_defaults import section
from core.state import MarketRegime
from data.candles import Indicators
from strategies.base import Signal

logger = logging.getLogger(__name__)


@dataclass
class SubSignal:
    value: float  # -1.0 (bearish) .. 1.0 (bullish)
    quality: float  # 0.0 .. 1.0


@dataclass
class TimeframeSignal:
    """Fused signal of one timeframe."""
    name: str
    value: float
    strength: float
    quality: float
    weight: float
    priority: int
    sub_signals: Dict[str, SubSignal] = field(default_factory=dict)
    conflicted: bool = False


@dataclass
class CoordinatedSignal:
    """
    Cross-timeframe composite.

    Attributes:
        value: Fused direction/strength (-1.0 .. 1.0)
        confidence: Share of timeframe weight backed by quality (0.0 .. 1.0)
        quality: Weighted mean timeframe quality (0.0 .. 1.0)
        strength: abs(value)
        consistency: Inverse coefficient of variation of timeframe values (0.0 .. 1.0)
        bullish_fraction: Share of timeframes pointing up
        bearish_fraction: Share of timeframes pointing down
        timeframes: Per-timeframe signals used
        conflicts: Pairs of timeframes that disagreed strongly
    """
    value: float = 0.0
    confidence: float = 0.0
    quality: float = 0.0
    strength: float = 0.0
    consistency: float = 0.0
    bullish_fraction: float = 0.0
    bearish_fraction: float = 0.0
    timeframes: List[TimeframeSignal] = field(default_factory=list)
    conflicts: List[Tuple[str, str]] = field(default_factory=list)
    min_multiplier: float = 0.5
    max_multiplier: float = 2.0
    veto_consistency: float = 0.30
    bear_veto_consistency: float = 0.18

    @property
    def is_empty(self) -> bool:
        return not self.timeframes

    def directional_consistency(self, action: Signal) -> float:
        if action is Signal.BUY:
            return self.bullish_fraction
        if action is Signal.SELL:
            return self.bearish_fraction
        return 0.0

    def score_multiplier(self, action: Signal) -> float:
        """Multiplicative score adjustment for a candidate in ``action`` direction."""
        if self.is_empty:
            return 1.0
        raw = 1.0 + action.sign * self.value * self.confidence
        return float(min(self.max_multiplier, max(self.min_multiplier, raw)))

    def veto_threshold(self, regime: MarketRegime) -> float:
        return self.bear_veto_consistency if regime.effective().is_bear else self.veto_consistency

    def vetoes(self, action: Signal, regime: MarketRegime) -> bool:
        if self.is_empty:
            return False
        return self.directional_consistency(action) < self.veto_threshold(regime)

    def to_dict(self) -> Dict[str, object]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "quality": self.quality,
            "strength": self.strength,
            "consistency": self.consistency,
            "bullish_fraction": self.bullish_fraction,
            "bearish_fraction": self.bearish_fraction,
            "timeframes": [tf.name for tf in self.timeframes],
            "conflicts": [list(c) for c in self.conflicts],
        }


def _sign(x: float, deadband: float = 0.0) -> int:
    if x > deadband:
        return 1
    if x < -deadband:
        return -1
    return 0


class TimeframeSignalCoordinator:
    """Computes and fuses per-timeframe sub-signals for one symbol at a time."""

    def __init__(self, base_minutes: int = 60, params: Optional[Dict] = None):
        if base_minutes <= 0:
            raise ValueError("base_minutes must be positive")
        self.base_minutes = base_minutes
        self.params = section("timeframes", params)
        self.table = {
            name: (int(row[0]), int(row[1]), float(row[2]), int(row[3]))
            for name, row in self.params["table"].items()
        }
        self.sub_weights = dict(self.params["sub_signal_weights"])

    def _downsample(self, prices: np.ndarray, volumes: np.ndarray, factor: int, periods: int):
        needed = (periods + 1) * factor
        prices = prices[-needed:]
        volumes = volumes[-needed:]
        # last bar of each bucket, aligned to the most recent bar
        sampled = prices[::-1][::factor][::-1]
        usable = (volumes.size // factor) * factor
        if usable:
            tail = volumes[volumes.size - usable:]
            buckets = tail.reshape(-1, factor).sum(axis=1)
        else:
            buckets = np.empty(0)
        return sampled, buckets

    def _sub_signals(self, prices: np.ndarray, volumes: np.ndarray, fill: float) -> Dict[str, SubSignal]:
        n = prices.size
        short = max(2, n // 4)
        long_sma = Indicators.sma(prices, n)
        short_sma = Indicators.sma(prices, short)
        trend_x = (short_sma - long_sma) / long_sma if long_sma else 0.0
        trend_value = math.tanh(trend_x * 50.0)

        rsi = Indicators.rsi(prices, min(14, n - 1))
        momentum_value = (rsi - 50.0) / 50.0

        recent_move = Indicators.trend(prices, short)
        if volumes.size >= 2 and volumes.sum() > 0:
            ratio = float(volumes[-short:].mean() / volumes.mean()) if volumes.mean() > 0 else 1.0
            volume_value = _sign(recent_move) * min(2.0, max(0.0, ratio)) / 2.0
            volume_quality = fill
        else:
            volume_value = 0.0
            volume_quality = fill * 0.5

        vol = Indicators.volatility(prices, n)
        vol_cap = float(self.params["volatility_cap"])
        volatility_value = _sign(trend_value) * max(0.0, 1.0 - vol / vol_cap)

        return {
            "trend": SubSignal(trend_value, fill),
            "momentum": SubSignal(momentum_value, fill),
            "volume": SubSignal(volume_value, volume_quality),
            "volatility": SubSignal(volatility_value, fill),
        }

    def timeframe_signals(self, prices: np.ndarray, volumes: np.ndarray) -> List[TimeframeSignal]:
        prices = np.asarray(prices, dtype=float)
        volumes = np.asarray(volumes, dtype=float)
        signals: List[TimeframeSignal] = []
        for name, (minutes, periods, weight, priority) in sorted(self.table.items(), key=lambda kv: kv[1][3]):
            if minutes < self.base_minutes or minutes % self.base_minutes:
                continue
            factor = minutes // self.base_minutes
            sampled, vol_buckets = self._downsample(prices, volumes, factor, periods)
            min_points = max(5, periods // 2 + 1)
            if sampled.size < min_points:
                continue
            fill = min(1.0, sampled.size / (periods + 1))
            subs = self._sub_signals(sampled, vol_buckets, fill)
            value = sum(self.sub_weights[k] * s.value for k, s in subs.items())
            value = max(-1.0, min(1.0, value))
            direction = _sign(value)
            agree = sum(1 for s in subs.values() if direction and _sign(s.value) == direction) / len(subs)
            quality = float(np.mean([s.quality for s in subs.values()])) * (0.5 + 0.5 * agree)
            signals.append(TimeframeSignal(
                name=name,
                value=value,
                strength=abs(value),
                quality=quality,
                weight=weight,
                priority=priority,
                sub_signals=subs,
            ))
        return signals

    def _resolve_conflicts(self, signals: List[TimeframeSignal]) -> List[Tuple[str, str]]:
        threshold = float(self.params["conflict_strength"])
        conflicts: List[Tuple[str, str]] = []
        for i, a in enumerate(signals):
            for b in signals[i + 1:]:
                if _sign(a.value) * _sign(b.value) < 0 and a.strength > threshold and b.strength > threshold:
                    conflicts.append((a.name, b.name))
                    a.conflicted = True
                    b.conflicted = True
        q_factor = float(self.params["conflict_quality_factor"])
        s_factor = float(self.params["conflict_strength_factor"])
        for sig in signals:
            if sig.conflicted:
                sig.quality *= q_factor
                sig.value *= s_factor
                sig.strength = abs(sig.value)
        return conflicts

    def coordinate(self, prices: np.ndarray, volumes: np.ndarray) -> CoordinatedSignal:
        """Build the CoordinatedSignal for one symbol's base-timeframe history."""
        p = self.params
        result = CoordinatedSignal(
            min_multiplier=float(p["min_multiplier"]),
            max_multiplier=float(p["max_multiplier"]),
            veto_consistency=float(p["veto_consistency"]),
            bear_veto_consistency=float(p["bear_veto_consistency"]),
        )
        signals = self.timeframe_signals(prices, volumes)
        if not signals:
            return result

        conflicts = self._resolve_conflicts(signals)
        total_weight = sum(s.weight for s in signals)
        weighted_quality = sum(s.weight * s.quality for s in signals)
        if weighted_quality > 0:
            fused = sum(s.weight * s.quality * s.value for s in signals) / weighted_quality
        else:
            fused = 0.0

        values = np.array([s.value for s in signals])
        mean = float(values.mean())
        if abs(mean) < 1e-9:
            consistency = 0.0
        else:
            cv = float(values.std()) / abs(mean)
            consistency = 1.0 / (1.0 + cv)

        deadband = float(p["direction_deadband"])
        n = len(signals)
        result.value = float(max(-1.0, min(1.0, fused)))
        result.quality = float(min(1.0, weighted_quality / total_weight)) if total_weight else 0.0
        result.confidence = result.quality * (0.5 + 0.5 * consistency)
        result.strength = abs(result.value)
        result.consistency = consistency
        result.bullish_fraction = sum(1 for v in values if v > deadband) / n
        result.bearish_fraction = sum(1 for v in values if v < -deadband) / n
        result.timeframes = signals
        result.conflicts = conflicts
        if conflicts:
            logger.debug("[TimeframeCoordinator] conflicts resolved by down-weighting: %s", conflicts)
        return result
