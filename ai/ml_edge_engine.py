"""
ml_edge_engine.py - Heuristic directional prediction

Produces a per-symbol directional prediction that the opportunity scanner
uses as one input to candidate quality. The "model" is a fixed logistic
blend of EMA spread, short momentum and volatility: deterministic, cheap,
and free of fitted parameters that could overfit a particular period.

Predictions are precomputed for all active symbols by the engine's worker
fan-out and stored in the prediction cache.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from config.engine_defaults import section
from data.candles import Indicators

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MLSignal:
    """Output from the prediction model"""
    direction: str  # 'buy', 'sell', or 'hold'
    confidence: float  # 0.0 to 1.0
    next_move_pct: float  # Expected move over the next bar (fraction)
    probability: float  # Probability of an upside move
    metadata: Dict[str, Any] = field(default_factory=dict)


class MLEdgeEngine:
    """
    Logistic heuristic over trend, momentum and volatility features.

    Coefficients are fixed; there is no training step.
    """

    TREND_WEIGHT = 60.0
    MOMENTUM_WEIGHT = 25.0
    VOLATILITY_PENALTY = 10.0

    def __init__(self, params: Optional[Dict] = None, name: str = "MLEdgeEngine"):
        self.params = section("prediction", params)
        self.name = name

    def predict(self, prices: np.ndarray) -> Optional[MLSignal]:
        """
        Predict next-bar direction from recent prices.

        Returns:
            MLSignal, or None when fewer than ``slow_period`` + 1 prices exist
        """
        p = self.params
        slow = int(p["slow_period"])
        prices = np.asarray(prices, dtype=float)[-int(p["lookback"]):]
        if prices.size < slow + 1:
            return None

        fast_ema = Indicators.ema(prices, int(p["fast_period"]))
        slow_ema = Indicators.ema(prices, slow)
        spread = (fast_ema - slow_ema) / slow_ema if slow_ema else 0.0
        momentum = Indicators.trend(prices, int(p["fast_period"]))
        volatility = Indicators.volatility(prices, slow)

        z = self.TREND_WEIGHT * spread + self.MOMENTUM_WEIGHT * momentum
        z -= self.VOLATILITY_PENALTY * volatility * (1.0 if z >= 0 else -1.0)
        probability = 1.0 / (1.0 + math.exp(-max(-50.0, min(50.0, z))))
        confidence = abs(probability - 0.5) * 2.0

        if probability > 0.55:
            direction = "buy"
        elif probability < 0.45:
            direction = "sell"
        else:
            direction = "hold"

        return MLSignal(
            direction=direction,
            confidence=float(confidence),
            next_move_pct=float((probability - 0.5) * 2.0 * max(volatility, 1e-4)),
            probability=float(probability),
            metadata={"ema_spread": spread, "momentum": momentum, "volatility": volatility},
        )
