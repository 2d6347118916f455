"""
features.py - Per-symbol feature vectors for opportunity scoring
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Optional

import numpy as np

from config.engine_defaults import section
from data.candles import Indicators


@dataclass(frozen=True)
class FeatureVector:
    """
    Indicator snapshot of one symbol at one step.

    Attributes:
        price: Latest price
        trend: Fractional change over the trend period
        momentum: Fractional change over the momentum period
        rsi: RSI (0-100)
        volatility: Std of bar returns over the volatility period
        volume_ratio: Latest volume vs. recent average
        range_position: 0 at support, 1 at resistance
    """
    price: float
    trend: float
    momentum: float
    rsi: float
    volatility: float
    volume_ratio: float
    range_position: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def build_features(prices: np.ndarray, volumes: np.ndarray, params: Optional[Dict] = None) -> FeatureVector:
    p = section("scanner", params)
    prices = np.asarray(prices, dtype=float)
    volumes = np.asarray(volumes, dtype=float)
    if prices.size == 0:
        raise ValueError("cannot build features from an empty price history")
    return FeatureVector(
        price=float(prices[-1]),
        trend=Indicators.trend(prices, int(p["trend_period"])),
        momentum=Indicators.trend(prices, int(p["momentum_period"])),
        rsi=Indicators.rsi(prices, int(p["rsi_period"])),
        volatility=Indicators.volatility(prices, int(p["volatility_period"])),
        volume_ratio=Indicators.volume_ratio(volumes, int(p["volume_period"])),
        range_position=Indicators.range_position(prices, int(p["trend_period"])),
    )
