"""
base.py - Opportunity and arbitrage signal types

Defines the per-step candidates produced by the opportunity scanner and the
arbitrage detectors. Both are ephemeral: created and discarded within a
simulated step, never persisted.

Where a candidate came from is carried by OpportunityOrigin, an explicit
tagged type holding the full ArbitrageSignal for arbitrage candidates, so
downstream components (sizing exceptions, stop-loss holding limits) never
have to inspect free-form reason strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Signal(Enum):
    """Trade direction."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"

    def __str__(self):
        return self.value

    @property
    def sign(self) -> int:
        if self is Signal.BUY:
            return 1
        if self is Signal.SELL:
            return -1
        return 0


class ArbitrageType(Enum):
    """Arbitrage detection algorithms."""
    STATISTICAL = "statistical"
    CORRELATION = "correlation"
    TEMPORAL_REVERSAL = "temporal_reversal"

    def __str__(self):
        return self.value


class RiskTier(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def __str__(self):
        return self.value


class OriginKind(Enum):
    SIGNAL = "signal"
    ARBITRAGE = "arbitrage"


@dataclass(frozen=True)
class ArbitrageSignal:
    """
    Output of one arbitrage detector.

    Attributes:
        type: Detector that produced the signal
        primary: Symbol to trade
        direction: BUY or SELL on the primary symbol
        expected_return: Expected fractional move toward fair value
        confidence: Detector confidence (0.0 to 1.0)
        statistic: Supporting statistic (z-score, correlation or RSI)
        horizon: Expected holding horizon in bars
        risk_tier: Volatility-derived risk classification
        secondary: Paired symbol for correlation signals
        metadata: Detector diagnostics
    """
    type: ArbitrageType
    primary: str
    direction: Signal
    expected_return: float
    confidence: float
    statistic: float
    horizon: int
    risk_tier: RiskTier
    secondary: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0.0 and 1.0, got {self.confidence}")
        if self.direction is Signal.HOLD:
            raise ValueError("Arbitrage signal direction must be BUY or SELL")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "primary": self.primary,
            "secondary": self.secondary,
            "direction": self.direction.value,
            "expected_return": self.expected_return,
            "confidence": self.confidence,
            "statistic": self.statistic,
            "horizon": self.horizon,
            "risk_tier": self.risk_tier.value,
        }


@dataclass(frozen=True)
class OpportunityOrigin:
    """Tagged origin of an opportunity: plain signal scoring or an arbitrage detector."""
    kind: OriginKind
    arbitrage: Optional[ArbitrageSignal] = None

    def __post_init__(self):
        if (self.kind is OriginKind.ARBITRAGE) != (self.arbitrage is not None):
            raise ValueError("arbitrage origin requires an ArbitrageSignal and signal origin forbids one")

    @classmethod
    def signal(cls) -> "OpportunityOrigin":
        return cls(OriginKind.SIGNAL)

    @classmethod
    def from_arbitrage(cls, arb: ArbitrageSignal) -> "OpportunityOrigin":
        return cls(OriginKind.ARBITRAGE, arb)

    @property
    def is_arbitrage(self) -> bool:
        return self.kind is OriginKind.ARBITRAGE

    @property
    def arbitrage_type(self) -> Optional[ArbitrageType]:
        return self.arbitrage.type if self.arbitrage else None

    def label(self) -> str:
        if self.arbitrage is None:
            return self.kind.value
        return f"{self.kind.value}:{self.arbitrage.type.value}"


@dataclass
class Opportunity:
    """
    A trade candidate for the current step.

    Attributes:
        symbol: Symbol to trade
        action: BUY or SELL
        confidence: Candidate confidence (0.0 to 1.0)
        base_score: Weighted feature score before any multiplier (0.0 to 1.0)
        score: Score after regime and timeframe adjustments (0.0 to 1.0)
        risk_adjusted_score: Score used for ranking
        quality: Signal quality used by selection thresholds (0.0 to 1.0)
        price: Reference price at the current step
        origin: Signal or arbitrage origin
        volatility: Recent bar-return volatility of the symbol
        metadata: Scoring diagnostics
    """
    symbol: str
    action: Signal
    confidence: float
    base_score: float
    score: float
    risk_adjusted_score: float
    quality: float
    price: float
    origin: OpportunityOrigin
    volatility: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        for name in ("confidence", "base_score", "score", "quality"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0.0 and 1.0, got {value}")

    @property
    def is_arbitrage(self) -> bool:
        return self.origin.is_arbitrage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action.value,
            "confidence": self.confidence,
            "base_score": self.base_score,
            "score": self.score,
            "risk_adjusted_score": self.risk_adjusted_score,
            "quality": self.quality,
            "price": self.price,
            "origin": self.origin.label(),
        }

    def __repr__(self) -> str:
        return (f"Opportunity({self.symbol} {self.action.value} score={self.score:.3f} "
                f"risk_adj={self.risk_adjusted_score:.3f} origin={self.origin.label()})")
