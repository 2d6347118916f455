"""
state.py - Shared simulation state

Holds the two pieces of state that are read from several components during a
backtest step:

- RegimeState: the single active market regime plus its hysteresis
  bookkeeping (stability, confirmations, transition log).
- PerformanceBook: per-symbol rolling trade statistics, updated only when a
  trade closes.

Both are lock-guarded so that precompute workers may read them while the
simulation loop owns the writes. Neither is a module global; the engine
creates them per run and passes them explicitly.
"""

import copy
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Deque, Dict, List, Optional

import numpy as np


class MarketRegime(Enum):
    """Market regime labels."""
    EXTREME_BEAR = "extreme_bear"
    STRONG_BEAR = "strong_bear"
    WEAK_BEAR = "weak_bear"
    SIDEWAYS = "sideways"
    WEAK_BULL = "weak_bull"
    STRONG_BULL = "strong_bull"
    MIXED = "mixed"
    TRUE_SIDEWAYS = "true_sideways"
    LOW_VOLATILITY = "low_volatility"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value

    @property
    def is_bull(self) -> bool:
        return self in (MarketRegime.WEAK_BULL, MarketRegime.STRONG_BULL)

    @property
    def is_bear(self) -> bool:
        return self in (MarketRegime.WEAK_BEAR, MarketRegime.STRONG_BEAR, MarketRegime.EXTREME_BEAR)

    @property
    def is_strong(self) -> bool:
        return self in (MarketRegime.STRONG_BULL, MarketRegime.STRONG_BEAR, MarketRegime.EXTREME_BEAR)

    @property
    def is_extreme(self) -> bool:
        return self in (MarketRegime.EXTREME_BEAR, MarketRegime.STRONG_BEAR, MarketRegime.STRONG_BULL)

    def effective(self) -> "MarketRegime":
        """Regime to use for numeric lookups (unknown behaves as mixed)."""
        return MarketRegime.MIXED if self is MarketRegime.UNKNOWN else self

    def group(self) -> str:
        """Coarse group used by lookup tables: bull, bear, sideways or mixed."""
        regime = self.effective()
        if regime.is_bull:
            return "bull"
        if regime.is_bear:
            return "bear"
        if regime in (MarketRegime.SIDEWAYS, MarketRegime.TRUE_SIDEWAYS, MarketRegime.LOW_VOLATILITY):
            return "sideways"
        return "mixed"


@dataclass(frozen=True)
class RegimeTransition:
    """One accepted regime change."""
    from_regime: MarketRegime
    to_regime: MarketRegime
    at: datetime
    confidence: float
    reason: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "from": self.from_regime.value,
            "to": self.to_regime.value,
            "at": self.at.isoformat(),
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RegimeSnapshot:
    """Immutable view of RegimeState handed to readers within a step."""
    regime: MarketRegime
    entered_at: Optional[datetime]
    stability: float
    confirmations: int
    pending: Optional[MarketRegime]
    confidence: float
    consensus: Dict[str, str]

    @property
    def effective(self) -> MarketRegime:
        return self.regime.effective()


class RegimeState:
    """
    Lock-guarded holder of the current market regime.

    Only RegimeClassifier mutates it, and only through apply_transition()
    once its hysteresis rules hold. Exactly one regime is active at any time;
    a fresh state starts as UNKNOWN.
    """

    def __init__(self, stability_window: int = 10):
        self._lock = Lock()
        self._regime = MarketRegime.UNKNOWN
        self._entered_at: Optional[datetime] = None
        self._confidence = 0.0
        self._pending: Optional[MarketRegime] = None
        self._confirmations = 0
        self._recent_proposals: Deque[MarketRegime] = deque(maxlen=stability_window)
        self._consensus: Dict[str, str] = {}
        self._transitions: List[RegimeTransition] = []

    @property
    def current(self) -> MarketRegime:
        with self._lock:
            return self._regime

    def effective(self) -> MarketRegime:
        with self._lock:
            return self._regime.effective()

    def snapshot(self) -> RegimeSnapshot:
        with self._lock:
            return RegimeSnapshot(
                regime=self._regime,
                entered_at=self._entered_at,
                stability=self._stability_locked(),
                confirmations=self._confirmations,
                pending=self._pending,
                confidence=self._confidence,
                consensus=dict(self._consensus),
            )

    def stability(self) -> float:
        with self._lock:
            return self._stability_locked()

    def _stability_locked(self) -> float:
        if not self._recent_proposals:
            return 0.5
        same = sum(1 for r in self._recent_proposals if r is self._regime)
        return same / len(self._recent_proposals)

    def record_proposal(self, proposed: MarketRegime) -> int:
        """
        Register a classifier proposal and return its consecutive count.

        Proposals equal to the current regime reset the pending candidate.
        """
        with self._lock:
            self._recent_proposals.append(proposed)
            if proposed is self._regime:
                self._pending = None
                self._confirmations = 0
                return 0
            if proposed is self._pending:
                self._confirmations += 1
            else:
                self._pending = proposed
                self._confirmations = 1
            return self._confirmations

    def set_consensus(self, consensus: Dict[str, str]) -> None:
        with self._lock:
            self._consensus = dict(consensus)

    def apply_transition(self, to_regime: MarketRegime, at: datetime, confidence: float, reason: str) -> RegimeTransition:
        with self._lock:
            transition = RegimeTransition(
                from_regime=self._regime,
                to_regime=to_regime,
                at=at,
                confidence=confidence,
                reason=reason,
            )
            self._regime = to_regime
            self._entered_at = at
            self._confidence = confidence
            self._pending = None
            self._confirmations = 0
            self._transitions.append(transition)
            return transition

    def transitions(self) -> List[RegimeTransition]:
        with self._lock:
            return list(self._transitions)

    def __repr__(self) -> str:
        snap = self.snapshot()
        return (f"RegimeState(regime={snap.regime.value}, stability={snap.stability:.2f}, "
                f"transitions={len(self._transitions)})")


@dataclass
class PerformanceRecord:
    """
    Rolling per-symbol trade aggregate.

    Attributes:
        trades: Closed trade count
        wins: Trades with positive PnL
        losses: Trades with zero or negative PnL
        total_pnl: Sum of realized PnL
        gross_profit: Sum of winning PnL
        gross_loss: Sum of absolute losing PnL
        max_drawdown: Largest peak-to-trough decline of cumulative PnL
        consecutive_losses: Current losing streak
        returns: Per-trade fractional returns
    """
    trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    max_drawdown: float = 0.0
    consecutive_losses: int = 0
    returns: List[float] = field(default_factory=list)
    _cum_pnl: float = 0.0
    _cum_peak: float = 0.0

    @property
    def win_rate(self) -> float:
        if self.trades == 0:
            return 0.0
        return self.wins / self.trades

    @property
    def avg_win(self) -> float:
        return self.gross_profit / self.wins if self.wins else 0.0

    @property
    def avg_loss(self) -> float:
        """Average losing trade as a positive magnitude."""
        return self.gross_loss / self.losses if self.losses else 0.0

    @property
    def sharpe(self) -> float:
        if len(self.returns) < 2:
            return 0.0
        arr = np.asarray(self.returns, dtype=float)
        std = float(arr.std(ddof=1))
        if std <= 0 or not math.isfinite(std):
            return 0.0
        return float(arr.mean() / std * math.sqrt(len(arr)))

    def record(self, pnl: float, return_pct: float) -> None:
        self.trades += 1
        self.total_pnl += pnl
        if pnl > 0:
            self.wins += 1
            self.gross_profit += pnl
            self.consecutive_losses = 0
        else:
            self.losses += 1
            self.gross_loss += abs(pnl)
            self.consecutive_losses += 1
        self.returns.append(float(return_pct))
        self._cum_pnl += pnl
        self._cum_peak = max(self._cum_peak, self._cum_pnl)
        self.max_drawdown = max(self.max_drawdown, self._cum_peak - self._cum_pnl)
        assert 0.0 <= self.win_rate <= 1.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "total_pnl": self.total_pnl,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "max_drawdown": self.max_drawdown,
            "sharpe": self.sharpe,
        }


class PerformanceBook:
    """Thread-safe map of symbol -> PerformanceRecord plus a portfolio aggregate."""

    def __init__(self):
        self._lock = Lock()
        self._records: Dict[str, PerformanceRecord] = {}
        self._portfolio = PerformanceRecord()

    def record_close(self, symbol: str, pnl: float, return_pct: float) -> None:
        with self._lock:
            self._records.setdefault(symbol, PerformanceRecord()).record(pnl, return_pct)
            self._portfolio.record(pnl, return_pct)

    def get(self, symbol: str) -> PerformanceRecord:
        """Return a copy of the symbol's record (empty record if unseen)."""
        with self._lock:
            record = self._records.get(symbol)
            return copy.deepcopy(record) if record is not None else PerformanceRecord()

    def portfolio(self) -> PerformanceRecord:
        with self._lock:
            return copy.deepcopy(self._portfolio)

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {symbol: rec.to_dict() for symbol, rec in self._records.items()}
