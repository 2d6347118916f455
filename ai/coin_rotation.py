"""
coin_rotation.py - Periodic active-universe rotation

Every ``interval`` steps all symbols in the universe are scored on realized
trading performance and recent price action, and the top K become the
active set. Held symbols that drop out of the active set are listed as
demoted so the engine can close them before the new set takes effect.

Score components (each in [0, 1]):
- profitability: 0.5 + symbol PnL / initial cash * 10
- win_rate: symbol win rate, 0.5 without trades
- activity: trades / activity_trades
- recent_return: 0.5 + return over recent_period bars * 5
- short_trend: 0.5 + return over short_period bars * 10

Weights are renormalized by their sum. Persistent losers (>= 3 trades,
< 30% win rate) are penalized; proven performers (>= 5 trades, >= 60%
win rate) are boosted.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import numpy as np

from config.engine_defaults import section
from core.state import PerformanceBook, PerformanceRecord

logger = logging.getLogger(__name__)


def _clip(x: float) -> float:
    return float(min(1.0, max(0.0, x)))


@dataclass
class SymbolScore:
    symbol: str
    score: float
    components: Dict[str, float] = field(default_factory=dict)
    adjustment: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "score": self.score, "adjustment": self.adjustment, **self.components}


@dataclass
class RotationPlan:
    """Outcome of one rotation."""
    step: int
    active: List[str]
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    demoted: List[str] = field(default_factory=list)
    scores: Dict[str, SymbolScore] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "active": self.active,
            "added": self.added,
            "removed": self.removed,
            "demoted": self.demoted,
        }


class CoinRotationSelector:
    """
    Chooses which symbols may receive new trades.

    Args:
        max_active: Size of the active set (K)
        interval: Steps between rotations
        initial_cash: Reference for the profitability component
        params: overrides for the ``rotation`` section of engine defaults
        history_size: Number of rotation plans kept in ``history``
    """

    def __init__(
        self,
        max_active: int = 10,
        interval: int = 24,
        initial_cash: float = 10000.0,
        params: Optional[Dict] = None,
        history_size: int = 500,
    ):
        if max_active < 1 or interval < 1:
            raise ValueError("max_active and interval must be positive")
        self.max_active = max_active
        self.interval = interval
        self.initial_cash = float(initial_cash)
        self.params = section("rotation", params)
        self.history: Deque[RotationPlan] = deque(maxlen=history_size)

    def due(self, step: int) -> bool:
        return step > 0 and step % self.interval == 0

    def initial_active(self, universe: Sequence[str]) -> List[str]:
        return list(universe)[:self.max_active]

    @staticmethod
    def _period_return(prices: Optional[np.ndarray], period: int) -> float:
        if prices is None or len(prices) < 2:
            return 0.0
        window = np.asarray(prices, dtype=float)[-(period + 1):]
        return float(window[-1] / window[0] - 1.0)

    def score_symbol(self, symbol: str, prices: Optional[np.ndarray], record: PerformanceRecord) -> SymbolScore:
        p = self.params
        components = {
            "profitability": _clip(0.5 + record.total_pnl / self.initial_cash * 10.0),
            "win_rate": record.win_rate if record.trades else 0.5,
            "activity": min(1.0, record.trades / float(p["activity_trades"])),
            "recent_return": _clip(0.5 + self._period_return(prices, int(p["recent_period"])) * 5.0),
            "short_trend": _clip(0.5 + self._period_return(prices, int(p["short_period"])) * 10.0),
        }
        weights = p["weights"]
        total_weight = sum(weights.values())
        score = sum(weights[k] * v for k, v in components.items()) / total_weight

        adjustment = 1.0
        if record.trades >= int(p["penalty_min_trades"]) and record.win_rate < float(p["penalty_win_rate"]):
            adjustment = float(p["penalty_factor"])
        elif record.trades >= int(p["boost_min_trades"]) and record.win_rate >= float(p["boost_win_rate"]):
            adjustment = float(p["boost_factor"])
        return SymbolScore(symbol, score * adjustment, components, adjustment)

    def rotate(
        self,
        step: int,
        universe: Iterable[str],
        prices: Mapping[str, np.ndarray],
        performance: PerformanceBook,
        current_active: Iterable[str],
        held: Iterable[str] = (),
    ) -> RotationPlan:
        """Rank the universe and pick the new active set."""
        scores = {s: self.score_symbol(s, prices.get(s), performance.get(s)) for s in universe}
        # ties resolved by symbol name so reruns are reproducible
        ranked = sorted(scores.values(), key=lambda sc: (-sc.score, sc.symbol))
        active = [sc.symbol for sc in ranked[:self.max_active]]

        previous: Set[str] = set(current_active)
        active_set = set(active)
        plan = RotationPlan(
            step=step,
            active=active,
            added=sorted(active_set - previous),
            removed=sorted(previous - active_set),
            demoted=sorted(set(held) - active_set),
            scores=scores,
        )
        self.history.append(plan)
        if plan.changed:
            logger.info("[CoinRotation] step %d: +%s -%s (closing %s)",
                        step, plan.added, plan.removed, plan.demoted)
        return plan
