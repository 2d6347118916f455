"""
drawdown_guard.py - Portfolio drawdown circuit breaker

Monitors portfolio equity and vetoes new trades when drawdown, daily loss,
losing streaks or the capital floor say the account must stop adding risk.
Provides protective circuit-breaker functionality without generating
trading signals.

Ceilings:
- Non-arbitrage trades are blocked while drawdown exceeds the base ceiling
  (RiskLimits.max_drawdown scaled by the regime).
- Arbitrage trades act as the capital-recovery mechanism: they are allowed
  up to a much wider, regime-scaled ceiling (at most 99.99%) provided their
  confidence reaches a small minimum. Daily-loss, losing-streak and capital
  floor limits do not apply to them.
- Past 50/70/85% drawdown the further loss any single trade may commit is
  capped at 35/25/15% of current equity.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from config.engine_defaults import section
from core.config import RiskLimits
from core.state import MarketRegime
from risk.regime_capital_allocator import RegimeCapitalAllocator

logger = logging.getLogger(__name__)

_MAX_BREACH_HISTORY = 1000


class VetoReason(Enum):
    """Reasons for trade veto."""
    TOTAL_DRAWDOWN_EXCEEDED = "total_drawdown_exceeded"
    ARBITRAGE_CEILING_EXCEEDED = "arbitrage_ceiling_exceeded"
    ARBITRAGE_CONFIDENCE_TOO_LOW = "arbitrage_confidence_too_low"
    DAILY_LOSS_EXCEEDED = "daily_loss_exceeded"
    CONSECUTIVE_LOSSES_EXCEEDED = "consecutive_losses_exceeded"
    CAPITAL_FLOOR_BREACHED = "capital_floor_breached"


@dataclass
class DrawdownMetrics:
    """
    Current drawdown metrics.

    Attributes:
        current_equity: Current portfolio equity
        peak_equity: Highest equity seen
        day_start_equity: Equity at the first update of the current day
        drawdown: Fractional decline from peak
        daily_loss: Fractional decline from day start (0 if up on the day)
        consecutive_losses: Current losing streak
    """
    current_equity: float
    peak_equity: float
    day_start_equity: float
    drawdown: float
    daily_loss: float
    consecutive_losses: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_equity': self.current_equity,
            'peak_equity': self.peak_equity,
            'day_start_equity': self.day_start_equity,
            'drawdown': self.drawdown,
            'daily_loss': self.daily_loss,
            'consecutive_losses': self.consecutive_losses,
        }

    def __repr__(self) -> str:
        return (f"DrawdownMetrics(equity=${self.current_equity:.2f}, "
                f"dd={self.drawdown:.2%}, daily={self.daily_loss:.2%})")


@dataclass
class VetoDecision:
    """
    Circuit breaker decision.

    Attributes:
        approved: Whether a new trade may be opened
        veto_reason: Reason for veto if applicable
        loss_allowance: Max fraction of equity a new trade may commit
        current_metrics: Metrics at decision time
        limits: Applied ceilings
        warnings: Warning messages
    """
    approved: bool
    veto_reason: Optional[VetoReason] = None
    loss_allowance: float = 1.0
    current_metrics: Optional[DrawdownMetrics] = None
    limits: Dict[str, float] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'approved': self.approved,
            'veto_reason': self.veto_reason.value if self.veto_reason else None,
            'loss_allowance': self.loss_allowance,
            'current_metrics': self.current_metrics.to_dict() if self.current_metrics else None,
            'limits': self.limits,
            'warnings': self.warnings,
        }

    def __repr__(self) -> str:
        if self.approved:
            return f"VetoDecision(approved=True, allowance={self.loss_allowance:.2f})"
        return f"VetoDecision(approved=False, reason={self.veto_reason.value})"


class DrawdownCircuitBreaker:
    """
    Drawdown monitor and trade veto system.

    Args:
        initial_equity: Starting equity (also the initial peak)
        limits: Portfolio risk limits
        params: overrides for the ``circuit_breaker`` section of engine defaults
        allocator: regime profile source
    """

    def __init__(
        self,
        initial_equity: float,
        limits: Optional[RiskLimits] = None,
        params: Optional[Dict] = None,
        allocator: Optional[RegimeCapitalAllocator] = None,
    ):
        if initial_equity <= 0:
            raise ValueError("initial_equity must be positive")
        self.limits = limits or RiskLimits()
        self.params = section("circuit_breaker", params)
        self.tiers: List[Tuple[float, float]] = sorted(
            (float(a), float(b)) for a, b in self.params["tiers"]
        )
        self.allocator = allocator or RegimeCapitalAllocator()

        self.initial_equity = float(initial_equity)
        self.current_equity = float(initial_equity)
        self.peak_equity = float(initial_equity)
        self.day_start_equity = float(initial_equity)
        self._current_day: Optional[date] = None
        self.consecutive_losses = 0
        self._paused_until_step: Optional[int] = None
        self._breaches: Deque[Dict[str, Any]] = deque(maxlen=_MAX_BREACH_HISTORY)

    # ------------------------------------------------------------------
    # State updates
    # ------------------------------------------------------------------
    def update_equity(self, equity: float, timestamp: Optional[datetime] = None) -> None:
        if timestamp is not None:
            day = timestamp.date()
            if day != self._current_day:
                self._current_day = day
                self.day_start_equity = float(equity)
        self.current_equity = float(equity)
        self.peak_equity = max(self.peak_equity, self.current_equity)

    def record_trade_result(self, pnl: float, step: int) -> None:
        """Track losing streaks; a streak at the limit pauses trading for a cooldown."""
        if pnl > 0:
            self.consecutive_losses = 0
            return
        self.consecutive_losses += 1
        if self.consecutive_losses >= self.limits.max_consecutive_losses:
            self._paused_until_step = step + self.limits.loss_cooldown_bars
            logger.warning(
                "[CircuitBreaker] %d consecutive losses, pausing new trades until step %d",
                self.consecutive_losses, self._paused_until_step,
            )
            self.consecutive_losses = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def drawdown(self) -> float:
        if self.peak_equity <= 0:
            return 0.0
        return max(0.0, (self.peak_equity - self.current_equity) / self.peak_equity)

    @property
    def daily_loss(self) -> float:
        if self.day_start_equity <= 0:
            return 0.0
        return max(0.0, (self.day_start_equity - self.current_equity) / self.day_start_equity)

    def get_current_metrics(self) -> DrawdownMetrics:
        return DrawdownMetrics(
            current_equity=self.current_equity,
            peak_equity=self.peak_equity,
            day_start_equity=self.day_start_equity,
            drawdown=self.drawdown,
            daily_loss=self.daily_loss,
            consecutive_losses=self.consecutive_losses,
        )

    def ceiling(self, regime: MarketRegime) -> float:
        """Drawdown above which non-arbitrage trades are blocked."""
        scale = self.allocator.profile(regime).breaker_scale
        cap = self.tiers[-1][0] if self.tiers else 0.85
        return min(cap, float(self.limits.max_drawdown) * scale)

    def arbitrage_ceiling(self, regime: MarketRegime) -> float:
        scale = self.allocator.profile(regime).breaker_scale
        return min(float(self.params["max_arbitrage_ceiling"]), float(self.params["arbitrage_ceiling"]) * scale)

    def loss_allowance(self, drawdown: Optional[float] = None) -> float:
        """Max fraction of current equity a new trade may commit at this drawdown."""
        dd = self.drawdown if drawdown is None else drawdown
        allowance = 1.0
        for reached, allowed in self.tiers:
            if dd > reached:
                allowance = allowed
        return allowance

    def is_paused(self, step: Optional[int]) -> bool:
        return step is not None and self._paused_until_step is not None and step < self._paused_until_step

    def check_trade(
        self,
        regime: MarketRegime,
        is_arbitrage: bool = False,
        confidence: float = 1.0,
        step: Optional[int] = None,
    ) -> VetoDecision:
        """Decide whether a new trade may be opened right now."""
        metrics = self.get_current_metrics()
        dd = metrics.drawdown
        ceiling = self.ceiling(regime)
        arb_ceiling = self.arbitrage_ceiling(regime)
        limits = {
            'ceiling': ceiling,
            'arbitrage_ceiling': arb_ceiling,
            'max_daily_loss': self.limits.max_daily_loss,
            'min_capital_ratio': self.limits.min_capital_ratio,
        }
        allowance = self.loss_allowance(dd)
        warnings: List[str] = []

        def veto(reason: VetoReason) -> VetoDecision:
            self._log_breach(reason, metrics)
            return VetoDecision(approved=False, veto_reason=reason, loss_allowance=0.0,
                                current_metrics=metrics, limits=limits)

        if is_arbitrage:
            if confidence < float(self.params["min_arbitrage_confidence"]):
                return veto(VetoReason.ARBITRAGE_CONFIDENCE_TOO_LOW)
            if dd > arb_ceiling:
                return veto(VetoReason.ARBITRAGE_CEILING_EXCEEDED)
            if dd > ceiling:
                warnings.append(f"arbitrage recovery trade at {dd:.1%} drawdown")
        else:
            if dd > ceiling:
                return veto(VetoReason.TOTAL_DRAWDOWN_EXCEEDED)
            if self.current_equity < self.limits.min_capital_ratio * self.initial_equity:
                return veto(VetoReason.CAPITAL_FLOOR_BREACHED)
            if metrics.daily_loss > self.limits.max_daily_loss:
                return veto(VetoReason.DAILY_LOSS_EXCEEDED)
            if self.is_paused(step):
                return veto(VetoReason.CONSECUTIVE_LOSSES_EXCEEDED)
            if dd >= float(self.params["warning_fraction"]) * ceiling:
                warnings.append(f"drawdown {dd:.1%} approaching ceiling {ceiling:.1%}")

        return VetoDecision(
            approved=True,
            loss_allowance=allowance,
            current_metrics=metrics,
            limits=limits,
            warnings=warnings,
        )

    def get_breach_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if limit is None:
            return list(self._breaches)
        return list(self._breaches)[-limit:]

    def _log_breach(self, reason: VetoReason, metrics: DrawdownMetrics) -> None:
        self._breaches.append({'reason': reason.value, **metrics.to_dict()})
        logger.debug("[CircuitBreaker] veto %s at %r", reason.value, metrics)

    def __repr__(self) -> str:
        return (f"DrawdownCircuitBreaker(equity=${self.current_equity:.2f}, "
                f"peak=${self.peak_equity:.2f}, dd={self.drawdown:.2%})")
