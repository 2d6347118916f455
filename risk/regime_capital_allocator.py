"""
Regime-aware capital allocation tables

Every risk decision that depends on the market regime reads its numbers
from one RegimeRiskProfile, so sizing, drawdown budgets, stop distances and
holding limits stay consistent with each other.

All values are configurable through the ``regime_profiles`` section of the
engine defaults; UNKNOWN uses the MIXED profile.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from config.engine_defaults import section
from core.state import MarketRegime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegimeRiskProfile:
    """Risk parameters for a single regime."""
    regime: MarketRegime
    position_multiplier: float  # 0.4 - 1.3
    max_asset_weight: float  # 0.15 - 0.35 of equity
    max_trade_fraction: float  # 0.15 - 0.35 of cash
    drawdown_budget: float  # 0.20 - 0.60
    stop_factor: float  # 1.5 - 3.5 x volatility
    hold_factor: float  # scales max holding time
    breaker_scale: float  # scales the arbitrage drawdown exception


class RegimeCapitalAllocator:
    """
    Resolves RegimeRiskProfile objects.

    Args:
        overrides: per-regime overrides, e.g. {"weak_bull": {"max_asset_weight": 0.25}}
    """

    def __init__(self, overrides: Optional[Dict] = None):
        table = section("regime_profiles", overrides)
        self._profiles: Dict[MarketRegime, RegimeRiskProfile] = {}
        for name, values in table.items():
            regime = MarketRegime(name)
            self._profiles[regime] = RegimeRiskProfile(regime=regime, **values)
        missing = [r for r in MarketRegime if r is not MarketRegime.UNKNOWN and r not in self._profiles]
        if missing:
            raise ValueError(f"regime profiles missing for: {[r.value for r in missing]}")

    def profile(self, regime: MarketRegime) -> RegimeRiskProfile:
        return self._profiles[regime.effective()]

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {
            r.value: {
                "position_multiplier": p.position_multiplier,
                "max_asset_weight": p.max_asset_weight,
                "max_trade_fraction": p.max_trade_fraction,
                "drawdown_budget": p.drawdown_budget,
            }
            for r, p in self._profiles.items()
        }
