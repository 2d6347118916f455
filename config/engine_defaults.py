"""Default tuning constants for the decision-and-risk engine.

Values were tuned empirically; components accept a ``params`` dict that is
merged over their section so any of them can be overridden per run.
"""
import copy
from typing import Any, Dict, Optional

DEFAULTS = {
    "regime": {
        "short_window": 20,
        "medium_window": 50,
        "long_window": 100,
        "window_weights": {"short": 0.25, "medium": 0.45, "long": 0.30},
        # weak-trend thresholds per window; strong = weak * strong_multiplier
        "trend_thresholds": {"short": 0.01, "medium": 0.02, "long": 0.03},
        "strong_multiplier": 2.5,
        "reference_universe": 10,
        "small_universe_widening": 0.05,
        "mixed_score_floor": 0.40,
        "true_sideways_confidence": 0.70,
        "low_volatility_ceiling": 0.002,
        "extreme_bear_multiplier": 3.0,
        "turning_point_medium_fraction": 0.40,
        "turning_point_short_fraction": 0.25,
        "turning_point_min_move": 0.005,
        "turning_point_confidence": 0.95,
        "base_cooldown_hours": 3.0,
        "low_stability_cooldown_factor": 1.5,
        "strong_regime_cooldown_factor": 1.5,
        "base_confidence_threshold": 0.60,
        "max_confidence_threshold": 0.90,
        "low_stability_threshold_bump": 0.10,
        "extreme_target_threshold_bump": 0.15,
        "low_stability": 0.50,
        "min_confirmations": 2,
        "stability_window": 10,
    },
    "timeframes": {
        # name: (minutes, periods, weight, priority)
        "table": {
            "1m": (1, 60, 0.05, 6),
            "5m": (5, 48, 0.10, 5),
            "15m": (15, 32, 0.15, 4),
            "1h": (60, 24, 0.25, 3),
            "4h": (240, 18, 0.25, 2),
            "1d": (1440, 14, 0.20, 1),
        },
        "sub_signal_weights": {"trend": 0.40, "momentum": 0.30, "volume": 0.15, "volatility": 0.15},
        "conflict_strength": 0.5,
        "conflict_quality_factor": 0.8,
        "conflict_strength_factor": 0.9,
        "direction_deadband": 0.05,
        "volatility_cap": 0.05,
        "min_multiplier": 0.5,
        "max_multiplier": 2.0,
        "veto_consistency": 0.30,
        "bear_veto_consistency": 0.18,
    },
    "scanner": {
        "weights": {
            "trend": 0.50,
            "momentum": 0.15,
            "rsi_reversal": 0.08,
            "volatility": 0.10,
            "volume": 0.08,
            "consistency": 0.12,
        },
        "bear_multiplier": 0.95,
        "bull_multiplier": 1.10,
        "feature_window": 60,
        "trend_period": 20,
        "momentum_period": 5,
        "rsi_period": 14,
        "volatility_period": 20,
        "volume_period": 20,
        "arbitrage_quality": 0.60,
        "arbitrage_tolerance": 0.20,
        "recovery_drawdown": 0.60,
        "recovery_tolerance": 0.50,
        "top_n": 3,
        "max_recent_trades": 5,
        "recent_trade_window": 24,
        # regime group -> volatility bucket -> win-rate bucket
        "threshold_table": {
            "bull": {"low": {"low": 0.55, "mid": 0.50, "high": 0.45},
                     "normal": {"low": 0.58, "mid": 0.52, "high": 0.48},
                     "high": {"low": 0.62, "mid": 0.57, "high": 0.52}},
            "sideways": {"low": {"low": 0.60, "mid": 0.55, "high": 0.50},
                         "normal": {"low": 0.63, "mid": 0.58, "high": 0.53},
                         "high": {"low": 0.67, "mid": 0.62, "high": 0.57}},
            "bear": {"low": {"low": 0.66, "mid": 0.61, "high": 0.56},
                     "normal": {"low": 0.69, "mid": 0.64, "high": 0.59},
                     "high": {"low": 0.72, "mid": 0.68, "high": 0.63}},
            "mixed": {"low": {"low": 0.62, "mid": 0.57, "high": 0.52},
                      "normal": {"low": 0.65, "mid": 0.60, "high": 0.55},
                      "high": {"low": 0.69, "mid": 0.64, "high": 0.59}},
        },
        "low_vol_bucket": 0.02,
        "high_vol_bucket": 0.04,
        "low_win_rate_bucket": 0.40,
        "high_win_rate_bucket": 0.60,
        "min_portfolio_trades": 5,
        "poor_symbol_win_rate": 0.25,
        "poor_symbol_penalty": 1.40,
        "proven_symbol_win_rate": 0.80,
        "proven_symbol_boost": 0.85,
        "min_symbol_trades": 3,
        "min_threshold": 0.20,
        "max_threshold": 0.95,
    },
    "arbitrage": {
        "lookback": 60,
        "fast_half_life": 5,
        "slow_half_life": 20,
        "z_threshold": 2.0,
        "trend_period": 20,
        "trend_deadband": 0.01,
        "min_success_rate": 0.40,
        "neutral_success_rate": 0.50,
        "reversion_horizon": 5,
        "max_volatility": 0.05,
        "min_correlation": 0.70,
        "return_period": 5,
        "min_deviation": 0.03,
        "min_liquidity": 1000.0,
        "max_pair_volatility": 0.08,
        "min_correction_rate": 0.40,
        "rsi_period": 14,
        "rsi_overbought": 70.0,
        "rsi_oversold": 30.0,
        "short_momentum_period": 3,
        "long_trend_period": 20,
        "min_confidence": 0.50,
        "min_expected_return": 0.005,
        "bear_strictness": 1.30,
        "phase_multipliers": {
            "none": 1.0, "early": 1.2, "mid": 1.35, "late": 1.25, "deep": 1.5, "recovery": 1.1,
        },
        "max_confidence_threshold": 0.95,
        "risk_tier_volatility": {"low": 0.02, "medium": 0.04},
    },
    "regime_profiles": {
        # position multiplier, max asset weight, max trade fraction of cash,
        # drawdown budget, stop-loss volatility factor, max-hold factor,
        # arbitrage breaker ceiling scale
        "strong_bull": {"position_multiplier": 1.3, "max_asset_weight": 0.35, "max_trade_fraction": 0.35,
                        "drawdown_budget": 0.60, "stop_factor": 2.5, "hold_factor": 1.5, "breaker_scale": 1.05},
        "weak_bull": {"position_multiplier": 1.1, "max_asset_weight": 0.30, "max_trade_fraction": 0.30,
                      "drawdown_budget": 0.50, "stop_factor": 2.0, "hold_factor": 1.25, "breaker_scale": 1.03},
        "sideways": {"position_multiplier": 0.8, "max_asset_weight": 0.25, "max_trade_fraction": 0.25,
                     "drawdown_budget": 0.40, "stop_factor": 1.5, "hold_factor": 1.0, "breaker_scale": 1.0},
        "true_sideways": {"position_multiplier": 0.85, "max_asset_weight": 0.25, "max_trade_fraction": 0.25,
                          "drawdown_budget": 0.40, "stop_factor": 1.5, "hold_factor": 1.0, "breaker_scale": 1.0},
        "low_volatility": {"position_multiplier": 0.9, "max_asset_weight": 0.25, "max_trade_fraction": 0.25,
                           "drawdown_budget": 0.40, "stop_factor": 1.8, "hold_factor": 1.0, "breaker_scale": 1.0},
        "mixed": {"position_multiplier": 0.7, "max_asset_weight": 0.20, "max_trade_fraction": 0.20,
                  "drawdown_budget": 0.35, "stop_factor": 2.5, "hold_factor": 1.0, "breaker_scale": 1.0},
        "weak_bear": {"position_multiplier": 0.6, "max_asset_weight": 0.20, "max_trade_fraction": 0.20,
                      "drawdown_budget": 0.30, "stop_factor": 3.0, "hold_factor": 0.75, "breaker_scale": 0.98},
        "strong_bear": {"position_multiplier": 0.5, "max_asset_weight": 0.15, "max_trade_fraction": 0.15,
                        "drawdown_budget": 0.25, "stop_factor": 3.5, "hold_factor": 0.5, "breaker_scale": 0.97},
        "extreme_bear": {"position_multiplier": 0.4, "max_asset_weight": 0.15, "max_trade_fraction": 0.15,
                         "drawdown_budget": 0.20, "stop_factor": 3.5, "hold_factor": 0.5, "breaker_scale": 0.97},
    },
    "sizing": {
        "default_kelly": 0.30,
        "min_kelly": 0.10,
        "max_kelly": 0.80,
        "min_kelly_trades": 5,
        "risk_tier_multipliers": {"low": 1.0, "medium": 0.85, "high": 0.65},
        "reference_volatility": 0.02,
        "min_volatility_multiplier": 0.5,
        "max_volatility_multiplier": 1.2,
        "max_participation": 0.10,
        "min_liquidity_multiplier": 0.3,
        "frequency_decay_per_trade": 0.10,
        "min_frequency_multiplier": 0.5,
        "good_win_rate": 0.60,
        "poor_win_rate": 0.30,
        "good_performance_multiplier": 1.1,
        "poor_performance_multiplier": 0.7,
        "entropy_floor": 0.60,
        "diversification_penalty": 0.80,
        "min_notional": 10.0,
        "max_symbol_risk": 0.15,
        "max_total_risk": 0.60,
        "max_correlation_risk": 0.70,
        "default_stop_distance": 0.05,
        "min_stop_distance": 0.02,
        "good_sharpe": 1.0,
        "budget_boost": 1.2,
        "budget_cut": 0.8,
    },
    "circuit_breaker": {
        # (drawdown reached, further loss allowed as a fraction of equity)
        "tiers": [(0.50, 0.35), (0.70, 0.25), (0.85, 0.15)],
        "arbitrage_ceiling": 0.95,
        "max_arbitrage_ceiling": 0.9999,
        "min_arbitrage_confidence": 0.10,
        "warning_fraction": 0.80,
    },
    "stop_loss": {
        "volatility_windows": (5, 14, 30),
        "volatility_weights": (0.50, 0.30, 0.20),
        "min_trades": 5,
        "new_symbol_factor": 1.5,
        "good_win_rate": 0.65,
        "good_factor": 0.85,
        "poor_win_rate": 0.35,
        "poor_factor": 1.4,
        "holding_breakpoints": [(12, 1.1), (24, 1.2), (48, 1.3), (72, 1.4), (96, 1.5), (120, 1.6)],
        "ml_weights": (0.40, 0.30, 0.30),
        "ml_base": 0.8,
        "ml_span": 0.4,
        "ml_volatility_cap": 0.05,
        "ml_time_horizon": 120,
        "ml_loss_scale": 0.10,
        "floors": {"poor": 0.08, "normal": 0.05, "excellent": 0.03},
        "excellent_min_trades": 5,
        "poor_min_trades": 3,
        "profit_protection_trigger": 0.03,
        "profit_protection_keep": 0.50,
        "var_confidence": 0.95,
        "min_var_points": 5,
        "max_threshold": 0.50,
        "early_exit_loss": 0.05,
        "arbitrage_holding_factor": 0.5,
    },
    "rotation": {
        "weights": {
            "profitability": 0.40,
            "win_rate": 0.25,
            "activity": 0.15,
            "recent_return": 0.10,
            "short_trend": 0.25,
        },
        "recent_period": 20,
        "short_period": 5,
        "activity_trades": 10,
        "penalty_min_trades": 3,
        "penalty_win_rate": 0.30,
        "penalty_factor": 0.5,
        "boost_min_trades": 5,
        "boost_win_rate": 0.60,
        "boost_factor": 1.2,
    },
    "prediction": {
        "lookback": 30,
        "fast_period": 5,
        "slow_period": 20,
    },
}


def get(module_name: str, key: str, default=None):
    return DEFAULTS.get(module_name, {}).get(key, default)


def section(module_name: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return a deep copy of a defaults section with ``overrides`` applied on top."""
    merged = copy.deepcopy(DEFAULTS.get(module_name, {}))
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged
