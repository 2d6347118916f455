"""
config.py - Backtest configuration loading and validation

Configuration comes from three layers, later layers winning:

1. default_config() - built-in defaults
2. a YAML file (optional)
3. environment variables (optionally from a .env file)

The result is a validated BacktestConfig. Validation failures raise
ConfigError before any simulation state exists.
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


TIMEFRAME_MINUTES = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}

ENV_OVERRIDES = {
    "BACKTEST_INITIAL_CASH": ("backtest", "initial_cash", float),
    "BACKTEST_MAX_CONCURRENCY": ("backtest", "max_concurrency", int),
    "BACKTEST_LOG_LEVEL": ("monitoring", "log_level", str),
}


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are left alone."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConfigError(ValueError):
    """Raised when a backtest configuration is invalid."""


@dataclass
class RiskLimits:
    """
    Portfolio-level risk limits.

    Attributes:
        max_drawdown: Base drawdown ceiling for the circuit breaker (fraction)
        max_daily_loss: Maximum loss within one calendar day (fraction of day-start equity)
        max_consecutive_losses: Losing streak that pauses non-arbitrage trading
        min_capital_ratio: Equity floor as a fraction of initial cash
        loss_cooldown_bars: Bars to pause after a losing streak
    """
    max_drawdown: float = 0.50
    max_daily_loss: float = 0.10
    max_consecutive_losses: int = 5
    min_capital_ratio: float = 0.30
    loss_cooldown_bars: int = 24


@dataclass
class BacktestConfig:
    """Everything a backtest run needs besides its collaborators."""
    symbols: List[str]
    start: datetime
    end: datetime
    strategy: str = "adaptive"
    initial_cash: float = 10_000.0
    commission: float = 0.001
    slippage: float = 0.0
    timeframe: str = "1h"
    take_profit: float = 0.10
    max_holding_periods: int = 168
    min_holding_periods: int = 3
    max_active_symbols: int = 10
    rotation_interval: int = 24
    warmup_bars: int = 30
    max_concurrency: int = 5
    worker_timeout: float = 5.0
    shutdown_grace: float = 2.0
    close_at_end: bool = True
    risk: RiskLimits = field(default_factory=RiskLimits)
    params: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        # providers emit UTC-aware timestamps; range bounds must compare with them
        self.start = _as_utc(self.start)
        self.end = _as_utc(self.end)

    @property
    def bar_minutes(self) -> int:
        return TIMEFRAME_MINUTES[self.timeframe]

    @property
    def bars_per_day(self) -> int:
        return max(1, 1440 // self.bar_minutes)

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot be simulated."""
        if not self.symbols:
            raise ConfigError("symbol universe is empty")
        if len(set(self.symbols)) != len(self.symbols):
            raise ConfigError("symbol universe contains duplicates")
        if self.end <= self.start:
            raise ConfigError(f"invalid date range: {self.start} -> {self.end}")
        if self.initial_cash <= 0:
            raise ConfigError(f"initial_cash must be positive, got {self.initial_cash}")
        if self.commission < 0 or self.commission >= 0.1:
            raise ConfigError(f"commission must be in [0, 0.1), got {self.commission}")
        if self.slippage < 0 or self.slippage >= 0.1:
            raise ConfigError(f"slippage must be in [0, 0.1), got {self.slippage}")
        if self.timeframe not in TIMEFRAME_MINUTES:
            raise ConfigError(f"unknown timeframe '{self.timeframe}'")
        if self.take_profit <= 0:
            raise ConfigError("take_profit must be positive")
        if self.min_holding_periods < 0 or self.max_holding_periods <= 0:
            raise ConfigError("holding periods must be positive")
        if self.min_holding_periods > self.max_holding_periods:
            raise ConfigError("min_holding_periods exceeds max_holding_periods")
        if self.max_active_symbols <= 0 or self.rotation_interval <= 0:
            raise ConfigError("max_active_symbols and rotation_interval must be positive")
        if self.warmup_bars < 2:
            raise ConfigError("warmup_bars must be at least 2")
        if self.max_concurrency <= 0:
            raise ConfigError("max_concurrency must be positive")
        if self.worker_timeout <= 0 or self.shutdown_grace < 0:
            raise ConfigError("worker_timeout must be positive and shutdown_grace non-negative")
        for name in ("max_drawdown", "max_daily_loss", "min_capital_ratio"):
            value = getattr(self.risk, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"risk.{name} must be within [0, 1], got {value}")
        if self.risk.max_drawdown == 0 or self.risk.max_daily_loss == 0:
            raise ConfigError("risk.max_drawdown and risk.max_daily_loss must be non-zero")
        if self.risk.max_consecutive_losses <= 0:
            raise ConfigError("risk.max_consecutive_losses must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbols": list(self.symbols),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "strategy": self.strategy,
            "initial_cash": self.initial_cash,
            "commission": self.commission,
            "timeframe": self.timeframe,
            "take_profit": self.take_profit,
            "max_holding_periods": self.max_holding_periods,
            "max_active_symbols": self.max_active_symbols,
            "risk": {
                "max_drawdown": self.risk.max_drawdown,
                "max_daily_loss": self.risk.max_daily_loss,
                "max_consecutive_losses": self.risk.max_consecutive_losses,
                "min_capital_ratio": self.risk.min_capital_ratio,
            },
        }


def default_config() -> Dict[str, Any]:
    """Built-in configuration tree."""
    return {
        "backtest": {
            "symbols": [],
            "start": None,
            "end": None,
            "strategy": "adaptive",
            "initial_cash": 10_000.0,
            "commission": 0.001,
            "slippage": 0.0,
            "timeframe": "1h",
            "take_profit": 0.10,
            "max_holding_periods": 168,
            "min_holding_periods": 3,
            "max_active_symbols": 10,
            "rotation_interval": 24,
            "warmup_bars": 30,
            "max_concurrency": 5,
            "worker_timeout": 5.0,
            "shutdown_grace": 2.0,
            "close_at_end": True,
        },
        "risk": {
            "max_drawdown": 0.50,
            "max_daily_loss": 0.10,
            "max_consecutive_losses": 5,
            "min_capital_ratio": 0.30,
            "loss_cooldown_bars": 24,
        },
        "engine": {},
        "monitoring": {
            "log_level": "INFO",
            "log_file": None,
        },
    }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _parse_datetime(value: Any, name: str) -> datetime:
    if value is None:
        raise ConfigError(f"backtest.{name} is required")
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"backtest.{name} is not a valid datetime: {value!r}") from exc
    return _as_utc(ts.to_pydatetime())


def _apply_env_overrides(tree: Dict[str, Any]) -> None:
    for env_name, (section_name, key, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        try:
            tree.setdefault(section_name, {})[key] = cast(raw)
        except ValueError as exc:
            raise ConfigError(f"{env_name}={raw!r} is not a valid {cast.__name__}") from exc
        logger.info("Config override from environment: %s.%s", section_name, key)


def load_config_tree(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                     use_env: bool = True) -> Dict[str, Any]:
    """Return the merged configuration tree (defaults <- YAML <- env <- overrides)."""
    tree = default_config()
    if path:
        cfg_path = Path(path)
        if cfg_path.exists():
            with cfg_path.open("r", encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh) or {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"config file {path} must contain a mapping")
            tree = _deep_merge(tree, loaded)
            logger.info("Loaded configuration from %s", cfg_path)
        else:
            logger.warning("Config file %s not found, using defaults", cfg_path)
    if use_env:
        load_dotenv()
        _apply_env_overrides(tree)
    if overrides:
        tree = _deep_merge(tree, overrides)
    return tree


def config_from_tree(tree: Dict[str, Any]) -> BacktestConfig:
    """Build and validate a BacktestConfig from a configuration tree."""
    bt = dict(tree.get("backtest", {}))
    risk_section = tree.get("risk", {}) or {}
    try:
        risk = RiskLimits(**risk_section)
    except TypeError as exc:
        raise ConfigError(f"invalid risk section: {exc}") from exc

    symbols = bt.pop("symbols", None) or []
    if isinstance(symbols, str):
        symbols = [s.strip() for s in symbols.split(",") if s.strip()]
    start = _parse_datetime(bt.pop("start", None), "start")
    end = _parse_datetime(bt.pop("end", None), "end")
    try:
        config = BacktestConfig(
            symbols=list(symbols),
            start=start,
            end=end,
            risk=risk,
            params=copy.deepcopy(tree.get("engine", {}) or {}),
            **bt,
        )
    except TypeError as exc:
        raise ConfigError(f"invalid backtest section: {exc}") from exc
    config.validate()
    return config


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                use_env: bool = True) -> BacktestConfig:
    """Load, merge and validate configuration into a BacktestConfig."""
    return config_from_tree(load_config_tree(path, overrides, use_env=use_env))
