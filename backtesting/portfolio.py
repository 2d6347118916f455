"""
Simulated long-only portfolio.

Owns cash and per-symbol position state for one backtest run. Only the
simulation loop mutates it; precompute workers never see it.

Accounting:
- buy:  cash -= qty * price + entry commission
- sell: cash += qty * price - exit commission
- closed-trade PnL = (exit - entry) * qty - (entry commission + exit commission)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from monitoring.metrics import TradeRecord
from risk.portfolio_risk_manager import PositionExposure
from risk.stop_loss import PositionSnapshot
from strategies.base import OpportunityOrigin

logger = logging.getLogger(__name__)

_CASH_EPSILON = 1e-6


@dataclass
class SymbolState:
    """Per-symbol position and bookkeeping."""
    symbol: str
    quantity: float = 0.0
    allocated: float = 0.0
    entry_price: float = 0.0
    entry_time: Optional[datetime] = None
    entry_commission: float = 0.0
    holding_bars: int = 0
    last_trade_index: Optional[int] = None
    peak_price: float = 0.0
    stop_distance: float = 0.0
    origin: Optional[OpportunityOrigin] = None
    entry_regime: str = ""
    index: int = -1

    @property
    def is_open(self) -> bool:
        return self.quantity > 0

    def snapshot(self) -> PositionSnapshot:
        return PositionSnapshot(
            symbol=self.symbol,
            entry_price=self.entry_price,
            peak_price=self.peak_price,
            holding_bars=self.holding_bars,
            origin=self.origin or OpportunityOrigin.signal(),
        )

    def mark(self, price: float) -> None:
        """Advance one bar for an open position."""
        if self.is_open:
            self.holding_bars += 1
            self.peak_price = max(self.peak_price, price)

    def clear(self) -> None:
        self.quantity = 0.0
        self.allocated = 0.0
        self.entry_price = 0.0
        self.entry_time = None
        self.entry_commission = 0.0
        self.holding_bars = 0
        self.peak_price = 0.0
        self.stop_distance = 0.0
        self.origin = None
        self.entry_regime = ""


class Portfolio:
    """
    Cash plus a SymbolState per symbol.

    Args:
        initial_cash: Starting cash
        commission: Fractional commission charged on entry and exit notional
        slippage: Fractional adverse price adjustment on fills
    """

    def __init__(self, initial_cash: float, commission: float = 0.0, slippage: float = 0.0):
        if initial_cash <= 0:
            raise ValueError("initial_cash must be positive")
        self.initial_cash = float(initial_cash)
        self.cash = float(initial_cash)
        self.commission = float(commission)
        self.slippage = float(slippage)
        self.states: Dict[str, SymbolState] = {}

    def state(self, symbol: str) -> SymbolState:
        if symbol not in self.states:
            self.states[symbol] = SymbolState(symbol)
        return self.states[symbol]

    def open_symbols(self) -> List[str]:
        return sorted(s for s, st in self.states.items() if st.is_open)

    def market_value(self, prices: Mapping[str, float]) -> float:
        total = 0.0
        for symbol, st in self.states.items():
            if st.is_open:
                total += st.quantity * prices.get(symbol, st.entry_price)
        return total

    def equity(self, prices: Mapping[str, float]) -> float:
        return self.cash + self.market_value(prices)

    def exposures(self, prices: Mapping[str, float]) -> Dict[str, PositionExposure]:
        return {
            symbol: PositionExposure(symbol, st.quantity * prices.get(symbol, st.entry_price), st.stop_distance)
            for symbol, st in self.states.items()
            if st.is_open
        }

    def open_position(
        self,
        symbol: str,
        quantity: float,
        price: float,
        timestamp: datetime,
        step: int,
        origin: OpportunityOrigin,
        stop_distance: float = 0.0,
        regime: str = "",
    ) -> SymbolState:
        if quantity <= 0 or price <= 0:
            raise ValueError("quantity and price must be positive")
        st = self.state(symbol)
        if st.is_open:
            raise ValueError(f"{symbol} already has an open position")
        fill = price * (1.0 + self.slippage)
        notional = quantity * fill
        commission = notional * self.commission
        if notional + commission > self.cash + _CASH_EPSILON:
            raise ValueError(f"insufficient cash for {symbol}: need {notional + commission:.2f}, have {self.cash:.2f}")
        self.cash -= notional + commission
        assert self.cash >= -_CASH_EPSILON

        st.quantity = quantity
        st.allocated = notional
        st.entry_price = fill
        st.entry_time = timestamp
        st.entry_commission = commission
        st.holding_bars = 0
        st.last_trade_index = step
        st.peak_price = fill
        st.stop_distance = stop_distance
        st.origin = origin
        st.entry_regime = regime
        logger.debug("[Portfolio] open %s qty=%.6f @ %.6f commission=%.4f", symbol, quantity, fill, commission)
        return st

    def close_position(
        self,
        symbol: str,
        price: float,
        timestamp: datetime,
        step: int,
        reason: str,
        regime: str = "",
    ) -> TradeRecord:
        st = self.states.get(symbol)
        if st is None or not st.is_open:
            raise ValueError(f"{symbol} has no open position")
        fill = price * (1.0 - self.slippage)
        proceeds = st.quantity * fill
        exit_commission = proceeds * self.commission
        self.cash += proceeds - exit_commission

        pnl = (fill - st.entry_price) * st.quantity - (st.entry_commission + exit_commission)
        trade = TradeRecord(
            trade_id=uuid.uuid4().hex,
            symbol=symbol,
            entry_time=st.entry_time,
            exit_time=timestamp,
            entry_price=st.entry_price,
            exit_price=fill,
            quantity=st.quantity,
            entry_commission=st.entry_commission,
            exit_commission=exit_commission,
            pnl=pnl,
            return_pct=pnl / st.allocated if st.allocated > 0 else 0.0,
            holding_bars=st.holding_bars,
            exit_reason=reason,
            origin=st.origin.label() if st.origin else "signal",
            regime=regime or st.entry_regime,
        )
        logger.debug("[Portfolio] close %s @ %.6f pnl=%.4f (%s)", symbol, fill, pnl, reason)
        st.clear()
        st.last_trade_index = step
        return trade
