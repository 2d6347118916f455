"""
Backtesting engine.

Responsibilities:
- Load history for every symbol through a HistoricalDataProvider (fanned out
  to the precompute worker pool; symbols without data are skipped)
- Replay all symbols on one merged timeline, one step per distinct timestamp
- Run the decision pipeline every step and simulate long-only fills
- Record closed trades and the equity curve, persist them through a
  TradeStore and return a BacktestResult with metrics

Per-step order (after the warm-up):
    advance bars -> precompute features / predictions / timeframe signals
    -> regime update -> stop-loss exits -> rotation -> circuit-breaker
    equity update -> scan -> breaker check + size -> execute -> equity sample

Concurrency contract:
- Only the simulation loop (a single coroutine) mutates portfolio state.
- Precompute workers read immutable price arrays and write only to the
  advisory caches; their results reach the loop through BatchResult.
- Any exception raised while deciding a step is logged and the step makes no
  trade. Storage failures are logged and never stop the run.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ai.coin_rotation import CoinRotationSelector
from ai.ml_edge_engine import MLEdgeEngine, MLSignal
from ai.regime_classifier import RegimeClassifier
from backtesting.portfolio import Portfolio
from backtesting.precompute import PrecomputeService, ShutdownTimeoutError
from backtesting.reports import summarize_results, symbol_statistics
from core.config import BacktestConfig
from core.state import MarketRegime, PerformanceBook, RegimeState, RegimeTransition
from data.cache import AdvisoryCache, CacheKey
from data.candles import Bar
from data.market_feed import DataUnavailableError, HistoricalDataProvider
from data.storage import TradeStore
from monitoring.logger import LoggerManager
from monitoring.metrics import MetricsCollector, TradeRecord
from risk.drawdown_guard import DrawdownCircuitBreaker
from risk.portfolio_risk_manager import PortfolioRiskManager
from risk.position_sizing import RiskAndPositionSizer
from risk.regime_capital_allocator import RegimeCapitalAllocator
from risk.stop_loss import AdaptiveStopLossEngine, ExitReason
from strategies.arbitrage import ArbitrageDetector
from strategies.base import Opportunity
from strategies.features import FeatureVector, build_features
from strategies.opportunity_scanner import OpportunityScanner, ScanContext
from strategies.timeframe_coordinator import CoordinatedSignal, TimeframeSignalCoordinator

logger = logging.getLogger(__name__)


class BacktestError(RuntimeError):
    pass


@dataclass
class BacktestResult:
    trades: List[TradeRecord]
    equity_curve: List[Tuple[datetime, float]]
    daily_equity: pd.Series
    metrics: Dict[str, Any]
    symbol_stats: Dict[str, Dict[str, Any]]
    regime_transitions: List[RegimeTransition]
    skipped_symbols: Dict[str, str] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics,
            "symbol_stats": self.symbol_stats,
            "regime_transitions": [t.to_dict() for t in self.regime_transitions],
            "skipped_symbols": self.skipped_symbols,
        }


@dataclass
class _SymbolData:
    timestamps: List[datetime]
    prices: np.ndarray
    volumes: np.ndarray

    def upto(self, ts: datetime) -> int:
        """Number of bars with timestamp <= ts."""
        return bisect.bisect_right(self.timestamps, ts)


@dataclass
class _Precomputed:
    features: FeatureVector
    prediction: Optional[MLSignal]
    coordinated: CoordinatedSignal


class _BacktestRun:
    """Components and mutable state of one run; only the simulation loop touches it."""

    def __init__(
        self,
        config: BacktestConfig,
        data: Dict[str, _SymbolData],
        service: PrecomputeService,
        monitor: LoggerManager,
        store: Optional[TradeStore],
    ):
        params = config.params or {}
        self.config = config
        self.data = data
        self.service = service
        self.monitor = monitor
        self.store = store
        self.universe = [s for s in config.symbols if s in data]

        allocator = RegimeCapitalAllocator(params.get("regime_profiles"))
        self.classifier = RegimeClassifier(params.get("regime"))
        self.coordinator = TimeframeSignalCoordinator(config.bar_minutes, params.get("timeframes"))
        self.predictor = MLEdgeEngine(params.get("prediction"))
        self.scanner = OpportunityScanner(params.get("scanner"), ArbitrageDetector(params.get("arbitrage")))
        self.sizer = RiskAndPositionSizer(
            params.get("sizing"),
            allocator,
            PortfolioRiskManager(params.get("sizing"), allocator),
            commission=(1.0 + config.commission) * (1.0 + config.slippage) - 1.0,
        )
        self.stops = AdaptiveStopLossEngine(
            params.get("stop_loss"),
            allocator,
            take_profit=config.take_profit,
            max_holding_periods=config.max_holding_periods,
            min_holding_periods=config.min_holding_periods,
            bars_per_day=config.bars_per_day,
        )
        self.rotation = CoinRotationSelector(
            config.max_active_symbols, config.rotation_interval, config.initial_cash, params.get("rotation"),
        )
        self.breaker = DrawdownCircuitBreaker(
            config.initial_cash, config.risk, params.get("circuit_breaker"), allocator,
        )

        self.portfolio = Portfolio(config.initial_cash, config.commission, config.slippage)
        self.book = PerformanceBook()
        self.regime_state = RegimeState(int(self.classifier.params["stability_window"]))
        self.metrics = MetricsCollector()
        self.caches = {
            "features": AdvisoryCache("features"),
            "predictions": AdvisoryCache("predictions"),
            "decisions": AdvisoryCache("decisions"),
        }
        self.recent_entries: Deque[Tuple[int, str]] = deque()
        self.recent_window = int(self.scanner.params["recent_trade_window"])
        self.active = self.rotation.initial_active(self.universe)
        self.last_prices: Dict[str, float] = {}
        self.histories: Dict[str, np.ndarray] = {}
        self.volumes: Dict[str, np.ndarray] = {}

    # -------------------------
    # Bookkeeping
    # -------------------------
    def advance(self, ts: datetime) -> None:
        """Expose bars up to ``ts`` and age open positions that received a new bar."""
        for symbol in self.universe:
            d = self.data[symbol]
            n = d.upto(ts)
            if n == 0:
                continue
            self.histories[symbol] = d.prices[:n]
            self.volumes[symbol] = d.volumes[:n]
            self.last_prices[symbol] = float(d.prices[n - 1])
            state = self.portfolio.state(symbol)
            state.index = n - 1
            if d.timestamps[n - 1] == ts:
                state.mark(self.last_prices[symbol])

    def close(self, symbol: str, ts: datetime, step: int, reason: ExitReason) -> TradeRecord:
        regime = self.regime_state.current
        trade = self.portfolio.close_position(symbol, self.last_prices[symbol], ts, step, reason.value, regime.value)
        self.book.record_close(symbol, trade.pnl, trade.return_pct)
        self.breaker.record_trade_result(trade.pnl, step)
        self.metrics.record_trade(trade)
        self.monitor.log_trade("trade.close", trade.to_dict())
        self.persist("persist_trade", trade.to_dict())
        return trade

    def persist(self, method: str, payload: Dict[str, Any]) -> None:
        if self.store is None:
            return
        try:
            getattr(self.store, method)(payload)
        except Exception as exc:
            self.monitor.log_error("storage.failed", f"{method}: {exc}", {"method": method}, level="WARNING")

    def record_equity(self, ts: datetime) -> None:
        self.metrics.record_equity(ts, self.portfolio.equity(self.last_prices))

    # -------------------------
    # Decision phase
    # -------------------------
    def _compute(self, symbol: str, ts: datetime) -> _Precomputed:
        prices, vols = self.histories[symbol], self.volumes[symbol]
        key = CacheKey(symbol, ts, int(prices.size))
        return _Precomputed(
            features=self.caches["features"].get_or_compute(
                key, lambda: build_features(prices, vols, self.scanner.params)),
            prediction=self.caches["predictions"].get_or_compute(key, lambda: self.predictor.predict(prices)),
            coordinated=self.caches["decisions"].get_or_compute(
                key, lambda: self.coordinator.coordinate(prices, vols)),
        )

    async def precompute(self, ts: datetime) -> Dict[str, _Precomputed]:
        targets = sorted((set(self.active) | set(self.portfolio.open_symbols())) & set(self.histories))
        batch = await self.service.run_batch(
            targets, lambda symbol: self._compute(symbol, ts), timeout=self.config.worker_timeout,
        )
        pre = dict(batch.results)
        if not self.service.stopping:
            for symbol in targets:
                if symbol not in pre:
                    pre[symbol] = self._compute(symbol, ts)
        return pre

    def update_regime(self, ts: datetime) -> MarketRegime:
        transition = self.classifier.update(self.regime_state, self.histories, ts)
        if transition is not None:
            self.monitor.log_event("regime.transition", transition.to_dict())
        return self.regime_state.current

    def apply_exits(self, ts: datetime, step: int, regime: MarketRegime) -> None:
        for symbol in self.portfolio.open_symbols():
            state = self.portfolio.state(symbol)
            decision = self.stops.evaluate(
                state.snapshot(), self.last_prices[symbol], self.histories[symbol], regime, self.book.get(symbol),
            )
            if decision.should_exit:
                self.close(symbol, ts, step, decision.reason)

    def apply_rotation(self, ts: datetime, step: int) -> None:
        if not self.rotation.due(step):
            return
        plan = self.rotation.rotate(
            step, self.universe, self.histories, self.book, self.active, self.portfolio.open_symbols(),
        )
        for symbol in plan.demoted:
            self.close(symbol, ts, step, ExitReason.ROTATION)
        if plan.changed:
            self.monitor.log_event("rotation.applied", plan.to_dict())
        self.active = plan.active

    def scan(self, ts: datetime, step: int, regime: MarketRegime, pre: Dict[str, _Precomputed]):
        while self.recent_entries and step - self.recent_entries[0][0] >= self.recent_window:
            self.recent_entries.popleft()
        symbols = [s for s in self.active if s in self.histories]
        ctx = ScanContext(
            timestamp=ts,
            regime=regime,
            prices={s: self.histories[s] for s in symbols},
            volumes={s: self.volumes[s] for s in symbols},
            open_positions=set(self.portfolio.open_symbols()),
            features={s: pre[s].features for s in symbols if s in pre},
            coordinated={s: pre[s].coordinated for s in symbols if s in pre},
            predictions={s: pre[s].prediction for s in symbols if s in pre},
            performance=self.book,
            recent_trades=len(self.recent_entries),
            drawdown=self.breaker.drawdown,
        )
        return self.scanner.scan(ctx)

    def execute(self, ts: datetime, step: int, regime: MarketRegime, opportunity: Opportunity,
                threshold: Optional[float], equity: float) -> bool:
        symbol = opportunity.symbol
        veto = self.breaker.check_trade(regime, opportunity.is_arbitrage, opportunity.confidence, step)
        sizing = self.sizer.size(
            opportunity,
            equity=equity,
            cash=self.portfolio.cash,
            regime=regime,
            veto=veto,
            positions=self.portfolio.exposures(self.last_prices),
            prices=self.histories,
            volumes=self.volumes,
            symbol_record=self.book.get(symbol),
            portfolio_record=self.book.portfolio(),
            recent_symbol_trades=sum(1 for _, s in self.recent_entries if s == symbol),
        )
        if not sizing.approved:
            self.monitor.log_event("risk.rejected", {
                "symbol": symbol,
                "origin": opportunity.origin.label(),
                "reason": sizing.rejection_reason,
                "score": opportunity.score,
                "drawdown": self.breaker.drawdown,
            }, level="DEBUG")
            return False

        state = self.portfolio.open_position(
            symbol, sizing.quantity, self.last_prices[symbol], ts, step, opportunity.origin,
            stop_distance=sizing.stop_distance, regime=regime.value,
        )
        self.recent_entries.append((step, symbol))
        self.monitor.log_trade("trade.open", {
            "symbol": symbol,
            "timestamp": ts.isoformat(),
            "price": state.entry_price,
            "quantity": state.quantity,
            "notional": state.allocated,
            "commission": state.entry_commission,
            "origin": opportunity.origin.label(),
            "score": opportunity.score,
            "threshold": threshold,
            "regime": regime.value,
        })
        return True

    async def step(self, ts: datetime, step: int) -> None:
        pre = await self.precompute(ts)
        regime = self.update_regime(ts)
        self.apply_exits(ts, step, regime)
        self.apply_rotation(ts, step)
        equity = self.portfolio.equity(self.last_prices)
        self.breaker.update_equity(equity, ts)
        result = self.scan(ts, step, regime, pre)
        if result.selected is not None:
            self.execute(ts, step, regime, result.selected, result.threshold, equity)


class BacktestEngine:
    """
    Async multi-symbol backtest engine.

    Public API:
      - await run(config) -> BacktestResult
      - request_stop(): finish the current step, close positions and return

    Args:
        provider: history source
        store: optional trade / run-summary sink
        monitor: structured event logger (a private one is created if omitted)
    """

    def __init__(
        self,
        provider: HistoricalDataProvider,
        store: Optional[TradeStore] = None,
        monitor: Optional[LoggerManager] = None,
    ):
        self.provider = provider
        self.store = store
        self.monitor = monitor or LoggerManager()
        self._running = False
        self._stop_requested = False
        self._service: Optional[PrecomputeService] = None

    def request_stop(self) -> None:
        self._stop_requested = True
        if self._service is not None:
            self._service.request_stop()

    async def run(self, config: BacktestConfig) -> BacktestResult:
        config.validate()
        if self._running:
            raise BacktestError("Backtest already running")
        self._running = True
        self._stop_requested = False
        service = PrecomputeService(max_concurrency=config.max_concurrency)
        self._service = service
        try:
            return await self._run(config, service)
        finally:
            try:
                await service.shutdown(config.shutdown_grace)
            except ShutdownTimeoutError as exc:
                self.monitor.log_error("shutdown.timeout", str(exc), level="WARNING")
            self._service = None
            self._running = False

    async def _load(self, config: BacktestConfig, service: PrecomputeService) -> Tuple[Dict[str, _SymbolData], Dict[str, str]]:
        def fetch(symbol: str) -> List[Bar]:
            return self.provider.get_historical_bars(symbol, config.start, config.end)

        batch = await service.run_batch(config.symbols, fetch, timeout=config.worker_timeout)
        skipped: Dict[str, str] = {}
        for symbol, exc in batch.failures.items():
            kind = "unavailable" if isinstance(exc, DataUnavailableError) else "error"
            skipped[symbol] = f"{kind}: {exc}"
        for symbol in batch.timed_out:
            skipped[symbol] = "timeout"
        for symbol in batch.cancelled:
            skipped[symbol] = "cancelled"

        data: Dict[str, _SymbolData] = {}
        for symbol in config.symbols:
            if symbol in skipped:
                continue
            bars = batch.results.get(symbol)
            if not bars:
                skipped[symbol] = "unavailable: no bars"
                continue
            data[symbol] = _SymbolData(
                timestamps=[b.timestamp for b in bars],
                prices=np.array([b.price for b in bars], dtype=float),
                volumes=np.array([b.volume for b in bars], dtype=float),
            )
        for symbol, reason in skipped.items():
            self.monitor.log_event("symbol.skipped", {"symbol": symbol, "reason": reason}, level="WARNING")
        return data, skipped

    async def _run(self, config: BacktestConfig, service: PrecomputeService) -> BacktestResult:
        self.monitor.log_event("backtest.start", config.to_dict())
        data, skipped = await self._load(config, service)
        if not data:
            raise BacktestError("no symbol has data in the requested range")

        run = _BacktestRun(config, data, service, self.monitor, self.store)
        timeline = sorted({ts for d in data.values() for ts in d.timestamps})
        for step, ts in enumerate(timeline):
            if self._stop_requested:
                logger.info("[BacktestEngine] stop requested at step %d", step)
                break
            run.advance(ts)
            if step >= config.warmup_bars:
                try:
                    await run.step(ts, step)
                except Exception as exc:
                    logger.error("[BacktestEngine] step %d (%s) failed, no trade this step: %s",
                                 step, ts.isoformat(), exc, exc_info=True)
            run.record_equity(ts)

        final_ts = max(ts for ts, _ in run.metrics.equity_curve()) if run.metrics.equity_curve() else timeline[-1]
        if config.close_at_end and run.portfolio.open_symbols():
            for symbol in run.portfolio.open_symbols():
                run.close(symbol, final_ts, len(timeline), ExitReason.END_OF_BACKTEST)
            run.record_equity(final_ts)

        trades = run.metrics.trades
        equity_curve = run.metrics.equity_curve()
        metrics = summarize_results(trades, equity_curve, config.initial_cash)
        metrics["final_regime"] = run.regime_state.current.value
        metrics["cache_stats"] = {name: c.stats() for name, c in run.caches.items()}
        result = BacktestResult(
            trades=trades,
            equity_curve=equity_curve,
            daily_equity=run.metrics.daily_equity(),
            metrics=metrics,
            symbol_stats=symbol_statistics(trades),
            regime_transitions=run.regime_state.transitions(),
            skipped_symbols=skipped,
        )
        run.persist("persist_run_summary", {"config": config.to_dict(), **result.summary()})
        self.monitor.log_event("backtest.complete", {
            "trades": len(trades),
            "ending_equity": metrics["ending_equity"],
            "total_return": metrics["total_return"],
            "max_drawdown": metrics["max_drawdown"],
        })
        return result


def run_backtest(
    config: BacktestConfig,
    provider: HistoricalDataProvider,
    store: Optional[TradeStore] = None,
    monitor: Optional[LoggerManager] = None,
) -> BacktestResult:
    """Synchronous wrapper around BacktestEngine.run."""
    return asyncio.run(BacktestEngine(provider, store, monitor).run(config))
