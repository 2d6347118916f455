"""
precompute.py - Bounded fan-out of per-symbol work

Historical data loading and per-step feature / prediction computation are
independent per symbol, so they are fanned out to a small worker pool:

- at most ``max_concurrency`` calls run at once (asyncio.Semaphore)
- each call runs in a thread via ``run_in_executor`` with an optional timeout
- TransientDataError is retried with exponential backoff
- failures and timeouts are logged and reported, never raised
- ``request_stop()`` cancels in-flight work; ``shutdown(deadline)`` waits a
  bounded time for running calls and raises ShutdownTimeoutError otherwise

Results only ever reach the simulation loop through the returned
BatchResult, so workers never touch portfolio state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from data.market_feed import TransientDataError

logger = logging.getLogger(__name__)


class ShutdownTimeoutError(TimeoutError):
    """Workers were still running when the shutdown deadline passed."""


@dataclass
class BatchResult:
    results: Dict[str, Any] = field(default_factory=dict)
    failures: Dict[str, BaseException] = field(default_factory=dict)
    timed_out: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.failures or self.timed_out or self.cancelled)


class PrecomputeService:
    """
    Per-symbol worker pool for one backtest run.

    Args:
        max_concurrency: Max calls in flight (default 5)
        retry_attempts: Attempts for calls raising TransientDataError
        retry_backoff: Initial backoff in seconds, doubled per attempt
    """

    def __init__(self, max_concurrency: int = 5, retry_attempts: int = 3, retry_backoff: float = 0.05):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self._executor = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="precompute")
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._inflight: Set[asyncio.Future] = set()
        self._stopping = False
        self._closed = False
        self._active = 0
        self._active_lock = threading.Lock()

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def active_workers(self) -> int:
        with self._active_lock:
            return self._active

    def _call(self, fn: Callable[[str], Any], symbol: str) -> Any:
        with self._active_lock:
            self._active += 1
        try:
            return fn(symbol)
        finally:
            with self._active_lock:
                self._active -= 1

    async def _run_one(self, fn: Callable[[str], Any], symbol: str, timeout: Optional[float]) -> Any:
        loop = asyncio.get_running_loop()
        async with self._semaphore:
            attempt = 0
            while True:
                if self._stopping:
                    raise asyncio.CancelledError()
                attempt += 1
                future = loop.run_in_executor(self._executor, self._call, fn, symbol)
                try:
                    return await asyncio.wait_for(future, timeout=timeout)
                except TransientDataError as exc:
                    if attempt >= self.retry_attempts:
                        raise
                    backoff = self.retry_backoff * (2 ** (attempt - 1))
                    logger.warning("[Precompute] %s transient failure (attempt %d/%d): %s, retrying in %.2fs",
                                   symbol, attempt, self.retry_attempts, exc, backoff)
                    await asyncio.sleep(backoff)

    async def run_batch(
        self,
        symbols: Iterable[str],
        fn: Callable[[str], Any],
        timeout: Optional[float] = None,
    ) -> BatchResult:
        """Run ``fn(symbol)`` for every symbol and collect per-symbol outcomes."""
        symbols = list(symbols)
        result = BatchResult()
        if self._stopping or self._closed:
            result.cancelled = symbols
            return result
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)

        tasks = {symbol: asyncio.ensure_future(self._run_one(fn, symbol, timeout)) for symbol in symbols}
        self._inflight.update(tasks.values())
        try:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            self._inflight.difference_update(tasks.values())

        for symbol, task in tasks.items():
            if task.cancelled():
                result.cancelled.append(symbol)
                continue
            exc = task.exception()
            if exc is None:
                result.results[symbol] = task.result()
            elif isinstance(exc, asyncio.TimeoutError):
                logger.warning("[Precompute] %s timed out after %.2fs", symbol, timeout)
                result.timed_out.append(symbol)
            else:
                logger.warning("[Precompute] %s failed: %s", symbol, exc)
                result.failures[symbol] = exc
        return result

    def request_stop(self) -> None:
        """Cancel in-flight work; later batches return immediately."""
        if self._stopping:
            return
        self._stopping = True
        pending = [t for t in self._inflight if not t.done()]
        for task in pending:
            task.cancel()
        logger.info("[Precompute] stop requested, cancelled %d task(s)", len(pending))

    async def shutdown(self, deadline: float = 2.0) -> None:
        """
        Stop the pool, waiting at most ``deadline`` seconds for running calls.

        Raises:
            ShutdownTimeoutError: calls were still running at the deadline
        """
        self.request_stop()
        if self._closed:
            return
        self._closed = True
        give_up_at = time.monotonic() + max(0.0, deadline)
        while self.active_workers and time.monotonic() < give_up_at:
            await asyncio.sleep(0.01)
        still_running = self.active_workers
        self._executor.shutdown(wait=False, cancel_futures=True)
        if still_running:
            raise ShutdownTimeoutError(
                f"{still_running} precompute worker(s) still running after {deadline:.2f}s"
            )
        logger.debug("[Precompute] shutdown complete")
