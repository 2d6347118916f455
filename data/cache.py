"""
cache.py - Advisory caches shared by precompute workers

Feature vectors, predictions and rule decisions are cached per
(symbol, time window). The caches are advisory: a miss, or an entry lost to
cancellation, only means the value is recomputed synchronously.

Each cache is guarded by a read/write lock. Readers share the lock; writers
hold it exclusively only for the dictionary mutation, never while computing
the value.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Iterator, NamedTuple, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheKey(NamedTuple):
    """Composite cache key: symbol plus the window the value was computed over."""
    symbol: str
    window_end: datetime
    window_length: int


class ReadWriteLock:
    """Many concurrent readers or one writer; writers are not starved."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            assert self._readers >= 0
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class AdvisoryCache(Generic[T]):
    """
    Bounded (symbol, window) -> value cache.

    Eviction is first-in-first-out once ``max_entries`` is reached.
    """

    def __init__(self, name: str, max_entries: int = 10_000):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.name = name
        self.max_entries = max_entries
        self._entries: "OrderedDict[CacheKey, T]" = OrderedDict()
        self._rw = ReadWriteLock()
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: CacheKey) -> Optional[T]:
        with self._rw.read_locked():
            value = self._entries.get(key)
        with self._stats_lock:
            if value is None:
                self._misses += 1
            else:
                self._hits += 1
        return value

    def put(self, key: CacheKey, value: T) -> None:
        with self._rw.write_locked():
            self._entries[key] = value
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_or_compute(self, key: CacheKey, compute: Callable[[], T]) -> T:
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key)
        if value is not None:
            return value
        value = compute()
        if value is not None:
            self.put(key, value)
        return value

    def invalidate(self, symbol: str) -> int:
        """Drop every entry for ``symbol``; returns the number removed."""
        with self._rw.write_locked():
            stale = [k for k in self._entries if k.symbol == symbol]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._rw.write_locked():
            self._entries.clear()

    def __len__(self) -> int:
        with self._rw.read_locked():
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        total = hits + misses
        return {
            "name": self.name,
            "entries": len(self),
            "hits": hits,
            "misses": misses,
            "hit_rate": hits / total if total else 0.0,
        }
