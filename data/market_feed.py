"""
market_feed.py - Historical bar providers

The backtest engine pulls history through the HistoricalDataProvider
protocol. Two providers ship with the project:

- InMemoryDataProvider: bars supplied up front (tests, notebooks)
- CsvDataProvider: one ``<SYMBOL>.csv`` file per symbol in a directory

Providers signal a missing symbol with DataUnavailableError and an I/O
problem with TransientDataError; the engine skips the symbol in both cases.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Protocol

import pandas as pd

from data.candles import Bar, BarProcessor

logger = logging.getLogger(__name__)


class DataUnavailableError(LookupError):
    """No history exists for the requested symbol/range."""


class TransientDataError(IOError):
    """History could not be read right now (I/O, parse or network failure)."""


class HistoricalDataProvider(Protocol):
    def get_historical_bars(self, symbol: str, start: datetime, end: datetime) -> List[Bar]:
        """Return bars for ``symbol`` with start <= timestamp <= end, oldest first."""
        ...


def _slice(bars: Iterable[Bar], start: datetime, end: datetime) -> List[Bar]:
    return [b for b in bars if start <= b.timestamp <= end]


class InMemoryDataProvider:
    """Serves bars from a symbol -> bar list mapping."""

    def __init__(self, bars_by_symbol: Dict[str, List[Bar]]):
        self._bars = {symbol: BarProcessor.clean(bars) for symbol, bars in bars_by_symbol.items()}

    def get_historical_bars(self, symbol: str, start: datetime, end: datetime) -> List[Bar]:
        if symbol not in self._bars:
            raise DataUnavailableError(f"no bars for {symbol}")
        bars = _slice(self._bars[symbol], start, end)
        if not bars:
            raise DataUnavailableError(f"no bars for {symbol} between {start} and {end}")
        return bars

    def symbols(self) -> List[str]:
        return sorted(self._bars)


class CsvDataProvider:
    """
    Reads ``<directory>/<SYMBOL>.csv`` files.

    Expected columns: timestamp, price (or close), volume.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._cache: Dict[str, List[Bar]] = {}

    def _path_for(self, symbol: str) -> Path:
        return self.directory / f"{symbol.replace('/', '_')}.csv"

    def _load(self, symbol: str) -> List[Bar]:
        if symbol in self._cache:
            return self._cache[symbol]
        path = self._path_for(symbol)
        if not path.exists():
            raise DataUnavailableError(f"no data file for {symbol}: {path}")
        try:
            df = pd.read_csv(path)
            bars = BarProcessor.from_frame(symbol, df)
        except (OSError, ValueError, pd.errors.ParserError) as exc:
            raise TransientDataError(f"failed to read {path}: {exc}") from exc
        self._cache[symbol] = bars
        logger.info("[CsvDataProvider] loaded %d bars for %s", len(bars), symbol)
        return bars

    def get_historical_bars(self, symbol: str, start: datetime, end: datetime) -> List[Bar]:
        bars = _slice(self._load(symbol), start, end)
        if not bars:
            raise DataUnavailableError(f"no bars for {symbol} between {start} and {end}")
        return bars
