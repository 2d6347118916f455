"""
storage.py - Trade and run-summary persistence

The engine hands every closed trade and the final run summary to a
TradeStore. Storage is best effort: the engine logs any exception raised
here and keeps simulating.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)


class TradeStore(Protocol):
    def persist_trade(self, trade: Dict[str, Any]) -> None:
        ...

    def persist_run_summary(self, summary: Dict[str, Any]) -> None:
        ...


class InMemoryTradeStore:
    """Keeps persisted records in lists; handy for tests and interactive use."""

    def __init__(self):
        self._lock = threading.Lock()
        self.trades: List[Dict[str, Any]] = []
        self.summaries: List[Dict[str, Any]] = []

    def persist_trade(self, trade: Dict[str, Any]) -> None:
        with self._lock:
            self.trades.append(dict(trade))

    def persist_run_summary(self, summary: Dict[str, Any]) -> None:
        with self._lock:
            self.summaries.append(dict(summary))


class JsonlTradeStore:
    """
    Appends one JSON object per line.

    Trades go to ``<path>``; run summaries go to ``<path stem>.summary.json``.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.summary_path = self.path.with_name(f"{self.path.stem}.summary.json")
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def persist_trade(self, trade: Dict[str, Any]) -> None:
        line = json.dumps(trade, separators=(",", ":"), default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    def persist_run_summary(self, summary: Dict[str, Any]) -> None:
        with self._lock:
            self.summary_path.write_text(json.dumps(summary, indent=2, default=str), encoding="utf-8")
        logger.info("[JsonlTradeStore] run summary written to %s", self.summary_path)
