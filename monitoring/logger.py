"""
Structured event logging for backtest runs.

Responsibilities:
- Log trades, errors and engine events (regime transitions, rejections,
  skipped symbols, rotations) as an event name plus a compact JSON payload.
- Configurable level and handlers (console, rotating file).
- Keep a bounded in-memory list of recent structured records so a run can
  be inspected without parsing log files.
- Redact sensitive fields if they ever appear in a payload.

Usage:
    from monitoring.logger import LoggerManager

    mgr = LoggerManager()
    mgr.configure(level="INFO", log_file="logs/backtest.log")
    mgr.log_event("backtest.start", {"symbols": ["BTC/USDT"], "initial_cash": 10000})
    mgr.log_trade("trade.close", {"symbol": "BTC/USDT", "pnl": 12.5})
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import threading
import time
from collections import deque
from typing import Any, Dict, Iterable, List, Optional

_DEFAULT_SENSITIVE_KEYS = frozenset({"api_key", "secret", "password", "private_key", "token"})

_DEFAULT_RECENT_CACHE_SIZE = 500

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _as_kv_str(event: str, payload: Optional[Dict[str, Any]]) -> str:
    """Return ``event`` followed by the payload as compact JSON."""
    if not payload:
        return event
    return f"{event} {json.dumps(payload, separators=(',', ':'), default=str)}"


def _level(level: str | int) -> int:
    return level if isinstance(level, int) else getattr(logging, str(level).upper(), logging.INFO)


def scrub_secrets(payload: Optional[Dict[str, Any]], sensitive_keys: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
    """
    Return a shallow copy of payload with sensitive fields redacted.

    Args:
        payload: structured payload dictionary (may be None)
        sensitive_keys: optional iterable of keys to redact (case-insensitive)
    """
    if payload is None:
        return None
    keys = {k.lower() for k in (sensitive_keys or _DEFAULT_SENSITIVE_KEYS)}
    return {k: ("<REDACTED>" if k.lower() in keys else v) for k, v in payload.items()}


class LoggerManager:
    """
    Thread-safe structured logger.

    Provides:
    - configure(level, log_file, max_bytes, backup_count, console)
    - log_event(event, payload, level)
    - log_trade(event, trade)
    - log_error(event, message, payload, exc_info)
    - get_recent(limit, event)
    """

    def __init__(self, name: str = "backtest.monitor", recent_size: int = _DEFAULT_RECENT_CACHE_SIZE):
        self._name = name
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self._name)
        self._recent: deque = deque(maxlen=recent_size)

    def configure(
        self,
        level: str | int = "INFO",
        log_file: Optional[str] = None,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        console: bool = True,
    ) -> None:
        """
        Configure handlers and level (thread-safe, replaces earlier handlers).

        Args:
            level: logging level name or int
            log_file: optional path to rotating log file
            max_bytes: rotation size in bytes
            backup_count: number of rotated files to keep
            console: enable console handler
        """
        with self._lock:
            lvl = _level(level)
            self._logger.setLevel(lvl)
            self._logger.propagate = False
            for h in list(self._logger.handlers):
                self._logger.removeHandler(h)
                h.close()

            handlers: List[logging.Handler] = []
            if console:
                handlers.append(logging.StreamHandler())
            if log_file:
                handlers.append(logging.handlers.RotatingFileHandler(
                    log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"))
            for h in handlers:
                h.setLevel(lvl)
                h.setFormatter(logging.Formatter(_FORMAT))
                self._logger.addHandler(h)
            self._logger.debug("logger.configured level=%s file=%s", logging.getLevelName(lvl), bool(log_file))

    def _record_recent(self, kind: str, event: str, payload: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            self._recent.appendleft({"ts": time.time(), "kind": kind, "event": event, "payload": payload})

    def get_recent(self, limit: Optional[int] = None, event: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent structured records first, optionally filtered by event name."""
        with self._lock:
            records = [r for r in self._recent if event is None or r["event"] == event]
        return records if limit is None else records[:limit]

    def clear_recent(self) -> None:
        with self._lock:
            self._recent.clear()

    def log_event(self, event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
        """
        Log an engine event with a structured payload.

        Args:
            event: short event name, e.g. "regime.transition"
            payload: optional structured payload (will be scrubbed)
            level: log level
        """
        payload_safe = scrub_secrets(payload)
        self._logger.log(_level(level), _as_kv_str(event, payload_safe),
                         extra={"event": event, "payload": payload_safe})
        self._record_recent("event", event, payload_safe)

    def log_trade(self, event: str, trade: Dict[str, Any]) -> None:
        """Log a trade lifecycle event (``trade.open`` / ``trade.close``) at INFO."""
        trade_safe = scrub_secrets(trade)
        self._logger.info(_as_kv_str(event, trade_safe), extra={"event": event, "payload": trade_safe})
        self._record_recent("trade", event, trade_safe)

    def log_error(self, event: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None,
                  exc_info: Any = None, level: str | int = "ERROR") -> None:
        """
        Log an error or exception.

        Args:
            event: short error event name
            message: human-readable message
            payload: optional structured payload
            exc_info: exception info (True, exception instance, or None)
            level: log level, ERROR unless the failure is non-fatal
        """
        payload_safe = scrub_secrets(payload)
        full_msg = f"{event} {message or ''}".strip()
        self._logger.log(_level(level), _as_kv_str(full_msg, payload_safe), exc_info=exc_info,
                         extra={"event": event, "payload": payload_safe})
        self._record_recent("error", event, {"message": message, "payload": payload_safe})

    def get_logger(self) -> logging.Logger:
        return self._logger


_default_manager = LoggerManager()


def get_manager() -> LoggerManager:
    return _default_manager


def configure(level: str | int = "INFO", log_file: Optional[str] = None, **kwargs) -> None:
    """Configure the module-level manager."""
    _default_manager.configure(level=level, log_file=log_file, **kwargs)


def log_event(event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
    _default_manager.log_event(event, payload, level)


def log_trade(event: str, trade: Dict[str, Any]) -> None:
    _default_manager.log_trade(event, trade)


def log_error(event: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None, exc_info: Any = None) -> None:
    _default_manager.log_error(event, message, payload, exc_info)
