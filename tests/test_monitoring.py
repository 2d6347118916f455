"""
test_monitoring.py - Tests for structured logging and the metrics collector
"""

import logging
from datetime import date, datetime, timedelta, timezone

import pytest

from monitoring.logger import LoggerManager, scrub_secrets
from monitoring.metrics import MetricsCollector, TradeRecord

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def closed_trade(pnl, hours=1):
    return TradeRecord(
        trade_id=f"t{hours}", symbol="A", entry_time=T0, exit_time=T0 + timedelta(hours=hours),
        entry_price=100.0, exit_price=101.0, quantity=1.0, entry_commission=0.1, exit_commission=0.1,
        pnl=pnl, return_pct=pnl / 100.0, holding_bars=hours, exit_reason="take_profit",
        origin="signal", regime="sideways",
    )


class TestLoggerManager:
    """Structured events, recent cache and redaction."""

    def test_recent_records_newest_first(self):
        mgr = LoggerManager("test.monitor.recent", recent_size=3)
        for i in range(4):
            mgr.log_event("tick", {"i": i})
        mgr.log_trade("trade.open", {"symbol": "A"})

        recent = mgr.get_recent()
        assert len(recent) == 3
        assert recent[0]["event"] == "trade.open"
        assert recent[0]["kind"] == "trade"
        assert [r["payload"]["i"] for r in mgr.get_recent(event="tick")] == [3, 2]
        assert len(mgr.get_recent(limit=1)) == 1

        mgr.clear_recent()
        assert mgr.get_recent() == []

    def test_secrets_are_redacted(self):
        mgr = LoggerManager("test.monitor.scrub")
        mgr.log_event("config", {"api_key": "abc", "symbols": ["A"]})

        payload = mgr.get_recent(event="config")[0]["payload"]
        assert payload == {"api_key": "<REDACTED>", "symbols": ["A"]}
        assert scrub_secrets(None) is None
        assert scrub_secrets({"Token": "x"}) == {"Token": "<REDACTED>"}

    def test_log_error_records_message(self):
        mgr = LoggerManager("test.monitor.error")
        mgr.log_error("storage.failed", "disk full", {"method": "persist_trade"}, level="WARNING")

        record = mgr.get_recent(event="storage.failed")[0]
        assert record["kind"] == "error"
        assert record["payload"]["message"] == "disk full"

    def test_configure_sets_level_and_file(self, tmp_path):
        mgr = LoggerManager("test.monitor.configure")
        log_file = tmp_path / "backtest.log"
        mgr.configure(level="WARNING", log_file=str(log_file), console=False)

        mgr.log_event("quiet", {"x": 1})
        mgr.log_event("loud", {"x": 2}, level="ERROR")
        for handler in mgr.get_logger().handlers:
            handler.flush()

        assert mgr.get_logger().level == logging.WARNING
        text = log_file.read_text(encoding="utf-8")
        assert "loud" in text
        assert "quiet" not in text
        # events below the level still reach the recent cache
        assert mgr.get_recent(event="quiet")

        mgr.configure(level="INFO", console=False)
        assert len(mgr.get_logger().handlers) == 0


class TestMetricsCollector:
    """Trade and equity recording."""

    def test_overall_metrics(self):
        collector = MetricsCollector()
        collector.record_trade(closed_trade(5.0))
        collector.record_trade(closed_trade(-2.0, hours=2))
        for i, equity in enumerate([100.0, 120.0, 90.0, 110.0]):
            collector.record_equity(T0 + timedelta(hours=i), equity)

        overall = collector.get_overall_metrics()
        assert overall["total_trades"] == 2
        assert overall["wins"] == 1
        assert overall["realized_pnl"] == pytest.approx(3.0)
        assert overall["max_drawdown_abs"] == pytest.approx(30.0)
        assert overall["max_drawdown_pct"] == pytest.approx(0.25)

    def test_out_of_order_equity_is_sorted(self):
        collector = MetricsCollector()
        collector.record_equity(T0 + timedelta(hours=2), 2.0)
        collector.record_equity(T0, 0.0)
        collector.record_equity(T0 + timedelta(hours=1), 1.0)
        assert [eq for _, eq in collector.equity_curve()] == [0.0, 1.0, 2.0]

    def test_daily_views(self):
        collector = MetricsCollector()
        collector.record_equity(T0, 100.0)
        collector.record_equity(T0 + timedelta(hours=23), 105.0)
        collector.record_equity(T0 + timedelta(days=1), 103.0)
        collector.record_trade(closed_trade(5.0))

        daily = collector.daily_equity()
        assert list(daily.values) == [105.0, 103.0]

        summary = collector.daily_summary(date(2024, 1, 1))
        assert summary.trades == 1
        assert summary.starting_equity == 100.0
        assert summary.ending_equity == 105.0

    def test_recorded_trades_are_copies(self):
        collector = MetricsCollector()
        original = closed_trade(1.0)
        collector.record_trade(original)
        original.pnl = 99.0
        assert collector.trades[0].pnl == 1.0
        assert collector.export_trades()[0]["pnl"] == 1.0
