"""
CLI for running backtests from a YAML config and CSV history.

Commands:
- run     Load config, replay the CSV bars in --data-dir and print the metrics
- config  Print the merged configuration tree (defaults <- YAML <- env)

Notes:
- This CLI only replays history; it never connects to an exchange.
- CSV files are looked up as <data-dir>/<SYMBOL>.csv with "/" replaced by "_".
- Ctrl+C during a run requests a graceful stop: the current step finishes,
  open positions are closed and the partial result is printed.

Exit codes: 0 success, 1 run failure, 2 invalid configuration, 130 interrupted.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import yaml

from backtesting.engine import BacktestEngine, BacktestError
from backtesting.reports import save_report
from core.config import ConfigError, load_config, load_config_tree
from data.market_feed import CsvDataProvider
from data.storage import JsonlTradeStore
from monitoring.logger import get_manager


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    backtest: Dict[str, Any] = {}
    if getattr(args, "symbols", None):
        backtest["symbols"] = args.symbols
    if getattr(args, "start", None):
        backtest["start"] = args.start
    if getattr(args, "end", None):
        backtest["end"] = args.end
    if getattr(args, "initial_cash", None) is not None:
        backtest["initial_cash"] = args.initial_cash
    return {"backtest": backtest} if backtest else {}


def _configure_logging(level: str, log_file: Optional[str]) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")
    get_manager().configure(level=level, log_file=log_file)


async def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config, _overrides(args))
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    store = JsonlTradeStore(args.output) if args.output else None
    engine = BacktestEngine(CsvDataProvider(args.data_dir), store=store, monitor=get_manager())

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.request_stop)
    except (NotImplementedError, RuntimeError):
        pass  # not supported on this platform / loop

    try:
        result = await engine.run(config)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    except BacktestError as exc:
        print(f"Backtest failed: {exc}", file=sys.stderr)
        return 1

    if args.report_dir:
        paths = save_report(result, args.report_dir)
        print(f"Report written to {paths['summary']}", file=sys.stderr)
    print(json.dumps(result.metrics, default=str, indent=2))
    return 0


async def cmd_config(args: argparse.Namespace) -> int:
    try:
        tree = load_config_tree(args.config, _overrides(args))
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    print(yaml.safe_dump(tree, sort_keys=False, default_flow_style=False))
    return 0


# --------------------------
# CLI entrypoint
# --------------------------
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="adaptive-backtest", description="Adaptive multi-symbol backtest runner")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--log-file", help="Rotating log file for structured events")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("run", help="Run a backtest and print its metrics")
    sp.add_argument("--config", help="YAML config file")
    sp.add_argument("--data-dir", required=True, help="Directory with one CSV of bars per symbol")
    sp.add_argument("--symbols", help="Comma-separated symbols (overrides config)")
    sp.add_argument("--start", help="Start datetime (overrides config)")
    sp.add_argument("--end", help="End datetime (overrides config)")
    sp.add_argument("--initial-cash", type=float)
    sp.add_argument("--output", help="JSONL file receiving closed trades and the run summary")
    sp.add_argument("--report-dir", help="Directory for summary.json / trades.json")

    sp2 = sub.add_parser("config", help="Print the merged configuration")
    sp2.add_argument("--config", help="YAML config file")

    return p


async def _main(argv: List[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level, args.log_file)

    if args.cmd == "run":
        return await cmd_run(args)
    if args.cmd == "config":
        return await cmd_config(args)
    print("Unknown command", file=sys.stderr)
    return 2


def main():
    try:
        return_code = asyncio.run(_main(sys.argv[1:]))
        sys.exit(return_code or 0)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
