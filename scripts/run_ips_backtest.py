#!/usr/bin/env python3
"""
CLI entry point for the IPS backtester.

Usage:
    python scripts/run_ips_backtest.py
    python scripts/run_ips_backtest.py --symbols SPY QQQ --start 2024-01-01 --end 2024-12-31
    python scripts/run_ips_backtest.py --config my_ips.yaml --no-persist
"""

import argparse
import logging
import os
import signal
import sys
import threading

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backtest.backtester import IPSBacktester
from backtest.historical_data import HistoricalOptionsData, NewsSentimentData
from backtest.models import BacktestConfig
from backtest.performance_metrics import PerformanceMetrics
from backtest.time_travel import SQLiteTimeTravelContext
from shared.constants import CONFIG_PATH
from shared.database import SQLitePersistenceSink
from shared.exceptions import IPSBacktestError
from utils import load_config, setup_logging, validate_config

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Backtest an Investment Policy Statement")
    parser.add_argument(
        "--config", type=str, default=CONFIG_PATH,
        help="Path to config YAML (default: config.yaml)",
    )
    parser.add_argument(
        "--symbols", nargs="+", default=None,
        help="Symbols to test (default: config value, or every symbol with data)",
    )
    parser.add_argument("--start", type=str, default=None, help="Start date YYYY-MM-DD")
    parser.add_argument("--end", type=str, default=None, help="End date YYYY-MM-DD")
    parser.add_argument(
        "--portfolio", type=float, default=None,
        help="Starting portfolio value",
    )
    parser.add_argument(
        "--risk", type=float, default=None,
        help="Percent of the portfolio risked per trade",
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Seed for the probabilistic outcome fallback",
    )
    parser.add_argument(
        "--no-persist", action="store_true",
        help="Do not write the run to the database",
    )
    parser.add_argument(
        "--no-report", action="store_true",
        help="Skip writing text/JSON reports",
    )
    args = parser.parse_args()

    config = load_config(args.config)
    validate_config(config)
    setup_logging(config)

    backtest_settings = dict(config["backtest"])
    overrides = {
        "symbols": args.symbols,
        "start_date": args.start,
        "end_date": args.end,
        "portfolio_size": args.portfolio,
        "risk_per_trade": args.risk,
        "random_seed": args.seed,
    }
    backtest_settings.update({k: v for k, v in overrides.items() if v is not None})

    try:
        bt_config = BacktestConfig.from_dict(backtest_settings)
    except IPSBacktestError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    db_path = config["database"]["path"]
    abort_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: abort_event.set())

    print("IPS Backtest Configuration:")
    print(f"  IPS:         {bt_config.ips_name} ({bt_config.ips_id})")
    print(f"  Symbols:     {', '.join(bt_config.symbols) if bt_config.symbols else 'all available'}")
    print(f"  Period:      {bt_config.start_date} to {bt_config.end_date}")
    print(f"  Portfolio:   ${bt_config.portfolio_size:,.0f} @ {bt_config.risk_per_trade}% risk")
    print()

    metrics = PerformanceMetrics(config)
    backtester = IPSBacktester(
        bt_config,
        snapshot_source=HistoricalOptionsData(db_path),
        sentiment_source=NewsSentimentData(db_path) if bt_config.include_sentiment else None,
        time_travel=SQLiteTimeTravelContext(db_path),
        persistence=None if args.no_persist else SQLitePersistenceSink(db_path),
        progress_callback=_print_progress,
        abort_event=abort_event,
        metrics=metrics,
    )

    try:
        results = backtester.run()
    except IPSBacktestError as e:
        print(f"\nBacktest failed: {e}")
        sys.exit(1)

    metrics.print_summary(results)

    if not args.no_report and config.get("reports", {}).get("enabled", True):
        report = metrics.generate_report(results)
        if report:
            print(f"Report written to {report}")


def _print_progress(event) -> None:
    if event.get("current_symbol"):
        print(
            f"  [{event['processed_symbols']}/{event['total_symbols']}] "
            f"{event['current_symbol']}: {event['trades_analyzed']} trades analyzed"
        )


if __name__ == "__main__":
    main()
