#!/usr/bin/env python3
"""
POLYMARKET UP/DOWN STRATEGY BACKTESTER
========================================

Main entry point. Replays recorded 15m / 1h crypto up/down markets
through a strategy and prints the report:

  ┌──────────┐    ┌─────────┐    ┌───────────┐    ┌────────┐    ┌────────┐
  │  TICKS   │───▸│ CANDLES │───▸│ SIGNALS   │───▸│ LADDER │───▸│ REPORT │
  │ SQLite   │    │ OHLC    │    │ TA / book │    │ fills  │    │ Sharpe │
  └──────────┘    └─────────┘    └───────────┘    └────────┘    └────────┘

Usage:
  python run_backtest.py --strategy my_strategy.json --market-id 512345
  python run_backtest.py --strategy macd_up.json --markets 20
  python run_backtest.py --strategy book_40c.json --markets 10 --exit-price 60
  python run_backtest.py --strategy macd_up.json --markets 20 --json data/results/macd.json
  python run_backtest.py --strategy s.json --market-id 512345 --start 2025-11-01 --end 2025-11-08
"""

import argparse
import json
import os
import sys

import pandas as pd

import config
from backtest.engine import Backtester
from backtest.errors import BacktestError
from backtest.logging_setup import setup_logging
from backtest.models import BacktestOptions, Strategy, TimeRange
from backtest.report import generate_report, print_equity_curve_ascii
from data.markets import GammaMarketResolver
from data.price_store import PriceStore
from signals.cache import IndicatorCache


def _to_ms(text: str) -> int:
    ts = pd.Timestamp(text)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.value // 1_000_000)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Polymarket Up/Down Strategy Backtester")
    parser.add_argument("--strategy", required=True,
                        help="Strategy JSON file")
    parser.add_argument("--market-id", default=None,
                        help="Backtest a single market")
    parser.add_argument("--markets", type=int, default=None,
                        help="Backtest N markets (indicator triggers or most volatile)")
    parser.add_argument("--exit-price", type=int, default=None,
                        help="Sell when the price reaches this many cents")
    parser.add_argument("--balance", type=float, default=config.INITIAL_BALANCE,
                        help=f"Starting balance (default: {config.INITIAL_BALANCE:,.0f})")
    parser.add_argument("--start", default=None, help="Range start (ISO date/time, UTC)")
    parser.add_argument("--end", default=None, help="Range end (ISO date/time, UTC)")
    parser.add_argument("--db", default=config.DB_PATH,
                        help=f"Price store (default: {config.DB_PATH})")
    parser.add_argument("--cache", action="store_true",
                        help="Serve asset-feed indicators from the indicator cache")
    parser.add_argument("--no-verify", action="store_true",
                        help="Match markets on window duration only (no Gamma lookups)")
    parser.add_argument("--json", default=None,
                        help="Also write the full result as JSON to this path")
    parser.add_argument("--log-level", default=config.LOG_LEVEL,
                        help="Console log level (default: %(default)s)")
    return parser.parse_args(argv)


def build_options(args) -> BacktestOptions:
    time_range = None
    if args.start or args.end:
        start = _to_ms(args.start) if args.start else 0
        end = _to_ms(args.end) if args.end else int(pd.Timestamp.now(tz="UTC").value // 1_000_000)
        time_range = TimeRange(start=start, end=end)
    return BacktestOptions(
        market_id=args.market_id,
        market_count=args.markets,
        exit_price=args.exit_price,
        time_range=time_range,
    )


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    with open(args.strategy) as f:
        raw = json.load(f)
    try:
        strategy = Strategy.from_dict(raw)
    except BacktestError as e:
        print(f"  [ERROR] Invalid strategy {args.strategy}: {e}")
        return 2
    options = build_options(args)

    print("╔══════════════════════════════════════════════════════════════╗")
    print("║   POLYMARKET UP/DOWN STRATEGY BACKTESTER                     ║")
    print("╚══════════════════════════════════════════════════════════════╝")
    print(f"\n  Strategy:    {strategy.name}")
    print(f"  Asset:       {strategy.asset or '-'} {strategy.timeframe} {strategy.direction.value}")
    if options.market_id or not options.market_count:
        print(f"  Market:      {options.market_id or strategy.market or '-'}")
    else:
        print(f"  Markets:     {options.market_count}")
    print(f"  Exit Price:  {f'{options.exit_price}c' if options.exit_price else 'None (hold to resolution)'}")
    print(f"  Balance:     ${args.balance:,.2f}")
    print()

    cache = IndicatorCache() if args.cache else None
    try:
        with PriceStore(args.db) as store:
            backtester = Backtester(
                store=store,
                cache=cache,
                resolver=None if args.no_verify else GammaMarketResolver(),
                verify_markets=not args.no_verify,
            )
            result = backtester.run(strategy, args.balance, options)
    except BacktestError as e:
        print(f"\n  [ERROR] {e}")
        return 1
    finally:
        if cache is not None:
            cache.close()

    print(generate_report(result))
    print_equity_curve_ascii(result)

    if args.json:
        os.makedirs(os.path.dirname(args.json) or ".", exist_ok=True)
        with open(args.json, "w") as f:
            f.write(result.to_json(indent=2))
        print(f"\n  Result written to {args.json}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
