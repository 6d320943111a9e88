"""
Configuration for the Polymarket Up/Down Strategy Backtester.

This is the control center — every tunable parameter lives here.
Strategy logic never hard-codes a tolerance or a lag; it reads it from
this module so parameter sweeps don't touch the engine.

A handful of values can be overridden from the environment (or a .env
file next to this module) for deployment-specific paths and endpoints.
"""

import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

# ── Data Source ──────────────────────────────────────────────────
# Historical per-market orderbook samples (yes/no bid/ask in cents)
# live in a SQLite file with one row per market event.
DB_PATH = os.environ.get("BACKTEST_DB_PATH", "data/price_events.db")

# Continuous asset candles come from Binance (highest liquidity).
BINANCE_BASE = os.environ.get("BINANCE_BASE", "https://api.binance.com")
BINANCE_MAP = {"BTC": "BTCUSDT", "ETH": "ETHUSDT", "SOL": "SOLUSDT", "XRP": "XRPUSDT"}
ASSET_CANDLE_COUNT = 500        # candles pulled for multi-market trigger detection

# Pre-computed indicator series on the asset feed (optional)
INDICATOR_CACHE_PATH = os.environ.get("INDICATOR_CACHE_PATH", "data/indicator_cache.db")

# ── Markets ──────────────────────────────────────────────────────
GAMMA_API = os.environ.get("GAMMA_API", "https://gamma-api.polymarket.com")

PAIR_SLUG_MAP = {"BTC": "btc", "ETH": "eth", "SOL": "sol", "XRP": "xrp"}
# Hourly markets spell the asset out: "solana-up-or-down-november-27-2pm-et"
PAIR_FULL_NAME_MAP = {"BTC": "bitcoin", "ETH": "ethereum", "SOL": "solana", "XRP": "xrp"}
MARKET_TIMEZONE = "America/New_York"

TIMEFRAME_MINUTES = {
    "1m": 1, "5m": 5, "15m": 15, "1h": 60, "hourly": 60, "4h": 240, "1d": 1440,
}
DEFAULT_TIMEFRAME = "15m"

# Metadata verification is throttled to respect Gamma rate limits.
VERIFY_DELAY_SECS = float(os.environ.get("VERIFY_DELAY_SECS", "0.2"))
VERIFY_MAX_FAILURES = 3         # consecutive failures before duration-only matching
HTTP_TIMEOUT = 10

# ── Signal Evaluation ───────────────────────────────────────────
EXACT_MATCH_MS = 1000           # indicator value "at" a timestamp
NEAR_MATCH_MS = 5 * 60 * 1000   # closest value accepted when no exact hit
EQUALS_TOLERANCE = 1e-4         # '==' on indicator/price values
RULE_EQUALS_TOLERANCE_CENTS = 0.5

# Execution lag between a confirmed crossover (candle close) and the
# market window we are allowed to trade, in candle durations.
TRIGGER_LAG_CANDLES = 1

# ── Execution ────────────────────────────────────────────────────
# Polymarket binary payoff: you pay price p, receive $1 if correct, $0 if wrong.
INITIAL_BALANCE = float(os.environ.get("BACKTEST_INITIAL_BALANCE", "1000"))
WIN_PAYOUT = 1.0                # $ per share on a winning binary settlement

# ── Statistics ──────────────────────────────────────────────────
SHARPE_PERIODS = 252            # annualisation factor for per-trade returns
PROFIT_FACTOR_CAP = 999.0       # reported when there are profits and zero losses

# ── Output ──────────────────────────────────────────────────────
LOGS_DIR = "logs"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
