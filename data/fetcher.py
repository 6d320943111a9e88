"""
ASSET CANDLE FEED — Continuous Binance klines for trigger detection
=====================================================================

Prediction markets are short, disjoint windows. An indicator like
MACD(12,26,9) needs 35 candles before its first value, far more than a
single 15-minute market ever produces. So for multi-market backtests the
indicators run on the underlying asset's continuous price feed instead,
and the resulting triggers are mapped onto markets afterwards.

Binance is the reference feed (deepest liquidity, free public klines).
"""

import logging
import time

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

import config
from backtest.models import Candle

logger = logging.getLogger(__name__)

KLINE_COLUMNS = [
    "open_time", "open", "high", "low", "close", "volume",
    "close_time", "quote_volume", "trades",
    "taker_buy_base", "taker_buy_quote", "ignore",
]
MAX_KLINES_PER_REQUEST = 1000

# Polymarket timeframe names → Binance interval strings
_INTERVALS = {"1m": "1m", "5m": "5m", "15m": "15m", "1h": "1h", "hourly": "1h",
              "4h": "4h", "1d": "1d"}


def make_session() -> requests.Session:
    retry = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
    )
    session = requests.Session()
    session.mount("https://", HTTPAdapter(max_retries=retry))
    session.mount("http://", HTTPAdapter(max_retries=retry))
    return session


def binance_symbol(asset: str) -> str:
    asset = str(asset or "").upper()
    return config.BINANCE_MAP.get(asset, asset if asset.endswith("USDT") else f"{asset}USDT")


def fetch_klines(symbol: str, interval: str = "15m", limit: int = 500,
                 session: requests.Session = None) -> pd.DataFrame:
    """
    Pull the most recent `limit` klines, paging backwards when more than
    one request is needed. Returns a DataFrame sorted by open_time.
    """
    session = session or make_session()
    url = f"{config.BINANCE_BASE}/api/v3/klines"
    rows = []
    end_time = None

    while len(rows) < limit:
        params = {"symbol": symbol, "interval": interval,
                  "limit": min(MAX_KLINES_PER_REQUEST, limit - len(rows))}
        if end_time is not None:
            params["endTime"] = end_time
        resp = session.get(url, params=params, timeout=config.HTTP_TIMEOUT)
        resp.raise_for_status()
        batch = resp.json()
        if not batch:
            break
        rows = batch + rows
        end_time = int(batch[0][0]) - 1
        if len(batch) < params["limit"]:
            break

    if not rows:
        return pd.DataFrame(columns=KLINE_COLUMNS)

    df = pd.DataFrame(rows, columns=KLINE_COLUMNS)
    for col in ("open", "high", "low", "close", "volume"):
        df[col] = df[col].astype(float)
    df["open_time"] = df["open_time"].astype("int64")
    df = df.drop_duplicates("open_time").sort_values("open_time").reset_index(drop=True)
    return df.tail(limit).reset_index(drop=True)


def klines_to_candles(df: pd.DataFrame, now_ms: int = None) -> list:
    """The last kline is still forming until its close_time has passed."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    return [
        Candle(
            timestamp=int(row.open_time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
            closed=int(row.close_time) < now_ms,
        )
        for row in df.itertuples(index=False)
    ]


class BinanceCandleFeed:
    """Continuous asset candle feed: get_candle_history(symbol, timeframe, count)."""

    def __init__(self, session: requests.Session = None):
        self.session = session or make_session()

    def get_candle_history(self, symbol: str, timeframe: str,
                           count: int = config.ASSET_CANDLE_COUNT) -> list:
        interval = _INTERVALS.get(timeframe)
        if interval is None:
            logger.warning(f"[Feed] Unsupported timeframe {timeframe!r}")
            return []
        pair = binance_symbol(symbol)
        try:
            df = fetch_klines(pair, interval, count, session=self.session)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[Feed] Binance klines failed for {pair} {interval}: {e}")
            return []
        candles = klines_to_candles(df)
        logger.info(f"[Feed] {pair} {interval}: {len(candles)} candles")
        return candles
