"""
INDICATOR CACHE — Pre-computed indicator series on the asset feed
===================================================================

Multi-market backtests recompute the same RSI(14)/MACD(12,26,9) over
the same 500 Binance candles again and again. The cache keeps those
series in SQLite keyed by:

    (asset, timeframe, indicator_type, indicator_params, timestamp)

`indicator_params` is the canonical JSON of the parameter map (sorted
keys), so {"fast": 12, "slow": 26} and {"slow": 26, "fast": 12} hit the
same rows.

The cache is an optimisation only. A miss, a stale series or any
database error falls back to computing in real time.
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path

import config
from backtest.models import IndicatorConfig, IndicatorResult
from signals.indicators import calculate_indicator

logger = logging.getLogger(__name__)

# The standard set computed ahead of time for every asset/timeframe
PRESET_INDICATORS = [
    {"type": "RSI", "parameters": {"length": 14}},
    {"type": "RSI", "parameters": {"length": 9}},
    {"type": "RSI", "parameters": {"length": 21}},
    {"type": "MACD", "parameters": {"fast": 12, "slow": 26, "signal": 9}},
    {"type": "MACD", "parameters": {"fast": 8, "slow": 21, "signal": 5}},
    {"type": "SMA", "parameters": {"length": 20}},
    {"type": "SMA", "parameters": {"length": 50}},
    {"type": "EMA", "parameters": {"length": 9}},
    {"type": "EMA", "parameters": {"length": 20}},
    {"type": "EMA", "parameters": {"length": 21}},
    {"type": "EMA", "parameters": {"length": 50}},
    {"type": "Bollinger Bands", "parameters": {"length": 20, "stdDev": 2}},
    {"type": "Stochastic", "parameters": {"k": 14, "smoothK": 1, "d": 3}},
    {"type": "ATR", "parameters": {"length": 14}},
    {"type": "VWAP", "parameters": {"resetDaily": 1}},
    {"type": "Rolling Up %", "parameters": {"length": 50}},
]

CACHE_RETENTION_DAYS = 30


def params_key(parameters: dict) -> str:
    return json.dumps(parameters or {}, sort_keys=True)


class IndicatorCache:

    def __init__(self, path=None):
        self.path = Path(path or config.INDICATOR_CACHE_PATH)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self._lock = threading.Lock()
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS indicator_cache (
                  asset TEXT NOT NULL,
                  timeframe TEXT NOT NULL,
                  indicator_type TEXT NOT NULL,
                  indicator_params TEXT NOT NULL,
                  timestamp INTEGER NOT NULL,
                  value REAL,
                  fields TEXT,
                  created_at INTEGER NOT NULL,
                  UNIQUE(asset, timeframe, indicator_type, indicator_params, timestamp)
                );
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_indicator_cache_lookup
                ON indicator_cache(asset, timeframe, indicator_type, indicator_params, timestamp);
                """
            )
            self._conn.commit()

    def store(self, asset: str, timeframe: str, indicator_type: str, parameters: dict,
              results) -> int:
        """Upsert a series. Returns the number of rows written."""
        now = int(time.time() * 1000)
        key = params_key(parameters)
        rows = [
            (asset.upper(), timeframe, indicator_type, key, r.timestamp, r.value,
             json.dumps(r.fields) if r.fields else None, now)
            for r in results
        ]
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO indicator_cache
                  (asset, timeframe, indicator_type, indicator_params, timestamp, value, fields, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (asset, timeframe, indicator_type, indicator_params, timestamp)
                DO UPDATE SET value = excluded.value, fields = excluded.fields,
                              created_at = excluded.created_at;
                """,
                rows,
            )
            self._conn.commit()
        return len(rows)

    def fetch(self, asset: str, timeframe: str, indicator_type: str, parameters: dict,
              start: int = None, end: int = None) -> list:
        sql = """
            SELECT timestamp, value, fields FROM indicator_cache
            WHERE asset = ? AND timeframe = ? AND indicator_type = ? AND indicator_params = ?
        """
        params = [asset.upper(), timeframe, indicator_type, params_key(parameters)]
        if start is not None:
            sql += " AND timestamp >= ?"
            params.append(start)
        if end is not None:
            sql += " AND timestamp <= ?"
            params.append(end)
        sql += " ORDER BY timestamp ASC;"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            IndicatorResult(timestamp=int(ts), value=value,
                            fields=json.loads(fields) if fields else {})
            for ts, value, fields in rows
        ]

    def precalculate(self, asset: str, timeframe: str, candles) -> int:
        """Compute and store every preset indicator over `candles`."""
        total = 0
        for preset in PRESET_INDICATORS:
            cfg = IndicatorConfig(id=preset["type"], type=preset["type"],
                                  timeframe=timeframe, parameters=preset["parameters"])
            total += self.store(asset, timeframe, cfg.type, cfg.parameters,
                                calculate_indicator(candles, cfg))
        logger.info(f"[IndicatorCache] {asset} {timeframe}: {total} values pre-calculated")
        return total

    def cleanup(self, older_than_days: int = CACHE_RETENTION_DAYS, now: int = None) -> int:
        """Drop values whose candle is older than the retention window."""
        now = int(time.time() * 1000) if now is None else now
        cutoff = now - older_than_days * 86_400_000
        with self._lock:
            cur = self._conn.execute("DELETE FROM indicator_cache WHERE timestamp < ?;", (cutoff,))
            self._conn.commit()
        logger.info(f"[IndicatorCache] Removed {cur.rowcount} values older than {older_than_days} days")
        return cur.rowcount


class CachedIndicatorProvider:
    """
    Indicator value provider. With a cache and an asset, serves series
    from the cache when they cover the requested candles; otherwise
    computes them and writes them back.
    """

    def __init__(self, cache: IndicatorCache = None, asset: str = "", timeframe: str = ""):
        self.cache = cache
        self.asset = asset
        self.timeframe = timeframe

    def calculate(self, candles, indicator_config) -> list:
        if not candles:
            return []
        if self.cache is None or not self.asset:
            return calculate_indicator(candles, indicator_config)

        timeframe = self.timeframe or indicator_config.timeframe
        first, last = candles[0].timestamp, candles[-1].timestamp
        try:
            cached = self.cache.fetch(self.asset, timeframe, indicator_config.type,
                                      indicator_config.parameters, first, last)
        except sqlite3.Error as e:
            logger.warning(f"[IndicatorCache] Unavailable, computing {indicator_config.type} in real time: {e}")
            return calculate_indicator(candles, indicator_config)

        if cached and cached[-1].timestamp >= last:
            logger.debug(f"[IndicatorCache] Hit {self.asset} {timeframe} {indicator_config.type} "
                         f"({len(cached)} values)")
            return cached

        logger.info(f"[IndicatorCache] {'Stale' if cached else 'Miss'} for {self.asset} {timeframe} "
                    f"{indicator_config.type}, computing in real time")
        results = calculate_indicator(candles, indicator_config)
        try:
            self.cache.store(self.asset, timeframe, indicator_config.type,
                             indicator_config.parameters, results)
        except sqlite3.Error as e:
            logger.warning(f"[IndicatorCache] Could not store {indicator_config.type}: {e}")
        return results
