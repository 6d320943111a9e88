"""
HISTORICAL PRICE STORE — Recorded orderbook samples per market event
======================================================================

One row per market event. The whole price path of the event is kept
as a JSON array of compact samples in the `prices` column:

    {"t": 1732712400123, "yb": 47, "ya": 49, "nb": 51, "na": 53}

    t   = sample time (ms)       yb/ya = yes bid/ask (cents)
                                 nb/na = no bid/ask (cents)

A 15-minute market with a sample every second is ~900 entries, so one
row read per market is far cheaper than one row per sample.

Timestamps (event_start / event_end) are stored as integer ms.
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Optional

import config
from backtest.errors import DataUnavailableError
from backtest.models import MarketWindow, Tick

logger = logging.getLogger(__name__)


class PriceStore:

    def __init__(self, path=None):
        self.path = Path(path or config.DB_PATH)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._ensure_schema()
        except (OSError, sqlite3.Error) as e:
            raise DataUnavailableError(f"Cannot open price store at {self.path}: {e}") from e

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS price_events (
              market_id TEXT NOT NULL,
              event_start INTEGER NOT NULL,
              event_end INTEGER NOT NULL,
              yes_token_id TEXT NOT NULL DEFAULT '',
              no_token_id TEXT NOT NULL DEFAULT '',
              prices TEXT NOT NULL DEFAULT '[]',
              updated_at INTEGER,
              PRIMARY KEY (market_id, event_start)
            );
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_price_events_time ON price_events(event_start DESC);"
        )
        self._conn.commit()

    def _query(self, sql: str, params=()) -> list:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DataUnavailableError(f"Price store query failed: {e}") from e

    # ════════════════════════════════════════════════════════════
    # WRITE
    # ════════════════════════════════════════════════════════════

    def record_event(self, market_id: str, event_start: int, event_end: int, ticks,
                     yes_token_id: str = "", no_token_id: str = "") -> None:
        """Upsert one market event with its full price path."""
        samples = [t.to_sample() if isinstance(t, Tick) else dict(t) for t in ticks]
        self._conn.execute(
            """
            INSERT INTO price_events
              (market_id, event_start, event_end, yes_token_id, no_token_id, prices, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (market_id, event_start)
            DO UPDATE SET prices = excluded.prices, event_end = excluded.event_end,
                          updated_at = excluded.updated_at;
            """,
            (market_id, int(event_start), int(event_end), yes_token_id, no_token_id,
             json.dumps(samples), int(time.time() * 1000)),
        )
        self._conn.commit()

    # ════════════════════════════════════════════════════════════
    # READ
    # ════════════════════════════════════════════════════════════

    def load_market_ticks(self, market_id: str, time_range=None) -> list:
        """All samples of a market, flattened across its rows and time-ordered."""
        rows = self._query(
            "SELECT prices FROM price_events WHERE market_id = ? ORDER BY event_start ASC;",
            (market_id,),
        )
        ticks = []
        for (prices,) in rows:
            for sample in json.loads(prices or "[]"):
                if "t" not in sample:
                    continue
                tick = Tick.from_sample(sample)
                if time_range is not None and not time_range.contains(tick.timestamp):
                    continue
                ticks.append(tick)
        ticks.sort(key=lambda t: t.timestamp)
        logger.debug(f"[PriceStore] {market_id}: loaded {len(ticks)} ticks")
        return ticks

    def get_market_window(self, market_id: str) -> Optional[MarketWindow]:
        rows = self._query(
            """
            SELECT market_id, MIN(event_start), MAX(event_end), yes_token_id, no_token_id,
                   SUM(json_array_length(prices))
            FROM price_events WHERE market_id = ? GROUP BY market_id;
            """,
            (market_id,),
        )
        if not rows:
            return None
        return self._window(rows[0])

    def find_completed_markets(self, duration_minutes: Optional[float] = None,
                               time_range=None, now: Optional[int] = None) -> list:
        """
        Market events whose window has already ended, oldest first.
        Optionally restricted to a window length and to events that lie
        entirely inside `time_range`.
        """
        now = int(time.time() * 1000) if now is None else now
        sql = """
            SELECT market_id, event_start, event_end, yes_token_id, no_token_id,
                   json_array_length(prices)
            FROM price_events
            WHERE event_end <= ? AND json_array_length(prices) > 0
        """
        params = [now]
        if duration_minutes is not None:
            sql += " AND (event_end - event_start) = ?"
            params.append(int(duration_minutes * 60_000))
        if time_range is not None:
            sql += " AND event_start >= ? AND event_end <= ?"
            params.extend([time_range.start, time_range.end])
        sql += " ORDER BY event_start ASC;"

        windows = [self._window(r) for r in self._query(sql, params)]
        logger.debug(f"[PriceStore] {len(windows)} completed market windows")
        return windows

    @staticmethod
    def _window(row) -> MarketWindow:
        market_id, start, end, yes_id, no_id, count = row
        return MarketWindow(
            market_id=market_id,
            event_start=int(start),
            event_end=int(end),
            tick_count=int(count or 0),
            yes_token_id=yes_id or "",
            no_token_id=no_id or "",
        )
