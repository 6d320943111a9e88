import sys
from pathlib import Path

import pytest

# Make the project root importable when running pytest from anywhere
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from backtest.models import Candle, IndicatorResult, Tick  # noqa: E402
from data.price_store import PriceStore  # noqa: E402

# 2023-11-14 21:45:00 UTC, aligned to 15-minute buckets
T0 = 1_699_998_300_000
MINUTE = 60_000
QUARTER = 15 * MINUTE


def ticks_from_prices(start: int, yes_bids, step_ms: int = 1000):
    """One tick per price; the NO side mirrors the YES side (yes + no = 100)."""
    ticks = []
    for i, yb in enumerate(yes_bids):
        nb = 100 - yb if yb else 0
        ticks.append(Tick(timestamp=start + i * step_ms, yes_bid=yb, yes_ask=min(yb + 1, 99) if yb else 0,
                          no_bid=nb, no_ask=min(nb + 1, 99) if nb else 0))
    return ticks


def candles_from_closes(closes, start: int = T0, interval_ms: int = QUARTER):
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(Candle(
            timestamp=start + i * interval_ms,
            open=prev,
            high=max(prev, close),
            low=min(prev, close),
            close=close,
            volume=1,
            closed=True,
        ))
        prev = close
    return candles


class FakeFeed:
    def __init__(self, candles):
        self.candles = candles
        self.calls = []

    def get_candle_history(self, symbol, timeframe, count=500):
        self.calls.append((symbol, timeframe, count))
        return list(self.candles[-count:])


class SeriesProvider:
    """Indicator provider returning a fixed value per candle position."""

    def __init__(self, values):
        self.values = values

    def calculate(self, candles, indicator_config):
        return [IndicatorResult(timestamp=c.timestamp, value=float(v))
                for c, v in zip(candles, self.values)]


class FakeResolver:
    def __init__(self, responses):
        self.responses = list(responses)
        self.slugs = []

    def resolve_market_by_slug(self, slug, timeframe_minutes=0):
        self.slugs.append(slug)
        return self.responses.pop(0) if self.responses else None


@pytest.fixture
def store(tmp_path):
    s = PriceStore(tmp_path / "prices.db")
    yield s
    s.close()


@pytest.fixture
def record_market(store):
    """Record a 15-minute market whose ticks follow `yes_bids`, one per second."""
    def _record(market_id, event_start, yes_bids, duration_ms=QUARTER, step_ms=1000):
        ticks = ticks_from_prices(event_start, yes_bids, step_ms)
        store.record_event(market_id, event_start, event_start + duration_ms, ticks,
                           yes_token_id=f"{market_id}-up", no_token_id=f"{market_id}-down")
        return ticks
    return _record
