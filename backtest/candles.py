"""
CANDLE BUILDER — From irregular orderbook samples to OHLC bars
================================================================

Polymarket prices arrive as irregular samples (whenever the book
changes). Indicators want fixed-interval bars. We bucket each sample
by `floor(t / interval) * interval` and roll OHLC within the bucket.

Rules that matter for correctness:
  - A price of 0 means "no quote", not "worth nothing". It is skipped
    and does NOT close the running candle.
  - Empty buckets produce no candle (no forward-fill). Indicators see
    only buckets that actually traded.
  - The last, still-open bucket is emitted too (closed=False) so the
    final observed price is never lost.
"""

from backtest.models import Candle, Direction, cents_to_dollars


def build_candles(ticks, timeframe_minutes: int, direction: Direction) -> list:
    """Bucket chronologically ordered ticks into OHLCV candles for one side."""
    if not ticks or timeframe_minutes <= 0:
        return []

    interval_ms = int(timeframe_minutes * 60 * 1000)
    candles = []
    bucket_start = None
    o = h = l = c = 0.0
    volume = 0

    for tick in ticks:
        price = cents_to_dollars(tick.price_cents(direction))
        if price == 0:
            continue

        tick_bucket = (tick.timestamp // interval_ms) * interval_ms
        if bucket_start is None:
            bucket_start = tick_bucket
        elif tick.timestamp >= bucket_start + interval_ms:
            # Close the running candle, then skip empty buckets up to this tick
            if volume:
                candles.append(Candle(bucket_start, o, h, l, c, volume, closed=True))
            while tick.timestamp >= bucket_start + interval_ms:
                bucket_start += interval_ms
            volume = 0

        if volume == 0:
            o = h = l = c = price
            volume = 1
        else:
            h = max(h, price)
            l = min(l, price)
            c = price
            volume += 1

    if volume:
        candles.append(Candle(bucket_start, o, h, l, c, volume, closed=False))

    return candles


def candle_close_time(candle: Candle, timeframe_minutes: int) -> int:
    """Timestamp at which a candle's close becomes known."""
    return candle.timestamp + int(timeframe_minutes * 60 * 1000)
