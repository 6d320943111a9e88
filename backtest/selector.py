"""
MARKET SELECTOR — Continuous signals → discrete market windows
================================================================

The problem: indicators need history, markets don't have any.

    asset feed   ─┬──┬──┬──┬──┬──┬──┬──┬──┬──┬──┬──┬──▸  (500 candles)
                                   ▲ MACD crosses above at candle close
    markets          [ 12:00 ][ 12:15 ][ 12:30 ][ 12:45 ]
                                        ▲ next window → trade HERE

A trigger is confirmed only when its candle CLOSES. The market we may
trade is the one that starts at or after that moment, no later than
`lag_candles` candle durations after it. Earlier windows would be
trading on information we didn't have yet; much later ones are no
longer the same signal.

Each market is attributed at most one trigger. A trigger with no
qualifying market is dropped and logged.

VERIFICATION: stored windows don't record their asset, so before a
window is accepted we can regenerate the strategy asset's slug for that
start time and ask Gamma whether it is the same market. That costs one
HTTP call per candidate, so it is throttled, and after a run of
failures (rate limits, outages) it gives up and trusts the window
duration alone.
"""

import logging
import time
from bisect import bisect_left
from dataclasses import dataclass

import config
from backtest.candles import candle_close_time
from backtest.conditions import evaluate_conditions
from data.markets import generate_slug, window_matches

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Trigger:
    timestamp: int          # candle close (ms), when the signal became known
    candle_timestamp: int   # bucket start of the triggering candle
    reasons: tuple = ()

    @property
    def reason(self) -> str:
        return ", ".join(self.reasons)


@dataclass(frozen=True)
class MarketSelection:
    window: object          # MarketWindow
    trigger: Trigger


def find_indicator_triggers(strategy, candles, series_map: dict) -> list:
    """Evaluate the strategy at every closed candle of the asset feed."""
    triggers = []
    for i in range(1, len(candles)):
        if not candles[i].closed:
            continue
        triggered, reasons = evaluate_conditions(
            strategy.conditions, strategy.condition_logic, series_map, candles, i)
        if triggered:
            triggers.append(Trigger(
                timestamp=candle_close_time(candles[i], strategy.timeframe_minutes),
                candle_timestamp=candles[i].timestamp,
                reasons=tuple(reasons),
            ))
    logger.info(f"[Selector] {len(triggers)} triggers across {len(candles)} asset candles")
    return triggers


class MarketVerifier:
    """Throttled slug → Gamma check that a window belongs to the strategy's asset."""

    def __init__(self, resolver, asset: str, timeframe: str,
                 delay_secs: float = config.VERIFY_DELAY_SECS,
                 max_failures: int = config.VERIFY_MAX_FAILURES):
        self.resolver = resolver
        self.asset = asset
        self.timeframe = timeframe
        self.delay_secs = delay_secs
        self.max_failures = max_failures
        self.consecutive_failures = 0
        self.disabled = resolver is None
        self._last_call = None

    def __call__(self, window) -> bool:
        if self.disabled:
            return True

        slug = generate_slug(self.asset, self.timeframe, window.event_start // 1000)
        if slug is None:
            logger.info(f"[Selector] No slug format for {self.asset} {self.timeframe}, "
                        f"matching on window duration only")
            self.disabled = True
            return True

        if self._last_call is not None and self.delay_secs > 0:
            wait = self.delay_secs - (time.monotonic() - self._last_call)
            if wait > 0:
                time.sleep(wait)
        self._last_call = time.monotonic()

        metadata = self.resolver.resolve_market_by_slug(slug)
        if metadata is None:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.max_failures:
                logger.warning(f"[Selector] {self.consecutive_failures} verification failures in a row, "
                               f"falling back to duration-only matching")
                self.disabled = True
                return True
            return False

        self.consecutive_failures = 0
        ok = window_matches(window, metadata)
        if not ok:
            logger.debug(f"[Selector] {window.market_id} is not {slug}")
        return ok


def select_markets_for_triggers(triggers, windows, interval_ms: int, count: int = None,
                                lag_candles: int = config.TRIGGER_LAG_CANDLES,
                                verify=None) -> list:
    """
    Map each trigger to the closest window starting within
    [trigger, trigger + lag_candles * interval_ms]. Returns
    MarketSelections in trigger order, capped at `count`.
    """
    ordered = sorted(windows, key=lambda w: (w.event_start, w.market_id))
    starts = [w.event_start for w in ordered]
    max_lag = lag_candles * interval_ms

    selections = []
    taken = set()
    for trigger in sorted(triggers, key=lambda t: t.timestamp):
        if count is not None and len(selections) >= count:
            break

        pos = bisect_left(starts, trigger.timestamp)
        window = ordered[pos] if pos < len(ordered) else None
        if window is None or window.event_start - trigger.timestamp > max_lag:
            logger.info(f"[Selector] No market within {lag_candles} candle(s) of trigger "
                        f"@ {trigger.timestamp} ({trigger.reason}), skipping")
            continue
        if window.market_id in taken:
            logger.debug(f"[Selector] {window.market_id} already attributed, dropping trigger "
                         f"@ {trigger.timestamp}")
            continue
        if verify is not None and not verify(window):
            logger.info(f"[Selector] {window.market_id} failed asset verification, skipping trigger "
                        f"@ {trigger.timestamp}")
            continue

        taken.add(window.market_id)
        selections.append(MarketSelection(window=window, trigger=trigger))
        logger.info(f"[Selector] Trigger @ {trigger.timestamp} → market {window.market_id} "
                    f"(starts +{(window.event_start - trigger.timestamp) / 1000:.0f}s)")

    return selections
