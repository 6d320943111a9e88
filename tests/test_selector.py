from dataclasses import replace

from backtest.conditions import IndicatorSeries
from backtest.models import IndicatorResult, MarketMetadata, MarketWindow, Strategy
from backtest.selector import (MarketVerifier, Trigger, find_indicator_triggers,
                               select_markets_for_triggers)
from conftest import QUARTER, T0, FakeResolver, candles_from_closes


def _window(market_id, start, duration=QUARTER):
    return MarketWindow(market_id=market_id, event_start=start, event_end=start + duration,
                        yes_token_id=f"{market_id}-up", no_token_id=f"{market_id}-down")


def _trigger(ts):
    return Trigger(timestamp=ts, candle_timestamp=ts - QUARTER, reasons=("signal",))


def _meta(market_id, up="x-up", down="x-down"):
    return MarketMetadata(market_id=market_id, event_start=None, event_end=None,
                          yes_token_id=up, no_token_id=down)


# ═══════════════════════════════════════════════════════════════
# TRIGGERS
# ═══════════════════════════════════════════════════════════════

def test_triggers_are_stamped_at_candle_close_and_skip_open_candles():
    strategy = Strategy.from_dict({
        "name": "t", "timeframe": "15m",
        "conditions": [{"sourceA": "indicator_x", "operator": ">", "sourceB": "value", "value": 0}],
        "orderLadder": [{"price": 40, "shares": 1}],
    })
    candles = candles_from_closes([0.5] * 4)
    candles[-1] = replace(candles[-1], closed=False)
    series = IndicatorSeries([IndicatorResult(c.timestamp, 1.0) for c in candles], len(candles))

    triggers = find_indicator_triggers(strategy, candles, {"x": series})

    # index 0 is never evaluated, index 3 is still forming
    assert [t.candle_timestamp for t in triggers] == [T0 + QUARTER, T0 + 2 * QUARTER]
    assert triggers[0].timestamp == T0 + 2 * QUARTER
    assert triggers[0].reason == "indicator_x > 0"


# ═══════════════════════════════════════════════════════════════
# WINDOW MATCHING
# ═══════════════════════════════════════════════════════════════

def test_window_within_one_candle_after_trigger_is_accepted():
    trigger_ts = T0
    on_time = select_markets_for_triggers([_trigger(trigger_ts)],
                                          [_window("late", trigger_ts + QUARTER)], QUARTER)
    assert [s.window.market_id for s in on_time] == ["late"]

    too_late = select_markets_for_triggers([_trigger(trigger_ts)],
                                           [_window("later", trigger_ts + QUARTER + 1)], QUARTER)
    assert too_late == []


def test_window_before_the_trigger_is_never_selected():
    selections = select_markets_for_triggers([_trigger(T0 + 1)], [_window("early", T0)], QUARTER)
    assert selections == []


def test_closest_following_window_wins():
    windows = [_window("b", T0 + QUARTER), _window("a", T0)]
    selections = select_markets_for_triggers([_trigger(T0)], windows, QUARTER)
    assert selections[0].window.market_id == "a"
    assert selections[0].trigger.timestamp == T0


def test_each_market_is_attributed_once_and_count_caps_selection():
    windows = [_window("a", T0), _window("b", T0 + QUARTER), _window("c", T0 + 2 * QUARTER)]
    triggers = [_trigger(T0), _trigger(T0 - 1000), _trigger(T0 + QUARTER), _trigger(T0 + 2 * QUARTER)]

    selections = select_markets_for_triggers(triggers, windows, QUARTER)
    assert [s.window.market_id for s in selections] == ["a", "b", "c"]
    # the earliest trigger claims "a"; the duplicate is dropped, not moved on
    assert selections[0].trigger.timestamp == T0 - 1000

    capped = select_markets_for_triggers(triggers, windows, QUARTER, count=2)
    assert [s.window.market_id for s in capped] == ["a", "b"]


def test_lag_is_configurable():
    selections = select_markets_for_triggers([_trigger(T0)], [_window("a", T0 + 2 * QUARTER)],
                                             QUARTER, lag_candles=2)
    assert len(selections) == 1


def test_failed_verification_skips_the_window():
    windows = [_window("a", T0), _window("b", T0 + QUARTER)]
    selections = select_markets_for_triggers(
        [_trigger(T0), _trigger(T0 + QUARTER)], windows, QUARTER,
        verify=lambda w: w.market_id != "a")
    assert [s.window.market_id for s in selections] == ["b"]


# ═══════════════════════════════════════════════════════════════
# VERIFICATION
# ═══════════════════════════════════════════════════════════════

def test_verifier_matches_on_market_id_or_token():
    resolver = FakeResolver([_meta("a"), _meta("zzz", up="b-up"), _meta("other")])
    verify = MarketVerifier(resolver, "BTC", "15m", delay_secs=0)

    assert verify(_window("a", T0))
    assert verify(_window("b", T0))
    assert not verify(_window("c", T0))
    assert resolver.slugs[0] == f"btc-updown-15m-{T0 // 1000}"


def test_verifier_falls_back_after_repeated_failures():
    resolver = FakeResolver([None, None, None, _meta("other")])
    verify = MarketVerifier(resolver, "BTC", "15m", delay_secs=0, max_failures=3)

    assert not verify(_window("a", T0))
    assert not verify(_window("b", T0))
    assert verify(_window("c", T0))           # third failure disables verification
    assert verify.disabled
    assert verify(_window("d", T0))
    assert len(resolver.slugs) == 3


def test_failure_streak_resets_on_success():
    resolver = FakeResolver([None, None, _meta("a"), None, None])
    verify = MarketVerifier(resolver, "BTC", "15m", delay_secs=0, max_failures=3)
    results = [verify(_window(m, T0)) for m in ("x", "y", "a", "p", "q")]
    assert results == [False, False, True, False, False]
    assert not verify.disabled


def test_verifier_without_slug_format_trusts_duration():
    resolver = FakeResolver([_meta("other")])
    verify = MarketVerifier(resolver, "DOGE", "15m", delay_secs=0)
    assert verify(_window("a", T0))
    assert resolver.slugs == []
    assert verify.disabled


def test_verifier_without_resolver_is_disabled():
    assert MarketVerifier(None, "BTC", "15m")(_window("a", T0))
