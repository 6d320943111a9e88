import pytest

from backtest.errors import DataUnavailableError
from backtest.models import TimeRange, Tick
from data.price_store import PriceStore
from conftest import MINUTE, QUARTER, T0, ticks_from_prices


def test_ticks_come_back_time_ordered(store):
    ticks = ticks_from_prices(T0, [40, 45, 50])
    store.record_event("m1", T0, T0 + QUARTER, list(reversed(ticks)))

    loaded = store.load_market_ticks("m1")
    assert loaded == ticks
    assert store.load_market_ticks("missing") == []


def test_time_range_filter_is_inclusive(store, record_market):
    record_market("m1", T0, [40, 45, 50, 55], step_ms=MINUTE)
    loaded = store.load_market_ticks("m1", TimeRange(T0 + MINUTE, T0 + 2 * MINUTE))
    assert [t.yes_bid for t in loaded] == [45, 50]


def test_record_event_upserts(store):
    store.record_event("m1", T0, T0 + QUARTER, ticks_from_prices(T0, [40]))
    store.record_event("m1", T0, T0 + QUARTER, ticks_from_prices(T0, [60, 61]))

    assert [t.yes_bid for t in store.load_market_ticks("m1")] == [60, 61]
    assert store.get_market_window("m1").tick_count == 2


def test_market_window(store, record_market):
    record_market("m1", T0, [40, 45, 50])
    window = store.get_market_window("m1")

    assert (window.event_start, window.event_end) == (T0, T0 + QUARTER)
    assert window.tick_count == 3
    assert window.yes_token_id == "m1-up"
    assert store.get_market_window("missing") is None


def test_completed_markets_filters(store, record_market):
    record_market("old", T0, [40, 50])
    record_market("hour", T0 + QUARTER, [40, 50], duration_ms=4 * QUARTER)
    record_market("live", T0 + 8 * QUARTER, [40, 50])
    store.record_event("empty", T0 + 2 * QUARTER, T0 + 3 * QUARTER, [])

    now = T0 + 8 * QUARTER + 1
    ids = [w.market_id for w in store.find_completed_markets(now=now)]
    assert ids == ["old", "hour"]

    fifteen = store.find_completed_markets(duration_minutes=15, now=now)
    assert [w.market_id for w in fifteen] == ["old"]

    later = store.find_completed_markets(time_range=TimeRange(T0 + 1, T0 + 10 * QUARTER),
                                         now=T0 + 10 * QUARTER)
    assert [w.market_id for w in later] == ["hour", "live"]


def test_compact_sample_format():
    tick = Tick.from_sample({"t": T0, "yb": 47, "ya": 49, "nb": 51})
    assert tick.no_ask == 0
    assert tick.to_sample() == {"t": T0, "yb": 47, "ya": 49, "nb": 51, "na": 0}


def test_unopenable_store_raises(tmp_path):
    with pytest.raises(DataUnavailableError):
        PriceStore(tmp_path)


def test_store_as_context_manager(tmp_path):
    with PriceStore(tmp_path / "p.db") as s:
        assert s.find_completed_markets() == []
