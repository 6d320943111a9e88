import pytest

from backtest.conditions import IndicatorSeries, evaluate_condition, evaluate_conditions
from backtest.models import Condition, ConditionLogic, IndicatorResult, Operand, OperandKind
from conftest import MINUTE, QUARTER, T0, candles_from_closes


def _series(candles, values, fields=None):
    results = []
    for i, (c, v) in enumerate(zip(candles, values)):
        results.append(IndicatorResult(timestamp=c.timestamp, value=v,
                                       fields={k: vals[i] for k, vals in (fields or {}).items()}))
    return IndicatorSeries(results, candle_count=len(candles))


def _cond(source_a="indicator_x", operator=">", source_b="value", value=None, value2=None,
          candle="current"):
    return Condition.from_dict({"id": "c1", "sourceA": source_a, "operator": operator,
                                "sourceB": source_b, "value": value, "value2": value2,
                                "candle": candle})


def test_crosses_above_fires_exactly_once_at_the_flip():
    candles = candles_from_closes([0.5] * 6)
    series_map = {"x": _series(candles, [1, 2, 3, 4, 5, 6])}
    cond = _cond(operator="crosses above", value=3.5)

    fired = [i for i in range(len(candles)) if evaluate_condition(cond, series_map, candles, i)]
    assert fired == [3]


def test_crosses_above_from_equality_counts_as_a_flip():
    candles = candles_from_closes([0.5] * 3)
    series_map = {"x": _series(candles, [3.5, 3.5, 4.0])}
    cond = _cond(operator="crosses_above", value=3.5)
    fired = [i for i in range(3) if evaluate_condition(cond, series_map, candles, i)]
    assert fired == [2]


def test_crosses_below_between_two_indicator_fields():
    candles = candles_from_closes([0.5] * 5)
    series_map = {"m": _series(candles, [0] * 5, fields={
        "macd": [2, 2, 1, 0, -1],
        "signal": [1, 1, 1, 1, 1],
    })}
    cond = _cond(source_a="indicator_m.macd", operator="crosses below", source_b="indicator_m.signal")
    fired = [i for i in range(5) if evaluate_condition(cond, series_map, candles, i)]
    assert fired == [3]


def test_first_candle_can_never_be_a_crossover():
    candles = candles_from_closes([0.5, 0.5])
    series_map = {"x": _series(candles, [10, 10])}
    cond = _cond(operator="crosses_above", value=5)
    assert not evaluate_condition(cond, series_map, candles, 0)


def test_unresolvable_operand_fails_closed():
    candles = candles_from_closes([0.5, 0.6])
    assert not evaluate_condition(_cond(source_a="indicator_missing", operator="<", value=100),
                                  {}, candles, 1)
    series_map = {"x": _series(candles, [1.0, float("nan")])}
    assert not evaluate_condition(_cond(operator="<", value=100), series_map, candles, 1)


def test_price_operand_uses_candle_close():
    candles = candles_from_closes([0.30, 0.45])
    cond = _cond(source_a="price", operator="between", value=0.40, value2=0.60)
    assert evaluate_condition(cond, {}, candles, 1)
    assert not evaluate_condition(cond, {}, candles, 0)


def test_between_is_inclusive_and_equals_has_tolerance():
    candles = candles_from_closes([0.5])
    series_map = {"x": _series(candles, [30.00005])}
    assert evaluate_condition(_cond(operator="between", value=30.00005, value2=40), series_map, candles, 0)
    assert evaluate_condition(_cond(operator="==", value=30.0), series_map, candles, 0)
    assert not evaluate_condition(_cond(operator="==", value=30.01), series_map, candles, 0)


def test_previous_candle_offset_evaluates_one_candle_back():
    candles = candles_from_closes([0.5] * 3)
    series_map = {"x": _series(candles, [10, 50, 10])}
    cond = _cond(operator=">", value=40, candle="previous")
    assert evaluate_condition(cond, series_map, candles, 2)
    assert not evaluate_condition(cond, series_map, candles, 1)
    assert not evaluate_condition(cond, series_map, candles, 0)


def test_all_and_any_logic():
    candles = candles_from_closes([0.5])
    series_map = {"x": _series(candles, [50])}
    conds = [_cond(operator=">", value=40), _cond(operator="<", value=45)]

    triggered, reasons = evaluate_conditions(conds, ConditionLogic.ALL, series_map, candles, 0)
    assert not triggered
    assert reasons == ["indicator_x > 40"]

    triggered, _ = evaluate_conditions(conds, ConditionLogic.ANY, series_map, candles, 0)
    assert triggered


def test_empty_condition_list_never_triggers():
    candles = candles_from_closes([0.5])
    assert evaluate_conditions([], ConditionLogic.ALL, {}, candles, 0) == (False, [])
    assert evaluate_conditions([], ConditionLogic.ANY, {}, candles, 0) == (False, [])


def test_lookup_prefers_exact_then_earlier_then_position():
    results = [IndicatorResult(T0, 1.0), IndicatorResult(T0 + QUARTER, 2.0)]
    series = IndicatorSeries(results)
    assert series.lookup(T0 + 500).value == 1.0
    assert series.lookup(T0 + QUARTER - 500).value == 2.0
    assert series.lookup(T0 + 4 * MINUTE).value == 1.0
    assert series.lookup(T0 + QUARTER + 5 * MINUTE).value == 2.0
    assert series.lookup(T0 + 7 * MINUTE + 30_000) is None


def test_lookup_never_takes_a_later_value():
    # 1m candles: the warm-up candle a minute before the first result stays empty
    series = IndicatorSeries([IndicatorResult(T0 + MINUTE, 1.0)], candle_count=2)
    assert series.lookup(T0, index=0) is None
    assert series.lookup(T0 + 12 * MINUTE) is None
    assert series.lookup(T0 + MINUTE, index=1).value == 1.0


def test_positional_fallback_is_aligned_to_the_candle_tail():
    # 5 candles, 3 results (2 warm-up candles) with timestamps that match nothing
    results = [IndicatorResult(T0 + 10**9 + i, float(i)) for i in range(3)]
    series = IndicatorSeries(results, candle_count=5)
    assert series.lookup(T0, index=4).value == 2.0
    assert series.lookup(T0, index=2).value == 0.0
    assert series.lookup(T0, index=1) is None


@pytest.mark.parametrize("raw, kind, ident, field", [
    ("price", OperandKind.PRICE, None, None),
    ("close", OperandKind.PRICE, None, None),
    ("value", OperandKind.LITERAL, None, None),
    ("indicator_rsi1", OperandKind.INDICATOR, "rsi1", None),
    ("indicator_macd1.signal", OperandKind.INDICATOR, "macd1", "signal"),
])
def test_operand_parsing(raw, kind, ident, field):
    op = Operand.parse(raw)
    assert (op.kind, op.indicator_id, op.field) == (kind, ident, field)
