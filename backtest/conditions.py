"""
CONDITION EVALUATOR — The strategy trigger language
=====================================================

A strategy's entry rule is a list of conditions combined with ALL/ANY:

    indicator_rsi1 crosses_above value(30)
    indicator_macd1.macd > indicator_macd1.signal
    price between 0.40 and 0.60

Each side of a condition is an operand:
  - price / close     → the candle close being evaluated
  - value             → the literal stored on the condition
  - indicator_<id>[.field] → a value from that indicator's series

FAIL CLOSED: if any operand cannot be resolved (indicator still warming
up, no value near this timestamp) the condition is False. A missing
value must never look like a signal.

CROSSOVERS are stateful: they compare the ordering of A vs B on the
previous candle with the ordering on this one, and fire only when it
strictly flips. The first evaluable candle can never be a crossover.
"""

import math
from bisect import bisect_left, bisect_right
from typing import Optional

import config
from backtest.models import ConditionLogic, Operator, OperandKind


class IndicatorSeries:
    """Time-indexed indicator results with tolerant timestamp lookup."""

    def __init__(self, results, candle_count: Optional[int] = None):
        self.results = sorted(results, key=lambda r: r.timestamp)
        self._timestamps = [r.timestamp for r in self.results]
        # Results cover the tail of the candle list (warm-up candles have none)
        self._offset = (candle_count - len(self.results)) if candle_count else 0

    def __len__(self):
        return len(self.results)

    def lookup(self, timestamp: int, index: Optional[int] = None):
        """
        Find the result for a candle: exact (±1s), else the latest result
        at most 5 minutes earlier, else by candle position, else None.
        """
        if not self.results:
            return None

        pos = bisect_left(self._timestamps, timestamp)
        for i in (pos, pos - 1):
            if 0 <= i < len(self.results) and abs(self._timestamps[i] - timestamp) <= config.EXACT_MATCH_MS:
                return self.results[i]

        # Never look ahead: a warm-up candle must not take a later value
        prev = bisect_right(self._timestamps, timestamp) - 1
        if prev >= 0 and timestamp - self._timestamps[prev] <= config.NEAR_MATCH_MS:
            return self.results[prev]

        if index is not None:
            i = index - self._offset
            if 0 <= i < len(self.results):
                return self.results[i]
        return None


def resolve_operand(operand, condition, series_map: dict, timestamp: int,
                    price: float, index: Optional[int] = None) -> Optional[float]:
    """Resolve one side of a condition to a number, or None."""
    if operand.kind == OperandKind.PRICE:
        value = price
    elif operand.kind == OperandKind.LITERAL:
        value = condition.value
    else:
        series = series_map.get(operand.indicator_id)
        if series is None:
            return None
        result = series.lookup(timestamp, index)
        if result is None:
            return None
        value = result.get(operand.field)

    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return float(value)


def _compare(op: Operator, a: float, b: float, upper: Optional[float]) -> bool:
    if op == Operator.GT:
        return a > b
    if op == Operator.LT:
        return a < b
    if op == Operator.GTE:
        return a >= b
    if op == Operator.LTE:
        return a <= b
    if op == Operator.EQ:
        return abs(a - b) < config.EQUALS_TOLERANCE
    if op == Operator.BETWEEN:
        hi = b if upper is None else upper
        return min(b, hi) <= a <= max(b, hi)
    return False


def evaluate_condition(condition, series_map: dict, candles, index: int) -> bool:
    """Evaluate one condition at candles[index] (the candle that just closed)."""
    j = index - int(condition.candle)
    if j < 0 or j >= len(candles):
        return False

    candle = candles[j]
    a = resolve_operand(condition.source_a, condition, series_map, candle.timestamp, candle.close, j)
    b = resolve_operand(condition.source_b, condition, series_map, candle.timestamp, candle.close, j)
    if a is None or b is None:
        return False

    if not condition.operator.is_crossover:
        return _compare(condition.operator, a, b, condition.value2)

    if j < 1:
        return False
    prev = candles[j - 1]
    prev_a = resolve_operand(condition.source_a, condition, series_map, prev.timestamp, prev.close, j - 1)
    prev_b = resolve_operand(condition.source_b, condition, series_map, prev.timestamp, prev.close, j - 1)
    if prev_a is None or prev_b is None:
        return False

    if condition.operator == Operator.CROSSES_ABOVE:
        return prev_a <= prev_b and a > b
    return prev_a >= prev_b and a < b


def evaluate_conditions(conditions, logic: ConditionLogic, series_map: dict,
                        candles, index: int) -> tuple:
    """
    Combine all conditions at one candle.
    Returns (triggered, reasons) where reasons lists the conditions that held.
    """
    if not conditions:
        return False, []

    results = []
    reasons = []
    for condition in conditions:
        ok = evaluate_condition(condition, series_map, candles, index)
        results.append(ok)
        if ok:
            reasons.append(condition.describe())

    triggered = all(results) if logic == ConditionLogic.ALL else any(results)
    return triggered, reasons
