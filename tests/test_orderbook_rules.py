import pytest

from backtest.errors import StrategyConfigError
from backtest.models import Direction, Operator, OrderbookRule, RuleField, Tick
from backtest.orderbook_rules import (evaluate_orderbook_rules, normalize_rule_field,
                                      normalize_rule_operator, rule_matches)

TICK = Tick(timestamp=0, yes_bid=38, yes_ask=40, no_bid=60, no_ask=62)


@pytest.mark.parametrize("raw, expected", [
    ("yes_bid", RuleField.YES_BID),
    ("Yes Ask", RuleField.YES_ASK),
    ("no-bid", RuleField.NO_BID),
    ("Market Price per Share", RuleField.MARKET_PRICE),
    ("price", RuleField.MARKET_PRICE),
])
def test_field_names_are_normalized(raw, expected):
    assert normalize_rule_field(raw) == expected


@pytest.mark.parametrize("raw, expected", [
    ("less than", Operator.LT),
    ("greater_than", Operator.GT),
    (">=", Operator.GTE),
    ("Equals", Operator.EQ),
    ("more than", Operator.GT),
    ("More Than Or Equal", Operator.GTE),
    ("equal to", Operator.EQ),
    ("between", Operator.BETWEEN),
])
def test_operator_names_are_normalized(raw, expected):
    assert normalize_rule_operator(raw) == expected


def test_crossover_operators_are_rejected_for_rules():
    with pytest.raises(StrategyConfigError):
        normalize_rule_operator("crosses above")
    with pytest.raises(StrategyConfigError):
        normalize_rule_field("spread")


def test_market_price_follows_the_trade_direction():
    rule = OrderbookRule.from_dict({"field": "market_price", "operator": "less_than", "value": 45})
    assert rule_matches(rule, TICK, Direction.UP)          # 38c
    assert not rule_matches(rule, TICK, Direction.DOWN)    # 60c


def test_equals_tolerance_and_inclusive_between():
    eq = OrderbookRule(RuleField.YES_ASK, Operator.EQ, 40.4)
    assert rule_matches(eq, TICK, Direction.UP)
    assert not rule_matches(OrderbookRule(RuleField.YES_ASK, Operator.EQ, 41), TICK, Direction.UP)
    between = OrderbookRule(RuleField.NO_BID, Operator.BETWEEN, 55, 60)
    assert rule_matches(between, TICK, Direction.UP)


def test_missing_quote_never_matches():
    empty = Tick(timestamp=0, yes_bid=0, yes_ask=0, no_bid=0, no_ask=0)
    rule = OrderbookRule(RuleField.YES_BID, Operator.LT, 50)
    assert not rule_matches(rule, empty, Direction.UP)


def test_rules_are_and_combined():
    below = OrderbookRule(RuleField.YES_BID, Operator.LT, 45)
    above = OrderbookRule(RuleField.YES_BID, Operator.GT, 35)
    far = OrderbookRule(RuleField.YES_BID, Operator.GT, 39)

    triggered, reason = evaluate_orderbook_rules([below, above], TICK, Direction.UP)
    assert triggered
    assert reason == "yes_bid < 45c AND yes_bid > 35c"
    assert evaluate_orderbook_rules([below, far], TICK, Direction.UP) == (False, "")
    assert evaluate_orderbook_rules([], TICK, Direction.UP) == (False, "")
