"""
ORDERBOOK RULES — Raw price triggers, no indicators
=====================================================

The simplest strategies skip technical analysis entirely:

    "buy when yes_bid < 40c"
    "buy when market price is between 20c and 30c"

Rules compare a field of the current tick (in cents) against a
threshold. Stored rules use UI-friendly names ("Market Price per
Share", "less than"), so both fields and operators are normalized once
when the strategy is parsed.
"""

from typing import Any

import config
from backtest.errors import StrategyConfigError
from backtest.models import Operator, RuleField, normalize_operator

_FIELD_ALIASES = {
    "yes_bid": RuleField.YES_BID, "yesbid": RuleField.YES_BID,
    "yes_ask": RuleField.YES_ASK, "yesask": RuleField.YES_ASK,
    "no_bid": RuleField.NO_BID, "nobid": RuleField.NO_BID,
    "no_ask": RuleField.NO_ASK, "noask": RuleField.NO_ASK,
    "market_price": RuleField.MARKET_PRICE, "market_price_per_share": RuleField.MARKET_PRICE,
    "price": RuleField.MARKET_PRICE, "price_per_share": RuleField.MARKET_PRICE,
}

_RULE_OPERATORS = (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE,
                   Operator.EQ, Operator.BETWEEN)


def _key(raw: Any) -> str:
    text = str(raw or "").strip().lower().replace("-", "_")
    return "_".join(text.split())


def normalize_rule_field(raw: Any) -> RuleField:
    key = _key(raw)
    if key not in _FIELD_ALIASES:
        raise StrategyConfigError(f"Unknown orderbook field: {raw!r}")
    return _FIELD_ALIASES[key]


def normalize_rule_operator(raw: Any) -> Operator:
    op = normalize_operator(raw)
    if op not in _RULE_OPERATORS:
        raise StrategyConfigError(f"Operator {raw!r} is not valid for orderbook rules")
    return op


def rule_matches(rule, tick, direction) -> bool:
    price = tick.field_cents(rule.field, direction)
    if price <= 0:
        return False
    tol = config.RULE_EQUALS_TOLERANCE_CENTS

    if rule.operator == Operator.GT:
        return price > rule.value
    if rule.operator == Operator.LT:
        return price < rule.value
    if rule.operator == Operator.GTE:
        return price >= rule.value
    if rule.operator == Operator.LTE:
        return price <= rule.value
    if rule.operator == Operator.EQ:
        return abs(price - rule.value) <= tol
    if rule.operator == Operator.BETWEEN:
        hi = rule.value if rule.value2 is None else rule.value2
        return min(rule.value, hi) <= price <= max(rule.value, hi)
    return False


def evaluate_orderbook_rules(rules, tick, direction) -> tuple:
    """
    All rules must hold on this tick.
    Returns (triggered, reason).
    """
    if not rules:
        return False, ""
    for rule in rules:
        if not rule_matches(rule, tick, direction):
            return False, ""
    reason = " AND ".join(_describe(r) for r in rules)
    return True, reason


def _describe(rule) -> str:
    if rule.operator == Operator.BETWEEN and rule.value2 is not None:
        return f"{rule.field.value} between {rule.value:g}c and {rule.value2:g}c"
    return f"{rule.field.value} {rule.operator.value} {rule.value:g}c"
