"""
DATA MODEL — Ticks, Candles, Strategies and the Trade Ledger
==============================================================

Everything the engine passes around is a small dataclass. Two price
units coexist and the boundary between them is always explicit:

  - CENTS (int, 0-100): tick prices, ladder limits, rule thresholds,
    exit prices. Every comparison against the orderbook happens here.
  - DOLLARS (float, 0-1 per share): candle OHLC, trade prices, P&L.
    Every balance/return computation happens here.

String-typed names coming from stored strategies ("crosses above",
"greater_than", "market_price_per_share") are normalized ONCE when the
strategy is parsed; the simulation loop only ever sees enums.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

import config
from backtest.errors import StrategyConfigError


def cents_to_dollars(cents: float) -> float:
    return cents / 100.0


# ═══════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════

class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"

    @classmethod
    def parse(cls, raw: Any) -> "Direction":
        """Missing means UP; anything other than UP/DOWN is a config error."""
        key = str(raw or "UP").strip().upper()
        if key not in cls.__members__:
            raise StrategyConfigError(f"Unknown direction: {raw!r}")
        return cls[key]


class Operator(str, Enum):
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    BETWEEN = "between"
    CROSSES_ABOVE = "crosses_above"
    CROSSES_BELOW = "crosses_below"

    @property
    def is_crossover(self) -> bool:
        return self in (Operator.CROSSES_ABOVE, Operator.CROSSES_BELOW)


_OPERATOR_ALIASES = {
    ">": Operator.GT, "gt": Operator.GT, "greater_than": Operator.GT, "above": Operator.GT,
    "more_than": Operator.GT,
    "<": Operator.LT, "lt": Operator.LT, "less_than": Operator.LT, "below": Operator.LT,
    ">=": Operator.GTE, "gte": Operator.GTE, "greater_equal": Operator.GTE,
    "greater_than_or_equal": Operator.GTE, "greater_than_or_equal_to": Operator.GTE,
    "more_than_or_equal": Operator.GTE, "more_than_or_equal_to": Operator.GTE,
    "<=": Operator.LTE, "lte": Operator.LTE, "less_equal": Operator.LTE,
    "less_than_or_equal": Operator.LTE, "less_than_or_equal_to": Operator.LTE,
    "==": Operator.EQ, "=": Operator.EQ, "eq": Operator.EQ, "equal": Operator.EQ,
    "equal_to": Operator.EQ, "equals": Operator.EQ,
    "between": Operator.BETWEEN,
    "crosses_above": Operator.CROSSES_ABOVE, "cross_above": Operator.CROSSES_ABOVE,
    "crossover": Operator.CROSSES_ABOVE,
    "crosses_below": Operator.CROSSES_BELOW, "cross_below": Operator.CROSSES_BELOW,
    "crossunder": Operator.CROSSES_BELOW,
}


def normalize_operator(raw: Any) -> Operator:
    """Map any stored spelling ("crosses above", "Greater Than", ">=") to an Operator."""
    key = str(raw or "").strip().lower().replace("-", "_")
    key = "_".join(key.split())
    if key not in _OPERATOR_ALIASES:
        raise StrategyConfigError(f"Unknown operator: {raw!r}")
    return _OPERATOR_ALIASES[key]


class ConditionLogic(str, Enum):
    ALL = "all"
    ANY = "any"


class CandleOffset(int, Enum):
    CURRENT = 0
    PREVIOUS = 1


class RuleField(str, Enum):
    YES_BID = "yes_bid"
    YES_ASK = "yes_ask"
    NO_BID = "no_bid"
    NO_ASK = "no_ask"
    MARKET_PRICE = "market_price"


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    LOSS = "LOSS"


# ═══════════════════════════════════════════════════════════════
# MARKET DATA
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Tick:
    timestamp: int      # ms
    yes_bid: int        # cents
    yes_ask: int
    no_bid: int
    no_ask: int

    @classmethod
    def from_sample(cls, sample: dict) -> "Tick":
        """Build from the compact stored form {t, yb, ya, nb, na}."""
        return cls(
            timestamp=int(sample["t"]),
            yes_bid=int(sample.get("yb") or 0),
            yes_ask=int(sample.get("ya") or 0),
            no_bid=int(sample.get("nb") or 0),
            no_ask=int(sample.get("na") or 0),
        )

    def to_sample(self) -> dict:
        return {"t": self.timestamp, "yb": self.yes_bid, "ya": self.yes_ask,
                "nb": self.no_bid, "na": self.no_ask}

    def price_cents(self, direction: Direction) -> int:
        """The price the engine trades on: yes bid for UP, no bid for DOWN."""
        return self.yes_bid if direction == Direction.UP else self.no_bid

    def field_cents(self, rule_field: RuleField, direction: Direction) -> int:
        if rule_field == RuleField.MARKET_PRICE:
            return self.price_cents(direction)
        return getattr(self, rule_field.value)


@dataclass(frozen=True)
class Candle:
    timestamp: int      # bucket start, ms
    open: float
    high: float
    low: float
    close: float
    volume: int = 1     # number of ticks in the bucket
    closed: bool = True


@dataclass(frozen=True)
class MarketWindow:
    """One completed market event as stored in the price store."""
    market_id: str
    event_start: int    # ms
    event_end: int      # ms
    tick_count: int = 0
    yes_token_id: str = ""
    no_token_id: str = ""


@dataclass(frozen=True)
class MarketMetadata:
    market_id: str
    event_start: Optional[int]
    event_end: Optional[int]
    yes_token_id: str
    no_token_id: str
    slug: str = ""


@dataclass(frozen=True)
class TimeRange:
    start: int          # ms, inclusive
    end: int            # ms, inclusive

    def contains(self, ts: int) -> bool:
        return self.start <= ts <= self.end


# ═══════════════════════════════════════════════════════════════
# INDICATORS
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class IndicatorConfig:
    id: str
    type: str
    timeframe: str = config.DEFAULT_TIMEFRAME
    parameters: dict = field(default_factory=dict)
    use_in_conditions: bool = True

    @classmethod
    def from_dict(cls, raw: dict) -> "IndicatorConfig":
        if not raw.get("id") or not raw.get("type"):
            raise StrategyConfigError(f"Indicator needs an id and a type: {raw!r}")
        use = raw.get("useInConditions", raw.get("use_in_conditions", True))
        return cls(
            id=str(raw["id"]),
            type=str(raw["type"]),
            timeframe=str(raw.get("timeframe") or config.DEFAULT_TIMEFRAME),
            parameters={k: v for k, v in (raw.get("parameters") or {}).items()},
            use_in_conditions=bool(use),
        )


@dataclass(frozen=True)
class IndicatorResult:
    """One indicator value: a scalar, named sub-values, or both."""
    timestamp: int
    value: Optional[float] = None
    fields: dict = field(default_factory=dict)

    def get(self, field_name: Optional[str] = None) -> Optional[float]:
        if field_name:
            return self.fields.get(field_name)
        return self.value


# ═══════════════════════════════════════════════════════════════
# STRATEGY
# ═══════════════════════════════════════════════════════════════

class OperandKind(str, Enum):
    PRICE = "price"
    LITERAL = "value"
    INDICATOR = "indicator"


@dataclass(frozen=True)
class Operand:
    kind: OperandKind
    indicator_id: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def parse(cls, raw: Any) -> "Operand":
        text = str(raw or "").strip()
        if not text:
            raise StrategyConfigError("Condition operand is empty")
        lowered = text.lower()
        if lowered in ("price", "close"):
            return cls(OperandKind.PRICE)
        if lowered == "value":
            return cls(OperandKind.LITERAL)
        if text.startswith("indicator_"):
            text = text[len("indicator_"):]
        indicator_id, _, field_name = text.partition(".")
        return cls(OperandKind.INDICATOR, indicator_id, field_name or None)

    def __str__(self) -> str:
        if self.kind != OperandKind.INDICATOR:
            return self.kind.value
        ref = f"indicator_{self.indicator_id}"
        return f"{ref}.{self.field}" if self.field else ref


@dataclass(frozen=True)
class Condition:
    id: str
    source_a: Operand
    operator: Operator
    source_b: Operand
    value: Optional[float] = None
    value2: Optional[float] = None
    candle: CandleOffset = CandleOffset.CURRENT

    @classmethod
    def from_dict(cls, raw: dict) -> "Condition":
        candle = str(raw.get("candle") or "current").lower()
        return cls(
            id=str(raw.get("id") or ""),
            source_a=Operand.parse(raw.get("sourceA", raw.get("source_a"))),
            operator=normalize_operator(raw.get("operator")),
            source_b=Operand.parse(raw.get("sourceB", raw.get("source_b", "value"))),
            value=_optional_float(raw.get("value")),
            value2=_optional_float(raw.get("value2")),
            candle=CandleOffset.PREVIOUS if candle == "previous" else CandleOffset.CURRENT,
        )

    def describe(self) -> str:
        rhs = str(self.source_b)
        if self.source_b.kind == OperandKind.LITERAL and self.value is not None:
            rhs = f"{self.value:g}"
        if self.operator == Operator.BETWEEN and self.value2 is not None:
            rhs = f"{rhs} and {self.value2:g}"
        return f"{self.source_a} {self.operator.value} {rhs}"


@dataclass(frozen=True)
class OrderLadderItem:
    price: int          # cents
    shares: float

    @classmethod
    def from_dict(cls, raw: dict) -> "OrderLadderItem":
        try:
            price = int(round(float(raw["price"])))
            shares = float(raw["shares"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StrategyConfigError(f"Bad order ladder item: {raw!r}") from exc
        if not 0 < price < 100 or shares <= 0:
            raise StrategyConfigError(f"Order ladder item out of range: {raw!r}")
        return cls(price=price, shares=shares)

    @property
    def cost(self) -> float:
        return self.shares * cents_to_dollars(self.price)


@dataclass(frozen=True)
class OrderbookRule:
    field: RuleField
    operator: Operator
    value: float        # cents
    value2: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "OrderbookRule":
        # Imported here: the rule evaluator depends on this module.
        from backtest.orderbook_rules import normalize_rule_field, normalize_rule_operator
        value = _optional_float(raw.get("value"))
        if value is None:
            raise StrategyConfigError(f"Orderbook rule needs a threshold: {raw!r}")
        return cls(
            field=normalize_rule_field(raw.get("field")),
            operator=normalize_rule_operator(raw.get("operator")),
            value=value,
            value2=_optional_float(raw.get("value2")),
        )


@dataclass
class Strategy:
    name: str
    direction: Direction = Direction.UP
    timeframe: str = config.DEFAULT_TIMEFRAME
    asset: str = ""
    id: str = ""
    market: Optional[str] = None
    indicators: list = field(default_factory=list)
    conditions: list = field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.ALL
    orderbook_rules: list = field(default_factory=list)
    order_ladder: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict) -> "Strategy":
        """Parse a stored strategy (camelCase or snake_case keys)."""
        if not isinstance(raw, dict):
            raise StrategyConfigError("Strategy must be a JSON object")
        timeframe = str(raw.get("timeframe") or config.DEFAULT_TIMEFRAME).lower()
        if timeframe not in config.TIMEFRAME_MINUTES:
            raise StrategyConfigError(f"Unsupported timeframe: {timeframe}")
        logic = str(raw.get("conditionLogic", raw.get("condition_logic")) or "all").lower()
        return cls(
            name=str(raw.get("name") or "Unnamed strategy"),
            direction=Direction.parse(raw.get("direction")),
            timeframe=timeframe,
            asset=str(raw.get("asset") or "").upper(),
            id=str(raw.get("id") or ""),
            market=raw.get("market") or None,
            indicators=[IndicatorConfig.from_dict(i) for i in raw.get("indicators") or []],
            conditions=[Condition.from_dict(c) for c in raw.get("conditions") or []],
            condition_logic=ConditionLogic.ANY if logic == "any" else ConditionLogic.ALL,
            orderbook_rules=[OrderbookRule.from_dict(r)
                             for r in raw.get("orderbookRules", raw.get("orderbook_rules")) or []],
            order_ladder=[OrderLadderItem.from_dict(o)
                          for o in raw.get("orderLadder", raw.get("order_ladder")) or []],
        )

    @property
    def timeframe_minutes(self) -> int:
        return config.TIMEFRAME_MINUTES[self.timeframe]

    @property
    def interval_ms(self) -> int:
        return self.timeframe_minutes * 60_000

    @property
    def uses_indicators(self) -> bool:
        """Indicator-triggered: entry timing comes from conditions."""
        return bool(self.conditions)

    @property
    def condition_indicators(self) -> list:
        return [i for i in self.indicators if i.use_in_conditions]


# ═══════════════════════════════════════════════════════════════
# POSITIONS & LEDGER
# ═══════════════════════════════════════════════════════════════

@dataclass
class ActiveTrade:
    market_id: str
    entry_timestamp: int
    entry_price: int    # cents
    shares: float
    cost: float         # dollars
    max_price: int      # cents, running max seen since entry

    def market_value(self, price_cents: int) -> float:
        return self.shares * cents_to_dollars(price_cents)


@dataclass(frozen=True)
class BacktestTrade:
    timestamp: int
    side: TradeSide
    price: float        # dollars per share
    shares: float
    value: float        # dollars
    balance: float      # balance after this event
    trigger_reason: str
    market_id: str = ""
    pnl: Optional[float] = None

    @property
    def is_closing(self) -> bool:
        return self.side != TradeSide.BUY

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["side"] = self.side.value
        return payload


@dataclass
class BacktestOptions:
    market_id: Optional[str] = None
    market_count: Optional[int] = None
    exit_price: Optional[int] = None        # cents
    time_range: Optional[TimeRange] = None


@dataclass
class BacktestResult:
    strategy_id: str
    strategy_name: str
    start_time: Optional[int]
    end_time: Optional[int]
    initial_balance: float
    final_balance: float
    total_pnl: float
    total_pnl_percent: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float         # % of closed trades
    avg_win: float
    avg_loss: float         # magnitude
    profit_factor: float
    max_drawdown: float     # dollars
    max_drawdown_percent: float
    sharpe_ratio: float
    trades: list = field(default_factory=list)
    equity_curve: list = field(default_factory=list)
    candles_processed: int = 0
    conditions_triggered: int = 0
    markets_processed: int = 0
    market_ids: list = field(default_factory=list)

    @property
    def return_pct(self) -> float:
        return self.total_pnl_percent

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["trades"] = [t.to_dict() for t in self.trades]
        return payload

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)


def _optional_float(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise StrategyConfigError(f"Not a number: {raw!r}") from exc
