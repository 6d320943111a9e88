"""
BACKTESTING ENGINE — Replaying Polymarket up/down markets
===========================================================

"If you can't backtest it, you can't trade it."

Replays recorded orderbook samples through a strategy, market by
market, exactly as the live bot would have seen them.

POLYMARKET BINARY MECHANICS:
  - You buy shares at price p (e.g. $0.40 for "BTC UP this 15m")
  - If correct: each share pays $1.00 → profit = $1.00 - p
  - If wrong: each share pays $0.00 → loss = -p
  - The price IS the market's implied probability

THREE WAYS TO PICK THE MARKETS:
  1. Explicit market id: replay that one market. Indicators are
     computed on its own candles; entries happen at candle close.
  2. N markets, indicator strategy: indicators run on the asset's
     continuous Binance feed, every confirmed trigger is mapped to the
     next market window (see selector.py), and each selected market is
     entered at the first tick after its trigger.
  3. N markets, orderbook-only strategy: no indicators to time entries,
     so we pick the N completed markets whose price moved the most
     (highest variance) and let the limit ladder do the work.

PER MARKET, PER TICK:
  ticks → candles → conditions / orderbook rules → ladder fill
        → position monitoring (exit price) → settlement at market end

WHAT WE TRACK:
  - Trade log (BUY / SELL / LOSS), balance after each event
  - Win rate, avg win, avg loss, profit factor
  - Max drawdown (peak-to-trough, including open-position value)
  - Sharpe ratio (annualized from per-trade returns)
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from typing import Optional

import numpy as np

import config
from backtest.account import Account
from backtest.candles import build_candles, candle_close_time
from backtest.conditions import IndicatorSeries, evaluate_conditions
from backtest.errors import (BacktestError, DataUnavailableError, NoMarketsFoundError,
                             StrategyConfigError)
from backtest.ladder import OrderLadder
from backtest.models import BacktestOptions, BacktestResult, IndicatorConfig, TimeRange
from backtest.orderbook_rules import evaluate_orderbook_rules
from backtest.position import MarketPosition
from backtest.selector import MarketVerifier, find_indicator_triggers, select_markets_for_triggers
from data.fetcher import BinanceCandleFeed
from data.price_store import PriceStore
from signals.cache import CachedIndicatorProvider
from signals.indicators import calculate_indicator, required_candles

logger = logging.getLogger(__name__)

MAX_INDICATOR_WORKERS = 4


@dataclass
class _MarketPlan:
    window: object                  # MarketWindow
    trigger: object = None          # selector.Trigger in multi-market indicator mode


@dataclass
class _RunStats:
    candles_processed: int = 0
    conditions_triggered: int = 0
    markets_processed: int = 0
    market_ids: list = field(default_factory=list)
    first_ts: Optional[int] = None
    last_ts: Optional[int] = None


def compute_indicator_series(provider, candles, indicator_configs) -> dict:
    """Indicator id → IndicatorSeries, indicators computed concurrently."""
    configs = list(indicator_configs)
    if not configs or not candles:
        return {}
    series = {}
    with ThreadPoolExecutor(max_workers=min(MAX_INDICATOR_WORKERS, len(configs))) as pool:
        future_map = {pool.submit(provider.calculate, candles, cfg): cfg for cfg in configs}
        for future in as_completed(future_map):
            cfg = future_map[future]
            results = future.result()
            series[cfg.id] = IndicatorSeries(results, candle_count=len(candles))
            logger.debug(f"[Backtester] {cfg.type} ({cfg.id}): {len(results)} values")
    return series


def rank_markets_by_variance(store, windows, direction, count: int) -> list:
    """The `count` windows whose traded-side price varied most, in chronological order."""
    scored = []
    for window in windows:
        prices = [t.price_cents(direction) for t in store.load_market_ticks(window.market_id)]
        prices = [p for p in prices if p > 0]
        if len(prices) < 2:
            continue
        scored.append((float(np.var(prices)), window))
    scored.sort(key=lambda s: (-s[0], s[1].event_start, s[1].market_id))
    chosen = [w for _, w in scored[:count]]
    return sorted(chosen, key=lambda w: (w.event_start, w.market_id))


def compute_statistics(account: Account) -> dict:
    """Aggregate the closed trades of a run. Every ratio is guarded against /0."""
    closed = [t for t in account.trades if t.is_closing and t.pnl is not None]
    wins = [t.pnl for t in closed if t.pnl > 0]
    losses = [abs(t.pnl) for t in closed if t.pnl < 0]
    decided = len(wins) + len(losses)

    gross_profit = sum(wins)
    gross_loss = sum(losses)
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = config.PROFIT_FACTOR_CAP if gross_profit > 0 else 0.0

    returns = np.asarray(account.returns, dtype=float)
    sharpe = 0.0
    if len(returns) >= 2:
        std = float(np.std(returns, ddof=1))
        if std > 0:
            sharpe = float(np.mean(returns)) / std * float(np.sqrt(config.SHARPE_PERIODS))

    return {
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": (len(wins) / decided * 100) if decided else 0.0,
        "avg_win": (gross_profit / len(wins)) if wins else 0.0,
        "avg_loss": (gross_loss / len(losses)) if losses else 0.0,
        "profit_factor": profit_factor,
        "sharpe_ratio": sharpe,
    }


class Backtester:
    """
    One instance can run many backtests; every run keeps its own
    Account and counters, so runs never share state.

    Collaborators (all injectable, defaults are created lazily):
      store     — historical price store (PriceStore)
      feed      — continuous asset candles (BinanceCandleFeed)
      resolver  — market metadata for verification (GammaMarketResolver),
                  None disables verification
      cache     — indicator cache for the asset feed (IndicatorCache)
      provider  — indicator value provider; overrides the defaults
    """

    def __init__(self, store=None, feed=None, resolver=None, cache=None, provider=None,
                 verify_markets: bool = True):
        self._store = store
        self._feed = feed
        self.resolver = resolver
        self.cache = cache
        self.provider = provider
        self.verify_markets = verify_markets

    @property
    def store(self):
        if self._store is None:
            self._store = PriceStore(config.DB_PATH)
        return self._store

    @property
    def feed(self):
        if self._feed is None:
            self._feed = BinanceCandleFeed()
        return self._feed

    # ════════════════════════════════════════════════════════════
    # RUN
    # ════════════════════════════════════════════════════════════

    def run(self, strategy, initial_balance: float = config.INITIAL_BALANCE,
            options: BacktestOptions = None) -> BacktestResult:
        options = options or BacktestOptions()
        if not strategy.order_ladder:
            raise StrategyConfigError(f"Strategy '{strategy.name}' has no order ladder to trade")

        logger.info(f"[Backtester] Starting backtest for \"{strategy.name}\" "
                    f"({strategy.asset or 'any asset'} {strategy.timeframe} {strategy.direction.value})")
        if options.exit_price is not None:
            logger.info(f"[Backtester] Exit price: {options.exit_price}c")

        stats = _RunStats()
        plans = self._resolve_markets(strategy, options, stats)
        account = Account(initial_balance)

        for plan in plans:
            if self._simulate_market(strategy, plan, account, options, stats):
                stats.markets_processed += 1
                stats.market_ids.append(plan.window.market_id)

        if stats.markets_processed == 0:
            raise BacktestError(f"No markets could be processed ({len(plans)} selected)")

        result = self._build_result(strategy, account, options, stats)
        logger.info(f"[Backtester] Completed: {result.total_trades} trades over "
                    f"{result.markets_processed} markets, PnL ${result.total_pnl:+.2f} "
                    f"({result.total_pnl_percent:+.2f}%)")
        return result

    # ════════════════════════════════════════════════════════════
    # MARKET SET
    # ════════════════════════════════════════════════════════════

    def _resolve_markets(self, strategy, options, stats) -> list:
        if options.market_id:
            return [self._explicit_market(options.market_id)]

        if options.market_count is not None:
            if options.market_count <= 0:
                raise StrategyConfigError(f"Market count must be positive, got {options.market_count}")
            windows = self.store.find_completed_markets(
                duration_minutes=strategy.timeframe_minutes, time_range=options.time_range)
            if not windows:
                raise NoMarketsFoundError(
                    f"No markets found: no completed {strategy.timeframe} market windows in the price store")
            logger.info(f"[Backtester] {len(windows)} completed {strategy.timeframe} market windows")
            if strategy.uses_indicators:
                return self._markets_from_triggers(strategy, windows, options.market_count, stats)
            chosen = rank_markets_by_variance(self.store, windows, strategy.direction,
                                              options.market_count)
            logger.info(f"[Backtester] Orderbook-only: testing the {len(chosen)} most volatile markets")
            return [_MarketPlan(window=w) for w in chosen]

        if strategy.market:
            return [self._explicit_market(strategy.market)]

        raise StrategyConfigError("No market specified: pass a market id or a market count")

    def _explicit_market(self, market_id: str) -> _MarketPlan:
        window = self.store.get_market_window(market_id)
        if window is None:
            raise NoMarketsFoundError(f"No markets found: {market_id} is not in the price store")
        return _MarketPlan(window=window)

    def _markets_from_triggers(self, strategy, windows, count: int, stats) -> list:
        if not strategy.asset:
            raise StrategyConfigError("Multi-market indicator backtests need the strategy's asset")

        candles = self.feed.get_candle_history(strategy.asset, strategy.timeframe,
                                               config.ASSET_CANDLE_COUNT)
        need = required_candles(strategy.condition_indicators)
        if len(candles) < max(need, 2):
            raise DataUnavailableError(
                f"Asset feed returned {len(candles)} {strategy.timeframe} candles for "
                f"{strategy.asset}, indicators need {need}")
        stats.candles_processed += len(candles)

        provider = self.provider or CachedIndicatorProvider(self.cache, strategy.asset, strategy.timeframe)
        series_map = compute_indicator_series(provider, candles, strategy.condition_indicators)
        triggers = find_indicator_triggers(strategy, candles, series_map)
        stats.conditions_triggered += len(triggers)

        verify = None
        if self.verify_markets and self.resolver is not None:
            verify = MarketVerifier(self.resolver, strategy.asset, strategy.timeframe)
        selections = select_markets_for_triggers(
            triggers, windows, strategy.interval_ms, count,
            lag_candles=config.TRIGGER_LAG_CANDLES, verify=verify)
        logger.info(f"[Backtester] {len(selections)}/{count} requested markets matched to triggers")

        plans = [_MarketPlan(window=s.window, trigger=s.trigger) for s in selections]
        return sorted(plans, key=lambda p: (p.window.event_start, p.window.market_id))

    # ════════════════════════════════════════════════════════════
    # ONE MARKET
    # ════════════════════════════════════════════════════════════

    def _simulate_market(self, strategy, plan, account, options, stats) -> bool:
        """Replay one market. False if it had to be skipped."""
        window = plan.window
        market_id = window.market_id
        direction = strategy.direction
        tf = strategy.timeframe_minutes

        ticks = self.store.load_market_ticks(market_id, options.time_range)
        if not ticks:
            logger.info(f"[Backtester] {market_id}: no price data in range, skipping")
            return False

        candles = build_candles(ticks, tf, direction)
        series_map = {}
        on_candles = strategy.uses_indicators and plan.trigger is None
        if on_candles:
            need = required_candles(strategy.condition_indicators)
            if len(candles) < need:
                logger.info(f"[Backtester] {market_id}: {len(candles)} candles, indicators need "
                            f"{need}, skipping")
                return False
            provider = self.provider or CachedIndicatorProvider()
            series_map = compute_indicator_series(provider, candles, strategy.condition_indicators)
        stats.candles_processed += len(candles)

        ladder = OrderLadder(strategy.order_ladder, immediate=strategy.uses_indicators)
        position = MarketPosition(market_id, direction, options.exit_price)
        entry_after = max(plan.trigger.timestamp, window.event_start) if plan.trigger else None
        trigger_pending = plan.trigger is not None
        next_candle = 0
        prev_price = None
        last_price = None
        last_ts = None

        for tick in ticks:
            price = tick.price_cents(direction)
            if price <= 0:
                continue

            # Candles whose close is now known
            signal = None
            if on_candles:
                while (next_candle < len(candles) and candles[next_candle].closed
                       and tick.timestamp >= candle_close_time(candles[next_candle], tf)):
                    triggered, reasons = evaluate_conditions(
                        strategy.conditions, strategy.condition_logic, series_map, candles, next_candle)
                    if triggered:
                        stats.conditions_triggered += 1
                        signal = ", ".join(reasons)
                    next_candle += 1
            elif trigger_pending and tick.timestamp >= entry_after:
                signal = plan.trigger.reason or "Indicator trigger"
                trigger_pending = False

            if position.is_open:
                position.on_tick(tick, account)
            elif position.can_enter:
                if signal is None and strategy.orderbook_rules:
                    ok, rule_reason = evaluate_orderbook_rules(strategy.orderbook_rules, tick, direction)
                    if ok:
                        signal = rule_reason
                elif signal is None and not strategy.uses_indicators:
                    signal = "Limit order"
                if signal is not None:
                    trade = ladder.try_fill(account, market_id, tick.timestamp, price, prev_price, signal)
                    if trade is not None:
                        position.open(trade)

            account.mark(account.balance + position.unrealized_value(price))
            prev_price = price
            last_price = price
            last_ts = tick.timestamp

        if last_ts is None:
            logger.info(f"[Backtester] {market_id}: no quoted {direction.value} price, skipping")
            return False

        if position.is_open:
            resolved = options.time_range is None or options.time_range.end >= window.event_end
            settle_ts = window.event_end if resolved else last_ts
            position.settle(account, last_price, settle_ts, resolved=resolved)

        first_ts = ticks[0].timestamp
        stats.first_ts = first_ts if stats.first_ts is None else min(stats.first_ts, first_ts)
        stats.last_ts = last_ts if stats.last_ts is None else max(stats.last_ts, last_ts)
        logger.info(f"[Backtester] {market_id}: {len(ticks)} ticks, {len(candles)} candles, "
                    f"position {position.state.value} | Balance ${account.balance:,.2f}")
        return True

    # ════════════════════════════════════════════════════════════
    # REPORT
    # ════════════════════════════════════════════════════════════

    def _build_result(self, strategy, account, options, stats) -> BacktestResult:
        if options.time_range is not None:
            start, end = options.time_range.start, options.time_range.end
        else:
            start, end = stats.first_ts, stats.last_ts

        initial = account.initial_balance
        total_pnl = account.balance - initial
        return BacktestResult(
            strategy_id=strategy.id or "unknown",
            strategy_name=strategy.name,
            start_time=start,
            end_time=end,
            initial_balance=initial,
            final_balance=account.balance,
            total_pnl=total_pnl,
            total_pnl_percent=(total_pnl / initial * 100) if initial > 0 else 0.0,
            total_trades=len(account.trades),
            max_drawdown=account.max_drawdown,
            max_drawdown_percent=account.max_drawdown_pct * 100,
            trades=list(account.trades),
            equity_curve=list(account.equity_curve),
            candles_processed=stats.candles_processed,
            conditions_triggered=stats.conditions_triggered,
            markets_processed=stats.markets_processed,
            market_ids=list(stats.market_ids),
            **compute_statistics(account),
        )


def run_backtest(strategy, initial_balance: float = config.INITIAL_BALANCE,
                 options: BacktestOptions = None, **collaborators) -> BacktestResult:
    """Run one backtest. See Backtester for the injectable collaborators."""
    return Backtester(**collaborators).run(strategy, initial_balance, options)


def is_strategy_profitable(strategy, market_id: str, lookback_days: int = 7,
                           now: Optional[int] = None, **collaborators) -> dict:
    """Quick check over the last `lookback_days`. A failed backtest counts as not profitable."""
    now = int(time.time() * 1000) if now is None else now
    options = BacktestOptions(
        market_id=market_id,
        time_range=TimeRange(start=now - lookback_days * 86_400_000, end=now),
    )
    try:
        result = run_backtest(strategy, 1000.0, options, **collaborators)
    except BacktestError as e:
        logger.warning(f"[Backtester] Quick check failed: {e}")
        return {"profitable": False, "pnl_percent": 0.0, "win_rate": 0.0}
    return {
        "profitable": result.total_pnl > 0,
        "pnl_percent": result.total_pnl_percent,
        "win_rate": result.win_rate,
    }


def chart_data(asset: str, timeframe: str, indicator_type: str = None,
               parameters: dict = None, feed=None,
               count: int = config.ASSET_CANDLE_COUNT) -> dict:
    """Asset candles plus, optionally, one indicator series, as plain dicts."""
    feed = feed or BinanceCandleFeed()
    candles = feed.get_candle_history(asset, timeframe, count)
    payload = {"candles": [asdict(c) for c in candles], "indicator_data": []}
    if candles and indicator_type:
        cfg = IndicatorConfig(id=indicator_type, type=indicator_type, timeframe=timeframe,
                              parameters=parameters or {})
        payload["indicator_data"] = [
            {"timestamp": r.timestamp, "value": r.value, "fields": dict(r.fields)}
            for r in calculate_indicator(candles, cfg)
        ]
    return payload
