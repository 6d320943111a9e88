import pytest

from backtest.account import Account
from backtest.ladder import OrderLadder
from backtest.models import Direction, OrderLadderItem, Tick, TradeSide
from backtest.position import MarketPosition, PositionState

LADDER = [OrderLadderItem(price=40, shares=100), OrderLadderItem(price=30, shares=50)]


def _tick(ts, yes_bid):
    return Tick(timestamp=ts, yes_bid=yes_bid, yes_ask=yes_bid + 1,
                no_bid=100 - yes_bid, no_ask=101 - yes_bid)


def _open_position(exit_price=None, balance=1000.0):
    account = Account(balance)
    trade = OrderLadder(LADDER, immediate=True).try_fill(account, "m1", 0, 45, None, "signal")
    position = MarketPosition("m1", Direction.UP, exit_price)
    position.open(trade)
    return account, position


# ═══════════════════════════════════════════════════════════════
# LADDER
# ═══════════════════════════════════════════════════════════════

def test_immediate_fill_uses_first_rung_at_its_limit_price():
    account = Account(1000)
    trade = OrderLadder(LADDER, immediate=True).try_fill(account, "m1", 5, 47, None, "signal")

    assert trade.entry_price == 40
    assert trade.shares == 100
    assert trade.cost == pytest.approx(40.0)
    assert account.balance == pytest.approx(960.0)
    assert account.trades[-1].side == TradeSide.BUY
    assert account.trades[-1].price == pytest.approx(0.40)


def test_limit_fill_needs_price_to_cross_down_through_the_limit():
    ladder = OrderLadder(LADDER, immediate=False)
    account = Account(1000)

    assert ladder.try_fill(account, "m1", 0, 40, None, "book") is None      # no previous price
    assert ladder.try_fill(account, "m1", 1, 40, 40, "book") is None        # sitting at the limit
    trade = ladder.try_fill(account, "m1", 2, 39, 45, "book")
    assert trade is not None and trade.entry_price == 40


def test_first_matching_rung_wins_when_price_gaps_through_several():
    account = Account(1000)
    trade = OrderLadder(LADDER, immediate=False).try_fill(account, "m1", 0, 25, 50, "book")
    assert trade.entry_price == 40
    assert len(account.trades) == 1


def test_insufficient_balance_skips_the_fill():
    account = Account(10)
    assert OrderLadder(LADDER, immediate=True).try_fill(account, "m1", 0, 40, None, "x") is None
    assert account.balance == 10
    assert account.trades == []


# ═══════════════════════════════════════════════════════════════
# POSITION LIFECYCLE
# ═══════════════════════════════════════════════════════════════

def test_binary_win_pays_one_dollar_per_share():
    account, position = _open_position()
    trade = position.settle(account, 70, 900)

    assert trade.side == TradeSide.SELL
    assert trade.value == pytest.approx(100.0)
    assert trade.pnl == pytest.approx(60.0)
    assert account.balance == pytest.approx(1060.0)
    assert position.state == PositionState.CLOSED


def test_binary_loss_pays_nothing():
    account, position = _open_position()
    trade = position.settle(account, 40, 900)      # not strictly above entry

    assert trade.side == TradeSide.LOSS
    assert trade.value == 0
    assert trade.pnl == pytest.approx(-40.0)
    assert account.balance == pytest.approx(960.0)


def test_exit_price_reached_sells_at_exit():
    account, position = _open_position(exit_price=60)
    assert not position.on_tick(_tick(1, 55), account)
    assert position.on_tick(_tick(2, 65), account)

    closing = account.trades[-1]
    assert closing.side == TradeSide.SELL
    assert closing.price == pytest.approx(0.60)
    assert closing.pnl == pytest.approx(20.0)
    assert position.settle(account, 65, 900) is None


def test_exit_price_never_reached_expires_worthless():
    account, position = _open_position(exit_price=90)
    position.on_tick(_tick(1, 70), account)
    trade = position.settle(account, 70, 900)

    assert trade.side == TradeSide.LOSS
    assert trade.pnl == pytest.approx(-40.0)


def test_unresolved_market_is_marked_to_last_price():
    account, position = _open_position()
    trade = position.settle(account, 55, 900, resolved=False)

    assert trade.side == TradeSide.SELL
    assert trade.price == pytest.approx(0.55)
    assert trade.pnl == pytest.approx(15.0)


def test_no_reentry_after_open_or_close():
    account, position = _open_position()
    with pytest.raises(RuntimeError):
        position.open(None)
    position.settle(account, 70, 900)
    assert not position.can_enter
    with pytest.raises(RuntimeError):
        position.open(None)


def test_drawdown_tracks_unrealized_value():
    account, position = _open_position()
    account.mark(account.balance + position.unrealized_value(20))    # 960 + 20
    assert account.max_drawdown == pytest.approx(20.0)
    assert account.max_drawdown_pct == pytest.approx(0.02)
