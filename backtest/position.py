"""
POSITION LIFECYCLE — One shot per market
==========================================

    NO_POSITION ──fill──▸ OPEN ──exit / settlement──▸ CLOSED

A market is traded at most once. After the first fill nothing can
re-enter it, and CLOSED is terminal even if the signal fires again.

While OPEN, every later tick raises the running max price. If an exit
price is configured and the max reaches it, we sell there (a WIN).

At market end an OPEN position settles:
  - exit price set, never reached      → LOSS, shares expire at $0
  - no exit price, market resolved     → binary payoff: final price above
                                         entry (our side) pays $1/share,
                                         anything else pays $0
  - no exit price, data stops before
    the market resolved                → sold at the last observed price
"""

import logging
from enum import Enum
from typing import Optional

import config
from backtest.models import TradeSide, cents_to_dollars

logger = logging.getLogger(__name__)


class PositionState(str, Enum):
    NO_POSITION = "NO_POSITION"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class MarketPosition:

    def __init__(self, market_id: str, direction, exit_price: Optional[int] = None):
        self.market_id = market_id
        self.direction = direction
        self.exit_price = exit_price
        self.state = PositionState.NO_POSITION
        self.trade = None

    @property
    def can_enter(self) -> bool:
        return self.state == PositionState.NO_POSITION

    @property
    def is_open(self) -> bool:
        return self.state == PositionState.OPEN

    def open(self, active_trade) -> None:
        if not self.can_enter:
            raise RuntimeError(f"{self.market_id}: cannot open a position in state {self.state.value}")
        self.trade = active_trade
        self.state = PositionState.OPEN

    def unrealized_value(self, price_cents: int) -> float:
        if not self.is_open:
            return 0.0
        return self.trade.market_value(price_cents)

    def on_tick(self, tick, account) -> bool:
        """Monitor an open position on a tick after entry. True if it closed."""
        if not self.is_open:
            return False
        price = tick.price_cents(self.direction)
        if price <= 0:
            return False
        self.trade.max_price = max(self.trade.max_price, price)

        if self.exit_price is not None and self.trade.max_price >= self.exit_price:
            self._close(account, tick.timestamp, TradeSide.SELL,
                        cents_to_dollars(self.exit_price),
                        f"Exit price {self.exit_price}c reached")
            return True
        return False

    def settle(self, account, final_price_cents: Optional[int], timestamp: int,
               resolved: bool = True):
        """Resolve an open position at market end. Returns the closing trade or None."""
        if not self.is_open:
            return None
        entry = self.trade.entry_price

        if self.exit_price is not None:
            return self._close(account, timestamp, TradeSide.LOSS, 0.0,
                               f"Exit price {self.exit_price}c never reached, expired worthless")

        if final_price_cents is None:
            final_price_cents = entry

        if resolved:
            if final_price_cents > entry:
                return self._close(account, timestamp, TradeSide.SELL, config.WIN_PAYOUT,
                                   f"Market resolved WIN (final {final_price_cents}c > entry {entry}c)")
            return self._close(account, timestamp, TradeSide.LOSS, 0.0,
                               f"Market resolved LOSS (final {final_price_cents}c <= entry {entry}c)")

        return self._close(account, timestamp, TradeSide.SELL, cents_to_dollars(final_price_cents),
                           f"Marked to last price {final_price_cents}c")

    def _close(self, account, timestamp: int, side: TradeSide, price: float, reason: str):
        t = self.trade
        trade = account.close(self.market_id, timestamp, side, price, t.shares, t.cost, reason)
        self.state = PositionState.CLOSED
        mark = "WIN" if (trade.pnl or 0) > 0 else "LOSS"
        logger.info(f"[Position] {self.market_id}: {side.value} {t.shares:g} @ ${price:.2f} "
                    f"→ {mark} PnL ${trade.pnl:+.2f} | Balance ${account.balance:,.2f}")
        return trade
