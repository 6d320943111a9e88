"""
ORDER LADDER — Simulated entry fills
======================================

A strategy carries a ladder of limit orders, e.g.

    [{price: 45c, shares: 50}, {price: 40c, shares: 50}]

How a rung fills depends on what produced the entry signal:

  INDICATOR-TRIGGERED: the signal IS the timing. The first rung is
    executed immediately at its limit price; we don't wait for the book
    to come to us.

  ORDERBOOK-ONLY: true resting-limit semantics. A rung fills only when
    price crosses DOWN through it (previous tick above the limit, this
    tick at or below). A price sitting still at 40c never re-fills a
    40c order.

One fill per opportunity, first match wins. If the account can't pay
for it the opportunity is skipped and the next one gets another try.
"""

import logging
from typing import Optional

from backtest.models import ActiveTrade, cents_to_dollars

logger = logging.getLogger(__name__)


class OrderLadder:

    def __init__(self, items, immediate: bool):
        self.items = list(items)
        self.immediate = immediate

    def candidates(self, price_cents: int, prev_price_cents: Optional[int]) -> list:
        if self.immediate:
            return self.items[:1]
        if prev_price_cents is None:
            return []
        return [o for o in self.items if prev_price_cents > o.price >= price_cents]

    def try_fill(self, account, market_id: str, timestamp: int, price_cents: int,
                 prev_price_cents: Optional[int], reason: str) -> Optional[ActiveTrade]:
        """Attempt one entry. Returns the opened ActiveTrade or None."""
        matches = self.candidates(price_cents, prev_price_cents)
        if not matches:
            return None

        order = matches[0]
        if not account.can_afford(order.cost):
            logger.debug(f"[Ladder] {market_id}: insufficient balance ${account.balance:.2f} "
                         f"for {order.shares:g} @ {order.price}c (${order.cost:.2f}), skipping")
            return None

        account.buy(market_id, timestamp, cents_to_dollars(order.price), order.shares, reason)
        logger.info(f"[Ladder] {market_id}: BUY {order.shares:g} @ {order.price}c — {reason}")
        return ActiveTrade(
            market_id=market_id,
            entry_timestamp=timestamp,
            entry_price=order.price,
            shares=order.shares,
            cost=order.cost,
            max_price=price_cents,
        )
