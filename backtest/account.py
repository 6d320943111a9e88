"""Run-scoped cash account: balance, append-only trade log, equity tracking."""

from backtest.models import BacktestTrade, TradeSide


class Account:
    """
    Owned by exactly one backtest run. Every ledger event goes through
    here so balance, trade log, per-trade returns and drawdown can never
    disagree with each other.
    """

    def __init__(self, initial_balance: float):
        self.initial_balance = float(initial_balance)
        self.balance = float(initial_balance)
        self.trades = []
        self.returns = []
        self.equity_curve = [self.balance]
        self.peak_equity = self.balance
        self.max_drawdown = 0.0
        self.max_drawdown_pct = 0.0

    def can_afford(self, cost: float) -> bool:
        return cost <= self.balance + 1e-9

    def buy(self, market_id: str, timestamp: int, price: float, shares: float,
            reason: str) -> BacktestTrade:
        cost = shares * price
        self.balance -= cost
        trade = BacktestTrade(
            timestamp=timestamp, side=TradeSide.BUY, price=price, shares=shares,
            value=cost, balance=self.balance, trigger_reason=reason, market_id=market_id,
        )
        self.trades.append(trade)
        self.equity_curve.append(self.balance + cost)
        return trade

    def close(self, market_id: str, timestamp: int, side: TradeSide, price: float,
              shares: float, cost: float, reason: str) -> BacktestTrade:
        proceeds = shares * price
        pnl = proceeds - cost
        self.balance += proceeds
        if cost > 0:
            self.returns.append(pnl / cost)
        trade = BacktestTrade(
            timestamp=timestamp, side=side, price=price, shares=shares,
            value=proceeds, balance=self.balance, trigger_reason=reason,
            market_id=market_id, pnl=pnl,
        )
        self.trades.append(trade)
        self.equity_curve.append(self.balance)
        self.mark(self.balance)
        return trade

    def mark(self, equity: float) -> None:
        """Fold one equity observation (cash + open position value) into drawdown."""
        if equity > self.peak_equity:
            self.peak_equity = equity
        drawdown = self.peak_equity - equity
        if drawdown > self.max_drawdown:
            self.max_drawdown = drawdown
        if self.peak_equity > 0:
            self.max_drawdown_pct = max(self.max_drawdown_pct, drawdown / self.peak_equity)
