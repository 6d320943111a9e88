"""
REPORTING — Reading a backtest result
=======================================

"A strategy is only as good as its worst day."

METRICS THAT MATTER:
  1. Sharpe Ratio — risk-adjusted return (>1 is decent, >2 is excellent)
  2. Max Drawdown — includes the value of positions still open
  3. Win Rate × Avg Win/Loss — the expectancy equation
  4. Profit Factor — gross wins / gross losses (>1.5 is good,
     999 means "profits and no losses at all")

On binary markets a single trade is either +$(1-p) per share or -$p
per share, so win rate and entry price explain almost everything.
"""

from datetime import datetime, timezone

import numpy as np

import config
from backtest.models import TradeSide


def _fmt_ts(ts) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def generate_report(result, max_trades: int = 20) -> str:
    """Human-readable report of one BacktestResult."""

    lines = []
    lines.append("=" * 70)
    lines.append(f"  BACKTEST REPORT: {result.strategy_name}")
    lines.append("=" * 70)

    # ── Overview ──
    lines.append(f"\n{'─' * 40}")
    lines.append("  OVERVIEW")
    lines.append(f"{'─' * 40}")
    lines.append(f"  Period:              {_fmt_ts(result.start_time)} → {_fmt_ts(result.end_time)}")
    lines.append(f"  Markets Processed:   {result.markets_processed}")
    lines.append(f"  Candles Processed:   {result.candles_processed}")
    lines.append(f"  Signals Triggered:   {result.conditions_triggered}")
    lines.append(f"  Starting Balance:    ${result.initial_balance:,.2f}")
    lines.append(f"  Ending Balance:      ${result.final_balance:,.2f}")
    lines.append(f"  Total Return:        {result.return_pct:+.2f}%")
    lines.append(f"  Total PnL:           ${result.total_pnl:+,.2f}")
    lines.append(f"  Total Trades:        {result.total_trades}")

    if result.total_trades == 0:
        lines.append("\n  No trades executed. Entry conditions never lined up with the ladder.")
        return "\n".join(lines)

    # ── Performance Metrics ──
    lines.append(f"\n{'─' * 40}")
    lines.append("  PERFORMANCE METRICS")
    lines.append(f"{'─' * 40}")
    lines.append(f"  Wins / Losses:       {result.winning_trades} / {result.losing_trades}")
    lines.append(f"  Win Rate:            {result.win_rate:.1f}%")
    lines.append(f"  Avg Win:             ${result.avg_win:+.2f}")
    lines.append(f"  Avg Loss:            ${-result.avg_loss:+.2f}")
    lines.append(f"  Profit Factor:       {result.profit_factor:.2f}")
    lines.append(f"  Sharpe Ratio:        {result.sharpe_ratio:.2f}")
    lines.append(f"  Max Drawdown:        ${result.max_drawdown:,.2f} ({result.max_drawdown_percent:.1f}%)")

    # ── Trade Log ──
    lines.append(f"\n{'─' * 40}")
    lines.append("  TRADE LOG")
    lines.append(f"{'─' * 40}")
    lines.append(f"  {'Time':<24} {'Side':<5} {'Price':>6} {'Shares':>8} {'PnL':>9} {'Balance':>11}  Market")
    shown = result.trades[-max_trades:] if max_trades else result.trades
    if len(shown) < len(result.trades):
        lines.append(f"  ... {len(result.trades) - len(shown)} earlier trades omitted")
    for t in shown:
        pnl = f"{t.pnl:+.2f}" if t.pnl is not None else ""
        lines.append(f"  {_fmt_ts(t.timestamp):<24} {t.side.value:<5} {t.price:>6.2f} "
                     f"{t.shares:>8g} {pnl:>9} {t.balance:>11,.2f}  {t.market_id}")

    # ── Outcome Distribution ──
    closing = [t for t in result.trades if t.side != TradeSide.BUY and t.pnl is not None]
    if closing:
        pnls = [t.pnl for t in closing]
        exits = sum(1 for t in closing if t.side == TradeSide.SELL)
        expired = sum(1 for t in closing if t.side == TradeSide.LOSS)
        lines.append(f"\n{'─' * 40}")
        lines.append("  OUTCOME DISTRIBUTION")
        lines.append(f"{'─' * 40}")
        lines.append(f"  Sold / paid out:     {exits}")
        lines.append(f"  Expired worthless:   {expired}")
        lines.append(f"  PnL Min:             ${min(pnls):+.2f}")
        lines.append(f"  PnL Median:          ${np.percentile(pnls, 50):+.2f}")
        lines.append(f"  PnL Max:             ${max(pnls):+.2f}")

    # ── Key Takeaways ──
    lines.append(f"\n{'─' * 40}")
    lines.append("  KEY TAKEAWAYS")
    lines.append(f"{'─' * 40}")

    if result.sharpe_ratio > 2:
        lines.append("  [+] Excellent Sharpe ratio — strong risk-adjusted returns")
    elif result.sharpe_ratio > 1:
        lines.append("  [+] Good Sharpe ratio — decent risk-adjusted returns")
    elif result.sharpe_ratio > 0:
        lines.append("  [~] Positive but modest Sharpe — might not survive fees")
    else:
        lines.append("  [-] Non-positive Sharpe — strategy is not paying for its risk")

    if result.max_drawdown_percent > 30:
        lines.append("  [-] Drawdown >30% — too risky to size up")
    elif result.max_drawdown_percent > 15:
        lines.append("  [~] Drawdown 15-30% — acceptable but monitor closely")
    else:
        lines.append("  [+] Drawdown <15% — well controlled risk")

    if result.profit_factor >= config.PROFIT_FACTOR_CAP:
        lines.append("  [~] No losing trades yet — sample is probably too small")
    elif result.profit_factor > 1.5:
        lines.append("  [+] Profit factor >1.5 — wins meaningfully exceed losses")
    elif result.profit_factor > 1.0:
        lines.append("  [~] Profit factor 1-1.5 — profitable but slim margin")
    else:
        lines.append("  [-] Profit factor <1 — losing money on average")

    lines.append("\n" + "=" * 70)
    return "\n".join(lines)


def print_equity_curve_ascii(result, width: int = 60):
    """Simple ASCII equity curve visualization."""
    if len(result.equity_curve) < 2:
        return

    curve = result.equity_curve
    min_val = min(curve)
    max_val = max(curve)
    val_range = max_val - min_val if max_val != min_val else 1

    height = 20
    n = len(curve)
    step = max(n // width, 1)
    sampled = [curve[i] for i in range(0, n, step)][:width]

    print(f"\n  Equity Curve ({result.strategy_name})")
    print(f"  ${max_val:,.0f} ┐")

    for row in range(height, -1, -1):
        threshold = min_val + (row / height) * val_range
        line = "  " + " " * 8 + "│"
        for val in sampled:
            line += "█" if val >= threshold else " "
        if row == height // 2:
            mid = min_val + 0.5 * val_range
            print(f"  ${mid:,.0f}" + " " * (8 - len(f"${mid:,.0f}")) + "│" + line[11:])
        else:
            print(line)

    print(f"  ${min_val:,.0f} ┘" + "─" * (len(sampled) + 1))
    print("  " + " " * 9 + "Start" + " " * max(len(sampled) - 8, 1) + "End")
