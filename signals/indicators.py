"""
INDICATOR CALCULATOR — Technical indicators on candle series
==============================================================

The same formulas charting platforms use, computed with pandas so a
500-candle series is a handful of vectorized ops rather than loops.

SUPPORTED TYPES (strategy name → parameters, defaults):

  RSI              length=14           Wilder smoothing (RMA)
  MACD             fast=12 slow=26 signal=9
                                       fields: macd, signal, histogram
                                       scalar value = histogram
  SMA / EMA        length=20
  Bollinger Bands  length=20 stdDev=2  fields: upper, middle, lower
  Stochastic       k=14 smoothK=1 d=3  fields: k, d
  ATR              length=14           Wilder smoothing of true range
  VWAP             resetDaily=1        hlc3 weighted by volume (tick count)
  Rolling Up %     length=50           % of green candles in the window

Every function returns only fully warmed-up values: a result exists
for a candle only when the indicator is well defined there. Use
`warmup_candles()` to know how many candles a config needs before its
first value.
"""

import logging

import numpy as np
import pandas as pd

from backtest.models import IndicatorResult

logger = logging.getLogger(__name__)


def _param(parameters: dict, key: str, default):
    """Read a numeric parameter; missing/zero/garbage falls back to the default."""
    raw = (parameters or {}).get(key)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if value == 0 or np.isnan(value):
        return default
    return type(default)(value)


def candles_to_frame(candles) -> pd.DataFrame:
    return pd.DataFrame({
        "timestamp": [c.timestamp for c in candles],
        "open": [c.open for c in candles],
        "high": [c.high for c in candles],
        "low": [c.low for c in candles],
        "close": [c.close for c in candles],
        "volume": [c.volume for c in candles],
    })


def _rma(series: pd.Series, period: int) -> pd.Series:
    # Wilder's smoothing: alpha = 1/period
    return series.ewm(alpha=1 / period, min_periods=period, adjust=False).mean()


def _to_results(df: pd.DataFrame, value_col: str, field_cols: dict = None) -> list:
    """Rows with a defined value become IndicatorResults (NaN rows dropped)."""
    cols = [value_col] + list((field_cols or {}).values())
    valid = df.dropna(subset=cols)
    results = []
    for row in valid.itertuples(index=False):
        row = row._asdict()
        fields = {name: float(row[col]) for name, col in (field_cols or {}).items()}
        results.append(IndicatorResult(
            timestamp=int(row["timestamp"]),
            value=float(row[value_col]),
            fields=fields,
        ))
    return results


# ════════════════════════════════════════════════════════════════
# MOMENTUM
# ════════════════════════════════════════════════════════════════

def calculate_rsi(df: pd.DataFrame, period: int = 14) -> list:
    if len(df) < period + 1:
        return []
    delta = df["close"].diff().fillna(0.0)
    gain = delta.where(delta > 0, 0.0)
    loss = (-delta).where(delta < 0, 0.0)
    avg_gain = _rma(gain, period)
    avg_loss = _rma(loss, period)

    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi = 100 - (100 / (1 + rs))
    # No losses at all → RSI pinned at 100; no gains → 0
    rsi = rsi.where(avg_loss != 0, 100.0)
    rsi = rsi.where(~((avg_gain == 0) & (avg_loss != 0)), 0.0)
    rsi[avg_gain.isna() | avg_loss.isna()] = np.nan

    out = pd.DataFrame({"timestamp": df["timestamp"], "rsi": rsi})
    return _to_results(out, "rsi")


def calculate_macd(df: pd.DataFrame, fast: int = 12, slow: int = 26,
                   signal: int = 9) -> list:
    if len(df) < slow + signal:
        return []
    close = df["close"]
    ema_fast = close.ewm(span=fast, adjust=False, min_periods=fast).mean()
    ema_slow = close.ewm(span=slow, adjust=False, min_periods=slow).mean()
    macd = ema_fast - ema_slow
    macd_signal = macd.ewm(span=signal, adjust=False, min_periods=signal).mean()
    hist = macd - macd_signal

    out = pd.DataFrame({"timestamp": df["timestamp"], "macd": macd,
                        "signal": macd_signal, "histogram": hist})
    return _to_results(out, "histogram",
                       {"macd": "macd", "signal": "signal", "histogram": "histogram"})


def calculate_stochastic(df: pd.DataFrame, length_k: int = 14, smooth_k: int = 1,
                         length_d: int = 3) -> list:
    if len(df) < length_k + length_d:
        return []
    highest = df["high"].rolling(length_k).max()
    lowest = df["low"].rolling(length_k).min()
    rng = highest - lowest
    raw_k = 100 * (df["close"] - lowest) / rng.replace(0, np.nan)
    raw_k = raw_k.where(rng != 0, 50.0)
    raw_k[highest.isna()] = np.nan

    k = raw_k.rolling(smooth_k).mean() if smooth_k > 1 else raw_k
    d = k.rolling(length_d).mean()

    out = pd.DataFrame({"timestamp": df["timestamp"], "k": k, "d": d})
    return _to_results(out, "k", {"k": "k", "d": "d"})


def calculate_rolling_up_percent(df: pd.DataFrame, length: int = 50) -> list:
    if len(df) < length:
        return []
    is_up = (df["close"] >= df["open"]).astype(float)
    up_pct = is_up.rolling(length).sum() / length * 100
    out = pd.DataFrame({"timestamp": df["timestamp"], "up_pct": up_pct})
    return _to_results(out, "up_pct")


# ════════════════════════════════════════════════════════════════
# TREND / MEAN REVERSION
# ════════════════════════════════════════════════════════════════

def calculate_sma(df: pd.DataFrame, period: int = 20) -> list:
    if len(df) < period:
        return []
    sma = df["close"].rolling(period).mean()
    out = pd.DataFrame({"timestamp": df["timestamp"], "sma": sma})
    return _to_results(out, "sma")


def calculate_ema(df: pd.DataFrame, period: int = 20) -> list:
    if len(df) < period:
        return []
    ema = df["close"].ewm(span=period, adjust=False, min_periods=period).mean()
    out = pd.DataFrame({"timestamp": df["timestamp"], "ema": ema})
    return _to_results(out, "ema")


def calculate_bollinger(df: pd.DataFrame, period: int = 20, mult: float = 2.0) -> list:
    if len(df) < period:
        return []
    basis = df["close"].rolling(period).mean()
    dev = df["close"].rolling(period).std(ddof=0)
    out = pd.DataFrame({
        "timestamp": df["timestamp"],
        "middle": basis,
        "upper": basis + mult * dev,
        "lower": basis - mult * dev,
    })
    return _to_results(out, "middle", {"upper": "upper", "middle": "middle", "lower": "lower"})


def calculate_vwap(df: pd.DataFrame, reset_daily: bool = True) -> list:
    if df.empty:
        return []
    typical = (df["high"] + df["low"] + df["close"]) / 3
    volume = df["volume"].where(df["volume"] > 0, 1)
    tpv = typical * volume
    if reset_daily:
        day = pd.to_datetime(df["timestamp"], unit="ms", utc=True).dt.date
        vwap = tpv.groupby(day).cumsum() / volume.groupby(day).cumsum()
    else:
        vwap = tpv.cumsum() / volume.cumsum()
    out = pd.DataFrame({"timestamp": df["timestamp"], "vwap": vwap})
    return _to_results(out, "vwap")


# ════════════════════════════════════════════════════════════════
# VOLATILITY
# ════════════════════════════════════════════════════════════════

def calculate_atr(df: pd.DataFrame, period: int = 14) -> list:
    if len(df) < period + 1:
        return []
    high, low, close = df["high"], df["low"], df["close"]
    tr = pd.concat([
        high - low,
        (high - close.shift(1)).abs(),
        (low - close.shift(1)).abs(),
    ], axis=1).max(axis=1)
    atr = _rma(tr, period)
    out = pd.DataFrame({"timestamp": df["timestamp"], "atr": atr})
    return _to_results(out, "atr")


# ════════════════════════════════════════════════════════════════
# DISPATCH
# ════════════════════════════════════════════════════════════════

def _normalize_type(indicator_type: str) -> str:
    return str(indicator_type or "").strip().lower().replace("_", " ")


def calculate_indicator(candles, indicator_config) -> list:
    """Compute any supported indicator; unknown types yield an empty series."""
    if not candles:
        return []
    p = indicator_config.parameters
    kind = _normalize_type(indicator_config.type)
    df = candles_to_frame(candles)

    if kind == "rsi":
        return calculate_rsi(df, _param(p, "length", 14))
    if kind == "macd":
        return calculate_macd(df, _param(p, "fast", 12), _param(p, "slow", 26),
                              _param(p, "signal", 9))
    if kind == "sma":
        return calculate_sma(df, _param(p, "length", 20))
    if kind == "ema":
        return calculate_ema(df, _param(p, "length", 20))
    if kind in ("bollinger bands", "bollinger", "bb"):
        return calculate_bollinger(df, _param(p, "length", 20), _param(p, "stdDev", 2.0))
    if kind in ("stochastic", "stoch"):
        return calculate_stochastic(df, _param(p, "k", 14), _param(p, "smoothK", 1),
                                    _param(p, "d", 3))
    if kind == "atr":
        return calculate_atr(df, _param(p, "length", 14))
    if kind == "vwap":
        reset = (p or {}).get("resetDaily", 1)
        return calculate_vwap(df, reset_daily=reset not in (0, "0", False))
    if kind in ("rolling up %", "rolling up"):
        return calculate_rolling_up_percent(df, _param(p, "length", 50))

    logger.warning(f"[Indicators] Unknown indicator type: {indicator_config.type}")
    return []


def warmup_candles(indicator_config) -> int:
    """Minimum candles before the indicator produces its first value."""
    p = indicator_config.parameters
    kind = _normalize_type(indicator_config.type)
    if kind == "macd":
        return _param(p, "slow", 26) + _param(p, "signal", 9)
    if kind in ("rsi", "atr"):
        return _param(p, "length", 14) + 1
    if kind in ("sma", "ema"):
        return _param(p, "length", 20)
    if kind in ("bollinger bands", "bollinger", "bb"):
        return _param(p, "length", 20)
    if kind in ("stochastic", "stoch"):
        return _param(p, "k", 14) + _param(p, "d", 3)
    if kind in ("rolling up %", "rolling up"):
        return _param(p, "length", 50)
    return 1


def required_candles(indicator_configs) -> int:
    """Warm-up requirement of a whole strategy (the most demanding indicator)."""
    return max((warmup_candles(c) for c in indicator_configs), default=0)
