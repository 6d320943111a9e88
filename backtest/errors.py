"""Exceptions raised by the backtesting engine."""


class BacktestError(Exception):
    """A backtest run could not produce a result."""


class DataUnavailableError(BacktestError):
    """The historical price store cannot be reached."""


class NoMarketsFoundError(BacktestError):
    """No candidate market matched the requested asset/timeframe/filters."""


class StrategyConfigError(BacktestError, ValueError):
    """A strategy definition is malformed or uses an unknown name."""
