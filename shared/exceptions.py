"""Custom exception hierarchy for the IPS backtesting engine."""


class IPSBacktestError(Exception):
    """Base exception for all backtesting errors."""


class DataFetchError(IPSBacktestError):
    """Raised when a historical data source (snapshots, sentiment) fails."""


class DataValidationError(IPSBacktestError):
    """Raised when a historical record does not have the expected shape."""


class ConfigError(IPSBacktestError):
    """Raised on configuration errors (no factors, no symbols, bad values)."""


class EvaluationError(IPSBacktestError):
    """Raised when a candidate cannot be scored or its outcome cannot be simulated."""


class PersistenceError(IPSBacktestError):
    """Raised when run records cannot be written to the persistence sink."""


class InvalidTransitionError(IPSBacktestError):
    """Raised when a backtest run is moved out of a terminal state."""


class BacktestCancelled(IPSBacktestError):
    """Raised when the caller sets the abort signal during a run."""
