"""
IPS backtesting engine for credit spread entries.
"""

from .backtester import IPSBacktester, run_backtest
from .historical_data import HistoricalOptionsData, NewsSentimentData
from .models import BacktestConfig, BacktestResults, TradeMatch
from .performance_metrics import PerformanceMetrics
from .time_travel import SQLiteTimeTravelContext

__all__ = [
    'BacktestConfig',
    'BacktestResults',
    'HistoricalOptionsData',
    'IPSBacktester',
    'NewsSentimentData',
    'PerformanceMetrics',
    'SQLiteTimeTravelContext',
    'TradeMatch',
    'run_backtest',
]
