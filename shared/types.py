"""TypedDict definitions for the data shapes exchanged with external collaborators."""

from typing import Dict, List, Optional, TypedDict


class SentimentReading(TypedDict, total=False):
    """Return type of SentimentSource.sentiment_for.

    ``headlines`` is only present when the source stores article titles.
    """
    score: float
    label: str
    article_count: int
    top_topics: List[str]
    headlines: List[str]


class AIEvaluation(TypedDict, total=False):
    """Return type of AIEvaluator.evaluate."""
    final_recommendation: str
    ai_score: float
    confidence: str
    composite_score: float


class StrategyStats(TypedDict):
    """Per-strategy slice of a HistoricalPerformance record."""
    count: int
    win_rate: float
    avg_roi: float


class RecentTrade(TypedDict):
    id: str
    strategy_type: str
    realized_pnl: float
    realized_roi: float
    entry_date: str
    close_date: str


class HistoricalPerformance(TypedDict):
    """Symbol performance using only trades closed before a cutoff date."""
    symbol: str
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    avg_roi: float
    avg_days_held: float
    strategy_breakdown: Dict[str, StrategyStats]
    recent_trades: List[RecentTrade]


class SimilarTrade(TypedDict):
    """One similar trade closed before the cutoff date."""
    trade_id: str
    similarity: float
    outcome: str
    realized_roi: float
    close_date: str
    summary: str


class ProgressEvent(TypedDict, total=False):
    """Progress payload emitted by the orchestrator after each symbol.

    ``current_symbol`` is absent on the initial and terminal events, and
    ``error_message`` is only present when the run failed.
    """
    status: str
    current_symbol: str
    processed_symbols: int
    total_symbols: int
    trades_analyzed: int
    sentiment_fetched: int
    error_message: str


class EquityPoint(TypedDict):
    date: str
    portfolio_value: float


class BreakdownStats(TypedDict):
    """Win-rate / ROI summary for one strategy or symbol subset."""
    total: int
    wins: int
    win_rate: float
    avg_roi: float


class RunTotals(TypedDict, total=False):
    total_trades: int
    trades_passed: int
    trades_matched: int
    pass_rate: float


class EnrichedContext(TypedDict, total=False):
    """Context handed to the optional AI evaluator.

    Built strictly from information available on ``as_of_date``.
    """
    candidate: Dict
    ips_evaluation: Dict
    sentiment: Optional[SentimentReading]
    historical_performance: Optional[HistoricalPerformance]
    similar_trades: List[SimilarTrade]
    as_of_date: str
    data_quality: Dict
