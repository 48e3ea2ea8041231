"""Protocol definitions for the collaborators of the backtest orchestrator.

Only the snapshot source is mandatory; every other collaborator is optional
and the engine runs in pure rule-based mode without them.  Concrete SQLite
implementations live in ``backtest.historical_data``,
``backtest.time_travel`` and ``shared.database``.
"""

from datetime import date
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, runtime_checkable

from shared.types import (
    AIEvaluation,
    EnrichedContext,
    HistoricalPerformance,
    RunTotals,
    SentimentReading,
    SimilarTrade,
)

if TYPE_CHECKING:
    from backtest.models import BacktestConfig, OptionSnapshot, PricePoint, TradeCandidate


@runtime_checkable
class SnapshotSource(Protocol):
    """Historical options-chain snapshots."""

    def fetch_snapshots(
        self, symbol: str, start: date, end: date, min_dte: int, max_dte: int,
    ) -> List["OptionSnapshot"]:
        """Return validated snapshots for *symbol* with snapshot_date in
        [start, end] and dte in [min_dte, max_dte], ordered by date.

        Raises:
            DataFetchError: when the underlying store cannot be read.
        """
        ...

    def price_history(self, snapshot: "OptionSnapshot") -> List["PricePoint"]:
        """Return the same contract's daily marks from its snapshot date
        through expiration, ordered by date."""
        ...

    def available_symbols(self, start: date, end: date) -> List[str]:
        """Distinct symbols that have snapshots inside the window."""
        ...


@runtime_checkable
class SentimentSource(Protocol):

    def sentiment_for(self, symbol: str, as_of: date) -> Optional[SentimentReading]:
        """News sentiment for *symbol* published on or before *as_of*."""
        ...


@runtime_checkable
class TimeTravelContext(Protocol):
    """Historical context restricted to trades closed strictly before a date.

    Implementations must never fall back to a relaxed date filter when the
    strict query comes back empty.
    """

    def historical_performance_before(
        self, symbol: str, before: date, user_id: Optional[str] = None,
    ) -> HistoricalPerformance:
        ...

    def similar_trades_before(
        self, candidate: "TradeCandidate", before: date, user_id: Optional[str] = None,
    ) -> List[SimilarTrade]:
        ...


@runtime_checkable
class AIEvaluator(Protocol):

    def evaluate(self, context: EnrichedContext) -> AIEvaluation:
        """Score an enriched candidate.

        Raises:
            EvaluationError: (or any exception) when scoring fails; the
                orchestrator then falls back to the rule-based decision.
        """
        ...


@runtime_checkable
class PersistenceSink(Protocol):
    """Batched, idempotent-by-run-id writes of backtest records."""

    def create_run(self, config: "BacktestConfig") -> str:
        ...

    def insert_trade_matches(self, run_id: str, records: List[Dict]) -> None:
        ...

    def insert_results(self, run_id: str, result: Dict) -> None:
        ...

    def update_run_status(
        self,
        run_id: str,
        status: str,
        totals: Optional[RunTotals] = None,
        error: Optional[str] = None,
    ) -> None:
        ...

    def discard_run_outputs(self, run_id: str) -> None:
        """Remove a failed run's trade matches and results, keeping the run row."""
        ...
