"""
Backtesting Engine
Replays an Investment Policy Statement over historical option snapshots.

Symbols run sequentially; the contracts of one snapshot date are scored in
a thread pool (order preserved) because evaluation and outcome simulation
are pure.  The portfolio ledger then replays the accepted trades in a single
sequential pass before metrics and persistence.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from itertools import groupby
from typing import Callable, Dict, List, Optional

from backtest.factor_evaluator import FactorEvaluator
from backtest.models import (
    BacktestConfig,
    BacktestResults,
    FactorEvaluation,
    OptionSnapshot,
    Recommendation,
    RunStatus,
    TradeCandidate,
    TradeMatch,
)
from backtest.outcome_simulator import OutcomeSimulator
from backtest.performance_metrics import PerformanceMetrics
from backtest.portfolio_ledger import PortfolioLedger
from shared.constants import TRADE_MATCH_BATCH_SIZE
from shared.exceptions import BacktestCancelled, ConfigError, EvaluationError, InvalidTransitionError
from shared.provider_protocol import (
    AIEvaluator,
    PersistenceSink,
    SentimentSource,
    SnapshotSource,
    TimeTravelContext,
)
from shared.types import EnrichedContext, ProgressEvent, RunTotals, SentimentReading

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED},
}


class IPSBacktester:
    """
    Run one IPS backtest end to end.

    Only the snapshot source is required.  Without an AI evaluator the run is
    purely rule-based; without a persistence sink results are only returned.
    """

    def __init__(
        self,
        config: BacktestConfig,
        snapshot_source: SnapshotSource,
        sentiment_source: Optional[SentimentSource] = None,
        time_travel: Optional[TimeTravelContext] = None,
        ai_evaluator: Optional[AIEvaluator] = None,
        persistence: Optional[PersistenceSink] = None,
        progress_callback: Optional[ProgressCallback] = None,
        abort_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
        metrics: Optional[PerformanceMetrics] = None,
    ):
        """
        Initialize backtester.

        Args:
            config: Validated backtest configuration
            snapshot_source: Historical options-chain snapshots
            sentiment_source: Optional news sentiment, used when
                              ``config.include_sentiment`` is set
            time_travel: Optional history provider for the AI context
            ai_evaluator: Optional scorer, used when ``config.use_ai_filtering``
            persistence: Optional sink for runs, trade matches and results
            progress_callback: Called with a ProgressEvent after each symbol
            abort_event: Set from another thread to cancel the run
            run_id: Existing run id; created through the sink when omitted
            metrics: Metrics calculator (defaults to PerformanceMetrics())
        """
        self.config = config
        self.snapshot_source = snapshot_source
        self.sentiment_source = sentiment_source
        self.time_travel = time_travel
        self.ai_evaluator = ai_evaluator
        self.persistence = persistence
        self.progress_callback = progress_callback
        self.abort_event = abort_event or threading.Event()
        self.run_id = run_id
        self.metrics = metrics or PerformanceMetrics()

        self.status = RunStatus.PENDING
        self.trades: List[TradeMatch] = []
        self.results: Optional[BacktestResults] = None
        self.error: Optional[str] = None
        self.skipped_candidates = 0

        self.simulator = OutcomeSimulator(
            exit_strategy=config.ips_config.exit_strategy,
            spread_width=config.spread_width,
            seed=config.random_seed,
        )
        self.ledger = PortfolioLedger(
            portfolio_size=config.portfolio_size,
            risk_per_trade=config.risk_per_trade,
            spread_width=config.spread_width,
        )
        self.evaluator: Optional[FactorEvaluator] = None

        self._symbols: List[str] = []
        self._processed_symbols = 0
        self._sentiment_fetched = 0
        self._persist_started = False

        if config.use_ai_filtering and ai_evaluator is None:
            logger.warning("AI filtering requested without an evaluator; IPS pass decides every trade")

        logger.info(
            "IPSBacktester initialized for IPS %s (%s to %s)",
            config.ips_id, config.start_date, config.end_date,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_status: RunStatus):
        if new_status not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(
                f"Cannot move backtest from {self.status.value} to {new_status.value}"
            )
        logger.debug("Backtest %s: %s -> %s", self.run_id, self.status.value, new_status.value)
        self.status = new_status

    def cancel(self):
        """Request cooperative cancellation."""
        self.abort_event.set()

    def _check_abort(self):
        if self.abort_event.is_set():
            raise BacktestCancelled(f"Backtest {self.run_id} cancelled")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> BacktestResults:
        """
        Execute the backtest.

        Returns:
            BacktestResults of the completed run

        Raises:
            InvalidTransitionError: if this backtester already ran
            ConfigError: on an unusable configuration
            BacktestCancelled: when the abort event was set
            PersistenceError: when results cannot be stored
        """
        self._transition(RunStatus.RUNNING)
        try:
            if self.persistence is not None:
                if self.run_id is None:
                    self.run_id = self.persistence.create_run(self.config)
                self.persistence.update_run_status(self.run_id, RunStatus.RUNNING.value)
            elif self.run_id is None:
                self.run_id = str(uuid.uuid4())

            self.evaluator = FactorEvaluator(self.config.ips_config.factors)
            self._symbols = self._resolve_symbols()
            logger.info(
                "Starting backtest %s: %d symbols, %s to %s",
                self.run_id, len(self._symbols), self.config.start_date, self.config.end_date,
            )

            with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
                for symbol in self._symbols:
                    self._check_abort()
                    self._process_symbol(symbol, executor)
                    self._processed_symbols += 1
                    self._emit_progress(RunStatus.RUNNING, current_symbol=symbol)

            self.results = self._finalize()
            self._persist(self.results)
            self._transition(RunStatus.COMPLETED)
            self._emit_progress(RunStatus.COMPLETED)
            logger.info(
                "Backtest %s complete: %d trades analyzed, %d taken, %d skipped",
                self.run_id, len(self.trades), self.results.total_trades, self.skipped_candidates,
            )
            return self.results

        except Exception as e:
            self._fail(e)
            raise

    def _fail(self, error: Exception):
        self.error = str(error) or type(error).__name__
        logger.error("Backtest %s failed: %s", self.run_id, self.error, exc_info=True)
        if not self.status.is_terminal:
            self._transition(RunStatus.FAILED)
        if self.persistence is not None and self.run_id is not None:
            if self._persist_started:
                try:
                    self.persistence.discard_run_outputs(self.run_id)
                except Exception as discard_error:
                    logger.error("Could not discard partial output of run %s: %s", self.run_id, discard_error)
            try:
                self.persistence.update_run_status(
                    self.run_id, RunStatus.FAILED.value, totals=self._totals(), error=self.error,
                )
            except Exception as persist_error:
                logger.error("Could not record failure of run %s: %s", self.run_id, persist_error)
        self._emit_progress(RunStatus.FAILED, error_message=self.error)

    def _resolve_symbols(self) -> List[str]:
        if self.config.symbols:
            symbols = list(dict.fromkeys(self.config.symbols))
        else:
            symbols = self.snapshot_source.available_symbols(self.config.start_date, self.config.end_date)
        if not symbols:
            raise ConfigError("No symbols to backtest in the configured window")
        return symbols

    # ------------------------------------------------------------------
    # Per-symbol evaluation
    # ------------------------------------------------------------------

    def _process_symbol(self, symbol: str, executor: ThreadPoolExecutor):
        ips = self.config.ips_config
        try:
            snapshots = self.snapshot_source.fetch_snapshots(
                symbol, self.config.start_date, self.config.end_date, ips.min_dte, ips.max_dte,
            )
        except Exception as e:
            logger.error(f"Error fetching snapshots for {symbol}: {e}")
            return

        if not snapshots:
            logger.info("No snapshots for %s in window", symbol)
            return

        ordered = sorted(snapshots, key=lambda s: s.snapshot_date)
        for snapshot_date, group in groupby(ordered, key=lambda s: s.snapshot_date):
            self._check_abort()
            candidates = []
            for snapshot in group:
                candidate = TradeCandidate.from_snapshot(snapshot, self.config.spread_width)
                if not self._strategy_allowed(candidate.strategy_type):
                    continue
                if not snapshot.is_priced:
                    logger.debug("Skipping unquoted contract %s", snapshot.trade_id)
                    self.skipped_candidates += 1
                    continue
                candidates.append(candidate)
            if not candidates:
                continue

            sentiment = self._fetch_sentiment(symbol, snapshot_date)
            evaluated = list(executor.map(lambda c: self._evaluate_candidate(c, sentiment), candidates))
            self.skipped_candidates += sum(1 for m in evaluated if m is None)
            self.trades.extend(m for m in evaluated if m is not None)

        logger.debug("%s: %d trade matches so far", symbol, len(self.trades))

    def _strategy_allowed(self, strategy_type: str) -> bool:
        allowed = self.config.ips_config.strategies
        if allowed and strategy_type not in allowed:
            return False
        if self.config.strategy_filter and strategy_type not in self.config.strategy_filter:
            return False
        return True

    def _fetch_sentiment(self, symbol: str, as_of: date) -> Optional[SentimentReading]:
        if not self.config.include_sentiment or self.sentiment_source is None:
            return None
        try:
            sentiment = self.sentiment_source.sentiment_for(symbol, as_of)
        except Exception as e:
            logger.warning("Sentiment unavailable for %s on %s: %s", symbol, as_of, e)
            return None
        if sentiment:
            self._sentiment_fetched += 1
        return sentiment

    def _evaluate_candidate(
        self, candidate: TradeCandidate, sentiment: Optional[SentimentReading],
    ) -> Optional[TradeMatch]:
        """Score, filter and simulate one candidate; None when it cannot be simulated."""
        snapshot = candidate.snapshot
        evaluation = self.evaluator.evaluate(snapshot, sentiment)
        match = _new_match(candidate, evaluation)

        if sentiment:
            match.sentiment_at_entry = sentiment.get("score")
            match.sentiment_label = sentiment.get("label")
            match.article_count = sentiment.get("article_count")
            match.sentiment_context = {
                "top_topics": sentiment.get("top_topics", []),
                "headlines": sentiment.get("headlines", []),
            }

        if self.config.use_ai_filtering and self.ai_evaluator is not None and evaluation.passed:
            self._apply_ai(match, candidate, evaluation, sentiment)
        else:
            match.would_take_trade = evaluation.passed

        try:
            outcome = self.simulator.simulate(snapshot, self.snapshot_source.price_history)
        except EvaluationError as e:
            logger.warning("Skipping %s: %s", snapshot.trade_id, e)
            return None
        match.apply_outcome(outcome)
        return match

    def _apply_ai(
        self,
        match: TradeMatch,
        candidate: TradeCandidate,
        evaluation: FactorEvaluation,
        sentiment: Optional[SentimentReading],
    ):
        try:
            context = self._build_context(candidate, evaluation, sentiment)
            verdict = self.ai_evaluator.evaluate(context)
            recommendation = Recommendation(str(verdict["final_recommendation"]).lower())
        except Exception as e:
            logger.warning(
                "AI evaluation failed for %s, using IPS decision: %s", match.trade_id, e,
            )
            match.would_take_trade = match.passed_ips
            return

        match.ai_recommendation = recommendation.value
        match.ai_score = verdict.get("ai_score")
        match.ai_confidence = verdict.get("confidence")
        match.composite_score = verdict.get("composite_score")
        match.would_take_trade = match.passed_ips and recommendation.meets(
            self.config.ai_recommendation_threshold
        )

    def _build_context(
        self,
        candidate: TradeCandidate,
        evaluation: FactorEvaluation,
        sentiment: Optional[SentimentReading],
    ) -> EnrichedContext:
        """AI context restricted to what was known on the entry date."""
        as_of = candidate.entry_date
        performance = None
        similar = []
        if self.time_travel is not None:
            performance = self.time_travel.historical_performance_before(
                candidate.symbol, as_of, self.config.user_id,
            )
            similar = self.time_travel.similar_trades_before(candidate, as_of, self.config.user_id)

        return {
            "candidate": candidate.to_dict(),
            "ips_evaluation": {
                "score": evaluation.score,
                "passed": evaluation.passed,
                "factor_scores": {k: s.to_dict() for k, s in evaluation.factor_scores.items()},
                "failing_factors": list(evaluation.failing_factors),
            },
            "sentiment": sentiment,
            "historical_performance": performance,
            "similar_trades": similar,
            "as_of_date": as_of.isoformat(),
            "data_quality": {
                "has_sentiment": sentiment is not None,
                "has_history": bool(performance and performance["total_trades"]),
                "similar_trade_count": len(similar),
            },
        }

    # ------------------------------------------------------------------
    # Aggregation and persistence
    # ------------------------------------------------------------------

    def _taken_trades(self) -> List[TradeMatch]:
        if self.config.use_ai_filtering:
            return [t for t in self.trades if t.would_take_trade]
        return [t for t in self.trades if t.passed_ips]

    def _finalize(self) -> BacktestResults:
        taken = self._taken_trades()
        summary = self.ledger.replay(taken, self.config.years)
        ordered = sorted(taken, key=lambda t: t.entry_date)
        stats = self.metrics.calculate(ordered)

        return BacktestResults(
            run_id=self.run_id,
            ips_id=self.config.ips_id,
            starting_portfolio=summary.starting_portfolio,
            ending_portfolio=summary.ending_portfolio,
            total_return=summary.total_return,
            cagr=summary.cagr,
            portfolio_max_drawdown=summary.portfolio_max_drawdown,
            equity_curve=summary.equity_curve,
            trades=list(self.trades),
            **stats,
        )

    def _totals(self) -> RunTotals:
        total = len(self.trades)
        passed = sum(1 for t in self.trades if t.passed_ips)
        return {
            "total_trades": total,
            "trades_passed": passed,
            "trades_matched": len(self._taken_trades()),
            "pass_rate": passed / total * 100 if total else 0.0,
        }

    def _persist(self, results: BacktestResults):
        if self.persistence is None:
            return
        self._persist_started = True
        records = [t.to_record(self.run_id) for t in self.trades]
        for start in range(0, len(records), TRADE_MATCH_BATCH_SIZE):
            self.persistence.insert_trade_matches(self.run_id, records[start:start + TRADE_MATCH_BATCH_SIZE])
        self.persistence.insert_results(self.run_id, results.to_dict(include_trades=False))
        self.persistence.update_run_status(self.run_id, RunStatus.COMPLETED.value, totals=self._totals())

    def _emit_progress(self, status: RunStatus, current_symbol: Optional[str] = None,
                       error_message: Optional[str] = None):
        if self.progress_callback is None:
            return
        event: ProgressEvent = {
            "status": status.value,
            "processed_symbols": self._processed_symbols,
            "total_symbols": len(self._symbols),
            "trades_analyzed": len(self.trades),
            "sentiment_fetched": self._sentiment_fetched,
        }
        if current_symbol is not None:
            event["current_symbol"] = current_symbol
        if error_message is not None:
            event["error_message"] = error_message
        self.progress_callback(event)


def _new_match(candidate: TradeCandidate, evaluation: FactorEvaluation) -> TradeMatch:
    snap: OptionSnapshot = candidate.snapshot
    return TradeMatch(
        trade_id=snap.trade_id,
        symbol=snap.symbol,
        entry_date=snap.snapshot_date,
        expiration_date=snap.expiration_date,
        strike=snap.strike,
        option_type=snap.option_type,
        strategy_type=candidate.strategy_type,
        delta=abs(snap.delta) if snap.delta is not None else None,
        iv=snap.implied_volatility or 0.0,
        premium=snap.premium,
        dte=snap.dte,
        ips_score=evaluation.score,
        passed_ips=evaluation.passed,
        factors_passed=evaluation.factors_passed,
        factors_failed=evaluation.factors_failed,
        factor_scores={k: s.to_dict() for k, s in evaluation.factor_scores.items()},
        failing_factors=list(evaluation.failing_factors),
    )


def run_backtest(config: Dict, snapshot_source: SnapshotSource, **collaborators) -> BacktestResults:
    """Convenience wrapper: build a BacktestConfig from a dict and run it."""
    return IPSBacktester(BacktestConfig.from_dict(config), snapshot_source, **collaborators).run()
