"""
Outcome Simulator
Walks a contract's subsequent daily marks to find the first exit condition.

Model: the snapshot is the short leg of a fixed-width credit spread, the
entry credit is the snapshot premium and ``max_risk = width - credit``.
When no price history can be read the outcome is drawn from a seeded
delta-based probability model instead.
"""

import logging
import random
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from backtest.models import (
    ExitReason,
    ExitStrategy,
    OptionSnapshot,
    Outcome,
    OutcomeResult,
    PricePoint,
)
from shared.constants import CONTRACT_MULTIPLIER, DEFAULT_RANDOM_SEED, DEFAULT_SPREAD_WIDTH
from shared.exceptions import EvaluationError

logger = logging.getLogger(__name__)

HistoryLoader = Callable[[OptionSnapshot], Sequence[PricePoint]]


class OutcomeSimulator:
    """Simulate the lifecycle of a single credit spread entry."""

    def __init__(
        self,
        exit_strategy: Optional[ExitStrategy] = None,
        spread_width: float = DEFAULT_SPREAD_WIDTH,
        seed: int = DEFAULT_RANDOM_SEED,
    ):
        """
        Args:
            exit_strategy: Profit target / stop loss, as % of entry premium
            spread_width: Fixed credit spread width in dollars
            seed: Base seed for the probabilistic fallback.  Each contract gets
                  its own stream derived from (seed, trade_id), so results do
                  not depend on evaluation order.
        """
        self.exit_strategy = exit_strategy or ExitStrategy()
        self.spread_width = spread_width
        self.seed = seed

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def profit_target_price(self, credit: float) -> float:
        return credit * (1 - self.exit_strategy.profit_target_pct / 100)

    def stop_loss_price(self, credit: float) -> float:
        return credit * (1 + self.exit_strategy.stop_loss_pct / 100)

    def _pnl_and_roi(self, credit: float, exit_mark: float):
        max_risk = self.spread_width - credit
        pnl = (credit - exit_mark) * CONTRACT_MULTIPLIER
        roi = (pnl / (max_risk * CONTRACT_MULTIPLIER)) * 100 if max_risk > 0 else 0.0
        return pnl, roi

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def simulate(self, snapshot: OptionSnapshot, load_history: Optional[HistoryLoader] = None) -> OutcomeResult:
        """
        Simulate one entry, preferring the real price path.

        Args:
            snapshot: Entry snapshot
            load_history: Callable returning the contract's daily marks.  Any
                          exception it raises selects the probabilistic fallback.

        Returns:
            OutcomeResult

        Raises:
            EvaluationError: if the snapshot has no entry premium, or has no
                             history and no delta for the fallback
        """
        _entry_credit(snapshot)
        try:
            history = list(load_history(snapshot)) if load_history else []
            result = self.walk_price_history(snapshot, history)
        except Exception as e:
            logger.warning(
                "Price history unavailable for %s (%s), using probability model",
                snapshot.trade_id, e,
            )
            result = None

        if result is None:
            result = self.simulate_by_probability(snapshot)
        return result

    def walk_price_history(
        self, snapshot: OptionSnapshot, history: Sequence[PricePoint],
    ) -> Optional[OutcomeResult]:
        """Walk marks after the entry date; None when no usable history exists."""
        entry_date = snapshot.snapshot_date
        path: List[PricePoint] = sorted(
            (p for p in history
             if entry_date < p.date <= snapshot.expiration_date and p.mark is not None),
            key=lambda p: p.date,
        )
        if not path:
            return None

        credit = _entry_credit(snapshot)
        target_price = self.profit_target_price(credit)
        stop_price = self.stop_loss_price(credit)

        for point in path:
            days_held = (point.date - entry_date).days
            if point.mark <= target_price:
                pnl, roi = self._pnl_and_roi(credit, point.mark)
                return OutcomeResult(
                    exit_date=point.date, exit_price=point.mark,
                    realized_pnl=pnl, realized_roi=roi, days_held=days_held,
                    outcome=Outcome.WIN, exit_reason=ExitReason.PROFIT_TARGET,
                )
            if point.mark >= stop_price:
                pnl, roi = self._pnl_and_roi(credit, point.mark)
                return OutcomeResult(
                    exit_date=point.date, exit_price=point.mark,
                    realized_pnl=pnl, realized_roi=roi, days_held=days_held,
                    outcome=Outcome.LOSS, exit_reason=ExitReason.STOP_LOSS,
                )

        # Held to expiration: settle at the last known mark
        final_mark = path[-1].mark
        pnl, roi = self._pnl_and_roi(credit, final_mark)
        return OutcomeResult(
            exit_date=snapshot.expiration_date,
            exit_price=final_mark,
            realized_pnl=pnl,
            realized_roi=roi,
            days_held=(snapshot.expiration_date - entry_date).days,
            outcome=Outcome.WIN if pnl > 0 else Outcome.LOSS,
            exit_reason=ExitReason.EXPIRATION,
        )

    def simulate_by_probability(self, snapshot: OptionSnapshot, trial: int = 0) -> OutcomeResult:
        """
        Single seeded draw with win probability ``1 - |delta|``.

        Wins exit at the profit-target price after half the DTE; losses exit
        at the stop-loss price at expiration.  A single sample per contract is
        a known limitation; see ``run_trials`` for the distribution.
        """
        credit = _entry_credit(snapshot)
        if snapshot.delta is None:
            raise EvaluationError(f"No delta for {snapshot.trade_id}, cannot draw a fallback outcome")
        rng = random.Random(f"{self.seed}:{snapshot.trade_id}:{trial}")
        win_probability = 1 - abs(snapshot.delta)

        if rng.random() < win_probability:
            exit_price = self.profit_target_price(credit)
            days_held = snapshot.dte // 2
            pnl, roi = self._pnl_and_roi(credit, exit_price)
            return OutcomeResult(
                exit_date=snapshot.snapshot_date + timedelta(days=days_held),
                exit_price=exit_price, realized_pnl=pnl, realized_roi=roi,
                days_held=days_held, outcome=Outcome.WIN,
                exit_reason=ExitReason.SIMULATED_WIN,
            )

        exit_price = self.stop_loss_price(credit)
        pnl, roi = self._pnl_and_roi(credit, exit_price)
        return OutcomeResult(
            exit_date=snapshot.expiration_date,
            exit_price=exit_price, realized_pnl=pnl, realized_roi=roi,
            days_held=snapshot.dte, outcome=Outcome.LOSS,
            exit_reason=ExitReason.SIMULATED_LOSS,
        )

    def run_trials(self, snapshot: OptionSnapshot, trials: int = 100) -> Dict[str, float]:
        """Distribution of *trials* independent seeded fallback draws."""
        if trials < 1:
            raise ValueError("trials must be at least 1")
        results = [self.simulate_by_probability(snapshot, trial=i) for i in range(trials)]
        pnls = np.array([r.realized_pnl for r in results], dtype=float)
        rois = np.array([r.realized_roi for r in results], dtype=float)
        wins = sum(1 for r in results if r.outcome == Outcome.WIN)
        return {
            "trials": trials,
            "win_rate": wins / trials * 100,
            "mean_pnl": float(pnls.mean()),
            "std_pnl": float(pnls.std()),
            "mean_roi": float(rois.mean()),
            "expected_win_rate": (1 - abs(snapshot.delta)) * 100,
        }


def _entry_credit(snapshot: OptionSnapshot) -> float:
    credit = snapshot.premium
    if credit is None:
        raise EvaluationError(f"No quote for {snapshot.trade_id} on {snapshot.snapshot_date}")
    return credit
