"""Tests for backtest.outcome_simulator."""

from datetime import date, timedelta

import pytest

from backtest.models import ExitReason, ExitStrategy, Outcome, PricePoint
from backtest.outcome_simulator import OutcomeSimulator
from shared.exceptions import EvaluationError

from conftest import make_snapshot

ENTRY = date(2024, 1, 2)


def _day(n, mark):
    return PricePoint(ENTRY + timedelta(days=n), mark)


@pytest.fixture
def simulator():
    return OutcomeSimulator(ExitStrategy(profit_target_pct=50, stop_loss_pct=200), spread_width=5, seed=42)


class TestPriceWalk:

    def test_profit_target_hit_on_day_three(self, simulator, winning_history):
        result = simulator.walk_price_history(make_snapshot(mark=1.00), winning_history)
        assert result.exit_date == ENTRY + timedelta(days=3)
        assert result.exit_price == pytest.approx(0.48)
        assert result.outcome == Outcome.WIN
        assert result.realized_pnl == pytest.approx(52.0)
        assert result.realized_roi == pytest.approx(13.0)
        assert result.days_held == 3
        assert result.exit_reason == ExitReason.PROFIT_TARGET

    def test_stop_loss(self, simulator):
        history = [_day(1, 1.5), _day(2, 3.2), _day(3, 0.1)]
        result = simulator.walk_price_history(make_snapshot(mark=1.00), history)
        assert result.outcome == Outcome.LOSS
        assert result.exit_reason == ExitReason.STOP_LOSS
        assert result.exit_date == ENTRY + timedelta(days=2)
        assert result.realized_pnl == pytest.approx(-220.0)
        assert result.realized_roi == pytest.approx(-55.0)

    def test_held_to_expiration(self, simulator):
        snapshot = make_snapshot(mark=1.00)
        result = simulator.walk_price_history(snapshot, [_day(1, 0.9), _day(5, 0.8)])
        assert result.exit_reason == ExitReason.EXPIRATION
        assert result.exit_date == snapshot.expiration_date
        assert result.exit_price == pytest.approx(0.8)
        assert result.realized_pnl == pytest.approx(20.0)
        assert result.outcome == Outcome.WIN
        assert result.days_held == 30

    def test_expiration_loss_when_mark_rose(self, simulator):
        result = simulator.walk_price_history(make_snapshot(mark=1.00), [_day(2, 1.4)])
        assert result.exit_reason == ExitReason.EXPIRATION
        assert result.outcome == Outcome.LOSS
        assert result.realized_pnl == pytest.approx(-40.0)

    def test_entry_day_mark_never_triggers_exit(self, simulator):
        history = [_day(0, 0.10), _day(1, 0.95)]
        result = simulator.walk_price_history(make_snapshot(mark=1.00), history)
        assert result.exit_reason == ExitReason.EXPIRATION
        assert result.exit_price == pytest.approx(0.95)

    def test_marks_after_expiration_ignored(self, simulator):
        snapshot = make_snapshot(mark=1.00)
        history = [_day(1, 0.9), _day(40, 0.01)]
        result = simulator.walk_price_history(snapshot, history)
        assert result.exit_reason == ExitReason.EXPIRATION
        assert result.exit_price == pytest.approx(0.9)

    def test_unsorted_history_is_walked_in_date_order(self, simulator, winning_history):
        result = simulator.walk_price_history(make_snapshot(mark=1.00), list(reversed(winning_history)))
        assert result.days_held == 3

    def test_empty_history_returns_none(self, simulator):
        assert simulator.walk_price_history(make_snapshot(), []) is None

    def test_credit_at_width_has_zero_roi(self, simulator):
        result = simulator.walk_price_history(make_snapshot(mark=5.5), [_day(1, 2.0)])
        assert result.realized_roi == 0.0
        assert result.realized_pnl == pytest.approx(350.0)


class TestProbabilityFallback:

    def test_certain_win_when_delta_zero(self, simulator):
        result = simulator.simulate_by_probability(make_snapshot(delta=0.0, mark=1.00))
        assert result.outcome == Outcome.WIN
        assert result.exit_reason == ExitReason.SIMULATED_WIN
        assert result.exit_price == pytest.approx(0.5)
        assert result.realized_pnl == pytest.approx(50.0)
        assert result.realized_roi == pytest.approx(12.5)
        assert result.days_held == 15
        assert result.exit_date == ENTRY + timedelta(days=15)

    def test_certain_loss_when_delta_one(self, simulator):
        snapshot = make_snapshot(delta=-1.0, mark=1.00)
        result = simulator.simulate_by_probability(snapshot)
        assert result.outcome == Outcome.LOSS
        assert result.exit_reason == ExitReason.SIMULATED_LOSS
        assert result.exit_price == pytest.approx(3.0)
        assert result.realized_pnl == pytest.approx(-200.0)
        assert result.days_held == 30
        assert result.exit_date == snapshot.expiration_date

    def test_same_seed_same_outcome(self):
        snapshot = make_snapshot(delta=-0.45, contract_id="SPY240201P450")
        first = OutcomeSimulator(seed=11).simulate_by_probability(snapshot)
        second = OutcomeSimulator(seed=11).simulate_by_probability(snapshot)
        assert first == second

    def test_outcome_independent_of_call_order(self):
        a = make_snapshot(delta=-0.45, contract_id="A")
        b = make_snapshot(delta=-0.45, contract_id="B")
        forward = OutcomeSimulator(seed=3)
        backward = OutcomeSimulator(seed=3)
        ab = (forward.simulate_by_probability(a), forward.simulate_by_probability(b))
        bb = backward.simulate_by_probability(b)
        ba = backward.simulate_by_probability(a)
        assert ab == (ba, bb)

    def test_simulate_falls_back_without_history(self, simulator):
        result = simulator.simulate(make_snapshot(delta=0.0))
        assert result.exit_reason == ExitReason.SIMULATED_WIN

    def test_simulate_falls_back_on_loader_error(self, simulator):
        def broken(_snapshot):
            raise OSError("disk gone")

        result = simulator.simulate(make_snapshot(delta=-1.0), broken)
        assert result.exit_reason == ExitReason.SIMULATED_LOSS

    def test_simulate_prefers_history(self, simulator, winning_history):
        result = simulator.simulate(make_snapshot(mark=1.00), lambda _s: winning_history)
        assert result.exit_reason == ExitReason.PROFIT_TARGET


class TestUnsimulatable:

    def test_unquoted_snapshot_is_not_walked(self, simulator):
        snapshot = make_snapshot(mark=None, bid=None, ask=None)
        with pytest.raises(EvaluationError):
            simulator.walk_price_history(snapshot, [_day(1, 0.5)])

    def test_unquoted_snapshot_is_not_simulated(self, simulator):
        snapshot = make_snapshot(mark=None, bid=None, ask=None)
        with pytest.raises(EvaluationError):
            simulator.simulate(snapshot, lambda _s: [_day(1, 0.5)])
        with pytest.raises(EvaluationError):
            simulator.simulate(snapshot)

    def test_missing_delta_has_no_fallback(self, simulator):
        snapshot = make_snapshot(delta=None)
        with pytest.raises(EvaluationError):
            simulator.simulate(snapshot)
        with pytest.raises(EvaluationError):
            simulator.run_trials(snapshot, trials=10)

    def test_missing_delta_still_walks_history(self, simulator, winning_history):
        result = simulator.simulate(make_snapshot(delta=None), lambda _s: winning_history)
        assert result.exit_reason == ExitReason.PROFIT_TARGET
        assert result.realized_pnl == pytest.approx(52.0)


class TestRunTrials:

    def test_certain_win_distribution(self, simulator):
        stats = simulator.run_trials(make_snapshot(delta=0.0, mark=1.00), trials=20)
        assert stats["trials"] == 20
        assert stats["win_rate"] == 100.0
        assert stats["mean_pnl"] == pytest.approx(50.0)
        assert stats["std_pnl"] == pytest.approx(0.0)
        assert stats["expected_win_rate"] == 100.0

    def test_trials_are_reproducible(self):
        snapshot = make_snapshot(delta=-0.3)
        assert OutcomeSimulator(seed=5).run_trials(snapshot, 50) == OutcomeSimulator(seed=5).run_trials(snapshot, 50)

    def test_mixed_outcomes_bounded(self, simulator):
        stats = simulator.run_trials(make_snapshot(delta=-0.5, mark=1.00), trials=200)
        assert 0 < stats["win_rate"] < 100
        assert -200.0 < stats["mean_pnl"] < 50.0

    def test_requires_a_trial(self, simulator):
        with pytest.raises(ValueError):
            simulator.run_trials(make_snapshot(), trials=0)
