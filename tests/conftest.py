"""Shared test fixtures."""
from datetime import date, timedelta

import pytest

from backtest.models import (
    BacktestConfig,
    ExitReason,
    OptionSnapshot,
    OptionType,
    Outcome,
    OutcomeResult,
    PricePoint,
    TradeMatch,
)
from shared.constants import CONTRACT_MULTIPLIER, DEFAULT_SPREAD_WIDTH
from shared.database import init_db


def make_snapshot(**overrides) -> OptionSnapshot:
    """Return a put snapshot that passes the sample IPS, with overrides."""
    base = dict(
        symbol="SPY",
        snapshot_date=date(2024, 1, 2),
        expiration_date=date(2024, 1, 2) + timedelta(days=30),
        strike=450.0,
        option_type=OptionType.PUT,
        bid=0.95,
        ask=1.05,
        mark=1.00,
        delta=-0.15,
        gamma=0.01,
        theta=-0.05,
        vega=0.10,
        rho=-0.02,
        implied_volatility=0.25,
        open_interest=1500,
        volume=300,
        dte=30,
        contract_id="",
        underlying_price=470.0,
    )
    base.update(overrides)
    return OptionSnapshot(**base)


def snapshot_row(snapshot: OptionSnapshot) -> dict:
    """Storage row for a snapshot, as the backfill writes it."""
    return {
        "symbol": snapshot.symbol,
        "snapshot_date": snapshot.snapshot_date.isoformat(),
        "expiration_date": snapshot.expiration_date.isoformat(),
        "strike": snapshot.strike,
        "option_type": snapshot.option_type.value,
        "contract_id": snapshot.contract_id,
        "bid": snapshot.bid,
        "ask": snapshot.ask,
        "mark": snapshot.mark,
        "delta": snapshot.delta,
        "gamma": snapshot.gamma,
        "theta": snapshot.theta,
        "vega": snapshot.vega,
        "rho": snapshot.rho,
        "implied_volatility": snapshot.implied_volatility,
        "open_interest": snapshot.open_interest,
        "volume": snapshot.volume,
        "dte": snapshot.dte,
        "underlying_price": snapshot.underlying_price,
    }


class FakeSnapshotSource:
    """In-memory snapshot source keyed by symbol."""

    def __init__(self, snapshots=None, histories=None, fail_symbols=()):
        self.snapshots = snapshots or {}
        self.histories = histories or {}
        self.fail_symbols = set(fail_symbols)
        self.fetched = []

    def fetch_snapshots(self, symbol, start, end, min_dte, max_dte):
        self.fetched.append(symbol)
        if symbol in self.fail_symbols:
            raise RuntimeError(f"{symbol} unavailable")
        return [
            s for s in self.snapshots.get(symbol, [])
            if start <= s.snapshot_date <= end and min_dte <= s.dte <= max_dte
        ]

    def price_history(self, snapshot):
        return self.histories.get(snapshot.trade_id, [])

    def available_symbols(self, start, end):
        return sorted(self.snapshots)


@pytest.fixture
def ips_config_dict():
    return {
        "strategies": ["put-credit-spreads", "call-credit-spreads"],
        "min_dte": 7,
        "max_dte": 45,
        "exit_strategies": {"profit_target_pct": 50, "stop_loss_pct": 200},
        "factors": [
            {"key": "delta_max", "operator": "lte", "target": 0.20, "weight": 2},
            {"key": "iv", "operator": "gte", "target": 0.20, "weight": 1},
        ],
    }


@pytest.fixture
def backtest_config_dict(ips_config_dict):
    return {
        "ips_id": "ips-1",
        "ips_name": "Test IPS",
        "ips_config": ips_config_dict,
        "start_date": "2024-01-01",
        "end_date": "2024-12-31",
        "symbols": ["SPY"],
        "portfolio_size": 25000,
        "risk_per_trade": 2.0,
        "random_seed": 7,
        "max_workers": 2,
    }


@pytest.fixture
def backtest_config(backtest_config_dict):
    return BacktestConfig.from_dict(backtest_config_dict)


@pytest.fixture
def winning_history():
    """Marks that hit a 50% profit target on day 3."""
    entry = date(2024, 1, 2)
    return [
        PricePoint(entry + timedelta(days=1), 0.90),
        PricePoint(entry + timedelta(days=2), 0.70),
        PricePoint(entry + timedelta(days=3), 0.48),
    ]


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "ips.db")
    init_db(path)
    return path


@pytest.fixture
def sample_config(tmp_path, backtest_config_dict):
    return {
        "backtest": backtest_config_dict,
        "database": {"path": str(tmp_path / "ips.db")},
        "logging": {"level": "WARNING", "file": str(tmp_path / "logs" / "test.log"), "console": False},
        "reports": {"enabled": True, "dir": str(tmp_path / "reports")},
    }


def make_match(entry, exit_date=None, pnl=100.0, roi=None, premium=1.0, symbol="SPY",
               strategy="put-credit-spreads", trade_id=None, closed=True, **fields):
    """Closed TradeMatch with the given outcome (pending when closed=False)."""
    values = dict(factor_scores={}, failing_factors=[], would_take_trade=True)
    values.update(fields)
    match = TradeMatch(
        trade_id=trade_id or f"{symbol}-{entry.isoformat()}-{pnl}",
        symbol=symbol,
        entry_date=entry,
        expiration_date=entry + timedelta(days=30),
        strike=450.0,
        option_type=OptionType.PUT,
        strategy_type=strategy,
        delta=0.15,
        iv=0.25,
        premium=premium,
        dte=30,
        ips_score=75.0,
        passed_ips=True,
        factors_passed=2,
        factors_failed=0,
        **values,
    )
    if closed:
        if roi is None:
            roi = pnl / ((DEFAULT_SPREAD_WIDTH - premium) * CONTRACT_MULTIPLIER) * 100
        match.apply_outcome(OutcomeResult(
            exit_date=exit_date or entry + timedelta(days=10),
            exit_price=premium - pnl / CONTRACT_MULTIPLIER,
            realized_pnl=pnl,
            realized_roi=roi,
            days_held=((exit_date or entry + timedelta(days=10)) - entry).days,
            outcome=Outcome.WIN if pnl > 0 else Outcome.LOSS,
            exit_reason=ExitReason.PROFIT_TARGET if pnl > 0 else ExitReason.STOP_LOSS,
        ))
    return match
