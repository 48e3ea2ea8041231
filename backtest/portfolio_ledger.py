"""
Portfolio Ledger
Replays closed trades in entry-date order against a single capital base.

Each trade is sized as ``floor(risk% x current portfolio / max risk per
contract)`` contracts, so position sizes shrink after losses and grow after
wins.  The replay is the only order-sensitive stage of a backtest and runs
as one sequential pass after every trade outcome is known.
"""

import logging
import math
from typing import Iterable, List, Tuple

from backtest.models import PortfolioState, PortfolioSummary, TradeMatch
from shared.constants import (
    CONTRACT_MULTIPLIER,
    DAYS_PER_YEAR,
    DEFAULT_PORTFOLIO_SIZE,
    DEFAULT_RISK_PER_TRADE,
    DEFAULT_SPREAD_WIDTH,
)

logger = logging.getLogger(__name__)


def size_position(
    portfolio_value: float, risk_per_trade: float, credit: float, spread_width: float = DEFAULT_SPREAD_WIDTH,
) -> Tuple[int, float]:
    """
    Contracts to trade and the capital they put at risk.

    Args:
        portfolio_value: Current portfolio value
        risk_per_trade: Percent of the portfolio to risk
        credit: Entry credit per share
        spread_width: Spread width per share

    Returns:
        (contracts, capital_allocated)
    """
    risk_amount = portfolio_value * (risk_per_trade / 100)
    max_risk_per_contract = (spread_width - credit) * CONTRACT_MULTIPLIER
    if max_risk_per_contract > 0:
        contracts = max(0, math.floor(risk_amount / max_risk_per_contract))
    else:
        # Credit at or above the width: no capital at risk per contract
        contracts = 1
    return contracts, contracts * max(max_risk_per_contract, 0.0)


class PortfolioLedger:
    """Chronological replay of closed trades with risk-based sizing."""

    def __init__(
        self,
        portfolio_size: float = DEFAULT_PORTFOLIO_SIZE,
        risk_per_trade: float = DEFAULT_RISK_PER_TRADE,
        spread_width: float = DEFAULT_SPREAD_WIDTH,
    ):
        self.portfolio_size = portfolio_size
        self.risk_per_trade = risk_per_trade
        self.spread_width = spread_width

    def replay(self, trades: Iterable[TradeMatch], years: float) -> PortfolioSummary:
        """
        Size and apply every closed trade in ascending entry-date order.

        Mutates each trade's portfolio fields exactly once.

        Args:
            trades: Closed trade matches (already filtered to those taken)
            years: Wall-clock span of the configured backtest window

        Returns:
            PortfolioSummary with return, CAGR, max drawdown and equity curve
        """
        ordered: List[TradeMatch] = sorted(
            (t for t in trades if t.is_closed), key=lambda t: t.entry_date,
        )
        state = PortfolioState.start(self.portfolio_size)

        if not ordered:
            return self._summarize(state, years)

        state.record(ordered[0].entry_date, state.current_value)

        for trade in ordered:
            before = state.current_value
            contracts, allocated = size_position(
                before, self.risk_per_trade, trade.premium, self.spread_width,
            )
            state.current_value = before + (trade.realized_pnl or 0.0) * contracts
            trade.apply_portfolio(before, state.current_value, contracts, allocated)

            if trade.exit_date is not None:
                state.record(trade.exit_date, state.current_value)

            if state.current_value > state.peak_value:
                state.peak_value = state.current_value
            if state.peak_value > 0:
                drawdown = (state.peak_value - state.current_value) / state.peak_value * 100
                state.max_drawdown_pct = max(state.max_drawdown_pct, drawdown)

        # Exit dates do not follow entry order; keep the curve chronological
        state.equity_curve.sort(key=lambda p: p["date"])

        summary = self._summarize(state, years)
        logger.info(
            "Portfolio replay: $%.2f -> $%.2f (%.2f%%), CAGR %.2f%%, max drawdown %.2f%%",
            summary.starting_portfolio, summary.ending_portfolio,
            summary.total_return, summary.cagr, summary.portfolio_max_drawdown,
        )
        return summary

    def _summarize(self, state: PortfolioState, years: float) -> PortfolioSummary:
        starting = state.starting_value
        ending = state.current_value
        total_return = (ending - starting) / starting * 100 if starting else 0.0
        if years > 0 and starting > 0 and ending > 0:
            cagr = ((ending / starting) ** (1 / years) - 1) * 100
        elif years > 0 and ending <= 0:
            cagr = -100.0
        else:
            cagr = 0.0
        return PortfolioSummary(
            starting_portfolio=starting,
            ending_portfolio=round(ending, 2),
            total_return=total_return,
            cagr=cagr,
            portfolio_max_drawdown=state.max_drawdown_pct,
            equity_curve=state.equity_curve,
        )
