"""
Performance Metrics
Aggregate closed trade matches into performance statistics and reports.

Sharpe and Sortino use per-trade ROI percentages against a flat 2% hurdle;
they are not annualized.  Ratios are ``None`` whenever they are undefined
rather than 0 or infinity.
"""

import json
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from backtest.models import BacktestResults, Outcome, TradeMatch
from shared.constants import OUTPUT_DIR, RISK_FREE_RATE_PCT
from shared.types import BreakdownStats

logger = logging.getLogger(__name__)

# Alpha Vantage style sentiment buckets
SENTIMENT_BINS = [-1.0, -0.35, -0.15, 0.15, 0.35, 1.0]
MIN_BUCKET_TRADES = 3


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def median(values: Sequence[float]) -> float:
    """Sorted-array midpoint; averages the two middle values on even length."""
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def sharpe_ratio(returns: Sequence[float], risk_free: float = RISK_FREE_RATE_PCT) -> Optional[float]:
    """(mean - risk_free) / population stddev of ROI percentages."""
    if len(returns) < 2:
        return None
    arr = np.asarray(returns, dtype=float)
    std = float(arr.std())
    if std == 0 or not math.isfinite(std):
        return None
    return (float(arr.mean()) - risk_free) / std


def sortino_ratio(returns: Sequence[float], risk_free: float = RISK_FREE_RATE_PCT) -> Optional[float]:
    """Same numerator as Sharpe over the downside deviation of negative returns."""
    if len(returns) < 2:
        return None
    arr = np.asarray(returns, dtype=float)
    downside = arr[arr < 0]
    if downside.size == 0:
        return None
    downside_dev = float(np.sqrt(np.mean(downside ** 2)))
    if downside_dev == 0:
        return None
    return (float(arr.mean()) - risk_free) / downside_dev


def max_drawdown(pnls: Sequence[float]) -> Optional[float]:
    """Largest peak-to-trough fall of the cumulative dollar P&L, in order."""
    if not pnls:
        return None
    peak = 0.0
    cumulative = 0.0
    worst = 0.0
    for pnl in pnls:
        cumulative += pnl
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return worst


def profit_factor(pnls: Sequence[float]) -> Optional[float]:
    """Gross profit over gross loss magnitude; None when nothing was lost."""
    gross_profit = sum(p for p in pnls if p > 0)
    gross_loss = abs(sum(p for p in pnls if p < 0))
    if gross_loss == 0:
        return None
    return gross_profit / gross_loss


def streaks(outcomes: Iterable[bool]) -> Dict[str, int]:
    max_win_streak = max_loss_streak = cur_win = cur_loss = 0
    for is_win in outcomes:
        if is_win:
            cur_win += 1
            cur_loss = 0
            max_win_streak = max(max_win_streak, cur_win)
        else:
            cur_loss += 1
            cur_win = 0
            max_loss_streak = max(max_loss_streak, cur_loss)
    return {"max_win_streak": max_win_streak, "max_loss_streak": max_loss_streak}


def breakdown(trades: Sequence[TradeMatch]) -> BreakdownStats:
    total = len(trades)
    wins = sum(1 for t in trades if t.actual_outcome == Outcome.WIN)
    return {
        "total": total,
        "wins": wins,
        "win_rate": (wins / total) * 100 if total else 0.0,
        "avg_roi": sum(t.realized_roi or 0.0 for t in trades) / total if total else 0.0,
    }


def _group_breakdown(trades: Sequence[TradeMatch], key) -> Dict[str, BreakdownStats]:
    groups: Dict[str, List[TradeMatch]] = {}
    for trade in trades:
        groups.setdefault(key(trade), []).append(trade)
    return {name: breakdown(group) for name, group in sorted(groups.items())}


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------

class PerformanceMetrics:
    """
    Calculate and report performance metrics.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize performance metrics calculator.

        Args:
            config: Configuration dictionary (uses the ``reports`` section)
        """
        self.config = config or {}
        self.report_dir = Path(self.config.get('reports', {}).get('dir', Path(OUTPUT_DIR) / 'reports'))

        logger.debug("PerformanceMetrics initialized")

    def calculate(self, trades: Sequence[TradeMatch]) -> Dict[str, Any]:
        """
        Aggregate closed trades into performance metrics.

        Args:
            trades: Trade matches to analyze, in trade order.  Pending trades
                    are ignored.

        Returns:
            Dictionary keyed like the metric fields of BacktestResults
        """
        closed = [t for t in trades if t.is_closed]
        wins = [t for t in closed if t.actual_outcome == Outcome.WIN]
        losses = [t for t in closed if t.actual_outcome == Outcome.LOSS]
        pnls = [t.realized_pnl or 0.0 for t in closed]
        rois = [t.realized_roi or 0.0 for t in closed]
        days = [t.days_held for t in closed if t.days_held is not None]

        total = len(closed)
        results: Dict[str, Any] = {
            "total_trades": total,
            "winning_trades": len(wins),
            "losing_trades": len(losses),
            "win_rate": (len(wins) / total) * 100 if total else 0.0,
            "total_pnl": sum(pnls),
            "avg_pnl": sum(pnls) / total if total else 0.0,
            "median_pnl": median(pnls),
            "max_win": max(pnls + [0.0]),
            "max_loss": min(pnls + [0.0]),
            "avg_roi": sum(rois) / total if total else 0.0,
            "median_roi": median(rois),
            "best_roi": max(rois + [0.0]),
            "worst_roi": min(rois + [0.0]),
            "avg_days_held": sum(days) / len(days) if days else None,
            "sharpe_ratio": sharpe_ratio(rois),
            "sortino_ratio": sortino_ratio(rois),
            "max_drawdown": max_drawdown(pnls),
            "profit_factor": profit_factor(pnls),
            "strategy_performance": _group_breakdown(closed, lambda t: t.strategy_type),
            "symbol_performance": _group_breakdown(closed, lambda t: t.symbol),
            "monthly_performance": self._monthly_performance(closed),
            "factor_performance": self._factor_performance(closed),
            "sentiment_correlation": self._sentiment_correlation(closed),
            "optimal_sentiment_range": self._optimal_sentiment_range(closed),
        }
        results.update(streaks(t.actual_outcome == Outcome.WIN for t in closed))
        return results

    def _monthly_performance(self, trades: Sequence[TradeMatch]) -> Dict[str, Dict]:
        """P&L, trade count and win rate grouped by exit month."""
        rows = [
            {"month": t.exit_date.strftime("%Y-%m"), "pnl": t.realized_pnl or 0.0,
             "win": t.actual_outcome == Outcome.WIN}
            for t in trades if t.exit_date is not None
        ]
        if not rows:
            return {}
        df = pd.DataFrame(rows)
        grouped = df.groupby("month").agg(pnl=("pnl", "sum"), trades=("pnl", "count"), wins=("win", "sum"))
        return {
            month: {
                "pnl": round(float(row["pnl"]), 2),
                "trades": int(row["trades"]),
                "wins": int(row["wins"]),
                "win_rate": round(float(row["wins"]) / float(row["trades"]) * 100, 2),
            }
            for month, row in grouped.iterrows()
        }

    def _factor_performance(self, trades: Sequence[TradeMatch]) -> Dict[str, Dict]:
        """Win rate and average ROI per factor, split by whether it was met."""
        stats: Dict[str, Dict[str, List[TradeMatch]]] = {}
        for trade in trades:
            for key, score in trade.factor_scores.items():
                bucket = "met" if score.get("passed") else "unmet"
                stats.setdefault(key, {"met": [], "unmet": []})[bucket].append(trade)
        return {
            key: {bucket: breakdown(group) for bucket, group in buckets.items()}
            for key, buckets in sorted(stats.items())
        }

    def _sentiment_correlation(self, trades: Sequence[TradeMatch]) -> Dict[str, BreakdownStats]:
        labelled = [t for t in trades if t.sentiment_label]
        return _group_breakdown(labelled, lambda t: t.sentiment_label)

    def _optimal_sentiment_range(self, trades: Sequence[TradeMatch]) -> Optional[Dict[str, Any]]:
        """Sentiment score bucket with the best win rate (min 3 trades)."""
        scored = [t for t in trades if t.sentiment_at_entry is not None]
        if not scored:
            return None
        df = pd.DataFrame({
            "score": [t.sentiment_at_entry for t in scored],
            "win": [t.actual_outcome == Outcome.WIN for t in scored],
            "roi": [t.realized_roi or 0.0 for t in scored],
        })
        df["bucket"] = pd.cut(df["score"], bins=SENTIMENT_BINS, include_lowest=True)
        grouped = df.groupby("bucket", observed=True).agg(
            trades=("win", "count"), wins=("win", "sum"), avg_roi=("roi", "mean"),
        )
        grouped = grouped[grouped["trades"] >= MIN_BUCKET_TRADES]
        if grouped.empty:
            return None
        grouped["win_rate"] = grouped["wins"] / grouped["trades"] * 100
        best = grouped.sort_values(["win_rate", "avg_roi"], ascending=False).iloc[0]
        interval = best.name
        return {
            "min": float(interval.left),
            "max": float(interval.right),
            "trades": int(best["trades"]),
            "win_rate": round(float(best["win_rate"]), 2),
            "avg_roi": round(float(best["avg_roi"]), 2),
        }

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def generate_report(self, results: BacktestResults) -> str:
        """
        Write a text report and a JSON dump of the results.

        Args:
            results: Completed backtest results

        Returns:
            Path to generated text report ("" when nothing was written)
        """
        if results is None:
            logger.warning("No backtest results to report")
            return ""

        self.report_dir.mkdir(parents=True, exist_ok=True)
        stamp = self._timestamp()

        report_file = self.report_dir / f"ips_backtest_{results.run_id}_{stamp}.txt"
        try:
            with open(report_file, 'w') as f:
                f.write(self._generate_text_report(results))
            logger.info("Report generated: %s", report_file)
        except OSError as e:
            logger.warning("Failed to write text report to %s: %s", report_file, e)
            return ""

        json_file = self.report_dir / f"ips_backtest_{results.run_id}_{stamp}.json"
        try:
            with open(json_file, 'w') as f:
                json.dump(results.to_dict(), f, indent=2, default=str)
        except OSError as e:
            logger.warning("Failed to write JSON results to %s: %s", json_file, e)

        return str(report_file)

    def _generate_text_report(self, results: BacktestResults) -> str:
        lines = []
        lines.append("=" * 80)
        lines.append(f"IPS BACKTEST REPORT - {results.ips_id} (run {results.run_id})")
        lines.append("=" * 80)
        lines.append("")

        lines.append("SUMMARY")
        lines.append("-" * 80)
        lines.append(f"Total Trades: {results.total_trades}")
        lines.append(f"Winning Trades: {results.winning_trades}")
        lines.append(f"Losing Trades: {results.losing_trades}")
        lines.append(f"Win Rate: {results.win_rate:.2f}%")
        lines.append("")

        lines.append("TRADE STATISTICS")
        lines.append("-" * 80)
        lines.append(f"Total P&L (1 contract): ${results.total_pnl:,.2f}")
        lines.append(f"Average P&L: ${results.avg_pnl:,.2f}   Median P&L: ${results.median_pnl:,.2f}")
        lines.append(f"Average ROI: {results.avg_roi:.2f}%   Median ROI: {results.median_roi:.2f}%")
        lines.append(f"Best ROI: {results.best_roi:.2f}%   Worst ROI: {results.worst_roi:.2f}%")
        lines.append(f"Profit Factor: {_fmt(results.profit_factor)}")
        lines.append("")

        lines.append("RISK METRICS")
        lines.append("-" * 80)
        lines.append(f"Sharpe Ratio: {_fmt(results.sharpe_ratio)}")
        lines.append(f"Sortino Ratio: {_fmt(results.sortino_ratio)}")
        lines.append(f"Max Drawdown (cumulative P&L): {_fmt(results.max_drawdown, '$')}")
        lines.append("")

        lines.append("PORTFOLIO")
        lines.append("-" * 80)
        lines.append(f"Starting Portfolio: ${results.starting_portfolio:,.2f}")
        lines.append(f"Ending Portfolio: ${results.ending_portfolio:,.2f}")
        lines.append(f"Total Return: {results.total_return:.2f}%")
        lines.append(f"CAGR: {results.cagr:.2f}%")
        lines.append(f"Max Drawdown: {results.portfolio_max_drawdown:.2f}%")
        lines.append("")

        if results.strategy_performance:
            lines.append("BY STRATEGY")
            lines.append("-" * 80)
            for name, stats in results.strategy_performance.items():
                lines.append(
                    f"{name:<24} {stats['total']:>6} trades  "
                    f"{stats['win_rate']:6.2f}% win  {stats['avg_roi']:7.2f}% avg ROI"
                )
            lines.append("")

        if results.symbol_performance:
            lines.append("BY SYMBOL")
            lines.append("-" * 80)
            for name, stats in results.symbol_performance.items():
                lines.append(
                    f"{name:<24} {stats['total']:>6} trades  "
                    f"{stats['win_rate']:6.2f}% win  {stats['avg_roi']:7.2f}% avg ROI"
                )
            lines.append("")

        lines.append("=" * 80)
        return "\n".join(lines)

    def _timestamp(self) -> str:
        return datetime.now().strftime("%Y%m%d_%H%M%S")

    def print_summary(self, results: BacktestResults):
        """
        Print summary to console.
        """
        print("\n" + "=" * 60)
        print("IPS BACKTEST SUMMARY")
        print("=" * 60)
        print(f"Total Trades: {results.total_trades}")
        print(f"Win Rate: {results.win_rate:.2f}%")
        print(f"Avg ROI: {results.avg_roi:.2f}%")
        print(f"Sharpe Ratio: {_fmt(results.sharpe_ratio)}")
        print(f"Profit Factor: {_fmt(results.profit_factor)}")
        print(f"Portfolio: ${results.starting_portfolio:,.2f} -> ${results.ending_portfolio:,.2f}")
        print(f"Total Return: {results.total_return:.2f}%  CAGR: {results.cagr:.2f}%")
        print(f"Max Drawdown: {results.portfolio_max_drawdown:.2f}%")
        print("=" * 60 + "\n")


def _fmt(value: Optional[float], prefix: str = "") -> str:
    if value is None:
        return "n/a"
    return f"{prefix}{value:,.2f}"
