"""
Time-travel context provider.

Answers "what did we know on this date?" questions for the AI evaluator:
performance history for a symbol and the closed trades most similar to a
candidate.  Every query filters strictly on ``close_date < before``; an
empty answer is returned as-is and never retried with a looser filter.
"""

import logging
import sqlite3
from datetime import date
from typing import Dict, List, Optional

import numpy as np

from backtest.models import TradeCandidate, to_date
from shared.constants import RECENT_TRADES_LIMIT, SIMILAR_TRADES_LIMIT, SIMILARITY_THRESHOLD
from shared.database import get_db
from shared.exceptions import DataFetchError
from shared.types import HistoricalPerformance, RecentTrade, SimilarTrade, StrategyStats

logger = logging.getLogger(__name__)

FEATURES = ("delta", "iv", "dte", "credit")


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


class SQLiteTimeTravelContext:
    """Read-only view of ``closed_trades`` as of a point in time."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        similar_limit: int = SIMILAR_TRADES_LIMIT,
    ):
        self.db_path = db_path
        self.similarity_threshold = similarity_threshold
        self.similar_limit = similar_limit

    def _closed_before(self, before: date, user_id: Optional[str], **filters) -> List[Dict]:
        query = "SELECT * FROM closed_trades WHERE close_date < ?"
        params: List = [before.isoformat()]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        for column, value in filters.items():
            query += f" AND {column} = ?"
            params.append(value)
        query += " ORDER BY close_date DESC, id"
        try:
            conn = get_db(self.db_path)
        except sqlite3.Error as e:
            raise DataFetchError(f"Cannot open trade history: {e}") from e
        try:
            return [dict(r) for r in conn.execute(query, params).fetchall()]
        except sqlite3.Error as e:
            raise DataFetchError(f"Trade history query failed: {e}") from e
        finally:
            conn.close()

    def historical_performance_before(
        self, symbol: str, before: date, user_id: Optional[str] = None,
    ) -> HistoricalPerformance:
        trades = self._closed_before(before, user_id, symbol=symbol.upper())
        wins = [t for t in trades if (t["realized_pnl"] or 0) > 0]
        rois = [t["realized_roi"] for t in trades if t["realized_roi"] is not None]

        days = []
        for t in trades:
            if t["entry_date"]:
                days.append((to_date(t["close_date"]) - to_date(t["entry_date"])).days)

        by_strategy: Dict[str, List[Dict]] = {}
        for t in trades:
            by_strategy.setdefault(t["strategy_type"] or "unknown", []).append(t)
        strategy_breakdown: Dict[str, StrategyStats] = {}
        for name, group in sorted(by_strategy.items()):
            group_rois = [g["realized_roi"] for g in group if g["realized_roi"] is not None]
            strategy_breakdown[name] = {
                "count": len(group),
                "win_rate": sum(1 for g in group if (g["realized_pnl"] or 0) > 0) / len(group) * 100,
                "avg_roi": sum(group_rois) / len(group_rois) if group_rois else 0.0,
            }

        recent: List[RecentTrade] = [
            {
                "id": t["id"],
                "strategy_type": t["strategy_type"],
                "realized_pnl": t["realized_pnl"],
                "realized_roi": t["realized_roi"],
                "entry_date": t["entry_date"],
                "close_date": t["close_date"],
            }
            for t in trades[:RECENT_TRADES_LIMIT]
        ]

        total = len(trades)
        return {
            "symbol": symbol.upper(),
            "total_trades": total,
            "winning_trades": len(wins),
            "losing_trades": total - len(wins),
            "win_rate": len(wins) / total * 100 if total else 0.0,
            "avg_roi": sum(rois) / len(rois) if rois else 0.0,
            "avg_days_held": sum(days) / len(days) if days else 0.0,
            "strategy_breakdown": strategy_breakdown,
            "recent_trades": recent,
        }

    def similar_trades_before(
        self, candidate: TradeCandidate, before: date, user_id: Optional[str] = None,
    ) -> List[SimilarTrade]:
        """
        Closed trades of the same strategy whose normalized
        (|delta|, iv, dte, credit) vector is close to the candidate's.
        """
        trades = [
            t for t in self._closed_before(before, user_id, strategy_type=candidate.strategy_type)
            if all(t[f] is not None for f in FEATURES)
        ]
        snap = candidate.snapshot
        if not trades or None in (snap.delta, snap.implied_volatility, candidate.credit):
            return []

        target = np.array([abs(snap.delta), snap.implied_volatility, snap.dte, candidate.credit], dtype=float)
        pool = np.array(
            [[abs(t["delta"]), t["iv"], t["dte"], t["credit"]] for t in trades], dtype=float,
        )
        # Scale each feature to [0, 1] by its largest magnitude
        scale = np.maximum(np.abs(np.vstack([pool, target])).max(axis=0), 1e-9)
        target = target / scale
        pool = pool / scale

        matches: List[SimilarTrade] = []
        for trade, vector in zip(trades, pool):
            similarity = cosine_similarity(target, vector)
            if similarity < self.similarity_threshold:
                continue
            pnl = trade["realized_pnl"] or 0
            matches.append({
                "trade_id": trade["id"],
                "similarity": round(similarity, 4),
                "outcome": "win" if pnl > 0 else "loss",
                "realized_roi": trade["realized_roi"],
                "close_date": trade["close_date"],
                "summary": (
                    f"{trade['symbol']} {trade['strategy_type']} delta {abs(trade['delta']):.2f}, "
                    f"{trade['dte']} DTE, credit {trade['credit']:.2f}"
                ),
            })

        matches.sort(key=lambda m: m["similarity"], reverse=True)
        return matches[:self.similar_limit]
