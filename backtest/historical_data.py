"""
Historical Options Data Provider
Reads historical options-chain snapshots and news sentiment from the local
SQLite store populated by the backfill jobs.
"""

import json
import logging
import sqlite3
from datetime import date, timedelta
from typing import Dict, List, Optional

from backtest.models import OptionSnapshot, PricePoint, to_date
from shared.database import get_db
from shared.exceptions import DataFetchError, DataValidationError
from shared.types import SentimentReading

logger = logging.getLogger(__name__)

# Days of news folded into one sentiment reading
_SENTIMENT_LOOKBACK_DAYS = 7


def sentiment_label(score: float) -> str:
    """Alpha Vantage style label for an average sentiment score."""
    if score <= -0.35:
        return "Bearish"
    if score <= -0.15:
        return "Somewhat-Bearish"
    if score < 0.15:
        return "Neutral"
    if score < 0.35:
        return "Somewhat-Bullish"
    return "Bullish"


class HistoricalOptionsData:
    """Snapshot source backed by the ``historical_options_data`` table."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        self._skipped_rows = 0
        logger.info("HistoricalOptionsData initialized (db: %s)", db_path or "default")

    def _query(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            conn = get_db(self.db_path)
        except sqlite3.Error as e:
            raise DataFetchError(f"Cannot open options database: {e}") from e
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DataFetchError(f"Options query failed: {e}") from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # SnapshotSource
    # ------------------------------------------------------------------

    def fetch_snapshots(
        self, symbol: str, start: date, end: date, min_dte: int, max_dte: int,
    ) -> List[OptionSnapshot]:
        """Validated snapshots for *symbol* inside the window, ordered by date.

        Malformed rows are skipped with a warning.
        """
        rows = self._query(
            """
            SELECT * FROM historical_options_data
            WHERE symbol = ? AND snapshot_date BETWEEN ? AND ?
              AND dte BETWEEN ? AND ?
            ORDER BY snapshot_date, expiration_date, strike, option_type
            """,
            (symbol.upper(), start.isoformat(), end.isoformat(), min_dte, max_dte),
        )
        snapshots = []
        for row in rows:
            try:
                snapshots.append(OptionSnapshot.from_row(dict(row)))
            except DataValidationError as e:
                self._skipped_rows += 1
                logger.warning("Skipping invalid %s snapshot row: %s", symbol, e)
        logger.debug("Loaded %d snapshots for %s (%s to %s)", len(snapshots), symbol, start, end)
        return snapshots

    def price_history(self, snapshot: OptionSnapshot) -> List[PricePoint]:
        """Daily marks for the same contract after its snapshot date."""
        rows = self._query(
            """
            SELECT snapshot_date, mark, bid, ask FROM historical_options_data
            WHERE symbol = ? AND expiration_date = ? AND strike = ? AND option_type = ?
              AND snapshot_date > ? AND snapshot_date <= ?
            ORDER BY snapshot_date
            """,
            (
                snapshot.symbol,
                snapshot.expiration_date.isoformat(),
                snapshot.strike,
                snapshot.option_type.value,
                snapshot.snapshot_date.isoformat(),
                snapshot.expiration_date.isoformat(),
            ),
        )
        history = []
        for row in rows:
            mark = row["mark"]
            if mark is None and row["bid"] is not None and row["ask"] is not None:
                mark = (row["bid"] + row["ask"]) / 2
            if mark is None:
                continue
            history.append(PricePoint(date=to_date(row["snapshot_date"]), mark=float(mark)))
        return history

    def available_symbols(self, start: date, end: date) -> List[str]:
        rows = self._query(
            "SELECT DISTINCT symbol FROM historical_options_data "
            "WHERE snapshot_date BETWEEN ? AND ? ORDER BY symbol",
            (start.isoformat(), end.isoformat()),
        )
        return [r["symbol"] for r in rows]

    def get_stats(self) -> Dict:
        """Rows skipped as invalid since construction."""
        return {"skipped_rows": self._skipped_rows}


class NewsSentimentData:
    """Sentiment source backed by the ``news_sentiment`` table."""

    def __init__(self, db_path: Optional[str] = None, lookback_days: int = _SENTIMENT_LOOKBACK_DAYS):
        self.db_path = db_path
        self.lookback_days = lookback_days

    def sentiment_for(self, symbol: str, as_of: date) -> Optional[SentimentReading]:
        """
        Article-weighted sentiment over the lookback window ending on *as_of*.

        Only rows published on or before *as_of* are read.

        Returns:
            SentimentReading, or None when no news was recorded.
        """
        window_start = as_of - timedelta(days=self.lookback_days)
        try:
            conn = get_db(self.db_path)
        except sqlite3.Error as e:
            raise DataFetchError(f"Cannot open sentiment database: {e}") from e
        try:
            rows = conn.execute(
                """
                SELECT * FROM news_sentiment
                WHERE symbol = ? AND published_date > ? AND published_date <= ?
                ORDER BY published_date DESC
                """,
                (symbol.upper(), window_start.isoformat(), as_of.isoformat()),
            ).fetchall()
        except sqlite3.Error as e:
            raise DataFetchError(f"Sentiment query failed: {e}") from e
        finally:
            conn.close()

        rows = [r for r in rows if r["score"] is not None]
        if not rows:
            return None

        weights = [max(r["article_count"] or 0, 1) for r in rows]
        score = sum(r["score"] * w for r, w in zip(rows, weights)) / sum(weights)

        topics: List[str] = []
        headlines: List[str] = []
        for r in rows:
            for topic in _json_list(r["top_topics"]):
                if topic not in topics:
                    topics.append(topic)
            for headline in _json_list(r["headlines"]):
                if headline not in headlines:
                    headlines.append(headline)

        return {
            "score": score,
            "label": sentiment_label(score),
            "article_count": sum(r["article_count"] or 0 for r in rows),
            "top_topics": topics[:5],
            "headlines": headlines[:5],
        }


def _json_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []
