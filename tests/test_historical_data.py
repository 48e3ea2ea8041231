"""Tests for backtest.historical_data against a real SQLite file."""

from datetime import date, timedelta

import pytest

from backtest.historical_data import HistoricalOptionsData, NewsSentimentData, sentiment_label
from backtest.models import OptionType
from shared.database import insert_sentiment, insert_snapshots
from shared.exceptions import DataFetchError

from conftest import make_snapshot, snapshot_row

ENTRY = date(2024, 1, 2)
EXPIRY = ENTRY + timedelta(days=30)


def _contract_day(offset, mark, **overrides):
    snap = make_snapshot(
        snapshot_date=ENTRY + timedelta(days=offset),
        expiration_date=EXPIRY,
        dte=30 - offset,
        mark=mark,
        **overrides,
    )
    return snapshot_row(snap)


@pytest.fixture
def populated_db(db_path):
    rows = [
        _contract_day(0, 1.00),
        _contract_day(1, 0.90),
        _contract_day(2, 0.70),
        _contract_day(3, 0.48),
        _contract_day(0, 2.10, strike=460.0),
        snapshot_row(make_snapshot(symbol="QQQ", strike=390.0)),
    ]
    insert_snapshots(rows, path=db_path)
    return db_path


class TestSnapshots:

    def test_fetch_filters_window_and_dte(self, populated_db):
        source = HistoricalOptionsData(populated_db)
        snaps = source.fetch_snapshots("spy", ENTRY, ENTRY, 7, 45)
        assert [s.strike for s in snaps] == [450.0, 460.0]
        assert all(s.option_type == OptionType.PUT for s in snaps)

        later = source.fetch_snapshots("SPY", ENTRY, ENTRY + timedelta(days=10), 28, 29)
        assert [s.snapshot_date for s in later] == [ENTRY + timedelta(days=1), ENTRY + timedelta(days=2)]

    def test_price_history_is_strictly_after_entry(self, populated_db):
        source = HistoricalOptionsData(populated_db)
        entry = source.fetch_snapshots("SPY", ENTRY, ENTRY, 0, 60)[0]
        history = source.price_history(entry)
        assert [p.mark for p in history] == [0.90, 0.70, 0.48]
        assert all(p.date > ENTRY for p in history)

    def test_price_history_uses_midpoint_without_mark(self, db_path):
        insert_snapshots([
            _contract_day(0, 1.00),
            _contract_day(1, None, bid=0.80, ask=0.90),
        ], path=db_path)
        source = HistoricalOptionsData(db_path)
        entry = source.fetch_snapshots("SPY", ENTRY, ENTRY, 0, 60)[0]
        assert source.price_history(entry)[0].mark == pytest.approx(0.85)

    def test_available_symbols(self, populated_db):
        source = HistoricalOptionsData(populated_db)
        assert source.available_symbols(ENTRY, ENTRY) == ["QQQ", "SPY"]
        assert source.available_symbols(date(2023, 1, 1), date(2023, 2, 1)) == []

    def test_invalid_rows_skipped(self, db_path):
        bad = _contract_day(0, 1.00, strike=470.0)
        bad["option_type"] = "straddle"
        insert_snapshots([_contract_day(0, 1.00), bad], path=db_path)
        source = HistoricalOptionsData(db_path)
        snaps = source.fetch_snapshots("SPY", ENTRY, ENTRY, 0, 60)
        assert len(snaps) == 1
        assert source.get_stats()["skipped_rows"] == 1

    def test_query_error_wrapped(self, tmp_path):
        # database file without the expected tables
        source = HistoricalOptionsData(str(tmp_path / "empty.db"))
        with pytest.raises(DataFetchError):
            source.fetch_snapshots("SPY", ENTRY, ENTRY, 0, 60)


class TestSentiment:

    @pytest.mark.parametrize("score,label", [
        (-0.5, "Bearish"),
        (-0.2, "Somewhat-Bearish"),
        (0.0, "Neutral"),
        (0.2, "Somewhat-Bullish"),
        (0.5, "Bullish"),
    ])
    def test_labels(self, score, label):
        assert sentiment_label(score) == label

    def test_article_weighted_reading(self, db_path):
        insert_sentiment("SPY", "2024-01-01", 0.4, "Bullish", 3, ["earnings"], ["Beat"], path=db_path)
        insert_sentiment("SPY", "2024-01-02", 0.0, "Neutral", 1, ["macro", "earnings"], path=db_path)
        reading = NewsSentimentData(db_path).sentiment_for("SPY", ENTRY)
        assert reading["score"] == pytest.approx(0.3)
        assert reading["label"] == "Somewhat-Bullish"
        assert reading["article_count"] == 4
        assert reading["top_topics"] == ["macro", "earnings"]
        assert reading["headlines"] == ["Beat"]

    def test_ignores_news_after_as_of(self, db_path):
        insert_sentiment("SPY", "2024-01-03", -0.9, "Bearish", 50, path=db_path)
        assert NewsSentimentData(db_path).sentiment_for("SPY", ENTRY) is None

    def test_ignores_news_before_lookback(self, db_path):
        insert_sentiment("SPY", "2023-12-01", 0.5, "Bullish", 5, path=db_path)
        assert NewsSentimentData(db_path, lookback_days=7).sentiment_for("SPY", ENTRY) is None

    def test_headlines_deduplicated(self, db_path):
        insert_sentiment("SPY", "2024-01-01", 0.2, "Somewhat-Bullish", 2, ["earnings"], ["Beat", "Guide up"], path=db_path)
        insert_sentiment("SPY", "2024-01-02", 0.2, "Somewhat-Bullish", 2, ["earnings"], ["Beat"], path=db_path)
        reading = NewsSentimentData(db_path).sentiment_for("SPY", ENTRY)
        assert reading["headlines"] == ["Beat", "Guide up"]
        assert reading["top_topics"] == ["earnings"]
