"""Tests for shared.database against a real SQLite file in tmp_path."""

import sqlite3
from datetime import date

import pytest

from backtest.models import BacktestConfig
from shared.database import (
    SQLitePersistenceSink,
    get_results,
    get_run,
    get_trade_matches,
    init_db,
    insert_closed_trade,
    insert_sentiment,
    insert_snapshots,
)
from shared.exceptions import PersistenceError

from conftest import make_match, make_snapshot, snapshot_row


# ---------------------------------------------------------------------------
# TestInitDb
# ---------------------------------------------------------------------------


class TestInitDb:
    """Database initialisation creates tables and is idempotent."""

    def test_creates_tables(self, tmp_path):
        db_path = str(tmp_path / "test.db")
        init_db(path=db_path)

        conn = sqlite3.connect(db_path)
        tables = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        conn.close()

        assert {
            "historical_options_data",
            "news_sentiment",
            "closed_trades",
            "backtest_runs",
            "backtest_trade_matches",
            "backtest_results",
        } <= tables

    def test_idempotent(self, tmp_path):
        db_path = str(tmp_path / "test.db")
        init_db(path=db_path)
        init_db(path=db_path)  # second call should not raise


# ---------------------------------------------------------------------------
# TestInputs
# ---------------------------------------------------------------------------


class TestInputs:

    def test_insert_snapshots_replaces_duplicates(self, db_path):
        row = snapshot_row(make_snapshot())
        assert insert_snapshots([row, row], path=db_path) == 2

        conn = sqlite3.connect(db_path)
        count = conn.execute("SELECT COUNT(*) FROM historical_options_data").fetchone()[0]
        conn.close()
        assert count == 1

    def test_insert_sentiment_and_closed_trade(self, db_path):
        insert_sentiment("spy", "2024-01-02", 0.3, "Somewhat-Bullish", 4, ["earnings"], path=db_path)
        insert_closed_trade({
            "id": "t1", "symbol": "SPY", "strategy_type": "put-credit-spreads",
            "entry_date": date(2023, 12, 1), "close_date": date(2023, 12, 20),
            "realized_pnl": 50.0, "realized_roi": 12.5, "delta": 0.15, "iv": 0.2,
            "dte": 30, "credit": 1.0,
        }, path=db_path)

        conn = sqlite3.connect(db_path)
        symbol = conn.execute("SELECT symbol FROM news_sentiment").fetchone()[0]
        close_date = conn.execute("SELECT close_date FROM closed_trades").fetchone()[0]
        conn.close()
        assert symbol == "SPY"
        assert close_date == "2023-12-20"


# ---------------------------------------------------------------------------
# TestPersistenceSink
# ---------------------------------------------------------------------------


class TestPersistenceSink:

    def _config(self, backtest_config_dict):
        return BacktestConfig.from_dict(backtest_config_dict)

    def test_run_lifecycle(self, tmp_path, backtest_config_dict):
        db_path = str(tmp_path / "sink.db")
        sink = SQLitePersistenceSink(db_path)
        run_id = sink.create_run(self._config(backtest_config_dict))

        run = get_run(run_id, path=db_path)
        assert run["status"] == "pending"
        assert run["config"]["ips_id"] == "ips-1"

        sink.update_run_status(run_id, "running")
        assert get_run(run_id, path=db_path)["started_at"] is not None

        sink.update_run_status(run_id, "completed", totals={
            "total_trades": 10, "trades_passed": 4, "trades_matched": 3, "pass_rate": 40.0,
        })
        run = get_run(run_id, path=db_path)
        assert run["status"] == "completed"
        assert run["trades_passed"] == 4
        assert run["completed_at"] is not None

    def test_failure_keeps_error_message(self, tmp_path, backtest_config_dict):
        db_path = str(tmp_path / "sink.db")
        sink = SQLitePersistenceSink(db_path)
        run_id = sink.create_run(self._config(backtest_config_dict))
        sink.update_run_status(run_id, "failed", error="boom")
        assert get_run(run_id, path=db_path)["error_message"] == "boom"

    def test_trade_matches_batched_and_idempotent(self, tmp_path, backtest_config_dict):
        db_path = str(tmp_path / "sink.db")
        sink = SQLitePersistenceSink(db_path, batch_size=2)
        run_id = sink.create_run(self._config(backtest_config_dict))
        records = [
            make_match(date(2024, 1, d), pnl=10.0 * d, trade_id=f"t{d}").to_record(run_id)
            for d in range(2, 7)
        ]

        sink.insert_trade_matches(run_id, records)
        sink.insert_trade_matches(run_id, records)

        stored = get_trade_matches(run_id, path=db_path)
        assert len(stored) == 5
        assert [s["trade_id"] for s in stored] == ["t2", "t3", "t4", "t5", "t6"]
        assert stored[0]["entry_date"] == "2024-01-02"

    def test_matched_only_filter(self, tmp_path, backtest_config_dict):
        db_path = str(tmp_path / "sink.db")
        sink = SQLitePersistenceSink(db_path)
        run_id = sink.create_run(self._config(backtest_config_dict))
        taken = make_match(date(2024, 1, 2), trade_id="yes")
        skipped = make_match(date(2024, 1, 3), trade_id="no", would_take_trade=False)
        sink.insert_trade_matches(run_id, [taken.to_record(run_id), skipped.to_record(run_id)])

        stored = get_trade_matches(run_id, matched_only=True, path=db_path)
        assert [s["trade_id"] for s in stored] == ["yes"]

    def test_results_round_trip(self, tmp_path, backtest_config_dict):
        db_path = str(tmp_path / "sink.db")
        sink = SQLitePersistenceSink(db_path)
        run_id = sink.create_run(self._config(backtest_config_dict))
        sink.insert_results(run_id, {"total_trades": 3, "sharpe_ratio": None})
        sink.insert_results(run_id, {"total_trades": 4, "sharpe_ratio": 0.5})
        assert get_results(run_id, path=db_path) == {"total_trades": 4, "sharpe_ratio": 0.5}

    def test_missing_run_returns_none(self, db_path):
        assert get_run("nope", path=db_path) is None
        assert get_results("nope", path=db_path) is None

    def test_unknown_run_id_raises_persistence_error(self, tmp_path):
        sink = SQLitePersistenceSink(str(tmp_path / "sink.db"))
        record = make_match(date(2024, 1, 2)).to_record("missing-run")
        with pytest.raises(PersistenceError):
            sink.insert_trade_matches("missing-run", [record])

    def test_discard_run_outputs_keeps_run_row(self, tmp_path, backtest_config_dict):
        db_path = str(tmp_path / "sink.db")
        sink = SQLitePersistenceSink(db_path)
        run_id = sink.create_run(self._config(backtest_config_dict))
        sink.insert_trade_matches(run_id, [make_match(date(2024, 1, 2)).to_record(run_id)])
        sink.insert_results(run_id, {"total_trades": 1})

        sink.discard_run_outputs(run_id)

        assert get_trade_matches(run_id, path=db_path) == []
        assert get_results(run_id, path=db_path) is None
        assert get_run(run_id, path=db_path)["status"] == "pending"
