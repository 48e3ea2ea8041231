"""
Shared SQLite database module for the IPS backtester.
Holds historical snapshots, news sentiment, closed trades and backtest runs.
Uses WAL mode so reports can read while a run is writing.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from shared.constants import DATA_DIR, TRADE_MATCH_BATCH_SIZE
from shared.exceptions import PersistenceError
from shared.types import RunTotals

logger = logging.getLogger(__name__)

DB_PATH = Path(DATA_DIR) / "ips_backtest.db"

SNAPSHOT_COLUMNS = (
    "symbol", "snapshot_date", "expiration_date", "strike", "option_type",
    "contract_id", "bid", "ask", "mark", "delta", "gamma", "theta", "vega",
    "rho", "implied_volatility", "open_interest", "volume", "dte",
    "underlying_price",
)

CLOSED_TRADE_COLUMNS = (
    "id", "user_id", "symbol", "strategy_type", "entry_date", "close_date",
    "realized_pnl", "realized_roi", "delta", "iv", "dte", "credit",
)


def get_db(path: Optional[str] = None) -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode enabled."""
    db_path = Path(path) if path else DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: Optional[str] = None) -> None:
    """Create tables if they don't exist."""
    conn = get_db(path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS historical_options_data (
                symbol TEXT NOT NULL,
                snapshot_date TEXT NOT NULL,
                expiration_date TEXT NOT NULL,
                strike REAL NOT NULL,
                option_type TEXT NOT NULL,
                contract_id TEXT,
                bid REAL,
                ask REAL,
                mark REAL,
                delta REAL,
                gamma REAL,
                theta REAL,
                vega REAL,
                rho REAL,
                implied_volatility REAL,
                open_interest INTEGER,
                volume INTEGER,
                dte INTEGER,
                underlying_price REAL,
                PRIMARY KEY (symbol, snapshot_date, expiration_date, strike, option_type)
            );

            CREATE INDEX IF NOT EXISTS idx_hod_symbol_date
                ON historical_options_data (symbol, snapshot_date);

            CREATE TABLE IF NOT EXISTS news_sentiment (
                symbol TEXT NOT NULL,
                published_date TEXT NOT NULL,
                score REAL,
                label TEXT,
                article_count INTEGER,
                top_topics JSON,
                headlines JSON,
                PRIMARY KEY (symbol, published_date)
            );

            CREATE TABLE IF NOT EXISTS closed_trades (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                symbol TEXT NOT NULL,
                strategy_type TEXT,
                entry_date TEXT,
                close_date TEXT NOT NULL,
                realized_pnl REAL,
                realized_roi REAL,
                delta REAL,
                iv REAL,
                dte INTEGER,
                credit REAL
            );

            CREATE INDEX IF NOT EXISTS idx_closed_trades_symbol
                ON closed_trades (symbol, close_date);

            CREATE TABLE IF NOT EXISTS backtest_runs (
                id TEXT PRIMARY KEY,
                ips_id TEXT NOT NULL,
                ips_name TEXT,
                config JSON NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                total_trades INTEGER,
                trades_passed INTEGER,
                trades_matched INTEGER,
                pass_rate REAL,
                error_message TEXT,
                created_at TEXT DEFAULT (datetime('now')),
                started_at TEXT,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS backtest_trade_matches (
                run_id TEXT NOT NULL,
                trade_id TEXT NOT NULL,
                entry_date TEXT NOT NULL,
                symbol TEXT NOT NULL,
                strategy_type TEXT,
                ips_score REAL,
                passed_ips INTEGER,
                would_take_trade INTEGER,
                actual_outcome TEXT,
                realized_pnl REAL,
                realized_roi REAL,
                data JSON NOT NULL,
                PRIMARY KEY (run_id, trade_id, entry_date),
                FOREIGN KEY (run_id) REFERENCES backtest_runs (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS backtest_results (
                run_id TEXT PRIMARY KEY,
                results JSON NOT NULL,
                created_at TEXT DEFAULT (datetime('now')),
                FOREIGN KEY (run_id) REFERENCES backtest_runs (id) ON DELETE CASCADE
            );
        """)
        conn.commit()
        logger.info(f"Database initialized at {path or DB_PATH}")
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Historical inputs
# ---------------------------------------------------------------------------

def insert_snapshots(rows: Iterable[Dict[str, Any]], path: Optional[str] = None) -> int:
    """Insert or replace raw option snapshot rows. Returns rows written."""
    rows = list(rows)
    placeholders = ", ".join("?" for _ in SNAPSHOT_COLUMNS)
    conn = get_db(path)
    try:
        conn.executemany(
            f"INSERT OR REPLACE INTO historical_options_data ({', '.join(SNAPSHOT_COLUMNS)}) "
            f"VALUES ({placeholders})",
            [tuple(_plain(row.get(c)) for c in SNAPSHOT_COLUMNS) for row in rows],
        )
        conn.commit()
    finally:
        conn.close()
    return len(rows)


def insert_sentiment(
    symbol: str,
    published_date: str,
    score: float,
    label: str,
    article_count: int = 0,
    top_topics: Optional[List[str]] = None,
    headlines: Optional[List[str]] = None,
    path: Optional[str] = None,
) -> None:
    """Insert or replace one day of aggregated news sentiment."""
    conn = get_db(path)
    try:
        conn.execute(
            "INSERT OR REPLACE INTO news_sentiment "
            "(symbol, published_date, score, label, article_count, top_topics, headlines) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                symbol.upper(), published_date, score, label, article_count,
                json.dumps(top_topics or []), json.dumps(headlines or []),
            ),
        )
        conn.commit()
    finally:
        conn.close()


def insert_closed_trade(trade: Dict[str, Any], path: Optional[str] = None) -> None:
    """Insert or replace a closed trade used for time-travel lookups."""
    conn = get_db(path)
    try:
        conn.execute(
            f"INSERT OR REPLACE INTO closed_trades ({', '.join(CLOSED_TRADE_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in CLOSED_TRADE_COLUMNS)})",
            tuple(_plain(trade.get(c)) for c in CLOSED_TRADE_COLUMNS),
        )
        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Backtest runs
# ---------------------------------------------------------------------------

def get_run(run_id: str, path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Fetch a backtest run row, with its config decoded."""
    conn = get_db(path)
    try:
        row = conn.execute("SELECT * FROM backtest_runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        run = dict(row)
        run["config"] = _loads(run["config"])
        return run
    finally:
        conn.close()


def get_trade_matches(
    run_id: str,
    matched_only: bool = False,
    path: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Fetch a run's trade matches ordered by entry date."""
    conn = get_db(path)
    try:
        query = "SELECT data FROM backtest_trade_matches WHERE run_id = ?"
        if matched_only:
            query += " AND would_take_trade = 1"
        query += " ORDER BY entry_date, trade_id"
        rows = conn.execute(query, (run_id,)).fetchall()
        return [_loads(r["data"]) for r in rows]
    finally:
        conn.close()


def get_results(run_id: str, path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Fetch the stored results payload for a run."""
    conn = get_db(path)
    try:
        row = conn.execute(
            "SELECT results FROM backtest_results WHERE run_id = ?", (run_id,)
        ).fetchone()
        return _loads(row["results"]) if row else None
    finally:
        conn.close()


class SQLitePersistenceSink:
    """
    Persistence sink writing backtest runs to SQLite.

    Writes are idempotent per run: trade matches are keyed by
    (run_id, trade_id, entry_date) and results by run_id, so replaying a
    run's writes replaces earlier rows instead of duplicating them.
    """

    def __init__(self, path: Optional[str] = None, batch_size: int = TRADE_MATCH_BATCH_SIZE):
        self.path = path
        self.batch_size = batch_size
        init_db(path)

    def create_run(self, config) -> str:
        run_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO backtest_runs (id, ips_id, ips_name, config, status) VALUES (?, ?, ?, ?, ?)",
            [(run_id, config.ips_id, config.ips_name, json.dumps(config.to_dict(), default=str), "pending")],
        )
        logger.info("Created backtest run %s for IPS %s", run_id, config.ips_id)
        return run_id

    def insert_trade_matches(self, run_id: str, records: List[Dict]) -> None:
        rows = [
            (
                run_id,
                r["trade_id"],
                r["entry_date"],
                r["symbol"],
                r.get("strategy_type"),
                r.get("ips_score"),
                int(bool(r.get("passed_ips"))),
                int(bool(r.get("would_take_trade"))),
                r.get("actual_outcome"),
                r.get("realized_pnl"),
                r.get("realized_roi"),
                json.dumps(r, default=str),
            )
            for r in records
        ]
        for start in range(0, len(rows), self.batch_size):
            self._execute(
                "INSERT OR REPLACE INTO backtest_trade_matches "
                "(run_id, trade_id, entry_date, symbol, strategy_type, ips_score, passed_ips, "
                "would_take_trade, actual_outcome, realized_pnl, realized_roi, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows[start:start + self.batch_size],
            )
        logger.debug("Stored %d trade matches for run %s", len(rows), run_id)

    def insert_results(self, run_id: str, result: Dict) -> None:
        self._execute(
            "INSERT OR REPLACE INTO backtest_results (run_id, results) VALUES (?, ?)",
            [(run_id, json.dumps(result, default=str))],
        )

    def discard_run_outputs(self, run_id: str) -> None:
        """Delete the trade matches and results of a run, in one transaction."""
        try:
            conn = get_db(self.path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open backtest database: {e}") from e
        try:
            with conn:
                conn.execute("DELETE FROM backtest_trade_matches WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM backtest_results WHERE run_id = ?", (run_id,))
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()
        logger.info("Discarded partial output of run %s", run_id)

    def update_run_status(
        self,
        run_id: str,
        status: str,
        totals: Optional[RunTotals] = None,
        error: Optional[str] = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        totals = totals or {}
        self._execute(
            """
            UPDATE backtest_runs SET
                status = ?,
                total_trades = COALESCE(?, total_trades),
                trades_passed = COALESCE(?, trades_passed),
                trades_matched = COALESCE(?, trades_matched),
                pass_rate = COALESCE(?, pass_rate),
                error_message = COALESCE(?, error_message),
                started_at = CASE WHEN ? = 'running' THEN ? ELSE started_at END,
                completed_at = CASE WHEN ? IN ('completed', 'failed') THEN ? ELSE completed_at END
            WHERE id = ?
            """,
            [(
                status,
                totals.get("total_trades"),
                totals.get("trades_passed"),
                totals.get("trades_matched"),
                totals.get("pass_rate"),
                error,
                status, now,
                status, now,
                run_id,
            )],
        )

    def _execute(self, sql: str, params: List[tuple]) -> None:
        try:
            conn = get_db(self.path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open backtest database: {e}") from e
        try:
            with conn:
                conn.executemany(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()


def _plain(value: Any) -> Any:
    """SQLite-bindable form of dates and enums."""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def _loads(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupt JSON column value ignored")
        return None
