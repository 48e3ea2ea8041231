"""Shared constants used across the backtesting engine.

This is the single canonical location for all named constants.
"""

import os

# ---------------------------------------------------------------------------
# Standardized project paths
# Override via IPS_DATA_DIR / IPS_OUTPUT_DIR / IPS_LOGS_DIR env vars.
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.environ.get('IPS_DATA_DIR', os.path.join(PROJECT_ROOT, 'data'))
OUTPUT_DIR = os.environ.get('IPS_OUTPUT_DIR', os.path.join(PROJECT_ROOT, 'output'))
LOGS_DIR = os.environ.get('IPS_LOGS_DIR', os.path.join(PROJECT_ROOT, 'logs'))
CONFIG_PATH = os.path.join(PROJECT_ROOT, 'config.yaml')

# ---------------------------------------------------------------------------
# Credit spread model
# ---------------------------------------------------------------------------
DEFAULT_SPREAD_WIDTH = 5.0       # fixed $5 wide credit spread
CONTRACT_MULTIPLIER = 100

# ---------------------------------------------------------------------------
# Exit strategy defaults (percent of entry premium)
# ---------------------------------------------------------------------------
DEFAULT_PROFIT_TARGET_PCT = 50.0
DEFAULT_STOP_LOSS_PCT = 200.0

# ---------------------------------------------------------------------------
# Portfolio defaults
# ---------------------------------------------------------------------------
DEFAULT_PORTFOLIO_SIZE = 25_000.0
DEFAULT_RISK_PER_TRADE = 2.0     # percent of current portfolio

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
# Flat per-trade ROI hurdle (percent).  Not annualized.
RISK_FREE_RATE_PCT = 2.0
DAYS_PER_YEAR = 365.25

# ---------------------------------------------------------------------------
# Factor scoring
# ---------------------------------------------------------------------------
MET_SCORE_FLOOR = 70.0
EQ_TOLERANCE_BANDS = (
    (0.05, 100.0),
    (0.10, 90.0),
    (0.20, 75.0),
    (0.50, 50.0),
)

# ---------------------------------------------------------------------------
# Time-travel similarity search
# ---------------------------------------------------------------------------
SIMILARITY_THRESHOLD = 0.75
SIMILAR_TRADES_LIMIT = 10
RECENT_TRADES_LIMIT = 10

# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------
DEFAULT_RANDOM_SEED = 42
DEFAULT_MAX_WORKERS = 4
TRADE_MATCH_BATCH_SIZE = 500
