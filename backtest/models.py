"""
Data types for the IPS backtesting engine.

Historical facts (IPS factors, option snapshots, price points) are frozen
dataclasses validated once at the data-source boundary.  ``TradeMatch`` is the
only mutable record: it is filled in exactly twice, first with the simulated
outcome and then by the portfolio pass, and is persisted afterwards.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from shared.constants import (
    CONTRACT_MULTIPLIER,
    DAYS_PER_YEAR,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PORTFOLIO_SIZE,
    DEFAULT_PROFIT_TARGET_PCT,
    DEFAULT_RANDOM_SEED,
    DEFAULT_RISK_PER_TRADE,
    DEFAULT_SPREAD_WIDTH,
    DEFAULT_STOP_LOSS_PCT,
)
from shared.exceptions import ConfigError, DataValidationError
from shared.types import EquityPoint


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FactorOperator(str, Enum):
    GTE = "gte"
    LTE = "lte"
    EQ = "eq"
    RANGE = "range"


class OptionType(str, Enum):
    CALL = "call"
    PUT = "put"


class Outcome(str, Enum):
    WIN = "win"
    LOSS = "loss"
    PENDING = "pending"


class ExitReason(str, Enum):
    PROFIT_TARGET = "profit_target"
    STOP_LOSS = "stop_loss"
    EXPIRATION = "expiration"
    SIMULATED_WIN = "simulated_win"
    SIMULATED_LOSS = "simulated_loss"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class Recommendation(str, Enum):
    """AI recommendations, declared weakest first."""
    STRONG_AVOID = "strong_avoid"
    AVOID = "avoid"
    NEUTRAL = "neutral"
    BUY = "buy"
    STRONG_BUY = "strong_buy"

    @property
    def rank(self) -> int:
        return list(Recommendation).index(self)

    def meets(self, threshold: "Recommendation") -> bool:
        return self.rank >= threshold.rank


PUT_CREDIT_SPREAD = "put-credit-spreads"
CALL_CREDIT_SPREAD = "call-credit-spreads"


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def to_date(value: Any) -> date:
    """Coerce a date, datetime or ``YYYY-MM-DD`` string to a ``date``."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.strptime(value[:10], "%Y-%m-%d").date()
        except ValueError:
            pass
    raise DataValidationError(f"Invalid date value: {value!r}")


def _optional_float(row: Mapping, key: str) -> Optional[float]:
    value = row.get(key)
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise DataValidationError(f"Field {key!r} is not numeric: {value!r}")
    if math.isnan(number):
        return None
    return number


def _optional_int(row: Mapping, key: str) -> Optional[int]:
    number = _optional_float(row, key)
    return int(number) if number is not None else None


# ---------------------------------------------------------------------------
# IPS definition
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IPSFactor:
    """One weighted threshold rule of an Investment Policy Statement."""
    key: str
    operator: FactorOperator
    target: Optional[float] = None
    target_max: Optional[float] = None
    weight: float = 1.0
    enabled: bool = True
    name: Optional[str] = None

    def __post_init__(self):
        if self.weight < 0:
            raise ConfigError(f"Factor {self.key!r} has negative weight {self.weight}")
        if self.operator == FactorOperator.RANGE:
            if self.target is None or self.target_max is None:
                raise ConfigError(f"Range factor {self.key!r} needs target and target_max")
            if self.target > self.target_max:
                raise ConfigError(f"Range factor {self.key!r} has target > target_max")
        elif self.target is None:
            raise ConfigError(f"Factor {self.key!r} has no target")

    @classmethod
    def from_dict(cls, data: Mapping) -> "IPSFactor":
        try:
            operator = FactorOperator(str(data["operator"]).lower())
        except KeyError:
            raise ConfigError(f"Factor {data.get('key')!r} is missing an operator")
        except ValueError:
            raise ConfigError(f"Unknown factor operator: {data.get('operator')!r}")
        if not data.get("key"):
            raise ConfigError("Factor is missing a key")
        target_max = data.get("target_max", data.get("targetMax"))
        try:
            return cls(
                key=str(data["key"]),
                operator=operator,
                target=float(data["target"]) if data.get("target") is not None else None,
                target_max=float(target_max) if target_max is not None else None,
                weight=float(data.get("weight", 1.0)),
                enabled=bool(data.get("enabled", True)),
                name=data.get("name"),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Factor {data['key']!r} has a non-numeric setting: {e}") from e


@dataclass(frozen=True)
class ExitStrategy:
    """Exit thresholds as percentages of the entry premium."""
    profit_target_pct: float = DEFAULT_PROFIT_TARGET_PCT
    stop_loss_pct: float = DEFAULT_STOP_LOSS_PCT

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "ExitStrategy":
        data = data or {}
        try:
            return cls(
                profit_target_pct=float(data.get("profit_target_pct", data.get("profit_target", DEFAULT_PROFIT_TARGET_PCT))),
                stop_loss_pct=float(data.get("stop_loss_pct", data.get("stop_loss", DEFAULT_STOP_LOSS_PCT))),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Exit strategy thresholds must be numeric: {e}") from e


@dataclass(frozen=True)
class IPSConfig:
    factors: Tuple[IPSFactor, ...]
    strategies: Tuple[str, ...] = ()
    min_dte: int = 0
    max_dte: int = 365
    exit_strategy: ExitStrategy = field(default_factory=ExitStrategy)

    @property
    def enabled_factors(self) -> List[IPSFactor]:
        return [f for f in self.factors if f.enabled]

    @classmethod
    def from_dict(cls, data: Mapping) -> "IPSConfig":
        factors = tuple(IPSFactor.from_dict(f) for f in data.get("factors") or [])
        try:
            min_dte = int(data.get("min_dte", 0))
            max_dte = int(data.get("max_dte", 365))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"DTE window must be integers: {e}") from e
        if min_dte > max_dte:
            raise ConfigError("min_dte must not exceed max_dte")
        return cls(
            factors=factors,
            strategies=tuple(data.get("strategies") or ()),
            min_dte=min_dte,
            max_dte=max_dte,
            exit_strategy=ExitStrategy.from_dict(data.get("exit_strategies")),
        )


# ---------------------------------------------------------------------------
# Historical data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OptionSnapshot:
    """One option contract as quoted on one historical day."""
    symbol: str
    snapshot_date: date
    expiration_date: date
    strike: float
    option_type: OptionType
    bid: Optional[float] = None
    ask: Optional[float] = None
    mark: Optional[float] = None
    delta: Optional[float] = None
    gamma: Optional[float] = None
    theta: Optional[float] = None
    vega: Optional[float] = None
    rho: Optional[float] = None
    implied_volatility: Optional[float] = None
    open_interest: Optional[int] = None
    volume: Optional[int] = None
    dte: int = 0
    contract_id: str = ""
    underlying_price: Optional[float] = None

    @property
    def premium(self) -> Optional[float]:
        """Mark, or the bid/ask midpoint when no mark was recorded.

        None when the contract was not quoted on this day.
        """
        if self.mark is not None:
            return self.mark
        if self.bid is not None and self.ask is not None:
            return (self.bid + self.ask) / 2
        return None

    @property
    def is_priced(self) -> bool:
        return self.premium is not None

    @property
    def trade_id(self) -> str:
        return self.contract_id or (
            f"{self.symbol}-{self.expiration_date.isoformat()}-"
            f"{self.option_type.value[0].upper()}{self.strike:g}-{self.snapshot_date.isoformat()}"
        )

    @classmethod
    def from_row(cls, row: Mapping) -> "OptionSnapshot":
        """Validate a raw storage row into a snapshot.

        Raises:
            DataValidationError: if a required field is missing or malformed.
        """
        for key in ("symbol", "snapshot_date", "expiration_date", "strike", "option_type"):
            if row.get(key) in (None, ""):
                raise DataValidationError(f"Snapshot row missing {key!r}")
        try:
            option_type = OptionType(str(row["option_type"]).lower())
        except ValueError:
            raise DataValidationError(f"Invalid option_type: {row['option_type']!r}")

        snapshot_date = to_date(row["snapshot_date"])
        expiration_date = to_date(row["expiration_date"])
        if expiration_date < snapshot_date:
            raise DataValidationError(
                f"Expiration {expiration_date} precedes snapshot date {snapshot_date}"
            )
        dte = _optional_int(row, "dte")
        if dte is None:
            dte = (expiration_date - snapshot_date).days

        return cls(
            symbol=str(row["symbol"]).upper(),
            snapshot_date=snapshot_date,
            expiration_date=expiration_date,
            strike=float(row["strike"]),
            option_type=option_type,
            bid=_optional_float(row, "bid"),
            ask=_optional_float(row, "ask"),
            mark=_optional_float(row, "mark"),
            delta=_optional_float(row, "delta"),
            gamma=_optional_float(row, "gamma"),
            theta=_optional_float(row, "theta"),
            vega=_optional_float(row, "vega"),
            rho=_optional_float(row, "rho"),
            implied_volatility=_optional_float(row, "implied_volatility"),
            open_interest=_optional_int(row, "open_interest"),
            volume=_optional_int(row, "volume"),
            dte=dte,
            contract_id=str(row.get("contract_id") or row.get("id") or ""),
            underlying_price=_optional_float(row, "underlying_price"),
        )


@dataclass(frozen=True)
class PricePoint:
    """One day of a contract's subsequent price history."""
    date: date
    mark: float


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def infer_strategy(snapshot: OptionSnapshot) -> str:
    """Map a single contract to the credit spread it would anchor."""
    if snapshot.option_type == OptionType.CALL:
        return CALL_CREDIT_SPREAD
    return PUT_CREDIT_SPREAD


@dataclass(frozen=True)
class TradeCandidate:
    """A snapshot viewed as the short leg of a fixed-width credit spread."""
    snapshot: OptionSnapshot
    strategy_type: str
    spread_width: float = DEFAULT_SPREAD_WIDTH

    @classmethod
    def from_snapshot(cls, snapshot: OptionSnapshot, spread_width: float = DEFAULT_SPREAD_WIDTH) -> "TradeCandidate":
        return cls(snapshot=snapshot, strategy_type=infer_strategy(snapshot), spread_width=spread_width)

    @property
    def symbol(self) -> str:
        return self.snapshot.symbol

    @property
    def entry_date(self) -> date:
        return self.snapshot.snapshot_date

    @property
    def credit(self) -> Optional[float]:
        return self.snapshot.premium

    @property
    def short_strike(self) -> float:
        return self.snapshot.strike

    @property
    def long_strike(self) -> float:
        if self.snapshot.option_type == OptionType.CALL:
            return self.snapshot.strike + self.spread_width
        return self.snapshot.strike - self.spread_width

    @property
    def max_risk(self) -> Optional[float]:
        """Max loss per share: spread width minus credit received."""
        if self.credit is None:
            return None
        return self.spread_width - self.credit

    @property
    def pop(self) -> Optional[float]:
        """Probability of profit approximated as ``1 - |delta|``; None without a delta."""
        if self.snapshot.delta is None:
            return None
        return 1 - abs(self.snapshot.delta)

    def to_dict(self) -> Dict[str, Any]:
        snap = self.snapshot
        return {
            "symbol": snap.symbol,
            "strategy_type": self.strategy_type,
            "short_strike": self.short_strike,
            "long_strike": self.long_strike,
            "expiration_date": snap.expiration_date.isoformat(),
            "contract_type": snap.option_type.value,
            "credit_received": round(self.credit * CONTRACT_MULTIPLIER, 2) if self.credit is not None else None,
            "delta": abs(snap.delta) if snap.delta is not None else None,
            "iv": snap.implied_volatility,
            "dte": snap.dte,
            "estimated_pop": self.pop,
            "current_stock_price": snap.underlying_price,
        }


@dataclass(frozen=True)
class FactorScore:
    key: str
    value: Optional[float]
    weight: float
    individual_score: float
    weighted_score: float
    target_met: bool
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "weight": self.weight,
            "score": round(self.individual_score, 4),
            "weighted_score": round(self.weighted_score, 4),
            "passed": self.target_met,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class FactorEvaluation:
    score: float
    passed: bool
    factor_scores: Dict[str, FactorScore]
    failing_factors: List[str]

    @property
    def factors_passed(self) -> int:
        return sum(1 for s in self.factor_scores.values() if s.target_met)

    @property
    def factors_failed(self) -> int:
        return sum(1 for s in self.factor_scores.values() if not s.target_met)


@dataclass(frozen=True)
class OutcomeResult:
    exit_date: date
    exit_price: float
    realized_pnl: float
    realized_roi: float
    days_held: int
    outcome: Outcome
    exit_reason: ExitReason


@dataclass
class TradeMatch:
    """The evaluated outcome of one trade candidate."""
    trade_id: str
    symbol: str
    entry_date: date
    expiration_date: date
    strike: float
    option_type: OptionType
    strategy_type: str
    delta: Optional[float]
    iv: float
    premium: float
    dte: int

    # IPS evaluation
    ips_score: float
    passed_ips: bool
    factors_passed: int
    factors_failed: int
    factor_scores: Dict[str, Dict[str, Any]]
    failing_factors: List[str]

    # AI evaluation
    ai_recommendation: Optional[str] = None
    ai_score: Optional[float] = None
    ai_confidence: Optional[str] = None
    composite_score: Optional[float] = None
    would_take_trade: bool = False

    # Sentiment at entry
    sentiment_at_entry: Optional[float] = None
    sentiment_label: Optional[str] = None
    article_count: Optional[int] = None
    sentiment_context: Optional[Dict[str, Any]] = None

    # Outcome
    exit_date: Optional[date] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    realized_roi: Optional[float] = None
    days_held: Optional[int] = None
    actual_outcome: Outcome = Outcome.PENDING
    exit_reason: Optional[ExitReason] = None

    # Portfolio pass
    portfolio_value_before: Optional[float] = None
    portfolio_value_after: Optional[float] = None
    position_size: Optional[int] = None
    capital_allocated: Optional[float] = None

    _stage: int = field(default=0, repr=False, compare=False)

    @property
    def is_closed(self) -> bool:
        return self.actual_outcome != Outcome.PENDING

    def apply_outcome(self, result: OutcomeResult) -> None:
        """First and only outcome update."""
        if self._stage != 0:
            raise ValueError(f"Outcome already recorded for trade {self.trade_id}")
        self.exit_date = result.exit_date
        self.exit_price = result.exit_price
        self.realized_pnl = result.realized_pnl
        self.realized_roi = result.realized_roi
        self.days_held = result.days_held
        self.actual_outcome = result.outcome
        self.exit_reason = result.exit_reason
        self._stage = 1

    def apply_portfolio(self, before: float, after: float, contracts: int, allocated: float) -> None:
        """Second and final update, made by the portfolio ledger."""
        if self._stage != 1:
            raise ValueError(f"Trade {self.trade_id} is not ready for the portfolio pass")
        self.portfolio_value_before = before
        self.portfolio_value_after = after
        self.position_size = contracts
        self.capital_allocated = allocated
        self._stage = 2

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("_stage", None)
        for key in ("entry_date", "expiration_date", "exit_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        data["option_type"] = self.option_type.value
        data["actual_outcome"] = self.actual_outcome.value
        data["exit_reason"] = self.exit_reason.value if self.exit_reason else None
        return data

    def to_record(self, run_id: str) -> Dict[str, Any]:
        """Flat row persisted for this trade under *run_id*."""
        record = self.to_dict()
        record["run_id"] = run_id
        return record


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BacktestConfig:
    ips_id: str
    ips_name: str
    ips_config: IPSConfig
    start_date: date
    end_date: date
    symbols: Optional[Tuple[str, ...]] = None
    strategy_filter: Optional[Tuple[str, ...]] = None
    include_sentiment: bool = False
    use_ai_filtering: bool = False
    ai_recommendation_threshold: Recommendation = Recommendation.BUY
    portfolio_size: float = DEFAULT_PORTFOLIO_SIZE
    risk_per_trade: float = DEFAULT_RISK_PER_TRADE
    user_id: Optional[str] = None
    spread_width: float = DEFAULT_SPREAD_WIDTH
    random_seed: int = DEFAULT_RANDOM_SEED
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self):
        if self.start_date > self.end_date:
            raise ConfigError("start_date must not be after end_date")
        if self.portfolio_size <= 0:
            raise ConfigError("portfolio_size must be positive")
        if self.risk_per_trade <= 0 or self.risk_per_trade > 100:
            raise ConfigError("risk_per_trade must be between 0 and 100")
        if self.spread_width <= 0:
            raise ConfigError("spread_width must be positive")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")

    @property
    def years(self) -> float:
        """Wall-clock span of the configured window in years."""
        return (self.end_date - self.start_date).days / DAYS_PER_YEAR

    @classmethod
    def from_dict(cls, data: Mapping) -> "BacktestConfig":
        """Build a config from a plain mapping (YAML section or API payload)."""
        for key in ("ips_id", "ips_config", "start_date", "end_date"):
            if key not in data:
                raise ConfigError(f"Missing required backtest setting: {key}")
        try:
            start_date = to_date(data["start_date"])
            end_date = to_date(data["end_date"])
        except DataValidationError as e:
            raise ConfigError(str(e))
        try:
            threshold = Recommendation(data.get("ai_recommendation_threshold") or Recommendation.BUY.value)
        except ValueError:
            raise ConfigError(
                f"Unknown AI recommendation threshold: {data.get('ai_recommendation_threshold')!r}"
            )

        symbols = data.get("symbols")
        strategy_filter = data.get("strategy_filter")
        try:
            return cls(
                ips_id=str(data["ips_id"]),
                ips_name=str(data.get("ips_name") or data["ips_id"]),
                ips_config=IPSConfig.from_dict(data["ips_config"]),
                start_date=start_date,
                end_date=end_date,
                symbols=tuple(s.upper() for s in symbols) if symbols else None,
                strategy_filter=tuple(strategy_filter) if strategy_filter else None,
                include_sentiment=bool(data.get("include_sentiment", False)),
                use_ai_filtering=bool(data.get("use_ai_filtering", False)),
                ai_recommendation_threshold=threshold,
                portfolio_size=float(data.get("portfolio_size", DEFAULT_PORTFOLIO_SIZE)),
                risk_per_trade=float(data.get("risk_per_trade", DEFAULT_RISK_PER_TRADE)),
                user_id=data.get("user_id"),
                spread_width=float(data.get("spread_width", DEFAULT_SPREAD_WIDTH)),
                random_seed=int(data.get("random_seed", DEFAULT_RANDOM_SEED)),
                max_workers=int(data.get("max_workers", DEFAULT_MAX_WORKERS)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid backtest setting: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ips_id": self.ips_id,
            "ips_name": self.ips_name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "symbols": list(self.symbols) if self.symbols else None,
            "strategy_filter": list(self.strategy_filter) if self.strategy_filter else None,
            "include_sentiment": self.include_sentiment,
            "use_ai_filtering": self.use_ai_filtering,
            "ai_recommendation_threshold": self.ai_recommendation_threshold.value,
            "portfolio_size": self.portfolio_size,
            "risk_per_trade": self.risk_per_trade,
            "user_id": self.user_id,
            "spread_width": self.spread_width,
            "random_seed": self.random_seed,
            "max_workers": self.max_workers,
            "ips_config": {
                "factors": [
                    {
                        "key": f.key,
                        "name": f.name,
                        "operator": f.operator.value,
                        "target": f.target,
                        "target_max": f.target_max,
                        "weight": f.weight,
                        "enabled": f.enabled,
                    }
                    for f in self.ips_config.factors
                ],
                "strategies": list(self.ips_config.strategies),
                "min_dte": self.ips_config.min_dte,
                "max_dte": self.ips_config.max_dte,
                "exit_strategies": {
                    "profit_target_pct": self.ips_config.exit_strategy.profit_target_pct,
                    "stop_loss_pct": self.ips_config.exit_strategy.stop_loss_pct,
                },
            },
        }


# ---------------------------------------------------------------------------
# Portfolio and results
# ---------------------------------------------------------------------------

@dataclass
class PortfolioState:
    """Running totals owned by the ledger for the duration of one replay."""
    starting_value: float
    current_value: float
    peak_value: float
    max_drawdown_pct: float = 0.0
    equity_curve: List[EquityPoint] = field(default_factory=list)

    @classmethod
    def start(cls, portfolio_size: float) -> "PortfolioState":
        return cls(
            starting_value=portfolio_size,
            current_value=portfolio_size,
            peak_value=portfolio_size,
        )

    def record(self, when: date, value: float) -> None:
        self.equity_curve.append({"date": when.isoformat(), "portfolio_value": round(value, 2)})


@dataclass(frozen=True)
class PortfolioSummary:
    starting_portfolio: float
    ending_portfolio: float
    total_return: float
    cagr: float
    portfolio_max_drawdown: float
    equity_curve: List[EquityPoint]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BacktestResults:
    run_id: str
    ips_id: str

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    median_pnl: float = 0.0
    max_win: float = 0.0
    max_loss: float = 0.0
    avg_roi: float = 0.0
    median_roi: float = 0.0
    best_roi: float = 0.0
    worst_roi: float = 0.0
    avg_days_held: Optional[float] = None
    max_win_streak: int = 0
    max_loss_streak: int = 0

    sharpe_ratio: Optional[float] = None
    sortino_ratio: Optional[float] = None
    max_drawdown: Optional[float] = None
    profit_factor: Optional[float] = None

    strategy_performance: Dict[str, Any] = field(default_factory=dict)
    symbol_performance: Dict[str, Any] = field(default_factory=dict)
    monthly_performance: Dict[str, Any] = field(default_factory=dict)
    factor_performance: Dict[str, Any] = field(default_factory=dict)
    sentiment_correlation: Dict[str, Any] = field(default_factory=dict)
    optimal_sentiment_range: Optional[Dict[str, Any]] = None

    starting_portfolio: float = DEFAULT_PORTFOLIO_SIZE
    ending_portfolio: float = DEFAULT_PORTFOLIO_SIZE
    total_return: float = 0.0
    cagr: float = 0.0
    portfolio_max_drawdown: float = 0.0
    equity_curve: List[EquityPoint] = field(default_factory=list)

    trades: List[TradeMatch] = field(default_factory=list)

    def to_dict(self, include_trades: bool = True) -> Dict[str, Any]:
        data = {k: v for k, v in self.__dict__.items() if k != "trades"}
        if include_trades:
            data["trades"] = [t.to_dict() for t in self.trades]
        return data
