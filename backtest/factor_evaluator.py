"""
Factor Evaluator
Scores one historical option snapshot against the IPS factor list.

Every enabled factor produces a continuous score in [0, 100] plus a
``target_met`` flag.  Met targets always score at least 70; the trade passes
only when every enabled factor is met, regardless of weights.
"""

import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from backtest.models import FactorEvaluation, FactorOperator, FactorScore, IPSFactor, OptionSnapshot
from shared.constants import EQ_TOLERANCE_BANDS, MET_SCORE_FLOOR
from shared.exceptions import ConfigError
from shared.types import SentimentReading

logger = logging.getLogger(__name__)

FactorValueMap = Dict[str, Optional[float]]


def clamp(score: float) -> float:
    """Clamp to [0, 100]; non-finite scores collapse to 0."""
    if score is None or not math.isfinite(score):
        return 0.0
    return max(0.0, min(100.0, score))


def _score_gte(value: float, target: float) -> Tuple[float, bool]:
    if value >= target:
        excess = (value - target) / max(target, 1)
        return clamp(MET_SCORE_FLOOR + excess * 30), True
    if target == 0:
        return 0.0, False
    # Unmet targets never outrank met ones.
    return min(clamp(value / target * 100), MET_SCORE_FLOOR), False


def _score_lte(value: float, target: float) -> Tuple[float, bool]:
    if value <= target:
        savings = (target - value) / max(target, 1)
        return clamp(MET_SCORE_FLOOR + savings * 30), True
    excess = (value - target) / max(target, 1)
    return clamp(MET_SCORE_FLOOR - excess * 70), False


def _score_eq(value: float, target: float) -> Tuple[float, bool]:
    error = abs(value - target) / max(abs(target), 1)
    for band, score in EQ_TOLERANCE_BANDS:
        if error <= band:
            return score, band == EQ_TOLERANCE_BANDS[0][0]
    return clamp(50 - error * 50), False


def _score_range(value: float, low: float, high: float) -> Tuple[float, bool]:
    if low <= value <= high:
        size = high - low
        if size == 0:
            return 100.0, True
        position = (value - low) / size
        return clamp(MET_SCORE_FLOOR + (1 - abs(position - 0.5) * 2) * 30), True
    if value < low:
        distance = (low - value) / max(low, 1)
    else:
        distance = (value - high) / max(high, 1)
    return clamp(MET_SCORE_FLOOR - distance * 70), False


def score_factor(factor: IPSFactor, value: float) -> Tuple[float, bool]:
    """Return ``(individual_score, target_met)`` for one present value."""
    if factor.operator == FactorOperator.GTE:
        return _score_gte(value, factor.target)
    if factor.operator == FactorOperator.LTE:
        return _score_lte(value, factor.target)
    if factor.operator == FactorOperator.EQ:
        return _score_eq(value, factor.target)
    return _score_range(value, factor.target, factor.target_max)


def _describe(factor: IPSFactor, value: float, met: bool) -> str:
    if factor.operator == FactorOperator.RANGE:
        inside = "within" if met else "outside"
        return f"{value:g} {inside} [{factor.target:g}, {factor.target_max:g}]"
    symbols = {
        FactorOperator.GTE: (">=", "<"),
        FactorOperator.LTE: ("<=", ">"),
        FactorOperator.EQ: ("~=", "!="),
    }[factor.operator]
    return f"{value:g} {symbols[0] if met else symbols[1]} {factor.target:g}"


def evaluate_factors(factors: Iterable[IPSFactor], values: Mapping[str, Optional[float]]) -> FactorEvaluation:
    """
    Evaluate a value map against the enabled IPS factors.

    Args:
        factors: IPS factor list (disabled factors are ignored)
        values: Factor key -> numeric value; missing or None means no data

    Returns:
        FactorEvaluation with the weighted percentage score, the all-or-nothing
        pass flag, the per-factor breakdown and the failing factor keys.
    """
    factor_scores: Dict[str, FactorScore] = {}
    failing: List[str] = []
    total_weight = 0.0
    weighted_sum = 0.0

    enabled = [f for f in factors if f.enabled]
    for factor in enabled:
        raw = values.get(factor.key)
        value = _as_number(raw)
        total_weight += factor.weight

        if value is None:
            factor_scores[factor.key] = FactorScore(
                key=factor.key, value=None, weight=factor.weight,
                individual_score=0.0, weighted_score=0.0,
                target_met=False, reason="No data available",
            )
            failing.append(factor.key)
            continue

        individual, met = score_factor(factor, value)
        weighted = individual * factor.weight / 100
        weighted_sum += weighted
        factor_scores[factor.key] = FactorScore(
            key=factor.key, value=value, weight=factor.weight,
            individual_score=individual, weighted_score=weighted,
            target_met=met, reason=_describe(factor, value, met),
        )
        if not met:
            failing.append(factor.key)

    score = (weighted_sum / total_weight) * 100 if total_weight > 0 else 0.0
    return FactorEvaluation(
        score=score,
        passed=not failing,
        factor_scores=factor_scores,
        failing_factors=failing,
    )


def _as_number(raw) -> Optional[float]:
    if raw is None or raw == "" or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def build_factor_values(
    snapshot: OptionSnapshot, sentiment: Optional[SentimentReading] = None,
) -> FactorValueMap:
    """Factor value map for one snapshot, using only data known on its date."""
    abs_delta = abs(snapshot.delta) if snapshot.delta is not None else None
    values: FactorValueMap = {
        "delta": abs_delta,
        "option_delta": abs_delta,
        "delta_max": abs_delta,
        "implied_volatility": snapshot.implied_volatility,
        "iv": snapshot.implied_volatility,
        "dte": snapshot.dte,
        "days_to_expiration": snapshot.dte,
        "option_premium": snapshot.premium,
        "theta": snapshot.theta,
        "vega": snapshot.vega,
        "gamma": snapshot.gamma,
        "rho": snapshot.rho,
        "open_interest": snapshot.open_interest,
        "volume": snapshot.volume,
    }
    if sentiment:
        values["sentiment_score"] = sentiment.get("score")
        values["article_count"] = sentiment.get("article_count")
    return values


class FactorEvaluator:
    """Binds an IPS factor list so the orchestrator can score many snapshots."""

    def __init__(self, factors: Iterable[IPSFactor]):
        self.factors = tuple(factors)
        if not any(f.enabled for f in self.factors):
            raise ConfigError("IPS has no enabled factors")
        logger.debug("FactorEvaluator initialized with %d factors", len(self.factors))

    def evaluate(
        self, snapshot: OptionSnapshot, sentiment: Optional[SentimentReading] = None,
    ) -> FactorEvaluation:
        return evaluate_factors(self.factors, build_factor_values(snapshot, sentiment))
