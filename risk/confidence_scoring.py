"""
risk/confidence_scoring.py

Multi-factor confidence scoring.

Aggregates up to fifteen weighted factors into a 0-100 score with a per-factor
breakdown and a letter grade. Each factor maps its raw value into
[0, weight]; a missing factor contributes 0. The scorer never blocks: the guard
pipeline applies the threshold.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from config import GateConfig
from core.contracts import (
    ConfidenceResult,
    CorrelationRisk,
    CrowdTrap,
    ExitClarity,
    FactorBundle,
    GammaCluster,
    MtfAlignment,
    Regime,
    RegimeCompatibility,
    Signal,
    SignalType,
    ThetaFactor,
)
from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

FACTOR_NAMES = (
    "mtf",
    "breadth",
    "rs",
    "gamma",
    "theta",
    "oi_velocity",
    "regime",
    "liquidity",
    "correlation",
    "time_of_day",
    "execution_safety",
    "regime_alignment",
    "correlation_risk",
    "crowd_trap",
    "exit_clarity",
)

GRADE_BANDS: Tuple[Tuple[float, str], ...] = (
    (85, "A+"),
    (75, "A"),
    (65, "B+"),
    (55, "B"),
    (45, "C"),
    (35, "D"),
)


def grade_for(score: float) -> str:
    for floor, grade in GRADE_BANDS:
        if score >= floor:
            return grade
    return "F"


def validate_weights(weights: Dict[str, float]) -> Dict[str, float]:
    """Weights must cover known factors only, be non-negative and sum to 100."""
    unknown = sorted(set(weights) - set(FACTOR_NAMES))
    if unknown:
        raise ConfigurationError(
            code="UNKNOWN_CONFIDENCE_FACTOR",
            message=f"Unknown confidence factors: {unknown}",
            context={"unknown": unknown},
        )
    cleaned = {name: float(weights.get(name, 0.0)) for name in FACTOR_NAMES}
    negative = [name for name, w in cleaned.items() if w < 0 or not math.isfinite(w)]
    if negative:
        raise ConfigurationError(
            code="INVALID_CONFIDENCE_WEIGHT",
            message=f"Confidence weights must be finite and non-negative: {negative}",
            context={"factors": negative},
        )
    total = sum(cleaned.values())
    if abs(total - 100.0) > 1e-6:
        raise ConfigurationError(
            code="CONFIDENCE_WEIGHTS_SUM",
            message=f"Confidence weights must sum to 100 (got {total:g})",
            context={"total": total},
        )
    return cleaned


@dataclass
class ConfidenceConfig:
    weights: Dict[str, float] = field(default_factory=lambda: dict(GateConfig.CONFIDENCE_WEIGHTS))
    min_score: float = field(default_factory=lambda: GateConfig.CONFIDENCE_MIN_SCORE)
    strong_min_score: float = field(default_factory=lambda: GateConfig.CONFIDENCE_STRONG_MIN_SCORE)
    history_size: int = field(default_factory=lambda: GateConfig.CONFIDENCE_HISTORY_SIZE)
    max_tracked_tokens: int = field(default_factory=lambda: GateConfig.CONFIDENCE_MAX_TRACKED_TOKENS)

    def __post_init__(self):
        self.weights = validate_weights(self.weights)


# ═══════════════════════════════════════════════════════════════════════════
# SUB-SCORERS (raw value -> [0, weight])
# ═══════════════════════════════════════════════════════════════════════════

def score_mtf(mtf: MtfAlignment, weight: float) -> float:
    aligned = sum(1 for flag in (mtf.aligned_5m, mtf.aligned_15m, mtf.aligned_daily) if flag)
    return weight * aligned / 3


def score_breadth(breadth: float, weight: float) -> float:
    if breadth >= 70:
        return weight
    if breadth >= 55:
        return weight * 0.8
    if breadth >= 45:
        return weight * 0.5
    if breadth >= 35:
        return weight * 0.3
    return 0.0


def score_rs(rs: float, weight: float) -> float:
    if rs >= 2:
        return weight
    if rs >= 1:
        return weight * 0.8
    if rs >= 0:
        return weight * 0.5
    if rs >= -1:
        return weight * 0.3
    return 0.0


def score_gamma(gamma: GammaCluster, weight: float) -> float:
    if gamma.detected and gamma.strength >= 80:
        return weight
    if gamma.detected and gamma.strength >= 60:
        return weight * 0.7
    if gamma.strength >= 40:
        return weight * 0.4
    return weight * 0.2


def score_theta(theta: ThetaFactor, weight: float) -> float:
    if (theta.moneyness or "").upper() == "DEEP_OTM":
        return 0.0
    if theta.momentum >= 20:
        return weight
    if theta.momentum >= 10:
        return weight * 0.7
    if theta.momentum >= 0:
        return weight * 0.4
    return 0.0


def score_oi_velocity(velocity: float, weight: float) -> float:
    if velocity >= 10:
        return weight
    if velocity >= 5:
        return weight * 0.7
    if velocity >= 0:
        return weight * 0.4
    return weight * 0.2


def score_regime(regime: Regime, weight: float) -> float:
    if regime == Regime.TREND_DAY:
        return weight
    if regime == Regime.EXPANSION:
        return weight * 0.8
    if regime == Regime.COMPRESSION:
        return weight * 0.2
    if regime == Regime.PANIC_DAY:
        return 0.0
    return weight * 0.5


def score_liquidity(tier: int, weight: float) -> float:
    if tier == 1:
        return weight
    if tier == 2:
        return weight * 0.5
    return 0.0


def score_correlation(correlation: float, divergence: Optional[float], weight: float) -> float:
    if correlation >= 0.7 and abs(divergence or 0.0) >= 1:
        return weight
    if correlation >= 0.5:
        return weight * 0.6
    if correlation <= 0.3:
        return 0.0
    return weight * 0.4


_TIME_OF_DAY_FACTORS = {
    "NORMAL": 1.0,
    "OPENING_STRICT": 0.6,
    "CLOSING_CAUTIOUS": 0.5,
    "LUNCH_DRIFT": 0.4,
}


def score_time_of_day(mode: str, weight: float) -> float:
    return weight * _TIME_OF_DAY_FACTORS.get(mode.upper(), 0.5)


def score_execution_safety(slippage_risk: float, weight: float) -> float:
    if slippage_risk <= 20:
        return weight
    if slippage_risk <= 40:
        return weight * 0.75
    if slippage_risk <= 60:
        return weight * 0.5
    if slippage_risk <= 80:
        return weight * 0.25
    return 0.0


def score_regime_alignment(compatibility: RegimeCompatibility, weight: float) -> float:
    if not compatibility.compatible:
        return 0.0
    if not compatibility.warnings:
        return weight
    if len(compatibility.warnings) == 1:
        return weight * 0.7
    return weight * 0.4


def score_correlation_risk(risk: CorrelationRisk, weight: float) -> float:
    if not risk.high_risk:
        return weight
    if risk.correlated_count == 1:
        return weight * 0.5
    return 0.0


def score_crowd_trap(trap: CrowdTrap, weight: float) -> float:
    if not trap.flagged:
        return weight
    if trap.score <= 30:
        return weight * 0.7
    if trap.score <= 50:
        return weight * 0.4
    return 0.0


def score_exit_clarity(clarity: ExitClarity, weight: float) -> float:
    score = 0.0
    if clarity.structural:
        score += weight * 0.4
    if clarity.trailing:
        score += weight * 0.3
    if clarity.regime:
        score += weight * 0.3
    return score


# ═══════════════════════════════════════════════════════════════════════════
# SCORER
# ═══════════════════════════════════════════════════════════════════════════

class ConfidenceScorer:
    """
    Weighted confidence scoring with bounded per-token history.

    At most `max_tracked_tokens` tokens keep a history; the least recently
    scored token is evicted first.
    """

    def __init__(
        self,
        config: Optional[ConfidenceConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ConfidenceConfig()
        self._clock = clock
        self._lock = threading.RLock()
        # least recently scored token first
        self._history: OrderedDict[str, Deque[Tuple[datetime, float]]] = OrderedDict()
        self._scored = 0

    @property
    def weights(self) -> Dict[str, float]:
        return dict(self.config.weights)

    def score(
        self,
        signal: Signal,
        factors: Optional[FactorBundle] = None,
        regime: Optional[Regime] = None,
        compatibility: Optional[RegimeCompatibility] = None,
        correlation_risk: Optional[CorrelationRisk] = None,
        min_confidence: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ConfidenceResult:
        """
        Score a signal.

        Args:
            signal: Candidate signal (its own factor bundle is used when
                `factors` is not given)
            regime: Current regime, scored by the regime factor
            compatibility: Regime compatibility of the signal
            correlation_risk: Portfolio correlation exposure of the signal
            min_confidence: Regime minimum confidence, raises the threshold

        Returns:
            ConfidenceResult with breakdown, grade and threshold verdict
        """
        now = now or self._clock()
        factors = factors or signal.factors or FactorBundle()
        with self._lock:
            w = self.config.weights
            raw: Dict[str, Any] = {
                "mtf": factors.mtf,
                "breadth": factors.breadth,
                "rs": factors.relative_strength,
                "gamma": factors.gamma,
                "theta": factors.theta,
                "oi_velocity": factors.oi_velocity,
                "regime": regime,
                "liquidity": factors.liquidity_tier,
                "correlation": factors.correlation,
                "time_of_day": factors.time_of_day,
                "execution_safety": factors.slippage_risk,
                "regime_alignment": compatibility,
                "correlation_risk": correlation_risk,
                "crowd_trap": factors.crowd_trap,
                "exit_clarity": factors.exit_clarity,
            }
            breakdown: Dict[str, float] = {}
            missing: List[str] = []
            for name in FACTOR_NAMES:
                value = raw[name]
                if value is None:
                    missing.append(name)
                    continue
                breakdown[name] = round(self._score_factor(name, value, factors, w[name]), 4)

            total = round(min(100.0, sum(breakdown.values())), 2)
            threshold = self.threshold_for(signal.signal_type, min_confidence)
            result = ConfidenceResult(
                token=signal.token,
                score=total,
                grade=grade_for(total),
                breakdown=breakdown,
                threshold=threshold,
                meets_minimum=total >= threshold,
                missing=missing,
                computed_at=now,
            )

            history = self._history.get(signal.token)
            if history is None:
                history = deque(maxlen=self.config.history_size)
                self._history[signal.token] = history
            else:
                self._history.move_to_end(signal.token)
            history.append((now, total))
            while len(self._history) > self.config.max_tracked_tokens:
                self._history.popitem(last=False)
            self._scored += 1

        logger.debug(
            f"Confidence {signal.token}: {total:.1f} ({result.grade}) "
            f"threshold={threshold:.0f} missing={missing}"
        )
        return result

    @staticmethod
    def _score_factor(name: str, value: Any, factors: FactorBundle, weight: float) -> float:
        if name == "mtf":
            return score_mtf(value, weight)
        if name == "breadth":
            return score_breadth(float(value), weight)
        if name == "rs":
            return score_rs(float(value), weight)
        if name == "gamma":
            return score_gamma(value, weight)
        if name == "theta":
            return score_theta(value, weight)
        if name == "oi_velocity":
            return score_oi_velocity(float(value), weight)
        if name == "regime":
            return score_regime(value, weight)
        if name == "liquidity":
            return score_liquidity(int(value), weight)
        if name == "correlation":
            return score_correlation(float(value), factors.divergence, weight)
        if name == "time_of_day":
            return score_time_of_day(str(value), weight)
        if name == "execution_safety":
            return score_execution_safety(float(value), weight)
        if name == "regime_alignment":
            return score_regime_alignment(value, weight)
        if name == "correlation_risk":
            return score_correlation_risk(value, weight)
        if name == "crowd_trap":
            return score_crowd_trap(value, weight)
        return score_exit_clarity(value, weight)

    # ── thresholds ─────────────────────────────────────────────────────────

    def get_minimum_score(self, signal_type: SignalType) -> float:
        if signal_type.is_strong:
            return self.config.strong_min_score
        return self.config.min_score

    def threshold_for(self, signal_type: SignalType, min_confidence: Optional[float] = None) -> float:
        """Strength-class floor, raised to the regime's minimum confidence."""
        floor = self.get_minimum_score(signal_type)
        if min_confidence is not None:
            floor = max(floor, float(min_confidence))
        return floor

    def meets_threshold(
        self,
        score: float,
        signal_type: SignalType,
        min_confidence: Optional[float] = None,
    ) -> Dict[str, Any]:
        minimum = self.threshold_for(signal_type, min_confidence)
        return {
            "meets": score >= minimum,
            "min_required": minimum,
            "grade": grade_for(score),
            "gap": round(score - minimum, 2),
        }

    def update_weights(self, weights: Dict[str, float]):
        """Replace factor weights (merged over the current ones, re-validated)."""
        with self._lock:
            merged = dict(self.config.weights)
            merged.update(weights)
            self.config.weights = validate_weights(merged)
        logger.info(f"Confidence weights updated: {self.config.weights}")

    def update_thresholds(self, minimum: Optional[float] = None, strong: Optional[float] = None):
        with self._lock:
            if minimum is not None:
                self.config.min_score = float(minimum)
            if strong is not None:
                self.config.strong_min_score = float(strong)
        logger.info(
            f"Confidence thresholds updated: min={self.config.min_score}, strong={self.config.strong_min_score}"
        )

    # ── analytics ──────────────────────────────────────────────────────────

    def get_history(self, token: str) -> List[Tuple[datetime, float]]:
        with self._lock:
            return list(self._history.get(token, ()))

    def get_grade_distribution(self) -> Dict[str, int]:
        distribution = {grade: 0 for _, grade in GRADE_BANDS}
        distribution["F"] = 0
        with self._lock:
            for history in self._history.values():
                for _, score in history:
                    distribution[grade_for(score)] += 1
        return distribution

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            scores = [score for history in self._history.values() for _, score in history]
            return {
                "signals_scored": self._scored,
                "tracked_tokens": len(self._history),
                "average_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
                "grade_distribution": self.get_grade_distribution(),
                "min_score": self.config.min_score,
                "strong_min_score": self.config.strong_min_score,
                "weights": dict(self.config.weights),
            }

    def reset_daily(self):
        with self._lock:
            self._history.clear()
            self._scored = 0
