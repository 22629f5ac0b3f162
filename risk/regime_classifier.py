"""
risk/regime_classifier.py

Adaptive intraday regime classifier:
- ATR slope (5m + 15m)
- opening range width
- VWAP distance
- range expansion versus the opening range
- panic detection (large move, wide range, fast ATR expansion)

Each metric adds points to five category scores; the strictly highest score
wins and ties go to the first category in the configured tie-break order.
The classifier also publishes per-regime dynamic thresholds used by the guard
pipeline.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from config import GateConfig
from core import candles as candle_math
from core.contracts import (
    DynamicThresholds,
    Regime,
    RegimeCompatibility,
    RegimeMetrics,
    RegimeState,
    RegimeTransition,
    SessionData,
)
from core.exceptions import ConfigurationError
from core.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

SCORED_REGIMES = (
    Regime.COMPRESSION,
    Regime.EXPANSION,
    Regime.TREND_DAY,
    Regime.RANGE_DAY,
    Regime.PANIC_DAY,
)


@dataclass
class RegimeConfig:
    update_interval_seconds: float = field(default_factory=lambda: GateConfig.REGIME_UPDATE_INTERVAL_SECONDS)
    min_bars: int = field(default_factory=lambda: GateConfig.REGIME_MIN_BARS)
    history_size: int = field(default_factory=lambda: GateConfig.REGIME_HISTORY_SIZE)
    atr_slope_expansion: float = field(default_factory=lambda: GateConfig.ATR_SLOPE_EXPANSION)
    atr_slope_compression: float = field(default_factory=lambda: GateConfig.ATR_SLOPE_COMPRESSION)
    opening_range_bars: int = field(default_factory=lambda: GateConfig.OPENING_RANGE_BARS)
    narrow_opening_range_pct: float = field(default_factory=lambda: GateConfig.NARROW_OPENING_RANGE_PCT)
    wide_opening_range_pct: float = field(default_factory=lambda: GateConfig.WIDE_OPENING_RANGE_PCT)
    vwap_trend_pct: float = field(default_factory=lambda: GateConfig.VWAP_TREND_PCT)
    vwap_range_pct: float = field(default_factory=lambda: GateConfig.VWAP_RANGE_PCT)
    range_expansion_ratio: float = field(default_factory=lambda: GateConfig.RANGE_EXPANSION_RATIO)
    range_compression_ratio: float = field(default_factory=lambda: GateConfig.RANGE_COMPRESSION_RATIO)
    panic_move_pct: float = field(default_factory=lambda: GateConfig.PANIC_MOVE_PCT)
    panic_range_pct: float = field(default_factory=lambda: GateConfig.PANIC_RANGE_PCT)
    panic_atr_slope: float = field(default_factory=lambda: GateConfig.PANIC_ATR_SLOPE)
    tie_break_order: List[str] = field(default_factory=lambda: list(GateConfig.REGIME_TIE_BREAK_ORDER))
    thresholds: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in GateConfig.REGIME_THRESHOLDS.items()}
    )

    def __post_init__(self):
        order = [str(r).upper() for r in self.tie_break_order]
        expected = {r.value for r in SCORED_REGIMES}
        if set(order) != expected or len(order) != len(expected):
            raise ConfigurationError(
                code="INVALID_TIE_BREAK_ORDER",
                message=f"Tie-break order must list each of {sorted(expected)} exactly once",
                context={"tie_break_order": order},
            )
        self.tie_break_order = order
        if Regime.UNKNOWN.value not in self.thresholds:
            raise ConfigurationError(
                code="MISSING_REGIME_THRESHOLDS",
                message="Regime thresholds must include UNKNOWN",
                context={"regimes": sorted(self.thresholds)},
            )


# ═══════════════════════════════════════════════════════════════════════════
# PURE SCORING
# ═══════════════════════════════════════════════════════════════════════════

def compute_metrics(
    session: SessionData,
    candles_5m: pd.DataFrame,
    candles_15m: pd.DataFrame,
    config: RegimeConfig,
) -> RegimeMetrics:
    """Derive classification metrics from the session levels and candle series."""
    metrics = RegimeMetrics(
        atr_slope_5m=candle_math.atr_slope(candles_5m, config.min_bars),
        atr_slope_15m=candle_math.atr_slope(candles_15m, config.min_bars),
    )

    or_high = or_low = None
    if len(candles_5m) >= config.opening_range_bars:
        opening = candles_5m.iloc[: config.opening_range_bars]
        or_high, or_low = float(opening["high"].max()), float(opening["low"].min())
        if or_low > 0:
            metrics.opening_range_pct = (or_high - or_low) / or_low * 100

    day_high, day_low = session.high, session.low
    if not day_high or not day_low:
        day_high, day_low = candle_math.session_extremes([candles_5m, candles_15m])
    if day_high and day_low and day_low > 0:
        metrics.current_range_pct = (day_high - day_low) / day_low * 100
        if or_high is not None and or_high - or_low > 0:
            metrics.range_expansion = (day_high - day_low) / (or_high - or_low)

    last = session.last
    if not last and len(candles_5m):
        last = float(candles_5m["close"].iloc[-1])
    if session.vwap and session.vwap > 0 and last:
        metrics.vwap_distance_pct = abs(last - session.vwap) / session.vwap * 100

    day_open = session.open
    if not day_open and len(candles_5m):
        day_open = float(candles_5m["open"].iloc[0])
    if day_open and day_open > 0 and last:
        metrics.day_move_pct = abs(last - day_open) / day_open * 100

    return metrics


def score_regimes(metrics: RegimeMetrics, config: RegimeConfig) -> Dict[Regime, float]:
    """Points per scored regime. Metrics that are None contribute nothing."""
    scores = {regime: 0.0 for regime in SCORED_REGIMES}

    # 1. ATR slope
    avg_slope = metrics.avg_atr_slope
    if avg_slope is not None:
        if avg_slope >= config.atr_slope_expansion:
            scores[Regime.EXPANSION] += 30
            scores[Regime.TREND_DAY] += 15
        elif avg_slope <= config.atr_slope_compression:
            scores[Regime.COMPRESSION] += 35
            scores[Regime.RANGE_DAY] += 15
        else:
            scores[Regime.RANGE_DAY] += 10

    # 2. Opening range
    or_pct = metrics.opening_range_pct
    if or_pct is not None and or_pct > 0:
        if or_pct <= config.narrow_opening_range_pct:
            scores[Regime.COMPRESSION] += 25
            scores[Regime.RANGE_DAY] += 10
        elif or_pct >= config.wide_opening_range_pct:
            scores[Regime.EXPANSION] += 20
            scores[Regime.TREND_DAY] += 15

    # 3. VWAP distance
    vwap_dist = metrics.vwap_distance_pct
    if vwap_dist is not None:
        if vwap_dist >= config.vwap_trend_pct:
            scores[Regime.TREND_DAY] += 25
            scores[Regime.EXPANSION] += 10
        elif vwap_dist <= config.vwap_range_pct:
            scores[Regime.RANGE_DAY] += 25
            scores[Regime.COMPRESSION] += 10

    # 4. Range expansion
    expansion = metrics.range_expansion
    if expansion is not None:
        if expansion >= config.range_expansion_ratio:
            scores[Regime.EXPANSION] += 20
            scores[Regime.TREND_DAY] += 15
        elif expansion <= config.range_compression_ratio:
            scores[Regime.COMPRESSION] += 20
            scores[Regime.RANGE_DAY] += 10

    # 5. Panic
    panic = panic_score(metrics, config)
    if panic > 0:
        scores[Regime.PANIC_DAY] = panic

    return scores


def panic_score(metrics: RegimeMetrics, config: RegimeConfig) -> float:
    score = 0.0
    if metrics.day_move_pct is not None and metrics.day_move_pct >= config.panic_move_pct:
        score += 50
    if metrics.current_range_pct is not None and metrics.current_range_pct >= config.panic_range_pct:
        score += 30
    if metrics.atr_slope_5m is not None and metrics.atr_slope_5m > config.panic_atr_slope:
        score += 20
    return score


def pick_regime(scores: Dict[Regime, float], tie_break_order: Sequence[str]) -> Tuple[Regime, float]:
    """Strictly highest score wins; ties go to the earliest regime in tie_break_order."""
    best = max(scores.values(), default=0.0)
    if best <= 0:
        return Regime.UNKNOWN, 0.0
    for name in tie_break_order:
        regime = Regime(name)
        if scores.get(regime, 0.0) == best:
            return regime, best
    return Regime.UNKNOWN, 0.0


def volatility_score(metrics: RegimeMetrics) -> float:
    """Aggregate 0-100 volatility score (50 = neutral)."""
    score = 50.0
    score += (metrics.avg_atr_slope or 0.0) * 100
    expansion = metrics.range_expansion if metrics.range_expansion is not None else 1.0
    score += (expansion - 1) * 20
    score += (metrics.vwap_distance_pct or 0.0) * 5
    return float(max(0, min(100, round(score))))


def classify_metrics(metrics: RegimeMetrics, config: RegimeConfig) -> Tuple[Regime, float, Dict[Regime, float]]:
    """Pure classification: identical metrics always yield the same regime and score."""
    scores = score_regimes(metrics, config)
    regime, confidence = pick_regime(scores, config.tie_break_order)
    return regime, confidence, scores


# ═══════════════════════════════════════════════════════════════════════════
# CLASSIFIER SERVICE
# ═══════════════════════════════════════════════════════════════════════════

class RegimeClassifier:
    """Owns the current RegimeState and reclassifies on data updates or a timer."""

    def __init__(
        self,
        config: Optional[RegimeConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or RegimeConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._session = SessionData()
        self._candles_5m = candle_math.to_frame(None)
        self._candles_15m = candle_math.to_frame(None)
        self._state = RegimeState()
        self._history: deque = deque(maxlen=self.config.history_size)
        self._transition_count = 0
        self._classifications = 0
        self._listeners: List[Callable[[RegimeTransition], None]] = []
        self._task: Optional[PeriodicTask] = None

    # ── lifecycle ──────────────────────────────────────────────────────────

    def start(self):
        """Reclassify every `update_interval_seconds` on a background thread."""
        if self._task and self._task.running:
            logger.warning("Regime classifier already running")
            return
        self._task = PeriodicTask("regime-classifier", self.classify, self.config.update_interval_seconds)
        self._task.start()

    def stop(self):
        if self._task:
            self._task.stop()
            self._task = None

    @property
    def running(self) -> bool:
        return bool(self._task and self._task.running)

    def on_transition(self, listener: Callable[[RegimeTransition], None]):
        """Register a callback invoked after every regime change."""
        self._listeners.append(listener)

    # ── inputs ─────────────────────────────────────────────────────────────

    def update_market_data(
        self,
        session: Optional[SessionData] = None,
        candles_5m: Optional[Any] = None,
        candles_15m: Optional[Any] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RegimeState]:
        """
        Merge benchmark data. Session high only rises and low only falls.

        Returns the new state when candles arrived (which triggers a
        reclassification), otherwise None.
        """
        with self._lock:
            if session is not None:
                s = self._session
                if session.open and session.open > 0:
                    s.open = session.open
                if session.high and session.high > 0:
                    s.high = max(s.high or 0.0, session.high)
                if session.low and session.low > 0:
                    s.low = session.low if not s.low else min(s.low, session.low)
                if session.last and session.last > 0:
                    s.last = session.last
                if session.vwap and session.vwap > 0:
                    s.vwap = session.vwap
                if session.breadth is not None:
                    s.breadth = session.breadth
            if candles_5m is not None:
                self._candles_5m = candle_math.to_frame(candles_5m)
            if candles_15m is not None:
                self._candles_15m = candle_math.to_frame(candles_15m)

        # classify() notifies listeners, which must run without the lock held
        if candles_5m is not None or candles_15m is not None:
            return self.classify(now)
        return None

    # ── classification ─────────────────────────────────────────────────────

    def classify(self, now: Optional[datetime] = None) -> RegimeState:
        """Recompute the regime from the stored data."""
        now = now or self._clock()
        transition: Optional[RegimeTransition] = None

        with self._lock:
            metrics = compute_metrics(self._session, self._candles_5m, self._candles_15m, self.config)
            if len(self._candles_5m) < self.config.min_bars:
                # not enough history yet
                scores = {regime: 0.0 for regime in SCORED_REGIMES}
                regime, confidence = Regime.UNKNOWN, 0.0
            else:
                regime, confidence, scores = classify_metrics(metrics, self.config)

            state = self._state
            if regime != state.regime:
                transition = RegimeTransition(
                    from_regime=state.regime,
                    to_regime=regime,
                    at=now,
                    confidence=confidence,
                    volatility_score=volatility_score(metrics),
                )
                state.previous_regime = state.regime
                state.regime = regime
                state.started_at = now
                self._transition_count += 1
                self._history.append(transition)
                logger.info(
                    f"🔄 Regime shift: {transition.from_regime.value} → {regime.value} "
                    f"| confidence={confidence:.0f}"
                )

            state.confidence = confidence
            state.volatility_score = volatility_score(metrics)
            state.scores = {r.value: s for r, s in scores.items()}
            state.metrics = metrics
            state.updated_at = now
            self._classifications += 1
            snapshot = self._snapshot()

        if transition is not None:
            for listener in list(self._listeners):
                try:
                    listener(transition)
                except Exception as e:
                    logger.error(f"Regime transition listener failed: {e}")
        return snapshot

    # ── queries ────────────────────────────────────────────────────────────

    @property
    def state(self) -> RegimeState:
        with self._lock:
            return self._snapshot()

    @property
    def current_regime(self) -> Regime:
        with self._lock:
            return self._state.regime

    def get_dynamic_thresholds(self, regime: Optional[Regime] = None) -> DynamicThresholds:
        if regime is None:
            regime = self.current_regime
        table = self.config.thresholds
        values = table.get(regime.value) or table[Regime.UNKNOWN.value]
        return DynamicThresholds(
            min_strength=float(values["min_strength"]),
            min_reward_risk=float(values["min_reward_risk"]),
            min_confidence=float(values["min_confidence"]),
            min_volume_multiple=float(values["min_volume_multiple"]),
        )

    def check_signal_compatibility(
        self,
        setup: Optional[str],
        strength: float,
        reward_risk: Optional[float] = None,
        volume_multiple: Optional[float] = None,
        regime: Optional[Regime] = None,
    ) -> RegimeCompatibility:
        """Check a signal against the regime's thresholds and collect advisory warnings."""
        if regime is None:
            regime = self.current_regime
        thresholds = self.get_dynamic_thresholds(regime)
        failures: List[str] = []
        warnings: List[str] = []

        if strength < thresholds.min_strength:
            failures.append(f"strength {strength:.0f} < {thresholds.min_strength:.0f}")
        if reward_risk is not None and reward_risk < thresholds.min_reward_risk:
            failures.append(f"reward:risk {reward_risk:.2f} < {thresholds.min_reward_risk:.2f}")
        if volume_multiple is not None and volume_multiple < thresholds.min_volume_multiple:
            failures.append(f"volume {volume_multiple:.2f}x < {thresholds.min_volume_multiple:.2f}x")

        setup_name = (setup or "").upper()
        if regime == Regime.PANIC_DAY:
            warnings.append("PANIC_DAY: only high-conviction signals allowed")
        if regime == Regime.COMPRESSION and setup_name == "BREAKOUT":
            warnings.append("COMPRESSION: breakout signals need extra confirmation")
        if regime == Regime.RANGE_DAY and setup_name == "TREND":
            warnings.append("RANGE_DAY: trend signals may face mean reversion")

        if failures:
            return RegimeCompatibility(False, f"{regime.value}: " + "; ".join(failures), warnings)
        return RegimeCompatibility(True, f"{regime.value}: compatible", warnings)

    def get_state(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Status snapshot for dashboards."""
        now = now or self._clock()
        with self._lock:
            state = self._state
            duration = 0
            if state.started_at is not None:
                duration = round((now - state.started_at).total_seconds() / 60)
            thresholds = self.get_dynamic_thresholds(state.regime)
            return {
                "regime": state.regime.value,
                "previous_regime": state.previous_regime.value if state.previous_regime else None,
                "confidence": state.confidence,
                "volatility_score": state.volatility_score,
                "regime_duration_minutes": duration,
                "scores": dict(state.scores),
                "metrics": state.metrics.to_dict(),
                "thresholds": {
                    "min_strength": thresholds.min_strength,
                    "min_reward_risk": thresholds.min_reward_risk,
                    "min_confidence": thresholds.min_confidence,
                    "min_volume_multiple": thresholds.min_volume_multiple,
                },
                "transition_count": self._transition_count,
                "updated_at": state.updated_at.isoformat() if state.updated_at else None,
            }

    def get_history(self, count: int = 10) -> List[RegimeTransition]:
        with self._lock:
            if count <= 0:
                return []
            return list(self._history)[-count:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            distribution: Dict[str, int] = {}
            for entry in self._history:
                distribution[entry.to_regime.value] = distribution.get(entry.to_regime.value, 0) + 1
            return {
                "current_regime": self._state.regime.value,
                "volatility_score": self._state.volatility_score,
                "regime_confidence": self._state.confidence,
                "transition_count": self._transition_count,
                "classifications": self._classifications,
                "regime_distribution": distribution,
            }

    def reset_daily(self):
        """Clear session data and regime; transition history is kept."""
        with self._lock:
            self._session = SessionData()
            self._candles_5m = candle_math.to_frame(None)
            self._candles_15m = candle_math.to_frame(None)
            self._state = RegimeState()
            self._transition_count = 0
        logger.info("Regime classifier daily reset complete")

    def _snapshot(self) -> RegimeState:
        s = self._state
        return replace(s, scores=dict(s.scores), metrics=replace(s.metrics))
