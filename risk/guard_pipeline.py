"""
risk/guard_pipeline.py

Ordered admission guard pipeline.

Every guard implements BaseGuard.evaluate(signal, context) -> CheckResult.
The pipeline runs them in priority order, stops at the first block and
otherwise multiplies the downgrade factors:

    product < 1.0  -> DOWNGRADE
    product == 1.0 -> EMIT

A guard that cannot compute (MissingDataError) or raises is handled
asymmetrically: critical guards fail closed (BLOCK with GUARD_UNAVAILABLE /
GUARD_ERROR), non-critical guards are recorded as skipped and stay neutral.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from config import GateConfig
from core.contracts import (
    CheckResult,
    ConfidenceResult,
    CorrelationRisk,
    DynamicThresholds,
    FactorBundle,
    FactorProvider,
    GuardAction,
    GuardPipelineResult,
    Regime,
    RegimeCompatibility,
    Signal,
)
from core.exceptions import GuardEvaluationError, MissingDataError, ReasonCode
from core.validation import validate_signal
from risk.confidence_scoring import ConfidenceScorer
from risk.portfolio_commander import PortfolioCommander
from risk.regime_classifier import RegimeClassifier

logger = logging.getLogger(__name__)


@dataclass
class GuardPipelineConfig:
    critical_guards: Set[str] = field(default_factory=lambda: set(GateConfig.CRITICAL_GUARDS))
    execution_block_score: float = field(default_factory=lambda: GateConfig.EXECUTION_BLOCK_SCORE)
    execution_warn_score: float = field(default_factory=lambda: GateConfig.EXECUTION_WARN_SCORE)
    execution_downgrade: float = field(default_factory=lambda: GateConfig.EXECUTION_DOWNGRADE)
    crowd_trap_block_score: float = field(default_factory=lambda: GateConfig.CROWD_TRAP_BLOCK_SCORE)
    crowd_trap_downgrade: float = field(default_factory=lambda: GateConfig.CROWD_TRAP_DOWNGRADE)
    regime_warning_downgrade: float = field(default_factory=lambda: GateConfig.REGIME_WARNING_DOWNGRADE)
    decision_log_size: int = field(default_factory=lambda: GateConfig.DECISION_LOG_SIZE)


@dataclass
class GuardContext:
    """Pre-fetched inputs shared by all guards for one evaluation."""
    now: datetime
    regime: Optional[Regime] = None
    thresholds: Optional[DynamicThresholds] = None
    compatibility: Optional[RegimeCompatibility] = None
    correlation_risk: Optional[CorrelationRisk] = None
    factors: Optional[FactorBundle] = None
    portfolio: Optional[PortfolioCommander] = None
    scorer: Optional[ConfidenceScorer] = None
    config: GuardPipelineConfig = field(default_factory=GuardPipelineConfig)
    confidence: Optional[ConfidenceResult] = None

    def require_portfolio(self) -> PortfolioCommander:
        if self.portfolio is None:
            raise MissingDataError(code="NO_PORTFOLIO", message="portfolio state unavailable")
        return self.portfolio

    def require_factors(self) -> FactorBundle:
        if self.factors is None:
            raise MissingDataError(code="NO_FACTORS", message="factor bundle unavailable")
        return self.factors


# ═══════════════════════════════════════════════════════════════════════════
# GUARDS
# ═══════════════════════════════════════════════════════════════════════════

class BaseGuard(ABC):
    """A single admission check."""

    name: str = "GUARD"

    @abstractmethod
    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        ...


class LockStatusGuard(BaseGuard):
    name = "LOCK_STATUS"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        return context.require_portfolio().check_lock_status(context.now)


class PositionCountGuard(BaseGuard):
    name = "POSITION_COUNT"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        return context.require_portfolio().check_position_count()


class SectorConcentrationGuard(BaseGuard):
    name = "SECTOR_CONCENTRATION"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        return context.require_portfolio().check_sector_concentration(signal.sector)


class UnderlyingConcentrationGuard(BaseGuard):
    name = "UNDERLYING_CONCENTRATION"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        if not signal.is_option:
            return CheckResult.passed(self.name, "not an option")
        return context.require_portfolio().check_underlying_concentration(signal.underlying)


class CorrelationGuard(BaseGuard):
    name = "CORRELATION"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        return context.require_portfolio().check_correlation(signal.sector)


class ExposureCapGuard(BaseGuard):
    name = "EXPOSURE_CAP"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        portfolio = context.require_portfolio()
        regime = context.regime or Regime.UNKNOWN
        return portfolio.check_exposure(portfolio.risk_amount_for(signal), regime)


class DailyLossGuard(BaseGuard):
    name = "DAILY_LOSS_LIMIT"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        return context.require_portfolio().check_daily_loss()


class ConfidenceThresholdGuard(BaseGuard):
    """Scores the signal and blocks below max(strength-class floor, regime minimum)."""

    name = "CONFIDENCE_THRESHOLD"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        if context.scorer is None:
            raise MissingDataError(code="NO_SCORER", message="confidence scorer unavailable")
        min_confidence = context.thresholds.min_confidence if context.thresholds else None
        result = context.scorer.score(
            signal,
            factors=context.factors,
            regime=context.regime,
            compatibility=context.compatibility,
            correlation_risk=context.correlation_risk,
            min_confidence=min_confidence,
            now=context.now,
        )
        context.confidence = result
        if not result.meets_minimum:
            return CheckResult.blocked(
                self.name,
                ReasonCode.LOW_CONFIDENCE,
                f"LOW_CONFIDENCE: {result.score:.1f} < {result.threshold:.1f} ({result.grade})",
            )
        return CheckResult.passed(self.name, f"{result.score:.1f} >= {result.threshold:.1f} ({result.grade})")


class RegimeCompatibilityGuard(BaseGuard):
    name = "REGIME_COMPATIBILITY"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        compatibility = context.compatibility
        if compatibility is None:
            raise MissingDataError(code="NO_REGIME", message="regime classifier unavailable")
        if not compatibility.compatible:
            return CheckResult.blocked(self.name, ReasonCode.REGIME_INCOMPATIBLE, compatibility.reason)
        if compatibility.warnings:
            return CheckResult.downgraded(
                self.name,
                context.config.regime_warning_downgrade,
                ReasonCode.REGIME_WARNING,
                "; ".join(compatibility.warnings),
            )
        return CheckResult.passed(self.name, compatibility.reason)


class ExecutionSafetyGuard(BaseGuard):
    name = "EXECUTION_SAFETY"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        risk = context.require_factors().slippage_risk
        if risk is None:
            raise MissingDataError(code="NO_EXECUTION_SAFETY", message="slippage risk unavailable")
        cfg = context.config
        if risk > cfg.execution_block_score:
            return CheckResult.blocked(
                self.name, ReasonCode.EXECUTION_UNSAFE, f"EXECUTION_UNSAFE: slippage risk {risk:.0f}"
            )
        if risk > cfg.execution_warn_score:
            return CheckResult.downgraded(
                self.name,
                cfg.execution_downgrade,
                ReasonCode.EXECUTION_RISK,
                f"EXECUTION_RISK: slippage risk {risk:.0f}",
            )
        return CheckResult.passed(self.name, f"slippage risk {risk:.0f}")


class CrowdTrapGuard(BaseGuard):
    name = "CROWD_TRAP"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        trap = context.require_factors().crowd_trap
        if trap is None:
            raise MissingDataError(code="NO_CROWD_TRAP", message="crowd trap factor unavailable")
        if not trap.flagged:
            return CheckResult.passed(self.name)
        cfg = context.config
        if trap.score >= cfg.crowd_trap_block_score:
            return CheckResult.blocked(self.name, ReasonCode.CROWD_TRAP, f"CROWD_TRAP: crowding {trap.score:.0f}")
        return CheckResult.downgraded(
            self.name,
            cfg.crowd_trap_downgrade,
            ReasonCode.CROWD_TRAP_WARNING,
            f"CROWD_TRAP_WARNING: crowding {trap.score:.0f}",
        )


class LossStreakGuard(BaseGuard):
    name = "LOSS_STREAK"

    def evaluate(self, signal: Signal, context: GuardContext) -> CheckResult:
        return context.require_portfolio().check_loss_streak()


def default_guards() -> List[BaseGuard]:
    """Guards in priority order."""
    return [
        LockStatusGuard(),
        PositionCountGuard(),
        SectorConcentrationGuard(),
        UnderlyingConcentrationGuard(),
        CorrelationGuard(),
        ExposureCapGuard(),
        DailyLossGuard(),
        ConfidenceThresholdGuard(),
        RegimeCompatibilityGuard(),
        ExecutionSafetyGuard(),
        CrowdTrapGuard(),
        LossStreakGuard(),
    ]


# ═══════════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════════

class GuardPipeline:
    """Runs registered guards against a signal and returns one verdict."""

    def __init__(
        self,
        portfolio: Optional[PortfolioCommander] = None,
        scorer: Optional[ConfidenceScorer] = None,
        regime_classifier: Optional[RegimeClassifier] = None,
        factor_provider: Optional[FactorProvider] = None,
        guards: Optional[Iterable[BaseGuard]] = None,
        config: Optional[GuardPipelineConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.portfolio = portfolio
        self.scorer = scorer
        self.regime_classifier = regime_classifier
        self.factor_provider = factor_provider
        self.config = config or GuardPipelineConfig()
        self._clock = clock
        self._guards: List[BaseGuard] = list(guards) if guards is not None else default_guards()

        self._lock = threading.RLock()
        self._decisions: Deque[GuardPipelineResult] = deque(maxlen=self.config.decision_log_size)
        self._counts: Counter = Counter()
        self._block_reasons: Counter = Counter()

    @property
    def guards(self) -> List[BaseGuard]:
        return list(self._guards)

    def register(self, guard: BaseGuard, before: Optional[str] = None, critical: bool = False):
        """Add a guard at the end, or before the guard named `before`."""
        with self._lock:
            index = len(self._guards)
            if before is not None:
                names = [g.name for g in self._guards]
                if before not in names:
                    raise ValueError(f"No guard named {before}")
                index = names.index(before)
            self._guards.insert(index, guard)
            if critical:
                self.config.critical_guards.add(guard.name)

    def is_critical(self, guard: BaseGuard) -> bool:
        return guard.name in self.config.critical_guards

    def build_context(
        self,
        signal: Signal,
        now: Optional[datetime] = None,
        factors: Optional[FactorBundle] = None,
    ) -> GuardContext:
        """Collect regime, thresholds, factors and portfolio state for one evaluation."""
        now = now or self._clock()
        if factors is None:
            factors = signal.factors
        if factors is None and self.factor_provider is not None:
            try:
                factors = self.factor_provider.get_factors(signal)
            except Exception as e:
                logger.error(f"Factor provider failed for {signal.token}: {e}")
                factors = None

        regime = thresholds = compatibility = None
        if self.regime_classifier is not None:
            regime = self.regime_classifier.current_regime
            thresholds = self.regime_classifier.get_dynamic_thresholds(regime)
            compatibility = self.regime_classifier.check_signal_compatibility(
                signal.setup,
                signal.strength,
                reward_risk=signal.reward_risk,
                volume_multiple=signal.volume_multiple,
                regime=regime,
            )

        correlation_risk = None
        if self.portfolio is not None:
            correlation_risk = self.portfolio.correlation_risk(signal.sector)

        return GuardContext(
            now=now,
            regime=regime,
            thresholds=thresholds,
            compatibility=compatibility,
            correlation_risk=correlation_risk,
            factors=factors,
            portfolio=self.portfolio,
            scorer=self.scorer,
            config=self.config,
        )

    def evaluate(
        self,
        signal: Signal,
        context: Optional[GuardContext] = None,
        now: Optional[datetime] = None,
    ) -> GuardPipelineResult:
        """
        Evaluate a candidate signal.

        Returns:
            GuardPipelineResult with the verdict, the ordered check trail,
            the cumulative downgrade factor and (when scored) the confidence.
        """
        now = (context.now if context is not None else None) or now or self._clock()
        token = str(getattr(signal, "token", "") or "?")

        validation = validate_signal(signal)
        if not validation.is_valid:
            message = f"INVALID_INPUT: {validation.summary()}"
            check = CheckResult.blocked("INPUT_VALIDATION", ReasonCode.INVALID_INPUT, message)
            result = GuardPipelineResult(
                token=token,
                allowed=False,
                action=GuardAction.BLOCK,
                block_reason=message,
                block_code=ReasonCode.INVALID_INPUT,
                checks=[check],
                evaluated_at=now,
            )
            self._record(result, signal)
            return result

        if context is None:
            context = self.build_context(signal, now)

        checks: List[CheckResult] = []
        factor = 1.0
        with self._lock:
            guards = list(self._guards)

        for guard in guards:
            check = self._run_guard(guard, signal, context)
            checks.append(check)
            if not check.allowed:
                result = GuardPipelineResult(
                    token=token,
                    allowed=False,
                    action=GuardAction.BLOCK,
                    downgrade_factor=factor,
                    block_reason=check.message,
                    block_code=check.reason_code,
                    checks=checks,
                    confidence=context.confidence,
                    evaluated_at=now,
                )
                self._record(result, signal)
                return result
            factor *= min(1.0, max(0.0, check.downgrade))

        action = GuardAction.DOWNGRADE if factor < 1.0 else GuardAction.EMIT
        adjusted = None
        if context.confidence is not None:
            adjusted = round(context.confidence.score * factor, 2)
        result = GuardPipelineResult(
            token=token,
            allowed=True,
            action=action,
            downgrade_factor=factor,
            checks=checks,
            confidence=context.confidence,
            adjusted_confidence=adjusted,
            evaluated_at=now,
        )
        self._record(result, signal)
        return result

    def _run_guard(self, guard: BaseGuard, signal: Signal, context: GuardContext) -> CheckResult:
        critical = self.is_critical(guard)
        try:
            check = guard.evaluate(signal, context)
            if not isinstance(check, CheckResult):
                raise GuardEvaluationError(
                    code="BAD_GUARD_RESULT",
                    message=f"{guard.name} returned {type(check).__name__}, expected CheckResult",
                    context={"guard": guard.name},
                )
            return check
        except MissingDataError as e:
            if critical:
                logger.warning(f"Critical guard {guard.name} unavailable, failing closed: {e}")
                return CheckResult.blocked(guard.name, ReasonCode.GUARD_UNAVAILABLE, f"GUARD_UNAVAILABLE: {e}")
            logger.debug(f"Guard {guard.name} skipped: {e}")
            return CheckResult.skipped_check(guard.name, f"skipped: {e}")
        except Exception as e:
            with self._lock:
                self._counts["guard_errors"] += 1
            if critical:
                logger.error(f"Critical guard {guard.name} failed, failing closed: {e}", exc_info=True)
                return CheckResult.blocked(guard.name, ReasonCode.GUARD_ERROR, f"GUARD_ERROR: {e}")
            logger.error(f"Guard {guard.name} failed, skipping: {e}", exc_info=True)
            return CheckResult.skipped_check(guard.name, f"error: {e}")

    def _record(self, result: GuardPipelineResult, signal: Signal):
        symbol = getattr(signal, "symbol", result.token)
        with self._lock:
            self._decisions.append(result)
            self._counts["checked"] += 1
            if result.action == GuardAction.BLOCK:
                self._counts["blocked"] += 1
                if result.block_code is not None:
                    self._block_reasons[result.block_code.value] += 1
            elif result.action == GuardAction.DOWNGRADE:
                self._counts["downgraded"] += 1
            else:
                self._counts["passed"] += 1

        if result.action == GuardAction.BLOCK:
            code = result.block_code.value if result.block_code else "?"
            logger.info(f"⛔ Signal blocked: {symbol} [{code}] {result.block_reason}")
        elif result.action == GuardAction.DOWNGRADE:
            logger.info(f"Signal downgraded: {symbol} x{result.downgrade_factor:.3f}")
        else:
            logger.debug(f"Signal passed: {symbol}")

    # ── observability ──────────────────────────────────────────────────────

    def recent_decisions(self, count: int = 20) -> List[GuardPipelineResult]:
        with self._lock:
            if count <= 0:
                return []
            return list(self._decisions)[-count:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            checked = self._counts["checked"]
            return {
                "signals_checked": checked,
                "signals_passed": self._counts["passed"],
                "signals_downgraded": self._counts["downgraded"],
                "signals_blocked": self._counts["blocked"],
                "guard_errors": self._counts["guard_errors"],
                "block_rate": round(self._counts["blocked"] / checked * 100, 1) if checked else 0.0,
                "block_reasons": dict(self._block_reasons),
                "guards": [
                    {"name": g.name, "critical": self.is_critical(g)} for g in self._guards
                ],
            }

    def reset_stats(self):
        with self._lock:
            self._decisions.clear()
            self._counts.clear()
            self._block_reasons.clear()
