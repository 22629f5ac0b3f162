"""Tests for the guard pipeline."""

from datetime import timedelta

import pytest

from conftest import make_signal, strong_factors
from core.contracts import (
    CheckResult,
    CrowdTrap,
    FactorBundle,
    GuardAction,
    MtfAlignment,
)
from core.exceptions import ReasonCode
from risk.confidence_scoring import ConfidenceScorer
from risk.guard_pipeline import (
    BaseGuard,
    GuardPipeline,
    LossStreakGuard,
    default_guards,
)
from risk.portfolio_commander import PortfolioCommander
from risk.regime_classifier import RegimeClassifier


class ExplodingGuard(BaseGuard):
    name = "EXPLODING"

    def evaluate(self, signal, context):
        raise RuntimeError("guard blew up")


class SloppyGuard(BaseGuard):
    name = "SLOPPY"

    def evaluate(self, signal, context):
        return True


class HalvingGuard(BaseGuard):
    name = "HALVING"

    def evaluate(self, signal, context):
        return CheckResult.downgraded(self.name, 0.5, ReasonCode.OK, "half")


class StaticFactors:
    def __init__(self, bundle):
        self.bundle = bundle
        self.calls = 0

    def get_factors(self, signal):
        self.calls += 1
        return self.bundle


@pytest.fixture
def portfolio(now):
    return PortfolioCommander(clock=lambda: now)


@pytest.fixture
def pipeline(portfolio, now):
    return GuardPipeline(
        portfolio=portfolio,
        scorer=ConfidenceScorer(clock=lambda: now),
        regime_classifier=RegimeClassifier(clock=lambda: now),
        clock=lambda: now,
    )


class TestVerdicts:

    def test_clean_signal_emits(self, pipeline, now):
        result = pipeline.evaluate(make_signal(), now=now)

        assert result.allowed
        assert result.action == GuardAction.EMIT
        assert result.downgrade_factor == 1.0
        assert [c.name for c in result.checks] == [g.name for g in default_guards()]
        # 84 signal-level points + UNKNOWN regime 4 + alignment 5 + correlation risk 3
        assert result.confidence.score == 96
        assert result.confidence.threshold == 60

    def test_sixth_signal_blocked_by_position_cap(self, pipeline, portfolio, now):
        for i in range(5):
            portfolio.register_position(make_signal(token=f"P{i}", sector=f"S{i}"), now)

        result = pipeline.evaluate(make_signal(token="P5", sector="S5"), now=now)

        assert result.action == GuardAction.BLOCK
        assert result.block_code == ReasonCode.MAX_POSITIONS
        assert "MAX_POSITIONS" in result.block_reason

    def test_block_short_circuits(self, pipeline, portfolio, now):
        for i in range(5):
            portfolio.register_position(make_signal(token=f"P{i}", sector=f"S{i}"), now)

        result = pipeline.evaluate(make_signal(token="P5", sector="S5"), now=now)

        assert [c.name for c in result.checks] == ["LOCK_STATUS", "POSITION_COUNT"]
        assert result.confidence is None

    def test_locked_portfolio_blocks_until_expiry(self, pipeline, portfolio, now):
        for i in range(3):
            portfolio.register_position(make_signal(token=f"L{i}", sector=f"S{i}"), now)
            portfolio.record_close(f"L{i}", -500, now)

        blocked = pipeline.evaluate(make_signal(token="NEXT"), now=now + timedelta(minutes=30))
        assert blocked.block_code == ReasonCode.PORTFOLIO_LOCKED
        assert blocked.block_reason.startswith("PORTFOLIO_LOCKED")

        later = pipeline.evaluate(make_signal(token="NEXT"), now=now + timedelta(minutes=61))
        assert later.allowed
        # streak warning still applies after the lock clears
        assert later.action == GuardAction.DOWNGRADE
        assert later.downgrade_factor == pytest.approx(0.9)

    def test_downgrades_multiply(self, pipeline, now):
        factors = strong_factors(slippage_risk=70.0, crowd_trap=CrowdTrap(flagged=True, score=50))

        result = pipeline.evaluate(make_signal(factors=factors), now=now)

        assert result.action == GuardAction.DOWNGRADE
        assert result.downgrade_factor == pytest.approx(0.9 * 0.85)
        assert result.adjusted_confidence == pytest.approx(
            result.confidence.score * result.downgrade_factor, abs=0.01
        )

    def test_low_confidence_never_emits(self, pipeline, now):
        bundles = [
            FactorBundle(),
            FactorBundle(breadth=80.0, slippage_risk=10.0, crowd_trap=CrowdTrap()),
            strong_factors(mtf=MtfAlignment(), breadth=20.0, relative_strength=-3.0, liquidity_tier=3),
            strong_factors(),
        ]
        for i, bundle in enumerate(bundles):
            result = pipeline.evaluate(make_signal(token=f"C{i}", factors=bundle), now=now)
            confidence = pipeline.scorer.get_history(f"C{i}")[-1][1]
            if confidence < 60:
                assert result.action != GuardAction.EMIT
                assert result.block_code == ReasonCode.LOW_CONFIDENCE

    def test_regime_incompatible_blocks(self, pipeline, now):
        result = pipeline.evaluate(make_signal(strength=40.0), now=now)

        assert result.block_code == ReasonCode.REGIME_INCOMPATIBLE

    def test_invalid_input_blocked_at_boundary(self, pipeline, now):
        result = pipeline.evaluate(make_signal(price=-5.0), now=now)

        assert result.action == GuardAction.BLOCK
        assert result.block_code == ReasonCode.INVALID_INPUT
        assert result.checks[0].name == "INPUT_VALIDATION"
        assert "price" in result.block_reason

    def test_nan_strength_rejected(self, pipeline, now):
        result = pipeline.evaluate(make_signal(strength=float("nan")), now=now)
        assert result.block_code == ReasonCode.INVALID_INPUT

    @pytest.mark.parametrize("overrides", [
        {"strength": "80"},
        {"price": "1000"},
        {"quantity": "10"},
        {"direction": "LONG"},
    ])
    def test_uncoerced_fields_blocked(self, pipeline, now, overrides):
        result = pipeline.evaluate(make_signal(token="S2", **overrides), now=now)

        assert result.action == GuardAction.BLOCK
        assert result.block_code == ReasonCode.INVALID_INPUT
        assert [c.name for c in result.checks] == ["INPUT_VALIDATION"]


class TestFailureAsymmetry:

    def test_critical_guard_fails_closed_without_portfolio(self, now):
        pipeline = GuardPipeline(scorer=ConfidenceScorer(), clock=lambda: now)

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.action == GuardAction.BLOCK
        assert result.block_code == ReasonCode.GUARD_UNAVAILABLE
        assert result.checks[0].name == "LOCK_STATUS"

    def test_critical_confidence_guard_fails_closed_without_scorer(self, portfolio, now):
        pipeline = GuardPipeline(portfolio=portfolio, clock=lambda: now)

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.block_code == ReasonCode.GUARD_UNAVAILABLE
        assert result.checks[-1].name == "CONFIDENCE_THRESHOLD"

    def test_non_critical_guard_skips_missing_factor(self, pipeline, now):
        result = pipeline.evaluate(make_signal(factors=strong_factors(slippage_risk=None)), now=now)

        assert result.allowed
        execution = next(c for c in result.checks if c.name == "EXECUTION_SAFETY")
        assert execution.skipped
        assert execution.reason_code == ReasonCode.GUARD_SKIPPED

    def test_regime_guard_skipped_without_classifier(self, portfolio, now):
        pipeline = GuardPipeline(portfolio=portfolio, scorer=ConfidenceScorer(), clock=lambda: now)

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.allowed
        regime = next(c for c in result.checks if c.name == "REGIME_COMPATIBILITY")
        assert regime.skipped

    def test_non_critical_exception_is_skipped(self, pipeline, now):
        pipeline.register(ExplodingGuard())

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.allowed
        assert result.checks[-1].skipped
        assert pipeline.get_stats()["guard_errors"] == 1

    def test_critical_exception_fails_closed(self, pipeline, now):
        pipeline.register(ExplodingGuard(), before="POSITION_COUNT", critical=True)

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.block_code == ReasonCode.GUARD_ERROR
        assert [c.name for c in result.checks] == ["LOCK_STATUS", "EXPLODING"]

    def test_wrong_result_type_treated_as_error(self, pipeline, now):
        pipeline.register(SloppyGuard(), critical=True)

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.block_code == ReasonCode.GUARD_ERROR
        assert "CheckResult" in result.block_reason


class TestRegistryAndStats:

    def test_custom_guard_downgrade(self, pipeline, now):
        pipeline.register(HalvingGuard())

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.action == GuardAction.DOWNGRADE
        assert result.downgrade_factor == 0.5

    def test_register_before_unknown_guard(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.register(HalvingGuard(), before="NOPE")

    def test_custom_guard_list(self, portfolio, now):
        pipeline = GuardPipeline(portfolio=portfolio, guards=[LossStreakGuard()], clock=lambda: now)

        result = pipeline.evaluate(make_signal(), now=now)

        assert result.action == GuardAction.EMIT
        assert len(result.checks) == 1

    def test_factor_provider_used_when_signal_has_none(self, portfolio, now):
        provider = StaticFactors(strong_factors())
        pipeline = GuardPipeline(
            portfolio=portfolio,
            scorer=ConfidenceScorer(),
            regime_classifier=RegimeClassifier(),
            factor_provider=provider,
            clock=lambda: now,
        )

        result = pipeline.evaluate(make_signal(factors=None), now=now)

        assert provider.calls == 1
        assert result.allowed

    def test_stats_and_decision_log(self, pipeline, portfolio, now):
        pipeline.evaluate(make_signal(token="A"), now=now)
        pipeline.evaluate(make_signal(token="B", price=0.0), now=now)
        portfolio.trigger_lock("test", now)
        pipeline.evaluate(make_signal(token="C"), now=now)

        stats = pipeline.get_stats()
        assert stats["signals_checked"] == 3
        assert stats["signals_passed"] == 1
        assert stats["signals_blocked"] == 2
        assert stats["block_reasons"] == {"INVALID_INPUT": 1, "PORTFOLIO_LOCKED": 1}
        assert [d.token for d in pipeline.recent_decisions(2)] == ["B", "C"]

        pipeline.reset_stats()
        assert pipeline.get_stats()["signals_checked"] == 0
        assert pipeline.recent_decisions() == []

    def test_result_serializes(self, pipeline, now):
        payload = pipeline.evaluate(make_signal(), now=now).to_dict()

        assert payload["action"] == "EMIT"
        assert payload["block_code"] is None
        assert payload["checks"][0]["name"] == "LOCK_STATUS"
