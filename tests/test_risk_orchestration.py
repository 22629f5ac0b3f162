"""End-to-end tests for the orchestrated admission/exit flow."""

from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry

from conftest import flat_candles, make_signal
from core.contracts import ExitCategory, GuardAction, MarketTick, Regime
from core.exceptions import InvalidInputError, ReasonCode
from core.risk_orchestration import RiskOrchestration
from monitoring.prometheus_metrics import DecisionMetrics


@pytest.fixture
def metrics():
    return DecisionMetrics(port=0, registry=CollectorRegistry())


@pytest.fixture
def gate(now, metrics):
    return RiskOrchestration(metrics=metrics, clock=lambda: now)


def sample(metrics, name, **labels):
    return metrics.registry.get_sample_value(name, labels or None)


class TestAdmission:

    def test_admitted_signal_is_tracked_everywhere(self, gate, now):
        decision = gate.admit(make_signal(token="T1"), now=now)

        assert decision.allowed
        assert decision.result.action == GuardAction.EMIT
        assert decision.position.entry_price == 1000
        assert decision.position.entry_atr == pytest.approx(20)
        assert gate.portfolio.get_position("T1") is not None
        assert gate.exit_commander.get_position("T1") is not None

    def test_blocked_signal_is_not_registered(self, gate, now):
        decision = gate.admit(make_signal(token="T1", strength=10.0), now=now)

        assert not decision.allowed
        assert decision.position is None
        assert gate.portfolio.active_count == 0
        assert gate.exit_commander.get_active_positions() == []

    def test_plain_string_direction_leaves_no_state(self, gate, now):
        decision = gate.admit(make_signal(token="S1", direction="LONG"), now=now)

        assert decision.result.block_code == ReasonCode.INVALID_INPUT
        assert decision.position is None
        assert gate.portfolio.active_count == 0
        assert gate.exit_commander.get_position("S1") is None

    def test_explicit_atr_used_for_trailing(self, gate, now):
        gate.admit(make_signal(token="T1"), now=now, atr=5)

        assert gate.exit_commander.get_trailing_state("T1").stop_price == pytest.approx(992.5)

    def test_metrics_follow_decisions(self, gate, metrics, now):
        gate.admit(make_signal(token="A", sector="A"), now=now)
        gate.admit(make_signal(token="B", sector="B", price=float("inf")), now=now)

        assert sample(metrics, "gate_signals_total", action="EMIT") == 1
        assert sample(metrics, "gate_signals_total", action="BLOCK") == 1
        assert sample(metrics, "gate_signals_blocked_total", reason="INVALID_INPUT") == 1
        assert sample(metrics, "gate_portfolio_positions_count") == 1


class TestCloseAndLock:

    def test_close_records_pnl_in_portfolio(self, gate, now):
        gate.admit(make_signal(token="T1"), now=now)

        closed = gate.close_position("T1", 990, now)

        assert closed.final_pnl_pct == pytest.approx(-1.0)
        # -1% of 1000 x 10
        assert gate.portfolio.daily_pnl == pytest.approx(-100)
        assert gate.portfolio.consecutive_losses == 1
        assert gate.portfolio.active_count == 0

    def test_three_losses_lock_new_admissions(self, gate, metrics, now):
        for i in range(3):
            gate.admit(make_signal(token=f"L{i}", sector=f"S{i}"), now=now)
            gate.close_position(f"L{i}", 990, now)

        blocked = gate.admit(make_signal(token="NEXT", sector="S9"), now=now + timedelta(minutes=5))
        assert blocked.result.block_code == ReasonCode.PORTFOLIO_LOCKED
        assert sample(metrics, "gate_portfolio_locked") == 1

        later = gate.admit(make_signal(token="NEXT", sector="S9"), now=now + timedelta(minutes=61))
        assert later.allowed

    def test_close_unknown_is_noop(self, gate, now):
        assert gate.close_position("ghost", 100, now) is None
        assert gate.portfolio.consecutive_losses == 0

    def test_close_with_bad_price_raises(self, gate, now):
        gate.admit(make_signal(token="T1"), now=now)
        with pytest.raises(InvalidInputError):
            gate.close_position("T1", 0, now)


class TestMarketFlow:

    def test_tick_produces_exit_and_metric(self, gate, metrics, now):
        gate.admit(make_signal(token="T1"), now=now)

        signal = gate.on_tick(MarketTick(token="T1", ltp=1000, timestamp=now, regime=Regime.PANIC_DAY))

        assert signal.category == ExitCategory.REGIME
        assert sample(metrics, "gate_exits_total", category="REGIME", subtype="REGIME_SHIFT") == 1

    def test_bad_tick_is_dropped(self, gate, now):
        gate.admit(make_signal(token="T1"), now=now)
        assert gate.on_tick(MarketTick(token="T1", ltp=-1, timestamp=now)) is None

    def test_benchmark_update_drives_regime(self, gate, metrics, now):
        state = gate.on_benchmark_update(candles_5m=flat_candles(20), now=now)

        assert state.regime == Regime.RANGE_DAY
        assert sample(metrics, "gate_regime_transitions_total", from_regime="UNKNOWN", to_regime="RANGE_DAY") == 1
        assert sample(metrics, "gate_regime_current", regime="RANGE_DAY") == 1

        decision = gate.admit(make_signal(token="T1"), now=now)
        assert decision.position.entry_regime == Regime.RANGE_DAY
        assert decision.result.confidence.threshold == 60

    def test_reset_daily_and_status(self, gate, now):
        gate.on_benchmark_update(candles_5m=flat_candles(20), now=now)
        gate.admit(make_signal(token="T1"), now=now)
        gate.close_position("T1", 1010, now)
        gate.admit(make_signal(token="T2"), now=now)

        gate.reset_daily()
        status = gate.status(now)

        assert status["regime"]["regime"] == "UNKNOWN"
        assert status["portfolio"]["active_positions"] == 0
        assert status["pipeline"]["signals_checked"] == 0
        assert status["exits"]["total_exits"] == 1
        assert status["confidence"]["signals_scored"] == 0
