"""Tests for the regime classifier."""

import threading
from datetime import timedelta

import pytest

from conftest import flat_candles, make_candles
from core.contracts import Regime, RegimeMetrics, SessionData
from core.exceptions import ConfigurationError
from risk.regime_classifier import (
    RegimeClassifier,
    RegimeConfig,
    classify_metrics,
    panic_score,
    pick_regime,
    score_regimes,
    volatility_score,
)


def expansion_metrics() -> RegimeMetrics:
    return RegimeMetrics(
        atr_slope_5m=0.2,
        atr_slope_15m=0.2,
        opening_range_pct=2.0,
        current_range_pct=2.0,
        vwap_distance_pct=1.0,
        range_expansion=2.0,
        day_move_pct=1.0,
    )


class TestPureScoring:

    def test_expansion_metrics_pick_expansion(self):
        regime, confidence, scores = classify_metrics(expansion_metrics(), RegimeConfig())

        assert regime == Regime.EXPANSION
        assert confidence == 80
        assert scores[Regime.TREND_DAY] == 70
        assert scores[Regime.PANIC_DAY] == 0

    def test_classification_is_deterministic(self):
        config = RegimeConfig()
        first = classify_metrics(expansion_metrics(), config)
        for _ in range(5):
            assert classify_metrics(expansion_metrics(), config) == first

    def test_tie_goes_to_earlier_regime_in_order(self):
        # slope -> EXPANSION 30 / TREND 15, VWAP -> TREND 25 / EXPANSION 10
        metrics = RegimeMetrics(atr_slope_5m=0.2, atr_slope_15m=0.2, vwap_distance_pct=1.0)
        scores = score_regimes(metrics, RegimeConfig())
        assert scores[Regime.EXPANSION] == scores[Regime.TREND_DAY] == 40

        regime, confidence, _ = classify_metrics(metrics, RegimeConfig())
        assert regime == Regime.TREND_DAY
        assert confidence == 40

    def test_custom_tie_break_order(self):
        metrics = RegimeMetrics(atr_slope_5m=0.2, atr_slope_15m=0.2, vwap_distance_pct=1.0)
        config = RegimeConfig(tie_break_order=["EXPANSION", "PANIC_DAY", "COMPRESSION", "RANGE_DAY", "TREND_DAY"])

        regime, _, _ = classify_metrics(metrics, config)

        assert regime == Regime.EXPANSION

    def test_pick_regime_all_zero_is_unknown(self):
        scores = {r: 0.0 for r in (Regime.COMPRESSION, Regime.EXPANSION, Regime.TREND_DAY,
                                   Regime.RANGE_DAY, Regime.PANIC_DAY)}
        assert pick_regime(scores, RegimeConfig().tie_break_order) == (Regime.UNKNOWN, 0.0)

    def test_panic_score_overrides_when_highest(self):
        metrics = RegimeMetrics(atr_slope_5m=0.5, day_move_pct=4.0, current_range_pct=4.0)
        config = RegimeConfig()

        assert panic_score(metrics, config) == 100
        regime, confidence, scores = classify_metrics(metrics, config)
        assert regime == Regime.PANIC_DAY
        assert confidence == 100
        assert scores[Regime.EXPANSION] == 30

    def test_missing_metrics_contribute_nothing(self):
        scores = score_regimes(RegimeMetrics(), RegimeConfig())
        assert all(score == 0 for score in scores.values())

    def test_volatility_score_is_clamped(self):
        assert volatility_score(RegimeMetrics()) == 50
        assert volatility_score(RegimeMetrics(atr_slope_5m=5.0)) == 100
        assert volatility_score(RegimeMetrics(atr_slope_5m=-5.0)) == 0

    def test_invalid_tie_break_order_rejected(self):
        with pytest.raises(ConfigurationError):
            RegimeConfig(tie_break_order=["PANIC_DAY", "COMPRESSION"])


class TestRegimeClassifier:

    @pytest.fixture
    def classifier(self, now):
        return RegimeClassifier(clock=lambda: now)

    def test_unknown_until_enough_bars(self, classifier, now):
        state = classifier.update_market_data(candles_5m=flat_candles(5), now=now)

        assert state.regime == Regime.UNKNOWN
        assert state.confidence == 0
        assert classifier.get_history() == []

    def test_flat_session_is_range_day(self, classifier, now):
        state = classifier.update_market_data(candles_5m=flat_candles(20), now=now)

        assert state.regime == Regime.RANGE_DAY
        assert state.previous_regime == Regime.UNKNOWN
        assert state.confidence == 10
        assert state.volatility_score == 50
        assert state.started_at == now

    def test_transition_recorded_and_listener_called(self, classifier, now):
        seen = []
        classifier.on_transition(seen.append)

        classifier.update_market_data(candles_5m=flat_candles(20), now=now)
        # same data again: no new transition
        classifier.classify(now + timedelta(minutes=1))

        history = classifier.get_history()
        assert len(history) == 1
        assert history[0].from_regime == Regime.UNKNOWN
        assert history[0].to_regime == Regime.RANGE_DAY
        assert seen == history
        assert classifier.get_stats()["transition_count"] == 1

    def test_listener_runs_without_classifier_lock(self, classifier, now):
        """Another thread can read the state while a listener is running."""
        reads = []

        def listener(_):
            reader = threading.Thread(target=lambda: reads.append(classifier.state.regime))
            reader.start()
            reader.join(timeout=2)

        classifier.on_transition(listener)
        classifier.update_market_data(candles_5m=flat_candles(20), now=now)

        assert reads == [Regime.RANGE_DAY]

    def test_failing_listener_does_not_break_classification(self, classifier, now):
        def broken(_):
            raise RuntimeError("boom")

        classifier.on_transition(broken)
        state = classifier.update_market_data(candles_5m=flat_candles(20), now=now)

        assert state.regime == Regime.RANGE_DAY

    def test_session_levels_merge_monotonically(self, classifier, now):
        classifier.update_market_data(session=SessionData(open=100, high=101, low=99, last=100.5))
        classifier.update_market_data(session=SessionData(high=100.5, low=99.5, last=100.2))

        # high only rises, low only falls
        state = classifier.update_market_data(
            candles_5m=make_candles([100.0] * 12, spread=0.5), now=now
        )
        assert state.metrics.current_range_pct == pytest.approx((101 - 99) / 99 * 100)

    def test_update_without_candles_does_not_reclassify(self, classifier):
        assert classifier.update_market_data(session=SessionData(vwap=100)) is None
        assert classifier.get_stats()["classifications"] == 0

    def test_dynamic_thresholds_per_regime(self, classifier):
        panic = classifier.get_dynamic_thresholds(Regime.PANIC_DAY)
        unknown = classifier.get_dynamic_thresholds()

        assert panic.min_confidence == 75
        assert panic.min_strength == 85
        assert unknown.min_confidence == 60

    def test_signal_compatibility(self, classifier):
        ok = classifier.check_signal_compatibility("BREAKOUT", 75, reward_risk=2.2, regime=Regime.TREND_DAY)
        weak = classifier.check_signal_compatibility("BREAKOUT", 40, regime=Regime.TREND_DAY)
        poor_rr = classifier.check_signal_compatibility("BREAKOUT", 75, reward_risk=1.0, regime=Regime.TREND_DAY)
        warned = classifier.check_signal_compatibility("BREAKOUT", 80, regime=Regime.COMPRESSION)

        assert ok.compatible and not ok.warnings
        assert not weak.compatible
        assert "strength" in weak.reason
        assert not poor_rr.compatible
        assert warned.compatible
        assert warned.warnings

    def test_get_state_reports_duration_and_metrics(self, classifier, now):
        classifier.update_market_data(candles_5m=flat_candles(20), now=now)

        state = classifier.get_state(now + timedelta(minutes=30))

        assert state["regime"] == "RANGE_DAY"
        assert state["regime_duration_minutes"] == 30
        assert state["metrics"]["atr_slope_5m"] == 0.0
        assert state["thresholds"]["min_confidence"] == 60

    def test_reset_daily_keeps_history(self, classifier, now):
        classifier.update_market_data(candles_5m=flat_candles(20), now=now)

        classifier.reset_daily()

        assert classifier.current_regime == Regime.UNKNOWN
        assert len(classifier.get_history()) == 1

    def test_history_is_bounded(self, now):
        classifier = RegimeClassifier(config=RegimeConfig(history_size=3))
        for i in range(4):
            classifier.update_market_data(candles_5m=flat_candles(20), now=now + timedelta(minutes=2 * i))
            classifier.update_market_data(candles_5m=flat_candles(5), now=now + timedelta(minutes=2 * i + 1))

        assert len(classifier.get_history(10)) == 3
