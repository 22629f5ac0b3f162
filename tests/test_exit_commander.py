"""Tests for the exit commander state machine."""

from datetime import timedelta

import pytest

from conftest import make_candles
from core.contracts import (
    Direction,
    ExitCategory,
    ExitPriority,
    ExitSubtype,
    IgnitionSignal,
    MarketTick,
    OptionGreeks,
    PositionStatus,
    Regime,
)
from core.exceptions import InvalidInputError
from risk.exit_commander import ExitCommander


@pytest.fixture
def commander(now):
    return ExitCommander(clock=lambda: now)


def tick(token, ltp, at, **kwargs):
    return MarketTick(token=token, ltp=ltp, timestamp=at, **kwargs)


class TestTrailingStop:

    def test_trailing_scenario_long(self, commander, now):
        commander.register_position("NIFTY", "NIFTY", Direction.LONG, 1600, now, atr=25)

        assert commander.evaluate(tick("NIFTY", 1660, now + timedelta(minutes=5))) is None
        trailing = commander.get_trailing_state("NIFTY")
        assert trailing.active
        assert trailing.stop_price == pytest.approx(1622.5)

        signal = commander.evaluate(tick("NIFTY", 1615, now + timedelta(minutes=10)))

        assert signal is not None
        assert signal.category == ExitCategory.TRAILING
        assert signal.subtype == ExitSubtype.ATR_TRAIL
        assert signal.conditions[0].details["stop_price"] == pytest.approx(1622.5)
        assert signal.max_pnl_pct == pytest.approx(3.75)

    def test_initial_stop_from_atr(self, commander, now):
        commander.register_position("X", "X", Direction.SHORT, 500, now, atr=10)

        trailing = commander.get_trailing_state("X")
        assert trailing.stop_price == pytest.approx(515)
        assert not trailing.active

    def test_fallback_atr(self, commander, now):
        position = commander.register_position("X", "X", Direction.LONG, 500, now)
        assert position.entry_atr == pytest.approx(10)

    def test_atr_from_candles(self, commander, now):
        candles = make_candles([100.0] * 20, spread=1.0)
        position = commander.register_position("X", "X", Direction.LONG, 100, now, candles=candles)
        assert position.entry_atr == pytest.approx(2.0)

    def test_trailing_inactive_below_min_profit(self, commander, now):
        commander.register_position("X", "X", Direction.LONG, 1000, now, atr=10)

        commander.evaluate(tick("X", 1010, now))

        assert not commander.get_trailing_state("X").active
        assert commander.get_trailing_state("X").stop_price == pytest.approx(985)

    @pytest.mark.parametrize("direction,prices", [
        (Direction.LONG, [1000, 1030, 1050, 1040, 1070, 1020, 1080, 1075]),
        (Direction.SHORT, [1000, 970, 950, 960, 930, 980, 920, 925]),
    ])
    def test_stop_never_loosens(self, now, direction, prices):
        commander = ExitCommander(clock=lambda: now)
        commander.register_position("M", "M", direction, 1000, now, atr=20)

        stops = []
        for i, price in enumerate(prices):
            commander.evaluate(tick("M", price, now + timedelta(minutes=i)))
            state = commander.get_trailing_state("M")
            if state.active:
                stops.append(state.stop_price)

        assert len(stops) >= 2
        pairs = list(zip(stops, stops[1:]))
        if direction == Direction.LONG:
            assert all(b >= a for a, b in pairs)
        else:
            assert all(b <= a for a, b in pairs)


class TestExitCategories:

    def test_option_theta_acceleration(self, commander, now):
        commander.register_position(
            "OPT", "NIFTY24MAR22000CE", Direction.LONG, 100, now,
            is_option=True, atr=5, greeks=OptionGreeks(theta=-3, iv=18, oi=50_000),
        )

        signal = commander.evaluate(tick("OPT", 100, now, greeks=OptionGreeks(theta=-8, iv=14, oi=50_000)))

        assert signal.category == ExitCategory.OPTION
        assert signal.subtype == ExitSubtype.THETA_ACCEL
        assert {c.subtype for c in signal.conditions} == {ExitSubtype.THETA_ACCEL, ExitSubtype.IV_CRUSH}

    def test_option_checks_skipped_for_equities(self, commander, now):
        commander.register_position("EQ", "EQ", Direction.LONG, 100, now, atr=5,
                                    greeks=OptionGreeks(theta=-3, iv=18))

        assert commander.evaluate(tick("EQ", 100, now, greeks=OptionGreeks(theta=-8, iv=14))) is None

    def test_oi_reversal_long_only(self, commander, now):
        greeks = OptionGreeks(theta=-3, iv=18, oi=10_000)
        commander.register_position("CE", "CE", Direction.LONG, 100, now, is_option=True, atr=5, greeks=greeks)
        commander.register_position("PE", "PE", Direction.SHORT, 100, now, is_option=True, atr=5, greeks=greeks)
        current = OptionGreeks(theta=-3, iv=18, oi=8_000)

        long_signal = commander.evaluate(tick("CE", 100, now, greeks=current))
        short_signal = commander.evaluate(tick("PE", 100, now, greeks=current))

        assert long_signal.subtype == ExitSubtype.OI_REVERSAL
        assert short_signal is None

    def test_priority_structural_over_trailing_over_option_over_regime(self, commander, now):
        commander.register_position(
            "P", "P", Direction.LONG, 1600, now, is_option=True, atr=25,
            regime=Regime.TREND_DAY, greeks=OptionGreeks(theta=-3, iv=18),
        )
        commander.evaluate(tick("P", 1660, now))

        crash = dict(greeks=OptionGreeks(theta=-8, iv=18), regime=Regime.RANGE_DAY)
        signal = commander.evaluate(tick("P", 1615, now, **crash))
        categories = [c.category for c in signal.conditions]
        assert signal.category == ExitCategory.TRAILING
        assert categories == sorted(categories, key=lambda c: c.rank)
        assert ExitCategory.OPTION in categories and ExitCategory.REGIME in categories

        ignition = IgnitionSignal(direction=Direction.SHORT, strength=75)
        signal = commander.evaluate(tick("P", 1614, now, ignition=ignition, **crash))
        assert signal.category == ExitCategory.STRUCTURAL
        assert signal.subtype == ExitSubtype.OPPOSITE_IGNITION
        assert signal.priority == ExitPriority.CRITICAL

    def test_regime_only_fires_last(self, commander, now):
        commander.register_position("R", "R", Direction.LONG, 100, now, atr=5, regime=Regime.TREND_DAY)

        signal = commander.evaluate(tick("R", 100, now, regime=Regime.COMPRESSION))

        assert signal.category == ExitCategory.REGIME
        assert signal.subtype == ExitSubtype.REGIME_SHIFT

    def test_panic_day_always_exits(self, commander, now):
        commander.register_position("R", "R", Direction.SHORT, 100, now, atr=5, regime=Regime.RANGE_DAY)

        signal = commander.evaluate(tick("R", 100, now, regime=Regime.PANIC_DAY))

        assert signal.priority == ExitPriority.CRITICAL

    def test_vwap_break_needs_profit(self, commander, now):
        commander.register_position("V", "V", Direction.LONG, 100, now, atr=5)

        # losing position: VWAP break ignored
        assert commander.evaluate(tick("V", 99, now, vwap=101)) is None

        commander.evaluate(tick("V", 102, now))
        signal = commander.evaluate(tick("V", 101, now, vwap=102))
        assert signal.subtype == ExitSubtype.VWAP_BREAK

    def test_swing_low_break(self, commander, now):
        closes = [100, 101, 102, 101, 99, 100, 101, 102, 103, 102,
                  101, 100.5, 101, 102, 103, 104, 103, 102, 103, 104]
        candles = make_candles(closes, spread=0.2)
        commander.register_position("S", "S", Direction.LONG, 104, now, atr=50)

        signal = commander.evaluate(tick("S", 99.5, now, candles_5m=candles))

        assert signal.category == ExitCategory.STRUCTURAL
        assert signal.subtype == ExitSubtype.SWING_BREAK

    def test_volatility_and_breadth_collapse(self, commander, now):
        commander.register_position("B", "B", Direction.LONG, 100, now, atr=5, volatility=50)

        signal = commander.evaluate(tick("B", 100, now, volatility=15, breadth=25))

        subtypes = {c.subtype for c in signal.conditions}
        assert subtypes == {ExitSubtype.VOL_COLLAPSE, ExitSubtype.BREADTH_COLLAPSE}


class TestLifecycle:

    def test_water_marks_update_every_tick(self, commander, now):
        commander.register_position("W", "W", Direction.LONG, 100, now, atr=5)
        for price in (101, 99, 100.5):
            commander.evaluate(tick("W", price, now))

        position = commander.get_position("W")
        assert position.high_water == 101
        assert position.low_water == 99
        assert position.pnl_pct == pytest.approx(0.5)
        assert position.max_pnl_pct == pytest.approx(1.0)

    def test_close_moves_to_history(self, commander, now):
        commander.register_position("C", "C", Direction.LONG, 100, now, atr=5)

        closed = commander.close_position("C", 103, now)

        assert closed.status == PositionStatus.CLOSED
        assert closed.final_pnl_pct == pytest.approx(3.0)
        assert commander.get_position("C") is None
        assert commander.get_trailing_state("C") is None
        assert commander.get_exit_history() == [closed]

    def test_tick_and_close_after_close_are_noops(self, commander, now):
        commander.register_position("C", "C", Direction.LONG, 100, now, atr=5)
        commander.close_position("C", 101, now)

        assert commander.evaluate(tick("C", 90, now)) is None
        assert commander.close_position("C", 90, now) is None
        assert len(commander.get_exit_history()) == 1

    def test_unusable_tick_rejected(self, commander, now):
        commander.register_position("C", "C", Direction.LONG, 100, now, atr=5)

        with pytest.raises(InvalidInputError):
            commander.evaluate(tick("C", 0, now))
        with pytest.raises(InvalidInputError):
            commander.evaluate(tick("C", float("inf"), now))

    def test_invalid_entry_price_rejected(self, commander, now):
        with pytest.raises(InvalidInputError):
            commander.register_position("C", "C", Direction.LONG, -1, now)

    def test_pending_signals_and_stats(self, commander, now):
        commander.register_position("A", "A", Direction.LONG, 100, now, atr=5, regime=Regime.TREND_DAY)
        commander.register_position("B", "B", Direction.LONG, 100, now, atr=5)

        commander.evaluate(tick("A", 100, now, regime=Regime.RANGE_DAY))
        assert [s.token for s in commander.get_pending_exit_signals()] == ["A"]

        commander.close_position("A", 98, now)
        commander.close_position("B", 104, now)

        stats = commander.get_stats()
        assert stats["total_exits"] == 2
        assert stats["win_rate"] == 50.0
        assert stats["avg_win_pct"] == 4.0
        assert stats["avg_loss_pct"] == 2.0
        assert stats["profit_factor"] == 2.0
        assert stats["exits_by_category"]["REGIME"] == 1
        assert stats["pending_exit_signals"] == 0

    def test_reset_daily_keeps_history(self, commander, now):
        commander.register_position("A", "A", Direction.LONG, 100, now, atr=5)
        commander.register_position("B", "B", Direction.LONG, 100, now, atr=5)
        commander.close_position("A", 101, now)

        commander.reset_daily()

        assert commander.get_active_positions() == []
        assert len(commander.get_exit_history()) == 1
