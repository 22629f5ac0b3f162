"""
risk/exit_commander.py

Post-entry exit state machine (ACTIVE -> CLOSED).

Every market update re-evaluates an active position across four exit
categories:

    STRUCTURAL  swing-level break, VWAP break (in profit only), opposite ignition
    TRAILING    ATR trailing stop (after minimum profit), higher-low / lower-high break
    OPTION      theta acceleration, IV crush, OI reversal (options only)
    REGIME      adverse regime shift or PANIC_DAY, volatility collapse, breadth collapse

All triggered conditions are kept for audit; the emitted exit is the first in
category priority STRUCTURAL > TRAILING > OPTION > REGIME.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from config import GateConfig
from core import candles as candle_math
from core.contracts import (
    Direction,
    ExitCategory,
    ExitCondition,
    ExitPriority,
    ExitSignal,
    ExitSubtype,
    MarketTick,
    OptionGreeks,
    Position,
    PositionStatus,
    Regime,
    TrailingStopState,
)
from core.exceptions import InvalidInputError
from risk.regime_classifier import RegimeClassifier

logger = logging.getLogger(__name__)


@dataclass
class ExitConfig:
    swing_break_buffer: float = field(default_factory=lambda: GateConfig.SWING_BREAK_BUFFER)
    swing_min_bars: int = field(default_factory=lambda: GateConfig.SWING_MIN_BARS)
    swing_pattern_bars: int = field(default_factory=lambda: GateConfig.SWING_PATTERN_BARS)
    swing_pattern_window: int = field(default_factory=lambda: GateConfig.SWING_PATTERN_WINDOW)
    swing_pattern_buffer: float = field(default_factory=lambda: GateConfig.SWING_PATTERN_BUFFER)
    vwap_break_buffer: float = field(default_factory=lambda: GateConfig.VWAP_BREAK_BUFFER)
    vwap_min_profit_pct: float = field(default_factory=lambda: GateConfig.VWAP_MIN_PROFIT_PCT)
    ignition_min_strength: float = field(default_factory=lambda: GateConfig.IGNITION_MIN_STRENGTH)
    atr_trail_multiplier: float = field(default_factory=lambda: GateConfig.ATR_TRAIL_MULTIPLIER)
    min_profit_to_trail: float = field(default_factory=lambda: GateConfig.MIN_PROFIT_TO_TRAIL)
    fallback_atr_pct: float = field(default_factory=lambda: GateConfig.FALLBACK_ATR_PCT)
    volatility_collapse_ratio: float = field(default_factory=lambda: GateConfig.VOLATILITY_COLLAPSE_RATIO)
    breadth_collapse_pct: float = field(default_factory=lambda: GateConfig.BREADTH_COLLAPSE_PCT)
    theta_acceleration_ratio: float = field(default_factory=lambda: GateConfig.THETA_ACCELERATION_RATIO)
    iv_crush_pct: float = field(default_factory=lambda: GateConfig.IV_CRUSH_PCT)
    oi_reversal_pct: float = field(default_factory=lambda: GateConfig.OI_REVERSAL_PCT)
    history_size: int = field(default_factory=lambda: GateConfig.EXIT_HISTORY_SIZE)
    adverse_shifts: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in GateConfig.ADVERSE_REGIME_SHIFTS.items()}
    )


class ExitCommander:
    """Tracks active positions and emits exit signals."""

    def __init__(
        self,
        config: Optional[ExitConfig] = None,
        regime_classifier: Optional[RegimeClassifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ExitConfig()
        self.regime_classifier = regime_classifier
        self._clock = clock

        self._lock = threading.RLock()
        self._positions: Dict[str, Position] = {}
        self._trailing: Dict[str, TrailingStopState] = {}
        self._position_locks: Dict[str, threading.Lock] = {}
        self._pending: Dict[str, ExitSignal] = {}
        self._history: Deque[Position] = deque(maxlen=self.config.history_size)

    # ── registration ───────────────────────────────────────────────────────

    def register_position(
        self,
        token: str,
        symbol: str,
        direction: Direction,
        entry_price: float,
        entry_time: Optional[datetime] = None,
        quantity: float = 1.0,
        is_option: bool = False,
        regime: Optional[Regime] = None,
        volatility: float = 0.0,
        atr: Optional[float] = None,
        vwap: Optional[float] = None,
        greeks: Optional[OptionGreeks] = None,
        candles: Optional[Any] = None,
    ) -> Position:
        """
        Start monitoring a position.

        The entry ATR is `atr`, else the ATR of `candles`, else
        entry_price x fallback_atr_pct.
        """
        if entry_price is None or not math.isfinite(entry_price) or entry_price <= 0:
            raise InvalidInputError(
                "INVALID_ENTRY_PRICE",
                f"Cannot track {symbol} with entry price {entry_price!r}",
                {"token": token, "entry_price": entry_price},
            )
        entry_time = entry_time or self._clock()
        if regime is None:
            regime = self.regime_classifier.current_regime if self.regime_classifier else Regime.UNKNOWN

        entry_atr = atr
        if not entry_atr and candles is not None:
            entry_atr = candle_math.average_true_range(candle_math.to_frame(candles))
        if not entry_atr or entry_atr <= 0:
            entry_atr = entry_price * self.config.fallback_atr_pct

        greeks = greeks or OptionGreeks()
        position = Position(
            token=token,
            symbol=symbol,
            direction=direction,
            entry_price=entry_price,
            entry_time=entry_time,
            quantity=quantity,
            is_option=is_option,
            entry_regime=regime,
            entry_volatility=volatility or 0.0,
            entry_atr=entry_atr,
            entry_vwap=vwap or entry_price,
            entry_theta=greeks.theta,
            entry_iv=greeks.iv,
            entry_oi=greeks.oi,
            last_update=entry_time,
        )

        distance = entry_atr * self.config.atr_trail_multiplier
        initial_stop = entry_price - distance if direction == Direction.LONG else entry_price + distance
        trailing = TrailingStopState(stop_price=initial_stop, water_mark=entry_price, atr=entry_atr)

        with self._lock:
            if token in self._positions:
                logger.warning(f"Position {token} already tracked; replacing")
            self._positions[token] = position
            self._trailing[token] = trailing
            self._position_locks.setdefault(token, threading.Lock())
            self._pending.pop(token, None)

        logger.info(
            f"📍 Exit tracking: {symbol} {direction.value} @ {entry_price} "
            f"atr={entry_atr:.2f} stop={initial_stop:.2f} regime={regime.value}"
        )
        return position

    # ── evaluation ─────────────────────────────────────────────────────────

    def evaluate(self, tick: MarketTick) -> Optional[ExitSignal]:
        """
        Update tracking for tick.token and check every exit condition.

        Returns the primary ExitSignal, or None when nothing fired or the
        position is no longer active.

        Raises:
            InvalidInputError: the tick price is missing, non-finite or <= 0.
        """
        if tick.ltp is None or not math.isfinite(tick.ltp) or tick.ltp <= 0:
            raise InvalidInputError(
                "INVALID_TICK",
                f"Tick for {tick.token} has unusable price {tick.ltp!r}",
                {"token": tick.token, "ltp": tick.ltp},
            )

        with self._lock:
            position_lock = self._position_locks.get(tick.token)
        if position_lock is None:
            logger.debug(f"No active position for {tick.token}; ignoring tick")
            return None

        with position_lock:
            with self._lock:
                position = self._positions.get(tick.token)
                trailing = self._trailing.get(tick.token)
            if position is None or trailing is None or position.status != PositionStatus.ACTIVE:
                logger.debug(f"Position {tick.token} not active; ignoring tick")
                return None

            now = tick.timestamp or self._clock()
            self._update_tracking(position, trailing, tick.ltp, now)
            conditions = self._collect_conditions(position, trailing, tick)
            if not conditions:
                return None

            conditions.sort(key=lambda c: c.category.rank)
            primary = conditions[0]
            signal = ExitSignal(
                token=position.token,
                symbol=position.symbol,
                direction=position.direction,
                category=primary.category,
                subtype=primary.subtype,
                reason=primary.reason,
                priority=primary.priority,
                entry_price=position.entry_price,
                price=tick.ltp,
                pnl_pct=position.pnl_pct,
                max_pnl_pct=position.max_pnl_pct,
                conditions=conditions,
                timestamp=now,
            )
            position.exit_signal = signal
            with self._lock:
                self._pending[position.token] = signal

        logger.warning(
            f"🚪 Exit signal: {position.symbol} {signal.category.value}:{signal.subtype.value} "
            f"| pnl={position.pnl_pct:.2f}% | {signal.reason}"
        )
        return signal

    def _update_tracking(self, position: Position, trailing: TrailingStopState, price: float, now: datetime):
        position.last_price = price
        position.last_update = now
        position.high_water = max(position.high_water, price)
        position.low_water = min(position.low_water, price)
        position.pnl_pct = position.pnl_at(price)
        if position.direction == Direction.LONG:
            position.max_pnl_pct = position.pnl_at(position.high_water)
        else:
            position.max_pnl_pct = position.pnl_at(position.low_water)

        if position.direction == Direction.LONG:
            trailing.water_mark = max(trailing.water_mark, price)
        else:
            trailing.water_mark = min(trailing.water_mark, price)

        if not trailing.active and position.pnl_pct >= self.config.min_profit_to_trail:
            trailing.active = True
            trailing.activated_at = now
            logger.info(f"Trailing stop active: {position.symbol} at pnl {position.pnl_pct:.2f}%")

        if trailing.active:
            distance = trailing.atr * self.config.atr_trail_multiplier
            if position.direction == Direction.LONG:
                trailing.stop_price = max(trailing.stop_price, trailing.water_mark - distance)
            else:
                trailing.stop_price = min(trailing.stop_price, trailing.water_mark + distance)

    def _collect_conditions(
        self,
        position: Position,
        trailing: TrailingStopState,
        tick: MarketTick,
    ) -> List[ExitCondition]:
        candles = candle_math.to_frame(tick.candles_5m) if tick.candles_5m is not None else None
        regime = tick.regime
        if regime is None and self.regime_classifier is not None:
            regime = self.regime_classifier.current_regime

        checks = [
            self._check_swing_break(position, candles, tick.ltp),
            self._check_vwap_break(position, tick.vwap, tick.ltp),
            self._check_opposite_ignition(position, tick),
            self._check_trailing_stop(position, trailing, tick.ltp),
            self._check_swing_pattern(position, candles, tick.ltp),
            self._check_regime_shift(position, regime),
            self._check_volatility_collapse(position, tick.volatility),
            self._check_breadth_collapse(position, tick.breadth),
        ]
        if position.is_option and tick.greeks is not None:
            checks += [
                self._check_theta_acceleration(position, tick.greeks.theta),
                self._check_iv_crush(position, tick.greeks.iv),
                self._check_oi_reversal(position, tick.greeks.oi),
            ]
        return [c for c in checks if c is not None]

    # ── STRUCTURAL ─────────────────────────────────────────────────────────

    def _check_swing_break(self, position: Position, candles, ltp: float) -> Optional[ExitCondition]:
        if candles is None or len(candles) < self.config.swing_min_bars:
            return None
        swing_high, swing_low = candle_math.last_swing_levels(
            candles["high"].to_numpy(dtype=float), candles["low"].to_numpy(dtype=float)
        )
        buffer = position.entry_price * self.config.swing_break_buffer
        if position.direction == Direction.LONG and ltp < swing_low - buffer:
            return ExitCondition(
                ExitCategory.STRUCTURAL,
                ExitSubtype.SWING_BREAK,
                f"SWING_LOW_BREAK: price {ltp:.2f} < swing low {swing_low:.2f}",
                ExitPriority.HIGH,
                {"level": swing_low},
            )
        if position.direction == Direction.SHORT and ltp > swing_high + buffer:
            return ExitCondition(
                ExitCategory.STRUCTURAL,
                ExitSubtype.SWING_BREAK,
                f"SWING_HIGH_BREAK: price {ltp:.2f} > swing high {swing_high:.2f}",
                ExitPriority.HIGH,
                {"level": swing_high},
            )
        return None

    def _check_vwap_break(self, position: Position, vwap: Optional[float], ltp: float) -> Optional[ExitCondition]:
        if not vwap or vwap <= 0:
            return None
        if position.pnl_pct < self.config.vwap_min_profit_pct:
            return None
        buffer = vwap * self.config.vwap_break_buffer
        if position.direction == Direction.LONG and ltp < vwap - buffer:
            return ExitCondition(
                ExitCategory.STRUCTURAL,
                ExitSubtype.VWAP_BREAK,
                f"VWAP_BREAK_DOWN: price {ltp:.2f} < VWAP {vwap:.2f}",
                ExitPriority.MEDIUM,
                {"vwap": vwap},
            )
        if position.direction == Direction.SHORT and ltp > vwap + buffer:
            return ExitCondition(
                ExitCategory.STRUCTURAL,
                ExitSubtype.VWAP_BREAK,
                f"VWAP_BREAK_UP: price {ltp:.2f} > VWAP {vwap:.2f}",
                ExitPriority.MEDIUM,
                {"vwap": vwap},
            )
        return None

    def _check_opposite_ignition(self, position: Position, tick: MarketTick) -> Optional[ExitCondition]:
        ignition = tick.ignition
        if ignition is None or ignition.direction == position.direction:
            return None
        if ignition.strength < self.config.ignition_min_strength:
            return None
        return ExitCondition(
            ExitCategory.STRUCTURAL,
            ExitSubtype.OPPOSITE_IGNITION,
            f"OPPOSITE_IGNITION: {ignition.direction.value} ignition (strength {ignition.strength:.0f})",
            ExitPriority.CRITICAL,
            {"strength": ignition.strength},
        )

    # ── TRAILING ───────────────────────────────────────────────────────────

    def _check_trailing_stop(
        self, position: Position, trailing: TrailingStopState, ltp: float
    ) -> Optional[ExitCondition]:
        if not trailing.active:
            return None
        stop = trailing.stop_price
        if position.direction == Direction.LONG and ltp <= stop:
            reason = f"TRAILING_STOP_HIT: price {ltp:.2f} <= stop {stop:.2f}"
        elif position.direction == Direction.SHORT and ltp >= stop:
            reason = f"TRAILING_STOP_HIT: price {ltp:.2f} >= stop {stop:.2f}"
        else:
            return None
        return ExitCondition(
            ExitCategory.TRAILING,
            ExitSubtype.ATR_TRAIL,
            reason,
            ExitPriority.HIGH,
            {"stop_price": stop, "water_mark": trailing.water_mark},
        )

    def _check_swing_pattern(self, position: Position, candles, ltp: float) -> Optional[ExitCondition]:
        bars = self.config.swing_pattern_bars
        if candles is None or len(candles) < bars:
            return None
        recent = candles.tail(bars)
        higher_lows, lower_highs = candle_math.swing_pattern(
            recent["high"].to_numpy(dtype=float),
            recent["low"].to_numpy(dtype=float),
            self.config.swing_pattern_window,
        )
        buffer = self.config.swing_pattern_buffer
        if position.direction == Direction.LONG and len(higher_lows) >= 2:
            level = higher_lows[-1]
            if ltp < level * (1 - buffer):
                return ExitCondition(
                    ExitCategory.TRAILING,
                    ExitSubtype.SWING_PATTERN,
                    f"HIGHER_LOW_BREAK: price {ltp:.2f} broke HL {level:.2f}",
                    ExitPriority.MEDIUM,
                    {"level": level},
                )
        if position.direction == Direction.SHORT and len(lower_highs) >= 2:
            level = lower_highs[-1]
            if ltp > level * (1 + buffer):
                return ExitCondition(
                    ExitCategory.TRAILING,
                    ExitSubtype.SWING_PATTERN,
                    f"LOWER_HIGH_BREAK: price {ltp:.2f} broke LH {level:.2f}",
                    ExitPriority.MEDIUM,
                    {"level": level},
                )
        return None

    # ── REGIME ─────────────────────────────────────────────────────────────

    def _check_regime_shift(self, position: Position, regime: Optional[Regime]) -> Optional[ExitCondition]:
        if regime is None:
            return None
        adverse = self.config.adverse_shifts.get(position.entry_regime.value, [])
        if regime.value in adverse:
            return ExitCondition(
                ExitCategory.REGIME,
                ExitSubtype.REGIME_SHIFT,
                f"REGIME_SHIFT: {position.entry_regime.value} → {regime.value}",
                ExitPriority.MEDIUM,
                {"entry_regime": position.entry_regime.value, "regime": regime.value},
            )
        if regime == Regime.PANIC_DAY:
            return ExitCondition(
                ExitCategory.REGIME,
                ExitSubtype.REGIME_SHIFT,
                "PANIC_REGIME: market entered PANIC_DAY",
                ExitPriority.CRITICAL,
                {"entry_regime": position.entry_regime.value, "regime": regime.value},
            )
        return None

    def _check_volatility_collapse(self, position: Position, volatility: Optional[float]) -> Optional[ExitCondition]:
        if not volatility or position.entry_volatility <= 0:
            return None
        ratio = volatility / position.entry_volatility
        if ratio > self.config.volatility_collapse_ratio:
            return None
        return ExitCondition(
            ExitCategory.REGIME,
            ExitSubtype.VOL_COLLAPSE,
            f"VOLATILITY_COLLAPSE: volatility down {(1 - ratio) * 100:.1f}%",
            ExitPriority.MEDIUM,
            {"ratio": ratio},
        )

    def _check_breadth_collapse(self, position: Position, breadth: Optional[float]) -> Optional[ExitCondition]:
        if breadth is None or position.direction != Direction.LONG:
            return None
        if breadth >= self.config.breadth_collapse_pct:
            return None
        return ExitCondition(
            ExitCategory.REGIME,
            ExitSubtype.BREADTH_COLLAPSE,
            f"BREADTH_COLLAPSE: breadth {breadth:.1f}% < {self.config.breadth_collapse_pct}%",
            ExitPriority.HIGH,
            {"breadth": breadth},
        )

    # ── OPTION ─────────────────────────────────────────────────────────────

    def _check_theta_acceleration(self, position: Position, theta: Optional[float]) -> Optional[ExitCondition]:
        if not theta or not position.entry_theta:
            return None
        ratio = abs(theta / position.entry_theta)
        if ratio < self.config.theta_acceleration_ratio:
            return None
        return ExitCondition(
            ExitCategory.OPTION,
            ExitSubtype.THETA_ACCEL,
            f"THETA_ACCELERATION: decay {ratio:.2f}x entry",
            ExitPriority.HIGH,
            {"ratio": ratio},
        )

    def _check_iv_crush(self, position: Position, iv: Optional[float]) -> Optional[ExitCondition]:
        if not iv or not position.entry_iv or position.entry_iv <= 0:
            return None
        drop = (position.entry_iv - iv) / position.entry_iv * 100
        if drop < self.config.iv_crush_pct:
            return None
        return ExitCondition(
            ExitCategory.OPTION,
            ExitSubtype.IV_CRUSH,
            f"IV_CRUSH: IV down {drop:.1f}%",
            ExitPriority.HIGH,
            {"drop_pct": drop},
        )

    def _check_oi_reversal(self, position: Position, oi: Optional[float]) -> Optional[ExitCondition]:
        if position.direction != Direction.LONG:
            return None
        if not oi or not position.entry_oi or position.entry_oi <= 0:
            return None
        change = (oi - position.entry_oi) / position.entry_oi * 100
        if change > -self.config.oi_reversal_pct:
            return None
        return ExitCondition(
            ExitCategory.OPTION,
            ExitSubtype.OI_REVERSAL,
            f"OI_REVERSAL: OI down {abs(change):.1f}%",
            ExitPriority.MEDIUM,
            {"change_pct": change},
        )

    # ── close ──────────────────────────────────────────────────────────────

    def close_position(
        self,
        token: str,
        exit_price: float,
        now: Optional[datetime] = None,
    ) -> Optional[Position]:
        """
        Close a position and move it to history.

        Closing a position that is not active is a no-op returning None.
        """
        now = now or self._clock()
        with self._lock:
            position_lock = self._position_locks.get(token)
        if position_lock is None:
            logger.debug(f"close_position: {token} not active")
            return None

        with position_lock:
            with self._lock:
                position = self._positions.pop(token, None)
                if position is None:
                    logger.debug(f"close_position: {token} not active")
                    return None
                self._trailing.pop(token, None)
                self._pending.pop(token, None)
                self._position_locks.pop(token, None)

                position.status = PositionStatus.CLOSED
                position.exit_price = exit_price
                position.exit_time = now
                position.final_pnl_pct = position.pnl_at(exit_price)
                self._history.append(position)

        logger.info(f"✅ Position closed: {position.symbol} | pnl={position.final_pnl_pct:.2f}%")
        return position

    # ── queries ────────────────────────────────────────────────────────────

    def get_position(self, token: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(token)
            return replace(position) if position else None

    def get_trailing_state(self, token: str) -> Optional[TrailingStopState]:
        with self._lock:
            trailing = self._trailing.get(token)
            return replace(trailing) if trailing else None

    def get_active_positions(self) -> List[Position]:
        with self._lock:
            return [replace(p) for p in self._positions.values()]

    def get_pending_exit_signals(self) -> List[ExitSignal]:
        with self._lock:
            return list(self._pending.values())

    def get_exit_history(self, count: int = 50) -> List[Position]:
        with self._lock:
            if count <= 0:
                return []
            return list(self._history)[-count:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            history = list(self._history)
            active = len(self._positions)
            pending = len(self._pending)

        pnls = np.array([p.final_pnl_pct or 0.0 for p in history], dtype=float)
        wins = pnls[pnls > 0]
        losses = pnls[pnls <= 0]
        gross_loss = abs(float(losses.sum()))
        by_category = Counter({c.value: 0 for c in ExitCategory})
        for position in history:
            if position.exit_signal is not None:
                by_category[position.exit_signal.category.value] += 1

        return {
            "active_positions": active,
            "pending_exit_signals": pending,
            "total_exits": len(history),
            "win_rate": round(len(wins) / len(history) * 100, 1) if history else None,
            "avg_win_pct": round(float(wins.mean()), 2) if len(wins) else 0.0,
            "avg_loss_pct": round(abs(float(losses.mean())), 2) if len(losses) else 0.0,
            "profit_factor": round(float(wins.sum()) / gross_loss, 2) if gross_loss > 0 else None,
            "exits_by_category": dict(by_category),
        }

    def reset_daily(self):
        """Drop all active state; exit history is kept."""
        with self._lock:
            self._positions.clear()
            self._trailing.clear()
            self._pending.clear()
            self._position_locks.clear()
        logger.info("Exit commander daily reset complete")
