"""
risk/portfolio_commander.py

Portfolio-level risk commander:
- max simultaneous positions, per-sector and per-underlying caps
- sector correlation with open positions (downgrade, then block)
- capital-at-risk exposure cap per regime
- daily loss limit
- loss streak lock (N consecutive losses freeze admissions for a cooldown)

Also owns the simplified position book used for exposure accounting.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import GateConfig
from core.contracts import (
    CheckResult,
    ClosedTrade,
    CorrelationRisk,
    GuardAction,
    GuardPipelineResult,
    PortfolioPosition,
    Regime,
    Signal,
)
from core.exceptions import ConfigurationError, ReasonCode

logger = logging.getLogger(__name__)


@dataclass
class PortfolioConfig:
    max_positions: int = field(default_factory=lambda: GateConfig.MAX_SIMULTANEOUS_TRADES)
    max_per_sector: int = field(default_factory=lambda: GateConfig.MAX_TRADES_PER_SECTOR)
    max_per_underlying: int = field(default_factory=lambda: GateConfig.MAX_TRADES_PER_UNDERLYING)
    high_correlation_threshold: float = field(default_factory=lambda: GateConfig.HIGH_CORRELATION_THRESHOLD)
    max_high_correlation_pairs: int = field(default_factory=lambda: GateConfig.MAX_HIGH_CORRELATION_PAIRS)
    default_correlation: float = field(default_factory=lambda: GateConfig.DEFAULT_PAIR_CORRELATION)
    correlation_downgrade: float = field(default_factory=lambda: GateConfig.CORRELATION_DOWNGRADE)
    loss_streak_lock: int = field(default_factory=lambda: GateConfig.LOSS_STREAK_LOCK)
    lock_duration_minutes: float = field(default_factory=lambda: GateConfig.LOCK_DURATION_MINUTES)
    loss_streak_warning: int = field(default_factory=lambda: GateConfig.LOSS_STREAK_WARNING)
    loss_streak_downgrade: float = field(default_factory=lambda: GateConfig.LOSS_STREAK_DOWNGRADE)
    daily_loss_limit_pct: float = field(default_factory=lambda: GateConfig.DAILY_LOSS_LIMIT_PCT)
    max_risk_per_trade_pct: float = field(default_factory=lambda: GateConfig.MAX_RISK_PER_TRADE_PCT)
    total_capital: float = field(default_factory=lambda: GateConfig.TOTAL_CAPITAL)
    exposure_limits: Dict[str, float] = field(default_factory=lambda: dict(GateConfig.EXPOSURE_LIMITS))
    sector_correlations: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in GateConfig.SECTOR_CORRELATIONS.items()}
    )

    def __post_init__(self):
        if self.total_capital <= 0:
            raise ConfigurationError(
                code="INVALID_CAPITAL",
                message=f"total_capital must be positive, got {self.total_capital}",
            )
        if Regime.UNKNOWN.value not in self.exposure_limits:
            raise ConfigurationError(
                code="MISSING_EXPOSURE_LIMIT",
                message="exposure_limits must include UNKNOWN",
                context={"regimes": sorted(self.exposure_limits)},
            )


class PortfolioCommander:
    """Portfolio constraints plus position/streak/lock bookkeeping."""

    def __init__(
        self,
        config: Optional[PortfolioConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or PortfolioConfig()
        self._clock = clock
        self._lock = threading.RLock()

        self._positions: Dict[str, PortfolioPosition] = {}
        self._closed_today: List[ClosedTrade] = []
        self.consecutive_losses = 0
        self.consecutive_wins = 0
        self.last_trade_result: Optional[str] = None

        self._locked = False
        self.lock_until: Optional[datetime] = None
        self.lock_reason: Optional[str] = None

        self.daily_pnl = 0.0
        self.total_exposure = 0.0

    # ── correlation table ──────────────────────────────────────────────────

    def correlation(self, sector_a: Optional[str], sector_b: Optional[str]) -> float:
        """Symmetric sector correlation; unknown pairs get the default low value."""
        if not sector_a or not sector_b:
            return 0.0
        a, b = sector_a.upper(), sector_b.upper()
        if a == b:
            return 1.0
        table = self.config.sector_correlations
        value = table.get(a, {}).get(b)
        if value is None:
            value = table.get(b, {}).get(a)
        return float(value) if value is not None else self.config.default_correlation

    def _correlated_positions(self, sector: Optional[str]) -> List[Tuple[str, float]]:
        correlated = []
        for position in self._positions.values():
            corr = self.correlation(sector, position.sector)
            if corr >= self.config.high_correlation_threshold:
                correlated.append((position.symbol, corr))
        return correlated

    def correlation_risk(self, sector: Optional[str]) -> CorrelationRisk:
        with self._lock:
            correlated = self._correlated_positions(sector)
        return CorrelationRisk(
            high_risk=bool(correlated),
            correlated_count=len(correlated),
            max_correlation=max((c for _, c in correlated), default=0.0),
        )

    def risk_amount_for(self, signal: Signal) -> float:
        """Signal's own risk amount, else price x quantity x max-risk-per-trade %."""
        if signal.risk_amount is not None:
            return float(signal.risk_amount)
        return signal.price * (signal.quantity or 1.0) * self.config.max_risk_per_trade_pct / 100

    # ── lock ───────────────────────────────────────────────────────────────

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """Current lock state; an expired lock is cleared on read."""
        now = now or self._clock()
        with self._lock:
            if self._locked and self.lock_until is not None and now > self.lock_until:
                logger.info(f"🔓 Portfolio lock expired ({self.lock_reason})")
                self._locked = False
                self.lock_until = None
                self.lock_reason = None
            return self._locked

    def trigger_lock(self, reason: str, now: Optional[datetime] = None):
        now = now or self._clock()
        with self._lock:
            self._locked = True
            self.lock_until = now + timedelta(minutes=self.config.lock_duration_minutes)
            self.lock_reason = reason
        logger.warning(f"🔒 Portfolio locked: {reason} | until {self.lock_until.isoformat()}")

    def unlock(self):
        """Manual unlock."""
        with self._lock:
            self._locked = False
            self.lock_until = None
            self.lock_reason = None
        logger.warning("🔓 Portfolio unlocked manually")

    # ── individual checks ──────────────────────────────────────────────────

    def check_lock_status(self, now: Optional[datetime] = None) -> CheckResult:
        now = now or self._clock()
        with self._lock:
            if not self.is_locked(now):
                return CheckResult.passed("LOCK_STATUS")
            remaining = round((self.lock_until - now).total_seconds() / 60) if self.lock_until else 0
            return CheckResult.blocked(
                "LOCK_STATUS",
                ReasonCode.PORTFOLIO_LOCKED,
                f"PORTFOLIO_LOCKED: {self.lock_reason} ({remaining} min remaining)",
            )

    def check_position_count(self) -> CheckResult:
        with self._lock:
            active = len(self._positions)
        if active >= self.config.max_positions:
            return CheckResult.blocked(
                "POSITION_COUNT",
                ReasonCode.MAX_POSITIONS,
                f"MAX_POSITIONS: {active}/{self.config.max_positions} trades active",
            )
        return CheckResult.passed("POSITION_COUNT", f"{active}/{self.config.max_positions} active")

    def check_sector_concentration(self, sector: Optional[str]) -> CheckResult:
        if not sector:
            return CheckResult.passed("SECTOR_CONCENTRATION", "no sector")
        with self._lock:
            count = sum(1 for p in self._positions.values() if p.sector == sector)
        if count >= self.config.max_per_sector:
            return CheckResult.blocked(
                "SECTOR_CONCENTRATION",
                ReasonCode.SECTOR_LIMIT,
                f"SECTOR_CONCENTRATION: {count}/{self.config.max_per_sector} trades in {sector}",
            )
        return CheckResult.passed("SECTOR_CONCENTRATION", f"{count}/{self.config.max_per_sector} in {sector}")

    def check_underlying_concentration(self, underlying: Optional[str]) -> CheckResult:
        if not underlying:
            return CheckResult.passed("UNDERLYING_CONCENTRATION", "no underlying")
        with self._lock:
            count = sum(1 for p in self._positions.values() if p.underlying == underlying)
        if count >= self.config.max_per_underlying:
            return CheckResult.blocked(
                "UNDERLYING_CONCENTRATION",
                ReasonCode.UNDERLYING_LIMIT,
                f"UNDERLYING_CONCENTRATION: {count}/{self.config.max_per_underlying} trades on {underlying}",
            )
        return CheckResult.passed(
            "UNDERLYING_CONCENTRATION", f"{count}/{self.config.max_per_underlying} on {underlying}"
        )

    def check_correlation(self, sector: Optional[str]) -> CheckResult:
        with self._lock:
            correlated = self._correlated_positions(sector)
        count = len(correlated)
        if count == 0:
            return CheckResult.passed("CORRELATION")
        if count >= self.config.max_high_correlation_pairs:
            return CheckResult.blocked(
                "CORRELATION",
                ReasonCode.CORRELATION_LIMIT,
                f"CORRELATION_LIMIT: {count}/{self.config.max_high_correlation_pairs} max correlated pairs",
            )
        return CheckResult.downgraded(
            "CORRELATION",
            self.config.correlation_downgrade,
            ReasonCode.CORRELATION_WARNING,
            f"HIGH_CORRELATION: {count} correlated position(s) "
            + ", ".join(f"{symbol}={corr:.2f}" for symbol, corr in correlated),
        )

    def exposure_cap(self, regime: Regime) -> float:
        limits = self.config.exposure_limits
        fraction = limits.get(regime.value, limits[Regime.UNKNOWN.value])
        return self.config.total_capital * fraction

    def check_exposure(self, risk_amount: float, regime: Regime) -> CheckResult:
        with self._lock:
            projected = self.total_exposure + risk_amount
        cap = self.exposure_cap(regime)
        capital = self.config.total_capital
        if projected > cap:
            return CheckResult.blocked(
                "EXPOSURE_CAP",
                ReasonCode.EXPOSURE_CAP,
                f"EXPOSURE_LIMIT: {projected / capital * 100:.1f}% > {cap / capital * 100:.1f}% ({regime.value})",
            )
        return CheckResult.passed(
            "EXPOSURE_CAP", f"{projected / capital * 100:.1f}% of {cap / capital * 100:.1f}% ({regime.value})"
        )

    @property
    def daily_pnl_pct(self) -> float:
        return self.daily_pnl / self.config.total_capital * 100

    def check_daily_loss(self) -> CheckResult:
        pnl_pct = self.daily_pnl_pct
        if pnl_pct <= -self.config.daily_loss_limit_pct:
            return CheckResult.blocked(
                "DAILY_LOSS_LIMIT",
                ReasonCode.DAILY_LOSS_LIMIT,
                f"DAILY_LOSS_LIMIT: {pnl_pct:.2f}% <= -{self.config.daily_loss_limit_pct}%",
            )
        return CheckResult.passed("DAILY_LOSS_LIMIT", f"daily P&L {pnl_pct:.2f}%")

    def check_loss_streak(self) -> CheckResult:
        losses = self.consecutive_losses
        if losses >= self.config.loss_streak_warning:
            return CheckResult.downgraded(
                "LOSS_STREAK",
                self.config.loss_streak_downgrade,
                ReasonCode.LOSS_STREAK_WARNING,
                f"LOSS_STREAK: {losses} consecutive losses",
            )
        return CheckResult.passed("LOSS_STREAK")

    def check_signal(
        self,
        signal: Signal,
        regime: Regime = Regime.UNKNOWN,
        now: Optional[datetime] = None,
    ) -> GuardPipelineResult:
        """
        Run the portfolio checks in order, stopping at the first block.

        Correlation and loss-streak warnings multiply into the downgrade factor.
        """
        now = now or self._clock()
        with self._lock:
            steps: List[Callable[[], CheckResult]] = [
                lambda: self.check_lock_status(now),
                self.check_position_count,
                lambda: self.check_sector_concentration(signal.sector),
            ]
            if signal.is_option:
                steps.append(lambda: self.check_underlying_concentration(signal.underlying))
            steps += [
                lambda: self.check_correlation(signal.sector),
                lambda: self.check_exposure(self.risk_amount_for(signal), regime),
                self.check_daily_loss,
                self.check_loss_streak,
            ]

            checks: List[CheckResult] = []
            factor = 1.0
            for step in steps:
                check = step()
                checks.append(check)
                if not check.allowed:
                    return GuardPipelineResult(
                        token=signal.token,
                        allowed=False,
                        action=GuardAction.BLOCK,
                        downgrade_factor=factor,
                        block_reason=check.message,
                        block_code=check.reason_code,
                        checks=checks,
                        evaluated_at=now,
                    )
                factor *= check.downgrade

        return GuardPipelineResult(
            token=signal.token,
            allowed=True,
            action=GuardAction.DOWNGRADE if factor < 1.0 else GuardAction.EMIT,
            downgrade_factor=factor,
            checks=checks,
            evaluated_at=now,
        )

    # ── position lifecycle ─────────────────────────────────────────────────

    def register_position(
        self,
        signal: Signal,
        now: Optional[datetime] = None,
        risk_amount: Optional[float] = None,
    ) -> PortfolioPosition:
        """Add a position to the book and increase exposure by its risk amount."""
        now = now or self._clock()
        amount = float(risk_amount) if risk_amount is not None else self.risk_amount_for(signal)
        position = PortfolioPosition(
            token=signal.token,
            symbol=signal.symbol,
            direction=signal.direction,
            sector=signal.sector,
            underlying=signal.underlying,
            is_option=signal.is_option,
            entry_price=signal.price,
            quantity=signal.quantity,
            risk_amount=amount,
            opened_at=now,
        )
        with self._lock:
            previous = self._positions.get(signal.token)
            if previous is not None:
                logger.warning(f"Position {signal.token} re-registered; replacing previous record")
                self.total_exposure = max(0.0, self.total_exposure - previous.risk_amount)
            self._positions[signal.token] = position
            self.total_exposure += amount
            active = len(self._positions)
        logger.info(f"Position registered: {signal.symbol} risk={amount:,.0f} | active={active}")
        return position

    def record_close(
        self,
        token: str,
        pnl: float,
        now: Optional[datetime] = None,
    ) -> Optional[ClosedTrade]:
        """
        Remove a position and update daily P&L and streaks.

        A loss that brings the streak to the configured limit locks the
        portfolio. Unknown tokens are a no-op (returns None).
        """
        now = now or self._clock()
        with self._lock:
            position = self._positions.pop(token, None)
            if position is None:
                logger.debug(f"record_close for unknown position {token}; ignoring")
                return None

            self.total_exposure = max(0.0, self.total_exposure - position.risk_amount)
            self.daily_pnl += pnl

            if pnl >= 0:
                self.consecutive_wins += 1
                self.consecutive_losses = 0
                self.last_trade_result = "WIN"
            else:
                self.consecutive_losses += 1
                self.consecutive_wins = 0
                self.last_trade_result = "LOSS"
                if self.consecutive_losses >= self.config.loss_streak_lock:
                    self.trigger_lock(f"{self.consecutive_losses} consecutive losses", now)

            trade = ClosedTrade(
                token=token,
                symbol=position.symbol,
                sector=position.sector,
                pnl=pnl,
                risk_amount=position.risk_amount,
                closed_at=now,
            )
            self._closed_today.append(trade)
            streak = -self.consecutive_losses if self.consecutive_losses else self.consecutive_wins

        logger.info(f"Position closed: {position.symbol} | pnl={pnl:,.2f} | streak={streak}")
        return trade

    def get_position(self, token: str) -> Optional[PortfolioPosition]:
        with self._lock:
            return self._positions.get(token)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._positions)

    def set_capital(self, capital: float):
        if capital <= 0:
            raise ConfigurationError(
                code="INVALID_CAPITAL",
                message=f"capital must be positive, got {capital}",
            )
        with self._lock:
            self.config.total_capital = float(capital)
        logger.info(f"Capital updated: {capital:,.0f}")

    # ── status ─────────────────────────────────────────────────────────────

    def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        with self._lock:
            locked = self.is_locked(now)
            remaining = None
            if locked and self.lock_until is not None:
                remaining = max(0, round((self.lock_until - now).total_seconds() / 60))
            return {
                "active_positions": len(self._positions),
                "total_exposure": self.total_exposure,
                "exposure_pct": round(self.total_exposure / self.config.total_capital * 100, 2),
                "daily_pnl": self.daily_pnl,
                "daily_pnl_pct": round(self.daily_pnl_pct, 2),
                "consecutive_wins": self.consecutive_wins,
                "consecutive_losses": self.consecutive_losses,
                "is_locked": locked,
                "lock_reason": self.lock_reason,
                "lock_until": self.lock_until.isoformat() if self.lock_until else None,
                "lock_remaining_minutes": remaining,
                "closed_today": len(self._closed_today),
            }

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        with self._lock:
            closed = list(self._closed_today)
        wins = [c.pnl for c in closed if c.pnl > 0]
        losses = [c.pnl for c in closed if c.pnl <= 0]
        stats = self.get_status(now)
        stats.update({
            "trades_closed_today": len(closed),
            "win_rate": round(len(wins) / len(closed) * 100, 1) if closed else None,
            "avg_win": round(sum(wins) / len(wins), 2) if wins else None,
            "avg_loss": round(sum(losses) / len(losses), 2) if losses else None,
        })
        return stats

    def reset_daily(self):
        """Clear positions, streaks, lock and P&L; configuration and correlation table are kept."""
        with self._lock:
            self._positions.clear()
            self._closed_today = []
            self.consecutive_losses = 0
            self.consecutive_wins = 0
            self.last_trade_result = None
            self._locked = False
            self.lock_until = None
            self.lock_reason = None
            self.daily_pnl = 0.0
            self.total_exposure = 0.0
        logger.info("Portfolio commander daily reset complete")
