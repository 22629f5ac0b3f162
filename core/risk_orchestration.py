"""Risk orchestration: wires the gate services into one admission/exit runtime."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.contracts import (
    ExitSignal,
    FactorProvider,
    GuardPipelineResult,
    MarketTick,
    Position,
    SessionData,
    Signal,
)
from core.exceptions import InvalidInputError
from monitoring.prometheus_metrics import DecisionMetrics
from risk.confidence_scoring import ConfidenceScorer
from risk.exit_commander import ExitCommander
from risk.guard_pipeline import GuardPipeline
from risk.portfolio_commander import PortfolioCommander
from risk.regime_classifier import RegimeClassifier

logger = logging.getLogger(__name__)


@dataclass
class AdmissionDecision:
    """Normalized admission payload: the verdict plus the registered position, if any."""

    result: GuardPipelineResult
    position: Optional[Position] = None

    @property
    def allowed(self) -> bool:
        return self.result.allowed


class RiskOrchestration:
    """Coordinate regime, confidence, portfolio, guard and exit services behind one interface."""

    def __init__(
        self,
        regime_classifier: Optional[RegimeClassifier] = None,
        scorer: Optional[ConfidenceScorer] = None,
        portfolio: Optional[PortfolioCommander] = None,
        pipeline: Optional[GuardPipeline] = None,
        exit_commander: Optional[ExitCommander] = None,
        metrics: Optional[DecisionMetrics] = None,
        factor_provider: Optional[FactorProvider] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._clock = clock
        self.regime_classifier = regime_classifier or RegimeClassifier(clock=clock)
        self.scorer = scorer or ConfidenceScorer(clock=clock)
        self.portfolio = portfolio or PortfolioCommander(clock=clock)
        self.pipeline = pipeline or GuardPipeline(
            portfolio=self.portfolio,
            scorer=self.scorer,
            regime_classifier=self.regime_classifier,
            factor_provider=factor_provider,
            clock=clock,
        )
        self.exit_commander = exit_commander or ExitCommander(
            regime_classifier=self.regime_classifier, clock=clock
        )
        self.metrics = metrics
        self._admission_lock = threading.RLock()

        if self.metrics is not None:
            self.regime_classifier.on_transition(self.metrics.record_transition)

    # ── lifecycle ──────────────────────────────────────────────────────────

    def start(self):
        """Start timed reclassification (and the metrics endpoint when configured)."""
        self.regime_classifier.start()
        if self.metrics is not None:
            self.metrics.start()

    def stop(self):
        self.regime_classifier.stop()
        if self.metrics is not None:
            self.metrics.stop()

    # ── inputs ─────────────────────────────────────────────────────────────

    def on_benchmark_update(
        self,
        session: Optional[SessionData] = None,
        candles_5m: Optional[Any] = None,
        candles_15m: Optional[Any] = None,
        now: Optional[datetime] = None,
    ):
        """Push benchmark data into the regime classifier."""
        state = self.regime_classifier.update_market_data(session, candles_5m, candles_15m, now)
        if state is not None and self.metrics is not None:
            self.metrics.update_regime(state)
        return state

    def admit(
        self,
        signal: Signal,
        now: Optional[datetime] = None,
        atr: Optional[float] = None,
        vwap: Optional[float] = None,
        volatility: Optional[float] = None,
        candles: Optional[Any] = None,
    ) -> AdmissionDecision:
        """
        Evaluate a candidate signal and, if it passes, register the position
        with the portfolio and the exit commander.

        Evaluation and registration run under one lock so two concurrent
        admissions cannot both take the last position slot.
        """
        now = now or self._clock()
        with self._admission_lock:
            result = self.pipeline.evaluate(signal, now=now)
            position = None
            if result.allowed:
                self.portfolio.register_position(signal, now=now)
                regime_state = self.regime_classifier.state
                position = self.exit_commander.register_position(
                    token=signal.token,
                    symbol=signal.symbol,
                    direction=signal.direction,
                    entry_price=signal.price,
                    entry_time=now,
                    quantity=signal.quantity,
                    is_option=signal.is_option,
                    regime=regime_state.regime,
                    volatility=volatility if volatility is not None else regime_state.volatility_score,
                    atr=atr,
                    vwap=vwap,
                    greeks=signal.greeks,
                    candles=candles,
                )

        if self.metrics is not None:
            self.metrics.record_decision(result)
            self._update_portfolio_metrics(now)
        return AdmissionDecision(result=result, position=position)

    def on_tick(self, tick: MarketTick) -> Optional[ExitSignal]:
        """Evaluate exits for one instrument. Unusable ticks are logged and dropped."""
        try:
            signal = self.exit_commander.evaluate(tick)
        except InvalidInputError as e:
            logger.warning(f"Dropped tick: {e}")
            return None
        if signal is not None and self.metrics is not None:
            self.metrics.record_exit(signal)
        return signal

    def close_position(
        self,
        token: str,
        exit_price: float,
        now: Optional[datetime] = None,
    ) -> Optional[Position]:
        """
        Close a position in the exit commander and record its P&L with the
        portfolio so streaks and the loss lock update.

        Closing an unknown or already-closed position is a no-op returning None.
        """
        if exit_price is None or exit_price <= 0:
            raise InvalidInputError(
                "INVALID_EXIT_PRICE",
                f"Cannot close {token} at {exit_price!r}",
                {"token": token, "exit_price": exit_price},
            )
        now = now or self._clock()
        with self._admission_lock:
            position = self.exit_commander.close_position(token, exit_price, now)
            if position is None:
                return None
            pnl = position.final_pnl_pct * position.entry_price * position.quantity / 100
            self.portfolio.record_close(token, pnl, now)

        if self.metrics is not None:
            self._update_portfolio_metrics(now)
        return position

    # ── maintenance / reporting ────────────────────────────────────────────

    def reset_daily(self):
        """Start-of-day reset across all services. Histories and configuration are kept."""
        with self._admission_lock:
            self.regime_classifier.reset_daily()
            self.scorer.reset_daily()
            self.portfolio.reset_daily()
            self.exit_commander.reset_daily()
            self.pipeline.reset_stats()
        logger.info("Daily reset complete for signal gate")
        if self.metrics is not None:
            self.metrics.update_regime(self.regime_classifier.state)
            self._update_portfolio_metrics()

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        return {
            "regime": self.regime_classifier.get_state(now),
            "portfolio": self.portfolio.get_status(now),
            "confidence": self.scorer.get_stats(),
            "pipeline": self.pipeline.get_stats(),
            "exits": self.exit_commander.get_stats(),
        }

    def _update_portfolio_metrics(self, now: Optional[datetime] = None):
        status = self.portfolio.get_status(now or self._clock())
        self.metrics.update_portfolio(
            positions=status["active_positions"],
            exposure=status["total_exposure"],
            daily_pnl=status["daily_pnl"],
            locked=status["is_locked"],
            consecutive_losses=status["consecutive_losses"],
        )
