"""
monitoring/prometheus_metrics.py - Prometheus Metrics Exporter

Exposes gate decision metrics for Grafana dashboards:
- Admission metrics (verdicts, block reasons, confidence)
- Exit metrics (exits by category / subtype)
- Regime metrics (current regime, confidence, transitions)
- Portfolio metrics (positions, exposure, lock state, streaks)

Runs a lightweight HTTP server for Prometheus scraping.

Usage:
    metrics = DecisionMetrics(port=8000)
    metrics.start()

    metrics.record_decision(result)
    metrics.record_exit(exit_signal)
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from core.contracts import (
    ExitSignal,
    GuardPipelineResult,
    Regime,
    RegimeState,
    RegimeTransition,
)

logger = logging.getLogger(__name__)


def _make_handler(registry: CollectorRegistry):
    class MetricsHandler(BaseHTTPRequestHandler):
        """HTTP handler for the Prometheus metrics endpoint."""

        def do_GET(self):
            if self.path == '/metrics':
                self.send_response(200)
                self.send_header('Content-Type', CONTENT_TYPE_LATEST)
                self.end_headers()
                self.wfile.write(generate_latest(registry))
            elif self.path == '/health':
                self.send_response(200)
                self.send_header('Content-Type', 'application/json')
                self.end_headers()
                self.wfile.write(json.dumps({'status': 'healthy'}).encode())
            else:
                self.send_response(404)
                self.end_headers()

        def log_message(self, format, *args):
            # Suppress default logging
            pass

    return MetricsHandler


class DecisionMetrics:
    """
    Prometheus metrics for the signal gate.

    Metrics categories:
    - gate_signals_*: Admission verdicts
    - gate_exits_*: Exit signals
    - gate_regime_*: Regime state
    - gate_portfolio_*: Portfolio state
    """

    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self.port = port
        # Private registry so several instances (tests, replays) never collide
        self.registry = registry or CollectorRegistry()
        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None

        self._init_signal_metrics()
        self._init_exit_metrics()
        self._init_regime_metrics()
        self._init_portfolio_metrics()

        logger.debug(f"📊 Decision metrics initialized (port {port})")

    def _init_signal_metrics(self):
        self.signals_total = Counter(
            'gate_signals_total',
            'Signals evaluated by verdict',
            ['action'],
            registry=self.registry
        )
        self.signals_blocked_total = Counter(
            'gate_signals_blocked_total',
            'Blocked signals by reason code',
            ['reason'],
            registry=self.registry
        )
        self.signal_confidence = Histogram(
            'gate_signal_confidence_score',
            'Confidence score of evaluated signals',
            buckets=[20, 40, 52, 60, 75, 90, 100],
            registry=self.registry
        )
        self.signal_downgrade_factor = Gauge(
            'gate_signal_last_downgrade_factor',
            'Downgrade factor of the most recent admitted signal',
            registry=self.registry
        )

    def _init_exit_metrics(self):
        self.exits_total = Counter(
            'gate_exits_total',
            'Exit signals by category and subtype',
            ['category', 'subtype'],
            registry=self.registry
        )
        self.exit_pnl_pct = Histogram(
            'gate_exit_pnl_percent',
            'P&L percent at exit signal',
            buckets=[-10, -5, -2, -1, 0, 1, 2, 5, 10],
            registry=self.registry
        )

    def _init_regime_metrics(self):
        self.regime_current = Gauge(
            'gate_regime_current',
            'Current regime (1 for the active regime label)',
            ['regime'],
            registry=self.registry
        )
        self.regime_confidence = Gauge(
            'gate_regime_confidence',
            'Classifier confidence for the current regime',
            registry=self.registry
        )
        self.regime_volatility = Gauge(
            'gate_regime_volatility_score',
            'Volatility score 0-100',
            registry=self.registry
        )
        self.regime_transitions_total = Counter(
            'gate_regime_transitions_total',
            'Regime transitions',
            ['from_regime', 'to_regime'],
            registry=self.registry
        )

    def _init_portfolio_metrics(self):
        self.portfolio_positions = Gauge(
            'gate_portfolio_positions_count',
            'Active positions',
            registry=self.registry
        )
        self.portfolio_exposure = Gauge(
            'gate_portfolio_exposure_dollars',
            'Total risk committed to open positions',
            registry=self.registry
        )
        self.portfolio_daily_pnl = Gauge(
            'gate_portfolio_daily_pnl_dollars',
            'Realised P&L for the session',
            registry=self.registry
        )
        self.portfolio_locked = Gauge(
            'gate_portfolio_locked',
            'Portfolio lock state (1=locked)',
            registry=self.registry
        )
        self.portfolio_loss_streak = Gauge(
            'gate_portfolio_consecutive_losses',
            'Current consecutive loss streak',
            registry=self.registry
        )

    # ===================
    # Server
    # ===================

    def start(self):
        """Start the metrics HTTP server."""
        if self._server is not None:
            return
        try:
            self._server = HTTPServer(('0.0.0.0', self.port), _make_handler(self.registry))
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")
            self._server = None
            return

        self._server_thread = threading.Thread(
            target=self._server.serve_forever, name="gate-metrics", daemon=True
        )
        self._server_thread.start()
        logger.info(f"✅ Prometheus metrics server started on port {self.port}")

    def stop(self):
        """Stop the metrics HTTP server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            logger.info("Prometheus metrics server stopped")

    # ===================
    # Updates
    # ===================

    def record_decision(self, result: GuardPipelineResult):
        self.signals_total.labels(action=result.action.value).inc()
        if not result.allowed:
            reason = result.block_code.value if result.block_code else 'UNKNOWN'
            self.signals_blocked_total.labels(reason=reason).inc()
        else:
            self.signal_downgrade_factor.set(result.downgrade_factor)
        if result.confidence is not None:
            self.signal_confidence.observe(result.confidence.score)

    def record_exit(self, signal: ExitSignal):
        self.exits_total.labels(
            category=signal.category.value,
            subtype=signal.subtype.value,
        ).inc()
        self.exit_pnl_pct.observe(signal.pnl_pct)

    def record_transition(self, transition: RegimeTransition):
        self.regime_transitions_total.labels(
            from_regime=transition.from_regime.value,
            to_regime=transition.to_regime.value,
        ).inc()

    def update_regime(self, state: RegimeState):
        for regime in Regime:
            self.regime_current.labels(regime=regime.value).set(
                1 if regime == state.regime else 0
            )
        self.regime_confidence.set(state.confidence)
        self.regime_volatility.set(state.volatility_score)

    def update_portfolio(
        self,
        positions: int,
        exposure: float,
        daily_pnl: float,
        locked: bool,
        consecutive_losses: int,
    ):
        self.portfolio_positions.set(positions)
        self.portfolio_exposure.set(exposure)
        self.portfolio_daily_pnl.set(daily_pnl)
        self.portfolio_locked.set(1 if locked else 0)
        self.portfolio_loss_streak.set(consecutive_losses)
