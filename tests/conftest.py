# tests/conftest.py - Pytest configuration and fixtures

from datetime import datetime, timedelta

import numpy as np
import pytest

from config import GateConfig
from core.contracts import (
    OHLCV,
    CrowdTrap,
    Direction,
    ExitClarity,
    FactorBundle,
    GammaCluster,
    MtfAlignment,
    Signal,
    SignalType,
    ThetaFactor,
)


SESSION_OPEN = datetime(2024, 3, 14, 9, 15)


def make_candles(closes, spread=0.5, start=SESSION_OPEN, minutes=5):
    """OHLCV bars around the given closes, each bar `2 * spread` wide."""
    bars = []
    prev = closes[0]
    for i, close in enumerate(closes):
        bars.append(OHLCV(
            timestamp=start + timedelta(minutes=minutes * i),
            open=prev,
            high=max(prev, close) + spread,
            low=min(prev, close) - spread,
            close=close,
            volume=1000,
        ))
        prev = close
    return bars


def flat_candles(count, price=100.0, spread=0.5):
    return make_candles([price] * count, spread=spread)


def strong_factors(**overrides) -> FactorBundle:
    """Factor bundle that scores the maximum on every signal-level factor."""
    values = dict(
        mtf=MtfAlignment(True, True, True),
        breadth=75.0,
        relative_strength=2.5,
        gamma=GammaCluster(detected=True, strength=85),
        theta=ThetaFactor(moneyness="ATM", momentum=25),
        oi_velocity=12.0,
        liquidity_tier=1,
        correlation=0.8,
        divergence=1.5,
        time_of_day="NORMAL",
        slippage_risk=10.0,
        crowd_trap=CrowdTrap(flagged=False, score=0),
        exit_clarity=ExitClarity(True, True, True),
    )
    values.update(overrides)
    return FactorBundle(**values)


def make_signal(token="T1", symbol="RELIANCE", sector="ENERGY", **overrides) -> Signal:
    values = dict(
        token=token,
        symbol=symbol,
        direction=Direction.LONG,
        price=1000.0,
        strength=80.0,
        signal_type=SignalType.BUY,
        sector=sector,
        quantity=10,
        factors=strong_factors(),
    )
    values.update(overrides)
    return Signal(**values)


# Sample data fixtures
@pytest.fixture
def now() -> datetime:
    return SESSION_OPEN + timedelta(hours=2)


@pytest.fixture
def trending_closes() -> np.ndarray:
    """Steady uptrend with a widening bar range."""
    return np.linspace(100, 104, 30)


@pytest.fixture
def restore_config():
    """Snapshot GateConfig and restore it after the test."""
    saved = GateConfig.snapshot()
    yield GateConfig
    for key, value in saved.items():
        setattr(GateConfig, key, value)
