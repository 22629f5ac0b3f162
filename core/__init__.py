"""
core - Core data structures, interfaces, and utilities

This module contains the canonical data contracts and the shared
utilities used throughout the signal gate.

Modules:
- contracts: Data contracts and interfaces
- exceptions: Error hierarchy and reason codes
- validation: Signal input validation
- candles: Candle frame helpers (ATR, swings, slopes)
- scheduler: Periodic background tasks
- logging_config: Two-channel logging
- risk_orchestration: Wires the gate services together
"""

from .contracts import (
    # Enums
    Direction,
    SignalType,
    Regime,
    GuardAction,
    ExitCategory,
    ExitSubtype,
    ExitPriority,
    PositionStatus,

    # Data contracts
    OHLCV,
    OptionGreeks,
    SessionData,
    MarketTick,
    FactorBundle,
    Signal,
    RegimeState,
    ConfidenceResult,
    CheckResult,
    GuardPipelineResult,
    ExitSignal,
    Position,

    # Interfaces
    FactorProvider,
)

from .exceptions import (
    GateBaseException,
    MissingDataError,
    InvalidInputError,
    GuardEvaluationError,
    ConfigurationError,
    ReasonCode,
)

__all__ = [
    # Enums
    'Direction',
    'SignalType',
    'Regime',
    'GuardAction',
    'ExitCategory',
    'ExitSubtype',
    'ExitPriority',
    'PositionStatus',

    # Data contracts
    'OHLCV',
    'OptionGreeks',
    'SessionData',
    'MarketTick',
    'FactorBundle',
    'Signal',
    'RegimeState',
    'ConfidenceResult',
    'CheckResult',
    'GuardPipelineResult',
    'ExitSignal',
    'Position',

    # Interfaces
    'FactorProvider',

    # Exceptions
    'GateBaseException',
    'MissingDataError',
    'InvalidInputError',
    'GuardEvaluationError',
    'ConfigurationError',
    'ReasonCode',
]
