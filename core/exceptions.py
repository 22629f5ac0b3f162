"""
core/exceptions.py - Signal Gate Exceptions

Exception hierarchy for the decision pipeline.

Features:
- Hierarchical exception structure
- Error codes for programmatic handling
- Rich context, serializable for logging and monitoring
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


@dataclass
class GateBaseException(Exception):
    """Base exception for standardized error propagation."""

    code: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }


@dataclass
class MissingDataError(GateBaseException):
    """A required input (series, factor, portfolio state) is unavailable."""


@dataclass
class InvalidInputError(GateBaseException):
    """A signal, tick or candle failed validation."""


@dataclass
class GuardEvaluationError(GateBaseException):
    """A guard raised while evaluating a signal."""


@dataclass
class ConfigurationError(GateBaseException):
    """Invalid or unknown configuration."""


class ReasonCode(str, Enum):
    """Machine-readable reasons attached to guard checks and verdicts."""

    OK = "OK"
    PORTFOLIO_LOCKED = "PORTFOLIO_LOCKED"
    MAX_POSITIONS = "MAX_POSITIONS"
    SECTOR_LIMIT = "SECTOR_LIMIT"
    UNDERLYING_LIMIT = "UNDERLYING_LIMIT"
    CORRELATION_LIMIT = "CORRELATION_LIMIT"
    CORRELATION_WARNING = "CORRELATION_WARNING"
    EXPOSURE_CAP = "EXPOSURE_CAP"
    DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    REGIME_INCOMPATIBLE = "REGIME_INCOMPATIBLE"
    REGIME_WARNING = "REGIME_WARNING"
    EXECUTION_UNSAFE = "EXECUTION_UNSAFE"
    EXECUTION_RISK = "EXECUTION_RISK"
    CROWD_TRAP = "CROWD_TRAP"
    CROWD_TRAP_WARNING = "CROWD_TRAP_WARNING"
    LOSS_STREAK_WARNING = "LOSS_STREAK_WARNING"
    GUARD_UNAVAILABLE = "GUARD_UNAVAILABLE"
    GUARD_ERROR = "GUARD_ERROR"
    GUARD_SKIPPED = "GUARD_SKIPPED"
    INVALID_INPUT = "INVALID_INPUT"
