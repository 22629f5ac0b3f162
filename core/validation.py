"""
core/validation.py - Input Validation Module

Validates candidate signals at the pipeline boundary. Invalid input is
reported as a ValidationResult (and turned into an INVALID_INPUT block by the
guard pipeline), never raised into the caller.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.contracts import Direction, Signal, SignalType

logger = logging.getLogger(__name__)


class ValidationSeverity(Enum):
    """Severity levels for validation issues."""
    ERROR = "error"       # Block the operation
    WARNING = "warning"   # Allow but log warning


@dataclass
class ValidationIssue:
    """A single validation issue."""
    field: str
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR
    code: str = ""
    value: Any = None

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.field}: {self.message}"


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    def add_error(self, field: str, message: str, code: str = "", value: Any = None):
        self.issues.append(ValidationIssue(field, message, ValidationSeverity.ERROR, code, value))
        self.is_valid = False

    def add_warning(self, field: str, message: str, code: str = "", value: Any = None):
        self.issues.append(ValidationIssue(field, message, ValidationSeverity.WARNING, code, value))

    def summary(self) -> str:
        return "; ".join(str(i) for i in self.errors)

    def __bool__(self) -> bool:
        return self.is_valid


class SignalSchema(BaseModel):
    """Boundary schema for a candidate signal. Strict: no str/bool coercion, enums must be members."""

    model_config = ConfigDict(strict=True)

    token: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1)
    direction: Direction
    signal_type: SignalType
    is_option: bool = False
    price: float = Field(..., gt=0, allow_inf_nan=False)
    strength: float = Field(..., ge=0, le=100, allow_inf_nan=False)
    quantity: float = Field(default=1.0, gt=0, allow_inf_nan=False)
    risk_amount: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    reward_risk: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    volume_multiple: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)


def _signal_payload(signal: Signal) -> Dict[str, Any]:
    token = signal.token.strip() if isinstance(signal.token, str) else signal.token
    return {
        "token": token,
        "symbol": signal.symbol,
        "direction": signal.direction,
        "signal_type": signal.signal_type,
        "is_option": signal.is_option,
        "price": signal.price,
        "strength": signal.strength,
        "quantity": signal.quantity,
        "risk_amount": signal.risk_amount,
        "reward_risk": signal.reward_risk,
        "volume_multiple": signal.volume_multiple,
    }


def validate_signal(signal: Signal) -> ValidationResult:
    """
    Validate a candidate signal.

    Returns:
        ValidationResult; one error per offending field.
    """
    result = ValidationResult(is_valid=True)
    try:
        SignalSchema.model_validate(_signal_payload(signal))
    except ValidationError as exc:
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "signal"
            result.add_error(loc, err.get("msg", "invalid"), code=err.get("type", ""), value=err.get("input"))
        logger.debug(f"Signal {getattr(signal, 'token', '?')} failed validation: {result.summary()}")
        return result

    if signal.is_option and not signal.underlying:
        result.add_warning("underlying", "option signal without underlying; underlying cap not applied")
    return result
