"""
core/contracts.py

Data Contracts and Interfaces

Defines the canonical data structures exchanged between the regime
classifier, confidence scorer, portfolio commander, guard pipeline and exit
commander, plus the interfaces external collaborators implement.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from core.exceptions import ReasonCode


# ═══════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════

class Direction(Enum):
    """Position direction."""
    LONG = "LONG"
    SHORT = "SHORT"


class SignalType(Enum):
    """Signal strength class."""
    BUY = "BUY"
    SELL = "SELL"
    STRONG_BUY = "STRONG_BUY"
    STRONG_SELL = "STRONG_SELL"

    @property
    def is_strong(self) -> bool:
        return self in (SignalType.STRONG_BUY, SignalType.STRONG_SELL)


class Regime(Enum):
    """Intraday market regime classification."""
    COMPRESSION = "COMPRESSION"
    EXPANSION = "EXPANSION"
    TREND_DAY = "TREND_DAY"
    RANGE_DAY = "RANGE_DAY"
    PANIC_DAY = "PANIC_DAY"
    UNKNOWN = "UNKNOWN"


class GuardAction(Enum):
    """Aggregated admission verdict."""
    EMIT = "EMIT"
    BLOCK = "BLOCK"
    DOWNGRADE = "DOWNGRADE"


class ExitCategory(Enum):
    """Exit categories; lower rank wins when several fire together."""
    STRUCTURAL = "STRUCTURAL"
    TRAILING = "TRAILING"
    OPTION = "OPTION"
    REGIME = "REGIME"

    @property
    def rank(self) -> int:
        return _EXIT_CATEGORY_RANK[self]


_EXIT_CATEGORY_RANK = {
    ExitCategory.STRUCTURAL: 0,
    ExitCategory.TRAILING: 1,
    ExitCategory.OPTION: 2,
    ExitCategory.REGIME: 3,
}


class ExitSubtype(Enum):
    SWING_BREAK = "SWING_BREAK"
    VWAP_BREAK = "VWAP_BREAK"
    OPPOSITE_IGNITION = "OPPOSITE_IGNITION"
    ATR_TRAIL = "ATR_TRAIL"
    SWING_PATTERN = "SWING_PATTERN"
    REGIME_SHIFT = "REGIME_SHIFT"
    VOL_COLLAPSE = "VOL_COLLAPSE"
    BREADTH_COLLAPSE = "BREADTH_COLLAPSE"
    THETA_ACCEL = "THETA_ACCEL"
    IV_CRUSH = "IV_CRUSH"
    OI_REVERSAL = "OI_REVERSAL"


class ExitPriority(Enum):
    """Urgency attached to an exit condition."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class PositionStatus(Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


# ═══════════════════════════════════════════════════════════════════════════
# MARKET DATA
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class OHLCV:
    """Single OHLCV bar."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


@dataclass
class OptionGreeks:
    """Option Greeks snapshot (entry or current)."""
    theta: Optional[float] = None
    iv: Optional[float] = None
    oi: Optional[float] = None


@dataclass
class IgnitionSignal:
    """Momentum ignition reported by an external detector."""
    direction: Direction
    strength: float


@dataclass
class SessionData:
    """Benchmark session levels pushed by the market feed."""
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    last: Optional[float] = None
    vwap: Optional[float] = None
    breadth: Optional[float] = None


@dataclass
class MarketTick:
    """Per-instrument market update consumed by the exit commander."""
    token: str
    ltp: float
    timestamp: datetime
    vwap: Optional[float] = None
    breadth: Optional[float] = None
    volatility: Optional[float] = None
    candles_5m: Sequence[Any] = field(default_factory=list)
    candles_15m: Sequence[Any] = field(default_factory=list)
    greeks: Optional[OptionGreeks] = None
    regime: Optional[Regime] = None
    ignition: Optional[IgnitionSignal] = None


# ═══════════════════════════════════════════════════════════════════════════
# SIGNALS AND FACTORS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class MtfAlignment:
    aligned_5m: bool = False
    aligned_15m: bool = False
    aligned_daily: bool = False


@dataclass
class GammaCluster:
    detected: bool = False
    strength: float = 0.0


@dataclass
class ThetaFactor:
    """Moneyness bucket (ATM, ITM, OTM, DEEP_OTM) and premium momentum."""
    moneyness: str = "ATM"
    momentum: float = 0.0


@dataclass
class CrowdTrap:
    flagged: bool = False
    score: float = 0.0


@dataclass
class ExitClarity:
    structural: bool = False
    trailing: bool = False
    regime: bool = False


@dataclass
class FactorBundle:
    """
    Pre-computed factor values for one signal.

    Every field is optional; a missing factor contributes nothing to the
    confidence score and makes dependent non-critical guards skip.
    """
    mtf: Optional[MtfAlignment] = None
    breadth: Optional[float] = None
    relative_strength: Optional[float] = None
    gamma: Optional[GammaCluster] = None
    theta: Optional[ThetaFactor] = None
    oi_velocity: Optional[float] = None
    liquidity_tier: Optional[int] = None
    correlation: Optional[float] = None
    divergence: Optional[float] = None
    time_of_day: Optional[str] = None
    slippage_risk: Optional[float] = None
    crowd_trap: Optional[CrowdTrap] = None
    exit_clarity: Optional[ExitClarity] = None


@dataclass
class Signal:
    """Candidate trading signal from the signal generator."""
    token: str
    symbol: str
    direction: Direction
    price: float
    strength: float  # [0, 100]
    signal_type: SignalType = SignalType.BUY
    sector: Optional[str] = None
    underlying: Optional[str] = None
    is_option: bool = False
    greeks: Optional[OptionGreeks] = None
    quantity: float = 1.0
    risk_amount: Optional[float] = None
    setup: Optional[str] = None
    reward_risk: Optional[float] = None
    volume_multiple: Optional[float] = None
    factors: Optional[FactorBundle] = None
    timestamp: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════
# REGIME
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RegimeMetrics:
    """Session metrics the classification was computed from (None = not enough data)."""
    atr_slope_5m: Optional[float] = None
    atr_slope_15m: Optional[float] = None
    opening_range_pct: Optional[float] = None
    current_range_pct: Optional[float] = None
    vwap_distance_pct: Optional[float] = None
    range_expansion: Optional[float] = None
    day_move_pct: Optional[float] = None

    @property
    def avg_atr_slope(self) -> Optional[float]:
        slopes = [s for s in (self.atr_slope_5m, self.atr_slope_15m) if s is not None]
        if not slopes:
            return None
        return sum(slopes) / len(slopes)

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            'atr_slope_5m': self.atr_slope_5m,
            'atr_slope_15m': self.atr_slope_15m,
            'opening_range_pct': self.opening_range_pct,
            'current_range_pct': self.current_range_pct,
            'vwap_distance_pct': self.vwap_distance_pct,
            'range_expansion': self.range_expansion,
            'day_move_pct': self.day_move_pct,
        }


@dataclass
class DynamicThresholds:
    min_strength: float
    min_reward_risk: float
    min_confidence: float
    min_volume_multiple: float


@dataclass
class RegimeTransition:
    from_regime: Regime
    to_regime: Regime
    at: datetime
    confidence: float
    volatility_score: float


@dataclass
class RegimeState:
    """Snapshot of the current regime."""
    regime: Regime = Regime.UNKNOWN
    previous_regime: Optional[Regime] = None
    confidence: float = 0.0
    volatility_score: float = 0.0
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    scores: Dict[str, float] = field(default_factory=dict)
    metrics: RegimeMetrics = field(default_factory=RegimeMetrics)


@dataclass
class RegimeCompatibility:
    compatible: bool
    reason: str
    warnings: List[str] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════
# CONFIDENCE / GUARDS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class CorrelationRisk:
    """Portfolio correlation exposure of a candidate signal."""
    high_risk: bool
    correlated_count: int
    max_correlation: float = 0.0


@dataclass
class ConfidenceResult:
    token: str
    score: float
    grade: str
    breakdown: Dict[str, float]
    threshold: float
    meets_minimum: bool
    missing: List[str] = field(default_factory=list)
    computed_at: Optional[datetime] = None


@dataclass
class CheckResult:
    """Outcome of a single guard."""
    name: str
    allowed: bool
    reason_code: ReasonCode = ReasonCode.OK
    message: str = ""
    downgrade: float = 1.0
    skipped: bool = False

    @classmethod
    def passed(cls, name: str, message: str = "") -> "CheckResult":
        return cls(name=name, allowed=True, message=message)

    @classmethod
    def blocked(cls, name: str, reason_code: ReasonCode, message: str) -> "CheckResult":
        return cls(name=name, allowed=False, reason_code=reason_code, message=message)

    @classmethod
    def downgraded(cls, name: str, factor: float, reason_code: ReasonCode, message: str) -> "CheckResult":
        return cls(name=name, allowed=True, reason_code=reason_code, message=message, downgrade=factor)

    @classmethod
    def skipped_check(cls, name: str, message: str) -> "CheckResult":
        return cls(name=name, allowed=True, reason_code=ReasonCode.GUARD_SKIPPED, message=message, skipped=True)


@dataclass
class GuardPipelineResult:
    token: str
    allowed: bool
    action: GuardAction
    downgrade_factor: float = 1.0
    block_reason: Optional[str] = None
    block_code: Optional[ReasonCode] = None
    checks: List[CheckResult] = field(default_factory=list)
    confidence: Optional[ConfidenceResult] = None
    adjusted_confidence: Optional[float] = None
    evaluated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'token': self.token,
            'allowed': self.allowed,
            'action': self.action.value,
            'downgrade_factor': round(self.downgrade_factor, 4),
            'block_reason': self.block_reason,
            'block_code': self.block_code.value if self.block_code else None,
            'checks': [
                {
                    'name': c.name,
                    'allowed': c.allowed,
                    'reason_code': c.reason_code.value,
                    'message': c.message,
                    'downgrade': c.downgrade,
                    'skipped': c.skipped,
                }
                for c in self.checks
            ],
            'confidence': self.confidence.score if self.confidence else None,
            'adjusted_confidence': self.adjusted_confidence,
            'evaluated_at': self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


# ═══════════════════════════════════════════════════════════════════════════
# POSITIONS AND EXITS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class PortfolioPosition:
    """Exposure record held by the portfolio commander."""
    token: str
    symbol: str
    direction: Direction
    sector: Optional[str]
    underlying: Optional[str]
    is_option: bool
    entry_price: float
    quantity: float
    risk_amount: float
    opened_at: datetime


@dataclass
class ClosedTrade:
    token: str
    symbol: str
    sector: Optional[str]
    pnl: float
    risk_amount: float
    closed_at: datetime


@dataclass
class TrailingStopState:
    """Per-position trailing stop; stop_price only ever tightens."""
    stop_price: float
    water_mark: float
    atr: float
    active: bool = False
    activated_at: Optional[datetime] = None


@dataclass
class ExitCondition:
    category: ExitCategory
    subtype: ExitSubtype
    reason: str
    priority: ExitPriority
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExitSignal:
    token: str
    symbol: str
    direction: Direction
    category: ExitCategory
    subtype: ExitSubtype
    reason: str
    priority: ExitPriority
    entry_price: float
    price: float
    pnl_pct: float
    max_pnl_pct: float
    conditions: List[ExitCondition]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'token': self.token,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'category': self.category.value,
            'subtype': self.subtype.value,
            'reason': self.reason,
            'priority': self.priority.value,
            'entry_price': self.entry_price,
            'price': self.price,
            'pnl_pct': round(self.pnl_pct, 4),
            'max_pnl_pct': round(self.max_pnl_pct, 4),
            'conditions': [f"{c.category.value}:{c.subtype.value}" for c in self.conditions],
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class Position:
    """Position tracked by the exit commander."""
    token: str
    symbol: str
    direction: Direction
    entry_price: float
    entry_time: datetime
    quantity: float = 1.0
    is_option: bool = False
    entry_regime: Regime = Regime.UNKNOWN
    entry_volatility: float = 0.0
    entry_atr: float = 0.0
    entry_vwap: Optional[float] = None
    entry_theta: Optional[float] = None
    entry_iv: Optional[float] = None
    entry_oi: Optional[float] = None
    high_water: float = 0.0
    low_water: float = 0.0
    last_price: float = 0.0
    pnl_pct: float = 0.0
    max_pnl_pct: float = 0.0
    status: PositionStatus = PositionStatus.ACTIVE
    last_update: Optional[datetime] = None
    exit_signal: Optional[ExitSignal] = None
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    final_pnl_pct: Optional[float] = None

    def __post_init__(self):
        if not self.high_water:
            self.high_water = self.entry_price
        if not self.low_water:
            self.low_water = self.entry_price
        if not self.last_price:
            self.last_price = self.entry_price

    def pnl_at(self, price: float) -> float:
        """Percent P&L at price in the position's favour."""
        if self.direction == Direction.LONG:
            return (price - self.entry_price) / self.entry_price * 100
        return (self.entry_price - price) / self.entry_price * 100


# ═══════════════════════════════════════════════════════════════════════════
# INTERFACES
# ═══════════════════════════════════════════════════════════════════════════

class FactorProvider(Protocol):
    """Supplies pre-computed factor values for a signal."""

    def get_factors(self, signal: Signal) -> FactorBundle:
        ...
