"""
config.py - Signal Gate Configuration

Central configuration hub for the decision pipeline:
- Regime classifier thresholds and reclassification interval
- Confidence scoring weights and minimum scores
- Portfolio limits, loss-streak lock and exposure caps per regime
- Guard pipeline downgrade factors and critical guard set
- Exit commander trailing / structural / regime / option thresholds

Environment variables can override scalar defaults (prefix GATE_):
- GATE_LOSS_STREAK_LOCK, GATE_LOCK_DURATION_MINUTES
- GATE_ATR_TRAIL_MULTIPLIER, GATE_MIN_PROFIT_TO_TRAIL
- GATE_TOTAL_CAPITAL

Nested tables (exposure caps, weights, correlation table, ...) can be
overridden from the JSON file named by GATE_CONFIG_FILE, or at runtime with
GateConfig.apply_overrides().
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv

from core.exceptions import ConfigurationError

# Load .env file automatically (allows overriding any setting without shell exports)
load_dotenv(Path(__file__).parent / ".env", override=False)

_config_logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class GateConfig:
    """
    Central configuration for the signal gate.

    All scalar settings can be overridden via environment variables prefixed
    with GATE_. Example: GATE_LOSS_STREAK_LOCK=4 locks after four losses.
    """

    SYSTEM_NAME: str = "Signal Gate"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = os.getenv("GATE_ENVIRONMENT", "prod")

    # ═══════════════════════════════════════════════════════════════
    # LOGGING
    # ═══════════════════════════════════════════════════════════════
    LOG_DIR: str = os.getenv("GATE_LOG_DIR", "logs")
    LOG_LEVEL: str = os.getenv("GATE_LOG_LEVEL", "DEBUG")

    # ═══════════════════════════════════════════════════════════════
    # REGIME CLASSIFIER
    # ═══════════════════════════════════════════════════════════════
    REGIME_UPDATE_INTERVAL_SECONDS: float = _env_float("GATE_REGIME_UPDATE_INTERVAL_SECONDS", 60.0)
    REGIME_MIN_BARS: int = _env_int("GATE_REGIME_MIN_BARS", 10)
    REGIME_HISTORY_SIZE: int = _env_int("GATE_REGIME_HISTORY_SIZE", 50)
    ATR_SLOPE_EXPANSION: float = _env_float("GATE_ATR_SLOPE_EXPANSION", 0.15)     # >=+15% = expanding
    ATR_SLOPE_COMPRESSION: float = _env_float("GATE_ATR_SLOPE_COMPRESSION", -0.10)  # <=-10% = compressing
    OPENING_RANGE_BARS: int = _env_int("GATE_OPENING_RANGE_BARS", 3)              # first 15 minutes
    NARROW_OPENING_RANGE_PCT: float = _env_float("GATE_NARROW_OPENING_RANGE_PCT", 0.5)
    WIDE_OPENING_RANGE_PCT: float = _env_float("GATE_WIDE_OPENING_RANGE_PCT", 1.5)
    VWAP_TREND_PCT: float = _env_float("GATE_VWAP_TREND_PCT", 0.8)
    VWAP_RANGE_PCT: float = _env_float("GATE_VWAP_RANGE_PCT", 0.3)
    RANGE_EXPANSION_RATIO: float = _env_float("GATE_RANGE_EXPANSION_RATIO", 1.5)
    RANGE_COMPRESSION_RATIO: float = _env_float("GATE_RANGE_COMPRESSION_RATIO", 0.6)
    PANIC_MOVE_PCT: float = _env_float("GATE_PANIC_MOVE_PCT", 3.0)
    PANIC_RANGE_PCT: float = _env_float("GATE_PANIC_RANGE_PCT", 3.0)
    PANIC_ATR_SLOPE: float = _env_float("GATE_PANIC_ATR_SLOPE", 0.3)

    # Ties go to the first regime in this list (most defensive first)
    REGIME_TIE_BREAK_ORDER: List[str] = [
        "PANIC_DAY",
        "COMPRESSION",
        "RANGE_DAY",
        "TREND_DAY",
        "EXPANSION",
    ]

    REGIME_THRESHOLDS: Dict[str, Dict[str, float]] = {
        "COMPRESSION": {"min_strength": 70, "min_reward_risk": 2.0, "min_confidence": 65, "min_volume_multiple": 2.5},
        "EXPANSION": {"min_strength": 45, "min_reward_risk": 1.5, "min_confidence": 55, "min_volume_multiple": 1.5},
        "TREND_DAY": {"min_strength": 50, "min_reward_risk": 1.8, "min_confidence": 55, "min_volume_multiple": 1.8},
        "RANGE_DAY": {"min_strength": 65, "min_reward_risk": 2.0, "min_confidence": 60, "min_volume_multiple": 2.0},
        "PANIC_DAY": {"min_strength": 85, "min_reward_risk": 2.5, "min_confidence": 75, "min_volume_multiple": 3.0},
        "UNKNOWN": {"min_strength": 60, "min_reward_risk": 1.8, "min_confidence": 60, "min_volume_multiple": 2.0},
    }

    # ═══════════════════════════════════════════════════════════════
    # CONFIDENCE SCORING
    # ═══════════════════════════════════════════════════════════════
    CONFIDENCE_WEIGHTS: Dict[str, float] = {
        "mtf": 12,               # Multi-timeframe alignment
        "breadth": 10,           # Market breadth
        "rs": 10,                # Relative strength
        "gamma": 8,              # Gamma cluster
        "theta": 7,              # Theta / moneyness
        "oi_velocity": 7,        # OI velocity
        "regime": 8,             # Regime fit
        "liquidity": 6,          # Liquidity tier
        "correlation": 5,        # Index correlation + divergence
        "time_of_day": 3,        # Session phase
        "execution_safety": 8,   # Slippage risk
        "regime_alignment": 5,   # Signal/regime compatibility
        "correlation_risk": 3,   # Portfolio correlation risk
        "crowd_trap": 4,         # Crowd trap probability
        "exit_clarity": 4,       # Exit plan clarity
    }
    CONFIDENCE_MIN_SCORE: float = _env_float("GATE_CONFIDENCE_MIN_SCORE", 52.0)
    CONFIDENCE_STRONG_MIN_SCORE: float = _env_float("GATE_CONFIDENCE_STRONG_MIN_SCORE", 75.0)
    CONFIDENCE_HISTORY_SIZE: int = _env_int("GATE_CONFIDENCE_HISTORY_SIZE", 20)
    CONFIDENCE_MAX_TRACKED_TOKENS: int = _env_int("GATE_CONFIDENCE_MAX_TRACKED_TOKENS", 500)

    # ═══════════════════════════════════════════════════════════════
    # PORTFOLIO COMMANDER
    # ═══════════════════════════════════════════════════════════════
    MAX_SIMULTANEOUS_TRADES: int = _env_int("GATE_MAX_SIMULTANEOUS_TRADES", 5)
    MAX_TRADES_PER_SECTOR: int = _env_int("GATE_MAX_TRADES_PER_SECTOR", 2)
    MAX_TRADES_PER_UNDERLYING: int = _env_int("GATE_MAX_TRADES_PER_UNDERLYING", 2)
    HIGH_CORRELATION_THRESHOLD: float = _env_float("GATE_HIGH_CORRELATION_THRESHOLD", 0.7)
    MAX_HIGH_CORRELATION_PAIRS: int = _env_int("GATE_MAX_HIGH_CORRELATION_PAIRS", 2)
    DEFAULT_PAIR_CORRELATION: float = _env_float("GATE_DEFAULT_PAIR_CORRELATION", 0.3)
    CORRELATION_DOWNGRADE: float = _env_float("GATE_CORRELATION_DOWNGRADE", 0.85)
    LOSS_STREAK_LOCK: int = _env_int("GATE_LOSS_STREAK_LOCK", 3)
    LOCK_DURATION_MINUTES: float = _env_float("GATE_LOCK_DURATION_MINUTES", 60.0)
    LOSS_STREAK_WARNING: int = _env_int("GATE_LOSS_STREAK_WARNING", 2)
    LOSS_STREAK_DOWNGRADE: float = _env_float("GATE_LOSS_STREAK_DOWNGRADE", 0.9)
    DAILY_LOSS_LIMIT_PCT: float = _env_float("GATE_DAILY_LOSS_LIMIT_PCT", 5.0)
    MAX_RISK_PER_TRADE_PCT: float = _env_float("GATE_MAX_RISK_PER_TRADE_PCT", 2.0)
    TOTAL_CAPITAL: float = _env_float("GATE_TOTAL_CAPITAL", 1_000_000.0)

    EXPOSURE_LIMITS: Dict[str, float] = {
        "COMPRESSION": 0.3,
        "EXPANSION": 0.6,
        "TREND_DAY": 0.7,
        "RANGE_DAY": 0.4,
        "PANIC_DAY": 0.1,   # defensive
        "UNKNOWN": 0.4,
    }

    # Symmetric lookup; unknown pairs fall back to DEFAULT_PAIR_CORRELATION
    SECTOR_CORRELATIONS: Dict[str, Dict[str, float]] = {
        "BANKING": {"FINANCIALS": 0.85, "NBFC": 0.75},
        "IT": {"TECH": 0.9},
        "AUTO": {"METAL": 0.6},
        "PHARMA": {"HEALTHCARE": 0.8},
    }

    # ═══════════════════════════════════════════════════════════════
    # GUARD PIPELINE
    # ═══════════════════════════════════════════════════════════════
    CRITICAL_GUARDS: List[str] = [
        "LOCK_STATUS",
        "POSITION_COUNT",
        "EXPOSURE_CAP",
        "DAILY_LOSS_LIMIT",
        "CONFIDENCE_THRESHOLD",
    ]
    EXECUTION_BLOCK_SCORE: float = _env_float("GATE_EXECUTION_BLOCK_SCORE", 80.0)
    EXECUTION_WARN_SCORE: float = _env_float("GATE_EXECUTION_WARN_SCORE", 60.0)
    EXECUTION_DOWNGRADE: float = _env_float("GATE_EXECUTION_DOWNGRADE", 0.9)
    CROWD_TRAP_BLOCK_SCORE: float = _env_float("GATE_CROWD_TRAP_BLOCK_SCORE", 80.0)
    CROWD_TRAP_DOWNGRADE: float = _env_float("GATE_CROWD_TRAP_DOWNGRADE", 0.85)
    REGIME_WARNING_DOWNGRADE: float = _env_float("GATE_REGIME_WARNING_DOWNGRADE", 0.95)
    DECISION_LOG_SIZE: int = _env_int("GATE_DECISION_LOG_SIZE", 200)

    # ═══════════════════════════════════════════════════════════════
    # EXIT COMMANDER
    # ═══════════════════════════════════════════════════════════════
    SWING_BREAK_BUFFER: float = _env_float("GATE_SWING_BREAK_BUFFER", 0.002)     # 0.2%
    SWING_MIN_BARS: int = _env_int("GATE_SWING_MIN_BARS", 20)
    SWING_PATTERN_BARS: int = _env_int("GATE_SWING_PATTERN_BARS", 30)
    SWING_PATTERN_WINDOW: int = _env_int("GATE_SWING_PATTERN_WINDOW", 5)
    SWING_PATTERN_BUFFER: float = _env_float("GATE_SWING_PATTERN_BUFFER", 0.002)
    VWAP_BREAK_BUFFER: float = _env_float("GATE_VWAP_BREAK_BUFFER", 0.003)       # 0.3%
    VWAP_MIN_PROFIT_PCT: float = _env_float("GATE_VWAP_MIN_PROFIT_PCT", 0.5)
    IGNITION_MIN_STRENGTH: float = _env_float("GATE_IGNITION_MIN_STRENGTH", 60.0)
    ATR_TRAIL_MULTIPLIER: float = _env_float("GATE_ATR_TRAIL_MULTIPLIER", 1.5)
    MIN_PROFIT_TO_TRAIL: float = _env_float("GATE_MIN_PROFIT_TO_TRAIL", 1.5)     # percent
    FALLBACK_ATR_PCT: float = _env_float("GATE_FALLBACK_ATR_PCT", 0.02)
    VOLATILITY_COLLAPSE_RATIO: float = _env_float("GATE_VOLATILITY_COLLAPSE_RATIO", 0.4)
    BREADTH_COLLAPSE_PCT: float = _env_float("GATE_BREADTH_COLLAPSE_PCT", 30.0)
    THETA_ACCELERATION_RATIO: float = _env_float("GATE_THETA_ACCELERATION_RATIO", 2.0)
    IV_CRUSH_PCT: float = _env_float("GATE_IV_CRUSH_PCT", 15.0)
    OI_REVERSAL_PCT: float = _env_float("GATE_OI_REVERSAL_PCT", 10.0)
    EXIT_HISTORY_SIZE: int = _env_int("GATE_EXIT_HISTORY_SIZE", 500)

    ADVERSE_REGIME_SHIFTS: Dict[str, List[str]] = {
        "TREND_DAY": ["RANGE_DAY", "COMPRESSION"],
        "EXPANSION": ["COMPRESSION", "RANGE_DAY"],
    }

    # Tables that may be replaced from a JSON overrides file
    _OVERRIDABLE_TABLES = (
        "REGIME_TIE_BREAK_ORDER",
        "REGIME_THRESHOLDS",
        "CONFIDENCE_WEIGHTS",
        "EXPOSURE_LIMITS",
        "SECTOR_CORRELATIONS",
        "CRITICAL_GUARDS",
        "ADVERSE_REGIME_SHIFTS",
    )

    @classmethod
    def apply_overrides(cls, overrides: Dict[str, Any]) -> None:
        """
        Apply configuration overrides at runtime.

        Keys are attribute names (case-insensitive). Scalars are coerced to the
        type of the current value; tables are deep-copied in.
        """
        for raw_key, value in overrides.items():
            key = str(raw_key).upper()
            if key.startswith("_") or not hasattr(cls, key):
                raise ConfigurationError(
                    code="UNKNOWN_CONFIG_KEY",
                    message=f"Unknown configuration key: {raw_key}",
                    context={"key": raw_key},
                )
            current = getattr(cls, key)
            if isinstance(current, (dict, list)):
                if key not in cls._OVERRIDABLE_TABLES or not isinstance(value, type(current)):
                    raise ConfigurationError(
                        code="INVALID_CONFIG_VALUE",
                        message=f"{key} expects a {type(current).__name__}",
                        context={"key": key},
                    )
                setattr(cls, key, copy.deepcopy(value))
            elif isinstance(current, bool):
                setattr(cls, key, str(value).lower() in ("1", "true", "yes"))
            else:
                try:
                    setattr(cls, key, type(current)(value))
                except (TypeError, ValueError) as exc:
                    raise ConfigurationError(
                        code="INVALID_CONFIG_VALUE",
                        message=f"{key}: cannot coerce {value!r} to {type(current).__name__}",
                        context={"key": key},
                    ) from exc
            _config_logger.info(f"Config override applied: {key}")

    @classmethod
    def load_overrides_file(cls, path: Path) -> None:
        """Load a JSON overrides file and apply it."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(
                code="CONFIG_FILE_UNREADABLE",
                message=f"Cannot read config overrides from {path}: {exc}",
                context={"path": str(path)},
            ) from exc
        if not isinstance(data, dict):
            raise ConfigurationError(
                code="INVALID_CONFIG_FILE",
                message=f"Config overrides in {path} must be a JSON object",
                context={"path": str(path)},
            )
        cls.apply_overrides(data)

    @classmethod
    def snapshot(cls) -> Dict[str, Any]:
        """Public settings as a plain dict (for status endpoints and audits)."""
        return {
            key: copy.deepcopy(getattr(cls, key))
            for key in dir(cls)
            if key.isupper() and not key.startswith("_")
        }


_overrides_file = os.getenv("GATE_CONFIG_FILE")
if _overrides_file:
    GateConfig.load_overrides_file(Path(_overrides_file))
