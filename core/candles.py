"""
Candle series helpers.

Normalizes candle input (OHLCV bars, dicts or DataFrames) into a float
DataFrame and computes the volatility and structure measures used by the
regime classifier and the exit commander.
"""

import logging
from typing import Any, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from core.contracts import OHLCV

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ["open", "high", "low", "close", "volume"]


def to_frame(candles: Optional[Any]) -> pd.DataFrame:
    """
    Normalize candles into a DataFrame with float open/high/low/close/volume.

    Rows missing high, low or close are dropped.
    """
    if candles is None:
        return pd.DataFrame(columns=CANDLE_COLUMNS, dtype=float)

    if isinstance(candles, pd.DataFrame):
        df = candles.rename(columns=str.lower)
    else:
        rows = [c.to_dict() if isinstance(c, OHLCV) else dict(c) for c in candles]
        if not rows:
            return pd.DataFrame(columns=CANDLE_COLUMNS, dtype=float)
        df = pd.DataFrame(rows).rename(columns=str.lower)

    for col in CANDLE_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan
    df = df[CANDLE_COLUMNS].apply(pd.to_numeric, errors="coerce")
    df["volume"] = df["volume"].fillna(0.0)

    before = len(df)
    df = df.dropna(subset=["high", "low", "close"]).reset_index(drop=True)
    if len(df) < before:
        logger.debug(f"Dropped {before - len(df)} malformed candles")
    return df


def true_range(df: pd.DataFrame) -> pd.Series:
    """True range per bar; the first bar falls back to high - low."""
    prev_close = df["close"].shift(1)
    tr1 = df["high"] - df["low"]
    tr2 = (df["high"] - prev_close).abs()
    tr3 = (df["low"] - prev_close).abs()
    return pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)


def mean_true_range(df: pd.DataFrame) -> float:
    """Mean true range over a window, using only bars with a previous close inside it."""
    if len(df) < 2:
        return 0.0
    return float(true_range(df).iloc[1:].mean())


def average_true_range(df: pd.DataFrame, period: int = 14) -> Optional[float]:
    """ATR over the last `period` bars, or None without at least two bars."""
    if len(df) < 2:
        return None
    tr = true_range(df).iloc[1:]
    return float(tr.tail(period).mean())


def atr_slope(df: pd.DataFrame, min_bars: int = 10) -> Optional[float]:
    """
    Relative change of ATR over the last 5 bars versus the 5 bars before.

    Returns None when the series is shorter than `min_bars`; 0.0 when the older
    window is flat.
    """
    if len(df) < max(min_bars, 10):
        return None
    recent = mean_true_range(df.iloc[-5:])
    older = mean_true_range(df.iloc[-10:-5])
    if older == 0:
        return 0.0
    return (recent - older) / older


def last_swing_levels(highs: np.ndarray, lows: np.ndarray, fallback_bars: int = 10) -> Tuple[float, float]:
    """
    Most recent swing high and swing low.

    A bar is a swing high (low) when its high (low) is strictly above (below)
    the two bars on each side. Without any swing point the extreme of the last
    `fallback_bars` bars is used.
    """
    swing_high = float(np.max(highs[-fallback_bars:]))
    swing_low = float(np.min(lows[-fallback_bars:]))
    if len(highs) >= 5:
        mid = highs[2:-2]
        is_high = (mid > highs[1:-3]) & (mid > highs[:-4]) & (mid > highs[3:-1]) & (mid > highs[4:])
        if is_high.any():
            swing_high = float(mid[is_high][-1])
        mid = lows[2:-2]
        is_low = (mid < lows[1:-3]) & (mid < lows[:-4]) & (mid < lows[3:-1]) & (mid < lows[4:])
        if is_low.any():
            swing_low = float(mid[is_low][-1])
    return swing_high, swing_low


def swing_pattern(highs: np.ndarray, lows: np.ndarray, window: int = 5) -> Tuple[List[float], List[float]]:
    """
    Higher lows and lower highs from a rolling window of local extrema.

    The window slides over all bars but the last; each window's low (high) is
    kept when it is above (below) the previous window's.
    """
    if len(lows) <= window:
        return [], []
    local_lows = np.lib.stride_tricks.sliding_window_view(lows[:-1], window).min(axis=1)
    local_highs = np.lib.stride_tricks.sliding_window_view(highs[:-1], window).max(axis=1)
    higher_lows = local_lows[1:][local_lows[1:] > local_lows[:-1]]
    lower_highs = local_highs[1:][local_highs[1:] < local_highs[:-1]]
    return higher_lows.tolist(), lower_highs.tolist()


def session_extremes(frames: Iterable[pd.DataFrame]) -> Tuple[Optional[float], Optional[float]]:
    """Highest high and lowest low across the non-empty frames."""
    frames = [df for df in frames if len(df)]
    if not frames:
        return None, None
    return (
        float(max(df["high"].max() for df in frames)),
        float(min(df["low"].min() for df in frames)),
    )
