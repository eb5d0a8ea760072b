"""
Technical indicators over numpy price arrays.

Series functions return an array the same length as their input, with NaN
for the warm-up bars, so callers can test ``np.isfinite(x[-1])``.
"""

from __future__ import annotations

from typing import List, Tuple

import numpy as np


def sma(values: np.ndarray, period: int) -> np.ndarray:
    """Simple moving average."""
    values = np.asarray(values, dtype=float)
    out = np.full(len(values), np.nan)
    if period <= 0 or len(values) < period:
        return out
    csum = np.cumsum(np.insert(values, 0, 0.0))
    out[period - 1:] = (csum[period:] - csum[:-period]) / period
    return out


def ema(values: np.ndarray, period: int) -> np.ndarray:
    """Exponential moving average seeded with the SMA of the first ``period`` bars."""
    values = np.asarray(values, dtype=float)
    out = np.full(len(values), np.nan)
    if period <= 0 or len(values) < period:
        return out
    k = 2.0 / (period + 1)
    prev = float(np.mean(values[:period]))
    out[period - 1] = prev
    for i in range(period, len(values)):
        prev = (values[i] - prev) * k + prev
        out[i] = prev
    return out


def rsi(closes: np.ndarray, period: int = 14) -> np.ndarray:
    """Relative Strength Index with Wilder smoothing."""
    closes = np.asarray(closes, dtype=float)
    out = np.full(len(closes), np.nan)
    if period <= 0 or len(closes) < period + 1:
        return out

    deltas = np.diff(closes)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        out[i + 1] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(
    closes: np.ndarray,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """MACD line, signal line and histogram."""
    closes = np.asarray(closes, dtype=float)
    line = ema(closes, fast) - ema(closes, slow)
    sig = np.full(len(closes), np.nan)
    valid = np.where(np.isfinite(line))[0]
    if len(valid) >= signal:
        start = int(valid[0])
        sig[start:] = ema(line[start:], signal)
    return line, sig, line - sig


def find_pivots(
    highs: np.ndarray,
    lows: np.ndarray,
    left: int = 2,
    right: int = 2,
) -> Tuple[List[int], List[int]]:
    """
    Indices of local swing highs and swing lows.

    A bar is a pivot high when its high is strictly greater than the
    ``left`` bars before it and at least as high as the ``right`` bars after
    it (mirrored for pivot lows). The last ``right`` bars can never be
    pivots because they are not confirmed yet.
    """
    highs = np.asarray(highs, dtype=float)
    lows = np.asarray(lows, dtype=float)
    pivot_highs: List[int] = []
    pivot_lows: List[int] = []
    for i in range(left, len(highs) - right):
        h = highs[i]
        if h > highs[i - left:i].max() and h >= highs[i + 1:i + right + 1].max():
            pivot_highs.append(i)
        lo = lows[i]
        if lo < lows[i - left:i].min() and lo <= lows[i + 1:i + right + 1].min():
            pivot_lows.append(i)
    return pivot_highs, pivot_lows


def support_resistance(
    highs: np.ndarray,
    lows: np.ndarray,
    price: float,
    lookback: int = 50,
) -> Tuple[float, float]:
    """
    Nearest swing low below and swing high above ``price``.

    Falls back to the 10th-percentile low / 90th-percentile high of the last
    20 bars when no pivot brackets the price.
    """
    highs = np.asarray(highs, dtype=float)[-lookback:]
    lows = np.asarray(lows, dtype=float)[-lookback:]
    if len(highs) == 0:
        return 0.0, 0.0
    if len(highs) < 10:
        return float(lows[-1]), float(highs[-1])

    ph, pl = find_pivots(highs, lows)
    below = [float(lows[i]) for i in pl if lows[i] <= price]
    above = [float(highs[i]) for i in ph if highs[i] >= price]

    recent_lows = np.sort(lows[-20:])
    recent_highs = np.sort(highs[-20:])[::-1]
    idx = int(len(recent_lows) * 0.1)

    support = max(below) if below else float(recent_lows[idx])
    resistance = min(above) if above else float(recent_highs[idx])
    return support, resistance
