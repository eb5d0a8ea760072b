"""
Candlestick pattern detection.

Scans the trailing window of a candle sequence for named one-, two- and
three-candle shapes, plus a short-term momentum continuation. Every hit
is tagged with the absolute index (into the full sequence) of the candle
that completes it.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from vaultpilot.signals.base import Candle, Pattern, PatternDirection

# Raw pattern grades (1 weak .. 3 strong) mapped onto the 0-100 strength scale
_GRADE_STRENGTH = {1: 33.0, 2: 67.0, 3: 100.0}

BULLISH = PatternDirection.BULLISH
BEARISH = PatternDirection.BEARISH


def strength_units(strength: float) -> int:
    """Inverse of the grade mapping: 0-100 strength back to 0..3 units."""
    return int(round(strength / 100.0 * 3))


def _body(c: Candle) -> float:
    return abs(c.close - c.open)


def _range(c: Candle) -> float:
    return c.high - c.low


def _upper_wick(c: Candle) -> float:
    return c.high - max(c.open, c.close)


def _lower_wick(c: Candle) -> float:
    return min(c.open, c.close) - c.low


def _bullish(c: Candle) -> bool:
    return c.close > c.open


def _bearish(c: Candle) -> bool:
    return c.close < c.open


def is_bullish_engulfing(prev: Candle, curr: Candle) -> bool:
    return (
        _bearish(prev) and _bullish(curr)
        and curr.open < prev.close
        and curr.close > prev.open
    )


def is_bearish_engulfing(prev: Candle, curr: Candle) -> bool:
    return (
        _bullish(prev) and _bearish(curr)
        and curr.open > prev.close
        and curr.close < prev.open
    )


def is_hammer(c: Candle) -> bool:
    body = _body(c)
    return (
        body < _range(c) * 0.3
        and _lower_wick(c) > body * 2
        and _upper_wick(c) < body * 0.5
    )


def is_inverted_hammer(c: Candle) -> bool:
    body = _body(c)
    return (
        body < _range(c) * 0.3
        and _upper_wick(c) > body * 2
        and _lower_wick(c) < body * 0.5
    )


def is_doji(c: Candle) -> bool:
    return _body(c) < _range(c) * 0.1


def doji_type(c: Candle) -> str:
    lower, upper = _lower_wick(c), _upper_wick(c)
    if lower > upper * 3:
        return "dragonfly_doji"
    if upper > lower * 3:
        return "gravestone_doji"
    return "doji"


def is_morning_star(first: Candle, second: Candle, third: Candle) -> bool:
    return (
        _bearish(first)
        and _body(second) < _body(first) * 0.3
        and _bullish(third)
        and third.close > (first.open + first.close) / 2
    )


def is_evening_star(first: Candle, second: Candle, third: Candle) -> bool:
    return (
        _bullish(first)
        and _body(second) < _body(first) * 0.3
        and _bearish(third)
        and third.close < (first.open + first.close) / 2
    )


def is_bullish_harami(prev: Candle, curr: Candle) -> bool:
    return (
        _bearish(prev) and _bullish(curr)
        and curr.open > prev.close
        and curr.close < prev.open
    )


def is_bearish_harami(prev: Candle, curr: Candle) -> bool:
    return (
        _bullish(prev) and _bearish(curr)
        and curr.open < prev.close
        and curr.close > prev.open
    )


def is_three_white_soldiers(c: Sequence[Candle]) -> bool:
    if len(c) != 3 or not all(_bullish(x) for x in c):
        return False
    return all(c[i].open > c[i - 1].open and c[i].close > c[i - 1].close for i in (1, 2))


def is_three_black_crows(c: Sequence[Candle]) -> bool:
    if len(c) != 3 or not all(_bearish(x) for x in c):
        return False
    return all(c[i].open < c[i - 1].open and c[i].close < c[i - 1].close for i in (1, 2))


def momentum_direction(c: Sequence[Candle]) -> Optional[PatternDirection]:
    """Direction of a >0.5 % move over the last three closes backed by two same-colour candles."""
    if len(c) < 3 or c[-3].close <= 0:
        return None
    move_pct = (c[-1].close - c[-3].close) / c[-3].close * 100
    last3 = c[-3:]
    if move_pct > 0.5 and sum(1 for x in last3 if _bullish(x)) >= 2:
        return BULLISH
    if move_pct < -0.5 and sum(1 for x in last3 if _bearish(x)) >= 2:
        return BEARISH
    return None


def _momentum_grade(c: Sequence[Candle]) -> int:
    bodies = [_body(x) for x in c[-10:]]
    avg = sum(bodies) / len(bodies)
    last = _body(c[-1])
    if last > avg * 2.5:
        return 3
    if last > avg * 1.5:
        return 2
    return 1


def _engulfing_grade(prev: Candle, curr: Candle) -> int:
    if _body(curr) > _body(prev) * 1.5:
        return 3
    if _body(curr) > _body(prev) * 1.2:
        return 2
    return 1


def detect_patterns(candles: Sequence[Candle], lookback: int = 10) -> List[Pattern]:
    """Detect patterns completing inside the last ``lookback`` candles."""
    patterns: List[Pattern] = []
    n = len(candles)
    if n < 3:
        return patterns

    def add(kind: str, direction: PatternDirection, grade: int, index: int) -> None:
        patterns.append(Pattern(kind, direction, _GRADE_STRENGTH[grade], index))

    start = max(2, n - lookback)
    for i in range(start, n):
        curr, prev, prev2 = candles[i], candles[i - 1], candles[i - 2]

        if is_bullish_engulfing(prev, curr):
            add("bullish_engulfing", BULLISH, _engulfing_grade(prev, curr), i)
        if is_bearish_engulfing(prev, curr):
            add("bearish_engulfing", BEARISH, _engulfing_grade(prev, curr), i)
        if is_hammer(curr):
            add("hammer", BULLISH, 2, i)
        if is_inverted_hammer(curr):
            add("inverted_hammer", BULLISH, 1, i)
        if is_doji(curr):
            kind = doji_type(curr)
            add(kind, BEARISH if kind == "gravestone_doji" else BULLISH, 1, i)
        if is_morning_star(prev2, prev, curr):
            add("morning_star", BULLISH, 3, i)
        if is_evening_star(prev2, prev, curr):
            add("evening_star", BEARISH, 3, i)
        if is_bullish_harami(prev, curr):
            add("bullish_harami", BULLISH, 2, i)
        if is_bearish_harami(prev, curr):
            add("bearish_harami", BEARISH, 2, i)

    last3 = candles[-3:]
    if is_three_white_soldiers(last3):
        add("three_white_soldiers", BULLISH, 3, n - 1)
    if is_three_black_crows(last3):
        add("three_black_crows", BEARISH, 3, n - 1)

    momentum = momentum_direction(candles)
    if momentum is not None:
        add("momentum_continuation", momentum, _momentum_grade(candles), n - 1)

    return patterns
