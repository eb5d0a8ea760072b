"""
Timeframe Analyzer - indicator read-out and directional lean for one timeframe.

Pure function of its candle input: no I/O, no clock, no shared state, so
re-running it on the same candles yields an identical analysis. Any
internal failure is turned into a neutral HOLD analysis with a warning.

Scoring (bullish / bearish points):
- RSI < 30: +2 bull, < 40: +1 bull, > 70: +2 bear, > 60: +1 bear
- MACD histogram and line/signal agree: +2 to that side
- Trend UP / DOWN: +2 to that side
- Each pattern completing in the last 3 candles: weight x grade x 3
- Price in the bottom 30% of the support/resistance band: +1 bull, top 30%: +1 bear

A side holding more than 60% of all points sets the direction and its
share becomes the confidence. Otherwise HOLD at 50.
"""

from __future__ import annotations

import traceback
from typing import Dict, List, Optional, Sequence

import numpy as np

from vaultpilot.core.config import SignalsConfig
from vaultpilot.core.logger import get_logger
from vaultpilot.signals.base import (
    Candle,
    Direction,
    MacdSignal,
    Pattern,
    PatternDirection,
    TimeframeAnalysis,
    Trend,
)
from vaultpilot.signals.indicators import find_pivots, macd, rsi, sma, support_resistance
from vaultpilot.signals.patterns import detect_patterns, strength_units

logger = get_logger("timeframe_analyzer")

_RECENT_PATTERN_BARS = 3
_DIRECTION_SHARE = 0.6


def insufficient_history_warning(timeframe: str, have: int, need: int) -> str:
    return f"{timeframe}: insufficient candle history ({have}/{need} candles)"


def neutral_analysis(
    symbol: str,
    timeframe: str,
    warning: str,
    current_price: float = 0.0,
) -> TimeframeAnalysis:
    """Degraded HOLD analysis carrying the reason as its only warning."""
    return TimeframeAnalysis(
        symbol=symbol,
        timeframe=timeframe,
        direction=Direction.HOLD,
        confidence=0.0,
        current_price=current_price,
        warnings=[warning],
        degraded=True,
    )


class TimeframeAnalyzer:
    """Computes trend, RSI, MACD, support/resistance and patterns for one timeframe."""

    def __init__(self, config: Optional[SignalsConfig] = None):
        cfg = config or SignalsConfig()
        self.rsi_period = cfg.rsi_period
        self.macd_fast = cfg.macd_fast
        self.macd_slow = cfg.macd_slow
        self.macd_signal = cfg.macd_signal
        self.pattern_lookback = cfg.pattern_lookback
        self.pattern_weights: Dict[str, float] = dict(cfg.pattern_weights)

    @property
    def min_bars_required(self) -> int:
        return self.macd_slow + self.macd_signal

    def analyze(
        self,
        candles: Sequence[Candle],
        timeframe: str,
        symbol: str = "",
    ) -> TimeframeAnalysis:
        last_price = float(candles[-1].close) if candles else 0.0
        need = self.min_bars_required
        if len(candles) < need:
            return neutral_analysis(
                symbol, timeframe,
                insufficient_history_warning(timeframe, len(candles), need),
                last_price,
            )
        try:
            return self._analyze(candles, timeframe, symbol)
        except Exception as e:
            logger.error(
                "Timeframe analysis error",
                symbol=symbol,
                timeframe=timeframe,
                error=repr(e),
                error_type=type(e).__name__,
                traceback="".join(traceback.format_exception(type(e), e, e.__traceback__)),
            )
            return neutral_analysis(
                symbol, timeframe,
                f"{timeframe}: analysis failed ({type(e).__name__})",
                last_price,
            )

    def _analyze(
        self,
        candles: Sequence[Candle],
        timeframe: str,
        symbol: str,
    ) -> TimeframeAnalysis:
        closes = np.array([c.close for c in candles], dtype=float)
        highs = np.array([c.high for c in candles], dtype=float)
        lows = np.array([c.low for c in candles], dtype=float)
        n = len(candles)
        price = float(closes[-1])

        rsi_series = rsi(closes, self.rsi_period)
        rsi_val = float(rsi_series[-1]) if np.isfinite(rsi_series[-1]) else 50.0

        line, sig, hist = macd(closes, self.macd_fast, self.macd_slow, self.macd_signal)
        m = float(line[-1]) if np.isfinite(line[-1]) else 0.0
        s = float(sig[-1]) if np.isfinite(sig[-1]) else 0.0
        h = float(hist[-1]) if np.isfinite(hist[-1]) else 0.0
        if h > 0:
            macd_state = MacdSignal.BULLISH
        elif h < 0:
            macd_state = MacdSignal.BEARISH
        else:
            macd_state = MacdSignal.NEUTRAL

        trend = classify_trend(closes, highs, lows)
        support, resistance = support_resistance(highs, lows, price)

        recent: List[Pattern] = [
            p for p in detect_patterns(candles, self.pattern_lookback)
            if p.candle_index >= n - _RECENT_PATTERN_BARS
        ]

        bull = 0.0
        bear = 0.0

        if rsi_val < 30:
            bull += 2
        elif rsi_val < 40:
            bull += 1
        elif rsi_val > 70:
            bear += 2
        elif rsi_val > 60:
            bear += 1

        if h > 0 and m > s:
            bull += 2
        elif h < 0 and m < s:
            bear += 2

        if trend == Trend.UP:
            bull += 2
        elif trend == Trend.DOWN:
            bear += 2

        for p in recent:
            pts = self.pattern_weights.get(p.type, 0.5) * strength_units(p.strength) * 3
            if p.direction == PatternDirection.BULLISH:
                bull += pts
            else:
                bear += pts

        band = resistance - support
        if band > 0:
            position = (price - support) / band
            if position < 0.3:
                bull += 1
            if position > 0.7:
                bear += 1

        direction = Direction.HOLD
        confidence = 0.0
        total = bull + bear
        if total > 0:
            if bull / total > _DIRECTION_SHARE:
                direction, confidence = Direction.LONG, bull / total * 100
            elif bear / total > _DIRECTION_SHARE:
                direction, confidence = Direction.SHORT, bear / total * 100
            else:
                confidence = 50.0

        return TimeframeAnalysis(
            symbol=symbol,
            timeframe=timeframe,
            direction=direction,
            confidence=round(confidence, 4),
            trend=trend,
            rsi=round(rsi_val, 4),
            macd_signal=macd_state,
            patterns=recent,
            support=support,
            resistance=resistance,
            current_price=price,
        )


def classify_trend(closes: np.ndarray, highs: np.ndarray, lows: np.ndarray) -> Trend:
    """
    UP on higher highs and higher lows, DOWN on lower highs and lower lows,
    each confirmed by price against SMA20 (and SMA20 against SMA50 when
    there is enough history). With no usable pivot structure the SMA
    stack alone decides.
    """
    if len(closes) < 20:
        return Trend.SIDEWAYS

    price = float(closes[-1])
    sma20 = float(sma(closes, 20)[-1])
    sma50_series = sma(closes, 50)
    sma50 = float(sma50_series[-1]) if np.isfinite(sma50_series[-1]) else None

    stacked_up = sma50 is not None and price > sma20 > sma50
    stacked_down = sma50 is not None and price < sma20 < sma50

    window = slice(-50, None)
    ph, pl = find_pivots(highs[window], lows[window])
    h_win, l_win = highs[window], lows[window]
    structure: Optional[str] = None
    if len(ph) >= 2 and len(pl) >= 2:
        hh = h_win[ph[-1]] > h_win[ph[-2]]
        hl = l_win[pl[-1]] > l_win[pl[-2]]
        lh = h_win[ph[-1]] < h_win[ph[-2]]
        ll = l_win[pl[-1]] < l_win[pl[-2]]
        if hh and hl:
            structure = "up"
        elif lh and ll:
            structure = "down"

    if (stacked_up and structure != "down") or (structure == "up" and price > sma20):
        return Trend.UP
    if (stacked_down and structure != "up") or (structure == "down" and price < sma20):
        return Trend.DOWN
    return Trend.SIDEWAYS


_default_analyzer: Optional[TimeframeAnalyzer] = None


def analyze(candles: Sequence[Candle], timeframe: str, symbol: str = "") -> TimeframeAnalysis:
    """Analyze with the default indicator settings."""
    global _default_analyzer
    if _default_analyzer is None:
        _default_analyzer = TimeframeAnalyzer()
    return _default_analyzer.analyze(candles, timeframe, symbol)
