"""
Signal data model - candles in, per-timeframe analyses and unified signals out.

Every object here serializes through ``to_dict`` into the camelCase shapes
served by the HTTP API, with numpy scalars and NaN values sanitized away.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

import numpy as np


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    HOLD = "HOLD"


class Trend(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    SIDEWAYS = "SIDEWAYS"


class MacdSignal(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class PatternDirection(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. Timestamp is the open time in epoch milliseconds."""
    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "timestamp": self.timestamp,
        }


@dataclass
class Pattern:
    type: str
    direction: PatternDirection
    strength: float  # 0 to 100
    candle_index: int

    def __post_init__(self):
        self.strength = max(0.0, min(100.0, float(self.strength)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "direction": self.direction.value,
            "strength": round(self.strength, 2),
            "candleIndex": int(self.candle_index),
        }


@dataclass
class TimeframeAnalysis:
    """
    Indicator read-out for one symbol on one timeframe.

    ``degraded`` marks analyses that could not use the candle data (too
    short, missing, timed out); they always carry a HOLD direction and at
    least one warning explaining why.
    """
    symbol: str
    timeframe: str
    direction: Direction = Direction.HOLD
    confidence: float = 0.0
    trend: Trend = Trend.SIDEWAYS
    rsi: float = 50.0
    macd_signal: MacdSignal = MacdSignal.NEUTRAL
    patterns: List[Pattern] = field(default_factory=list)
    support: float = 0.0
    resistance: float = 0.0
    current_price: float = 0.0
    warnings: List[str] = field(default_factory=list)
    degraded: bool = False

    def __post_init__(self):
        self.confidence = max(0.0, min(100.0, float(self.confidence)))
        self.rsi = max(0.0, min(100.0, float(self.rsi)))

    def to_dict(self) -> Dict[str, Any]:
        return _sanitize_for_json({
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "direction": self.direction.value,
            "confidence": round(self.confidence, 2),
            "trend": self.trend.value,
            "rsi": round(self.rsi, 2),
            "macdSignal": self.macd_signal.value,
            "patterns": [p.to_dict() for p in self.patterns],
            "support": self.support,
            "resistance": self.resistance,
            "currentPrice": self.current_price,
            "warnings": list(self.warnings),
            "degraded": self.degraded,
        })


@dataclass
class UnifiedSignal:
    """
    One directional decision for a symbol across all requested timeframes.

    ``timeframes`` keeps one analysis per requested timeframe, degraded ones
    included, in request order.
    """
    symbol: str
    direction: Direction
    confidence: float
    timeframes: List[TimeframeAnalysis]
    trend_alignment: float
    pattern_strength: float
    patterns: List[Pattern] = field(default_factory=list)
    suggested_entry: float = 0.0
    suggested_tp: float = 0.0
    suggested_sl: float = 0.0
    reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()
        self.confidence = max(0.0, min(100.0, float(self.confidence)))
        self.trend_alignment = max(0.0, min(100.0, float(self.trend_alignment)))
        self.pattern_strength = max(0.0, min(100.0, float(self.pattern_strength)))

    def to_dict(self) -> Dict[str, Any]:
        return _sanitize_for_json({
            "symbol": self.symbol,
            "direction": self.direction.value,
            "confidence": round(self.confidence, 2),
            "timeframes": [a.to_dict() for a in self.timeframes],
            "trendAlignment": round(self.trend_alignment, 2),
            "patternStrength": round(self.pattern_strength, 2),
            "patterns": [p.to_dict() for p in self.patterns],
            "suggestedEntry": self.suggested_entry,
            "suggestedTP": self.suggested_tp,
            "suggestedSL": self.suggested_sl,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "timestamp": self.timestamp,
        })


@dataclass(frozen=True)
class RiskProfile:
    """Per-wallet take-profit / stop-loss distances as fractions of entry."""
    take_profit_pct: float
    stop_loss_pct: float

    def __post_init__(self):
        for name in ("take_profit_pct", "stop_loss_pct"):
            v = getattr(self, name)
            if not 0 < v < 1:
                raise ValueError(f"{name} must be between 0 and 1, got {v}")


def is_signal_strong(signal: UnifiedSignal, min_confidence: float) -> bool:
    """True iff the signal is directional, confident enough and aligned."""
    return (
        signal.confidence >= min_confidence
        and signal.direction != Direction.HOLD
        and signal.trend_alignment >= 50
    )


def _sanitize_for_json(obj: Any) -> Any:
    """Convert numpy types to Python native types; NaN/Inf become None."""
    if isinstance(obj, dict):
        return {k: _sanitize_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_sanitize_for_json(v) for v in obj]
    elif isinstance(obj, (np.bool_,)):
        return bool(obj)
    elif isinstance(obj, (np.integer,)):
        return int(obj)
    elif isinstance(obj, (np.floating,)):
        v = float(obj)
        return None if (math.isnan(v) or math.isinf(v)) else v
    elif isinstance(obj, float):
        return None if (math.isnan(obj) or math.isinf(obj)) else obj
    elif isinstance(obj, np.ndarray):
        return [_sanitize_for_json(x) for x in obj.tolist()]
    return obj
