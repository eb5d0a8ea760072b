"""
Unified Signal Engine - multi-timeframe fan-out, weighted fan-in.

For one symbol every requested timeframe is fetched and analyzed
concurrently under its own time budget. A timeframe that fails or runs out
of time still shows up in the result, as a degraded HOLD analysis, so a
signal always carries exactly one analysis per requested timeframe.

Aggregation:
1. trend score   = sum(trend_w * lean) / sum(trend_w), lean = +/- confidence/100 (0 for HOLD)
2. alignment     = share of timeframes agreeing with the majority non-HOLD direction
3. pattern score = min(100, sum(pattern_w * strength/100 * 30))
4. confidence    = blend of the three (trend part counted only when it points the majority way),
                   minus a penalty when LONG and SHORT timeframes coexist
5. direction     = majority if confidence >= threshold and alignment >= 50, else HOLD
"""

from __future__ import annotations

import asyncio
import traceback
from typing import Dict, Iterable, List, Optional, Sequence

from vaultpilot.core.config import RiskConfig, SignalsConfig
from vaultpilot.core.logger import get_logger
from vaultpilot.signals.base import (
    Direction,
    Pattern,
    PatternDirection,
    RiskProfile,
    TimeframeAnalysis,
    UnifiedSignal,
    is_signal_strong,
)
from vaultpilot.signals.timeframe_analyzer import TimeframeAnalyzer, neutral_analysis

logger = get_logger("signal_engine")

MIXED_SIGNALS_WARNING = "Mixed signals across timeframes"
CONFLICT_WARNING = "Conflicting signals: some timeframes show LONG, others SHORT"

_RSI_OVERSOLD = 20.0
_RSI_OVERBOUGHT = 80.0
_REASON_MIN_CONFIDENCE = 60.0


class SignalAggregator:
    """Combines per-timeframe analyses into one UnifiedSignal."""

    def __init__(
        self,
        config: Optional[SignalsConfig] = None,
        risk: Optional[RiskProfile] = None,
    ):
        self.config = config or SignalsConfig()
        if risk is None:
            defaults = RiskConfig()
            risk = RiskProfile(defaults.default_take_profit_pct, defaults.default_stop_loss_pct)
        self.default_risk = risk

    def aggregate(
        self,
        symbol: str,
        analyses: Sequence[TimeframeAnalysis],
        risk: Optional[RiskProfile] = None,
    ) -> UnifiedSignal:
        """Never raises; internal failures produce a HOLD signal with a warning."""
        analyses = list(analyses)
        try:
            return self._aggregate(symbol, analyses, risk or self.default_risk)
        except Exception as e:
            logger.error(
                "Signal aggregation error",
                symbol=symbol,
                error=repr(e),
                error_type=type(e).__name__,
                traceback="".join(traceback.format_exception(type(e), e, e.__traceback__)),
            )
            return UnifiedSignal(
                symbol=symbol,
                direction=Direction.HOLD,
                confidence=0.0,
                timeframes=analyses,
                trend_alignment=0.0,
                pattern_strength=0.0,
                warnings=[f"Signal aggregation failed ({type(e).__name__})"],
            )

    def _weights(self, timeframe: str):
        return self.config.timeframe_weights.get(timeframe)

    def _aggregate(
        self,
        symbol: str,
        analyses: List[TimeframeAnalysis],
        risk: RiskProfile,
    ) -> UnifiedSignal:
        if not analyses:
            return UnifiedSignal(
                symbol=symbol,
                direction=Direction.HOLD,
                confidence=0.0,
                timeframes=[],
                trend_alignment=0.0,
                pattern_strength=0.0,
                warnings=["No timeframes analyzed"],
            )

        n = len(analyses)
        reasons: List[str] = []
        warnings: List[str] = []

        # 1. Weighted trend score in [-1, 1]
        trend_weights = []
        for a in analyses:
            w = self._weights(a.timeframe)
            trend_weights.append(w.trend if w else 0.0)
        if sum(trend_weights) <= 0:
            trend_weights = [1.0] * n
        score = 0.0
        for a, w in zip(analyses, trend_weights):
            lean = a.confidence / 100.0
            if a.direction == Direction.LONG:
                score += w * lean
            elif a.direction == Direction.SHORT:
                score -= w * lean
        score /= sum(trend_weights)

        # 2. Alignment with the majority non-HOLD direction
        longs = sum(1 for a in analyses if a.direction == Direction.LONG)
        shorts = sum(1 for a in analyses if a.direction == Direction.SHORT)
        if longs > shorts:
            majority = Direction.LONG
        elif shorts > longs:
            majority = Direction.SHORT
        else:
            majority = Direction.HOLD
        agreeing = longs if majority == Direction.LONG else shorts if majority == Direction.SHORT else 0
        alignment = agreeing / n * 100.0

        # 3. Pattern strength
        patterns = self._ranked_patterns(analyses)
        pattern_strength = 0.0
        for p in patterns:
            pattern_strength += self._pattern_weight(p) * p.strength / 100.0 * 30
        pattern_strength = min(100.0, pattern_strength)

        # 4. Confidence blend
        if majority == Direction.LONG:
            trend_component = max(0.0, score) * 100
        elif majority == Direction.SHORT:
            trend_component = max(0.0, -score) * 100
        else:
            trend_component = 0.0
        cfg = self.config
        confidence = (
            cfg.blend_trend * trend_component
            + cfg.blend_alignment * alignment
            + cfg.blend_pattern * pattern_strength
        )
        conflicting = longs > 0 and shorts > 0
        if conflicting:
            confidence = max(0.0, confidence - cfg.conflict_penalty)

        # 5. Direction
        if (
            majority != Direction.HOLD
            and confidence >= cfg.confidence_threshold
            and alignment >= 50
        ):
            direction = majority
        else:
            direction = Direction.HOLD

        for a in analyses:
            if a.confidence > _REASON_MIN_CONFIDENCE and not a.degraded:
                reasons.append(
                    f"{a.timeframe}: {a.direction.value} "
                    f"({a.confidence:.0f}% conf, RSI: {a.rsi:.0f})"
                )
        if direction == Direction.LONG:
            names = [p.type.replace("_", " ") for p in patterns if p.direction == PatternDirection.BULLISH]
            if names:
                reasons.append(f"Bullish patterns: {', '.join(names)}")
        elif direction == Direction.SHORT:
            names = [p.type.replace("_", " ") for p in patterns if p.direction == PatternDirection.BEARISH]
            if names:
                reasons.append(f"Bearish patterns: {', '.join(names)}")

        # Entry, take-profit and stop-loss
        primary = self._primary_entry(analyses)
        entry = primary.current_price if primary else 0.0
        if direction == Direction.LONG and entry > 0:
            tp = entry * (1 + risk.take_profit_pct)
            sl = entry * (1 - risk.stop_loss_pct)
        elif direction == Direction.SHORT and entry > 0:
            tp = entry * (1 - risk.take_profit_pct)
            sl = entry * (1 + risk.stop_loss_pct)
        else:
            usable = [a for a in analyses if not a.degraded] or analyses
            tp = sum(a.resistance for a in usable) / len(usable)
            sl = sum(a.support for a in usable) / len(usable)

        if direction == Direction.HOLD:
            warnings.append(MIXED_SIGNALS_WARNING)
        if conflicting:
            warnings.append(CONFLICT_WARNING)
        if primary is not None and not primary.degraded:
            if primary.rsi <= _RSI_OVERSOLD:
                warnings.append(f"RSI extreme on {primary.timeframe}: {primary.rsi:.0f} (oversold)")
            elif primary.rsi >= _RSI_OVERBOUGHT:
                warnings.append(f"RSI extreme on {primary.timeframe}: {primary.rsi:.0f} (overbought)")
        for a in analyses:
            if a.degraded:
                warnings.extend(a.warnings or [f"{a.timeframe}: analysis degraded"])

        return UnifiedSignal(
            symbol=symbol,
            direction=direction,
            confidence=round(confidence, 4),
            timeframes=analyses,
            trend_alignment=round(alignment, 4),
            pattern_strength=round(pattern_strength, 4),
            patterns=patterns,
            suggested_entry=entry,
            suggested_tp=round(tp, 8),
            suggested_sl=round(sl, 8),
            reasons=reasons,
            warnings=warnings,
        )

    def _pattern_weight(self, p: Pattern) -> float:
        return self.config.pattern_weights.get(p.type, 0.5)

    def _ranked_patterns(self, analyses: Iterable[TimeframeAnalysis]) -> List[Pattern]:
        found = [p for a in analyses for p in a.patterns]
        return sorted(
            found,
            key=lambda p: (self._pattern_weight(p) * p.strength, p.candle_index),
            reverse=True,
        )

    def _primary_entry(self, analyses: List[TimeframeAnalysis]) -> Optional[TimeframeAnalysis]:
        """Priced analysis with the highest entry weight; degraded ones only as a last resort."""
        def entry_weight(a: TimeframeAnalysis) -> float:
            w = self._weights(a.timeframe)
            return w.entry if w else 0.0

        for pool in (
            [a for a in analyses if a.current_price > 0 and not a.degraded],
            [a for a in analyses if a.current_price > 0],
        ):
            if pool:
                return max(pool, key=entry_weight)
        return None


_default_aggregator: Optional[SignalAggregator] = None


def aggregate(
    symbol: str,
    analyses: Sequence[TimeframeAnalysis],
    risk: Optional[RiskProfile] = None,
) -> UnifiedSignal:
    """Aggregate with the default weight tables and risk profile."""
    global _default_aggregator
    if _default_aggregator is None:
        _default_aggregator = SignalAggregator()
    return _default_aggregator.aggregate(symbol, analyses, risk)


class UnifiedSignalEngine:
    """
    Fetches candles, analyzes each timeframe and aggregates per symbol.

    Also runs optional per-symbol refresh loops; the latest signal of each
    registered symbol is available through ``get_last_signal``.
    """

    def __init__(
        self,
        candle_feed,
        config: Optional[SignalsConfig] = None,
        risk: Optional[RiskProfile] = None,
    ):
        self.candle_feed = candle_feed
        self.config = config or SignalsConfig()
        self.analyzer = TimeframeAnalyzer(self.config)
        self.aggregator = SignalAggregator(self.config, risk)
        self._symbol_tasks: Dict[str, asyncio.Task] = {}
        self._last_signals: Dict[str, UnifiedSignal] = {}

    # ------------------------------------------------------------------
    # One-shot analysis
    # ------------------------------------------------------------------

    def validate_timeframes(self, timeframes: Optional[Iterable[str]]) -> List[str]:
        """Normalize a requested timeframe list; raises ValueError on unknown entries."""
        if timeframes is None:
            return list(self.config.timeframes)
        requested: List[str] = []
        for tf in timeframes:
            tf = tf.strip()
            if tf and tf not in requested:
                requested.append(tf)
        if not requested:
            raise ValueError("At least one timeframe is required")
        unknown = [tf for tf in requested if tf not in self.config.timeframe_weights]
        if unknown:
            raise ValueError(f"Unsupported timeframe(s): {', '.join(unknown)}")
        return requested

    async def analyze_timeframe(self, symbol: str, timeframe: str) -> TimeframeAnalysis:
        """Fetch and analyze one timeframe within its time budget; never raises."""
        symbol = symbol.upper()
        budget = self.config.timeframe_timeout_seconds
        try:
            return await asyncio.wait_for(self._fetch_and_analyze(symbol, timeframe), timeout=budget)
        except asyncio.TimeoutError:
            logger.warning("Timeframe timed out", symbol=symbol, timeframe=timeframe, timeout=budget)
            return neutral_analysis(symbol, timeframe, f"{timeframe}: timed out after {budget:g}s")
        except Exception as e:
            logger.error(
                "Timeframe fetch error",
                symbol=symbol,
                timeframe=timeframe,
                error=repr(e),
                error_type=type(e).__name__,
            )
            return neutral_analysis(
                symbol, timeframe, f"{timeframe}: candle fetch failed ({type(e).__name__})"
            )

    async def _fetch_and_analyze(self, symbol: str, timeframe: str) -> TimeframeAnalysis:
        candles = await self.candle_feed.get_candles(symbol, timeframe, self.config.candle_limit)
        return self.analyzer.analyze(candles, timeframe, symbol)

    async def generate_signal(
        self,
        symbol: str,
        timeframes: Optional[Iterable[str]] = None,
        risk: Optional[RiskProfile] = None,
    ) -> UnifiedSignal:
        """
        Unified signal across ``timeframes`` (default: configured set).

        Raises ValueError only for an invalid timeframe request.
        """
        symbol = symbol.upper()
        requested = self.validate_timeframes(timeframes)
        analyses = await asyncio.gather(
            *(self.analyze_timeframe(symbol, tf) for tf in requested)
        )
        signal = self.aggregator.aggregate(symbol, list(analyses), risk)
        logger.info(
            "Unified signal generated",
            symbol=symbol,
            direction=signal.direction.value,
            confidence=round(signal.confidence, 1),
            trend_alignment=round(signal.trend_alignment, 1),
            pattern_strength=round(signal.pattern_strength, 1),
            warnings=len(signal.warnings),
        )
        return signal

    async def scan_symbols(
        self,
        symbols: Iterable[str],
        timeframes: Optional[Iterable[str]] = None,
    ) -> List[UnifiedSignal]:
        """Signals for many symbols in parallel, strongest first."""
        symbols = list(symbols)
        requested = self.validate_timeframes(timeframes)
        results = await asyncio.gather(
            *(self.generate_signal(s, requested) for s in symbols),
            return_exceptions=True,
        )
        valid: List[UnifiedSignal] = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                logger.error(
                    "Symbol scan failed",
                    symbol=symbol,
                    error=repr(result),
                    error_type=type(result).__name__,
                )
            else:
                valid.append(result)
        valid.sort(key=lambda s: s.confidence, reverse=True)
        return valid

    def is_signal_strong(self, signal: UnifiedSignal, min_confidence: Optional[float] = None) -> bool:
        threshold = self.config.confidence_threshold if min_confidence is None else min_confidence
        return is_signal_strong(signal, threshold)

    # ------------------------------------------------------------------
    # Per-symbol refresh loops
    # ------------------------------------------------------------------

    def registered_symbols(self) -> List[str]:
        return sorted(self._symbol_tasks)

    def register_symbol(self, symbol: str, timeframes: Optional[Iterable[str]] = None) -> None:
        symbol = symbol.upper()
        if symbol in self._symbol_tasks:
            return
        requested = self.validate_timeframes(timeframes)
        self._symbol_tasks[symbol] = asyncio.create_task(
            self._symbol_loop(symbol, requested), name=f"signals:{symbol}"
        )
        logger.info("Symbol registered", symbol=symbol, timeframes=requested)

    async def deregister_symbol(self, symbol: str) -> None:
        symbol = symbol.upper()
        task = self._symbol_tasks.pop(symbol, None)
        self._last_signals.pop(symbol, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Symbol deregistered", symbol=symbol)

    def get_last_signal(self, symbol: str) -> Optional[UnifiedSignal]:
        return self._last_signals.get(symbol.upper())

    async def stop(self) -> None:
        for symbol in list(self._symbol_tasks):
            await self.deregister_symbol(symbol)

    async def _symbol_loop(self, symbol: str, timeframes: List[str]) -> None:
        interval = self.config.scan_interval_seconds
        while True:
            try:
                signal = await self.generate_signal(symbol, timeframes)
                # Drop results that land after deregistration
                if symbol in self._symbol_tasks:
                    self._last_signals[symbol] = signal
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Signal loop error", symbol=symbol, error=repr(e))
                await asyncio.sleep(interval)
