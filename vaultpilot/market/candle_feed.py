"""
Candle Feed Adapter - OHLCV candles from public exchange REST endpoints.

Sources are tried in the configured order (Binance, then KuCoin, then OKX)
and normalized to ascending ``Candle`` tuples. Results are cached per
(symbol, timeframe) for a timeframe-dependent TTL; when every source fails
the last cached candles are returned even if stale.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from vaultpilot.core.config import MarketDataConfig
from vaultpilot.core.logger import get_logger
from vaultpilot.signals.base import Candle

logger = get_logger("candle_feed")

TIMEFRAME_SECONDS: Dict[str, int] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "4h": 14400,
}

_KUCOIN_INTERVALS = {"1m": "1min", "5m": "5min", "15m": "15min", "1h": "1hour", "4h": "4hour"}
_OKX_INTERVALS = {"1m": "1m", "5m": "5m", "15m": "15m", "1h": "1H", "4h": "4H"}

CandleSeries = Tuple[Candle, ...]


def dashed_symbol(symbol: str) -> str:
    """ETHUSDT -> ETH-USDT for exchanges that separate base and quote."""
    s = symbol.upper()
    for quote in ("USDT", "USDC"):
        if s.endswith(quote) and len(s) > len(quote):
            return f"{s[:-len(quote)]}-{quote}"
    return s


class CandleFeed:
    """Async candle source with fallback chain and TTL cache."""

    def __init__(
        self,
        config: Optional[MarketDataConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or MarketDataConfig()
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._cache: Dict[Tuple[str, str], Tuple[CandleSeries, float]] = {}
        self._fetchers = {
            "binance": self._fetch_binance,
            "kucoin": self._fetch_kucoin,
            "okx": self._fetch_okx,
        }

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout_seconds)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def cache_age(self, symbol: str, timeframe: str) -> Optional[float]:
        entry = self._cache.get((symbol.upper(), timeframe))
        if entry is None:
            return None
        return self._clock() - entry[1]

    async def get_candles(
        self,
        symbol: str,
        timeframe: str,
        limit: int = 100,
    ) -> CandleSeries:
        """
        Return up to ``limit`` candles in ascending time order.

        Raises ValueError for an unsupported timeframe; network failures never
        raise, they fall through to the next source and finally to the cache.
        """
        if timeframe not in TIMEFRAME_SECONDS:
            raise ValueError(f"Unsupported timeframe '{timeframe}'")
        symbol = symbol.upper()
        key = (symbol, timeframe)
        ttl = float(self.config.cache_ttl_seconds.get(timeframe, 60))

        cached = self._cache.get(key)
        if cached is not None and self._clock() - cached[1] < ttl:
            return cached[0]

        if self._client is None:
            await self.initialize()

        for source in self.config.sources:
            fetch = self._fetchers[source]
            try:
                candles = await fetch(symbol, timeframe, limit)
            except Exception as e:
                logger.warning(
                    "Candle source failed",
                    source=source,
                    symbol=symbol,
                    timeframe=timeframe,
                    error=repr(e),
                )
                continue
            if candles:
                series = tuple(candles[-limit:])
                self._cache[key] = (series, self._clock())
                if source != self.config.sources[0]:
                    logger.info(
                        "Using fallback candle source",
                        source=source,
                        symbol=symbol,
                        timeframe=timeframe,
                        count=len(series),
                    )
                return series

        logger.error(
            "All candle sources failed",
            symbol=symbol,
            timeframe=timeframe,
            stale_cache=cached is not None,
        )
        return cached[0] if cached is not None else ()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        resp = await self._client.get(
            url, params=params, timeout=self.config.request_timeout_seconds
        )
        resp.raise_for_status()
        return resp.json()

    async def _fetch_binance(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        data = await self._get_json(
            self.config.binance_url,
            {"symbol": symbol, "interval": timeframe, "limit": limit},
        )
        if not isinstance(data, list):
            return []
        # [open_time_ms, open, high, low, close, volume, ...] oldest first
        return [
            Candle(
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
                timestamp=int(k[0]),
            )
            for k in data
        ]

    async def _fetch_kucoin(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        end_at = int(time.time())
        start_at = end_at - limit * TIMEFRAME_SECONDS[timeframe]
        data = await self._get_json(
            self.config.kucoin_url,
            {
                "type": _KUCOIN_INTERVALS[timeframe],
                "symbol": dashed_symbol(symbol),
                "startAt": start_at,
                "endAt": end_at,
            },
        )
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            return []
        # [time_s, open, close, high, low, volume, turnover] newest first
        return [
            Candle(
                open=float(k[1]),
                high=float(k[3]),
                low=float(k[4]),
                close=float(k[2]),
                volume=float(k[5]),
                timestamp=int(k[0]) * 1000,
            )
            for k in reversed(rows)
        ]

    async def _fetch_okx(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        data = await self._get_json(
            self.config.okx_url,
            {"instId": dashed_symbol(symbol), "bar": _OKX_INTERVALS[timeframe], "limit": limit},
        )
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            return []
        # [ts_ms, open, high, low, close, volume, ...] newest first
        return [
            Candle(
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
                timestamp=int(k[0]),
            )
            for k in reversed(rows)
        ]
