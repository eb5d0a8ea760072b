"""Shared test fixtures and stubs for VaultPilot tests.

Provides reusable stub classes and factory functions for the candle feed,
chain reader and subscription store.
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from vaultpilot.core.config import ConfigManager
from vaultpilot.core.error_handler import ChainReadError
from vaultpilot.positions.models import ExchangePosition, OnChainPosition, PriceQuote
from vaultpilot.signals.base import Candle

WALLET = "0x1111111111111111111111111111111111111111"
WETH = "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"
WBTC = "0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f"


# ---------------------------------------------------------------------------
# Stub classes
# ---------------------------------------------------------------------------


class StubStore:
    """In-memory subscription store with the same version compare-and-set as the DB.

    Configurable via attributes:
        fail_updates: number of upcoming counter updates that lose the race
        raise_on_get: exception raised by get_subscription()
    """

    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.fail_updates = 0
        self.raise_on_get: Optional[BaseException] = None
        self.update_calls = 0

    def put(self, wallet: str, **fields: Any) -> None:
        row = make_subscription(wallet, **fields)
        self.rows[wallet.lower()] = row

    async def get_subscription(self, wallet: str) -> Optional[Dict[str, Any]]:
        if self.raise_on_get is not None:
            raise self.raise_on_get
        row = self.rows.get(wallet.lower())
        return dict(row) if row else None

    async def update_subscription_counters(
        self,
        wallet: str,
        expected_version: int,
        *,
        daily_trades_used: int,
        total_trades_used: int,
        daily_trades_reset_at: Optional[datetime],
    ) -> bool:
        self.update_calls += 1
        if self.fail_updates > 0:
            self.fail_updates -= 1
            return False
        row = self.rows.get(wallet.lower())
        if row is None or row["version"] != expected_version:
            return False
        row.update(
            daily_trades_used=daily_trades_used,
            total_trades_used=total_trades_used,
            daily_trades_reset_at=daily_trades_reset_at,
            version=expected_version + 1,
        )
        return True


class StubCandleFeed:
    """Candle feed stub returning fixed series per timeframe.

    Configurable via attributes:
        series: dict of timeframe -> candle sequence (default for all: make_candles())
        delays: dict of timeframe -> seconds to sleep before answering
        errors: dict of timeframe -> exception to raise
    """

    def __init__(self, series: Optional[Dict[str, Sequence[Candle]]] = None) -> None:
        self.series = series or {}
        self.delays: Dict[str, float] = {}
        self.errors: Dict[str, BaseException] = {}
        self.calls: List[tuple] = []
        self._default = tuple(make_candles(120))

    async def get_candles(self, symbol: str, timeframe: str, limit: int = 100):
        self.calls.append((symbol, timeframe, limit))
        if timeframe in self.delays:
            await asyncio.sleep(self.delays[timeframe])
        if timeframe in self.errors:
            raise self.errors[timeframe]
        return tuple(self.series.get(timeframe, self._default))[-limit:]


class StubChainReader:
    """Chain reader stub serving one position per token.

    Configurable via attributes:
        positions: dict of token -> OnChainPosition
        exchange: dict of token -> [long, short] ExchangePosition
        balance: vault balance for every wallet
        fail: exception raised by get_vault_position()
        gate: when set, get_vault_position() waits on it first
    """

    def __init__(
        self,
        positions: Optional[Dict[str, OnChainPosition]] = None,
        exchange: Optional[Dict[str, List[ExchangePosition]]] = None,
        balance: float = 100.0,
        prices: Optional[PriceQuote] = None,
        fee: int = 150_000_000_000_000,
    ) -> None:
        self.positions = positions or {}
        self.exchange = exchange or {}
        self.balance = balance
        self.prices = prices or PriceQuote(max_price=2101.0, min_price=2100.0)
        self.fee = fee
        self.fail: Optional[BaseException] = None
        self.fee_error: Optional[BaseException] = None
        self.gate: Optional[asyncio.Event] = None
        self.position_reads = 0

    def token_symbol(self, token: str) -> str:
        return {WETH.lower(): "WETH", WBTC.lower(): "WBTC"}.get(token.lower(), token)

    async def get_vault_position(self, wallet: str, token: str) -> OnChainPosition:
        if self.gate is not None:
            await self.gate.wait()
        self.position_reads += 1
        if self.fail is not None:
            raise self.fail
        return self.positions.get(token) or make_position(is_active=False)

    async def get_vault_balance(self, wallet: str) -> float:
        return self.balance

    async def get_exchange_positions(self, token: str) -> List[ExchangePosition]:
        return self.exchange.get(token) or [make_exchange(True, 0), make_exchange(False, 0)]

    async def get_prices(self, token: str) -> PriceQuote:
        return self.prices

    async def get_execution_fee(self) -> int:
        if self.fee_error is not None:
            raise self.fee_error
        return self.fee

    def encode_call(self, function: str, token: str) -> str:
        return f"0x{function}:{token}"


def rpc_failure(call: str = "getPosition") -> ChainReadError:
    return ChainReadError(call, ConnectionError("rpc unreachable"))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_candles(
    n: int = 120,
    start: float = 2000.0,
    step: float = 0.0,
    wave: float = 15.0,
    period: float = 9.0,
    start_ts: int = 1_700_000_000_000,
    interval_ms: int = 60_000,
) -> List[Candle]:
    """Deterministic OHLCV series: linear drift plus a sine wave."""
    candles: List[Candle] = []
    prev_close = start
    for i in range(n):
        close = start + step * i + wave * math.sin(i / period * 2 * math.pi)
        open_ = prev_close
        high = max(open_, close) + 2.0
        low = min(open_, close) - 2.0
        candles.append(
            Candle(
                open=round(open_, 6),
                high=round(high, 6),
                low=round(low, 6),
                close=round(close, 6),
                volume=100.0 + i,
                timestamp=start_ts + i * interval_ms,
            )
        )
        prev_close = close
    return candles


def make_subscription(wallet: str = WALLET, **overrides: Any) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "wallet_address": wallet.lower(),
        "user_id": "user-1",
        "plan_tier": "pro",
        "status": "active",
        "daily_trades_used": 0,
        "daily_trades_reset_at": datetime(2099, 1, 1, tzinfo=timezone.utc),
        "total_trades_used": 0,
        "end_date": None,
        "timezone": "UTC",
        "auto_trade_enabled": 0,
        "version": 1,
    }
    row.update(overrides)
    return row


def make_position(**overrides: Any) -> OnChainPosition:
    fields: Dict[str, Any] = {
        "is_active": True,
        "is_long": True,
        "token": WETH,
        "collateral": 100.0,
        "size": 1000.0,
        "leverage": 10,
        "entry_price": 2000.0,
        "stop_loss": 1900.0,
        "take_profit": 2200.0,
        "timestamp": 1_700_000_000,
        "request_key": "0x" + "ab" * 32,
        "highest_price": 2150.0,
        "lowest_price": 1990.0,
        "trailing_sl_bps": 100,
        "trailing_activated": False,
        "auto_features_enabled": True,
    }
    fields.update(overrides)
    return OnChainPosition(**fields)


def make_exchange(is_long: bool, size: float) -> ExchangePosition:
    return ExchangePosition(
        is_long=is_long,
        size=size,
        collateral=100.0 if size else 0.0,
        average_price=2000.0 if size else 0.0,
        entry_funding_rate=0,
        reserve_amount=0,
        realised_pnl=0.0,
        last_increased_time=1_700_000_000 if size else 0,
    )


# ---------------------------------------------------------------------------
# Auto-use fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Prevent ConfigManager singleton state from leaking between tests."""
    saved_instance = ConfigManager._instance
    saved_config = ConfigManager._config
    yield
    ConfigManager._instance = saved_instance
    ConfigManager._config = saved_config


@pytest.fixture
def store() -> StubStore:
    return StubStore()
