"""
Position data model - vault-side and exchange-side views of one position.

Raw contract tuples carry fixed-point integers; ``from_raw`` decodes them
into floats (USD and USD prices) so the reconciler never touches scaling.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from vaultpilot.chain.abis import USD_DECIMALS, USDC_DECIMALS

_USD = 10 ** USD_DECIMALS
_USDC = 10 ** USDC_DECIMALS


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value or "0x" + "00" * 32)


@dataclass(frozen=True)
class OnChainPosition:
    """Vault bookkeeping for one (wallet, token) pair."""
    is_active: bool
    is_long: bool
    token: str
    collateral: float          # USD
    size: float                # USD notional
    leverage: int
    entry_price: float
    stop_loss: float
    take_profit: float
    timestamp: int             # epoch seconds the position was opened
    request_key: str
    highest_price: float
    lowest_price: float
    trailing_sl_bps: int
    trailing_activated: bool
    auto_features_enabled: bool

    @classmethod
    def from_raw(cls, raw: Sequence[Any]) -> OnChainPosition:
        """Decode the 16-field ``getPosition(user, token)`` tuple."""
        if len(raw) != 16:
            raise ValueError(f"vault position tuple has {len(raw)} fields, expected 16")
        return cls(
            is_active=bool(raw[0]),
            is_long=bool(raw[1]),
            token=str(raw[2]),
            collateral=int(raw[3]) / _USDC,
            size=int(raw[4]) / _USD,
            leverage=int(raw[5]),
            entry_price=int(raw[6]) / _USD,
            stop_loss=int(raw[7]) / _USD,
            take_profit=int(raw[8]) / _USD,
            timestamp=int(raw[9]),
            request_key=_hex(raw[10]),
            highest_price=int(raw[11]) / _USD,
            lowest_price=int(raw[12]) / _USD,
            trailing_sl_bps=int(raw[13]),
            trailing_activated=bool(raw[14]),
            auto_features_enabled=bool(raw[15]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isActive": self.is_active,
            "isLong": self.is_long,
            "token": self.token,
            "collateral": self.collateral,
            "size": self.size,
            "leverage": self.leverage,
            "entryPrice": self.entry_price,
            "stopLoss": self.stop_loss,
            "takeProfit": self.take_profit,
            "timestamp": self.timestamp,
            "requestKey": self.request_key,
            "highestPrice": self.highest_price,
            "lowestPrice": self.lowest_price,
            "trailingSlBps": self.trailing_sl_bps,
            "trailingActivated": self.trailing_activated,
            "autoFeaturesEnabled": self.auto_features_enabled,
        }


@dataclass(frozen=True)
class ExchangePosition:
    """Underlying exchange position held by the vault for one side of a token."""
    is_long: bool
    size: float
    collateral: float
    average_price: float
    entry_funding_rate: int
    reserve_amount: int
    realised_pnl: float
    last_increased_time: int

    @classmethod
    def from_raw(cls, raw: Sequence[Any], is_long: bool) -> ExchangePosition:
        """Decode the 7-field GMX ``getPosition`` result."""
        if len(raw) != 7:
            raise ValueError(f"exchange position tuple has {len(raw)} fields, expected 7")
        return cls(
            is_long=is_long,
            size=int(raw[0]) / _USD,
            collateral=int(raw[1]) / _USD,
            average_price=int(raw[2]) / _USD,
            entry_funding_rate=int(raw[3]),
            reserve_amount=int(raw[4]),
            realised_pnl=int(raw[5]) / _USD,
            last_increased_time=int(raw[6]),
        )

    @property
    def is_open(self) -> bool:
        return self.size > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isLong": self.is_long,
            "size": self.size,
            "collateral": self.collateral,
            "averagePrice": self.average_price,
            "entryFundingRate": self.entry_funding_rate,
            "reserveAmount": self.reserve_amount,
            "realisedPnl": self.realised_pnl,
            "lastIncreasedTime": self.last_increased_time,
        }


@dataclass(frozen=True)
class PriceQuote:
    max_price: float
    min_price: float

    @property
    def mid(self) -> float:
        if self.max_price <= 0 or self.min_price <= 0:
            return max(self.max_price, self.min_price, 0.0)
        return (self.max_price + self.min_price) / 2

    def mark_for(self, is_long: bool) -> float:
        """Exit-side price: longs close at min, shorts at max."""
        price = self.min_price if is_long else self.max_price
        return price if price > 0 else self.mid


class PositionState(str, Enum):
    CLOSED = "closed"
    ACTIVE_HEALTHY = "active_healthy"
    ACTIVE_GHOST = "active_ghost"
    STUCK = "stuck"
    # No successful read yet
    UNKNOWN = "unknown"


class RecoveryStatus(str, Enum):
    NONE = "none"
    GHOST_DETECTED = "ghost_detected"
    RECOVERABLE = "recoverable"
    MANUAL_RECOVERY = "manual_recovery"


@dataclass(frozen=True)
class RemedialCall:
    """A vault call the execution side may submit to resolve a position."""
    function: str
    token: str
    payable: bool
    execution_fee_wei: Optional[int] = None
    calldata: Optional[str] = None

    @property
    def signature(self) -> str:
        return f"{self.function}(address)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "function": self.function,
            "signature": self.signature,
            "args": [self.token],
            "payable": self.payable,
            "executionFeeWei": self.execution_fee_wei,
            "calldata": self.calldata,
        }


@dataclass(frozen=True)
class LivePnl:
    pnl: float
    pnl_percent: float
    current_price: float


@dataclass(frozen=True)
class StopLevels:
    stop_loss: float
    take_profit: float
    trailing_stop: Optional[float]


@dataclass
class Reconciliation:
    """Classification of one (wallet, token) poll."""
    wallet: str
    token: str
    token_symbol: str
    state: PositionState
    recovery: RecoveryStatus
    checked_at: float
    position: Optional[OnChainPosition] = None
    exchange_positions: List[ExchangePosition] = field(default_factory=list)
    vault_balance: Optional[float] = None
    is_ghost: bool = False
    age_seconds: Optional[int] = None
    duration: Optional[str] = None
    pnl: Optional[LivePnl] = None
    levels: Optional[StopLevels] = None
    actions: List[RemedialCall] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stale: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "token": self.token,
            "tokenSymbol": self.token_symbol,
            "state": self.state.value,
            "recovery": self.recovery.value,
            "checkedAt": self.checked_at,
            "position": self.position.to_dict() if self.position else None,
            "exchangePositions": [p.to_dict() for p in self.exchange_positions],
            "vaultBalance": self.vault_balance,
            "isGhost": self.is_ghost,
            "ageSeconds": self.age_seconds,
            "duration": self.duration,
            "pnl": asdict(self.pnl) if self.pnl else None,
            "levels": asdict(self.levels) if self.levels else None,
            "actions": [a.to_dict() for a in self.actions],
            "warnings": list(self.warnings),
            "stale": self.stale,
            "error": self.error,
        }
