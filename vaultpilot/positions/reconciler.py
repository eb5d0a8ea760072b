"""
Position Reconciler - vault bookkeeping vs. exchange reality.

Classifies each (wallet, token) into CLOSED, ACTIVE_HEALTHY, ACTIVE_GHOST
or STUCK, computes live PnL and stop levels, and names the vault calls that
would resolve a ghost or stuck position. It never submits anything; the
remedial calls are advisory output for the execution side.

- ACTIVE_GHOST: vault says active, the exchange holds no size on either side
- STUCK: vault says active and the wallet's vault balance is 0
- A ghost becomes recoverable only once its age strictly exceeds the timeout,
  so a settlement still pending at the keeper is never raced
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional, Sequence, Tuple

from vaultpilot.core.logger import get_logger
from vaultpilot.positions.models import (
    ExchangePosition,
    LivePnl,
    OnChainPosition,
    PositionState,
    PriceQuote,
    Reconciliation,
    RecoveryStatus,
    RemedialCall,
    StopLevels,
)

logger = get_logger("reconciler")

GHOST_NOT_RECOVERABLE_WARNING = "ghost-detected, not yet recoverable"
STUCK_WARNING = "Balance is 0 but position exists"

# Vault calls that take a native execution fee
_PAYABLE_CALLS = frozenset({"userClosePosition", "userInstantClose"})


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def compute_live_pnl(position: OnChainPosition, current_price: float) -> LivePnl:
    """
    Direction-signed PnL in collateral units and as a percent of collateral.

    A zero entry price (just opened) or zero current price (feed not warm)
    yields a neutral 0 PnL.
    """
    if position.entry_price <= 0 or current_price <= 0:
        return LivePnl(pnl=0.0, pnl_percent=0.0, current_price=current_price)
    pnl = (current_price - position.entry_price) * position.size / position.entry_price
    if not position.is_long:
        pnl = -pnl
    pct = pnl / position.collateral * 100 if position.collateral > 0 else 0.0
    return LivePnl(pnl=pnl, pnl_percent=pct, current_price=current_price)


def trailing_stop_price(position: OnChainPosition) -> Optional[float]:
    """Effective trailing stop, or None unless trailing has activated."""
    if not position.trailing_activated or position.trailing_sl_bps <= 0:
        return None
    offset = position.trailing_sl_bps / 10_000
    if position.is_long:
        if position.highest_price <= 0:
            return None
        return position.highest_price * (1 - offset)
    if position.lowest_price <= 0:
        return None
    return position.lowest_price * (1 + offset)


def stop_levels(position: OnChainPosition) -> StopLevels:
    return StopLevels(
        stop_loss=position.stop_loss,
        take_profit=position.take_profit,
        trailing_stop=trailing_stop_price(position),
    )


def format_duration(opened_at: float, now: float) -> str:
    """Human position age: '2d 3h 4m', '3h 4m 5s', '4m 5s' or '5s'."""
    secs = int(now - opened_at)
    if secs <= 0:
        return "0s"
    days, rem = divmod(secs, 86_400)
    hours, rem = divmod(rem, 3_600)
    minutes, seconds = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def classify(
    position: Optional[OnChainPosition],
    exchange_positions: Sequence[ExchangePosition],
    vault_balance: Optional[float],
    *,
    now: float,
    ghost_timeout_seconds: int,
) -> Tuple[PositionState, RecoveryStatus, bool, List[str]]:
    """Return (state, recovery status, is_ghost, warnings)."""
    if position is None or not position.is_active:
        return PositionState.CLOSED, RecoveryStatus.NONE, False, []

    is_ghost = not any(p.size > 0 for p in exchange_positions)

    if vault_balance is not None and vault_balance == 0:
        return PositionState.STUCK, RecoveryStatus.MANUAL_RECOVERY, is_ghost, [STUCK_WARNING]

    if not is_ghost:
        return PositionState.ACTIVE_HEALTHY, RecoveryStatus.NONE, False, []

    age = now - position.timestamp
    if age > ghost_timeout_seconds:
        return (
            PositionState.ACTIVE_GHOST,
            RecoveryStatus.RECOVERABLE,
            True,
            [f"ghost position older than {ghost_timeout_seconds}s, recoverable"],
        )
    return PositionState.ACTIVE_GHOST, RecoveryStatus.GHOST_DETECTED, True, [GHOST_NOT_RECOVERABLE_WARNING]


def remedial_calls(
    position: Optional[OnChainPosition],
    recovery: RecoveryStatus,
    token: str,
) -> List[RemedialCall]:
    """Vault calls that resolve the classified situation, in submission order."""
    names: List[str] = []
    if recovery == RecoveryStatus.MANUAL_RECOVERY:
        names = ["userInstantClose", "userClosePosition"]
    elif recovery == RecoveryStatus.RECOVERABLE:
        if position is not None and position.auto_features_enabled:
            names.append("cancelAutoFeatures")
        names.append("userInstantClose")
    return [RemedialCall(function=n, token=token, payable=n in _PAYABLE_CALLS) for n in names]


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class PositionReconciler:
    """Reads both position views for a key and classifies them."""

    def __init__(
        self,
        reader=None,
        ghost_timeout_seconds: int = 7200,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.ghost_timeout_seconds = ghost_timeout_seconds
        self._clock = clock

    def reconcile(
        self,
        wallet: str,
        token: str,
        position: Optional[OnChainPosition],
        exchange_positions: Sequence[ExchangePosition],
        vault_balance: Optional[float],
        prices: Optional[PriceQuote] = None,
        *,
        token_symbol: str = "",
        now: Optional[float] = None,
    ) -> Reconciliation:
        """Classify already-read state; no I/O."""
        now = self._clock() if now is None else now
        state, recovery, is_ghost, warnings = classify(
            position,
            exchange_positions,
            vault_balance,
            now=now,
            ghost_timeout_seconds=self.ghost_timeout_seconds,
        )
        result = Reconciliation(
            wallet=wallet.lower(),
            token=token,
            token_symbol=token_symbol or token,
            state=state,
            recovery=recovery,
            checked_at=now,
            position=position,
            exchange_positions=list(exchange_positions),
            vault_balance=vault_balance,
            is_ghost=is_ghost,
            warnings=warnings,
            actions=remedial_calls(position, recovery, token),
        )
        if state != PositionState.CLOSED and position is not None:
            result.age_seconds = max(0, int(now - position.timestamp))
            result.duration = format_duration(position.timestamp, now)
            result.levels = stop_levels(position)
            if prices is not None:
                result.pnl = compute_live_pnl(position, prices.mark_for(position.is_long))
        return result

    async def poll(self, wallet: str, token: str) -> Reconciliation:
        """
        Read vault position, balance, exchange positions and prices, then classify.

        Raises ChainReadError when any read fails; callers decide how to
        keep the previous classification.
        """
        if self.reader is None:
            raise RuntimeError("PositionReconciler has no chain reader")
        reader = self.reader
        symbol = reader.token_symbol(token)

        position = await reader.get_vault_position(wallet, token)
        if not position.is_active:
            return self.reconcile(wallet, token, position, [], None, token_symbol=symbol)

        balance, exchange, prices = await asyncio.gather(
            reader.get_vault_balance(wallet),
            reader.get_exchange_positions(token),
            reader.get_prices(token),
        )
        result = self.reconcile(
            wallet, token, position, exchange, balance, prices, token_symbol=symbol
        )
        if result.actions:
            result.actions = await self._attach_call_data(result.actions, token)
        return result

    async def _attach_call_data(self, actions: List[RemedialCall], token: str) -> List[RemedialCall]:
        fee: Optional[int] = None
        if any(a.payable for a in actions):
            try:
                fee = await self.reader.get_execution_fee()
            except Exception as e:
                logger.warning("Execution fee read failed", token=token, error=repr(e))
        return [
            RemedialCall(
                function=a.function,
                token=a.token,
                payable=a.payable,
                execution_fee_wei=fee if a.payable else None,
                calldata=self.reader.encode_call(a.function, token),
            )
            for a in actions
        ]
