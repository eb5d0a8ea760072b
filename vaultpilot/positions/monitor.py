"""
Position Monitor - periodic reconciliation of registered wallets.

One background task per wallet polls every configured token. A poll that
is still in flight for a key causes the next one to skip that key. When a
chain read fails the previous classification is kept and marked stale
rather than replaced by a guess.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Dict, List, Optional, Set, Tuple

from vaultpilot.core.logger import get_logger, log_performance
from vaultpilot.positions.models import PositionState, Reconciliation, RecoveryStatus
from vaultpilot.positions.reconciler import PositionReconciler

logger = get_logger("position_monitor")


class PositionMonitor:
    """Schedules reconciler polls per (wallet, token) and keeps the latest result."""

    def __init__(
        self,
        reconciler: PositionReconciler,
        tokens: Dict[str, str],
        poll_interval: float = 10.0,
        error_handler=None,
        db=None,
    ):
        self.reconciler = reconciler
        self.tokens = dict(tokens)
        self.poll_interval = poll_interval
        self.error_handler = error_handler
        self.db = db
        self._results: Dict[Tuple[str, str], Reconciliation] = {}
        self._in_flight: Set[Tuple[str, str]] = set()
        self._wallet_tasks: Dict[str, asyncio.Task] = {}
        # Bumped on every (de)registration so late results can be recognised
        self._generation: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def registered_wallets(self) -> List[str]:
        return sorted(self._wallet_tasks)

    def register_wallet(self, wallet: str) -> None:
        wallet = wallet.lower()
        if wallet in self._wallet_tasks:
            return
        self._generation[wallet] = self._generation.get(wallet, 0) + 1
        self._wallet_tasks[wallet] = asyncio.create_task(
            self._wallet_loop(wallet), name=f"reconcile:{wallet}"
        )
        logger.info("Wallet registered for reconciliation", wallet=wallet)

    async def deregister_wallet(self, wallet: str) -> None:
        wallet = wallet.lower()
        task = self._wallet_tasks.pop(wallet, None)
        self._generation[wallet] = self._generation.get(wallet, 0) + 1
        for key in [k for k in self._results if k[0] == wallet]:
            self._results.pop(key, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Wallet deregistered", wallet=wallet)

    async def start(self) -> None:
        """Register every wallet with auto-trade enabled."""
        if self.db is None:
            return
        for wallet in await self.db.list_auto_trade_wallets():
            self.register_wallet(wallet)

    async def stop(self) -> None:
        for wallet in list(self._wallet_tasks):
            await self.deregister_wallet(wallet)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def get_results(self, wallet: str) -> List[Reconciliation]:
        wallet = wallet.lower()
        return [r for (w, _), r in sorted(self._results.items()) if w == wallet]

    def get_result(self, wallet: str, token: str) -> Optional[Reconciliation]:
        return self._results.get((wallet.lower(), token))

    async def poll_wallet(self, wallet: str) -> Tuple[List[Reconciliation], List[str]]:
        """Poll every token for ``wallet``; returns (results, skipped token symbols)."""
        wallet = wallet.lower()
        symbols = list(self.tokens)
        with log_performance(logger, "Wallet reconciliation", wallet=wallet, tokens=len(symbols)):
            outcomes = await asyncio.gather(
                *(self.poll_key(wallet, self.tokens[s]) for s in symbols)
            )
        results: List[Reconciliation] = []
        skipped: List[str] = []
        for symbol, outcome in zip(symbols, outcomes):
            if outcome is None:
                skipped.append(symbol)
            else:
                results.append(outcome)
        return results, skipped

    async def poll_key(self, wallet: str, token: str) -> Optional[Reconciliation]:
        """
        One reconciliation for (wallet, token).

        Returns None when a poll for the same key is already running. Only
        registered wallets keep their result; an on-demand poll of any other
        wallet is returned to the caller and forgotten.
        """
        wallet = wallet.lower()
        key = (wallet, token)
        if key in self._in_flight:
            logger.debug("Poll already in flight, skipping", wallet=wallet, token=token)
            return None

        self._in_flight.add(key)
        generation = self._generation.get(wallet)
        try:
            try:
                result = await self.reconciler.poll(wallet, token)
            except Exception as e:
                result = await self._stale_result(wallet, token, e)
        finally:
            self._in_flight.discard(key)

        if wallet not in self._wallet_tasks or self._generation.get(wallet) != generation:
            logger.debug("Result not retained for unregistered wallet", wallet=wallet, token=token)
            return result

        previous = self._results.get(key)
        self._results[key] = result
        if not result.stale:
            await self._log_transition(previous, result)
        return result

    async def _stale_result(self, wallet: str, token: str, error: Exception) -> Reconciliation:
        symbol = self._symbol_for(token)
        if self.error_handler is not None:
            await self.error_handler.handle(
                error, component="chain_reader", context=f"{wallet}/{symbol}"
            )
        else:
            logger.warning("Reconciliation read failed", wallet=wallet, token=symbol, error=repr(error))

        previous = self._results.get((wallet, token))
        if previous is not None:
            return replace(previous, stale=True, error=str(error))
        return Reconciliation(
            wallet=wallet,
            token=token,
            token_symbol=symbol,
            state=PositionState.UNKNOWN,
            recovery=RecoveryStatus.NONE,
            checked_at=time.time(),
            stale=True,
            error=str(error),
        )

    def _symbol_for(self, token: str) -> str:
        for symbol, address in self.tokens.items():
            if address.lower() == token.lower():
                return symbol
        return token

    async def _log_transition(self, previous: Optional[Reconciliation], current: Reconciliation) -> None:
        before = previous.state if previous is not None else None
        if before == current.state:
            return
        severity = "info"
        if current.state in (PositionState.ACTIVE_GHOST, PositionState.STUCK):
            severity = "warning"
        message = f"{current.token_symbol}: {before.value if before else 'new'} -> {current.state.value}"
        logger.info(
            "Position state changed",
            wallet=current.wallet,
            token=current.token_symbol,
            state=current.state.value,
            recovery=current.recovery.value,
        )
        if self.db is not None:
            await self.db.log_event(
                "reconciler",
                message,
                severity=severity,
                wallet=current.wallet,
                token=current.token_symbol,
            )

    async def _wallet_loop(self, wallet: str) -> None:
        while True:
            try:
                await self.poll_wallet(wallet)
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Reconcile loop error", wallet=wallet, error=repr(e))
                await asyncio.sleep(self.poll_interval)
