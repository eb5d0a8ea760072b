"""
Quota Gate - decides whether a wallet may place another trade.

Free wallets are capped by a lifetime trade count; paid tiers by a daily
count that resets at the wallet's local midnight. Counter writes go through
the store's version compare-and-set, retried a bounded number of times.

``reserve_trade`` checks the limit and takes the slot in one compare-and-set,
so two concurrent trades for one wallet cannot both get the last slot.
``can_trade`` is a read-only preview of the same decision.

Denials are ordinary results, never exceptions: ``can_trade`` and
``reserve_trade`` always return a TradePermission.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from vaultpilot.billing.plans import (
    UNLIMITED,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    TradePermission,
    next_local_midnight,
)
from vaultpilot.core.error_handler import SubscriptionConflictError
from vaultpilot.core.logger import get_logger

logger = get_logger("quota_gate")

NO_SUBSCRIPTION = "No active subscription found"
EXPIRED = "Subscription has expired"
INVALID_TIER = "Invalid subscription tier"
FREE_LIMIT_REACHED = "Free trade limit reached"
DAILY_LIMIT_REACHED = "Daily trade limit reached"
STORE_UNAVAILABLE = "Subscription store unavailable"
STORE_BUSY = "Subscription busy, retry shortly"


def _denied(reason: str, tier: str, remaining: int = 0) -> TradePermission:
    return TradePermission(
        allowed=False, reason=reason, daily_trades_remaining=remaining, plan_tier=tier
    )


def _reset_due(sub: Subscription, now: datetime) -> bool:
    return sub.daily_trades_reset_at is None or now > sub.daily_trades_reset_at


class QuotaGate:
    """
    Trade permission checks against the subscription store.

    ``store`` needs ``get_subscription(wallet)`` and
    ``update_subscription_counters(wallet, expected_version, ...)``;
    DatabaseManager provides both.
    """

    def __init__(
        self,
        store,
        tier_limits: Dict[str, int],
        free_lifetime_limit: int = 2,
        max_retries: int = 5,
    ):
        self.store = store
        self.tier_limits = dict(tier_limits)
        self.free_lifetime_limit = free_lifetime_limit
        self.max_retries = max_retries

    @classmethod
    def from_config(cls, store, config) -> QuotaGate:
        return cls(
            store,
            tier_limits=config.tier_daily_limits,
            free_lifetime_limit=config.free_lifetime_limit,
            max_retries=config.max_update_retries,
        )

    def daily_limit(self, tier: PlanTier) -> int:
        return int(self.tier_limits.get(tier.value, 0))

    async def _load(self, wallet: str) -> Optional[Subscription]:
        row = await self.store.get_subscription(wallet)
        return Subscription.from_row(row) if row else None

    def _precheck(self, sub: Optional[Subscription], now: datetime) -> Optional[TradePermission]:
        """Denial that does not depend on the counters, or None."""
        if sub is None:
            return _denied(NO_SUBSCRIPTION, "none")
        if sub.status != SubscriptionStatus.ACTIVE.value:
            return _denied(f"Subscription is {sub.status}", sub.plan_tier)
        if sub.end_date is not None and now > sub.end_date:
            return _denied(EXPIRED, sub.plan_tier)
        if sub.tier is None:
            return _denied(INVALID_TIER, sub.plan_tier)
        return None

    def _usage(self, sub: Subscription, now: datetime) -> Tuple[int, int, Optional[datetime], int]:
        """(limit, used, reset_at, daily) as they stand after any due reset."""
        daily = sub.daily_trades_used
        reset_at = sub.daily_trades_reset_at
        if _reset_due(sub, now):
            daily = 0
            reset_at = next_local_midnight(now, sub.timezone)
        if sub.tier == PlanTier.FREE:
            return self.free_lifetime_limit, sub.total_trades_used, reset_at, daily
        return self.daily_limit(sub.tier), daily, reset_at, daily

    # ------------------------------------------------------------------
    # Permission check
    # ------------------------------------------------------------------

    async def can_trade(self, wallet: str, now: Optional[datetime] = None) -> TradePermission:
        now = now or datetime.now(timezone.utc)
        try:
            return await self._can_trade(wallet.lower(), now)
        except Exception as e:
            logger.error("Permission check failed", wallet=wallet, error=repr(e))
            return _denied(STORE_UNAVAILABLE, "none")

    async def _can_trade(self, wallet: str, now: datetime) -> TradePermission:
        sub = await self._load(wallet)
        denied = self._precheck(sub, now)
        if denied is not None:
            return denied

        tier = sub.tier
        if tier == PlanTier.FREE:
            remaining = self.free_lifetime_limit - sub.total_trades_used
            if remaining <= 0:
                return _denied(FREE_LIMIT_REACHED, tier.value)
            return TradePermission(True, None, remaining, tier.value)

        if _reset_due(sub, now):
            sub = await self._apply_daily_reset(sub, now)

        limit = self.daily_limit(tier)
        if limit == UNLIMITED:
            return TradePermission(True, None, UNLIMITED, tier.value)

        remaining = limit - sub.daily_trades_used
        if remaining <= 0:
            return _denied(DAILY_LIMIT_REACHED, tier.value)
        return TradePermission(True, None, remaining, tier.value)

    async def _apply_daily_reset(self, sub: Subscription, now: datetime) -> Subscription:
        """Zero the daily counter and move the reset boundary, via compare-and-set."""
        for _ in range(self.max_retries):
            reset_at = next_local_midnight(now, sub.timezone)
            ok = await self.store.update_subscription_counters(
                sub.wallet_address,
                sub.version,
                daily_trades_used=0,
                total_trades_used=sub.total_trades_used,
                daily_trades_reset_at=reset_at,
            )
            if ok:
                logger.info(
                    "Daily trade counter reset",
                    wallet=sub.wallet_address,
                    next_reset=reset_at.isoformat(),
                )
                return replace(
                    sub,
                    daily_trades_used=0,
                    daily_trades_reset_at=reset_at,
                    version=sub.version + 1,
                )
            fresh = await self._load(sub.wallet_address)
            if fresh is None:
                raise SubscriptionConflictError(f"subscription for {sub.wallet_address} disappeared")
            sub = fresh
            if not _reset_due(sub, now):
                return sub
        raise SubscriptionConflictError(
            f"daily reset for {sub.wallet_address} lost {self.max_retries} update races"
        )

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def reserve_trade(self, wallet: str, now: Optional[datetime] = None) -> TradePermission:
        """
        Check the quota and count one trade in a single compare-and-set.

        Call right before submitting the trade. An allowed result already
        holds the slot; ``daily_trades_remaining`` is what is left after it.
        """
        now = now or datetime.now(timezone.utc)
        wallet = wallet.lower()
        try:
            return await self._reserve(wallet, now)
        except Exception as e:
            logger.error("Trade reservation failed", wallet=wallet, error=repr(e))
            return _denied(STORE_UNAVAILABLE, "none")

    async def _reserve(self, wallet: str, now: datetime) -> TradePermission:
        tier_value = "none"
        for attempt in range(self.max_retries):
            sub = await self._load(wallet)
            denied = self._precheck(sub, now)
            if denied is not None:
                return denied

            tier_value = sub.tier.value
            limit, used, reset_at, daily = self._usage(sub, now)
            if limit != UNLIMITED and used >= limit:
                reason = FREE_LIMIT_REACHED if sub.tier == PlanTier.FREE else DAILY_LIMIT_REACHED
                return _denied(reason, tier_value)

            ok = await self.store.update_subscription_counters(
                wallet,
                sub.version,
                daily_trades_used=daily + 1,
                total_trades_used=sub.total_trades_used + 1,
                daily_trades_reset_at=reset_at,
            )
            if ok:
                remaining = UNLIMITED if limit == UNLIMITED else limit - used - 1
                return TradePermission(True, None, remaining, tier_value)
            logger.debug("Reservation lost race, retrying", wallet=wallet, attempt=attempt + 1)

        logger.warning("Trade reservation gave up after retries", wallet=wallet, retries=self.max_retries)
        return _denied(STORE_BUSY, tier_value)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_trade(self, wallet: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """
        Count one trade that was submitted without a reservation.

        The trade already happened, so it is always counted; when the wallet
        was already at its limit the overrun is logged. Returns the updated
        subscription, or None when the wallet has no subscription.
        Raises SubscriptionConflictError when every retry lost the race.
        """
        now = now or datetime.now(timezone.utc)
        wallet = wallet.lower()
        for attempt in range(self.max_retries):
            sub = await self._load(wallet)
            if sub is None:
                logger.warning("Trade recorded for wallet without subscription", wallet=wallet)
                return None

            if sub.tier is None:
                limit, used = UNLIMITED, 0
                reset_at, daily = sub.daily_trades_reset_at, sub.daily_trades_used
            else:
                limit, used, reset_at, daily = self._usage(sub, now)
            ok = await self.store.update_subscription_counters(
                wallet,
                sub.version,
                daily_trades_used=daily + 1,
                total_trades_used=sub.total_trades_used + 1,
                daily_trades_reset_at=reset_at,
            )
            if ok:
                if limit != UNLIMITED and used >= limit:
                    logger.warning(
                        "Trade recorded past quota",
                        wallet=wallet,
                        plan_tier=sub.plan_tier,
                        limit=limit,
                        used=used + 1,
                    )
                return replace(
                    sub,
                    daily_trades_used=daily + 1,
                    total_trades_used=sub.total_trades_used + 1,
                    daily_trades_reset_at=reset_at,
                    version=sub.version + 1,
                )
            logger.debug("Counter update lost race, retrying", wallet=wallet, attempt=attempt + 1)

        raise SubscriptionConflictError(
            f"trade record for {wallet} lost {self.max_retries} update races"
        )
