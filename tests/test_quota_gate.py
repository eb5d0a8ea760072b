from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from vaultpilot.billing.plans import PlanTier, Subscription, SubscriptionStatus, next_local_midnight
from vaultpilot.billing.quota_gate import (
    DAILY_LIMIT_REACHED,
    EXPIRED,
    FREE_LIMIT_REACHED,
    INVALID_TIER,
    NO_SUBSCRIPTION,
    STORE_BUSY,
    STORE_UNAVAILABLE,
    QuotaGate,
)
from vaultpilot.core.config import QuotaConfig
from vaultpilot.core.database import DatabaseManager
from vaultpilot.core.error_handler import SubscriptionConflictError
from tests.conftest import WALLET

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _gate(store, **limits):
    tier_limits = {**QuotaConfig().tier_daily_limits, **limits}
    return QuotaGate(store, tier_limits=tier_limits, free_lifetime_limit=2)


# ---------------------------------------------------------------------------
# Decision order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_subscription_is_denied_with_tier_none(store):
    result = await _gate(store).can_trade(WALLET, NOW)

    assert result.allowed is False
    assert result.reason == NO_SUBSCRIPTION
    assert result.plan_tier == "none"
    assert result.daily_trades_remaining == 0


@pytest.mark.asyncio
async def test_inactive_status_is_the_reason(store):
    store.put(WALLET, status="cancelled")

    result = await _gate(store).can_trade(WALLET, NOW)

    assert result.allowed is False
    assert result.reason == "Subscription is cancelled"


@pytest.mark.asyncio
async def test_expired_subscription(store):
    store.put(WALLET, end_date=NOW - timedelta(seconds=1))

    result = await _gate(store).can_trade(WALLET, NOW)

    assert result.reason == EXPIRED


@pytest.mark.asyncio
async def test_unknown_tier_is_denied(store):
    store.put(WALLET, plan_tier="gold")

    result = await _gate(store).can_trade(WALLET, NOW)

    assert result.allowed is False
    assert result.reason == INVALID_TIER
    assert result.plan_tier == "gold"


@pytest.mark.asyncio
async def test_free_tier_lifetime_cap(store):
    gate = _gate(store)

    store.put(WALLET, plan_tier="free", total_trades_used=2)
    denied = await gate.can_trade(WALLET, NOW)
    store.put(WALLET, plan_tier="free", total_trades_used=1)
    allowed = await gate.can_trade(WALLET, NOW)

    assert denied.allowed is False
    assert denied.reason == FREE_LIMIT_REACHED
    assert denied.daily_trades_remaining == 0
    assert allowed.allowed is True
    assert allowed.daily_trades_remaining == 1


@pytest.mark.asyncio
async def test_free_tier_ignores_daily_counter(store):
    store.put(WALLET, plan_tier="free", daily_trades_used=50, total_trades_used=0)

    result = await _gate(store).can_trade(WALLET, NOW)

    assert result.allowed is True
    assert result.daily_trades_remaining == 2


@pytest.mark.asyncio
async def test_daily_limit_then_reset(store):
    reset_at = NOW + timedelta(hours=1)
    store.put(WALLET, plan_tier="pro", daily_trades_used=5, daily_trades_reset_at=reset_at)
    gate = _gate(store, pro=5)

    before = await gate.can_trade(WALLET, NOW)
    after = await gate.can_trade(WALLET, reset_at + timedelta(seconds=1))

    assert before.allowed is False
    assert before.reason == DAILY_LIMIT_REACHED
    assert after.allowed is True
    assert after.daily_trades_remaining == 5
    row = store.rows[WALLET.lower()]
    assert row["daily_trades_used"] == 0
    assert row["daily_trades_reset_at"] > reset_at


@pytest.mark.asyncio
async def test_unlimited_tier_reports_minus_one(store):
    store.put(WALLET, plan_tier="elite", daily_trades_used=10_000)

    result = await _gate(store).can_trade(WALLET, NOW)

    assert result.allowed is True
    assert result.daily_trades_remaining == -1
    assert result.to_dict() == {"allowed": True, "dailyTradesRemaining": -1, "planTier": "elite"}


@pytest.mark.asyncio
async def test_store_failure_is_a_denial_not_an_exception(store):
    store.raise_on_get = OSError("disk gone")

    result = await _gate(store).can_trade(WALLET, NOW)

    assert result.allowed is False
    assert result.reason == STORE_UNAVAILABLE


@pytest.mark.asyncio
async def test_reset_retries_after_lost_race(store):
    store.put(WALLET, daily_trades_used=3, daily_trades_reset_at=NOW - timedelta(minutes=1))
    store.fail_updates = 1

    result = await _gate(store, pro=5).can_trade(WALLET, NOW)

    assert result.allowed is True
    assert result.daily_trades_remaining == 5
    assert store.update_calls == 2


# ---------------------------------------------------------------------------
# Timezone-aware reset boundary
# ---------------------------------------------------------------------------


def test_new_york_midnight_is_minutes_away():
    # 23:55 EST on Jan 15
    now = datetime(2026, 1, 16, 4, 55, tzinfo=timezone.utc)

    reset = next_local_midnight(now, "America/New_York")

    assert reset == datetime(2026, 1, 16, 5, 0, tzinfo=timezone.utc)
    assert reset - now <= timedelta(minutes=5)


def test_unknown_timezone_falls_back_to_utc():
    now = datetime(2026, 1, 16, 4, 55, tzinfo=timezone.utc)

    assert next_local_midnight(now, "Mars/Olympus") == datetime(2026, 1, 17, tzinfo=timezone.utc)
    assert next_local_midnight(now, "") == datetime(2026, 1, 17, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reset_uses_wallet_timezone(store):
    now = datetime(2026, 1, 16, 4, 55, tzinfo=timezone.utc)
    store.put(WALLET, timezone="America/New_York", daily_trades_reset_at=None)

    await _gate(store).can_trade(WALLET, now)

    assert store.rows[WALLET.lower()]["daily_trades_reset_at"] == datetime(
        2026, 1, 16, 5, 0, tzinfo=timezone.utc
    )


# ---------------------------------------------------------------------------
# Reserving trades
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reserve_trade_counts_and_reports_what_is_left(store):
    store.put(WALLET, daily_trades_used=3, total_trades_used=10)

    permission = await _gate(store, pro=5).reserve_trade(WALLET, NOW)

    assert permission.allowed is True
    assert permission.daily_trades_remaining == 1
    assert store.rows[WALLET.lower()]["daily_trades_used"] == 4
    assert store.rows[WALLET.lower()]["total_trades_used"] == 11


@pytest.mark.asyncio
async def test_reserve_trade_at_limit_writes_nothing(store):
    store.put(WALLET, daily_trades_used=5)

    permission = await _gate(store, pro=5).reserve_trade(WALLET, NOW)

    assert permission.allowed is False
    assert permission.reason == DAILY_LIMIT_REACHED
    assert store.update_calls == 0
    assert store.rows[WALLET.lower()]["daily_trades_used"] == 5


@pytest.mark.asyncio
async def test_reserve_trade_free_tier_uses_lifetime_count(store):
    store.put(WALLET, plan_tier="free", total_trades_used=1)
    gate = _gate(store)

    first = await gate.reserve_trade(WALLET, NOW)
    second = await gate.reserve_trade(WALLET, NOW)

    assert first.allowed is True
    assert first.daily_trades_remaining == 0
    assert second.reason == FREE_LIMIT_REACHED
    assert store.rows[WALLET.lower()]["total_trades_used"] == 2


@pytest.mark.asyncio
async def test_reserve_trade_after_reset_boundary_starts_a_new_day(store):
    store.put(WALLET, daily_trades_used=5, daily_trades_reset_at=NOW - timedelta(minutes=1))

    permission = await _gate(store, pro=5).reserve_trade(WALLET, NOW)

    row = store.rows[WALLET.lower()]
    assert permission.allowed is True
    assert permission.daily_trades_remaining == 4
    assert row["daily_trades_used"] == 1
    assert row["daily_trades_reset_at"] == datetime(2026, 3, 11, tzinfo=timezone.utc)



@pytest.mark.asyncio
async def test_pending_checkout_cannot_reserve(store):
    store.put(WALLET, status=SubscriptionStatus.PENDING.value)

    permission = await _gate(store).reserve_trade(WALLET, NOW)

    assert permission.reason == "Subscription is pending"
    assert store.update_calls == 0


@pytest.mark.asyncio
async def test_reserve_trade_unlimited_tier(store):
    store.put(WALLET, plan_tier="desktop", daily_trades_used=10_000)

    permission = await _gate(store, desktop=-1).reserve_trade(WALLET, NOW)

    assert permission.allowed is True
    assert permission.daily_trades_remaining == -1


@pytest.mark.asyncio
async def test_reserve_trade_busy_store_is_a_denial(store):
    store.put(WALLET)
    store.fail_updates = 100

    permission = await _gate(store).reserve_trade(WALLET, NOW)

    assert permission.allowed is False
    assert permission.reason == STORE_BUSY
    assert store.update_calls == 5


@pytest.mark.asyncio
async def test_reserve_trade_store_error_is_a_denial(store):
    store.raise_on_get = OSError("disk gone")

    permission = await _gate(store).reserve_trade(WALLET, NOW)

    assert permission.reason == STORE_UNAVAILABLE


@pytest.mark.asyncio
async def test_concurrent_reservations_share_the_last_slot(tmp_path):
    db = DatabaseManager(str(tmp_path / "reserve.db"))
    await db.initialize()
    try:
        await db.upsert_subscription(WALLET, {
            "plan_tier": "pro",
            "status": "active",
            "daily_trades_used": 4,
            "daily_trades_reset_at": NOW + timedelta(hours=6),
        })
        gate = QuotaGate(db, {**QuotaConfig().tier_daily_limits, "pro": 5}, max_retries=20)

        results = await asyncio.gather(gate.reserve_trade(WALLET, NOW), gate.reserve_trade(WALLET, NOW))

        assert sorted(r.allowed for r in results) == [False, True]
        assert [r.reason for r in results if not r.allowed] == [DAILY_LIMIT_REACHED]
        row = await db.get_subscription(WALLET)
        assert row["daily_trades_used"] == 5
        assert row["total_trades_used"] == 1
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Recording trades
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_record_trade_counts_both_counters(store):
    store.put(WALLET, daily_trades_used=1, total_trades_used=7)

    updated = await _gate(store).record_trade(WALLET, NOW)

    assert isinstance(updated, Subscription)
    assert updated.daily_trades_used == 2
    assert updated.total_trades_used == 8
    assert store.rows[WALLET.lower()]["version"] == 2


@pytest.mark.asyncio
async def test_record_trade_applies_due_reset(store):
    store.put(WALLET, daily_trades_used=9, daily_trades_reset_at=NOW - timedelta(hours=1))

    updated = await _gate(store).record_trade(WALLET, NOW)

    assert updated.daily_trades_used == 1
    assert updated.daily_trades_reset_at == datetime(2026, 3, 11, tzinfo=timezone.utc)



@pytest.mark.asyncio
async def test_record_trade_past_quota_is_still_counted(store):
    store.put(WALLET, daily_trades_used=5)
    gate = _gate(store, pro=5)

    updated = await gate.record_trade(WALLET, NOW)

    assert updated.daily_trades_used == 6
    assert (await gate.can_trade(WALLET, NOW)).reason == DAILY_LIMIT_REACHED


@pytest.mark.asyncio
async def test_record_trade_without_subscription(store):
    assert await _gate(store).record_trade(WALLET, NOW) is None


@pytest.mark.asyncio
async def test_record_trade_gives_up_after_retries(store):
    store.put(WALLET)
    store.fail_updates = 100

    with pytest.raises(SubscriptionConflictError):
        await _gate(store).record_trade(WALLET, NOW)
    assert store.update_calls == 5


@pytest.mark.asyncio
async def test_concurrent_trades_never_lose_an_increment(tmp_path):
    db = DatabaseManager(str(tmp_path / "quota.db"))
    await db.initialize()
    try:
        await db.upsert_subscription(WALLET, {
            "plan_tier": "pro",
            "status": "active",
            "daily_trades_reset_at": NOW + timedelta(hours=6),
        })
        gate = QuotaGate(db, QuotaConfig().tier_daily_limits, max_retries=20)

        await asyncio.gather(*(gate.record_trade(WALLET, NOW) for _ in range(10)))

        row = await db.get_subscription(WALLET)
        assert row["daily_trades_used"] == 10
        assert row["total_trades_used"] == 10
        permission = await gate.can_trade(WALLET, NOW)
        assert permission.daily_trades_remaining == 90
    finally:
        await db.close()


def test_tier_parse():
    assert PlanTier.parse(" PRO ") == PlanTier.PRO
    assert PlanTier.parse("gold") is None
    assert PlanTier.parse(None) is None
