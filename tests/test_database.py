from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from vaultpilot.core.database import DatabaseManager

WALLET = "0xABCDEF0000000000000000000000000000000001"


@pytest_asyncio.fixture
async def db(tmp_path):
    manager = DatabaseManager(str(tmp_path / "nested" / "test.db"))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.mark.asyncio
async def test_subscription_upsert_and_lookup_is_case_insensitive(db):
    reset_at = datetime(2026, 1, 16, 5, 0, tzinfo=timezone.utc)
    await db.upsert_subscription(WALLET, {
        "plan_tier": "starter",
        "daily_trades_reset_at": reset_at,
        "timezone": "America/New_York",
        "auto_trade_enabled": True,
    })

    row = await db.get_subscription(WALLET.lower())

    assert row["wallet_address"] == WALLET.lower()
    assert row["plan_tier"] == "starter"
    assert row["auto_trade_enabled"] == 1
    assert DatabaseManager._parse_dt(row["daily_trades_reset_at"]) == reset_at
    assert row["version"] == 0

    await db.upsert_subscription(WALLET, {"status": "pending"})
    row = await db.get_subscription(WALLET)
    assert row["status"] == "pending"
    assert row["version"] == 1


@pytest.mark.asyncio
async def test_upsert_rejects_unknown_columns(db):
    with pytest.raises(ValueError):
        await db.upsert_subscription(WALLET, {"version": 99})


@pytest.mark.asyncio
async def test_unknown_status_is_rejected_by_schema(db):
    with pytest.raises(sqlite3.IntegrityError):
        await db.upsert_subscription(WALLET, {"status": "past_due"})
    assert await db.get_subscription(WALLET) is None


@pytest.mark.asyncio
async def test_counter_update_is_compare_and_set(db):
    await db.upsert_subscription(WALLET, {"plan_tier": "pro"})

    stale = await db.update_subscription_counters(
        WALLET, 5, daily_trades_used=1, total_trades_used=1, daily_trades_reset_at=None
    )
    fresh = await db.update_subscription_counters(
        WALLET, 0, daily_trades_used=1, total_trades_used=1, daily_trades_reset_at=None
    )
    replay = await db.update_subscription_counters(
        WALLET, 0, daily_trades_used=2, total_trades_used=2, daily_trades_reset_at=None
    )

    assert (stale, fresh, replay) == (False, True, False)
    row = await db.get_subscription(WALLET)
    assert row["total_trades_used"] == 1
    assert row["version"] == 1


@pytest.mark.asyncio
async def test_auto_trade_wallets_exclude_free_and_inactive(db):
    await db.upsert_subscription("0xa1", {"plan_tier": "pro", "auto_trade_enabled": True})
    await db.upsert_subscription("0xa2", {"plan_tier": "free", "auto_trade_enabled": True})
    await db.upsert_subscription("0xa3", {"plan_tier": "elite", "status": "cancelled", "auto_trade_enabled": True})
    await db.upsert_subscription("0xa4", {"plan_tier": "starter", "auto_trade_enabled": False})

    assert await db.list_auto_trade_wallets() == ["0xa1"]


@pytest.mark.asyncio
async def test_event_log_filters(db):
    await db.log_event("reconciler", "WETH: new -> active_ghost", "warning", wallet=WALLET, token="WETH")
    await db.log_event("system", "started")

    events = await db.get_events(category="reconciler")
    by_wallet = await db.get_events(wallet=WALLET.lower())

    assert len(events) == 1
    assert events[0]["severity"] == "warning"
    assert events[0]["wallet_address"] == WALLET.lower()
    assert [e["message"] for e in by_wallet] == ["WETH: new -> active_ghost"]
    assert len(await db.get_events()) == 2

    await db.cleanup_old_data(retention_hours=1)
    assert len(await db.get_events()) == 2


@pytest.mark.asyncio
async def test_log_event_before_initialize_is_a_noop(tmp_path):
    manager = DatabaseManager(str(tmp_path / "unused.db"))

    await manager.log_event("system", "ignored")

    assert manager.is_initialized is False
