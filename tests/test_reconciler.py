from __future__ import annotations

import asyncio

import pytest

from vaultpilot.chain.abis import USD_DECIMALS, USDC_DECIMALS
from vaultpilot.core.error_handler import GracefulErrorHandler
from vaultpilot.positions.models import (
    ExchangePosition,
    OnChainPosition,
    PositionState,
    PriceQuote,
    RecoveryStatus,
)
from vaultpilot.positions.monitor import PositionMonitor
from vaultpilot.positions.reconciler import (
    GHOST_NOT_RECOVERABLE_WARNING,
    STUCK_WARNING,
    PositionReconciler,
    classify,
    compute_live_pnl,
    format_duration,
    trailing_stop_price,
)
from tests.conftest import (
    WALLET,
    WBTC,
    WETH,
    StubChainReader,
    make_exchange,
    make_position,
    rpc_failure,
)

OPENED = 1_700_000_000
TIMEOUT = 7200
NO_EXCHANGE = [make_exchange(True, 0), make_exchange(False, 0)]
LIVE_EXCHANGE = [make_exchange(True, 1000.0), make_exchange(False, 0)]


# ---------------------------------------------------------------------------
# Live PnL and levels
# ---------------------------------------------------------------------------


def test_live_pnl_is_direction_signed():
    long_pos = make_position(entry_price=2000.0, size=1000.0, collateral=100.0, is_long=True)
    short_pos = make_position(entry_price=2000.0, size=1000.0, collateral=100.0, is_long=False)

    long_pnl = compute_live_pnl(long_pos, 2100.0)
    short_pnl = compute_live_pnl(short_pos, 2100.0)

    assert long_pnl.pnl == pytest.approx(50.0)
    assert long_pnl.pnl_percent == pytest.approx(50.0)
    assert short_pnl.pnl == pytest.approx(-50.0)
    assert short_pnl.pnl_percent == pytest.approx(-50.0)


@pytest.mark.parametrize("entry,current", [(0.0, 2100.0), (2000.0, 0.0)])
def test_live_pnl_zero_prices_are_neutral(entry, current):
    pnl = compute_live_pnl(make_position(entry_price=entry), current)

    assert pnl.pnl == 0.0
    assert pnl.pnl_percent == 0.0


def test_trailing_stop_only_when_activated():
    assert trailing_stop_price(make_position(trailing_activated=False)) is None

    long_pos = make_position(trailing_activated=True, highest_price=2200.0, trailing_sl_bps=100)
    short_pos = make_position(
        trailing_activated=True, is_long=False, lowest_price=1800.0, trailing_sl_bps=200
    )

    assert trailing_stop_price(long_pos) == pytest.approx(2178.0)
    assert trailing_stop_price(short_pos) == pytest.approx(1836.0)


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (3 * 86400 + 4 * 3600 + 5 * 60 + 6, "3d 4h 5m"),
        (3661, "1h 1m 1s"),
        (65, "1m 5s"),
        (5, "5s"),
        (-3, "0s"),
    ],
)
def test_format_duration(seconds, expected):
    assert format_duration(OPENED, OPENED + seconds) == expected


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def test_inactive_position_is_closed():
    state, recovery, is_ghost, warnings = classify(
        make_position(is_active=False), NO_EXCHANGE, 0.0, now=OPENED, ghost_timeout_seconds=TIMEOUT
    )

    assert state == PositionState.CLOSED
    assert recovery == RecoveryStatus.NONE
    assert not is_ghost and warnings == []


def test_matching_exchange_position_is_healthy():
    state, _, is_ghost, _ = classify(
        make_position(), LIVE_EXCHANGE, 50.0, now=OPENED + 10, ghost_timeout_seconds=TIMEOUT
    )

    assert state == PositionState.ACTIVE_HEALTHY
    assert not is_ghost


def test_ghost_regardless_of_balance_and_stuck_at_zero_balance():
    ghost = classify(make_position(), NO_EXCHANGE, 500.0, now=OPENED + 10, ghost_timeout_seconds=TIMEOUT)
    stuck = classify(make_position(), NO_EXCHANGE, 0.0, now=OPENED + 10, ghost_timeout_seconds=TIMEOUT)

    assert ghost[0] == PositionState.ACTIVE_GHOST
    assert stuck[0] == PositionState.STUCK
    assert stuck[1] == RecoveryStatus.MANUAL_RECOVERY
    assert stuck[2] is True
    assert stuck[3] == [STUCK_WARNING]


def test_ghost_recoverable_only_after_timeout():
    reconciler = PositionReconciler(ghost_timeout_seconds=TIMEOUT)
    position = make_position(timestamp=OPENED, auto_features_enabled=True)

    young = reconciler.reconcile(WALLET, WETH, position, NO_EXCHANGE, 50.0, now=OPENED + TIMEOUT - 1)
    old = reconciler.reconcile(WALLET, WETH, position, NO_EXCHANGE, 50.0, now=OPENED + TIMEOUT + 1)

    assert young.recovery == RecoveryStatus.GHOST_DETECTED
    assert young.warnings == [GHOST_NOT_RECOVERABLE_WARNING]
    assert young.actions == []

    assert old.recovery == RecoveryStatus.RECOVERABLE
    assert [a.function for a in old.actions] == ["cancelAutoFeatures", "userInstantClose"]
    assert [a.payable for a in old.actions] == [False, True]


def test_recoverable_without_auto_features_skips_cancel():
    reconciler = PositionReconciler(ghost_timeout_seconds=TIMEOUT)
    position = make_position(timestamp=OPENED, auto_features_enabled=False)

    result = reconciler.reconcile(WALLET, WETH, position, NO_EXCHANGE, 50.0, now=OPENED + TIMEOUT + 1)

    assert [a.function for a in result.actions] == ["userInstantClose"]


def test_reconcile_fills_pnl_levels_and_duration():
    reconciler = PositionReconciler()
    quote = PriceQuote(max_price=2101.0, min_price=2100.0)

    result = reconciler.reconcile(
        WALLET.upper(), WETH, make_position(), LIVE_EXCHANGE, 50.0, quote, now=OPENED + 65
    )

    assert result.wallet == WALLET.lower()
    assert result.duration == "1m 5s"
    assert result.age_seconds == 65
    # Longs are marked at the min price
    assert result.pnl.current_price == 2100.0
    assert result.pnl.pnl == pytest.approx(50.0)
    assert result.levels.stop_loss == 1900.0
    assert result.levels.trailing_stop is None
    payload = result.to_dict()
    assert payload["state"] == "active_healthy"
    assert payload["position"]["entryPrice"] == 2000.0


def test_raw_tuple_decoding():
    usd = 10 ** USD_DECIMALS
    raw = (
        True, False, WETH, 250 * 10 ** USDC_DECIMALS, 2500 * usd, 10,
        3000 * usd, 3100 * usd, 2800 * usd, OPENED, b"\x01" * 32,
        3050 * usd, 2950 * usd, 150, True, False,
    )

    position = OnChainPosition.from_raw(raw)
    exchange = ExchangePosition.from_raw((2500 * usd, 250 * usd, 3000 * usd, 0, 0, 0, OPENED), False)

    assert position.collateral == 250.0
    assert position.size == 2500.0
    assert position.entry_price == 3000.0
    assert position.request_key == "0x" + "01" * 32
    assert position.trailing_sl_bps == 150
    assert exchange.is_open and exchange.size == 2500.0
    with pytest.raises(ValueError):
        OnChainPosition.from_raw(raw[:15])


@pytest.mark.asyncio
async def test_poll_attaches_fee_and_calldata():
    reader = StubChainReader(
        positions={WETH: make_position(timestamp=OPENED)}, exchange={WETH: NO_EXCHANGE}
    )
    reconciler = PositionReconciler(reader, ghost_timeout_seconds=TIMEOUT, clock=lambda: OPENED + TIMEOUT + 60)

    result = await reconciler.poll(WALLET, WETH)

    assert result.state == PositionState.ACTIVE_GHOST
    assert result.token_symbol == "WETH"
    cancel, close = result.actions
    assert cancel.execution_fee_wei is None
    assert close.execution_fee_wei == reader.fee
    assert close.calldata == f"0xuserInstantClose:{WETH}"


@pytest.mark.asyncio
async def test_poll_fee_failure_leaves_fee_unset():
    reader = StubChainReader(positions={WETH: make_position(timestamp=OPENED)}, balance=0.0)
    reader.fee_error = rpc_failure("getExecutionFee")
    reconciler = PositionReconciler(reader, clock=lambda: OPENED + 10)

    result = await reconciler.poll(WALLET, WETH)

    assert result.state == PositionState.STUCK
    assert [a.function for a in result.actions] == ["userInstantClose", "userClosePosition"]
    assert all(a.execution_fee_wei is None for a in result.actions)


@pytest.mark.asyncio
async def test_poll_inactive_position_skips_other_reads():
    reader = StubChainReader()
    reconciler = PositionReconciler(reader)

    result = await reconciler.poll(WALLET, WETH)

    assert result.state == PositionState.CLOSED
    assert result.vault_balance is None


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class _EventSink:
    def __init__(self) -> None:
        self.events = []

    async def log_event(self, category, message, severity="info", *, wallet=None, token=None):
        self.events.append((category, message, severity, wallet, token))


def _monitor(reader, **kwargs):
    reconciler = PositionReconciler(reader, ghost_timeout_seconds=TIMEOUT, clock=lambda: OPENED + 10)
    return PositionMonitor(reconciler, tokens={"WETH": WETH}, **kwargs)


async def _first_pass(monitor, wallet=WALLET, token=WETH):
    """Register ``wallet`` and wait for its loop to store a first result."""
    monitor.register_wallet(wallet)
    for _ in range(200):
        result = monitor.get_result(wallet, token)
        if result is not None:
            return result
        await asyncio.sleep(0)
    raise AssertionError("wallet loop produced no result")


@pytest.mark.asyncio
async def test_read_failure_keeps_previous_classification():
    reader = StubChainReader(positions={WETH: make_position()}, exchange={WETH: LIVE_EXCHANGE})
    monitor = _monitor(reader, poll_interval=3600)

    first = await _first_pass(monitor)
    reader.fail = rpc_failure()
    second = await monitor.poll_key(WALLET, WETH)
    stored = monitor.get_result(WALLET, WETH)
    await monitor.stop()

    assert first.state == PositionState.ACTIVE_HEALTHY and not first.stale
    assert second.state == PositionState.ACTIVE_HEALTHY
    assert second.stale is True
    assert "rpc unreachable" in second.error
    assert stored is second


@pytest.mark.asyncio
async def test_read_failure_without_history_is_unknown_not_closed():
    reader = StubChainReader()
    reader.fail = rpc_failure()
    logged = []

    async def db_log(category, message, severity="info"):
        logged.append((category, severity))

    monitor = _monitor(reader, error_handler=GracefulErrorHandler(db_log_fn=db_log))

    result = await monitor.poll_key(WALLET, WETH)

    assert result.state == PositionState.UNKNOWN
    assert result.stale is True
    assert logged == [("chain_reader", "info")]


@pytest.mark.asyncio
async def test_concurrent_poll_for_same_key_is_skipped():
    reader = StubChainReader(positions={WETH: make_position()}, exchange={WETH: LIVE_EXCHANGE})
    reader.gate = asyncio.Event()
    monitor = _monitor(reader)

    first = asyncio.create_task(monitor.poll_key(WALLET, WETH))
    await asyncio.sleep(0)
    results, skipped = await monitor.poll_wallet(WALLET)
    reader.gate.set()
    done = await first

    assert results == [] and skipped == ["WETH"]
    assert done.state == PositionState.ACTIVE_HEALTHY
    assert reader.position_reads == 1


@pytest.mark.asyncio
async def test_result_after_deregistration_is_discarded():
    reader = StubChainReader(positions={WETH: make_position()}, exchange={WETH: LIVE_EXCHANGE})
    reader.gate = asyncio.Event()
    monitor = _monitor(reader, poll_interval=3600)

    monitor.register_wallet(WALLET)
    await asyncio.sleep(0)
    # The wallet loop is parked on WETH; an on-demand poll for WBTC is in flight too
    manual = asyncio.create_task(monitor.poll_key(WALLET.upper(), WBTC))
    await asyncio.sleep(0)
    await monitor.deregister_wallet(WALLET)
    reader.gate.set()
    late = await manual

    assert late is not None
    assert monitor.registered_wallets() == []
    assert monitor.get_results(WALLET) == []


@pytest.mark.asyncio
async def test_state_transitions_are_logged():
    reader = StubChainReader(positions={WETH: make_position()}, exchange={WETH: LIVE_EXCHANGE})
    sink = _EventSink()
    monitor = _monitor(reader, db=sink, poll_interval=3600)

    await _first_pass(monitor)
    await monitor.poll_key(WALLET, WETH)
    reader.exchange = {WETH: NO_EXCHANGE}
    await monitor.poll_key(WALLET, WETH)
    await monitor.stop()

    assert [e[1] for e in sink.events] == [
        "WETH: new -> active_healthy",
        "WETH: active_healthy -> active_ghost",
    ]
    assert sink.events[-1][2] == "warning"
    assert sink.events[-1][3] == WALLET.lower()


@pytest.mark.asyncio
async def test_unregistered_wallet_polls_are_not_retained():
    reader = StubChainReader(positions={WETH: make_position()}, exchange={WETH: LIVE_EXCHANGE})
    sink = _EventSink()
    monitor = _monitor(reader, db=sink)

    for i in range(50):
        results, skipped = await monitor.poll_wallet(f"0x{i:040x}")
        assert len(results) == 1 and skipped == []

    assert monitor.registered_wallets() == []
    assert monitor.get_results("0x" + "0" * 40) == []
    assert monitor.get_result(f"0x{49:040x}", WETH) is None
    assert sink.events == []
