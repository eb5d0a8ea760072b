#!/usr/bin/env python3
"""
VaultPilot - Main Entry Point

main.py owns init/run/shutdown: wires the store, candle feed, signal
engine, chain reader, reconciliation monitor, quota gate and HTTP API,
then waits for SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import random
import signal as sig
import sys
import time
import traceback
from pathlib import Path


def preflight_checks() -> bool:
    """Run pre-flight system checks before startup."""
    ok = True

    for directory in ["data", "logs", "config"]:
        Path(directory).mkdir(parents=True, exist_ok=True)

    if not Path("config/config.yaml").exists():
        print("[WARN] config/config.yaml not found, using defaults")

    if not Path(".env").exists():
        print("[WARN] No .env file; relying on process environment")

    return ok


class Services:
    """Holds every long-lived component so shutdown can close them in order."""

    def __init__(self, config):
        from vaultpilot.api.server import ApiServer
        from vaultpilot.billing.quota_gate import QuotaGate
        from vaultpilot.core.database import DatabaseManager
        from vaultpilot.core.error_handler import GracefulErrorHandler
        from vaultpilot.market.candle_feed import CandleFeed
        from vaultpilot.signals.base import RiskProfile
        from vaultpilot.signals.unified_engine import UnifiedSignalEngine

        self.config = config
        self.db = DatabaseManager(config.app.db_path)
        self.error_handler = GracefulErrorHandler()
        self.candle_feed = CandleFeed(config.market_data)
        self.signal_engine = UnifiedSignalEngine(
            self.candle_feed,
            config.signals,
            RiskProfile(config.risk.default_take_profit_pct, config.risk.default_stop_loss_pct),
        )
        self.quota_gate = QuotaGate.from_config(self.db, config.quota)
        self.chain_reader = None
        self.monitor = None
        self.api = ApiServer(config.api, mode=config.app.mode)
        self._running = False

    async def initialize(self) -> None:
        from vaultpilot.chain.state_reader import ChainStateReader
        from vaultpilot.core.logger import get_logger
        from vaultpilot.positions.monitor import PositionMonitor
        from vaultpilot.positions.reconciler import PositionReconciler

        logger = get_logger("main")
        await self.db.initialize()
        self.error_handler.set_db_log_fn(self.db.log_event)
        await self.candle_feed.initialize()

        chain_cfg = self.config.chain
        if self.config.reconciler.enabled and chain_cfg.vault_address:
            self.chain_reader = ChainStateReader(chain_cfg)
            await self.chain_reader.initialize()
            reconciler = PositionReconciler(
                self.chain_reader,
                ghost_timeout_seconds=self.config.reconciler.ghost_timeout_seconds,
            )
            self.monitor = PositionMonitor(
                reconciler,
                tokens=chain_cfg.tokens,
                poll_interval=self.config.reconciler.poll_interval_seconds,
                error_handler=self.error_handler,
                db=self.db,
            )
        else:
            logger.warning("Reconciliation disabled (no vault address configured)")

        self.api.set_signal_engine(self.signal_engine)
        self.api.set_quota_gate(self.quota_gate)
        self.api.set_position_monitor(self.monitor)

    async def start(self) -> None:
        self._running = True
        for symbol in self.config.signals.symbols:
            self.signal_engine.register_symbol(symbol)
        if self.monitor is not None:
            await self.monitor.start()

    async def cleanup_loop(self) -> None:
        while self._running:
            await self.db.cleanup_old_data(self.config.app.event_retention_hours)
            await asyncio.sleep(3600)

    async def stop(self) -> None:
        self._running = False
        await self.signal_engine.stop()
        if self.monitor is not None:
            await self.monitor.stop()
        if self.chain_reader is not None:
            await self.chain_reader.close()
        await self.candle_feed.close()
        await self.db.close()


async def run_service():
    """Initialize components, serve the API and run background loops."""
    import uvicorn
    from vaultpilot.core.config import ConfigManager
    from vaultpilot.core.logger import get_logger

    logger = get_logger("main")
    config = ConfigManager().config
    services = Services(config)
    shutdown_event = asyncio.Event()

    async def _run_with_restart(
        name,
        coro_factory,
        *,
        reset_failures_after_seconds: int = 600,
        base_delay: int = 2,
        max_delay: int = 30,
    ):
        failures = 0
        while services._running:
            started = time.time()
            try:
                await coro_factory()
                if services._running:
                    failures += 1
                    logger.warning("Background task exited unexpectedly", task=name, failures=failures)
            except asyncio.CancelledError:
                break
            except Exception as e:
                failures += 1
                logger.error(
                    "Background task failed",
                    task=name,
                    error=repr(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc(),
                    failures=failures,
                )
                await services.error_handler.handle(e, component=name)

            ran_for = max(0.0, time.time() - started)
            if ran_for >= float(reset_failures_after_seconds or 0):
                failures = 0

            if services._running:
                delay = min(max_delay, base_delay * (2 ** min(max(failures, 1) - 1, 5)))
                delay = float(delay) + random.random()  # jitter
                await asyncio.sleep(delay)

    # Phase 1: Initialize all subsystems
    await services.initialize()

    # Phase 2: Signal handling
    def _request_shutdown():
        services._running = False
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for s in (sig.SIGINT, sig.SIGTERM):
        try:
            loop.add_signal_handler(s, _request_shutdown)
        except NotImplementedError:
            sig.signal(s, lambda *_: _request_shutdown())

    # Phase 3: Background loops
    await services.start()
    await services.db.log_event("system", "VaultPilot STARTED", severity="info")
    tasks = [asyncio.create_task(_run_with_restart("cleanup_loop", services.cleanup_loop))]

    server_holder = {"server": None}

    async def _api_serve_once():
        # Fresh server per attempt so no should_exit state carries over
        ucfg = uvicorn.Config(
            app=services.api.app,
            host=config.api.host,
            port=config.api.port,
            log_level="warning",
            access_log=False,
        )
        srv = uvicorn.Server(ucfg)
        srv.install_signal_handlers = lambda: None
        server_holder["server"] = srv
        await srv.serve()

    server_task = None
    if config.api.enabled:
        server_task = asyncio.create_task(_run_with_restart("api", _api_serve_once))

    # Phase 4: Wait for shutdown signal
    await shutdown_event.wait()

    # Phase 5: Graceful shutdown
    logger.info("Shutdown signal received, cleaning up...")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    srv = server_holder.get("server")
    if srv is not None:
        srv.should_exit = True
    if server_task is not None:
        try:
            await asyncio.wait_for(server_task, timeout=5)
        except asyncio.TimeoutError:
            server_task.cancel()
            logger.warning("API server did not stop in time")

    await services.stop()


def main():
    """Main entry point."""
    from vaultpilot.core.config import ConfigManager
    from vaultpilot.core.logger import get_logger, setup_logging

    if not preflight_checks():
        sys.exit(1)

    # Setup logging before any component imports use loggers
    config = ConfigManager()
    setup_logging(
        log_level=config.config.app.log_level,
        log_dir=config.config.app.log_dir,
        json_output=config.config.app.json_logs,
    )

    logger = get_logger("main")
    from vaultpilot import __version__
    logger.info(
        "Starting VaultPilot",
        version=__version__,
        python=sys.version,
        mode=config.config.app.mode,
    )

    # Top-level supervisor: restart on unexpected fatal exceptions, capped.
    failures = 0
    max_failures = 10
    base_delay = 2.0
    max_delay = 60.0
    while failures < max_failures:
        try:
            asyncio.run(run_service())
            return
        except KeyboardInterrupt:
            logger.info("Shutdown requested via keyboard interrupt")
            return
        except SystemExit:
            raise
        except Exception as e:
            failures += 1
            delay = min(max_delay, base_delay * (2 ** min(failures - 1, 6)))
            delay = float(delay) + random.random()
            logger.critical(
                "Fatal runtime error; restarting service",
                error=repr(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
                failures=failures,
                max_failures=max_failures,
                restart_in_seconds=round(delay, 2),
            )
            time.sleep(delay)

    logger.critical("Too many consecutive failures, giving up", failures=failures)
    sys.exit(1)


if __name__ == "__main__":
    main()
