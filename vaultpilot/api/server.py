"""
FastAPI server - signal, permission and reconciliation endpoints.

Endpoints:
- GET  /api/signal?symbol=&timeframes=       - unified multi-timeframe signal
- GET  /api/timeframe?symbol=&tf=            - single timeframe analysis
- GET  /api/v1/health                        - liveness check
- GET  /api/v1/status                        - service status
- GET  /api/v1/permission?wallet=            - trade permission for a wallet
- POST /api/v1/permission/reserve?wallet=    - check and count one trade atomically
- GET  /api/v1/positions/{wallet}            - latest reconciliations
- POST /api/v1/positions/{wallet}/reconcile  - reconcile now
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vaultpilot import __version__
from vaultpilot.core.config import ApiConfig
from vaultpilot.core.logger import get_logger

logger = get_logger("api_server")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


class ApiServer:
    """FastAPI app wired to the signal engine, quota gate and position monitor."""

    def __init__(self, config: Optional[ApiConfig] = None, mode: str = "paper"):
        self.config = config or ApiConfig()
        self.mode = mode
        self.app = FastAPI(
            title="VaultPilot API",
            version=__version__,
            docs_url="/api/docs",
        )
        self._signal_engine = None
        self._quota_gate = None
        self._position_monitor = None
        self._start_time = time.time()
        self._setup_middleware()
        self._setup_routes()

    def set_signal_engine(self, engine) -> None:
        self._signal_engine = engine

    def set_quota_gate(self, gate) -> None:
        self._quota_gate = gate

    def set_position_monitor(self, monitor) -> None:
        self._position_monitor = monitor

    def _setup_middleware(self) -> None:
        """Configure CORS and security headers."""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=list(self.config.cors_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def _security_headers_mw(request: Request, call_next):
            resp = await call_next(request)
            resp.headers.setdefault("X-Content-Type-Options", "nosniff")
            resp.headers.setdefault("X-Frame-Options", "DENY")
            resp.headers.setdefault("Referrer-Policy", "no-referrer")
            if request.url.path.startswith("/api/"):
                resp.headers.setdefault("Cache-Control", "no-store")
            return resp

    def _setup_routes(self) -> None:
        """Register all API routes."""

        def _require_read_access(x_api_key: str) -> None:
            expected = (self.config.read_api_key or "").strip()
            if not expected:
                return
            api_key = (x_api_key or "").strip()
            if not api_key:
                raise HTTPException(status_code=401, detail="Missing credentials")
            if api_key != expected:
                raise HTTPException(status_code=403, detail="Invalid credentials")

        def _require(component: Any, name: str) -> Any:
            if component is None:
                raise HTTPException(status_code=503, detail=f"{name} not available")
            return component

        # ---- Signals ----

        @self.app.get("/api/signal")
        async def get_signal(
            symbol: str = Query(..., min_length=1),
            timeframes: Optional[str] = Query(default=None),
        ):
            engine = _require(self._signal_engine, "signal engine")
            requested: Optional[List[str]] = None
            if timeframes is not None:
                requested = [tf for tf in timeframes.split(",")]
            try:
                signal = await engine.generate_signal(symbol, requested)
            except ValueError as e:
                return _error(400, str(e))
            except Exception as e:
                logger.error("Signal request failed", symbol=symbol, error=repr(e))
                return _error(500, "Signal generation failed")
            return {"success": True, "signal": signal.to_dict(), "timestamp": _now_iso()}

        @self.app.get("/api/timeframe")
        async def get_timeframe(
            symbol: str = Query(..., min_length=1),
            tf: str = Query(..., min_length=1),
        ):
            engine = _require(self._signal_engine, "signal engine")
            try:
                (timeframe,) = engine.validate_timeframes([tf])
                analysis = await engine.analyze_timeframe(symbol, timeframe)
            except ValueError as e:
                return _error(400, str(e))
            except Exception as e:
                logger.error("Timeframe request failed", symbol=symbol, timeframe=tf, error=repr(e))
                return _error(500, "Timeframe analysis failed")
            return {"success": True, "analysis": analysis.to_dict(), "timestamp": _now_iso()}

        # ---- Status ----

        @self.app.get("/api/v1/health")
        @self.app.head("/api/v1/health")
        async def health():
            return {"status": "ok"}

        @self.app.get("/api/v1/status")
        async def get_status(x_api_key: str = Header(default="", alias="X-API-Key")):
            _require_read_access(x_api_key)
            engine = self._signal_engine
            monitor = self._position_monitor
            return {
                "status": "running",
                "mode": self.mode,
                "version": __version__,
                "uptime_seconds": time.time() - self._start_time,
                "symbols": engine.registered_symbols() if engine else [],
                "wallets": len(monitor.registered_wallets()) if monitor else 0,
                "quota_gate": self._quota_gate is not None,
                "timestamp": _now_iso(),
            }

        # ---- Permission ----

        @self.app.get("/api/v1/permission")
        async def get_permission(
            wallet: str = Query(..., min_length=1),
            x_api_key: str = Header(default="", alias="X-API-Key"),
        ):
            _require_read_access(x_api_key)
            gate = _require(self._quota_gate, "quota gate")
            permission = await gate.can_trade(wallet)
            return {"success": True, "wallet": wallet.lower(), **permission.to_dict()}

        @self.app.post("/api/v1/permission/reserve")
        async def reserve_trade(
            wallet: str = Query(..., min_length=1),
            x_api_key: str = Header(default="", alias="X-API-Key"),
        ):
            _require_read_access(x_api_key)
            gate = _require(self._quota_gate, "quota gate")
            permission = await gate.reserve_trade(wallet)
            return {"success": True, "wallet": wallet.lower(), **permission.to_dict()}

        # ---- Positions ----

        @self.app.get("/api/v1/positions/{wallet}")
        async def get_positions(
            wallet: str,
            x_api_key: str = Header(default="", alias="X-API-Key"),
        ):
            _require_read_access(x_api_key)
            monitor = _require(self._position_monitor, "position monitor")
            results = monitor.get_results(wallet)
            return {
                "success": True,
                "wallet": wallet.lower(),
                "positions": [r.to_dict() for r in results],
                "timestamp": _now_iso(),
            }

        @self.app.post("/api/v1/positions/{wallet}/reconcile")
        async def reconcile_wallet(
            wallet: str,
            x_api_key: str = Header(default="", alias="X-API-Key"),
        ):
            _require_read_access(x_api_key)
            monitor = _require(self._position_monitor, "position monitor")
            results, skipped = await monitor.poll_wallet(wallet)
            payload: Dict[str, Any] = {
                "success": True,
                "wallet": wallet.lower(),
                "positions": [r.to_dict() for r in results],
                "skipped": skipped,
                "timestamp": _now_iso(),
            }
            return payload
