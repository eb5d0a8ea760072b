"""
Graceful Error Handler - failure taxonomy for the signal, reconciliation and quota paths.

Most failures here are data problems (a market-data source is down, an RPC
node timed out) and must degrade the output, not stop the service. Only a
broken store or a malformed configuration is fatal.

Rules:
- Candle or timeframe failure -> HOLD/neutral analysis with a warning
- Chain read failure -> keep the previous classification, mark it stale, tell operators
- Quota denial is a result, never an exception
"""

from __future__ import annotations

import asyncio
import enum
import traceback
from typing import Any, Optional

from vaultpilot.core.logger import get_logger

logger = get_logger("error_handler")


class ErrorSeverity(enum.Enum):
    """How badly an error affects the service."""

    CRITICAL = "critical"    # Store unavailable or configuration broken
    DEGRADED = "degraded"    # Log + event log + continue
    TRANSIENT = "transient"  # Log + continue silently


class ChainReadError(RuntimeError):
    """An RPC read against the vault, exchange or price oracle failed."""

    def __init__(self, call: str, error: BaseException):
        super().__init__(f"{call} failed: {type(error).__name__}: {error}")
        self.call = call
        self.error = error


class SubscriptionConflictError(RuntimeError):
    """Optimistic subscription update lost every retry to concurrent writers."""


# Components whose failure IS fatal.
_CRITICAL_COMPONENTS = frozenset({
    "database",
    "db",
    "config",
})


class GracefulErrorHandler:
    """
    Centralized error classification and handling.

    Usage::

        handler = GracefulErrorHandler(db_log_fn=db.log_event)
        await handler.handle(err, component="chain_reader", context="0xabc/WETH")
    """

    def __init__(self, db_log_fn: Optional[Any] = None):
        self._db_log_fn = db_log_fn

    def set_db_log_fn(self, fn: Any) -> None:
        self._db_log_fn = fn

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify_error(
        self,
        error: BaseException,
        *,
        component: str = "",
    ) -> ErrorSeverity:
        """Classify an error by severity based on what component it came from."""
        comp = component.lower().strip()

        if comp in _CRITICAL_COMPONENTS:
            return ErrorSeverity.CRITICAL

        # A single timed-out RPC or HTTP call is expected noise
        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return ErrorSeverity.TRANSIENT
        if isinstance(error, ChainReadError) and isinstance(
            error.error, (ConnectionError, TimeoutError, asyncio.TimeoutError)
        ):
            return ErrorSeverity.TRANSIENT

        # Everything else degrades output but keeps the service running
        return ErrorSeverity.DEGRADED

    # ------------------------------------------------------------------
    # Handling
    # ------------------------------------------------------------------

    async def handle(
        self,
        error: BaseException,
        *,
        component: str = "",
        context: str = "",
    ) -> ErrorSeverity:
        """
        Classify, log, and persist an error to the operator event log.

        Returns the severity so callers can decide what to do.
        """
        severity = self.classify_error(error, component=component)
        tb = traceback.format_exception(type(error), error, error.__traceback__)
        tb_str = "".join(tb[-3:])

        msg = (
            f"[{severity.value.upper()}] {component or 'unknown'}"
            f"{(' / ' + context) if context else ''}: "
            f"{type(error).__name__}: {error}"
        )

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(msg, traceback=tb_str)
        elif severity == ErrorSeverity.DEGRADED:
            logger.warning(msg, traceback=tb_str)
        else:
            logger.info(msg)

        if self._db_log_fn:
            try:
                sev_map = {
                    ErrorSeverity.CRITICAL: "critical",
                    ErrorSeverity.DEGRADED: "warning",
                    ErrorSeverity.TRANSIENT: "info",
                }
                await self._db_log_fn(
                    component or "system",
                    msg,
                    severity=sev_map.get(severity, "info"),
                )
            except Exception as e:
                logger.warning("Error event persistence failed", error=repr(e))

        return severity
