"""
Database Manager - SQLite with WAL mode for concurrent access.

Holds the two pieces of state this service owns: wallet subscriptions
(the quota counters) and the operator event log written by the
reconciliation monitor and the error handler.

Subscription counters are updated with a compare-and-set on a version
column, so concurrent writers for the same wallet never lose an increment,
even across processes sharing the file. The quota limit itself is enforced
by the gate checking it against the row it compare-and-sets
(QuotaGate.reserve_trade).
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from vaultpilot.core.logger import get_logger

logger = get_logger("db")


class DatabaseManager:
    """
    Async SQLite database manager with WAL mode.

    Features:
    - WAL mode for concurrent read/write
    - Lock acquisition timeout instead of silent deadlock
    - Optimistic-concurrency subscription updates
    """

    _LOCK_TIMEOUT: float = 30.0

    # Columns a caller may set through upsert_subscription
    SUBSCRIPTION_COLUMNS = frozenset({
        "user_id", "plan_tier", "status", "daily_trades_used",
        "daily_trades_reset_at", "total_trades_used", "end_date",
        "timezone", "auto_trade_enabled",
    })

    def __init__(self, db_path: str = "data/vaultpilot.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @asynccontextmanager
    async def _timed_lock(self) -> AsyncIterator[None]:
        """Acquire the DB lock with a timeout to prevent deadlocks."""
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._LOCK_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(
                "Database lock acquisition timed out - possible deadlock",
                timeout=self._LOCK_TIMEOUT,
            )
            raise RuntimeError(
                f"Database lock timeout after {self._LOCK_TIMEOUT}s"
            )
        try:
            yield
        finally:
            self._lock.release()

    async def initialize(self) -> None:
        """Initialize database connection and create schema."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, timeout=15)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA temp_store=MEMORY")

        await self._create_schema()
        self._initialized = True
        logger.info("Database initialized", path=self.db_path)

    async def _create_schema(self) -> None:
        """Create all required database tables."""
        schema_sql = """
        -- One row per wallet; counters are mutated only through version CAS
        CREATE TABLE IF NOT EXISTS subscriptions (
            wallet_address TEXT PRIMARY KEY,
            user_id TEXT,
            plan_tier TEXT NOT NULL DEFAULT 'free',
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'expired', 'cancelled', 'pending')),
            daily_trades_used INTEGER NOT NULL DEFAULT 0,
            daily_trades_reset_at TEXT,
            total_trades_used INTEGER NOT NULL DEFAULT 0,
            end_date TEXT,  -- NULL = lifetime
            timezone TEXT NOT NULL DEFAULT 'UTC',
            auto_trade_enabled INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT DEFAULT (datetime('now')),
            updated_at TEXT DEFAULT (datetime('now'))
        );

        -- Operator-facing reconciliation and error events
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            category TEXT NOT NULL,
            message TEXT NOT NULL,
            severity TEXT NOT NULL DEFAULT 'info',
            wallet_address TEXT,
            token TEXT,
            timestamp TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_wallet ON events(wallet_address);
        CREATE INDEX IF NOT EXISTS idx_subscriptions_auto
            ON subscriptions(auto_trade_enabled, status);
        """
        await self._db.executescript(schema_sql)
        await self._db.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _sql_dt(expr: str) -> str:
        """SQLite datetime() wrapper tolerant of ISO 8601 'T' separators."""
        return f"datetime(replace(substr({expr}, 1, 19), 'T', ' '))"

    @staticmethod
    def _iso(value: Optional[datetime]) -> Optional[str]:
        """Absolute UTC instant as ISO 8601, or None."""
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    @staticmethod
    def _parse_dt(value: Any) -> Optional[datetime]:
        """Parse common timestamp formats into an aware UTC datetime."""
        if not value:
            return None
        if isinstance(value, datetime):
            dt = value
        else:
            s = str(value).strip()
            if not s:
                return None
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            try:
                dt = datetime.fromisoformat(s)
            except (ValueError, TypeError):
                return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    def _ensure_ready(self) -> None:
        if not self._initialized or self._db is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def get_subscription(self, wallet: str) -> Optional[Dict[str, Any]]:
        """Fetch one subscription row by wallet (case-insensitive)."""
        self._ensure_ready()
        cursor = await self._db.execute(
            "SELECT * FROM subscriptions WHERE wallet_address = ? LIMIT 1",
            (wallet.lower(),),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        cols = [d[0] for d in cursor.description]
        return dict(zip(cols, row))

    async def upsert_subscription(self, wallet: str, fields: Dict[str, Any]) -> None:
        """Create or replace subscription fields for a wallet; bumps the version."""
        self._ensure_ready()
        values: Dict[str, Any] = {}
        for key, value in fields.items():
            if key not in self.SUBSCRIPTION_COLUMNS:
                raise ValueError(f"Column '{key}' not allowed in subscription updates")
            if isinstance(value, datetime):
                value = self._iso(value)
            if key == "auto_trade_enabled":
                value = 1 if value else 0
            values[key] = value

        cols = ["wallet_address", *values.keys()]
        placeholders = ", ".join("?" for _ in cols)
        updates = ", ".join(f"{k} = excluded.{k}" for k in values)
        set_clause = f"{updates}, " if updates else ""
        sql = (
            f"INSERT INTO subscriptions ({', '.join(cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT(wallet_address) DO UPDATE SET {set_clause}"
            "version = version + 1, updated_at = datetime('now')"
        )
        async with self._timed_lock():
            await self._db.execute(sql, (wallet.lower(), *values.values()))
            await self._db.commit()

    async def update_subscription_counters(
        self,
        wallet: str,
        expected_version: int,
        *,
        daily_trades_used: int,
        total_trades_used: int,
        daily_trades_reset_at: Optional[datetime],
    ) -> bool:
        """
        Compare-and-set the quota counters.

        Returns False when the stored version no longer equals
        ``expected_version`` (another writer got there first).
        """
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                """UPDATE subscriptions
                   SET daily_trades_used = ?, total_trades_used = ?,
                       daily_trades_reset_at = ?, version = version + 1,
                       updated_at = datetime('now')
                   WHERE wallet_address = ? AND version = ?""",
                (
                    daily_trades_used,
                    total_trades_used,
                    self._iso(daily_trades_reset_at),
                    wallet.lower(),
                    expected_version,
                ),
            )
            await self._db.commit()
            return cursor.rowcount == 1

    async def list_auto_trade_wallets(self) -> List[str]:
        """Active, paid wallets that opted into automated trading."""
        self._ensure_ready()
        cursor = await self._db.execute(
            """SELECT wallet_address FROM subscriptions
               WHERE auto_trade_enabled = 1 AND status = 'active'
                 AND plan_tier != 'free'
               ORDER BY wallet_address"""
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def log_event(
        self,
        category: str,
        message: str,
        severity: str = "info",
        *,
        wallet: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        """Append an operator-facing event."""
        if not self._initialized or self._db is None:
            return
        async with self._timed_lock():
            await self._db.execute(
                """INSERT INTO events (category, message, severity, wallet_address, token, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    category,
                    message,
                    severity,
                    wallet.lower() if wallet else None,
                    token,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            await self._db.commit()

    async def get_events(
        self,
        limit: int = 50,
        *,
        category: Optional[str] = None,
        wallet: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Most recent events first."""
        self._ensure_ready()
        sql = "SELECT * FROM events WHERE 1=1"
        params: List[Any] = []
        if category:
            sql += " AND category = ?"
            params.append(category)
        if wallet:
            sql += " AND wallet_address = ?"
            params.append(wallet.lower())
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        cursor = await self._db.execute(sql, tuple(params))
        cols = [d[0] for d in cursor.description]
        rows = await cursor.fetchall()
        return [dict(zip(cols, row)) for row in rows]

    # ------------------------------------------------------------------
    # Cleanup & Close
    # ------------------------------------------------------------------

    async def cleanup_old_data(self, retention_hours: int = 168) -> None:
        """Remove events past the retention period."""
        self._ensure_ready()
        async with self._timed_lock():
            await self._db.execute(
                "DELETE FROM events WHERE " + self._sql_dt("timestamp") + " < datetime('now', ?)",
                (f"-{retention_hours} hours",)
            )
            await self._db.commit()

    async def close(self) -> None:
        """Close database connection gracefully."""
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False
