"""
Subscription plans - tier and status enums, the subscription record and
the permission result returned by the quota gate.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from vaultpilot.core.logger import get_logger

logger = get_logger("plans")

UNLIMITED = -1


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ELITE = "elite"
    DESKTOP = "desktop"

    @classmethod
    def parse(cls, value: Any) -> Optional[PlanTier]:
        """Stored tier string -> PlanTier, or None when unrecognized."""
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return None


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING = "pending"  # checkout started, not yet paid


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class Subscription:
    """One wallet's subscription row, as read from the store."""
    wallet_address: str
    plan_tier: str
    status: str
    daily_trades_used: int = 0
    daily_trades_reset_at: Optional[datetime] = None
    total_trades_used: int = 0
    end_date: Optional[datetime] = None
    timezone: str = "UTC"
    auto_trade_enabled: bool = False
    version: int = 0
    user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Subscription:
        return cls(
            wallet_address=str(row.get("wallet_address", "")).lower(),
            plan_tier=str(row.get("plan_tier") or ""),
            status=str(row.get("status") or ""),
            daily_trades_used=int(row.get("daily_trades_used") or 0),
            daily_trades_reset_at=_parse_dt(row.get("daily_trades_reset_at")),
            total_trades_used=int(row.get("total_trades_used") or 0),
            end_date=_parse_dt(row.get("end_date")),
            timezone=str(row.get("timezone") or "UTC"),
            auto_trade_enabled=bool(row.get("auto_trade_enabled")),
            version=int(row.get("version") or 0),
            user_id=row.get("user_id"),
        )

    @property
    def tier(self) -> Optional[PlanTier]:
        return PlanTier.parse(self.plan_tier)


@dataclass(frozen=True)
class TradePermission:
    allowed: bool
    reason: Optional[str]
    daily_trades_remaining: int
    plan_tier: str

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "allowed": self.allowed,
            "dailyTradesRemaining": self.daily_trades_remaining,
            "planTier": self.plan_tier,
        }
        if self.reason:
            out["reason"] = self.reason
        return out


def resolve_timezone(tz_name: Optional[str]) -> ZoneInfo:
    """IANA zone for ``tz_name``; UTC when the name is empty or unknown."""
    if not tz_name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, falling back to UTC", timezone=tz_name)
        return ZoneInfo("UTC")


def next_local_midnight(now: datetime, tz_name: Optional[str]) -> datetime:
    """
    The next local midnight at or after ``now`` in ``tz_name``, as a UTC instant.

    23:55 local resets five minutes later, not a day later.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    tz = resolve_timezone(tz_name)
    local = now.astimezone(tz)
    midnight = datetime.combine(local.date(), dtime.min, tzinfo=tz)
    if midnight < local:
        midnight = datetime.combine(local.date() + timedelta(days=1), dtime.min, tzinfo=tz)
    return midnight.astimezone(timezone.utc)
