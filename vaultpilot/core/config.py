"""
Configuration Manager - Loads and validates all service configuration.

Merges YAML config with environment variables. Environment variables take
precedence over YAML values for deployment flexibility. Anything that would
make the signal engine or the quota gate misbehave per-request (weights not
summing to 1.0, a bad tier limit) is rejected here, at load time.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


_WEIGHT_TOLERANCE = 1e-6


def _as_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes", "on")


def _as_csv(v: str) -> List[str]:
    return [s.strip() for s in v.split(",") if s.strip()]


# ---------------------------------------------------------------------------
# Environment overrides (shared)
# ---------------------------------------------------------------------------

def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    def _set_path(root: Dict[str, Any], path: tuple[str, ...], v: Any) -> None:
        d: Dict[str, Any] = root
        for key in path[:-1]:
            nxt = d.get(key)
            if not isinstance(nxt, dict):
                nxt = {}
                d[key] = nxt
            d = nxt
        d[path[-1]] = v

    env_mappings = {
        "TRADING_MODE": ("app", "mode"),
        "LOG_LEVEL": ("app", "log_level"),
        "LOG_JSON": ("app", "json_logs", _as_bool),
        "DB_PATH": ("app", "db_path"),
        "RPC_URL": ("chain", "rpc_url"),
        "VAULT_ADDRESS": ("chain", "vault_address"),
        "GMX_VAULT_ADDRESS": ("chain", "gmx_vault_address"),
        "API_HOST": ("api", "host"),
        "API_PORT": ("api", "port", int),
        "API_READ_KEY": ("api", "read_api_key"),
        "SIGNAL_SYMBOLS": ("signals", "symbols", lambda v: [s.upper() for s in _as_csv(v)]),
        "SIGNAL_TIMEFRAMES": ("signals", "timeframes", _as_csv),
        "SIGNAL_CONFIDENCE_THRESHOLD": ("signals", "confidence_threshold", float),
        "SIGNAL_TIMEFRAME_TIMEOUT_SECONDS": ("signals", "timeframe_timeout_seconds", float),
        "RECONCILE_POLL_SECONDS": ("reconciler", "poll_interval_seconds", float),
        "GHOST_TIMEOUT_SECONDS": ("reconciler", "ghost_timeout_seconds", int),
        "FREE_TRADE_LIMIT": ("quota", "free_lifetime_limit", int),
        "DEFAULT_TAKE_PROFIT_PCT": ("risk", "default_take_profit_pct", float),
        "DEFAULT_STOP_LOSS_PCT": ("risk", "default_stop_loss_pct", float),
        "CANDLE_REQUEST_TIMEOUT_SECONDS": (("market_data", "request_timeout_seconds"), float),
    }

    for env_key, mapping in env_mappings.items():
        value = os.getenv(env_key)
        if value is not None:
            # ("section","key"[,converter]) or (("a","b","c"), converter)
            try:
                if isinstance(mapping[0], tuple):
                    path = mapping[0]
                    converter = mapping[1] if len(mapping) > 1 else str
                    _set_path(config, path, converter(value))
                else:
                    section = mapping[0]
                    key = mapping[1]
                    converter = mapping[2] if len(mapping) > 2 else str
                    if section not in config or not isinstance(config[section], dict):
                        config[section] = {}
                    config[section][key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.getLogger("config").warning(
                    "Env %s=%r failed to convert: %s. Using YAML value.",
                    env_key, value, e,
                )


# ---------------------------------------------------------------------------
# Pydantic Configuration Models (strict validation)
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    name: str = "VaultPilot"
    mode: str = "paper"
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False
    db_path: str = "data/vaultpilot.db"
    event_retention_hours: int = 168

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v):
        if v not in ("paper", "live"):
            raise ValueError("mode must be 'paper' or 'live'")
        return v


class TimeframeWeight(BaseModel):
    trend: float
    entry: float

    @field_validator("trend", "entry")
    @classmethod
    def validate_weight(cls, v):
        if v < 0 or v > 1:
            raise ValueError("timeframe weights must be between 0 and 1")
        return v


def _default_timeframe_weights() -> Dict[str, TimeframeWeight]:
    return {
        "1m": TimeframeWeight(trend=0.05, entry=0.30),
        "5m": TimeframeWeight(trend=0.10, entry=0.30),
        "15m": TimeframeWeight(trend=0.20, entry=0.25),
        "1h": TimeframeWeight(trend=0.35, entry=0.10),
        "4h": TimeframeWeight(trend=0.30, entry=0.05),
    }


def _default_pattern_weights() -> Dict[str, float]:
    return {
        "bullish_engulfing": 0.8,
        "bearish_engulfing": 0.8,
        "hammer": 0.7,
        "inverted_hammer": 0.6,
        "doji": 0.3,
        "dragonfly_doji": 0.5,
        "gravestone_doji": 0.5,
        "morning_star": 0.9,
        "evening_star": 0.9,
        "three_white_soldiers": 1.0,
        "three_black_crows": 1.0,
        "bullish_harami": 0.6,
        "bearish_harami": 0.6,
        "momentum_continuation": 0.7,
    }


class SignalsConfig(BaseModel):
    symbols: List[str] = Field(default_factory=lambda: ["ETHUSDT", "BTCUSDT"])
    # Default requested set; every entry must have a weight row
    timeframes: List[str] = Field(default_factory=lambda: ["1m", "5m", "15m", "1h"])
    timeframe_weights: Dict[str, TimeframeWeight] = Field(
        default_factory=_default_timeframe_weights
    )
    pattern_weights: Dict[str, float] = Field(default_factory=_default_pattern_weights)
    confidence_threshold: float = 40.0
    # Confidence = trend_score * blend_trend + alignment * blend_alignment + pattern * blend_pattern
    blend_trend: float = 0.60
    blend_alignment: float = 0.25
    blend_pattern: float = 0.15
    conflict_penalty: float = 20.0
    timeframe_timeout_seconds: float = 8.0
    candle_limit: int = 100
    scan_interval_seconds: float = 60.0
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    pattern_lookback: int = 10

    @field_validator("confidence_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if v < 0 or v > 100:
            raise ValueError("confidence_threshold must be between 0 and 100")
        return v

    @field_validator("blend_trend", "blend_alignment", "blend_pattern")
    @classmethod
    def validate_blend(cls, v):
        if v < 0 or v > 1:
            raise ValueError("blend weights must be between 0 and 1")
        return v

    @field_validator("conflict_penalty")
    @classmethod
    def validate_penalty(cls, v):
        if v < 0 or v > 100:
            raise ValueError("conflict_penalty must be between 0 and 100")
        return v

    @field_validator("timeframe_timeout_seconds", "scan_interval_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("candle_limit")
    @classmethod
    def validate_candle_limit(cls, v):
        if v < 50 or v > 1000:
            raise ValueError("candle_limit must be between 50 and 1000")
        return v

    @model_validator(mode="after")
    def validate_weight_tables(self):
        if not self.timeframe_weights:
            raise ValueError("timeframe_weights must not be empty")
        trend_sum = sum(w.trend for w in self.timeframe_weights.values())
        entry_sum = sum(w.entry for w in self.timeframe_weights.values())
        if abs(trend_sum - 1.0) > _WEIGHT_TOLERANCE:
            raise ValueError(f"trend weights must sum to 1.0 (got {trend_sum:.6f})")
        if abs(entry_sum - 1.0) > _WEIGHT_TOLERANCE:
            raise ValueError(f"entry weights must sum to 1.0 (got {entry_sum:.6f})")
        missing = [tf for tf in self.timeframes if tf not in self.timeframe_weights]
        if missing:
            raise ValueError(f"timeframes without a weight entry: {', '.join(missing)}")
        if not self.timeframes:
            raise ValueError("at least one default timeframe is required")
        blend_sum = self.blend_trend + self.blend_alignment + self.blend_pattern
        if abs(blend_sum - 1.0) > _WEIGHT_TOLERANCE:
            raise ValueError(f"blend weights must sum to 1.0 (got {blend_sum:.6f})")
        if self.candle_limit < self.macd_slow + self.macd_signal:
            raise ValueError("candle_limit must cover the MACD warm-up window")
        return self


def _default_cache_ttl() -> Dict[str, int]:
    return {"1m": 30, "5m": 60, "15m": 120, "1h": 300, "4h": 600}


class MarketDataConfig(BaseModel):
    sources: List[str] = Field(default_factory=lambda: ["binance", "kucoin", "okx"])
    binance_url: str = "https://api.binance.com/api/v3/klines"
    kucoin_url: str = "https://api.kucoin.com/api/v1/market/candles"
    okx_url: str = "https://www.okx.com/api/v5/market/candles"
    request_timeout_seconds: float = 8.0
    cache_ttl_seconds: Dict[str, int] = Field(default_factory=_default_cache_ttl)

    @field_validator("sources")
    @classmethod
    def validate_sources(cls, v):
        unknown = [s for s in v if s not in ("binance", "kucoin", "okx")]
        if unknown:
            raise ValueError(f"unknown candle sources: {', '.join(unknown)}")
        if not v:
            raise ValueError("at least one candle source is required")
        return v


class RiskConfig(BaseModel):
    default_take_profit_pct: float = 0.03
    default_stop_loss_pct: float = 0.015

    @field_validator("default_take_profit_pct", "default_stop_loss_pct")
    @classmethod
    def validate_pct(cls, v):
        if v <= 0 or v >= 1:
            raise ValueError("take-profit / stop-loss percentages must be between 0 and 1")
        return v


def _default_tokens() -> Dict[str, str]:
    return {
        "WETH": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "WBTC": "0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f",
    }


class ChainConfig(BaseModel):
    rpc_url: str = "https://arb1.arbitrum.io/rpc"
    vault_address: str = ""
    gmx_vault_address: str = "0x489ee077994B6658eAfA855C308275EAd8097C4A"
    collateral_token: str = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
    tokens: Dict[str, str] = Field(default_factory=_default_tokens)
    request_timeout_seconds: float = 10.0


class ReconcilerConfig(BaseModel):
    enabled: bool = True
    poll_interval_seconds: float = 10.0
    ghost_timeout_seconds: int = 7200

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll(cls, v):
        if v <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        return v

    @field_validator("ghost_timeout_seconds")
    @classmethod
    def validate_ghost_timeout(cls, v):
        if v <= 0:
            raise ValueError("ghost_timeout_seconds must be positive")
        return v


def _default_tier_limits() -> Dict[str, int]:
    return {"free": 5, "starter": 25, "pro": 100, "elite": -1, "desktop": -1}


class QuotaConfig(BaseModel):
    # -1 means unlimited
    tier_daily_limits: Dict[str, int] = Field(default_factory=_default_tier_limits)
    free_lifetime_limit: int = 2
    max_update_retries: int = 5

    @field_validator("tier_daily_limits")
    @classmethod
    def validate_tier_limits(cls, v):
        from vaultpilot.billing.plans import PlanTier

        known = {t.value for t in PlanTier}
        for tier, limit in v.items():
            if tier not in known:
                raise ValueError(f"unknown plan tier '{tier}'")
            if limit < -1:
                raise ValueError(f"daily limit for '{tier}' must be >= -1")
        # Partial tables fall back to the default limit per tier
        return {**_default_tier_limits(), **v}

    @field_validator("free_lifetime_limit")
    @classmethod
    def validate_free_limit(cls, v):
        if v < 0:
            raise ValueError("free_lifetime_limit must be >= 0")
        return v

    @field_validator("max_update_retries")
    @classmethod
    def validate_retries(cls, v):
        if v < 1:
            raise ValueError("max_update_retries must be >= 1")
        return v


class ApiConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    # Empty disables the X-API-Key check on /api/v1 routes
    read_api_key: str = ""


class BotConfig(BaseModel):
    """Master configuration model with full validation."""
    app: AppConfig = Field(default_factory=AppConfig)
    signals: SignalsConfig = Field(default_factory=SignalsConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


# ---------------------------------------------------------------------------
# Configuration Manager (Singleton)
# ---------------------------------------------------------------------------

def _read_yaml(config_path: str) -> Dict[str, Any]:
    yaml_config: Dict[str, Any] = {}
    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file, "r") as f:
            yaml_config = yaml.safe_load(f) or {}
    return yaml_config


class ConfigManager:
    """
    Thread-safe configuration manager.

    Loads configuration from YAML file, then overlays environment
    variables. Validates all values through Pydantic models.
    """

    _instance: Optional[ConfigManager] = None
    _config: Optional[BotConfig] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load()

    def load(self, config_path: str = "config/config.yaml") -> BotConfig:
        """Load configuration from YAML + environment variables."""
        load_dotenv()
        yaml_config = _read_yaml(config_path)
        _apply_env_overrides(yaml_config)
        self._config = BotConfig(**yaml_config)
        return self._config

    @property
    def config(self) -> BotConfig:
        """Get the current validated configuration."""
        if self._config is None:
            self.load()
        return self._config

    def reload(self, config_path: str = "config/config.yaml") -> BotConfig:
        return self.load(config_path)

    def get(self, dotpath: str, default: Any = None) -> Any:
        """
        Access config values using dot notation.

        Example: config.get("reconciler.ghost_timeout_seconds") -> 7200
        """
        obj = self._config
        for key in dotpath.split("."):
            if hasattr(obj, key):
                obj = getattr(obj, key)
            elif isinstance(obj, dict) and key in obj:
                obj = obj[key]
            else:
                return default
        return obj

    def to_dict(self) -> Dict[str, Any]:
        """Export full config as dictionary."""
        return self._config.model_dump() if self._config else {}


def get_config() -> BotConfig:
    """Get the global configuration instance."""
    return ConfigManager().config


def load_config_with_overrides(
    config_path: str = "config/config.yaml",
    overrides: Optional[Dict[str, Any]] = None,
) -> BotConfig:
    """Load a fresh config (YAML + env) with optional deep overrides."""
    load_dotenv()
    yaml_config = _read_yaml(config_path)
    _apply_env_overrides(yaml_config)

    def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if isinstance(value, dict) and isinstance(dst.get(key), dict):
                _deep_update(dst[key], value)
            else:
                dst[key] = value

    if overrides:
        _deep_update(yaml_config, overrides)

    return BotConfig(**yaml_config)
