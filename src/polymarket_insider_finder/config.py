"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Polymarket Insider Finder, loading and validating environment variables
at startup. Badge thresholds live here rather than in the rules so they can
be tuned without touching detection code.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_SUPPORTED_DB_PREFIXES = (
    "postgresql://",
    "postgresql+asyncpg://",
    "sqlite://",
    "sqlite+aiosqlite://",
)


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./insider_finder.db",
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(_SUPPORTED_DB_PREFIXES):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (scan checkpoints)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; checkpoints are disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class BadgeSettings(BaseSettings):
    """Badge rule thresholds."""

    model_config = SettingsConfigDict(env_prefix="BADGE_", extra="ignore")

    high_win_rate_min_resolved: int = Field(
        default=5,
        alias="BADGE_HIGH_WIN_RATE_MIN_RESOLVED",
        ge=1,
        le=10_000,
        description="Minimum resolved trades before HIGH_WIN_RATE is considered",
    )
    high_win_rate_margin: float = Field(
        default=0.15,
        alias="BADGE_HIGH_WIN_RATE_MARGIN",
        ge=0.0,
        le=1.0,
        description="Required win-rate margin over the category baseline",
    )
    default_baseline_win_rate: float = Field(
        default=0.50,
        alias="BADGE_DEFAULT_BASELINE_WIN_RATE",
        ge=0.0,
        le=1.0,
        description="Baseline win rate when a category has no resolved history",
    )
    big_bet_multiple: float = Field(
        default=5.0,
        alias="BADGE_BIG_BET_MULTIPLE",
        gt=1.0,
        le=10_000.0,
        description="Trade size multiple over the market median that earns BIG_BET",
    )
    long_shot_max_price: Decimal = Field(
        default=Decimal("0.10"),
        alias="BADGE_LONG_SHOT_MAX_PRICE",
        description="Maximum implied probability for LONG_SHOT",
    )
    pre_move_window_minutes: int = Field(
        default=60,
        alias="BADGE_PRE_MOVE_WINDOW_MINUTES",
        ge=1,
        le=7 * 24 * 60,
        description="Window after a trade inspected for a favorable price move",
    )
    pre_move_min_delta: Decimal = Field(
        default=Decimal("0.15"),
        alias="BADGE_PRE_MOVE_MIN_DELTA",
        description="Absolute favorable price move that earns PRE_MOVE",
    )
    late_winner_window_hours: float = Field(
        default=2.0,
        alias="BADGE_LATE_WINNER_WINDOW_HOURS",
        gt=0.0,
        le=24 * 30,
        description="Window before resolution in which a winning trade earns LATE_WINNER",
    )
    first_mover_rank: int = Field(
        default=10,
        alias="BADGE_FIRST_MOVER_RANK",
        ge=1,
        le=10_000,
        description="A trade must be among the first N trades on its market",
    )
    first_mover_volume_multiple: float = Field(
        default=50.0,
        alias="BADGE_FIRST_MOVER_VOLUME_MULTIPLE",
        gt=1.0,
        le=1_000_000.0,
        description="Required market volume growth between the trade and resolution",
    )

    @field_validator("long_shot_max_price", "pre_move_min_delta")
    @classmethod
    def validate_probability(cls, v: Decimal) -> Decimal:
        if v <= 0 or v > 1:
            raise ValueError("price thresholds must be in (0, 1]")
        return v


class TrackingSettings(BaseSettings):
    """Which wallets and trades are eligible for investigation."""

    model_config = SettingsConfigDict(env_prefix="TRACKING_", extra="ignore")

    max_total_trades: int = Field(
        default=50,
        alias="TRACKING_MAX_TOTAL_TRADES",
        ge=1,
        le=1_000_000,
        description="Wallets with more trades than this are retained but not tracked",
    )
    min_trade_usd: Decimal = Field(
        default=Decimal("0"),
        alias="TRACKING_MIN_TRADE_USD",
        description="Trades below this notional are skipped by the scan",
    )

    @field_validator("min_trade_usd")
    @classmethod
    def validate_min_trade_usd(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("TRACKING_MIN_TRADE_USD must be >= 0")
        return v


class ScanSettings(BaseSettings):
    """Batch scan execution settings."""

    model_config = SettingsConfigDict(env_prefix="SCAN_", extra="ignore")

    shard_count: int = Field(
        default=16,
        alias="SCAN_SHARD_COUNT",
        ge=1,
        le=4096,
        description="Number of wallet shards (single writer per shard)",
    )
    concurrency: int = Field(
        default=4,
        alias="SCAN_CONCURRENCY",
        ge=1,
        le=256,
        description="Shards processed concurrently",
    )
    checkpoint_key_prefix: str = Field(
        default="insider_finder:checkpoint:",
        alias="SCAN_CHECKPOINT_KEY_PREFIX",
        description="Redis key prefix for per-shard scan cursors",
    )
    store_max_retries: int = Field(
        default=3,
        alias="SCAN_STORE_MAX_RETRIES",
        ge=1,
        le=20,
        description="Attempts per wallet commit on transient storage errors",
    )
    store_retry_delay_seconds: float = Field(
        default=0.5,
        alias="SCAN_STORE_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff between wallet commit attempts",
    )
    progress: bool | None = Field(
        default=None,
        alias="SCAN_PROGRESS",
        description="Force progress output on/off (default: only when stderr is a TTY)",
    )


class QuerySettings(BaseSettings):
    """Wallet query defaults."""

    model_config = SettingsConfigDict(env_prefix="QUERY_", extra="ignore")

    default_timeframe_days: int = Field(
        default=30,
        alias="QUERY_DEFAULT_TIMEFRAME_DAYS",
        ge=1,
        le=3650,
    )
    default_limit: int = Field(
        default=25,
        alias="QUERY_DEFAULT_LIMIT",
        ge=1,
        le=500,
    )
    max_limit: int = Field(
        default=50,
        alias="QUERY_MAX_LIMIT",
        ge=1,
        le=500,
    )
    recent_trades: int = Field(
        default=5,
        alias="QUERY_RECENT_TRADES",
        ge=0,
        le=100,
        description="Recent trades returned per wallet summary",
    )

    @model_validator(mode="after")
    def validate_limits(self) -> QuerySettings:
        if self.default_limit > self.max_limit:
            raise ValueError("QUERY_DEFAULT_LIMIT must not exceed QUERY_MAX_LIMIT")
        return self


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from polymarket_insider_finder.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.badges.big_bet_multiple)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    badges: BadgeSettings = Field(
        default_factory=lambda: BadgeSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tracking: TrackingSettings = Field(
        default_factory=lambda: TrackingSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scan: ScanSettings = Field(
        default_factory=lambda: ScanSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    query: QuerySettings = Field(
        default_factory=lambda: QuerySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Evaluate badges without writing to the store",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "badges": {
                "high_win_rate_min_resolved": str(self.badges.high_win_rate_min_resolved),
                "high_win_rate_margin": str(self.badges.high_win_rate_margin),
                "default_baseline_win_rate": str(self.badges.default_baseline_win_rate),
                "big_bet_multiple": str(self.badges.big_bet_multiple),
                "long_shot_max_price": str(self.badges.long_shot_max_price),
                "pre_move_window_minutes": str(self.badges.pre_move_window_minutes),
                "pre_move_min_delta": str(self.badges.pre_move_min_delta),
                "late_winner_window_hours": str(self.badges.late_winner_window_hours),
                "first_mover_rank": str(self.badges.first_mover_rank),
                "first_mover_volume_multiple": str(self.badges.first_mover_volume_multiple),
            },
            "tracking": {
                "max_total_trades": str(self.tracking.max_total_trades),
                "min_trade_usd": str(self.tracking.min_trade_usd),
            },
            "scan": {
                "shard_count": str(self.scan.shard_count),
                "concurrency": str(self.scan.concurrency),
                "store_max_retries": str(self.scan.store_max_retries),
            },
            "query": {
                "default_limit": str(self.query.default_limit),
                "max_limit": str(self.query.max_limit),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["scan", "query", "wallet", "init-db"]) -> None:
        """Validate command-specific requirements.

        Raises:
            ValueError: If a capability the command needs is not configured.
        """
        if command == "scan" and self.scan.concurrency > self.scan.shard_count:
            raise ValueError("SCAN_CONCURRENCY must not exceed SCAN_SHARD_COUNT")
        if command == "init-db" and self.dry_run:
            raise ValueError("init-db cannot run with DRY_RUN enabled")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
