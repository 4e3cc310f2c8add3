"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Hyperliquid whale tracker, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"
_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


class ConfigurationError(Exception):
    """Raised when settings are missing or invalid at startup."""


class HyperliquidSettings(BaseSettings):
    """Hyperliquid API endpoints and request limits."""

    model_config = SettingsConfigDict(env_prefix="HYPERLIQUID_", extra="ignore")

    info_url: str = Field(
        default="https://api.hyperliquid.xyz/info",
        alias="HYPERLIQUID_INFO_URL",
        description="Info endpoint used for position snapshots",
    )
    ws_url: str = Field(
        default="wss://api.hyperliquid.xyz/ws",
        alias="HYPERLIQUID_WS_URL",
        description="WebSocket URL for the userFills stream",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="HYPERLIQUID_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="Timeout applied to every info request",
    )
    requests_per_second: float = Field(
        default=10.0,
        alias="HYPERLIQUID_REQUESTS_PER_SECOND",
        gt=0.0,
        le=100.0,
        description="Ceiling on info requests per second",
    )
    max_retries: int = Field(
        default=2,
        alias="HYPERLIQUID_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries for 429/5xx and transport errors",
    )

    @field_validator("info_url")
    @classmethod
    def validate_info_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("HYPERLIQUID_INFO_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v


class LeaderboardSettings(BaseSettings):
    """Leaderboard source settings."""

    model_config = SettingsConfigDict(env_prefix="LEADERBOARD_", extra="ignore")

    url: str = Field(
        default="https://stats-data.hyperliquid.xyz/Mainnet/leaderboard",
        alias="LEADERBOARD_URL",
        description="Ranking endpoint returning the leaderboard",
    )
    top_n: int = Field(
        default=100,
        alias="LEADERBOARD_TOP_N",
        ge=1,
        le=10_000,
        description="How many top-ranked addresses to monitor",
    )
    refresh_interval_seconds: int = Field(
        default=3600,
        alias="LEADERBOARD_REFRESH_INTERVAL_SECONDS",
        ge=60,
        le=7 * 24 * 3600,
        description="How often to re-discover the target set",
    )
    timeout_seconds: float = Field(
        default=15.0,
        alias="LEADERBOARD_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Timeout for the leaderboard request",
    )
    extra_addresses: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="LEADERBOARD_EXTRA_ADDRESSES",
        description="Addresses always monitored regardless of rank (comma-separated)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("LEADERBOARD_URL must be an HTTP(S) endpoint")
        return v

    @field_validator("extra_addresses", mode="before")
    @classmethod
    def _parse_extra_addresses(cls, v: object) -> tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            parts = [p for p in v.split(",") if p.strip()]
        elif isinstance(v, (list, tuple, set, frozenset)):
            parts = [str(x) for x in v]
        else:
            raise TypeError("Invalid LEADERBOARD_EXTRA_ADDRESSES type")

        addresses: list[str] = []
        for part in parts:
            address = part.strip().lower()
            if not _ADDRESS_RE.match(address):
                raise ValueError(f"LEADERBOARD_EXTRA_ADDRESSES has an invalid address: {part!r}")
            if address not in addresses:
                addresses.append(address)
        return tuple(addresses)


class SubscriptionSettings(BaseSettings):
    """Fills stream subscription pacing and connection settings."""

    model_config = SettingsConfigDict(env_prefix="SUBSCRIPTION_", extra="ignore")

    batch_size: int = Field(
        default=10,
        alias="SUBSCRIPTION_BATCH_SIZE",
        ge=1,
        le=1000,
        description="Subscribe/unsubscribe frames per batch",
    )
    batch_delay_seconds: float = Field(
        default=0.1,
        alias="SUBSCRIPTION_BATCH_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Delay between consecutive subscription batches",
    )
    reconnect_delay_seconds: float = Field(
        default=5.0,
        alias="SUBSCRIPTION_RECONNECT_DELAY_SECONDS",
        ge=0.0,
        le=600.0,
        description="Fixed delay before reconnecting after a drop",
    )
    send_timeout_seconds: float = Field(
        default=5.0,
        alias="SUBSCRIPTION_SEND_TIMEOUT_SECONDS",
        gt=0.0,
        le=60.0,
        description="Timeout for sending one frame",
    )
    heartbeat_interval_seconds: float = Field(
        default=50.0,
        alias="SUBSCRIPTION_HEARTBEAT_INTERVAL_SECONDS",
        gt=0.0,
        le=600.0,
        description="Idle time before an application-level ping is sent",
    )


class QualificationSettings(BaseSettings):
    """Thresholds a position must meet to raise an alert."""

    model_config = SettingsConfigDict(env_prefix="QUALIFICATION_", extra="ignore")

    min_value_usd: Decimal = Field(
        default=Decimal("100000"),
        alias="QUALIFICATION_MIN_VALUE_USD",
        description="Minimum position value (USD), inclusive",
    )
    min_leverage: Decimal = Field(
        default=Decimal("30"),
        alias="QUALIFICATION_MIN_LEVERAGE",
        description="Minimum effective leverage, inclusive",
    )
    direction: Literal["long", "short", "both"] = Field(
        default="long",
        alias="QUALIFICATION_DIRECTION",
        description="Which position direction qualifies",
    )

    @field_validator("min_value_usd", "min_leverage")
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("qualification thresholds must be > 0")
        return v


class DedupSettings(BaseSettings):
    """Alert deduplication cache settings."""

    model_config = SettingsConfigDict(env_prefix="DEDUP_", extra="ignore")

    max_entries: int = Field(
        default=1000,
        alias="DEDUP_MAX_ENTRIES",
        ge=1,
        le=1_000_000,
        description="Cache size that triggers eviction",
    )
    retain_entries: int = Field(
        default=500,
        alias="DEDUP_RETAIN_ENTRIES",
        ge=0,
        le=1_000_000,
        description="Most recent signatures kept after eviction",
    )
    value_bucket_usd: Decimal = Field(
        default=Decimal("1000"),
        alias="DEDUP_VALUE_BUCKET_USD",
        description="Width of the position value bucket in alert signatures",
    )
    redis_url: str | None = Field(
        default=None,
        alias="DEDUP_REDIS_URL",
        description="Optional Redis URL for a restart-surviving dedup cache",
    )
    redis_key: str = Field(
        default="hyperliquid:alerts:dedup",
        alias="DEDUP_REDIS_KEY",
        description="Sorted-set key used by the Redis dedup cache",
    )

    @field_validator("value_bucket_usd")
    @classmethod
    def validate_value_bucket(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("DEDUP_VALUE_BUCKET_USD must be > 0")
        return v

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("DEDUP_REDIS_URL must start with redis:// or rediss://")
        return v

    @model_validator(mode="after")
    def validate_retention(self) -> DedupSettings:
        if self.retain_entries >= self.max_entries:
            raise ValueError("DEDUP_RETAIN_ENTRIES must be < DEDUP_MAX_ENTRIES")
        return self


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from hyperliquid_whale_tracker.config import get_settings

        settings = get_settings()
        print(settings.leaderboard.top_n)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    hyperliquid: HyperliquidSettings = Field(
        default_factory=lambda: HyperliquidSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    leaderboard: LeaderboardSettings = Field(
        default_factory=lambda: LeaderboardSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    subscription: SubscriptionSettings = Field(
        default_factory=lambda: SubscriptionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    qualification: QualificationSettings = Field(
        default_factory=lambda: QualificationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    dedup: DedupSettings = Field(
        default_factory=lambda: DedupSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Log alerts instead of handing them to the alert callback",
    )
    degraded_after_seconds: float = Field(
        default=300.0,
        alias="DEGRADED_AFTER_SECONDS",
        ge=0.0,
        le=24 * 3600,
        description="Report degraded when running this long with no active subscriptions",
    )
    status_log_interval_seconds: float = Field(
        default=900.0,
        alias="STATUS_LOG_INTERVAL_SECONDS",
        gt=0.0,
        le=24 * 3600,
        description="How often the running engine logs its status",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def validate_requirements(self) -> None:
        """Check cross-group constraints that a single field cannot express.

        Raises:
            ConfigurationError: If the combination of settings is unusable.
        """
        sub = self.subscription
        if sub.heartbeat_interval_seconds <= sub.send_timeout_seconds:
            raise ConfigurationError(
                "SUBSCRIPTION_HEARTBEAT_INTERVAL_SECONDS must exceed "
                "SUBSCRIPTION_SEND_TIMEOUT_SECONDS"
            )

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "hyperliquid": {
                "info_url": self.hyperliquid.info_url,
                "ws_url": self.hyperliquid.ws_url,
                "requests_per_second": str(self.hyperliquid.requests_per_second),
            },
            "leaderboard": {
                "url": self.leaderboard.url,
                "top_n": str(self.leaderboard.top_n),
                "refresh_interval_seconds": str(self.leaderboard.refresh_interval_seconds),
                "extra_addresses": str(len(self.leaderboard.extra_addresses)),
            },
            "subscription": {
                "batch_size": str(self.subscription.batch_size),
                "batch_delay_seconds": str(self.subscription.batch_delay_seconds),
                "reconnect_delay_seconds": str(self.subscription.reconnect_delay_seconds),
            },
            "qualification": {
                "min_value_usd": str(self.qualification.min_value_usd),
                "min_leverage": str(self.qualification.min_leverage),
                "direction": self.qualification.direction,
            },
            "dedup": {
                "max_entries": str(self.dedup.max_entries),
                "retain_entries": str(self.dedup.retain_entries),
                "redis_url": self._redact_url(self.dedup.redis_url)
                if self.dedup.redis_url
                else "(not set)",
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
            "status_log_interval_seconds": str(self.status_log_interval_seconds),
        }

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
        ConfigurationError: If environment variables have invalid values.
    """
    try:
        settings = Settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
    settings.validate_requirements()
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
