"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
payment gatekeeper service, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Log every SQL statement",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if v.startswith("postgresql://"):
            return "postgresql+asyncpg://" + v[len("postgresql://") :]
        if not v.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a postgresql+asyncpg:// or sqlite+aiosqlite:// URL"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings for the dead-letter stream."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    dead_letter_stream: str = Field(
        default="gatekeeper:dead-letter",
        alias="DEAD_LETTER_STREAM",
        description="Stream receiving terminally failed jobs",
    )
    dead_letter_max_len: int = Field(
        default=10_000,
        alias="DEAD_LETTER_MAX_LEN",
        description="Approximate cap on the dead-letter stream length",
        ge=1,
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class TelegramSettings(BaseSettings):
    """Telegram Bot API settings.

    Bot tokens are stored per bot in the database; only transport settings
    live here.
    """

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_")

    api_base: str = Field(
        default="https://api.telegram.org",
        alias="TELEGRAM_API_BASE",
        description="Bot API root URL",
    )
    timeout: float = Field(
        default=10.0,
        alias="TELEGRAM_TIMEOUT",
        description="HTTP request timeout in seconds",
        gt=0,
    )

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str) -> str:
        """Validate API base URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("TELEGRAM_API_BASE must be an HTTP(S) URL")
        return v.rstrip("/")


class DispatcherSettings(BaseSettings):
    """Job dispatcher settings."""

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")

    workers: int = Field(
        default=4,
        alias="DISPATCH_WORKERS",
        description="Number of concurrent dispatch workers",
        ge=1,
        le=256,
    )
    max_attempts: int = Field(
        default=3,
        alias="DISPATCH_MAX_ATTEMPTS",
        description="Attempts per job before dead-lettering",
        ge=1,
    )
    backoff_seconds: float = Field(
        default=1.0,
        alias="DISPATCH_BACKOFF_SECONDS",
        description="Delay before the second attempt (doubles afterwards)",
        ge=0,
    )
    downsell_timeout: float = Field(
        default=60.0,
        alias="DISPATCH_DOWNSELL_TIMEOUT",
        description="Per-attempt timeout of downsell jobs in seconds",
        gt=0,
    )


class SchedulerSettings(BaseSettings):
    """Alert scheduler settings."""

    model_config = SettingsConfigDict(env_prefix="")

    alert_tick_seconds: float = Field(
        default=60.0,
        alias="ALERT_TICK_SECONDS",
        description="Interval between alert broadcaster ticks",
        gt=0,
    )
    timezone: str = Field(
        default="America/Sao_Paulo",
        alias="SCHEDULER_TIMEZONE",
        description="IANA zone in which alert schedules are expressed",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the zone name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        """Return the configured zone."""
        return ZoneInfo(self.timezone)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files.

    Example:
        ```python
        from payment_gatekeeper.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.dispatcher.workers)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Nested configuration groups
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Log channel operations instead of calling Telegram",
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
            "redis_url": self._redact_url(self.redis.url),
            "dead_letter_stream": self.redis.dead_letter_stream,
            "telegram": {
                "api_base": self.telegram.api_base,
                "timeout": str(self.telegram.timeout),
            },
            "dispatcher": {
                "workers": str(self.dispatcher.workers),
                "max_attempts": str(self.dispatcher.max_attempts),
                "backoff_seconds": str(self.dispatcher.backoff_seconds),
                "downsell_timeout": str(self.dispatcher.downsell_timeout),
            },
            "scheduler": {
                "alert_tick_seconds": str(self.scheduler.alert_tick_seconds),
                "timezone": self.scheduler.timezone,
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.rindex("@")
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
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call reloads the environment."""
    get_settings.cache_clear()
