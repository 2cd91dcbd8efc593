"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Chat Signal Monitor, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_DATABASE_SCHEMES = ("sqlite+aiosqlite://", "postgresql+asyncpg://")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        default="sqlite+aiosqlite:///chat_signals.db",
        alias="DATABASE_URL",
        description="Async SQLAlchemy connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(SUPPORTED_DATABASE_SCHEMES):
            raise ValueError(
                "DATABASE_URL must use sqlite+aiosqlite:// or postgresql+asyncpg://"
            )
        return v


class DetectionSettings(BaseSettings):
    """Detection engine settings."""

    model_config = SettingsConfigDict(env_prefix="DETECTION_")

    recent_match_limit: int = Field(
        default=1000,
        alias="DETECTION_RECENT_MATCH_LIMIT",
        description="Matches kept in the in-memory recent-match buffer",
        ge=1,
    )
    context_chars: int = Field(
        default=50,
        alias="DETECTION_CONTEXT_CHARS",
        description="Characters of context kept on each side of a match",
        ge=0,
    )
    persist_timeout_seconds: float = Field(
        default=5.0,
        alias="DETECTION_PERSIST_TIMEOUT",
        description="Upper bound on recording a match in the store",
        gt=0,
    )


class AlertSettings(BaseSettings):
    """Alert feed settings."""

    model_config = SettingsConfigDict(env_prefix="ALERTS_")

    max_alerts: int = Field(
        default=500,
        alias="ALERTS_MAX_ALERTS",
        description="Maximum number of alerts kept in the feed",
        ge=1,
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from chat_signal_monitor.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.alerts.max_alerts)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Nested configuration groups
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "recent_match_limit": str(self.detection.recent_match_limit),
            "context_chars": str(self.detection.context_chars),
            "persist_timeout": f"{self.detection.persist_timeout_seconds:g}s",
            "max_alerts": str(self.alerts.max_alerts),
            "log_level": self.log_level,
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
    """Get the application settings.

    Settings are loaded once and reused; callers that need different
    settings construct them explicitly and pass them down.

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
