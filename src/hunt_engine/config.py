"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the hunt
matching engine, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size (ignored for SQLite)",
    )
    max_overflow: int = Field(
        default=10,
        alias="DATABASE_MAX_OVERFLOW",
        ge=0,
        le=100,
        description="Connections allowed above pool size (ignored for SQLite)",
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
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (scan lock)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class IdentitySettings(BaseSettings):
    """Identity gate weights and thresholds."""

    model_config = SettingsConfigDict(env_prefix="IDENTITY_", extra="ignore")

    weight_series: float = Field(
        default=3.0,
        alias="IDENTITY_WEIGHT_SERIES",
        ge=0.0,
        le=100.0,
        description="Weight of the series/model-root check",
    )
    weight_year: float = Field(
        default=1.5,
        alias="IDENTITY_WEIGHT_YEAR",
        ge=0.0,
        le=100.0,
        description="Weight of the model-year proximity check",
    )
    weight_engine: float = Field(
        default=2.0,
        alias="IDENTITY_WEIGHT_ENGINE",
        ge=0.0,
        le=100.0,
        description="Weight of the engine family/code check",
    )
    weight_body: float = Field(
        default=2.0,
        alias="IDENTITY_WEIGHT_BODY",
        ge=0.0,
        le=100.0,
        description="Weight of the body/cab check",
    )
    weight_badge: float = Field(
        default=1.5,
        alias="IDENTITY_WEIGHT_BADGE",
        ge=0.0,
        le=100.0,
        description="Weight of the badge/trim check",
    )
    weight_km: float = Field(
        default=1.0,
        alias="IDENTITY_WEIGHT_KM",
        ge=0.0,
        le=100.0,
        description="Weight of the odometer check against the hunt's km target",
    )
    weight_must_have: float = Field(
        default=1.5,
        alias="IDENTITY_WEIGHT_MUST_HAVE",
        ge=0.0,
        le=100.0,
        description="Weight of the must-have token check",
    )
    verified_threshold: float = Field(
        default=6.0,
        alias="IDENTITY_VERIFIED_THRESHOLD",
        ge=0.0,
        le=10.0,
        description="Minimum identity score (0-10) for a verified identity",
    )
    unresolved_score_cap: float = Field(
        default=4.0,
        alias="IDENTITY_UNRESOLVED_SCORE_CAP",
        ge=0.0,
        le=10.0,
        description="Score ceiling for free-text identities (must be below the verified threshold)",
    )
    unknown_field_credit: float = Field(
        default=0.5,
        alias="IDENTITY_UNKNOWN_FIELD_CREDIT",
        ge=0.0,
        le=1.0,
        description="Fraction of a check's weight granted when the listing does not expose the field",
    )
    max_year_drift: int = Field(
        default=3,
        alias="IDENTITY_MAX_YEAR_DRIFT",
        ge=0,
        le=50,
        description="Model years a resolved listing may differ from the hunt year before it is blocked",
    )

    def weights(self) -> dict[str, float]:
        return {
            "series": self.weight_series,
            "year": self.weight_year,
            "engine": self.weight_engine,
            "body": self.weight_body,
            "badge": self.weight_badge,
            "km": self.weight_km,
            "must_have": self.weight_must_have,
        }


class DecisionSettings(BaseSettings):
    """Decision classifier settings."""

    model_config = SettingsConfigDict(env_prefix="DECISION_", extra="ignore")

    require_verified_for_buy: bool = Field(
        default=False,
        alias="DECISION_REQUIRE_VERIFIED_FOR_BUY",
        description="If true, BUY requires a verified identity; unverified candidates fall through to WATCH",
    )


class ScanSettings(BaseSettings):
    """Scan runner settings."""

    model_config = SettingsConfigDict(env_prefix="SCAN_", extra="ignore")

    timeout_seconds: float = Field(
        default=300.0,
        alias="SCAN_TIMEOUT_SECONDS",
        gt=0.0,
        le=86_400.0,
        description="Hard limit for one scan cycle",
    )
    lock_enabled: bool = Field(
        default=True,
        alias="SCAN_LOCK_ENABLED",
        description="Serialize scans of the same hunt with a Redis lock",
    )
    lock_ttl_seconds: int = Field(
        default=900,
        alias="SCAN_LOCK_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="Expiry of the per-hunt scan lock",
    )
    match_write_batch_size: int = Field(
        default=200,
        alias="SCAN_MATCH_WRITE_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Matches written (and committed) per batch",
    )
    due_batch_limit: int = Field(
        default=20,
        alias="SCAN_DUE_BATCH_LIMIT",
        ge=1,
        le=1_000,
        description="Maximum hunts scanned by one scan-due run",
    )
    max_candidates_per_source: int = Field(
        default=500,
        alias="SCAN_MAX_CANDIDATES_PER_SOURCE",
        ge=1,
        le=100_000,
        description="Hard cap on candidates taken from one source (bounded work)",
    )
    listing_year_window: int = Field(
        default=1,
        alias="SCAN_LISTING_YEAR_WINDOW",
        ge=0,
        le=10,
        description="Stored listings within +/- this many years of the hunt year are candidates",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from hunt_engine.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.log_level)
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
    identity: IdentitySettings = Field(
        default_factory=lambda: IdentitySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    decision: DecisionSettings = Field(
        default_factory=lambda: DecisionSettings(
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

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    log_format: Literal["text", "json"] = Field(
        default="text",
        alias="LOG_FORMAT",
        description="Log line format",
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
            "identity": {name: str(weight) for name, weight in self.identity.weights().items()}
            | {
                "verified_threshold": str(self.identity.verified_threshold),
                "unresolved_score_cap": str(self.identity.unresolved_score_cap),
            },
            "decision": {
                "require_verified_for_buy": str(self.decision.require_verified_for_buy),
            },
            "scan": {
                "timeout_seconds": str(self.scan.timeout_seconds),
                "lock_enabled": str(self.scan.lock_enabled),
                "match_write_batch_size": str(self.scan.match_write_batch_size),
                "due_batch_limit": str(self.scan.due_batch_limit),
            },
            "log_level": self.log_level,
            "log_format": self.log_format,
        }

    def validate_requirements(
        self,
        *,
        command: Literal["init-db", "scan", "scan-due", "reset", "matches", "alerts", "ack"],
    ) -> None:
        """Validate command-specific requirements.

        Scanning refuses to start with identity settings the gate would reject.
        """
        if command in ("scan", "scan-due"):
            if sum(self.identity.weights().values()) <= 0:
                raise ValueError("IDENTITY_WEIGHT_* must sum to a positive number")
            if self.identity.unresolved_score_cap >= self.identity.verified_threshold:
                raise ValueError("IDENTITY_UNRESOLVED_SCORE_CAP must be below IDENTITY_VERIFIED_THRESHOLD")

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
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (tests reload settings with a patched environment)."""
    get_settings.cache_clear()
