"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
market indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis cache for immutable chain reads."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (caching disabled when unset)",
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


class ChainSettings(BaseSettings):
    """Blockchain JSON-RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    chain_id: int = Field(
        default=10143,
        alias="CHAIN_ID",
        ge=1,
        description="Chain ID whose indexer_state row this process owns",
    )
    rpc_url: str = Field(
        default="https://testnet-rpc.monad.xyz",
        alias="CHAIN_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class LogSourceSettings(BaseSettings):
    """Log-indexing service (HyperSync-compatible) settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_SOURCE_", extra="ignore")

    url: str = Field(
        default="https://monad-testnet.hypersync.xyz",
        alias="LOG_SOURCE_URL",
        description="Base URL of the log-indexing service",
    )
    bearer_token: SecretStr | None = Field(
        default=None,
        alias="LOG_SOURCE_BEARER_TOKEN",
        description="Optional bearer token for the log-indexing service",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="LOG_SOURCE_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="HTTP timeout per log-source request",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("LOG_SOURCE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class IndexerSettings(BaseSettings):
    """Indexer cycle settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="INDEXER_API_KEY",
        description="Static bearer credential required by the trigger endpoint",
    )
    start_block: int = Field(
        default=0,
        alias="INDEXER_START_BLOCK",
        ge=0,
        description="First block to index when no indexer_state row exists yet",
    )
    lock_stale_seconds: int = Field(
        default=300,
        alias="INDEXER_LOCK_STALE_SECONDS",
        ge=30,
        le=3600,
        description="Age after which a held sync lock is considered abandoned",
    )
    backfill_batch_size: int = Field(
        default=5,
        alias="INDEXER_BACKFILL_BATCH_SIZE",
        ge=0,
        le=100,
        description="Max markets per cycle to backfill token addresses for",
    )
    snapshot_retention_hours: int = Field(
        default=24,
        alias="INDEXER_SNAPSHOT_RETENTION_HOURS",
        ge=1,
        le=168,
        description="Market snapshot retention window (hours)",
    )
    refresh_concurrency: int = Field(
        default=8,
        alias="INDEXER_REFRESH_CONCURRENCY",
        ge=1,
        le=100,
        description="Max concurrent market-state chain reads per cycle",
    )


class Settings(BaseSettings):
    """Root application settings.

    Example:
        ```python
        from market_indexer.config import get_settings

        settings = get_settings()
        print(settings.chain.chain_id)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Each nested BaseSettings must be given the same env_file, otherwise it
    # only reads from the process environment.
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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    log_source: LogSourceSettings = Field(
        default_factory=lambda: LogSourceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
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
    api_host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Bind address for the trigger endpoint",
    )
    api_port: int = Field(
        default=8080,
        alias="API_PORT",
        description="HTTP port for the trigger endpoint",
        ge=1,
        le=65535,
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
            "chain": {
                "chain_id": str(self.chain.chain_id),
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
            },
            "log_source": {
                "url": self.log_source.url,
                "bearer_token": "(set)" if self.log_source.bearer_token else "(not set)",
            },
            "indexer": {
                "api_key": "(set)" if self.indexer.api_key else "(not set)",
                "start_block": str(self.indexer.start_block),
                "lock_stale_seconds": str(self.indexer.lock_stale_seconds),
                "backfill_batch_size": str(self.indexer.backfill_batch_size),
                "snapshot_retention_hours": str(self.indexer.snapshot_retention_hours),
            },
            "log_level": self.log_level,
            "api_port": str(self.api_port),
        }

    def validate_requirements(self) -> None:
        """Refuse to serve the trigger endpoint without a credential."""
        if not self.indexer.api_key:
            raise ValueError("INDEXER_API_KEY is required to serve the trigger endpoint")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
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
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
