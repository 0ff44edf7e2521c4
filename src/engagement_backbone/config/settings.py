#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
engagement backbone: broker, relational store, external catalog, queues,
cache and logging. All configuration is centralized here so that every
component reads the same values.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Production never falls back to development broker URLs

Author: Platform Engineering
Date: 2026-03-02
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from engagement_backbone.core.exceptions.base import ConfigurationError


class BrokerSettings(BaseSettings):
    """
    Broker (Redis-compatible) connection configuration.

    STAGE-0.1: Broker connection configuration

    Retry policy:
    - Delay between reconnect attempts: min(attempt * 100ms, 2s)
    - One-shot commands: at most 3 attempts
    - Consumer duplicates: unbounded retries
    """

    BROKER_URL: str | None = Field(default=None, description="Production broker URL")
    BROKER_URL_DEV: str | None = Field(default=None, description="Non-production broker URL")
    BROKER_MAX_CONNECTIONS: int = Field(default=50, description="Maximum pooled connections")
    BROKER_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    BROKER_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connect timeout in seconds")
    BROKER_HEALTH_CHECK_INTERVAL: float = Field(default=2.0, description="Ping interval of the state monitor")
    BROKER_MAX_RETRIES_PER_REQUEST: int = Field(default=3, description="Attempts for one-shot commands")
    BROKER_RETRY_STEP_MS: int = Field(default=100, description="Reconnect delay step per attempt")
    BROKER_RETRY_MAX_DELAY_MS: int = Field(default=2000, description="Reconnect delay ceiling")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class DatabaseSettings(BaseSettings):
    """
    Relational store configuration.

    STAGE-0.2: Database pools

    Two logical pools: the primary pool serves request handlers, the worker
    pool serves background pipelines only.
    """

    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./engagement.db", description="Primary async database URL"
    )
    DATABASE_WORKER_URL: str | None = Field(default=None, description="Worker pool URL (defaults to DATABASE_URL)")
    DB_POOL_SIZE: int = Field(default=5, description="Primary pool size")
    DB_POOL_MAX_OVERFLOW: int = Field(default=0, description="Primary pool overflow")
    DB_POOL_TIMEOUT: int = Field(default=5, description="Seconds to wait for a pooled connection")
    DB_POOL_RECYCLE: int = Field(default=30, description="Seconds before an idle connection is recycled")
    DB_WORKER_POOL_SIZE: int = Field(default=10, description="Worker pool size")
    DB_WORKER_POOL_MAX_OVERFLOW: int = Field(default=5, description="Worker pool overflow")
    DB_READY_MAX_RETRIES: int = Field(default=10, description="Readiness check attempts")
    DB_READY_RETRY_DELAY: float = Field(default=1.0, description="Seconds between readiness checks")
    DB_READY_TIMEOUT: float = Field(default=30.0, description="Overall readiness budget in seconds")
    DB_TRANSIENT_MAX_RETRIES: int = Field(default=3, ge=0, description="Local retries on a transient error")
    DB_TRANSIENT_RETRY_MS: int = Field(default=200, ge=1, description="First backoff delay of a local retry")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CatalogSettings(BaseSettings):
    """
    External customer catalog configuration.

    STAGE-0.3: External catalog
    """

    EXTERNAL_CATALOG_URL: str = Field(
        default="https://catalog.invalid/admin/api/2024-01", description="Catalog REST base URL"
    )
    EXTERNAL_CATALOG_TOKEN: str | None = Field(default=None, description="Bearer access token")
    CATALOG_PAGE_SIZE: int = Field(default=250, description="Customers per page")
    CATALOG_PAGE_DELAY_MS: int = Field(default=200, description="Delay between pages")
    CATALOG_TIMEOUT: float = Field(default=30.0, description="Request timeout in seconds")
    CATALOG_COUNT_CACHE_TTL: int = Field(default=60, description="Customer count cache TTL")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class QueueSettings(BaseSettings):
    """
    Job queue and worker configuration.

    STAGE-Q: Queue defaults
    """

    QUEUE_PREFIX: str = Field(default="bull", description="Key prefix of queue structures")
    QUEUE_BULK_CHUNK_SIZE: int = Field(default=50, description="Jobs per bulk enqueue round-trip")
    QUEUE_BULK_CHUNK_DELAY_MS: int = Field(default=100, description="Delay between bulk chunks")
    QUEUE_PROGRESS_BATCH_SIZE: int = Field(default=500, description="Outer batch of progress-aware enqueue")
    QUEUE_FALLBACK_BASE_MS: int = Field(default=500, description="Per-job fallback backoff base")
    QUEUE_FALLBACK_MAX_MS: int = Field(default=8000, description="Per-job fallback backoff ceiling")
    QUEUE_FALLBACK_MAX_ATTEMPTS: int = Field(default=5, description="Per-job fallback attempts")
    QUEUE_STATS_TIMEOUT: float = Field(default=3.0, description="Timeout of stat queries in seconds")
    QUEUE_AGGREGATE_STATS_TIMEOUT: float = Field(default=2.0, description="Timeout of aggregate stats")
    QUEUE_OBLITERATE_TIMEOUT: float = Field(default=300.0, description="Obliterate time budget in seconds")
    WORKER_READY_TIMEOUT: float = Field(default=10.0, description="Worker wait for a ready broker")
    RUN_WORKERS_IN_PROCESS: bool = Field(default=False, description="Start workers inside the API process")
    PROGRESS_BROADCAST_THROTTLE_SECONDS: float = Field(
        default=10.0, description="Minimum interval between catalog-gap broadcasts"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CacheSettings(BaseSettings):
    """
    Distributed cache configuration.

    STAGE-2: Cache configuration
    """

    CACHE_SINGLE_INSTANCE: bool = Field(default=False, description="Use only the in-memory store")
    CACHE_CLEAR_SCAN_COUNT: int = Field(default=500, description="SCAN hint when clearing a namespace")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RateLimitSettings(BaseSettings):
    """
    Rate limiting configuration.

    STAGE-3: Rate limiting tiers

    Architectural Decision: slowapi moving window for HTTP tiers,
    broker sorted-set window for worker throughput.
    """

    RATE_LIMIT_AUTH: str = Field(default="10/15minutes", description="Authentication tier")
    RATE_LIMIT_API: str = Field(default="120/minute", description="General API tier")
    RATE_LIMIT_RANKING: str = Field(default="30/minute", description="Ranking tier")
    RATE_LIMIT_ADMIN: str = Field(default="20/minute", description="Admin tier")
    RATE_LIMIT_KEY_PREFIX: str = Field(default="rl", description="Broker key prefix")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ApplicationSettings(BaseSettings):
    """
    General application settings.

    STAGE-0: Application initialization
    """

    DEPLOYMENT_MODE: Literal["production", "development"] = Field(
        default="development", description="Deployment mode"
    )
    APP_NAME: str = Field(default="Engagement Backbone", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from engagement_backbone.config.settings import get_settings

        settings = get_settings()
        url = settings.broker_url()
        pool_size = settings.database.DB_POOL_SIZE
    """

    # Broker
    BROKER_URL: str | None = Field(default=None, description="Production broker URL")
    BROKER_URL_DEV: str | None = Field(default=None, description="Non-production broker URL")
    BROKER_MAX_CONNECTIONS: int = Field(default=50, description="Maximum pooled connections")
    BROKER_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    BROKER_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connect timeout in seconds")
    BROKER_HEALTH_CHECK_INTERVAL: float = Field(default=2.0, description="Ping interval of the state monitor")
    BROKER_MAX_RETRIES_PER_REQUEST: int = Field(default=3, description="Attempts for one-shot commands")
    BROKER_RETRY_STEP_MS: int = Field(default=100, description="Reconnect delay step per attempt")
    BROKER_RETRY_MAX_DELAY_MS: int = Field(default=2000, description="Reconnect delay ceiling")

    # Database
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./engagement.db", description="Primary async database URL"
    )
    DATABASE_WORKER_URL: str | None = Field(default=None, description="Worker pool URL")
    DB_POOL_SIZE: int = Field(default=5, description="Primary pool size")
    DB_POOL_MAX_OVERFLOW: int = Field(default=0, description="Primary pool overflow")
    DB_POOL_TIMEOUT: int = Field(default=5, description="Seconds to wait for a pooled connection")
    DB_POOL_RECYCLE: int = Field(default=30, description="Seconds before an idle connection is recycled")
    DB_WORKER_POOL_SIZE: int = Field(default=10, description="Worker pool size")
    DB_WORKER_POOL_MAX_OVERFLOW: int = Field(default=5, description="Worker pool overflow")
    DB_READY_MAX_RETRIES: int = Field(default=10, description="Readiness check attempts")
    DB_READY_RETRY_DELAY: float = Field(default=1.0, description="Seconds between readiness checks")
    DB_READY_TIMEOUT: float = Field(default=30.0, description="Overall readiness budget in seconds")
    DB_TRANSIENT_MAX_RETRIES: int = Field(default=3, ge=0, description="Local retries on a transient error")
    DB_TRANSIENT_RETRY_MS: int = Field(default=200, ge=1, description="First backoff delay of a local retry")

    # External catalog
    EXTERNAL_CATALOG_URL: str = Field(
        default="https://catalog.invalid/admin/api/2024-01", description="Catalog REST base URL"
    )
    EXTERNAL_CATALOG_TOKEN: str | None = Field(default=None, description="Bearer access token")
    CATALOG_PAGE_SIZE: int = Field(default=250, description="Customers per page")
    CATALOG_PAGE_DELAY_MS: int = Field(default=200, description="Delay between pages")
    CATALOG_TIMEOUT: float = Field(default=30.0, description="Request timeout in seconds")
    CATALOG_COUNT_CACHE_TTL: int = Field(default=60, description="Customer count cache TTL")

    # Queues and workers
    QUEUE_PREFIX: str = Field(default="bull", description="Key prefix of queue structures")
    QUEUE_BULK_CHUNK_SIZE: int = Field(default=50, description="Jobs per bulk enqueue round-trip")
    QUEUE_BULK_CHUNK_DELAY_MS: int = Field(default=100, description="Delay between bulk chunks")
    QUEUE_PROGRESS_BATCH_SIZE: int = Field(default=500, description="Outer batch of progress-aware enqueue")
    QUEUE_FALLBACK_BASE_MS: int = Field(default=500, description="Per-job fallback backoff base")
    QUEUE_FALLBACK_MAX_MS: int = Field(default=8000, description="Per-job fallback backoff ceiling")
    QUEUE_FALLBACK_MAX_ATTEMPTS: int = Field(default=5, description="Per-job fallback attempts")
    QUEUE_STATS_TIMEOUT: float = Field(default=3.0, description="Timeout of stat queries in seconds")
    QUEUE_AGGREGATE_STATS_TIMEOUT: float = Field(default=2.0, description="Timeout of aggregate stats")
    QUEUE_OBLITERATE_TIMEOUT: float = Field(default=300.0, description="Obliterate time budget in seconds")
    WORKER_READY_TIMEOUT: float = Field(default=10.0, description="Worker wait for a ready broker")
    RUN_WORKERS_IN_PROCESS: bool = Field(default=False, description="Start workers inside the API process")
    PROGRESS_BROADCAST_THROTTLE_SECONDS: float = Field(
        default=10.0, description="Minimum interval between catalog-gap broadcasts"
    )

    # Cache
    CACHE_SINGLE_INSTANCE: bool = Field(default=False, description="Use only the in-memory store")
    CACHE_CLEAR_SCAN_COUNT: int = Field(default=500, description="SCAN hint when clearing a namespace")

    # Rate limiting
    RATE_LIMIT_AUTH: str = Field(default="10/15minutes", description="Authentication tier")
    RATE_LIMIT_API: str = Field(default="120/minute", description="General API tier")
    RATE_LIMIT_RANKING: str = Field(default="30/minute", description="Ranking tier")
    RATE_LIMIT_ADMIN: str = Field(default="20/minute", description="Admin tier")
    RATE_LIMIT_KEY_PREFIX: str = Field(default="rl", description="Broker key prefix")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    # Application
    DEPLOYMENT_MODE: Literal["production", "development"] = Field(
        default="development", description="Deployment mode"
    )
    APP_NAME: str = Field(default="Engagement Backbone", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @property
    def is_production(self) -> bool:
        return self.DEPLOYMENT_MODE == "production"

    def broker_url(self) -> str | None:
        """
        Resolve the broker URL for the current deployment mode.

        STAGE-0.4: Broker URL resolution

        Production reads BROKER_URL only and fails loudly when it is missing.
        Development reads BROKER_URL_DEV; None means "run without a broker".

        Raises:
            ConfigurationError: Production without BROKER_URL
        """
        if self.is_production:
            if not self.BROKER_URL:
                raise ConfigurationError(
                    "BROKER_URL is required in production",
                    details={"deployment_mode": self.DEPLOYMENT_MODE},
                ).with_suggestion("Set BROKER_URL; BROKER_URL_DEV is never used in production")
            return self.BROKER_URL
        return self.BROKER_URL_DEV

    # Nested configuration objects
    @property
    def broker(self) -> "BrokerSettings":
        """Get broker settings."""
        return BrokerSettings(
            BROKER_URL=self.BROKER_URL,
            BROKER_URL_DEV=self.BROKER_URL_DEV,
            BROKER_MAX_CONNECTIONS=self.BROKER_MAX_CONNECTIONS,
            BROKER_SOCKET_TIMEOUT=self.BROKER_SOCKET_TIMEOUT,
            BROKER_SOCKET_CONNECT_TIMEOUT=self.BROKER_SOCKET_CONNECT_TIMEOUT,
            BROKER_HEALTH_CHECK_INTERVAL=self.BROKER_HEALTH_CHECK_INTERVAL,
            BROKER_MAX_RETRIES_PER_REQUEST=self.BROKER_MAX_RETRIES_PER_REQUEST,
            BROKER_RETRY_STEP_MS=self.BROKER_RETRY_STEP_MS,
            BROKER_RETRY_MAX_DELAY_MS=self.BROKER_RETRY_MAX_DELAY_MS,
        )

    @property
    def database(self) -> "DatabaseSettings":
        """Get database settings."""
        return DatabaseSettings(
            DATABASE_URL=self.DATABASE_URL,
            DATABASE_WORKER_URL=self.DATABASE_WORKER_URL,
            DB_POOL_SIZE=self.DB_POOL_SIZE,
            DB_POOL_MAX_OVERFLOW=self.DB_POOL_MAX_OVERFLOW,
            DB_POOL_TIMEOUT=self.DB_POOL_TIMEOUT,
            DB_POOL_RECYCLE=self.DB_POOL_RECYCLE,
            DB_WORKER_POOL_SIZE=self.DB_WORKER_POOL_SIZE,
            DB_WORKER_POOL_MAX_OVERFLOW=self.DB_WORKER_POOL_MAX_OVERFLOW,
            DB_READY_MAX_RETRIES=self.DB_READY_MAX_RETRIES,
            DB_READY_RETRY_DELAY=self.DB_READY_RETRY_DELAY,
            DB_READY_TIMEOUT=self.DB_READY_TIMEOUT,
            DB_TRANSIENT_MAX_RETRIES=self.DB_TRANSIENT_MAX_RETRIES,
            DB_TRANSIENT_RETRY_MS=self.DB_TRANSIENT_RETRY_MS,
        )

    @property
    def catalog(self) -> "CatalogSettings":
        """Get external catalog settings."""
        return CatalogSettings(
            EXTERNAL_CATALOG_URL=self.EXTERNAL_CATALOG_URL,
            EXTERNAL_CATALOG_TOKEN=self.EXTERNAL_CATALOG_TOKEN,
            CATALOG_PAGE_SIZE=self.CATALOG_PAGE_SIZE,
            CATALOG_PAGE_DELAY_MS=self.CATALOG_PAGE_DELAY_MS,
            CATALOG_TIMEOUT=self.CATALOG_TIMEOUT,
            CATALOG_COUNT_CACHE_TTL=self.CATALOG_COUNT_CACHE_TTL,
        )

    @property
    def queue(self) -> "QueueSettings":
        """Get queue settings."""
        return QueueSettings(
            QUEUE_PREFIX=self.QUEUE_PREFIX,
            QUEUE_BULK_CHUNK_SIZE=self.QUEUE_BULK_CHUNK_SIZE,
            QUEUE_BULK_CHUNK_DELAY_MS=self.QUEUE_BULK_CHUNK_DELAY_MS,
            QUEUE_PROGRESS_BATCH_SIZE=self.QUEUE_PROGRESS_BATCH_SIZE,
            QUEUE_FALLBACK_BASE_MS=self.QUEUE_FALLBACK_BASE_MS,
            QUEUE_FALLBACK_MAX_MS=self.QUEUE_FALLBACK_MAX_MS,
            QUEUE_FALLBACK_MAX_ATTEMPTS=self.QUEUE_FALLBACK_MAX_ATTEMPTS,
            QUEUE_STATS_TIMEOUT=self.QUEUE_STATS_TIMEOUT,
            QUEUE_AGGREGATE_STATS_TIMEOUT=self.QUEUE_AGGREGATE_STATS_TIMEOUT,
            QUEUE_OBLITERATE_TIMEOUT=self.QUEUE_OBLITERATE_TIMEOUT,
            WORKER_READY_TIMEOUT=self.WORKER_READY_TIMEOUT,
            RUN_WORKERS_IN_PROCESS=self.RUN_WORKERS_IN_PROCESS,
            PROGRESS_BROADCAST_THROTTLE_SECONDS=self.PROGRESS_BROADCAST_THROTTLE_SECONDS,
        )

    @property
    def cache(self) -> "CacheSettings":
        """Get cache settings."""
        return CacheSettings(
            CACHE_SINGLE_INSTANCE=self.CACHE_SINGLE_INSTANCE,
            CACHE_CLEAR_SCAN_COUNT=self.CACHE_CLEAR_SCAN_COUNT,
        )

    @property
    def rate_limit(self) -> "RateLimitSettings":
        """Get rate limit settings."""
        return RateLimitSettings(
            RATE_LIMIT_AUTH=self.RATE_LIMIT_AUTH,
            RATE_LIMIT_API=self.RATE_LIMIT_API,
            RATE_LIMIT_RANKING=self.RATE_LIMIT_RANKING,
            RATE_LIMIT_ADMIN=self.RATE_LIMIT_ADMIN,
            RATE_LIMIT_KEY_PREFIX=self.RATE_LIMIT_KEY_PREFIX,
        )

    @property
    def logging(self) -> "LoggingSettings":
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    @property
    def app(self) -> "ApplicationSettings":
        """Get application settings."""
        return ApplicationSettings(
            DEPLOYMENT_MODE=self.DEPLOYMENT_MODE,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
            API_HOST=self.API_HOST,
            API_PORT=self.API_PORT,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    STAGE-0.3: Settings initialization

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
