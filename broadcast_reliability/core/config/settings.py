#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
broadcast reliability service. Every tunable (lane ceilings, backoff caps,
sweep batch sizes, retention windows) is declared here so the worker,
recovery and housekeeping processes read one consistent view.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Nested views per concern (settings.redis, settings.broadcast, ...)
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseSettings):
    """
    Redis configuration shared by the lanes, the dead-letter store and
    the analytics counters.

    STAGE-0.1: Redis connection configuration
    """

    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum total connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class BroadcastSettings(BaseSettings):
    """
    Delivery policy for a single broadcast attempt.

    STAGE-1: Attempt policy
    """

    BROADCAST_MAX_ATTEMPTS: int = Field(default=5, description="Attempt ceiling before retry_exhausted")
    BROADCAST_PUSH_TIMEOUT_SECONDS: float = Field(default=5.0, description="Per-attempt transport timeout")
    BROADCAST_BACKOFF_MAX_SECONDS: float = Field(default=300.0, description="Upper bound for retry delay")
    BROADCAST_LANE_MAX_DEPTH: int = Field(default=100_000, description="Lane length that triggers backpressure")
    BROADCAST_BACKPRESSURE_THRESHOLD: float = Field(default=0.8, description="Lane utilization that logs a warning")
    BROADCAST_BACKPRESSURE_MAX_RETRIES: int = Field(default=3, description="Produce retries while a lane is full")
    BROADCAST_BACKPRESSURE_BASE_DELAY: float = Field(default=0.1, description="Initial backpressure retry delay")
    BROADCAST_BACKPRESSURE_MAX_DELAY: float = Field(default=1.0, description="Maximum backpressure retry delay")
    BROADCAST_CHANNEL_PREFIX: str = Field(default="broadcast", description="Pub/Sub channel prefix")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class WorkerSettings(BaseSettings):
    """
    Lane consumer configuration.

    STAGE-2: Worker loop tuning

    Architectural Decision: Redis Streams consumer groups
    - Unacknowledged messages stay in the pending list
    - Messages idle past WORKER_CLAIM_IDLE_MS are reclaimed
    - After WORKER_MAX_DELIVERIES the message is treated as a dead job
    """

    WORKER_CONSUMER_GROUP: str = Field(default="broadcast-workers", description="Consumer group name")
    WORKER_BATCH_SIZE: int = Field(default=10, description="Messages read per lane per poll")
    WORKER_IDLE_SLEEP_SECONDS: float = Field(default=0.5, description="Sleep when every lane was empty")
    WORKER_CLAIM_IDLE_MS: int = Field(default=60_000, description="Idle time before a pending message is reclaimed")
    WORKER_MAX_DELIVERIES: int = Field(default=3, description="Deliveries before a message counts as a dead job")
    WORKER_SCHEDULER_BATCH: int = Field(default=100, description="Delayed retries promoted per tick")
    WORKER_REAPER_INTERVAL_SECONDS: float = Field(default=30.0, description="Seconds between pending-list scans")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RecoverySettings(BaseSettings):
    """
    Dead-letter recovery configuration.

    STAGE-3: Recovery sweep tuning
    """

    RECOVERY_BATCH_LIMIT: int = Field(default=50, description="Records fetched per sweep")
    RECOVERY_PACING_EVERY: int = Field(default=10, description="Pause after this many records")
    RECOVERY_PACING_SECONDS: float = Field(default=0.1, description="Length of the pacing pause")
    DEAD_LETTER_MAX_RECOVERY_ATTEMPTS: int = Field(
        default=10, description="Failed recoveries before a record is permanently skipped"
    )
    DEAD_LETTER_CLAIM_TTL_SECONDS: int = Field(default=60, description="Lifetime of a per-record retry claim")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RateLimitSettings(BaseSettings):
    """
    Rate limiting configuration.

    STAGE-1.2: Enqueue rate limits

    Architectural Decision: Token buckets in Redis
    - One bucket per caller and priority, sized by RATE_LIMITS
    - One global bucket shared by every caller
    - Redis failures let the broadcast through
    """

    RATE_LIMIT_ENABLED: bool = Field(default=True, description="Check token buckets before enqueueing")
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=60, description="Window the per-priority request counts refer to")
    RATE_LIMIT_GLOBAL_REQUESTS: int = Field(default=1000, description="Global requests per window")
    RATE_LIMIT_GLOBAL_BURST: int = Field(default=100, description="Global burst allowance")
    RATE_LIMIT_BYPASS_CRITICAL: bool = Field(default=False, description="Let critical broadcasts skip every bucket")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class HousekeepingSettings(BaseSettings):
    """
    Retention windows for dead-letter records and analytics counters.

    STAGE-4: Housekeeping configuration
    """

    HOUSEKEEPING_RETENTION_DAYS: int = Field(default=7, description="Age before terminal records are deleted")
    ANALYTICS_HOURLY_HORIZON_HOURS: int = Field(default=24, description="Hourly counter horizon")
    ANALYTICS_DAILY_HORIZON_DAYS: int = Field(default=7, description="Daily rollup horizon")
    ANALYTICS_SCAN_FALLBACK_ENABLED: bool = Field(
        default=False, description="Also SCAN for counters missing from the indexes"
    )
    ANALYTICS_SCAN_FALLBACK_LIMIT: int = Field(default=1000, description="Max keys visited by the SCAN fallback")

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

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    DEBUG: bool = Field(default=False, description="Debug mode")
    APP_NAME: str = Field(default="Broadcast Reliability Service", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from broadcast_reliability.core.config.settings import get_settings

        settings = get_settings()
        ceiling = settings.broadcast.BROADCAST_MAX_ATTEMPTS
        group = settings.worker.WORKER_CONSUMER_GROUP
    """

    # Redis settings
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum total connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    # Attempt policy
    BROADCAST_MAX_ATTEMPTS: int = Field(default=5, ge=1, description="Attempt ceiling before retry_exhausted")
    BROADCAST_PUSH_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0, description="Per-attempt transport timeout")
    BROADCAST_BACKOFF_MAX_SECONDS: float = Field(default=300.0, gt=0, description="Upper bound for retry delay")
    BROADCAST_LANE_MAX_DEPTH: int = Field(default=100_000, ge=1, description="Lane length that triggers backpressure")
    BROADCAST_BACKPRESSURE_THRESHOLD: float = Field(default=0.8, gt=0, le=1, description="Lane utilization that logs a warning")
    BROADCAST_BACKPRESSURE_MAX_RETRIES: int = Field(default=3, ge=1, description="Produce retries while a lane is full")
    BROADCAST_BACKPRESSURE_BASE_DELAY: float = Field(default=0.1, ge=0, description="Initial backpressure retry delay")
    BROADCAST_BACKPRESSURE_MAX_DELAY: float = Field(default=1.0, ge=0, description="Maximum backpressure retry delay")
    BROADCAST_CHANNEL_PREFIX: str = Field(default="broadcast", description="Pub/Sub channel prefix")

    # Worker settings
    WORKER_CONSUMER_GROUP: str = Field(default="broadcast-workers", description="Consumer group name")
    WORKER_BATCH_SIZE: int = Field(default=10, ge=1, description="Messages read per lane per poll")
    WORKER_IDLE_SLEEP_SECONDS: float = Field(default=0.5, ge=0, description="Sleep when every lane was empty")
    WORKER_CLAIM_IDLE_MS: int = Field(default=60_000, ge=1, description="Idle time before a pending message is reclaimed")
    WORKER_MAX_DELIVERIES: int = Field(default=3, ge=1, description="Deliveries before a message counts as a dead job")
    WORKER_SCHEDULER_BATCH: int = Field(default=100, ge=1, description="Delayed retries promoted per tick")
    WORKER_REAPER_INTERVAL_SECONDS: float = Field(default=30.0, gt=0, description="Seconds between pending-list scans")

    # Recovery settings
    RECOVERY_BATCH_LIMIT: int = Field(default=50, ge=1, description="Records fetched per sweep")
    RECOVERY_PACING_EVERY: int = Field(default=10, ge=1, description="Pause after this many records")
    RECOVERY_PACING_SECONDS: float = Field(default=0.1, ge=0, description="Length of the pacing pause")
    DEAD_LETTER_MAX_RECOVERY_ATTEMPTS: int = Field(
        default=10, ge=1, description="Failed recoveries before a record is permanently skipped"
    )
    DEAD_LETTER_CLAIM_TTL_SECONDS: int = Field(default=60, ge=1, description="Lifetime of a per-record retry claim")

    # Rate limit settings
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="Check token buckets before enqueueing")
    RATE_LIMIT_WINDOW_SECONDS: int = Field(
        default=60, ge=1, description="Window the per-priority request counts refer to"
    )
    RATE_LIMIT_GLOBAL_REQUESTS: int = Field(default=1000, ge=1, description="Global requests per window")
    RATE_LIMIT_GLOBAL_BURST: int = Field(default=100, ge=0, description="Global burst allowance")
    RATE_LIMIT_BYPASS_CRITICAL: bool = Field(default=False, description="Let critical broadcasts skip every bucket")

    # Housekeeping settings
    HOUSEKEEPING_RETENTION_DAYS: int = Field(default=7, ge=1, description="Age before terminal records are deleted")
    ANALYTICS_HOURLY_HORIZON_HOURS: int = Field(default=24, ge=1, description="Hourly counter horizon")
    ANALYTICS_DAILY_HORIZON_DAYS: int = Field(default=7, ge=1, description="Daily rollup horizon")
    ANALYTICS_SCAN_FALLBACK_ENABLED: bool = Field(
        default=False, description="Also SCAN for counters missing from the indexes"
    )
    ANALYTICS_SCAN_FALLBACK_LIMIT: int = Field(default=1000, ge=0, description="Max keys visited by the SCAN fallback")

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    # Application settings
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    DEBUG: bool = Field(default=False, description="Debug mode")
    APP_NAME: str = Field(default="Broadcast Reliability Service", description="Application name")
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
    def redis(self) -> 'RedisSettings':
        """Get Redis settings."""
        return RedisSettings(
            REDIS_HOST=self.REDIS_HOST,
            REDIS_PORT=self.REDIS_PORT,
            REDIS_DB=self.REDIS_DB,
            REDIS_PASSWORD=self.REDIS_PASSWORD,
            REDIS_MAX_CONNECTIONS=self.REDIS_MAX_CONNECTIONS,
            REDIS_SOCKET_TIMEOUT=self.REDIS_SOCKET_TIMEOUT,
            REDIS_SOCKET_CONNECT_TIMEOUT=self.REDIS_SOCKET_CONNECT_TIMEOUT,
            REDIS_HEALTH_CHECK_INTERVAL=self.REDIS_HEALTH_CHECK_INTERVAL
        )

    @property
    def broadcast(self) -> 'BroadcastSettings':
        """Get attempt policy settings."""
        return BroadcastSettings(
            BROADCAST_MAX_ATTEMPTS=self.BROADCAST_MAX_ATTEMPTS,
            BROADCAST_PUSH_TIMEOUT_SECONDS=self.BROADCAST_PUSH_TIMEOUT_SECONDS,
            BROADCAST_BACKOFF_MAX_SECONDS=self.BROADCAST_BACKOFF_MAX_SECONDS,
            BROADCAST_LANE_MAX_DEPTH=self.BROADCAST_LANE_MAX_DEPTH,
            BROADCAST_BACKPRESSURE_THRESHOLD=self.BROADCAST_BACKPRESSURE_THRESHOLD,
            BROADCAST_BACKPRESSURE_MAX_RETRIES=self.BROADCAST_BACKPRESSURE_MAX_RETRIES,
            BROADCAST_BACKPRESSURE_BASE_DELAY=self.BROADCAST_BACKPRESSURE_BASE_DELAY,
            BROADCAST_BACKPRESSURE_MAX_DELAY=self.BROADCAST_BACKPRESSURE_MAX_DELAY,
            BROADCAST_CHANNEL_PREFIX=self.BROADCAST_CHANNEL_PREFIX
        )

    @property
    def worker(self) -> 'WorkerSettings':
        """Get lane consumer settings."""
        return WorkerSettings(
            WORKER_CONSUMER_GROUP=self.WORKER_CONSUMER_GROUP,
            WORKER_BATCH_SIZE=self.WORKER_BATCH_SIZE,
            WORKER_IDLE_SLEEP_SECONDS=self.WORKER_IDLE_SLEEP_SECONDS,
            WORKER_CLAIM_IDLE_MS=self.WORKER_CLAIM_IDLE_MS,
            WORKER_MAX_DELIVERIES=self.WORKER_MAX_DELIVERIES,
            WORKER_SCHEDULER_BATCH=self.WORKER_SCHEDULER_BATCH,
            WORKER_REAPER_INTERVAL_SECONDS=self.WORKER_REAPER_INTERVAL_SECONDS
        )

    @property
    def recovery(self) -> 'RecoverySettings':
        """Get recovery sweep settings."""
        return RecoverySettings(
            RECOVERY_BATCH_LIMIT=self.RECOVERY_BATCH_LIMIT,
            RECOVERY_PACING_EVERY=self.RECOVERY_PACING_EVERY,
            RECOVERY_PACING_SECONDS=self.RECOVERY_PACING_SECONDS,
            DEAD_LETTER_MAX_RECOVERY_ATTEMPTS=self.DEAD_LETTER_MAX_RECOVERY_ATTEMPTS,
            DEAD_LETTER_CLAIM_TTL_SECONDS=self.DEAD_LETTER_CLAIM_TTL_SECONDS
        )

    @property
    def rate_limit(self) -> 'RateLimitSettings':
        """Get rate limit settings."""
        return RateLimitSettings(
            RATE_LIMIT_ENABLED=self.RATE_LIMIT_ENABLED,
            RATE_LIMIT_WINDOW_SECONDS=self.RATE_LIMIT_WINDOW_SECONDS,
            RATE_LIMIT_GLOBAL_REQUESTS=self.RATE_LIMIT_GLOBAL_REQUESTS,
            RATE_LIMIT_GLOBAL_BURST=self.RATE_LIMIT_GLOBAL_BURST,
            RATE_LIMIT_BYPASS_CRITICAL=self.RATE_LIMIT_BYPASS_CRITICAL
        )

    @property
    def housekeeping(self) -> 'HousekeepingSettings':
        """Get housekeeping settings."""
        return HousekeepingSettings(
            HOUSEKEEPING_RETENTION_DAYS=self.HOUSEKEEPING_RETENTION_DAYS,
            ANALYTICS_HOURLY_HORIZON_HOURS=self.ANALYTICS_HOURLY_HORIZON_HOURS,
            ANALYTICS_DAILY_HORIZON_DAYS=self.ANALYTICS_DAILY_HORIZON_DAYS,
            ANALYTICS_SCAN_FALLBACK_ENABLED=self.ANALYTICS_SCAN_FALLBACK_ENABLED,
            ANALYTICS_SCAN_FALLBACK_LIMIT=self.ANALYTICS_SCAN_FALLBACK_LIMIT
        )

    @property
    def logging(self) -> 'LoggingSettings':
        """Get logging settings."""
        return LoggingSettings(
            LOG_LEVEL=self.LOG_LEVEL,
            LOG_FORMAT=self.LOG_FORMAT
        )

    @property
    def app(self) -> 'ApplicationSettings':
        """Get application settings."""
        return ApplicationSettings(
            ENVIRONMENT=self.ENVIRONMENT,
            DEBUG=self.DEBUG,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
            API_HOST=self.API_HOST,
            API_PORT=self.API_PORT
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
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
