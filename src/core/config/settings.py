#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
streaming chat proxy. Every tunable of the resilience core (admission limits,
retry backoff, breaker thresholds, relay timers, follow-up side channel) is
declared here so that a deployment can be reshaped through environment
variables alone.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Flat env-var fields on Settings, grouped views exposed as properties
- Easy testing with reload_settings()

Author: System Architect
Date: 2025-12-05
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AdmissionSettings(BaseSettings):
    """
    Admission control configuration.

    STAGE-A: Concurrency and rate ceilings for upstream-bound work

    Architectural Decision: fixed wall-clock windows
    - Per-second and per-minute counters reset on window boundaries
    - Brief bursts at window edges are accepted behaviour
    """

    ADMISSION_MAX_CONCURRENT: int = Field(default=5, ge=1, description="Max in-flight operations")
    ADMISSION_MAX_PER_SECOND: int = Field(default=10, ge=1, description="Max admissions per second")
    ADMISSION_MAX_PER_MINUTE: int = Field(default=100, ge=1, description="Max admissions per minute")
    ADMISSION_QUEUE_MAX_SIZE: int = Field(default=100, ge=0, description="Queue bound")
    ADMISSION_DEFAULT_TIMEOUT: float = Field(default=30.0, gt=0, description="Default queue wait (s)")
    ADMISSION_CHAT_TIMEOUT: float = Field(default=5.0, gt=0, description="Queue wait for chat requests (s)")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RetrySettings(BaseSettings):
    """
    Retry policy configuration.

    STAGE-R: Exponential backoff with jitter
    """

    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Total attempts per operation")
    RETRY_BASE_DELAY: float = Field(default=1.0, ge=0, description="Base backoff delay (s)")
    RETRY_MAX_DELAY: float = Field(default=10.0, ge=0, description="Backoff delay cap (s)")
    RETRY_BACKOFF_FACTOR: float = Field(default=2.0, ge=1, description="Backoff multiplier")
    RETRY_JITTER_RATIO: float = Field(default=0.25, description="Jitter as a fraction of the delay")

    @field_validator("RETRY_JITTER_RATIO")
    @classmethod
    def validate_jitter(cls, v):
        """Jitter must stay within [0, 1)."""
        if not 0 <= v < 1:
            raise ValueError("RETRY_JITTER_RATIO must be in [0, 1)")
        return v

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CircuitBreakerSettings(BaseSettings):
    """
    Circuit breaker configuration for fault tolerance.

    STAGE-CB: Circuit breaker thresholds

    Architectural Decision: in-process breaker per upstream operation class
    """

    CB_FAILURE_THRESHOLD: int = Field(default=5, ge=1, description="Failures before opening circuit")
    CB_RECOVERY_TIMEOUT: float = Field(default=60.0, gt=0, description="Seconds before attempting recovery")
    CB_SUCCESS_THRESHOLD: int = Field(default=3, ge=1, description="Half-open successes to close circuit")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class StreamSettings(BaseSettings):
    """
    Stream relay timers and buffering.

    STAGE-5: SSE relay configuration

    Optimization: small buffer + short flush interval keeps token latency low
    while coalescing bursts of tiny frames into one write.
    """

    STREAM_BUFFER_SIZE: int = Field(default=1024, ge=1, description="Flush threshold in bytes")
    STREAM_FLUSH_INTERVAL: float = Field(default=0.05, gt=0, description="Flush interval (s)")
    STREAM_HEARTBEAT_INTERVAL: float = Field(default=5.0, gt=0, description="Heartbeat period (s)")
    STREAM_PROCESSING_INTERVAL: float = Field(default=3.0, gt=0, description="Processing notice period (s)")
    STREAM_CLOSE_GRACE: float = Field(default=0.1, ge=0, description="Delay before closing a finished stream (s)")
    STREAM_DISCONNECT_GRACE: float = Field(default=1.0, ge=0, description="Delay before closing after client disconnect (s)")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class UpstreamSettings(BaseSettings):
    """
    Upstream conversational-AI provider (Coze) configuration.

    STAGE-0.2: Upstream provider configuration
    """

    UPSTREAM_PROVIDER: Literal["coze", "fake"] = Field(default="coze", description="Upstream client implementation")
    COZE_BASE_URL: str = Field(default="https://api.coze.cn", description="Coze API base URL")
    COZE_BOT_ID: str | None = Field(default=None, description="Bot to chat with")
    COZE_CONNECTOR_ID: str = Field(default="1024", description="API channel connector id")
    COZE_ACCESS_TOKEN: str | None = Field(default=None, description="Fallback access token")
    COZE_TIMEOUT: float = Field(default=30.0, gt=0, description="Request timeout (s)")
    COZE_CONNECT_TIMEOUT: float = Field(default=10.0, gt=0, description="Connect timeout (s)")
    COZE_MAX_CONNECTIONS: int = Field(default=100, ge=1, description="HTTP connection pool size")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ConversationSettings(BaseSettings):
    """
    Conversation affinity cache configuration.

    STAGE-2: Conversation resolution
    """

    CONVERSATION_DISCOVER_EXISTING: bool = Field(
        default=True, description="Reuse the newest upstream conversation on cache miss"
    )
    CONVERSATION_NAME_TEMPLATE: str = Field(
        default="{client_id}_{date}", description="Name given to newly created conversations"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class FollowUpSettings(BaseSettings):
    """
    Follow-up reconciliation configuration.

    STAGE-6: Follow-up side channel
    """

    FOLLOW_UP_VARIABLE_PREFIX: str = Field(default="follow_up_q", description="Variable name prefix")
    FOLLOW_UP_VARIABLE_COUNT: int = Field(default=3, ge=1, description="Number of follow-up variables")
    FOLLOW_UP_READ_TIMEOUT: float = Field(default=3.0, gt=0, description="Side-channel read bound (s)")
    FOLLOW_UP_CLEAR_ATTEMPTS: int = Field(default=2, ge=1, description="Clear attempts (first try + retries)")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ExecutionTrackingSettings(BaseSettings):
    """
    Execution tracking configuration for performance monitoring and sampling.

    STAGE-ET: Execution tracking configuration

    Architectural Decision: Probabilistic sampling for reduced memory usage
    - 10% default sample rate (configurable)
    - Hash-based sampling ensures consistent tracking per thread_id
    """

    EXECUTION_TRACKING_ENABLED: bool = Field(default=True, description="Enable execution tracking")
    EXECUTION_TRACKING_SAMPLE_RATE: float = Field(default=0.1, description="Sampling rate (0.0-1.0), 0.1 = 10%")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration

    Architectural Decision: structlog for production-grade logging
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

    ENVIRONMENT: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Application environment"
    )
    DEBUG: bool = Field(default=False, description="Debug mode")
    APP_NAME: str = Field(default="Streaming Chat Proxy", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")
    API_BASE_PATH: str = Field(default="/api/v1", description="Prefix for all API routes")
    CORS_ORIGINS: list[str] = Field(default=["*"], description="Allowed CORS origins")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from src.core.config.settings import get_settings

        settings = get_settings()
        ceiling = settings.admission.ADMISSION_MAX_CONCURRENT
        bot_id = settings.upstream.COZE_BOT_ID
    """

    # Admission settings
    ADMISSION_MAX_CONCURRENT: int = Field(default=5, ge=1)
    ADMISSION_MAX_PER_SECOND: int = Field(default=10, ge=1)
    ADMISSION_MAX_PER_MINUTE: int = Field(default=100, ge=1)
    ADMISSION_QUEUE_MAX_SIZE: int = Field(default=100, ge=0)
    ADMISSION_DEFAULT_TIMEOUT: float = Field(default=30.0, gt=0)
    ADMISSION_CHAT_TIMEOUT: float = Field(default=5.0, gt=0)

    # Retry settings
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY: float = Field(default=1.0, ge=0)
    RETRY_MAX_DELAY: float = Field(default=10.0, ge=0)
    RETRY_BACKOFF_FACTOR: float = Field(default=2.0, ge=1)
    RETRY_JITTER_RATIO: float = Field(default=0.25)

    # Circuit Breaker settings
    CB_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    CB_RECOVERY_TIMEOUT: float = Field(default=60.0, gt=0)
    CB_SUCCESS_THRESHOLD: int = Field(default=3, ge=1)

    # Stream relay settings
    STREAM_BUFFER_SIZE: int = Field(default=1024, ge=1)
    STREAM_FLUSH_INTERVAL: float = Field(default=0.05, gt=0)
    STREAM_HEARTBEAT_INTERVAL: float = Field(default=5.0, gt=0)
    STREAM_PROCESSING_INTERVAL: float = Field(default=3.0, gt=0)
    STREAM_CLOSE_GRACE: float = Field(default=0.1, ge=0)
    STREAM_DISCONNECT_GRACE: float = Field(default=1.0, ge=0)

    # Upstream settings
    UPSTREAM_PROVIDER: Literal["coze", "fake"] = Field(default="coze")
    COZE_BASE_URL: str = Field(default="https://api.coze.cn")
    COZE_BOT_ID: str | None = Field(default=None)
    COZE_CONNECTOR_ID: str = Field(default="1024")
    COZE_ACCESS_TOKEN: str | None = Field(default=None)
    COZE_TIMEOUT: float = Field(default=30.0, gt=0)
    COZE_CONNECT_TIMEOUT: float = Field(default=10.0, gt=0)
    COZE_MAX_CONNECTIONS: int = Field(default=100, ge=1)

    # Conversation settings
    CONVERSATION_DISCOVER_EXISTING: bool = Field(default=True)
    CONVERSATION_NAME_TEMPLATE: str = Field(default="{client_id}_{date}")

    # Follow-up settings
    FOLLOW_UP_VARIABLE_PREFIX: str = Field(default="follow_up_q")
    FOLLOW_UP_VARIABLE_COUNT: int = Field(default=3, ge=1)
    FOLLOW_UP_READ_TIMEOUT: float = Field(default=3.0, gt=0)
    FOLLOW_UP_CLEAR_ATTEMPTS: int = Field(default=2, ge=1)

    # Execution Tracking settings
    EXECUTION_TRACKING_ENABLED: bool = Field(default=True)
    EXECUTION_TRACKING_SAMPLE_RATE: float = Field(default=0.1)

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json")

    # Application settings
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = Field(default="development")
    DEBUG: bool = Field(default=False)
    APP_NAME: str = Field(default="Streaming Chat Proxy")
    APP_VERSION: str = Field(default="1.0.0")
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_BASE_PATH: str = Field(default="/api/v1")
    CORS_ORIGINS: list[str] = Field(default=["*"])

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("RETRY_JITTER_RATIO")
    @classmethod
    def validate_jitter(cls, v):
        """Jitter must stay within [0, 1)."""
        if not 0 <= v < 1:
            raise ValueError("RETRY_JITTER_RATIO must be in [0, 1)")
        return v

    # Nested configuration views
    @property
    def admission(self) -> AdmissionSettings:
        """Get admission settings."""
        return AdmissionSettings(
            ADMISSION_MAX_CONCURRENT=self.ADMISSION_MAX_CONCURRENT,
            ADMISSION_MAX_PER_SECOND=self.ADMISSION_MAX_PER_SECOND,
            ADMISSION_MAX_PER_MINUTE=self.ADMISSION_MAX_PER_MINUTE,
            ADMISSION_QUEUE_MAX_SIZE=self.ADMISSION_QUEUE_MAX_SIZE,
            ADMISSION_DEFAULT_TIMEOUT=self.ADMISSION_DEFAULT_TIMEOUT,
            ADMISSION_CHAT_TIMEOUT=self.ADMISSION_CHAT_TIMEOUT,
        )

    @property
    def retry(self) -> RetrySettings:
        """Get retry settings."""
        return RetrySettings(
            RETRY_MAX_ATTEMPTS=self.RETRY_MAX_ATTEMPTS,
            RETRY_BASE_DELAY=self.RETRY_BASE_DELAY,
            RETRY_MAX_DELAY=self.RETRY_MAX_DELAY,
            RETRY_BACKOFF_FACTOR=self.RETRY_BACKOFF_FACTOR,
            RETRY_JITTER_RATIO=self.RETRY_JITTER_RATIO,
        )

    @property
    def circuit_breaker(self) -> CircuitBreakerSettings:
        """Get circuit breaker settings."""
        return CircuitBreakerSettings(
            CB_FAILURE_THRESHOLD=self.CB_FAILURE_THRESHOLD,
            CB_RECOVERY_TIMEOUT=self.CB_RECOVERY_TIMEOUT,
            CB_SUCCESS_THRESHOLD=self.CB_SUCCESS_THRESHOLD,
        )

    @property
    def stream(self) -> StreamSettings:
        """Get stream relay settings."""
        return StreamSettings(
            STREAM_BUFFER_SIZE=self.STREAM_BUFFER_SIZE,
            STREAM_FLUSH_INTERVAL=self.STREAM_FLUSH_INTERVAL,
            STREAM_HEARTBEAT_INTERVAL=self.STREAM_HEARTBEAT_INTERVAL,
            STREAM_PROCESSING_INTERVAL=self.STREAM_PROCESSING_INTERVAL,
            STREAM_CLOSE_GRACE=self.STREAM_CLOSE_GRACE,
            STREAM_DISCONNECT_GRACE=self.STREAM_DISCONNECT_GRACE,
        )

    @property
    def upstream(self) -> UpstreamSettings:
        """Get upstream provider settings."""
        return UpstreamSettings(
            UPSTREAM_PROVIDER=self.UPSTREAM_PROVIDER,
            COZE_BASE_URL=self.COZE_BASE_URL,
            COZE_BOT_ID=self.COZE_BOT_ID,
            COZE_CONNECTOR_ID=self.COZE_CONNECTOR_ID,
            COZE_ACCESS_TOKEN=self.COZE_ACCESS_TOKEN,
            COZE_TIMEOUT=self.COZE_TIMEOUT,
            COZE_CONNECT_TIMEOUT=self.COZE_CONNECT_TIMEOUT,
            COZE_MAX_CONNECTIONS=self.COZE_MAX_CONNECTIONS,
        )

    @property
    def conversation(self) -> ConversationSettings:
        """Get conversation cache settings."""
        return ConversationSettings(
            CONVERSATION_DISCOVER_EXISTING=self.CONVERSATION_DISCOVER_EXISTING,
            CONVERSATION_NAME_TEMPLATE=self.CONVERSATION_NAME_TEMPLATE,
        )

    @property
    def follow_up(self) -> FollowUpSettings:
        """Get follow-up reconciliation settings."""
        return FollowUpSettings(
            FOLLOW_UP_VARIABLE_PREFIX=self.FOLLOW_UP_VARIABLE_PREFIX,
            FOLLOW_UP_VARIABLE_COUNT=self.FOLLOW_UP_VARIABLE_COUNT,
            FOLLOW_UP_READ_TIMEOUT=self.FOLLOW_UP_READ_TIMEOUT,
            FOLLOW_UP_CLEAR_ATTEMPTS=self.FOLLOW_UP_CLEAR_ATTEMPTS,
        )

    @property
    def execution_tracking(self) -> ExecutionTrackingSettings:
        """Get execution tracking settings."""
        return ExecutionTrackingSettings(
            EXECUTION_TRACKING_ENABLED=self.EXECUTION_TRACKING_ENABLED,
            EXECUTION_TRACKING_SAMPLE_RATE=self.EXECUTION_TRACKING_SAMPLE_RATE,
        )

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    @property
    def app(self) -> ApplicationSettings:
        """Get application settings."""
        return ApplicationSettings(
            ENVIRONMENT=self.ENVIRONMENT,
            DEBUG=self.DEBUG,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
            API_HOST=self.API_HOST,
            API_PORT=self.API_PORT,
            API_BASE_PATH=self.API_BASE_PATH,
            CORS_ORIGINS=self.CORS_ORIGINS,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"  # Ignore extra environment variables
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
