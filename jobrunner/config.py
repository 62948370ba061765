"""
Runner configuration using Pydantic Settings.

``Settings`` loads process-wide values from environment variables with
sensible defaults. ``RunnerConfig`` is the validated, explicit structure a
``JobRunner`` is built from; it is merged once at construction time.
"""

import os
import socket
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobrunner.constants import (
    DEFAULT_DEAD_LETTER_MAX_ENTRIES,
    DEFAULT_DEAD_LETTER_RETENTION_MS,
    DEFAULT_LOCK_TTL_MS,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    LOCK_TTL_BUFFER_MS,
)


def default_instance_id() -> str:
    """Identifier for this process: hostname plus PID."""
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Instance
    instance_id: str | None = None

    # Key-value store (memory store is used when unset)
    redis_url: str | None = None

    # Locking
    lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS
    lock_ttl_buffer_ms: int = LOCK_TTL_BUFFER_MS
    lock_auto_extend_ms: int = 0
    lock_retries: int = 0
    lock_retry_delay_ms: int = 100

    # Retry defaults
    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 60_000
    retry_backoff_multiplier: float = 2.0
    retry_jitter_factor: float = 0.1

    # Dead letter queue
    dead_letter_retention_ms: int = DEFAULT_DEAD_LETTER_RETENTION_MS
    dead_letter_max_entries: int = DEFAULT_DEAD_LETTER_MAX_ENTRIES
    dead_letter_persist_attempts: int = 2

    # Alerting
    alerting_enabled: bool = True
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    alert_webhook_url: str | None = None

    # Observability
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "job-runner"
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class LockConfig(BaseModel):
    """
    Lock manager configuration.

    Attributes:
        ttl_ms: Lock expiry used when the caller gives none.
        retries: Extra acquisition attempts when the key is held. The runner
            never retries at this layer, so the default is 0.
        retry_delay_ms: Delay between acquisition attempts.
        exponential_backoff: Double the acquisition delay after each attempt.
        auto_extend_ms: Interval for background TTL extension (0 disables it).
    """

    ttl_ms: int = Field(default=DEFAULT_LOCK_TTL_MS, gt=0)
    retries: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=100, ge=0)
    exponential_backoff: bool = True
    auto_extend_ms: int = Field(default=0, ge=0)


class RetryConfig(BaseModel):
    """
    Backoff policy.

    Attributes:
        max_attempts: Total attempts, first one included.
        initial_delay_ms: Delay before the first retry.
        max_delay_ms: Cap applied before jitter.
        backoff_multiplier: Growth factor per attempt for exponential mode.
        jitter_factor: Fraction of the delay randomly added or removed.
    """

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=60_000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0)


class DeadLetterConfig(BaseModel):
    """
    Dead letter queue configuration.

    Attributes:
        retention_ms: How long entries are kept before cleanup/expiry.
        max_entries: Upper bound enforced by ``cleanup``.
        persist_attempts: How many times the runner tries to write an entry.
    """

    retention_ms: int = Field(default=DEFAULT_DEAD_LETTER_RETENTION_MS, gt=0)
    max_entries: int = Field(default=DEFAULT_DEAD_LETTER_MAX_ENTRIES, gt=0)
    persist_attempts: int = Field(default=2, ge=1)


class RunnerConfig(BaseModel):
    """
    Job runner configuration.

    Attributes:
        instance_id: Owner identity written into lock keys and job contexts.
        alerting_enabled: Master switch for failure alerts.
        max_consecutive_failures: Consecutive failed executions at which the
            alert escalates from warning to critical.
        lock_ttl_buffer_ms: Added to a job's timeout to form its lock TTL.
        lock: Lock manager settings.
        retry: Backoff policy defaults for exponential retries.
        dead_letter: Dead letter queue settings.
    """

    instance_id: str = Field(default_factory=default_instance_id)
    alerting_enabled: bool = True
    max_consecutive_failures: int = Field(default=DEFAULT_MAX_CONSECUTIVE_FAILURES, ge=1)
    lock_ttl_buffer_ms: int = Field(default=LOCK_TTL_BUFFER_MS, ge=0)
    lock: LockConfig = Field(default_factory=LockConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    dead_letter: DeadLetterConfig = Field(default_factory=DeadLetterConfig)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RunnerConfig":
        """Build a runner configuration from environment settings."""
        settings = settings or get_settings()
        return cls(
            instance_id=settings.instance_id or default_instance_id(),
            alerting_enabled=settings.alerting_enabled,
            max_consecutive_failures=settings.max_consecutive_failures,
            lock_ttl_buffer_ms=settings.lock_ttl_buffer_ms,
            lock=LockConfig(
                ttl_ms=settings.lock_ttl_ms,
                retries=settings.lock_retries,
                retry_delay_ms=settings.lock_retry_delay_ms,
                auto_extend_ms=settings.lock_auto_extend_ms,
            ),
            retry=RetryConfig(
                max_attempts=settings.retry_max_attempts,
                initial_delay_ms=settings.retry_initial_delay_ms,
                max_delay_ms=settings.retry_max_delay_ms,
                backoff_multiplier=settings.retry_backoff_multiplier,
                jitter_factor=settings.retry_jitter_factor,
            ),
            dead_letter=DeadLetterConfig(
                retention_ms=settings.dead_letter_retention_ms,
                max_entries=settings.dead_letter_max_entries,
                persist_attempts=settings.dead_letter_persist_attempts,
            ),
        )
