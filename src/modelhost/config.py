"""Configuration settings for modelhost.

Every component takes its settings object explicitly; the module-level
``settings`` instance is only a convenience for callers that want the
environment-derived defaults.
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_POOL_SIZE,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_MAX_AGE,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_LOCALE,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_KILL_GRACE_PERIOD,
    DEFAULT_KILL_BATCH_SIZE,
    DEFAULT_LOG_TAIL_LINES,
    FRAMEWORKS,
)


class RetrySettings(BaseSettings):
    """Retry decorator settings."""

    model_config = SettingsConfigDict(env_prefix="MODELHOST_RETRY_", env_file=".env", case_sensitive=False, extra="ignore")

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, description="Retries after the first attempt")
    initial_delay: float = Field(default=DEFAULT_INITIAL_DELAY, ge=0, description="Delay before the first retry in seconds")
    backoff_multiplier: float = Field(default=DEFAULT_RETRY_BACKOFF, ge=1.0, description="Delay multiplier per attempt")


class TimeoutSettings(BaseSettings):
    """Timeout decorator settings."""

    model_config = SettingsConfigDict(env_prefix="MODELHOST_TIMEOUT_", env_file=".env", case_sensitive=False, extra="ignore")

    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0, description="Overall time budget per call in seconds")


class PoolSettings(BaseSettings):
    """Connection pool settings."""

    model_config = SettingsConfigDict(env_prefix="MODELHOST_POOL_", env_file=".env", case_sensitive=False, extra="ignore")

    soft_max_size: int = Field(
        default=DEFAULT_POOL_SIZE,
        ge=1,
        description="Advisory pool size: idle entries above it are evicted, acquire never blocks"
    )
    idle_timeout: float = Field(default=DEFAULT_IDLE_TIMEOUT, gt=0, description="Idle eviction delay in seconds")
    max_age: float = Field(default=DEFAULT_MAX_AGE, gt=0, description="Maximum connection age in seconds")
    cleanup_interval: float = Field(default=60.0, gt=0, description="Background sweep interval in seconds")


class ExecutionSettings(BaseSettings):
    """Execution target settings."""

    model_config = SettingsConfigDict(env_prefix="MODELHOST_EXEC_", env_file=".env", case_sensitive=False, extra="ignore")

    command_timeout: float = Field(default=DEFAULT_TIMEOUT, ge=0, description="Per-command timeout in seconds, 0 disables")
    max_output_bytes: int = Field(default=DEFAULT_MAX_OUTPUT_BYTES, gt=0, description="Cap on collected stdout/stderr per stream")
    locale: str = Field(default=DEFAULT_LOCALE, description="Locale forced on local subprocesses")
    connect_timeout: float = Field(default=DEFAULT_CONNECT_TIMEOUT, gt=0, description="SSH connect timeout in seconds")
    poll_interval: float = Field(default=0.05, gt=0, description="Remote channel polling interval in seconds")


class LifecycleSettings(BaseSettings):
    """Service lifecycle settings."""

    model_config = SettingsConfigDict(env_prefix="MODELHOST_LIFECYCLE_", env_file=".env", case_sensitive=False, extra="ignore")

    settle_delay: float = Field(default=DEFAULT_SETTLE_DELAY, ge=0, description="Wait after launch before the liveness check")
    kill_grace_period: float = Field(default=DEFAULT_KILL_GRACE_PERIOD, ge=0, description="Wait between SIGTERM and SIGKILL")
    post_kill_wait: float = Field(default=1.0, ge=0, description="Wait before the accelerator re-scan during stop")
    log_tail_lines: int = Field(default=DEFAULT_LOG_TAIL_LINES, gt=0, description="Log lines surfaced on start failure")
    kill_batch_size: int = Field(default=DEFAULT_KILL_BATCH_SIZE, gt=0, description="Concurrent kills per batch")
    frameworks: List[str] = Field(default_factory=lambda: list(FRAMEWORKS), description="Serving framework keywords")


class LoggingSettings(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="MODELHOST_", env_file=".env", case_sensitive=False, extra="ignore")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: text or json")


class Settings(BaseSettings):
    """Aggregate settings."""

    model_config = SettingsConfigDict(env_prefix="MODELHOST_", env_file=".env", case_sensitive=False, extra="ignore")

    retry: RetrySettings = Field(default_factory=RetrySettings)
    timeout: TimeoutSettings = Field(default_factory=TimeoutSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


settings = Settings()
