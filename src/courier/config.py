"""
Centralized Configuration System
Environment-aware settings for the message broker and idempotency ledger.
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow"
    )
    """
    Process-wide configuration.
    Loads from environment variables with sensible defaults.
    Invalid values fail at load time, never at call time.
    """

    # ============================================
    # MESSAGE BROKER
    # ============================================
    max_retries: int = Field(default=3, ge=0)
    base_retry_delay_seconds: float = Field(default=1.0, gt=0)
    retry_jitter: float = Field(default=0.0, ge=0, lt=1)
    dead_letter_capacity: int = Field(default=1000, gt=0)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)

    # ============================================
    # IDEMPOTENCY LEDGER
    # ============================================
    idempotency_ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)
    idempotency_max_retries: int = Field(default=3, ge=0)
    ledger_sweep_interval_seconds: float = Field(default=60 * 60, gt=0)

    # ============================================
    # OBSERVABILITY
    # ============================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    enable_structured_logging: bool = False  # Set to True for production JSON logs

    # ============================================
    # ENVIRONMENT
    # ============================================
    environment: Literal["development", "test", "staging", "production"] = "development"


class BrokerConfig(BaseModel):
    """
    Message broker options.

    Attributes:
        max_retries: Retries allowed after the first delivery attempt
        base_retry_delay_seconds: Delay before the first retry; doubles each retry
        retry_jitter: Proportional jitter applied to each delay (0 disables it)
        dead_letter_capacity: Dead letter entries kept before the oldest is evicted
        shutdown_timeout_seconds: How long shutdown waits for the in-flight handler
    """
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_retry_delay_seconds: float = Field(default=1.0, gt=0)
    retry_jitter: float = Field(default=0.0, ge=0, lt=1)
    dead_letter_capacity: int = Field(default=1000, gt=0)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrokerConfig":
        return cls(
            max_retries=settings.max_retries,
            base_retry_delay_seconds=settings.base_retry_delay_seconds,
            retry_jitter=settings.retry_jitter,
            dead_letter_capacity=settings.dead_letter_capacity,
            shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
        )


class LedgerConfig(BaseModel):
    """
    Idempotency ledger options.

    The TTL should exceed the expected action latency, otherwise a record
    can expire while its action is still running.

    Attributes:
        ttl_seconds: Lifetime of a record from the moment it is stored
        max_retries: Failures tolerated under one key before retries are refused
        sweep_interval_seconds: Period of the background expiry sweep
    """
    model_config = ConfigDict(frozen=True)

    ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)
    max_retries: int = Field(default=3, ge=0)
    sweep_interval_seconds: float = Field(default=60 * 60, gt=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerConfig":
        return cls(
            ttl_seconds=settings.idempotency_ttl_seconds,
            max_retries=settings.idempotency_max_retries,
            sweep_interval_seconds=settings.ledger_sweep_interval_seconds,
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Singleton pattern for settings.
    Uses LRU cache to ensure only one Settings instance exists.
    """
    return Settings()
