"""
Core Sentry - Configuration
===========================

Centralized configuration using Pydantic Settings. Every field can be set
through an environment variable prefixed with ``CORESENTRY_``.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache
from typing import Optional
from enum import Enum

from coresentry.constants import Advisory, DefaultThresholds, Timing


class AdvisoryProvider(str, Enum):
    """Available advisory transports."""
    OLLAMA = "ollama"   # HTTP generate endpoint
    MOCK = "mock"       # Canned replies for development/testing


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    service_name: str = Field(default="coresentry")
    service_version: str = Field(default="0.1.0")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010)
    debug: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Advisory (LLM) service
    advisory_provider: AdvisoryProvider = Field(
        default=AdvisoryProvider.OLLAMA,
        description="Advisory transport to use (ollama, mock)"
    )
    advisory_endpoint: str = Field(
        default=Advisory.ENDPOINT,
        description="Generate endpoint of the advisory service"
    )
    advisory_model: str = Field(
        default=Advisory.MODEL,
        description="Model name sent with every advisory request"
    )
    advisory_timeout_seconds: float = Field(
        default=Timing.ADVISORY_TIMEOUT_SECONDS,
        gt=0,
        description="Upper bound for one advisory call"
    )
    advisory_temperature: float = Field(
        default=Advisory.TEMPERATURE,
        ge=0.0,
        description="Sampling temperature, kept low for deterministic replies"
    )
    advisory_top_p: float = Field(default=Advisory.TOP_P, gt=0.0, le=1.0)

    # Gate
    cooldown_ms: float = Field(
        default=Timing.COOLDOWN_MS,
        ge=0,
        description="Minimum interval between successful advisory calls"
    )

    # Default thresholds
    threshold_block_ms: float = Field(default=DefaultThresholds.BLOCK_MS, ge=0)
    threshold_heap_percent: float = Field(default=DefaultThresholds.HEAP_PERCENT, ge=0)
    threshold_io_requests: float = Field(default=DefaultThresholds.IO_ACTIVE_REQUESTS, ge=0)
    threshold_microtasks: Optional[int] = Field(default=None, ge=0)
    critical_functions: list[str] = Field(default_factory=list)

    # Actions
    enable_memory_reclaim: bool = Field(
        default=True,
        description="Run gc.collect() for CLEAN_CACHE when no handler is registered"
    )
    webhook_timeout_seconds: float = Field(default=Timing.WEBHOOK_TIMEOUT_SECONDS, gt=0)

    # Egress
    decision_history_size: int = Field(default=100, ge=1)
    stream_queue_size: int = Field(default=100, ge=1)

    class Config:
        env_prefix = "CORESENTRY_"
        case_sensitive = False
        env_file = ".env"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
