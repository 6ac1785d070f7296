"""
Shared configuration management for the query memoization layer.
"""

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TTL_SECONDS = 60 * 5
DEFAULT_PREFETCH_RATIO = 0.7
DEFAULT_STARTUP_GRACE_SECONDS = 5.0


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="QUERY_CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    socket_timeout: float = Field(default=5.0, gt=0)
    health_check_interval: float = Field(default=30.0, gt=0)


class CacheConfig(BaseConfig):
    """Memoization settings shared by every operation of one Memoizer."""

    ttl_seconds: float = Field(default=DEFAULT_TTL_SECONDS, gt=0)
    # Entries turn stale at ttl * prefetch_ratio, strictly before hard expiry.
    prefetch_ratio: float = Field(default=DEFAULT_PREFETCH_RATIO, gt=0, lt=1)
    startup_grace_seconds: float = Field(default=DEFAULT_STARTUP_GRACE_SECONDS, ge=0)
    logs_disabled: bool = Field(default=False)
    scan_count: int = Field(default=500, gt=0)
    # Grace for background writes and refreshes on stop() before they are cancelled.
    shutdown_timeout_seconds: float = Field(default=10.0, ge=0)


def get_config(**overrides: Any) -> CacheConfig:
    """Get cache configuration from the environment plus explicit overrides."""
    return CacheConfig(**overrides)
