"""
Shared configuration management for the Access Core services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ACCESS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Permission cache
    permission_cache_ttl_seconds: float = Field(default=300.0, gt=0)
    permission_cache_max_entries: int = Field(default=1000, ge=1)
    permission_cache_sweep_seconds: float = Field(default=300.0, gt=0)

    # Request deduplication
    dedup_max_wait_seconds: float = Field(default=30.0, gt=0)

    # Admission queue
    admission_queue_capacity: int = Field(default=50, ge=1)
    admission_queue_timeout_seconds: float = Field(default=30.0, gt=0)
    admission_tick_seconds: float = Field(default=1.0, gt=0)
    # Cap on queued admissions per tick; each one still needs limiter budget
    admission_tick_budget: int = Field(default=10, ge=1)

    # Response cache
    response_cache_max_entries: int = Field(default=1000, ge=1)
    response_cache_sweep_seconds: float = Field(default=300.0, gt=0)
    response_cache_reference_ttl_seconds: float = Field(default=300.0, gt=0)
    response_cache_listing_ttl_seconds: float = Field(default=30.0, gt=0)
    response_cache_default_ttl_seconds: float = Field(default=60.0, gt=0)

    # User granted a super_admin role at startup when the store is empty
    bootstrap_super_admin: Optional[str] = Field(default=None)

    # Comma separated origins; empty means same-origin only outside local
    cors_origins: Optional[str] = Field(default=None)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
