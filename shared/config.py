"""
Shared configuration management for the optical offers platform.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="OFFERS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/offers")

    # Rule storage
    rules_backend: str = Field(default="memory", description="memory | postgres")
    rules_seed_file: Optional[str] = Field(default=None)
    snapshot_ttl_seconds: float = Field(default=15.0, ge=0)
    redis_snapshot_ttl_seconds: int = Field(default=60, ge=1)
    enable_redis_cache: bool = Field(default=False)

    # Pricing behaviour
    band_power_basis: str = Field(default="signed_sphere", description="signed_sphere | absolute_total")
    band_coverage: str = Field(default="optional", description="optional | required")
    upsell_proximity_window: float = Field(default=1000.0, ge=0)
    coupon_commit_max_attempts: int = Field(default=3, ge=1)
    currency_symbol: str = Field(default="₹")

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4318")
    enable_console_tracing: bool = Field(default=False)


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
