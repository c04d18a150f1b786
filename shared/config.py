"""
Shared configuration management for the Entitlement Engine.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITLEMENTS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Document store
    store_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_key_prefix: str = Field(default="entitlements")

    # Plan catalog
    catalog_ttl_seconds: float = Field(default=300.0)
    catalog_fetch_timeout_seconds: float = Field(default=2.0)
    free_tier_id: str = Field(default="free")

    # Transactions
    transaction_max_attempts: int = Field(default=3, ge=1)
    transaction_base_delay: float = Field(default=0.05, ge=0.0)
    transaction_max_delay: float = Field(default=1.0, ge=0.0)

    # Usage ledger
    usage_retention_days: int = Field(default=90, ge=1)

    # Change notifier
    notifier_queue_size: int = Field(default=100, ge=1)
    heartbeat_interval: float = Field(default=30.0)
    notifier_reattach_base_delay: float = Field(default=1.0, ge=0.0)
    notifier_reattach_max_delay: float = Field(default=60.0, ge=0.0)


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
