"""
Shared configuration management for the automation service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="AUTOMATION_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/automation")
    domain_api_url: str = Field(default="http://localhost:8090")
    domain_api_token: Optional[str] = Field(default=None)

    # Backends: "memory" keeps everything in-process
    storage_backend: str = Field(default="memory")
    config_backend: str = Field(default="memory")

    # Kill switch
    engine_enabled: bool = Field(default=True)
    kill_switch_ttl_seconds: float = Field(default=1.0, ge=0.0)
    config_refresh_seconds: float = Field(default=1.0, gt=0.0)

    # Rate limiting (per rule)
    rate_limit_max_executions: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0.0)

    # Loop detection
    loop_threshold: int = Field(default=5, ge=1)
    loop_window_seconds: float = Field(default=5.0, gt=0.0)

    # Idle rate and loop window pruning
    cleanup_interval_seconds: float = Field(default=60.0, gt=0.0)

    # Action retry
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.2, ge=0.0)
    retry_max_delay: float = Field(default=5.0, ge=0.0)
    retry_jitter: bool = Field(default=True)
    action_timeout_seconds: float = Field(default=10.0, gt=0.0)


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
