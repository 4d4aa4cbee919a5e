"""
Shared configuration management for the Helpdesk Access Layer.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="HELPDESK_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Key-value backend
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=2.0, gt=0)
    redis_connect_timeout: float = Field(default=2.0, gt=0)

    # Query cache
    cache_default_ttl: int = Field(default=300, gt=0)
    cache_tag_index_ttl: int = Field(default=86400, gt=0)
    cache_write_behind: bool = Field(default=True)

    # Cache administration; without keys the admin routes only open in local env
    admin_api_keys: List[str] = Field(default_factory=list)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    enable_rate_limit_dev: bool = Field(default=False)
    rate_limits_file: Optional[str] = Field(default=None)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)

    @property
    def rate_limiting_active(self) -> bool:
        """Whether the rate limiter should intercept requests in this environment."""
        if not self.rate_limit_enabled:
            return False
        if self.env == "local" and not self.enable_rate_limit_dev:
            return False
        return True


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
