"""
Shared configuration management for the Client Users API.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="USERS_API_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Persistence
    database_url: str = Field(default="sqlite+aiosqlite:///./users.db")
    database_echo: bool = Field(default=False)
    create_tables: bool = Field(default=True)

    # Cache
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_backend: str = Field(default="memory")
    users_cache_tag: str = Field(default="usersCache")
    users_cache_ttl: int = Field(default=240, ge=1)
    # "eager" invalidates before the write is attempted, "post_commit" after it succeeds
    cache_invalidation: str = Field(default="eager")

    # Pagination
    default_page: int = Field(default=1, ge=1)
    default_limit: int = Field(default=10, ge=1)
    max_page_size: int = Field(default=100, ge=1)

    # Security
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    jwt_audience: Optional[str] = Field(default=None)
    jwt_issuer: Optional[str] = Field(default=None)
    required_role: str = Field(default="ROLE_USER")
    default_user_role: str = Field(default="ROLE_USER")
    password_schemes: List[str] = Field(default_factory=lambda: ["pbkdf2_sha256"])


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
