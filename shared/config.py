"""
Shared configuration management for the health API proxy.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Observability
    enable_metrics: bool = True

    # Service identity; subclasses provide defaults
    service_name: str = "service"
    host: str = "0.0.0.0"
    port: int = 8000
