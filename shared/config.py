"""
Shared configuration management for the Tenant Access Layer.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")
    audit_service_url: str = Field(default="http://localhost:8020")

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4318")
    enable_console_tracing: bool = Field(default=False)

    # Policy evaluation
    policy_default_deny: bool = Field(default=True)
    policy_audit_queue_capacity: int = Field(default=1024, ge=1)
    policy_condition_clock_skew_seconds: float = Field(default=0.0, ge=0.0)
    policy_file: Optional[str] = Field(default=None)
    policy_audit_sink: str = Field(default="log")
    policy_persistence_enabled: bool = Field(default=False)

    @field_validator("policy_audit_sink")
    @classmethod
    def _check_audit_sink(cls, value: str) -> str:
        value = value.lower()
        if value not in ("log", "http", "postgres"):
            raise ValueError("policy_audit_sink must be one of: log, http, postgres")
        return value


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
