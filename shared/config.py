"""
Shared configuration management for the CRM Automation service.
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
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Log level")

    # Storage; an empty DSN selects the in-memory store
    postgres_dsn: Optional[str] = Field(default=None, description="PostgreSQL DSN")

    # Security
    jwt_secret: str = Field(default="local-dev-secret", description="Session token signing secret")
    jwt_algorithm: str = Field(default="HS256", description="Session token algorithm")
    cron_secret: str = Field(default="local-cron-secret", description="Bearer secret for scheduler tick")

    # Scheduler
    scheduler_batch_size: int = Field(default=100, ge=1, description="Jobs claimed per tick")
    scheduler_max_attempts: int = Field(default=3, ge=1, description="Default max attempts per job")
    retry_base_delay_seconds: float = Field(default=60.0, ge=0, description="Backoff base delay")
    retry_max_delay_seconds: float = Field(default=3600.0, ge=0, description="Backoff delay cap")
    scheduled_workflow_batch_size: int = Field(default=100, ge=1, description="Records per scheduled run")
    cadence_batch_size: int = Field(default=100, ge=1, description="Cadence enrollments per tick")

    # Executor
    max_actions_per_run: int = Field(default=50, ge=1, description="Action cap per workflow run")
    webhook_timeout_seconds: float = Field(default=10.0, gt=0, description="Outbound webhook timeout")
    webhook_max_attempts: int = Field(default=3, ge=1, description="Attempts for retrying webhooks")

    # Observability
    enable_metrics: bool = Field(default=True, description="Expose Prometheus metrics")


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
