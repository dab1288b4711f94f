"""
Shared configuration management for the RBAC Policy Service.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="POLICY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Root log level")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/policy")
    kafka_bootstrap: str = Field(default="localhost:9092")

    # Backends
    assignment_store: Literal["memory", "postgres"] = Field(default="memory")
    decision_cache: Literal["memory", "redis"] = Field(default="memory")
    audit_sink: Literal["log", "kafka"] = Field(default="log")
    audit_topic: str = Field(default="policy.audit.check.v1")
    audit_max_block_ms: int = Field(default=100, ge=0)

    # Decision cache
    decision_ttl_seconds: int = Field(default=300, ge=1)
    cache_shards: int = Field(default=16, ge=1)
    cache_max_entries_per_shard: int = Field(default=10000, ge=1)

    # Check budget; expiry resolves to a fail-closed deny
    check_timeout_ms: int = Field(default=100, ge=1)

    # Assignment store circuit breaker
    store_failure_threshold: int = Field(default=5, ge=1)
    store_recovery_timeout: float = Field(default=30.0, gt=0)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4317")
    enable_console_tracing: bool = Field(default=False)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)

    @property
    def check_timeout_seconds(self) -> float:
        return self.check_timeout_ms / 1000.0


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
