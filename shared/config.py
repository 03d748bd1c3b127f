"""
Shared configuration management for the resilient request gate.
"""

from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GateConfig(BaseSettings):
    """Base configuration with storage, cache, throttle and lockout settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Distributed store
    redis_url: str = "redis://localhost:6379/0"
    redis_enabled: bool = True
    backend_timeout_ms: int = Field(default=250, gt=0)

    # Local fallback store
    local_max_entries: int = Field(default=10000, gt=0)
    local_max_age_seconds: float = Field(default=3600.0, gt=0)
    local_purge_interval_seconds: float = Field(default=60.0, gt=0)

    # Circuit breaker for the distributed store
    circuit_failure_threshold: int = Field(default=3, gt=0)
    circuit_cooldown_seconds: float = Field(default=30.0, ge=0)

    # Response cache TTLs (seconds)
    cache_ttl_default: int = 300
    cache_ttl_by_route_class: Dict[str, int] = Field(default_factory=dict)

    # Throttle policies
    general_limit: int = Field(default=100, gt=0)
    general_window_seconds: float = Field(default=900.0, gt=0)
    strict_limit: int = Field(default=5, gt=0)
    strict_window_seconds: float = Field(default=900.0, gt=0)
    strict_path_prefixes: List[str] = Field(default_factory=lambda: ["/api/v1/auth/"])

    # Failed-login lockout
    lockout_max_attempts: int = Field(default=5, gt=0)
    lockout_duration_seconds: float = Field(default=7200.0, gt=0)

    @property
    def backend_timeout_seconds(self) -> float:
        return self.backend_timeout_ms / 1000.0


class ServiceConfig(GateConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
