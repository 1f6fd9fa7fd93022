"""
Shared configuration management for the Policy Engine.
"""

from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="POLICY_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")


class EngineConfig(BaseConfig):
    """Settings for the evaluation engine and its harness."""

    service_name: str = Field(default="policy_engine")

    # Environment features are evaluated for
    environment: str = Field(default="development")

    # Simulation harness
    simulation_history_size: int = Field(default=10, ge=1)
    simulation_max_sessions: int = Field(default=100, ge=1)

    # Bulk operations
    batch_hard_max: int = Field(default=100, ge=1)
    batch_max_concurrency: int = Field(default=1, ge=1)
    role_batch_limits: Dict[str, int] = Field(
        default_factory=lambda: {"admin": 100, "moderator": 25}
    )
    activation_roles: List[str] = Field(default_factory=lambda: ["admin"])

    # Rollout bucketing
    identifier_fields: List[str] = Field(
        default_factory=lambda: ["userId", "user_id", "user.id", "id"]
    )

    # Audit
    audit_feature_evaluations: bool = Field(default=False)


def get_config(**overrides) -> EngineConfig:
    """Get engine configuration, applying explicit overrides on top of env."""
    return EngineConfig(**overrides)
