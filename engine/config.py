from __future__ import annotations

"""Runtime settings for the workflow engine."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Defaults applied when a step or handler leaves a policy undeclared."""

    default_step_timeout: str = Field(
        default="1h",
        description="Per-call deadline for steps without timeout.startToClose",
    )
    max_backoff_interval: str = Field(
        default="5m",
        description="Ceiling applied to retry backoff delays",
    )
    default_initial_interval: str = Field(default="1s")
    default_backoff_coefficient: float = Field(default=2.0, ge=1.0)
    default_maximum_attempts: int = Field(default=2, ge=1)
    default_script_timeout: str = Field(
        default="30s",
        description="Wall-clock cap for inline scripts without a declared timeout",
    )
    max_script_timeout: str = Field(default="300s")
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> EngineSettings:
    """Return the process-wide settings instance."""

    return EngineSettings()


__all__ = ["EngineSettings", "get_settings"]
