"""
Engine configuration, read from ``OPERATOR_ENGINE_*`` environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Runtime knobs for the Operator Engine."""

    model_config = SettingsConfigDict(
        env_prefix="OPERATOR_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    db_path: str = ":memory:"
    log_level: str = "info"
    log_json: bool = True

    # Notification/Cooldown Gate
    notification_cooldown_seconds: int = Field(default=3600, ge=0)

    # Admission control at the HTTP boundary
    execute_rate_limit: int = Field(default=20, ge=1)
    run_rate_limit: int = Field(default=10, ge=1)
    rate_limit_window_seconds: int = Field(default=60, ge=1)

    # Orchestrator
    replay_window_seconds: int = Field(default=60, ge=0)
    default_scope: str = "command_center"

    # Summary / telemetry
    summary_cache_seconds: float = Field(default=15.0, ge=0)
    telemetry_queue_size: int = Field(default=256, ge=1)
    effectiveness_window_days: int = Field(default=7, ge=1)


def load_settings(**overrides) -> EngineSettings:
    """Build settings from the environment, with explicit overrides winning."""
    return EngineSettings(**overrides)
