"""Configuration management using pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings, overridable with SHIPYARD_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="SHIPYARD_")

    state_dir: Path = Path(".shipyard")
    max_output_chars: int = Field(default=1_000_000, ge=1)
    max_workers: int = Field(default=4, ge=1)
    default_timeout: float | None = Field(default=None, gt=0)
    log_level: str = "WARNING"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def artifacts_dir(self) -> Path:
        return self.state_dir / "artifacts"


def get_settings(**overrides) -> Settings:
    """Build settings from the environment, applying non-None overrides."""
    return Settings(**{k: v for k, v in overrides.items() if v is not None})
