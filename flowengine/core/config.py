"""Engine configuration loaded from .flowengine/config.yaml."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = ".flowengine/config.yaml"


class EngineConfig(BaseModel):
    """Polling cadence, batch limits and action defaults."""

    db_path: str = ".flowengine/state.db"

    # Loop intervals (seconds). New executions are latency-sensitive, schedules are not.
    pending_interval: float = Field(default=3.0, gt=0)
    delay_interval: float = Field(default=10.0, gt=0)
    goal_interval: float = Field(default=15.0, gt=0)
    schedule_interval: float = Field(default=60.0, gt=0)

    batch_size: int = Field(default=20, ge=1)
    default_wait_timeout_hours: float = Field(default=168, gt=0)
    default_delay_minutes: float = Field(default=60, ge=0)
    webhook_timeout: float = Field(default=30.0, gt=0)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{value}'") from e
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def load_engine_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the FLOWENGINE_CONFIG
            env variable, then '.flowengine/config.yaml'. A missing file yields
            defaults.
    """
    config_path = Path(path or os.getenv("FLOWENGINE_CONFIG", DEFAULT_CONFIG_PATH))
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = EngineConfig(**data)
    else:
        config = EngineConfig()

    env_db_path = os.getenv("FLOWENGINE_DB_PATH")
    if env_db_path:
        config.db_path = env_db_path
    return config


def write_default_config(path: str | Path = DEFAULT_CONFIG_PATH) -> Path:
    """Write the default configuration as YAML. Existing files are left alone."""
    config_path = Path(path)
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(EngineConfig().model_dump(), f, sort_keys=False)
    return config_path
