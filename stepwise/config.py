from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_SIGNATURE_HEADER,
)


class EngineConfig(BaseModel):
    """Execution engine settings."""

    max_concurrent_runs: Optional[int] = Field(default=None, ge=1)
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    stale_after_seconds: Optional[float] = None


class TriggerSettings(BaseModel):
    """Trigger manager settings."""

    poll_interval: float = 1.0
    signature_header: str = DEFAULT_SIGNATURE_HEADER


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    triggers: TriggerSettings = TriggerSettings()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'stepwise.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "stepwise.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def configure_logging(config: Optional[StepwiseConfig] = None) -> None:
    """Apply the ``logging`` section to the root logger."""
    config = config or load_config()
    logging.basicConfig(
        level=config.logging.level.upper(), format=config.logging.format
    )
