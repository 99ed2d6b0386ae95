"""Engine configuration loading.

Precedence (highest first): environment variables, the first config file found
(``./.stitch/config.yaml`` then ``~/.stitch/config.yaml``, or an explicit path),
then model defaults.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from stitch.core.workers import WorkerRegistry

logger = logging.getLogger(__name__)

ENV_DB_PATH = "STITCH_DB_PATH"
ENV_BASE_URL = "STITCH_BASE_URL"


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class EngineConfig(BaseModel):
    db_path: Path = Path(".stitch/state.db")
    base_url: str = "http://localhost:3000"
    dispatch_timeout: float = Field(default=30.0, gt=0)
    worker_timeout: float | None = Field(default=None, gt=0)  # seconds; None disables the watchdog
    workers_file: Path | None = None

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def callback_url(self, run_id: str, node_key: str) -> str:
        return f"{self.base_url}/api/stitch/callback/{run_id}/{node_key}"

    def load_registry(self) -> WorkerRegistry:
        extra = [self.workers_file] if self.workers_file else []
        return WorkerRegistry.load(extra)


SEARCH_PATHS = [
    Path(".stitch/config.yaml"),
    Path.home() / ".stitch/config.yaml",
]


def load_config(path: Path | None = None) -> EngineConfig:
    """Load configuration from ``path`` or the first existing search path."""
    data: dict = {}
    source = path if path is not None else next((p for p in SEARCH_PATHS if p.exists()), None)

    if source is not None:
        try:
            with open(source, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {source}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {source} must be a mapping")
        logger.debug(f"Loaded config from {source}")

    if os.environ.get(ENV_DB_PATH):
        data["db_path"] = os.environ[ENV_DB_PATH]
    if os.environ.get(ENV_BASE_URL):
        data["base_url"] = os.environ[ENV_BASE_URL]

    try:
        return EngineConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
