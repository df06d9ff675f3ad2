"""Engine configuration.

Loaded from .canvasflow/config.yaml when present, then overridden by
CANVASFLOW_* environment variables.
"""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".canvasflow"
CONFIG_FILE = "config.yaml"

ENV_OVERRIDES = {
    "CANVASFLOW_BASE_URL": "base_url",
    "CANVASFLOW_DB_PATH": "db_path",
    "CANVASFLOW_WORKER_TIMEOUT": "worker_timeout",
    "CANVASFLOW_LOG_LEVEL": "log_level",
    "CANVASFLOW_GRAPH_CACHE_SIZE": "graph_cache_size",
}


class ConfigError(Exception):
    """Raised when the configuration file or environment is invalid."""


class EngineConfig(BaseModel):
    """Runtime settings for the orchestrator, API and CLI"""

    base_url: str = "http://localhost:8000"  # Public URL workers call back to
    db_path: str = f"{CONFIG_DIR}/state.db"
    worker_timeout: float = Field(default=30.0, gt=0)  # Seconds allowed for a fire hand-off
    graph_cache_size: int = Field(default=256, ge=1)  # Run execution graphs kept in memory
    log_level: str = "INFO"


def load_config(root: str | Path | None = None) -> EngineConfig:
    """
    Load configuration for a project directory.

    Raises:
        ConfigError: if the YAML is malformed or a value fails validation
    """
    root = Path(root) if root is not None else Path.cwd()
    config_path = root / CONFIG_DIR / CONFIG_FILE

    data: dict = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        logger.debug(f"Loaded config from {config_path}")

    for env_var, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[key] = value

    try:
        config = EngineConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    # Relative database paths live under the project root
    if not Path(config.db_path).is_absolute():
        config.db_path = str(root / config.db_path)
    return config
