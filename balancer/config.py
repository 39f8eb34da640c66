"""
Replica Router Configuration

Loads router settings from a YAML file.

Example::

    master:
      dsn: sqlite:///data/master.db
      weight: 50
    nodes:
      - dsn: sqlite://replica-1/data/replica1.db
        weight: 50
    cache:
      backend: memory
      lifetime: 600
"""

import os
from pathlib import Path
from typing import Optional, Union
import yaml
from pydantic import ValidationError

from shared.errors import ConfigurationError
from shared.models import RouterSettings

CONFIG_ENV_VAR = "REPLICA_ROUTER_CONFIG"
DEFAULT_CONFIG_PATH = Path("replica-router.yaml")


def resolve_config_path(config_path: Optional[Union[str, Path]] = None) -> Path:
    """Pick the config file: explicit path, then env var, then default."""
    if config_path:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_settings(config_path: Optional[Union[str, Path]] = None) -> RouterSettings:
    """
    Load and validate router settings.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = resolve_config_path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    return parse_settings(config)


def parse_settings(config: dict) -> RouterSettings:
    """Validate a settings mapping."""
    try:
        return RouterSettings.model_validate(config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid router configuration: {e}") from e
