"""
Configuration loader — reads stackwire.yml into domain models.

Reads YAML, validates it against the Pydantic models and returns a
``DeploymentConfig``. The loader is deliberately thin: stacks and
resources are validated structurally here, and each resource type
validates its own config later, before any engine call.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from stackwire.core.errors import ConfigError
from stackwire.core.models.deployment import DeploymentConfig

logger = logging.getLogger(__name__)

CONFIG_FILE = "stackwire.yml"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for stackwire.yml starting from the given directory, walking up."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_deployment(path: Path | None = None) -> DeploymentConfig:
    """Load and validate a deployment configuration.

    Args:
        path: Explicit path to stackwire.yml. If None, searches upward.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(f"No {CONFIG_FILE} found. Specify one with --config.")

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading deployment config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    return parse_deployment(raw, source=str(path))


def parse_deployment(raw: str, source: str = "<string>") -> DeploymentConfig:
    """Validate a YAML document into a ``DeploymentConfig``."""
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {source}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {source}, got {type(data).__name__}")

    try:
        config = DeploymentConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid deployment configuration in {source}: {e}") from e

    logger.info("Loaded deployment '%s' with %d stacks", config.project, len(config.stacks))
    return config


def deployment_root(config_path: Path) -> Path:
    """Directory holding the config file; .state/ lives next to it."""
    return config_path.parent.resolve()
