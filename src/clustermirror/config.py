"""
Configuration loading.

The node reads ``config.yaml`` from its home directory. A missing file
is replaced by a default one and the operator is asked to fill in
the cluster credentials before starting again.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from . import NODE_HOME
from .errors import ConfigError
from .models import NodeConfig

logger = logging.getLogger("clustermirror.config")

CONFIG_FILE = "config.yaml"


def node_home(home: Optional[Path | str] = None) -> Path:
    """Resolve the node home directory."""
    return Path(home or NODE_HOME).expanduser()


def default_config_path(home: Optional[Path | str] = None) -> Path:
    return node_home(home) / CONFIG_FILE


def write_default_config(path: Path) -> Path:
    """Write a default configuration file.

    Args:
        path: Destination file. Parent directories are created.

    Returns:
        The path written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = NodeConfig().model_dump(mode="json")
    path.write_text(
        yaml.dump(data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    logger.info("Default configuration written to %s", path)
    return path


def load_config(path: Path, create: bool = True) -> NodeConfig:
    """Load and validate the node configuration.

    Args:
        path: Path to the YAML configuration file.
        create: Write a default file when ``path`` does not exist.

    Returns:
        Validated NodeConfig.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    if not path.exists():
        if create:
            write_default_config(path)
            raise ConfigError(
                f"Configuration file {path} did not exist; a default was "
                "written. Edit it and start again."
            )
        raise ConfigError(f"Configuration file {path} not found")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    try:
        return NodeConfig(**data)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def require_credentials(config: NodeConfig) -> None:
    """Ensure the cluster id and secret are set.

    Raises:
        ConfigError: If either is empty.
    """
    missing = [
        name for name in ("id", "secret")
        if not getattr(config.cluster, name)
    ]
    if missing:
        raise ConfigError(
            "cluster." + " and cluster.".join(missing) + " must be set"
        )
