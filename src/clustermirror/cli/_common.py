"""Shared utilities for the CLI command modules.

Provides the Rich console, the ``--home`` option and configuration
loading with uniform error reporting.
"""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from .. import NODE_HOME
from ..config import default_config_path, load_config, require_credentials
from ..errors import MirrorError
from ..models import NodeConfig

console = Console()

home_option = click.option(
    "--home",
    default=NODE_HOME,
    type=click.Path(),
    show_default=True,
    help="Node home directory (holds config.yaml, logs and the PID file).",
)


def fail(exc: MirrorError | str) -> None:
    """Print an error in red and exit with status 1."""
    console.print(f"[bold red]Error:[/] {escape(str(exc))}")
    sys.exit(1)


def load_node_config(home: str, credentials: bool = True) -> NodeConfig:
    """Load ``config.yaml`` from ``home``, exiting on any problem.

    Args:
        home: Node home directory.
        credentials: Also require cluster.id and cluster.secret.
    """
    path = default_config_path(Path(home).expanduser())
    try:
        config = load_config(path)
        if credentials:
            require_credentials(config)
    except MirrorError as exc:
        fail(exc)
    return config
