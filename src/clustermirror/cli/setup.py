"""Setup commands: init."""

from __future__ import annotations

from pathlib import Path

import click

from ..config import default_config_path, write_default_config
from ._common import console, home_option


def register_setup_commands(main: click.Group) -> None:
    """Register the init command."""

    @main.command()
    @home_option
    @click.option("--force", is_flag=True, help="Overwrite an existing config.yaml.")
    def init(home: str, force: bool):
        """Write a default configuration file.

        Fill in cluster.id and cluster.secret before starting the node.
        """
        path = default_config_path(Path(home).expanduser())
        if path.exists() and not force:
            console.print(f"[yellow]{path} already exists.[/] Use --force to overwrite.")
            return

        write_default_config(path)
        console.print(f"\n  [green]Configuration written:[/] [cyan]{path}[/]")
        console.print("  Set [bold]cluster.id[/] and [bold]cluster.secret[/], then run")
        console.print("  [cyan]clustermirror start[/]\n")
