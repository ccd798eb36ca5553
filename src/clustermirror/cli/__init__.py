"""
ClusterMirror CLI — run and inspect a mirror-cluster node.

Each command group lives in its own module and is registered on the
main Click group below.

Entry point: clustermirror.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="clustermirror")
def main():
    """ClusterMirror — content mirror node for an OpenBMCLAPI-style cluster."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .node import register_node_commands
from .sync_cmd import register_sync_commands
from .sign import register_sign_commands

register_setup_commands(main)
register_node_commands(main)
register_sync_commands(main)
register_sign_commands(main)
