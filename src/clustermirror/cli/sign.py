"""Signing helper: sign."""

from __future__ import annotations

import click

from ..errors import ValidationError
from ..signing import sign as sign_message
from ..storage import validate_hash
from ._common import fail, home_option, load_node_config


def register_sign_commands(main: click.Group) -> None:
    """Register the sign command."""

    @main.command()
    @home_option
    @click.argument("content_hash")
    def sign(home: str, content_hash: str):
        """Print the signed download path for CONTENT_HASH."""
        try:
            validate_hash(content_hash)
        except ValidationError as exc:
            fail(exc)
        config = load_node_config(home)
        signature = sign_message(config.cluster.secret, content_hash)
        click.echo(f"/download/{content_hash}?sign={signature}")
