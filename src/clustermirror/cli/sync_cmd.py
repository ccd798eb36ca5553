"""Sync commands: sync, gc."""

from __future__ import annotations

import click
from rich.table import Table

from ..errors import MirrorError
from ._common import console, fail, home_option, load_node_config


def _build_reconciler(home: str):
    from ..broker import CredentialBroker
    from ..faults import FaultGovernor
    from ..reconcile import Reconciler
    from ..storage import create_store

    config = load_node_config(home)
    store = create_store(config.storage, timeout=config.sync.request_timeout_seconds)
    broker = CredentialBroker(
        config.cluster.id,
        config.cluster.secret,
        server_url=config.cluster.server_url,
        timeout=config.sync.request_timeout_seconds,
    )
    governor = FaultGovernor(threshold=config.fault_threshold)
    reconciler = Reconciler(
        store,
        broker,
        governor=governor,
        server_url=config.cluster.server_url,
        tuning=config.sync,
    )
    return store, broker, reconciler


def register_sync_commands(main: click.Group) -> None:
    """Register the one-shot sync and gc commands."""

    @main.command()
    @home_option
    def sync(home: str):
        """Run one sync against the authority and exit."""
        store, broker, reconciler = _build_reconciler(home)
        try:
            store.init()
            with console.status("Syncing..."):
                result = reconciler.sync()
        except MirrorError as exc:
            fail(exc)
        finally:
            broker.stop()

        table = Table(title=f"Sync ({store.name} store)", show_header=False)
        table.add_column("", style="bold")
        table.add_column("", justify="right")
        table.add_row("Manifest entries", str(result.total))
        table.add_row("Missing", str(result.missing))
        table.add_row("Downloaded", f"[green]{result.succeeded}[/]")
        table.add_row("Failed", f"[red]{result.failed}[/]" if result.failed else "0")
        console.print()
        console.print(table)
        console.print()

    @main.command()
    @home_option
    @click.option("--dry-run", is_flag=True, help="Only count what would be deleted.")
    def gc(home: str, dry_run: bool):
        """Delete stored objects the authority no longer lists."""
        store, broker, reconciler = _build_reconciler(home)
        try:
            store.init()
            count = reconciler.collect_garbage(dry_run=dry_run)
        except MirrorError as exc:
            fail(exc)
        finally:
            broker.stop()

        verb = "would be deleted" if dry_run else "deleted"
        console.print(f"\n  [green]GC finished:[/] {count} object(s) {verb}\n")
