"""Node commands: start, status."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.panel import Panel

from ..errors import MirrorError
from ._common import console, fail, home_option, load_node_config


def register_node_commands(main: click.Group) -> None:
    """Register the node lifecycle commands."""

    @main.command()
    @home_option
    def start(home: str):
        """Start the node in the foreground.

        Initializes the store, connects to the authority, runs an initial
        sync and serves signed downloads until SIGTERM or Ctrl+C.
        """
        from ..node import MirrorNode, is_running

        home_path = Path(home).expanduser()
        if is_running(home_path):
            console.print("[yellow]Node is already running.[/]")
            sys.exit(0)

        config = load_node_config(home)
        node = MirrorNode(config, home=home_path)

        console.print(f"\n  [green]Starting node[/] [bold]{config.cluster.id}[/]")
        console.print(f"  Store: {node.store.name} | Port: [cyan]{config.cluster.port}[/]")
        console.print(f"  Log: {home_path / 'logs' / 'node.log'}")
        console.print(f"  PID: {os.getpid()}")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")

        try:
            node.start()
        except MirrorError as exc:
            fail(exc)
        node.run_forever()

    @main.command()
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def status(home: str, json_out: bool):
        """Show the status of a running node."""
        from ..node import get_node_status, is_running, read_pid

        home_path = Path(home).expanduser()
        if not is_running(home_path):
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Node is not running.[/]\n")
            return

        config = load_node_config(home, credentials=False)
        state = get_node_status(config.cluster.port)
        if json_out:
            click.echo(json.dumps(
                state or {"running": True, "pid": read_pid(home_path), "api": "unreachable"},
                indent=2,
            ))
            return

        if not state:
            console.print(f"\n  [yellow]Node PID {read_pid(home_path)} is running "
                          "but /status is unreachable.[/]\n")
            return

        last = state.get("last_result") or {}
        lines = [
            f"PID: [cyan]{state.get('pid')}[/]",
            f"Uptime: {int(state.get('uptime_seconds', 0))}s",
            f"Syncs completed: {state.get('syncs_completed', 0)}",
            f"Last sync: {state.get('last_sync') or '[dim]never[/]'}",
        ]
        if last:
            lines.append(
                f"Last result: {last.get('succeeded', 0)} ok, "
                f"{last.get('failed', 0)} failed of {last.get('missing', 0)} missing"
            )
        for err in state.get("recent_errors", [])[-3:]:
            lines.append(f"[red]{err}[/]")

        console.print()
        console.print(Panel("\n".join(lines), title="Mirror Node", border_style="green"))
        console.print()
