"""Status commands for InstanceSync CLI.

Commands:
- status: Show queue state
- check-online: Probe connectivity
"""

from __future__ import annotations

import sys
from datetime import datetime

import click

from instancesync.client.cli.context import CliContext, pass_context
from instancesync.client.connectivity import ConnectivityMonitor


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@click.command()
@pass_context
def status(ctx: CliContext) -> None:
    """Show pending changes and queue statistics."""
    queue = ctx.open_queue()
    try:
        stats = queue.get_stats()
        if queue.is_corrupted:
            click.echo(f"Warning: queue storage was corrupted ({queue.storage_error})", err=True)
        click.echo(f"Pending changes: {queue.get_pending_count()}")
        click.echo(
            f"Actions: {stats.total} total, {stats.pending} pending, "
            f"{stats.processing} processing, {stats.failed} failed, "
            f"{stats.completed} completed"
        )
        click.echo(f"Average retries: {stats.avg_retry_count}")
        click.echo(f"Oldest action: {_format_time(stats.oldest_action)}")
        click.echo(f"Last sync: {_format_time(queue.last_sync_time)}")
    finally:
        queue.close()


@click.command("check-online")
@pass_context
def check_online(ctx: CliContext) -> None:
    """Probe connectivity (exit code 1 when offline)."""
    monitor = ConnectivityMonitor(ctx.sync_config)
    try:
        online = monitor.check_online()
    finally:
        monitor.shutdown()
    click.echo("ONLINE" if online else "OFFLINE")
    if not online:
        sys.exit(1)
