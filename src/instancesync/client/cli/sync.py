"""Sync command for InstanceSync CLI.

Commands:
- sync: Drain the queue against the remote store
"""

from __future__ import annotations

import sys

import click

from instancesync.client.cli.context import CliContext, pass_context
from instancesync.client.connectivity import ConnectivityMonitor
from instancesync.client.sync.service import SyncService


@click.command()
@pass_context
def sync(ctx: CliContext) -> None:
    """Apply queued changes to the remote store.

    Also finishes conflict resolutions left incomplete by earlier failures.
    Exits with code 1 when offline or when an action failed for good.
    """
    remote_config = ctx.require_remote_config()
    sync_config = ctx.sync_config

    monitor = ConnectivityMonitor(sync_config)
    remote = ctx.open_remote(remote_config)
    service = SyncService(sync_config, remote, ctx.open_local(), monitor)
    try:
        if not monitor.refresh():
            click.echo(
                f"Offline: {service.queue.get_pending_count()} change(s) remain queued.",
                err=True,
            )
            sys.exit(1)

        result = service.drain()
        if not result.ran:
            click.echo("A sync is already running.")
            return
        resolutions = service.retry_pending_resolutions()

        click.echo(
            f"Synced: {len(result.completed)} completed, {len(result.requeued)} will retry, "
            f"{len(result.failed)} failed, {len(result.skipped)} waiting."
        )
        if resolutions.results:
            click.echo(
                f"Pending resolutions: {resolutions.succeeded} finished, {resolutions.failed} failed."
            )
        if result.stopped_offline:
            click.echo("Connection lost during sync; remaining changes stay queued.", err=True)
        if result.failed:
            sys.exit(1)
    finally:
        service.close()
        monitor.shutdown()
        remote.close()
