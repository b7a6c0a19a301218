"""Conflict commands for InstanceSync CLI.

Commands:
- conflicts detect: List instances that differ between this device and the cloud
- conflicts resolve: Resolve them with a policy
"""

from __future__ import annotations

import sys
from datetime import datetime

import click

from instancesync.client.cli.context import CliContext, pass_context
from instancesync.client.connectivity import ConnectivityMonitor
from instancesync.client.sync.conflict import Conflict, ResolutionPolicy
from instancesync.client.sync.service import SyncService


def _format_ms(timestamp: int) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp / 1000).strftime("%Y-%m-%d %H:%M")


def _describe(conflict: Conflict) -> str:
    local = conflict.local_instance
    cloud = conflict.cloud_instance
    local_desc = f"{local.version}/{local.loader}" if local else "-"
    cloud_desc = f"{cloud.version}/{cloud.loader}" if cloud else "-"
    return (
        f"{conflict.instance_name}  [{conflict.type.value}]  "
        f"local={local_desc} ({_format_ms(conflict.local_updated_at)})  "
        f"cloud={cloud_desc} ({_format_ms(conflict.cloud_updated_at)})"
    )


@click.group()
def conflicts() -> None:
    """Detect and resolve cross-device conflicts."""


@conflicts.command()
@click.option("--user", "-u", default=None, help="User id (default: configured user_id).")
@pass_context
def detect(ctx: CliContext, user: str | None) -> None:
    """List conflicts between local and cloud instances."""
    user_id = ctx.resolve_user(user)
    remote = ctx.open_remote(ctx.require_remote_config())
    service = SyncService(ctx.sync_config, remote, ctx.open_local(), ConnectivityMonitor(ctx.sync_config))
    try:
        found = service.detect_conflicts(user_id)
    finally:
        service.close()
        remote.close()

    if not found:
        click.echo("No conflicts.")
        return
    for conflict in found:
        click.echo(_describe(conflict))
    click.echo(f"{len(found)} conflict(s) found.")


@conflicts.command()
@click.option("--user", "-u", default=None, help="User id (default: configured user_id).")
@click.option(
    "--policy",
    "-p",
    type=click.Choice([p.value for p in ResolutionPolicy]),
    required=True,
    help="local: keep this device, cloud: keep the cloud, merge: keep the newest.",
)
@click.option("--name", "-n", "names", multiple=True, help="Only resolve this instance (repeatable).")
@pass_context
def resolve(ctx: CliContext, user: str | None, policy: str, names: tuple[str, ...]) -> None:
    """Resolve conflicts with one policy."""
    user_id = ctx.resolve_user(user)
    remote = ctx.open_remote(ctx.require_remote_config())
    service = SyncService(ctx.sync_config, remote, ctx.open_local(), ConnectivityMonitor(ctx.sync_config))
    try:
        bulk = service.resolve_conflicts(
            user_id, ResolutionPolicy(policy), set(names) if names else None
        )
    finally:
        service.close()
        remote.close()

    for result in bulk.results:
        if result.success:
            applied = result.applied.value if result.applied else policy
            click.echo(f"Resolved {result.instance_name} ({applied})")
        else:
            suffix = " (local copy restored)" if result.rolled_back else ""
            click.echo(f"Failed {result.instance_name}: {result.error}{suffix}", err=True)
    click.echo(f"{bulk.succeeded} resolved, {bulk.failed} failed.")
    if bulk.failed:
        sys.exit(1)
