"""Instance commands for InstanceSync CLI.

Commands:
- instance list: List local instances
- instance create: Create a local instance and queue its upload
- instance delete: Delete a local instance and queue its cloud deletion

Changes are applied locally first and queued; they are sent right away
when the remote store is configured and reachable, otherwise on the next
'instancesync sync'.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import click

from instancesync.client.api import RemoteStoreClient
from instancesync.client.cli.context import CliContext, pass_context
from instancesync.client.connectivity import ConnectivityMonitor
from instancesync.client.local_store import FileLocalStore
from instancesync.client.sync.service import SyncService
from instancesync.client.sync.types import ActionType, EnqueueResult
from instancesync.core.config import RemoteConfig
from instancesync.core.types import Instance


@contextmanager
def _open_service(
    ctx: CliContext, local: FileLocalStore
) -> Iterator[tuple[SyncService, ConnectivityMonitor]]:
    """Build a sync service; without a remote config it only queues."""
    sync_config = ctx.sync_config
    remote_config = ctx.remote_config
    if remote_config is None:
        monitor = ConnectivityMonitor(sync_config, initially_offline=True)
        remote = RemoteStoreClient(RemoteConfig(url=""))
    else:
        monitor = ConnectivityMonitor(sync_config)
        remote = ctx.open_remote(remote_config)
    service = SyncService(sync_config, remote, local, monitor)
    try:
        yield service, monitor
    finally:
        service.close()
        monitor.shutdown()
        remote.close()


def _send(
    ctx: CliContext, service: SyncService, monitor: ConnectivityMonitor, result: EnqueueResult
) -> None:
    """Drain the queued action now if the remote store is reachable."""
    if ctx.remote_config is None or not monitor.refresh():
        click.echo("Queued; will sync when online.")
        return
    drained = service.drain()
    if result.action.id in drained.completed:
        click.echo("Synced.")
    elif result.action.id in drained.failed:
        action = service.queue.get_action(result.action.id)
        click.echo(f"Error: Sync failed: {action.last_error}", err=True)
        sys.exit(1)
    else:
        click.echo("Queued; will retry.")


def _payload(user_id: str, instance: Instance | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"user_id": user_id}
    if instance is not None:
        payload["instance"] = instance.to_dict()
    return payload


@click.group()
def instance() -> None:
    """Create and delete instances on this device."""


@instance.command("list")
@pass_context
def list_cmd(ctx: CliContext) -> None:
    """List local instances."""
    listing = ctx.open_local().list()
    if not listing.success:
        click.echo(f"Error: Could not list instances: {listing.error}", err=True)
        sys.exit(1)
    if not listing.instances:
        click.echo("No instances.")
        return
    for item in sorted(listing.instances, key=lambda i: i.name):
        click.echo(f"{item.name}  {item.version}/{item.loader}")


@instance.command()
@click.argument("name")
@click.option("--version", "game_version", required=True, help="Game version, e.g. 1.20.1.")
@click.option("--loader", default="vanilla", show_default=True, help="Mod loader.")
@click.option("--user", "-u", default=None, help="User id (default: configured user_id).")
@pass_context
def create(ctx: CliContext, name: str, game_version: str, loader: str, user: str | None) -> None:
    """Create an instance and queue its upload."""
    user_id = ctx.resolve_user(user)
    local = ctx.open_local()
    created = local.create(name, game_version, loader)
    if not created.success:
        click.echo(f"Error: {created.error}", err=True)
        sys.exit(1)
    click.echo(f"Created {name} ({game_version}, {loader})")

    with _open_service(ctx, local) as (service, monitor):
        result = service.submit(ActionType.CREATE, name, _payload(user_id, created.instance))
        if not result.ok:
            local.delete(created.instance.id)
            click.echo(f"Error: Could not queue upload: {result.message}", err=True)
            sys.exit(1)
        _send(ctx, service, monitor, result)


@instance.command()
@click.argument("name")
@click.option("--user", "-u", default=None, help="User id (default: configured user_id).")
@pass_context
def delete(ctx: CliContext, name: str, user: str | None) -> None:
    """Delete an instance and queue its removal from the cloud."""
    user_id = ctx.resolve_user(user)
    local = ctx.open_local()
    listing = local.list()
    if not listing.success:
        click.echo(f"Error: Could not list instances: {listing.error}", err=True)
        sys.exit(1)
    target = next((i for i in listing.instances if i.name == name), None)
    if target is None:
        click.echo(f"Error: No local instance named {name}", err=True)
        sys.exit(1)

    with _open_service(ctx, local) as (service, monitor):
        result = service.submit(ActionType.DELETE, name, _payload(user_id))
        if not result.ok:
            click.echo(f"Error: Could not queue deletion: {result.message}", err=True)
            sys.exit(1)
        deleted = local.delete(target.id)
        if not deleted.success:
            service.queue.discard(result.action.id)
            click.echo(f"Error: {deleted.error}", err=True)
            sys.exit(1)
        click.echo(f"Deleted {name}")
        _send(ctx, service, monitor, result)
