"""Shared state and component builders for CLI commands."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from instancesync.client.api import RemoteStoreClient
from instancesync.client.cli.config import (
    build_remote_config,
    build_sync_config,
    get_instances_dir,
    load_config,
)
from instancesync.client.connectivity import ConnectivityMonitor
from instancesync.client.local_store import FileLocalStore
from instancesync.client.session import TokenStore
from instancesync.client.sync.executor import RemoteActionExecutor
from instancesync.client.sync.queue import ActionQueue, QueueStorage
from instancesync.core.config import RemoteConfig, SyncConfig


@dataclass
class CliContext:
    """Per-invocation settings shared by commands."""

    data_dir: Path
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(cls, data_dir: Path) -> CliContext:
        return cls(data_dir=data_dir, settings=load_config(data_dir))

    @property
    def sync_config(self) -> SyncConfig:
        try:
            return build_sync_config(self.settings, self.data_dir)
        except (TypeError, ValueError) as e:
            click.echo(f"Error: Invalid configuration: {e}", err=True)
            sys.exit(1)

    @property
    def remote_config(self) -> RemoteConfig | None:
        return build_remote_config(self.settings)

    def require_remote_config(self) -> RemoteConfig:
        """Get the remote config or exit with an error."""
        remote_config = self.remote_config
        if remote_config is None:
            click.echo(
                "Error: Remote store not configured. "
                "Run 'instancesync config set remote_url URL' first.",
                err=True,
            )
            sys.exit(1)
        return remote_config

    def resolve_user(self, user: str | None) -> str:
        """Get the user id from the option or config, or exit."""
        user_id = user or self.settings.get("user_id")
        if not user_id:
            click.echo("Error: No user given. Use --user or set user_id.", err=True)
            sys.exit(1)
        return str(user_id)

    def open_remote(self, remote_config: RemoteConfig) -> RemoteStoreClient:
        """Create a remote client using the stored session, if any."""
        tokens = TokenStore().load()
        return RemoteStoreClient(remote_config, tokens.access_token if tokens else None)

    def open_local(self) -> FileLocalStore:
        return FileLocalStore(get_instances_dir(self.settings, self.sync_config))

    def open_queue(self) -> ActionQueue:
        """Open the persisted queue for inspection and maintenance.

        The queue is bound to an offline monitor and never drains.
        """
        sync_config = self.sync_config
        remote_config = self.remote_config or RemoteConfig(url="")
        monitor = ConnectivityMonitor(sync_config, initially_offline=True)
        return ActionQueue(
            QueueStorage(sync_config.queue_db_path),
            RemoteActionExecutor(RemoteStoreClient(remote_config)),
            monitor,
            sync_config,
        )


pass_context = click.make_pass_decorator(CliContext)
