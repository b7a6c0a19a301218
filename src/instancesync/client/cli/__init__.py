"""Command-line interface for InstanceSync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- status: Show pending changes and queue statistics
- check-online: Probe connectivity
- queue: Inspect and maintain the sync queue
- sync: Apply queued changes to the remote store
- conflicts: Detect and resolve cross-device conflicts
- instance: Create and delete local instances, queueing the cloud change
- config: Manage settings
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from instancesync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from instancesync.client.cli.conflicts import conflicts
from instancesync.client.cli.context import CliContext
from instancesync.client.cli.instance import instance
from instancesync.client.cli.queue import queue
from instancesync.client.cli.settings import config_group
from instancesync.client.cli.status import check_online, status
from instancesync.client.cli.sync import sync


@click.group()
@click.version_option(package_name="instancesync")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Data directory (default: ~/.instancesync).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None, verbose: bool) -> None:
    """InstanceSync - offline-first sync of game instances."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CliContext.load(data_dir or get_config_dir())


# Status commands
cli.add_command(status)
cli.add_command(check_online)

# Queue commands
cli.add_command(queue)
cli.add_command(sync)

# Conflict commands
cli.add_command(conflicts)

# Instance commands
cli.add_command(instance)

# Settings
cli.add_command(config_group)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
