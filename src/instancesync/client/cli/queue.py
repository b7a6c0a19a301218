"""Queue maintenance commands for InstanceSync CLI.

Commands:
- queue list: List queued actions
- queue retry: Retry one or all failed actions
- queue discard: Remove an action
- queue clear-completed / clear-failed: Remove finished actions
- queue export: Dump the queue as JSON
"""

from __future__ import annotations

import sys

import click

from instancesync.client.cli.context import CliContext, pass_context
from instancesync.client.sync.types import ActionStatus


@click.group()
def queue() -> None:
    """Inspect and maintain the sync queue."""


@queue.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in ActionStatus]),
    default=None,
    help="Only show actions with this status.",
)
@pass_context
def list_cmd(ctx: CliContext, status_filter: str | None) -> None:
    """List queued actions in order."""
    action_queue = ctx.open_queue()
    try:
        actions = action_queue.get_actions()
    finally:
        action_queue.close()

    if status_filter:
        actions = [a for a in actions if a.status.value == status_filter]
    if not actions:
        click.echo("Queue is empty.")
        return

    for action in actions:
        line = (
            f"{action.id[:8]}  {action.status.value:<10}  {action.type.value:<7}  "
            f"{action.resource_kind}:{action.resource_key}  retries={action.retry_count}"
        )
        if action.last_error:
            line += f"  error={action.last_error}"
        click.echo(line)


def _match_id(action_ids: list[str], prefix: str) -> str | None:
    matches = [action_id for action_id in action_ids if action_id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


@queue.command()
@click.argument("action_id", required=False)
@pass_context
def retry(ctx: CliContext, action_id: str | None) -> None:
    """Retry a failed action (all failed actions if no ID is given)."""
    action_queue = ctx.open_queue()
    try:
        if action_id is None:
            count = action_queue.retry_all_failed()
        else:
            full_id = _match_id([a.id for a in action_queue.get_actions()], action_id)
            if full_id is None:
                click.echo(f"Error: No unique action matches {action_id}", err=True)
                sys.exit(1)
            count = action_queue.retry(full_id)
    finally:
        action_queue.close()
    click.echo(f"Moved {count} action(s) back to pending.")


@queue.command()
@click.argument("action_id")
@pass_context
def discard(ctx: CliContext, action_id: str) -> None:
    """Remove an action from the queue."""
    action_queue = ctx.open_queue()
    try:
        full_id = _match_id([a.id for a in action_queue.get_actions()], action_id)
        removed = full_id is not None and action_queue.discard(full_id)
    finally:
        action_queue.close()
    if not removed:
        click.echo(f"Error: Could not discard {action_id}", err=True)
        sys.exit(1)
    click.echo(f"Discarded {full_id}.")


@queue.command("clear-completed")
@pass_context
def clear_completed(ctx: CliContext) -> None:
    """Remove completed actions."""
    action_queue = ctx.open_queue()
    try:
        count = action_queue.clear_completed()
    finally:
        action_queue.close()
    click.echo(f"Removed {count} completed action(s).")


@queue.command("clear-failed")
@pass_context
def clear_failed(ctx: CliContext) -> None:
    """Remove failed actions."""
    action_queue = ctx.open_queue()
    try:
        count = action_queue.clear_failed()
    finally:
        action_queue.close()
    click.echo(f"Removed {count} failed action(s).")


@queue.command()
@pass_context
def export(ctx: CliContext) -> None:
    """Print the queue as JSON."""
    action_queue = ctx.open_queue()
    try:
        click.echo(action_queue.export())
    finally:
        action_queue.close()
