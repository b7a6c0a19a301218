"""Configuration commands for InstanceSync CLI.

Commands:
- config set: Store a setting
- config show: Print stored settings
"""

from __future__ import annotations

import sys

import click

from instancesync.client.cli.config import CONFIG_KEYS, parse_config_value, save_config
from instancesync.client.cli.context import CliContext, pass_context

_SECRET_KEYS = {"api_key"}


@click.group("config")
def config_group() -> None:
    """Manage InstanceSync settings."""


@config_group.command("set")
@click.argument("key", type=click.Choice(sorted(CONFIG_KEYS)))
@click.argument("value")
@pass_context
def set_cmd(ctx: CliContext, key: str, value: str) -> None:
    """Store a setting in config.json."""
    try:
        parsed = parse_config_value(key, value)
    except ValueError:
        click.echo(f"Error: Invalid value for {key}: {value}", err=True)
        sys.exit(1)

    ctx.settings[key] = parsed
    save_config(ctx.settings, ctx.data_dir)
    click.echo(f"{key} = {'***' if key in _SECRET_KEYS else parsed}")


@config_group.command("show")
@pass_context
def show(ctx: CliContext) -> None:
    """Print stored settings."""
    if not ctx.settings:
        click.echo("No settings stored.")
        return
    for key in sorted(ctx.settings):
        value = "***" if key in _SECRET_KEYS else ctx.settings[key]
        click.echo(f"{key} = {value}")
