"""Configuration utilities for the InstanceSync CLI.

This module provides shared configuration functions used across CLI commands.
User settings live in config.json inside the data directory
(~/.instancesync unless --data-dir is given).
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from instancesync.core.config import RemoteConfig, SyncConfig

# Settable keys and the converter applied to their string value
CONFIG_KEYS: dict[str, Callable[[str], Any]] = {
    "remote_url": str,
    "api_key": str,
    "user_id": str,
    "instances_dir": str,
    "probe_interval": float,
    "probe_timeout": float,
    "reconnect_delay": float,
    "cache_ttl": float,
    "backoff_base": float,
    "backoff_cap": float,
    "max_attempts": int,
    "stuck_timeout": float,
    "queue_max_size": int,
    "sync_interval": float,
    "min_sync_spacing": float,
    "session_timeout": float,
}

# Keys that are not SyncConfig fields
_NON_SYNC_KEYS = {"remote_url", "api_key", "user_id", "instances_dir"}


def get_config_dir() -> Path:
    """Get the data directory for InstanceSync.

    Returns:
        Path to ~/.instancesync.
    """
    return Path.home() / ".instancesync"


def get_config_file(config_dir: Path | None = None) -> Path:
    """Get the path to the config file."""
    return (config_dir or get_config_dir()) / "config.json"


def load_config(config_dir: Path | None = None) -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file(config_dir)
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any], config_dir: Path | None = None) -> None:
    """Save configuration to config file."""
    config_file = get_config_file(config_dir)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def parse_config_value(key: str, value: str) -> Any:
    """Convert a command-line value for a config key.

    Raises:
        KeyError: If the key is unknown.
        ValueError: If the value does not convert.
    """
    return CONFIG_KEYS[key](value)


def build_sync_config(config: dict[str, Any], data_dir: Path) -> SyncConfig:
    """Build a SyncConfig from stored settings."""
    overrides = {
        key: CONFIG_KEYS[key](value)
        for key, value in config.items()
        if key in CONFIG_KEYS and key not in _NON_SYNC_KEYS
    }
    return SyncConfig(data_dir=data_dir, **overrides)


def build_remote_config(config: dict[str, Any]) -> RemoteConfig | None:
    """Build a RemoteConfig, or None if no remote URL is set."""
    if not config.get("remote_url"):
        return None
    return RemoteConfig(url=config["remote_url"], api_key=config.get("api_key", ""))


def get_instances_dir(config: dict[str, Any], sync_config: SyncConfig) -> Path:
    """Get the local instances folder (configured or inside the data dir)."""
    if config.get("instances_dir"):
        return Path(config["instances_dir"]).expanduser().resolve()
    return sync_config.instances_dir
