"""Core module - Shared configuration and types."""

from instancesync.core.config import DEFAULT_PROBE_TARGETS, RemoteConfig, SyncConfig
from instancesync.core.types import Instance, SyncState

__all__ = [
    # Config
    "DEFAULT_PROBE_TARGETS",
    "RemoteConfig",
    "SyncConfig",
    # Types
    "Instance",
    "SyncState",
]
