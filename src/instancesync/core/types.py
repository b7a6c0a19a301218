"""Shared types for instancesync.

This module defines the enums and the instance model shared by the
client components.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class SyncState(str, Enum):
    """Overall sync state of the client.

    Derived from connectivity and queue state, used by the CLI
    and by background sync status reporting.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass
class Instance:
    """A game instance as known locally or remotely.

    Instances are matched across replicas by name: no shared id is
    guaranteed before the first sync. Two unrelated instances that share
    a name are indistinguishable from one edited instance.

    Attributes:
        name: Natural key of the instance.
        version: Game version (e.g., "1.20.4").
        loader: Mod loader ("vanilla", "fabric", "forge", ...).
        id: Replica-specific identifier (local folder id or remote row id).
        created: Creation time in milliseconds since the epoch.
        last_played: Last launch time in milliseconds (0 if never).
        icon: Optional icon URL.
    """

    name: str
    version: str
    loader: str = "vanilla"
    id: str | None = None
    created: int = 0
    last_played: int = 0
    icon: str | None = None

    @property
    def updated_at(self) -> int:
        """Most recent activity timestamp (last played or created)."""
        return max(self.last_played or 0, self.created or 0)

    def same_definition(self, other: Instance) -> bool:
        """Check whether the synchronized fields match."""
        return self.version == other.version and self.loader == other.loader

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "loader": self.loader,
            "created": self.created,
            "lastPlayed": self.last_played,
            "icon": self.icon,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Instance:
        """Create from a dictionary produced by to_dict() or instance.json."""
        return cls(
            name=data["name"],
            version=data["version"],
            loader=data.get("loader") or "vanilla",
            id=data.get("id"),
            created=int(data.get("created") or 0),
            last_played=int(data.get("lastPlayed") or 0),
            icon=data.get("icon"),
        )
