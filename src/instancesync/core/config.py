"""Shared configuration classes for instancesync.

This module defines the configuration dataclasses consumed by the
connectivity monitor, the request cache, the action queue and the
remote store client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_PROBE_TARGETS = (
    "https://www.google.com/favicon.ico",
    "https://cloudflare.com/cdn-cgi/trace",
)


@dataclass
class RemoteConfig:
    """Configuration for connecting to the remote instance store.

    Attributes:
        url: Base URL of the remote store (e.g., "https://xyz.supabase.co").
        api_key: Public API key sent with every request.
        timeout: Request timeout in seconds.
    """

    url: str
    api_key: str = ""
    timeout: float = 30.0

    def __post_init__(self) -> None:
        """Normalize remote URL."""
        self.url = self.url.rstrip("/")

    @property
    def rest_url(self) -> str:
        """Get the base URL for table endpoints."""
        return f"{self.url}/rest/v1"

    @property
    def auth_url(self) -> str:
        """Get the base URL for auth endpoints."""
        return f"{self.url}/auth/v1"


@dataclass
class SyncConfig:
    """Tunables for the offline sync subsystem.

    Attributes:
        data_dir: Directory holding the queue, cache and snapshot databases.
        probe_targets: URLs probed in order to test reachability.
        probe_interval: Seconds between periodic connectivity probes.
        probe_timeout: Upper bound in seconds for one full probe.
        reconnect_delay: Seconds to wait after coming online before draining.
        cache_ttl: Default cache entry lifetime in seconds.
        backoff_base: First retry delay in seconds.
        backoff_cap: Maximum retry delay in seconds.
        max_attempts: Automatic attempts before an action is marked failed.
        stuck_timeout: Seconds after which a processing action is considered stuck.
        queue_max_size: Maximum number of actions held by the queue.
        sync_interval: Seconds between background drains (0 disables).
        min_sync_spacing: Minimum seconds between two periodic drains.
        session_timeout: Seconds a session refresh may take before failing.
    """

    data_dir: Path = field(default_factory=lambda: Path.home() / ".instancesync")
    probe_targets: tuple[str, ...] = DEFAULT_PROBE_TARGETS
    probe_interval: float = 30.0
    probe_timeout: float = 3.0
    reconnect_delay: float = 2.0
    cache_ttl: float = 24 * 60 * 60
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    max_attempts: int = 5
    stuck_timeout: float = 60.0
    queue_max_size: int = 500
    sync_interval: float = 15 * 60
    min_sync_spacing: float = 5 * 60
    session_timeout: float = 3.0

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @property
    def queue_db_path(self) -> Path:
        """SQLite file holding the persisted action list."""
        return self.data_dir / "queue.db"

    @property
    def cache_db_path(self) -> Path:
        """SQLite file holding cached read responses."""
        return self.data_dir / "cache.db"

    @property
    def state_db_path(self) -> Path:
        """SQLite file holding sync snapshots and the resolution journal."""
        return self.data_dir / "state.db"

    @property
    def instances_dir(self) -> Path:
        """Default location of local instance folders."""
        return self.data_dir / "instances"
