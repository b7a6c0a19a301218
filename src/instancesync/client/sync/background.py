"""Background queue draining.

This module provides:
- BackgroundSyncOptions: Schedule settings
- BackgroundSyncStatus: Snapshot returned by get_status()
- BackgroundSync: Periodic, startup, shutdown and manual drains

Triggers:
    startup   once, shortly after start() (sync_on_startup)
    periodic  every interval_minutes; skipped if the last sync finished
              less than min_spacing seconds ago
    manual    sync_now()
    shutdown  once, from stop() (sync_on_shutdown)

Events delivered to subscribers as (event, data):
    "started", "completed", "error", "action-failed"
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from collections.abc import Callable

    from instancesync.client.connectivity import ConnectivityMonitor
    from instancesync.client.sync.queue import ActionQueue
    from instancesync.client.sync.types import QueueEventListener

logger = logging.getLogger(__name__)

PERIODIC_JOB_ID = "background-sync"
STARTUP_JOB_ID = "background-sync-startup"


@dataclass
class BackgroundSyncOptions:
    """Schedule settings for BackgroundSync."""

    enabled: bool = True
    interval_minutes: float = 15
    sync_on_startup: bool = True
    sync_on_shutdown: bool = True
    startup_delay: float = 5.0  # seconds
    min_spacing: float = 300.0  # seconds between periodic syncs


@dataclass
class BackgroundSyncStatus:
    """Current state of the background sync service."""

    is_running: bool
    sync_in_progress: bool
    last_sync_time: float | None
    options: BackgroundSyncOptions

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BackgroundSync:
    """Drains the action queue on a schedule."""

    def __init__(
        self,
        queue: ActionQueue,
        monitor: ConnectivityMonitor,
        options: BackgroundSyncOptions | None = None,
        scheduler: BackgroundScheduler | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the service.

        Args:
            queue: Queue to drain.
            monitor: Connectivity monitor; syncs are skipped while offline.
            options: Schedule settings.
            scheduler: Shared APScheduler instance (one is created if None).
            clock: Time source (seconds since the epoch).
        """
        self._queue = queue
        self._monitor = monitor
        self._options = options or BackgroundSyncOptions()
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._clock = clock

        self._lock = threading.Lock()
        self._is_running = False
        self._sync_in_progress = False
        self._last_sync_time: float | None = None
        self._listeners: list[QueueEventListener] = []
        self._queue_unsubscribe: Callable[[], None] | None = None

    # === Lifecycle ===

    def start(self) -> None:
        """Start periodic sync and schedule the startup sync."""
        if not self._options.enabled or self._is_running:
            return
        self._is_running = True
        logger.info("Starting background sync")

        self._queue_unsubscribe = self._queue.subscribe_events(self._on_queue_event)

        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(daemon=True)
        if self._options.sync_on_startup:
            run_at = datetime.now() + timedelta(seconds=self._options.startup_delay)
            self._scheduler.add_job(
                self._perform_sync,
                DateTrigger(run_date=run_at),
                args=["startup"],
                id=STARTUP_JOB_ID,
                replace_existing=True,
            )
        self._schedule_periodic()
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()

    def stop(self) -> None:
        """Stop scheduling and run the shutdown sync if enabled."""
        if not self._is_running:
            return
        logger.info("Stopping background sync")
        self._is_running = False

        if self._scheduler is not None:
            for job_id in (PERIODIC_JOB_ID, STARTUP_JOB_ID):
                if self._scheduler.get_job(job_id):
                    self._scheduler.remove_job(job_id)
            if self._owns_scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
                self._scheduler = None

        if self._options.sync_on_shutdown:
            self._perform_sync("shutdown")

        if self._queue_unsubscribe is not None:
            self._queue_unsubscribe()
            self._queue_unsubscribe = None

    def _schedule_periodic(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.get_job(PERIODIC_JOB_ID):
            self._scheduler.remove_job(PERIODIC_JOB_ID)
        if self._options.interval_minutes <= 0:
            return
        self._scheduler.add_job(
            self._perform_periodic_sync,
            IntervalTrigger(minutes=self._options.interval_minutes),
            id=PERIODIC_JOB_ID,
            name="Periodic queue drain",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Periodic sync scheduled every %s minutes", self._options.interval_minutes)

    # === Sync ===

    def sync_now(self) -> bool:
        """Run a manual sync.

        Returns:
            True if a drain ran.
        """
        return self._perform_sync("manual")

    def _perform_periodic_sync(self) -> None:
        if self._last_sync_time is not None:
            since_last = self._clock() - self._last_sync_time
            if since_last < self._options.min_spacing:
                logger.debug("Skipping periodic sync, last sync %.0fs ago", since_last)
                return
        self._perform_sync("periodic")

    def _perform_sync(self, trigger: str) -> bool:
        with self._lock:
            if self._sync_in_progress:
                logger.info("Sync already in progress, skipping %s sync", trigger)
                return False
            self._sync_in_progress = True

        try:
            if self._monitor.is_offline:
                logger.info("Offline, skipping %s sync", trigger)
                return False

            self._emit("started", {"trigger": trigger, "timestamp": self._clock()})
            try:
                result = self._queue.process_queue()
            except Exception as e:
                logger.exception("Background sync failed (%s)", trigger)
                self._emit("error", {"trigger": trigger, "error": str(e)})
                return False

            if not result.ran:
                logger.info("Queue drain already active, %s sync skipped", trigger)
                return False

            self._last_sync_time = self._clock()
            self._emit(
                "completed",
                {
                    "trigger": trigger,
                    "timestamp": self._last_sync_time,
                    "processed": result.attempted,
                    "failed": len(result.failed),
                },
            )
            logger.info("%s sync completed (%d actions attempted)", trigger.capitalize(), result.attempted)
            return True
        finally:
            with self._lock:
                self._sync_in_progress = False

    # === Events and status ===

    def subscribe(self, listener: QueueEventListener) -> Callable[[], None]:
        """Subscribe to sync events.

        Returns:
            Unsubscribe function, safe to call more than once.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _on_queue_event(self, event: str, data: dict[str, Any]) -> None:
        if event == "action-failed":
            self._emit("action-failed", data)

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, data)
            except Exception:
                logger.exception("Background sync listener %r failed", listener)

    def get_status(self) -> BackgroundSyncStatus:
        """Get the current service status."""
        return BackgroundSyncStatus(
            is_running=self._is_running,
            sync_in_progress=self._sync_in_progress,
            last_sync_time=self._last_sync_time,
            options=replace(self._options),
        )

    def update_options(self, **changes: Any) -> BackgroundSyncOptions:
        """Change settings, rescheduling the periodic job if needed.

        Raises:
            TypeError: If an unknown option is given.
        """
        self._options = replace(self._options, **changes)
        logger.info("Background sync options updated: %s", changes)

        if not self._options.enabled and self._is_running:
            self.stop()
        elif "interval_minutes" in changes and self._is_running:
            self._schedule_periodic()
        return replace(self._options)
