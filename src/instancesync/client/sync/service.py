"""Sync service wiring the offline subsystem together.

This module provides:
- SyncStatus: Aggregate state for display
- SyncService: Facade owning the queue, conflict engine and background sync

Data flow:
    submit() -> ActionQueue (persisted) -> drain when online
    drain finished with actions left -> next drain when the first is due
    action applied remotely -> sync snapshot updated
    ConnectivityMonitor offline->online -> session refresh + drain
        after reconnect_delay
    detect_conflicts() / resolve_conflicts() -> ConflictDetector /
        ConflictResolver (sharing the queue's resource locks)

Usage:
    service = SyncService(config, remote, local, monitor)
    service.start()
    result = service.submit(ActionType.CREATE, "My Pack", payload)
    ...
    service.stop()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from instancesync.client.notifications import notify_action_failed
from instancesync.client.sync.background import BackgroundSync, BackgroundSyncOptions
from instancesync.client.sync.conflict import (
    BulkResolutionResult,
    Conflict,
    ConflictDetector,
    ConflictResolver,
    ResolutionJournal,
    ResolutionPolicy,
    SnapshotStore,
)
from instancesync.client.sync.executor import INSTANCE_KIND, RemoteActionExecutor
from instancesync.client.sync.locks import ResourceLocks
from instancesync.client.sync.queue import ActionQueue, QueueStorage
from instancesync.client.sync.types import (
    ActionType,
    DrainResult,
    EnqueueResult,
    QueueStats,
    SyncAction,
)
from instancesync.core.config import SyncConfig
from instancesync.core.types import SyncState

if TYPE_CHECKING:
    from collections.abc import Callable

    from instancesync.client.api import RemoteStore
    from instancesync.client.connectivity import ConnectivityMonitor
    from instancesync.client.local_store import LocalStore
    from instancesync.client.notifications import Notifier
    from instancesync.client.session import SessionManager

logger = logging.getLogger(__name__)

RECONNECT_JOB_ID = "reconnect-drain"
FOLLOWUP_JOB_ID = "followup-drain"
FOLLOWUP_MIN_DELAY = 0.5  # seconds


@dataclass
class SyncStatus:
    """Aggregate sync state."""

    state: SyncState
    is_offline: bool
    pending_count: int
    stats: QueueStats
    last_sync_time: float | None
    storage_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "is_offline": self.is_offline,
            "pending_count": self.pending_count,
            "stats": self.stats.to_dict(),
            "last_sync_time": self.last_sync_time,
            "storage_error": self.storage_error,
        }


class SyncService:
    """Owns the sync engine components for one user profile."""

    def __init__(
        self,
        config: SyncConfig,
        remote: RemoteStore,
        local: LocalStore,
        monitor: ConnectivityMonitor,
        session: SessionManager | None = None,
        scheduler: BackgroundScheduler | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        """Initialize the service and load the persisted queue.

        Args:
            config: Sync configuration.
            remote: Remote store client.
            local: Local instance store.
            monitor: Connectivity monitor (owned by the caller).
            session: Session manager refreshed on reconnect.
            scheduler: Shared APScheduler instance (one is created if None).
            notifier: Displays user-visible notices (none if None).
        """
        self._config = config
        self._monitor = monitor
        self._session = session
        self._notifier = notifier
        self._scheduler = scheduler or BackgroundScheduler(daemon=True)
        self._owns_scheduler = scheduler is None

        self.locks = ResourceLocks()
        self.executor = RemoteActionExecutor(remote)
        self.queue = ActionQueue(
            QueueStorage(config.queue_db_path),
            self.executor,
            monitor,
            config,
            locks=self.locks,
        )
        self._snapshots = SnapshotStore(config.state_db_path)
        self._journal = ResolutionJournal(config.state_db_path)
        self.detector = ConflictDetector(local, remote, self._snapshots)
        self.resolver = ConflictResolver(
            local, remote, locks=self.locks, journal=self._journal, notifier=notifier
        )
        self.background = BackgroundSync(
            self.queue,
            monitor,
            BackgroundSyncOptions(
                interval_minutes=config.sync_interval / 60,
                min_spacing=config.min_sync_spacing,
            ),
            scheduler=self._scheduler,
        )
        self._unsubscribers: list[Callable[[], None]] = []
        self._queue_unsubscribe = self.queue.subscribe_events(self._on_queue_event)
        self._started = False

    # === Lifecycle ===

    def start(self) -> None:
        """Recover stuck actions, subscribe to connectivity and start background sync."""
        if self._started:
            return
        self._started = True

        recovered = self.queue.recover_stuck()
        if recovered:
            logger.info("Recovered %d stuck actions", recovered)

        self._unsubscribers.append(self._monitor.subscribe(self._on_connectivity_change))
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()
        self.background.start()
        logger.info("Sync service started (%d pending)", self.queue.get_pending_count())

    def stop(self) -> None:
        """Stop background work and close storage."""
        if not self._started:
            return
        self._started = False

        self.background.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for job_id in (RECONNECT_JOB_ID, FOLLOWUP_JOB_ID):
            if self._scheduler.get_job(job_id):
                self._scheduler.remove_job(job_id)
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Sync service stopped")

    def close(self) -> None:
        """Stop the service and release its databases."""
        self.stop()
        self._queue_unsubscribe()
        self.queue.close()
        self._snapshots.close()
        self._journal.close()

    # === Mutations ===

    def submit(
        self,
        action_type: ActionType,
        resource_key: str,
        payload: dict[str, Any] | None = None,
        resource_kind: str = INSTANCE_KIND,
    ) -> EnqueueResult:
        """Queue a mutation; drain right away if online."""
        result = self.queue.enqueue(action_type, resource_key, payload, resource_kind)
        if result.ok and not self._monitor.is_offline:
            self._schedule_drain(0, FOLLOWUP_JOB_ID)
        return result

    def drain(self) -> DrainResult:
        """Run one drain pass now."""
        return self.queue.process_queue()

    def _schedule_drain(self, delay: float, job_id: str = RECONNECT_JOB_ID) -> None:
        if not self._scheduler.running:
            return
        func = self._reconnect_drain if job_id == RECONNECT_JOB_ID else self._followup_drain
        self._scheduler.add_job(
            func,
            DateTrigger(run_date=datetime.now() + timedelta(seconds=delay)),
            id=job_id,
            replace_existing=True,
        )

    def _reconnect_drain(self) -> None:
        if self._monitor.is_offline:
            logger.debug("Went offline again before drain")
            return
        if self._session is not None:
            result = self._session.refresh()
            if not result.success:
                logger.info("Session not refreshed on reconnect: %s", result.error)
        self.queue.process_queue()
        self.resolver.retry_pending_resolutions()

    def _followup_drain(self) -> None:
        if self._monitor.is_offline:
            return
        self.queue.process_queue()

    def _schedule_followup(self) -> None:
        """Schedule the next drain for whatever the last one left behind."""
        if not self._started or self._monitor.is_offline or self.queue.storage_error:
            return
        due_in = self.queue.next_due_in()
        if due_in is None:
            return
        delay = max(due_in, FOLLOWUP_MIN_DELAY)
        logger.debug("Next drain in %.1fs", delay)
        self._schedule_drain(delay, FOLLOWUP_JOB_ID)

    def _on_connectivity_change(self, offline: bool) -> None:
        if offline:
            return
        logger.info("Back online, draining in %.1fs", self._config.reconnect_delay)
        self._schedule_drain(self._config.reconnect_delay)

    def _on_queue_event(self, event: str, data: dict[str, Any]) -> None:
        if event == "drain-completed":
            if not data.get("stopped_offline"):
                self._schedule_followup()
        elif event == "action-completed":
            self._record_applied(data["action"])
        elif event == "action-failed" and self._notifier is not None:
            action: SyncAction = data["action"]
            notify_action_failed(action.resource_key, data.get("error", ""), self._notifier)

    def _record_applied(self, action: SyncAction) -> None:
        user_id = action.payload.get("user_id")
        if action.resource_kind != INSTANCE_KIND or not user_id:
            return
        if action.type in (ActionType.CREATE, ActionType.UPDATE):
            self.detector.record_change(str(user_id), action.resource_key, exists=True)
        elif action.type == ActionType.DELETE:
            self.detector.record_change(str(user_id), action.resource_key, exists=False)

    # === Conflicts ===

    def detect_conflicts(self, user_id: str) -> list[Conflict]:
        """Diff local and remote instances for a user."""
        return self.detector.detect(user_id)

    def resolve_conflicts(
        self,
        user_id: str,
        policy: ResolutionPolicy,
        names: set[str] | None = None,
    ) -> BulkResolutionResult:
        """Detect and resolve conflicts with one policy.

        Args:
            user_id: Owner of the instances.
            policy: Policy applied to every selected conflict.
            names: Restrict resolution to these instance names.

        After a full pass without failures the sync snapshot is updated.
        """
        conflicts = self.detector.detect(user_id)
        if names is not None:
            conflicts = [c for c in conflicts if c.instance_name in names]
        bulk = self.resolver.resolve_all(conflicts, policy, user_id)
        if names is None and bulk.failed == 0:
            self.detector.record_snapshot(user_id)
        return bulk

    def retry_pending_resolutions(self, user_id: str | None = None) -> BulkResolutionResult:
        """Finish resolutions left half-done by earlier failures."""
        return self.resolver.retry_pending_resolutions(user_id)

    # === Status ===

    def get_status(self) -> SyncStatus:
        """Get the aggregate sync state."""
        stats = self.queue.get_stats()
        if self._monitor.is_offline:
            state = SyncState.OFFLINE
        elif self.queue.is_processing:
            state = SyncState.SYNCING
        elif stats.failed or self.queue.storage_error:
            state = SyncState.ERROR
        else:
            state = SyncState.IDLE
        return SyncStatus(
            state=state,
            is_offline=self._monitor.is_offline,
            pending_count=self.queue.get_pending_count(),
            stats=stats,
            last_sync_time=self.queue.last_sync_time,
            storage_error=self.queue.storage_error,
        )
