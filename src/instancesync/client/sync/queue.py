"""Durable action queue with a retry/backoff state machine.

This module provides:
- QueueStorage: SQLite key/value store holding the serialized action list
- ActionQueue: Ordered log of pending mutations and its drain loop

State machine per action:
    pending -> processing -> completed            (success)
    pending -> processing -> pending              (transient failure, backoff)
    pending -> processing -> failed               (permanent failure or
                                                   attempts exhausted)
    failed  -> pending                            (retry / retry_all_failed)

Ordering:
    Actions sharing a resource key are applied strictly in enqueue order.
    A key is blocked for the rest of a drain as soon as one of its actions
    is waiting on backoff or has failed, so a later action never overtakes
    an earlier one. Distinct keys have no ordering guarantee.

Persistence (SQLite):
    The full action list is written under one key after every mutation,
    before the mutation is acknowledged (before enqueue returns, before a
    remote call is made for a processing action). A backup copy is kept
    under a second key and used if the primary copy is unreadable.

Concurrency:
    One drain runs at a time: a concurrent process_queue() call returns
    immediately with DrainResult(ran=False). The queue lock is never held
    across a remote call, so stats and enqueue never wait on a drain.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from instancesync.client.sync.locks import ResourceLocks, lock_key
from instancesync.client.sync.retry import (
    categorize_error,
    classify_error,
    compute_backoff,
)
from instancesync.client.sync.types import (
    ALLOWED_TRANSITIONS,
    ActionStatus,
    ActionType,
    DrainResult,
    EnqueueError,
    EnqueueResult,
    ErrorKind,
    ErrorRecord,
    ErrorType,
    InvalidTransitionError,
    QueueEventListener,
    QueueListener,
    QueueSnapshot,
    QueueStats,
    SyncAction,
)
from instancesync.core.config import SyncConfig

if TYPE_CHECKING:
    from collections.abc import Callable

    from instancesync.client.connectivity import ConnectivityMonitor
    from instancesync.client.sync.executor import RemoteActionExecutor

logger = logging.getLogger(__name__)

QUEUE_STORAGE_KEY = "sync_queue"
QUEUE_BACKUP_KEY = "sync_queue_backup"
BACKUP_EVERY_N_SAVES = 10


class QueueStorageError(Exception):
    """The action list could not be persisted."""


class QueueStorage:
    """SQLite-backed key/value storage for the serialized queue."""

    def __init__(self, db_path: Path) -> None:
        """Initialize the storage database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        logger.debug("Initialized queue storage at %s", self._db_path)

    def get(self, key: str) -> str | None:
        """Read a value, or None if missing."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        """Write a value durably.

        Raises:
            sqlite3.Error: If the write fails.
        """
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value),
            )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()


def _parse_queue_data(raw: str) -> tuple[list[SyncAction], float | None]:
    """Parse a persisted queue document.

    Raises:
        ValueError: If the document or any action is malformed.
    """
    try:
        data = json.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("actions"), list):
            raise ValueError("Invalid queue data structure")
        actions = [SyncAction.from_dict(item) for item in data["actions"]]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid queue data: {e}") from e
    last_sync_time = data.get("last_sync_time")
    return actions, float(last_sync_time) if last_sync_time is not None else None


class ActionQueue:
    """Durable FIFO-per-resource queue of mutations.

    Usage:
        queue = ActionQueue(QueueStorage(path), executor, monitor, config)
        queue.enqueue(ActionType.CREATE, "My Pack", {"user_id": uid, "instance": {...}})
        result = queue.process_queue()
    """

    def __init__(
        self,
        storage: QueueStorage,
        executor: RemoteActionExecutor,
        monitor: ConnectivityMonitor,
        config: SyncConfig | None = None,
        locks: ResourceLocks | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the queue and load persisted actions.

        Args:
            storage: Durable storage for the action list.
            executor: Applies actions to the remote store.
            monitor: Connectivity monitor re-checked before each action.
            config: Retry and capacity settings.
            locks: Per-resource locks shared with conflict resolution.
            clock: Time source (seconds since the epoch).
        """
        self._storage = storage
        self._executor = executor
        self._monitor = monitor
        self._config = config or SyncConfig()
        self._locks = locks or ResourceLocks()
        self._clock = clock

        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self._actions: list[SyncAction] = []
        self._last_sync_time: float | None = None
        self._is_processing = False
        self._is_corrupted = False
        self._storage_error: str | None = None
        self._save_count = 0

        self._listeners: list[QueueListener] = []
        self._event_listeners: list[QueueEventListener] = []

        self._load()

    # === Persistence ===

    def _load(self) -> None:
        """Load actions from storage, falling back to the backup copy."""
        raw = self._storage.get(QUEUE_STORAGE_KEY)
        if raw is None:
            return

        try:
            actions, last_sync_time = _parse_queue_data(raw)
        except ValueError as e:
            logger.error("Failed to load sync queue: %s", e)
            self._is_corrupted = True
            self._storage_error = str(e)
            self._restore_from_backup()
            return

        self._actions = actions
        self._last_sync_time = last_sync_time
        interrupted = self._reset_interrupted("Interrupted by restart", ErrorType.UNKNOWN)
        if interrupted:
            logger.warning("Reset %d actions interrupted by restart", interrupted)
            self._save()
        logger.info("Loaded %d actions from persistence", len(self._actions))
        self._write_backup()

    def _restore_from_backup(self) -> None:
        raw = self._storage.get(QUEUE_BACKUP_KEY)
        if raw is None:
            logger.warning("No queue backup found, starting fresh")
            return
        try:
            actions, last_sync_time = _parse_queue_data(raw)
        except ValueError as e:
            logger.error("Queue backup is also corrupted, starting fresh: %s", e)
            return

        self._actions = actions
        self._last_sync_time = last_sync_time
        self._reset_interrupted("Interrupted by restart", ErrorType.UNKNOWN)
        self._is_corrupted = False
        logger.info("Restored %d actions from backup", len(self._actions))
        self._save()

    def _reset_interrupted(self, message: str, error_type: ErrorType) -> int:
        count = 0
        for action in self._actions:
            if action.status == ActionStatus.PROCESSING:
                action.status = ActionStatus.PENDING
                action.last_error = message
                action.error_type = error_type
                count += 1
        return count

    def _serialize(self) -> str:
        return json.dumps(
            {
                "actions": [action.to_dict() for action in self._actions],
                "last_sync_time": self._last_sync_time,
            }
        )

    def _save(self) -> None:
        """Persist the action list.

        Raises:
            QueueStorageError: If the write failed.
        """
        try:
            self._storage.set(QUEUE_STORAGE_KEY, self._serialize())
        except sqlite3.Error as e:
            self._storage_error = str(e)
            logger.error("Failed to persist sync queue: %s", e)
            raise QueueStorageError(str(e)) from e

        self._storage_error = None
        self._is_corrupted = False
        self._save_count += 1
        if self._save_count % BACKUP_EVERY_N_SAVES == 0:
            self._write_backup()

    def _write_backup(self) -> None:
        try:
            self._storage.set(QUEUE_BACKUP_KEY, self._serialize())
        except sqlite3.Error as e:
            logger.warning("Failed to write queue backup: %s", e)

    # === Subscriptions ===

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """Subscribe to queue changes.

        The listener receives the current snapshot immediately, then one
        after every mutation.

        Returns:
            Unsubscribe function, safe to call more than once.
        """
        with self._lock:
            self._listeners.append(listener)
            snapshot = self._snapshot()
        listener(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def subscribe_events(self, listener: QueueEventListener) -> Callable[[], None]:
        """Subscribe to drain events.

        Events: "drain-started", "drain-completed", "action-completed",
        "action-failed".

        Returns:
            Unsubscribe function, safe to call more than once.
        """
        with self._lock:
            self._event_listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._event_listeners:
                    self._event_listeners.remove(listener)

        return unsubscribe

    def _snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            actions=copy.deepcopy(self._actions),
            last_sync_time=self._last_sync_time,
            is_processing=self._is_processing,
            is_corrupted=self._is_corrupted,
            storage_error=self._storage_error,
        )

    def _notify(self) -> None:
        with self._lock:
            snapshot = self._snapshot()
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Queue listener %r failed", listener)

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._event_listeners)
        for listener in listeners:
            try:
                listener(event, data)
            except Exception:
                logger.exception("Queue event listener %r failed", listener)

    # === Mutations ===

    def enqueue(
        self,
        action_type: ActionType,
        resource_key: str,
        payload: dict[str, Any] | None = None,
        resource_kind: str = "instance",
    ) -> EnqueueResult:
        """Append a pending action and persist it before returning.

        Returns:
            EnqueueResult holding a copy of the queued action, or the
            reason it was refused: the queue is at capacity after purging
            completed actions, or the action could not be persisted.
        """
        action = SyncAction.create(action_type, resource_key, payload, resource_kind)
        action.created_at = self._clock()

        with self._lock:
            if len(self._actions) >= self._config.queue_max_size:
                removed = self._remove_where(lambda a: a.status == ActionStatus.COMPLETED)
                logger.warning("Queue full, removed %d completed actions", removed)
                if len(self._actions) >= self._config.queue_max_size:
                    message = f"Sync queue is full ({self._config.queue_max_size} actions)"
                    logger.error("Refused %r: %s", action, message)
                    return EnqueueResult(error=EnqueueError.QUEUE_FULL, message=message)

            self._actions.append(action)
            try:
                self._save()
            except QueueStorageError as e:
                self._actions.remove(action)
                return EnqueueResult(error=EnqueueError.STORAGE, message=str(e))
            queued = copy.deepcopy(action)

        logger.info("Enqueued %r", action)
        self._notify()
        return EnqueueResult(action=queued)

    def _find(self, action_id: str) -> SyncAction | None:
        for action in self._actions:
            if action.id == action_id:
                return action
        return None

    def _transition(self, action: SyncAction, status: ActionStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[action.status]:
            raise InvalidTransitionError(
                f"{action!r}: {action.status.value} -> {status.value} not allowed"
            )
        action.status = status

    def _remove_where(self, predicate: Callable[[SyncAction], bool]) -> int:
        before = len(self._actions)
        kept = [a for a in self._actions if not predicate(a)]
        removed = before - len(kept)
        if removed:
            previous = self._actions
            self._actions = kept
            try:
                self._save()
            except QueueStorageError:
                self._actions = previous
                return 0
        return removed

    # === Drain ===

    def process_queue(self) -> DrainResult:
        """Run one drain pass over pending actions.

        Returns:
            DrainResult; ran=False if another drain was already active.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress, skipping")
            return DrainResult(ran=False)

        try:
            if self._monitor.is_offline:
                logger.info("Offline, cannot process queue")
                return DrainResult(stopped_offline=True)
            result = self._drain()
        finally:
            self._drain_lock.release()

        # Listeners may start another drain from here
        self._emit(
            "drain-completed",
            {
                "timestamp": self._last_sync_time,
                "processed": result.attempted,
                "stopped_offline": result.stopped_offline,
            },
        )
        return result

    def _drain(self) -> DrainResult:
        result = DrainResult()

        with self._lock:
            candidates = [a.id for a in self._actions]
            self._is_processing = True
        started = self._clock()
        logger.info("Processing sync queue (%d actions)", len(candidates))
        self._emit("drain-started", {"timestamp": started})
        self._notify()

        blocked: set[tuple[str, str]] = set()
        try:
            for action_id in candidates:
                with self._lock:
                    action = self._find(action_id)
                    if action is None:
                        continue  # discarded during the drain
                    key = (action.resource_kind, action.resource_key)
                    if action.status in (ActionStatus.FAILED, ActionStatus.PROCESSING):
                        blocked.add(key)
                        continue
                    if action.status != ActionStatus.PENDING:
                        continue
                    if key in blocked or not action.is_due(self._clock()):
                        blocked.add(key)
                        result.skipped.append(action_id)
                        continue

                if self._monitor.is_offline:
                    logger.info("Went offline during processing, pausing")
                    result.stopped_offline = True
                    break

                try:
                    outcome = self._process_action(action_id)
                except QueueStorageError:
                    break
                if outcome is None:
                    continue
                if outcome != ActionStatus.COMPLETED:
                    blocked.add(key)
                {
                    ActionStatus.COMPLETED: result.completed,
                    ActionStatus.PENDING: result.requeued,
                    ActionStatus.FAILED: result.failed,
                }[outcome].append(action_id)
        finally:
            with self._lock:
                self._is_processing = False
                self._last_sync_time = self._clock()
                try:
                    self._save()
                except QueueStorageError:
                    pass
            self._notify()

        logger.info(
            "Processing complete in %.2fs: %d completed, %d requeued, %d failed, %d skipped",
            self._clock() - started,
            len(result.completed),
            len(result.requeued),
            len(result.failed),
            len(result.skipped),
        )
        return result

    def _process_action(self, action_id: str) -> ActionStatus | None:
        """Apply one action.

        Returns:
            The action's resulting status, or None if it was discarded
            before it could be started.

        Raises:
            QueueStorageError: If the processing state could not be
                persisted; nothing was sent remotely.
        """
        with self._lock:
            action = self._find(action_id)
            if action is None:
                return None
            lock_name = lock_key(action.resource_kind, action.resource_key)

        with self._locks.hold(lock_name):
            with self._lock:
                if self._find(action_id) is None or action.status != ActionStatus.PENDING:
                    return None
                self._transition(action, ActionStatus.PROCESSING)
                action.attempts += 1
                action.last_attempt = self._clock()
                try:
                    self._save()
                except QueueStorageError:
                    action.status = ActionStatus.PENDING
                    action.attempts -= 1
                    raise
                work = copy.deepcopy(action)
            self._notify()

            try:
                self._executor.execute(work)
            except Exception as e:
                return self._handle_failure(action, e)

            with self._lock:
                self._transition(action, ActionStatus.COMPLETED)
                action.last_error = None
                action.error_type = None
                action.next_retry_at = None
                try:
                    self._save()
                except QueueStorageError:
                    pass  # replayed on restart; remote operations are idempotent
            logger.info("Action completed: %r", action)
            completed_copy = copy.deepcopy(action)
            self._notify()
            self._emit("action-completed", {"action": completed_copy})
            return ActionStatus.COMPLETED

    def _handle_failure(self, action: SyncAction, error: Exception) -> ActionStatus:
        kind = classify_error(error)
        error_type = categorize_error(error)
        now = self._clock()
        message = str(error) or type(error).__name__

        with self._lock:
            action.last_error = message
            action.error_type = error_type
            action.error_history.append(ErrorRecord(at=now, message=message, error_type=error_type))

            if kind == ErrorKind.TRANSIENT and action.attempts < self._config.max_attempts:
                delay = compute_backoff(
                    action.attempts,
                    initial_backoff=self._config.backoff_base,
                    max_backoff=self._config.backoff_cap,
                )
                self._transition(action, ActionStatus.PENDING)
                action.retry_count += 1
                action.next_retry_at = now + delay
                logger.warning(
                    "Action %r failed (%s), will retry in %.1fs (%d/%d)",
                    action,
                    error_type.value,
                    delay,
                    action.attempts,
                    self._config.max_attempts,
                )
            else:
                self._transition(action, ActionStatus.FAILED)
                action.next_retry_at = None
                logger.error(
                    "Action %r failed permanently (%s, %s): %s",
                    action,
                    kind.value,
                    error_type.value,
                    message,
                )
            try:
                self._save()
            except QueueStorageError:
                pass
            status = action.status
            failed_copy = copy.deepcopy(action)

        self._notify()
        if status == ActionStatus.FAILED:
            self._emit("action-failed", {"action": failed_copy, "error": message})
        return status

    # === Retry and cleanup ===

    def _retry_locked(self, action: SyncAction) -> None:
        self._transition(action, ActionStatus.PENDING)
        action.retry_count += 1
        action.attempts = 0
        action.last_error = None
        action.error_type = None
        action.next_retry_at = None

    def retry(self, action_id: str) -> int:
        """Move one failed action back to pending.

        Returns:
            1 if the action was failed and is now pending, else 0.
        """
        with self._lock:
            action = self._find(action_id)
            if action is None or action.status != ActionStatus.FAILED:
                return 0
            previous = copy.deepcopy(action)
            self._retry_locked(action)
            try:
                self._save()
            except QueueStorageError:
                self._actions[self._actions.index(action)] = previous
                return 0
        logger.info("Retrying %r", action)
        self._notify()
        return 1

    def retry_all_failed(self) -> int:
        """Move every failed action back to pending.

        Returns:
            Number of actions moved.
        """
        with self._lock:
            previous = copy.deepcopy(self._actions)
            failed = [a for a in self._actions if a.status == ActionStatus.FAILED]
            for action in failed:
                self._retry_locked(action)
            if failed:
                try:
                    self._save()
                except QueueStorageError:
                    self._actions = previous
                    return 0
        if failed:
            logger.info("Retrying %d failed actions", len(failed))
            self._notify()
        return len(failed)

    def discard(self, action_id: str) -> bool:
        """Remove an action that is not currently processing.

        Returns:
            True if the action was removed.
        """
        with self._lock:
            removed = self._remove_where(
                lambda a: a.id == action_id and a.status != ActionStatus.PROCESSING
            )
        if removed:
            logger.info("Discarded action %s", action_id)
            self._notify()
        return bool(removed)

    def clear_completed(self) -> int:
        """Remove completed actions only.

        Returns:
            Number of actions removed.
        """
        with self._lock:
            removed = self._remove_where(lambda a: a.status == ActionStatus.COMPLETED)
        if removed:
            logger.info("Cleared %d completed actions", removed)
            self._notify()
        return removed

    def clear_failed(self) -> int:
        """Remove failed actions only.

        Returns:
            Number of actions removed.
        """
        with self._lock:
            removed = self._remove_where(lambda a: a.status == ActionStatus.FAILED)
        if removed:
            logger.info("Cleared %d failed actions", removed)
            self._notify()
        return removed

    def clear_all(self) -> int:
        """Remove every action that is not currently processing.

        Returns:
            Number of actions removed.
        """
        with self._lock:
            removed = self._remove_where(lambda a: a.status != ActionStatus.PROCESSING)
        if removed:
            logger.info("Cleared %d actions", removed)
            self._notify()
        return removed

    def recover_stuck(self) -> int:
        """Reset processing actions left behind by a dead drain.

        Does nothing while a drain is active.

        Returns:
            Number of actions reset to pending.
        """
        if not self._drain_lock.acquire(blocking=False):
            return 0
        try:
            now = self._clock()
            with self._lock:
                stuck = [
                    a
                    for a in self._actions
                    if a.status == ActionStatus.PROCESSING
                    and (a.last_attempt is None or now - a.last_attempt > self._config.stuck_timeout)
                ]
                for action in stuck:
                    self._transition(action, ActionStatus.PENDING)
                    action.last_error = "Action timed out"
                    action.error_type = ErrorType.TIMEOUT
                if stuck:
                    try:
                        self._save()
                    except QueueStorageError:
                        pass
        finally:
            self._drain_lock.release()

        if stuck:
            logger.warning("Found %d stuck actions, reset to pending", len(stuck))
            self._notify()
        return len(stuck)

    # === Queries ===

    def get_actions(self) -> list[SyncAction]:
        """Get a copy of all actions in enqueue order."""
        with self._lock:
            return copy.deepcopy(self._actions)

    def get_action(self, action_id: str) -> SyncAction | None:
        """Get a copy of one action."""
        with self._lock:
            action = self._find(action_id)
            return copy.deepcopy(action) if action else None

    def get_pending_count(self) -> int:
        """Count actions not yet applied remotely (pending or failed)."""
        with self._lock:
            return sum(
                1
                for a in self._actions
                if a.status in (ActionStatus.PENDING, ActionStatus.FAILED)
            )

    def next_due_in(self) -> float | None:
        """Seconds until the next drain has something to send.

        Only the first pending action of each resource key counts, and
        keys blocked by a failed action are ignored.

        Returns:
            0 if an action is due now, None if nothing can be sent.
        """
        now = self._clock()
        with self._lock:
            seen: set[tuple[str, str]] = set()
            earliest: float | None = None
            for action in self._actions:
                key = (action.resource_kind, action.resource_key)
                if key in seen:
                    continue
                if action.status in (ActionStatus.FAILED, ActionStatus.PROCESSING):
                    seen.add(key)
                    continue
                if action.status != ActionStatus.PENDING:
                    continue
                seen.add(key)
                due_at = action.next_retry_at if action.next_retry_at is not None else now
                if earliest is None or due_at < earliest:
                    earliest = due_at
        return None if earliest is None else max(earliest - now, 0.0)

    def get_stats(self) -> QueueStats:
        """Compute aggregate stats over the action list."""
        with self._lock:
            return QueueStats.from_actions(self._actions)

    def get_snapshot(self) -> QueueSnapshot:
        """Get a snapshot of the full queue state."""
        with self._lock:
            return self._snapshot()

    def export(self) -> str:
        """Export the queue as indented JSON for debugging."""
        with self._lock:
            return json.dumps(
                {
                    "actions": [a.to_dict() for a in self._actions],
                    "last_sync_time": self._last_sync_time,
                    "exported_at": self._clock(),
                    "stats": QueueStats.from_actions(self._actions).to_dict(),
                },
                indent=2,
            )

    @property
    def last_sync_time(self) -> float | None:
        """Time the last drain finished."""
        return self._last_sync_time

    @property
    def is_processing(self) -> bool:
        """Check whether a drain is running."""
        return self._is_processing

    @property
    def is_corrupted(self) -> bool:
        """Check whether the persisted queue could not be loaded."""
        return self._is_corrupted

    @property
    def storage_error(self) -> str | None:
        """Last persistence error, if any."""
        return self._storage_error

    def __len__(self) -> int:
        with self._lock:
            return len(self._actions)

    def close(self) -> None:
        """Close the underlying storage."""
        with self._lock:
            self._storage.close()
