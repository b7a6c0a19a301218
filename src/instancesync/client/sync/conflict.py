"""Cross-device conflict detection and resolution.

Detection diffs the full local and remote instance collections, matched
by name (two unrelated instances sharing a name look like a genuine
conflict). Resolution applies a policy:

- local: push the local definition to the remote store
- cloud: replace the local instance with the remote definition
- merge: whichever side was updated last wins; ties favor local

When one side is absent the policy propagates the absence: "local" on
a deleted-locally conflict deletes the remote copy, "cloud" on a
deleted-cloud conflict deletes the local copy. With nothing to copy
and nothing deleted (e.g. "cloud" on new-local) resolution is a no-op.

Transactions:
    Replacing the local copy is delete + create. The step is journaled
    before it starts; if create fails the original local definition is
    recreated. If that also fails the journal entry stays and
    retry_pending_resolutions() finishes the job later.

Snapshots:
    After a clean pass the names present on both sides are recorded per
    user, and each queued create, update or delete applied remotely adds
    or removes its name. A name found on one side only that is in the
    snapshot was deleted on the other side (deleted-locally /
    deleted-cloud); otherwise it is reported as new-local / new-cloud.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from instancesync.client.notifications import notify_resolution_failed
from instancesync.client.sync.executor import INSTANCE_KIND
from instancesync.client.sync.locks import ResourceLocks, lock_key
from instancesync.core.types import Instance

if TYPE_CHECKING:
    from instancesync.client.api import RemoteStore
    from instancesync.client.local_store import LocalStore
    from instancesync.client.notifications import Notifier

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    """How local and remote diverge for one name."""

    MODIFIED = "modified"
    NEW_LOCAL = "new-local"
    NEW_CLOUD = "new-cloud"
    DELETED_LOCALLY = "deleted-locally"
    DELETED_CLOUD = "deleted-cloud"


class ResolutionPolicy(str, Enum):
    """Which side wins a conflict."""

    LOCAL = "local"
    CLOUD = "cloud"
    MERGE = "merge"


@dataclass(frozen=True)
class Conflict:
    """A divergence found by one detection pass. Never persisted."""

    instance_name: str
    type: ConflictType
    local_instance: Instance | None = None
    cloud_instance: Instance | None = None
    local_updated_at: int = 0
    cloud_updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_name": self.instance_name,
            "type": self.type.value,
            "local_instance": self.local_instance.to_dict() if self.local_instance else None,
            "cloud_instance": self.cloud_instance.to_dict() if self.cloud_instance else None,
            "local_updated_at": self.local_updated_at,
            "cloud_updated_at": self.cloud_updated_at,
        }


@dataclass
class ResolutionResult:
    """Outcome of resolving one conflict.

    Attributes:
        instance_name: Name of the conflicting instance.
        success: True if both sides now agree.
        applied: Effective policy (LOCAL or CLOUD) after merge selection.
        error: Failure message.
        rolled_back: True if a failed step was compensated and the local
            copy is back to its state before resolution.
    """

    instance_name: str
    success: bool
    applied: ResolutionPolicy | None = None
    error: str | None = None
    rolled_back: bool = False


@dataclass
class BulkResolutionResult:
    """Aggregate outcome of resolving many conflicts."""

    results: list[ResolutionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


class _StateDB:
    """Shared SQLite connection handling for snapshot and journal tables."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()


class SnapshotStore(_StateDB):
    """Names known on both sides after the last clean sync, per user."""

    def _init_schema(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_snapshots (
                user_id TEXT PRIMARY KEY,
                taken_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS sync_snapshot_names (
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                PRIMARY KEY (user_id, name)
            );
        """)

    def get(self, user_id: str) -> set[str] | None:
        """Get the last snapshot, or None if none was taken."""
        with self._lock:
            row = self._conn.execute(
                "SELECT taken_at FROM sync_snapshots WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row is None:
                return None
            rows = self._conn.execute(
                "SELECT name FROM sync_snapshot_names WHERE user_id = ?", (user_id,)
            ).fetchall()
        return {r["name"] for r in rows}

    def replace(self, user_id: str, names: set[str]) -> None:
        """Atomically replace a user's snapshot."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.execute(
                    "DELETE FROM sync_snapshot_names WHERE user_id = ?", (user_id,)
                )
                self._conn.executemany(
                    "INSERT INTO sync_snapshot_names (user_id, name) VALUES (?, ?)",
                    [(user_id, name) for name in sorted(names)],
                )
                self._conn.execute(
                    "INSERT OR REPLACE INTO sync_snapshots (user_id, taken_at) VALUES (?, ?)",
                    (user_id, time.time()),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        logger.debug("Recorded sync snapshot for %s (%d names)", user_id, len(names))

    def add_name(self, user_id: str, name: str) -> None:
        """Mark a name as known on both sides."""
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO sync_snapshots (user_id, taken_at) VALUES (?, ?)",
                (user_id, time.time()),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO sync_snapshot_names (user_id, name) VALUES (?, ?)",
                (user_id, name),
            )

    def remove_name(self, user_id: str, name: str) -> None:
        """Forget a name that no longer exists on both sides."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM sync_snapshot_names WHERE user_id = ? AND name = ?",
                (user_id, name),
            )


@dataclass
class PendingResolution:
    """A local replacement that has not been confirmed complete."""

    user_id: str
    instance_name: str
    original_local: Instance | None
    target: Instance
    created_at: float


class ResolutionJournal(_StateDB):
    """Durable record of in-flight local replacements."""

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS pending_resolutions (
                user_id TEXT NOT NULL,
                instance_name TEXT NOT NULL,
                original_local TEXT,
                target TEXT NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (user_id, instance_name)
            )
        """)

    def record(self, entry: PendingResolution) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO pending_resolutions
                    (user_id, instance_name, original_local, target, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.user_id,
                    entry.instance_name,
                    json.dumps(entry.original_local.to_dict()) if entry.original_local else None,
                    json.dumps(entry.target.to_dict()),
                    entry.created_at,
                ),
            )

    def remove(self, user_id: str, instance_name: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM pending_resolutions WHERE user_id = ? AND instance_name = ?",
                (user_id, instance_name),
            )

    def pending(self, user_id: str | None = None) -> list[PendingResolution]:
        """List unfinished replacements, oldest first."""
        query = "SELECT * FROM pending_resolutions"
        params: tuple[str, ...] = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY created_at", params).fetchall()

        entries = []
        for row in rows:
            original = row["original_local"]
            entries.append(PendingResolution(
                user_id=row["user_id"],
                instance_name=row["instance_name"],
                original_local=Instance.from_dict(json.loads(original)) if original else None,
                target=Instance.from_dict(json.loads(row["target"])),
                created_at=row["created_at"],
            ))
        return entries


class ConflictDetector:
    """Classifies divergence between local and remote instances."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        snapshots: SnapshotStore | None = None,
    ) -> None:
        self._local = local
        self._remote = remote
        self._snapshots = snapshots

    def detect(self, user_id: str) -> list[Conflict]:
        """Run one detection pass.

        Returns:
            Conflicts sorted by name; an empty list if either collection
            could not be listed.
        """
        listing = self._local.list()
        if not listing.success:
            logger.warning("Conflict detection failed for %s: %s", user_id, listing.error)
            return []
        try:
            cloud_instances = self._remote.list_instances(user_id)
        except Exception as e:
            logger.warning("Conflict detection failed for %s: %s", user_id, e)
            return []
        local_instances = listing.instances

        snapshot = self._load_snapshot(user_id)
        local_map = {i.name: i for i in local_instances}
        cloud_map = {i.name: i for i in cloud_instances}

        conflicts = []
        for name in sorted(local_map.keys() | cloud_map.keys()):
            conflict = self._classify(name, local_map.get(name), cloud_map.get(name), snapshot)
            if conflict is not None:
                conflicts.append(conflict)

        logger.info("Detected %d conflicts for %s", len(conflicts), user_id)
        return conflicts

    def _load_snapshot(self, user_id: str) -> set[str]:
        if self._snapshots is None:
            return set()
        try:
            return self._snapshots.get(user_id) or set()
        except sqlite3.Error as e:
            logger.warning("Failed to read sync snapshot: %s", e)
            return set()

    @staticmethod
    def _classify(
        name: str,
        local: Instance | None,
        cloud: Instance | None,
        snapshot: set[str],
    ) -> Conflict | None:
        if local is not None and cloud is not None:
            if local.same_definition(cloud):
                return None
            return Conflict(
                instance_name=name,
                type=ConflictType.MODIFIED,
                local_instance=local,
                cloud_instance=cloud,
                local_updated_at=local.updated_at,
                cloud_updated_at=cloud.updated_at,
            )
        if local is not None:
            return Conflict(
                instance_name=name,
                type=ConflictType.DELETED_CLOUD if name in snapshot else ConflictType.NEW_LOCAL,
                local_instance=local,
                local_updated_at=local.updated_at,
            )
        if cloud is not None:
            return Conflict(
                instance_name=name,
                type=ConflictType.DELETED_LOCALLY if name in snapshot else ConflictType.NEW_CLOUD,
                cloud_instance=cloud,
                cloud_updated_at=cloud.updated_at,
            )
        return None

    def record_snapshot(self, user_id: str) -> bool:
        """Record the names present on both sides right now.

        Returns:
            True if the snapshot was written.
        """
        if self._snapshots is None:
            return False
        listing = self._local.list()
        if not listing.success:
            logger.warning("Failed to record sync snapshot for %s: %s", user_id, listing.error)
            return False
        try:
            local_names = {i.name for i in listing.instances}
            cloud_names = {i.name for i in self._remote.list_instances(user_id)}
            self._snapshots.replace(user_id, local_names & cloud_names)
        except Exception as e:
            logger.warning("Failed to record sync snapshot for %s: %s", user_id, e)
            return False
        return True

    def record_change(self, user_id: str, name: str, exists: bool) -> None:
        """Update the snapshot after a mutation reached both sides.

        Args:
            user_id: Owner of the instance.
            name: Instance name.
            exists: True after a create or update, False after a delete.
        """
        if self._snapshots is None:
            return
        try:
            if exists:
                self._snapshots.add_name(user_id, name)
            else:
                self._snapshots.remove_name(user_id, name)
        except sqlite3.Error as e:
            logger.warning("Failed to update sync snapshot for %s: %s", name, e)


class ResolutionStepError(Exception):
    """A local or remote step of a resolution failed."""

    def __init__(self, message: str, rolled_back: bool = False) -> None:
        super().__init__(message)
        self.rolled_back = rolled_back


class ConflictResolver:
    """Applies resolution policies to conflicts.

    Resolution of one name runs under that name's resource lock, shared
    with the queue drain.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        locks: ResourceLocks | None = None,
        journal: ResolutionJournal | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._local = local
        self._remote = remote
        self._locks = locks or ResourceLocks()
        self._journal = journal
        self._notifier = notifier

    @staticmethod
    def effective_policy(conflict: Conflict, policy: ResolutionPolicy) -> ResolutionPolicy:
        """Turn MERGE into LOCAL or CLOUD by comparing update times."""
        if policy != ResolutionPolicy.MERGE:
            return policy
        if conflict.local_updated_at >= conflict.cloud_updated_at:
            return ResolutionPolicy.LOCAL
        return ResolutionPolicy.CLOUD

    def resolve(self, conflict: Conflict, policy: ResolutionPolicy, user_id: str) -> ResolutionResult:
        """Resolve one conflict. Never raises."""
        applied = self.effective_policy(conflict, policy)
        result = ResolutionResult(instance_name=conflict.instance_name, success=False, applied=applied)

        with self._locks.hold(lock_key(INSTANCE_KIND, conflict.instance_name)):
            try:
                if applied == ResolutionPolicy.LOCAL:
                    self._apply_local(conflict, user_id)
                else:
                    self._apply_cloud(conflict, user_id)
            except ResolutionStepError as e:
                result.error = str(e)
                result.rolled_back = e.rolled_back
            except Exception as e:
                logger.exception("Unexpected error resolving %s", conflict.instance_name)
                result.error = str(e) or type(e).__name__
            else:
                result.success = True

        if result.success:
            logger.info(
                "Resolved %s (%s) with %s", conflict.instance_name, conflict.type.value, applied.value
            )
        else:
            self._report_failure(result)
        return result

    def resolve_all(
        self,
        conflicts: list[Conflict],
        policy: ResolutionPolicy,
        user_id: str,
    ) -> BulkResolutionResult:
        """Resolve every conflict, continuing past failures."""
        bulk = BulkResolutionResult()
        for conflict in conflicts:
            bulk.results.append(self.resolve(conflict, policy, user_id))
        logger.info("Bulk resolution: %d succeeded, %d failed", bulk.succeeded, bulk.failed)
        return bulk

    def _report_failure(self, result: ResolutionResult) -> None:
        logger.error(
            "Failed to resolve %s with %s: %s",
            result.instance_name,
            result.applied.value if result.applied else "?",
            result.error,
        )
        if self._notifier is not None:
            notify_resolution_failed(
                result.instance_name, result.error or "", result.rolled_back, self._notifier
            )

    def _apply_local(self, conflict: Conflict, user_id: str) -> None:
        if conflict.local_instance is not None:
            try:
                self._remote.save_instance(conflict.local_instance, user_id)
            except Exception as e:
                raise ResolutionStepError(f"Failed to upload local instance: {e}") from e
        elif conflict.type == ConflictType.DELETED_LOCALLY:
            try:
                self._remote.delete_instance(conflict.instance_name, user_id)
            except Exception as e:
                raise ResolutionStepError(f"Failed to delete cloud instance: {e}") from e

    def _apply_cloud(self, conflict: Conflict, user_id: str) -> None:
        if conflict.cloud_instance is None:
            if conflict.type == ConflictType.DELETED_CLOUD and conflict.local_instance is not None:
                self._delete_local(conflict.local_instance)
            return

        self._replace_local(
            user_id,
            conflict.instance_name,
            current=conflict.local_instance,
            target=conflict.cloud_instance,
            restore=conflict.local_instance,
        )

    def _delete_local(self, instance: Instance) -> None:
        if instance.id is None:
            raise ResolutionStepError(f"Local instance {instance.name!r} has no id")
        outcome = self._local.delete(instance.id)
        if not outcome.success:
            raise ResolutionStepError(f"Failed to delete local instance: {outcome.error}")

    def _replace_local(
        self,
        user_id: str,
        name: str,
        current: Instance | None,
        target: Instance,
        restore: Instance | None,
    ) -> None:
        """Delete current (if any) and create target locally.

        If create fails, restore is recreated. If that fails too, the
        journal entry is kept for retry_pending_resolutions().

        Raises:
            ResolutionStepError: If the replacement did not complete.
        """
        if self._journal is not None:
            self._journal.record(PendingResolution(
                user_id=user_id,
                instance_name=name,
                original_local=restore,
                target=target,
                created_at=time.time(),
            ))

        if current is not None:
            try:
                self._delete_local(current)
            except ResolutionStepError:
                self._forget(user_id, name)  # nothing changed yet
                raise

        created = self._local.create(target.name, target.version, target.loader)
        if created.success:
            self._forget(user_id, name)
            return

        error = f"Failed to create local instance from cloud: {created.error}"
        if restore is None:
            self._forget(user_id, name)
            raise ResolutionStepError(error)

        restored = self._local.create(restore.name, restore.version, restore.loader)
        if restored.success:
            logger.warning("Restored local %s after failed replacement", name)
            self._forget(user_id, name)
            raise ResolutionStepError(error, rolled_back=True)

        logger.error("Could not restore local %s, left pending: %s", name, restored.error)
        raise ResolutionStepError(error)

    def _forget(self, user_id: str, name: str) -> None:
        if self._journal is not None:
            self._journal.remove(user_id, name)

    def retry_pending_resolutions(self, user_id: str | None = None) -> BulkResolutionResult:
        """Finish local replacements left half-done by earlier failures."""
        bulk = BulkResolutionResult()
        if self._journal is None:
            return bulk

        for entry in self._journal.pending(user_id):
            result = ResolutionResult(
                instance_name=entry.instance_name, success=False, applied=ResolutionPolicy.CLOUD
            )
            with self._locks.hold(lock_key(INSTANCE_KIND, entry.instance_name)):
                try:
                    listing = self._local.list()
                    if not listing.success:
                        raise ResolutionStepError(f"Failed to list local instances: {listing.error}")
                    current = next(
                        (i for i in listing.instances if i.name == entry.instance_name), None
                    )
                    if current is not None and current.same_definition(entry.target):
                        self._forget(entry.user_id, entry.instance_name)
                    else:
                        self._replace_local(
                            entry.user_id,
                            entry.instance_name,
                            current=current,
                            target=entry.target,
                            restore=current or entry.original_local,
                        )
                except ResolutionStepError as e:
                    result.error = str(e)
                    result.rolled_back = e.rolled_back
                except Exception as e:
                    logger.exception("Unexpected error finishing %s", entry.instance_name)
                    result.error = str(e) or type(e).__name__
                else:
                    result.success = True
            if not result.success:
                self._report_failure(result)
            bulk.results.append(result)

        if bulk.results:
            logger.info(
                "Retried %d pending resolutions: %d succeeded, %d failed",
                len(bulk.results),
                bulk.succeeded,
                bulk.failed,
            )
        return bulk
