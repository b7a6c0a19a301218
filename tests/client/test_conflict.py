"""Tests for conflict detection and resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from instancesync.client.api import ServerError
from instancesync.client.notifications import Notification, NotificationType
from instancesync.client.sync.conflict import (
    Conflict,
    ConflictDetector,
    ConflictResolver,
    ConflictType,
    PendingResolution,
    ResolutionJournal,
    ResolutionPolicy,
    SnapshotStore,
)
from instancesync.core.types import Instance

USER = "user-1"


@pytest.fixture
def snapshots(tmp_path: Path):  # noqa: ANN201
    store = SnapshotStore(tmp_path / "state.db")
    yield store
    store.close()


@pytest.fixture
def journal(tmp_path: Path):  # noqa: ANN201
    store = ResolutionJournal(tmp_path / "state.db")
    yield store
    store.close()


def modified(name: str = "Pack", local_at: int = 100, cloud_at: int = 200) -> Conflict:
    return Conflict(
        instance_name=name,
        type=ConflictType.MODIFIED,
        local_instance=Instance(name=name, version="1.20.1", last_played=local_at, id="local-9"),
        cloud_instance=Instance(name=name, version="1.21", last_played=cloud_at),
        local_updated_at=local_at,
        cloud_updated_at=cloud_at,
    )


class TestDetection:
    """Tests for ConflictDetector.detect()."""

    def test_classifies_each_name(self, local, remote) -> None:
        """Local {A, B} against cloud {B', C} yields three conflicts."""
        local.add(Instance(name="A", version="1.20.1"))
        local.add(Instance(name="B", version="1.20.1", created=10))
        remote.add(USER, Instance(name="B", version="1.21", created=20))
        remote.add(USER, Instance(name="C", version="1.19"))

        conflicts = ConflictDetector(local, remote).detect(USER)

        assert [(c.instance_name, c.type) for c in conflicts] == [
            ("A", ConflictType.NEW_LOCAL),
            ("B", ConflictType.MODIFIED),
            ("C", ConflictType.NEW_CLOUD),
        ]
        b = conflicts[1]
        assert b.local_updated_at == 10
        assert b.cloud_updated_at == 20

    def test_identical_definitions_are_not_conflicts(self, local, remote) -> None:
        """Matching version and loader means no conflict, whatever the timestamps."""
        local.add(Instance(name="A", version="1.20.1", loader="fabric", last_played=5))
        remote.add(USER, Instance(name="A", version="1.20.1", loader="fabric", last_played=99))

        assert ConflictDetector(local, remote).detect(USER) == []

    def test_listing_failure_returns_empty(self, local, remote) -> None:
        """Detection reports nothing rather than raising."""
        local.fail_list = True
        remote.add(USER, Instance(name="C", version="1.19"))

        assert ConflictDetector(local, remote).detect(USER) == []

    def test_remote_failure_returns_empty(self, local, remote) -> None:
        remote.failures["list"] = [ServerError("down", 503)]
        local.add(Instance(name="A", version="1.20.1"))

        assert ConflictDetector(local, remote).detect(USER) == []

    def test_snapshot_turns_one_sided_names_into_deletions(self, local, remote, snapshots) -> None:
        """Names present at the last clean sync are reported as deleted."""
        a = local.add(Instance(name="A", version="1.20.1"))
        local.add(Instance(name="B", version="1.20.1"))
        remote.add(USER, Instance(name="A", version="1.20.1"))
        remote.add(USER, Instance(name="B", version="1.20.1"))
        detector = ConflictDetector(local, remote, snapshots)
        assert detector.record_snapshot(USER) is True
        assert snapshots.get(USER) == {"A", "B"}

        local.delete(a.id)
        del remote.instances[(USER, "B")]
        local.add(Instance(name="N", version="1.20.1"))

        conflicts = {c.instance_name: c.type for c in detector.detect(USER)}
        assert conflicts == {
            "A": ConflictType.DELETED_LOCALLY,
            "B": ConflictType.DELETED_CLOUD,
            "N": ConflictType.NEW_LOCAL,
        }

    def test_snapshots_are_per_user(self, snapshots) -> None:
        snapshots.replace(USER, {"A"})

        assert snapshots.get("someone-else") is None
        snapshots.replace(USER, set())
        assert snapshots.get(USER) == set()


class TestMergePolicy:
    """Tests for merge selection."""

    @pytest.mark.parametrize(
        ("local_at", "cloud_at", "expected"),
        [
            (100, 200, ResolutionPolicy.CLOUD),
            (300, 200, ResolutionPolicy.LOCAL),
            (200, 200, ResolutionPolicy.LOCAL),
        ],
    )
    def test_newer_side_wins(self, local_at: int, cloud_at: int, expected: ResolutionPolicy) -> None:
        conflict = modified(local_at=local_at, cloud_at=cloud_at)

        assert ConflictResolver.effective_policy(conflict, ResolutionPolicy.MERGE) == expected

    def test_explicit_policy_unchanged(self) -> None:
        conflict = modified(local_at=900, cloud_at=1)

        assert ConflictResolver.effective_policy(conflict, ResolutionPolicy.CLOUD) == ResolutionPolicy.CLOUD


class TestResolution:
    """Tests for ConflictResolver.resolve()."""

    def test_local_policy_uploads(self, local, remote) -> None:
        """Keeping local pushes the local definition to the remote store."""
        conflict = modified()

        result = ConflictResolver(local, remote).resolve(conflict, ResolutionPolicy.LOCAL, USER)

        assert result.success is True
        assert result.applied == ResolutionPolicy.LOCAL
        assert remote.instances[(USER, "Pack")].version == "1.20.1"

    def test_cloud_policy_replaces_local(self, local, remote) -> None:
        """Keeping cloud swaps the local instance for the remote definition."""
        local.add(Instance(name="Pack", version="1.20.1", id="local-9"))
        conflict = modified()

        result = ConflictResolver(local, remote).resolve(conflict, ResolutionPolicy.CLOUD, USER)

        assert result.success is True
        assert local.by_name("Pack").version == "1.21"
        assert remote.calls == []

    def test_merge_picks_newer_cloud(self, local, remote) -> None:
        local.add(Instance(name="Pack", version="1.20.1", id="local-9"))

        result = ConflictResolver(local, remote).resolve(
            modified(local_at=100, cloud_at=200), ResolutionPolicy.MERGE, USER
        )

        assert result.applied == ResolutionPolicy.CLOUD
        assert local.by_name("Pack").version == "1.21"

    def test_cloud_on_new_cloud_creates_locally(self, local, remote) -> None:
        conflict = Conflict(
            instance_name="C",
            type=ConflictType.NEW_CLOUD,
            cloud_instance=Instance(name="C", version="1.19", loader="forge"),
        )

        result = ConflictResolver(local, remote).resolve(conflict, ResolutionPolicy.CLOUD, USER)

        assert result.success is True
        assert local.by_name("C").loader == "forge"

    def test_local_on_deleted_locally_deletes_remote(self, local, remote) -> None:
        """Keeping local propagates a local deletion."""
        remote.add(USER, Instance(name="Gone", version="1.20.1"))
        conflict = Conflict(
            instance_name="Gone",
            type=ConflictType.DELETED_LOCALLY,
            cloud_instance=Instance(name="Gone", version="1.20.1"),
        )

        result = ConflictResolver(local, remote).resolve(conflict, ResolutionPolicy.LOCAL, USER)

        assert result.success is True
        assert (USER, "Gone") not in remote.instances

    def test_cloud_on_deleted_cloud_deletes_local(self, local, remote) -> None:
        gone = local.add(Instance(name="Gone", version="1.20.1"))
        conflict = Conflict(
            instance_name="Gone",
            type=ConflictType.DELETED_CLOUD,
            local_instance=gone,
        )

        result = ConflictResolver(local, remote).resolve(conflict, ResolutionPolicy.CLOUD, USER)

        assert result.success is True
        assert local.by_name("Gone") is None

    def test_cloud_on_new_local_is_noop(self, local, remote) -> None:
        kept = local.add(Instance(name="Mine", version="1.20.1"))
        conflict = Conflict(instance_name="Mine", type=ConflictType.NEW_LOCAL, local_instance=kept)

        result = ConflictResolver(local, remote).resolve(conflict, ResolutionPolicy.CLOUD, USER)

        assert result.success is True
        assert local.by_name("Mine") is kept

    def test_upload_failure_reported(self, local, remote) -> None:
        """A failed upload is returned, not raised."""
        remote.failures["save"] = [ServerError("down", 503)]
        notices: list[Notification] = []

        result = ConflictResolver(local, remote, notifier=lambda n: notices.append(n) or True).resolve(
            modified(), ResolutionPolicy.LOCAL, USER
        )

        assert result.success is False
        assert "down" in result.error
        assert result.rolled_back is False
        assert notices[0].type == NotificationType.CONFLICT


class TestTransactions:
    """Tests for rollback and the resolution journal."""

    def test_failed_create_restores_original(self, local, remote, journal) -> None:
        """If the cloud copy cannot be created, the original local copy comes back."""
        local.add(Instance(name="Pack", version="1.20.1", id="local-9"))
        local.fail_create = ["disk full", None]
        notices: list[Notification] = []
        resolver = ConflictResolver(
            local, remote, journal=journal, notifier=lambda n: notices.append(n) or True
        )

        result = resolver.resolve(modified(), ResolutionPolicy.CLOUD, USER)

        assert result.success is False
        assert result.rolled_back is True
        assert "disk full" in result.error
        assert local.by_name("Pack").version == "1.20.1"
        assert journal.pending() == []
        assert "restored" in notices[0].message

    def test_failed_restore_left_pending_then_retried(self, local, remote, journal) -> None:
        """A replacement that could not be rolled back is finished later."""
        local.add(Instance(name="Pack", version="1.20.1", id="local-9"))
        local.fail_create = ["disk full", "disk full"]
        resolver = ConflictResolver(local, remote, journal=journal)

        result = resolver.resolve(modified(), ResolutionPolicy.CLOUD, USER)

        assert result.success is False
        assert result.rolled_back is False
        assert local.by_name("Pack") is None
        pending = journal.pending(USER)
        assert [(p.instance_name, p.target.version) for p in pending] == [("Pack", "1.21")]
        assert pending[0].original_local.version == "1.20.1"

        retried = resolver.retry_pending_resolutions(USER)

        assert retried.succeeded == 1
        assert local.by_name("Pack").version == "1.21"
        assert journal.pending() == []

    def test_retry_skips_already_applied(self, local, remote, journal) -> None:
        """A journal entry whose target is already in place is simply dropped."""
        resolver = ConflictResolver(local, remote, journal=journal)
        local.fail_create = ["disk full", "disk full"]
        local.add(Instance(name="Pack", version="1.20.1", id="local-9"))
        resolver.resolve(modified(), ResolutionPolicy.CLOUD, USER)
        local.add(Instance(name="Pack", version="1.21"))

        retried = resolver.retry_pending_resolutions()

        assert retried.succeeded == 1
        assert len(local.instances) == 1
        assert journal.pending() == []

    def test_failed_local_delete_changes_nothing(self, local, remote, journal) -> None:
        local.add(Instance(name="Pack", version="1.20.1", id="local-9"))
        local.fail_delete = ["locked"]

        result = ConflictResolver(local, remote, journal=journal).resolve(
            modified(), ResolutionPolicy.CLOUD, USER
        )

        assert result.success is False
        assert local.by_name("Pack").version == "1.20.1"
        assert journal.pending() == []

    def test_journal_survives_reopen(self, tmp_path: Path) -> None:
        first = ResolutionJournal(tmp_path / "state.db")
        first.record(PendingResolution(
            user_id=USER,
            instance_name="Pack",
            original_local=None,
            target=Instance(name="Pack", version="1.21"),
            created_at=1.0,
        ))
        first.close()

        second = ResolutionJournal(tmp_path / "state.db")
        try:
            entries = second.pending()
        finally:
            second.close()
        assert entries[0].original_local is None
        assert entries[0].target.version == "1.21"


class TestBulkResolution:
    """Tests for resolve_all()."""

    def test_continues_past_failures(self, local, remote) -> None:
        """One failing conflict does not stop the others."""
        remote.failures["save"] = [ServerError("down", 503), None]
        conflicts = [modified("A"), modified("B")]

        bulk = ConflictResolver(local, remote).resolve_all(conflicts, ResolutionPolicy.LOCAL, USER)

        assert bulk.succeeded == 1
        assert bulk.failed == 1
        assert [r.instance_name for r in bulk.results] == ["A", "B"]
        assert (USER, "B") in remote.instances
