"""Tests for CLI commands - config, status, queue, sync, conflicts."""

import json
import re
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from instancesync.client.api import ValidationError
from instancesync.client.cli import cli
from instancesync.client.local_store import FileLocalStore
from instancesync.client.sync.executor import RemoteActionExecutor
from instancesync.client.sync.queue import ActionQueue, QueueStorage
from instancesync.client.sync.types import ActionType

REMOTE_URL = "http://remote.test"
INSTANCES_URL = re.compile(r"http://remote\.test/rest/v1/instances(\?.*)?$")
USER = "user-1"


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def no_keyring() -> Iterator[MagicMock]:
    """Keep tests away from the OS keyring."""
    with patch("instancesync.client.session.keyring") as mock_keyring:
        mock_keyring.get_password.return_value = None
        yield mock_keyring


def invoke(runner: CliRunner, data_dir: Path, *args: str):  # noqa: ANN201
    return runner.invoke(cli, ["--data-dir", str(data_dir), *args])


def configure_remote(data_dir: Path) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "config.json").write_text(
        json.dumps({"remote_url": REMOTE_URL, "api_key": "anon", "user_id": USER})
    )


def seed_queue(data_dir: Path, remote, monitor, names: list[str], fail: bool = False) -> list[str]:  # noqa: ANN001
    """Persist actions into the data dir's queue; optionally fail them for good."""
    if fail:
        remote.failures["save"] = [ValidationError("rejected", 400) for _ in names]
    queue = ActionQueue(
        QueueStorage(data_dir / "queue.db"), RemoteActionExecutor(remote), monitor
    )
    try:
        ids = [
            queue.enqueue(
                ActionType.CREATE, name, {"user_id": USER, "instance": {"name": name, "version": "1.20.1"}}
            ).action.id
            for name in names
        ]
        if fail:
            queue.process_queue()
    finally:
        queue.close()
    return ids


class TestConfigCommands:
    """Tests for 'instancesync config'."""

    def test_set_and_show(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "config", "set", "max_attempts", "3")
        assert result.exit_code == 0
        assert "max_attempts = 3" in result.output

        invoke(runner, tmp_path, "config", "set", "api_key", "secret")
        shown = invoke(runner, tmp_path, "config", "show")

        assert "api_key = ***" in shown.output
        assert "secret" not in shown.output
        assert json.loads((tmp_path / "config.json").read_text())["max_attempts"] == 3

    def test_invalid_value(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "config", "set", "max_attempts", "many")

        assert result.exit_code == 1
        assert "Invalid value" in result.output

    def test_unknown_key(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "config", "set", "colour", "blue")

        assert result.exit_code != 0

    def test_default_data_dir(self, runner: CliRunner, tmp_path: Path) -> None:
        """Without --data-dir the home config directory is used."""
        with patch("instancesync.client.cli.get_config_dir", return_value=tmp_path):
            result = runner.invoke(cli, ["config", "show"])

        assert result.exit_code == 0
        assert "No settings stored." in result.output


class TestStatusCommands:
    """Tests for 'instancesync status' and 'check-online'."""

    def test_status_empty(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "status")

        assert result.exit_code == 0
        assert "Pending changes: 0" in result.output
        assert "Last sync: never" in result.output

    def test_status_counts_failed_as_pending(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        seed_queue(tmp_path, remote, monitor, ["A"], fail=True)
        seed_queue(tmp_path, remote, monitor, ["B"])

        result = invoke(runner, tmp_path, "status")

        assert "Pending changes: 2" in result.output
        assert "1 pending" in result.output
        assert "1 failed" in result.output

    def test_check_online(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("instancesync.client.cli.status.ConnectivityMonitor") as monitor_cls:
            monitor_cls.return_value.check_online.return_value = True
            result = invoke(runner, tmp_path, "check-online")

        assert result.exit_code == 0
        assert "ONLINE" in result.output

    def test_check_offline(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("instancesync.client.cli.status.ConnectivityMonitor") as monitor_cls:
            monitor_cls.return_value.check_online.return_value = False
            result = invoke(runner, tmp_path, "check-online")

        assert result.exit_code == 1
        assert "OFFLINE" in result.output
        monitor_cls.return_value.shutdown.assert_called_once()


class TestQueueCommands:
    """Tests for 'instancesync queue'."""

    def test_list_empty(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "queue", "list")

        assert "Queue is empty." in result.output

    def test_list_and_filter(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        seed_queue(tmp_path, remote, monitor, ["A"], fail=True)
        seed_queue(tmp_path, remote, monitor, ["B"])

        everything = invoke(runner, tmp_path, "queue", "list")
        failed = invoke(runner, tmp_path, "queue", "list", "--status", "failed")

        assert "instance:A" in everything.output
        assert "instance:B" in everything.output
        assert "error=rejected" in everything.output
        assert "instance:B" not in failed.output

    def test_retry_all(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        seed_queue(tmp_path, remote, monitor, ["A", "B"], fail=True)

        result = invoke(runner, tmp_path, "queue", "retry")

        assert "Moved 2 action(s)" in result.output
        assert "failed" not in invoke(runner, tmp_path, "queue", "list").output

    def test_retry_by_prefix(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        [action_id] = seed_queue(tmp_path, remote, monitor, ["A"], fail=True)

        result = invoke(runner, tmp_path, "queue", "retry", action_id[:8])

        assert result.exit_code == 0
        assert "Moved 1 action(s)" in result.output

    def test_retry_unknown_id(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "queue", "retry", "deadbeef")

        assert result.exit_code == 1
        assert "No unique action" in result.output

    def test_discard(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        [action_id] = seed_queue(tmp_path, remote, monitor, ["A"])

        result = invoke(runner, tmp_path, "queue", "discard", action_id[:8])

        assert result.exit_code == 0
        assert "Queue is empty." in invoke(runner, tmp_path, "queue", "list").output

    def test_clear_failed(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        seed_queue(tmp_path, remote, monitor, ["A"], fail=True)
        seed_queue(tmp_path, remote, monitor, ["B"])

        result = invoke(runner, tmp_path, "queue", "clear-failed")

        assert "Removed 1 failed action(s)." in result.output
        assert "Removed 0 completed action(s)." in invoke(
            runner, tmp_path, "queue", "clear-completed"
        ).output

    def test_export(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        seed_queue(tmp_path, remote, monitor, ["A"])

        result = invoke(runner, tmp_path, "queue", "export")

        data = json.loads(result.output)
        assert data["stats"]["pending"] == 1


class TestSyncCommand:
    """Tests for 'instancesync sync'."""

    def test_requires_remote(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "sync")

        assert result.exit_code == 1
        assert "Remote store not configured" in result.output

    def test_offline_keeps_queue(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        configure_remote(tmp_path)
        seed_queue(tmp_path, remote, monitor, ["A"])

        with patch("instancesync.client.cli.sync.ConnectivityMonitor") as monitor_cls:
            monitor_cls.return_value.refresh.return_value = False
            monitor_cls.return_value.is_offline = True
            result = invoke(runner, tmp_path, "sync")

        assert result.exit_code == 1
        assert "1 change(s) remain queued" in result.output

    def test_sync_applies_queue(self, runner, tmp_path, remote, monitor, httpx_mock) -> None:  # noqa: ANN001
        configure_remote(tmp_path)
        seed_queue(tmp_path, remote, monitor, ["A"])
        httpx_mock.add_response(method="POST", url=INSTANCES_URL, status_code=201, json=[])

        with patch("instancesync.client.cli.sync.ConnectivityMonitor") as monitor_cls:
            monitor_cls.return_value.refresh.return_value = True
            monitor_cls.return_value.is_offline = False
            result = invoke(runner, tmp_path, "sync")

        assert result.exit_code == 0, result.output
        assert "1 completed" in result.output
        body = json.loads(httpx_mock.get_request().content)
        assert body["user_id"] == USER
        assert body["name"] == "A"

    def test_sync_rejected_exits_nonzero(self, runner, tmp_path, remote, monitor, httpx_mock) -> None:  # noqa: ANN001
        configure_remote(tmp_path)
        seed_queue(tmp_path, remote, monitor, ["A"])
        httpx_mock.add_response(
            method="POST", url=INSTANCES_URL, status_code=400, json={"message": "bad loader"}
        )

        with patch("instancesync.client.cli.sync.ConnectivityMonitor") as monitor_cls:
            monitor_cls.return_value.refresh.return_value = True
            monitor_cls.return_value.is_offline = False
            result = invoke(runner, tmp_path, "sync")

        assert result.exit_code == 1
        assert "1 failed" in result.output


class TestConflictCommands:
    """Tests for 'instancesync conflicts'."""

    def test_detect(self, runner, tmp_path, httpx_mock) -> None:  # noqa: ANN001
        configure_remote(tmp_path)
        FileLocalStore(tmp_path / "instances").create("Local Only", "1.20.1")
        httpx_mock.add_response(
            url=INSTANCES_URL,
            json=[{"id": 1, "name": "Cloud Only", "version": "1.19", "loader": "forge"}],
        )

        result = invoke(runner, tmp_path, "conflicts", "detect")

        assert result.exit_code == 0
        assert "Cloud Only  [new-cloud]" in result.output
        assert "Local Only  [new-local]" in result.output
        assert "2 conflict(s) found." in result.output

    def test_detect_requires_user(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "conflicts", "detect")

        assert result.exit_code == 1
        assert "No user given" in result.output

    def test_resolve_cloud(self, runner, tmp_path, httpx_mock) -> None:  # noqa: ANN001
        configure_remote(tmp_path)
        httpx_mock.add_response(
            url=INSTANCES_URL,
            json=[{"id": 1, "name": "Cloud Only", "version": "1.19", "loader": "forge"}],
            is_reusable=True,
        )

        result = invoke(runner, tmp_path, "conflicts", "resolve", "--policy", "cloud")

        assert result.exit_code == 0, result.output
        assert "Resolved Cloud Only (cloud)" in result.output
        [instance] = FileLocalStore(tmp_path / "instances").list().instances
        assert (instance.name, instance.loader) == ("Cloud Only", "forge")


def queued_actions(data_dir: Path, remote, monitor) -> list:  # noqa: ANN001
    queue = ActionQueue(
        QueueStorage(data_dir / "queue.db"), RemoteActionExecutor(remote), monitor
    )
    try:
        return queue.get_actions()
    finally:
        queue.close()


class TestInstanceCommands:
    """Tests for 'instancesync instance'."""

    def test_create_queues_upload(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        result = invoke(
            runner, tmp_path, "instance", "create", "Pack", "--version", "1.20.1",
            "--loader", "fabric", "--user", USER,
        )

        assert result.exit_code == 0, result.output
        assert "Created Pack (1.20.1, fabric)" in result.output
        assert "Queued; will sync when online." in result.output
        [local] = FileLocalStore(tmp_path / "instances").list().instances
        assert (local.name, local.loader) == ("Pack", "fabric")
        [action] = queued_actions(tmp_path, remote, monitor)
        assert (action.type, action.resource_key) == (ActionType.CREATE, "Pack")
        assert action.payload["user_id"] == USER
        assert action.payload["instance"]["version"] == "1.20.1"

    def test_create_requires_user(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "instance", "create", "Pack", "--version", "1.20.1")

        assert result.exit_code == 1
        assert "No user given" in result.output
        assert FileLocalStore(tmp_path / "instances").list().instances == []

    def test_create_existing_name(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        FileLocalStore(tmp_path / "instances").create("Pack", "1.20.1")

        result = invoke(
            runner, tmp_path, "instance", "create", "Pack", "--version", "1.21", "--user", USER
        )

        assert result.exit_code == 1
        assert "already exists" in result.output
        assert queued_actions(tmp_path, remote, monitor) == []

    def test_create_undone_when_queue_full(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        tmp_path.mkdir(parents=True, exist_ok=True)
        (tmp_path / "config.json").write_text(json.dumps({"user_id": USER, "queue_max_size": 1}))
        seed_queue(tmp_path, remote, monitor, ["Other"])

        result = invoke(runner, tmp_path, "instance", "create", "Pack", "--version", "1.20.1")

        assert result.exit_code == 1
        assert "Could not queue upload: Sync queue is full" in result.output
        assert FileLocalStore(tmp_path / "instances").list().instances == []
        assert [a.resource_key for a in queued_actions(tmp_path, remote, monitor)] == ["Other"]

    def test_create_synced_when_online(self, runner, tmp_path, remote, monitor, httpx_mock) -> None:  # noqa: ANN001
        configure_remote(tmp_path)
        httpx_mock.add_response(method="POST", url=INSTANCES_URL, status_code=201, json=[])

        with patch("instancesync.client.cli.instance.ConnectivityMonitor") as monitor_cls:
            monitor_cls.return_value.refresh.return_value = True
            monitor_cls.return_value.is_offline = False
            result = invoke(runner, tmp_path, "instance", "create", "Pack", "--version", "1.20.1")

        assert result.exit_code == 0, result.output
        assert "Synced." in result.output
        body = json.loads(httpx_mock.get_request().content)
        assert (body["user_id"], body["name"]) == (USER, "Pack")
        [action] = queued_actions(tmp_path, remote, monitor)
        assert action.status.value == "completed"

    def test_delete_queues_removal(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        FileLocalStore(tmp_path / "instances").create("Pack", "1.20.1")

        result = invoke(runner, tmp_path, "instance", "delete", "Pack", "--user", USER)

        assert result.exit_code == 0, result.output
        assert "Deleted Pack" in result.output
        assert FileLocalStore(tmp_path / "instances").list().instances == []
        [action] = queued_actions(tmp_path, remote, monitor)
        assert (action.type, action.resource_key) == (ActionType.DELETE, "Pack")
        assert action.payload == {"user_id": USER}

    def test_delete_unknown(self, runner, tmp_path, remote, monitor) -> None:  # noqa: ANN001
        result = invoke(runner, tmp_path, "instance", "delete", "Ghost", "--user", USER)

        assert result.exit_code == 1
        assert "No local instance named Ghost" in result.output
        assert queued_actions(tmp_path, remote, monitor) == []

    def test_list(self, runner: CliRunner, tmp_path: Path) -> None:
        assert "No instances." in invoke(runner, tmp_path, "instance", "list").output

        FileLocalStore(tmp_path / "instances").create("Pack", "1.20.1", "forge")

        assert "Pack  1.20.1/forge" in invoke(runner, tmp_path, "instance", "list").output
