"""Shared fixtures: in-memory remote/local stores and a controllable monitor."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from instancesync.client.api import TokenPair
from instancesync.client.local_store import LocalResult
from instancesync.client.sync.executor import RemoteActionExecutor
from instancesync.client.sync.queue import ActionQueue, QueueStorage
from instancesync.core.config import SyncConfig
from instancesync.core.types import Instance


class FakeMonitor:
    """Connectivity monitor whose state is set by the test."""

    def __init__(self, offline: bool = False) -> None:
        self.is_offline = offline
        self._listeners: list[Callable[[bool], None]] = []

    def set_offline(self, offline: bool) -> None:
        if offline == self.is_offline:
            return
        self.is_offline = offline
        for listener in list(self._listeners):
            listener(offline)

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class FakeRemote:
    """In-memory remote store recording every call.

    failures maps an operation name to a list of exceptions raised by
    successive calls (None entries succeed).
    """

    def __init__(self) -> None:
        self.instances: dict[tuple[str, str], Instance] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[BaseException | None]] = {}
        self.delay = 0.0
        self._lock = threading.Lock()

    def _maybe_fail(self, op: str) -> None:
        pending = self.failures.get(op)
        if pending:
            error = pending.pop(0)
            if error is not None:
                raise error

    def add(self, user_id: str, instance: Instance) -> None:
        self.instances[(user_id, instance.name)] = instance

    def list_instances(self, user_id: str) -> list[Instance]:
        with self._lock:
            self.calls.append(("list", user_id))
        self._maybe_fail("list")
        return [i for (uid, _), i in sorted(self.instances.items()) if uid == user_id]

    def save_instance(self, instance: Instance, user_id: str) -> Instance:
        if self.delay:
            threading.Event().wait(self.delay)
        with self._lock:
            self.calls.append(("save", instance.name))
        self._maybe_fail("save")
        self.instances[(user_id, instance.name)] = instance
        return instance

    def delete_instance(self, name: str, user_id: str) -> None:
        with self._lock:
            self.calls.append(("delete", name))
        self._maybe_fail("delete")
        self.instances.pop((user_id, name), None)

    def refresh_session(self, refresh_token: str) -> TokenPair:
        raise NotImplementedError


class FakeLocal:
    """In-memory local store addressed by id."""

    def __init__(self) -> None:
        self.instances: dict[str, Instance] = {}
        self.fail_create: list[str | None] = []
        self.fail_delete: list[str | None] = []
        self.fail_list = False
        self._next_id = 1

    def add(self, instance: Instance) -> Instance:
        if instance.id is None:
            instance.id = f"local-{self._next_id}"
            self._next_id += 1
        self.instances[instance.id] = instance
        return instance

    def by_name(self, name: str) -> Instance | None:
        return next((i for i in self.instances.values() if i.name == name), None)

    def list(self) -> LocalResult:
        if self.fail_list:
            return LocalResult(success=False, error="disk unavailable")
        return LocalResult(success=True, instances=list(self.instances.values()))

    def create(self, name: str, version: str, loader: str = "vanilla") -> LocalResult:
        if self.fail_create:
            error = self.fail_create.pop(0)
            if error is not None:
                return LocalResult(success=False, error=error)
        if self.by_name(name) is not None:
            return LocalResult(success=False, error="Instance with this name/folder already exists.")
        instance = self.add(Instance(name=name, version=version, loader=loader))
        return LocalResult(success=True, instance=instance)

    def delete(self, instance_id: str) -> LocalResult:
        if self.fail_delete:
            error = self.fail_delete.pop(0)
            if error is not None:
                return LocalResult(success=False, error=error)
        if self.instances.pop(instance_id, None) is None:
            return LocalResult(success=False, error="Instance not found")
        return LocalResult(success=True)


@pytest.fixture
def sync_config(tmp_path: Path) -> SyncConfig:
    """SyncConfig rooted in a temporary directory."""
    return SyncConfig(data_dir=tmp_path / "data")


@pytest.fixture
def monitor() -> FakeMonitor:
    """Online fake connectivity monitor."""
    return FakeMonitor()


@pytest.fixture
def remote() -> FakeRemote:
    """Empty fake remote store."""
    return FakeRemote()


@pytest.fixture
def local() -> FakeLocal:
    """Empty fake local store."""
    return FakeLocal()


@pytest.fixture
def action_queue(sync_config: SyncConfig, remote: FakeRemote, monitor: FakeMonitor):  # noqa: ANN201
    """Action queue over the fake remote, persisted under sync_config."""
    queue = ActionQueue(
        QueueStorage(sync_config.queue_db_path),
        RemoteActionExecutor(remote),
        monitor,
        sync_config,
    )
    yield queue
    queue.close()
