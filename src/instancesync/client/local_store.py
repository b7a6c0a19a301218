"""Filesystem-backed local instance store.

This module provides:
- LocalStore: Protocol for local instance CRUD
- FileLocalStore: One folder per instance holding an instance.json
- LocalResult: Outcome of a local operation

Local operations never raise: failures are returned as a LocalResult
with success=False so callers cannot skip error handling.

Layout:
    <instances_dir>/
        my_pack/
            instance.json
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from instancesync.core.types import Instance

logger = logging.getLogger(__name__)

INSTANCE_FILE = "instance.json"


@dataclass
class LocalResult:
    """Result of a local store operation."""

    success: bool
    instance: Instance | None = None
    instances: list[Instance] = field(default_factory=list)
    error: str | None = None


class LocalStore(Protocol):
    """Local replica of the user's instances, addressed by local id."""

    def list(self) -> LocalResult:
        """List every local instance into LocalResult.instances."""
        ...

    def create(self, name: str, version: str, loader: str = "vanilla") -> LocalResult:
        """Create an instance."""
        ...

    def delete(self, instance_id: str) -> LocalResult:
        """Delete an instance by local id."""
        ...


def folder_name_for(name: str) -> str:
    """Derive a folder name from an instance name."""
    return re.sub(r"[^a-z0-9]", "_", name, flags=re.IGNORECASE).lower()


class FileLocalStore:
    """Instances stored as folders with an instance.json each."""

    def __init__(self, instances_dir: Path) -> None:
        """Initialize the store.

        Args:
            instances_dir: Directory containing instance folders.
        """
        self._root = Path(instances_dir)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        """Directory containing instance folders."""
        return self._root

    def list(self) -> LocalResult:
        """List instances, skipping unreadable folders."""
        if not self._root.exists():
            return LocalResult(success=True)

        try:
            entries = sorted(self._root.iterdir())
        except OSError as e:
            logger.error("Failed to list instances in %s: %s", self._root, e)
            return LocalResult(success=False, error=str(e))

        instances: list[Instance] = []
        for entry in entries:
            config_path = entry / INSTANCE_FILE
            try:
                if not entry.is_dir() or not config_path.exists():
                    continue
                data = json.loads(config_path.read_text(encoding="utf-8"))
                instance = Instance.from_dict(data)
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Failed to load instance from %s: %s", entry.name, e)
                continue
            if instance.id is None:
                instance.id = entry.name
            instances.append(instance)
        return LocalResult(success=True, instances=instances)

    def get(self, instance_id: str) -> Instance | None:
        """Get an instance by local id."""
        for instance in self.list().instances:
            if instance.id == instance_id:
                return instance
        return None

    def create(self, name: str, version: str, loader: str = "vanilla") -> LocalResult:
        """Create an instance folder and its instance.json.

        Fails if an instance with the same folder name already exists.
        """
        folder = self._root / folder_name_for(name)
        with self._lock:
            if folder.exists():
                return LocalResult(
                    success=False, error="Instance with this name/folder already exists."
                )
            instance = Instance(
                id=folder.name,
                name=name,
                version=version,
                loader=loader,
                created=int(time.time() * 1000),
            )
            tmp_path = folder / f".{INSTANCE_FILE}.{uuid.uuid4().hex}"
            try:
                folder.mkdir(parents=True)
                tmp_path.write_text(
                    json.dumps(instance.to_dict(), indent=4), encoding="utf-8"
                )
                tmp_path.replace(folder / INSTANCE_FILE)
            except OSError as e:
                logger.error("Failed to create instance %s: %s", name, e)
                shutil.rmtree(folder, ignore_errors=True)
                return LocalResult(success=False, error=str(e))

        logger.info("Created local instance %s (%s, %s)", name, version, loader)
        return LocalResult(success=True, instance=instance)

    def delete(self, instance_id: str) -> LocalResult:
        """Delete an instance folder by local id."""
        folder = self._root / instance_id
        with self._lock:
            if not folder.is_dir() or folder.resolve().parent != self._root.resolve():
                return LocalResult(success=False, error="Instance not found")
            try:
                shutil.rmtree(folder)
            except OSError as e:
                logger.error("Failed to delete instance %s: %s", instance_id, e)
                return LocalResult(success=False, error=str(e))

        logger.info("Deleted local instance %s", instance_id)
        return LocalResult(success=True)
