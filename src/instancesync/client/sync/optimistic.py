"""Optimistic updates backed by queued actions.

A caller applies a change to its own view right away and tracks the
queued action behind it:

    PENDING --(action completed)--> CONFIRMED
    PENDING --(action failed or discarded)--> REVERTED

On revert the previous value is handed to on_revert so the caller can
restore it. Both end states are terminal.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from instancesync.client.sync.types import ActionStatus, ActionType, QueueSnapshot

if TYPE_CHECKING:
    from instancesync.client.sync.queue import ActionQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OptimisticStatus(str, Enum):
    """State of an optimistic update."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


class OptimisticUpdate(Generic[T]):
    """One optimistic change and the action that will make it real."""

    def __init__(
        self,
        value: T,
        previous: T,
        on_revert: Callable[[T], None] | None = None,
        on_change: Callable[[OptimisticUpdate[T]], None] | None = None,
    ) -> None:
        self._value = value
        self._previous = previous
        self._on_revert = on_revert
        self._on_change = on_change
        self._lock = threading.Lock()
        self._status = OptimisticStatus.PENDING
        self._error: str | None = None
        self._action_id: str | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    def apply(
        cls,
        queue: ActionQueue,
        action_type: ActionType,
        resource_key: str,
        payload: dict[str, Any],
        value: T,
        previous: T,
        on_revert: Callable[[T], None] | None = None,
        on_change: Callable[[OptimisticUpdate[T]], None] | None = None,
    ) -> OptimisticUpdate[T]:
        """Enqueue an action and track it optimistically.

        If the action cannot be queued the update is reverted at once.
        """
        update = cls(value, previous, on_revert, on_change)
        result = queue.enqueue(action_type, resource_key, payload)
        if result.action is None:
            update.revert(result.message or "Could not queue change")
            return update
        update.track(queue, result.action.id)
        return update

    def track(self, queue: ActionQueue, action_id: str) -> None:
        """Follow an already queued action until it settles."""
        self._action_id = action_id
        unsubscribe = queue.subscribe(self._on_snapshot)
        with self._lock:
            if self._status == OptimisticStatus.PENDING:
                self._unsubscribe = unsubscribe
                return
        unsubscribe()  # settled during the initial snapshot

    def _on_snapshot(self, snapshot: QueueSnapshot) -> None:
        if self._action_id is None:
            return
        action = snapshot.find(self._action_id)
        if action is None:
            self.revert("Action was discarded")
        elif action.status == ActionStatus.COMPLETED:
            self.confirm()
        elif action.status == ActionStatus.FAILED:
            self.revert(action.last_error or "Sync failed")

    def _settle(self, status: OptimisticStatus, error: str | None = None) -> bool:
        with self._lock:
            if self._status != OptimisticStatus.PENDING:
                return False
            self._status = status
            self._error = error
            unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        return True

    def confirm(self) -> None:
        """Mark the change as applied remotely."""
        if not self._settle(OptimisticStatus.CONFIRMED):
            return
        logger.debug("Optimistic update confirmed (action %s)", self._action_id)
        self._changed()

    def revert(self, error: str) -> None:
        """Abandon the change and restore the previous value."""
        if not self._settle(OptimisticStatus.REVERTED, error):
            return
        logger.info("Reverting optimistic update (action %s): %s", self._action_id, error)
        if self._on_revert is not None:
            self._on_revert(self._previous)
        self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    @property
    def status(self) -> OptimisticStatus:
        return self._status

    @property
    def value(self) -> T:
        """Value to display: the new one unless reverted."""
        return self._previous if self._status == OptimisticStatus.REVERTED else self._value

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def action_id(self) -> str | None:
        return self._action_id
