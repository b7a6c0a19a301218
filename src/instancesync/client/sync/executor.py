"""Dispatch of queued actions to remote store operations.

This module provides:
- ActionHandler: Callable applying one action remotely
- RemoteActionExecutor: Registry mapping (resource kind, action type) to handlers

Built-in handlers cover instances:
    create/update -> RemoteStore.save_instance (upsert by name)
    delete        -> RemoteStore.delete_instance
Custom actions need a handler registered for their resource kind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from instancesync.client.api import ValidationError
from instancesync.client.sync.types import ActionType, SyncAction
from instancesync.core.types import Instance

if TYPE_CHECKING:
    from instancesync.client.api import RemoteStore

logger = logging.getLogger(__name__)

INSTANCE_KIND = "instance"

ActionHandler = Callable[[SyncAction], None]


class UnsupportedActionError(ValidationError):
    """No handler is registered for the action."""


class RemoteActionExecutor:
    """Applies queued actions against the remote store.

    execute() raises whatever the remote call raises; the queue
    classifies the exception.
    """

    def __init__(self, remote: RemoteStore) -> None:
        """Initialize the executor with the instance handlers.

        Args:
            remote: Remote store receiving the mutations.
        """
        self._remote = remote
        self._handlers: dict[tuple[str, ActionType], ActionHandler] = {
            (INSTANCE_KIND, ActionType.CREATE): self._save_instance,
            (INSTANCE_KIND, ActionType.UPDATE): self._save_instance,
            (INSTANCE_KIND, ActionType.DELETE): self._delete_instance,
        }

    def register(
        self,
        resource_kind: str,
        action_type: ActionType,
        handler: ActionHandler,
    ) -> None:
        """Register (or replace) the handler for a kind and type."""
        self._handlers[(resource_kind, action_type)] = handler
        logger.debug("Registered handler for %s:%s", resource_kind, action_type.value)

    def execute(self, action: SyncAction) -> None:
        """Apply one action remotely.

        Raises:
            UnsupportedActionError: If no handler matches.
            ValidationError: If the payload is malformed.
        """
        handler = self._handlers.get((action.resource_kind, action.type))
        if handler is None:
            raise UnsupportedActionError(
                f"No handler for {action.resource_kind}:{action.type.value}"
            )
        logger.debug("Executing %r", action)
        handler(action)

    def _user_id(self, action: SyncAction) -> str:
        user_id = action.payload.get("user_id")
        if not user_id:
            raise ValidationError(f"Action {action.id} has no user_id")
        return str(user_id)

    def _save_instance(self, action: SyncAction) -> None:
        user_id = self._user_id(action)
        try:
            instance = Instance.from_dict(action.payload["instance"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed instance payload: {e}") from e
        if instance.name != action.resource_key:
            raise ValidationError(
                f"Instance name {instance.name!r} does not match key {action.resource_key!r}"
            )
        self._remote.save_instance(instance, user_id)

    def _delete_instance(self, action: SyncAction) -> None:
        self._remote.delete_instance(action.resource_key, self._user_id(action))
