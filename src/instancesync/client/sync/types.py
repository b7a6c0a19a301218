"""Shared types and dataclasses for the sync engine.

This module provides:
- ActionType, ActionStatus: Queued mutation kind and lifecycle state
- ErrorKind, ErrorType: Failure classification
- ErrorRecord: One entry of an action's error history
- SyncAction: A durable queued mutation
- QueueStats, QueueSnapshot: Derived views of the queue
- DrainResult: Outcome of one drain pass
- EnqueueResult: Outcome of enqueue (the queued action or why it was refused)
- Type aliases for callbacks
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ActionType(str, Enum):
    """Kind of mutation carried by a SyncAction."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CUSTOM = "custom"


class ActionStatus(str, Enum):
    """Lifecycle state of a SyncAction.

    Transitions:
        PENDING -> PROCESSING -> COMPLETED | FAILED
        PROCESSING -> PENDING (transient failure, retried after backoff)
        FAILED -> PENDING (manual retry)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.PROCESSING}),
    ActionStatus.PROCESSING: frozenset(
        {ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.PENDING}
    ),
    ActionStatus.FAILED: frozenset({ActionStatus.PENDING}),
    ActionStatus.COMPLETED: frozenset(),
}


class ErrorKind(str, Enum):
    """Whether a failure may succeed when retried."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ErrorType(str, Enum):
    """Display category of a failure."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    AUTH = "auth"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


class InvalidTransitionError(Exception):
    """An action status change outside the state machine was requested."""


@dataclass
class ErrorRecord:
    """One failed attempt of an action."""

    at: float
    message: str
    error_type: ErrorType

    def to_dict(self) -> dict[str, Any]:
        return {"at": self.at, "message": self.message, "error_type": self.error_type.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorRecord:
        return cls(
            at=float(data["at"]),
            message=str(data["message"]),
            error_type=ErrorType(data.get("error_type", ErrorType.UNKNOWN.value)),
        )


@dataclass
class SyncAction:
    """A mutation waiting to be applied to the remote store.

    Attributes:
        id: Unique, immutable identifier.
        type: Mutation kind.
        resource_kind: Kind of resource ("instance", ...).
        resource_key: Natural key of the resource (e.g., instance name).
        payload: Operation arguments.
        created_at: Enqueue time (seconds since the epoch).
        status: Lifecycle state, written only by the queue.
        retry_count: Number of pending re-entries (automatic or manual).
        attempts: Remote calls made since the last manual retry.
        last_error: Message of the most recent failure.
        error_type: Category of the most recent failure.
        error_history: Every recorded failure, oldest first.
        last_attempt: Time of the most recent remote call.
        next_retry_at: Earliest time of the next attempt (backoff).
    """

    id: str
    type: ActionType
    resource_kind: str
    resource_key: str
    payload: dict[str, Any]
    created_at: float
    status: ActionStatus = ActionStatus.PENDING
    retry_count: int = 0
    attempts: int = 0
    last_error: str | None = None
    error_type: ErrorType | None = None
    error_history: list[ErrorRecord] = field(default_factory=list)
    last_attempt: float | None = None
    next_retry_at: float | None = None

    @classmethod
    def create(
        cls,
        action_type: ActionType,
        resource_key: str,
        payload: dict[str, Any] | None = None,
        resource_kind: str = "instance",
    ) -> SyncAction:
        """Create a new pending action with a fresh id."""
        return cls(
            id=uuid.uuid4().hex,
            type=action_type,
            resource_kind=resource_kind,
            resource_key=resource_key,
            payload=dict(payload or {}),
            created_at=time.time(),
        )

    def is_due(self, now: float | None = None) -> bool:
        """Check whether backoff allows an attempt now."""
        if self.next_retry_at is None:
            return True
        return (time.time() if now is None else now) >= self.next_retry_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence."""
        return {
            "id": self.id,
            "type": self.type.value,
            "resource_kind": self.resource_kind,
            "resource_key": self.resource_key,
            "payload": self.payload,
            "created_at": self.created_at,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "error_type": self.error_type.value if self.error_type else None,
            "error_history": [record.to_dict() for record in self.error_history],
            "last_attempt": self.last_attempt,
            "next_retry_at": self.next_retry_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncAction:
        """Deserialize a persisted action.

        Raises:
            KeyError, ValueError, TypeError: If the data is malformed.
        """
        if not isinstance(data["id"], str) or not isinstance(data["retry_count"], int):
            raise ValueError("Malformed action")
        return cls(
            id=data["id"],
            type=ActionType(data["type"]),
            resource_kind=str(data["resource_kind"]),
            resource_key=str(data["resource_key"]),
            payload=dict(data.get("payload") or {}),
            created_at=float(data["created_at"]),
            status=ActionStatus(data["status"]),
            retry_count=data["retry_count"],
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            error_type=ErrorType(data["error_type"]) if data.get("error_type") else None,
            error_history=[ErrorRecord.from_dict(r) for r in data.get("error_history", [])],
            last_attempt=data.get("last_attempt"),
            next_retry_at=data.get("next_retry_at"),
        )

    def __repr__(self) -> str:
        return (
            f"SyncAction({self.type.value} {self.resource_kind}:{self.resource_key}, "
            f"{self.status.value}, id={self.id[:8]})"
        )


@dataclass
class QueueStats:
    """Aggregate view of the queue, recomputed on every call."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    failed: int = 0
    completed: int = 0
    avg_retry_count: float = 0.0
    oldest_action: float | None = None

    @classmethod
    def from_actions(cls, actions: list[SyncAction]) -> QueueStats:
        """Compute stats over a list of actions."""
        stats = cls(total=len(actions))
        for action in actions:
            if action.status == ActionStatus.PENDING:
                stats.pending += 1
            elif action.status == ActionStatus.PROCESSING:
                stats.processing += 1
            elif action.status == ActionStatus.FAILED:
                stats.failed += 1
            elif action.status == ActionStatus.COMPLETED:
                stats.completed += 1
        if actions:
            total_retries = sum(a.retry_count for a in actions)
            stats.avg_retry_count = round(total_retries / len(actions), 1)
            stats.oldest_action = min(a.created_at for a in actions)
        return stats

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "failed": self.failed,
            "completed": self.completed,
            "avg_retry_count": self.avg_retry_count,
            "oldest_action": self.oldest_action,
        }


@dataclass
class QueueSnapshot:
    """Immutable copy of the queue state delivered to subscribers."""

    actions: list[SyncAction]
    last_sync_time: float | None
    is_processing: bool
    is_corrupted: bool = False
    storage_error: str | None = None

    def find(self, action_id: str) -> SyncAction | None:
        """Find an action by id."""
        for action in self.actions:
            if action.id == action_id:
                return action
        return None


@dataclass
class DrainResult:
    """Outcome of one drain pass.

    Attributes:
        ran: False if the call was coalesced into an active drain.
        completed: Ids of actions applied successfully.
        requeued: Ids of actions that failed transiently and await backoff.
        failed: Ids of actions marked permanently failed.
        skipped: Ids of pending actions left untouched (backoff, blocked key).
        stopped_offline: True if the drain stopped because we went offline.
    """

    ran: bool = True
    completed: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    stopped_offline: bool = False

    @property
    def attempted(self) -> int:
        """Number of remote calls made."""
        return len(self.completed) + len(self.requeued) + len(self.failed)


class EnqueueError(str, Enum):
    """Why an action was not queued."""

    QUEUE_FULL = "queue_full"
    STORAGE = "storage"


@dataclass
class EnqueueResult:
    """Result of ActionQueue.enqueue().

    action is a copy of the queued action, or None if it was refused.
    """

    action: SyncAction | None = None
    error: EnqueueError | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        """Check if the action was queued."""
        return self.error is None


# Type alias for queue subscribers
QueueListener = Callable[[QueueSnapshot], None]

# Type alias for queue event subscribers: (event name, data)
QueueEventListener = Callable[[str, dict[str, Any]], None]
