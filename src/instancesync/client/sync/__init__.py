"""Offline sync engine.

Architecture:
    SyncService → ActionQueue → RemoteActionExecutor → RemoteStore
                → ConflictDetector / ConflictResolver → LocalStore, RemoteStore
                → BackgroundSync (APScheduler)

Components:
- **ActionQueue**: Durable, per-resource FIFO queue of mutations with retry/backoff
- **RemoteActionExecutor**: Maps queued actions to remote store operations
- **ConflictDetector / ConflictResolver**: Cross-device divergence and its resolution
- **ResourceLocks**: Per-resource exclusive sections shared by drain and resolution
- **OptimisticUpdate**: Pending/confirmed/reverted tracking of a queued change
- **BackgroundSync**: Periodic, startup, shutdown and manual drains
- **SyncService**: Facade wiring the above to connectivity changes

All public symbols are re-exported here.
"""

from instancesync.client.sync.background import (
    BackgroundSync,
    BackgroundSyncOptions,
    BackgroundSyncStatus,
)
from instancesync.client.sync.conflict import (
    BulkResolutionResult,
    Conflict,
    ConflictDetector,
    ConflictResolver,
    ConflictType,
    PendingResolution,
    ResolutionJournal,
    ResolutionPolicy,
    ResolutionResult,
    SnapshotStore,
)
from instancesync.client.sync.executor import (
    INSTANCE_KIND,
    ActionHandler,
    RemoteActionExecutor,
    UnsupportedActionError,
)
from instancesync.client.sync.locks import ResourceLocks, lock_key
from instancesync.client.sync.optimistic import OptimisticStatus, OptimisticUpdate
from instancesync.client.sync.queue import ActionQueue, QueueStorage
from instancesync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
    NETWORK_EXCEPTIONS,
    categorize_error,
    classify_error,
    compute_backoff,
    run_with_timeout,
)
from instancesync.client.sync.service import SyncService, SyncStatus
from instancesync.client.sync.types import (
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

__all__ = [
    # Retry functions and constants
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF",
    "NETWORK_EXCEPTIONS",
    "categorize_error",
    "classify_error",
    "compute_backoff",
    "run_with_timeout",
    # Types and dataclasses
    "ActionStatus",
    "ActionType",
    "DrainResult",
    "EnqueueError",
    "EnqueueResult",
    "ErrorKind",
    "ErrorRecord",
    "ErrorType",
    "InvalidTransitionError",
    "QueueEventListener",
    "QueueListener",
    "QueueSnapshot",
    "QueueStats",
    "SyncAction",
    # Queue
    "ActionQueue",
    "QueueStorage",
    # Executor
    "INSTANCE_KIND",
    "ActionHandler",
    "RemoteActionExecutor",
    "UnsupportedActionError",
    # Locks
    "ResourceLocks",
    "lock_key",
    # Conflicts
    "BulkResolutionResult",
    "Conflict",
    "ConflictDetector",
    "ConflictResolver",
    "ConflictType",
    "PendingResolution",
    "ResolutionJournal",
    "ResolutionPolicy",
    "ResolutionResult",
    "SnapshotStore",
    # Optimistic updates
    "OptimisticStatus",
    "OptimisticUpdate",
    # Background sync and service
    "BackgroundSync",
    "BackgroundSyncOptions",
    "BackgroundSyncStatus",
    "SyncService",
    "SyncStatus",
]
