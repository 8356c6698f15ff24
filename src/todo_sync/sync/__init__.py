"""Synchronization core: change detection, conflicts, safe writes and the sync transaction.

Import the orchestrator from ``todo_sync.sync.orchestrator``.
"""

from .services import (
    DocumentStore,
    RemoteTaskService,
    SyncError,
    SyncInProgressError,
    TransientServiceError,
)

__all__ = [
    "DocumentStore",
    "RemoteTaskService",
    "SyncError",
    "SyncInProgressError",
    "TransientServiceError",
]
