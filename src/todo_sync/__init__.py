"""todo-sync - bidirectional sync between Todoist and a markdown vault."""

__version__ = "0.1.0"
__author__ = "todo-sync contributors"

from .models import (
    SyncDirection,
    SyncState,
    Task,
    TaskMapping,
)

__all__ = ["SyncDirection", "SyncState", "Task", "TaskMapping", "__version__"]
