"""Collaborator interfaces and the sync error taxonomy.

The sync core talks to exactly two collaborators: the remote task service
that owns tasks, projects, sections and labels, and the document store
holding the local markdown corpus. Concrete implementations live in
``todo_sync.adapters``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import Label, Project, Section, Task


logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class TransientServiceError(SyncError):
    """Remote service unreachable, timed out or not ready."""
    pass


class AuthenticationError(TransientServiceError):
    """Authentication failed with the remote service."""
    pass


class RateLimitError(TransientServiceError):
    """Rate limit exceeded."""
    pass


class StateCorruptionError(SyncError):
    """A mapping or backup record could not be parsed."""
    pass


class PartialWriteFailure(SyncError):
    """A single document or remote mutation failed."""

    def __init__(self, target: str, message: str):
        super().__init__(f"{target}: {message}")
        self.target = target


class BackupError(SyncError):
    """The pre-mutation backup could not be written."""
    pass


class UnresolvedConflictError(SyncError):
    """A conflict needs manual attention."""
    pass


class SyncInProgressError(SyncError):
    """Another sync transaction is already running."""
    pass


class DocumentStoreError(SyncError):
    """Reading or writing a document failed."""
    pass


class RemoteTaskService(ABC):
    """Interface of the remote task store.

    Every method may raise TransientServiceError (or a subclass) when the
    service cannot be reached.
    """

    @abstractmethod
    async def is_ready(self) -> bool:
        """Whether the service is configured and reachable."""
        pass

    @abstractmethod
    async def fetch_all(self) -> List[Task]:
        """Fetch every active task."""
        pass

    @abstractmethod
    async def fetch_projects(self) -> List[Project]:
        pass

    @abstractmethod
    async def fetch_sections(self) -> List[Section]:
        pass

    @abstractmethod
    async def fetch_labels(self) -> List[Label]:
        pass

    @abstractmethod
    async def close(self, task_id: str) -> bool:
        """Mark a task as completed."""
        pass

    @abstractmethod
    async def create(self, content: str, options: Optional[Dict[str, Any]] = None) -> Task:
        """Create a task.

        Args:
            content: Task content
            options: Optional fields (project_id, section_id, parent_id,
                priority, due_date, labels, duration, description)

        Returns:
            The created task as stored remotely
        """
        pass

    @abstractmethod
    async def update(self, task_id: str, fields: Dict[str, Any]) -> Task:
        """Partially update a task; fields not named are left untouched."""
        pass

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        pass


class DocumentStore(ABC):
    """Interface of the local document corpus.

    Paths are relative, ``/``-separated strings. ``write`` must replace the
    whole document atomically.
    """

    @abstractmethod
    async def read(self, path: str) -> str:
        pass

    @abstractmethod
    async def write(self, path: str, text: str) -> None:
        pass

    @abstractmethod
    async def list(self) -> List[str]:
        """Every markdown document path in the corpus."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    async def create_dir(self, path: str) -> None:
        pass
