"""Concrete collaborators for the sync core.

``TodoistTaskService`` talks to the Todoist REST API; ``VaultDocumentStore``
reads and writes markdown files under a vault directory.
"""

from .todoist_adapter import TodoistTaskService
from .vault_store import VaultDocumentStore

__all__ = ['TodoistTaskService', 'VaultDocumentStore']
