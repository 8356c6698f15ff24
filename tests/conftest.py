"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from todo_sync.models import Due, Label, Project, Task  # noqa: E402
from todo_sync.sync.services import DocumentStore, DocumentStoreError, RemoteTaskService  # noqa: E402


TODAY = date(2024, 5, 1)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class InMemoryDocumentStore(DocumentStore):
    """Document store backed by a dict, recording every write."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})
        self.writes: List[str] = []
        self.fail_writes: set = set()
        self.fail_reads: set = set()

    async def read(self, path: str) -> str:
        if path in self.fail_reads:
            raise DocumentStoreError(f"cannot read {path}")
        if path not in self.files:
            raise DocumentStoreError(f"{path} does not exist")
        return self.files[path]

    async def write(self, path: str, text: str) -> None:
        if path in self.fail_writes:
            raise DocumentStoreError(f"cannot write {path}")
        self.files[path] = text
        self.writes.append(path)

    async def list(self) -> List[str]:
        return sorted(self.files)

    async def exists(self, path: str) -> bool:
        return path in self.files

    async def create_dir(self, path: str) -> None:
        pass


def make_task(task_id: str, content: str, **kwargs) -> Task:
    """Task with sensible defaults; ``due`` may be given as a date."""
    due = kwargs.pop("due", None)
    if isinstance(due, date):
        due = Due(date=due)
    labels = [Label(name=name) if isinstance(name, str) else name for name in kwargs.pop("labels", [])]
    kwargs.setdefault("project_id", "inbox")
    return Task(id=task_id, content=content, due=due, labels=labels, **kwargs)


def make_remote(tasks: List[Task], projects: Optional[List[Project]] = None) -> Mock:
    """Remote service mock serving a fixed snapshot."""
    remote = Mock(spec=RemoteTaskService)
    remote.is_ready = AsyncMock(return_value=True)
    remote.fetch_all = AsyncMock(return_value=list(tasks))
    remote.fetch_projects = AsyncMock(return_value=list(projects if projects is not None else [
        Project(id="inbox", name="Inbox", is_inbox=True),
    ]))
    remote.fetch_sections = AsyncMock(return_value=[])
    remote.fetch_labels = AsyncMock(return_value=[])
    remote.close = AsyncMock(return_value=True)
    remote.update = AsyncMock(return_value=None)
    remote.delete = AsyncMock(return_value=True)

    counter = iter(range(1000, 2000))

    async def create(content, options=None):
        options = options or {}
        return Task(
            id=str(next(counter)),
            content=content,
            priority=options.get("priority", 1),
            project_id=options.get("project_id"),
            parent_id=options.get("parent_id"),
            labels=[Label(name=name) for name in options.get("labels") or []],
            due=Due(date=date.fromisoformat(options["due_date"])) if options.get("due_date") else None,
        )

    remote.create = AsyncMock(side_effect=create)
    return remote


@pytest.fixture
def documents():
    return InMemoryDocumentStore()


@pytest.fixture
def today():
    return TODAY
