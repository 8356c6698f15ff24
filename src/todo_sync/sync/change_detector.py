"""Hash-based change detection in both sync directions.

Remote to local: each remote task's current hash is compared with the hash
recorded next to it in the document (or in the mapping store), which gives
new / changed / unchanged / deleted without storing any history.

Local to remote: each parsed line is compared with what was written there
last time, which gives completed / modified / newly added / unchanged.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Union

from ..models import ParsedTask, Task
from ..task_format import calculate_task_hash, parse_document
from .mapping_store import MappingStore


logger = logging.getLogger(__name__)

TRACKED_LOCAL_FIELDS = ("content", "completed", "priority", "due_date", "labels")


def snapshot_of_task(task: Task) -> Dict[str, Any]:
    """Locally visible fields of a remote task, shaped like ParsedTask.snapshot()."""
    return {
        "content": " ".join(task.content.split()),
        "completed": task.is_completed,
        "priority": task.priority,
        "due_date": task.due.date.isoformat() if task.due else None,
        "labels": task.label_names,
    }


@dataclass
class LocalCorpus:
    """Parsed view of the local documents."""

    documents: Dict[str, str] = field(default_factory=dict)
    tasks: Dict[str, List[ParsedTask]] = field(default_factory=dict)

    @classmethod
    def from_documents(cls, documents: Dict[str, str]) -> 'LocalCorpus':
        tasks = {path: parse_document(text, path) for path, text in documents.items()}
        return cls(documents=dict(documents), tasks=tasks)

    def iter_tasks(self) -> Iterator[ParsedTask]:
        for path in sorted(self.tasks):
            yield from self.tasks[path]

    def by_id(self) -> Dict[str, ParsedTask]:
        """First occurrence of every task id, in path order."""
        found: Dict[str, ParsedTask] = {}
        for task in self.iter_tasks():
            if task.task_id is not None and task.task_id not in found:
                found[task.task_id] = task
        return found


@dataclass
class RemoteChanges:
    """Remote tasks classified against the local corpus."""

    new: List[Task] = field(default_factory=list)
    changed: List[Task] = field(default_factory=list)
    unchanged: List[Task] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.new) + len(self.changed) + len(self.unchanged)

    @property
    def changed_count(self) -> int:
        return len(self.new) + len(self.changed) + len(self.deleted)

    @property
    def affected_ids(self) -> Set[str]:
        ids = {task.id for task in self.new}
        ids.update(task.id for task in self.changed)
        ids.update(self.deleted)
        return ids


@dataclass
class LocalChanges:
    """Local lines classified against the remote tasks."""

    completed: List[Tuple[ParsedTask, Task]] = field(default_factory=list)
    modified: List[Tuple[ParsedTask, Task]] = field(default_factory=list)
    newly_added: List[ParsedTask] = field(default_factory=list)
    unchanged: List[ParsedTask] = field(default_factory=list)
    # Fields the user edited, per task id
    edited_fields: Dict[str, Set[str]] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.completed or self.modified or self.newly_added)


class ChangeDetector:
    """Classifies tasks as new, changed, unchanged or deleted."""

    def __init__(self, mapping_store: Optional[MappingStore] = None,
                 min_sample_size: int = 10, change_threshold: float = 0.3):
        """Initialize the detector.

        Args:
            mapping_store: Fallback source of last-known hashes and snapshots
            min_sample_size: Task count at or below which a full pass is used
            change_threshold: Changed fraction at or above which a full pass is used
        """
        self.mapping_store = mapping_store
        self.min_sample_size = min_sample_size
        self.change_threshold = change_threshold
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _corpus(documents: Union[LocalCorpus, Dict[str, str]]) -> LocalCorpus:
        if isinstance(documents, LocalCorpus):
            return documents
        return LocalCorpus.from_documents(documents)

    def _known_hash(self, task_id: str, local: Optional[ParsedTask]) -> Optional[str]:
        if local is not None and local.stored_hash:
            return local.stored_hash
        if self.mapping_store is not None:
            mapping = self.mapping_store.get_mapping(task_id)
            if mapping is not None:
                return mapping.checksum
        return None

    def identify_changed_tasks(self, remote_tasks: List[Task],
                               documents: Union[LocalCorpus, Dict[str, str]]) -> RemoteChanges:
        """Classify remote tasks against the hashes recorded locally.

        Args:
            remote_tasks: Current remote snapshot
            documents: Local documents (path -> text) or a parsed corpus

        Returns:
            RemoteChanges
        """
        corpus = self._corpus(documents)
        local_by_id = corpus.by_id()
        remote_ids = set()
        changes = RemoteChanges()

        for task in remote_tasks:
            remote_ids.add(task.id)
            known_hash = self._known_hash(task.id, local_by_id.get(task.id))
            if known_hash is None:
                changes.new.append(task)
            elif known_hash != calculate_task_hash(task):
                changes.changed.append(task)
            else:
                changes.unchanged.append(task)

        for task_id in local_by_id:
            if task_id not in remote_ids:
                changes.deleted.append(task_id)

        self.logger.debug(
            f"Remote changes: {len(changes.new)} new, {len(changes.changed)} changed, "
            f"{len(changes.unchanged)} unchanged, {len(changes.deleted)} deleted"
        )
        return changes

    def resolve_task_id(self, parsed: ParsedTask) -> Optional[str]:
        """Id of a line, recovered through the reverse index if its comment is gone."""
        if parsed.task_id is not None:
            return parsed.task_id
        if self.mapping_store is None or parsed.document_path is None or parsed.line_number is None:
            return None

        task_id = self.mapping_store.get_task_id(parsed.document_path, parsed.line_number)
        if task_id is None:
            return None
        mapping = self.mapping_store.get_mapping(task_id)
        if mapping is not None and " ".join(mapping.content.split()) == parsed.content:
            return task_id
        return None

    def local_edit_fields(self, parsed: ParsedTask, remote: Task) -> Set[str]:
        """Fields the user changed on this line since it was last written.

        The baseline is the mapping snapshot. Without one, the remote task
        itself serves as baseline when the line's hash shows it was rendered
        from the current remote version. Otherwise only a completion toggle
        is trusted as a local edit.
        """
        baseline = None
        if self.mapping_store is not None:
            mapping = self.mapping_store.get_mapping(remote.id)
            if mapping is not None and mapping.snapshot:
                baseline = mapping.snapshot
        if baseline is None and parsed.stored_hash == calculate_task_hash(remote):
            baseline = snapshot_of_task(remote)

        current = parsed.snapshot()
        if baseline is None:
            if current["completed"] and not remote.is_completed:
                return {"completed"}
            return set()

        return {name for name in TRACKED_LOCAL_FIELDS if current.get(name) != baseline.get(name)}

    @staticmethod
    def has_local_task_changed(parsed: ParsedTask, remote: Task) -> bool:
        """Whether a line differs from the remote task in content, priority, date or labels."""
        local = parsed.snapshot()
        other = snapshot_of_task(remote)
        return any(local[name] != other[name] for name in ("content", "priority", "due_date", "labels"))

    def identify_local_changes(self, remote_tasks: List[Task],
                               documents: Union[LocalCorpus, Dict[str, str]]) -> LocalChanges:
        """Classify local lines against the remote snapshot.

        Args:
            remote_tasks: Current remote snapshot
            documents: Local documents (path -> text) or a parsed corpus

        Returns:
            LocalChanges
        """
        corpus = self._corpus(documents)
        remote_by_id = {task.id: task for task in remote_tasks}
        changes = LocalChanges()
        seen: Set[str] = set()

        for parsed in corpus.iter_tasks():
            task_id = self.resolve_task_id(parsed)
            if task_id is None:
                if parsed.content:
                    changes.newly_added.append(parsed)
                continue

            if task_id in seen:
                continue
            seen.add(task_id)
            parsed.task_id = task_id

            remote = remote_by_id.get(task_id)
            if remote is None:
                continue

            edited = self.local_edit_fields(parsed, remote)
            if edited:
                changes.edited_fields[task_id] = edited

            if "completed" in edited and parsed.completed and not remote.is_completed:
                changes.completed.append((parsed, remote))
            elif edited - {"completed"}:
                changes.modified.append((parsed, remote))
            else:
                changes.unchanged.append(parsed)

        self.logger.debug(
            f"Local changes: {len(changes.completed)} completed, {len(changes.modified)} modified, "
            f"{len(changes.newly_added)} new, {len(changes.unchanged)} unchanged"
        )
        return changes

    # Incremental strategy

    @staticmethod
    def calculate_efficiency(changes: RemoteChanges) -> float:
        """Fraction of tasks unchanged since the last sync."""
        if changes.total == 0:
            return 0.0
        return len(changes.unchanged) / changes.total

    def should_use_incremental_sync(self, changes: RemoteChanges) -> bool:
        """Incremental only pays off for enough tasks with few changes."""
        if changes.total <= self.min_sample_size:
            return False
        return changes.changed_count / changes.total < self.change_threshold

    def generate_sync_report(self, changes: RemoteChanges) -> str:
        efficiency = self.calculate_efficiency(changes)
        strategy = "incremental" if self.should_use_incremental_sync(changes) else "full"
        lines = [
            f"Sync analysis: {changes.total} tasks",
            f"  New: {len(changes.new)}",
            f"  Changed: {len(changes.changed)}",
            f"  Unchanged: {len(changes.unchanged)}",
            f"  Deleted: {len(changes.deleted)}",
            f"  Efficiency: {efficiency * 100:.1f}%",
            f"  Strategy: {strategy}",
        ]
        return "\n".join(lines)
