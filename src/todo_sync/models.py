"""Data models shared across the sync pipeline.

Remote entities (tasks, projects, sections, labels) are mirrored read-only
from the remote service. Local entities (parsed lines, mappings) and the
per-run result structures live here as well so that every layer speaks the
same types.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .utils.datetime import now_utc, parse_iso_date, parse_iso_datetime, to_iso_string


DEFAULT_PRIORITY = 1


class SyncDirection(Enum):
    """Sync direction options."""
    BIDIRECTIONAL = "bidirectional"
    PUSH_ONLY = "push_only"  # Local to remote only
    PULL_ONLY = "pull_only"  # Remote to local only


class SyncState(Enum):
    """States of a sync transaction."""
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    BACKING_UP = "backing_up"
    RESOLVING = "resolving"
    WRITING_LOCAL = "writing_local"
    WRITING_REMOTE = "writing_remote"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.DONE, SyncState.FAILED)


class ConflictKind(Enum):
    """Kinds of disagreement between a local line and its remote task."""
    CONTENT_MODIFIED = "content_modified"
    COMPLETION_STATUS = "completion_status"
    BOTH_MODIFIED = "both_modified"
    PRIORITY_CHANGED = "priority_changed"
    DUE_DATE_CHANGED = "due_date_changed"
    DELETED_REMOTE = "deleted_remote"
    DELETED_LOCAL = "deleted_local"


class DurationUnit(Enum):
    """Units the remote service accepts for task durations."""
    MINUTE = "minute"
    DAY = "day"


@dataclass
class Label:
    """A remote label. Tasks reference labels by name."""

    name: str
    id: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Label':
        return cls(name=data["name"], id=data.get("id"), color=data.get("color"))


@dataclass
class Project:
    """A remote project; each one maps to a managed document."""

    id: str
    name: str
    parent_id: Optional[str] = None
    is_inbox: bool = False
    order: int = 0
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Project':
        return cls(
            id=str(data["id"]),
            name=data["name"],
            parent_id=data.get("parent_id"),
            is_inbox=bool(data.get("is_inbox", False)),
            order=int(data.get("order") or 0),
            color=data.get("color"),
        )


@dataclass
class Section:
    """A remote section inside a project."""

    id: str
    name: str
    project_id: str
    order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Section':
        return cls(
            id=str(data["id"]),
            name=data["name"],
            project_id=str(data["project_id"]),
            order=int(data.get("order") or 0),
        )


@dataclass
class Due:
    """Due information of a remote task.

    ``string`` carries the natural-language rule for recurring tasks
    ("every day", "every 2 weeks"); the remaining fields are recurrence
    internals that local edits must never overwrite.
    """

    date: date
    datetime: Optional[datetime] = None
    string: Optional[str] = None
    is_recurring: bool = False
    timezone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "datetime": to_iso_string(self.datetime),
            "string": self.string,
            "is_recurring": self.is_recurring,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Due']:
        if not data:
            return None
        due_date = parse_iso_date(data.get("date"))
        if due_date is None:
            return None
        return cls(
            date=due_date,
            datetime=parse_iso_datetime(data.get("datetime")),
            string=data.get("string"),
            is_recurring=bool(data.get("is_recurring", False)),
            timezone=data.get("timezone"),
        )


@dataclass
class Duration:
    """Estimated effort, stored in minutes or whole days."""

    amount: int
    unit: DurationUnit = DurationUnit.MINUTE

    def to_minutes(self) -> int:
        if self.unit == DurationUnit.DAY:
            return self.amount * 24 * 60
        return self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "unit": self.unit.value}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Duration']:
        if not data:
            return None
        try:
            amount = int(data["amount"])
            unit = DurationUnit(data.get("unit", "minute"))
        except (KeyError, TypeError, ValueError):
            return None
        if amount <= 0:
            return None
        return cls(amount=amount, unit=unit)


@dataclass
class Task:
    """A task as owned by the remote service."""

    id: str
    content: str
    description: str = ""
    priority: int = DEFAULT_PRIORITY
    due: Optional[Due] = None
    duration: Optional[Duration] = None
    labels: List[Label] = field(default_factory=list)
    project_id: Optional[str] = None
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    order: int = 0
    is_completed: bool = False

    # Remote-only metadata, never representable in a document line
    created_at: Optional[datetime] = None
    creator_id: Optional[str] = None
    assignee_id: Optional[str] = None
    assigner_id: Optional[str] = None
    comment_count: int = 0
    url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Labels are unique by name; keep the first occurrence.
        seen = set()
        unique = []
        for label in self.labels:
            if label.name not in seen:
                seen.add(label.name)
                unique.append(label)
        self.labels = unique

    @property
    def label_names(self) -> List[str]:
        return sorted(label.name for label in self.labels)

    @property
    def is_recurring(self) -> bool:
        return bool(self.due and self.due.is_recurring)

    @property
    def due_date(self) -> Optional[date]:
        return self.due.date if self.due else None

    def to_dict(self) -> Dict[str, Any]:
        """Full snapshot including remote-only metadata."""
        return {
            "id": self.id,
            "content": self.content,
            "description": self.description,
            "priority": self.priority,
            "due": self.due.to_dict() if self.due else None,
            "duration": self.duration.to_dict() if self.duration else None,
            "labels": [label.to_dict() for label in self.labels],
            "project_id": self.project_id,
            "section_id": self.section_id,
            "parent_id": self.parent_id,
            "order": self.order,
            "is_completed": self.is_completed,
            "created_at": to_iso_string(self.created_at),
            "creator_id": self.creator_id,
            "assignee_id": self.assignee_id,
            "assigner_id": self.assigner_id,
            "comment_count": self.comment_count,
            "url": self.url,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        labels = []
        for item in data.get("labels") or []:
            if isinstance(item, str):
                labels.append(Label(name=item))
            else:
                labels.append(Label.from_dict(item))

        return cls(
            id=str(data["id"]),
            content=data.get("content", ""),
            description=data.get("description") or "",
            priority=int(data.get("priority") or DEFAULT_PRIORITY),
            due=Due.from_dict(data.get("due")),
            duration=Duration.from_dict(data.get("duration")),
            labels=labels,
            project_id=data.get("project_id"),
            section_id=data.get("section_id"),
            parent_id=data.get("parent_id"),
            order=int(data.get("order") or 0),
            is_completed=bool(data.get("is_completed", False)),
            created_at=parse_iso_datetime(data.get("created_at")),
            creator_id=data.get("creator_id"),
            assignee_id=data.get("assignee_id"),
            assigner_id=data.get("assigner_id"),
            comment_count=int(data.get("comment_count") or 0),
            url=data.get("url"),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class ParsedTask:
    """Local snapshot of a task decoded from one document line."""

    content: str
    completed: bool = False
    task_id: Optional[str] = None
    stored_hash: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    due_date: Optional[date] = None
    overdue: bool = False
    duration: Optional[Duration] = None
    recurrence: Optional[str] = None
    labels: List[str] = field(default_factory=list)
    description: str = ""
    document_path: Optional[str] = None
    line_number: Optional[int] = None
    indent: int = 0
    parent_task_id: Optional[str] = None
    # Raw lines of the task line and its description block
    block: List[str] = field(default_factory=list)

    @property
    def is_new(self) -> bool:
        return self.task_id is None

    def snapshot(self) -> Dict[str, Any]:
        """Locally visible fields, as compared between sync runs."""
        return {
            "content": " ".join(self.content.split()),
            "completed": self.completed,
            "priority": self.priority,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "labels": sorted(set(self.labels)),
        }


@dataclass
class TaskMapping:
    """Association between a task id and its line in a document."""

    task_id: str
    document_path: str
    line_number: int
    content: str = ""
    checksum: Optional[str] = None
    last_sync_time: datetime = field(default_factory=now_utc)
    snapshot: Dict[str, Any] = field(default_factory=dict)

    @property
    def location_key(self) -> str:
        return location_key(self.document_path, self.line_number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "documentPath": self.document_path,
            "lineNumber": self.line_number,
            "content": self.content,
            "lastSyncTime": to_iso_string(self.last_sync_time),
            "checksum": self.checksum,
            "snapshot": dict(self.snapshot),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TaskMapping':
        return cls(
            task_id=str(data["taskId"]),
            document_path=str(data["documentPath"]),
            line_number=int(data["lineNumber"]),
            content=data.get("content") or "",
            checksum=data.get("checksum"),
            last_sync_time=parse_iso_datetime(data.get("lastSyncTime")) or now_utc(),
            snapshot=dict(data.get("snapshot") or {}),
        )


def location_key(document_path: str, line_number: int) -> str:
    """Reverse index key for a (document, line) pair."""
    return f"{document_path}:{line_number}"


@dataclass
class Conflict:
    """Disagreement between a local line and the remote task. Lives for one run."""

    task_id: str
    kind: ConflictKind
    local: Optional[ParsedTask] = None
    remote: Optional[Task] = None
    detected_at: datetime = field(default_factory=now_utc)

    @property
    def excerpt(self) -> str:
        if self.local is not None:
            text = self.local.content
        elif self.remote is not None:
            text = self.remote.content
        else:
            text = ""
        return text if len(text) <= 50 else text[:47] + "..."

    def describe(self) -> str:
        """Get human-readable description of the conflict."""
        if self.kind == ConflictKind.BOTH_MODIFIED:
            return f"Task '{self.excerpt}' was modified on both sides"
        elif self.kind == ConflictKind.DELETED_REMOTE:
            return f"Task '{self.excerpt}' was edited locally but no longer exists remotely"
        elif self.kind == ConflictKind.DELETED_LOCAL:
            return f"Task '{self.excerpt}' was removed from its document"
        return f"Task '{self.excerpt}': {self.kind.value.replace('_', ' ')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind.value,
            "local": self.local.snapshot() if self.local else None,
            "remote": self.remote.to_dict() if self.remote else None,
            "detected_at": to_iso_string(self.detected_at),
        }


@dataclass
class BackupRecord:
    """Immutable snapshot of the remote entity set."""

    timestamp: datetime
    version: str
    tasks: List[Dict[str, Any]] = field(default_factory=list)
    projects: List[Dict[str, Any]] = field(default_factory=list)
    sections: List[Dict[str, Any]] = field(default_factory=list)
    labels: List[Dict[str, Any]] = field(default_factory=list)
    reason: str = "pre-sync"
    plugin_version: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": to_iso_string(self.timestamp),
            "version": self.version,
            "data": {
                "tasks": self.tasks,
                "projects": self.projects,
                "sections": self.sections,
                "labels": self.labels,
            },
            "metadata": {
                "totalTasks": len(self.tasks),
                "totalProjects": len(self.projects),
                "backupReason": self.reason,
                "pluginVersion": self.plugin_version,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        payload = data["data"]
        metadata = data.get("metadata") or {}
        return cls(
            timestamp=parse_iso_datetime(data["timestamp"]) or now_utc(),
            version=str(data["version"]),
            tasks=list(payload["tasks"]),
            projects=list(payload["projects"]),
            sections=list(payload.get("sections") or []),
            labels=list(payload.get("labels") or []),
            reason=metadata.get("backupReason", "unknown"),
            plugin_version=metadata.get("pluginVersion", ""),
        )


@dataclass
class SyncStats:
    """Counters reported by every sync run."""

    tasks_processed: int = 0
    projects_processed: int = 0
    files_created: int = 0
    files_updated: int = 0
    files_unchanged: int = 0
    last_sync_time: Optional[datetime] = None
    incremental: bool = False
    efficiency: float = 0.0
    errors: List[str] = field(default_factory=list)

    def add_error(self, error: str):
        """Add an error to the stats."""
        self.errors.append(error)

    @property
    def document_writes(self) -> int:
        return self.files_created + self.files_updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasksProcessed": self.tasks_processed,
            "projectsProcessed": self.projects_processed,
            "filesCreated": self.files_created,
            "filesUpdated": self.files_updated,
            "filesUnchanged": self.files_unchanged,
            "lastSyncTime": to_iso_string(self.last_sync_time),
            "incremental": self.incremental,
            "efficiency": self.efficiency,
            "errors": list(self.errors),
        }


@dataclass
class ReverseSyncResult:
    """Outcome of pushing local edits to the remote service."""

    completed: int = 0
    updated: int = 0
    created: int = 0
    deleted: int = 0
    skipped: int = 0
    conflicts: int = 0
    backup_created: bool = False
    backup_file: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def add_error(self, error: str):
        """Add an error to the result."""
        self.errors.append(error)

    @property
    def remote_writes(self) -> int:
        return self.completed + self.updated + self.created + self.deleted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "updated": self.updated,
            "created": self.created,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "backupCreated": self.backup_created,
            "backupFile": self.backup_file,
            "errors": list(self.errors),
        }
