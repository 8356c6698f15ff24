"""Safe remote writes.

Local lines cannot represent assignment, collaboration ids, recurrence
internals or rich formatting. Only edits that cannot clobber that metadata
become remote operations; everything else is skipped and logged.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from ..models import DEFAULT_PRIORITY, ParsedTask, Task
from .conflict_resolver import CONTENT_CHANGE_THRESHOLD, is_significant_content_change


logger = logging.getLogger(__name__)

RICH_FORMAT_PATTERNS = [
    re.compile(r"\*\*[^*]+\*\*"),          # bold
    re.compile(r"(?<![*\w])\*[^*\s][^*]*\*(?!\*)"),  # italic
    re.compile(r"\[[^\]]+\]\([^)]+\)"),    # link
    re.compile(r"(?<![\w@])@\w+"),         # mention
    re.compile(r"`[^`]+`"),                # code
]


def has_rich_formatting(text: Optional[str]) -> bool:
    """Whether remote content uses markup a local line cannot round-trip."""
    if not text:
        return False
    return any(pattern.search(text) for pattern in RICH_FORMAT_PATTERNS)


class OperationType(Enum):
    """Remote mutations the filter may emit."""
    COMPLETE = "complete"
    UPDATE_CONTENT = "update_content"
    UPDATE_PRIORITY = "update_priority"
    UPDATE_DUE_DATE = "update_due_date"


@dataclass(frozen=True)
class PreservedFields:
    """Remote-only fields a write must leave exactly as they are."""

    created_at: Optional[str]
    order: int
    project_id: Optional[str]
    section_id: Optional[str]
    parent_id: Optional[str]
    creator_id: Optional[str]
    assignee_id: Optional[str]
    assigner_id: Optional[str]
    due: Optional[Dict[str, Any]]
    duration: Optional[Dict[str, Any]]
    label_ids: Tuple[Optional[str], ...]

    @classmethod
    def from_task(cls, task: Task) -> 'PreservedFields':
        snapshot = task.to_dict()
        return cls(
            created_at=snapshot["created_at"],
            order=task.order,
            project_id=task.project_id,
            section_id=task.section_id,
            parent_id=task.parent_id,
            creator_id=task.creator_id,
            assignee_id=task.assignee_id,
            assigner_id=task.assigner_id,
            due=snapshot["due"],
            duration=snapshot["duration"],
            label_ids=tuple(label.id for label in task.labels),
        )


@dataclass
class SafeOperation:
    """One accepted remote mutation.

    ``payload`` names only the field being changed, so a partial update
    cannot touch anything in ``preserved``.
    """

    type: OperationType
    task_id: str
    payload: Dict[str, Any]
    preserved: PreservedFields
    content_excerpt: str = ""


@dataclass
class SafeSyncResult:
    """Tally of operations applied in one reverse sync."""

    completed: int = 0
    content_updated: int = 0
    priority_updated: int = 0
    due_date_updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, operation: SafeOperation) -> None:
        if operation.type == OperationType.COMPLETE:
            self.completed += 1
        elif operation.type == OperationType.UPDATE_CONTENT:
            self.content_updated += 1
        elif operation.type == OperationType.UPDATE_PRIORITY:
            self.priority_updated += 1
        elif operation.type == OperationType.UPDATE_DUE_DATE:
            self.due_date_updated += 1

    @property
    def updated(self) -> int:
        return self.content_updated + self.priority_updated + self.due_date_updated


@dataclass
class SafePlan:
    """Operations accepted and edits skipped for one batch."""

    operations: List[SafeOperation] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def for_task(self, task_id: str) -> List[SafeOperation]:
        return [op for op in self.operations if op.task_id == task_id]


class SafeWriteFilter:
    """Turns local edits into remote operations that preserve remote-only data."""

    def __init__(self, content_threshold: float = CONTENT_CHANGE_THRESHOLD):
        self.content_threshold = content_threshold
        self.logger = logging.getLogger(__name__)

    def plan_operations(self, edits: List[Tuple[ParsedTask, Task]],
                        completion_only: bool = False,
                        edited_fields: Optional[Dict[str, Set[str]]] = None) -> SafePlan:
        """Compute safe operations for a batch of local edits.

        Args:
            edits: (local line, remote task) pairs the user changed locally
            completion_only: Only emit completions, used when no backup exists
            edited_fields: Per task id, the fields the user actually changed;
                differences in other fields are stale text and ignored

        Returns:
            SafePlan
        """
        plan = SafePlan()
        for local, remote in edits:
            preserved = PreservedFields.from_task(remote)
            excerpt = local.content[:50]
            fields = edited_fields.get(remote.id, set()) if edited_fields is not None else None

            def wants(name: str) -> bool:
                return fields is None or name in fields

            if wants("completed") and local.completed and not remote.is_completed:
                plan.operations.append(SafeOperation(
                    OperationType.COMPLETE, remote.id, {}, preserved, excerpt
                ))
            if completion_only:
                continue

            content_op = self._content_operation(local, remote) if wants("content") else None
            if content_op is not None:
                plan.operations.append(SafeOperation(
                    OperationType.UPDATE_CONTENT, remote.id, content_op, preserved, excerpt
                ))
            elif wants("content") and is_significant_content_change(
                    local.content, remote.content, self.content_threshold):
                plan.skipped.append(f"{remote.id}: content change not safe to write")

            local_priority = local.priority or DEFAULT_PRIORITY
            remote_priority = remote.priority or DEFAULT_PRIORITY
            if wants("priority") and local_priority > remote_priority:
                plan.operations.append(SafeOperation(
                    OperationType.UPDATE_PRIORITY, remote.id, {"priority": local_priority},
                    preserved, excerpt
                ))
            elif wants("priority") and local_priority < remote_priority:
                plan.skipped.append(f"{remote.id}: priority can only be raised")

            accepted, due_reason = self._check_due_date(local, remote) if wants("due_date") else (False, None)
            if accepted:
                plan.operations.append(SafeOperation(
                    OperationType.UPDATE_DUE_DATE, remote.id,
                    {"due_date": local.due_date.isoformat()}, preserved, excerpt
                ))
            elif due_reason:
                plan.skipped.append(f"{remote.id}: {due_reason}")

        for reason in plan.skipped:
            self.logger.info(f"Skipped unsafe edit {reason}")
        return plan

    def _content_operation(self, local: ParsedTask, remote: Task) -> Optional[Dict[str, Any]]:
        if not local.content:
            return None
        if not is_significant_content_change(local.content, remote.content, self.content_threshold):
            return None
        if has_rich_formatting(remote.content):
            return None
        return {"content": local.content}

    @staticmethod
    def _check_due_date(local: ParsedTask, remote: Task) -> Tuple[bool, Optional[str]]:
        """Whether a due-date edit may be written, with the reason when it may not."""
        if local.due_date is None or local.due_date == remote.due_date:
            return False, None
        if remote.is_recurring:
            return False, "due date of a recurring task is never overwritten"
        if remote.due_date is not None and local.due_date > remote.due_date:
            return False, "due date can only be added or moved earlier"
        return True, None
