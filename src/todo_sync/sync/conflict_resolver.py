"""Conflict classification and deterministic resolution.

A conflict is a disagreement between a local line and the remote task it
mirrors. Most kinds resolve automatically under fixed precedence rules
(local completion wins, higher priority wins, earlier date wins, ...);
edits made on both sides are queued for the user instead of guessed.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..models import Conflict, ConflictKind, DEFAULT_PRIORITY, ParsedTask, Task
from ..utils.datetime import now_utc, to_iso_string
from .services import UnresolvedConflictError


logger = logging.getLogger(__name__)

CONTENT_CHANGE_THRESHOLD = 0.10


class Side(Enum):
    """Which copy a resolution keeps."""
    LOCAL = "local"
    REMOTE = "remote"
    NONE = "none"


class ResolutionAction(Enum):
    """What the orchestrator must do to apply a resolution."""
    PUSH_LOCAL = "push_local"            # Send the local edit through the safe-write filter
    KEEP_REMOTE = "keep_remote"          # Rewrite the line from the remote task
    RECREATE_REMOTE = "recreate_remote"  # Create the task again remotely
    DELETE_REMOTE = "delete_remote"      # Delete the remote task
    MANUAL = "manual"                    # Leave both sides alone, ask the user


@dataclass
class Resolution:
    """Decision taken for one conflict."""

    conflict: Conflict
    action: ResolutionAction
    winner: Side
    reason: str


@dataclass
class ResolutionReport:
    """Outcome of resolving a batch of conflicts."""

    resolved: int = 0
    resolutions: List[Resolution] = field(default_factory=list)
    manual: List[Conflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def _normalize(text: Optional[str]) -> str:
    return " ".join((text or "").split()).casefold()


def _words(text: str) -> Counter:
    return Counter(re.findall(r"\w+", text))


def is_significant_content_change(first: Optional[str], second: Optional[str],
                                  threshold: float = CONTENT_CHANGE_THRESHOLD) -> bool:
    """Whether two contents differ by more than formatting noise.

    Differences are ignored when one text contains the other, or when the
    relative length change is below ``threshold`` and the same words remain
    (reordering, punctuation). Swapping a word for another of equal length
    is an edit.
    """
    a = _normalize(first)
    b = _normalize(second)
    if a == b:
        return False
    if not a or not b:
        return True
    if a in b or b in a:
        return False
    longest = max(len(a), len(b))
    if abs(len(a) - len(b)) / longest >= threshold:
        return True
    return _words(a) != _words(b)


def merge_priority(local: Optional[int], remote: Optional[int]) -> int:
    """Higher priority wins."""
    return max(local or DEFAULT_PRIORITY, remote or DEFAULT_PRIORITY)


def merge_due_date(local: Optional[date], remote: Optional[date]) -> Optional[date]:
    """Earlier date wins; a date on one side only is kept."""
    if local is None:
        return remote
    if remote is None:
        return local
    return min(local, remote)


class ConflictResolver:
    """Classifies conflicts and applies the resolution table."""

    def __init__(self, content_threshold: float = CONTENT_CHANGE_THRESHOLD):
        self.content_threshold = content_threshold
        self.logger = logging.getLogger(__name__)
        self._conflict_log: List[Dict[str, Any]] = []
        self._handlers: Dict[ConflictKind, Callable[[Conflict], Resolution]] = {
            ConflictKind.COMPLETION_STATUS: self._resolve_completion,
            ConflictKind.CONTENT_MODIFIED: self._resolve_content,
            ConflictKind.PRIORITY_CHANGED: self._resolve_priority,
            ConflictKind.DUE_DATE_CHANGED: self._resolve_due_date,
            ConflictKind.DELETED_REMOTE: self._resolve_deleted_remote,
            ConflictKind.DELETED_LOCAL: self._resolve_deleted_local,
            ConflictKind.BOTH_MODIFIED: self._resolve_both_modified,
        }

    # Classification

    def differences(self, local: ParsedTask, remote: Task) -> Set[str]:
        """Tracked fields that differ beyond the noise thresholds."""
        fields = set()
        if local.completed and not remote.is_completed:
            fields.add("completed")
        if is_significant_content_change(local.content, remote.content, self.content_threshold):
            fields.add("content")
        if (local.priority or DEFAULT_PRIORITY) != (remote.priority or DEFAULT_PRIORITY):
            fields.add("priority")
        if local.due_date != remote.due_date:
            fields.add("due_date")
        return fields

    def detect_conflict(self, local: Optional[ParsedTask], remote: Optional[Task],
                        edited_fields: Optional[Set[str]] = None,
                        remote_changed: bool = False,
                        baseline_content: Optional[str] = None) -> Optional[Conflict]:
        """Classify the disagreement between a line and its remote task.

        Args:
            local: Parsed line
            remote: Current remote task, or None if it no longer exists
            edited_fields: Fields the user changed locally; other differences
                are stale text and are ignored
            remote_changed: Whether the remote task changed since the last sync
            baseline_content: Content as last synced, used to tell whether the
                remote content was edited too

        Returns:
            Conflict, or None when the two copies agree
        """
        if local is None:
            return None
        task_id = local.task_id or (remote.id if remote else "")

        if remote is None:
            return Conflict(task_id=task_id, kind=ConflictKind.DELETED_REMOTE, local=local)

        diffs = self.differences(local, remote)
        if edited_fields is not None:
            diffs &= edited_fields
        if not diffs:
            return None

        remote_content_edited = (
            remote_changed
            and baseline_content is not None
            and _normalize(baseline_content) != _normalize(remote.content)
        )

        if "content" in diffs and ("completed" in diffs or remote_content_edited):
            kind = ConflictKind.BOTH_MODIFIED
        elif "completed" in diffs:
            kind = ConflictKind.COMPLETION_STATUS
        elif "content" in diffs:
            kind = ConflictKind.CONTENT_MODIFIED
        elif "priority" in diffs:
            kind = ConflictKind.PRIORITY_CHANGED
        else:
            kind = ConflictKind.DUE_DATE_CHANGED

        return Conflict(task_id=task_id, kind=kind, local=local, remote=remote)

    def detect_local_deletion(self, remote: Task) -> Conflict:
        """A mapped task whose line was removed from its document."""
        return Conflict(task_id=remote.id, kind=ConflictKind.DELETED_LOCAL, remote=remote)

    # Resolution

    def resolve_conflicts(self, conflicts: List[Conflict]) -> ResolutionReport:
        """Apply the resolution table to every conflict.

        Failures are per conflict and collected; manual conflicts are
        returned for the user.
        """
        report = ResolutionReport()
        for conflict in conflicts:
            try:
                resolution = self._handlers[conflict.kind](conflict)
            except UnresolvedConflictError as e:
                resolution = Resolution(conflict, ResolutionAction.MANUAL, Side.NONE, str(e))
            except (AttributeError, TypeError, ValueError) as e:
                message = f"Failed to resolve {conflict.kind.value} for task {conflict.task_id}: {e}"
                self.logger.error(message)
                report.errors.append(message)
                continue

            self._log_resolution(resolution)
            if resolution.action == ResolutionAction.MANUAL:
                report.manual.append(conflict)
            else:
                report.resolved += 1
                report.resolutions.append(resolution)

        if report.manual:
            self.logger.warning(f"{len(report.manual)} conflicts need manual resolution")
        return report

    def _log_resolution(self, resolution: Resolution) -> None:
        conflict = resolution.conflict
        self.logger.info(
            f"Conflict {conflict.kind.value} on '{conflict.excerpt}': "
            f"{resolution.winner.value} wins ({resolution.reason})"
        )
        self._conflict_log.append({
            "task_id": conflict.task_id,
            "kind": conflict.kind.value,
            "action": resolution.action.value,
            "winner": resolution.winner.value,
            "reason": resolution.reason,
            "excerpt": conflict.excerpt,
            "detected_at": to_iso_string(conflict.detected_at),
            "resolved_at": to_iso_string(now_utc()),
        })

    def get_conflict_log(self) -> List[Dict[str, Any]]:
        return list(self._conflict_log)

    def clear_conflict_log(self) -> None:
        self._conflict_log.clear()

    @staticmethod
    def _require_both(conflict: Conflict) -> None:
        if conflict.local is None or conflict.remote is None:
            raise UnresolvedConflictError(f"{conflict.kind.value} without both copies")

    def _resolve_completion(self, conflict: Conflict) -> Resolution:
        self._require_both(conflict)
        return Resolution(conflict, ResolutionAction.PUSH_LOCAL, Side.LOCAL,
                          "local completion is the most recent signal")

    def _resolve_content(self, conflict: Conflict) -> Resolution:
        self._require_both(conflict)
        return Resolution(conflict, ResolutionAction.PUSH_LOCAL, Side.LOCAL,
                          "local copy is being edited")

    def _resolve_priority(self, conflict: Conflict) -> Resolution:
        self._require_both(conflict)
        local_priority = conflict.local.priority or DEFAULT_PRIORITY
        if merge_priority(local_priority, conflict.remote.priority) == local_priority \
                and local_priority != conflict.remote.priority:
            return Resolution(conflict, ResolutionAction.PUSH_LOCAL, Side.LOCAL, "higher priority")
        return Resolution(conflict, ResolutionAction.KEEP_REMOTE, Side.REMOTE, "higher priority")

    def _resolve_due_date(self, conflict: Conflict) -> Resolution:
        self._require_both(conflict)
        local_date = conflict.local.due_date
        remote_date = conflict.remote.due_date
        merged = merge_due_date(local_date, remote_date)
        if merged is not None and merged == local_date and local_date != remote_date:
            return Resolution(conflict, ResolutionAction.PUSH_LOCAL, Side.LOCAL, "earlier due date")
        return Resolution(conflict, ResolutionAction.KEEP_REMOTE, Side.REMOTE, "earlier due date")

    def _resolve_deleted_remote(self, conflict: Conflict) -> Resolution:
        if conflict.local is None:
            raise UnresolvedConflictError("deleted remotely with no local copy")
        return Resolution(conflict, ResolutionAction.RECREATE_REMOTE, Side.LOCAL,
                          "local work is never discarded")

    def _resolve_deleted_local(self, conflict: Conflict) -> Resolution:
        if conflict.remote is None:
            raise UnresolvedConflictError("deleted locally with no remote copy")
        return Resolution(conflict, ResolutionAction.DELETE_REMOTE, Side.LOCAL,
                          "explicit local removal")

    def _resolve_both_modified(self, conflict: Conflict) -> Resolution:
        return Resolution(conflict, ResolutionAction.MANUAL, Side.NONE, "modified on both sides")
