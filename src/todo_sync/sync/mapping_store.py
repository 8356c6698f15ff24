"""Persistent id <-> location mapping for synced tasks.

Each task written into a document gets exactly one mapping recording the
document, the line and what was written there. A reverse index keyed by
``"<document>:<line>"`` answers "which task lives here?" and is kept in
step with the forward map on every mutation.
"""

import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import Task, TaskMapping, location_key
from ..task_format import calculate_task_hash, extract_task_id, is_task_line
from ..utils.datetime import now_utc, timestamp_slug, to_iso_string
from .services import DocumentStore, DocumentStoreError, StateCorruptionError


logger = logging.getLogger(__name__)

MAPPING_FORMAT_VERSION = "1.0"


class MappingStore:
    """JSON-backed store of task mappings.

    The whole record is rewritten on every save (temp file + rename), so a
    crash mid-save leaves the previous record intact.
    """

    def __init__(self, mapping_path: Path):
        """Initialize the mapping store.

        Args:
            mapping_path: Location of the JSON mapping record
        """
        self.mapping_path = Path(mapping_path)
        self.logger = logging.getLogger(__name__)
        self._mappings: Dict[str, TaskMapping] = {}
        self._reverse: Dict[str, str] = {}
        self._dirty = False
        self.quarantined_path: Optional[Path] = None

    # Persistence

    async def initialize(self) -> None:
        """Load the mapping record.

        A missing record yields an empty store. An unreadable record is
        renamed aside and the store starts empty; this never raises.
        """
        self._mappings.clear()
        self._reverse.clear()
        self._dirty = False

        if not self.mapping_path.exists():
            self.logger.debug(f"No mapping record at {self.mapping_path}, starting empty")
            return

        try:
            mappings = self._load_record()
        except StateCorruptionError as e:
            self.logger.warning(f"Mapping record is corrupted ({e}), starting with empty state")
            self._quarantine()
            return

        for mapping in mappings:
            self._insert(mapping)
        self.logger.info(f"Loaded {len(self._mappings)} task mappings from {self.mapping_path}")

    def _load_record(self) -> List[TaskMapping]:
        try:
            with open(self.mapping_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateCorruptionError(str(e)) from e

        if not isinstance(data, dict) or not isinstance(data.get("mappings"), list):
            raise StateCorruptionError("record has no mappings list")

        try:
            return [TaskMapping.from_dict(entry) for entry in data["mappings"]]
        except (KeyError, TypeError, ValueError) as e:
            raise StateCorruptionError(f"invalid mapping entry: {e}") from e

    def _quarantine(self) -> None:
        target = self.mapping_path.with_name(
            f"{self.mapping_path.stem}.corrupted-{timestamp_slug()}{self.mapping_path.suffix}"
        )
        try:
            os.replace(self.mapping_path, target)
            self.quarantined_path = target
            self.logger.warning(f"Corrupted mapping record moved to {target}")
        except OSError as e:
            self.logger.error(f"Failed to quarantine corrupted mapping record: {e}")

    async def save(self, force: bool = False) -> bool:
        """Write the whole record if anything changed.

        Returns:
            True if the record was written
        """
        if not self._dirty and not force:
            return False

        record = {
            "version": MAPPING_FORMAT_VERSION,
            "lastUpdated": to_iso_string(now_utc()),
            "mappings": [mapping.to_dict() for mapping in self._mappings.values()],
        }

        self.mapping_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.mapping_path.with_name(self.mapping_path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.mapping_path)

        self._dirty = False
        self.logger.debug(f"Saved {len(self._mappings)} task mappings")
        return True

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    # Index maintenance

    def _insert(self, mapping: TaskMapping) -> None:
        existing = self._mappings.get(mapping.task_id)
        if existing is not None:
            self._reverse.pop(existing.location_key, None)

        owner = self._reverse.get(mapping.location_key)
        if owner is not None and owner != mapping.task_id:
            self.logger.debug(f"Location {mapping.location_key} taken over from task {owner}")
            self._mappings.pop(owner, None)

        self._mappings[mapping.task_id] = mapping
        self._reverse[mapping.location_key] = mapping.task_id

    # Mapping operations

    def create_mapping(self, task: Task, document_path: str, line_number: int,
                       snapshot: Optional[Dict[str, Any]] = None,
                       task_hash: Optional[str] = None) -> TaskMapping:
        """Record that ``task`` was written at ``document_path:line_number``."""
        mapping = TaskMapping(
            task_id=task.id,
            document_path=document_path,
            line_number=line_number,
            content=task.content,
            checksum=task_hash or calculate_task_hash(task),
            last_sync_time=now_utc(),
            snapshot=dict(snapshot or {}),
        )
        self._insert(mapping)
        self._dirty = True
        return mapping

    def add_mapping(self, mapping: TaskMapping) -> None:
        self._insert(mapping)
        self._dirty = True

    def get_task_id(self, document_path: str, line_number: int) -> Optional[str]:
        return self._reverse.get(location_key(document_path, line_number))

    def get_location(self, task_id: str) -> Optional[TaskMapping]:
        return self._mappings.get(task_id)

    get_mapping = get_location

    def remove_mapping(self, task_id: str) -> bool:
        mapping = self._mappings.pop(task_id, None)
        if mapping is None:
            return False
        if self._reverse.get(mapping.location_key) == task_id:
            del self._reverse[mapping.location_key]
        self._dirty = True
        return True

    def update_mapping(self, task_id: str, new_document: str, new_line: int) -> bool:
        """Move a mapping to a new location, keeping its snapshot."""
        mapping = self._mappings.get(task_id)
        if mapping is None:
            return False
        self._insert(replace(mapping, document_path=new_document, line_number=new_line))
        self._dirty = True
        return True

    def replace_document_mappings(self, document_path: str, mappings: List[TaskMapping]) -> None:
        """Make ``mappings`` the complete set of mappings for one document.

        Mappings that pointed into the document but are not in the new set
        are dropped, as are older mappings of the same tasks elsewhere.
        """
        incoming = {mapping.task_id for mapping in mappings}
        stale = [
            task_id for task_id, mapping in self._mappings.items()
            if mapping.document_path == document_path or task_id in incoming
        ]
        for task_id in stale:
            self.remove_mapping(task_id)
        for mapping in mappings:
            self._insert(mapping)
        self._dirty = True

    def has_changed(self, task: Task) -> bool:
        """Whether the task's hash differs from the one last written."""
        mapping = self._mappings.get(task.id)
        if mapping is None:
            return True
        return mapping.checksum != calculate_task_hash(task)

    def get_all_mappings(self) -> List[TaskMapping]:
        return list(self._mappings.values())

    def __len__(self) -> int:
        return len(self._mappings)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._mappings

    def clear(self) -> None:
        self._mappings.clear()
        self._reverse.clear()
        self._dirty = True

    # Orphans

    async def find_orphaned(self, documents: DocumentStore) -> List[TaskMapping]:
        """Mappings whose line no longer holds their task.

        A mapping is orphaned when its document is missing, its line is out
        of range, the line has no task marker, or the line carries another
        task's id.
        """
        orphaned = []
        by_document: Dict[str, List[TaskMapping]] = {}
        for mapping in self._mappings.values():
            by_document.setdefault(mapping.document_path, []).append(mapping)

        for document_path, mappings in by_document.items():
            try:
                if not await documents.exists(document_path):
                    orphaned.extend(mappings)
                    continue
                lines = (await documents.read(document_path)).splitlines()
            except DocumentStoreError as e:
                self.logger.warning(f"Skipping orphan check for {document_path}: {e}")
                continue

            for mapping in mappings:
                if mapping.line_number < 0 or mapping.line_number >= len(lines):
                    orphaned.append(mapping)
                    continue
                line = lines[mapping.line_number]
                if not is_task_line(line):
                    orphaned.append(mapping)
                    continue
                line_id = extract_task_id(line)
                if line_id is not None and line_id != mapping.task_id:
                    orphaned.append(mapping)

        return orphaned

    async def cleanup_orphaned(self, documents: DocumentStore) -> int:
        """Remove orphaned mappings.

        Returns:
            Number of mappings removed
        """
        orphaned = await self.find_orphaned(documents)
        for mapping in orphaned:
            self.remove_mapping(mapping.task_id)
        if orphaned:
            self.logger.info(f"Cleaned up {len(orphaned)} orphaned mappings")
        return len(orphaned)

    def get_stats(self) -> Dict[str, Any]:
        documents = {mapping.document_path for mapping in self._mappings.values()}
        last_sync = max((m.last_sync_time for m in self._mappings.values()), default=None)
        return {
            "total_mappings": len(self._mappings),
            "documents": len(documents),
            "last_sync_time": to_iso_string(last_sync),
            "mapping_file": str(self.mapping_path),
        }
