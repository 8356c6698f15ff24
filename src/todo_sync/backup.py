"""Pre-mutation backups of the remote task store.

Before a sync may modify remote tasks, the full remote entity set (tasks,
projects, sections, labels) is written to an immutable, timestamped JSON
archive. Only the newest ``retention_count`` archives are kept.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .models import BackupRecord, Label, Project, Section, Task
from .sync.services import BackupError, RemoteTaskService, StateCorruptionError, SyncError
from .utils.datetime import now_utc, parse_iso_datetime, timestamp_slug


logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "1.0"
BACKUP_PREFIX = "backup-"


@dataclass
class BackupResult:
    """Outcome of creating a backup."""

    success: bool
    backup_file: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RestoreResult:
    """Outcome of loading a backup for restore."""

    success: bool
    record: Optional[BackupRecord] = None
    error: Optional[str] = None


@dataclass
class BackupInfo:
    """Summary of one archive on disk."""

    path: Path
    timestamp: Optional[datetime]
    total_tasks: int
    total_projects: int
    reason: str
    size_bytes: int
    written_at: datetime

    @property
    def file_name(self) -> str:
        return self.path.name


def validate_backup_data(data: Any) -> List[str]:
    """Check the shape of a backup record.

    Returns:
        List of problems, empty when the record is usable
    """
    if not isinstance(data, dict):
        return ["record is not an object"]

    problems = []
    for key in ("timestamp", "version", "data"):
        if key not in data:
            problems.append(f"missing '{key}'")

    payload = data.get("data")
    if not isinstance(payload, dict):
        problems.append("'data' is not an object")
        return problems

    for key in ("tasks", "projects"):
        if not isinstance(payload.get(key), list):
            problems.append(f"'data.{key}' is not a list")
    for key in ("sections", "labels"):
        if key in payload and not isinstance(payload[key], list):
            problems.append(f"'data.{key}' is not a list")

    for index, task in enumerate(payload.get("tasks") or []):
        if not isinstance(task, dict) or "id" not in task or "content" not in task:
            problems.append(f"task #{index} lacks id or content")
            break

    return problems


class BackupArchiver:
    """Creates, lists, validates and prunes backup archives."""

    def __init__(self, remote: RemoteTaskService, backup_dir: Path, retention_count: int = 7):
        """Initialize the archiver.

        Args:
            remote: Service the snapshot is taken from
            backup_dir: Directory holding the archives
            retention_count: Number of archives to keep
        """
        self.remote = remote
        self.backup_dir = Path(backup_dir)
        self.retention_count = max(1, retention_count)
        self.logger = logging.getLogger(__name__)

    async def create_pre_sync_backup(self, reason: str = "pre-sync",
                                     tasks: Optional[List[Task]] = None,
                                     projects: Optional[List[Project]] = None,
                                     sections: Optional[List[Section]] = None,
                                     labels: Optional[List[Label]] = None) -> BackupResult:
        """Snapshot the remote entity set and write it as a new archive.

        Never raises: a failure is reported through ``BackupResult`` so the
        caller can fall back to completion-only writes.

        Args:
            reason: Recorded in the archive metadata
            tasks: Already-fetched tasks; fetched when omitted
            projects: Already-fetched projects; fetched when omitted
            sections: Already-fetched sections; fetched when omitted
            labels: Already-fetched labels; fetched when omitted

        Returns:
            BackupResult with the archive path on success
        """
        try:
            tasks, projects, sections, labels = await asyncio.gather(
                self._given_or_fetched(tasks, "fetch_all"),
                self._given_or_fetched(projects, "fetch_projects"),
                self._given_or_fetched(sections, "fetch_sections"),
                self._given_or_fetched(labels, "fetch_labels"),
            )

            record = BackupRecord(
                timestamp=now_utc(),
                version=BACKUP_FORMAT_VERSION,
                tasks=[self.preserve_task_metadata(task) for task in tasks],
                projects=[project.to_dict() for project in projects],
                sections=[section.to_dict() for section in sections],
                labels=[label.to_dict() for label in labels],
                reason=reason,
                plugin_version=__version__,
            )
            path = self._write_record(record)
        except (SyncError, OSError, TypeError, ValueError) as e:
            self.logger.warning(f"Backup failed: {e}")
            return BackupResult(success=False, error=str(e))

        self.logger.info(f"Created backup {path.name} with {len(record.tasks)} tasks")
        try:
            self.cleanup_old_backups()
        except OSError as e:
            self.logger.warning(f"Failed to prune old backups: {e}")

        return BackupResult(success=True, backup_file=str(path))

    async def _given_or_fetched(self, value: Optional[list], fetch: str) -> list:
        if value is not None:
            return value
        return await getattr(self.remote, fetch)()

    @staticmethod
    def preserve_task_metadata(task: Task) -> Dict[str, Any]:
        """Full task snapshot, remote-only metadata included."""
        return task.to_dict()

    def _write_record(self, record: BackupRecord) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        path = self.backup_dir / f"{BACKUP_PREFIX}{timestamp_slug(record.timestamp)}.json"
        if path.exists():
            raise BackupError(f"Backup {path.name} already exists")

        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
        return path

    def _archive_paths(self) -> List[Path]:
        """Archives ordered newest first by write time."""
        if not self.backup_dir.exists():
            return []
        paths = [p for p in self.backup_dir.glob(f"{BACKUP_PREFIX}*.json") if p.is_file()]
        return sorted(paths, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)

    def cleanup_old_backups(self) -> int:
        """Delete archives beyond the retention count, oldest first.

        Returns:
            Number of archives deleted
        """
        removed = 0
        for path in self._archive_paths()[self.retention_count:]:
            path.unlink()
            removed += 1
            self.logger.debug(f"Pruned old backup {path.name}")
        return removed

    def list_backups(self) -> List[BackupInfo]:
        """Describe every archive, newest first. Unreadable archives are skipped."""
        backups = []
        for path in self._archive_paths():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                metadata = data.get("metadata") or {}
                payload = data.get("data") or {}
                stat = path.stat()
                backups.append(BackupInfo(
                    path=path,
                    timestamp=parse_iso_datetime(data.get("timestamp")),
                    total_tasks=int(metadata.get("totalTasks", len(payload.get("tasks") or []))),
                    total_projects=int(metadata.get("totalProjects", len(payload.get("projects") or []))),
                    reason=metadata.get("backupReason", "unknown"),
                    size_bytes=stat.st_size,
                    written_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
            except (OSError, ValueError, AttributeError) as e:
                self.logger.warning(f"Skipping unreadable backup {path.name}: {e}")
        return backups

    def validate_backup(self, path: Path) -> bool:
        try:
            self._load(Path(path))
        except StateCorruptionError:
            return False
        return True

    def _load(self, path: Path) -> BackupRecord:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateCorruptionError(f"{path.name}: {e}") from e

        problems = validate_backup_data(data)
        if problems:
            raise StateCorruptionError(f"{path.name}: {'; '.join(problems)}")
        return BackupRecord.from_dict(data)

    def restore_from_backup(self, path: Path) -> RestoreResult:
        """Load and validate an archive for restore.

        Nothing is written remotely; the caller decides what to do with the
        returned record.
        """
        try:
            record = self._load(Path(path))
        except StateCorruptionError as e:
            self.logger.warning(f"Refusing to restore invalid backup: {e}")
            return RestoreResult(success=False, error=str(e))

        self.logger.info(
            f"Loaded backup {Path(path).name}: {len(record.tasks)} tasks, "
            f"{len(record.projects)} projects"
        )
        return RestoreResult(success=True, record=record)

    def get_backup_statistics(self) -> Dict[str, Any]:
        backups = self.list_backups()
        return {
            "total_backups": len(backups),
            "oldest": backups[-1].written_at if backups else None,
            "newest": backups[0].written_at if backups else None,
            "total_size": sum(b.size_bytes for b in backups),
        }
