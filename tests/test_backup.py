"""Tests for pre-mutation backups."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from todo_sync import __version__
from todo_sync.backup import BackupArchiver, validate_backup_data
from todo_sync.models import Label, Project
from todo_sync.sync.services import TransientServiceError

from conftest import make_remote, make_task


def write_archive(backup_dir, name, mtime, tasks=None):
    path = backup_dir / name
    record = {
        "timestamp": "2024-05-01T10:00:00+00:00",
        "version": "1.0",
        "data": {"tasks": tasks or [], "projects": [], "sections": [], "labels": []},
        "metadata": {"totalTasks": len(tasks or []), "totalProjects": 0, "backupReason": "manual"},
    }
    path.write_text(json.dumps(record), encoding="utf-8")
    os.utime(path, (mtime, mtime))
    return path


@pytest.mark.asyncio
class TestCreateBackup:
    """Test writing archives."""

    async def test_archive_contents(self, tmp_path):
        task = make_task("1", "Call mom", assignee_id="u7", comment_count=2,
                         labels=[Label(name="family", id="l1")],
                         created_at=datetime(2024, 4, 1, tzinfo=timezone.utc))
        remote = make_remote([task], projects=[Project(id="inbox", name="Inbox", is_inbox=True)])
        remote.fetch_labels.return_value = [Label(name="family", id="l1")]
        archiver = BackupArchiver(remote, tmp_path / "Backups")

        result = await archiver.create_pre_sync_backup("manual")

        assert result.success
        data = json.loads(Path(result.backup_file).read_text(encoding="utf-8"))
        assert data["version"] == "1.0"
        assert data["metadata"]["totalTasks"] == 1
        assert data["metadata"]["backupReason"] == "manual"
        assert data["metadata"]["pluginVersion"] == __version__
        saved = data["data"]["tasks"][0]
        assert saved["assignee_id"] == "u7"
        assert saved["comment_count"] == 2
        assert saved["created_at"] == "2024-04-01T00:00:00+00:00"
        assert data["data"]["labels"] == [{"name": "family", "id": "l1", "color": None}]
        assert validate_backup_data(data) == []

    async def test_prefetched_tasks_are_not_fetched_again(self, tmp_path):
        remote = make_remote([])
        archiver = BackupArchiver(remote, tmp_path)

        result = await archiver.create_pre_sync_backup(tasks=[make_task("1", "Task")])

        assert result.success
        remote.fetch_all.assert_not_awaited()

    async def test_full_snapshot_needs_no_remote(self, tmp_path):
        archiver = BackupArchiver(None, tmp_path)

        result = await archiver.create_pre_sync_backup(
            tasks=[make_task("1", "Task")],
            projects=[Project(id="inbox", name="Inbox", is_inbox=True)],
            sections=[],
            labels=[],
        )

        assert result.success
        record = archiver.restore_from_backup(Path(result.backup_file)).record
        assert [task["id"] for task in record.tasks] == ["1"]
        assert record.projects[0]["name"] == "Inbox"

    async def test_failure_is_reported_not_raised(self, tmp_path):
        remote = make_remote([])
        remote.fetch_projects.side_effect = TransientServiceError("offline")
        archiver = BackupArchiver(remote, tmp_path)

        result = await archiver.create_pre_sync_backup()

        assert not result.success
        assert "offline" in result.error
        assert list(tmp_path.iterdir()) == []

    async def test_retention_is_applied_after_create(self, tmp_path):
        for index in range(8):
            write_archive(tmp_path, f"backup-2024050{index}.json", 1_700_000_000 + index)
        archiver = BackupArchiver(make_remote([]), tmp_path, retention_count=7)

        result = await archiver.create_pre_sync_backup()

        names = [info.file_name for info in archiver.list_backups()]
        assert len(names) == 7
        assert names[0] == os.path.basename(result.backup_file)
        assert "backup-20240500.json" not in names
        assert "backup-20240501.json" not in names


class TestArchiveMaintenance:
    """Test listing, pruning, validation and restore."""

    def test_cleanup_keeps_newest_by_write_time(self, tmp_path):
        # Names sort opposite to write times
        for index in range(5):
            write_archive(tmp_path, f"backup-{9 - index}.json", 1_700_000_000 + index)
        archiver = BackupArchiver(None, tmp_path, retention_count=2)

        assert archiver.cleanup_old_backups() == 3
        assert sorted(p.name for p in tmp_path.iterdir()) == ["backup-5.json", "backup-6.json"]

    def test_list_backups_skips_unreadable(self, tmp_path):
        write_archive(tmp_path, "backup-a.json", 1_700_000_000, tasks=[{"id": "1", "content": "x"}])
        (tmp_path / "backup-b.json").write_text("not json", encoding="utf-8")
        archiver = BackupArchiver(None, tmp_path)

        backups = archiver.list_backups()

        assert [b.file_name for b in backups] == ["backup-a.json"]
        assert backups[0].total_tasks == 1
        assert backups[0].reason == "manual"

    def test_restore_valid_and_invalid(self, tmp_path):
        good = write_archive(tmp_path, "backup-good.json", 1_700_000_000, tasks=[{"id": "1", "content": "x"}])
        bad = tmp_path / "backup-bad.json"
        bad.write_text(json.dumps({"timestamp": "2024-05-01T00:00:00Z", "data": {"tasks": "oops"}}),
                       encoding="utf-8")
        archiver = BackupArchiver(None, tmp_path)

        restored = archiver.restore_from_backup(good)
        refused = archiver.restore_from_backup(bad)

        assert restored.success
        assert restored.record.tasks == [{"id": "1", "content": "x"}]
        assert not refused.success
        assert "version" in refused.error
        assert archiver.validate_backup(good)
        assert not archiver.validate_backup(bad)

    def test_validate_backup_data(self):
        assert validate_backup_data([]) == ["record is not an object"]
        problems = validate_backup_data({"timestamp": "t", "version": "1", "data": {"tasks": [{"id": "1"}],
                                                                                 "projects": []}})
        assert problems == ["task #0 lacks id or content"]

    def test_statistics(self, tmp_path):
        write_archive(tmp_path, "backup-1.json", 1_700_000_000)
        write_archive(tmp_path, "backup-2.json", 1_700_000_100)
        archiver = BackupArchiver(None, tmp_path)

        stats = archiver.get_backup_statistics()

        assert stats["total_backups"] == 2
        assert stats["newest"] > stats["oldest"]
        assert stats["total_size"] > 0

    def test_statistics_without_directory(self, tmp_path):
        stats = BackupArchiver(None, tmp_path / "missing").get_backup_statistics()

        assert stats == {"total_backups": 0, "oldest": None, "newest": None, "total_size": 0}
