"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from todo_sync import __version__, cli
from todo_sync.config import load_config

from conftest import make_remote, make_task


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, runner):
    path = tmp_path / "config.yaml"
    result = runner.invoke(cli.main, ["--config", str(path), "config", "init", "--vault", str(tmp_path / "vault")])
    assert result.exit_code == 0, result.output
    return path


class TestConfigCommands:
    """Test configuration commands."""

    def test_init_writes_file(self, config_file, tmp_path):
        assert load_config(config_file).vault_path == str(tmp_path / "vault")

    def test_init_refuses_to_overwrite(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "config", "init", "--vault", "/other"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_init_force(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "config", "init", "--vault", "/other", "--force"])

        assert result.exit_code == 0
        assert load_config(config_file).vault_path == "/other"

    def test_show(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "config", "show"])

        assert result.exit_code == 0
        assert "backup_retention: 7" in result.output

    def test_version(self, runner):
        result = runner.invoke(cli.main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output


class TestInspectionCommands:
    """Test commands that only read local state."""

    def test_empty_backups(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "backup", "list"])

        assert result.exit_code == 0
        assert "No backups found" in result.output

    def test_empty_mappings(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "mappings", "list"])

        assert result.exit_code == 0
        assert "No task mappings" in result.output

    def test_status(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "status"])

        assert result.exit_code == 0
        assert "never" in result.output

    def test_show_missing_backup(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "backup", "show", "missing.json"])

        assert result.exit_code == 1
        assert "Invalid backup" in result.output


class TestSyncCommand:
    """Test the sync command."""

    def test_directions_are_exclusive(self, config_file, runner):
        result = runner.invoke(cli.main, ["--config", str(config_file), "sync", "--pull-only", "--push-only"])

        assert result.exit_code == 2
        assert "mutually exclusive" in result.output

    def test_missing_token(self, config_file, runner, monkeypatch):
        monkeypatch.setattr(cli, "get_token", lambda: None)

        result = runner.invoke(cli.main, ["--config", str(config_file), "sync"])

        assert result.exit_code == 1
        assert "No Todoist API token found" in result.output

    def test_pull_writes_vault(self, config_file, runner, monkeypatch, tmp_path):
        remote = make_remote([make_task("1", "Call mom", priority=4)])
        monkeypatch.setattr(cli, "build_remote", lambda config: remote)

        result = runner.invoke(cli.main, ["--config", str(config_file), "sync", "--pull-only"])

        assert result.exit_code == 0, result.output
        assert "Sync complete" in result.output
        inbox = (tmp_path / "vault" / "Inbox.md").read_text(encoding="utf-8")
        assert "- [ ] Call mom" in inbox

        listed = runner.invoke(cli.main, ["--config", str(config_file), "mappings", "list"])
        assert "Inbox.md" in listed.output
        assert (tmp_path / "vault" / "System" / "task-mappings.json").exists()

    def test_failed_sync_exits_nonzero(self, config_file, runner, monkeypatch):
        remote = make_remote([])
        remote.fetch_all.side_effect = RuntimeError("boom")
        monkeypatch.setattr(cli, "build_remote", lambda config: remote)

        result = runner.invoke(cli.main, ["--config", str(config_file), "sync"])

        assert result.exit_code == 1
        assert "Sync failed" in result.output


class TestAuthCommand:
    """Test token storage."""

    def test_set_token(self, runner, monkeypatch):
        stored = []
        monkeypatch.setattr(cli, "store_token", lambda token: stored.append(token) or True)

        result = runner.invoke(cli.main, ["auth", "set-token", "--token", " abc "])

        assert result.exit_code == 0
        assert stored == ["abc"]

    def test_set_token_failure(self, runner, monkeypatch):
        monkeypatch.setattr(cli, "store_token", lambda token: False)

        result = runner.invoke(cli.main, ["auth", "set-token", "--token", "abc"])

        assert result.exit_code == 1
