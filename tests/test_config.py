"""Tests for configuration and credential handling."""

from pathlib import Path

import pytest
from keyring.errors import KeyringError, PasswordDeleteError

from todo_sync import credentials
from todo_sync.config import CONFIG_ENV_VAR, SyncConfig, get_config_path, load_config, save_config


class TestSyncConfig:
    """Test the configuration dataclass and its YAML form."""

    def test_defaults(self):
        config = SyncConfig()

        assert config.inbox_document == "Inbox.md"
        assert config.backup_retention == 7
        assert config.fetch_timeout == 10.0
        assert config.auto_sync_interval == 5
        assert config.enable_reverse_sync is True

    def test_derived_paths(self):
        config = SyncConfig(vault_path="/tmp/vault")

        assert config.vault_dir == Path("/tmp/vault")
        assert config.mapping_path == Path("/tmp/vault/System/task-mappings.json")
        assert config.backup_dir == Path("/tmp/vault/System/Backups")

    def test_yaml_round_trip(self):
        config = SyncConfig(vault_path="~/Notes", backup_retention=3, excluded_folders=["System"])

        restored = SyncConfig.from_yaml(config.to_yaml())

        assert restored == config

    def test_unknown_keys_are_ignored(self, caplog):
        config = SyncConfig.from_yaml("vault_path: /v\ncolour: blue\n")

        assert config.vault_path == "/v"
        assert "colour" in caplog.text

    def test_non_mapping_is_rejected(self):
        with pytest.raises(ValueError):
            SyncConfig.from_yaml("- just\n- a list\n")


class TestConfigFile:
    """Test loading and saving the configuration file."""

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / "none.yaml") == SyncConfig()

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"

        written = save_config(SyncConfig(vault_path="/v", fetch_timeout=3.5), path)

        assert written == path
        assert load_config(path).fetch_timeout == 3.5

    def test_invalid_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("vault_path: [unclosed\n", encoding="utf-8")

        assert load_config(path) == SyncConfig()

    def test_wrong_type_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("just a string\n", encoding="utf-8")

        assert load_config(path) == SyncConfig()

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "custom.yaml"))

        assert get_config_path() == tmp_path / "custom.yaml"

    def test_default_location(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)

        assert get_config_path().parts[-2:] == ("todo-sync", "config.yaml")


class TestCredentials:
    """Test API token lookup and storage."""

    def test_environment_takes_precedence(self, monkeypatch):
        monkeypatch.setenv(credentials.TOKEN_ENV_VAR, "env-token")
        monkeypatch.setattr(credentials.keyring, "get_password", lambda service, key: "keyring-token")

        assert credentials.get_token() == "env-token"

    def test_keyring_lookup(self, monkeypatch):
        monkeypatch.delenv(credentials.TOKEN_ENV_VAR, raising=False)
        calls = []

        def get_password(service, key):
            calls.append((service, key))
            return "keyring-token"

        monkeypatch.setattr(credentials.keyring, "get_password", get_password)

        assert credentials.get_token() == "keyring-token"
        assert calls == [("todo_sync", "todoist_api_token")]

    def test_keyring_failure(self, monkeypatch):
        monkeypatch.delenv(credentials.TOKEN_ENV_VAR, raising=False)

        def broken(*args):
            raise KeyringError("no backend")

        monkeypatch.setattr(credentials.keyring, "get_password", broken)
        monkeypatch.setattr(credentials.keyring, "set_password", broken)

        assert credentials.get_token() is None
        assert credentials.store_token("abc") is False

    def test_store_and_delete(self, monkeypatch):
        stored = {}
        monkeypatch.setattr(credentials.keyring, "set_password",
                            lambda service, key, value: stored.__setitem__((service, key), value))

        def delete_password(service, key):
            if (service, key) not in stored:
                raise PasswordDeleteError("not found")
            del stored[(service, key)]

        monkeypatch.setattr(credentials.keyring, "delete_password", delete_password)

        assert credentials.store_token("abc") is True
        assert stored == {("todo_sync", "todoist_api_token"): "abc"}
        assert credentials.delete_token() is True
        assert credentials.delete_token() is False
