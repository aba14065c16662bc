"""Tests for configuration, database and token path resolution."""

from pathlib import Path

from crm_sync.utils.paths import (
    CONFIG_DIR_ENV_VAR,
    DEFAULT_CONFIG_DIR,
    DEFAULT_DATABASE_FILE,
    resolve_config_dir,
    resolve_database_path,
    token_path,
)


class TestResolveConfigDir:
    """Tests for resolve_config_dir."""

    def test_explicit_dir_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, "/somewhere/else")
        assert resolve_config_dir(tmp_path) == tmp_path.resolve()

    def test_env_var_used(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path))
        assert resolve_config_dir() == tmp_path.resolve()

    def test_default(self, monkeypatch):
        monkeypatch.delenv(CONFIG_DIR_ENV_VAR, raising=False)
        assert resolve_config_dir() == DEFAULT_CONFIG_DIR.expanduser().resolve()

    def test_default_is_in_home(self):
        assert Path.home() / ".crm-sync" == DEFAULT_CONFIG_DIR


class TestResolveDatabasePath:
    """Tests for resolve_database_path."""

    def test_default_file_in_config_dir(self, tmp_path):
        assert resolve_database_path(tmp_path) == str(tmp_path / DEFAULT_DATABASE_FILE)

    def test_memory_passthrough(self, tmp_path):
        assert resolve_database_path(tmp_path, ":memory:") == ":memory:"

    def test_relative_path(self, tmp_path):
        assert resolve_database_path(tmp_path, "data/crm.db") == str(tmp_path / "data/crm.db")

    def test_absolute_path(self, tmp_path):
        target = tmp_path / "elsewhere.db"
        assert resolve_database_path(Path("/unused"), str(target)) == str(target)


class TestTokenPath:
    """Tests for token_path."""

    def test_default_account(self, tmp_path):
        assert token_path(tmp_path, None) == tmp_path / "token.json"

    def test_account_email(self, tmp_path):
        assert token_path(tmp_path, "me@example.com") == tmp_path / "token_me@example.com.json"

    def test_unsafe_characters_replaced(self, tmp_path):
        assert token_path(tmp_path, "../evil/x") == tmp_path / "token_.._evil_x.json"
