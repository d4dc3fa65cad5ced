"""
Tests for config loading, env overrides and saving settings.
"""

import pytest

from inkdoodle import config


@pytest.fixture
def config_path(isolate_test_environment):
    return isolate_test_environment / "config" / "config.toml"


class TestLoadSettings:

    def test_default_file_is_created(self, config_path):
        settings = config.load_settings()

        assert config_path.is_file()
        assert settings["sync"]["enabled"] is True
        assert settings["sync"]["min_interval_seconds"] == 300
        assert settings["remote"]["pool_size"] == 4

    def test_user_values_are_merged_over_defaults(self, config_path):
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text('[sync]\nmin_interval_seconds = 30\n', encoding="utf-8")

        settings = config.load_settings()

        assert settings["sync"]["min_interval_seconds"] == 30
        assert settings["sync"]["timeout_seconds"] == 600
        assert settings["logging"]["level"] == "INFO"

    def test_broken_file_falls_back_to_defaults(self, config_path):
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text("[sync\nenabled = ", encoding="utf-8")

        settings = config.load_settings()

        assert settings["sync"]["enabled"] is True

    def test_settings_are_cached(self, config_path):
        first = config.load_settings()
        config_path.write_text('[sync]\nenabled = false\n', encoding="utf-8")

        assert config.load_settings() is first
        assert config.load_settings(force_reload=True)["sync"]["enabled"] is False

    @pytest.mark.parametrize("raw,expected", [("0", False), ("false", False), ("yes", True), ("ON", True)])
    def test_env_switch(self, monkeypatch, raw, expected):
        monkeypatch.setenv(config.SYNC_ENABLED_ENV, raw)
        assert config.load_settings(force_reload=True)["sync"]["enabled"] is expected
        assert config.is_sync_enabled() is expected

    def test_unrecognised_env_value_is_ignored(self, monkeypatch):
        monkeypatch.setenv(config.SYNC_ENABLED_ENV, "maybe")
        assert config.load_settings(force_reload=True)["sync"]["enabled"] is True


class TestSaveSetting:

    def test_save_and_reload(self, config_path):
        config.load_settings()

        assert config.save_setting_to_cli_config("sync", "dry_run", True) is True

        assert config.get_cli_setting("sync", "dry_run") is True
        assert "dry_run = true" in config_path.read_text(encoding="utf-8")

    def test_nested_section(self, config_path):
        assert config.save_setting_to_cli_config("sync.advanced", "batch", 10) is True
        assert config.load_settings(force_reload=True)["sync"]["advanced"]["batch"] == 10

    def test_corrupted_file_is_not_overwritten(self, config_path):
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text("[broken", encoding="utf-8")

        assert config.save_setting_to_cli_config("sync", "enabled", False) is False
        assert config_path.read_text(encoding="utf-8") == "[broken"


class TestGetters:

    def test_paths_are_expanded(self, config_path, tmp_path):
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(
            f'[sync]\nprojects_root = "{(tmp_path / "p").as_posix()}"\n'
            f'[remote]\ndb_path = "{(tmp_path / "r.db").as_posix()}"\n'
            '[logging]\nlog_file = ""\n',
            encoding="utf-8")

        assert config.get_projects_root() == tmp_path / "p"
        assert config.get_remote_db_path() == tmp_path / "r.db"
        assert config.get_log_file_path() is None

    def test_missing_setting_default(self):
        assert config.get_cli_setting("nope", "key", "fallback") == "fallback"

    def test_deep_merge_does_not_mutate(self):
        base = {"a": {"b": 1, "c": 2}}
        merged = config.deep_merge_dicts(base, {"a": {"b": 5}})
        assert merged == {"a": {"b": 5, "c": 2}}
        assert base == {"a": {"b": 1, "c": 2}}
