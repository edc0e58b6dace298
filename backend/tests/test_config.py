"""Tests for settings loading.

Covers:
* AppSettings        – defaults
* ChatSettings       – positive limits
* LoggingSettings    – level validation
* load_config        – YAML file, missing file, env-var override
* get_config / set_config – process-wide cache
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from app import config as config_module
from app.config import AppSettings, ChatSettings, LoggingSettings, get_config, load_config, set_config


@pytest.fixture(autouse=True)
def _reset_cached_config():
    set_config(None)
    yield
    set_config(None)


class TestDefaults:
    def test_chat_limits(self):
        cfg = AppSettings()
        assert cfg.chat.max_text_length == 2000
        assert cfg.chat.default_page_size == 50
        assert cfg.chat.max_page_size == 100

    def test_storage_files(self):
        cfg = AppSettings()
        assert cfg.storage.messages_db.endswith(".duckdb")
        assert cfg.storage.directory_db.endswith(".duckdb")
        assert cfg.storage.credentials_db.endswith(".duckdb")

    def test_server(self):
        cfg = AppSettings()
        assert cfg.server.port == 8000
        assert cfg.server.allowed_origins == ["*"]


class TestValidation:
    @pytest.mark.parametrize("value", [0, -1])
    def test_limits_must_be_positive(self, value):
        with pytest.raises(ValidationError):
            ChatSettings(max_text_length=value)

    def test_default_page_size_cannot_exceed_max(self):
        with pytest.raises(ValidationError):
            ChatSettings(default_page_size=60, max_page_size=50)
        assert ChatSettings(default_page_size=50, max_page_size=50).max_page_size == 50

    def test_level_is_normalised(self):
        assert LoggingSettings(level="DEBUG").level == "debug"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValidationError):
            LoggingSettings(level="chatty")


class TestLoadConfig:
    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "localbiz.settings.yaml"
        path.write_text(
            "server:\n"
            "  port: 9100\n"
            "chat:\n"
            "  max_text_length: 500\n"
            "storage:\n"
            "  messages_db: ':memory:'\n"
            "logging:\n"
            "  level: warning\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.server.port == 9100
        assert cfg.chat.max_text_length == 500
        assert cfg.chat.max_page_size == 100
        assert cfg.storage.messages_db == ":memory:"
        assert cfg.logging.level == "warning"

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg == AppSettings()

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == AppSettings()

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("server:\n  port: 7007\n", encoding="utf-8")
        monkeypatch.setenv(config_module.SETTINGS_ENV_VAR, str(path))
        assert load_config().server.port == 7007

    def test_invalid_values_raise(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("chat:\n  max_page_size: 0\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(path)


class TestGlobalConfig:
    def test_get_config_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.setenv(config_module.SETTINGS_ENV_VAR, str(tmp_path / "absent.yaml"))
        assert get_config() is get_config()

    def test_set_config_overrides(self):
        custom = AppSettings(chat=ChatSettings(max_text_length=10))
        set_config(custom)
        assert get_config() is custom
