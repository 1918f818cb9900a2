"""Tests for environment-driven configuration"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from pmsheet.core.config import AppConfig, LockConfig, _parse_env_bool, _parse_env_numeric


class TestDefaults:
    def test_lock_defaults(self):
        locks = LockConfig()
        assert locks.stale_threshold_ms == 120_000
        assert locks.acquire_timeout_ms == 10_000
        assert locks.use_global_lock is False

    def test_empty_environment_keeps_defaults(self):
        config = AppConfig.from_env({})
        assert config.locks == LockConfig()
        assert config.storage.data_dir == Path("pmsheet_data")
        assert config.log.level == "INFO"
        assert "@" in config.owner

    def test_storage_paths_derive_from_data_dir(self, tmp_path):
        config = AppConfig.from_env({"PMSHEET_DATA_DIR": str(tmp_path)})
        assert config.storage.properties_dir == tmp_path / "properties"
        assert config.storage.tables_dir == tmp_path / "tables"
        assert config.storage.global_lock_path == tmp_path / "locks" / "global.lock"


class TestFromEnv:
    def test_overrides(self, tmp_path):
        config = AppConfig.from_env(
            {
                "PMSHEET_OWNER": "alice@example.com",
                "PMSHEET_STALE_THRESHOLD_MS": "60000",
                "PMSHEET_ACQUIRE_TIMEOUT_MS": "2500",
                "PMSHEET_USE_GLOBAL_LOCK": "yes",
                "PMSHEET_LOG_LEVEL": "debug",
                "PMSHEET_LOG_FORMAT": "JSON",
                "PMSHEET_LOG_DIR": str(tmp_path / "logs"),
            }
        )
        assert config.owner == "alice@example.com"
        assert config.locks.stale_threshold_ms == 60_000
        assert config.locks.acquire_timeout_ms == 2500
        assert config.locks.use_global_lock is True
        assert config.log.level == "DEBUG"
        assert config.log.log_format == "json"
        assert config.log.log_dir == tmp_path / "logs"

    def test_generic_log_level_fallback(self):
        assert AppConfig.from_env({"LOG_LEVEL": "warning"}).log.level == "WARNING"

    @pytest.mark.parametrize("raw", ["abc", "-5", "0", "1.5"])
    def test_invalid_numbers_keep_default(self, raw, caplog):
        with caplog.at_level(logging.WARNING):
            config = AppConfig.from_env({"PMSHEET_STALE_THRESHOLD_MS": raw})
        assert config.locks.stale_threshold_ms == 120_000
        assert "PMSHEET_STALE_THRESHOLD_MS" in caplog.text

    def test_invalid_bool_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            config = AppConfig.from_env({"PMSHEET_USE_GLOBAL_LOCK": "sometimes"})
        assert config.locks.use_global_lock is False
        assert "PMSHEET_USE_GLOBAL_LOCK" in caplog.text

    def test_invalid_log_format_falls_back_to_text(self):
        assert AppConfig.from_env({"PMSHEET_LOG_FORMAT": "xml"}).log.log_format == "text"

    def test_dotenv_file_is_loaded(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PMSHEET_OWNER", raising=False)
        dotenv = tmp_path / ".env"
        dotenv.write_text("PMSHEET_OWNER=dotenv-user\n")
        config = AppConfig.from_env(dotenv_path=dotenv)
        assert config.owner == "dotenv-user"

    def test_dotenv_does_not_override_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PMSHEET_OWNER", "from-env")
        dotenv = tmp_path / ".env"
        dotenv.write_text("PMSHEET_OWNER=dotenv-user\n")
        assert AppConfig.from_env(dotenv_path=dotenv).owner == "from-env"


class TestParsers:
    @pytest.mark.parametrize(
        "raw,expected",
        [("1", True), ("TRUE", True), (" on ", True), ("no", False), ("0", False), ("maybe", None), (None, None)],
    )
    def test_parse_bool(self, raw, expected):
        assert _parse_env_bool(raw) is expected

    def test_parse_numeric(self):
        assert _parse_env_numeric("42", int) == 42
        assert _parse_env_numeric("nan", float) is None
        assert _parse_env_numeric("x", int) is None
        assert _parse_env_numeric(None, int) is None
