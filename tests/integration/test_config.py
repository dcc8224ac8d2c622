"""
Integration tests for configuration loading.
"""
import json

import pytest

from config import SETTINGS_FILENAME, Config


@pytest.mark.integration
class TestConfig:

    def test_environment_defaults(self, monkeypatch, temp_dir):
        monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "missing"))
        monkeypatch.setenv("URGENCY_THRESHOLD_DAYS", "7")
        monkeypatch.setenv("BACKUP_ENABLED", "false")
        monkeypatch.setenv("DB_PATH", str(temp_dir / "x.db"))

        config = Config()

        assert config.urgency_threshold_days == 7
        assert config.backup_enabled is False
        assert config.db_path == temp_dir / "x.db"

    def test_settings_file_overrides_environment(self, monkeypatch, temp_dir):
        """tracker_settings.json wins over the environment for tunable keys."""
        monkeypatch.setenv("CONFIG_DIR", str(temp_dir))
        monkeypatch.setenv("URGENCY_THRESHOLD_DAYS", "7")
        (temp_dir / SETTINGS_FILENAME).write_text(json.dumps({
            "_comment": "ignored",
            "urgency_threshold_days": "3",
            "backup_retention_count": 2,
            "db_path": "/elsewhere.db",
        }))

        config = Config()

        assert config.urgency_threshold_days == 3
        assert config.backup_retention_count == 2
        # Paths are not runtime-tunable
        assert str(config.db_path) != "/elsewhere.db"

    def test_corrupt_settings_file_ignored(self, monkeypatch, temp_dir):
        monkeypatch.setenv("CONFIG_DIR", str(temp_dir))
        monkeypatch.delenv("URGENCY_THRESHOLD_DAYS", raising=False)
        (temp_dir / SETTINGS_FILENAME).write_text("{broken")

        assert Config().urgency_threshold_days == 5
