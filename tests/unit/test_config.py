"""
Unit tests for settings loading.
"""

import pytest
from pydantic import ValidationError

from feedlot_etl.config import Settings, load_settings


def write_yaml(tmp_path, text):
    path = tmp_path / "etl.yaml"
    path.write_text(text)
    return path


@pytest.mark.unit
class TestLoadSettings:
    """Tests for load_settings"""

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        """Test a missing default file yields built-in defaults"""
        monkeypatch.chdir(tmp_path)

        settings = load_settings(environ={}, dotenv=False)

        assert settings.database.port == 5432
        assert settings.retry.max_retries == 3
        assert settings.processing.batch_size == 100
        assert settings.monitoring.thresholds.dead_letter_queue_max_size == 100

    def test_yaml_values(self, tmp_path):
        path = write_yaml(tmp_path, """
database:
  host: db.internal
  port: 6543
retry:
  max_retries: 5
  retryable_error_kinds: [transient]
processing:
  row_workers: 4
monitoring:
  thresholds:
    error_spike_threshold: 10
""")

        settings = load_settings(path, environ={}, dotenv=False)

        assert settings.database.host == "db.internal"
        assert settings.database.port == 6543
        assert settings.retry.max_retries == 5
        assert [k.value for k in settings.retry.retryable_error_kinds] == ["transient"]
        assert settings.processing.row_workers == 4
        assert settings.monitoring.thresholds.error_spike_threshold == 10

    def test_environment_overrides(self, tmp_path):
        path = write_yaml(tmp_path, "database:\n  host: from-yaml\n")
        environ = {"DB_HOST": "from-env", "DB_PORT": "7000", "DB_PASSWORD": "secret", "LOG_LEVEL": "DEBUG"}

        settings = load_settings(path, environ=environ, dotenv=False)

        assert settings.database.host == "from-env"
        assert settings.database.port == 7000
        assert settings.database.password == "secret"
        assert settings.logging.level == "DEBUG"

    def test_etl_config_variable(self, tmp_path):
        """Test etl config variable"""
        path = write_yaml(tmp_path, "processing:\n  batch_size: 7\n")

        settings = load_settings(environ={"ETL_CONFIG": str(path)}, dotenv=False)

        assert settings.processing.batch_size == 7

    def test_missing_explicit_file(self, tmp_path):
        """Test missing explicit file"""
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.yaml", environ={}, dotenv=False)

    def test_non_mapping_yaml(self, tmp_path):
        """Test non mapping yaml"""
        path = write_yaml(tmp_path, "- just\n- a list\n")

        with pytest.raises(ValueError, match="mapping"):
            load_settings(path, environ={}, dotenv=False)

    def test_empty_yaml(self, tmp_path):
        path = write_yaml(tmp_path, "")
        assert load_settings(path, environ={}, dotenv=False) == Settings()

    def test_invalid_values_are_rejected(self, tmp_path):
        """Test invalid values are rejected"""
        path = write_yaml(tmp_path, "processing:\n  batch_size: 0\n")

        with pytest.raises(ValidationError):
            load_settings(path, environ={}, dotenv=False)

    def test_shipped_config_file_is_valid(self):
        """Test shipped config file is valid"""
        from pathlib import Path

        shipped = Path(__file__).resolve().parents[2] / "config" / "etl.yaml"
        settings = load_settings(shipped, environ={}, dotenv=False)

        assert settings.processing.row_workers >= 1
