"""
Tests for configuration helpers and validation.
"""

from unittest.mock import patch

from plan_acceptance.core import config
from plan_acceptance.core.config import (
    ANTI_ABUSE_WINDOW_DAYS,
    MIN_CONFIDENCE_FOR_STATUS_CHANGE,
    MIN_VERIFICATIONS_FOR_CONSENSUS,
    VERIFICATION_TTL_DAYS,
    debug_enabled,
    ensure_db_directory,
    get_db_path,
    validate_consensus_config,
)


class TestConfig:
    """Test environment-driven configuration."""

    def test_policy_constants(self):
        assert VERIFICATION_TTL_DAYS == 180
        assert ANTI_ABUSE_WINDOW_DAYS == 30
        assert MIN_VERIFICATIONS_FOR_CONSENSUS == 3
        assert MIN_CONFIDENCE_FOR_STATUS_CHANGE == 60

    def test_db_path_follows_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DB_PATH", str(tmp_path / "other.db"))

        assert get_db_path() == str(tmp_path / "other.db")

    def test_ensure_db_directory_creates_parent(self, tmp_path):
        target = tmp_path / "nested" / "dir" / "acceptance.db"

        ensure_db_directory(str(target))

        assert target.parent.is_dir()

    def test_debug_flag(self, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        assert debug_enabled() is True
        monkeypatch.setenv("DEBUG", "no")
        assert debug_enabled() is False

    def test_default_config_is_valid(self):
        assert validate_consensus_config() == []

    def test_invalid_values_reported(self):
        with patch.object(config, "RECOMPUTE_MAX_RETRIES", 0), \
             patch.object(config, "SWEEP_BATCH_SIZE", -5):
            issues = validate_consensus_config()

        assert "RECOMPUTE_MAX_RETRIES must be >= 1" in issues
        assert "SWEEP_BATCH_SIZE must be >= 1" in issues
        assert len(issues) == 2
