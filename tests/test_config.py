"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest

from slotbooker.config import AppConfig, DefaultsConfig, SyncConfig
from slotbooker.services.availability import SyncFailurePolicy


class TestAppConfig:
    """Tests for AppConfig."""

    def test_defaults(self):
        config = AppConfig()

        assert config.timezone == "UTC"
        assert config.defaults.slot_granularity_minutes == 30
        assert config.defaults.max_recurring_occurrences == 52
        assert config.sync.failure_policy == SyncFailurePolicy.FAIL_OPEN
        assert config.google is None

    def test_load_from_yaml(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            """
timezone: Europe/Berlin
defaults:
  duration_minutes: 45
  slot_granularity_minutes: 15
sync:
  failure_policy: fail_closed
  max_attempts: 5
outlook:
  client_id: abc
  tenant_id: contoso
""",
            encoding="utf-8",
        )

        config = AppConfig.load_from_yaml(config_file)

        assert config.timezone == "Europe/Berlin"
        assert config.defaults.duration_minutes == 45
        assert config.sync.failure_policy == SyncFailurePolicy.FAIL_CLOSED
        assert config.sync.to_retry_policy().max_attempts == 5
        assert config.outlook.get_authority_url() == "https://login.microsoftonline.com/contoso"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="config.example.yaml"):
            AppConfig.load_from_yaml(tmp_path / "config.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("timezone: [", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid YAML"):
            AppConfig.load_from_yaml(config_file)

    def test_root_must_be_mapping(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ValueError, match="mapping"):
            AppConfig.load_from_yaml(config_file)

    def test_unknown_timezone(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            AppConfig(timezone="Mars/Olympus_Mons")

    def test_unknown_failure_policy(self):
        with pytest.raises(ValueError):
            AppConfig(sync={"failure_policy": "fail_sideways"})


class TestSectionValidation:
    """Tests for nested config sections."""

    def test_non_positive_duration(self):
        with pytest.raises(ValueError, match="greater than zero"):
            DefaultsConfig(duration_minutes=0)

    def test_attempt_timeout_within_deadline(self):
        with pytest.raises(ValueError, match="must not exceed deadline_seconds"):
            SyncConfig(attempt_timeout_seconds=20, deadline_seconds=10)

    def test_backoff_multiplier(self):
        with pytest.raises(ValueError):
            SyncConfig(backoff_multiplier=0.5)

    def test_retry_policy_mapping(self):
        policy = SyncConfig(backoff_seconds=1.0, backoff_multiplier=3.0).to_retry_policy()

        assert policy.delay_before(3) == 3.0
