"""Tests for configuration."""

import json
import logging
import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest

from allisa_connector.config import (
    DEFAULT_POST_FIELD_MAPPING,
    Config,
    parse_field_mapping,
    setup_logging,
)
from allisa_connector.errors import ConfigError

VALID_ENV = {
    "API_KEY": "wt-key",
    "ALLISA_API_KEY": "allisa-key",
    "ALLISA_BASE_URL": "https://allisa.example/",
    "ALLISA_CASE_TYPE": "Akte",
    "ALLISA_POST_TYPE": "Zeiterfassung",
}


class TestParseFieldMapping:
    """Tests for parse_field_mapping."""

    def test_default_mapping(self):
        """Test the default mapping maps every key to itself."""
        mapping = parse_field_mapping(DEFAULT_POST_FIELD_MAPPING)

        assert mapping["pid"] == "pid"
        assert len(mapping) == 7

    def test_missing_fields(self):
        """Test every required key must be mapped."""
        with pytest.raises(ConfigError, match="Missing fields: activityCode, chargeableTimeSecs"):
            parse_field_mapping(
                "pid:pid,userId:userId,narrative:narrative,startDateTime:start,totalTimeSecs:total"
            )

    def test_malformed_pair(self):
        """Test pairs must be key:field."""
        with pytest.raises(ConfigError, match="Invalid post field mapping: pid"):
            parse_field_mapping("pid," + DEFAULT_POST_FIELD_MAPPING)

    def test_whitespace_tolerated(self):
        """Test spaces around pairs are ignored."""
        mapping = parse_field_mapping(DEFAULT_POST_FIELD_MAPPING.replace(",", " , "))

        assert mapping["userId"] == "userId"


class TestConfig:
    """Tests for Config."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.config_path = self.temp_dir / "config.json"

    def test_defaults(self):
        """Test default values."""
        config = Config()

        assert config.connector_id == "wisetime-allisa-connector"
        assert config.wisetime.api_url == "https://wisetime.com/connect/api"
        assert config.tags.upsert_path == "/Allisa/"
        assert config.tags.batch_size == 500
        assert config.mapping.timezone == "UTC"
        assert config.mapping.add_summary_to_narrative is False
        assert config.sync.interval_seconds == 60

    def test_load_from_env(self):
        """Test environment variables are applied."""
        env = dict(
            VALID_ENV,
            TAG_UPSERT_BATCH_SIZE="250",
            ADD_SUMMARY_TO_NARRATIVE="true",
            TIMEZONE="Europe/Berlin",
            SYNC_WORKERS="8",
            LOG_LEVEL="debug",
        )

        config = Config.load(path=self.config_path, env=env)

        assert config.wisetime.api_key == "wt-key"
        assert config.allisa.case_type == "Akte"
        assert config.tags.batch_size == 250
        assert config.mapping.add_summary_to_narrative is True
        assert config.mapping.timezone == "Europe/Berlin"
        assert config.sync.workers == 8
        assert config.debug_mode is True
        config.validate()

    def test_env_overrides_file(self):
        """Test environment variables take precedence over the file."""
        self.config_path.write_text(
            json.dumps({"allisa": {"case_type": "Projekt"}, "sync": {"batch_size": 20}})
        )

        config = Config.load(path=self.config_path, env={"ALLISA_CASE_TYPE": "Akte"})

        assert config.allisa.case_type == "Akte"
        assert config.sync.batch_size == 20

    def test_invalid_int_env(self):
        """Test non-integer values are rejected."""
        with pytest.raises(ConfigError, match="SYNC_BATCH_SIZE must be an integer"):
            Config.load(path=self.config_path, env={"SYNC_BATCH_SIZE": "lots"})

    def test_unreadable_file(self):
        """Test a corrupt config file is a config error."""
        self.config_path.write_text("{not json")

        with pytest.raises(ConfigError, match="Failed to load config"):
            Config.load(path=self.config_path, env={})

    def test_keychain_fallback(self):
        """Test API keys missing elsewhere come from the keychain."""
        keychain = Mock()
        keychain.load.side_effect = lambda account: f"from-{account}"

        config = Config.load(
            path=self.config_path, env={"API_KEY": "wt-key"}, keychain=keychain
        )

        assert config.wisetime.api_key == "wt-key"
        assert config.allisa.api_key == "from-allisa_api_key"
        keychain.load.assert_called_once_with("allisa_api_key")

    def test_validate_lists_all_problems(self):
        """Test validation reports every missing value at once."""
        config = Config.load(path=self.config_path, env={"API_KEY": "wt-key"})

        with pytest.raises(ConfigError) as exc_info:
            config.validate()

        message = str(exc_info.value)
        assert "ALLISA_API_KEY needs to be set" in message
        assert "ALLISA_BASE_URL needs to be set" in message
        assert "ALLISA_CASE_TYPE needs to be set" in message
        assert "ALLISA_POST_TYPE needs to be set" in message
        assert not message.startswith("Invalid configuration: API_KEY")

    def test_validate_timezone(self):
        """Test unknown time zones are rejected."""
        config = Config.load(path=self.config_path, env=dict(VALID_ENV, TIMEZONE="Mars/Olympus"))

        with pytest.raises(ConfigError, match="Unknown TIMEZONE: Mars/Olympus"):
            config.validate()

    def test_validate_field_mapping(self):
        """Test a bad field mapping is reported."""
        config = Config.load(
            path=self.config_path, env=dict(VALID_ENV, ALLISA_POST_FIELD_MAPPING="pid:pid")
        )

        with pytest.raises(ConfigError, match="Missing fields"):
            config.validate()

    def test_validate_batch_size(self):
        """Test batch size bounds."""
        config = Config.load(path=self.config_path, env=dict(VALID_ENV, SYNC_BATCH_SIZE="0"))

        with pytest.raises(ConfigError, match="batch size must be between"):
            config.validate()

    def test_case_url_prefix(self):
        """Test case links are built from the Allisa base URL."""
        config = Config.load(path=self.config_path, env=VALID_ENV)

        assert config.allisa.case_url_prefix == "https://allisa.example/projekt/show/ID/"

    def test_state_db_path(self):
        """Test the state database is named after the connector."""
        config = Config.load(
            path=self.config_path,
            env=dict(VALID_ENV, DATA_DIR=str(self.temp_dir), CONNECTOR_ID="firm-a"),
        )

        assert config.state_db_path == self.temp_dir / "firm-a.db"

    def test_save_and_load(self):
        """Test saving and loading config without secrets."""
        config = Config.load(path=self.config_path, env=VALID_ENV)
        config.sync.batch_size = 25
        config.save(self.config_path)

        saved = json.loads(self.config_path.read_text())
        loaded = Config.load(path=self.config_path, env={})

        assert "api_key" not in saved["wisetime"]
        assert "api_key" not in saved["allisa"]
        assert loaded.sync.batch_size == 25
        assert loaded.allisa.post_type == "Zeiterfassung"
        assert loaded.wisetime.api_key is None

    def test_unknown_keys_ignored(self):
        """Test unknown keys in the file are ignored."""
        self.config_path.write_text(json.dumps({"legacy": True, "sync": {"old": 1}}))

        config = Config.load(path=self.config_path, env={})

        assert config.sync.batch_size == 100


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_creates_log_file(self):
        """Test logging writes to the given directory."""
        log_dir = Path(tempfile.mkdtemp()) / "logs"
        root = logging.getLogger()
        saved_handlers = root.handlers[:]
        root.handlers = []
        try:
            setup_logging(debug=True, log_dir=log_dir)

            assert (log_dir / "wisetime-allisa-connector.log").exists()
            assert root.level == logging.DEBUG
            assert logging.getLogger("urllib3").level == logging.WARNING
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers = saved_handlers
