"""
Tests for configuration loading and logging setup.

Tests cover:
- Defaults and YAML merging
- Environment overrides
- Invalid configuration files and sections
- Structured log formatting
"""

import json
import logging

import pytest

from fedhealth.shared.config import (
    DEFAULT_CONFIG, OrchestratorSettings, build_federated_config, build_orchestrator_settings,
    load_config
)
from fedhealth.shared.errors import ConfigurationError
from fedhealth.shared.logging_config import JSONFormatter, log_federated_event, setup_logging
from fedhealth.shared.models import FederatedConfig


class TestLoadConfig:
    """YAML configuration files."""

    def test_defaults_without_file(self):
        config = load_config(environ={})

        assert config == DEFAULT_CONFIG
        assert config is not DEFAULT_CONFIG

    def test_file_merged_over_defaults(self, tmp_path):
        path = tmp_path / "client.yaml"
        path.write_text(
            "client:\n"
            "  participant_id: device-7\n"
            "federated:\n"
            "  max_rounds: 12\n"
        )

        config = load_config(str(path), environ={})

        assert config['client']['participant_id'] == "device-7"
        assert config['client']['coordinator_address'] == "localhost:50051"
        assert build_federated_config(config).max_rounds == 12

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "client.yaml"
        path.write_text("client:\n  participant_id: device-7\n")

        config = load_config(str(path), environ={
            'FEDHEALTH_PARTICIPANT_ID': 'device-9',
            'FEDHEALTH_KEY_DIR': '/var/lib/fedhealth/keys'
        })

        assert config['client']['participant_id'] == "device-9"
        assert config['storage']['key_dir'] == "/var/lib/fedhealth/keys"

    def test_missing_file_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "missing.yaml"), environ={})

    def test_malformed_yaml_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("client: [unclosed\n")

        with pytest.raises(ConfigurationError):
            load_config(str(path), environ={})

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            load_config(str(path), environ={})


class TestSections:
    """Typed settings built from configuration sections."""

    def test_empty_sections_give_defaults(self):
        config = load_config(environ={})

        assert build_federated_config(config) == FederatedConfig()
        assert build_orchestrator_settings(config) == OrchestratorSettings()

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigurationError):
            build_federated_config({'federated': {'rounds': 3}})

    def test_invalid_value_rejected(self):
        with pytest.raises(ConfigurationError):
            build_orchestrator_settings({'orchestrator': {'round_timeout': 0}})

    def test_settings_round_trip_to_dict(self):
        settings = OrchestratorSettings(max_retries=5, noise_seed=1)

        assert OrchestratorSettings(**settings.to_dict()) == settings


class TestLogging:
    """Structured logging."""

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("fedhealth.test", logging.INFO, __file__, 1, "round done", None, None)
        record.session_id = "s1"
        record.round_number = 2

        entry = json.loads(JSONFormatter().format(record))

        assert entry['message'] == "round done"
        assert entry['session_id'] == "s1"
        assert entry['round_number'] == 2

    def test_setup_logging_writes_files(self, tmp_path):
        logger = setup_logging("unit", log_level="DEBUG", log_dir=str(tmp_path), enable_console=False)

        log_federated_event(logger, "info", "session started", session_id="s1", round_number=0)
        for handler in logging.getLogger("fedhealth").handlers:
            handler.flush()

        entry = json.loads((tmp_path / "unit.log").read_text().splitlines()[-1])
        assert logger.name == "fedhealth.unit"
        assert entry['component'] == "unit"
        assert entry['session_id'] == "s1"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            setup_logging("unit", log_level="LOUD", enable_console=False)
