"""
Configuration loading for federated health learning services.
Reads YAML configuration files and applies environment overrides.
"""

import copy
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
import logging

import yaml

from .errors import ConfigurationError
from .models import FederatedConfig

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    'client': {
        'participant_id': 'participant-001',
        'coordinator_address': 'localhost:50051',
        'coordinator_endpoint': 'coordinator',
        'data_dir': 'data/',
    },
    'session': {
        'model_type': 'cardiovascular_risk',
        'participants': [],
    },
    'federated': {},
    'orchestrator': {},
    'storage': {
        'database_url': 'sqlite:///fedhealth.db',
        'key_dir': 'keys/',
    },
    'logging': {
        'level': 'INFO',
        'log_dir': None,
        'enable_json': True,
        'enable_console': True,
    },
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    'FEDHEALTH_PARTICIPANT_ID': ('client', 'participant_id'),
    'FEDHEALTH_COORDINATOR_ADDRESS': ('client', 'coordinator_address'),
    'FEDHEALTH_DATABASE_URL': ('storage', 'database_url'),
    'FEDHEALTH_KEY_DIR': ('storage', 'key_dir'),
}


@dataclass(frozen=True)
class OrchestratorSettings:
    """Client-side knobs of the round loop that are not session hyperparameters."""
    max_retries: int = 3
    retry_backoff: float = 0.5
    round_timeout: float = 30.0
    pacing_delay: float = 1.0
    sensitivity: float = 1.0
    evaluate_after_apply: bool = True
    noise_seed: Optional[int] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff must be non-negative")
        if self.round_timeout <= 0:
            raise ValueError("round_timeout must be positive")
        if self.pacing_delay < 0:
            raise ValueError("pacing_delay must be non-negative")
        if self.sensitivity < 0:
            raise ValueError("sensitivity must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Apply FEDHEALTH_* environment overrides to a configuration."""
    environ = os.environ if environ is None else environ
    config = copy.deepcopy(config)
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            config.setdefault(section, {})[key] = value
            logger.debug(f"Config {section}.{key} overridden by {variable}")
    return config


def load_config(config_path: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file merged over the defaults.

    Args:
        config_path: YAML file path (defaults only if None)
        environ: Environment mapping used for overrides (os.environ if None)

    Returns:
        Dict: Effective configuration

    Raises:
        ConfigurationError: If the file is missing or not a YAML mapping
    """
    file_config: Dict[str, Any] = {}
    if config_path:
        try:
            with open(config_path, 'r') as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Failed to load configuration from {config_path}: {str(e)}")

        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Configuration in {config_path} must be a mapping")
        logger.info(f"Configuration loaded from {config_path}")

    return apply_env_overrides(_merge(DEFAULT_CONFIG, file_config), environ)


def build_federated_config(config: Dict[str, Any]) -> FederatedConfig:
    """Build session hyperparameters from the ``federated`` section."""
    section = config.get('federated') or {}
    try:
        return FederatedConfig(**section)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid federated configuration: {str(e)}")


def build_orchestrator_settings(config: Dict[str, Any]) -> OrchestratorSettings:
    """Build round loop settings from the ``orchestrator`` section."""
    section = config.get('orchestrator') or {}
    try:
        return OrchestratorSettings(**section)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid orchestrator configuration: {str(e)}")
