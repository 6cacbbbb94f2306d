"""Configuration: TOML file, ``PAIGENT_`` environment and override layering with strict validation."""

from paigent_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
)
from paigent_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    ConfigValidationIssue,
    assert_valid_config,
    default_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "assert_valid_config",
    "default_config",
    "load_config",
    "validate_config",
]
