"""Configuration system for backup-runner.

This module provides TOML-based configuration loading, validation,
and schema definitions for backup jobs and notifications.
"""

from .loader import ConfigError, find_config_file, load_config, parse_config
from .schema import (
    Config,
    GlobalConfig,
    JobConfig,
    NotifyConfig,
)

__all__ = [
    "GlobalConfig",
    "JobConfig",
    "NotifyConfig",
    "Config",
    "load_config",
    "parse_config",
    "find_config_file",
    "ConfigError",
]
