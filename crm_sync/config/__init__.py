"""
crm_sync.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from crm_sync.config.loader import (
    CONFIG_FILE_ENV_VAR,
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
    Settings,
)

__all__ = [
    "ConfigLoader",
    "ConfigError",
    "Settings",
    "DEFAULT_CONFIG_FILE",
    "CONFIG_FILE_ENV_VAR",
]
