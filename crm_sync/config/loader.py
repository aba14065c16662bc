"""
YAML configuration for crm-sync.

``config.yaml`` lives in the config directory (``$CRM_SYNC_CONFIG_DIR`` or
``~/.crm-sync``) unless ``$CRM_SYNC_CONFIG_FILE`` names another file. Every
key is optional: a missing file means defaults throughout, unknown keys are
warned about and skipped, and known keys are type and range checked before
being turned into a ``Settings`` object.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from crm_sync.api.google_api import (
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
)
from crm_sync.daemon.scheduler import DEFAULT_INTERVAL, parse_interval
from crm_sync.errors import ValidationError
from crm_sync.sync.engine import DEFAULT_CONTACTS_LIMIT
from crm_sync.sync.matcher import CALENDAR_CONFIG, IMPORT_CONFIG, FuzzyConfig
from crm_sync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Environment variable pointing at a specific configuration file
CONFIG_FILE_ENV_VAR = "CRM_SYNC_CONFIG_FILE"

logger = logging.getLogger(__name__)

# Known keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # Storage
    "database_path": str,
    "contacts_limit": int,
    # Scheduling
    "sync_interval": (str, int),
    "pid_file": str,
    # Logging
    "log_dir": str,
    "verbose": bool,
    "debug": bool,
    # Matching
    "min_similarity_threshold": (int, float),
    "confidence_threshold": (int, float),
    "calendar_confidence_threshold": (int, float),
    "name_weight": (int, float),
    "method_weight": (int, float),
    "candidate_limit": int,
    # API
    "api_page_size": int,
    "api_max_retries": int,
    "api_initial_retry_delay": (int, float),
    "api_max_retry_delay": (int, float),
    # Sources
    "accounts": list,
    "enabled_providers": list,
}

# Values that must lie within 0.0 and 1.0
UNIT_INTERVAL_KEYS = (
    "min_similarity_threshold",
    "confidence_threshold",
    "calendar_confidence_threshold",
    "name_weight",
    "method_weight",
)

POSITIVE_INT_KEYS = ("contacts_limit", "candidate_limit", "api_page_size", "api_max_retries")

POSITIVE_FLOAT_KEYS = ("api_initial_retry_delay", "api_max_retry_delay")


class ConfigError(ValidationError):
    """Raised when configuration loading or validation fails."""


@dataclass
class Settings:
    """Typed configuration with defaults for every key."""

    database_path: Optional[str] = None
    contacts_limit: int = DEFAULT_CONTACTS_LIMIT
    sync_interval: int = DEFAULT_INTERVAL
    pid_file: Optional[str] = None
    log_dir: Optional[str] = None
    verbose: bool = False
    debug: bool = False
    import_matching: FuzzyConfig = IMPORT_CONFIG
    calendar_matching: FuzzyConfig = CALENDAR_CONFIG
    api_page_size: Optional[int] = None
    api_max_retries: int = DEFAULT_MAX_RETRIES
    api_initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY
    api_max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY
    accounts: list[str] = field(default_factory=list)
    enabled_providers: Optional[list[str]] = None

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "Settings":
        """
        Build Settings from a validated configuration dictionary.

        Matching keys override both the import and calendar configurations;
        ``calendar_confidence_threshold`` applies to calendar matching only.
        """
        import_matching = FuzzyConfig.from_config(config, IMPORT_CONFIG)
        calendar_matching = FuzzyConfig.from_config(config, CALENDAR_CONFIG)
        # The import confidence threshold does not loosen calendar auto-linking
        calendar_matching = replace(
            calendar_matching,
            confidence_threshold=config.get(
                "calendar_confidence_threshold", CALENDAR_CONFIG.confidence_threshold
            ),
        )

        settings = cls(import_matching=import_matching, calendar_matching=calendar_matching)
        for key in (
            "database_path",
            "contacts_limit",
            "pid_file",
            "log_dir",
            "verbose",
            "debug",
            "api_page_size",
            "api_max_retries",
            "api_initial_retry_delay",
            "api_max_retry_delay",
        ):
            if config.get(key) is not None:
                setattr(settings, key, config[key])

        if "sync_interval" in config:
            settings.sync_interval = parse_interval(config["sync_interval"])
        if config.get("accounts"):
            settings.accounts = [str(a) for a in config["accounts"]]
        if config.get("enabled_providers") is not None:
            settings.enabled_providers = [str(p) for p in config["enabled_providers"]]
        return settings

    def api_options(self) -> dict[str, Any]:
        """Keyword arguments for GoogleAPIClient."""
        return {
            "max_retries": self.api_max_retries,
            "initial_retry_delay": float(self.api_initial_retry_delay),
            "max_retry_delay": float(self.api_max_retry_delay),
        }


def _type_name(expected: type[Any] | tuple[type[Any], ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _has_type(value: Any, expected: type[Any] | tuple[type[Any], ...]) -> bool:
    # bool is an int subclass; only keys declared as bool accept it
    allowed = expected if isinstance(expected, tuple) else (expected,)
    if isinstance(value, bool) and bool not in allowed:
        return False
    return isinstance(value, allowed)


class ConfigLoader:
    """
    Finds, reads and checks ``config.yaml``.

    Usage:
        settings = ConfigLoader().load_settings()
        raw = ConfigLoader(config_file="/etc/crm-sync.yaml").load()
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        config_file: Optional[str] = None,
    ):
        """
        Args:
            config_dir: Where config.yaml (and tokens, logs, the PID file)
                live. Defaults to $CRM_SYNC_CONFIG_DIR, then ~/.crm-sync.
            config_file: File name or path. Relative names resolve inside
                config_dir. Defaults to $CRM_SYNC_CONFIG_FILE, then
                config.yaml.
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file or os.environ.get(CONFIG_FILE_ENV_VAR) or DEFAULT_CONFIG_FILE

    @property
    def config_path(self) -> Path:
        path = Path(self.config_file).expanduser()
        if path.is_absolute():
            return path
        return self.config_dir / path

    def load(self) -> dict[str, Any]:
        """
        Read the configured file as a dictionary.

        A missing or empty file yields ``{}``.

        Raises:
            ConfigError: If the file is unreadable, not YAML, or not a mapping.
        """
        path = self.config_path
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No configuration file at {path}, using defaults")
            return {}
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file {path}: {e}") from e

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML in {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"{path} must contain a YAML dictionary, not a {type(data).__name__}"
            )

        logger.debug(f"Loaded {len(data)} configuration keys from {path}")
        return data

    def validate(self, config: dict[str, Any]) -> None:
        """
        Check types and ranges of known keys. Unknown keys only warn.

        Raises:
            ConfigError: On the first invalid value.
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            expected = VALID_KEYS.get(key)
            if expected is None:
                logger.warning(f"Ignoring unknown configuration key: {key}")
            elif not _has_type(value, expected):
                raise ConfigError(
                    f"'{key}' has the wrong type: expected {_type_name(expected)}, "
                    f"got {type(value).__name__}"
                )

        for key in UNIT_INTERVAL_KEYS:
            if key in config and not (0.0 <= config[key] <= 1.0):
                raise ConfigError(f"{key} must be between 0.0 and 1.0, got {config[key]}")

        for key in POSITIVE_INT_KEYS:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        for key in POSITIVE_FLOAT_KEYS:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if "sync_interval" in config:
            try:
                seconds = parse_interval(config["sync_interval"])
            except ValueError as e:
                raise ConfigError(str(e)) from e
            if seconds < 1:
                raise ConfigError(f"sync_interval must be positive, got {config['sync_interval']}")

    def load_settings(self) -> Settings:
        """Read, validate and convert the configuration to Settings."""
        config = self.load()
        self.validate(config)
        return Settings.from_dict(config)


__all__ = [
    "ConfigLoader",
    "ConfigError",
    "Settings",
    "DEFAULT_CONFIG_FILE",
    "CONFIG_FILE_ENV_VAR",
]
