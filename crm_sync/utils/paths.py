"""
Path utilities for configuration, database and token file resolution.

Every on-disk artifact crm-sync uses lives under one configuration
directory (``~/.crm-sync`` by default).
"""

from __future__ import annotations

import os
import re
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".crm-sync"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "CRM_SYNC_CONFIG_DIR"

# SQLite database file name inside the config directory
DEFAULT_DATABASE_FILE = "crm_sync.db"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._@-]")


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. CRM_SYNC_CONFIG_DIR environment variable
        3. Default directory (~/.crm-sync)
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_database_path(config_dir: Path, database_path: str | None = None) -> str:
    """
    Resolve the SQLite database location.

    ``":memory:"`` is passed through untouched; relative paths are taken
    relative to the configuration directory.
    """
    if database_path == ":memory:":
        return database_path
    if not database_path:
        return str(config_dir / DEFAULT_DATABASE_FILE)

    path = Path(database_path).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    return str(path)


def token_path(config_dir: Path, account_id: str | None) -> Path:
    """Return the authorized-user token file for an account."""
    if not account_id:
        return config_dir / "token.json"
    safe = _UNSAFE_FILENAME_CHARS.sub("_", account_id)
    return config_dir / f"token_{safe}.json"
