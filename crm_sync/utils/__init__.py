"""
crm_sync.utils - Utility module

Identifier normalization, path resolution and logging configuration.
"""

from crm_sync.utils.normalization import (
    ContactMethodType,
    IdentifierType,
    detect_identifier_type,
    method_types_for_identifier,
    normalize_identifier,
    normalize_method_value,
    normalize_string,
)
from crm_sync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "ContactMethodType",
    "IdentifierType",
    "detect_identifier_type",
    "method_types_for_identifier",
    "normalize_identifier",
    "normalize_method_value",
    "normalize_string",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
]
