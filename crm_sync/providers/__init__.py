"""
Sync providers for external data sources.

Use ``build_registry`` to construct a ProviderRegistry holding the enabled
providers.
"""

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional

from crm_sync.providers.base import CredentialsProvider, GoogleSyncProvider
from crm_sync.providers.gmail import GmailProvider
from crm_sync.providers.google_calendar import GoogleCalendarProvider
from crm_sync.providers.google_contacts import GoogleContactsProvider
from crm_sync.storage.db import CRMDatabase
from crm_sync.storage.models import utcnow
from crm_sync.sync.matcher import CALENDAR_CONFIG, FuzzyConfig
from crm_sync.sync.registry import ProviderRegistry

# Provider classes by source name
PROVIDER_CLASSES: dict[str, type[GoogleSyncProvider]] = {
    "gcontacts": GoogleContactsProvider,
    "gcal": GoogleCalendarProvider,
    "gmail": GmailProvider,
}


def build_registry(
    database: CRMDatabase,
    credentials_provider: CredentialsProvider,
    enabled: Optional[Iterable[str]] = None,
    api_options: Optional[dict[str, Any]] = None,
    calendar_config: FuzzyConfig = CALENDAR_CONFIG,
    page_size: Optional[int] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ProviderRegistry:
    """
    Create a registry with the requested providers.

    Args:
        database: Store shared by all providers
        credentials_provider: Returns Google credentials for an account
        enabled: Source names to register (all known providers if None)
        api_options: GoogleAPIClient keyword arguments
        calendar_config: Fuzzy thresholds for calendar attendees
        page_size: People API page size override
        clock: Current-time source

    Raises:
        ValueError: If an enabled name is not a known provider
    """
    names = list(PROVIDER_CLASSES) if enabled is None else list(enabled)
    unknown = [name for name in names if name not in PROVIDER_CLASSES]
    if unknown:
        raise ValueError(f"Unknown providers: {', '.join(unknown)}")

    registry = ProviderRegistry()
    common: dict[str, Any] = {"api_options": api_options, "clock": clock}
    for name in names:
        extra: dict[str, Any] = {}
        if name == "gcal":
            extra["fuzzy_config"] = calendar_config
        elif name == "gcontacts" and page_size:
            extra["page_size"] = page_size
        registry.register(
            PROVIDER_CLASSES[name](database, credentials_provider, **common, **extra)
        )
    return registry


__all__ = [
    "build_registry",
    "PROVIDER_CLASSES",
    "GoogleSyncProvider",
    "GoogleContactsProvider",
    "GoogleCalendarProvider",
    "GmailProvider",
]
