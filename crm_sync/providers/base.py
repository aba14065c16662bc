"""
Shared plumbing for the Google sync providers.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

from google.oauth2.credentials import Credentials

from crm_sync.api.google_api import GoogleAPIClient
from crm_sync.errors import ValidationError
from crm_sync.storage.db import CRMDatabase
from crm_sync.storage.models import SyncState, utcnow
from crm_sync.sync.enrichment import EnrichmentMerger
from crm_sync.sync.identity import IdentityResolver
from crm_sync.sync.registry import SyncContext, SyncProvider

logger = logging.getLogger(__name__)

CredentialsProvider = Callable[[Optional[str]], Credentials]
ClientFactory = Callable[..., GoogleAPIClient]


class GoogleSyncProvider(SyncProvider):
    """
    Base class for providers backed by a Google API.

    Subclasses implement ``config()`` and ``sync()``; credentials are
    fetched per account through ``credentials_provider``.
    """

    def __init__(
        self,
        database: CRMDatabase,
        credentials_provider: CredentialsProvider,
        resolver: Optional[IdentityResolver] = None,
        merger: Optional[EnrichmentMerger] = None,
        api_options: Optional[dict[str, Any]] = None,
        client_factory: ClientFactory = GoogleAPIClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            database: Contact and sync store
            credentials_provider: Returns credentials for an account ID
            resolver: Identity resolver (built from ``database`` if omitted)
            merger: Enrichment merger (built from ``database`` if omitted)
            api_options: Keyword arguments for GoogleAPIClient (retry settings)
            client_factory: Builds the API client from credentials
            clock: Current-time source
        """
        self.database = database
        self.credentials_provider = credentials_provider
        self.resolver = resolver or IdentityResolver(database, clock)
        self.merger = merger or EnrichmentMerger(database, clock)
        self.api_options = api_options or {}
        self.client_factory = client_factory
        self.clock = clock

    def _require_account(self, state: SyncState) -> str:
        if not state.account_id:
            raise ValidationError(f"Account ID required for {self.config().display_name} sync")
        return state.account_id

    def _client(self, account_id: str) -> GoogleAPIClient:
        credentials = self.credentials_provider(account_id)
        return self.client_factory(credentials, **self.api_options)

    def validate_credentials(self, ctx: SyncContext, account_id: Optional[str]) -> None:
        """Load credentials for the account; raises if they are unusable."""
        ctx.raise_if_cancelled()
        self.credentials_provider(account_id)
        logger.debug(f"Credentials valid for {self.name} ({account_id or 'default'})")


__all__ = ["GoogleSyncProvider", "CredentialsProvider", "ClientFactory"]
