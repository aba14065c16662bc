"""
Loading of already-authorized Google credentials from token files.

Tokens are obtained outside crm-sync; this module only reads them (one
``token_<account>.json`` per account in the config directory) and refreshes
expired access tokens in memory.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from crm_sync.api.google_api import SCOPES
from crm_sync.errors import TransientError, ValidationError
from crm_sync.utils.paths import token_path

logger = logging.getLogger(__name__)


class TokenCredentialsProvider:
    """
    Provides Google credentials per account from authorized-user token files.

    Instances are callable, so they can be passed directly as the
    ``credentials_provider`` of the Google sync providers.

    Usage:
        credentials = TokenCredentialsProvider(config_dir)
        creds = credentials('me@example.com')
    """

    def __init__(self, config_dir: Path, scopes: Optional[list[str]] = None):
        self.config_dir = Path(config_dir)
        self.scopes = scopes or SCOPES

    def __call__(self, account_id: Optional[str]) -> Credentials:
        return self.get_credentials(account_id)

    def get_credentials(self, account_id: Optional[str]) -> Credentials:
        """
        Load valid credentials for an account, refreshing them if expired.

        Raises:
            ValidationError: If no usable token exists for the account
            TransientError: If the refresh request could not be sent
        """
        path = token_path(self.config_dir, account_id)
        if not path.exists():
            raise ValidationError(f"No authorized token for account {account_id or 'default'}")

        try:
            creds: Credentials = Credentials.from_authorized_user_file(str(path), self.scopes)
        except (json.JSONDecodeError, ValueError) as e:
            raise ValidationError(f"Invalid token file {path}: {e}") from e

        if creds.valid:
            return creds

        if not (creds.expired and creds.refresh_token):
            raise ValidationError(f"Token for account {account_id or 'default'} cannot be refreshed")

        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise ValidationError(f"Failed to refresh credentials: {e}") from e
        except TransportError as e:
            raise TransientError(f"Failed to refresh credentials: {e}") from e

        logger.debug(f"Refreshed credentials for {account_id or 'default'}")
        return creds

    def list_accounts(self) -> list[str]:
        """Accounts with a token file in the config directory."""
        accounts = []
        for path in sorted(self.config_dir.glob("token_*.json")):
            accounts.append(path.stem[len("token_"):])
        return accounts


__all__ = ["TokenCredentialsProvider"]
