"""
Google API access shared by the Google providers.

Provides:
- Lazily built, cached googleapiclient service objects
- Exponential backoff retry on rate limits and server errors
- Page iteration with cancellation checks between pages
"""

import logging
import time
from collections.abc import Callable, Iterator
from typing import Any, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from crm_sync.errors import (
    CRMSyncError,
    NotFoundError,
    SyncCancelledError,
    TransientError,
)
from crm_sync.sync.registry import SyncContext

# Read-only scopes used by the providers
CONTACTS_SCOPE = "https://www.googleapis.com/auth/contacts.readonly"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"
GMAIL_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"
SCOPES = [CONTACTS_SCOPE, CALENDAR_SCOPE, GMAIL_SCOPE]

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds

# Status codes worth retrying besides 5xx
RATE_LIMIT_STATUSES = (429, 403)

# Returned when a sync token has expired and a full resync is required
SYNC_TOKEN_EXPIRED_STATUS = 410

logger = logging.getLogger(__name__)


class GoogleAPIError(CRMSyncError):
    """Raised when a Google API call fails without being worth a retry."""

    code = "GOOGLE_API"


class SyncTokenExpiredError(GoogleAPIError):
    """Raised when a sync token is rejected (410 GONE)."""


class GoogleAPIClient:
    """
    Thin wrapper around googleapiclient for one account's credentials.

    Usage:
        client = GoogleAPIClient(credentials)
        people = client.service("people", "v1")
        response = client.execute(
            lambda: people.people().connections().list(resourceName="people/me").execute(),
            "list_connections",
        )
    """

    def __init__(
        self,
        credentials: Credentials,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            credentials: Authorized Google OAuth2 credentials
            max_retries: Maximum attempts per call (default 5)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 60.0)
            sleep: Sleep function, replaceable in tests
        """
        self.credentials = credentials
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep
        self._services: dict[tuple[str, str], Any] = {}

    def service(self, name: str, version: str) -> Any:
        """
        Get or create a Google API service object.

        Raises:
            TransientError: If the service cannot be created
        """
        key = (name, version)
        if key not in self._services:
            try:
                self._services[key] = build(
                    name, version, credentials=self.credentials, cache_discovery=False
                )
                logger.debug(f"Created {name} {version} API service")
            except Exception as e:
                logger.error(f"Failed to create {name} API service: {e}")
                raise TransientError(f"Failed to create {name} API service: {e}") from e
        return self._services[key]

    def _backoff(
        self, delay: float, operation_name: str, ctx: Optional[SyncContext]
    ) -> None:
        """Wait ``delay`` seconds, or until ``ctx`` is cancelled."""
        if ctx is None:
            self._sleep(delay)
        elif ctx.wait(delay):
            logger.info(f"{operation_name}: cancelled while waiting to retry")
            raise SyncCancelledError(f"{operation_name} cancelled")

    def execute(
        self,
        operation: Callable[[], Any],
        operation_name: str,
        ctx: Optional[SyncContext] = None,
    ) -> Any:
        """
        Execute an API call with exponential backoff retry.

        Rate limits (429/403), server errors (5xx) and network errors are
        retried up to ``max_retries`` attempts. With a ``ctx`` the wait
        between attempts ends as soon as the context is cancelled.

        Returns:
            Result of the operation

        Raises:
            TransientError: If retries are exhausted
            SyncCancelledError: If ``ctx`` is cancelled during a retry wait
            SyncTokenExpiredError: On 410 GONE
            NotFoundError: On 404
            GoogleAPIError: For other API errors
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                return operation()

            except HttpError as e:
                status_code = e.resp.status

                if status_code == SYNC_TOKEN_EXPIRED_STATUS:
                    logger.warning(f"{operation_name}: sync token expired (410 GONE)")
                    raise SyncTokenExpiredError(
                        f"{operation_name}: sync token expired, full sync required"
                    ) from e

                if status_code in RATE_LIMIT_STATUSES or status_code >= 500:
                    if last_attempt:
                        raise TransientError(
                            f"{operation_name} failed with status {status_code} "
                            f"after {self.max_retries} attempts"
                        ) from e
                    logger.warning(
                        f"{operation_name} returned {status_code}, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    self._backoff(delay, operation_name, ctx)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue

                if status_code == 404:
                    raise NotFoundError(f"{operation_name}: resource not found") from e

                logger.error(f"{operation_name} failed with status {status_code}: {e}")
                raise GoogleAPIError(f"{operation_name} failed: {e}") from e

            except OSError as e:
                if last_attempt:
                    raise TransientError(
                        f"{operation_name} failed after {self.max_retries} attempts: {e}"
                    ) from e
                logger.warning(
                    f"{operation_name} network error ({e}), retrying in {delay:.1f}s"
                )
                self._backoff(delay, operation_name, ctx)
                delay = min(delay * 2, self.max_retry_delay)

        raise TransientError(f"{operation_name} failed after all retries")

    def iter_pages(
        self,
        request: Callable[[Optional[str]], Any],
        operation_name: str,
        ctx: Optional[SyncContext] = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Yield response pages until no ``nextPageToken`` is returned.

        Args:
            request: Builds the request for a page token (None for the first
                     page) and returns an object with ``execute()``
            operation_name: Name for logging and errors
            ctx: Checked for cancellation before each page and during retry waits
        """
        page_token: Optional[str] = None
        while True:
            if ctx is not None:
                ctx.raise_if_cancelled()

            def execute_page(token: Optional[str] = page_token) -> Any:
                return request(token).execute()

            response = self.execute(execute_page, operation_name, ctx)
            yield response

            page_token = response.get("nextPageToken")
            if not page_token:
                break


__all__ = [
    "GoogleAPIClient",
    "GoogleAPIError",
    "SyncTokenExpiredError",
    "SCOPES",
    "CONTACTS_SCOPE",
    "CALENDAR_SCOPE",
    "GMAIL_SCOPE",
]
