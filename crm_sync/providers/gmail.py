"""
Gmail provider.

Contact-driven: for every email address already on a contact, counts the
messages exchanged with it since the last run and records the count on the
address's identity. The cursor is the epoch second at which the last
successful run started.
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from crm_sync.api.google_api import GoogleAPIClient
from crm_sync.errors import PersistenceError, ValidationError
from crm_sync.providers.base import GoogleSyncProvider
from crm_sync.storage.models import SyncState, SyncStrategy
from crm_sync.sync.contact import Contact
from crm_sync.sync.registry import SourceConfig, SyncContext, SyncResult
from crm_sync.utils.normalization import IdentifierType

logger = logging.getLogger(__name__)

SOURCE_NAME = "gmail"

MAX_RESULTS = 500


def build_query(email: str, after_epoch: Optional[int] = None) -> str:
    """Gmail search query for messages from or to ``email``."""
    query = f"from:{email} OR to:{email}"
    if after_epoch:
        query += f" after:{after_epoch}"
    return query


def parse_cursor(cursor: Optional[str]) -> Optional[int]:
    if not cursor:
        return None
    try:
        return int(cursor)
    except ValueError:
        logger.warning(f"Ignoring invalid Gmail cursor {cursor!r}")
        return None


class GmailProvider(GoogleSyncProvider):
    """Counts Gmail messages per known contact email address."""

    def config(self) -> SourceConfig:
        return SourceConfig(
            name=SOURCE_NAME,
            display_name="Gmail",
            strategy=SyncStrategy.CONTACT_DRIVEN,
            supports_multi_account=True,
            supports_discovery=False,
            default_interval=timedelta(minutes=15),
        )

    def sync(self, ctx: SyncContext, state: SyncState, contacts: list[Contact]) -> SyncResult:
        account_id = self._require_account(state)
        started_epoch = int(self.clock().timestamp())
        after_epoch = parse_cursor(state.sync_cursor)

        client = self._client(account_id)
        gmail = client.service("gmail", "v1")
        result = SyncResult()

        for contact in contacts:
            for method in contact.emails:
                ctx.raise_if_cancelled()
                count = self._count_messages(ctx, client, gmail, method.value, after_epoch)
                result.items_processed += 1
                if count == 0:
                    continue

                try:
                    self.resolver.match_or_create(
                        method.value,
                        IdentifierType.EMAIL,
                        SOURCE_NAME,
                        display_name=contact.full_name,
                        known_contact_id=contact.id,
                        message_count=count,
                    )
                except (ValidationError, PersistenceError) as e:
                    logger.warning(f"Failed to record messages for {method.value}: {e}")
                    result.add_error(f"{method.value}: {e}")
                    continue
                result.items_matched += 1
                logger.debug(f"{count} new message(s) with {method.value}")

        result.new_cursor = str(started_epoch)
        logger.info(
            f"Gmail sync completed for {account_id}: processed={result.items_processed} "
            f"matched={result.items_matched}"
        )
        return result

    def _count_messages(
        self,
        ctx: SyncContext,
        client: GoogleAPIClient,
        gmail: Any,
        email: str,
        after_epoch: Optional[int],
    ) -> int:
        query = build_query(email, after_epoch)

        def request(page_token: Optional[str]) -> Any:
            params: dict[str, Any] = {"userId": "me", "q": query, "maxResults": MAX_RESULTS}
            if page_token:
                params["pageToken"] = page_token
            return gmail.users().messages().list(**params)

        return sum(
            len(response.get("messages", []))
            for response in client.iter_pages(request, "list_messages", ctx)
        )


__all__ = ["GmailProvider", "SOURCE_NAME", "build_query"]
