"""
Google Contacts provider.

Mirrors each account's address book into external contacts, marks
cross-account duplicates and links records to contacts through identity
resolution (emails first, then phone numbers).
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from crm_sync.api.google_api import GoogleAPIClient, SyncTokenExpiredError
from crm_sync.errors import CRMSyncError, PersistenceError, ValidationError
from crm_sync.providers.base import GoogleSyncProvider
from crm_sync.storage.models import MatchStatus, SyncState, SyncStrategy
from crm_sync.sync.contact import Contact, ExternalContact
from crm_sync.sync.registry import SourceConfig, SyncContext, SyncResult
from crm_sync.utils.normalization import IdentifierType

logger = logging.getLogger(__name__)

SOURCE_NAME = "gcontacts"

# Person fields to request from the People API
PERSON_FIELDS = ",".join(
    [
        "names",
        "emailAddresses",
        "phoneNumbers",
        "addresses",
        "organizations",
        "birthdays",
        "photos",
    ]
)

# API max is 1000
DEFAULT_PAGE_SIZE = 1000


class GoogleContactsProvider(GoogleSyncProvider):
    """Syncs Google Contacts (People API connections) for one account per state."""

    def __init__(self, *args: Any, page_size: int = DEFAULT_PAGE_SIZE, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.page_size = min(page_size, DEFAULT_PAGE_SIZE)

    def config(self) -> SourceConfig:
        return SourceConfig(
            name=SOURCE_NAME,
            display_name="Google Contacts",
            strategy=SyncStrategy.FETCH_ALL,
            supports_multi_account=True,
            supports_discovery=True,
            default_interval=timedelta(hours=1),
        )

    def sync(self, ctx: SyncContext, state: SyncState, contacts: list[Contact]) -> SyncResult:
        account_id = self._require_account(state)
        logger.info(f"Starting Google Contacts sync for {account_id}")

        client = self._client(account_id)
        result = SyncResult()

        try:
            self._sync_connections(ctx, client, account_id, state.sync_cursor, result)
        except SyncTokenExpiredError:
            if not state.sync_cursor:
                raise
            logger.warning("Contacts sync token expired, performing full sync")
            # Pages seen before the 410 are fetched again by the full pass
            result = SyncResult()
            self._sync_connections(ctx, client, account_id, None, result)

        logger.info(
            f"Google Contacts sync completed for {account_id}: "
            f"processed={result.items_processed} matched={result.items_matched} "
            f"created={result.items_created}"
        )
        return result

    def _sync_connections(
        self,
        ctx: SyncContext,
        client: GoogleAPIClient,
        account_id: str,
        sync_token: Optional[str],
        result: SyncResult,
    ) -> None:
        people = client.service("people", "v1")

        def request(page_token: Optional[str]) -> Any:
            params: dict[str, Any] = {
                "resourceName": "people/me",
                "personFields": PERSON_FIELDS,
                "pageSize": self.page_size,
            }
            if sync_token:
                params["syncToken"] = sync_token
            else:
                params["requestSyncToken"] = True
            if page_token:
                params["pageToken"] = page_token
            return people.people().connections().list(**params)

        for response in client.iter_pages(request, "list_connections", ctx):
            for person in response.get("connections", []):
                ctx.raise_if_cancelled()
                self._process_person(person, account_id, result)

            if response.get("nextSyncToken"):
                result.new_cursor = response["nextSyncToken"]

    def _process_person(self, person: dict[str, Any], account_id: str, result: SyncResult) -> None:
        resource_name = person.get("resourceName", "")
        if person.get("metadata", {}).get("deleted"):
            logger.debug(f"Skipping deleted contact {resource_name}")
            return

        external = ExternalContact.from_person(person, SOURCE_NAME, account_id)
        if not external.has_data():
            return

        try:
            existed = (
                self.database.get_external_contact_by_source(
                    SOURCE_NAME, external.source_id, account_id
                )
                is not None
            )
            stored = self.database.upsert_external_contact(external, self.clock())
            if not existed:
                result.items_created += 1

            if not self._check_duplicates(stored) and self._attempt_match(stored):
                result.items_matched += 1
        except (ValidationError, PersistenceError) as e:
            logger.warning(f"Failed to process contact {resource_name}: {e}")
            result.add_error(f"{resource_name}: {e}")
            return

        result.items_processed += 1

    def _check_duplicates(self, stored: ExternalContact) -> bool:
        """Mark ``stored`` as a duplicate of an older record sharing an email."""
        if stored.duplicate_of_id is not None:
            return True
        if stored.id is None:
            return False

        for email in stored.emails:
            for other in self.database.find_external_contacts_by_email(email.value):
                if other.id is None or other.id == stored.id:
                    continue
                if (other.created_at, other.id) < (stored.created_at, stored.id):
                    self.database.mark_external_duplicate(stored.id, other.id)
                    logger.debug(f"Marked {stored!r} as duplicate of {other!r}")
                    return True
        return False

    def _attempt_match(self, stored: ExternalContact) -> bool:
        if stored.match_status != MatchStatus.UNMATCHED:
            return stored.crm_contact_id is not None
        if stored.id is None:
            return False

        display_name = stored.candidate_name() or None
        identifiers = [(e.value, IdentifierType.EMAIL) for e in stored.emails]
        identifiers.extend((p.value, IdentifierType.PHONE) for p in stored.phones)

        for value, identifier_type in identifiers:
            try:
                match = self.resolver.match_or_create(
                    value,
                    identifier_type,
                    SOURCE_NAME,
                    source_id=stored.source_id,
                    display_name=display_name,
                    message_count=0,
                )
            except ValidationError:
                continue

            if match.contact_id is None:
                continue

            updated = self.database.update_external_contact_match(
                stored.id, match.contact_id, MatchStatus.MATCHED
            )
            if updated is not None:
                try:
                    self.merger.enrich_contact_from_external(match.contact_id, updated)
                except CRMSyncError as e:
                    logger.warning(f"Enrichment failed for contact {match.contact_id}: {e}")
            return True

        return False


__all__ = ["GoogleContactsProvider", "SOURCE_NAME", "PERSON_FIELDS"]
