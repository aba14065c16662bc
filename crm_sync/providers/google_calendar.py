"""
Google Calendar provider.

Discovers people from the attendees of accepted meetings. Each attendee is
resolved by exact email first, then by fuzzy name matching with the stricter
calendar thresholds; anyone still unknown is stored as an import candidate.
"""

import logging
import re
from datetime import timedelta
from typing import Any, Optional

from crm_sync.api.google_api import GoogleAPIClient, SyncTokenExpiredError
from crm_sync.errors import PersistenceError, ValidationError
from crm_sync.providers.base import GoogleSyncProvider
from crm_sync.storage.models import MatchType, SyncState, SyncStrategy
from crm_sync.sync.contact import Contact, EmailEntry, ExternalContact
from crm_sync.sync.matcher import CALENDAR_CONFIG, FuzzyConfig, ImportMatcher
from crm_sync.sync.registry import SourceConfig, SyncContext, SyncResult
from crm_sync.utils.normalization import IdentifierType, normalize_email

logger = logging.getLogger(__name__)

SOURCE_NAME = "gcal"

# Source of import candidates discovered from attendees
ATTENDEE_SOURCE = "gcal_attendee"

# Initial sync window
PAST_SYNC_DAYS = 365
FUTURE_SYNC_DAYS = 30

MAX_RESULTS = 250

# Calendar resources (rooms, group and system calendars), not people
BLOCKED_CALENDAR_DOMAINS = (
    "group.calendar.google.com",
    "resource.calendar.google.com",
    "calendar.google.com",
    "group.v.calendar.google.com",
)

_NAME_SEPARATORS = re.compile(r"[._]")


def is_blocked_calendar_domain(email: str) -> bool:
    email = email.strip().lower()
    return any(email.endswith(f"@{domain}") for domain in BLOCKED_CALENDAR_DOMAINS)


def infer_name_from_email(email: str) -> Optional[str]:
    """
    Guess a display name from an email's local part.

    'john.smith2@example.com' -> 'John Smith'; '+tags' are dropped.
    Returns None when nothing usable remains.
    """
    local, sep, _ = email.partition("@")
    if not sep:
        return None
    local = local.split("+", 1)[0]

    parts = []
    for part in _NAME_SEPARATORS.split(local):
        part = part.strip().rstrip("0123456789")
        if part:
            parts.append(part.capitalize())
    return " ".join(parts) or None


def user_response(event: dict[str, Any], account_id: str) -> Optional[str]:
    """The account owner's response status for an event, if they are invited."""
    for attendee in event.get("attendees", []):
        if attendee.get("self") or attendee.get("email", "").lower() == account_id.lower():
            return attendee.get("responseStatus")
    organizer = event.get("organizer") or {}
    if organizer.get("email", "").lower() == account_id.lower():
        return "accepted"
    return None


class GoogleCalendarProvider(GoogleSyncProvider):
    """Syncs attendees of the primary calendar's accepted timed events."""

    def __init__(self, *args: Any, fuzzy_config: FuzzyConfig = CALENDAR_CONFIG, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.matcher = ImportMatcher(self.database, fuzzy_config)

    def config(self) -> SourceConfig:
        return SourceConfig(
            name=SOURCE_NAME,
            display_name="Google Calendar",
            strategy=SyncStrategy.FETCH_ALL,
            supports_multi_account=True,
            supports_discovery=True,
            default_interval=timedelta(hours=24),
        )

    def sync(self, ctx: SyncContext, state: SyncState, contacts: list[Contact]) -> SyncResult:
        account_id = self._require_account(state)
        client = self._client(account_id)
        result = SyncResult()

        if state.sync_cursor:
            logger.debug("Performing incremental calendar sync")
            try:
                self._sync_events(ctx, client, account_id, state.sync_cursor, result)
            except SyncTokenExpiredError:
                logger.warning("Calendar sync token expired, falling back to initial sync")
                result = SyncResult()
                self._sync_events(ctx, client, account_id, None, result)
        else:
            logger.debug("Performing initial calendar sync")
            self._sync_events(ctx, client, account_id, None, result)

        logger.info(
            f"Google Calendar sync completed for {account_id}: "
            f"processed={result.items_processed} matched={result.items_matched} "
            f"created={result.items_created}"
        )
        return result

    def _sync_events(
        self,
        ctx: SyncContext,
        client: GoogleAPIClient,
        account_id: str,
        sync_token: Optional[str],
        result: SyncResult,
    ) -> None:
        calendar = client.service("calendar", "v3")
        params: dict[str, Any] = {"calendarId": "primary", "maxResults": MAX_RESULTS}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            now = self.clock()
            params.update(
                timeMin=(now - timedelta(days=PAST_SYNC_DAYS)).isoformat(),
                timeMax=(now + timedelta(days=FUTURE_SYNC_DAYS)).isoformat(),
                singleEvents=True,
                orderBy="startTime",
            )

        def request(page_token: Optional[str]) -> Any:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            return calendar.events().list(**page_params)

        for response in client.iter_pages(request, "list_events", ctx):
            for event in response.get("items", []):
                ctx.raise_if_cancelled()
                try:
                    if self._process_event(event, account_id, result):
                        result.items_processed += 1
                except (ValidationError, PersistenceError) as e:
                    logger.warning(f"Failed to process event {event.get('id')}: {e}")
                    result.add_error(f"event {event.get('id')}: {e}")

            if response.get("nextSyncToken"):
                result.new_cursor = response["nextSyncToken"]

    def _process_event(self, event: dict[str, Any], account_id: str, result: SyncResult) -> bool:
        if event.get("status") == "cancelled":
            return False
        # All-day entries are holidays and birthdays, not meetings
        if "date" in (event.get("start") or {}):
            return False
        if user_response(event, account_id) != "accepted":
            logger.debug(f"Skipping non-accepted event {event.get('id')}")
            return False

        for attendee in event.get("attendees", []):
            email = attendee.get("email", "")
            if attendee.get("self") or not email or email.lower() == account_id.lower():
                continue
            if is_blocked_calendar_domain(email):
                logger.debug(f"Skipping calendar resource {email}")
                continue
            self._match_attendee(email, attendee.get("displayName") or None, account_id, result)
        return True

    def _match_attendee(
        self, email: str, display_name: Optional[str], account_id: str, result: SyncResult
    ) -> None:
        match = self.resolver.match_or_create(
            email, IdentifierType.EMAIL, SOURCE_NAME, display_name=display_name
        )
        if match.matched:
            result.items_matched += 1
            return

        normalized = normalize_email(email)
        candidate = ExternalContact(
            source=ATTENDEE_SOURCE,
            source_id=normalized,
            account_id=account_id,
            display_name=display_name or infer_name_from_email(email),
            emails=[EmailEntry(value=email)],
        )

        if display_name:
            suggestion = self.matcher.find_best_match(candidate)
            if suggestion is not None:
                self.database.link_identity(
                    match.identity.id,
                    suggestion.contact_id,
                    MatchType.FUZZY,
                    suggestion.confidence,
                )
                logger.debug(
                    f"Fuzzy matched attendee {email} to contact {suggestion.contact_id} "
                    f"({suggestion.confidence:.2f})"
                )
                result.items_matched += 1
                return

        existed = (
            self.database.get_external_contact_by_source(ATTENDEE_SOURCE, normalized, account_id)
            is not None
        )
        self.database.upsert_external_contact(candidate, self.clock())
        if not existed:
            result.items_created += 1
            logger.debug(f"Stored attendee {email} as import candidate")


__all__ = [
    "GoogleCalendarProvider",
    "SOURCE_NAME",
    "ATTENDEE_SOURCE",
    "infer_name_from_email",
    "is_blocked_calendar_domain",
]
