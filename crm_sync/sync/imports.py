"""
Review workflow for unmatched external contacts (import candidates).

A candidate can be imported as a new contact, linked to an existing contact
(which enriches it and links the candidate's identities), or ignored.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from crm_sync.errors import CRMSyncError, NotFoundError, ValidationError
from crm_sync.storage.db import CRMDatabase
from crm_sync.storage.models import MatchStatus
from crm_sync.sync.contact import Contact, ExternalContact
from crm_sync.sync.enrichment import EnrichmentMerger
from crm_sync.sync.identity import IdentityResolver
from crm_sync.sync.matcher import ImportMatcher, SuggestedMatch
from crm_sync.utils.normalization import ContactMethodType, IdentifierType

logger = logging.getLogger(__name__)

# Candidates scored per listing before sorting and paging
MAX_CANDIDATES_FOR_SORTING = 1000

# Source email types stored as work email on import
WORK_EMAIL_TYPES = ("work", "other")


@dataclass
class ImportCandidate:
    """An unmatched external contact with its suggested match, if any."""

    external: ExternalContact
    suggested_match: Optional[SuggestedMatch] = None

    @property
    def name(self) -> str:
        return self.external.candidate_name()


def _sort_key(candidate: ImportCandidate) -> tuple:
    # Suggested first (highest confidence first), then by name with empty names last
    if candidate.suggested_match is not None:
        return (0, -candidate.suggested_match.confidence, "")
    name = candidate.name
    return (1 if name else 2, 0.0, name)


def methods_for_import(external: ExternalContact) -> list[tuple[str, str, bool]]:
    """
    Choose the methods created when importing an external contact.

    Takes the first personal email, the first work/other email and the
    primary phone (or the first phone when none is primary).
    """
    personal = [e.value for e in external.emails if e.type.lower() not in WORK_EMAIL_TYPES]
    work = [e.value for e in external.emails if e.type.lower() in WORK_EMAIL_TYPES]

    methods: list[tuple[str, str, bool]] = []
    if personal:
        methods.append((ContactMethodType.EMAIL_PERSONAL.value, personal[0], False))
    if work:
        methods.append((ContactMethodType.EMAIL_WORK.value, work[0], False))
    if external.phones:
        phone = next((p for p in external.phones if p.primary), external.phones[0])
        methods.append((ContactMethodType.PHONE.value, phone.value, False))
    return methods


class ImportService:
    """
    Lists, imports, links and ignores import candidates.

    Usage:
        service = ImportService(db)
        for candidate in service.list_candidates():
            print(candidate.name, candidate.suggested_match)
        contact = service.import_candidate(candidate_id)
    """

    def __init__(
        self,
        database: CRMDatabase,
        matcher: Optional[ImportMatcher] = None,
        merger: Optional[EnrichmentMerger] = None,
        resolver: Optional[IdentityResolver] = None,
    ):
        self.database = database
        self.matcher = matcher or ImportMatcher(database)
        self.merger = merger or EnrichmentMerger(database)
        self.resolver = resolver or IdentityResolver(database)

    def list_candidates(
        self, source: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> list[ImportCandidate]:
        """
        List candidates awaiting review with their suggested matches.

        Candidates with a suggestion come first, by confidence descending;
        the rest follow alphabetically with nameless records last. Scores
        are computed in memory, so sorting happens before paging.
        """
        externals = self.database.list_unmatched_external_contacts(
            source, limit=MAX_CANDIDATES_FOR_SORTING
        )
        candidates = [
            ImportCandidate(external=e, suggested_match=self.matcher.find_best_match(e))
            for e in externals
        ]
        candidates.sort(key=_sort_key)
        return candidates[offset : offset + limit]

    def count_candidates(self, source: Optional[str] = None) -> int:
        return self.database.count_unmatched_external_contacts(source)

    def get_candidate(self, external_id: int) -> ExternalContact:
        external = self.database.get_external_contact(external_id)
        if external is None:
            raise NotFoundError(f"Import candidate {external_id} not found")
        return external

    def import_candidate(self, external_id: int) -> Contact:
        """
        Create a new contact from a candidate.

        The contact and its methods are created in one transaction; the
        candidate is then marked imported.

        Raises:
            NotFoundError: If the candidate doesn't exist
            ValidationError: If the candidate was already processed or has
                             no usable name
        """
        external = self.get_candidate(external_id)
        if external.match_status != MatchStatus.UNMATCHED:
            raise ValidationError(
                f"Import candidate {external_id} already processed "
                f"({external.match_status.value})"
            )

        full_name = external.candidate_name()
        if not full_name:
            raise ValidationError("Cannot import contact without a name")

        location = None
        if external.addresses and external.addresses[0].formatted:
            location = external.addresses[0].formatted

        contact = self.database.create_contact(
            full_name=full_name,
            location=location,
            birthday=external.birthday,
            profile_photo=external.photo_url,
            methods=methods_for_import(external),
        )

        try:
            self.database.update_external_contact_match(
                external_id, contact.id, MatchStatus.IMPORTED
            )
        except CRMSyncError as e:
            logger.warning(f"Failed to mark candidate {external_id} imported: {e}")

        logger.info(f"Imported {full_name!r} from {external.source} as contact {contact.id}")
        return contact

    def link_candidate(self, external_id: int, contact_id: int) -> ExternalContact:
        """
        Link a candidate to an existing contact.

        Marks the candidate matched, enriches the contact from it and links
        every identity already observed for its emails and phones. Failures
        after the candidate was marked are logged, not raised.

        Raises:
            NotFoundError: If the candidate or contact doesn't exist
        """
        self.get_candidate(external_id)
        if self.database.get_contact(contact_id) is None:
            raise NotFoundError(f"Contact {contact_id} not found")

        updated = self.database.update_external_contact_match(
            external_id, contact_id, MatchStatus.MATCHED
        )
        if updated is None:
            raise NotFoundError(f"Import candidate {external_id} not found")

        try:
            self.merger.enrich_contact_from_external(contact_id, updated)
        except CRMSyncError as e:
            logger.warning(f"Enrichment failed while linking candidate {external_id}: {e}")

        linked = self._link_identities(updated, contact_id)
        logger.info(
            f"Linked candidate {external_id} to contact {contact_id} "
            f"({linked} identities linked)"
        )
        return updated

    def _link_identities(self, external: ExternalContact, contact_id: int) -> int:
        identifiers = [(e.value, IdentifierType.EMAIL) for e in external.emails]
        identifiers.extend((p.value, IdentifierType.PHONE) for p in external.phones)

        linked = 0
        for value, identifier_type in identifiers:
            try:
                identities = self.resolver.find_identities(value, identifier_type)
                for identity in identities:
                    if identity.contact_id == contact_id:
                        continue
                    self.resolver.link_identity(identity.id, contact_id)
                    linked += 1
            except CRMSyncError as e:
                logger.warning(f"Failed to link identities for {value!r}: {e}")
        return linked

    def ignore_candidate(self, external_id: int) -> ExternalContact:
        """Hide a candidate from the review queue."""
        self.get_candidate(external_id)
        updated = self.database.update_external_contact_match(
            external_id, None, MatchStatus.IGNORED
        )
        if updated is None:
            raise NotFoundError(f"Import candidate {external_id} not found")
        logger.info(f"Ignored import candidate {external_id}")
        return updated


__all__ = [
    "ImportService",
    "ImportCandidate",
    "methods_for_import",
    "MAX_CANDIDATES_FOR_SORTING",
]
