"""
Identity resolution: link identifiers observed by sources to contacts.

Two modes of operation:
- Contact-driven (``known_contact_id`` given): the provider already knows
  which contact the identifier belongs to, so the identity is linked
  directly without searching contact methods.
- Discovery: the identity cache is checked first, then contact methods are
  searched for an exact normalized match. More than one matching contact is
  ambiguous and is left unmatched for manual review.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from crm_sync.errors import NotFoundError, ValidationError
from crm_sync.storage.db import CRMDatabase
from crm_sync.storage.models import ExternalIdentity, MatchType, utcnow
from crm_sync.utils.logging import log_match_decision
from crm_sync.utils.normalization import (
    IdentifierType,
    method_types_for_identifier,
    normalize_identifier,
)

logger = logging.getLogger(__name__)

# Confidence recorded for exact and manual links
FULL_CONFIDENCE = 1.0


@dataclass
class MatchResult:
    """Result of resolving one identifier."""

    identity: ExternalIdentity
    contact_id: Optional[int]
    match_type: MatchType
    cached: bool = False

    @property
    def matched(self) -> bool:
        return self.contact_id is not None


class IdentityResolver:
    """
    Resolves external identifiers to contacts and manages identity links.

    Usage:
        resolver = IdentityResolver(db)
        result = resolver.match_or_create('Jane@Example.com', IdentifierType.EMAIL, 'gcontacts')
        if result.matched:
            ...
    """

    def __init__(
        self, database: CRMDatabase, clock: Callable[[], datetime] = utcnow
    ):
        self.database = database
        self.clock = clock

    def match_or_create(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        source: str,
        source_id: Optional[str] = None,
        display_name: Optional[str] = None,
        known_contact_id: Optional[int] = None,
        message_count: int = 1,
    ) -> MatchResult:
        """
        Find the contact for an identifier, recording the identity either way.

        Args:
            identifier: Identifier as observed by the source
            identifier_type: Type used for normalization and method lookup
            source: Source name (e.g. 'gcontacts')
            source_id: Source-side record ID
            display_name: Name shown by the source
            known_contact_id: Contact the caller already knows this belongs to
            message_count: Amount to add to the identity's message count

        Returns:
            MatchResult describing the identity row and its link

        Raises:
            ValidationError: If the identifier normalizes to an empty string
            PersistenceError: If the identity cannot be stored
        """
        normalized = normalize_identifier(identifier, identifier_type)
        if not normalized:
            raise ValidationError(
                f"Identifier {identifier!r} is empty after normalization"
            )

        if known_contact_id is not None:
            return self._record_known_match(
                normalized,
                identifier,
                identifier_type,
                source,
                source_id,
                display_name,
                known_contact_id,
                message_count,
            )

        existing = self.database.get_identity_by_identifier(
            normalized, identifier_type, source
        )
        if existing is not None and existing.contact_id is not None:
            logger.debug(
                f"Cached identity match: {normalized} ({source}) -> "
                f"contact {existing.contact_id}"
            )
            log_match_decision(
                "identity",
                identifier=normalized,
                source=source,
                result="cached",
                contact_id=existing.contact_id,
            )
            return MatchResult(
                identity=existing,
                contact_id=existing.contact_id,
                match_type=existing.match_type,
                cached=True,
            )

        contact_id, match_type = self._find_contact_by_method(normalized, identifier_type)

        identity = self.database.upsert_identity(
            identifier=normalized,
            identifier_type=identifier_type,
            source=source,
            match_type=match_type,
            raw_identifier=identifier,
            source_id=source_id,
            contact_id=contact_id,
            match_confidence=FULL_CONFIDENCE if match_type == MatchType.EXACT else None,
            display_name=display_name,
            last_seen_at=self.clock(),
            message_count=message_count,
        )

        logger.debug(
            f"Identity match result: {normalized} ({source}) -> {match_type.value}"
        )
        return MatchResult(
            identity=identity,
            contact_id=contact_id,
            match_type=match_type,
            cached=False,
        )

    def _record_known_match(
        self,
        normalized: str,
        raw_identifier: str,
        identifier_type: IdentifierType,
        source: str,
        source_id: Optional[str],
        display_name: Optional[str],
        contact_id: int,
        message_count: int,
    ) -> MatchResult:
        identity = self.database.upsert_identity(
            identifier=normalized,
            identifier_type=identifier_type,
            source=source,
            match_type=MatchType.EXACT,
            raw_identifier=raw_identifier,
            source_id=source_id,
            contact_id=contact_id,
            match_confidence=FULL_CONFIDENCE,
            display_name=display_name,
            last_seen_at=self.clock(),
            message_count=message_count,
        )
        logger.debug(f"Recorded known identity: {normalized} ({source}) -> contact {contact_id}")
        log_match_decision(
            "identity",
            identifier=normalized,
            source=source,
            result="known",
            contact_id=contact_id,
        )
        return MatchResult(
            identity=identity,
            contact_id=contact_id,
            match_type=MatchType.EXACT,
            cached=False,
        )

    def _find_contact_by_method(
        self, normalized: str, identifier_type: IdentifierType
    ) -> tuple[Optional[int], MatchType]:
        method_types = method_types_for_identifier(identifier_type)
        if not method_types:
            return None, MatchType.UNMATCHED

        contact_ids = self.database.find_contact_ids_by_method(normalized, method_types)

        if not contact_ids:
            log_match_decision("identity", identifier=normalized, result="unmatched")
            return None, MatchType.UNMATCHED

        if len(contact_ids) == 1:
            log_match_decision(
                "identity", identifier=normalized, result="exact", contact_id=contact_ids[0]
            )
            return contact_ids[0], MatchType.EXACT

        # Never guess between several contacts
        logger.warning(
            f"Ambiguous identity match for {normalized}: "
            f"{len(contact_ids)} contacts share this value"
        )
        log_match_decision(
            "identity",
            identifier=normalized,
            result="ambiguous",
            contact_ids=contact_ids,
        )
        return None, MatchType.UNMATCHED

    # =========================================================================
    # Manual linking
    # =========================================================================

    def _require_contact(self, contact_id: int) -> None:
        if self.database.get_contact(contact_id) is None:
            raise NotFoundError(f"Contact {contact_id} not found")

    def link_identity(self, identity_id: int, contact_id: int) -> ExternalIdentity:
        """
        Manually link an identity to a contact.

        Raises:
            NotFoundError: If the identity or contact doesn't exist
        """
        self._require_contact(contact_id)
        identity = self.database.link_identity(
            identity_id, contact_id, MatchType.MANUAL, FULL_CONFIDENCE
        )
        if identity is None:
            raise NotFoundError(f"Identity {identity_id} not found")
        logger.info(f"Linked identity {identity.identifier} to contact {contact_id}")
        return identity

    def unlink_identity(self, identity_id: int) -> ExternalIdentity:
        """
        Remove an identity's contact link.

        Raises:
            NotFoundError: If the identity doesn't exist
        """
        identity = self.database.unlink_identity(identity_id)
        if identity is None:
            raise NotFoundError(f"Identity {identity_id} not found")
        logger.info(f"Unlinked identity {identity.identifier}")
        return identity

    def bulk_link_identities(self, identity_ids: Sequence[int], contact_id: int) -> int:
        """
        Manually link several identities to one contact.

        Returns:
            Number of identities linked
        """
        self._require_contact(contact_id)
        linked = self.database.bulk_link_identities(
            list(identity_ids), contact_id, MatchType.MANUAL, FULL_CONFIDENCE
        )
        logger.info(f"Linked {linked} identities to contact {contact_id}")
        return linked

    # =========================================================================
    # Review queue and lookups
    # =========================================================================

    def list_unmatched(self, limit: int = 50, offset: int = 0) -> list[ExternalIdentity]:
        return self.database.list_unmatched_identities(limit, offset)

    def count_unmatched(self) -> int:
        return self.database.count_unmatched_identities()

    def increment_message_count(self, identity_id: int, count: int) -> ExternalIdentity:
        identity = self.database.increment_identity_message_count(
            identity_id, count, self.clock()
        )
        if identity is None:
            raise NotFoundError(f"Identity {identity_id} not found")
        return identity

    def get_identity(self, identity_id: int) -> ExternalIdentity:
        identity = self.database.get_identity(identity_id)
        if identity is None:
            raise NotFoundError(f"Identity {identity_id} not found")
        return identity

    def list_identities_for_contact(self, contact_id: int) -> list[ExternalIdentity]:
        return self.database.list_identities_for_contact(contact_id)

    def find_identities(
        self, identifier: str, identifier_type: IdentifierType
    ) -> list[ExternalIdentity]:
        """Find an identifier's identities across all sources."""
        normalized = normalize_identifier(identifier, identifier_type)
        if not normalized:
            return []
        return self.database.find_identities(normalized, identifier_type)

    def delete_identity(self, identity_id: int) -> None:
        """Delete an identity (explicit user action only)."""
        if not self.database.delete_identity(identity_id):
            raise NotFoundError(f"Identity {identity_id} not found")
        logger.info(f"Deleted identity {identity_id}")


__all__ = ["IdentityResolver", "MatchResult", "FULL_CONFIDENCE"]
