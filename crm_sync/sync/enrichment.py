"""
Additive enrichment of contacts from external records.

Enrichment only ever fills gaps: a contact field is written only while it is
empty, and a method is added only if its normalized value is not already
present. Every write is recorded in the enrichment audit table. Field and
method writes are committed one by one, and a failing write is logged
without stopping the rest.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from crm_sync.errors import ConflictError, CRMSyncError, NotFoundError
from crm_sync.storage.db import CRMDatabase
from crm_sync.storage.models import ContactEnrichment, utcnow
from crm_sync.sync.contact import Contact, ExternalContact
from crm_sync.utils.normalization import (
    ContactMethodType,
    IdentifierType,
    identifier_type_for_method,
    normalize_identifier,
    normalize_method_value,
)

logger = logging.getLogger(__name__)

# Conflict resolutions for enrich_with_selections
USE_EXTERNAL = "use_external"
USE_CRM = "use_crm"


@dataclass(frozen=True)
class MethodSelection:
    """An external email/phone the user chose to copy onto a contact."""

    original_value: str
    type: str


def email_method_type(source_type: Optional[str]) -> ContactMethodType:
    """Pick the method type for an external email from its source-side type."""
    if source_type and "work" in source_type.lower():
        return ContactMethodType.EMAIL_WORK
    return ContactMethodType.EMAIL_PERSONAL


class EnrichmentMerger:
    """
    Fills empty contact fields and missing methods from external records.

    Usage:
        merger = EnrichmentMerger(db)
        written = merger.enrich_contact_from_external(contact_id, external)
    """

    def __init__(self, database: CRMDatabase, clock: Callable[[], datetime] = utcnow):
        self.database = database
        self.clock = clock

    def _load_contact(self, contact_id: int) -> Contact:
        contact = self.database.get_contact(contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        return contact

    def _record(
        self,
        contact_id: int,
        external: ExternalContact,
        field: str,
        original_value: str,
    ) -> None:
        try:
            self.database.record_enrichment(
                contact_id=contact_id,
                source=external.source,
                field=field,
                account_id=external.account_id,
                external_contact_id=external.id,
                original_value=original_value,
                enriched_at=self.clock(),
            )
        except CRMSyncError as e:
            logger.warning(f"Failed to record enrichment of {field} for contact {contact_id}: {e}")

    def _enrich_fields(self, contact: Contact, external: ExternalContact) -> list[str]:
        candidates: list[tuple[str, object, object, str]] = []
        if external.photo_url:
            candidates.append(
                ("profile_photo", contact.profile_photo, external.photo_url, external.photo_url)
            )
        if external.birthday is not None:
            candidates.append(
                ("birthday", contact.birthday, external.birthday, external.birthday.isoformat())
            )
        if external.addresses and external.addresses[0].formatted:
            location = external.addresses[0].formatted
            candidates.append(("location", contact.location, location, location))

        written = []
        for field, current, value, audit_value in candidates:
            if current not in (None, ""):
                continue
            try:
                filled = self.database.fill_contact_field(contact.id, field, value)
            except CRMSyncError as e:
                logger.warning(f"Failed to enrich {field} for contact {contact.id}: {e}")
                continue
            if not filled:
                # Set by someone else since the contact was loaded
                continue
            self._record(contact.id, external, field, audit_value)
            written.append(field)
        return written

    def _enrich_methods(self, contact: Contact, external: ExternalContact) -> list[str]:
        existing = {
            m.normalized_value or normalize_method_value(m.value, m.type)
            for m in contact.methods
        }

        additions: list[tuple[ContactMethodType, str, str]] = []
        for email in external.emails:
            normalized = normalize_identifier(email.value, IdentifierType.EMAIL)
            additions.append((email_method_type(email.type), email.value, normalized))
        for phone in external.phones:
            normalized = normalize_identifier(phone.value, IdentifierType.PHONE)
            additions.append((ContactMethodType.PHONE, phone.value, normalized))

        written = []
        for method_type, value, normalized in additions:
            if not normalized or normalized in existing:
                continue
            try:
                self.database.add_contact_method(contact.id, method_type, value, is_primary=False)
            except CRMSyncError as e:
                logger.warning(
                    f"Failed to add {method_type.value} {value!r} to contact {contact.id}: {e}"
                )
                continue
            field = f"method:{method_type.value}:{normalized}"
            self._record(contact.id, external, field, value)
            existing.add(normalized)
            written.append(field)
        return written

    def enrich_contact_from_external(
        self, contact_id: int, external: ExternalContact
    ) -> list[str]:
        """
        Fill a contact's empty fields and missing methods from an external record.

        Fields considered: profile_photo (photo URL), birthday and location
        (first formatted address). New emails are typed email_work when the
        source marks them as work, email_personal otherwise; new phones are
        typed phone. Added methods are never primary.

        Args:
            contact_id: Contact to enrich
            external: Source record to copy from

        Returns:
            Audit field names written (e.g. ['birthday', 'method:phone:+15551234567'])

        Raises:
            NotFoundError: If the contact doesn't exist
            PersistenceError: If the contact can't be loaded
        """
        contact = self._load_contact(contact_id)

        written = self._enrich_fields(contact, external)
        written.extend(self._enrich_methods(contact, external))

        if written:
            logger.info(
                f"Enriched contact {contact_id} from {external.source}: {', '.join(written)}"
            )
        return written

    def enrich_with_selections(
        self,
        contact_id: int,
        external: ExternalContact,
        selections: list[MethodSelection],
        conflict_resolutions: Optional[dict[str, str]] = None,
    ) -> list[str]:
        """
        Enrich a contact with user-selected methods.

        Scalar fields are filled as in enrich_contact_from_external. For
        methods, only the selected values are considered. When the selected
        type is already held by another value, ``conflict_resolutions``
        (keyed by the selected value) decides: 'use_external' replaces the
        stored value, 'use_crm' or no entry keeps it.

        Returns:
            Audit field names written

        Raises:
            NotFoundError: If the contact doesn't exist
            ConflictError: If any selection failed; raised after all
                           selections were processed
        """
        contact = self._load_contact(contact_id)
        resolutions = conflict_resolutions or {}

        written = self._enrich_fields(contact, external)

        existing_by_type = {m.type: m for m in contact.methods}
        existing_normalized = {
            m.normalized_value or normalize_method_value(m.value, m.type)
            for m in contact.methods
        }
        external_values = {e.value for e in external.emails} | {p.value for p in external.phones}

        errors: list[str] = []
        for selection in selections:
            if selection.original_value not in external_values:
                errors.append(f"value {selection.original_value!r} not found in external contact")
                continue

            identifier_type = identifier_type_for_method(selection.type) or IdentifierType.EMAIL
            normalized = normalize_identifier(selection.original_value, identifier_type)
            if not normalized or normalized in existing_normalized:
                continue

            occupying = existing_by_type.get(selection.type)
            if occupying is not None:
                if resolutions.get(selection.original_value) == USE_EXTERNAL:
                    try:
                        self.database.update_contact_method_value(
                            occupying.id, selection.original_value
                        )
                    except CRMSyncError as e:
                        errors.append(f"failed to update method {selection.original_value}: {e}")
                        continue
                    field = f"method:{selection.type}:replaced"
                    self._record(contact.id, external, field, selection.original_value)
                    existing_normalized.add(normalized)
                    written.append(field)
                continue

            try:
                method = self.database.add_contact_method(
                    contact.id, selection.type, selection.original_value, is_primary=False
                )
            except CRMSyncError as e:
                errors.append(f"failed to add method {selection.original_value}: {e}")
                continue
            field = f"method:{selection.type}:{normalized}"
            self._record(contact.id, external, field, selection.original_value)
            existing_normalized.add(normalized)
            existing_by_type[selection.type] = method
            written.append(field)

        if errors:
            raise ConflictError("method enrichment errors: " + "; ".join(errors))
        return written

    def has_enrichment(self, contact_id: int, field: str) -> bool:
        return self.database.has_enrichment(contact_id, field)

    def list_enrichments(self, contact_id: int) -> list[ContactEnrichment]:
        return self.database.list_enrichments(contact_id)


__all__ = [
    "EnrichmentMerger",
    "MethodSelection",
    "email_method_type",
    "USE_EXTERNAL",
    "USE_CRM",
]
