"""
Error taxonomy shared across the sync core.

Every error raised deliberately by crm_sync derives from CRMSyncError and
carries a stable ``code`` that callers (CLI, API layers) can branch on.
"""


class CRMSyncError(Exception):
    """Base exception for crm_sync errors."""

    code = "INTERNAL"


class ValidationError(CRMSyncError):
    """Raised when input is rejected before any state change."""

    code = "VALIDATION"


class NotFoundError(CRMSyncError):
    """Raised for an unknown source, contact, identity or candidate."""

    code = "NOT_FOUND"


class ConflictError(CRMSyncError):
    """Raised when an operation collides with current state."""

    code = "CONFLICT"


class TransientError(CRMSyncError):
    """Raised for provider network/API failures that are worth retrying."""

    code = "TRANSIENT"


class PersistenceError(CRMSyncError):
    """Raised when a database read or write fails."""

    code = "PERSISTENCE"


class SyncCancelledError(CRMSyncError):
    """Raised when the enclosing sync context was cancelled."""

    code = "CANCELLED"


__all__ = [
    "CRMSyncError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "TransientError",
    "PersistenceError",
    "SyncCancelledError",
]
