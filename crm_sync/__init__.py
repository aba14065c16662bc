"""
crm_sync - External contact sync, identity resolution and enrichment.

Links identifiers observed in address books, mail and calendars to locally
owned contact records and fills in missing contact data without ever
overwriting what the user entered.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
