"""
crm_sync.storage - SQLite persistence for contacts, identities and sync state.
"""
