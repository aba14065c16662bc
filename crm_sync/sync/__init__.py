"""
crm_sync.sync - Sync core.

Provider registry, identity resolution, import matching, enrichment and the
sync orchestrator. Import the submodules directly, e.g.
``from crm_sync.sync.engine import SyncOrchestrator``.
"""
