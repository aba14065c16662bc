"""CLI output formatting functions.

Renders sync states, sync logs, identities and import candidates as short
human-readable lines.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

import click

from crm_sync.storage.models import SyncLogStatus, SyncStatus

if TYPE_CHECKING:
    from crm_sync.storage.models import ExternalIdentity, SyncLog, SyncState
    from crm_sync.sync.imports import ImportCandidate
    from crm_sync.sync.registry import SourceConfig

STATUS_COLORS = {
    SyncStatus.IDLE: "green",
    SyncStatus.SYNCING: "cyan",
    SyncStatus.ERROR: "red",
    SyncStatus.DISABLED: "yellow",
    SyncLogStatus.RUNNING: "cyan",
    SyncLogStatus.SUCCESS: "green",
    SyncLogStatus.PARTIAL: "yellow",
    SyncLogStatus.ERROR: "red",
}


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def styled_status(status: SyncStatus | SyncLogStatus) -> str:
    return click.style(status.value, fg=STATUS_COLORS.get(status))


def format_provider(config: "SourceConfig") -> str:
    flags = []
    if config.supports_multi_account:
        flags.append("multi-account")
    if config.supports_discovery:
        flags.append("discovery")
    interval = int(config.default_interval.total_seconds())
    suffix = f" [{', '.join(flags)}]" if flags else ""
    return (
        f"{config.name:<12} {config.display_name:<18} "
        f"{config.strategy.value:<15} every {interval}s{suffix}"
    )


def format_sync_state(state: "SyncState") -> str:
    account = state.account_id or "-"
    enabled = "" if state.enabled else click.style(" (disabled)", fg="yellow")
    line = (
        f"[{state.id}] {state.source:<12} {account:<28} {styled_status(state.status)}{enabled}\n"
        f"     last sync: {format_timestamp(state.last_sync_at)}  "
        f"last success: {format_timestamp(state.last_successful_sync_at)}  "
        f"next: {format_timestamp(state.next_sync_at)}"
    )
    if state.error_message:
        line += click.style(
            f"\n     error ({state.error_count}x): {state.error_message}", fg="red"
        )
    return line


def format_statistics(stats: dict[str, int]) -> str:
    return (
        f"Contacts: {stats.get('contacts', 0)}  "
        f"Identities: {stats.get('identities', 0)} "
        f"({stats.get('unmatched_identities', 0)} unmatched)  "
        f"Import candidates: {stats.get('import_candidates', 0)}  "
        f"Enrichments: {stats.get('enrichments', 0)}"
    )


def format_sync_log(log: "SyncLog") -> str:
    duration = log.duration_seconds
    took = f"{duration:.1f}s" if duration is not None else "-"
    line = (
        f"[{log.id}] {log.source:<12} {format_timestamp(log.started_at)} "
        f"{styled_status(log.status):<8} took {took}  "
        f"processed={log.items_processed} matched={log.items_matched} "
        f"created={log.items_created}"
    )
    if log.error_message:
        line += click.style(f"\n     {log.error_message}", fg="red")
    return line


def format_identity(identity: "ExternalIdentity") -> str:
    name = f" ({identity.display_name})" if identity.display_name else ""
    return (
        f"[{identity.id}] {identity.identifier}{name}  "
        f"{identity.identifier_type} via {identity.source}  "
        f"messages={identity.message_count} "
        f"last seen {format_timestamp(identity.last_seen_at)}"
    )


def format_candidate(candidate: "ImportCandidate") -> str:
    external = candidate.external
    name = candidate.name or click.style("(no name)", dim=True)
    details = [e.value for e in external.emails[:2]] + [p.value for p in external.phones[:1]]
    line = f"[{external.id}] {name}  {external.source}"
    if details:
        line += f"  {', '.join(details)}"
    if candidate.suggested_match:
        match = candidate.suggested_match
        line += click.style(
            f"\n     suggested: {match.contact_name} (contact {match.contact_id}, "
            f"{match.confidence:.0%})",
            fg="cyan",
        )
    return line
