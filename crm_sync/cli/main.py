"""
Command-line interface for crm_sync.

Provides CLI commands for running syncs, reviewing unmatched identities and
import candidates, and managing the background daemon.

Usage:
    # Show help
    crm-sync --help

    # List providers and sync states
    crm-sync providers
    crm-sync sync status

    # Run syncs
    crm-sync sync trigger gcontacts --account me@example.com
    crm-sync sync due

    # Review import candidates
    crm-sync imports list
    crm-sync imports link 12 --contact 4

    # Run the daemon in the foreground
    crm-sync daemon start
"""

import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import click

from crm_sync import __version__
from crm_sync.api.credentials import TokenCredentialsProvider
from crm_sync.cli.formatters import (
    format_candidate,
    format_identity,
    format_provider,
    format_statistics,
    format_sync_log,
    format_sync_state,
    styled_status,
)
from crm_sync.config.loader import ConfigError, ConfigLoader, Settings
from crm_sync.daemon.scheduler import (
    DEFAULT_PID_FILE_NAME,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    PIDFileManager,
    parse_interval,
)
from crm_sync.errors import CRMSyncError
from crm_sync.providers import build_registry
from crm_sync.storage.db import CRMDatabase
from crm_sync.sync.engine import SyncOrchestrator
from crm_sync.sync.identity import IdentityResolver
from crm_sync.sync.imports import ImportService
from crm_sync.sync.matcher import ImportMatcher
from crm_sync.sync.registry import ProviderRegistry, SyncContext
from crm_sync.utils.logging import get_logger, setup_logging, setup_matching_logger
from crm_sync.utils.paths import CONFIG_DIR_ENV_VAR, resolve_config_dir, resolve_database_path


class CLIServices:
    """
    Lazily built services shared by the CLI commands.

    Nothing touches the database or token files until a command asks for it,
    so ``--help`` and daemon control commands work without a store.
    """

    def __init__(self, config_dir: Path, settings: Settings):
        self.config_dir = config_dir
        self.settings = settings
        self._database: Optional[CRMDatabase] = None
        self._registry: Optional[ProviderRegistry] = None
        self._orchestrator: Optional[SyncOrchestrator] = None
        self._resolver: Optional[IdentityResolver] = None
        self._imports: Optional[ImportService] = None

    @property
    def database(self) -> CRMDatabase:
        if self._database is None:
            path = resolve_database_path(self.config_dir, self.settings.database_path)
            if path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._database = CRMDatabase(path)
            self._database.initialize()
        return self._database

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = build_registry(
                self.database,
                TokenCredentialsProvider(self.config_dir),
                enabled=self.settings.enabled_providers,
                api_options=self.settings.api_options(),
                calendar_config=self.settings.calendar_matching,
                page_size=self.settings.api_page_size,
            )
        return self._registry

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = SyncOrchestrator(
                self.database,
                self.registry,
                contacts_limit=self.settings.contacts_limit,
            )
        return self._orchestrator

    @property
    def resolver(self) -> IdentityResolver:
        if self._resolver is None:
            self._resolver = IdentityResolver(self.database)
        return self._resolver

    @property
    def imports(self) -> ImportService:
        if self._imports is None:
            self._imports = ImportService(
                self.database,
                matcher=ImportMatcher(self.database, self.settings.import_matching),
                resolver=self.resolver,
            )
        return self._imports

    @property
    def pid_file(self) -> Path:
        if self.settings.pid_file:
            return Path(self.settings.pid_file).expanduser()
        return self.config_dir / DEFAULT_PID_FILE_NAME

    def close(self) -> None:
        if self._database is not None:
            self._database.close()
            self._database = None


def _fail(error: Any) -> None:
    click.echo(click.style(f"Error: {error}", fg="red"), err=True)
    sys.exit(1)


def _services(ctx: click.Context) -> CLIServices:
    return ctx.obj["services"]


@click.group()
@click.version_option(version=__version__, prog_name="crm-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with debug logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(file_okay=False),
    envvar=CONFIG_DIR_ENV_VAR,
    help="Configuration directory (default: ~/.crm-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(dir_okay=False),
    envvar="CRM_SYNC_CONFIG_FILE",
    help="Configuration file (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    Contact sync and identity resolution for a personal CRM.

    Pulls contacts, calendar attendees and mail activity from Google,
    links them to your contacts and queues the rest for review.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = resolve_config_dir(config_dir)
    ctx.obj["config_dir"] = resolved_config_dir

    settings = Settings()
    try:
        settings = ConfigLoader(resolved_config_dir, config_file).load_settings()
    except ConfigError as e:
        # Allow the CLI to work with a broken config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )

    effective_verbose = verbose or settings.verbose or settings.debug
    ctx.obj["verbose"] = effective_verbose
    ctx.obj["settings"] = settings

    log_dir = Path(settings.log_dir).expanduser() if settings.log_dir else None
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    if settings.debug:
        setup_matching_logger()

    if "services" not in ctx.obj:
        services = CLIServices(resolved_config_dir, settings)
        ctx.obj["services"] = services
        ctx.call_on_close(services.close)


# =============================================================================
# Providers Command
# =============================================================================


@cli.command("providers")
@click.pass_context
def providers_command(ctx: click.Context) -> None:
    """List the registered sync providers."""
    try:
        configs = _services(ctx).orchestrator.available_providers()
    except (CRMSyncError, ValueError) as e:
        _fail(e)
        return

    if not configs:
        click.echo("No providers enabled.")
        return
    for config in configs:
        click.echo(format_provider(config))


# =============================================================================
# Sync Commands
# =============================================================================


@cli.group("sync")
def sync_group() -> None:
    """
    Run and inspect source syncs.

    Examples:

        crm-sync sync trigger gcontacts --account me@example.com

        crm-sync sync due

        crm-sync sync logs 3
    """


@sync_group.command("trigger")
@click.argument("source")
@click.option("--account", "-a", default=None, help="Account to sync.")
@click.pass_context
def sync_trigger_command(ctx: click.Context, source: str, account: Optional[str]) -> None:
    """Run a sync for SOURCE now."""
    logger = get_logger(__name__)
    try:
        outcome = _services(ctx).orchestrator.trigger_sync(source, account)
    except (CRMSyncError, ValueError) as e:
        _fail(e)
        return

    if outcome.log is not None:
        click.echo(format_sync_log(outcome.log))
    if outcome.error is not None:
        logger.debug(f"Sync of {source} failed: {outcome.error}")
        _fail(outcome.error)
        return

    click.echo(click.style("Sync completed.", fg="green"))
    if outcome.result is not None:
        for message in outcome.result.errors:
            click.echo(click.style(f"  warning: {message}", fg="yellow"))


@sync_group.command("due")
@click.pass_context
def sync_due_command(ctx: click.Context) -> None:
    """
    Run every sync whose next run time has passed.

    Accounts listed in the config get a sync state for each enabled
    provider first, so a fresh install has something to run.
    """
    services = _services(ctx)
    try:
        services.orchestrator.ensure_sync_states(services.settings.accounts)
        error = services.orchestrator.run_due_syncs()
    except (CRMSyncError, ValueError) as e:
        _fail(e)
        return

    if error is not None:
        _fail(error)
        return
    click.echo(click.style("Due syncs completed.", fg="green"))


@sync_group.command("status")
@click.pass_context
def sync_status_command(ctx: click.Context) -> None:
    """Show all sync states and store totals."""
    try:
        states = _services(ctx).orchestrator.get_sync_status()
    except CRMSyncError as e:
        _fail(e)
        return

    if not states:
        click.echo("No syncs have run yet.")
    for state in states:
        click.echo(format_sync_state(state))

    try:
        stats = _services(ctx).orchestrator.get_statistics()
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo("")
    click.echo(format_statistics(stats))


@sync_group.command("logs")
@click.argument("state_id", type=int, required=False)
@click.option("--limit", "-n", default=20, show_default=True, help="Number of logs.")
@click.option("--offset", default=0, help="Number of logs to skip.")
@click.pass_context
def sync_logs_command(
    ctx: click.Context, state_id: Optional[int], limit: int, offset: int
) -> None:
    """Show sync logs for STATE_ID, or the most recent logs overall."""
    orchestrator = _services(ctx).orchestrator
    try:
        if state_id is None:
            logs = orchestrator.get_recent_sync_logs(limit)
            total = len(logs)
        else:
            orchestrator.get_sync_state(state_id)
            logs = orchestrator.get_sync_logs(state_id, limit, offset)
            total = orchestrator.count_sync_logs(state_id)
    except CRMSyncError as e:
        _fail(e)
        return

    if not logs:
        click.echo("No sync logs found.")
        return
    for log in logs:
        click.echo(format_sync_log(log))
    if state_id is not None:
        click.echo(f"\nShowing {len(logs)} of {total} log(s)")


def _set_enabled(ctx: click.Context, state_id: int, enabled: bool) -> None:
    try:
        state = _services(ctx).orchestrator.enable_sync(state_id, enabled)
    except CRMSyncError as e:
        _fail(e)
        return
    word = "enabled" if enabled else "disabled"
    click.echo(
        click.style(f"Sync {state.id} ({state.source}) {word}.", fg="green")
        + f" Status: {styled_status(state.status)}"
    )


@sync_group.command("enable")
@click.argument("state_id", type=int)
@click.pass_context
def sync_enable_command(ctx: click.Context, state_id: int) -> None:
    """Enable scheduled syncs for STATE_ID."""
    _set_enabled(ctx, state_id, True)


@sync_group.command("disable")
@click.argument("state_id", type=int)
@click.pass_context
def sync_disable_command(ctx: click.Context, state_id: int) -> None:
    """Disable scheduled syncs for STATE_ID."""
    _set_enabled(ctx, state_id, False)


@sync_group.command("reset")
@click.argument("state_id", type=int)
@click.option("--full", is_flag=True, help="Also drop the cursor so the next run is a full sync.")
@click.pass_context
def sync_reset_command(ctx: click.Context, state_id: int, full: bool) -> None:
    """
    Reset STATE_ID to idle and make it due now.

    Use this when a sync was interrupted and its state is stuck in 'syncing'.
    """
    try:
        state = _services(ctx).orchestrator.reset_sync(state_id, full=full)
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo(
        click.style(f"Sync {state.id} ({state.source}) reset.", fg="green")
        + (" Next run is a full sync." if full else "")
    )


@sync_group.command("prune-logs")
@click.option(
    "--older-than",
    default="30d",
    show_default=True,
    help="Delete logs older than this (e.g., '12h', '30d').",
)
@click.pass_context
def sync_prune_logs_command(ctx: click.Context, older_than: str) -> None:
    """Delete old sync logs."""
    try:
        seconds = parse_interval(older_than)
    except ValueError as e:
        _fail(e)
        return

    try:
        deleted = _services(ctx).orchestrator.delete_old_sync_logs(timedelta(seconds=seconds))
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo(f"Deleted {deleted} sync log(s).")


@sync_group.command("check")
@click.argument("source")
@click.option("--account", "-a", default=None, help="Account to check.")
@click.pass_context
def sync_check_command(ctx: click.Context, source: str, account: Optional[str]) -> None:
    """Check that SOURCE can authenticate for an account."""
    try:
        _services(ctx).orchestrator.validate_credentials(source, account)
    except (CRMSyncError, ValueError) as e:
        _fail(e)
        return
    click.echo(click.style(f"Credentials for {source} are valid.", fg="green"))


# =============================================================================
# Identity Commands
# =============================================================================


@cli.group("identities")
def identities_group() -> None:
    """Review and link external identities."""


@identities_group.command("unmatched")
@click.option("--limit", "-n", default=50, show_default=True, help="Number to show.")
@click.option("--offset", default=0, help="Number to skip.")
@click.pass_context
def identities_unmatched_command(ctx: click.Context, limit: int, offset: int) -> None:
    """List identities not linked to any contact, most active first."""
    resolver = _services(ctx).resolver
    try:
        identities = resolver.list_unmatched(limit, offset)
        total = resolver.count_unmatched()
    except CRMSyncError as e:
        _fail(e)
        return

    if not identities:
        click.echo("No unmatched identities.")
        return
    for identity in identities:
        click.echo(format_identity(identity))
    click.echo(f"\nShowing {len(identities)} of {total} unmatched identities")


@identities_group.command("link")
@click.argument("identity_ids", type=int, nargs=-1, required=True)
@click.option("--contact", "contact_id", type=int, required=True, help="Contact ID.")
@click.pass_context
def identities_link_command(
    ctx: click.Context, identity_ids: tuple[int, ...], contact_id: int
) -> None:
    """Link one or more identities to a contact."""
    resolver = _services(ctx).resolver
    try:
        if len(identity_ids) == 1:
            identity = resolver.link_identity(identity_ids[0], contact_id)
            click.echo(
                click.style(
                    f"Linked {identity.identifier} to contact {contact_id}.", fg="green"
                )
            )
            return
        linked = resolver.bulk_link_identities(identity_ids, contact_id)
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo(click.style(f"Linked {linked} identities to contact {contact_id}.", fg="green"))


@identities_group.command("unlink")
@click.argument("identity_id", type=int)
@click.pass_context
def identities_unlink_command(ctx: click.Context, identity_id: int) -> None:
    """Remove an identity's contact link."""
    try:
        identity = _services(ctx).resolver.unlink_identity(identity_id)
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo(click.style(f"Unlinked {identity.identifier}.", fg="green"))


# =============================================================================
# Import Commands
# =============================================================================


@cli.group("imports")
def imports_group() -> None:
    """Review contacts found in external address books."""


@imports_group.command("list")
@click.option("--source", "-s", default=None, help="Only candidates from this source.")
@click.option("--limit", "-n", default=50, show_default=True, help="Number to show.")
@click.option("--offset", default=0, help="Number to skip.")
@click.pass_context
def imports_list_command(
    ctx: click.Context, source: Optional[str], limit: int, offset: int
) -> None:
    """List import candidates with suggested matches."""
    imports = _services(ctx).imports
    try:
        candidates = imports.list_candidates(source, limit, offset)
        total = imports.count_candidates(source)
    except CRMSyncError as e:
        _fail(e)
        return

    if not candidates:
        click.echo("No import candidates.")
        return
    for candidate in candidates:
        click.echo(format_candidate(candidate))
    click.echo(f"\nShowing {len(candidates)} of {total} candidate(s)")


@imports_group.command("import")
@click.argument("candidate_id", type=int)
@click.pass_context
def imports_import_command(ctx: click.Context, candidate_id: int) -> None:
    """Create a new contact from a candidate."""
    try:
        contact = _services(ctx).imports.import_candidate(candidate_id)
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo(click.style(f"Created contact {contact.id} ({contact.full_name}).", fg="green"))


@imports_group.command("link")
@click.argument("candidate_id", type=int)
@click.option("--contact", "contact_id", type=int, required=True, help="Contact ID.")
@click.pass_context
def imports_link_command(ctx: click.Context, candidate_id: int, contact_id: int) -> None:
    """Link a candidate to an existing contact and fill in missing data."""
    try:
        _services(ctx).imports.link_candidate(candidate_id, contact_id)
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo(click.style(f"Linked candidate {candidate_id} to contact {contact_id}.", fg="green"))


@imports_group.command("ignore")
@click.argument("candidate_id", type=int)
@click.pass_context
def imports_ignore_command(ctx: click.Context, candidate_id: int) -> None:
    """Hide a candidate from the review queue."""
    try:
        _services(ctx).imports.ignore_candidate(candidate_id)
    except CRMSyncError as e:
        _fail(e)
        return
    click.echo(f"Ignored candidate {candidate_id}.")


# =============================================================================
# Daemon Commands
# =============================================================================


@cli.group("daemon")
def daemon_group() -> None:
    """
    Manage the background sync daemon.

    The daemon checks for due syncs at a fixed interval; each source keeps
    its own schedule in its sync state.

    Examples:

        crm-sync daemon start --interval 30s

        crm-sync daemon status

        crm-sync daemon stop
    """


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Check interval (e.g., '30s', '5m'). Defaults to config value or '60s'.",
)
@click.option(
    "--no-initial-sync",
    is_flag=True,
    help="Skip the due-sync check on daemon startup.",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: Optional[str], no_initial_sync: bool
) -> None:
    """
    Start the daemon in the foreground (Ctrl+C to stop).

    SIGTERM or SIGINT cancels any in-flight sync and exits cleanly.
    """
    logger = get_logger(__name__)
    services = _services(ctx)

    try:
        interval_seconds = (
            parse_interval(interval) if interval else services.settings.sync_interval
        )
    except ValueError as e:
        _fail(e)
        return

    click.echo(f"Starting daemon with {interval_seconds}s check interval (Ctrl+C to stop)")
    if ctx.obj.get("verbose"):
        click.echo(f"  Config directory: {services.config_dir}")
        click.echo(f"  PID file: {services.pid_file}")

    try:
        orchestrator = services.orchestrator
        orchestrator.ensure_sync_states(services.settings.accounts)
        scheduler = DaemonScheduler(
            services.pid_file,
            interval=interval_seconds,
            run_immediately=not no_initial_sync,
        )

        def sync_callback(sync_ctx: SyncContext) -> bool:
            error = orchestrator.run_due_syncs(sync_ctx)
            if error is not None:
                logger.warning(f"Sync cycle finished with error: {error}")
            return error is None

        scheduler.set_sync_callback(sync_callback)
        scheduler.run()
        click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))

    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'crm-sync daemon stop' to stop the running daemon.")
        sys.exit(1)

    except DaemonError as e:
        logger.error(f"Daemon error: {e}")
        click.echo(click.style(f"Daemon error: {e}", fg="red"), err=True)
        sys.exit(1)

    except (CRMSyncError, ValueError) as e:
        _fail(e)


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """Send SIGTERM to the running daemon."""
    pid_file = _services(ctx).pid_file
    pid = DaemonScheduler.get_running_pid(pid_file)
    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")
    if DaemonScheduler.stop_running_daemon(pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
    else:
        click.echo(click.style("Failed to send stop signal to daemon.", fg="red"), err=True)
        sys.exit(1)


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    pid_file = _services(ctx).pid_file
    pid = DaemonScheduler.get_running_pid(pid_file)

    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        try:
            stale_pid = PIDFileManager(pid_file).read()
        except DaemonError:
            stale_pid = None
        if stale_pid is not None:
            click.echo(f"Stale PID file exists (PID: {stale_pid})")

    if ctx.obj.get("verbose"):
        click.echo(f"PID file: {pid_file}")


__all__ = ["cli", "CLIServices"]
