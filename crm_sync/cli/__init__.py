"""CLI package for crm_sync."""

from crm_sync.cli.main import CLIServices, cli

__all__ = ["cli", "CLIServices"]
