"""
crm_sync.daemon - Daemon and scheduler module

Background service that runs due syncs with signal-driven shutdown.
"""

from crm_sync.daemon.scheduler import (
    DEFAULT_INTERVAL,
    DEFAULT_PID_FILE_NAME,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    PIDFileError,
    PIDFileManager,
    parse_interval,
)

__all__ = [
    "parse_interval",
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "DEFAULT_INTERVAL",
    "DEFAULT_PID_FILE_NAME",
]
