"""
Foreground daemon that keeps sources synced.

Every ``interval`` seconds the daemon asks the orchestrator to run whatever
syncs are due; each source's own schedule lives in its sync state, so the
daemon interval only controls how often that question is asked. A PID file
keeps a second daemon from starting, and SIGTERM/SIGINT cancel the shared
SyncContext so a provider in the middle of a page stops at the next check.
"""

from __future__ import annotations

import logging
import os
import re
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from crm_sync.errors import CRMSyncError
from crm_sync.storage.models import utcnow
from crm_sync.sync.registry import SyncContext

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60
DEFAULT_PID_FILE_NAME = "daemon.pid"

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)

_DURATION = re.compile(r"^(?P<count>\d+)\s*(?P<unit>[smhd])$")
_SECONDS_PER = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_interval(interval: str | int) -> int:
    """Turn ``"90"``, ``90``, ``"30s"``, ``"5m"``, ``"2h"`` or ``"1d"`` into seconds.

    Raises:
        ValueError: For floats, booleans, unknown units or anything unparseable.
    """
    if isinstance(interval, bool) or not isinstance(interval, (str, int)):
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )
    if isinstance(interval, int):
        return interval

    text = interval.strip().lower()
    if text.isdigit():
        return int(text)

    match = _DURATION.match(text)
    if match is None:
        raise ValueError(
            f"Invalid interval format: '{interval}'. "
            "Use a number of seconds or a value like '30s', '5m', '1h', '1d'."
        )
    return int(match["count"]) * _SECONDS_PER[match["unit"]]


# =============================================================================
# Errors
# =============================================================================


class DaemonError(CRMSyncError):
    code = "DAEMON"


class PIDFileError(DaemonError):
    """The PID file could not be written, read or removed."""


class DaemonAlreadyRunningError(DaemonError):
    """Another live process owns the PID file."""


# =============================================================================
# PID file
# =============================================================================


class PIDFileManager:
    """Owns the daemon's PID file and answers whether its process is alive."""

    def __init__(self, pid_file: Path):
        self.pid_file = Path(pid_file)

    @staticmethod
    def is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, but owned by someone else
            return True
        return True

    def read(self) -> int | None:
        """
        Return the recorded PID, or None when there is no PID file.

        Raises:
            PIDFileError: If the file is unreadable or holds something other
                than an integer.
        """
        try:
            content = self.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e

        if not content.isdigit():
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content!r}")
        return int(content)

    def create(self) -> None:
        """
        Claim the PID file for this process, replacing a stale one.

        Raises:
            DaemonAlreadyRunningError: If the recorded process is still alive.
            PIDFileError: If the file cannot be written.
        """
        recorded = self.read()
        if recorded is not None:
            if self.is_process_running(recorded):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {recorded}"
                )
            logger.warning(f"Replacing stale PID file left by process {recorded}")

        pid = os.getpid()
        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(f"{pid}\n")
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e
        logger.debug(f"Wrote PID {pid} to {self.pid_file}")

    def remove(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e
        logger.debug(f"Removed PID file {self.pid_file}")


# =============================================================================
# Scheduler
# =============================================================================


@dataclass
class DaemonStats:
    started_at: datetime = field(default_factory=utcnow)
    cycle_count: int = 0
    success_count: int = 0
    error_count: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None

    def record(self, success: bool, error: str | None = None) -> None:
        if success:
            self.success_count += 1
            self.last_error = None
        else:
            self.error_count += 1
            if error is not None:
                self.last_error = error


class DaemonScheduler:
    """
    Calls a sync callback on a fixed cadence until stopped.

    The callback gets the scheduler's SyncContext and returns True when the
    cycle succeeded. ``stop()`` (or a shutdown signal) cancels that context,
    which both ends the wait between cycles and tells running providers to
    give up.

    Usage:
        scheduler = DaemonScheduler(pid_file, interval=60)
        scheduler.set_sync_callback(lambda ctx: orchestrator.run_due_syncs(ctx) is None)
        scheduler.run()
    """

    def __init__(
        self,
        pid_file: Path,
        interval: int = DEFAULT_INTERVAL,
        run_immediately: bool = True,
    ):
        self.interval = interval
        self.run_immediately = run_immediately
        self.stats = DaemonStats()
        self._pid = PIDFileManager(pid_file)
        self._callback: Callable[[SyncContext], bool] | None = None
        self._ctx = SyncContext()
        self._running = False
        self._previous_handlers: dict[int, object] = {}

    @property
    def pid_file(self) -> Path:
        return self._pid.pid_file

    @property
    def context(self) -> SyncContext:
        return self._ctx

    def is_running(self) -> bool:
        return self._running

    def set_sync_callback(self, callback: Callable[[SyncContext], bool]) -> None:
        self._callback = callback

    def stop(self) -> None:
        """Cancel the context; the loop exits after the current cycle."""
        self._ctx.cancel()

    # -------------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------------

    def _signal_handler(self, signum: int, frame: object) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        self.stop()

    def _install_signal_handlers(self) -> None:
        for signum in _SHUTDOWN_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)

    def _restore_signal_handlers(self) -> None:
        while self._previous_handlers:
            signum, handler = self._previous_handlers.popitem()
            signal.signal(signum, handler)  # type: ignore[arg-type]

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def _run_cycle(self) -> bool:
        if self._callback is None:
            logger.warning("No sync callback set, nothing to run")
            return False

        self.stats.cycle_count += 1
        self.stats.last_cycle_at = utcnow()
        logger.debug(f"Sync cycle #{self.stats.cycle_count}")

        try:
            success = bool(self._callback(self._ctx))
        except Exception as e:
            logger.error(f"Sync cycle #{self.stats.cycle_count} raised: {e}")
            self.stats.record(False, str(e))
            return False

        if not success:
            logger.warning(f"Sync cycle #{self.stats.cycle_count} finished with errors")
        self.stats.record(success)
        return success

    def run(self) -> None:
        """
        Block, running cycles until stopped.

        Raises:
            DaemonAlreadyRunningError: If another daemon holds the PID file.
            PIDFileError: If the PID file cannot be written.
        """
        self._pid.create()
        self._install_signal_handlers()
        self._running = True
        self.stats = DaemonStats()
        logger.info(
            f"Daemon started (PID {os.getpid()}, checking every {self.interval}s, "
            f"PID file {self.pid_file})"
        )

        try:
            run_now = self.run_immediately
            while not self._ctx.cancelled:
                if run_now:
                    self._run_cycle()
                    if self._ctx.cancelled:
                        break
                run_now = True
                if self._ctx.wait(self.interval):
                    break
        finally:
            self._running = False
            self._restore_signal_handlers()
            self._pid.remove()
            logger.info(
                f"Daemon stopped after {self.stats.cycle_count} cycles "
                f"({self.stats.error_count} failed)"
            )

    # -------------------------------------------------------------------------
    # Control from another process
    # -------------------------------------------------------------------------

    @staticmethod
    def get_running_pid(pid_file: Path) -> int | None:
        """PID recorded in ``pid_file`` if that process is alive, else None."""
        pid = PIDFileManager(pid_file).read()
        if pid is None or not PIDFileManager.is_process_running(pid):
            return None
        return pid

    @classmethod
    def stop_running_daemon(cls, pid_file: Path) -> bool:
        """Send SIGTERM to the daemon. Returns False if there was none to signal."""
        pid = cls.get_running_pid(pid_file)
        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} exited before it could be signalled")
            return False
        except PermissionError:
            logger.error(f"Not permitted to signal daemon process {pid}")
            return False

        logger.info(f"Sent SIGTERM to daemon (PID {pid})")
        return True


__all__ = [
    "DEFAULT_INTERVAL",
    "DEFAULT_PID_FILE_NAME",
    "parse_interval",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "DaemonStats",
    "DaemonScheduler",
]
