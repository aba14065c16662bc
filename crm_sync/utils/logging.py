"""
Logging setup for crm_sync.

Two loggers matter:

- ``crm_sync``: everything the CLI and daemon report. Console output goes
  to stderr (optionally colored) and a dated file under the config
  directory keeps a DEBUG-level copy.
- ``crm_sync.matching``: one key=value line per identity resolution or
  import suggestion. Until ``setup_matching_logger`` gives it its own file
  it propagates into ``crm_sync`` like any other child.

Levels come from CRM_SYNC_DEBUG / CRM_SYNC_LOG_LEVEL, and CRM_SYNC_LOG_FILE
either names the log file or turns file logging off.
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from crm_sync.utils.paths import resolve_config_dir

ROOT_LOGGER_NAME = "crm_sync"
MATCHING_LOGGER_NAME = f"{ROOT_LOGGER_NAME}.matching"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
MATCHING_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "CRM_SYNC_LOG_LEVEL"
ENV_DEBUG = "CRM_SYNC_DEBUG"
ENV_LOG_FILE = "CRM_SYNC_LOG_FILE"

_TRUTHY = ("1", "true", "yes")
_FILE_LOGGING_OFF = ("none", "disabled", "")

_LEVEL_NAMES = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def default_log_dir() -> Path:
    """Logs live next to the config and tokens."""
    return resolve_config_dir() / "logs"


# =============================================================================
# Formatting
# =============================================================================


class ColoredFormatter(logging.Formatter):
    """Formatter that wraps the level name in an ANSI color on capable terminals."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self.terminal_has_color()

    @staticmethod
    def terminal_has_color() -> bool:
        isatty = getattr(sys.stderr, "isatty", None)
        if isatty is None or not isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        if color is None:
            return super().format(record)

        # Other handlers share the record, so color a copy
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


# =============================================================================
# Environment
# =============================================================================


def get_log_level_from_env() -> int:
    """
    Resolve the log level from the environment.

    A truthy CRM_SYNC_DEBUG forces DEBUG. Otherwise CRM_SYNC_LOG_LEVEL is
    looked up by name, with INFO for anything unrecognised.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in _TRUTHY:
        return logging.DEBUG
    name = os.environ.get(ENV_LOG_LEVEL, "INFO").strip().upper()
    return _LEVEL_NAMES.get(name, logging.INFO)


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Work out where the application log should be written.

    Returns:
        The CRM_SYNC_LOG_FILE path when set, None when it disables file
        logging, otherwise a per-day file in ``log_dir`` (or the default
        log directory).
    """
    override = os.environ.get(ENV_LOG_FILE)
    if override is not None:
        return None if override.lower() in _FILE_LOGGING_OFF else Path(override)

    stamp = datetime.now().strftime("%Y%m%d")
    return (log_dir or default_log_dir()) / f"crm_sync_{stamp}.log"


# =============================================================================
# Handlers
# =============================================================================


def _reset(logger: logging.Logger, level: int) -> logging.Logger:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False
    return logger


def _stderr_handler(level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _open_file_handler(
    path: Path, level: int, formatter: logging.Formatter
) -> logging.FileHandler:
    """Create the parent directory and open ``path`` for appending. Raises OSError."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


# =============================================================================
# Application logger
# =============================================================================


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    (Re)configure the ``crm_sync`` logger.

    Calling it again replaces the previous handlers rather than stacking
    new ones.

    Args:
        level: Console level. Taken from the environment when None.
        verbose: Switch to VERBOSE_FORMAT and force DEBUG.
        log_dir: Directory for the dated log file. Defaults to <config dir>/logs.
        enable_file_logging: Set False to log to the console only.
        use_colors: Color level names when stderr is a capable terminal.

    Returns:
        The configured ``crm_sync`` logger.
    """
    if verbose:
        level = logging.DEBUG
    elif level is None:
        level = get_log_level_from_env()

    logger = _reset(logging.getLogger(ROOT_LOGGER_NAME), level)

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    formatter_cls = ColoredFormatter if use_colors else logging.Formatter
    logger.addHandler(_stderr_handler(level, formatter_cls(console_format, DATE_FORMAT)))

    file_path = get_log_file_path(log_dir) if enable_file_logging else None
    if file_path is not None:
        try:
            # The file always keeps the full DEBUG trail
            logger.addHandler(
                _open_file_handler(
                    file_path,
                    logging.DEBUG,
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT),
                )
            )
        except OSError as e:
            logger.warning(f"Could not create log file {file_path}: {e}")
        else:
            logger.debug(f"Log file: {file_path}")

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return ``name`` as a logger under ``crm_sync``, prefixing it when needed."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the logger and console level at runtime. File handlers stay at DEBUG."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


# =============================================================================
# Matching decision log
# =============================================================================


def setup_matching_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Send matching decisions to their own file.

    Each session gets a timestamped file in the default log directory unless
    ``log_file`` is given. If the file cannot be opened the decisions go to
    stderr instead.
    """
    logger = _reset(logging.getLogger(MATCHING_LOGGER_NAME), level)
    formatter = logging.Formatter(MATCHING_LOG_FORMAT, DATE_FORMAT)

    if log_file is None:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = default_log_dir() / f"matching_{stamp}.log"

    try:
        logger.addHandler(_open_file_handler(log_file, level, formatter))
    except OSError as e:
        logger.addHandler(_stderr_handler(level, formatter))
        logger.warning(f"Could not create matching log file {log_file}: {e}")
    else:
        logger.info(f"Matching log session started at {datetime.now().isoformat()}")

    return logger


def get_matching_logger() -> logging.Logger:
    return logging.getLogger(MATCHING_LOGGER_NAME)


def log_match_decision(event: str, **fields: Any) -> None:
    """
    Record one decision, e.g. ``identity: identifier='a@b.com' result='ambiguous'``.

    Fields are written in sorted order so lines are stable across runs.
    """
    logger = get_matching_logger()
    if not logger.isEnabledFor(logging.DEBUG):
        return
    details = " ".join(f"{key}={value!r}" for key, value in sorted(fields.items()))
    logger.debug(f"{event}: {details}")


__all__ = [
    "ROOT_LOGGER_NAME",
    "MATCHING_LOGGER_NAME",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "MATCHING_LOG_FORMAT",
    "DATE_FORMAT",
    "ColoredFormatter",
    "default_log_dir",
    "get_log_level_from_env",
    "get_log_file_path",
    "setup_logging",
    "get_logger",
    "set_log_level",
    "setup_matching_logger",
    "get_matching_logger",
    "log_match_decision",
]
