import logging
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any
from typing import Final

from loguru import logger

from imbue.flocker.config.data_types import FlockerConfig
from imbue.flocker.primitives import LogLevel

# ANSI color codes that work well on both light and dark backgrounds.
# WARNING_COLOR: Bold gold/orange (256-color code 178)
# ERROR_COLOR: Bold red (256-color code 196)
# DEBUG_COLOR: Solid blue (256-color code 33)
# TRACE_COLOR: Purple (256-color code 99)
WARNING_COLOR = "\x1b[1;38;5;178m"
ERROR_COLOR = "\x1b[1;38;5;196m"
DEBUG_COLOR = "\x1b[38;5;33m"
TRACE_COLOR = "\x1b[38;5;99m"
RESET_COLOR = "\x1b[0m"

# Third-party libraries that log through the standard logging module
FORWARDED_STDLIB_LOGGERS: Final[tuple[str, ...]] = ("docker", "urllib3", "httpx", "httpcore")

_LEVEL_MAP: Final[dict[LogLevel, str]] = {
    LogLevel.TRACE: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARN: "WARNING",
    LogLevel.ERROR: "ERROR",
}

_CONSOLE_STYLES: Final[dict[str, tuple[str, str]]] = {
    "WARNING": (WARNING_COLOR, "WARNING: "),
    "ERROR": (ERROR_COLOR, "ERROR: "),
    "DEBUG": (DEBUG_COLOR, ""),
    "TRACE": (TRACE_COLOR, ""),
}


def _dynamic_stderr_sink(message: Any) -> None:
    """Write to whatever sys.stderr is at the time of the call (pytest and CliRunner swap it)."""
    stream = sys.stderr
    stream.write(str(message))
    stream.flush()


def _format_user_message(record: Any) -> str:
    """Console format: INFO is plain, other levels are colored and warnings/errors get a prefix.

    record is a loguru Record, whose type only exists in the stubs.
    """
    style = _CONSOLE_STYLES.get(record["level"].name)
    if style is None:
        return "{message}\n"
    color, prefix = style
    return f"{color}{prefix}{{message}}{RESET_COLOR}\n"


class _StdlibToLoguruHandler(logging.Handler):
    """Forward standard logging records from the docker/HTTP stack to loguru at TRACE level.

    Connection pool chatter is useful when debugging with a trace-level log file
    but is noise on the console, where flocker reports failures itself.
    """

    def emit(self, record: logging.LogRecord) -> None:
        logger.trace("[{}] {}", record.name, record.getMessage())


def forward_stdlib_loggers() -> None:
    for name in FORWARDED_STDLIB_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.setLevel(logging.DEBUG)
        stdlib_logger.handlers.clear()
        stdlib_logger.addHandler(_StdlibToLoguruHandler())
        stdlib_logger.propagate = False


def setup_logging(config: FlockerConfig, is_verbose: bool = False) -> Path:
    """Configure logging for a flocker session.

    Sets up:
    - stderr logging for user-facing messages (INFO, or DEBUG when verbose)
    - File logging to <root_dir>/logs/<timestamp>-<pid>.json
    - Pruning of old log files beyond logging.max_log_files

    Returns the path of the log file for this run.
    """
    # Remove default handler
    logger.remove()

    forward_stdlib_loggers()

    # We set colorize=False because we handle colors manually in _format_user_message.
    # The callable sink always writes to the current sys.stderr, even if it gets
    # replaced (e.g., by pytest's capture mechanism).
    logger.add(
        _dynamic_stderr_sink,
        level="DEBUG" if is_verbose else "INFO",
        format=_format_user_message,
        colorize=False,
        diagnose=False,
    )

    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_file = log_dir / f"{timestamp}-{os.getpid()}.json"

    logger.add(
        log_file,
        level=_LEVEL_MAP[config.logging.file_level],
        format="{message}",
        serialize=True,
        diagnose=False,
        rotation=f"{config.logging.max_log_size_mb} MB",
    )

    _rotate_old_logs(log_dir, config.logging.max_log_files)
    return log_file


def _rotate_old_logs(log_dir: Path, max_files: int) -> None:
    """Keep only the max_files most recently modified run logs in log_dir.

    Several flocker processes may prune the same directory at once, so files
    that vanish or cannot be removed are skipped.
    """
    try:
        run_logs = [(path.stat().st_mtime, path) for path in log_dir.glob("*.json")]
    except OSError:
        return
    if len(run_logs) <= max_files:
        return

    run_logs.sort(reverse=True)
    for _, stale_log in run_logs[max_files:]:
        _unlink_quietly(stale_log)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except OSError as e:
        logger.trace("Could not remove old log {}: {}", path, e)


@contextmanager
def log_span(message: str, *args: Any, **context: Any) -> Iterator[None]:
    """Log message at DEBUG when a block starts and at TRACE, with its duration, when it ends.

    args fill the message placeholders. Keyword arguments are bound with
    logger.contextualize, so every record inside the block carries them as extra fields.
    """
    with logger.contextualize(**context):
        logger.debug(message, *args)
        start_time = time.monotonic()
        outcome = "failed after"
        try:
            yield
            outcome = "done in"
        finally:
            logger.trace(message + " [" + outcome + " {:.5f} sec]", *args, time.monotonic() - start_time)
