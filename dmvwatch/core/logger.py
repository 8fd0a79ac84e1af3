"""
Logging configuration for DMV Watch

All modules log through ``get_logger('<area>')``, children of the
``dmvwatch`` logger. Records that belong to one diagnostic run carry the
query id, and the outcome once it is known, through
``extra=run_context(...)``. Both handlers render them as a run tag:

    12:00:03 | INFO     | services.scheduler | top-io succeeded | Run stored: 12 rows in 40 ms
    12:00:03 | DEBUG    | database.connection | - | Connected to db01/master
"""

import sys
import time
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from logging.handlers import TimedRotatingFileHandler

from dmvwatch.core.constants import LOG_FILE, RunOutcome

ROOT_LOGGER_NAME = "dmvwatch"

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(run)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(run)s | %(filename)s:%(lineno)d | %(message)s"

# Console highlights how a run ended, not the level
_OUTCOME_COLORS = {
    RunOutcome.SUCCEEDED.value: "\033[32m",
    RunOutcome.FAILED.value: "\033[31m",
    RunOutcome.SKIPPED.value: "\033[33m",
}
_RESET = "\033[0m"


def run_context(query_id: str, outcome: Optional[RunOutcome] = None) -> Dict[str, Any]:
    """``extra`` mapping that ties a record to one diagnostic query"""
    return {"query_id": query_id, "outcome": outcome.value if outcome is not None else ""}


class RunTagFormatter(logging.Formatter):
    """
    Formatter exposing ``%(run)s``: ``<query id> [outcome]``, or ``-`` for
    records outside any run
    """

    def __init__(self, fmt: str, datefmt: Optional[str] = None, colors: bool = False):
        super().__init__(fmt, datefmt)
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:
        # Set on every call: handlers sharing the record each write their own tag
        record.run = self.run_tag(record)
        return super().format(record)

    def run_tag(self, record: logging.LogRecord) -> str:
        query_id = getattr(record, "query_id", None)
        if not query_id:
            return "-"
        outcome = getattr(record, "outcome", "")
        if not outcome:
            return query_id
        if self.colors and outcome in _OUTCOME_COLORS:
            outcome = f"{_OUTCOME_COLORS[outcome]}{outcome}{_RESET}"
        return f"{query_id} {outcome}"


def _is_terminal(stream) -> bool:
    return hasattr(stream, 'isatty') and stream.isatty()


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    file_enabled: bool = True,
    retention_days: int = 7,
    console_colors: bool = True,
) -> logging.Logger:
    """
    Configure the ``dmvwatch`` logger; calling it again replaces the handlers

    Console output goes to stderr because stdout carries command output.
    The file handler rotates at midnight and keeps ``retention_days`` files.

    Returns:
        The application logger
    """
    app_logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        handler.close()

    log_level = getattr(logging, level.upper(), logging.INFO)
    app_logger.setLevel(log_level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    console.setFormatter(RunTagFormatter(
        CONSOLE_FORMAT,
        datefmt="%H:%M:%S",
        colors=console_colors and _is_terminal(sys.stderr),
    ))
    app_logger.addHandler(console)

    if file_enabled and log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_dir / LOG_FILE,
            when='midnight',
            backupCount=max(1, int(retention_days)),
            encoding='utf-8',
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(RunTagFormatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        app_logger.addHandler(file_handler)

    return app_logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Child of the application logger

    Before ``setup_logging`` runs, records propagate to the root logger.

    Example:
        >>> logger = get_logger('services.scheduler')
        >>> logger.info('Dispatching', extra=run_context('top-io'))
    """
    if name:
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
    return logging.getLogger(ROOT_LOGGER_NAME)


def log_exception(logger: logging.Logger, exc: Exception, message: str = "",
                  query_id: Optional[str] = None) -> None:
    """Log an exception with full traceback, tagged with the run when given"""
    extra = run_context(query_id, RunOutcome.FAILED) if query_id else None
    logger.error(f"{message or 'Exception occurred'}: {exc}", exc_info=True, extra=extra)


class LogContext:
    """
    Context manager for logging operation timing

    Example:
        >>> with LogContext(logger, "Scheduling pass"):
        ...     scheduler.tick()
        # Logs: "Scheduling pass... started"
        # Logs: "Scheduling pass... completed in 0.02s"
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self._started = 0.0

    def __enter__(self):
        self._started = time.perf_counter()
        self.logger.log(self.level, f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self._started
        if exc_type is not None:
            self.logger.error(f"{self.operation}... failed after {duration:.2f}s: {exc_val}")
        else:
            self.logger.log(self.level, f"{self.operation}... completed in {duration:.2f}s")
        return False
