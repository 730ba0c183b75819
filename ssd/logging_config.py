"""
Logging configuration for ssd.

The console shows what the operator running a deploy needs to see. When a
log directory is given, everything also goes to rotating files, and deploy
lifecycle events (lock, build, canary, promote, rollback) get a file of
their own.
"""
# mypy: ignore-errors

import json
import logging
import logging.handlers
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LIFECYCLE_LOGGER = "ssd.deploy_lifecycle"

CONTEXT_FIELDS = ("service", "stack", "version", "stage", "operation")

_context: ContextVar[Dict[str, Any]] = ContextVar("ssd_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with any deploy context fields on the record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Terse console output.

    INFO lines are printed bare, other levels carry their level name. The
    service being deployed prefixes the line when it is known. Verbose mode
    adds timestamps and logger names.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False, verbose: bool = False):
        super().__init__(datefmt="%H:%M:%S")
        self.use_colors = use_colors
        self.verbose = verbose

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        service = getattr(record, "service", None)
        if service:
            message = f"[{service}] {message}"
        if record.levelno != logging.INFO:
            level = record.levelname
            if self.use_colors and level in self.COLORS:
                level = f"{self.COLORS[level]}{level}{self.RESET}"
            message = f"{level}: {message}"
        if self.verbose:
            message = f"{self.formatTime(record, self.datefmt)} {record.name} {message}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(
    console_level: str = "INFO",
    log_dir: Optional[str] = None,
    use_json: bool = False,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> None:
    """
    Configure logging for one ssd invocation.

    Args:
        console_level: Level for stderr output; DEBUG also turns on verbose lines
        log_dir: Directory for ``ssd.log`` and ``deploy-lifecycle.log``; no files when None
        use_json: Write the log files as JSON lines
        max_bytes: Size at which a log file rotates
        backup_count: Rotated files kept per log
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(
        ConsoleFormatter(use_colors=sys.stderr.isatty(), verbose=console_level == "DEBUG")
    )
    root_logger.addHandler(console_handler)

    lifecycle_logger = logging.getLogger(LIFECYCLE_LOGGER)
    lifecycle_logger.handlers.clear()
    lifecycle_logger.setLevel(logging.DEBUG)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_formatter: logging.Formatter = (
            StructuredFormatter()
            if use_json
            else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

        targets = ((root_logger, "ssd.log"), (lifecycle_logger, "deploy-lifecycle.log"))
        for target, filename in targets:
            handler = logging.handlers.RotatingFileHandler(
                log_path / filename, maxBytes=max_bytes, backupCount=backup_count
            )
            handler.setFormatter(file_formatter)
            target.addHandler(handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    root_logger.debug(f"Logging to {log_dir or 'console only'} (json={use_json})")


def _install_context_factory() -> None:
    current = logging.getLogRecordFactory()
    if getattr(current, "ssd_context", False):
        return

    def record_factory(*args, **kwargs):
        record = current(*args, **kwargs)
        for key, value in _context.get().items():
            setattr(record, key, value)
        return record

    record_factory.ssd_context = True
    logging.setLogRecordFactory(record_factory)


class LogContext:
    """
    Attach deploy context fields to every record logged inside the block.

    Fields live in a context variable, so concurrent asyncio tasks keep
    their own values. Nested contexts add to the enclosing one.
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token = None

    def __enter__(self):
        _install_context_factory()
        self._token = _context.set({**_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _context.reset(self._token)
            self._token = None


def log_deploy_operation(
    operation: str,
    service: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "INFO",
) -> None:
    """
    Record a deploy lifecycle event on the lifecycle logger.

    Args:
        operation: Event name (lock, build, canary_start, promote, rollback, ...)
        service: Service the event belongs to
        details: Extra values, serialized as JSON after the message
        level: Log level name
    """
    message = f"{operation} {service}"
    if details:
        message += f" {json.dumps(details, default=str)}"
    logging.getLogger(LIFECYCLE_LOGGER).log(
        getattr(logging, level.upper()), message, extra={"operation": operation}
    )
