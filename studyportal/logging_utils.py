"""
Logging utilities for studyportal.

Modules log through ``logging.getLogger("studyportal.<module>")``. An
application calls setup_logger() once to route those records to the console
and to a rotating file of JSON lines.

Usage:
    from studyportal.logging_utils import setup_logger, log_storage_operation

    logger = setup_logger("studyportal")
    log_storage_operation(logger, operation="set", key="tasks", success=True)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config_loader import get_log_level

DEFAULT_LOG_DIR = str(Path.home() / ".studyportal" / "logs")

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
RESET = "\033[0m"


def get_log_dir() -> Path:
    """STUDYPORTAL_LOG_DIR, created if missing."""
    path = Path(os.environ.get("STUDYPORTAL_LOG_DIR", DEFAULT_LOG_DIR))
    path.mkdir(parents=True, exist_ok=True)
    return path


class JSONFormatter(logging.Formatter):
    """One JSON object per line. Structured ``extra_data`` is merged in."""

    def __init__(self, app_name: str):
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "app": self.app_name,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "extra_data", None) or {})
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console format; the level name is colored when ``use_color`` is set."""

    FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

    def __init__(self, use_color: bool = True):
        super().__init__(self.FORMAT, datefmt="%H:%M:%S")
        self.use_color = use_color

    def formatMessage(self, record: logging.LogRecord) -> str:
        if not self.use_color or record.levelno not in LEVEL_COLORS:
            return super().formatMessage(record)
        # Copy so other handlers see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{LEVEL_COLORS[record.levelno]}{record.levelname:<8}{RESET}"
        return super().formatMessage(colored)


_configured_loggers: Dict[str, logging.Logger] = {}


def setup_logger(name: str = "studyportal", log_level: Optional[int] = None) -> logging.Logger:
    """
    Attach a console handler and a rotating JSON file handler to a logger.

    Calling it again for the same name returns the same logger without
    adding handlers. Child loggers (``studyportal.local_storage`` and the
    rest) propagate into the one configured here.

    Args:
        name: Logger name, also the log file name
        log_level: Level for the logger and both handlers (default: LOG_LEVEL config)
    """
    if name in _configured_loggers:
        return _configured_loggers[name]

    level = log_level if log_level is not None else get_log_level()
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
    logger.addHandler(console)

    log_file = get_log_dir() / f"{name}.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(JSONFormatter(name))
    logger.addHandler(file_handler)

    _configured_loggers[name] = logger
    return logger


def cleanup_logger(name: str) -> None:
    """Close and detach the handlers setup_logger() added, so the log file can be removed."""
    logger = _configured_loggers.pop(name, None)
    if logger is None:
        return
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def log_storage_operation(
    logger: logging.Logger,
    operation: str,
    key: str,
    success: bool,
    namespace: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """
    Log a storage operation with structured data.

    Successful operations log at DEBUG, failures at WARNING.

    Example:
        log_storage_operation(logger, "set", "tasks", success=False, error="quota exceeded")
    """
    level = logging.DEBUG if success else logging.WARNING
    if not logger.isEnabledFor(level):
        return

    extra_data: Dict[str, Any] = {
        "log_type": "storage_operation",
        "operation": operation,
        "key": key,
        "success": success,
    }
    if namespace:
        extra_data["namespace"] = namespace
    if error:
        extra_data["error"] = error

    message = f"Storage {operation} {key!r} {'ok' if success else 'failed'}"
    if error:
        message += f": {error}"
    logger.log(level, message, extra={"extra_data": extra_data})


def log_error(logger: logging.Logger, error: Exception, context: Optional[str] = None) -> None:
    """
    Log a caught exception at ERROR with its traceback.

    Example:
        try:
            storage.write("tasks", tasks)
        except StorageError as e:
            log_error(logger, e, context="saving tasks")
    """
    extra_data = {
        "log_type": "error",
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    message = f"Error: {type(error).__name__}: {error}"
    if context:
        extra_data["context"] = context
        message = f"{context} - {message}"

    logger.error(message, exc_info=error, extra={"extra_data": extra_data})


def get_recent_logs(name: str = "studyportal", count: int = 100) -> List[Dict[str, Any]]:
    """The last ``count`` JSON entries of a log file, newest first. Unparseable lines are skipped."""
    log_file = get_log_dir() / f"{name}.log"
    try:
        lines = log_file.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []
    except OSError as e:
        logging.getLogger("studyportal.logging").warning(f"Cannot read {log_file}: {e}")
        return []

    entries: List[Dict[str, Any]] = []
    for line in reversed(lines):
        if len(entries) >= count:
            break
        if not line.strip():
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return entries


__all__ = [
    "setup_logger",
    "cleanup_logger",
    "log_storage_operation",
    "log_error",
    "get_recent_logs",
    "get_log_dir",
    "ColoredFormatter",
    "JSONFormatter",
]
