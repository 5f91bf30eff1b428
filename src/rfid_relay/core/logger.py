"""
Structured Logging
==================
Event-style JSON logging for the relay.

    logger.info("connection_manager.device_promoted", {"client_id": cid})

Every call produces one JSON object per line, on stdout and, when enabled,
in a size-rotated file under ``log_dir``.
"""

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# logging.getLogger(name) is process-wide; building a second StructuredLogger
# for the same name would stack handlers, so instances are shared per name.
_loggers: Dict[str, "StructuredLogger"] = {}
_loggers_lock = threading.RLock()


class CustomJsonEncoder(json.JSONEncoder):
    """Serializes the non-JSON values that show up in event payloads"""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, type):
            return obj.__name__
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        return super().default(obj)


def _with_string_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _with_string_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_with_string_keys(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """One JSON object per record: envelope fields plus the event payload"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
        }
        if isinstance(record.msg, dict):
            entry.update(_with_string_keys(record.msg))
        else:
            entry["message"] = record.getMessage()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, cls=CustomJsonEncoder)


class StructuredLogger:
    """
    Logger taking a dotted event name and a dict payload.

    ``config`` is a LoggingSettings (or any object with the same attributes);
    missing attributes fall back to LoggingSettings defaults.
    """

    def __init__(self, name: str, config: Any, filename: Optional[str] = None):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.propagate = False

        level = getattr(config, "level", "INFO")
        level_name = str(getattr(level, "value", level)).upper()
        level_number = logging.getLevelName(level_name)
        # getLevelName returns a "Level X" string for unknown names
        self.logger.setLevel(level_number if isinstance(level_number, int) else logging.INFO)

        structured = getattr(config, "structured_logging", True)
        log_dir = Path(getattr(config, "log_dir", "logs"))

        if getattr(config, "console_enabled", True):
            self._attach(
                lambda h: isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout,
                lambda: logging.StreamHandler(sys.stdout),
                structured
            )

        if filename or getattr(config, "file_enabled", False):
            log_file = os.path.abspath(log_dir / (filename or f"{name}.jsonl"))
            max_bytes = getattr(config, "max_file_size_mb", 100) * 1024 * 1024
            backup_count = getattr(config, "backup_count", 5)
            self._attach(
                lambda h: isinstance(h, RotatingFileHandler) and os.path.abspath(h.baseFilename) == log_file,
                lambda: self._open_file_handler(log_file, max_bytes, backup_count),
                structured
            )

    def _attach(self,
                already_present: Callable[[logging.Handler], bool],
                create: Callable[[], Optional[logging.Handler]],
                structured: bool):
        if any(already_present(h) for h in self.logger.handlers):
            return
        handler = create()
        if handler is None:
            return
        if structured:
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        self.logger.addHandler(handler)

    @staticmethod
    def _open_file_handler(log_file: str, max_bytes: int, backup_count: int) -> Optional[RotatingFileHandler]:
        try:
            os.makedirs(os.path.dirname(log_file), exist_ok=True)
            return RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        except OSError as e:
            # no handler exists yet to report this through
            print(f"ERROR: cannot open log file {log_file}: {e}", file=sys.stderr)
            return None

    def _emit(self, level: int, event_type: str, data: Optional[Dict[str, Any]], exc_info=False):
        # stacklevel 3: report the caller of info()/warning()/..., not this helper
        self.logger.log(level, {"event_type": event_type, "data": data or {}}, exc_info=exc_info, stacklevel=3)

    def debug(self, event_type: str, data: Dict[str, Any] = None):
        self._emit(logging.DEBUG, event_type, data)

    def info(self, event_type: str, data: Dict[str, Any] = None):
        self._emit(logging.INFO, event_type, data)

    def warning(self, event_type: str, data: Dict[str, Any] = None):
        self._emit(logging.WARNING, event_type, data)

    def error(self, event_type: str, data: Dict[str, Any] = None, exc_info=False):
        """Log an error event; pass exc_info=True inside an except block to attach the traceback."""
        self._emit(logging.ERROR, event_type, data, exc_info=exc_info)


def get_logger(name: str) -> StructuredLogger:
    """
    Shared StructuredLogger for ``name``, configured from the working directory.

    Settings come from ``config/config.json`` plus the environment. If the
    environment holds invalid values the logger still comes up with the
    default LoggingSettings, and the problem is reported on stderr.
    """
    with _loggers_lock:
        logger = _loggers.get(name)
        if logger is not None:
            return logger

        from ..infrastructure.config.config_loader import get_settings_from_working_directory
        from ..infrastructure.config.settings import LoggingSettings
        try:
            config = get_settings_from_working_directory().logging
        except ValueError as e:
            print(f"WARNING: Failed to load config for logger '{name}': {e}", file=sys.stderr)
            # model_construct skips env parsing, which is what failed
            config = LoggingSettings.model_construct()

        logger = StructuredLogger(name, config)
        _loggers[name] = logger
        return logger
