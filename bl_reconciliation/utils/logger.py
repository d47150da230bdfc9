"""
Structured logging for the reconciliation service.

Everything logs through ``get_logger(__name__)``, which namespaces loggers under
``bl_reconciliation`` and turns keyword arguments into structured fields.
``AuditLogger`` is the operation-level audit trail of verification and
reconciliation steps.
"""
import logging
import logging.config
import json
import sys
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List
from pathlib import Path

from bl_reconciliation.config import AUDIT_LOG

LOGGER_ROOT = "bl_reconciliation"
_NOISY_LOGGERS = ("uvicorn", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; structured fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            "thread": record.threadName,
        }
        entry.update(getattr(record, "extra_data", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """Thin wrapper over ``logging.Logger`` taking context as keyword arguments.

    ``logger.info("Fetched", store_id=7, record_count=3)`` logs the message with
    ``store_id`` and ``record_count`` as fields; ``None`` values are dropped.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log(self, level: int, message: str, exc_info: bool = False, **context: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        fields = {k: v for k, v in context.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"extra_data": fields})

    def debug(self, message: str, **context: Any) -> None:
        self.log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self.log(logging.ERROR, message, **context)


class AuditLogger:
    """Leveled audit sink keyed by operation name.

    Every reconciliation component reports its steps here as
    ``(operation, data, group_id, duration_ms)``. Entries go to the regular
    logging pipeline under ``bl_reconciliation.audit`` and a bounded ring of
    recent entries is kept in memory for the operator endpoint.
    """

    def __init__(self, name: str = "audit", buffer_size: Optional[int] = None):
        self._logger = get_logger(name)
        size = int(buffer_size if buffer_size is not None else AUDIT_LOG["recent_buffer_size"])
        self._recent: deque[dict[str, Any]] = deque(maxlen=max(1, size))
        self._lock = threading.Lock()

    def _record(
        self,
        level: str,
        operation: str,
        data: Optional[Dict[str, Any]],
        group_id: Optional[int],
        duration_ms: Optional[float],
        error: Optional[str] = None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "operation": operation,
        }
        if group_id is not None:
            entry["group_id"] = group_id
        if duration_ms is not None:
            entry["duration_ms"] = round(duration_ms, 2)
        if data:
            entry["data"] = data
        if error is not None:
            entry["error"] = error
        with self._lock:
            self._recent.append(entry)
        return entry

    def info(self, operation: str, data: Optional[Dict[str, Any]] = None, group_id: Optional[int] = None, duration_ms: Optional[float] = None) -> None:
        self._record("INFO", operation, data, group_id, duration_ms)
        self._logger.info(operation, operation=operation, group_id=group_id, duration_ms=duration_ms, data=data or None)

    def warning(self, operation: str, data: Optional[Dict[str, Any]] = None, group_id: Optional[int] = None, duration_ms: Optional[float] = None) -> None:
        self._record("WARN", operation, data, group_id, duration_ms)
        self._logger.warning(operation, operation=operation, group_id=group_id, duration_ms=duration_ms, data=data or None)

    def error(self, operation: str, error: str | BaseException, group_id: Optional[int] = None, data: Optional[Dict[str, Any]] = None) -> None:
        message = str(error) if isinstance(error, BaseException) else error
        self._record("ERROR", operation, data, group_id, None, error=message)
        self._logger.error(operation, operation=operation, group_id=group_id, error=message, data=data or None)

    def debug(self, operation: str, data: Optional[Dict[str, Any]] = None, group_id: Optional[int] = None) -> None:
        self._record("DEBUG", operation, data, group_id, None)
        self._logger.debug(operation, operation=operation, group_id=group_id, data=data or None)

    def recent(self, limit: int = 100, *, level: Optional[str] = None) -> List[dict[str, Any]]:
        """Newest-last slice of the in-memory audit ring."""
        with self._lock:
            entries = list(self._recent)
        if level:
            entries = [e for e in entries if e["level"] == level.upper()]
        return entries[-limit:] if limit > 0 else []

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()




def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the service loggers.

    Args:
        log_level: Level name applied to handlers and service loggers
        log_file: Rotating JSON log file; parent directories are created
        enable_console: Plain-text log lines on stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "plain",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }
    names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {
        LOGGER_ROOT: {"level": log_level, "handlers": names, "propagate": False},
    }
    for noisy in _NOISY_LOGGERS:
        # SQL statements only at WARNING and above
        level = "WARNING" if noisy.startswith("sqlalchemy") else "INFO"
        loggers[noisy] = {"level": level, "handlers": names, "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "plain": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": log_level, "handlers": names},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for ``name``, placed under the service logger tree."""
    if name == LOGGER_ROOT or name.startswith(LOGGER_ROOT + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{LOGGER_ROOT}.{name}")


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Process-wide default audit sink (components accept an explicit one too)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    group_id: Optional[int] = None,
    request_id: Optional[str] = None
) -> None:
    """Record a business-level event (run finished, timer toggled) on the events logger."""
    get_logger("events").info(
        f"Business event: {event_type}",
        event_type=event_type,
        group_id=group_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    get_logger("performance").info(
        f"Performance: {operation}",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {})
    )
